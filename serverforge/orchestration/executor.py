"""Orchestration layer — Execution engine.

The ExecutionEngine drives a provisioning run end-to-end:
  1. Resolve the execution plan (DependencyResolver)
  2. Validate every planned module's configuration
  3. Pre-flight: privilege and required binaries for modules still to install
  4. Dry-run stops here and reports the plan
  5. Reverse any install intent left behind by a crashed run, then skip
     modules the latest checkpoint already records
  6. For each remaining module (sequentially, or in concurrent waves):
     a. Hold the shared-resource advisory locks it declares
     b. pre_install
     c. plan_undo, persisted as the install intent
     d. install (returns the final undo data)
     e. configure
     f. verify
     g. Append a checkpoint and clear the intent
  7. On failure apply the failure policy (auto-rollback | abort-only)
  8. Mark the run completed, interrupted, failed or rolled back

Pre-flight errors (configuration, dependency graph, privilege, missing
binaries) propagate to the caller because nothing has been mutated.  Errors
raised by a module while it runs are captured in the :class:`RunReport`.

Cancellation is cooperative: :meth:`ExecutionEngine.request_stop` is only
honoured between modules, never in the middle of one.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Iterable, Literal, TypeVar

from serverforge.config import FailurePolicy, RollbackPolicy, Settings
from serverforge.exceptions import (
    ExecutionError,
    ExecutionTimeoutError,
    RollbackError,
    ServerForgeError,
    VerificationError,
)
from serverforge.logging import bind_run_context, clear_run_context, get_logger
from serverforge.modules.descriptor import ModuleState
from serverforge.modules.registry import ModuleRegistry
from serverforge.modules.undo import UndoDescriptor
from serverforge.orchestration.checkpoint import Checkpoint, CheckpointStore
from serverforge.orchestration.locks import AdvisoryLocks
from serverforge.orchestration.preflight import PreflightChecker
from serverforge.orchestration.resolver import DependencyResolver, ExecutionPlan
from serverforge.orchestration.rollback import RollbackCoordinator, RollbackReport
from serverforge.orchestration.state import RunReport, RunState, RunStatus

log = get_logger(__name__)

T = TypeVar("T")

ResolvedPolicy = Literal["auto-rollback", "abort-only"]


@dataclass
class _ModuleFailure:
    module: str
    step: str
    error: ServerForgeError
    undo: UndoDescriptor | None = None


class ExecutionEngine:
    """Runs execution plans against the host.

    Usage::

        engine = ExecutionEngine(registry, store, settings)
        report = await engine.run(["security/firewall"])
        sys.exit(report.exit_code)
    """

    def __init__(
        self,
        registry: ModuleRegistry,
        store: CheckpointStore,
        settings: Settings,
        interactive: bool = False,
        preflight: PreflightChecker | None = None,
    ) -> None:
        self._registry = registry
        self._store = store
        self._settings = settings
        self._interactive = interactive
        self._resolver = DependencyResolver(registry)
        self._preflight = preflight or PreflightChecker()
        self._locks = AdvisoryLocks()
        # Completion and its checkpoint happen together, one module at a time.
        self._checkpoint_lock = asyncio.Lock()
        self._timeout = settings.engine.operation_timeout_seconds
        self._stop_requested = False

    # ------------------------------------------------------------------
    # Public entry points
    # ------------------------------------------------------------------

    def request_stop(self) -> None:
        """Ask the engine to stop at the next module boundary."""
        if not self._stop_requested:
            log.warning("stop_requested")
        self._stop_requested = True

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested

    def resolve_policy(self, policy: FailurePolicy | None = None) -> ResolvedPolicy:
        """Turn ``auto`` into a concrete policy for this engine."""
        chosen = policy or self._settings.engine.failure_policy
        if chosen == "auto":
            return "abort-only" if self._interactive else "auto-rollback"
        return chosen

    def plan(self, requested: Iterable[str] | None = None) -> ExecutionPlan:
        """Resolve the execution plan for *requested* (or the configured set)."""
        return self._resolver.resolve(self._requested(requested))

    async def validate(self, requested: Iterable[str] | None = None) -> ExecutionPlan:
        """Resolve the plan and validate every planned module's configuration.

        Raises:
            DependencyGraphError, ModuleNotFoundError, ConfigError
        """
        plan = self.plan(requested)
        for name in plan:
            module = self._registry.get(name)
            await self._call(name, "validate_config", module.validate_config(
                self._settings.module_settings(name)
            ))
        log.info("plan_validated", modules=list(plan))
        return plan

    async def run(
        self,
        requested: Iterable[str] | None = None,
        dry_run: bool = False,
        policy: FailurePolicy | None = None,
        concurrent: bool | None = None,
    ) -> RunReport:
        """Execute a provisioning run and return its report.

        Raises:
            ConfigError, DependencyGraphError, ModuleNotFoundError,
            PermissionDeniedError, MissingDependencyError: pre-flight failures.
        """
        plan = await self.validate(requested)

        latest = await self._store.load_latest()
        installed = set(latest.completed_modules) if latest else set()
        pending = [name for name in plan if name not in installed]
        self._preflight.check(
            (self._registry.descriptor(name) for name in pending),
            check_privileges=not dry_run,
        )

        if dry_run:
            return await self._dry_run(plan, pending)

        resolved_policy = self.resolve_policy(policy)
        if concurrent is None:
            concurrent = self._settings.engine.concurrency.enabled

        state = RunState.start(list(plan), latest)
        for name in plan:
            state.transition(name, ModuleState.VALIDATED, step="validate_config")
        state.status = RunStatus.EXECUTING
        await self._store.begin_run(state)
        bind_run_context(run_id=state.run_id)
        log.info(
            "run_started",
            plan=list(plan),
            pending=pending,
            policy=resolved_policy,
            concurrent=concurrent,
        )

        report = RunReport(run_id=state.run_id, status=RunStatus.EXECUTING, plan=list(plan))
        try:
            recovery = await self._recover_intents(state, installed)
            if recovery is not None:
                report.rollback = recovery
                report.error = "could not reverse an interrupted install"
                await self._finish(state, report, RunStatus.ROLLBACK_FAILED)
                return report

            await self._skip_installed(state, plan, installed, report)

            if concurrent:
                failures = await self._run_waves(state, plan, pending, report)
            else:
                failures = await self._run_sequential(state, pending, report)

            if failures:
                await self._handle_failures(state, failures, latest, resolved_policy, report)
            elif any(not state.is_installed(name) for name in pending):
                await self._finish(state, report, RunStatus.INTERRUPTED)
            else:
                await self._finish(state, report, RunStatus.COMPLETED)
        finally:
            clear_run_context()
        return report

    async def rollback_to(
        self, target: str = "latest", policy: RollbackPolicy | None = None
    ) -> RollbackReport:
        """Roll the host back to *target*.

        ``latest`` returns to the newest checkpoint, which only reverses
        installs a crashed or aborted run left behind.  ``initial`` reverses
        every installed module.  A checkpoint id reverses the modules
        completed after that checkpoint.  Interrupted installs are always
        undone first, whatever the target.

        Raises:
            CheckpointNotFoundError: *target* is not a known checkpoint id.
            RollbackError: at least one undo failed.
        """
        latest = await self._store.load_latest()
        keep: Checkpoint | None
        if target == "initial":
            keep = None
        elif target == "latest":
            keep = latest
        else:
            keep = await self._store.get(target)

        intents = await self._store.dangling_intents()
        installed = set(latest.completed_modules) if latest else set()
        kept = set(keep.completed_modules) if keep else set()
        if not (installed - kept) and not intents:
            log.info("rollback_nothing_to_do", target=target)
            return RollbackReport()

        state = RunState.start([], latest)
        state.status = RunStatus.ROLLING_BACK
        await self._store.begin_run(state)
        bind_run_context(run_id=state.run_id)
        log.info("manual_rollback_started", target=target)

        extra = [(module, undo) for _, module, undo in intents if not state.is_installed(module)]
        coordinator = self._coordinator(policy)
        try:
            report = await coordinator.rollback(state, target=keep, extra=extra)
        except RollbackError as exc:
            await self._clear_reverted_intents(intents, exc.report)
            raise
        finally:
            clear_run_context()
        await self._clear_reverted_intents(intents, report)
        return report

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    def _requested(self, requested: Iterable[str] | None) -> list[str] | None:
        if requested:
            return list(requested)
        active = self._settings.active_modules()
        if active:
            return active
        disabled = set(self._settings.modules.disabled)
        if disabled:
            return [n for n in self._registry.list_modules() if n not in disabled]
        return None

    async def _dry_run(self, plan: ExecutionPlan, pending: list[str]) -> RunReport:
        for intent in await self._store.dangling_intents():
            log.info("dry_run_would_reverse_intent", run=intent[0], module=intent[1])
        for name in plan:
            if name in pending:
                descriptor = self._registry.descriptor(name)
                log.info(
                    "dry_run_would_install",
                    module=name,
                    version=descriptor.version,
                    after=plan.predecessors(name),
                    locks=sorted(descriptor.shared_resources),
                )
            else:
                log.info("dry_run_would_skip", module=name, reason="already installed")
        return RunReport(
            run_id=None,
            status=RunStatus.PLANNED,
            plan=list(plan),
            skipped=[name for name in plan if name not in pending],
            dry_run=True,
        )

    async def _recover_intents(
        self, state: RunState, installed: set[str]
    ) -> RollbackReport | None:
        """Reverse installs that started in an earlier run but never checkpointed.

        Returns a failed :class:`RollbackReport` if any reversal failed.
        """
        report = RollbackReport()
        for run_id, name, undo in await self._store.dangling_intents():
            if name in installed:
                # Checkpoint written but the intent was never cleared.
                await self._store.clear_intent(run_id, name)
                continue
            bind_run_context(run_id=state.run_id, module=name)
            log.warning("reversing_interrupted_install", module=name, origin_run=run_id)
            try:
                module = self._registry.get(name)
                await self._call(name, "rollback", module.rollback(undo))
            except Exception as exc:
                report.failed[name] = str(exc) or type(exc).__name__
                log.critical(
                    "interrupted_install_rollback_failed",
                    module=name,
                    origin_run=run_id,
                    error=report.failed[name],
                )
                break
            await self._store.clear_intent(run_id, name)
            report.rolled_back.append(name)
        bind_run_context(run_id=state.run_id)
        return report if report.failed else None

    async def _skip_installed(
        self, state: RunState, plan: ExecutionPlan, installed: set[str], report: RunReport
    ) -> None:
        for name in plan:
            if name not in installed:
                continue
            module = self._registry.get(name)
            observed = await self._call(name, "status", module.status())
            if observed != ModuleState.INSTALLED:
                log.warning("module_drift_detected", module=name, observed=observed.value)
            state.transition(name, ModuleState.INSTALLED)
            await self._store.set_module_state(
                state.run_id, name, ModuleState.INSTALLED, step="skipped"
            )
            report.skipped.append(name)
            log.info("module_skipped", module=name, reason="already installed")

    async def _run_sequential(
        self, state: RunState, pending: list[str], report: RunReport
    ) -> list[_ModuleFailure]:
        for name in pending:
            if self._stop_requested:
                log.warning("run_interrupted", next_module=name)
                return []
            failure = await self._install_module(state, name, report)
            if failure is not None:
                return [failure]
        return []

    async def _run_waves(
        self, state: RunState, plan: ExecutionPlan, pending: list[str], report: RunReport
    ) -> list[_ModuleFailure]:
        semaphore = asyncio.Semaphore(self._settings.engine.concurrency.max_workers)
        todo = set(pending)

        async def guarded(name: str) -> _ModuleFailure | None:
            async with semaphore:
                if self._stop_requested:
                    return None
                return await self._install_module(state, name, report)

        for wave in plan.waves():
            runnable = [name for name in wave.modules if name in todo]
            if not runnable:
                continue
            if self._stop_requested:
                log.warning("run_interrupted", next_wave=wave.wave_index)
                return []
            log.info("wave_started", wave=wave.wave_index, modules=runnable)
            results = await asyncio.gather(*(guarded(name) for name in runnable))
            failures = [r for r in results if r is not None]
            if failures:
                return failures
        return []

    async def _install_module(
        self, state: RunState, name: str, report: RunReport
    ) -> _ModuleFailure | None:
        module = self._registry.get(name)
        descriptor = self._registry.descriptor(name)
        bind_run_context(run_id=state.run_id, module=name)

        undo: UndoDescriptor | None = None
        step = "pre_install"
        try:
            async with self._locks.hold(descriptor.shared_resources):
                await self._set_state(state, name, ModuleState.INSTALLING, step)
                await self._call(name, step, module.pre_install())

                step = "plan_undo"
                intent = await self._call(name, step, module.plan_undo())
                await self._store.record_intent(state.run_id, name, intent)

                step = "install"
                undo = await self._call(name, step, module.install())

                step = "configure"
                await self._call(name, step, module.configure())

                step = "verify"
                await self._call(name, step, module.verify())
        except Exception as exc:
            error = self._wrap(name, step, exc)
            if undo is not None:
                await self._store.record_intent(state.run_id, name, undo)
            await self._set_state(state, name, ModuleState.FAILED, step, error.message)
            log.error("module_failed", step=step, error=error.message)
            return _ModuleFailure(module=name, step=step, error=error, undo=undo)

        async with self._checkpoint_lock:
            state.mark_completed(name, undo or UndoDescriptor(module=name))
            await self._store.create_checkpoint(f"installed {name}", state)
        await self._set_state(state, name, ModuleState.INSTALLED, "verify")
        await self._store.clear_intent(state.run_id, name)
        report.installed.append(name)
        log.info("module_installed", duration=state.module(name).duration)
        return None

    async def _handle_failures(
        self,
        state: RunState,
        failures: list[_ModuleFailure],
        latest: Checkpoint | None,
        policy: ResolvedPolicy,
        report: RunReport,
    ) -> None:
        first = failures[0]
        report.failed_module = first.module
        report.failed_step = first.step
        report.error = first.error.message
        await self._store.record_failure(state.run_id, first.module, first.step, first.error.message)

        if policy == "abort-only":
            log.warning("run_aborted", module=first.module, step=first.step)
            await self._finish(state, report, RunStatus.FAILED)
            return

        state.status = RunStatus.FAILED
        await self._store.update_run_status(state.run_id, RunStatus.FAILED)
        extra = [(f.module, f.undo) for f in reversed(failures) if f.undo is not None]
        coordinator = self._coordinator()
        try:
            report.rollback = await coordinator.rollback(state, target=latest, extra=extra)
        except RollbackError as exc:
            report.rollback = exc.report
        for name, _ in extra:
            if name in report.rollback.rolled_back:
                await self._store.clear_intent(state.run_id, name)
        report.status = state.status
        log.info("run_finished", status=report.status.value)

    async def _finish(self, state: RunState, report: RunReport, status: RunStatus) -> None:
        state.status = status
        report.status = status
        await self._store.update_run_status(state.run_id, status)
        log.info("run_finished", status=status.value, installed=report.installed)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _coordinator(self, policy: RollbackPolicy | None = None) -> RollbackCoordinator:
        return RollbackCoordinator(
            self._registry,
            self._store,
            policy=policy or self._settings.engine.rollback_policy,
            timeout=self._timeout,
            locks=self._locks,
        )

    async def _clear_reverted_intents(
        self, intents: list[tuple[str, str, UndoDescriptor]], report: RollbackReport
    ) -> None:
        for run_id, name, _ in intents:
            if name in report.rolled_back:
                await self._store.clear_intent(run_id, name)

    async def _set_state(
        self,
        state: RunState,
        name: str,
        new: ModuleState,
        step: str,
        error: str | None = None,
    ) -> None:
        state.transition(name, new, step=step)
        state.module(name).error = error
        await self._store.set_module_state(state.run_id, name, new, step=step, error=error)

    async def _call(self, name: str, step: str, awaitable: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(awaitable, timeout=self._timeout)
        except asyncio.TimeoutError:
            raise ExecutionTimeoutError(name, step, self._timeout) from None

    @staticmethod
    def _wrap(name: str, step: str, exc: Exception) -> ServerForgeError:
        if isinstance(exc, (ExecutionError, VerificationError)):
            return exc
        reason = str(exc) or type(exc).__name__
        if step == "verify":
            return VerificationError(name, reason)
        return ExecutionError(name, step, reason)

    def status(self) -> dict[str, Any]:
        return {
            "stop_requested": self._stop_requested,
            "locks": self._locks.status(),
        }
