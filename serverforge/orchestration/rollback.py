"""Orchestration layer — Rollback coordinator.

Reverses installed modules in strict reverse order of completion, never in
dependency order: undo must unwind in the opposite direction the mutations
happened.  Each module's stored :class:`UndoDescriptor` is handed to its
``rollback`` method.

Policies:
  best-effort  keep going after a failed undo and report every failure together
  strict       stop at the first failed undo; the rest are left not attempted

A failed undo is never hidden.  It is logged at ``critical`` and raised as
:class:`RollbackError` carrying which modules were rolled back, which failed
and which were never attempted.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Sequence

from serverforge.config import RollbackPolicy
from serverforge.exceptions import ExecutionTimeoutError, RollbackError
from serverforge.logging import bind_run_context, get_logger
from serverforge.modules.descriptor import ModuleState
from serverforge.modules.registry import ModuleRegistry
from serverforge.modules.undo import UndoDescriptor
from serverforge.orchestration.checkpoint import Checkpoint, CheckpointStore
from serverforge.orchestration.locks import AdvisoryLocks
from serverforge.orchestration.state import RunState, RunStatus

log = get_logger(__name__)


@dataclass
class RollbackReport:
    """Outcome of one rollback pass."""

    rolled_back: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)
    not_attempted: list[str] = field(default_factory=list)
    checkpoint_id: str | None = None

    @property
    def succeeded(self) -> bool:
        return not self.failed and not self.not_attempted

    def to_dict(self) -> dict[str, Any]:
        return {
            "rolled_back": list(self.rolled_back),
            "failed": dict(self.failed),
            "not_attempted": list(self.not_attempted),
            "checkpoint_id": self.checkpoint_id,
            "succeeded": self.succeeded,
        }


class RollbackCoordinator:
    """Drives ``rollback(undo)`` across modules and records the result.

    Usage::

        coordinator = RollbackCoordinator(registry, store, policy="best-effort")
        report = await coordinator.rollback(run_state)          # everything
        report = await coordinator.rollback(run_state, target)  # back to a checkpoint
    """

    def __init__(
        self,
        registry: ModuleRegistry,
        store: CheckpointStore,
        policy: RollbackPolicy = "best-effort",
        timeout: float | None = None,
        locks: AdvisoryLocks | None = None,
    ) -> None:
        self._registry = registry
        self._store = store
        self._policy = policy
        self._timeout = timeout
        self._locks = locks or AdvisoryLocks()

    @property
    def policy(self) -> RollbackPolicy:
        return self._policy

    def targets(self, run_state: RunState, target: Checkpoint | None = None) -> list[str]:
        """Return the modules to undo, most recently completed first.

        Modules recorded as completed in *target* stay installed.
        """
        keep = set(target.completed_modules) if target is not None else set()
        return [name for name in reversed(run_state.completed) if name not in keep]

    async def rollback(
        self,
        run_state: RunState,
        target: Checkpoint | None = None,
        extra: Sequence[tuple[str, UndoDescriptor]] = (),
    ) -> RollbackReport:
        """Undo everything *run_state* completed after *target*.

        Args:
            run_state: Live run whose ``completed`` lineage is reversed.
            target:    Checkpoint to return to; None reverses every module.
            extra:     ``(module, undo)`` pairs that never reached a
                       checkpoint (a module that failed after ``install``).
                       They are undone first.

        Raises:
            RollbackError: at least one undo failed or was not attempted.
        """
        queue: list[tuple[str, UndoDescriptor]] = list(extra)
        for name in self.targets(run_state, target):
            undo = run_state.undo.get(name) or UndoDescriptor(module=name)
            queue.append((name, undo))

        report = RollbackReport()
        if not queue:
            log.info("rollback_nothing_to_do", run_id=run_state.run_id)
            return report

        run_state.status = RunStatus.ROLLING_BACK
        await self._store.update_run_status(run_state.run_id, RunStatus.ROLLING_BACK)
        log.warning(
            "rollback_started",
            run_id=run_state.run_id,
            modules=[name for name, _ in queue],
            policy=self._policy,
        )

        for index, (name, undo) in enumerate(queue):
            bind_run_context(run_id=run_state.run_id, module=name)
            try:
                await self._undo_module(name, undo)
            except Exception as exc:
                error = str(exc) or type(exc).__name__
                report.failed[name] = error
                await self._store.set_module_state(
                    run_state.run_id, name, ModuleState.FAILED, step="rollback", error=error
                )
                log.error("module_rollback_failed", module=name, error=error)
                if self._policy == "strict":
                    report.not_attempted = [n for n, _ in queue[index + 1:]]
                    break
                continue

            run_state.mark_reverted(name)
            run_state.transition(name, ModuleState.ROLLED_BACK, step="rollback")
            await self._store.set_module_state(
                run_state.run_id, name, ModuleState.ROLLED_BACK, step="rollback"
            )
            report.rolled_back.append(name)
            log.info("module_rolled_back", module=name)

        bind_run_context(run_id=run_state.run_id)
        report.checkpoint_id = await self._store.create_checkpoint(
            f"rollback: reverted {', '.join(report.rolled_back) or 'nothing'}",
            run_state,
            kind="rollback",
        )

        final = RunStatus.ROLLED_BACK if report.succeeded else RunStatus.ROLLBACK_FAILED
        run_state.status = final
        await self._store.update_run_status(run_state.run_id, final)

        if not report.succeeded:
            log.critical(
                "rollback_failed",
                run_id=run_state.run_id,
                rolled_back=report.rolled_back,
                failed=report.failed,
                not_attempted=report.not_attempted,
            )
            raise RollbackError(report)

        log.info("rollback_completed", run_id=run_state.run_id, rolled_back=report.rolled_back)
        return report

    async def _undo_module(self, name: str, undo: UndoDescriptor) -> None:
        module = self._registry.get(name)
        descriptor = self._registry.descriptor(name)
        async with self._locks.hold(descriptor.shared_resources):
            try:
                await asyncio.wait_for(module.rollback(undo), timeout=self._timeout)
            except asyncio.TimeoutError:
                raise ExecutionTimeoutError(name, "rollback", self._timeout or 0.0) from None
