"""Unit tests — ExecutionEngine with fake modules and a real state store."""

from __future__ import annotations

from typing import Any, Callable

import pytest
from pydantic import BaseModel, Field

from serverforge.config import Settings
from serverforge.exceptions import (
    CheckpointNotFoundError,
    CircularDependencyError,
    ConfigError,
    ExitCode,
    MissingDependencyError,
    PermissionDeniedError,
    RollbackError,
)
from serverforge.modules.registry import ModuleRegistry
from serverforge.orchestration.checkpoint import CheckpointStore
from serverforge.orchestration.state import RunStatus

UPDATE = "system/update"
USERS = "security/users"
SSH = "security/ssh"
FIREWALL = "security/firewall"
ALL = [UPDATE, USERS, SSH, FIREWALL]


def steps(calls: list[tuple[str, str]], step: str) -> list[str]:
    return [name for name, s in calls if s == step]


class PortConfig(BaseModel):
    port: int = Field(default=8080, ge=1024)


# ---------------------------------------------------------------------------
# Fresh install and resume
# ---------------------------------------------------------------------------


@pytest.mark.unit
class TestFreshInstall:
    async def test_installs_plan_in_dependency_order(
        self, scenario, make_engine, store: CheckpointStore, calls
    ) -> None:
        report = await make_engine(scenario()).run()

        assert report.status == RunStatus.COMPLETED
        assert report.exit_code == ExitCode.SUCCESS
        assert report.installed == ALL
        assert steps(calls, "install") == ALL

    async def test_lifecycle_steps_run_in_order(self, scenario, make_engine, calls) -> None:
        await make_engine(scenario()).run()
        assert [s for n, s in calls if n == SSH] == [
            "pre_install",
            "plan_undo",
            "install",
            "configure",
            "verify",
        ]

    async def test_one_checkpoint_per_module(
        self, scenario, make_engine, store: CheckpointStore
    ) -> None:
        await make_engine(scenario()).run()

        checkpoints = await store.list_checkpoints()
        assert [c.completed_modules for c in checkpoints] == [
            tuple(ALL[: i + 1]) for i in range(len(ALL))
        ]
        assert set(checkpoints[-1].undo) == set(ALL)
        assert await store.dangling_intents() == []

    async def test_run_record_is_persisted(
        self, scenario, make_engine, store: CheckpointStore
    ) -> None:
        report = await make_engine(scenario()).run()

        run = await store.get_run(report.run_id)
        assert run is not None
        assert run.status == RunStatus.COMPLETED
        assert run.plan == ALL
        assert {m: s["state"] for m, s in run.module_states.items()} == {
            name: "installed" for name in ALL
        }

    async def test_subset_request_pulls_in_dependencies(
        self, scenario, make_engine, calls
    ) -> None:
        report = await make_engine(scenario()).run([SSH])
        assert report.plan == [USERS, SSH]
        assert steps(calls, "install") == [USERS, SSH]

    async def test_configured_module_set_is_used(
        self, scenario, make_engine, test_settings: Settings, calls
    ) -> None:
        settings = Settings(
            engine=test_settings.engine,
            modules={"enabled": [USERS, FIREWALL], "disabled": [FIREWALL]},
        )
        report = await make_engine(scenario(), settings=settings).run()
        assert report.plan == [USERS]

    async def test_dependency_graph_error_propagates(
        self, make_module, make_engine
    ) -> None:
        registry = ModuleRegistry()
        registry.register(make_module("custom/a", ["custom/b"]))
        registry.register(make_module("custom/b", ["custom/a"]))

        with pytest.raises(CircularDependencyError) as exc_info:
            await make_engine(registry).run()
        assert exc_info.value.exit_code == ExitCode.DEPENDENCY_GRAPH


@pytest.mark.unit
class TestResume:
    async def test_rerun_skips_installed_modules(
        self, scenario, make_engine, calls
    ) -> None:
        registry = scenario()
        await make_engine(registry).run()
        calls.clear()

        report = await make_engine(registry).run()

        assert report.status == RunStatus.COMPLETED
        assert report.skipped == ALL
        assert report.installed == []
        assert steps(calls, "install") == []
        # Each skipped module is checked exactly once.
        assert steps(calls, "status") == ALL

    async def test_abort_then_resume_reverses_interrupted_install(
        self, scenario, make_engine, store: CheckpointStore, calls
    ) -> None:
        first = await make_engine(scenario(failing=FIREWALL)).run(policy="abort-only")

        assert first.status == RunStatus.FAILED
        assert first.exit_code == ExitCode.FAILURE
        assert first.rollback is None
        assert first.failed_module == FIREWALL
        assert first.failed_step == "install"
        assert [m for _, m, _ in await store.dangling_intents()] == [FIREWALL]

        calls.clear()
        second = await make_engine(scenario()).run()

        assert second.status == RunStatus.COMPLETED
        assert steps(calls, "rollback") == [FIREWALL]
        assert steps(calls, "status") == [UPDATE, USERS, SSH]
        assert steps(calls, "install") == [FIREWALL]
        assert second.skipped == [UPDATE, USERS, SSH]
        assert second.installed == [FIREWALL]
        assert await store.dangling_intents() == []

    async def test_failed_intent_recovery_stops_the_run(
        self, scenario, make_engine, store: CheckpointStore, calls
    ) -> None:
        await make_engine(scenario(failing=FIREWALL)).run(policy="abort-only")
        calls.clear()

        report = await make_engine(scenario(rollback_fails=FIREWALL)).run()

        assert report.status == RunStatus.ROLLBACK_FAILED
        assert report.exit_code == ExitCode.ROLLBACK_FAILED
        assert FIREWALL in report.rollback.failed
        assert steps(calls, "install") == []
        assert [m for _, m, _ in await store.dangling_intents()] == [FIREWALL]

    async def test_installed_modules_skip_preflight(
        self, make_module, make_engine
    ) -> None:
        registry = ModuleRegistry()
        registry.register(make_module("custom/root", requires_root=True))
        await make_engine(registry, euid=0).run()

        report = await make_engine(registry, euid=1000).run()
        assert report.skipped == ["custom/root"]


# ---------------------------------------------------------------------------
# Failure policies
# ---------------------------------------------------------------------------


@pytest.mark.unit
class TestAutoRollback:
    async def test_install_failure_rolls_back_in_reverse_completion_order(
        self, scenario, make_engine, store: CheckpointStore, calls
    ) -> None:
        report = await make_engine(scenario(failing=FIREWALL)).run()

        assert report.status == RunStatus.ROLLED_BACK
        assert report.exit_code == ExitCode.FAILURE
        assert report.failed_module == FIREWALL
        assert report.rollback.rolled_back == [SSH, USERS, UPDATE]
        assert steps(calls, "rollback") == [SSH, USERS, UPDATE]

        latest = await store.load_latest()
        assert latest.kind == "rollback"
        assert latest.completed_modules == ()

    async def test_rollback_failure_exits_with_rollback_code(
        self, scenario, make_engine, store: CheckpointStore
    ) -> None:
        report = await make_engine(
            scenario(failing=FIREWALL, rollback_fails=USERS)
        ).run()

        assert report.status == RunStatus.ROLLBACK_FAILED
        assert report.exit_code == ExitCode.ROLLBACK_FAILED
        assert report.rollback.rolled_back == [SSH, UPDATE]
        assert list(report.rollback.failed) == [USERS]

        latest = await store.load_latest()
        assert latest.completed_modules == (USERS,)

    async def test_verify_failure_reverses_the_failing_module_first(
        self, scenario, make_engine, store: CheckpointStore, calls
    ) -> None:
        report = await make_engine(scenario(failing=FIREWALL, step="verify")).run()

        assert report.failed_step == "verify"
        assert "verify failed" in report.error
        assert steps(calls, "rollback") == [FIREWALL, SSH, USERS, UPDATE]
        assert await store.dangling_intents() == []

    async def test_configure_failure(self, scenario, make_engine, calls) -> None:
        report = await make_engine(scenario(failing=SSH, step="configure")).run()

        assert report.failed_module == SSH
        assert report.failed_step == "configure"
        assert "configure failed" in report.error
        assert steps(calls, "rollback") == [SSH, USERS, UPDATE]
        assert FIREWALL not in steps(calls, "install")

    async def test_pre_install_failure_leaves_no_intent(
        self, scenario, make_engine, store: CheckpointStore
    ) -> None:
        report = await make_engine(scenario(failing=SSH, step="pre_install")).run()

        assert report.failed_step == "pre_install"
        assert report.rollback.rolled_back == [USERS, UPDATE]
        assert await store.dangling_intents() == []

    async def test_only_this_runs_modules_are_reversed(
        self, scenario, make_engine, store: CheckpointStore, calls
    ) -> None:
        await make_engine(scenario()).run([UPDATE, USERS])
        calls.clear()

        report = await make_engine(scenario(failing=FIREWALL)).run()

        assert report.rollback.rolled_back == [SSH]
        latest = await store.load_latest()
        assert latest.completed_modules == (UPDATE, USERS)


@pytest.mark.unit
class TestAbortOnly:
    async def test_interactive_runs_default_to_abort_only(
        self, scenario, make_engine, store: CheckpointStore, calls
    ) -> None:
        report = await make_engine(scenario(failing=SSH), interactive=True).run()

        assert report.status == RunStatus.FAILED
        assert report.rollback is None
        assert steps(calls, "rollback") == []
        latest = await store.load_latest()
        assert latest.completed_modules == (UPDATE, USERS)

    async def test_policy_resolution(self, scenario, make_engine) -> None:
        assert make_engine(scenario(), interactive=True).resolve_policy() == "abort-only"
        assert make_engine(scenario(), interactive=False).resolve_policy() == "auto-rollback"
        assert make_engine(scenario(), interactive=False).resolve_policy("abort-only") == "abort-only"


# ---------------------------------------------------------------------------
# Pre-flight
# ---------------------------------------------------------------------------


@pytest.mark.unit
class TestPreflight:
    async def test_dry_run_changes_nothing(
        self, scenario, make_engine, store: CheckpointStore, calls
    ) -> None:
        report = await make_engine(scenario()).run(dry_run=True)

        assert report.status == RunStatus.PLANNED
        assert report.dry_run is True
        assert report.run_id is None
        assert report.plan == ALL
        assert report.exit_code == ExitCode.SUCCESS
        assert calls == []
        assert await store.list_checkpoints() == []
        assert await store.latest_run() is None

    async def test_dry_run_lists_already_installed_modules(
        self, scenario, make_engine
    ) -> None:
        registry = scenario()
        await make_engine(registry).run([USERS])
        report = await make_engine(registry).run(dry_run=True)
        assert report.skipped == [USERS]

    async def test_invalid_config_names_module_and_field(
        self, make_module, make_engine, test_settings: Settings, store: CheckpointStore
    ) -> None:
        registry = ModuleRegistry()
        registry.register(make_module("custom/web", config_model=PortConfig))
        settings = Settings(
            engine=test_settings.engine,
            modules={"settings": {"custom/web": {"port": 80}}},
        )

        with pytest.raises(ConfigError) as exc_info:
            await make_engine(registry, settings=settings).run()

        assert exc_info.value.module == "custom/web"
        assert exc_info.value.field == "port"
        assert exc_info.value.exit_code == ExitCode.CONFIG_ERROR
        assert await store.latest_run() is None

    async def test_root_required(self, make_module, make_engine) -> None:
        registry = ModuleRegistry()
        registry.register(make_module("custom/root", requires_root=True))

        with pytest.raises(PermissionDeniedError) as exc_info:
            await make_engine(registry, euid=1000).run()
        assert exc_info.value.exit_code == ExitCode.PERMISSION_DENIED

    async def test_dry_run_does_not_need_root(self, make_module, make_engine) -> None:
        registry = ModuleRegistry()
        registry.register(make_module("custom/root", requires_root=True))

        report = await make_engine(registry, euid=1000).run(dry_run=True)
        assert report.status == RunStatus.PLANNED

    async def test_missing_binary(self, make_module, make_engine, calls) -> None:
        registry = ModuleRegistry()
        registry.register(make_module("custom/fw", binaries=["ufw", "iptables"]))

        with pytest.raises(MissingDependencyError) as exc_info:
            await make_engine(registry, missing=["ufw"]).run()

        assert exc_info.value.binaries == ["ufw"]
        assert exc_info.value.exit_code == ExitCode.MISSING_DEPENDENCY
        assert calls == []


# ---------------------------------------------------------------------------
# Timeouts and interruption
# ---------------------------------------------------------------------------


@pytest.mark.unit
class TestTimeoutAndInterrupt:
    async def test_operation_timeout_fails_the_module(
        self, make_module, make_engine, test_settings: Settings, calls
    ) -> None:
        registry = ModuleRegistry()
        registry.register(make_module("custom/fast"))
        registry.register(make_module("custom/slow", ["custom/fast"], delay=2.0))
        settings = Settings(
            engine={
                "state_dir": str(test_settings.engine.state_dir),
                "operation_timeout_seconds": 0.05,
            }
        )

        report = await make_engine(registry, settings=settings).run()

        assert report.failed_module == "custom/slow"
        assert report.failed_step == "install"
        assert "timed out" in report.error
        assert steps(calls, "rollback") == ["custom/fast"]

    async def test_stop_request_halts_at_module_boundary(
        self, make_module, make_engine, store: CheckpointStore, calls
    ) -> None:
        holder: dict[str, Any] = {}
        registry = ModuleRegistry()
        registry.register(make_module("custom/a"))
        registry.register(
            make_module("custom/b", ["custom/a"], hook=lambda: holder["engine"].request_stop())
        )
        registry.register(make_module("custom/c", ["custom/b"]))
        engine = make_engine(registry)
        holder["engine"] = engine

        report = await engine.run()

        assert engine.stop_requested
        assert report.status == RunStatus.INTERRUPTED
        assert report.exit_code == ExitCode.FAILURE
        assert report.installed == ["custom/a", "custom/b"]
        assert steps(calls, "rollback") == []

        resumed = await make_engine(registry).run()
        assert resumed.installed == ["custom/c"]
        assert resumed.skipped == ["custom/a", "custom/b"]


# ---------------------------------------------------------------------------
# Concurrency
# ---------------------------------------------------------------------------


@pytest.mark.unit
class TestConcurrentWaves:
    def _independent(
        self, make_module: Callable[..., Any], resources: tuple[str, ...] = ()
    ) -> ModuleRegistry:
        registry = ModuleRegistry()
        for name in ("custom/a", "custom/b", "custom/c"):
            registry.register(make_module(name, delay=0.05, resources=resources))
        return registry

    async def test_independent_modules_overlap(
        self, make_module, make_engine, store: CheckpointStore, tracker
    ) -> None:
        report = await make_engine(self._independent(make_module)).run(concurrent=True)

        assert report.status == RunStatus.COMPLETED
        assert tracker["max"] > 1
        checkpoints = await store.list_checkpoints()
        assert len(checkpoints) == 3
        assert set(checkpoints[-1].completed_modules) == {"custom/a", "custom/b", "custom/c"}

    async def test_each_checkpoint_lists_only_earlier_modules(
        self, make_module, make_engine, store: CheckpointStore
    ) -> None:
        await make_engine(self._independent(make_module)).run(concurrent=True)

        checkpoints = await store.list_checkpoints()
        final = checkpoints[-1].completed_modules
        for index, checkpoint in enumerate(checkpoints):
            assert checkpoint.completed_modules == final[: index + 1]
            assert checkpoint.description == f"installed {final[index]}"

    async def test_shared_resource_serialises(
        self, make_module, make_engine, tracker
    ) -> None:
        registry = self._independent(make_module, resources=("package-manager",))

        report = await make_engine(registry).run(concurrent=True)

        assert report.status == RunStatus.COMPLETED
        assert tracker["max"] == 1

    async def test_waves_respect_dependencies(self, scenario, make_engine, calls) -> None:
        await make_engine(scenario()).run(concurrent=True)
        installs = steps(calls, "install")
        assert installs.index(USERS) < installs.index(SSH) < installs.index(FIREWALL)

    async def test_failure_in_wave_rolls_back_sibling(
        self, make_module, make_engine, calls
    ) -> None:
        registry = ModuleRegistry()
        registry.register(make_module("custom/a", delay=0.01))
        registry.register(make_module("custom/b", fail_on="install"))
        registry.register(make_module("custom/c", ["custom/a"]))

        report = await make_engine(registry).run(concurrent=True)

        assert report.failed_module == "custom/b"
        assert report.rollback.rolled_back == ["custom/a"]
        assert "custom/c" not in steps(calls, "install")


# ---------------------------------------------------------------------------
# Manual rollback
# ---------------------------------------------------------------------------


@pytest.mark.unit
class TestRollbackTo:
    async def test_rollback_to_initial_round_trips(
        self, scenario, make_engine, store: CheckpointStore, calls
    ) -> None:
        registry = scenario()
        await make_engine(registry).run()

        report = await make_engine(registry).rollback_to("initial")

        assert report.succeeded
        assert report.rolled_back == list(reversed(ALL))
        latest = await store.load_latest()
        assert latest.completed_modules == ()
        run = await store.latest_run()
        assert run.status == RunStatus.ROLLED_BACK

        calls.clear()
        again = await make_engine(registry).run()
        assert again.installed == ALL

    async def test_rollback_to_checkpoint_keeps_earlier_modules(
        self, scenario, make_engine, store: CheckpointStore
    ) -> None:
        registry = scenario()
        await make_engine(registry).run()
        after_users = (await store.list_checkpoints())[1]

        report = await make_engine(registry).rollback_to(after_users.checkpoint_id)

        assert report.rolled_back == [FIREWALL, SSH]
        latest = await store.load_latest()
        assert latest.completed_modules == (UPDATE, USERS)

    async def test_unknown_checkpoint(self, scenario, make_engine) -> None:
        with pytest.raises(CheckpointNotFoundError):
            await make_engine(scenario()).rollback_to("cp_missing")

    async def test_nothing_to_roll_back(
        self, scenario, make_engine, store: CheckpointStore
    ) -> None:
        report = await make_engine(scenario()).rollback_to()

        assert report.succeeded
        assert report.rolled_back == []
        assert report.checkpoint_id is None
        assert await store.latest_run() is None

    async def test_latest_reverses_only_the_interrupted_install(
        self, scenario, make_engine, store: CheckpointStore
    ) -> None:
        await make_engine(scenario(failing=FIREWALL)).run(policy="abort-only")

        report = await make_engine(scenario()).rollback_to("latest")

        assert report.rolled_back == [FIREWALL]
        assert await store.dangling_intents() == []
        latest = await store.load_latest()
        assert latest.completed_modules == (UPDATE, USERS, SSH)

    async def test_latest_after_full_install_changes_nothing(
        self, scenario, make_engine, store: CheckpointStore, calls
    ) -> None:
        registry = scenario()
        await make_engine(registry).run()
        checkpoints = len(await store.list_checkpoints())

        report = await make_engine(registry).rollback_to("latest")

        assert report.rolled_back == []
        assert steps(calls, "rollback") == []
        assert len(await store.list_checkpoints()) == checkpoints

    async def test_checkpoint_target_undoes_interrupted_install_first(
        self, scenario, make_engine, store: CheckpointStore, calls
    ) -> None:
        await make_engine(scenario(failing=FIREWALL)).run(policy="abort-only")
        after_update = (await store.list_checkpoints())[0]

        report = await make_engine(scenario()).rollback_to(after_update.checkpoint_id)

        assert report.rolled_back == [FIREWALL, SSH, USERS]
        assert steps(calls, "rollback") == [FIREWALL, SSH, USERS]
        assert await store.dangling_intents() == []
        latest = await store.load_latest()
        assert latest.completed_modules == (UPDATE,)

    async def test_strict_failure_raises(
        self, scenario, make_engine
    ) -> None:
        registry = scenario(rollback_fails=SSH)
        await make_engine(registry).run()

        with pytest.raises(RollbackError) as exc_info:
            await make_engine(registry).rollback_to("initial", policy="strict")

        report = exc_info.value.report
        assert report.rolled_back == [FIREWALL]
        assert list(report.failed) == [SSH]
        assert report.not_attempted == [USERS, UPDATE]
        assert exc_info.value.exit_code == ExitCode.ROLLBACK_FAILED


@pytest.mark.unit
class TestEngineStatus:
    async def test_status_snapshot(self, scenario, make_engine) -> None:
        engine = make_engine(scenario())
        engine.request_stop()
        assert engine.status() == {"stop_requested": True, "locks": {}}
