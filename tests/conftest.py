"""Shared pytest fixtures for the serverforge test suite."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import AsyncGenerator, Callable, ClassVar, Generator, Iterable

import pytest
import pytest_asyncio
from pydantic import BaseModel

from serverforge.config import Settings, override_settings
from serverforge.modules.base import BaseModule
from serverforge.modules.descriptor import ModuleState
from serverforge.modules.registry import ModuleRegistry
from serverforge.modules.undo import Noop, UndoDescriptor
from serverforge.orchestration.checkpoint import CheckpointStore
from serverforge.orchestration.executor import ExecutionEngine
from serverforge.orchestration.preflight import PreflightChecker

# update, users, ssh -> users, firewall -> ssh
SCENARIO: list[tuple[str, tuple[str, ...]]] = [
    ("system/update", ()),
    ("security/users", ()),
    ("security/ssh", ("security/users",)),
    ("security/firewall", ("security/ssh",)),
]


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


@pytest.fixture
def test_settings(tmp_path: Path) -> Generator[Settings, None, None]:
    settings = Settings(
        engine={"state_dir": str(tmp_path / "state"), "operation_timeout_seconds": 5.0},
        logging={"level": "debug", "format": "console"},
    )
    override_settings(settings)
    yield settings
    override_settings(None)


# ---------------------------------------------------------------------------
# Fake modules
# ---------------------------------------------------------------------------


class FakeModule(BaseModule):
    """Records every lifecycle call and fails on demand."""

    FAIL_ON: ClassVar[str | None] = None
    ROLLBACK_FAILS: ClassVar[bool] = False
    DELAY: ClassVar[float] = 0.0
    HOOK: ClassVar[Callable[[], None] | None] = None
    CALLS: ClassVar[list[tuple[str, str]]] = []
    TRACKER: ClassVar[dict[str, int]] = {}

    async def _step(self, step: str) -> None:
        self.CALLS.append((self.NAME, step))
        if self.FAIL_ON == step:
            raise RuntimeError(f"{step} exploded")

    async def pre_install(self) -> None:
        await self._step("pre_install")

    async def plan_undo(self) -> UndoDescriptor:
        await self._step("plan_undo")
        return UndoDescriptor(module=self.NAME).add(Noop(reason="planned"))

    async def install(self) -> UndoDescriptor:
        self.CALLS.append((self.NAME, "install"))
        tracker = self.TRACKER
        tracker["active"] = tracker.get("active", 0) + 1
        tracker["max"] = max(tracker.get("max", 0), tracker["active"])
        try:
            if self.DELAY:
                await asyncio.sleep(self.DELAY)
        finally:
            tracker["active"] -= 1
        if self.HOOK is not None:
            self.HOOK()
        if self.FAIL_ON == "install":
            raise RuntimeError("install exploded")
        return UndoDescriptor(module=self.NAME).add(Noop(reason="installed"))

    async def configure(self) -> None:
        await self._step("configure")

    async def verify(self) -> None:
        await self._step("verify")

    async def rollback(self, undo: UndoDescriptor) -> None:
        self.CALLS.append((self.NAME, "rollback"))
        if self.ROLLBACK_FAILS:
            raise RuntimeError("undo exploded")

    async def status(self) -> ModuleState:
        self.CALLS.append((self.NAME, "status"))
        return ModuleState.INSTALLED


@pytest.fixture
def calls() -> list[tuple[str, str]]:
    return []


@pytest.fixture
def tracker() -> dict[str, int]:
    return {}


@pytest.fixture
def make_module(
    calls: list[tuple[str, str]], tracker: dict[str, int]
) -> Callable[..., type[BaseModule]]:
    def _make(
        name: str,
        deps: Iterable[str] = (),
        *,
        provides: Iterable[str] = (),
        conflicts: Iterable[str] = (),
        resources: Iterable[str] = (),
        binaries: Iterable[str] = (),
        requires_root: bool = False,
        fail_on: str | None = None,
        rollback_fails: bool = False,
        delay: float = 0.0,
        hook: Callable[[], None] | None = None,
        config_model: type[BaseModel] | None = None,
        version: str = "1.0.0",
    ) -> type[BaseModule]:
        attrs = {
            "NAME": name,
            "VERSION": version,
            "DEPENDENCIES": frozenset(deps),
            "CONFLICTS": frozenset(conflicts),
            "PROVIDES": frozenset(provides),
            "SHARED_RESOURCES": frozenset(resources),
            "REQUIRED_BINARIES": frozenset(binaries),
            "REQUIRES_ROOT": requires_root,
            "CONFIG_MODEL": config_model,
            "FAIL_ON": fail_on,
            "ROLLBACK_FAILS": rollback_fails,
            "DELAY": delay,
            "HOOK": staticmethod(hook) if hook else None,
            "CALLS": calls,
            "TRACKER": tracker,
        }
        return type(f"Fake_{name.replace('/', '_')}", (FakeModule,), attrs)

    return _make


@pytest.fixture
def scenario(make_module: Callable[..., type[BaseModule]]) -> Callable[..., ModuleRegistry]:
    """Build the update/users/ssh/firewall registry, optionally with faults."""

    def _build(
        failing: str | None = None,
        step: str = "install",
        rollback_fails: str | None = None,
    ) -> ModuleRegistry:
        registry = ModuleRegistry()
        for name, deps in SCENARIO:
            registry.register(
                make_module(
                    name,
                    deps,
                    fail_on=step if name == failing else None,
                    rollback_fails=(name == rollback_fails),
                )
            )
        return registry

    return _build


# ---------------------------------------------------------------------------
# Orchestration
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def store(test_settings: Settings) -> AsyncGenerator[CheckpointStore, None]:
    s = CheckpointStore(test_settings.engine.state_dir)
    await s.init()
    yield s
    await s.close()


@pytest.fixture
def make_engine(
    store: CheckpointStore, test_settings: Settings
) -> Callable[..., ExecutionEngine]:
    def _make(
        registry: ModuleRegistry,
        settings: Settings | None = None,
        interactive: bool = False,
        euid: int = 0,
        missing: Iterable[str] = (),
    ) -> ExecutionEngine:
        absent = set(missing)
        preflight = PreflightChecker(
            euid=lambda: euid,
            which=lambda b: None if b in absent else f"/usr/bin/{b}",
        )
        return ExecutionEngine(
            registry,
            store,
            settings or test_settings,
            interactive=interactive,
            preflight=preflight,
        )

    return _make
