"""Orchestration layer — Run state.

Tracks the live status of a run and of every module in its plan.  The
execution engine is the only writer of a :class:`RunState`; the checkpoint
store serialises it.

State transitions:
    Run:    planning -> executing -> completed | interrupted
                                  -> failed -> rolling_back -> rolled_back | rollback_failed
    Module: registered -> validated -> installing -> installed | failed
                                                  -> rolled_back (on rollback)
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

from serverforge.exceptions import ExitCode
from serverforge.modules.descriptor import ModuleState, is_valid_transition
from serverforge.modules.undo import UndoDescriptor

if TYPE_CHECKING:
    from serverforge.orchestration.checkpoint import Checkpoint
    from serverforge.orchestration.rollback import RollbackReport


class RunStatus(str, Enum):
    PLANNING = "planning"
    PLANNED = "planned"  # dry-run result; nothing executed
    EXECUTING = "executing"
    COMPLETED = "completed"
    INTERRUPTED = "interrupted"
    FAILED = "failed"
    ROLLING_BACK = "rolling_back"
    ROLLED_BACK = "rolled_back"
    ROLLBACK_FAILED = "rollback_failed"


def new_run_id() -> str:
    return f"run_{time.strftime('%Y%m%d_%H%M%S')}_{uuid.uuid4().hex[:8]}"


@dataclass
class ModuleRunState:
    name: str
    state: ModuleState = ModuleState.REGISTERED
    step: str | None = None
    error: str | None = None
    started_at: float | None = None
    finished_at: float | None = None

    @property
    def duration(self) -> float | None:
        if self.started_at is None or self.finished_at is None:
            return None
        return self.finished_at - self.started_at


@dataclass
class RunState:
    """In-memory state of one run.

    ``completed`` is the checkpoint lineage: every module that is installed
    on the host according to the store, in completion order, including those
    inherited from earlier runs.
    """

    run_id: str
    plan: list[str] = field(default_factory=list)
    status: RunStatus = RunStatus.PLANNING
    completed: list[str] = field(default_factory=list)
    undo: dict[str, UndoDescriptor] = field(default_factory=dict)
    modules: dict[str, ModuleRunState] = field(default_factory=dict)
    created_at: float = field(default_factory=time.time)

    @classmethod
    def start(cls, plan: list[str], latest: "Checkpoint | None" = None) -> "RunState":
        state = cls(run_id=new_run_id(), plan=list(plan))
        for name in plan:
            state.modules[name] = ModuleRunState(name=name)
        if latest is not None:
            state.completed = list(latest.completed_modules)
            state.undo = dict(latest.undo)
        return state

    def module(self, name: str) -> ModuleRunState:
        return self.modules[name]

    def transition(self, name: str, new: ModuleState, step: str | None = None) -> None:
        """Move *name* to *new*.

        Raises:
            ValueError: the transition would move the module backwards.
        """
        ms = self.modules.setdefault(name, ModuleRunState(name=name))
        if ms.state != new and not is_valid_transition(ms.state, new):
            raise ValueError(f"Invalid state transition for {name}: {ms.state.value} -> {new.value}")
        ms.state = new
        if step is not None:
            ms.step = step
        if new == ModuleState.INSTALLING and ms.started_at is None:
            ms.started_at = time.time()
        if new in (ModuleState.INSTALLED, ModuleState.FAILED, ModuleState.ROLLED_BACK):
            ms.finished_at = time.time()

    def mark_completed(self, name: str, undo: UndoDescriptor) -> None:
        if name not in self.completed:
            self.completed.append(name)
        self.undo[name] = undo

    def mark_reverted(self, name: str) -> None:
        if name in self.completed:
            self.completed.remove(name)
        self.undo.pop(name, None)

    def is_installed(self, name: str) -> bool:
        return name in self.completed

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "status": self.status.value,
            "plan": list(self.plan),
            "completed": list(self.completed),
            "modules": {
                name: {
                    "state": ms.state.value,
                    "step": ms.step,
                    "error": ms.error,
                    "duration": ms.duration,
                }
                for name, ms in self.modules.items()
            },
        }


@dataclass
class RunReport:
    """Outcome of ``ExecutionEngine.run``, rendered by the CLI."""

    run_id: str | None
    status: RunStatus
    plan: list[str]
    installed: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    failed_module: str | None = None
    failed_step: str | None = None
    error: str | None = None
    rollback: "RollbackReport | None" = None
    dry_run: bool = False

    @property
    def exit_code(self) -> ExitCode:
        if self.rollback is not None and not self.rollback.succeeded:
            return ExitCode.ROLLBACK_FAILED
        if self.status in (RunStatus.COMPLETED, RunStatus.PLANNED):
            return ExitCode.SUCCESS
        return ExitCode.FAILURE

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "status": self.status.value,
            "plan": list(self.plan),
            "installed": list(self.installed),
            "skipped": list(self.skipped),
            "failed_module": self.failed_module,
            "failed_step": self.failed_step,
            "error": self.error,
            "rollback": self.rollback.to_dict() if self.rollback else None,
            "dry_run": self.dry_run,
            "exit_code": int(self.exit_code),
        }
