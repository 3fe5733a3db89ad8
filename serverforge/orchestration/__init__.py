"""Orchestration layer — Resolver, checkpoint store, execution engine, rollback coordinator, locks."""

from serverforge.orchestration.checkpoint import Checkpoint, CheckpointStore
from serverforge.orchestration.executor import ExecutionEngine
from serverforge.orchestration.locks import AdvisoryLocks, ProcessLock
from serverforge.orchestration.resolver import DependencyResolver, ExecutionPlan
from serverforge.orchestration.rollback import RollbackCoordinator, RollbackReport
from serverforge.orchestration.state import RunReport, RunState, RunStatus

__all__ = [
    "AdvisoryLocks",
    "Checkpoint",
    "CheckpointStore",
    "DependencyResolver",
    "ExecutionEngine",
    "ExecutionPlan",
    "ProcessLock",
    "RollbackCoordinator",
    "RollbackReport",
    "RunReport",
    "RunState",
    "RunStatus",
]
