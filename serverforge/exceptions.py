"""ServerForge — Exception hierarchy.

All exceptions raised by the engine inherit from ServerForgeError so that
callers can catch the full family with a single except clause when needed.
Every class carries the process exit code the CLI reports for it.

Hierarchy:
    ServerForgeError
    ├── ConfigError                      (exit 2)
    ├── DependencyGraphError             (exit 5)
    │   ├── CircularDependencyError
    │   ├── ConflictError
    │   └── UnknownDependencyError
    ├── PermissionDeniedError            (exit 3)
    ├── MissingDependencyError           (exit 4)
    ├── ExecutionError                   (exit 1)
    │   └── ExecutionTimeoutError
    ├── VerificationError                (exit 1)
    ├── RollbackError                    (exit 6)
    ├── RegistryError
    │   ├── DuplicateModuleError
    │   ├── DescriptorValidationError
    │   ├── AmbiguousCapabilityError
    │   └── NotFoundError
    │       ├── ModuleNotFoundError      (exit 2)
    │       └── CapabilityNotFoundError  (exit 5)
    └── StateError
        ├── StateStoreError
        ├── CheckpointNotFoundError
        └── EngineLockedError
"""

from __future__ import annotations

from enum import IntEnum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from serverforge.orchestration.rollback import RollbackReport


class ExitCode(IntEnum):
    SUCCESS = 0
    FAILURE = 1
    CONFIG_ERROR = 2
    PERMISSION_DENIED = 3
    MISSING_DEPENDENCY = 4
    DEPENDENCY_GRAPH = 5
    ROLLBACK_FAILED = 6


class ServerForgeError(Exception):
    """Base exception for all ServerForge errors."""

    exit_code: ExitCode = ExitCode.FAILURE

    def __init__(self, message: str, context: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.context: dict[str, Any] = context or {}

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, context={self.context})"


# ---------------------------------------------------------------------------
# Pre-flight failures: raised before any module mutates the system
# ---------------------------------------------------------------------------


class ConfigError(ServerForgeError):
    """Configuration is missing or invalid."""

    exit_code = ExitCode.CONFIG_ERROR

    def __init__(
        self, message: str, module: str | None = None, field: str | None = None
    ) -> None:
        prefix = f"[{module}] " if module else ""
        suffix = f" (field '{field}')" if field else ""
        super().__init__(
            f"{prefix}{message}{suffix}",
            context={"module": module, "field": field, "step": "validate_config"},
        )
        self.module = module
        self.field = field


class DependencyGraphError(ServerForgeError):
    """Base for dependency graph errors detected while planning."""

    exit_code = ExitCode.DEPENDENCY_GRAPH


class CircularDependencyError(DependencyGraphError):
    """The dependency graph contains a cycle."""

    def __init__(self, cycle: list[str]) -> None:
        super().__init__(
            f"Dependency cycle detected: {' -> '.join(cycle)}",
            context={"cycle": cycle},
        )
        self.cycle = cycle


class ConflictError(DependencyGraphError):
    """Two conflicting modules were selected for the same plan."""

    def __init__(self, module: str, conflicts_with: str) -> None:
        super().__init__(
            f"Module '{module}' conflicts with '{conflicts_with}'; "
            "they cannot be planned together",
            context={"module": module, "conflicts_with": conflicts_with},
        )
        self.module = module
        self.conflicts_with = conflicts_with


class UnknownDependencyError(DependencyGraphError):
    """A declared dependency is neither a registered module nor a capability."""

    def __init__(self, module: str, dependency: str) -> None:
        super().__init__(
            f"Module '{module}' depends on '{dependency}', which is neither a "
            "registered module nor a provided capability",
            context={"module": module, "dependency": dependency},
        )
        self.module = module
        self.dependency = dependency


class PermissionDeniedError(ServerForgeError):
    """The engine is not running with the privilege a module requires."""

    exit_code = ExitCode.PERMISSION_DENIED

    def __init__(self, module: str, reason: str) -> None:
        super().__init__(
            f"[{module}] Permission denied: {reason}",
            context={"module": module, "reason": reason, "step": "preflight"},
        )
        self.module = module


class MissingDependencyError(ServerForgeError):
    """A required external binary is absent from PATH."""

    exit_code = ExitCode.MISSING_DEPENDENCY

    def __init__(self, module: str, binaries: list[str]) -> None:
        super().__init__(
            f"[{module}] Required command(s) not found: {', '.join(binaries)}",
            context={"module": module, "binaries": binaries, "step": "preflight"},
        )
        self.module = module
        self.binaries = binaries


# ---------------------------------------------------------------------------
# Execution failures: raised while a run is mutating the system
# ---------------------------------------------------------------------------


class ExecutionError(ServerForgeError):
    """A module's pre_install / install / configure step failed."""

    def __init__(self, module: str, step: str, reason: str) -> None:
        super().__init__(
            f"[{module}] {step} failed: {reason}",
            context={"module": module, "step": step, "reason": reason},
        )
        self.module = module
        self.step = step
        self.reason = reason


class ExecutionTimeoutError(ExecutionError):
    """A module operation exceeded the configured operation timeout."""

    def __init__(self, module: str, step: str, timeout_seconds: float) -> None:
        super().__init__(module, step, f"timed out after {timeout_seconds}s")
        self.context["timeout_seconds"] = timeout_seconds
        self.timeout_seconds = timeout_seconds


class VerificationError(ServerForgeError):
    """A module's verify step failed after install appeared to succeed."""

    def __init__(self, module: str, reason: str, step: str = "verify") -> None:
        super().__init__(
            f"[{module}] {step} failed: {reason}",
            context={"module": module, "step": step, "reason": reason},
        )
        self.module = module
        self.step = step
        self.reason = reason


class RollbackError(ServerForgeError):
    """One or more undo operations failed; the host may be in an unknown state."""

    exit_code = ExitCode.ROLLBACK_FAILED

    def __init__(self, report: "RollbackReport") -> None:
        failed = ", ".join(f"{m} ({e})" for m, e in report.failed.items())
        super().__init__(
            f"Rollback failed for: {failed}",
            context=report.to_dict(),
        )
        self.report = report


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class RegistryError(ServerForgeError):
    """Base for module registry errors."""


class DuplicateModuleError(RegistryError):
    """A module name is already registered with a different version."""

    def __init__(self, name: str, registered_version: str, new_version: str) -> None:
        super().__init__(
            f"Module '{name}' is already registered as v{registered_version}; "
            f"refusing v{new_version}",
            context={
                "module": name,
                "registered_version": registered_version,
                "new_version": new_version,
            },
        )
        self.name = name


class DescriptorValidationError(RegistryError):
    """Module metadata is missing or malformed."""

    def __init__(self, module: str, reason: str) -> None:
        super().__init__(
            f"Invalid module descriptor '{module}': {reason}",
            context={"module": module, "reason": reason},
        )
        self.module = module
        self.reason = reason


class AmbiguousCapabilityError(RegistryError):
    """Several modules provide a capability and no default is configured."""

    exit_code = ExitCode.DEPENDENCY_GRAPH

    def __init__(self, capability: str, providers: list[str]) -> None:
        super().__init__(
            f"Capability '{capability}' is provided by {', '.join(providers)}; "
            "configure modules.capability_defaults to choose one",
            context={"capability": capability, "providers": providers},
        )
        self.capability = capability
        self.providers = providers


class NotFoundError(RegistryError):
    """Base for registry lookups that found nothing."""


class ModuleNotFoundError(NotFoundError):
    """No module with the given name is registered."""

    exit_code = ExitCode.CONFIG_ERROR

    def __init__(self, name: str) -> None:
        super().__init__(
            f"Module '{name}' is not registered",
            context={"module": name},
        )
        self.name = name


class CapabilityNotFoundError(NotFoundError):
    """No registered module provides the capability."""

    exit_code = ExitCode.DEPENDENCY_GRAPH

    def __init__(self, capability: str) -> None:
        super().__init__(
            f"No registered module provides capability '{capability}'",
            context={"capability": capability},
        )
        self.capability = capability


# ---------------------------------------------------------------------------
# State
# ---------------------------------------------------------------------------


class StateError(ServerForgeError):
    """Base for persisted-state errors."""


class StateStoreError(StateError):
    """The SQLite state store could not be read or written."""


class CheckpointNotFoundError(StateError):
    """No checkpoint with the given id exists."""

    def __init__(self, checkpoint_id: str) -> None:
        super().__init__(
            f"Checkpoint '{checkpoint_id}' not found",
            context={"checkpoint_id": checkpoint_id},
        )
        self.checkpoint_id = checkpoint_id


class EngineLockedError(StateError):
    """Another engine process holds the state directory lock."""

    def __init__(self, lock_path: str, holder: str | None = None) -> None:
        detail = f" (held by pid {holder})" if holder else ""
        super().__init__(
            f"Another serverforge run is in progress{detail}: {lock_path}",
            context={"lock_path": lock_path, "holder": holder},
        )
