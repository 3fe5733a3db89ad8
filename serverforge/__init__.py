"""ServerForge — Dependency-aware, checkpointed server provisioning.

ServerForge runs declarative provisioning modules in a safe,
dependency-respecting and recoverable order, and rolls the host back to a
known-good state when a run fails partway through.

Architecture layers (bottom to top):
    1. Modules       — BaseModule contract, descriptors, undo data, registry, built-ins
    2. Orchestration — Dependency resolver, checkpoint store, execution engine,
                       rollback coordinator, advisory locks
    3. CLI           — typer command surface with rich output
"""

__version__ = "0.1.0"
__author__ = "ServerForge Contributors"
__license__ = "MIT"

from serverforge.exceptions import ExitCode, ServerForgeError

__all__ = [
    "__version__",
    "ExitCode",
    "ServerForgeError",
]
