"""Built-in modules shipped with ServerForge."""

from __future__ import annotations

from typing import TYPE_CHECKING

from serverforge.modules.builtin.docker import DockerModule
from serverforge.modules.builtin.firewall import FirewallModule
from serverforge.modules.builtin.ssh import SSHModule
from serverforge.modules.builtin.update import UpdateModule
from serverforge.modules.builtin.users import UsersModule

if TYPE_CHECKING:
    from serverforge.modules.registry import ModuleRegistry

# Declaration order: the resolver uses it to break ties.
BUILTIN_MODULES = (
    UpdateModule,
    UsersModule,
    SSHModule,
    FirewallModule,
    DockerModule,
)


def register_builtin_modules(registry: "ModuleRegistry") -> None:
    """Register every built-in module with *registry*."""
    for module_class in BUILTIN_MODULES:
        registry.register(module_class)


__all__ = [
    "BUILTIN_MODULES",
    "DockerModule",
    "FirewallModule",
    "SSHModule",
    "UpdateModule",
    "UsersModule",
    "register_builtin_modules",
]
