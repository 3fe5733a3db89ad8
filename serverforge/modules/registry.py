"""Module layer — Module registry.

The registry is the single point of truth for the modules available to a
process.  It is constructed once and passed explicitly to the resolver and
the engine; there is no process-wide instance.

It handles:
  - Registration with descriptor validation
  - Duplicate detection (same name, different version)
  - Declaration order, which the resolver uses to break ties
  - Capability lookup ("requires a firewall" without naming a backend)
  - Lazy instantiation (modules are created on first access)
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Type

import pydantic

from serverforge.exceptions import (
    AmbiguousCapabilityError,
    CapabilityNotFoundError,
    DescriptorValidationError,
    DuplicateModuleError,
    ModuleNotFoundError,
)
from serverforge.logging import get_logger
from serverforge.modules.descriptor import ModuleDescriptor
from serverforge.modules.host import HostCommands

if TYPE_CHECKING:
    from serverforge.modules.base import BaseModule

log = get_logger(__name__)


class ModuleRegistry:
    """Runtime registry for ServerForge modules.

    Usage::

        registry = ModuleRegistry(capability_defaults={"firewall": "security/firewall"})
        registry.register(UpdateModule)
        registry.register(FirewallModule)

        module = registry.get("security/firewall")
        provider = registry.resolve_capability("firewall")
    """

    def __init__(
        self,
        capability_defaults: dict[str, str] | None = None,
        host: HostCommands | None = None,
    ) -> None:
        self._classes: dict[str, Type["BaseModule"]] = {}
        self._instances: dict[str, "BaseModule"] = {}
        self._descriptors: dict[str, ModuleDescriptor] = {}
        self._order: dict[str, int] = {}
        self._next_index = 0
        self._capability_defaults = dict(capability_defaults or {})
        self._host = host

    def register(self, module_class: Type["BaseModule"]) -> ModuleDescriptor:
        """Register a module class.  Instantiation is deferred until first use.

        Raises:
            DescriptorValidationError: name/version/dependency metadata is invalid.
            DuplicateModuleError: the name is registered with another version.
        """
        descriptor = self._build_descriptor(module_class)
        name = descriptor.name

        existing = self._descriptors.get(name)
        if existing is not None:
            if existing.version != descriptor.version:
                raise DuplicateModuleError(name, existing.version, descriptor.version)
            log.warning("module_already_registered", module=name, version=descriptor.version)
            return existing

        self._classes[name] = module_class
        self._descriptors[name] = descriptor
        self._order[name] = self._next_index
        self._next_index += 1
        log.debug("module_registered", module=name, version=descriptor.version)
        return descriptor

    def register_instance(self, instance: "BaseModule") -> ModuleDescriptor:
        """Register a pre-constructed module instance directly.

        Useful when a module needs dependency injection (tests, custom hosts).
        """
        descriptor = self.register(type(instance))
        self._instances[descriptor.name] = instance
        return descriptor

    @staticmethod
    def _build_descriptor(module_class: Type["BaseModule"]) -> ModuleDescriptor:
        label = getattr(module_class, "NAME", "") or module_class.__name__
        if not getattr(module_class, "NAME", ""):
            raise DescriptorValidationError(label, "NAME is required")
        if getattr(module_class, "DEPENDENCIES", None) is None:
            raise DescriptorValidationError(label, "DEPENDENCIES is required (may be empty)")
        try:
            return module_class.descriptor()
        except pydantic.ValidationError as exc:
            first = exc.errors()[0]
            raise DescriptorValidationError(label, str(first["msg"])) from exc
        except TypeError as exc:
            raise DescriptorValidationError(label, str(exc)) from exc

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def get(self, name: str) -> "BaseModule":
        """Return the module instance for *name*.

        Raises:
            ModuleNotFoundError: No module with this name is registered.
        """
        if name not in self._classes:
            raise ModuleNotFoundError(name)
        if name not in self._instances:
            self._instances[name] = self._classes[name](host=self._host)
            log.debug("module_loaded", module=name)
        return self._instances[name]

    def descriptor(self, name: str) -> ModuleDescriptor:
        try:
            return self._descriptors[name]
        except KeyError:
            raise ModuleNotFoundError(name) from None

    def descriptors(self) -> list[ModuleDescriptor]:
        """Return all descriptors in declaration order."""
        return [self._descriptors[n] for n in sorted(self._order, key=self._order.__getitem__)]

    def declaration_index(self, name: str) -> int:
        return self._order[name]

    def is_registered(self, name: str) -> bool:
        return name in self._descriptors

    def list_modules(self) -> list[str]:
        """Return registered module names in declaration order."""
        return [d.name for d in self.descriptors()]

    def providers(self, capability: str) -> list[str]:
        return [d.name for d in self.descriptors() if capability in d.provides]

    def resolve_capability(self, capability: str) -> str:
        """Return the module name providing *capability*.

        Raises:
            CapabilityNotFoundError: nothing provides it.
            AmbiguousCapabilityError: several modules provide it and no
                registered default is configured.
        """
        providers = self.providers(capability)
        if not providers:
            raise CapabilityNotFoundError(capability)
        if len(providers) == 1:
            return providers[0]
        default = self._capability_defaults.get(capability)
        if default is not None and default in providers:
            return default
        raise AmbiguousCapabilityError(capability, providers)

    def resolve_reference(self, reference: str) -> str:
        """Resolve a dependency/conflict reference to a module name.

        A literal registered module name wins; otherwise *reference* is
        treated as a capability tag.
        """
        if reference in self._descriptors:
            return reference
        return self.resolve_capability(reference)

    def unregister(self, name: str) -> None:
        """Remove a module from the registry (used in tests)."""
        self._classes.pop(name, None)
        self._instances.pop(name, None)
        self._descriptors.pop(name, None)
        self._order.pop(name, None)

    def status_report(self) -> list[dict[str, Any]]:
        """Return descriptor dicts in declaration order for ``list-modules``."""
        return [d.to_dict() for d in self.descriptors()]
