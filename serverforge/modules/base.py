"""Module layer — BaseModule interface.

Every provisioning module — built-in or third-party — subclasses
``BaseModule``.  The engine drives each module through a fixed lifecycle:

    validate_config -> pre_install -> plan_undo -> install -> configure -> verify

and, when a run has to be reversed, ``rollback(undo)``.

Design principles:
  - Metadata is declared as class attributes so the registry can build an
    immutable :class:`ModuleDescriptor` without instantiating anything.
  - ``plan_undo`` is called *before* ``install`` and persisted, so a crash in
    the middle of ``install`` still leaves enough data to attempt a reversal.
  - ``install`` returns the final :class:`UndoDescriptor`, which may refine
    the planned one with facts learned while installing.
  - Modules signal failure by raising; the engine wraps the exception with
    the module name and lifecycle step.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, ClassVar

import pydantic
from pydantic import BaseModel

from serverforge.exceptions import ConfigError
from serverforge.modules.descriptor import ModuleDescriptor, ModuleState
from serverforge.modules.host import HostCommands
from serverforge.modules.undo import UndoDescriptor
from serverforge.modules.undo_executor import UndoExecutor


class BaseModule(ABC):
    """Abstract base class for all ServerForge modules.

    Subclasses must:
      1. Set ``NAME`` (namespaced, e.g. ``"security/ssh"``) and ``VERSION``
      2. Declare ``DEPENDENCIES`` / ``CONFLICTS`` / ``PROVIDES`` as sets
      3. Implement :meth:`install` and :meth:`verify`
      4. Optionally set ``CONFIG_MODEL`` to a pydantic model for their config
      5. Optionally override :meth:`plan_undo`, :meth:`pre_install`,
         :meth:`configure`, :meth:`rollback` and :meth:`status`
    """

    NAME: ClassVar[str] = ""
    VERSION: ClassVar[str] = "0.0.0"
    DESCRIPTION: ClassVar[str] = ""
    CATEGORY: ClassVar[str] = "custom"
    DEPENDENCIES: ClassVar[frozenset[str]] = frozenset()
    CONFLICTS: ClassVar[frozenset[str]] = frozenset()
    PROVIDES: ClassVar[frozenset[str]] = frozenset()
    REQUIRED_BINARIES: ClassVar[frozenset[str]] = frozenset()
    REQUIRES_ROOT: ClassVar[bool] = False
    SHARED_RESOURCES: ClassVar[frozenset[str]] = frozenset()
    CONFIG_MODEL: ClassVar[type[BaseModel] | None] = None

    def __init__(self, host: HostCommands | None = None) -> None:
        self.host = host or HostCommands()
        self.config: Any = None

    # ------------------------------------------------------------------
    # Identity
    # ------------------------------------------------------------------

    def get_name(self) -> str:
        return self.NAME

    def get_version(self) -> str:
        return self.VERSION

    def get_dependencies(self) -> frozenset[str]:
        return frozenset(self.DEPENDENCIES)

    @classmethod
    def descriptor(cls) -> ModuleDescriptor:
        """Build the immutable descriptor from class attributes.

        Raises:
            pydantic.ValidationError / TypeError: metadata is malformed; the
            registry converts these into ``DescriptorValidationError``.
        """
        for attr in ("DEPENDENCIES", "CONFLICTS", "PROVIDES"):
            value = getattr(cls, attr)
            if not isinstance(value, (set, frozenset)):
                raise TypeError(f"{attr} must be a set, got {type(value).__name__}")
        return ModuleDescriptor(
            name=cls.NAME,
            version=cls.VERSION,
            description=cls.DESCRIPTION,
            category=cls.CATEGORY,
            dependencies=frozenset(cls.DEPENDENCIES),
            conflicts=frozenset(cls.CONFLICTS),
            provides=frozenset(cls.PROVIDES),
            required_binaries=frozenset(cls.REQUIRED_BINARIES),
            requires_root=cls.REQUIRES_ROOT,
            shared_resources=frozenset(cls.SHARED_RESOURCES),
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def validate_config(self, config: dict[str, Any]) -> None:
        """Validate and store this module's configuration block.

        Raises:
            ConfigError: naming the first offending field.
        """
        if self.CONFIG_MODEL is None:
            self.config = dict(config)
            return
        try:
            self.config = self.CONFIG_MODEL.model_validate(config)
        except pydantic.ValidationError as exc:
            first = exc.errors()[0]
            field = ".".join(str(p) for p in first["loc"]) or None
            raise ConfigError(first["msg"], module=self.NAME, field=field) from exc

    async def pre_install(self) -> None:
        """Precondition checks (OS, ports, prior state).  Default: none."""

    async def plan_undo(self) -> UndoDescriptor:
        """Capture how to reverse ``install`` before it runs.

        Called immediately before :meth:`install`; the result is persisted so
        an interrupted install can still be reversed on the next run.
        """
        return UndoDescriptor(module=self.NAME)

    @abstractmethod
    async def install(self) -> UndoDescriptor:
        """Perform the mutation and return the undo data for it."""
        ...

    async def configure(self) -> None:
        """Post-install configuration.  Default: none."""

    @abstractmethod
    async def verify(self) -> None:
        """Raise if the installation did not take effect."""
        ...

    async def rollback(self, undo: UndoDescriptor) -> None:
        """Reverse a completed installation using *undo*."""
        await UndoExecutor(self.host).apply(undo)

    async def status(self) -> ModuleState:
        """Cheap confirmation check used when a module is skipped on resume."""
        try:
            await self.verify()
        except Exception:
            return ModuleState.FAILED
        return ModuleState.INSTALLED
