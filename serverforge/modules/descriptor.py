"""Module layer — Module descriptor and lifecycle states.

A ModuleDescriptor is the immutable metadata the registry and resolver work
from: identity, version, dependencies, conflicts and provided capabilities.
It is derived from a module class's attributes at registration time.
"""

from __future__ import annotations

import re
from enum import Enum
from typing import Any

from packaging.version import InvalidVersion, Version
from pydantic import BaseModel, ConfigDict, Field, field_validator

# "system/update", "security/ssh", "custom/my-module"
_NAME_RE = re.compile(r"^[a-z][a-z0-9_-]*(/[a-z][a-z0-9_-]*)*$")

# Shared host resources a module can declare in SHARED_RESOURCES.
PACKAGE_MANAGER = "package-manager"
FIREWALL = "firewall"


class ModuleState(str, Enum):
    """Lifecycle state of a module within a run.

    Transitions only move forward, except ``* -> ROLLED_BACK`` which the
    rollback coordinator drives.
    """

    UNREGISTERED = "unregistered"
    REGISTERED = "registered"
    VALIDATED = "validated"
    INSTALLING = "installing"
    INSTALLED = "installed"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"


_ORDER = {
    ModuleState.UNREGISTERED: 0,
    ModuleState.REGISTERED: 1,
    ModuleState.VALIDATED: 2,
    ModuleState.INSTALLING: 3,
    ModuleState.INSTALLED: 4,
    ModuleState.FAILED: 4,
}


def is_valid_transition(current: ModuleState, new: ModuleState) -> bool:
    """Return True if moving from *current* to *new* is allowed."""
    if new == ModuleState.ROLLED_BACK:
        return True
    if current == ModuleState.ROLLED_BACK:
        # A rolled-back module may be installed again by a later run.
        return new in (ModuleState.VALIDATED, ModuleState.REGISTERED)
    if current in (ModuleState.INSTALLED, ModuleState.FAILED):
        return False
    return _ORDER[new] > _ORDER[current]


class ModuleDescriptor(BaseModel):
    """Immutable metadata for a registered module."""

    model_config = ConfigDict(frozen=True)

    name: str
    version: str
    description: str = ""
    category: str = "custom"
    dependencies: frozenset[str] = Field(default_factory=frozenset)
    conflicts: frozenset[str] = Field(default_factory=frozenset)
    provides: frozenset[str] = Field(default_factory=frozenset)
    required_binaries: frozenset[str] = Field(default_factory=frozenset)
    requires_root: bool = False
    shared_resources: frozenset[str] = Field(default_factory=frozenset)

    @field_validator("name")
    @classmethod
    def _check_name(cls, v: str) -> str:
        if not _NAME_RE.match(v):
            raise ValueError(
                f"'{v}' is not a valid module name (expected e.g. 'security/ssh')"
            )
        return v

    @field_validator("version")
    @classmethod
    def _check_version(cls, v: str) -> str:
        try:
            Version(v)
        except InvalidVersion as exc:
            raise ValueError(f"'{v}' is not a valid semantic version") from exc
        return v

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "version": self.version,
            "description": self.description,
            "category": self.category,
            "dependencies": sorted(self.dependencies),
            "conflicts": sorted(self.conflicts),
            "provides": sorted(self.provides),
            "required_binaries": sorted(self.required_binaries),
            "requires_root": self.requires_root,
            "shared_resources": sorted(self.shared_resources),
        }
