"""Module layer — BaseModule contract, descriptors, undo data and registry."""

from serverforge.modules.base import BaseModule
from serverforge.modules.descriptor import ModuleDescriptor, ModuleState
from serverforge.modules.registry import ModuleRegistry
from serverforge.modules.undo import UndoDescriptor

__all__ = [
    "BaseModule",
    "ModuleDescriptor",
    "ModuleState",
    "ModuleRegistry",
    "UndoDescriptor",
]
