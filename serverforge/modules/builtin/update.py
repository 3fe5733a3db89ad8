"""Built-in module — system/update.

Refreshes the package lists and upgrades installed packages with apt.
Upgrades cannot be reversed meaningfully, so the undo data is a single
explicit ``noop``.
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict

from serverforge.modules.base import BaseModule
from serverforge.modules.descriptor import PACKAGE_MANAGER
from serverforge.modules.undo import Noop, UndoDescriptor

_APT_ENV = {"DEBIAN_FRONTEND": "noninteractive"}


class UpdateConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    upgrade: bool = True
    autoremove: bool = False


class UpdateModule(BaseModule):
    NAME = "system/update"
    VERSION = "1.0.0"
    DESCRIPTION = "Refresh package lists and upgrade installed packages."
    CATEGORY = "system"
    REQUIRED_BINARIES = frozenset({"apt-get"})
    REQUIRES_ROOT = True
    SHARED_RESOURCES = frozenset({PACKAGE_MANAGER})
    CONFIG_MODEL = UpdateConfig

    async def plan_undo(self) -> UndoDescriptor:
        return UndoDescriptor(module=self.NAME).add(
            Noop(reason="package upgrades are not downgraded on rollback")
        )

    async def install(self) -> UndoDescriptor:
        undo = await self.plan_undo()
        await self.host.run(["apt-get", "update"], env=_APT_ENV)
        if self.config.upgrade:
            await self.host.run(["apt-get", "-y", "upgrade"], env=_APT_ENV)
        if self.config.autoremove:
            await self.host.run(["apt-get", "-y", "autoremove"], env=_APT_ENV)
        return undo

    async def verify(self) -> None:
        await self.host.run(["apt-get", "check"])
