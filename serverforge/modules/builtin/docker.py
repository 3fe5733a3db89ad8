"""Built-in module — container/docker."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field

from serverforge.modules.base import BaseModule
from serverforge.modules.descriptor import PACKAGE_MANAGER
from serverforge.modules.undo import Noop, RemovePackage, UndoDescriptor


class DockerConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    package: str = "docker.io"
    users: list[str] = Field(default_factory=list, description="Users added to the docker group.")
    enable_service: bool = True


class DockerModule(BaseModule):
    NAME = "container/docker"
    VERSION = "1.0.0"
    DESCRIPTION = "Install the Docker engine from the distribution archive."
    CATEGORY = "container"
    DEPENDENCIES = frozenset({"system/update"})
    PROVIDES = frozenset({"container-runtime"})
    REQUIRED_BINARIES = frozenset({"apt-get", "systemctl"})
    REQUIRES_ROOT = True
    SHARED_RESOURCES = frozenset({PACKAGE_MANAGER})
    CONFIG_MODEL = DockerConfig

    async def plan_undo(self) -> UndoDescriptor:
        package = self.config.package
        undo = UndoDescriptor(module=self.NAME)
        if await self.host.package_installed(package):
            undo.add(Noop(reason=f"{package} was already installed"))
        else:
            undo.add(RemovePackage(name=package, purge=True))
        return undo

    async def install(self) -> UndoDescriptor:
        undo = await self.plan_undo()
        await self.host.run(
            ["apt-get", "install", "-y", self.config.package],
            env={"DEBIAN_FRONTEND": "noninteractive"},
        )
        for user in self.config.users:
            await self.host.run(["usermod", "-aG", "docker", user])
        return undo

    async def configure(self) -> None:
        if self.config.enable_service:
            await self.host.run(["systemctl", "enable", "--now", "docker"])

    async def verify(self) -> None:
        if not await self.host.package_installed(self.config.package):
            raise RuntimeError(f"package {self.config.package} is not installed")
        if self.config.enable_service:
            await self.host.run(["docker", "info"])
