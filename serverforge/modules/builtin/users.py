"""Built-in module — security/users.

Creates the administrative user, adds it to ``sudo`` and the SSH access
group, and installs a sudoers drop-in.  A user that already existed is left
in place on rollback; only the drop-in is restored.
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field, field_validator

from serverforge.modules.base import BaseModule
from serverforge.modules.undo import Noop, RemoveUser, RestoreFile, UndoDescriptor

_USERNAME_PATTERN = r"^[a-z_][a-z0-9_-]{0,31}$"

_RESERVED_USERS = frozenset(
    {
        "root", "daemon", "bin", "sys", "sync", "games", "man", "lp", "mail",
        "news", "uucp", "proxy", "www-data", "backup", "list", "irc", "gnats",
        "nobody", "messagebus", "syslog",
    }
)


class UsersConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    admin_user: str = Field(pattern=_USERNAME_PATTERN)
    shell: str = "/bin/bash"
    ssh_access_group: str = Field(default="remotessh", pattern=_USERNAME_PATTERN)
    passwordless_sudo: bool = False

    @field_validator("admin_user")
    @classmethod
    def _not_reserved(cls, v: str) -> str:
        if v in _RESERVED_USERS or v.startswith("systemd-"):
            raise ValueError(f"username '{v}' is reserved")
        return v


class UsersModule(BaseModule):
    NAME = "security/users"
    VERSION = "1.0.0"
    DESCRIPTION = "Create the admin user and its sudoers drop-in."
    CATEGORY = "security"
    REQUIRED_BINARIES = frozenset({"useradd", "usermod", "groupadd", "visudo"})
    REQUIRES_ROOT = True
    CONFIG_MODEL = UsersConfig

    @property
    def sudoers_path(self) -> str:
        return f"/etc/sudoers.d/90-serverforge-{self.config.admin_user}"

    def _sudoers_content(self) -> bytes:
        tag = "NOPASSWD: " if self.config.passwordless_sudo else ""
        return (
            "# Managed by serverforge\n"
            f"{self.config.admin_user} ALL=(ALL:ALL) {tag}ALL\n"
        ).encode()

    async def plan_undo(self) -> UndoDescriptor:
        user = self.config.admin_user
        undo = UndoDescriptor(module=self.NAME)
        undo.add(Noop(reason=f"group '{self.config.ssh_access_group}' is left in place"))
        if not await self.host.user_exists(user):
            undo.add(RemoveUser(name=user, remove_home=True))
        path = self.sudoers_path
        undo.add(
            RestoreFile.capture(path, await self.host.read_file(path), await self.host.file_mode(path))
        )
        return undo

    async def install(self) -> UndoDescriptor:
        undo = await self.plan_undo()
        user = self.config.admin_user
        groups = f"sudo,{self.config.ssh_access_group}"

        await self.host.run(["groupadd", "-f", self.config.ssh_access_group])
        if await self.host.user_exists(user):
            await self.host.run(["usermod", "-aG", groups, user])
        else:
            await self.host.run(["useradd", "-m", "-s", self.config.shell, "-G", groups, user])

        await self.host.write_file(self.sudoers_path, self._sudoers_content(), mode=0o440)
        await self.host.run(["visudo", "-cf", self.sudoers_path])
        return undo

    async def verify(self) -> None:
        if not await self.host.user_exists(self.config.admin_user):
            raise RuntimeError(f"user '{self.config.admin_user}' does not exist")
        if await self.host.read_file(self.sudoers_path) is None:
            raise RuntimeError(f"{self.sudoers_path} is missing")
