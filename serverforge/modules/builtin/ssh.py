"""Built-in module — security/ssh.

Writes a hardened ``sshd_config`` and restarts the SSH service.

The candidate file is checked with ``sshd -t`` before it replaces the live
one, so a bad configuration never reaches the running daemon.  Undo restores
the prior file first and then the prior service state.
"""

from __future__ import annotations

import time

from pydantic import BaseModel, ConfigDict, Field

from serverforge.config import DEFAULT_SSH_PORT
from serverforge.logging import get_logger
from serverforge.modules.base import BaseModule
from serverforge.modules.undo import RestoreFile, RestoreService, UndoDescriptor

log = get_logger(__name__)

_COMMON_PORTS = frozenset({80, 443, 8080, 8443})


class SSHConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    port: int = Field(default=DEFAULT_SSH_PORT, ge=1024, le=65535)
    password_authentication: bool = False
    permit_root_login: bool = False
    allowed_groups: list[str] = Field(default_factory=lambda: ["remotessh"], min_length=1)
    max_auth_tries: int = Field(default=3, ge=1, le=10)
    client_alive_interval: int = Field(default=300, ge=60, le=3600)
    client_alive_count_max: int = Field(default=2, ge=0)
    max_sessions: int = Field(default=10, ge=1)
    x11_forwarding: bool = False
    allow_tcp_forwarding: bool = False
    config_path: str = "/etc/ssh/sshd_config"
    service_name: str = "ssh"


def _yes_no(flag: bool) -> str:
    return "yes" if flag else "no"


def render_sshd_config(cfg: SSHConfig) -> str:
    """Return the hardened sshd_config text for *cfg*."""
    lines = [
        "# Managed by serverforge",
        f"# Generated at {time.strftime('%Y-%m-%d %H:%M:%S')}",
        f"Port {cfg.port}",
        f"PasswordAuthentication {_yes_no(cfg.password_authentication)}",
        f"PermitRootLogin {_yes_no(cfg.permit_root_login)}",
        "PubkeyAuthentication yes",
        "AuthorizedKeysFile .ssh/authorized_keys",
        f"AllowGroups {' '.join(cfg.allowed_groups)}",
        f"MaxAuthTries {cfg.max_auth_tries}",
        f"ClientAliveInterval {cfg.client_alive_interval}",
        f"ClientAliveCountMax {cfg.client_alive_count_max}",
        f"MaxSessions {cfg.max_sessions}",
        "PermitEmptyPasswords no",
        "PermitUserEnvironment no",
        "UsePAM yes",
        f"X11Forwarding {_yes_no(cfg.x11_forwarding)}",
        f"AllowTcpForwarding {_yes_no(cfg.allow_tcp_forwarding)}",
        "AllowAgentForwarding no",
        "LogLevel VERBOSE",
        "SyslogFacility AUTH",
        "Subsystem sftp /usr/lib/openssh/sftp-server",
        "StrictModes yes",
        "IgnoreRhosts yes",
        "HostbasedAuthentication no",
    ]
    return "\n".join(lines) + "\n"


class SSHModule(BaseModule):
    NAME = "security/ssh"
    VERSION = "1.0.0"
    DESCRIPTION = "Harden the OpenSSH server configuration."
    CATEGORY = "security"
    DEPENDENCIES = frozenset({"security/users"})
    REQUIRED_BINARIES = frozenset({"sshd", "systemctl"})
    REQUIRES_ROOT = True
    CONFIG_MODEL = SSHConfig

    async def pre_install(self) -> None:
        if self.config.port in _COMMON_PORTS:
            log.warning("ssh_port_commonly_used", port=self.config.port)

    async def plan_undo(self) -> UndoDescriptor:
        cfg = self.config
        undo = UndoDescriptor(module=self.NAME)
        # Applied last: the service restarts once the old file is back.
        undo.add(
            RestoreService(
                name=cfg.service_name,
                was_enabled=await self.host.service_enabled(cfg.service_name),
                was_active=await self.host.service_active(cfg.service_name),
                restart=True,
            )
        )
        undo.add(
            RestoreFile.capture(
                cfg.config_path,
                await self.host.read_file(cfg.config_path),
                await self.host.file_mode(cfg.config_path),
            )
        )
        return undo

    async def install(self) -> UndoDescriptor:
        undo = await self.plan_undo()
        cfg = self.config
        candidate = f"{cfg.config_path}.serverforge-new"
        await self.host.write_file(candidate, render_sshd_config(cfg).encode(), mode=0o600)
        try:
            await self.host.run(["sshd", "-t", "-f", candidate])
        finally:
            await self.host.remove_file(candidate)
        await self.host.write_file(cfg.config_path, render_sshd_config(cfg).encode(), mode=0o600)
        return undo

    async def configure(self) -> None:
        name = self.config.service_name
        await self.host.run(["systemctl", "enable", name])
        await self.host.run(["systemctl", "restart", name])

    async def verify(self) -> None:
        cfg = self.config
        await self.host.run(["sshd", "-t", "-f", cfg.config_path])
        content = (await self.host.read_file(cfg.config_path) or b"").decode(errors="replace")
        if f"Port {cfg.port}" not in content.splitlines():
            raise RuntimeError(f"{cfg.config_path} does not set Port {cfg.port}")
        if not await self.host.service_active(cfg.service_name):
            raise RuntimeError(f"service '{cfg.service_name}' is not active")
