"""Built-in module — security/firewall.

Configures and enables ufw.  Provides the ``firewall`` capability so other
modules can depend on "a firewall" without naming this one.
"""

from __future__ import annotations

import re

from pydantic import BaseModel, ConfigDict, Field, field_validator

from serverforge.config import DEFAULT_SSH_PORT
from serverforge.modules.base import BaseModule
from serverforge.modules.descriptor import FIREWALL
from serverforge.modules.undo import (
    Noop,
    RemoveFirewallRule,
    RestoreFirewallState,
    UndoDescriptor,
)

_PORT_RE = re.compile(r"^(\d+)/(tcp|udp)$")


class FirewallConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    default_incoming: str = Field(default="deny", pattern=r"^(deny|allow)$")
    allow_ssh: bool = True
    ssh_port: int = Field(default=DEFAULT_SSH_PORT, ge=1, le=65535)
    allowed_ports: list[str] = Field(default_factory=list)
    log_rules: bool = True

    @field_validator("allowed_ports")
    @classmethod
    def _check_ports(cls, v: list[str]) -> list[str]:
        for entry in v:
            match = _PORT_RE.match(entry.strip())
            if match is None:
                raise ValueError(f"'{entry}' must look like 80/tcp or 53/udp")
            if not 1 <= int(match.group(1)) <= 65535:
                raise ValueError(f"port out of range in '{entry}'")
        return [e.strip() for e in v]


class FirewallModule(BaseModule):
    NAME = "security/firewall"
    VERSION = "1.0.0"
    DESCRIPTION = "Configure and enable the ufw firewall."
    CATEGORY = "security"
    DEPENDENCIES = frozenset({"security/ssh"})
    PROVIDES = frozenset({"firewall"})
    REQUIRED_BINARIES = frozenset({"ufw"})
    REQUIRES_ROOT = True
    SHARED_RESOURCES = frozenset({FIREWALL})
    CONFIG_MODEL = FirewallConfig

    def rules(self) -> list[list[str]]:
        cfg = self.config
        ports = ([f"{cfg.ssh_port}/tcp"] if cfg.allow_ssh else []) + list(cfg.allowed_ports)
        return [["allow", port] for port in dict.fromkeys(ports)]

    async def _enabled(self) -> bool:
        result = await self.host.run(["ufw", "status"], check=False)
        return "Status: active" in result.stdout

    async def plan_undo(self) -> UndoDescriptor:
        undo = UndoDescriptor(module=self.NAME)
        undo.add(Noop(reason="default policies are left as configured"))
        for rule in self.rules():
            undo.add(RemoveFirewallRule(rule=rule))
        undo.add(RestoreFirewallState(was_enabled=await self._enabled()))
        return undo

    async def install(self) -> UndoDescriptor:
        undo = await self.plan_undo()
        cfg = self.config
        await self.host.run(["ufw", "default", cfg.default_incoming, "incoming"])
        await self.host.run(["ufw", "default", "allow", "outgoing"])
        for rule in self.rules():
            await self.host.run(["ufw", *rule])
        await self.host.run(["ufw", "logging", "on" if cfg.log_rules else "off"])
        return undo

    async def configure(self) -> None:
        await self.host.run(["ufw", "--force", "enable"])

    async def verify(self) -> None:
        result = await self.host.run(["ufw", "status"])
        if "Status: active" not in result.stdout:
            raise RuntimeError("ufw is not active")
        for _, port in self.rules():
            if port not in result.stdout:
                raise RuntimeError(f"ufw has no rule for {port}")
