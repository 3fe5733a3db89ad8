"""Module layer — Structured undo data.

An UndoDescriptor describes, as data, how to reverse what a module's
``install`` did.  It is captured before the mutation happens, persisted in
every checkpoint, and interpreted by the fixed set of executors in
:mod:`serverforge.modules.undo_executor`.  No step ever carries a shell
string.

Steps are recorded in the order the mutations happen and applied in reverse.
"""

from __future__ import annotations

import base64
import time
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field


class RemovePackage(BaseModel):
    kind: Literal["remove_package"] = "remove_package"
    name: str
    manager: Literal["apt"] = "apt"
    purge: bool = False


class RestoreFile(BaseModel):
    """Put a file back to its prior content; ``prior_content=None`` deletes it."""

    kind: Literal["restore_file"] = "restore_file"
    path: str
    prior_content: str | None = Field(
        default=None, description="Base64 of the file before the change; None = file did not exist."
    )
    mode: int | None = None

    @classmethod
    def capture(cls, path: str, content: bytes | None, mode: int | None = None) -> "RestoreFile":
        encoded = base64.b64encode(content).decode("ascii") if content is not None else None
        return cls(path=path, prior_content=encoded, mode=mode)

    def prior_bytes(self) -> bytes | None:
        if self.prior_content is None:
            return None
        return base64.b64decode(self.prior_content)


class RemoveUser(BaseModel):
    kind: Literal["remove_user"] = "remove_user"
    name: str
    remove_home: bool = False


class RestoreService(BaseModel):
    kind: Literal["restore_service"] = "restore_service"
    name: str
    was_enabled: bool
    was_active: bool
    restart: bool = Field(
        default=False, description="Restart instead of start when the service should end up active."
    )


class RemoveFirewallRule(BaseModel):
    kind: Literal["remove_firewall_rule"] = "remove_firewall_rule"
    backend: Literal["ufw"] = "ufw"
    rule: list[str] = Field(description="Rule arguments as given to 'ufw', e.g. ['allow', '22/tcp'].")


class RestoreFirewallState(BaseModel):
    kind: Literal["restore_firewall_state"] = "restore_firewall_state"
    backend: Literal["ufw"] = "ufw"
    was_enabled: bool


class Noop(BaseModel):
    """Explicit marker for a mutation that cannot (or need not) be reversed."""

    kind: Literal["noop"] = "noop"
    reason: str = ""


UndoStep = Annotated[
    Union[
        RemovePackage,
        RestoreFile,
        RemoveUser,
        RestoreService,
        RemoveFirewallRule,
        RestoreFirewallState,
        Noop,
    ],
    Field(discriminator="kind"),
]


class UndoDescriptor(BaseModel):
    """Everything needed to reverse one module's installation."""

    module: str
    steps: list[UndoStep] = Field(default_factory=list)
    created_at: float = Field(default_factory=time.time)

    def add(self, step: UndoStep) -> "UndoDescriptor":
        """Append *step* and return self so modules can build descriptors fluently."""
        self.steps.append(step)
        return self

    def is_empty(self) -> bool:
        return all(isinstance(s, Noop) for s in self.steps)

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "UndoDescriptor":
        return cls.model_validate(data)
