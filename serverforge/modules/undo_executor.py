"""Module layer — Undo executors.

Interprets :class:`~serverforge.modules.undo.UndoDescriptor` steps.  There
is exactly one handler per step kind; an unknown kind is a hard error rather
than a silent skip.

Usage::

    executor = UndoExecutor(HostCommands())
    await executor.apply(undo_descriptor)
"""

from __future__ import annotations

from typing import Any, Awaitable, Callable

from serverforge.logging import get_logger
from serverforge.modules.host import HostCommands
from serverforge.modules.undo import (
    Noop,
    RemoveFirewallRule,
    RemovePackage,
    RemoveUser,
    RestoreFile,
    RestoreFirewallState,
    RestoreService,
    UndoDescriptor,
)

log = get_logger(__name__)


class UndoExecutor:
    """Applies undo steps against the host, last step first."""

    def __init__(self, host: HostCommands) -> None:
        self._host = host
        self._handlers: dict[str, Callable[[Any], Awaitable[None]]] = {
            "remove_package": self._remove_package,
            "restore_file": self._restore_file,
            "remove_user": self._remove_user,
            "restore_service": self._restore_service,
            "remove_firewall_rule": self._remove_firewall_rule,
            "restore_firewall_state": self._restore_firewall_state,
            "noop": self._noop,
        }

    async def apply(self, undo: UndoDescriptor) -> None:
        for step in reversed(undo.steps):
            handler = self._handlers.get(step.kind)
            if handler is None:
                raise ValueError(f"No undo executor for step kind '{step.kind}'")
            log.info("undo_step", module=undo.module, kind=step.kind)
            await handler(step)

    async def _remove_package(self, step: RemovePackage) -> None:
        verb = "purge" if step.purge else "remove"
        await self._host.run(
            ["apt-get", verb, "-y", step.name],
            env={"DEBIAN_FRONTEND": "noninteractive"},
        )

    async def _restore_file(self, step: RestoreFile) -> None:
        prior = step.prior_bytes()
        if prior is None:
            await self._host.remove_file(step.path)
        else:
            await self._host.write_file(step.path, prior, mode=step.mode)

    async def _remove_user(self, step: RemoveUser) -> None:
        if not await self._host.user_exists(step.name):
            return
        argv = ["userdel"]
        if step.remove_home:
            argv.append("--remove")
        argv.append(step.name)
        await self._host.run(argv)

    async def _restore_service(self, step: RestoreService) -> None:
        await self._host.run(
            ["systemctl", "enable" if step.was_enabled else "disable", step.name]
        )
        if step.was_active:
            await self._host.run(
                ["systemctl", "restart" if step.restart else "start", step.name]
            )
        else:
            await self._host.run(["systemctl", "stop", step.name])

    async def _remove_firewall_rule(self, step: RemoveFirewallRule) -> None:
        await self._host.run(["ufw", "--force", "delete", *step.rule])

    async def _restore_firewall_state(self, step: RestoreFirewallState) -> None:
        if step.was_enabled:
            await self._host.run(["ufw", "--force", "enable"])
        else:
            await self._host.run(["ufw", "--force", "disable"])

    async def _noop(self, step: Noop) -> None:
        if step.reason:
            log.info("undo_noop", reason=step.reason)
