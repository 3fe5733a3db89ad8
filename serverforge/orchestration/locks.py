"""Orchestration layer — Advisory locks.

Two kinds of mutual exclusion:

``AdvisoryLocks``
    Per-resource ``asyncio.Lock`` pool for shared host resources
    (``package-manager``, ``firewall``).  A module declares the resources it
    touches in ``SHARED_RESOURCES``; the engine holds them from ``install``
    through ``verify`` (or ``rollback``).  Acquisition blocks without a
    timeout: waiting is always safe, aborting mid-install is not.

``ProcessLock``
    ``fcntl.flock`` on ``<state_dir>/serverforge.lock`` so two engine
    processes never share a state directory.

Usage::

    locks = AdvisoryLocks()
    async with locks.hold({"package-manager"}):
        await module.install()
"""

from __future__ import annotations

import asyncio
import fcntl
import os
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Iterable

from serverforge.exceptions import EngineLockedError
from serverforge.logging import get_logger

log = get_logger(__name__)


class AdvisoryLocks:
    """Named asyncio locks, created lazily and acquired in sorted order."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}

    def _get_lock(self, resource: str) -> asyncio.Lock:
        """Return (or lazily create) the lock for *resource*."""
        if resource not in self._locks:
            self._locks[resource] = asyncio.Lock()
        return self._locks[resource]

    @asynccontextmanager
    async def hold(self, resources: Iterable[str]) -> AsyncIterator[None]:
        """Hold every lock in *resources* for the duration of the block.

        Locks are taken in sorted order so two modules needing the same pair
        can never deadlock.
        """
        acquired: list[asyncio.Lock] = []
        try:
            for resource in sorted(set(resources)):
                lock = self._get_lock(resource)
                if lock.locked():
                    log.info("advisory_lock_wait", resource=resource)
                await lock.acquire()
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()

    def status(self) -> dict[str, bool]:
        """Return resource -> held flag for diagnostics."""
        return {name: lock.locked() for name, lock in self._locks.items()}


class ProcessLock:
    """Exclusive, non-blocking file lock on the state directory."""

    def __init__(self, state_dir: Path) -> None:
        self._path = state_dir.expanduser() / "serverforge.lock"
        self._fd: int | None = None

    def acquire(self) -> None:
        """Take the lock.

        Raises:
            EngineLockedError: another process holds it.
        """
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(self._path, os.O_RDWR | os.O_CREAT, 0o644)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            holder = os.read(fd, 32).decode(errors="replace").strip() or None
            os.close(fd)
            raise EngineLockedError(str(self._path), holder) from None
        os.ftruncate(fd, 0)
        os.write(fd, str(os.getpid()).encode())
        self._fd = fd

    def release(self) -> None:
        if self._fd is None:
            return
        fcntl.flock(self._fd, fcntl.LOCK_UN)
        os.close(self._fd)
        self._fd = None

    def __enter__(self) -> "ProcessLock":
        self.acquire()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.release()
