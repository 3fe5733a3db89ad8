"""Module layer — Host command helpers.

Thin async wrappers around the few host interactions built-in modules and
undo executors need: running a command, reading and atomically writing
files, and probing packages, users and services.

Security notes:
  - Commands always use ``asyncio.create_subprocess_exec`` (no shell).
  - The command is passed as a list, never a shell string.
  - Timeout is enforced at the subprocess level.
"""

from __future__ import annotations

import asyncio
import os
import shutil
import tempfile
from dataclasses import dataclass
from pathlib import Path

from serverforge.logging import get_logger

log = get_logger(__name__)


class HostCommandError(RuntimeError):
    """A host command exited non-zero or could not be started."""

    def __init__(self, argv: list[str], returncode: int | None, stderr: str) -> None:
        detail = stderr.strip() or f"exit status {returncode}"
        super().__init__(f"{' '.join(argv)}: {detail}")
        self.argv = argv
        self.returncode = returncode
        self.stderr = stderr


@dataclass
class CommandResult:
    argv: list[str]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class HostCommands:
    """Async host access used by modules and undo executors.

    Tests substitute a double for this class; nothing else in the engine
    touches the host directly.
    """

    def __init__(self, default_timeout: float = 1800.0) -> None:
        self._timeout = default_timeout

    async def run(
        self,
        argv: list[str],
        check: bool = True,
        timeout: float | None = None,
        env: dict[str, str] | None = None,
    ) -> CommandResult:
        log.debug("host_command", argv=argv)
        full_env = os.environ.copy()
        if env:
            full_env.update(env)
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=full_env,
            )
        except OSError as exc:
            raise HostCommandError(argv, None, str(exc)) from exc

        try:
            stdout_bytes, stderr_bytes = await asyncio.wait_for(
                proc.communicate(), timeout=timeout or self._timeout
            )
        except asyncio.TimeoutError:
            proc.kill()
            await proc.communicate()
            raise HostCommandError(argv, None, f"timed out after {timeout or self._timeout}s")

        result = CommandResult(
            argv=argv,
            returncode=proc.returncode if proc.returncode is not None else -1,
            stdout=stdout_bytes.decode(errors="replace"),
            stderr=stderr_bytes.decode(errors="replace"),
        )
        if check and not result.ok:
            raise HostCommandError(argv, result.returncode, result.stderr)
        return result

    # ------------------------------------------------------------------
    # Files
    # ------------------------------------------------------------------

    async def read_file(self, path: str) -> bytes | None:
        """Return file content, or None if it does not exist."""
        p = Path(path)
        if not p.exists():
            return None
        return await asyncio.to_thread(p.read_bytes)

    async def file_mode(self, path: str) -> int | None:
        p = Path(path)
        if not p.exists():
            return None
        return p.stat().st_mode & 0o7777

    async def write_file(self, path: str, content: bytes, mode: int | None = None) -> None:
        """Write *content* atomically (temp file in the same directory + rename)."""
        await asyncio.to_thread(_atomic_write, Path(path), content, mode)

    async def remove_file(self, path: str) -> None:
        p = Path(path)
        if p.exists():
            await asyncio.to_thread(p.unlink)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def which(self, binary: str) -> str | None:
        return shutil.which(binary)

    async def package_installed(self, name: str) -> bool:
        result = await self.run(
            ["dpkg-query", "-W", "-f=${Status}", name], check=False
        )
        return result.ok and "install ok installed" in result.stdout

    async def user_exists(self, name: str) -> bool:
        result = await self.run(["id", "-u", name], check=False)
        return result.ok

    async def service_enabled(self, name: str) -> bool:
        result = await self.run(["systemctl", "is-enabled", name], check=False)
        return result.ok

    async def service_active(self, name: str) -> bool:
        result = await self.run(["systemctl", "is-active", name], check=False)
        return result.ok


def _atomic_write(path: Path, content: bytes, mode: int | None) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.")
    try:
        with os.fdopen(fd, "wb") as fh:
            fh.write(content)
            fh.flush()
            os.fsync(fh.fileno())
        if mode is not None:
            os.chmod(tmp_name, mode)
        os.replace(tmp_name, path)
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise
