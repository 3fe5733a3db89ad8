"""CLI — Shared bootstrap helpers.

Every command follows the same shape: load settings, configure logging,
build the registry, open the state store, do the work inside
``asyncio.run`` and turn a :class:`ServerForgeError` into its exit code.
"""

from __future__ import annotations

import asyncio
import json
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Awaitable, NoReturn, TypeVar

import typer
from rich.console import Console

from serverforge.config import Settings, override_settings
from serverforge.exceptions import ServerForgeError
from serverforge.logging import configure_logging
from serverforge.modules.builtin import register_builtin_modules
from serverforge.modules.registry import ModuleRegistry
from serverforge.orchestration.checkpoint import CheckpointStore

T = TypeVar("T")

err_console = Console(stderr=True)


def load_settings(config: Path | None = None) -> Settings:
    """Load settings, install them as the process singleton and set up logging."""
    try:
        settings = Settings.load(config_file=config)
    except ServerForgeError as exc:
        fail(exc)
    override_settings(settings)
    configure_logging(
        level=settings.logging.level,
        format=settings.logging.format,
        log_file=settings.logging.log_file,
    )
    return settings


def build_registry(settings: Settings) -> ModuleRegistry:
    registry = ModuleRegistry(capability_defaults=settings.modules.capability_defaults)
    register_builtin_modules(registry)
    return registry


@asynccontextmanager
async def open_store(
    settings: Settings, read_only: bool = False
) -> AsyncIterator[CheckpointStore]:
    store = CheckpointStore(settings.engine.state_dir)
    await store.init(read_only=read_only)
    try:
        yield store
    finally:
        await store.close()


def run(coro: Awaitable[T]) -> T:
    """Run *coro* to completion, mapping engine errors to exit codes."""
    try:
        return asyncio.run(coro)  # type: ignore[arg-type]
    except ServerForgeError as exc:
        fail(exc)


def fail(exc: ServerForgeError) -> NoReturn:
    err_console.print(f"[red]Error:[/red] {exc.message}")
    raise typer.Exit(int(exc.exit_code))


def parse_modules(modules: str | None) -> list[str] | None:
    """Split a ``--modules a,b`` value; None or empty means "use configuration"."""
    if not modules:
        return None
    return [m.strip() for m in modules.split(",") if m.strip()]


def echo_json(data: Any) -> None:
    typer.echo(json.dumps(data, indent=2, sort_keys=False, default=str))
