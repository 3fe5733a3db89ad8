"""CLI — Install and validate commands."""

from __future__ import annotations

import asyncio
import signal
import sys
from pathlib import Path

import typer
from rich.console import Console
from rich.table import Table

from serverforge.cli import runtime
from serverforge.config import Settings
from serverforge.logging import get_logger
from serverforge.orchestration.checkpoint import CheckpointStore
from serverforge.orchestration.executor import ExecutionEngine
from serverforge.orchestration.locks import ProcessLock
from serverforge.orchestration.state import RunReport

console = Console()
log = get_logger(__name__)

_POLICIES = ("auto", "auto-rollback", "abort-only")


def install(
    modules: str | None = typer.Option(
        None, "--modules", "-m", help="Comma-separated module names. Default: configured set."
    ),
    config: Path | None = typer.Option(None, "--config", "-c", help="Path to config.yaml."),
    dry_run: bool = typer.Option(False, "--dry-run", help="Plan and log only; change nothing."),
    policy: str | None = typer.Option(
        None, "--policy", help="Failure policy: auto, auto-rollback or abort-only."
    ),
    concurrent: bool | None = typer.Option(
        None,
        "--concurrent/--sequential",
        help="Run independent modules concurrently. Default: from configuration.",
    ),
    json_output: bool = typer.Option(False, "--json", help="Output the run report as JSON."),
) -> None:
    """Install modules in dependency order, checkpointing after each one."""
    if policy is not None and policy not in _POLICIES:
        runtime.err_console.print(f"[red]Error:[/red] unknown policy '{policy}'")
        raise typer.Exit(2)

    settings = runtime.load_settings(config)
    registry = runtime.build_registry(settings)
    requested = runtime.parse_modules(modules)
    interactive = sys.stdin.isatty()

    async def _run() -> RunReport:
        async with runtime.open_store(settings, read_only=dry_run) as store:
            engine = ExecutionEngine(registry, store, settings, interactive=interactive)
            if dry_run:
                return await engine.run(requested, dry_run=True, policy=policy)  # type: ignore[arg-type]
            with ProcessLock(settings.engine.state_dir):
                _install_signal_handlers(engine)
                try:
                    return await engine.run(
                        requested, policy=policy, concurrent=concurrent  # type: ignore[arg-type]
                    )
                finally:
                    _remove_signal_handlers()

    report = runtime.run(_run())
    if json_output:
        runtime.echo_json(report.to_dict())
    else:
        _print_report(report)
    raise typer.Exit(int(report.exit_code))


def validate(
    config: Path | None = typer.Option(None, "--config", "-c", help="Path to config.yaml."),
    modules: str | None = typer.Option(None, "--modules", "-m", help="Comma-separated module names."),
    json_output: bool = typer.Option(False, "--json", help="Output the plan as JSON."),
) -> None:
    """Validate configuration and the dependency graph without touching the host."""
    settings = runtime.load_settings(config)
    registry = runtime.build_registry(settings)
    requested = runtime.parse_modules(modules)

    async def _validate() -> list[str]:
        engine = ExecutionEngine(registry, _unopened_store(settings), settings)
        plan = await engine.validate(requested)
        return list(plan)

    plan = runtime.run(_validate())
    if json_output:
        runtime.echo_json({"valid": True, "plan": plan})
        return
    console.print("[green]Configuration is valid.[/green]")
    console.print("Execution order: " + " -> ".join(plan))


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _unopened_store(settings: Settings) -> CheckpointStore:
    # validate() never reads state; the store is not opened.
    return CheckpointStore(settings.engine.state_dir)


def _install_signal_handlers(engine: ExecutionEngine) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, engine.request_stop)
        except (NotImplementedError, RuntimeError):
            log.debug("signal_handler_unavailable", signal=sig.name)


def _remove_signal_handlers() -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.remove_signal_handler(sig)
        except (NotImplementedError, RuntimeError):
            log.debug("signal_handler_unavailable", signal=sig.name)


def _module_label(report: RunReport, name: str) -> str:
    if name in report.installed:
        return "[green]installed[/green]"
    if name in report.skipped:
        return "[cyan]skipped (already installed)[/cyan]"
    if report.rollback is not None:
        if name in report.rollback.failed:
            return "[bold red]rollback failed[/bold red]"
        if name in report.rollback.rolled_back:
            return "[yellow]rolled back[/yellow]"
    if name == report.failed_module:
        return f"[red]failed ({report.failed_step})[/red]"
    if report.dry_run:
        return "would install"
    return "[dim]not run[/dim]"


def _print_report(report: RunReport) -> None:
    title = "Execution plan (dry run)" if report.dry_run else f"Run {report.run_id}"
    table = Table(title=title)
    table.add_column("#", justify="right")
    table.add_column("Module", style="cyan")
    table.add_column("Result")
    for index, name in enumerate(report.plan, start=1):
        table.add_row(str(index), name, _module_label(report, name))
    console.print(table)

    console.print(f"Status: [bold]{report.status.value}[/bold]")
    if report.error:
        console.print(f"[red]{report.error}[/red]")
    if report.rollback is not None and not report.rollback.succeeded:
        console.print("[bold red]Rollback did not complete; manual recovery is required.[/bold red]")
        for name, error in report.rollback.failed.items():
            console.print(f"  [red]{name}[/red]: {error}")
        if report.rollback.not_attempted:
            console.print("  not attempted: " + ", ".join(report.rollback.not_attempted))
