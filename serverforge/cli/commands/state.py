"""CLI — State inspection and recovery commands."""

from __future__ import annotations

import datetime
import json
from pathlib import Path
from typing import Any

import typer
from rich.console import Console
from rich.table import Table

from serverforge.cli import runtime
from serverforge.exceptions import RollbackError
from serverforge.orchestration.executor import ExecutionEngine
from serverforge.orchestration.locks import ProcessLock
from serverforge.orchestration.rollback import RollbackReport

console = Console()


def _ts(value: float | None) -> str:
    if value is None:
        return "-"
    return datetime.datetime.fromtimestamp(value).strftime("%Y-%m-%d %H:%M:%S")


def status(
    config: Path | None = typer.Option(None, "--config", "-c", help="Path to config.yaml."),
    json_output: bool = typer.Option(False, "--json", help="Output raw JSON."),
) -> None:
    """Show installed modules and the most recent run."""
    settings = runtime.load_settings(config)

    async def _status() -> dict[str, Any]:
        async with runtime.open_store(settings) as store:
            latest = await store.load_latest()
            run = await store.latest_run()
            intents = await store.dangling_intents()
        return {
            "state_file": str(settings.state_file),
            "installed": list(latest.completed_modules) if latest else [],
            "latest_checkpoint": latest.to_dict() if latest else None,
            "latest_run": run.to_dict() if run else None,
            "interrupted_installs": [{"run_id": r, "module": m} for r, m, _ in intents],
        }

    data = runtime.run(_status())
    if json_output:
        runtime.echo_json(data)
        return

    console.print(f"State file: {data['state_file']}")
    installed = data["installed"]
    console.print(
        "Installed modules: " + (", ".join(installed) if installed else "[dim]none[/dim]")
    )
    checkpoint = data["latest_checkpoint"]
    if checkpoint:
        console.print(f"Latest checkpoint: {checkpoint['id']} ({_ts(checkpoint['timestamp'])})")

    run = data["latest_run"]
    if run:
        table = Table(title=f"Run {run['run_id']} — {run['status']}")
        table.add_column("Module", style="cyan")
        table.add_column("State")
        table.add_column("Step")
        table.add_column("Error", style="red")
        for name, ms in run["module_states"].items():
            table.add_row(name, ms["state"], ms["step"] or "-", ms["error"] or "")
        console.print(table)

    for intent in data["interrupted_installs"]:
        console.print(
            f"[yellow]Interrupted install of {intent['module']} "
            f"(run {intent['run_id']}) will be reversed on the next run.[/yellow]"
        )


def rollback(
    target: str = typer.Argument(
        "latest",
        help=(
            "Checkpoint id, 'latest' (undo interrupted installs only) "
            "or 'initial' (undo everything)."
        ),
    ),
    strict: bool = typer.Option(False, "--strict", help="Stop at the first failed undo."),
    config: Path | None = typer.Option(None, "--config", "-c", help="Path to config.yaml."),
    json_output: bool = typer.Option(False, "--json", help="Output the rollback report as JSON."),
) -> None:
    """Roll the host back to a checkpoint."""
    settings = runtime.load_settings(config)
    registry = runtime.build_registry(settings)

    async def _rollback() -> RollbackReport:
        async with runtime.open_store(settings) as store:
            with ProcessLock(settings.engine.state_dir):
                engine = ExecutionEngine(registry, store, settings)
                try:
                    return await engine.rollback_to(target, policy="strict" if strict else None)
                except RollbackError as exc:
                    return exc.report

    report = runtime.run(_rollback())
    if json_output:
        runtime.echo_json(report.to_dict())
    else:
        _print_rollback(report)
    if not report.succeeded:
        raise typer.Exit(6)


def _print_rollback(report: RollbackReport) -> None:
    if not (report.rolled_back or report.failed or report.not_attempted):
        console.print("Nothing to roll back.")
        return
    table = Table(title="Rollback")
    table.add_column("Module", style="cyan")
    table.add_column("Result")
    for name in report.rolled_back:
        table.add_row(name, "[green]rolled back[/green]")
    for name, error in report.failed.items():
        table.add_row(name, f"[bold red]failed: {error}[/bold red]")
    for name in report.not_attempted:
        table.add_row(name, "[yellow]not attempted[/yellow]")
    console.print(table)
    if not report.succeeded:
        console.print(
            "[bold red]The host may be in an unknown state; finish recovery manually.[/bold red]"
        )


def checkpoints(
    config: Path | None = typer.Option(None, "--config", "-c", help="Path to config.yaml."),
    json_output: bool = typer.Option(False, "--json", help="Output raw JSON."),
) -> None:
    """List checkpoints, oldest first."""
    settings = runtime.load_settings(config)

    async def _list() -> list[dict[str, Any]]:
        async with runtime.open_store(settings) as store:
            return [c.to_dict() for c in await store.list_checkpoints()]

    items = runtime.run(_list())
    if json_output:
        runtime.echo_json(items)
        return

    table = Table(title="Checkpoints")
    table.add_column("ID", style="cyan")
    table.add_column("Created")
    table.add_column("Kind")
    table.add_column("Description")
    table.add_column("Installed modules")
    for cp in items:
        table.add_row(
            cp["id"],
            _ts(cp["timestamp"]),
            cp["kind"],
            cp["description"],
            ", ".join(cp["completed_modules"]) or "-",
        )
    console.print(table)


def export(
    output: Path | None = typer.Option(None, "--output", "-o", help="Write to a file instead of stdout."),
    config: Path | None = typer.Option(None, "--config", "-c", help="Path to config.yaml."),
) -> None:
    """Export the persisted state as a JSON document."""
    settings = runtime.load_settings(config)

    async def _export() -> dict[str, Any]:
        async with runtime.open_store(settings) as store:
            return await store.export()

    document = runtime.run(_export())
    if output is None:
        runtime.echo_json(document)
        return
    output.write_text(json.dumps(document, indent=2, default=str))
    console.print(f"[green]State exported to {output}[/green]")


def prune(
    keep: int = typer.Option(..., "--keep", min=1, help="Number of newest checkpoints to keep."),
    config: Path | None = typer.Option(None, "--config", "-c", help="Path to config.yaml."),
) -> None:
    """Delete all but the newest KEEP checkpoints."""
    settings = runtime.load_settings(config)

    async def _prune() -> int:
        async with runtime.open_store(settings) as store:
            with ProcessLock(settings.engine.state_dir):
                return await store.prune(keep)

    removed = runtime.run(_prune())
    console.print(f"Removed {removed} checkpoint(s); kept the newest {keep}.")
