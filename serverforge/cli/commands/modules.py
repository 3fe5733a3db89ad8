"""CLI — Module listing command."""

from __future__ import annotations

from pathlib import Path

import typer
from rich.console import Console
from rich.table import Table

from serverforge.cli import runtime

console = Console()


def list_modules(
    format: str = typer.Option("table", "--format", "-f", help="Output format: table or json."),
    config: Path | None = typer.Option(None, "--config", "-c", help="Path to config.yaml."),
) -> None:
    """List registered modules in declaration order."""
    if format not in ("table", "json"):
        runtime.err_console.print(f"[red]Error:[/red] unknown format '{format}'")
        raise typer.Exit(2)

    settings = runtime.load_settings(config)
    registry = runtime.build_registry(settings)
    modules = registry.status_report()

    if format == "json":
        runtime.echo_json(modules)
        return

    table = Table(title="Registered Modules")
    table.add_column("Name", style="cyan")
    table.add_column("Version")
    table.add_column("Depends on")
    table.add_column("Provides")
    table.add_column("Root", justify="center")
    table.add_column("Description")
    for m in modules:
        table.add_row(
            m["name"],
            m["version"],
            ", ".join(m["dependencies"]) or "-",
            ", ".join(m["provides"]) or "-",
            "yes" if m["requires_root"] else "no",
            m["description"],
        )
    console.print(table)
