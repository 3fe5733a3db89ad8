"""ServerForge CLI — Entry point.

Usage:
    serverforge install [--modules a,b] [--config FILE] [--dry-run] [--policy P] [--concurrent]
    serverforge status [--json]
    serverforge rollback [CHECKPOINT_ID|latest|initial] [--strict]
    serverforge validate [--config FILE] [--modules a,b]
    serverforge list-modules [--format table|json]
    serverforge checkpoints
    serverforge export [--output FILE]
    serverforge prune --keep N

Exit codes:
    0 success, 1 failure, 2 configuration error, 3 permission denied,
    4 missing external dependency, 5 dependency graph error, 6 rollback failure
"""

from __future__ import annotations

import typer

from serverforge import __version__
from serverforge.cli.commands import install, modules, state

app = typer.Typer(
    name="serverforge",
    help="ServerForge — Dependency-aware, checkpointed server provisioning.",
    no_args_is_help=True,
    pretty_exceptions_enable=False,
)

app.command("install")(install.install)
app.command("validate")(install.validate)
app.command("status")(state.status)
app.command("rollback")(state.rollback)
app.command("checkpoints")(state.checkpoints)
app.command("export")(state.export)
app.command("prune")(state.prune)
app.command("list-modules")(modules.list_modules)


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"serverforge {__version__}")
        raise typer.Exit()


@app.callback()
def main_callback(
    version: bool = typer.Option(
        False, "--version", callback=_version_callback, is_eager=True, help="Show the version."
    ),
) -> None:
    pass


if __name__ == "__main__":
    app()
