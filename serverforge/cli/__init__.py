"""CLI layer — typer command surface."""
