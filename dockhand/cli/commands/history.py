"""``dockhand history`` — recent builds from the ledger."""

from __future__ import annotations

import typer
from rich.table import Table

from dockhand.cli.common import console, handle_errors, make_orchestrator
from dockhand.cli.renderers import render_history


def history_cmd(
    build_id: str = typer.Argument(None, help="Show every ledger entry of one build."),
    limit: int = typer.Option(10, "--limit", "-n", help="Number of builds to list."),
) -> None:
    """List recent builds, or the verified ledger entries of one build."""
    with handle_errors():
        orchestrator = make_orchestrator()
        if build_id is None:
            history = orchestrator.history(limit)
        else:
            entries = orchestrator.build_entries(build_id)

    if build_id is None:
        if not history:
            console.print("[dim]No builds recorded.[/dim]")
            return
        console.print(render_history(history))
        return

    if not entries:
        console.print(f"[bold red]Unknown build:[/bold red] {build_id}")
        raise typer.Exit(code=1)
    table = Table(title=f"Build {build_id}  [green]chain valid[/green]")
    table.add_column("Time", style="dim")
    table.add_column("Stage", style="cyan")
    table.add_column("Transition")
    table.add_column("Detail")
    for entry in entries:
        table.add_row(
            entry.timestamp_utc.strftime("%H:%M:%S"),
            entry.stage_name,
            entry.state_transition,
            entry.artifact_address[:19] or entry.detail,
        )
    console.print(table)
