"""``dockhand launch --config a.yaml --config b.yaml -- CMD ...``

Validates the layered runtime configuration and every secret it
references before the workload starts, then execs CMD with the resolved
values in its environment. Any missing value is reported by name and the
command exits 1 without starting the workload.
"""

from __future__ import annotations

from pathlib import Path

import typer

from dockhand.cli.common import build_provider, console, handle_errors
from dockhand.launcher import exec_workload, prepare_launch


def launch_cmd(
    command: list[str] = typer.Argument(None, help="Workload command, after --."),
    config: list[Path] = typer.Option(
        ..., "--config", "-c", help="Config layer; later layers override earlier ones."
    ),
    env_file: Path = typer.Option(None, "--env-file", help="Dotenv file with secret values."),
    listen_path: str = typer.Option(
        "backend.listen", "--listen-path", help="Dotted path of the listen address."
    ),
    check: bool = typer.Option(
        False, "--check", help="Validate only; do not start the workload."
    ),
) -> None:
    """Validate runtime config and start the workload."""
    with handle_errors():
        plan = prepare_launch(config, build_provider(env_file, None), listen_path=listen_path)
    if check:
        console.print(
            f"[green]Config valid.[/green] Listening on {plan.host}:{plan.port} "
            f"with {len(plan.secrets.names)} secret(s)."
        )
        return
    if not command:
        console.print("[bold red]No workload command given.[/bold red] Pass it after --.")
        raise typer.Exit(code=2)
    exec_workload(plan, command)
