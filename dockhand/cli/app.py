"""Main Typer application — imports and registers all CLI commands.

Entry point: ``dockhand`` (configured via pyproject.toml scripts).
"""

from __future__ import annotations

import logging

import typer
from rich.logging import RichHandler

from dockhand import __version__
from dockhand.cli.commands.build import build_cmd
from dockhand.cli.commands.deploy import apply_cmd, manifests_cmd, status_cmd
from dockhand.cli.commands.history import history_cmd
from dockhand.cli.commands.images import images_cmd, load_cmd
from dockhand.cli.commands.launch import launch_cmd
from dockhand.cli.common import console
from dockhand.config import settings

app = typer.Typer(
    name="dockhand",
    help="Dockhand: cache-aware layered builds, immutable images, reconciled deployments.",
    no_args_is_help=True,
    rich_markup_mode="rich",
    add_completion=False,
)

# Register subcommands
app.command(name="build", help="Build, bundle and publish an image.")(build_cmd)
app.command(name="images", help="List published or loaded images.")(images_cmd)
app.command(name="load", help="Load an image into the local runtime store.")(load_cmd)
app.command(name="manifests", help="Render cluster manifests for a tag.")(manifests_cmd)
app.command(name="apply", help="Reconcile the workload to a tag.")(apply_cmd)
app.command(name="status", help="Show the deployed workload.")(status_cmd)
app.command(
    name="launch",
    help="Validate runtime config, then exec the workload.",
    context_settings={"allow_interspersed_args": False},
)(launch_cmd)
app.command(name="history", help="Show recent builds from the ledger.")(history_cmd)


def _version_callback(value: bool) -> None:
    if value:
        console.print(f"dockhand {__version__}")
        raise typer.Exit()


@app.callback()
def main_callback(
    log_level: str = typer.Option(
        None, "--log-level", help="Logging level (default: DOCKHAND_LOG_LEVEL or INFO)."
    ),
    version: bool = typer.Option(
        False, "--version", callback=_version_callback, is_eager=True, help="Show the version."
    ),
) -> None:
    """Configure logging for every command."""
    level = (log_level or settings.log_level).upper()
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=False, show_path=False)],
        force=True,
    )


def main() -> None:
    """CLI entry point."""
    app()


if __name__ == "__main__":
    main()
