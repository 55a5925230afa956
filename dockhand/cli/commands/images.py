"""``dockhand images`` and ``dockhand load`` — published and loaded images."""

from __future__ import annotations

import typer

from dockhand.cli.common import console, handle_errors, make_orchestrator
from dockhand.cli.renderers import render_images


def images_cmd(
    repository: str = typer.Option(None, "--repository", "-r", help="Filter by repository."),
    runtime: bool = typer.Option(
        False, "--runtime", help="List the runtime store instead of the registry."
    ),
) -> None:
    """List images."""
    with handle_errors():
        orchestrator = make_orchestrator()
        if runtime:
            images = orchestrator.runtime_store.list_images()
            if repository:
                images = [i for i in images if i.repository == repository]
            title = "Runtime store"
        else:
            images = orchestrator.registry.list_images(repository)
            title = "Registry"
    if not images:
        console.print("[dim]No images.[/dim]")
        return
    console.print(render_images(images, title=title))


def load_cmd(
    tag: str = typer.Argument(..., help="Tag of a published image."),
    repository: str = typer.Option(None, "--repository", "-r", help="Image repository."),
) -> None:
    """Load a published image into the isolated runtime's local store."""
    with handle_errors():
        image = make_orchestrator().load(tag, repository=repository)
    console.print(f"[green]Loaded[/green] {image.reference} ({image.digest[:19]})")
