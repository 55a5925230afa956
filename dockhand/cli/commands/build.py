"""``dockhand build --tag TAG`` — run the pipeline and publish an image.

Stages run in order against the source tree; each stage is looked up in
the artifact cache first and executed only on a miss. The final stage's
output is bundled and published under TAG. Tags are never reused.
"""

from __future__ import annotations

from pathlib import Path

import typer

from dockhand.cli.common import console, handle_errors, load_definition, make_orchestrator
from dockhand.cli.renderers import render_build


def build_cmd(
    tag: str = typer.Option(..., "--tag", "-t", help="Tag for the published image."),
    source: Path = typer.Option(
        Path("."), "--source", "-s", help="Root of the source tree."
    ),
    pipeline_file: Path = typer.Option(
        None, "--file", "-f", help="Pipeline file (default: dockhand.yaml)."
    ),
    prior_cache: Path = typer.Option(
        None, "--prior-cache", help="Read-only cache directory consulted on local miss."
    ),
    load: bool = typer.Option(
        False, "--load", help="Also load the image into the local runtime store."
    ),
) -> None:
    """Build, bundle and publish an image."""
    with handle_errors():
        definition = load_definition(pipeline_file)
        orchestrator = make_orchestrator()
        result = orchestrator.build(
            definition, tag=tag, source_root=source, prior_cache=prior_cache
        )
        console.print(render_build(result))
        if load:
            orchestrator.registry.load(result.image, orchestrator.runtime_store)
            console.print(f"[green]Loaded[/green] {result.image.reference} into the runtime store")

    # Print the reference plainly for scripting
    console.print(f"[bold]{result.image.reference}[/bold]")
