"""``dockhand manifests`` / ``apply`` / ``status`` — the deployment surface.

``apply`` reconciles the local cluster toward the pipeline file's
deployment section with the image published under TAG, then waits for the
rollout. Applying the same tag again performs no mutating operations.
"""

from __future__ import annotations

from pathlib import Path

import typer

from dockhand.cli.common import (
    console,
    handle_errors,
    load_definition,
    make_orchestrator,
    secret_values,
)
from dockhand.cli.renderers import render_apply, render_workload


def manifests_cmd(
    tag: str = typer.Option(..., "--tag", "-t", help="Image tag to deploy."),
    pipeline_file: Path = typer.Option(None, "--file", "-f", help="Pipeline file."),
    env_file: Path = typer.Option(None, "--env-file", help="Dotenv file with secret values."),
    secret: list[str] = typer.Option(None, "--secret", help="NAME=VALUE secret value."),
    output: Path = typer.Option(None, "--output", "-o", help="Write to a file instead of stdout."),
) -> None:
    """Render Namespace, Secret, Deployment and Service manifests."""
    with handle_errors():
        definition = load_definition(pipeline_file)
        values = secret_values(definition, env_file, secret) if (env_file or secret) else None
        text = make_orchestrator().manifests(definition, tag, values)
    if output is not None:
        output.write_text(text, encoding="utf-8")
        console.print(f"[green]Wrote[/green] {output}")
    else:
        typer.echo(text, nl=False)


def apply_cmd(
    tag: str = typer.Option(..., "--tag", "-t", help="Image tag to deploy."),
    pipeline_file: Path = typer.Option(None, "--file", "-f", help="Pipeline file."),
    env_file: Path = typer.Option(None, "--env-file", help="Dotenv file with secret values."),
    secret: list[str] = typer.Option(None, "--secret", help="NAME=VALUE secret value."),
    load: bool = typer.Option(
        False, "--load", help="Load the image into the runtime store first."
    ),
) -> None:
    """Apply the desired state and wait until the workload is ready."""
    with handle_errors():
        definition = load_definition(pipeline_file)
        values = secret_values(definition, env_file, secret)
        orchestrator = make_orchestrator()
        if load:
            orchestrator.load(tag, repository=definition.image.repository)
        result = orchestrator.deploy(definition, tag=tag, secret_values=values)
    console.print(render_apply(result))


def status_cmd(
    pipeline_file: Path = typer.Option(None, "--file", "-f", help="Pipeline file."),
) -> None:
    """Show the observed state of the deployed workload."""
    with handle_errors():
        definition = load_definition(pipeline_file)
        workload = make_orchestrator().status(definition)
    if workload is None:
        console.print("[dim]Workload not deployed.[/dim]")
        raise typer.Exit(code=1)
    console.print(render_workload(workload))
