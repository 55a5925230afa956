"""Rich renderers for build results, images, workloads and build history.

Color scheme
------------
- green     : passed / ready
- cyan      : cached
- red       : failed
- yellow    : running / starting
- dim       : pending / skipped / terminating
"""

from __future__ import annotations

from rich.console import Console, Group
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from dockhand.core.pipeline import BuildResult
from dockhand.models.deploy import ApplyResult, InstanceState, ObservedWorkload
from dockhand.models.images import ImageRef

_STATE_ICONS: dict[str, str] = {
    "passed": "[green]PASSED[/green]",
    "cached": "[cyan]CACHED[/cyan]",
    "failed": "[bold red]FAILED[/bold red]",
    "running": "[yellow]RUNNING[/yellow]",
    "pending": "[dim]PENDING[/dim]",
    "skipped": "[dim]SKIPPED[/dim]",
}

_INSTANCE_ICONS: dict[InstanceState, str] = {
    InstanceState.READY: "[green]ready[/green]",
    InstanceState.STARTING: "[yellow]starting[/yellow]",
    InstanceState.PENDING: "[dim]pending[/dim]",
    InstanceState.FAILED: "[bold red]failed[/bold red]",
    InstanceState.TERMINATING: "[dim]terminating[/dim]",
}


def _short(digest: str) -> str:
    return digest[:19] if digest else "-"


def render_build(result: BuildResult) -> Panel:
    table = Table(show_header=True, header_style="bold cyan", expand=True)
    table.add_column("#", style="dim", width=3, justify="right")
    table.add_column("Stage", min_width=16)
    table.add_column("State", justify="center")
    table.add_column("Cache key")
    table.add_column("Files", justify="right")

    for i, artifact in enumerate(result.artifacts):
        state = _STATE_ICONS["cached" if artifact.cached else "passed"]
        table.add_row(
            str(i), artifact.stage, state, _short(artifact.cache_key), str(len(artifact.files))
        )

    summary = (
        f"[bold]Image:[/bold] {result.image.reference}  |  "
        f"[bold]Digest:[/bold] {_short(result.image.digest)}  |  "
        f"[bold]Cache hits:[/bold] {result.cache_hits}/{len(result.artifacts)}  |  "
        f"[bold]Skeleton files:[/bold] {len(result.skeleton_files)}"
    )
    return Panel(
        Group(table, Text(""), Text.from_markup(summary)),
        title=f"[bold]Build {result.build_id}[/bold]",
        border_style="green",
        padding=(1, 2),
    )


def render_images(images: list[ImageRef], *, title: str) -> Table:
    table = Table(title=title)
    table.add_column("Repository", style="cyan")
    table.add_column("Tag", style="green")
    table.add_column("Digest")
    for image in images:
        table.add_row(image.repository, image.tag, _short(image.digest))
    return table


def render_apply(result: ApplyResult) -> Panel:
    if result.noop:
        lines = ["[dim]No changes; workload already matches desired state.[/dim]"]
    else:
        lines = [f"- {op.kind.value} [bold]{op.target}[/bold] {op.detail}" for op in result.operations]
    lines += [
        "",
        f"[bold]Revision:[/bold] {result.revision}  |  "
        f"[bold]Ready:[/bold] {result.ready_replicas}  |  "
        f"[bold]Retries:[/bold] {result.retries}",
    ]
    return Panel(
        "\n".join(lines),
        title=f"[bold]Applied {result.workload}[/bold]",
        border_style="green",
        padding=(1, 2),
    )


def render_workload(workload: ObservedWorkload) -> Table:
    table = Table(
        title=(
            f"{workload.namespace}/{workload.name}  {workload.image.reference}  "
            f"rev {workload.revision}  {workload.ready_replicas}/{workload.replicas} ready"
        )
    )
    table.add_column("Instance", style="cyan")
    table.add_column("Revision", justify="right")
    table.add_column("State", justify="center")
    table.add_column("Reason")
    for instance in workload.instances:
        table.add_row(
            instance.instance_id,
            str(instance.revision),
            _INSTANCE_ICONS.get(instance.state, instance.state.value),
            instance.reason or "[dim]-[/dim]",
        )
    return table


def render_history(history: list[tuple[str, dict[str, str]]]) -> Table:
    table = Table(title="Build history", show_header=True, header_style="bold cyan")
    table.add_column("Build", style="cyan")
    table.add_column("Stages")
    for build_id, states in history:
        table.add_row(
            build_id,
            "  ".join(f"{name} {_STATE_ICONS.get(state, state)}" for name, state in states.items()),
        )
    return table


def print_error(console: Console, exc: BaseException) -> None:
    console.print(f"[bold red]{type(exc).__name__}:[/bold red] {escape(str(exc))}")
    cause = exc.__cause__
    if cause is not None and str(cause) not in str(exc):
        console.print(f"[red]  caused by {type(cause).__name__}:[/red] {escape(str(cause))}")
