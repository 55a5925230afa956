"""Helpers shared by the CLI commands."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

import typer
from rich.console import Console

from dockhand.cli.renderers import print_error
from dockhand.config import DockhandSettings
from dockhand.core.build_ledger import LedgerIntegrityError
from dockhand.core.cache_store import CacheIntegrityError
from dockhand.core.executor import (
    DeclarationViolation,
    EnvironmentUnavailableError,
    StepFailure,
)
from dockhand.core.orchestrator import Orchestrator
from dockhand.core.pipeline import BuildFailedError
from dockhand.core.registry import ImageNotFoundError, TagConflict
from dockhand.deploy.cluster import WorkloadNotFoundError
from dockhand.deploy.manager import (
    DeploymentFailedError,
    ReconciliationCancelled,
    ReconciliationTimeout,
)
from dockhand.models.config import PipelineDefinition
from dockhand.pipeline_file import PipelineFileError, load_pipeline_file
from dockhand.secrets.layered_config import ConfigValidationError
from dockhand.secrets.provider import (
    DotenvSource,
    EnvironmentSource,
    InvalidSecretValue,
    MappingSource,
    MissingSecret,
    SecretProvider,
    SecretSource,
)

console = Console()

# Errors reported as a one-line diagnostic and exit code 1.
DOCKHAND_ERRORS: tuple[type[BaseException], ...] = (
    BuildFailedError,
    StepFailure,
    DeclarationViolation,
    EnvironmentUnavailableError,
    TagConflict,
    ImageNotFoundError,
    MissingSecret,
    InvalidSecretValue,
    ConfigValidationError,
    ReconciliationTimeout,
    ReconciliationCancelled,
    DeploymentFailedError,
    CacheIntegrityError,
    LedgerIntegrityError,
    PipelineFileError,
    WorkloadNotFoundError,
    FileNotFoundError,
    ValueError,
)


@contextmanager
def handle_errors() -> Iterator[None]:
    try:
        yield
    except DOCKHAND_ERRORS as exc:
        print_error(console, exc)
        raise typer.Exit(code=1) from exc


def make_orchestrator() -> Orchestrator:
    # Re-read settings per invocation so DOCKHAND_* changes take effect.
    return Orchestrator(DockhandSettings())


def load_definition(pipeline_file: Path | None) -> PipelineDefinition:
    return load_pipeline_file(pipeline_file or DockhandSettings().pipeline_file)


def build_provider(env_file: Path | None, pairs: list[str] | None) -> SecretProvider:
    """Environment, then an optional dotenv file, then ``NAME=VALUE`` pairs."""
    sources: list[SecretSource] = [EnvironmentSource()]
    if env_file is not None:
        sources.append(DotenvSource(env_file))
    if pairs:
        values: dict[str, str] = {}
        for pair in pairs:
            name, sep, value = pair.partition("=")
            if not sep or not name:
                raise typer.BadParameter(f"expected NAME=VALUE, got {pair!r}")
            values[name] = value
        sources.append(MappingSource(values))
    return SecretProvider(sources)


def secret_values(
    definition: PipelineDefinition,
    env_file: Path | None,
    pairs: list[str] | None,
) -> dict[str, str] | None:
    """Resolve the deployment's secret refs, or None if it binds no secret."""
    deployment = definition.deployment
    if deployment is None or not deployment.secret_name:
        return None
    return build_provider(env_file, pairs).resolve(deployment.secret_refs).as_env()
