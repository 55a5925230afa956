"""Pipeline definition models — what a ``dockhand.yaml`` describes."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, model_validator

from dockhand.models.deploy import DesiredState, PortMapping, PullPolicy
from dockhand.models.images import ImageRef
from dockhand.models.stages import BaseEnvironment, BuildStage

DEFAULT_MANIFEST_PATTERNS: list[str] = [
    "package.json",
    "yarn.lock",
    ".yarnrc.yml",
    "backstage.json",
    "pyproject.toml",
    "poetry.lock",
    "requirements*.txt",
]


class ImageSpec(BaseModel):
    """How the final stage's output is packaged into an image."""

    model_config = ConfigDict(frozen=True)

    repository: str = "app"
    runtime: BaseEnvironment
    config_files: list[str] = []  # source-relative, shipped as config layers
    payload_root: str = "."
    manifest_patterns: list[str] = list(DEFAULT_MANIFEST_PATTERNS)


class DeploymentSpec(BaseModel):
    """A desired state minus the image, which each build supplies."""

    model_config = ConfigDict(frozen=True)

    name: str
    namespace: str = "default"
    replicas: int = 1
    ports: list[PortMapping] = []
    secret_name: str | None = None
    secret_refs: list[str] = []
    pull_policy: PullPolicy = PullPolicy.NEVER

    def to_desired(self, image: ImageRef) -> DesiredState:
        return DesiredState(image=image, **self.model_dump())


class PipelineDefinition(BaseModel):
    model_config = ConfigDict(frozen=True)

    image: ImageSpec
    stages: list[BuildStage]
    deployment: DeploymentSpec | None = None

    @model_validator(mode="after")
    def _unique_stage_names(self) -> PipelineDefinition:
        seen: set[str] = set()
        for stage in self.stages:
            if stage.name in seen:
                raise ValueError(f"duplicate stage name {stage.name!r}")
            seen.add(stage.name)
        if not self.stages:
            raise ValueError("a pipeline needs at least one stage")
        return self
