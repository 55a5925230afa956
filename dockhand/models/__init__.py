"""Dockhand data models — all Pydantic v2, all frozen (immutable)."""

from dockhand.models.artifacts import Artifact, Bundle, StoredBlob
from dockhand.models.config import (
    DEFAULT_MANIFEST_PATTERNS,
    DeploymentSpec,
    ImageSpec,
    PipelineDefinition,
)
from dockhand.models.deploy import (
    VALID_INSTANCE_TRANSITIONS,
    ApplyResult,
    DesiredState,
    Instance,
    InstanceState,
    ObservedWorkload,
    Operation,
    OperationKind,
    PortMapping,
    PullPolicy,
    RolloutPolicy,
)
from dockhand.models.images import ImageManifest, ImageRef
from dockhand.models.ledger import LedgerEntry
from dockhand.models.stages import (
    VALID_STAGE_TRANSITIONS,
    BaseEnvironment,
    BuildStage,
    BuildStageState,
    StageInput,
    TransformStep,
)

__all__ = [
    # artifacts
    "Artifact",
    "Bundle",
    "StoredBlob",
    # stages
    "BaseEnvironment",
    "BuildStage",
    "BuildStageState",
    "StageInput",
    "TransformStep",
    "VALID_STAGE_TRANSITIONS",
    # images
    "ImageManifest",
    "ImageRef",
    # deploy
    "ApplyResult",
    "DesiredState",
    "Instance",
    "InstanceState",
    "ObservedWorkload",
    "Operation",
    "OperationKind",
    "PortMapping",
    "PullPolicy",
    "RolloutPolicy",
    "VALID_INSTANCE_TRANSITIONS",
    # ledger
    "LedgerEntry",
    # config
    "DEFAULT_MANIFEST_PATTERNS",
    "DeploymentSpec",
    "ImageSpec",
    "PipelineDefinition",
]
