"""Build stage declarations — explicit inputs, outputs, and transform steps.

A stage never sees anything it did not declare. The executor materialises
only the declared inputs into the stage snapshot and exports only the files
matching the declared outputs, so cache correctness is a property of the
declaration rather than of copy ordering.
"""

from __future__ import annotations

from enum import Enum
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class BuildStageState(str, Enum):
    """Per-stage outcome recorded in the build ledger."""

    PENDING = "pending"
    RUNNING = "running"
    CACHED = "cached"
    PASSED = "passed"
    FAILED = "failed"
    SKIPPED = "skipped"


# Terminal states (CACHED, PASSED, FAILED, SKIPPED) have no outgoing transitions.
VALID_STAGE_TRANSITIONS: dict[BuildStageState, set[BuildStageState]] = {
    BuildStageState.PENDING: {
        BuildStageState.RUNNING,
        BuildStageState.CACHED,
        BuildStageState.SKIPPED,
    },
    BuildStageState.RUNNING: {BuildStageState.PASSED, BuildStageState.FAILED},
    BuildStageState.CACHED: set(),
    BuildStageState.PASSED: set(),
    BuildStageState.FAILED: set(),
    BuildStageState.SKIPPED: set(),
}


class BaseEnvironment(BaseModel):
    """The environment a stage snapshot is rooted at.

    ``root`` is an optional directory laid down under every snapshot before
    the stage's inputs are copied in. Its content digest, together with
    ``name`` and ``version``, forms the environment identity that feeds
    every cache key built on top of it.
    """

    model_config = ConfigDict(frozen=True)

    name: str
    version: str = ""
    root: Path | None = None
    env: dict[str, str] = {}  # variables exported to every run step


class TransformStep(BaseModel):
    """A single transform applied inside a stage snapshot.

    Kinds
    -----
    ``run``
        Execute ``argv`` with the snapshot root as working directory.
    ``prune``
        Delete every file under ``within`` (default: whole snapshot) that
        does not match one of the ``keep`` patterns. Patterns match either
        the full relative path or the file's basename.
    ``extract``
        Unpack the tar archive at ``archive`` into ``dest``.

    ``cache_dirs`` on a ``run`` step names snapshot directories backed by a
    persistent per-host cache (package manager caches and the like). Their
    contents survive between builds, are exempt from the declaration check,
    never reach the stage output and do not feed the cache key.
    """

    model_config = ConfigDict(frozen=True)

    name: str = ""
    kind: Literal["run", "prune", "extract"] = "run"
    argv: list[str] = []
    env: dict[str, str] = {}
    timeout_seconds: float | None = None
    keep: list[str] = []
    within: str | None = None
    archive: str | None = None
    dest: str = "."
    cache_dirs: list[str] = []

    @field_validator("cache_dirs")
    @classmethod
    def _relative_cache_dirs(cls, value: list[str]) -> list[str]:
        for path in value:
            parts = Path(path).parts
            if not parts or Path(path).is_absolute() or ".." in parts:
                raise ValueError(f"cache dir {path!r} must be a relative path inside the snapshot")
        return [Path(p).as_posix() for p in value]

    @model_validator(mode="after")
    def _check_kind_fields(self) -> TransformStep:
        if self.cache_dirs and self.kind != "run":
            raise ValueError(f"{self.kind} step {self.name!r} cannot mount cache dirs")
        if self.kind == "run" and not self.argv:
            raise ValueError(f"run step {self.name!r} needs a non-empty argv")
        if self.kind == "prune" and not self.keep:
            raise ValueError(f"prune step {self.name!r} needs at least one keep pattern")
        if self.kind == "extract" and not self.archive:
            raise ValueError(f"extract step {self.name!r} needs an archive path")
        return self

    @property
    def label(self) -> str:
        if self.name:
            return self.name
        if self.kind == "run":
            return " ".join(self.argv)
        return self.kind


class StageInput(BaseModel):
    """A declared input: a path or glob from the source tree or a prior stage."""

    model_config = ConfigDict(frozen=True)

    path: str
    from_stage: str | None = None  # None means the build's source tree
    dest: str | None = None  # relocation prefix inside the snapshot


class BuildStage(BaseModel):
    """One phase of the build with explicit declared inputs and outputs."""

    model_config = ConfigDict(frozen=True)

    name: str
    base_env: BaseEnvironment
    steps: list[TransformStep] = []
    inputs: list[StageInput] = []
    outputs: list[str] = Field(default_factory=lambda: ["*"])

    @field_validator("inputs", mode="before")
    @classmethod
    def _coerce_inputs(cls, value: Any) -> Any:
        # Plain strings are shorthand for source-tree paths.
        if isinstance(value, list):
            return [{"path": v} if isinstance(v, str) else v for v in value]
        return value

    @field_validator("outputs")
    @classmethod
    def _require_outputs(cls, value: list[str]) -> list[str]:
        if not value:
            raise ValueError("a stage must declare at least one output pattern")
        return value
