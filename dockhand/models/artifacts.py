"""Content-addressed artifact models (immutable once stored)."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class StoredBlob(BaseModel):
    """Metadata for a stored blob — the bytes themselves live in the store."""

    model_config = ConfigDict(frozen=True)

    content_address: str  # "sha256:<hex>"
    artifact_type: str
    name: str
    size_bytes: int
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
    metadata: dict[str, Any] = {}


class Artifact(BaseModel):
    """The immutable filesystem snapshot a stage produced.

    ``content_address`` points at the deterministic snapshot archive in the
    cache store; ``files`` lists its sorted relative paths. ``cached`` is
    True when the artifact was served from the cache instead of executed.
    """

    model_config = ConfigDict(frozen=True)

    stage: str
    cache_key: str
    content_address: str
    files: list[str] = []
    size_bytes: int = 0
    cached: bool = False
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )


class Bundle(BaseModel):
    """Final build output split into a dependency skeleton and a payload.

    Both archives are deterministic, so identical build output always
    yields byte-identical skeletons.
    """

    model_config = ConfigDict(frozen=True)

    skeleton: bytes
    payload: bytes
    skeleton_files: list[str] = []
    payload_files: list[str] = []
