"""Image references and manifests.

An image is immutable and addressed by the digest of its manifest. Tags
are human-facing aliases that must never be rebound to other content,
because the target runtime's image cache keys on the tag alone.
"""

from __future__ import annotations

from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict, Field


class ImageRef(BaseModel):
    """A tagged, digest-pinned image reference."""

    model_config = ConfigDict(frozen=True)

    repository: str
    tag: str
    digest: str  # "sha256:<hex>" of the canonical manifest

    @property
    def reference(self) -> str:
        """The ``repository:tag`` form used in workload specs."""
        return f"{self.repository}:{self.tag}"

    def __str__(self) -> str:
        return f"{self.reference}@{self.digest[:19]}"


class ImageManifest(BaseModel):
    """Layer composition of an image.

    Only the fields that describe content participate in the digest;
    ``created_at`` is bookkeeping.
    """

    model_config = ConfigDict(frozen=True)

    runtime_env: str
    runtime_identity: str
    skeleton_layer: str  # content address of the skeleton archive
    payload_layer: str  # content address of the payload archive
    config_layers: dict[str, str] = {}  # config file name -> content address
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )

    def content(self) -> dict[str, object]:
        """The digest-relevant subset of the manifest."""
        return self.model_dump(mode="json", exclude={"created_at"})

    @property
    def layers(self) -> list[str]:
        return [self.skeleton_layer, self.payload_layer, *sorted(self.config_layers.values())]
