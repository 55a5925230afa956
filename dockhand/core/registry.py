"""Image registry and the isolated runtime's local image store.

``ImageRegistry`` owns the tag table: a tag, once bound to an image digest,
stays bound. Publishing different content under an existing tag raises
``TagConflict``; republishing identical content is a no-op.

``RuntimeImageStore`` stands in for a cluster runtime's local image cache
(the thing ``pullPolicy: Never`` reads from). It keys on ``repository:tag``
only, which is why tags must never be reused: a second image under an old
tag would be invisible to the runtime.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from collections.abc import Mapping
from datetime import datetime, timezone
from pathlib import Path

from dockhand.core.cache_store import ArtifactCacheStore
from dockhand.core.hasher import compute_environment_identity, content_address
from dockhand.models.images import ImageManifest, ImageRef
from dockhand.models.stages import BaseEnvironment

logger = logging.getLogger(__name__)

_CREATE_IMAGES = """
CREATE TABLE IF NOT EXISTS images (
    id            INTEGER PRIMARY KEY AUTOINCREMENT,
    repository    TEXT NOT NULL,
    tag           TEXT NOT NULL,
    digest        TEXT NOT NULL,
    manifest_json TEXT NOT NULL,
    published_at  TEXT NOT NULL,
    UNIQUE (repository, tag)
);
"""


class TagConflict(RuntimeError):
    """Raised when a tag is already bound to different content."""

    def __init__(self, reference: str, existing_digest: str, attempted_digest: str) -> None:
        self.reference = reference
        self.existing_digest = existing_digest
        self.attempted_digest = attempted_digest
        super().__init__(
            f"Tag {reference} is already bound to {existing_digest[:19]}; refusing to "
            f"rebind it to {attempted_digest[:19]}. Mint a new tag for every build."
        )


class ImageNotFoundError(KeyError):
    """Raised when a tag or digest is unknown to a store."""

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else "image not found"


class RuntimeImageStore:
    """A target runtime's local image store, keyed by ``repository:tag``.

    Parameters
    ----------
    base_path:
        Directory holding ``images.json`` and the layer blobs.
    """

    def __init__(self, base_path: Path) -> None:
        self._base = Path(base_path)
        self._blobs = ArtifactCacheStore(self._base)
        self._index_path = self._base / "images.json"
        self._lock = threading.Lock()

    def _read_index(self) -> dict[str, dict[str, str]]:
        if not self._index_path.exists():
            return {}
        return json.loads(self._index_path.read_text(encoding="utf-8"))

    def _write_index(self, index: dict[str, dict[str, str]]) -> None:
        tmp = self._index_path.with_suffix(".json.tmp")
        tmp.write_text(json.dumps(index, indent=2, sort_keys=True), encoding="utf-8")
        tmp.replace(self._index_path)

    def get(self, reference: str) -> ImageRef | None:
        """Return the image stored under ``repository:tag``, or None."""
        record = self._read_index().get(reference)
        if record is None:
            return None
        repository, _, tag = reference.rpartition(":")
        return ImageRef(repository=repository, tag=tag, digest=record["digest"])

    def has(self, reference: str) -> bool:
        return self.get(reference) is not None

    def list_images(self) -> list[ImageRef]:
        refs = []
        for reference, record in sorted(self._read_index().items()):
            repository, _, tag = reference.rpartition(":")
            refs.append(ImageRef(repository=repository, tag=tag, digest=record["digest"]))
        return refs

    def import_image(
        self,
        image: ImageRef,
        manifest: ImageManifest,
        layers: Mapping[str, bytes],
    ) -> None:
        """Store an image's layers and bind its tag.

        Raises ``TagConflict`` if the tag already holds other content.
        """
        with self._lock:
            index = self._read_index()
            existing = index.get(image.reference)
            if existing is not None:
                if existing["digest"] != image.digest:
                    raise TagConflict(image.reference, existing["digest"], image.digest)
                logger.info("%s already present in runtime store", image.reference)
                return
            for address, data in layers.items():
                stored = self._blobs.store(data, artifact_type="image-layer")
                if stored.content_address != address:
                    raise ValueError(f"Layer {address} does not match its content")
            index[image.reference] = {
                "digest": image.digest,
                "manifest": manifest.model_dump_json(),
                "loaded_at": datetime.now(timezone.utc).isoformat(),
            }
            self._write_index(index)
        logger.info("Loaded %s into runtime store %s", image, self._base)


class ImageRegistry:
    """Tags and stores immutable images.

    Parameters
    ----------
    base_path:
        Directory holding ``registry.db`` and the layer blobs.
    """

    def __init__(self, base_path: Path) -> None:
        self._base = Path(base_path)
        self._base.mkdir(parents=True, exist_ok=True)
        self._blobs = ArtifactCacheStore(self._base)
        self._db_path = self._base / "registry.db"
        with self._connect() as conn:
            conn.execute(_CREATE_IMAGES)
            conn.commit()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self._db_path), timeout=30, check_same_thread=False)
        conn.execute("PRAGMA journal_mode=WAL")
        return conn

    # ------------------------------------------------------------------
    # Publish
    # ------------------------------------------------------------------

    def publish(
        self,
        runtime_env: BaseEnvironment,
        skeleton: bytes,
        payload: bytes,
        config_files: Mapping[str, bytes],
        tag: str,
        *,
        repository: str = "app",
    ) -> ImageRef:
        """Store the layers and bind *tag* to the resulting image digest.

        Raises ``TagConflict`` if the tag already maps to different content.
        """
        if not tag or ":" in tag or "@" in tag:
            raise ValueError(f"Invalid tag {tag!r}")

        skeleton_blob = self._blobs.store(skeleton, name="skeleton", artifact_type="image-layer")
        payload_blob = self._blobs.store(payload, name="payload", artifact_type="image-layer")
        config_layers = {
            name: self._blobs.store(data, name=name, artifact_type="config-layer").content_address
            for name, data in sorted(config_files.items())
        }
        manifest = ImageManifest(
            runtime_env=runtime_env.name,
            runtime_identity=compute_environment_identity(runtime_env),
            skeleton_layer=skeleton_blob.content_address,
            payload_layer=payload_blob.content_address,
            config_layers=config_layers,
        )
        image = ImageRef(repository=repository, tag=tag, digest=content_address(manifest.content()))

        with self._connect() as conn:
            try:
                conn.execute(
                    "INSERT INTO images (repository, tag, digest, manifest_json, published_at) "
                    "VALUES (?, ?, ?, ?, ?)",
                    (
                        repository,
                        tag,
                        image.digest,
                        manifest.model_dump_json(),
                        datetime.now(timezone.utc).isoformat(),
                    ),
                )
                conn.commit()
            except sqlite3.IntegrityError:
                conn.rollback()
                existing = self.resolve(tag, repository=repository)
                if existing.digest != image.digest:
                    raise TagConflict(image.reference, existing.digest, image.digest) from None
                logger.info("%s already published with identical content", image.reference)
                return existing

        logger.info("Published %s", image)
        return image

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def resolve(self, tag: str, *, repository: str = "app") -> ImageRef:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT digest FROM images WHERE repository = ? AND tag = ?",
                (repository, tag),
            ).fetchone()
        if row is None:
            raise ImageNotFoundError(f"No image tagged {repository}:{tag}")
        return ImageRef(repository=repository, tag=tag, digest=row[0])

    def manifest(self, image: ImageRef) -> ImageManifest:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT manifest_json FROM images WHERE repository = ? AND tag = ? AND digest = ?",
                (image.repository, image.tag, image.digest),
            ).fetchone()
        if row is None:
            raise ImageNotFoundError(f"No image {image}")
        return ImageManifest.model_validate_json(row[0])

    def list_images(self, repository: str | None = None) -> list[ImageRef]:
        query = "SELECT repository, tag, digest FROM images"
        params: tuple[str, ...] = ()
        if repository is not None:
            query += " WHERE repository = ?"
            params = (repository,)
        with self._connect() as conn:
            rows = conn.execute(query + " ORDER BY id ASC", params).fetchall()
        return [ImageRef(repository=r, tag=t, digest=d) for r, t, d in rows]

    def layer(self, address: str) -> bytes:
        return self._blobs.retrieve(address)

    # ------------------------------------------------------------------
    # Load into an isolated runtime
    # ------------------------------------------------------------------

    def load(self, image: ImageRef, target_runtime: RuntimeImageStore) -> None:
        """Transfer *image* into *target_runtime* without any remote registry."""
        manifest = self.manifest(image)
        layers = {address: self.layer(address) for address in manifest.layers}
        target_runtime.import_image(image, manifest, layers)
