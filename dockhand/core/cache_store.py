"""Content-addressed artifact cache store.

Two layers:

* blobs — ``{base}/blobs/{sha256[0:2]}/{sha256[2:4]}/{sha256}.dat``, keyed
  by the SHA-256 of their bytes. Storing the same content twice is a no-op.
* index — ``{base}/index/{key[0:2]}/{key}.json``, mapping a stage cache key
  to the ``Artifact`` it produced.

Writers racing to populate the same cache key are serialised by linking a
fully written temp file into place: the first link wins, later writers get
``FileExistsError``, discard their work and adopt the stored entry. Readers
never observe a partially written index entry or blob.
"""

from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path
from typing import Any

from dockhand.core.hasher import sha256_hex
from dockhand.models.artifacts import Artifact, StoredBlob

logger = logging.getLogger(__name__)


class CacheIntegrityError(RuntimeError):
    """Raised when a stored blob's hash does not match its address."""


def _extract_digest(content_address: str) -> str:
    """Strip the ``sha256:`` prefix from a content address, if present."""
    return content_address.removeprefix("sha256:")


class ArtifactCacheStore:
    """SHA-256 keyed, immutable blob store plus a cache-key index.

    There is no update or delete: an index entry, once written, is the
    answer for that cache key, and a blob is only ever rewritten with the
    bytes its address names.

    Parameters
    ----------
    base_path:
        Root directory for the store.
    """

    def __init__(self, base_path: Path) -> None:
        self._base = Path(base_path)
        self._blobs = self._base / "blobs"
        self._index = self._base / "index"
        self._blobs.mkdir(parents=True, exist_ok=True)
        self._index.mkdir(parents=True, exist_ok=True)

    @property
    def base_path(self) -> Path:
        return self._base

    def _blob_path(self, sha256_digest: str) -> Path:
        return self._blobs / sha256_digest[:2] / sha256_digest[2:4] / f"{sha256_digest}.dat"

    def _index_path(self, cache_key: str) -> Path:
        digest = _extract_digest(cache_key)
        return self._index / digest[:2] / f"{digest}.json"

    def _write_atomic(self, target: Path, data: bytes, *, exclusive: bool) -> bool:
        """Write *data* to *target* via a temp file.

        With ``exclusive`` the temp file is hard-linked into place, so the
        call fails (returns False) when *target* already exists. Without
        it the temp file replaces *target*.
        """
        target.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=target.parent, prefix=".tmp-")
        try:
            with os.fdopen(fd, "wb") as fh:
                fh.write(data)
                fh.flush()
                os.fsync(fh.fileno())
            if exclusive:
                try:
                    os.link(tmp_name, target)
                except FileExistsError:
                    return False
            else:
                os.replace(tmp_name, target)
            return True
        finally:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)

    # ------------------------------------------------------------------
    # Blobs
    # ------------------------------------------------------------------

    def store(
        self,
        data: bytes,
        *,
        name: str = "",
        artifact_type: str = "generic",
        metadata: dict[str, Any] | None = None,
    ) -> StoredBlob:
        """Store data and return its content-addressed metadata.

        If the content already exists (same hash), verifies integrity
        and returns without overwriting. A stored copy that fails the
        check is replaced by *data*, whose hash is the address.
        """
        digest = sha256_hex(data)
        path = self._blob_path(digest)

        if path.exists():
            if not self.verify(digest):
                logger.warning("Blob %s failed integrity check; rewriting it", digest[:16])
                self._write_atomic(path, data, exclusive=False)
        else:
            self._write_atomic(path, data, exclusive=True)

        return StoredBlob(
            content_address=f"sha256:{digest}",
            artifact_type=artifact_type,
            name=name or digest[:16],
            size_bytes=len(data),
            metadata=metadata or {},
        )

    def retrieve(self, content_address: str) -> bytes:
        """Retrieve blob bytes by content address.

        Parameters
        ----------
        content_address:
            Either "sha256:<hex>" or just the hex digest.
        """
        digest = _extract_digest(content_address)
        path = self._blob_path(digest)
        if not path.exists():
            raise FileNotFoundError(f"Blob not found: {content_address}")
        data = path.read_bytes()
        if sha256_hex(data) != digest:
            raise CacheIntegrityError(f"Blob {content_address} failed integrity check")
        return data

    def exists(self, content_address: str) -> bool:
        """Check if a blob exists in the store."""
        return self._blob_path(_extract_digest(content_address)).exists()

    def verify(self, content_address: str) -> bool:
        """Re-hash stored data and compare against the content address."""
        digest = _extract_digest(content_address)
        path = self._blob_path(digest)
        if not path.exists():
            return False
        return sha256_hex(path.read_bytes()) == digest

    # ------------------------------------------------------------------
    # Cache-key index
    # ------------------------------------------------------------------

    def lookup(self, cache_key: str) -> Artifact | None:
        """Return the cached artifact for *cache_key*, or None.

        An index entry whose blob is missing or corrupt is treated as a
        miss rather than served.
        """
        path = self._index_path(cache_key)
        if not path.exists():
            return None
        artifact = Artifact.model_validate_json(path.read_bytes())
        if artifact.cache_key != cache_key:
            raise CacheIntegrityError(
                f"Index entry for {cache_key} records key {artifact.cache_key}"
            )
        if not self.verify(artifact.content_address):
            logger.warning(
                "Cache entry %s points at missing or corrupt blob %s; ignoring",
                cache_key,
                artifact.content_address,
            )
            return None
        return artifact.model_copy(update={"cached": True})

    def put(self, artifact: Artifact) -> Artifact:
        """Record *artifact* as the result for its cache key.

        First writer wins. If another writer already populated the key,
        the stored artifact is returned and *artifact* is discarded.
        """
        if not self.exists(artifact.content_address):
            raise CacheIntegrityError(
                f"Cannot index {artifact.cache_key}: blob "
                f"{artifact.content_address} is not in the store"
            )
        record = artifact.model_copy(update={"cached": False})
        path = self._index_path(artifact.cache_key)
        if self._write_atomic(path, record.model_dump_json().encode("utf-8"), exclusive=True):
            return record

        winner = Artifact.model_validate_json(path.read_bytes())
        logger.info(
            "Cache key %s already populated by a concurrent build; adopting %s",
            artifact.cache_key,
            winner.content_address,
        )
        return winner

    def import_entry(self, source: ArtifactCacheStore, cache_key: str) -> Artifact | None:
        """Copy a cache entry (index + blob) from another store, if present."""
        found = source.lookup(cache_key)
        if found is None:
            return None
        self.store(source.retrieve(found.content_address), name=found.stage,
                   artifact_type="stage-snapshot")
        return self.put(found).model_copy(update={"cached": True})
