"""Artifact bundler — split build output into skeleton and payload.

The skeleton holds only manifest and lockfile files (directory structure
preserved) so dependencies can be installed before any source is present.
The payload is the compiled runtime tree. Both are packed with the
deterministic archiver, so identical build output always yields identical
skeleton bytes and the dependency-install stage of the next build keeps
hitting cache when only payload content changes.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from pathlib import Path

from dockhand.core.snapshot import matches_any, matches_declared, pack_files, walk_files
from dockhand.models.artifacts import Bundle
from dockhand.models.config import DEFAULT_MANIFEST_PATTERNS

logger = logging.getLogger(__name__)


class ArtifactBundler:
    """Partitions a materialised build output directory.

    Parameters
    ----------
    manifest_patterns:
        Basenames or globs identifying manifest/lockfile files.
    payload_root:
        Subtree (relative to the build output) that forms the payload.
        ``"."`` takes the whole tree.
    """

    def __init__(
        self,
        manifest_patterns: Iterable[str] | None = None,
        payload_root: str = ".",
    ) -> None:
        self.manifest_patterns = list(manifest_patterns or DEFAULT_MANIFEST_PATTERNS)
        self.payload_root = payload_root.strip("/") or "."

    def is_manifest(self, relpath: str) -> bool:
        basename = relpath.rsplit("/", 1)[-1]
        return matches_any(basename, self.manifest_patterns) or any(
            "/" in p and matches_declared(relpath, p) for p in self.manifest_patterns
        )

    def bundle(self, build_output: Path) -> Bundle:
        """Split *build_output* into a deterministic skeleton and payload."""
        build_output = Path(build_output)
        files = walk_files(build_output)

        skeleton_files = [rel for rel in files if self.is_manifest(rel)]
        payload_files = [
            rel for rel in files if matches_declared(rel, self.payload_root)
        ]
        if not payload_files:
            logger.warning(
                "Payload root %r matched no files in %s", self.payload_root, build_output
            )

        bundle = Bundle(
            skeleton=pack_files(build_output, skeleton_files),
            payload=pack_files(build_output, payload_files),
            skeleton_files=skeleton_files,
            payload_files=payload_files,
        )
        logger.info(
            "Bundled %d skeleton file(s) and %d payload file(s)",
            len(skeleton_files),
            len(payload_files),
        )
        return bundle
