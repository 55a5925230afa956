"""Canonical hashing helpers for cache keys, content addressing, and ledger seals.

Every fingerprint in Dockhand goes through ``canonical_json_bytes`` so that
dict ordering or whitespace can never change a digest.
"""

from __future__ import annotations

import hashlib
import json
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from dockhand.core.snapshot import walk_files
from dockhand.models.stages import BaseEnvironment, BuildStage

_CHUNK = 1 << 16


def canonical_json_bytes(obj: Any) -> bytes:
    """Produce canonical JSON bytes — deterministic, sorted, compact.

    - sorted keys
    - no whitespace separators (",", ":")
    - ensure_ascii=True
    - UTF-8 encoding
    """
    return json.dumps(
        obj, sort_keys=True, separators=(",", ":"), ensure_ascii=True
    ).encode("utf-8")


def sha256_hex(data: bytes) -> str:
    """Return the SHA-256 hex digest of raw bytes."""
    return hashlib.sha256(data).hexdigest()


def content_address(obj: Any) -> str:
    """Content-address a JSON-serializable object.

    Returns "sha256:<hex>" format used by the stores.
    """
    return f"sha256:{sha256_hex(canonical_json_bytes(obj))}"


def file_digest(path: Path) -> str:
    """SHA-256 hex digest of a file, read in chunks."""
    h = hashlib.sha256()
    with open(path, "rb") as fh:
        for chunk in iter(lambda: fh.read(_CHUNK), b""):
            h.update(chunk)
    return h.hexdigest()


def file_fingerprint(path: Path) -> str:
    """Content digest plus the executable bit.

    The mode is part of the fingerprint because snapshot archives keep the
    executable bit, so flipping it changes stage output.
    """
    mode = "755" if path.stat().st_mode & 0o111 else "644"
    return f"{file_digest(path)}:{mode}"


def tree_digest(root: Path) -> str:
    """Digest of every regular file under *root*, keyed by relative path."""
    root = Path(root)
    listing = {rel: file_fingerprint(root / rel) for rel in walk_files(root)}
    return sha256_hex(canonical_json_bytes(listing))


def compute_environment_identity(env: BaseEnvironment) -> str:
    """SHA-256 of canonical(name + version + env vars + root content).

    A missing root is left to the executor to report; here it simply
    contributes no content.
    """
    root_digest = ""
    if env.root is not None and Path(env.root).is_dir():
        root_digest = tree_digest(Path(env.root))
    payload = {
        "name": env.name,
        "version": env.version,
        "env": dict(env.env),
        "root": root_digest,
    }
    return sha256_hex(canonical_json_bytes(payload))


def compute_cache_key(
    stage: BuildStage,
    environment_identity: str,
    input_fingerprints: Mapping[str, str],
) -> str:
    """Fingerprint of everything a stage's output can depend on.

    Built from the base environment identity, the stage's steps and output
    declaration, and the fingerprints of its *declared* inputs only. The
    stage name does not participate.
    """
    payload = {
        "environment": environment_identity,
        "steps": [step.model_dump(mode="json") for step in stage.steps],
        "outputs": sorted(stage.outputs),
        "inputs": dict(input_fingerprints),
    }
    return content_address(payload)


def compute_entry_hash(entry_dict: dict[str, Any]) -> str:
    """SHA-256 of a ledger entry (excluding the entry_hash field itself)."""
    d = {k: v for k, v in entry_dict.items() if k != "entry_hash"}
    return sha256_hex(canonical_json_bytes(d))
