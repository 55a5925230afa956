"""Deterministic snapshot archives and declared-path matching.

Archives are gzip-compressed tars with every source of nondeterminism
stripped: entries sorted, mtimes zeroed, ownership zeroed, modes reduced
to 0644/0755, gzip header mtime zeroed. Packing the same files twice
yields the same bytes.
"""

from __future__ import annotations

import fnmatch
import gzip
import io
import os
import tarfile
from collections.abc import Iterable
from pathlib import Path


def walk_files(root: Path) -> list[str]:
    """Sorted POSIX relative paths of every regular file under *root*."""
    root = Path(root)
    found: list[str] = []
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames.sort()
        for fname in filenames:
            full = Path(dirpath) / fname
            if full.is_file():
                found.append(full.relative_to(root).as_posix())
    return sorted(found)


def matches_declared(relpath: str, pattern: str) -> bool:
    """Whether *relpath* falls under a declared path or glob.

    A pattern matches the path itself, anything beneath it when it names a
    directory, or any path it matches as an ``fnmatch`` glob (``*`` spans
    directory separators, so ``"*"`` matches everything).
    """
    pattern = pattern.strip("/") or "*"
    if pattern in (".", "*"):
        return True
    if relpath == pattern or relpath.startswith(pattern + "/"):
        return True
    return fnmatch.fnmatchcase(relpath, pattern)


def matches_any(relpath: str, patterns: Iterable[str]) -> bool:
    return any(matches_declared(relpath, p) for p in patterns)


def _normalized_mode(path: Path) -> int:
    return 0o755 if path.stat().st_mode & 0o111 else 0o644


def pack_files(root: Path, files: Iterable[str]) -> bytes:
    """Pack *files* (relative to *root*) into a deterministic ``.tar.gz``."""
    root = Path(root)
    raw = io.BytesIO()
    with tarfile.open(fileobj=raw, mode="w", format=tarfile.PAX_FORMAT) as tar:
        for rel in sorted(set(files)):
            path = root / rel
            info = tarfile.TarInfo(name=rel)
            info.size = path.stat().st_size
            info.mode = _normalized_mode(path)
            info.mtime = 0
            info.uid = info.gid = 0
            info.uname = info.gname = ""
            with open(path, "rb") as fh:
                tar.addfile(info, fh)

    compressed = io.BytesIO()
    with gzip.GzipFile(fileobj=compressed, mode="wb", filename="", mtime=0) as gz:
        gz.write(raw.getvalue())
    return compressed.getvalue()


def unpack(data: bytes, dest: Path) -> list[str]:
    """Extract a snapshot archive into *dest*; return the extracted paths."""
    dest = Path(dest)
    dest.mkdir(parents=True, exist_ok=True)
    with tarfile.open(fileobj=io.BytesIO(data), mode="r:*") as tar:
        names = sorted(m.name for m in tar.getmembers() if m.isfile())
        tar.extractall(dest, filter="data")
    return names


def unpack_file(archive: Path, dest: Path) -> list[str]:
    """Extract a tar archive on disk (compressed or not) into *dest*."""
    return unpack(Path(archive).read_bytes(), dest)


def list_archive(data: bytes) -> list[str]:
    with tarfile.open(fileobj=io.BytesIO(data), mode="r:*") as tar:
        return sorted(m.name for m in tar.getmembers() if m.isfile())
