"""Stage executor — runs one build stage inside a throwaway snapshot.

Lifecycle of ``StageExecutor.run``:

    check base environment -> lay down base root -> copy declared inputs
        -> fingerprint snapshot -> apply steps -> diff snapshot
        -> pack declared outputs -> store archive

Side effects are confined to the snapshot directory, which is discarded
afterwards. Any path a step creates, modifies or deletes outside the
stage's declared inputs and outputs is a ``DeclarationViolation``.
"""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
import tempfile
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from pathlib import Path

from dockhand.core.cache_store import ArtifactCacheStore
from dockhand.core.hasher import file_fingerprint
from dockhand.core.snapshot import matches_any, matches_declared, pack_files, unpack_file, walk_files
from dockhand.models.artifacts import Artifact
from dockhand.models.stages import BuildStage, TransformStep

logger = logging.getLogger(__name__)

_MAX_DIAGNOSTIC_CHARS = 8000


class EnvironmentUnavailableError(RuntimeError):
    """Raised when a stage's base environment cannot be laid down."""

    def __init__(self, stage: str, environment: str, reason: str) -> None:
        self.stage = stage
        self.environment = environment
        super().__init__(
            f"Base environment {environment!r} for stage {stage!r} is unavailable: {reason}"
        )


class StepFailure(RuntimeError):
    """Raised when a transform step exits abnormally."""

    def __init__(
        self,
        stage: str,
        step_index: int,
        step_name: str,
        returncode: int | None,
        output: str,
    ) -> None:
        self.stage = stage
        self.step_index = step_index
        self.step_name = step_name
        self.returncode = returncode
        self.output = output
        status = "could not start" if returncode is None else f"exited with {returncode}"
        super().__init__(
            f"Stage {stage!r} step {step_index} ({step_name}) {status}"
            + (f":\n{output.rstrip()}" if output.strip() else "")
        )


class DeclarationViolation(RuntimeError):
    """Raised when a stage touches or references undeclared paths."""

    def __init__(self, stage: str, paths: list[str], reason: str = "") -> None:
        self.stage = stage
        self.paths = sorted(paths)
        reason = reason or "touched paths outside its declared inputs/outputs"
        shown = ", ".join(self.paths[:10])
        more = f" (+{len(self.paths) - 10} more)" if len(self.paths) > 10 else ""
        super().__init__(f"Stage {stage!r} {reason}: {shown}{more}")


def _fingerprint_tree(root: Path) -> dict[str, str]:
    return {rel: file_fingerprint(root / rel) for rel in walk_files(root)}


def _keep_matches(relpath: str, patterns: list[str]) -> bool:
    basename = relpath.rsplit("/", 1)[-1]
    return matches_any(relpath, patterns) or matches_any(basename, patterns)


def _remove_empty_dirs(root: Path) -> None:
    for dirpath, dirnames, filenames in os.walk(root, topdown=False):
        path = Path(dirpath)
        if path != root and not dirnames and not filenames:
            path.rmdir()


def _chown_tree(root: Path, user: str, group: str | None) -> None:
    shutil.chown(root, user, group)
    for dirpath, dirnames, filenames in os.walk(root):
        for name in dirnames + filenames:
            shutil.chown(Path(dirpath) / name, user, group)


class StageExecutor:
    """Executes build stages against copy-on-write snapshots.

    Parameters
    ----------
    cache_store:
        Where the packed output archive of each run is stored.
    work_dir:
        Parent directory for snapshot directories (system temp if None).
    run_as_user / run_as_group:
        Identity to drop to for ``run`` steps when Dockhand itself runs as
        root. Ignored otherwise; steps then run as the current user.
    step_timeout:
        Default per-step timeout in seconds (None for no limit).
    mount_dir:
        Host directory holding the persistent caches that ``run`` steps
        mount through ``cache_dirs``. Without it those directories are
        scratch space that lasts for a single step.
    """

    def __init__(
        self,
        cache_store: ArtifactCacheStore,
        *,
        work_dir: Path | None = None,
        run_as_user: str | None = None,
        run_as_group: str | None = None,
        step_timeout: float | None = None,
        mount_dir: Path | None = None,
    ) -> None:
        self._store = cache_store
        self._mount_dir = Path(mount_dir) if mount_dir else None
        self._work_dir = Path(work_dir) if work_dir else None
        self._run_as_user = run_as_user
        self._run_as_group = run_as_group
        self._step_timeout = step_timeout
        if self._work_dir is not None:
            self._work_dir.mkdir(parents=True, exist_ok=True)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def run(
        self,
        stage: BuildStage,
        resolved_inputs: Mapping[str, Path],
        *,
        cache_key: str,
    ) -> Artifact:
        """Execute *stage* and return the artifact of its declared outputs.

        Parameters
        ----------
        stage:
            The stage declaration.
        resolved_inputs:
            Snapshot-relative destination path -> host file to copy there.
            Produced by the pipeline from the stage's declared inputs only.
        cache_key:
            The key the resulting artifact will be recorded under.
        """
        env = stage.base_env
        if env.root is not None and not Path(env.root).is_dir():
            raise EnvironmentUnavailableError(
                stage.name, env.name, f"root {env.root} does not exist"
            )

        with tempfile.TemporaryDirectory(
            prefix=f"dockhand-{stage.name}-", dir=self._work_dir
        ) as tmp:
            root = Path(tmp) / "rootfs"
            if env.root is not None:
                shutil.copytree(env.root, root, symlinks=False)
            else:
                root.mkdir()

            for dest, source in sorted(resolved_inputs.items()):
                target = root / dest
                target.parent.mkdir(parents=True, exist_ok=True)
                shutil.copy2(source, target)

            if self._drops_privileges():
                _chown_tree(root, self._run_as_user, self._run_as_group)

            before = _fingerprint_tree(root)
            for index, step in enumerate(stage.steps):
                logger.info("%s [%d/%d] %s", stage.name, index + 1, len(stage.steps), step.label)
                with self._cache_mounts(stage, step, root):
                    self._apply_step(stage, index, step, root)
            after = _fingerprint_tree(root)

            self._check_declarations(stage, set(resolved_inputs), before, after)

            outputs = [rel for rel in sorted(after) if matches_any(rel, stage.outputs)]
            data = pack_files(root, outputs)

        blob = self._store.store(data, name=stage.name, artifact_type="stage-snapshot")
        logger.info(
            "%s produced %d file(s), %d bytes -> %s",
            stage.name,
            len(outputs),
            blob.size_bytes,
            blob.content_address[:19],
        )
        return Artifact(
            stage=stage.name,
            cache_key=cache_key,
            content_address=blob.content_address,
            files=outputs,
            size_bytes=blob.size_bytes,
        )

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def _apply_step(self, stage: BuildStage, index: int, step: TransformStep, root: Path) -> None:
        if step.kind == "run":
            self._run_command(stage, index, step, root)
        elif step.kind == "prune":
            self._prune(step, root)
        elif step.kind == "extract":
            archive = root / step.archive
            if not archive.is_file():
                raise StepFailure(
                    stage.name, index, step.label, None, f"archive {step.archive} not found"
                )
            try:
                unpack_file(archive, root / step.dest)
            except Exception as exc:
                raise StepFailure(stage.name, index, step.label, None, str(exc)) from exc

    def _run_command(self, stage: BuildStage, index: int, step: TransformStep, root: Path) -> None:
        env = {
            "PATH": os.environ.get("PATH", os.defpath),
            "HOME": str(root),
            "DOCKHAND_STAGE": stage.name,
            **stage.base_env.env,
            **step.env,
        }
        timeout = step.timeout_seconds or self._step_timeout
        try:
            proc = subprocess.run(
                step.argv,
                cwd=root,
                env=env,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                timeout=timeout,
                check=False,
                **self._identity_kwargs(),
            )
        except subprocess.TimeoutExpired as exc:
            output = exc.output or ""
            if isinstance(output, bytes):
                output = output.decode("utf-8", "replace")
            raise StepFailure(
                stage.name, index, step.label, None,
                f"timed out after {timeout}s\n{output[-_MAX_DIAGNOSTIC_CHARS:]}",
            ) from exc
        except OSError as exc:
            raise StepFailure(stage.name, index, step.label, None, str(exc)) from exc

        if proc.returncode != 0:
            logger.error("%s step %d failed with exit code %d", stage.name, index, proc.returncode)
            raise StepFailure(
                stage.name, index, step.label, proc.returncode,
                (proc.stdout or "")[-_MAX_DIAGNOSTIC_CHARS:],
            )
        if proc.stdout:
            logger.debug("%s step %d output:\n%s", stage.name, index, proc.stdout)

    @contextmanager
    def _cache_mounts(self, stage: BuildStage, step: TransformStep, root: Path) -> Iterator[None]:
        """Link each of *step*'s cache dirs into the snapshot for the step's duration."""
        if not step.cache_dirs:
            yield
            return
        scratch = None
        base = self._mount_dir
        if base is None:
            scratch = tempfile.TemporaryDirectory(prefix="dockhand-mount-", dir=self._work_dir)
            base = Path(scratch.name)
        links: list[Path] = []
        try:
            for rel in step.cache_dirs:
                target = root / rel
                if target.exists() or target.is_symlink():
                    raise DeclarationViolation(
                        stage.name, [rel], "mounts a cache dir over files already in the snapshot"
                    )
                host = base / rel
                host.mkdir(parents=True, exist_ok=True)
                target.parent.mkdir(parents=True, exist_ok=True)
                if self._drops_privileges():
                    shutil.chown(host, self._run_as_user, self._run_as_group)
                    shutil.chown(target.parent, self._run_as_user, self._run_as_group)
                target.symlink_to(host, target_is_directory=True)
                links.append(target)
            yield
        finally:
            # A step may replace the link with a real directory; either way
            # nothing under a cache dir stays in the snapshot.
            for target in links:
                if target.is_symlink() or target.is_file():
                    target.unlink()
                elif target.is_dir():
                    shutil.rmtree(target)
            if scratch is not None:
                scratch.cleanup()

    @staticmethod
    def _prune(step: TransformStep, root: Path) -> None:
        within = (step.within or "").strip("/")
        removed = 0
        for rel in walk_files(root):
            if within and not matches_declared(rel, within):
                continue
            if not _keep_matches(rel, step.keep):
                (root / rel).unlink()
                removed += 1
        _remove_empty_dirs(root)
        logger.debug("prune removed %d file(s)", removed)

    # ------------------------------------------------------------------
    # Identity and declaration checks
    # ------------------------------------------------------------------

    def _drops_privileges(self) -> bool:
        return bool(self._run_as_user) and hasattr(os, "geteuid") and os.geteuid() == 0

    def _identity_kwargs(self) -> dict[str, str]:
        if not self._drops_privileges():
            return {}
        kwargs = {"user": self._run_as_user}
        if self._run_as_group:
            kwargs["group"] = self._run_as_group
        return kwargs

    @staticmethod
    def _check_declarations(
        stage: BuildStage,
        input_paths: set[str],
        before: dict[str, str],
        after: dict[str, str],
    ) -> None:
        touched = {
            rel for rel in before.keys() | after.keys()
            if before.get(rel) != after.get(rel)
        }
        undeclared = [
            rel for rel in touched
            if rel not in input_paths and not matches_any(rel, stage.outputs)
        ]
        if undeclared:
            raise DeclarationViolation(stage.name, undeclared)
