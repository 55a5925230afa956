"""Build pipeline controller — sequences stages with cache short-circuiting.

For each stage, in order:

    resolve declared inputs -> compute cache key -> cache lookup
        -> (miss) execute + store -> record in ledger

The first failing stage aborts the build; later stages are recorded as
skipped and nothing is bundled or published. On success the final stage's
artifact is bundled and published under the requested tag.
"""

from __future__ import annotations

import logging
import tempfile
import uuid
from collections.abc import Mapping, Sequence
from contextlib import ExitStack
from datetime import datetime, timezone
from pathlib import Path

from pydantic import BaseModel, ConfigDict

from dockhand.core.build_ledger import BuildLedger
from dockhand.core.bundler import ArtifactBundler
from dockhand.core.cache_store import ArtifactCacheStore
from dockhand.core.executor import DeclarationViolation, StageExecutor
from dockhand.core.hasher import (
    compute_cache_key,
    compute_environment_identity,
    file_fingerprint,
)
from dockhand.core.registry import ImageRegistry
from dockhand.core.snapshot import matches_declared, unpack, walk_files
from dockhand.models.artifacts import Artifact
from dockhand.models.images import ImageRef
from dockhand.models.ledger import LedgerEntry
from dockhand.models.stages import (
    VALID_STAGE_TRANSITIONS,
    BaseEnvironment,
    BuildStage,
    BuildStageState,
    StageInput,
)

logger = logging.getLogger(__name__)

_GLOB_CHARS = set("*?[")


class BuildFailedError(RuntimeError):
    """Raised when a stage fails; names the first failing stage."""

    def __init__(self, build_id: str, stage_index: int, stage_name: str, cause: Exception) -> None:
        self.build_id = build_id
        self.stage_index = stage_index
        self.stage_name = stage_name
        self.cause = cause
        super().__init__(
            f"Build {build_id} failed at stage {stage_index} ({stage_name}): {cause}"
        )


class BuildResult(BaseModel):
    """What a successful build produced."""

    model_config = ConfigDict(frozen=True)

    build_id: str
    image: ImageRef
    artifacts: list[Artifact]
    skeleton_files: list[str] = []
    payload_files: list[str] = []

    @property
    def cache_hits(self) -> int:
        return sum(1 for a in self.artifacts if a.cached)


def new_build_id() -> str:
    ts = datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%S")
    return f"b-{ts}-{uuid.uuid4().hex[:6]}"


def _relocate(relpath: str, decl: StageInput) -> str:
    """Map a matched path to its location inside the snapshot.

    Without ``dest`` paths keep their location. With ``dest``, a literal
    file lands at ``dest/<basename>``, the contents of a literal directory
    land directly under ``dest``, and glob matches keep their relative
    path beneath ``dest``.
    """
    if decl.dest is None:
        return relpath
    dest = decl.dest.strip("/")
    pattern = decl.path.strip("/")
    if not (_GLOB_CHARS & set(pattern)):
        if relpath == pattern:
            relpath = relpath.rsplit("/", 1)[-1]
        elif relpath.startswith(pattern + "/"):
            relpath = relpath[len(pattern) + 1:]
    return f"{dest}/{relpath}" if dest not in ("", ".") else relpath


class BuildPipeline:
    """Sequences build stages and publishes the result.

    Parameters
    ----------
    cache_store:
        Artifact cache shared by every build using this pipeline.
    executor:
        Runs stages on cache miss.
    registry:
        Publishes the final image.
    ledger:
        Optional build ledger; every stage transition is recorded when set.
    prior_cache:
        Optional read-only cache consulted on local miss (for example a
        cache directory restored from CI).
    """

    def __init__(
        self,
        cache_store: ArtifactCacheStore,
        executor: StageExecutor,
        registry: ImageRegistry,
        *,
        ledger: BuildLedger | None = None,
        prior_cache: ArtifactCacheStore | None = None,
    ) -> None:
        self.cache_store = cache_store
        self.executor = executor
        self.registry = registry
        self.ledger = ledger
        self.prior_cache = prior_cache

    # ------------------------------------------------------------------
    # Declarations
    # ------------------------------------------------------------------

    @staticmethod
    def validate(stages: Sequence[BuildStage]) -> None:
        """Check that every stage only references earlier stages."""
        seen: set[str] = set()
        for stage in stages:
            if stage.name in seen:
                raise DeclarationViolation(stage.name, [stage.name], "is declared twice")
            for decl in stage.inputs:
                if decl.from_stage is not None and decl.from_stage not in seen:
                    raise DeclarationViolation(
                        stage.name,
                        [decl.path],
                        f"reads from stage {decl.from_stage!r}, which does not run before it",
                    )
            seen.add(stage.name)

    def resolve_inputs(
        self,
        stage: BuildStage,
        source_root: Path,
        materialized: Mapping[str, tuple[Artifact, Path]],
    ) -> dict[str, Path]:
        """Resolve *stage*'s declared inputs to host files.

        Source-tree inputs are matched against *source_root*; stage inputs
        only against the files the earlier stage declared as outputs.
        """
        resolved: dict[str, Path] = {}
        for decl in stage.inputs:
            if decl.from_stage is None:
                base = Path(source_root)
                candidates = walk_files(base)
                origin = "the source tree"
            else:
                artifact, base = materialized[decl.from_stage]
                candidates = artifact.files
                origin = f"the outputs of stage {decl.from_stage!r}"

            matched = [rel for rel in candidates if matches_declared(rel, decl.path)]
            if not matched:
                raise DeclarationViolation(
                    stage.name, [decl.path], f"declares an input that matches nothing in {origin}"
                )
            for rel in matched:
                dest = _relocate(rel, decl)
                if dest in resolved and resolved[dest] != base / rel:
                    raise DeclarationViolation(
                        stage.name, [dest], "maps two inputs to the same path"
                    )
                resolved[dest] = base / rel
        return resolved

    # ------------------------------------------------------------------
    # Build
    # ------------------------------------------------------------------

    def run_stages(
        self,
        stages: Sequence[BuildStage],
        source_root: Path,
        *,
        build_id: str | None = None,
        tag: str = "",
    ) -> tuple[str, list[Artifact], Path, ExitStack]:
        """Run every stage; return the artifacts and the materialised final output.

        The caller owns the returned ``ExitStack`` (it holds the temporary
        directories the artifacts were unpacked into).
        """
        self.validate(stages)
        build_id = build_id or new_build_id()
        source_root = Path(source_root)
        stack = ExitStack()
        scratch = Path(stack.enter_context(tempfile.TemporaryDirectory(prefix="dockhand-build-")))

        states = {stage.name: BuildStageState.PENDING for stage in stages}
        materialized: dict[str, tuple[Artifact, Path]] = {}
        artifacts: list[Artifact] = []
        env_ids: dict[str, str] = {}

        try:
            for index, stage in enumerate(stages):
                try:
                    artifact = self._run_one(
                        build_id, tag, stage, source_root, materialized, states, env_ids
                    )
                except Exception as exc:
                    self._fail(build_id, tag, stages, index, exc, states)
                    raise BuildFailedError(build_id, index, stage.name, exc) from exc

                target = scratch / f"{index:02d}-{stage.name}"
                unpack(self.cache_store.retrieve(artifact.content_address), target)
                materialized[stage.name] = (artifact, target)
                artifacts.append(artifact)
        except BaseException:
            stack.close()
            raise

        return build_id, artifacts, materialized[stages[-1].name][1], stack

    def build(
        self,
        stages: Sequence[BuildStage],
        *,
        tag: str,
        source_root: Path,
        runtime_env: BaseEnvironment | None = None,
        bundler: ArtifactBundler | None = None,
        config_files: Sequence[str] = (),
        repository: str = "app",
        build_id: str | None = None,
    ) -> BuildResult:
        """Build, bundle and publish an image under *tag*."""
        if not stages:
            raise ValueError("No stages to build")
        source_root = Path(source_root)
        bundler = bundler or ArtifactBundler()
        runtime_env = runtime_env or stages[-1].base_env

        # Config files are read before any stage runs so a missing file fails fast.
        configs: dict[str, bytes] = {}
        for name in config_files:
            path = source_root / name
            if not path.is_file():
                raise FileNotFoundError(f"Config file {name} not found under {source_root}")
            configs[Path(name).name] = path.read_bytes()

        build_id, artifacts, final_output, stack = self.run_stages(
            stages, source_root, build_id=build_id, tag=tag
        )
        with stack:
            bundle = bundler.bundle(final_output)

        try:
            image = self.registry.publish(
                runtime_env,
                bundle.skeleton,
                bundle.payload,
                configs,
                tag,
                repository=repository,
            )
        except Exception as exc:
            self._record(build_id, tag, "image", "pending", "failed", detail=str(exc))
            raise
        self._record(build_id, tag, "image", "pending", "passed", detail=image.digest)
        logger.info(
            "Build %s published %s (%d/%d stages from cache)",
            build_id,
            image.reference,
            sum(1 for a in artifacts if a.cached),
            len(artifacts),
        )
        return BuildResult(
            build_id=build_id,
            image=image,
            artifacts=artifacts,
            skeleton_files=bundle.skeleton_files,
            payload_files=bundle.payload_files,
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def cache_key_for(
        self,
        stage: BuildStage,
        resolved: Mapping[str, Path],
        env_ids: dict[str, str] | None = None,
    ) -> str:
        env_ids = env_ids if env_ids is not None else {}
        env = stage.base_env
        env_key = env.model_dump_json()
        if env_key not in env_ids:
            env_ids[env_key] = compute_environment_identity(env)
        fingerprints = {dest: file_fingerprint(src) for dest, src in sorted(resolved.items())}
        return compute_cache_key(stage, env_ids[env_key], fingerprints)

    def _run_one(
        self,
        build_id: str,
        tag: str,
        stage: BuildStage,
        source_root: Path,
        materialized: Mapping[str, tuple[Artifact, Path]],
        states: dict[str, BuildStageState],
        env_ids: dict[str, str],
    ) -> Artifact:
        resolved = self.resolve_inputs(stage, source_root, materialized)
        cache_key = self.cache_key_for(stage, resolved, env_ids)

        cached = self.cache_store.lookup(cache_key)
        if cached is None and self.prior_cache is not None:
            cached = self.cache_store.import_entry(self.prior_cache, cache_key)
        if cached is not None:
            logger.info("%s: cache hit %s", stage.name, cache_key[:19])
            self._transition(build_id, tag, stage.name, states, BuildStageState.CACHED,
                             cache_key=cache_key, artifact_address=cached.content_address)
            # The key ignores the stage name; report the hit under this stage.
            return cached.model_copy(update={"stage": stage.name})

        logger.info("%s: cache miss %s, executing", stage.name, cache_key[:19])
        self._transition(build_id, tag, stage.name, states, BuildStageState.RUNNING,
                         cache_key=cache_key)
        artifact = self.executor.run(stage, resolved, cache_key=cache_key)
        stored = self.cache_store.put(artifact)
        self._transition(build_id, tag, stage.name, states, BuildStageState.PASSED,
                         cache_key=cache_key, artifact_address=stored.content_address)
        return stored.model_copy(update={"stage": stage.name})

    def _fail(
        self,
        build_id: str,
        tag: str,
        stages: Sequence[BuildStage],
        index: int,
        exc: Exception,
        states: dict[str, BuildStageState],
    ) -> None:
        name = stages[index].name
        logger.error("Build %s: stage %d (%s) failed: %s", build_id, index, name, exc)
        if states[name] == BuildStageState.PENDING:
            # Failures before execution (input resolution) still pass through RUNNING.
            self._transition(build_id, tag, name, states, BuildStageState.RUNNING)
        self._transition(build_id, tag, name, states, BuildStageState.FAILED, detail=str(exc))
        for later in stages[index + 1:]:
            self._transition(build_id, tag, later.name, states, BuildStageState.SKIPPED)

    def _transition(
        self,
        build_id: str,
        tag: str,
        stage_name: str,
        states: dict[str, BuildStageState],
        target: BuildStageState,
        **fields: str,
    ) -> None:
        current = states[stage_name]
        if target not in VALID_STAGE_TRANSITIONS[current]:
            raise RuntimeError(
                f"Invalid stage transition for {stage_name}: {current.value} -> {target.value}"
            )
        states[stage_name] = target
        self._record(build_id, tag, stage_name, current.value, target.value, **fields)

    def _record(
        self,
        build_id: str,
        tag: str,
        stage_name: str,
        from_state: str,
        to_state: str,
        **fields: str,
    ) -> None:
        if self.ledger is None:
            return
        self.ledger.append(
            LedgerEntry(
                build_id=build_id,
                stage_name=stage_name,
                state_transition=f"{from_state}->{to_state}",
                tag=tag,
                **fields,
            )
        )
