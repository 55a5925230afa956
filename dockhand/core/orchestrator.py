"""Orchestrator — wires the Dockhand components from settings.

The CLI talks only to this class. It owns one instance of each store
(cache, ledger, registry, runtime image store, cluster state), all rooted
under ``settings.state_dir``, and exposes the runbook as methods:
build, load, render manifests, apply, status and history.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Mapping
from pathlib import Path

from dockhand.config import DockhandSettings
from dockhand.core.build_ledger import BuildLedger
from dockhand.core.bundler import ArtifactBundler
from dockhand.core.cache_store import ArtifactCacheStore
from dockhand.core.executor import StageExecutor
from dockhand.core.pipeline import BuildPipeline, BuildResult
from dockhand.core.registry import ImageRegistry, RuntimeImageStore
from dockhand.deploy.cluster import LocalCluster
from dockhand.deploy.manager import DeploymentManager
from dockhand.deploy.manifests import dump_manifests, render_manifests
from dockhand.models.config import PipelineDefinition
from dockhand.models.deploy import ApplyResult, DesiredState, ObservedWorkload
from dockhand.models.images import ImageRef
from dockhand.models.ledger import LedgerEntry

logger = logging.getLogger(__name__)


class Orchestrator:
    """Central coordinator for builds and deployments.

    Parameters
    ----------
    settings:
        Storage locations, execution identity and rollout defaults. A fresh
        ``DockhandSettings()`` (environment and ``.env``) if not provided.
    """

    def __init__(self, settings: DockhandSettings | None = None) -> None:
        self.settings = settings or DockhandSettings()
        s = self.settings

        self.cache_store = ArtifactCacheStore(s.resolve(s.cache_path))
        self.ledger = BuildLedger(s.resolve(s.ledger_path))
        self.registry = ImageRegistry(s.resolve(s.registry_path))
        self.runtime_store = RuntimeImageStore(s.resolve(s.runtime_store_path))
        self.executor = StageExecutor(
            self.cache_store,
            work_dir=s.work_dir,
            run_as_user=s.run_as_user,
            run_as_group=s.run_as_group,
            step_timeout=s.step_timeout_seconds,
            mount_dir=s.resolve(s.mount_path),
        )
        self.cluster = LocalCluster(
            self.runtime_store, state_path=s.resolve(s.cluster_state_path)
        )

    # ------------------------------------------------------------------
    # Build
    # ------------------------------------------------------------------

    def build(
        self,
        definition: PipelineDefinition,
        *,
        tag: str,
        source_root: Path,
        prior_cache: Path | None = None,
    ) -> BuildResult:
        pipeline = BuildPipeline(
            self.cache_store,
            self.executor,
            self.registry,
            ledger=self.ledger,
            prior_cache=ArtifactCacheStore(prior_cache) if prior_cache else None,
        )
        image = definition.image
        return pipeline.build(
            definition.stages,
            tag=tag,
            source_root=source_root,
            runtime_env=image.runtime,
            bundler=ArtifactBundler(image.manifest_patterns, payload_root=image.payload_root),
            config_files=image.config_files,
            repository=image.repository,
        )

    def load(self, tag: str, *, repository: str | None = None) -> ImageRef:
        """Copy a published image into the runtime's local store."""
        image = self.registry.resolve(tag, repository=repository or self.settings.default_repository)
        self.registry.load(image, self.runtime_store)
        return image

    # ------------------------------------------------------------------
    # Deploy
    # ------------------------------------------------------------------

    def desired_state(self, definition: PipelineDefinition, tag: str) -> DesiredState:
        if definition.deployment is None:
            raise ValueError("The pipeline file has no deployment section")
        image = self.registry.resolve(tag, repository=definition.image.repository)
        return definition.deployment.to_desired(image)

    def manifests(
        self,
        definition: PipelineDefinition,
        tag: str,
        secret_values: Mapping[str, str] | None = None,
    ) -> str:
        return dump_manifests(render_manifests(self.desired_state(definition, tag), secret_values))

    def deploy(
        self,
        definition: PipelineDefinition,
        *,
        tag: str,
        secret_values: Mapping[str, str] | None = None,
        cancel: threading.Event | None = None,
    ) -> ApplyResult:
        desired = self.desired_state(definition, tag)
        manager = DeploymentManager(self.cluster, self.settings.rollout_policy())
        return manager.apply(desired, secret_values=secret_values, cancel=cancel)

    def status(self, definition: PipelineDefinition) -> ObservedWorkload | None:
        if definition.deployment is None:
            raise ValueError("The pipeline file has no deployment section")
        return self.cluster.observe(definition.deployment.namespace, definition.deployment.name)

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    def history(self, limit: int = 10) -> list[tuple[str, dict[str, str]]]:
        """Most recent builds with the final state of each stage."""
        return [
            (build_id, self.ledger.stage_states(build_id))
            for build_id in self.ledger.get_all_build_ids()[:limit]
        ]

    def build_entries(self, build_id: str) -> list[LedgerEntry]:
        self.ledger.verify_chain(build_id)
        return self.ledger.get_build_entries(build_id)
