"""Desired-state deployment: cluster backends, manifests, reconciliation."""

from dockhand.deploy.cluster import ClusterBackend, LocalCluster
from dockhand.deploy.manager import (
    DeploymentFailedError,
    DeploymentManager,
    ReconciliationCancelled,
    ReconciliationTimeout,
)
from dockhand.deploy.manifests import dump_manifests, render_manifests

__all__ = [
    "ClusterBackend",
    "DeploymentFailedError",
    "DeploymentManager",
    "LocalCluster",
    "ReconciliationCancelled",
    "ReconciliationTimeout",
    "dump_manifests",
    "render_manifests",
]
