"""Render desired state as cluster manifests (Namespace, Secret, Deployment, Service)."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

import yaml

from dockhand.models.deploy import DesiredState
from dockhand.secrets.provider import SecretProvider

DIGEST_ANNOTATION = "dockhand.io/image-digest"


def _metadata(desired: DesiredState, **extra: Any) -> dict[str, Any]:
    meta: dict[str, Any] = {
        "name": desired.name,
        "namespace": desired.namespace,
        "labels": {"app": desired.name},
    }
    meta.update(extra)
    return meta


def render_manifests(
    desired: DesiredState,
    secret_values: Mapping[str, str] | None = None,
) -> list[dict[str, Any]]:
    """Return the manifest documents for *desired*, in apply order.

    The Secret document is emitted only when *secret_values* is given; every
    name in ``desired.secret_refs`` must then resolve (``MissingSecret``
    otherwise), so a manifest can never ship a blank required value.
    """
    docs: list[dict[str, Any]] = [
        {"apiVersion": "v1", "kind": "Namespace", "metadata": {"name": desired.namespace}},
    ]

    if desired.secret_name and secret_values is not None:
        resolved = SecretProvider.from_mapping(secret_values).resolve(desired.secret_refs)
        docs.append({
            "apiVersion": "v1",
            "kind": "Secret",
            "metadata": {"name": desired.secret_name, "namespace": desired.namespace},
            "type": "Opaque",
            "stringData": dict(sorted(resolved.as_env().items())),
        })

    container: dict[str, Any] = {
        "name": desired.name,
        "image": desired.image.reference,
        "imagePullPolicy": desired.pull_policy.value,
    }
    if desired.ports:
        container["ports"] = [
            {"name": p.name, "containerPort": p.container_port} for p in desired.ports
        ]
    if desired.secret_name:
        container["envFrom"] = [{"secretRef": {"name": desired.secret_name}}]

    annotations = {DIGEST_ANNOTATION: desired.image.digest}
    docs.append({
        "apiVersion": "apps/v1",
        "kind": "Deployment",
        "metadata": _metadata(desired, annotations=annotations),
        "spec": {
            "replicas": desired.replicas,
            "selector": {"matchLabels": {"app": desired.name}},
            "template": {
                "metadata": {"labels": {"app": desired.name}, "annotations": annotations},
                "spec": {"containers": [container]},
            },
        },
    })

    if desired.ports:
        docs.append({
            "apiVersion": "v1",
            "kind": "Service",
            "metadata": _metadata(desired),
            "spec": {
                "selector": {"app": desired.name},
                "ports": [
                    {"name": p.name, "port": p.exposed_port, "targetPort": p.container_port}
                    for p in desired.ports
                ],
            },
        })
    return docs


def dump_manifests(docs: list[dict[str, Any]]) -> str:
    return yaml.safe_dump_all(docs, sort_keys=False, default_flow_style=False)
