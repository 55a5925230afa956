"""Cluster backends — where desired state is applied and observed.

``ClusterBackend`` is the narrow surface the deployment manager talks to.
``LocalCluster`` is an in-process simulation of a single-node cluster whose
only image source is a ``RuntimeImageStore``: with pull policy ``Never`` an
instance whose ``repository:tag`` is absent (or bound to another digest)
fails to start, exactly like an image that was never loaded.

Instances advance one lifecycle step per ``tick()``:

    pending -> starting -> ready | failed
    ready | failed | pending -> terminating -> (removed)

Rolling updates keep old-revision instances serving until every instance of
the new revision is ready.
"""

from __future__ import annotations

import json
import logging
import threading
from collections.abc import Mapping
from pathlib import Path
from typing import Protocol, runtime_checkable

from dockhand.core.registry import RuntimeImageStore
from dockhand.models.deploy import (
    VALID_INSTANCE_TRANSITIONS,
    DesiredState,
    Instance,
    InstanceState,
    ObservedWorkload,
    PullPolicy,
)
from dockhand.models.images import ImageRef
from dockhand.secrets.provider import InvalidSecretValue, MissingSecret, SecretProvider

logger = logging.getLogger(__name__)


class InvalidTransitionError(RuntimeError):
    """Raised when an instance is moved along an edge the lifecycle forbids."""

    def __init__(self, instance_id: str, from_state: InstanceState, to_state: InstanceState) -> None:
        self.instance_id = instance_id
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(
            f"Invalid transition for instance {instance_id}: "
            f"{from_state.value} -> {to_state.value}"
        )


class WorkloadNotFoundError(KeyError):
    """Raised when a mutating call names a workload that does not exist."""

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else "workload not found"


@runtime_checkable
class ClusterBackend(Protocol):
    """Operations a cluster must offer to be reconciled against."""

    def has_namespace(self, namespace: str) -> bool: ...

    def create_namespace(self, namespace: str) -> None: ...

    def get_secret(self, namespace: str, name: str) -> dict[str, str] | None: ...

    def put_secret(self, namespace: str, name: str, values: Mapping[str, str]) -> None: ...

    def observe(self, namespace: str, name: str) -> ObservedWorkload | None: ...

    def create_workload(self, desired: DesiredState) -> ObservedWorkload: ...

    def update_workload(self, desired: DesiredState) -> ObservedWorkload: ...

    def scale(self, namespace: str, name: str, replicas: int) -> ObservedWorkload: ...

    def recycle(self, namespace: str, name: str, instance_id: str) -> None: ...

    def tick(self) -> None:
        """Advance pending work. A real cluster does this on its own."""
        ...


def _key(namespace: str, name: str) -> str:
    return f"{namespace}/{name}"


def _terminable(instance: Instance) -> bool:
    return InstanceState.TERMINATING in VALID_INSTANCE_TRANSITIONS[instance.state]


class LocalCluster:
    """Simulated single-node cluster.

    Parameters
    ----------
    runtime_store:
        The node's local image store. ``None`` means every image is
        considered present.
    state_path:
        Optional JSON file the cluster state is persisted to after every
        mutation, so separate CLI invocations see the same cluster.
    """

    def __init__(
        self,
        runtime_store: RuntimeImageStore | None = None,
        state_path: Path | None = None,
    ) -> None:
        self._runtime_store = runtime_store
        self._state_path = Path(state_path) if state_path is not None else None
        self._lock = threading.RLock()
        self._namespaces: set[str] = set()
        self._secrets: dict[str, dict[str, str]] = {}
        self._workloads: dict[str, ObservedWorkload] = {}
        self._next_instance = 1
        # Every mutating call, in order; reads never append here.
        self.mutation_log: list[str] = []
        self._load()

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _load(self) -> None:
        if self._state_path is None or not self._state_path.exists():
            return
        data = json.loads(self._state_path.read_text(encoding="utf-8"))
        self._namespaces = set(data.get("namespaces", []))
        self._secrets = {k: dict(v) for k, v in data.get("secrets", {}).items()}
        self._workloads = {
            k: ObservedWorkload.model_validate(v)
            for k, v in data.get("workloads", {}).items()
        }
        self._next_instance = int(data.get("next_instance", 1))

    def _save(self) -> None:
        if self._state_path is None:
            return
        self._state_path.parent.mkdir(parents=True, exist_ok=True)
        data = {
            "namespaces": sorted(self._namespaces),
            "secrets": self._secrets,
            "workloads": {
                k: w.model_dump(mode="json") for k, w in sorted(self._workloads.items())
            },
            "next_instance": self._next_instance,
        }
        tmp = self._state_path.with_suffix(".tmp")
        tmp.write_text(json.dumps(data, indent=2, sort_keys=True), encoding="utf-8")
        tmp.replace(self._state_path)

    def _mutated(self, description: str) -> None:
        self.mutation_log.append(description)
        logger.debug("cluster: %s", description)
        self._save()

    # ------------------------------------------------------------------
    # Namespaces and secrets
    # ------------------------------------------------------------------

    def has_namespace(self, namespace: str) -> bool:
        with self._lock:
            return namespace in self._namespaces

    def create_namespace(self, namespace: str) -> None:
        with self._lock:
            if namespace in self._namespaces:
                return
            self._namespaces.add(namespace)
            self._mutated(f"create namespace {namespace}")

    def get_secret(self, namespace: str, name: str) -> dict[str, str] | None:
        with self._lock:
            values = self._secrets.get(_key(namespace, name))
            return dict(values) if values is not None else None

    def put_secret(self, namespace: str, name: str, values: Mapping[str, str]) -> None:
        with self._lock:
            if namespace not in self._namespaces:
                raise WorkloadNotFoundError(f"Namespace {namespace} does not exist")
            self._secrets[_key(namespace, name)] = dict(values)
            self._mutated(f"put secret {_key(namespace, name)}")

    # ------------------------------------------------------------------
    # Workloads
    # ------------------------------------------------------------------

    def observe(self, namespace: str, name: str) -> ObservedWorkload | None:
        with self._lock:
            return self._workloads.get(_key(namespace, name))

    def create_workload(self, desired: DesiredState) -> ObservedWorkload:
        with self._lock:
            key = _key(desired.namespace, desired.name)
            if desired.namespace not in self._namespaces:
                raise WorkloadNotFoundError(f"Namespace {desired.namespace} does not exist")
            if key in self._workloads:
                raise ValueError(f"Workload {key} already exists")
            workload = ObservedWorkload(
                name=desired.name,
                namespace=desired.namespace,
                image=desired.image,
                replicas=desired.replicas,
                ports=list(desired.ports),
                secret_name=desired.secret_name,
                secret_refs=list(desired.secret_refs),
                pull_policy=desired.pull_policy,
                revision=1,
                instances=self._spawn(desired.image, 1, desired.replicas),
            )
            self._workloads[key] = workload
            self._mutated(f"create workload {key} image={desired.image.reference}")
            return workload

    def update_workload(self, desired: DesiredState) -> ObservedWorkload:
        """Roll out a new revision; old instances keep serving meanwhile."""
        with self._lock:
            key = _key(desired.namespace, desired.name)
            current = self._require(key)
            revision = current.revision + 1
            # Unready instances of the superseded revision have nothing to serve.
            kept = [
                self._moved(i, InstanceState.TERMINATING)
                if i.revision == current.revision and _terminable(i)
                and i.state != InstanceState.READY
                else i
                for i in current.instances
            ]
            workload = current.model_copy(
                update={
                    "image": desired.image,
                    "replicas": desired.replicas,
                    "ports": list(desired.ports),
                    "secret_name": desired.secret_name,
                    "secret_refs": list(desired.secret_refs),
                    "pull_policy": desired.pull_policy,
                    "revision": revision,
                    "instances": kept + self._spawn(desired.image, revision, desired.replicas),
                }
            )
            self._workloads[key] = workload
            self._mutated(
                f"update workload {key} revision={revision} image={desired.image.reference}"
            )
            return workload

    def scale(self, namespace: str, name: str, replicas: int) -> ObservedWorkload:
        if replicas < 0:
            raise ValueError(f"replicas must be >= 0, got {replicas}")
        with self._lock:
            key = _key(namespace, name)
            current = self._require(key)
            live = [
                i for i in current.instances
                if i.revision == current.revision and i.state != InstanceState.TERMINATING
            ]
            instances = list(current.instances)
            if len(live) < replicas:
                instances += self._spawn(current.image, current.revision, replicas - len(live))
            elif len(live) > replicas:
                # Drop the least useful instances first: not-ready before ready.
                order = {InstanceState.FAILED: 0, InstanceState.PENDING: 1,
                         InstanceState.STARTING: 2, InstanceState.READY: 3}
                surplus = sorted(
                    (i for i in live if _terminable(i)),
                    key=lambda i: (order[i.state], i.instance_id),
                )
                doomed = {i.instance_id for i in surplus[: len(live) - replicas]}
                instances = [
                    self._moved(i, InstanceState.TERMINATING) if i.instance_id in doomed else i
                    for i in instances
                ]
            workload = current.model_copy(update={"replicas": replicas, "instances": instances})
            self._workloads[key] = workload
            self._mutated(f"scale workload {key} replicas={replicas}")
            return workload

    def recycle(self, namespace: str, name: str, instance_id: str) -> None:
        """Terminate *instance_id* and start a replacement of the current revision."""
        with self._lock:
            key = _key(namespace, name)
            current = self._require(key)
            instances: list[Instance] = []
            replaced = False
            for instance in current.instances:
                if instance.instance_id == instance_id:
                    instances.append(self._moved(instance, InstanceState.TERMINATING))
                    replaced = instance.revision == current.revision
                else:
                    instances.append(instance)
            if replaced:
                instances += self._spawn(current.image, current.revision, 1)
            self._workloads[key] = current.model_copy(update={"instances": instances})
            self._mutated(f"recycle instance {instance_id} of {key}")

    # ------------------------------------------------------------------
    # Simulation
    # ------------------------------------------------------------------

    def tick(self) -> None:
        """Advance every instance by one lifecycle step."""
        with self._lock:
            changed = False
            for key, workload in list(self._workloads.items()):
                advanced = self._advance(workload)
                if advanced != workload:
                    self._workloads[key] = advanced
                    changed = True
            if changed:
                self._save()

    def _advance(self, workload: ObservedWorkload) -> ObservedWorkload:
        instances: list[Instance] = []
        for instance in workload.instances:
            if instance.state == InstanceState.TERMINATING:
                continue
            if instance.state == InstanceState.PENDING:
                instance = self._moved(instance, InstanceState.STARTING)
            elif instance.state == InstanceState.STARTING:
                failure = self._boot_failure(workload, instance)
                if failure:
                    logger.info("Instance %s failed to start: %s", instance.instance_id, failure)
                    instance = self._moved(instance, InstanceState.FAILED, failure)
                else:
                    instance = self._moved(instance, InstanceState.READY)
            instances.append(instance)

        current_ready = sum(
            1 for i in instances
            if i.revision == workload.revision and i.state == InstanceState.READY
        )
        if current_ready >= workload.replicas:
            instances = [
                self._moved(i, InstanceState.TERMINATING)
                if i.revision != workload.revision and _terminable(i)
                else i
                for i in instances
            ]
        return workload.model_copy(update={"instances": instances})

    def _boot_failure(self, workload: ObservedWorkload, instance: Instance) -> str:
        """Why *instance* cannot start, or an empty string if it can."""
        if self._runtime_store is not None and workload.pull_policy == PullPolicy.NEVER:
            present = self._runtime_store.get(instance.image.reference)
            if present is None:
                return f"ErrImageNeverPull: {instance.image.reference} is not present on the node"
            if present.digest != instance.image.digest:
                return (
                    f"ImageDigestMismatch: {instance.image.reference} on the node is "
                    f"{present.digest[:19]}, expected {instance.image.digest[:19]}"
                )
        if workload.secret_refs:
            values = {}
            if workload.secret_name:
                values = self._secrets.get(_key(workload.namespace, workload.secret_name), {})
            try:
                SecretProvider.from_mapping(values).resolve(workload.secret_refs)
            except (MissingSecret, InvalidSecretValue) as exc:
                return f"ConfigError: {exc}"
        return ""

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _require(self, key: str) -> ObservedWorkload:
        workload = self._workloads.get(key)
        if workload is None:
            raise WorkloadNotFoundError(f"Workload {key} does not exist")
        return workload

    def _spawn(self, image: ImageRef, revision: int, count: int) -> list[Instance]:
        instances = []
        for _ in range(count):
            instances.append(
                Instance(
                    instance_id=f"i-{self._next_instance:05d}",
                    revision=revision,
                    image=image,
                )
            )
            self._next_instance += 1
        return instances

    @staticmethod
    def _moved(instance: Instance, to_state: InstanceState, reason: str = "") -> Instance:
        if to_state not in VALID_INSTANCE_TRANSITIONS[instance.state]:
            raise InvalidTransitionError(instance.instance_id, instance.state, to_state)
        return instance.model_copy(update={"state": to_state, "reason": reason or instance.reason})
