"""Desired and observed workload state, instance lifecycle, rollout policy."""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator

from dockhand.models.images import ImageRef


class PullPolicy(str, Enum):
    NEVER = "Never"
    IF_NOT_PRESENT = "IfNotPresent"
    ALWAYS = "Always"


class InstanceState(str, Enum):
    """Lifecycle of a single workload instance."""

    PENDING = "pending"
    STARTING = "starting"
    READY = "ready"
    FAILED = "failed"
    TERMINATING = "terminating"


# Valid instance transitions, enforced by the cluster backend.
# TERMINATING is terminal; the instance is removed afterwards.
VALID_INSTANCE_TRANSITIONS: dict[InstanceState, set[InstanceState]] = {
    InstanceState.PENDING: {InstanceState.STARTING, InstanceState.TERMINATING},
    InstanceState.STARTING: {InstanceState.READY, InstanceState.FAILED},
    InstanceState.READY: {InstanceState.TERMINATING},
    InstanceState.FAILED: {InstanceState.TERMINATING},
    InstanceState.TERMINATING: set(),
}


class PortMapping(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str = "http"
    container_port: int = Field(ge=1, le=65535)
    service_port: int | None = Field(default=None, ge=1, le=65535)

    @property
    def exposed_port(self) -> int:
        return self.service_port or self.container_port


class DesiredState(BaseModel):
    """Declarative target for one workload.

    Only explicit ``apply`` calls change it; the running workload never
    writes back to its own desired state.
    """

    model_config = ConfigDict(frozen=True)

    name: str
    namespace: str = "default"
    image: ImageRef
    replicas: int = Field(default=1, ge=0)
    ports: list[PortMapping] = []
    secret_name: str | None = None
    secret_refs: list[str] = []
    pull_policy: PullPolicy = PullPolicy.NEVER

    @field_validator("secret_refs")
    @classmethod
    def _sorted_refs(cls, value: list[str]) -> list[str]:
        return sorted(set(value))

    def template(self) -> dict[str, object]:
        """Fields whose change requires replacing instances (a new revision)."""
        return {
            "image": self.image.model_dump(mode="json"),
            "ports": [p.model_dump(mode="json") for p in self.ports],
            "secret_name": self.secret_name,
            "secret_refs": list(self.secret_refs),
            "pull_policy": self.pull_policy.value,
        }


class Instance(BaseModel):
    """A single running (or starting, or failed) copy of a workload."""

    model_config = ConfigDict(frozen=True)

    instance_id: str
    revision: int
    image: ImageRef
    state: InstanceState = InstanceState.PENDING
    reason: str = ""


class ObservedWorkload(BaseModel):
    """What the cluster reports for a workload right now."""

    model_config = ConfigDict(frozen=True)

    name: str
    namespace: str
    image: ImageRef
    replicas: int
    ports: list[PortMapping] = []
    secret_name: str | None = None
    secret_refs: list[str] = []
    pull_policy: PullPolicy = PullPolicy.NEVER
    revision: int = 1
    instances: list[Instance] = []

    def template(self) -> dict[str, object]:
        return {
            "image": self.image.model_dump(mode="json"),
            "ports": [p.model_dump(mode="json") for p in self.ports],
            "secret_name": self.secret_name,
            "secret_refs": list(self.secret_refs),
            "pull_policy": self.pull_policy.value,
        }

    def in_state(self, state: InstanceState, *, revision: int | None = None) -> list[Instance]:
        rev = self.revision if revision is None else revision
        return [i for i in self.instances if i.state == state and i.revision == rev]

    @property
    def ready_replicas(self) -> int:
        return len(self.in_state(InstanceState.READY))

    @property
    def stale_instances(self) -> list[Instance]:
        """Instances of older revisions that have not begun terminating."""
        return [
            i for i in self.instances
            if i.revision != self.revision and i.state != InstanceState.TERMINATING
        ]


class OperationKind(str, Enum):
    CREATE_NAMESPACE = "create_namespace"
    CREATE_SECRET = "create_secret"
    UPDATE_SECRET = "update_secret"
    CREATE_WORKLOAD = "create_workload"
    UPDATE_WORKLOAD = "update_workload"
    SCALE_WORKLOAD = "scale_workload"


class Operation(BaseModel):
    """One mutating call the reconciler issued (or plans to issue)."""

    model_config = ConfigDict(frozen=True)

    kind: OperationKind
    target: str
    detail: str = ""


class ApplyResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    workload: str
    operations: list[Operation] = []
    revision: int = 0
    ready_replicas: int = 0
    retries: int = 0

    @property
    def noop(self) -> bool:
        return not self.operations


class RolloutPolicy(BaseModel):
    """Health-polling budget for one apply.

    Delays grow as ``initial_delay * backoff_factor ** n`` capped at
    ``max_delay``. Each timed-out poll round and each recycled failed
    instance consumes one unit of ``retry_budget``.
    """

    model_config = ConfigDict(frozen=True)

    timeout_seconds: float = Field(default=120.0, gt=0)
    initial_delay: float = Field(default=0.5, ge=0)
    max_delay: float = Field(default=10.0, ge=0)
    backoff_factor: float = Field(default=2.0, ge=1)
    retry_budget: int = Field(default=3, ge=0)

    def delay(self, attempt: int) -> float:
        return min(self.initial_delay * (self.backoff_factor ** attempt), self.max_delay)
