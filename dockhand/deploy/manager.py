"""Deployment manager — reconciles a workload toward its desired state.

``apply`` plans the minimal set of mutating operations (namespace, secret,
workload create/update/scale), issues them, then polls the cluster with
exponential backoff until the current revision is fully ready and no
instance of an older revision remains.

Failure handling:

* a failed instance is recycled and costs one unit of the retry budget;
* a poll round that outlives ``timeout_seconds`` costs one unit too;
* an exhausted budget raises ``DeploymentFailedError``. Instances of the
  previous revision are left serving; nothing is rolled back.

Cancellation is observed at every poll boundary. Because ``plan`` is a
pure diff against observed state, applying the same desired state again
after a cancel or failure resumes where the last attempt stopped.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Mapping

from dockhand.core.registry import TagConflict
from dockhand.deploy.cluster import ClusterBackend
from dockhand.models.deploy import (
    ApplyResult,
    DesiredState,
    InstanceState,
    ObservedWorkload,
    Operation,
    OperationKind,
    RolloutPolicy,
)

logger = logging.getLogger(__name__)


class ReconciliationTimeout(RuntimeError):
    """A poll round ended before the workload converged."""

    def __init__(self, workload: str, timeout_seconds: float, ready: int, desired: int) -> None:
        self.workload = workload
        self.timeout_seconds = timeout_seconds
        self.ready = ready
        self.desired = desired
        super().__init__(
            f"Workload {workload} not ready after {timeout_seconds:g}s "
            f"({ready}/{desired} replicas ready)"
        )


class ReconciliationCancelled(RuntimeError):
    def __init__(self, workload: str) -> None:
        self.workload = workload
        super().__init__(f"Reconciliation of {workload} was cancelled")


class DeploymentFailedError(RuntimeError):
    """The retry budget ran out before the workload converged."""

    def __init__(self, workload: str, reason: str, retries: int) -> None:
        self.workload = workload
        self.reason = reason
        self.retries = retries
        super().__init__(f"Deployment of {workload} failed after {retries} retries: {reason}")


class DeploymentManager:
    """Applies ``DesiredState`` to a ``ClusterBackend``.

    Parameters
    ----------
    cluster:
        The backend to reconcile against.
    policy:
        Backoff and retry budget. Defaults to ``RolloutPolicy()``.
    sleep, clock:
        Injected for tests; default to ``time.sleep`` / ``time.monotonic``.
    """

    def __init__(
        self,
        cluster: ClusterBackend,
        policy: RolloutPolicy | None = None,
        *,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._cluster = cluster
        self.policy = policy or RolloutPolicy()
        self._sleep = sleep
        self._clock = clock

    # ------------------------------------------------------------------
    # Planning
    # ------------------------------------------------------------------

    def plan(
        self,
        desired: DesiredState,
        secret_values: Mapping[str, str] | None = None,
    ) -> list[Operation]:
        """The mutating operations needed to reach *desired*. Empty if none.

        Raises ``TagConflict`` when the workload already runs the desired
        tag under a different digest: a reused tag would otherwise be a
        silent no-op that leaves the old content serving.
        """
        ns, name = desired.namespace, desired.name
        target = f"{ns}/{name}"
        ops: list[Operation] = []

        if not self._cluster.has_namespace(ns):
            ops.append(Operation(kind=OperationKind.CREATE_NAMESPACE, target=ns))

        if desired.secret_name and secret_values is not None:
            secret_target = f"{ns}/{desired.secret_name}"
            current = self._cluster.get_secret(ns, desired.secret_name)
            if current is None:
                ops.append(Operation(kind=OperationKind.CREATE_SECRET, target=secret_target))
            elif current != dict(secret_values):
                changed = sorted(
                    k for k in set(current) | set(secret_values)
                    if current.get(k) != secret_values.get(k)
                )
                ops.append(Operation(
                    kind=OperationKind.UPDATE_SECRET,
                    target=secret_target,
                    detail="changed: " + ", ".join(changed),
                ))

        observed = self._cluster.observe(ns, name)
        if observed is None:
            ops.append(Operation(
                kind=OperationKind.CREATE_WORKLOAD,
                target=target,
                detail=f"image={desired.image.reference} replicas={desired.replicas}",
            ))
            return ops

        self._guard_tag(desired, observed)
        if observed.template() != desired.template():
            ops.append(Operation(
                kind=OperationKind.UPDATE_WORKLOAD,
                target=target,
                detail=f"{observed.image.reference} -> {desired.image.reference}",
            ))
        elif observed.replicas != desired.replicas:
            ops.append(Operation(
                kind=OperationKind.SCALE_WORKLOAD,
                target=target,
                detail=f"{observed.replicas} -> {desired.replicas}",
            ))
        return ops

    @staticmethod
    def _guard_tag(desired: DesiredState, observed: ObservedWorkload) -> None:
        if (
            observed.image.reference == desired.image.reference
            and observed.image.digest != desired.image.digest
        ):
            raise TagConflict(
                desired.image.reference, observed.image.digest, desired.image.digest
            )

    # ------------------------------------------------------------------
    # Apply
    # ------------------------------------------------------------------

    def apply(
        self,
        desired: DesiredState,
        *,
        secret_values: Mapping[str, str] | None = None,
        cancel: threading.Event | None = None,
    ) -> ApplyResult:
        """Converge the cluster to *desired* and wait for the rollout."""
        self._check_cancelled(desired, cancel)
        operations = self.plan(desired, secret_values)
        if operations:
            logger.info(
                "Applying %d operation(s) to %s/%s", len(operations), desired.namespace, desired.name
            )
        else:
            logger.info("%s/%s already matches desired state", desired.namespace, desired.name)

        for op in operations:
            self._execute(op, desired, secret_values)

        observed, retries = self._await_rollout(desired, cancel)
        return ApplyResult(
            workload=f"{desired.namespace}/{desired.name}",
            operations=operations,
            revision=observed.revision,
            ready_replicas=observed.ready_replicas,
            retries=retries,
        )

    def _execute(
        self,
        op: Operation,
        desired: DesiredState,
        secret_values: Mapping[str, str] | None,
    ) -> None:
        logger.info("%s %s %s", op.kind.value, op.target, op.detail)
        if op.kind == OperationKind.CREATE_NAMESPACE:
            self._cluster.create_namespace(desired.namespace)
        elif op.kind in (OperationKind.CREATE_SECRET, OperationKind.UPDATE_SECRET):
            if desired.secret_name is None or secret_values is None:
                raise ValueError(
                    f"{op.kind.value} for {desired.namespace}/{desired.name} "
                    "needs a secret name and values"
                )
            self._cluster.put_secret(desired.namespace, desired.secret_name, secret_values)
        elif op.kind == OperationKind.CREATE_WORKLOAD:
            self._cluster.create_workload(desired)
        elif op.kind == OperationKind.UPDATE_WORKLOAD:
            self._cluster.update_workload(desired)
        elif op.kind == OperationKind.SCALE_WORKLOAD:
            self._cluster.scale(desired.namespace, desired.name, desired.replicas)

    # ------------------------------------------------------------------
    # Rollout
    # ------------------------------------------------------------------

    def _await_rollout(
        self,
        desired: DesiredState,
        cancel: threading.Event | None,
    ) -> tuple[ObservedWorkload, int]:
        policy = self.policy
        retries = 0
        attempt = 0
        deadline = self._clock() + policy.timeout_seconds

        while True:
            self._check_cancelled(desired, cancel)
            self._cluster.tick()
            observed = self._cluster.observe(desired.namespace, desired.name)
            if observed is None:
                raise DeploymentFailedError(desired.name, "workload disappeared", retries)
            if self._converged(observed, desired):
                logger.info(
                    "%s/%s ready: revision %d, %d/%d replicas",
                    desired.namespace, desired.name, observed.revision,
                    observed.ready_replicas, desired.replicas,
                )
                return observed, retries

            for instance in observed.in_state(InstanceState.FAILED):
                retries = self._spend_retry(
                    desired, retries, f"instance {instance.instance_id} failed: {instance.reason}"
                )
                self._cluster.recycle(desired.namespace, desired.name, instance.instance_id)
                attempt = 0

            now = self._clock()
            if now >= deadline:
                timeout = ReconciliationTimeout(
                    desired.name, policy.timeout_seconds, observed.ready_replicas, desired.replicas
                )
                retries = self._spend_retry(desired, retries, str(timeout), cause=timeout)
                deadline = now + policy.timeout_seconds
                attempt = 0

            self._sleep(min(policy.delay(attempt), max(deadline - now, 0.0)))
            attempt += 1

    @staticmethod
    def _converged(observed: ObservedWorkload, desired: DesiredState) -> bool:
        return (
            observed.ready_replicas == desired.replicas
            and len(observed.in_state(InstanceState.READY)) == len(
                [i for i in observed.instances if i.revision == observed.revision]
            )
            and not observed.stale_instances
        )

    def _spend_retry(
        self,
        desired: DesiredState,
        retries: int,
        reason: str,
        *,
        cause: BaseException | None = None,
    ) -> int:
        retries += 1
        if retries > self.policy.retry_budget:
            logger.error("Retry budget exhausted for %s: %s", desired.name, reason)
            raise DeploymentFailedError(desired.name, reason, retries - 1) from cause
        logger.warning(
            "Retry %d/%d for %s: %s", retries, self.policy.retry_budget, desired.name, reason
        )
        return retries

    @staticmethod
    def _check_cancelled(desired: DesiredState, cancel: threading.Event | None) -> None:
        if cancel is not None and cancel.is_set():
            raise ReconciliationCancelled(desired.name)
