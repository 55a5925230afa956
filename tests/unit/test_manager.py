"""Tests for DeploymentManager — minimal plans, rollout polling, retry budget, cancel."""

from __future__ import annotations

import threading

import pytest

from dockhand.core.registry import RuntimeImageStore, TagConflict
from dockhand.deploy.cluster import LocalCluster
from dockhand.deploy.manager import (
    DeploymentFailedError,
    DeploymentManager,
    ReconciliationCancelled,
    ReconciliationTimeout,
)
from dockhand.models.deploy import (
    DesiredState,
    InstanceState,
    Operation,
    OperationKind,
    RolloutPolicy,
)
from dockhand.models.images import ImageRef

POLICY = RolloutPolicy(
    timeout_seconds=5.0, initial_delay=0.25, max_delay=1.0, backoff_factor=2.0, retry_budget=2
)


class FakeClock:
    """Monotonic clock whose ``sleep`` advances time instantly."""

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []
        self.on_sleep = None

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds
        if self.on_sleep is not None:
            self.on_sleep()


class StalledCluster(LocalCluster):
    """A cluster whose instances never make progress."""

    def tick(self) -> None:
        pass


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def cluster(runtime_store: RuntimeImageStore) -> LocalCluster:
    return LocalCluster(runtime_store)


@pytest.fixture
def manager(cluster: LocalCluster, clock: FakeClock) -> DeploymentManager:
    return DeploymentManager(cluster, POLICY, sleep=clock.sleep, clock=clock)


def _desired(image: ImageRef, replicas: int = 2, **kwargs) -> DesiredState:
    return DesiredState(name="backend", namespace="apps", image=image, replicas=replicas, **kwargs)


def _kinds(ops) -> list[OperationKind]:
    return [op.kind for op in ops]


class TestPlan:
    def test_plan_for_empty_cluster(self, manager: DeploymentManager, publish_image):
        ops = manager.plan(_desired(publish_image("v1")))
        assert _kinds(ops) == [OperationKind.CREATE_NAMESPACE, OperationKind.CREATE_WORKLOAD]

    def test_plan_is_pure(self, manager: DeploymentManager, cluster: LocalCluster, publish_image):
        manager.plan(_desired(publish_image("v1")))
        assert cluster.mutation_log == []

    def test_plan_detects_scale_only(self, manager: DeploymentManager, publish_image):
        image = publish_image("v1")
        manager.apply(_desired(image))
        assert _kinds(manager.plan(_desired(image, replicas=3))) == [OperationKind.SCALE_WORKLOAD]

    def test_plan_detects_template_change(self, manager: DeploymentManager, publish_image):
        manager.apply(_desired(publish_image("v1")))
        ops = manager.plan(_desired(publish_image("v2"), replicas=3))
        assert _kinds(ops) == [OperationKind.UPDATE_WORKLOAD]
        assert ops[0].detail == "app:v1 -> app:v2"

    def test_reused_tag_with_new_digest_is_refused(
        self, manager: DeploymentManager, cluster: LocalCluster, publish_image
    ):
        image = publish_image("v1")
        manager.apply(_desired(image))
        before = list(cluster.mutation_log)
        rebound = image.model_copy(update={"digest": "sha256:" + "1" * 64})
        with pytest.raises(TagConflict):
            manager.apply(_desired(rebound))
        assert cluster.mutation_log == before


class TestApply:
    def test_create_then_ready(self, manager: DeploymentManager, cluster: LocalCluster, publish_image):
        result = manager.apply(_desired(publish_image("v1")))
        assert result.workload == "apps/backend"
        assert _kinds(result.operations) == [
            OperationKind.CREATE_NAMESPACE, OperationKind.CREATE_WORKLOAD,
        ]
        assert result.revision == 1
        assert result.ready_replicas == 2
        assert result.retries == 0
        assert cluster.observe("apps", "backend").ready_replicas == 2

    def test_second_apply_is_a_noop(
        self, manager: DeploymentManager, cluster: LocalCluster, publish_image
    ):
        desired = _desired(publish_image("v1"))
        manager.apply(desired)
        mutations = len(cluster.mutation_log)
        result = manager.apply(desired)
        assert result.noop
        assert len(cluster.mutation_log) == mutations

    def test_backoff_grows_and_caps(self, manager: DeploymentManager, clock: FakeClock, publish_image):
        manager.apply(_desired(publish_image("v1")))
        assert clock.sleeps == [0.25]
        assert [POLICY.delay(n) for n in range(4)] == [0.25, 0.5, 1.0, 1.0]

    def test_rolling_update_keeps_old_revision_serving(
        self, manager: DeploymentManager, cluster: LocalCluster, clock: FakeClock, publish_image
    ):
        manager.apply(_desired(publish_image("v1")))
        serving: list[int] = []

        def record() -> None:
            workload = cluster.observe("apps", "backend")
            serving.append(len(workload.in_state(InstanceState.READY, revision=1))
                           + len(workload.in_state(InstanceState.READY, revision=2)))

        clock.on_sleep = record
        result = manager.apply(_desired(publish_image("v2")))
        assert result.revision == 2
        assert result.ready_replicas == 2
        assert serving and min(serving) >= 2
        workload = cluster.observe("apps", "backend")
        assert workload.stale_instances == []

    def test_scale_apply(self, manager: DeploymentManager, publish_image):
        image = publish_image("v1")
        manager.apply(_desired(image))
        result = manager.apply(_desired(image, replicas=3))
        assert _kinds(result.operations) == [OperationKind.SCALE_WORKLOAD]
        assert result.ready_replicas == 3
        assert result.revision == 1


class TestSecrets:
    def test_secret_created_then_updated_only_when_changed(
        self, manager: DeploymentManager, cluster: LocalCluster, publish_image
    ):
        desired = _desired(publish_image("v1"), secret_name="backend-env", secret_refs=["POSTGRES_HOST"])
        first = manager.apply(desired, secret_values={"POSTGRES_HOST": "db"})
        assert OperationKind.CREATE_SECRET in _kinds(first.operations)

        same = manager.apply(desired, secret_values={"POSTGRES_HOST": "db"})
        assert same.noop

        changed = manager.apply(desired, secret_values={"POSTGRES_HOST": "db2"})
        assert _kinds(changed.operations) == [OperationKind.UPDATE_SECRET]
        assert changed.operations[0].detail == "changed: POSTGRES_HOST"
        assert cluster.get_secret("apps", "backend-env") == {"POSTGRES_HOST": "db2"}

    def test_missing_secret_exhausts_retry_budget(self, manager: DeploymentManager, publish_image):
        desired = _desired(
            publish_image("v1"), replicas=1, secret_name="backend-env", secret_refs=["POSTGRES_PORT"]
        )
        with pytest.raises(DeploymentFailedError) as exc_info:
            manager.apply(desired)
        assert exc_info.value.retries == POLICY.retry_budget
        assert "ConfigError" in exc_info.value.reason

    def test_secret_operation_without_values_is_refused(
        self, manager: DeploymentManager, cluster: LocalCluster, publish_image
    ):
        desired = _desired(publish_image("v1"), secret_name="backend-env", secret_refs=["PORT"])
        op = Operation(kind=OperationKind.CREATE_SECRET, target="apps/backend-env")
        with pytest.raises(ValueError, match="needs a secret name and values"):
            manager._execute(op, desired, None)
        assert cluster.get_secret("apps", "backend-env") is None


class TestFailures:
    def test_unloaded_image_fails_and_old_revision_keeps_serving(
        self, manager: DeploymentManager, cluster: LocalCluster, runtime_store, registry, publish_image
    ):
        manager.apply(_desired(publish_image("v1")))
        v2 = publish_image("v2", load=False)

        with pytest.raises(DeploymentFailedError) as exc_info:
            manager.apply(_desired(v2))
        assert "ErrImageNeverPull" in exc_info.value.reason
        workload = cluster.observe("apps", "backend")
        assert len(workload.in_state(InstanceState.READY, revision=1)) == 2

        # Loading the image and applying again resumes the rollout.
        registry.load(v2, runtime_store)
        resumed = manager.apply(_desired(v2))
        assert resumed.noop
        assert resumed.revision == 2
        assert resumed.ready_replicas == 2
        assert cluster.observe("apps", "backend").stale_instances == []

    def test_timeout_rounds_consume_budget(self, runtime_store, clock: FakeClock, publish_image):
        cluster = StalledCluster(runtime_store)
        policy = RolloutPolicy(timeout_seconds=1.0, initial_delay=0.25, max_delay=1.0, retry_budget=1)
        manager = DeploymentManager(cluster, policy, sleep=clock.sleep, clock=clock)
        with pytest.raises(DeploymentFailedError) as exc_info:
            manager.apply(_desired(publish_image("v1")))
        assert exc_info.value.retries == 1
        assert isinstance(exc_info.value.__cause__, ReconciliationTimeout)
        assert clock.now == pytest.approx(2.0)
        assert max(clock.sleeps) <= policy.max_delay


class TestCancellation:
    def test_cancelled_before_start_mutates_nothing(
        self, manager: DeploymentManager, cluster: LocalCluster, publish_image
    ):
        cancel = threading.Event()
        cancel.set()
        with pytest.raises(ReconciliationCancelled):
            manager.apply(_desired(publish_image("v1")), cancel=cancel)
        assert cluster.mutation_log == []

    def test_cancel_mid_rollout_then_resume(
        self, manager: DeploymentManager, cluster: LocalCluster, clock: FakeClock, publish_image
    ):
        desired = _desired(publish_image("v1"))
        cancel = threading.Event()
        clock.on_sleep = cancel.set
        with pytest.raises(ReconciliationCancelled):
            manager.apply(desired, cancel=cancel)
        assert cluster.observe("apps", "backend") is not None

        clock.on_sleep = None
        result = manager.apply(desired)
        assert result.noop
        assert result.ready_replicas == 2
