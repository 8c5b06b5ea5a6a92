"""Tests for rollout helpers and the halt rule."""

from datetime import datetime, timezone

from shazamq_operator.cluster.model import (
    UPGRADE_OVERRIDE_ANNOTATION,
    ClusterResource,
    ClusterStatus,
    Phase,
    UpgradeStatus,
)
from shazamq_operator.engine.rollout import (
    REVISION_LABEL,
    RolloutOutcome,
    RolloutState,
    halt_in_effect,
    pod_is_ready,
    pod_ordinal,
    pod_revision,
)


def _pod(name, ready=True, revision="orders-abc", deleting=False):
    metadata = {"name": name, "labels": {REVISION_LABEL: revision}}
    if deleting:
        metadata["deletionTimestamp"] = "2026-03-01T12:00:00Z"
    return {
        "metadata": metadata,
        "status": {"conditions": [{"type": "Ready", "status": "True" if ready else "False"}]},
    }


def _halted_cluster(generation=2, annotations=None, token=None):
    upgrade = UpgradeStatus(
        target_revision="orders-new",
        ordinal=2,
        started_at=datetime(2026, 3, 1, tzinfo=timezone.utc),
        attempts=3,
        halted=True,
        failed_ordinal=2,
        halted_generation=2,
        override_token=token,
    )
    return ClusterResource(
        name="orders",
        namespace="kafka",
        uid="uid-orders",
        generation=generation,
        annotations=annotations or {},
        status=ClusterStatus(phase=Phase.DEGRADED, upgrade=upgrade),
    )


class TestPodHelpers:
    """Tests for pod ordinal, revision and readiness."""

    def test_ordinal_from_name(self):
        assert pod_ordinal(_pod("orders-12")) == 12
        assert pod_ordinal(_pod("my-orders-0")) == 0

    def test_ordinal_of_foreign_pod(self):
        assert pod_ordinal(_pod("orders-canary")) is None

    def test_revision(self):
        assert pod_revision(_pod("orders-0", revision="orders-7f")) == "orders-7f"
        assert pod_revision({"metadata": {"name": "orders-0"}}) is None

    def test_ready(self):
        assert pod_is_ready(_pod("orders-0"))
        assert not pod_is_ready(_pod("orders-0", ready=False))
        assert not pod_is_ready({"metadata": {"name": "orders-0"}})

    def test_terminating_pod_is_not_ready(self):
        assert not pod_is_ready(_pod("orders-0", deleting=True))


class TestHaltRule:
    """Tests for when a halted upgrade blocks mutation."""

    def test_halt_holds_for_same_generation(self):
        assert halt_in_effect(_halted_cluster())

    def test_generation_change_clears_halt(self):
        assert not halt_in_effect(_halted_cluster(generation=3))

    def test_new_override_value_clears_halt(self):
        cluster = _halted_cluster(annotations={UPGRADE_OVERRIDE_ANNOTATION: "go"})
        assert not halt_in_effect(cluster)

    def test_override_seen_at_halt_time_does_not_clear(self):
        cluster = _halted_cluster(annotations={UPGRADE_OVERRIDE_ANNOTATION: "go"}, token="go")
        assert halt_in_effect(cluster)

    def test_no_upgrade_no_halt(self):
        cluster = ClusterResource(name="orders", namespace="kafka", uid="u")
        assert not halt_in_effect(cluster)


class TestOutcomePhase:
    """Rollout states map onto cluster phases."""

    def test_phases(self):
        assert RolloutOutcome(RolloutState.STABLE, 3).phase == Phase.READY
        assert RolloutOutcome(RolloutState.SCALING, 3).phase == Phase.SCALING
        assert RolloutOutcome(RolloutState.UPGRADING, 3).phase == Phase.UPGRADING
        assert RolloutOutcome(RolloutState.HALTED, 3).phase == Phase.DEGRADED
