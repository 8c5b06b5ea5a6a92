"""
Rolling-upgrade and scaling state machine.

The workload uses the OnDelete update strategy, so the platform never
replaces a replica on its own: a spec change produces a new update revision
and this module replaces outdated replicas one at a time by deleting their
pods, highest ordinal first. The platform recreates each deleted pod at the
update revision.

States:
    Stable -> Scaling -> Stable
    Stable -> Upgrading -> Stable | Degraded (halted)

A replaced ordinal must reach application-level readiness (pod Ready and
broker health "ready") before the next ordinal is touched. If it does not
within the readiness timeout, the pod is replaced again, up to
upgrade_max_attempts. After that the upgrade halts: the cluster is
Degraded and receives no automatic mutation until its spec generation
changes or the upgrade-override annotation is set to a new value.

Progress is carried across passes in status.upgrade, so a restart or a
leadership handoff resumes at the same ordinal.
"""

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from shazamq_operator.cluster.model import (
    UPGRADE_OVERRIDE_ANNOTATION,
    BrokerStatus,
    ClusterResource,
    ClusterSpec,
    Phase,
    UpgradeStatus,
)
from shazamq_operator.config import OperatorSettings
from shazamq_operator.db.events import EventRecorder
from shazamq_operator.engine.api import GuardedPlatform
from shazamq_operator.engine.compiler import common_labels, pod_name
from shazamq_protocols.broker import BrokerAdminProtocol
from shazamq_protocols.errors import ExternalDependencyError, UpgradeReadinessTimeout
from shazamq_protocols.types import BrokerHealth, ObjectKind

logger = logging.getLogger(__name__)

REVISION_LABEL = "controller-revision-hash"


class RolloutState(str, Enum):
    STABLE = "Stable"
    CREATING = "Creating"
    SCALING = "Scaling"
    UPGRADING = "Upgrading"
    HALTED = "Halted"


@dataclass
class RolloutOutcome:
    """
    Result of one evaluation of the state machine.

    Attributes:
        state: Current rollout state
        desired_replicas: Replica count from spec
        ready_replicas: Replicas passing application-level readiness
        brokers: Per-ordinal broker status
        upgrade: Upgrade progress to persist in status (None when idle)
        error: Set when the upgrade is halted
        mutations: Pods deleted this pass
    """

    state: RolloutState
    desired_replicas: int
    ready_replicas: int = 0
    brokers: list[BrokerStatus] = field(default_factory=list)
    upgrade: UpgradeStatus | None = None
    error: UpgradeReadinessTimeout | None = None
    mutations: int = 0

    @property
    def phase(self) -> Phase:
        return {
            RolloutState.STABLE: Phase.READY,
            RolloutState.CREATING: Phase.CREATING,
            RolloutState.SCALING: Phase.SCALING,
            RolloutState.UPGRADING: Phase.UPGRADING,
            RolloutState.HALTED: Phase.DEGRADED,
        }[self.state]


# =============================================================================
# Pod helpers
# =============================================================================


def pod_ordinal(pod: dict[str, Any]) -> int | None:
    name = pod.get("metadata", {}).get("name", "")
    _, _, suffix = name.rpartition("-")
    return int(suffix) if suffix.isdigit() else None


def pod_revision(pod: dict[str, Any]) -> str | None:
    return (pod.get("metadata", {}).get("labels") or {}).get(REVISION_LABEL)


def pod_is_ready(pod: dict[str, Any]) -> bool:
    """True if the pod is not terminating and its Ready condition is True."""
    if pod.get("metadata", {}).get("deletionTimestamp"):
        return False
    conditions = (pod.get("status") or {}).get("conditions") or []
    return any(c.get("type") == "Ready" and c.get("status") == "True" for c in conditions)


def halt_in_effect(cluster: ClusterResource) -> bool:
    """
    True if a halted upgrade still blocks automatic mutation.

    A halt is cleared by a spec generation change or by an override
    annotation value different from the one recorded at halt time.
    """
    upgrade = cluster.status.upgrade
    if upgrade is None or not upgrade.halted:
        return False
    if cluster.generation != upgrade.halted_generation:
        return False
    override = cluster.annotations.get(UPGRADE_OVERRIDE_ANNOTATION)
    if override is not None and override != upgrade.override_token:
        return False
    return True


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RolloutController:
    """
    Drives scaling and rolling upgrades for one cluster per call.

    Example:
        rollout = RolloutController(api, broker, recorder, settings)
        outcome = await rollout.evaluate(cluster, spec, workload_body)
    """

    def __init__(
        self,
        api: GuardedPlatform,
        broker: BrokerAdminProtocol,
        recorder: EventRecorder,
        settings: OperatorSettings,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.api = api
        self.broker = broker
        self.recorder = recorder
        self.readiness_timeout = settings.upgrade_readiness_timeout_seconds
        self.max_attempts = settings.upgrade_max_attempts
        self.api_timeout = settings.api_timeout_seconds
        self.clock = clock

    # =========================================================================
    # Observation
    # =========================================================================

    async def _list_pods(self, cluster: ClusterResource) -> dict[int, dict[str, Any]]:
        selector = ",".join(
            f"{k}={v}"
            for k, v in common_labels(cluster.name).items()
            if k != "app.kubernetes.io/managed-by"
        )
        pods = await self.api.list_objects(ObjectKind.POD, cluster.namespace, selector)
        by_ordinal: dict[int, dict[str, Any]] = {}
        for pod in pods:
            ordinal = pod_ordinal(pod)
            if ordinal is not None:
                by_ordinal[ordinal] = pod
        return by_ordinal

    async def _health(self, cluster: ClusterResource, ordinal: int) -> BrokerHealth:
        try:
            return await asyncio.wait_for(
                self.broker.health(cluster.namespace, cluster.name, ordinal),
                timeout=self.api_timeout,
            )
        except (ExternalDependencyError, asyncio.TimeoutError) as e:
            logger.debug("Broker %s/%d health unavailable: %s", cluster.key, ordinal, e)
            return BrokerHealth(ordinal=ordinal, ready=False)

    async def _readiness(
        self, cluster: ClusterResource, pods: dict[int, dict[str, Any]], desired: int
    ) -> dict[int, BrokerHealth]:
        """Application-level readiness per ordinal; only pod-Ready replicas are probed."""
        ordinals = sorted(set(range(desired)) | set(pods))
        probed = [o for o in ordinals if o in pods and pod_is_ready(pods[o])]
        results = await asyncio.gather(*(self._health(cluster, o) for o in probed))
        health = {h.ordinal: h for h in results}
        return {o: health.get(o, BrokerHealth(ordinal=o, ready=False)) for o in ordinals}

    # =========================================================================
    # State machine
    # =========================================================================

    async def evaluate(
        self,
        cluster: ClusterResource,
        spec: ClusterSpec,
        workload: dict[str, Any] | None,
    ) -> RolloutOutcome:
        """
        Evaluate and advance the rollout by at most one step.

        Args:
            cluster: Cluster being reconciled (status carries prior progress)
            spec: Validated spec
            workload: Observed workload body after apply

        Returns:
            RolloutOutcome for the status reporter
        """
        desired = spec.replicas
        pods = await self._list_pods(cluster)
        health = await self._readiness(cluster, pods, desired)

        brokers = [
            BrokerStatus(
                id=ordinal,
                pod=pod_name(cluster.name, ordinal),
                ready=h.ready,
                leader=h.controller,
                version=h.version,
            )
            for ordinal, h in sorted(health.items())
            if ordinal in pods
        ]
        ready = sum(1 for o, h in health.items() if o < desired and h.ready)
        outcome = RolloutOutcome(
            state=RolloutState.STABLE,
            desired_replicas=desired,
            ready_replicas=ready,
            brokers=brokers,
        )

        update_revision = ((workload or {}).get("status") or {}).get("updateRevision")
        previous = cluster.status.upgrade
        if previous is not None and previous.halted:
            # Halt was cleared; start over from the current revision
            await self.recorder.emit(
                cluster.key,
                "UpgradeResumed",
                f"halt on ordinal {previous.failed_ordinal} cleared",
            )
            previous = None
        if previous is not None and previous.target_revision != update_revision:
            previous = None
        if (
            previous is not None
            and previous.ordinal is not None
            and previous.ordinal >= desired
        ):
            # Scaled in below the ordinal being replaced; its pod is going away
            logger.info(
                "%s: ordinal %d removed by scale-in during upgrade",
                cluster.key,
                previous.ordinal,
            )
            previous = previous.model_copy(
                update={"ordinal": None, "started_at": None, "attempts": 0}
            )

        def is_ready(ordinal: int) -> bool:
            return health.get(ordinal, BrokerHealth(ordinal, False)).ready

        # A replaced ordinal must pass readiness before anything else moves
        if previous is not None and previous.ordinal is not None:
            ordinal = previous.ordinal
            pod = pods.get(ordinal)
            if pod is not None and pod_revision(pod) == update_revision and is_ready(ordinal):
                await self.recorder.emit(
                    cluster.key,
                    "UpgradeOrdinalReady",
                    f"ordinal {ordinal} passed readiness at revision {update_revision}",
                    ordinal=ordinal,
                )
                previous = previous.model_copy(
                    update={"ordinal": None, "started_at": None, "attempts": 0}
                )
            else:
                outcome.state = RolloutState.UPGRADING
                outcome.upgrade = await self._await_ordinal(cluster, previous, pod, outcome)
                return outcome

        outdated = sorted(
            (
                o
                for o, pod in pods.items()
                if o < desired
                and update_revision is not None
                and pod_revision(pod) not in (None, update_revision)
            ),
            reverse=True,
        )

        if outdated:
            outcome.state = RolloutState.UPGRADING
            target = outdated[0]
            blocking = [o for o in range(target + 1, desired) if not is_ready(o)]
            if blocking:
                logger.info(
                    "%s: waiting for ordinal(s) %s before replacing %d",
                    cluster.key,
                    blocking,
                    target,
                )
                outcome.upgrade = previous or UpgradeStatus(target_revision=update_revision)
                return outcome

            await self._replace(cluster, target)
            outcome.mutations += 1
            outcome.upgrade = UpgradeStatus(
                target_revision=update_revision,
                ordinal=target,
                started_at=self.clock(),
                attempts=1,
            )
            await self.recorder.emit(
                cluster.key,
                "UpgradeOrdinalReplaced",
                f"replaced ordinal {target} for revision {update_revision}",
                ordinal=target,
            )
            return outcome

        if previous is not None:
            await self.recorder.emit(
                cluster.key, "UpgradeCompleted", f"all replicas at revision {update_revision}"
            )

        present = len([o for o in pods if o < desired])
        first_rollout = cluster.status.phase in (Phase.PENDING, Phase.CREATING)
        if not self._settled(workload):
            # The platform has not yet observed the latest workload spec
            if first_rollout:
                outcome.state = RolloutState.CREATING
            elif present == desired:
                outcome.state = RolloutState.UPGRADING
            else:
                outcome.state = RolloutState.SCALING
        elif ready != desired or present != desired or len(pods) != present:
            outcome.state = RolloutState.CREATING if first_rollout else RolloutState.SCALING
        return outcome

    async def _await_ordinal(
        self,
        cluster: ClusterResource,
        upgrade: UpgradeStatus,
        pod: dict[str, Any] | None,
        outcome: RolloutOutcome,
    ) -> UpgradeStatus:
        """Wait, retry or halt for the ordinal currently being replaced."""
        now = self.clock()
        started = upgrade.started_at or now
        if (now - started).total_seconds() < self.readiness_timeout:
            return upgrade

        ordinal = upgrade.ordinal
        if upgrade.attempts < self.max_attempts:
            if pod is not None:
                await self._replace(cluster, ordinal)
                outcome.mutations += 1
            await self.recorder.emit(
                cluster.key,
                "UpgradeOrdinalRetried",
                f"ordinal {ordinal} not ready after {self.readiness_timeout:.0f}s; "
                f"replacing again (attempt {upgrade.attempts + 1})",
                warning=True,
                ordinal=ordinal,
            )
            return upgrade.model_copy(
                update={"started_at": now, "attempts": upgrade.attempts + 1}
            )

        error = UpgradeReadinessTimeout(ordinal, upgrade.attempts)
        outcome.state = RolloutState.HALTED
        outcome.error = error
        await self.recorder.emit(
            cluster.key, "UpgradeHalted", error.message, warning=True, ordinal=ordinal
        )
        return upgrade.model_copy(
            update={
                "halted": True,
                "failed_ordinal": ordinal,
                "halted_generation": cluster.generation,
                "override_token": cluster.annotations.get(UPGRADE_OVERRIDE_ANNOTATION),
            }
        )

    @staticmethod
    def _settled(workload: dict[str, Any] | None) -> bool:
        if workload is None:
            return False
        generation = workload.get("metadata", {}).get("generation")
        observed = (workload.get("status") or {}).get("observedGeneration")
        return generation is None or (observed is not None and observed >= generation)

    async def _replace(self, cluster: ClusterResource, ordinal: int) -> None:
        name = pod_name(cluster.name, ordinal)
        logger.info("%s: deleting pod %s for replacement", cluster.key, name)
        await self.api.delete(ObjectKind.POD, cluster.namespace, name)
