"""
Cluster reconciler: one reconcile pass for one cluster key.

A pass runs, in order:
1. Read the cluster object; absent clusters are forgotten
2. Validate the spec; an invalid spec is reported and not retried
3. Respect a halted upgrade; only status is written
4. Compile desired objects and apply them (diff & apply engine)
5. Advance scaling / the rolling upgrade by at most one step
6. Run the mirror and tiered-storage controllers against the persisted
   tables, then save the tables
7. Write the aggregated status once

Transient failures propagate to the scheduler, which requeues the key with
backoff. LeadershipLost propagates too and ends the pass without requeue.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone

from shazamq_operator.cluster.model import ClusterResource, Phase
from shazamq_operator.cluster.validation import parse_spec
from shazamq_operator.config import OperatorSettings
from shazamq_operator.db.events import EventRecorder
from shazamq_operator.engine.api import GuardedPlatform
from shazamq_operator.engine.apply import ApplyEngine
from shazamq_operator.engine.compiler import compile_cluster, workload_name
from shazamq_operator.engine.rollout import RolloutController, halt_in_effect
from shazamq_operator.engine.state import StateStore
from shazamq_operator.engine.status import PassReport, StatusReporter
from shazamq_operator.mirror.controller import MirrorController
from shazamq_operator.tiered.controller import TieredStorageController
from shazamq_protocols.broker import BrokerAdminProtocol
from shazamq_protocols.errors import SpecValidationError
from shazamq_protocols.types import ObjectKind, ObjectRef

logger = logging.getLogger(__name__)

PROGRESS_PHASES = (Phase.CREATING, Phase.SCALING, Phase.UPGRADING)


@dataclass
class ReconcileResult:
    """
    What the scheduler should do with the key after a pass.

    Attributes:
        requeue_after: Seconds until the next pass; None means the
            scheduler's resync interval
        forget: Do not requeue at all; only a watch event brings the key back
        phase: Phase written this pass
        mutations: Mutating calls made on owned objects and pods
    """

    requeue_after: float | None = None
    forget: bool = False
    phase: Phase | None = None
    mutations: int = 0


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ClusterReconciler:
    """
    Runs reconcile passes for cluster keys ("namespace/name").

    Example:
        reconciler = ClusterReconciler(api, broker, settings, recorder)
        result = await reconciler.reconcile("kafka/orders")
    """

    def __init__(
        self,
        api: GuardedPlatform,
        broker: BrokerAdminProtocol,
        settings: OperatorSettings,
        recorder: EventRecorder,
        mirror: MirrorController | None = None,
        tiered: TieredStorageController | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.api = api
        self.broker = broker
        self.settings = settings
        self.recorder = recorder
        self.mirror = mirror
        self.tiered = tiered
        self.apply_engine = ApplyEngine(api, recorder, settings.conflict_retry_attempts)
        self.rollout = RolloutController(api, broker, recorder, settings, clock=clock)
        self.state_store = StateStore(api, settings.conflict_retry_attempts)
        self.reporter = StatusReporter(
            api, recorder, settings.conflict_retry_attempts, clock=clock
        )

    async def reconcile(self, key: str) -> ReconcileResult:
        """
        Run one pass for a cluster key.

        Raises:
            TransientAPIError: API unavailable or conflicts persisted
            LeadershipLost: Leadership lost before a mutating call
        """
        namespace, name = key.split("/", 1)
        body = await self.api.get(ObjectKind.CLUSTER, namespace, name)
        if body is None:
            logger.debug("Cluster %s no longer exists", key)
            return ReconcileResult(forget=True)

        cluster = ClusterResource.from_body(body)

        if cluster.deleting:
            # Owned objects are garbage-collected through their owner references
            status = await self.reporter.report(
                cluster, PassReport(generation=cluster.generation, deleting=True)
            )
            return ReconcileResult(forget=True, phase=status.phase)

        try:
            spec = parse_spec(cluster.raw_spec)
        except SpecValidationError as e:
            logger.warning("Cluster %s has an invalid spec: %s", key, e.message)
            status = await self.reporter.report(
                cluster, PassReport(generation=cluster.generation, spec_error=e)
            )
            return ReconcileResult(forget=True, phase=status.phase)

        if halt_in_effect(cluster):
            logger.info("Cluster %s upgrade is halted; skipping mutation", key)
            status = await self.reporter.report(
                cluster,
                PassReport(generation=cluster.generation, halted=cluster.status.upgrade),
            )
            return ReconcileResult(forget=True, phase=status.phase)

        self.broker.use_metrics_port(namespace, name, spec.service_or_default.metrics_port)

        desired = compile_cluster(cluster, spec)
        applied = await self.apply_engine.apply(cluster, desired)

        workload_ref = ObjectRef(ObjectKind.WORKLOAD, namespace, workload_name(name))
        rollout = None
        if workload_ref in applied.observed:
            rollout = await self.rollout.evaluate(
                cluster, spec, applied.observed[workload_ref]
            )

        report = PassReport(
            generation=cluster.generation, apply=applied, rollout=rollout
        )

        if (spec.mirror_sources and self.mirror) or (spec.tiered_enabled and self.tiered):
            state = await self.state_store.load(cluster)

            async def persist() -> None:
                await self.state_store.save(cluster, state)

            if spec.mirror_sources and self.mirror is not None:
                report.mirror = await self.mirror.reconcile(
                    cluster, spec, state.checkpoints, persist
                )
            if spec.tiered_enabled and self.tiered is not None:
                report.tiered = await self.tiered.reconcile(
                    cluster, spec, state.segments, persist
                )
            await persist()

        status = await self.reporter.report(cluster, report)

        mutations = applied.mutations + (rollout.mutations if rollout else 0)
        if status.phase in PROGRESS_PHASES or (
            status.phase == Phase.DEGRADED
            and any(e.retryable for e in report.degraded_errors())
        ):
            requeue_after = self.settings.progress_requeue_seconds
        else:
            requeue_after = None
        return ReconcileResult(
            requeue_after=requeue_after, phase=status.phase, mutations=mutations
        )
