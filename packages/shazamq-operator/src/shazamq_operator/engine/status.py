"""
Status reporter: one aggregated status write per reconcile pass.

The phase is the worst of the sub-results, ordered by Phase severity
(Degraded dominates Upgrading and Scaling, which dominate Ready). Conditions
keep their lastTransitionTime unless their status actually flips, and a
status identical to the stored one is not written at all, so repeated
passes over a converged cluster perform no writes.

Condition types:
- Ready: phase is Ready
- Progressing: a create, scale or upgrade is under way
- Degraded: a non-transient failure needs attention (reason is the error's
  stable reason code)
- SpecValid: the spec passed validation
- MirrorReady / TieredStorageReady: only while the feature is enabled
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from shazamq_operator.cluster.model import (
    API_VERSION,
    KIND,
    ClusterResource,
    ClusterStatus,
    Condition,
    Phase,
    UpgradeStatus,
)
from shazamq_operator.db.events import EventRecorder
from shazamq_operator.engine.api import GuardedPlatform
from shazamq_operator.engine.apply import ApplyResult
from shazamq_operator.engine.rollout import RolloutOutcome
from shazamq_operator.mirror.controller import MirrorResult
from shazamq_operator.tiered.controller import TieredResult
from shazamq_protocols.errors import (
    ConflictError,
    OperatorError,
    SpecValidationError,
    TransientAPIError,
    UpgradeReadinessTimeout,
)
from shazamq_protocols.types import ObjectKind

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def worst(*phases: Phase) -> Phase:
    """Most severe phase of those given."""
    return max(phases, key=lambda p: p.severity)


def set_condition(
    conditions: list[Condition],
    type: str,
    status: bool,
    reason: str,
    message: str,
    now: datetime,
) -> list[Condition]:
    """
    Return conditions with one condition set.

    lastTransitionTime changes only when the condition's status changes;
    reason and message are always refreshed.
    """
    value = "True" if status else "False"
    existing = next((c for c in conditions if c.type == type), None)
    transition = (
        existing.last_transition_time
        if existing is not None and existing.status == value
        else now
    )
    updated = Condition(
        type=type,
        status=value,
        reason=reason,
        message=message,
        last_transition_time=transition,
    )
    return [c for c in conditions if c.type != type] + [updated]


def remove_condition(conditions: list[Condition], type: str) -> list[Condition]:
    return [c for c in conditions if c.type != type]


@dataclass
class PassReport:
    """
    Everything one reconcile pass learned, for aggregation.

    Attributes:
        generation: Spec generation that was reconciled
        spec_error: Validation failure (nothing else ran)
        apply: Structural apply outcome
        rollout: Scaling/upgrade outcome
        halted: Upgrade halt still in effect (no mutation was attempted)
        mirror: Mirror outcome, when mirroring is enabled
        tiered: Tiered-storage outcome, when enabled
        deleting: Cluster is being deleted
    """

    generation: int
    spec_error: SpecValidationError | None = None
    apply: ApplyResult | None = None
    rollout: RolloutOutcome | None = None
    halted: UpgradeStatus | None = None
    mirror: MirrorResult | None = None
    tiered: TieredResult | None = None
    deleting: bool = False
    errors: list[OperatorError] = field(default_factory=list)

    def degraded_errors(self) -> list[OperatorError]:
        errors: list[OperatorError] = []
        if self.spec_error is not None:
            errors.append(self.spec_error)
        if self.apply is not None:
            errors.extend(self.apply.conflicts)
        if self.rollout is not None and self.rollout.error is not None:
            errors.append(self.rollout.error)
        if self.halted is not None:
            errors.append(
                UpgradeReadinessTimeout(self.halted.failed_ordinal, self.halted.attempts)
            )
        if self.mirror is not None:
            errors.extend(self.mirror.errors)
        if self.tiered is not None:
            errors.extend(self.tiered.errors)
        errors.extend(self.errors)
        return errors


class StatusReporter:
    """
    Builds and writes the aggregated cluster status.

    Example:
        reporter = StatusReporter(api, recorder)
        status = await reporter.report(cluster, PassReport(generation=3, ...))
    """

    def __init__(
        self,
        api: GuardedPlatform,
        recorder: EventRecorder,
        conflict_retry_attempts: int = 3,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.api = api
        self.recorder = recorder
        self.conflict_retry_attempts = conflict_retry_attempts
        self.clock = clock

    def build(self, cluster: ClusterResource, report: PassReport) -> ClusterStatus:
        """Compute the new status from the previous one and the pass report."""
        previous = cluster.status
        now = self.clock().replace(microsecond=0)
        errors = report.degraded_errors()

        phases = [Phase.READY]
        if report.rollout is not None:
            phases.append(report.rollout.phase)
        elif report.spec_error is None and report.halted is None:
            phases.append(Phase.PENDING)
        if errors:
            phases.append(Phase.DEGRADED)
        if report.deleting:
            phases.append(Phase.DELETING)
        phase = worst(*phases)

        status = previous.model_copy(deep=True)
        status.phase = phase
        status.observed_generation = report.generation
        if report.rollout is not None:
            status.replicas = report.rollout.desired_replicas
            status.ready_replicas = report.rollout.ready_replicas
            status.brokers = report.rollout.brokers
            status.upgrade = report.rollout.upgrade
        elif report.halted is not None:
            status.upgrade = report.halted

        conditions = list(previous.conditions)
        conditions = set_condition(
            conditions,
            "SpecValid",
            report.spec_error is None,
            "Valid" if report.spec_error is None else report.spec_error.reason,
            "" if report.spec_error is None else report.spec_error.message,
            now,
        )

        ready = phase == Phase.READY
        replicas_message = (
            f"{status.ready_replicas or 0}/{status.replicas or 0} replicas ready"
        )
        conditions = set_condition(
            conditions,
            "Ready",
            ready,
            "AllReplicasReady" if ready else phase.value,
            replicas_message,
            now,
        )

        progressing = phase in (Phase.CREATING, Phase.SCALING, Phase.UPGRADING) or (
            report.rollout is not None
            and report.rollout.phase in (Phase.CREATING, Phase.SCALING, Phase.UPGRADING)
        )
        progress_message = ""
        if status.upgrade is not None and status.upgrade.ordinal is not None:
            progress_message = (
                f"replacing ordinal {status.upgrade.ordinal} "
                f"(attempt {status.upgrade.attempts})"
            )
        conditions = set_condition(
            conditions,
            "Progressing",
            progressing,
            report.rollout.phase.value if progressing and report.rollout else "Stable",
            progress_message,
            now,
        )

        conditions = set_condition(
            conditions,
            "Degraded",
            bool(errors),
            errors[0].reason if errors else "AsExpected",
            "; ".join(e.message for e in errors),
            now,
        )

        if report.mirror is not None:
            mirror_errors = report.mirror.errors
            conditions = set_condition(
                conditions,
                "MirrorReady",
                not mirror_errors,
                mirror_errors[0].reason if mirror_errors else "Mirroring",
                "; ".join(e.message for e in mirror_errors),
                now,
            )
        elif report.spec_error is None and report.halted is None:
            conditions = remove_condition(conditions, "MirrorReady")

        if report.tiered is not None:
            tiered_errors = report.tiered.errors
            conditions = set_condition(
                conditions,
                "TieredStorageReady",
                not tiered_errors,
                tiered_errors[0].reason if tiered_errors else "Archiving",
                "; ".join(e.message for e in tiered_errors),
                now,
            )
        elif report.spec_error is None and report.halted is None:
            conditions = remove_condition(conditions, "TieredStorageReady")

        status.conditions = sorted(conditions, key=lambda c: c.type)
        return status

    async def report(self, cluster: ClusterResource, report: PassReport) -> ClusterStatus:
        """
        Build the new status and write it if it differs from the stored one.

        Returns:
            The status now in effect

        Raises:
            TransientAPIError: If the write kept conflicting
        """
        status = self.build(cluster, report)
        if status.to_wire() == cluster.status.to_wire():
            return status

        await self._write(cluster, status.to_wire())
        if status.phase != cluster.status.phase:
            await self.recorder.emit(
                cluster.key,
                "PhaseChanged",
                f"{cluster.status.phase.value} -> {status.phase.value}",
                warning=status.phase == Phase.DEGRADED,
                phase=status.phase.value,
            )
        return status

    async def _write(self, cluster: ClusterResource, status: dict[str, Any]) -> None:
        resource_version = cluster.resource_version
        for attempt in range(1, self.conflict_retry_attempts + 1):
            body = {
                "apiVersion": API_VERSION,
                "kind": KIND,
                "metadata": {
                    "name": cluster.name,
                    "namespace": cluster.namespace,
                    "resourceVersion": resource_version,
                },
                "status": status,
            }
            try:
                await self.api.replace_status(cluster.namespace, cluster.name, body)
                return
            except ConflictError:
                logger.debug("Status conflict for %s (attempt %d)", cluster.key, attempt)
                fresh = await self.api.get(ObjectKind.CLUSTER, cluster.namespace, cluster.name)
                if fresh is None:
                    return
                resource_version = fresh.get("metadata", {}).get("resourceVersion")
        raise TransientAPIError(
            f"status of {cluster.key} kept conflicting after "
            f"{self.conflict_retry_attempts} attempt(s)"
        )
