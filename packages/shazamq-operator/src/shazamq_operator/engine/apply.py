"""
Diff & apply engine.

For each desired object the engine compares the content hash of its managed
fields with the hash recorded on the observed object:
- equal: no-op, zero mutating calls
- different or absent: create if absent, merge-patch if present
- 409 conflict: re-fetch and retry, bounded; then TransientAPIError
- controlled by another owner: OwnershipConflict, recorded, no remediation

Retired objects (possible for this cluster but no longer desired) are
deleted after every create and update, and only when we control them.
"""

import logging
from dataclasses import dataclass, field
from typing import Any

from shazamq_operator.cluster.model import ClusterResource
from shazamq_operator.db.events import EventRecorder
from shazamq_operator.engine.api import GuardedPlatform
from shazamq_operator.engine.objects import (
    DesiredObject,
    OwnedObjectSet,
    applied_hash,
    build_patch,
    content_hash,
    stamp,
)
from shazamq_protocols.errors import ConflictError, OwnershipConflict, TransientAPIError
from shazamq_protocols.types import ObjectRef

logger = logging.getLogger(__name__)


@dataclass
class ApplyResult:
    """
    Outcome of applying one OwnedObjectSet.

    Attributes:
        created: Objects created this pass
        updated: Objects patched this pass
        deleted: Retired objects deleted this pass
        unchanged: Objects whose hash already matched
        conflicts: Ownership conflicts found (objects left untouched)
        observed: Latest known body of every desired object we control
    """

    created: list[ObjectRef] = field(default_factory=list)
    updated: list[ObjectRef] = field(default_factory=list)
    deleted: list[ObjectRef] = field(default_factory=list)
    unchanged: list[ObjectRef] = field(default_factory=list)
    conflicts: list[OwnershipConflict] = field(default_factory=list)
    observed: dict[ObjectRef, dict[str, Any]] = field(default_factory=dict)

    @property
    def mutations(self) -> int:
        return len(self.created) + len(self.updated) + len(self.deleted)

    @property
    def converged(self) -> bool:
        """True if every desired object was already hash-equal this pass."""
        return self.mutations == 0 and not self.conflicts


def controller_of(body: dict[str, Any]) -> dict[str, Any] | None:
    """The controller owner reference of an object, if any."""
    refs = body.get("metadata", {}).get("ownerReferences") or []
    return next((ref for ref in refs if ref.get("controller")), None)


def is_controlled_by(body: dict[str, Any], cluster: ClusterResource) -> bool:
    controller = controller_of(body)
    return controller is not None and controller.get("uid") == cluster.uid


class ApplyEngine:
    """
    Converges owned objects onto their desired state.

    Example:
        engine = ApplyEngine(api, recorder, conflict_retry_attempts=3)
        result = await engine.apply(cluster, compile_cluster(cluster, spec))
        if result.conflicts:
            ...  # Degraded
    """

    def __init__(
        self,
        api: GuardedPlatform,
        recorder: EventRecorder,
        conflict_retry_attempts: int = 3,
    ) -> None:
        self.api = api
        self.recorder = recorder
        self.conflict_retry_attempts = conflict_retry_attempts

    async def apply(
        self, cluster: ClusterResource, desired: OwnedObjectSet
    ) -> ApplyResult:
        """
        Apply every desired object, then retire undesired ones.

        Args:
            cluster: Owning cluster
            desired: Compiler output

        Returns:
            ApplyResult describing what changed

        Raises:
            TransientAPIError: When an object kept conflicting or the API
                stayed unavailable
            LeadershipLost: When leadership was lost before a mutation
        """
        result = ApplyResult()

        for obj in desired.objects:
            try:
                await self._apply_one(cluster, obj, result)
            except OwnershipConflict as e:
                result.conflicts.append(e)
                await self.recorder.emit(
                    cluster.key, e.reason, e.message, warning=True, object=str(obj.ref)
                )

        for ref in desired.retired():
            await self._retire(cluster, ref, result)

        return result

    async def _apply_one(
        self, cluster: ClusterResource, obj: DesiredObject, result: ApplyResult
    ) -> None:
        desired_hash = content_hash(obj.kind, obj.body)

        for attempt in range(1, self.conflict_retry_attempts + 1):
            observed = await self.api.get(obj.kind, obj.namespace, obj.name)

            if observed is None:
                try:
                    created = await self.api.create(obj.kind, obj.namespace, stamp(obj))
                except ConflictError:
                    # Created concurrently; re-read and compare
                    logger.debug("%s appeared during create (attempt %d)", obj.ref, attempt)
                    continue
                result.created.append(obj.ref)
                result.observed[obj.ref] = created
                await self.recorder.emit(
                    cluster.key, "ObjectCreated", f"created {obj.ref}", object=str(obj.ref)
                )
                return

            if not is_controlled_by(observed, cluster):
                controller = controller_of(observed)
                owner = (
                    f"{controller.get('kind')}/{controller.get('name')} ({controller.get('uid')})"
                    if controller
                    else None
                )
                raise OwnershipConflict(obj.kind.value, obj.name, owner)

            if applied_hash(observed) == desired_hash:
                result.unchanged.append(obj.ref)
                result.observed[obj.ref] = observed
                return

            try:
                patched = await self.api.patch(
                    obj.kind, obj.namespace, obj.name, build_patch(obj, observed)
                )
            except ConflictError:
                logger.debug("Conflict patching %s (attempt %d)", obj.ref, attempt)
                continue
            result.updated.append(obj.ref)
            result.observed[obj.ref] = patched
            await self.recorder.emit(
                cluster.key, "ObjectUpdated", f"updated {obj.ref}", object=str(obj.ref)
            )
            return

        raise TransientAPIError(
            f"{obj.ref} kept conflicting after {self.conflict_retry_attempts} attempt(s)"
        )

    async def _retire(
        self, cluster: ClusterResource, ref: ObjectRef, result: ApplyResult
    ) -> None:
        observed = await self.api.get(ref.kind, ref.namespace, ref.name)
        if observed is None or not is_controlled_by(observed, cluster):
            return
        await self.api.delete(ref.kind, ref.namespace, ref.name)
        result.deleted.append(ref)
        await self.recorder.emit(
            cluster.key, "ObjectDeleted", f"deleted retired {ref}", object=str(ref)
        )
