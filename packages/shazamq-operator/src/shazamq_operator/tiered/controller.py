"""
Tiered-storage controller: hot to warm archival, once per reconcile pass.

Each pass:
1. Enumerate closed segments on every broker replica. A segment replicated
   on several brokers is one archival unit, keyed by topic/partition/offset.
2. A hot segment whose closed age has reached the hot-tier retention window
   is marked Uploading and that mark is persisted before any bytes move.
3. The segment is read from the lowest-ordinal holder, its digest checked
   against the broker's own, uploaded under its deterministic archive key,
   and the store's checksum compared with the local digest. Only then does
   it become Archived (persisted again).
4. Archived segments whose grace period has elapsed have their local bytes
   reclaimed on every holder. Their table entries are kept.

An Uploading segment found at the start of a pass was interrupted; it is
uploaded again to the same key, so an interrupted pass archives it exactly
once.
"""

import hashlib
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

from shazamq_operator.cluster.model import ClusterResource, ClusterSpec, S3Config
from shazamq_operator.db.events import EventRecorder
from shazamq_operator.tiered.archive import ArchiveTable, SegmentState, archive_key
from shazamq_protocols.broker import BrokerAdminProtocol
from shazamq_protocols.errors import ChecksumMismatch, ExternalDependencyError
from shazamq_protocols.storage import ObjectStoreProtocol
from shazamq_protocols.types import SegmentInfo

logger = logging.getLogger(__name__)

StoreFactory = Callable[[ClusterResource, S3Config], Awaitable[ObjectStoreProtocol]]


@dataclass
class TieredResult:
    """
    Outcome of one tiered-storage pass.

    Attributes:
        eligible: Segments due for archival (including resumed uploads)
        archived: Segment ids archived this pass
        reclaimed: Segment ids whose local bytes were reclaimed this pass
        errors: Failures (the pass continues past checksum mismatches)
    """

    eligible: int = 0
    archived: list[str] = field(default_factory=list)
    reclaimed: list[str] = field(default_factory=list)
    errors: list[ExternalDependencyError] = field(default_factory=list)


@dataclass
class _Holding:
    segment: SegmentInfo
    ordinals: list[int]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TieredStorageController:
    """
    Drives segment archival for one cluster per call.

    Example:
        controller = TieredStorageController(broker, S3StoreFactory(api), recorder)
        result = await controller.reconcile(cluster, spec, state.segments, persist)
    """

    def __init__(
        self,
        broker: BrokerAdminProtocol,
        store_factory: StoreFactory,
        recorder: EventRecorder,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.broker = broker
        self.store_factory = store_factory
        self.recorder = recorder
        self.clock = clock

    async def _holdings(
        self, cluster: ClusterResource, replicas: int, result: TieredResult
    ) -> dict[str, _Holding]:
        holdings: dict[str, _Holding] = {}
        for ordinal in range(replicas):
            try:
                segments = await self.broker.list_closed_segments(
                    cluster.namespace, cluster.name, ordinal
                )
            except ExternalDependencyError as e:
                result.errors.append(e)
                continue
            for segment in segments:
                holding = holdings.setdefault(segment.segment_id, _Holding(segment, []))
                holding.ordinals.append(ordinal)
        return holdings

    async def reconcile(
        self,
        cluster: ClusterResource,
        spec: ClusterSpec,
        table: ArchiveTable,
        persist: Callable[[], Awaitable[None]],
    ) -> TieredResult:
        """
        Run one archival pass.

        Args:
            cluster: Cluster being reconciled
            spec: Validated spec with tiered storage enabled
            table: Loaded archival-state table, updated in place
            persist: Saves the table; called around every upload

        Returns:
            TieredResult for the status reporter
        """
        tiered = spec.tiered_storage
        result = TieredResult()
        now = self.clock()
        retention = timedelta(hours=tiered.hot_tier_retention_hours)
        grace = timedelta(minutes=tiered.dual_read_grace_minutes)

        holdings = await self._holdings(cluster, spec.replicas, result)

        due = []
        for segment_id, holding in sorted(holdings.items()):
            state = table.state(segment_id)
            if state == SegmentState.UPLOADING or (
                state == SegmentState.HOT and now - holding.segment.closed_at >= retention
            ):
                due.append(holding)
        result.eligible = len(due)

        if due:
            try:
                store = await self.store_factory(cluster, tiered.s3)
            except ExternalDependencyError as e:
                result.errors.append(e)
                return result

            for holding in due:
                try:
                    await self._archive(cluster, tiered.s3, holding, table, store, persist)
                except ChecksumMismatch as e:
                    result.errors.append(e)
                    await self.recorder.emit(
                        cluster.key, e.reason, e.message, warning=True, key=e.key
                    )
                    continue
                except ExternalDependencyError as e:
                    # Store or broker unavailable; remaining uploads would fail too
                    result.errors.append(e)
                    break
                result.archived.append(holding.segment.segment_id)

        for segment_id, holding in sorted(holdings.items()):
            entry = table.get(segment_id)
            if entry is None or entry.state != SegmentState.ARCHIVED or entry.local_reclaimed:
                continue
            if entry.archived_at is None or now - entry.archived_at < grace:
                continue
            try:
                for ordinal in holding.ordinals:
                    await self.broker.reclaim_local(
                        cluster.namespace, cluster.name, ordinal, holding.segment
                    )
            except ExternalDependencyError as e:
                result.errors.append(e)
                continue
            table.mark_reclaimed(segment_id)
            result.reclaimed.append(segment_id)
            await self.recorder.emit(
                cluster.key,
                "SegmentReclaimed",
                f"reclaimed local bytes of {segment_id} on ordinal(s) {holding.ordinals}",
                segment=segment_id,
            )

        if result.reclaimed:
            await persist()
        return result

    async def _archive(
        self,
        cluster: ClusterResource,
        s3: S3Config,
        holding: _Holding,
        table: ArchiveTable,
        store: ObjectStoreProtocol,
        persist: Callable[[], Awaitable[None]],
    ) -> None:
        segment = holding.segment
        segment_id = segment.segment_id

        if table.state(segment_id) == SegmentState.HOT:
            key = archive_key(s3.prefix, cluster.namespace, cluster.name, segment)
            table.transition(
                segment_id,
                SegmentState.UPLOADING,
                now=self.clock(),
                key=key,
                size_bytes=segment.size_bytes,
            )
            await persist()
        key = table.get(segment_id).key

        source = min(holding.ordinals)
        data = await self.broker.read_segment(cluster.namespace, cluster.name, source, segment)
        digest = hashlib.sha256(data).hexdigest()
        if digest != segment.sha256:
            raise ChecksumMismatch(key, segment.sha256, digest)

        await store.put_object(key, data, digest)
        stored = await store.object_sha256(key)
        if stored != digest:
            raise ChecksumMismatch(key, digest, stored)

        table.transition(segment_id, SegmentState.ARCHIVED, now=self.clock(), sha256=digest)
        await persist()
        await self.recorder.emit(
            cluster.key,
            "SegmentArchived",
            f"archived {segment_id} to {key}",
            segment=segment_id,
            key=key,
        )
