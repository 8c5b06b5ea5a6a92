"""Tests for the archival-state table and the tiered-storage controller."""

from datetime import datetime, timedelta, timezone

import pytest

from shazamq_operator.cluster.model import ClusterResource
from shazamq_operator.cluster.validation import parse_spec
from shazamq_operator.tiered.archive import (
    ArchiveTable,
    IllegalTransition,
    SegmentState,
    archive_key,
)
from shazamq_operator.tiered.controller import TieredStorageController
from shazamq_operator.testing import FakeBroker, InMemoryObjectStore
from shazamq_protocols.errors import ExternalDependencyError
from shazamq_protocols.types import SegmentInfo

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

SPEC = parse_spec(
    {
        "replicas": 3,
        "tieredStorage": {
            "enabled": True,
            "hotTierRetentionHours": 24,
            "dualReadGraceMinutes": 30,
            "s3": {"bucket": "archive", "region": "us-east-1", "prefix": "/shazamq/"},
        },
    }
)


def _segment(base_offset=1024, topic="payments", partition=3):
    return SegmentInfo(
        topic=topic,
        partition=partition,
        base_offset=base_offset,
        size_bytes=10,
        closed_at=NOW,
        sha256="0" * 64,
    )


@pytest.fixture
def cluster() -> ClusterResource:
    return ClusterResource(name="orders", namespace="kafka", uid="uid-orders")


@pytest.fixture
def store() -> InMemoryObjectStore:
    return InMemoryObjectStore()


@pytest.fixture
def controller(broker, store, recorder, clock) -> TieredStorageController:
    async def store_factory(cluster, s3):
        return store

    return TieredStorageController(broker, store_factory, recorder, clock=clock)


async def _noop() -> None:
    return None


class _RetainingBroker(FakeBroker):
    """Keeps listing segments after their local bytes are reclaimed."""

    async def reclaim_local(self, namespace, cluster, ordinal, segment):
        self._check(ordinal, "tieredStorage")
        self.reclaimed.append((ordinal, segment.segment_id))


class TestArchiveKey:
    def test_key_layout(self):
        key = archive_key("shazamq", "kafka", "orders", _segment())
        assert key == "shazamq/kafka/orders/payments/3/00000000000000001024.log"

    def test_prefix_slashes_and_empty_prefix(self):
        assert archive_key("/a/b/", "kafka", "orders", _segment(0)).startswith("a/b/kafka/")
        assert archive_key("", "kafka", "orders", _segment(0)).startswith("kafka/orders/")


class TestArchiveTable:
    """Tests for archival state transitions."""

    def test_unknown_segment_is_hot(self):
        assert ArchiveTable().state("payments/3/0") == SegmentState.HOT

    def test_lifecycle(self):
        table = ArchiveTable()
        table.transition("s", SegmentState.UPLOADING, now=NOW, key="k", size_bytes=10)
        entry = table.transition("s", SegmentState.ARCHIVED, now=NOW, sha256="ab")
        assert entry.state == SegmentState.ARCHIVED
        assert entry.key == "k"
        assert entry.sha256 == "ab"
        assert entry.archived_at == NOW

    def test_skipping_uploading_is_illegal(self):
        table = ArchiveTable()
        with pytest.raises(IllegalTransition):
            table.transition("s", SegmentState.ARCHIVED, now=NOW, key="k")
        assert table.get("s") is None

    def test_archived_never_goes_back(self):
        table = ArchiveTable()
        table.transition("s", SegmentState.UPLOADING, now=NOW, key="k")
        table.transition("s", SegmentState.ARCHIVED, now=NOW, sha256="ab")
        with pytest.raises(IllegalTransition):
            table.transition("s", SegmentState.UPLOADING, now=NOW, key="k")

    def test_upload_needs_a_key(self):
        with pytest.raises(ValueError):
            ArchiveTable().transition("s", SegmentState.UPLOADING, now=NOW)

    def test_reclaim_requires_archived(self):
        table = ArchiveTable()
        table.transition("s", SegmentState.UPLOADING, now=NOW, key="k")
        with pytest.raises(IllegalTransition):
            table.mark_reclaimed("s")

    def test_merge_keeps_most_advanced(self):
        ours = ArchiveTable()
        ours.transition("a", SegmentState.UPLOADING, now=NOW, key="ka")
        ours.transition("b", SegmentState.UPLOADING, now=NOW, key="kb")
        ours.transition("b", SegmentState.ARCHIVED, now=NOW, sha256="b")
        theirs = ArchiveTable()
        theirs.transition("a", SegmentState.UPLOADING, now=NOW, key="ka")
        theirs.transition("a", SegmentState.ARCHIVED, now=NOW, sha256="a")
        theirs.transition("b", SegmentState.UPLOADING, now=NOW, key="kb")
        theirs.transition("c", SegmentState.UPLOADING, now=NOW, key="kc")

        ours.merge(theirs)

        assert ours.state("a") == SegmentState.ARCHIVED
        assert ours.state("b") == SegmentState.ARCHIVED
        assert ours.state("c") == SegmentState.UPLOADING

    def test_merge_keeps_reclaimed_flag(self):
        ours = ArchiveTable()
        ours.transition("a", SegmentState.UPLOADING, now=NOW, key="ka")
        ours.transition("a", SegmentState.ARCHIVED, now=NOW, sha256="a")
        theirs = ArchiveTable.from_dict(ours.to_dict())
        theirs.mark_reclaimed("a")

        ours.merge(theirs)

        assert ours.get("a").local_reclaimed is True

    def test_dict_round_trip_keeps_timestamps(self):
        table = ArchiveTable()
        table.transition("a", SegmentState.UPLOADING, now=NOW, key="ka", size_bytes=5)
        table.transition("a", SegmentState.ARCHIVED, now=NOW, sha256="a")
        restored = ArchiveTable.from_dict(table.to_dict())
        assert restored.get("a") == table.get("a")


class TestTieredStorageController:
    """Tests for one archival pass."""

    @pytest.mark.asyncio
    async def test_archives_from_lowest_ordinal_once(self, controller, broker, store, cluster, clock):
        segment = broker.add_segment(
            [2, 1], "payments", 3, 0, clock.now - timedelta(hours=30), b"segment bytes"
        )
        table = ArchiveTable()

        result = await controller.reconcile(cluster, SPEC, table, _noop)

        assert result.eligible == 1
        assert result.archived == [segment.segment_id]
        assert broker.reads == [(1, segment.segment_id)]
        assert store.puts == ["shazamq/kafka/orders/payments/3/00000000000000000000.log"]
        entry = table.get(segment.segment_id)
        assert entry.state == SegmentState.ARCHIVED
        assert entry.sha256 == segment.sha256

    @pytest.mark.asyncio
    async def test_uploading_is_persisted_before_bytes_move(
        self, controller, broker, store, cluster, clock
    ):
        segment = broker.add_segment([0], "payments", 3, 0, clock.now - timedelta(hours=30), b"x")
        table = ArchiveTable()
        seen = []

        async def persist() -> None:
            seen.append((table.state(segment.segment_id), len(store.puts)))

        await controller.reconcile(cluster, SPEC, table, persist)

        assert seen == [(SegmentState.UPLOADING, 0), (SegmentState.ARCHIVED, 1)]

    @pytest.mark.asyncio
    async def test_young_segments_stay_hot(self, controller, broker, store, cluster, clock):
        broker.add_segment([0], "payments", 3, 0, clock.now - timedelta(hours=23), b"x")

        result = await controller.reconcile(cluster, SPEC, ArchiveTable(), _noop)

        assert result.eligible == 0
        assert store.puts == []

    @pytest.mark.asyncio
    async def test_corrupt_local_read_is_not_uploaded(
        self, controller, broker, store, cluster, clock, recorder
    ):
        bad = broker.add_segment([0], "payments", 3, 0, clock.now - timedelta(hours=30), b"bad")
        good = broker.add_segment([0], "payments", 3, 10, clock.now - timedelta(hours=30), b"ok")
        broker.corrupt.add(bad.segment_id)
        table = ArchiveTable()

        result = await controller.reconcile(cluster, SPEC, table, _noop)

        assert [e.reason for e in result.errors] == ["ChecksumMismatch"]
        assert result.archived == [good.segment_id]
        assert table.state(bad.segment_id) == SegmentState.UPLOADING
        assert "ChecksumMismatch" in recorder.reasons()

    @pytest.mark.asyncio
    async def test_store_checksum_mismatch_keeps_uploading(
        self, controller, broker, store, cluster, clock
    ):
        segment = broker.add_segment([0], "payments", 3, 0, clock.now - timedelta(hours=30), b"x")
        store.bad_checksums.add("shazamq/kafka/orders/payments/3/00000000000000000000.log")
        table = ArchiveTable()

        result = await controller.reconcile(cluster, SPEC, table, _noop)

        assert result.errors[0].reason == "ChecksumMismatch"
        assert table.state(segment.segment_id) == SegmentState.UPLOADING

    @pytest.mark.asyncio
    async def test_reclaim_after_grace_on_every_holder(
        self, controller, broker, cluster, clock, recorder
    ):
        segment = broker.add_segment(
            [0, 2], "payments", 3, 0, clock.now - timedelta(hours=30), b"x"
        )
        table = ArchiveTable()
        await controller.reconcile(cluster, SPEC, table, _noop)

        clock.advance(29 * 60)
        result = await controller.reconcile(cluster, SPEC, table, _noop)
        assert result.reclaimed == []

        clock.advance(60)
        result = await controller.reconcile(cluster, SPEC, table, _noop)

        assert result.reclaimed == [segment.segment_id]
        assert broker.reclaimed == [(0, segment.segment_id), (2, segment.segment_id)]
        assert table.get(segment.segment_id).local_reclaimed is True
        assert "SegmentReclaimed" in recorder.reasons()

    @pytest.mark.asyncio
    async def test_reclaim_happens_once(self, store, recorder, clock, cluster):
        async def store_factory(cluster, s3):
            return store

        broker = _RetainingBroker()
        controller = TieredStorageController(broker, store_factory, recorder, clock=clock)
        segment = broker.add_segment([0], "payments", 3, 0, clock.now - timedelta(hours=30), b"x")
        table = ArchiveTable()
        await controller.reconcile(cluster, SPEC, table, _noop)
        clock.advance(31 * 60)
        await controller.reconcile(cluster, SPEC, table, _noop)
        persisted = []

        async def persist() -> None:
            persisted.append(True)

        clock.advance(60)
        result = await controller.reconcile(cluster, SPEC, table, persist)

        assert result.reclaimed == []
        assert persisted == []
        assert broker.reclaimed == [(0, segment.segment_id)]
        assert recorder.reasons().count("SegmentReclaimed") == 1

    @pytest.mark.asyncio
    async def test_unreachable_broker_is_reported(self, controller, broker, cluster):
        broker.unreachable.add(1)

        result = await controller.reconcile(cluster, SPEC, ArchiveTable(), _noop)

        assert len(result.errors) == 1
        assert isinstance(result.errors[0], ExternalDependencyError)

    @pytest.mark.asyncio
    async def test_store_setup_failure(self, broker, recorder, clock, cluster):
        async def failing_factory(cluster, s3):
            raise ExternalDependencyError("tieredStorage", "no credentials")

        controller = TieredStorageController(broker, failing_factory, recorder, clock=clock)
        broker.add_segment([0], "payments", 3, 0, clock.now - timedelta(hours=30), b"x")

        result = await controller.reconcile(cluster, SPEC, ArchiveTable(), _noop)

        assert result.archived == []
        assert result.errors[0].message.endswith("no credentials")
