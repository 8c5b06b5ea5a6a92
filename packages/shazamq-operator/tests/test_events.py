"""Tests for the event journal and recorder."""

import logging

import pytest

from shazamq_operator.db.events import OPERATOR_KEY, EventJournal, EventRecord, EventRecorder


class TestEventJournal:
    """Tests for EventJournal."""

    @pytest.mark.asyncio
    async def test_append_assigns_ids(self, tmp_path):
        async with EventJournal(tmp_path / "events.db") as journal:
            first = await journal.append(EventRecord("kafka/orders", "ObjectCreated", "created"))
            second = await journal.append(EventRecord("kafka/orders", "PhaseChanged", "ready"))
        assert second.id == first.id + 1

    @pytest.mark.asyncio
    async def test_list_newest_first_with_filters(self, tmp_path):
        async with EventJournal(tmp_path / "events.db") as journal:
            await journal.append(EventRecord("kafka/orders", "ObjectCreated", "a"))
            await journal.append(EventRecord("kafka/payments", "ObjectCreated", "b"))
            await journal.append(
                EventRecord(
                    "kafka/orders",
                    "UpgradeHalted",
                    "ordinal 2",
                    severity="warning",
                    details={"ordinal": 2},
                )
            )

            events = await journal.list_events(cluster_key="kafka/orders")
            created = await journal.list_events(reason="ObjectCreated", limit=1)

        assert [e.reason for e in events] == ["UpgradeHalted", "ObjectCreated"]
        assert events[0].details == {"ordinal": 2}
        assert events[0].severity == "warning"
        assert [e.cluster_key for e in created] == ["kafka/payments"]

    @pytest.mark.asyncio
    async def test_reopen_keeps_events(self, tmp_path):
        path = tmp_path / "events.db"
        async with EventJournal(path) as journal:
            await journal.append(EventRecord(OPERATOR_KEY, "LeadershipAcquired", "a"))
        async with EventJournal(path) as journal:
            events = await journal.list_events()
        assert [e.reason for e in events] == ["LeadershipAcquired"]
        assert events[0].recorded_at.tzinfo is not None


class TestEventRecorder:
    """Tests for EventRecorder."""

    @pytest.mark.asyncio
    async def test_emit_without_journal(self, caplog):
        recorder = EventRecorder()
        with caplog.at_level(logging.INFO, logger="shazamq_operator.db.events"):
            record = await recorder.emit(
                "kafka/orders", "UpgradeHalted", "ordinal 2 failed", warning=True, ordinal=2
            )

        assert record.severity == "warning"
        assert record.details == {"ordinal": 2}
        assert record.id is None
        assert recorder.reasons() == ["UpgradeHalted"]
        assert "[kafka/orders] UpgradeHalted" in caplog.text

    @pytest.mark.asyncio
    async def test_emit_with_journal(self, tmp_path):
        async with EventJournal(tmp_path / "events.db") as journal:
            recorder = EventRecorder(journal)
            await recorder.emit("kafka/orders", "ObjectCreated", "created Service kafka/orders")
            events = await journal.list_events()

        assert [e.message for e in events] == ["created Service kafka/orders"]

    @pytest.mark.asyncio
    async def test_history_is_bounded(self):
        recorder = EventRecorder(history_size=2)
        for reason in ("A", "B", "C"):
            await recorder.emit("kafka/orders", reason, reason)
        assert recorder.reasons() == ["B", "C"]

    @pytest.mark.asyncio
    async def test_reasons_by_cluster(self):
        recorder = EventRecorder()
        await recorder.emit("kafka/orders", "ObjectCreated", "x")
        await recorder.emit(OPERATOR_KEY, "LeadershipAcquired", "y")
        assert recorder.reasons("kafka/orders") == ["ObjectCreated"]
