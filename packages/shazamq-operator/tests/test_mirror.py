"""Tests for partition assignment, checkpoints and the mirror controller."""

import pytest

from shazamq_operator.cluster.model import ClusterResource, ClusterSpec, MirrorSourceSpec
from shazamq_operator.cluster.validation import parse_spec
from shazamq_operator.mirror.assignment import assign, worker_for
from shazamq_operator.mirror.checkpoint import Checkpoint, CheckpointRegression, CheckpointTable
from shazamq_operator.mirror.controller import MirrorController, idempotency_key
from shazamq_operator.mirror.kafka import KafkaMirrorFactory, _security_options, topic_matches
from shazamq_operator.testing import InMemoryMirrorFactory, InMemoryMirrorSource
from shazamq_protocols.errors import ExternalDependencyError
from shazamq_protocols.types import MirrorRecord, SourcePartition

ORDERS = SourcePartition("orders.created", 0)


def _spec(exactly_once=True, sources=("dc1",), num_consumers=2):
    return parse_spec(
        {
            "replicas": 1,
            "mirror": {
                "enabled": True,
                "sources": [
                    {
                        "name": name,
                        "bootstrapServers": f"{name}-kafka:9092",
                        "topicWhitelist": ["orders.*"],
                        "consumerGroupId": "mirror",
                        "numConsumers": num_consumers,
                        "exactlyOnce": exactly_once,
                    }
                    for name in sources
                ],
            },
        }
    )


@pytest.fixture
def cluster() -> ClusterResource:
    return ClusterResource(name="orders", namespace="kafka", uid="uid-orders")


@pytest.fixture
def factory() -> InMemoryMirrorFactory:
    factory = InMemoryMirrorFactory()
    source = InMemoryMirrorSource(start_offsets={("orders.created", 0): 100})
    source.produce("orders.created", 0, [b"a", b"b", b"c"])
    factory.sources["dc1"] = source
    return factory


@pytest.fixture
def controller(factory, recorder) -> MirrorController:
    return MirrorController(factory.source, factory.target, recorder, batch_size=2)


async def _noop() -> None:
    return None


class TestTopicFilter:
    def test_whitelist_and_blacklist(self):
        assert topic_matches("orders.created", ["orders.*"], [])
        assert not topic_matches("payments", ["orders.*"], [])
        assert not topic_matches("orders.internal", ["orders.*"], ["*.internal"])

    def test_empty_whitelist_matches_nothing(self):
        assert not topic_matches("orders", [], [])


class TestSecurityOptions:
    def test_plaintext(self):
        assert _security_options("PLAINTEXT", None, None, None) == {
            "security_protocol": "PLAINTEXT"
        }

    def test_sasl_defaults_to_plain(self):
        options = _security_options("SASL_PLAINTEXT", None, "mirror", "secret")
        assert options["sasl_mechanism"] == "PLAIN"
        assert options["sasl_plain_username"] == "mirror"
        assert options["sasl_plain_password"] == "secret"
        assert "ssl_context" not in options


class TestKafkaMirrorFactory:
    """Tests for building aiokafka adapters from a source spec."""

    @staticmethod
    def _bogus_source() -> MirrorSourceSpec:
        return MirrorSourceSpec(
            name="dc1",
            bootstrap_servers="dc1-kafka:9092",
            security_protocol="BOGUS",
            topic_whitelist=["orders.*"],
            consumer_group_id="mirror",
        )

    @pytest.mark.asyncio
    async def test_rejected_client_options_are_a_mirror_failure(self, api, cluster):
        with pytest.raises(ExternalDependencyError) as exc_info:
            await KafkaMirrorFactory(api).source(cluster, self._bogus_source())
        assert exc_info.value.feature == "mirror"

    @pytest.mark.asyncio
    async def test_rejected_source_stays_inside_the_mirror(self, api, cluster, recorder):
        factory = KafkaMirrorFactory(api)
        controller = MirrorController(factory.source, factory.target, recorder)
        spec = ClusterSpec.model_validate(
            {"replicas": 1, "mirror": {"enabled": True, "sources": []}}
        )
        spec.mirror.sources.append(self._bogus_source())

        result = await controller.reconcile(cluster, spec, CheckpointTable(), _noop)

        assert result.sources[0].error is not None
        assert recorder.reasons("kafka/orders") == ["MirrorSourceFailed"]


class TestAssignment:
    """Tests for deterministic partition assignment."""

    def test_assignment_ignores_listing_order(self):
        partitions = [SourcePartition("orders", p) for p in range(12)]
        assert assign(partitions, 3) == assign(list(reversed(partitions)), 3)

    def test_every_worker_is_present(self):
        assignment = assign([SourcePartition("orders", 0)], 4)
        assert sorted(assignment) == [0, 1, 2, 3]
        assert sum(len(p) for p in assignment.values()) == 1

    def test_adding_partitions_keeps_existing_assignments(self):
        before = {p: worker_for(p, 4) for p in (SourcePartition("orders", i) for i in range(8))}
        bigger = [SourcePartition("orders", i) for i in range(16)]
        after = assign(bigger, 4)
        for partition, worker in before.items():
            assert partition in after[worker]

    def test_single_worker_gets_everything(self):
        partitions = [SourcePartition("a", 1), SourcePartition("a", 0)]
        assert assign(partitions, 1) == {0: [SourcePartition("a", 0), SourcePartition("a", 1)]}

    def test_zero_workers_is_rejected(self):
        with pytest.raises(ValueError):
            worker_for(ORDERS, 0)


class TestCheckpointTable:
    """Tests for monotonic checkpoints."""

    def test_missing_checkpoint_starts_at_zero(self):
        assert CheckpointTable().get("dc1", ORDERS) == Checkpoint()

    def test_advance(self):
        table = CheckpointTable()
        table.advance("dc1", ORDERS, 10, 41)
        assert table.get("dc1", ORDERS) == Checkpoint(source_offset=10, target_offset=41)

    def test_regression_is_rejected_without_change(self):
        table = CheckpointTable()
        table.advance("dc1", ORDERS, 10, 41)
        with pytest.raises(CheckpointRegression):
            table.advance("dc1", ORDERS, 9, 40)
        assert table.get("dc1", ORDERS).source_offset == 10

    def test_advance_keeps_target_offset_when_unknown(self):
        table = CheckpointTable()
        table.advance("dc1", ORDERS, 10, 41)
        table.advance("dc1", ORDERS, 12)
        assert table.get("dc1", ORDERS).target_offset == 41

    def test_merge_keeps_furthest(self):
        ours = CheckpointTable()
        ours.advance("dc1", ORDERS, 10, 41)
        ours.advance("dc1", SourcePartition("orders.created", 1), 3, 3)
        theirs = CheckpointTable()
        theirs.advance("dc1", ORDERS, 7, 38)
        theirs.advance("dc1", SourcePartition("orders.created", 1), 5, 5)
        theirs.advance("dc2", ORDERS, 1, 0)

        ours.merge(theirs)

        assert ours.get("dc1", ORDERS).source_offset == 10
        assert ours.get("dc1", SourcePartition("orders.created", 1)).source_offset == 5
        assert ours.sources() == ["dc1", "dc2"]

    def test_dict_form(self):
        table = CheckpointTable()
        table.advance("dc1", ORDERS, 10, 41)
        assert table.to_dict() == {
            "dc1": {"orders.created:0": {"sourceOffset": 10, "targetOffset": 41}}
        }
        assert CheckpointTable.from_dict(table.to_dict()).get("dc1", ORDERS).source_offset == 10


class TestMirrorController:
    """Tests for per-pass translation."""

    @pytest.mark.asyncio
    async def test_batches_advance_checkpoint(self, controller, factory, cluster):
        table = CheckpointTable()

        first = await controller.reconcile(cluster, _spec(), table, _noop)
        assert first.records == 2
        assert table.get("dc1", ORDERS) == Checkpoint(source_offset=102, target_offset=1)

        second = await controller.reconcile(cluster, _spec(), table, _noop)
        assert second.records == 1
        assert table.get("dc1", ORDERS) == Checkpoint(source_offset=103, target_offset=2)
        assert factory.target_endpoint.committed == {("orders.created", 0): [b"a", b"b", b"c"]}

    @pytest.mark.asyncio
    async def test_exactly_once_failure_keeps_checkpoint(self, controller, factory, cluster):
        table = CheckpointTable()
        factory.target_endpoint.fail_writes = 1

        result = await controller.reconcile(cluster, _spec(), table, _noop)

        assert result.errors[0].reason == "ExternalDependencyError"
        assert table.get("dc1", ORDERS) == Checkpoint()

    @pytest.mark.asyncio
    async def test_exactly_once_lost_ack_is_deduplicated(self, controller, factory, cluster):
        table = CheckpointTable()
        target = factory.target_endpoint
        target.lose_acks = 1

        await controller.reconcile(cluster, _spec(), table, _noop)
        assert table.get("dc1", ORDERS) == Checkpoint()
        await controller.reconcile(cluster, _spec(), table, _noop)
        await controller.reconcile(cluster, _spec(), table, _noop)

        assert target.committed[("orders.created", 0)] == [b"a", b"b", b"c"]
        assert target.durable_calls == [True, True, True]

    @pytest.mark.asyncio
    async def test_at_least_once_failure_undoes_advance(self, controller, factory, cluster):
        table = CheckpointTable()
        factory.target_endpoint.fail_writes = 1

        result = await controller.reconcile(cluster, _spec(exactly_once=False), table, _noop)

        assert result.errors
        assert table.get("dc1", ORDERS) == Checkpoint()
        assert factory.target_endpoint.durable_calls == [False]

    @pytest.mark.asyncio
    async def test_failing_source_does_not_block_others(
        self, controller, factory, cluster, recorder
    ):
        table = CheckpointTable()
        spec = _spec(sources=("dc1", "dc9"))

        result = await controller.reconcile(cluster, spec, table, _noop)

        by_name = {s.source: s for s in result.sources}
        assert by_name["dc1"].records == 2
        assert by_name["dc9"].error is not None
        assert "MirrorSourceFailed" in recorder.reasons("kafka/orders")
        assert "MirrorCheckpointAdvanced" in recorder.reasons("kafka/orders")

    @pytest.mark.asyncio
    async def test_connections_are_closed(self, controller, factory, cluster):
        source = factory.sources["dc1"]
        source.unreachable = True

        result = await controller.reconcile(cluster, _spec(), CheckpointTable(), _noop)

        assert result.errors
        assert source.closed == 1
        assert factory.target_endpoint.closed == 1

    @pytest.mark.asyncio
    async def test_persist_runs_after_each_source(self, controller, factory, cluster):
        factory.sources["dc2"] = InMemoryMirrorSource()
        calls = []

        async def persist() -> None:
            calls.append("persist")

        await controller.reconcile(cluster, _spec(sources=("dc1", "dc2")), CheckpointTable(), persist)

        assert calls == ["persist", "persist"]

    def test_idempotency_key_is_source_position(self):
        record = MirrorRecord("orders.created", 0, 100, key=None, value=b"a")
        assert idempotency_key("dc1", record) == "dc1:orders.created:0:100"
