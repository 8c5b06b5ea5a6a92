"""In-memory mirror source and target."""

from shazamq_operator.cluster.model import ClusterResource, MirrorSourceSpec
from shazamq_operator.mirror.kafka import topic_matches
from shazamq_protocols.errors import ExternalDependencyError
from shazamq_protocols.types import MirrorRecord, SourcePartition, TargetWrite, WriteAck


class InMemoryMirrorSource:
    """
    A source cluster holding records per partition at native offsets.

    Example:
        source = InMemoryMirrorSource()
        source.produce("orders", 0, [b"a", b"b", b"c"])
    """

    def __init__(self, start_offsets: dict[tuple[str, int], int] | None = None) -> None:
        self.records: dict[SourcePartition, list[MirrorRecord]] = {}
        self.start_offsets = start_offsets or {}
        self.unreachable = False
        self.closed = 0

    def produce(self, topic: str, partition: int, values: list[bytes]) -> None:
        key = SourcePartition(topic, partition)
        log = self.records.setdefault(key, [])
        offset = log[-1].offset + 1 if log else self.start_offsets.get((topic, partition), 0)
        for value in values:
            log.append(MirrorRecord(topic, partition, offset, key=None, value=value))
            offset += 1

    async def list_partitions(
        self, whitelist: list[str], blacklist: list[str]
    ) -> list[SourcePartition]:
        if self.unreachable:
            raise ExternalDependencyError("mirror", "source unreachable")
        return sorted(p for p in self.records if topic_matches(p.topic, whitelist, blacklist))

    async def fetch(
        self, partition: SourcePartition, from_offset: int, max_records: int
    ) -> list[MirrorRecord]:
        if self.unreachable:
            raise ExternalDependencyError("mirror", "source unreachable")
        log = self.records.get(partition, [])
        return [r for r in log if r.offset >= from_offset][:max_records]

    async def close(self) -> None:
        self.closed += 1


class InMemoryMirrorTarget:
    """
    The managed cluster as a mirror target.

    Writes carrying an idempotency key already committed are acknowledged
    without being appended again, like a deduplicating broker.

    Attributes:
        committed: (topic, partition) -> values appended
        fail_writes: Number of upcoming write() calls that fail
        lose_acks: Number of upcoming write() calls that commit but then
            fail before acknowledging
        writes: Number of write() calls made
    """

    def __init__(self) -> None:
        self.committed: dict[tuple[str, int], list[bytes | None]] = {}
        self.keys: dict[str, WriteAck] = {}
        self.fail_writes = 0
        self.lose_acks = 0
        self.writes = 0
        self.durable_calls: list[bool] = []
        self.closed = 0

    async def write(self, writes: list[TargetWrite], durable: bool = True) -> list[WriteAck]:
        self.writes += 1
        self.durable_calls.append(durable)
        if self.fail_writes > 0:
            self.fail_writes -= 1
            raise ExternalDependencyError("mirror", "target write not acknowledged")
        acks = []
        for write in writes:
            if write.idempotency_key is not None and write.idempotency_key in self.keys:
                acks.append(self.keys[write.idempotency_key])
                continue
            record = write.record
            log = self.committed.setdefault((record.topic, record.partition), [])
            log.append(record.value)
            ack = WriteAck(record.topic, record.partition, len(log) - 1)
            if write.idempotency_key is not None:
                self.keys[write.idempotency_key] = ack
            acks.append(ack)
        if self.lose_acks > 0:
            self.lose_acks -= 1
            raise ExternalDependencyError("mirror", "connection lost before acknowledgment")
        return acks

    async def close(self) -> None:
        self.closed += 1


class InMemoryMirrorFactory:
    """Source/target factories handing out fixed in-memory endpoints by source name."""

    def __init__(self, target: InMemoryMirrorTarget | None = None) -> None:
        self.sources: dict[str, InMemoryMirrorSource] = {}
        self.target_endpoint = target or InMemoryMirrorTarget()

    async def source(
        self, cluster: ClusterResource, spec: MirrorSourceSpec
    ) -> InMemoryMirrorSource:
        if spec.name not in self.sources:
            raise ExternalDependencyError("mirror", f"source {spec.name} unreachable")
        return self.sources[spec.name]

    async def target(
        self, cluster: ClusterResource, spec: MirrorSourceSpec
    ) -> InMemoryMirrorTarget:
        return self.target_endpoint
