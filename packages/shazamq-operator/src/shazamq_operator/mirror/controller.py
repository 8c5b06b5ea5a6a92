"""
Mirror controller: per-pass translation of source records to the target.

Each reconcile pass, for every configured source, the controller lists the
partitions matching the source's whitelist, spreads them over the source's
workers (see assignment.py), and moves at most one batch per partition.

Checkpoint coupling:
- exactlyOnce: writes carry an idempotency key derived from the source
  partition and offset, are written durably, and the checkpoint advances
  only after every write in the batch is acknowledged. A failed write
  leaves the checkpoint untouched; the retry re-sends the same keys and the
  target deduplicates them.
- otherwise: the checkpoint is advanced in memory before the write. If the
  write fails, the unpersisted advance is undone. Checkpoints are persisted
  after each source, so a crash replays at most the unpersisted batches
  (duplicate delivery, never loss).

A failing source is reported as an ExternalDependencyError for the mirror
sub-feature only; other sources and the rest of the pass continue.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

from shazamq_operator.cluster.model import ClusterResource, ClusterSpec, MirrorSourceSpec
from shazamq_operator.db.events import EventRecorder
from shazamq_operator.mirror.assignment import assign
from shazamq_operator.mirror.checkpoint import CheckpointTable
from shazamq_protocols.errors import ExternalDependencyError
from shazamq_protocols.mirror import MirrorSourceProtocol, MirrorTargetProtocol
from shazamq_protocols.types import MirrorRecord, SourcePartition, TargetWrite

logger = logging.getLogger(__name__)

IDEMPOTENCY_HEADER = "shazamq.mirror.idempotency-key"

SourceFactory = Callable[[ClusterResource, MirrorSourceSpec], Awaitable[MirrorSourceProtocol]]
TargetFactory = Callable[[ClusterResource, MirrorSourceSpec], Awaitable[MirrorTargetProtocol]]


def idempotency_key(source: str, record: MirrorRecord) -> str:
    return f"{source}:{record.topic}:{record.partition}:{record.offset}"


@dataclass
class SourceResult:
    """
    Outcome for one mirror source.

    Attributes:
        source: Source name
        partitions: Partitions matched by the whitelist
        records: Records committed to the target this pass
        error: Set if the source failed this pass
    """

    source: str
    partitions: int = 0
    records: int = 0
    error: ExternalDependencyError | None = None


@dataclass
class MirrorResult:
    sources: list[SourceResult] = field(default_factory=list)

    @property
    def errors(self) -> list[ExternalDependencyError]:
        return [s.error for s in self.sources if s.error is not None]

    @property
    def records(self) -> int:
        return sum(s.records for s in self.sources)


class MirrorController:
    """
    Translates mirror sources for one cluster per call.

    Example:
        controller = MirrorController(factory.source, factory.target, recorder)
        result = await controller.reconcile(cluster, spec, state.checkpoints, persist)
    """

    def __init__(
        self,
        source_factory: SourceFactory,
        target_factory: TargetFactory,
        recorder: EventRecorder,
        batch_size: int = 500,
    ) -> None:
        self.source_factory = source_factory
        self.target_factory = target_factory
        self.recorder = recorder
        self.batch_size = batch_size

    async def reconcile(
        self,
        cluster: ClusterResource,
        spec: ClusterSpec,
        checkpoints: CheckpointTable,
        persist: Callable[[], Awaitable[None]],
    ) -> MirrorResult:
        """
        Run one mirror pass for every configured source.

        Args:
            cluster: Cluster being reconciled
            spec: Validated spec
            checkpoints: Loaded checkpoint table, advanced in place
            persist: Saves the checkpoint table; called after each source

        Returns:
            MirrorResult with per-source outcomes
        """
        result = MirrorResult()
        for source_spec in spec.mirror_sources:
            outcome = SourceResult(source=source_spec.name)
            try:
                await self._mirror_source(cluster, source_spec, checkpoints, outcome)
            except ExternalDependencyError as e:
                outcome.error = e
                await self.recorder.emit(
                    cluster.key,
                    "MirrorSourceFailed",
                    f"source {source_spec.name}: {e.message}",
                    warning=True,
                    source=source_spec.name,
                )
            result.sources.append(outcome)

            await persist()
            if outcome.records:
                await self.recorder.emit(
                    cluster.key,
                    "MirrorCheckpointAdvanced",
                    f"source {source_spec.name}: {outcome.records} record(s) committed",
                    source=source_spec.name,
                    records=outcome.records,
                )
        return result

    async def _mirror_source(
        self,
        cluster: ClusterResource,
        source_spec: MirrorSourceSpec,
        checkpoints: CheckpointTable,
        outcome: SourceResult,
    ) -> None:
        source = await self.source_factory(cluster, source_spec)
        try:
            target = await self.target_factory(cluster, source_spec)
        except BaseException:
            await source.close()
            raise

        try:
            partitions = await source.list_partitions(
                source_spec.topic_whitelist, source_spec.topic_blacklist
            )
            outcome.partitions = len(partitions)
            assignment = assign(partitions, source_spec.num_consumers)

            async def run_worker(worker: int, assigned: list[SourcePartition]) -> None:
                for partition in assigned:
                    committed = await self._mirror_partition(
                        source_spec, partition, source, target, checkpoints
                    )
                    outcome.records += committed
                logger.debug(
                    "%s: mirror %s worker %d handled %d partition(s)",
                    cluster.key,
                    source_spec.name,
                    worker,
                    len(assigned),
                )

            results = await asyncio.gather(
                *(run_worker(w, parts) for w, parts in assignment.items()),
                return_exceptions=True,
            )
            failures = [r for r in results if isinstance(r, BaseException)]
            for failure in failures:
                if not isinstance(failure, ExternalDependencyError):
                    raise failure
            if failures:
                raise failures[0]
        finally:
            await source.close()
            await target.close()

    async def _mirror_partition(
        self,
        source_spec: MirrorSourceSpec,
        partition: SourcePartition,
        source: MirrorSourceProtocol,
        target: MirrorTargetProtocol,
        checkpoints: CheckpointTable,
    ) -> int:
        """Move one batch for a partition; returns records committed."""
        name = source_spec.name
        current = checkpoints.get(name, partition)
        records = await source.fetch(partition, current.source_offset, self.batch_size)
        if not records:
            return 0

        next_offset = records[-1].offset + 1

        if source_spec.exactly_once:
            writes = [TargetWrite(r, idempotency_key(name, r)) for r in records]
            acks = await target.write(writes, durable=True)
            if len(acks) != len(writes):
                raise ExternalDependencyError(
                    "mirror",
                    f"{name}/{partition}: {len(acks)} of {len(writes)} write(s) acknowledged",
                )
            checkpoints.advance(name, partition, next_offset, acks[-1].offset)
            return len(records)

        writes = [TargetWrite(r) for r in records]
        checkpoints.advance(name, partition, next_offset)
        try:
            acks = await target.write(writes, durable=False)
        except ExternalDependencyError:
            checkpoints.restore(name, partition, current)
            raise
        if acks:
            checkpoints.advance(name, partition, next_offset, acks[-1].offset)
        return len(records)
