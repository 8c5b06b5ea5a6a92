"""
Mirror endpoint protocols.

A mirror source is an external broker cluster read at native offsets; the
target is the managed cluster. The target's write() only returns once the
records are durably acknowledged, which is what allows the checkpoint to be
gated on it.
"""

from typing import Protocol, runtime_checkable

from shazamq_protocols.types import (
    MirrorRecord,
    SourcePartition,
    TargetWrite,
    WriteAck,
)


@runtime_checkable
class MirrorSourceProtocol(Protocol):
    """Protocol for reading an external source cluster."""

    async def list_partitions(
        self, whitelist: list[str], blacklist: list[str]
    ) -> list[SourcePartition]:
        """List partitions of topics matching the whitelist and not the blacklist."""
        ...

    async def fetch(
        self, partition: SourcePartition, from_offset: int, max_records: int
    ) -> list[MirrorRecord]:
        """Read up to max_records starting at from_offset, in offset order."""
        ...

    async def close(self) -> None:
        """Release connections."""
        ...


@runtime_checkable
class MirrorTargetProtocol(Protocol):
    """Protocol for writing to the managed cluster."""

    async def write(
        self, writes: list[TargetWrite], durable: bool = True
    ) -> list[WriteAck]:
        """
        Write records in order.

        Returns one ack per committed write. With durable=True, returns only
        after every write is acknowledged by all in-sync replicas; raises on
        failure, in which case no checkpoint may be advanced.
        """
        ...

    async def close(self) -> None:
        """Release connections."""
        ...
