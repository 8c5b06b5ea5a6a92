"""
Per-partition mirror checkpoints.

This module defines:
- Checkpoint: next source offset to read plus the target offset of the last
  acknowledged write (the offset translation for that partition)
- CheckpointTable: checkpoints for every source and partition, with
  monotonic advancement and max-merge

Checkpoints only move forward. An attempted regression is rejected without
touching the table, and merging two tables keeps the furthest checkpoint per
partition, so concurrent or replayed writers can never move one backwards.
"""

from dataclasses import dataclass
from typing import Any

from shazamq_protocols.types import SourcePartition


class CheckpointRegression(ValueError):
    """An advance would move a checkpoint backwards."""


@dataclass(frozen=True)
class Checkpoint:
    """
    Translation state of one source partition.

    Attributes:
        source_offset: Next source offset to read (last committed + 1)
        target_offset: Target offset of the last acknowledged write, or None
            if nothing has been acknowledged yet
    """

    source_offset: int = 0
    target_offset: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"sourceOffset": self.source_offset, "targetOffset": self.target_offset}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Checkpoint":
        return cls(
            source_offset=int(data.get("sourceOffset", 0)),
            target_offset=data.get("targetOffset"),
        )


def partition_key(partition: SourcePartition) -> str:
    return f"{partition.topic}:{partition.partition}"


class CheckpointTable:
    """
    Checkpoints keyed by mirror source name and source partition.

    Example:
        table = CheckpointTable()
        table.advance("dc1", SourcePartition("orders", 0), source_offset=10, target_offset=41)
        table.get("dc1", SourcePartition("orders", 0)).source_offset  # 10
    """

    def __init__(self, entries: dict[str, dict[str, Checkpoint]] | None = None) -> None:
        self._entries: dict[str, dict[str, Checkpoint]] = entries or {}

    def get(self, source: str, partition: SourcePartition) -> Checkpoint:
        return self._entries.get(source, {}).get(partition_key(partition), Checkpoint())

    def advance(
        self,
        source: str,
        partition: SourcePartition,
        source_offset: int,
        target_offset: int | None = None,
    ) -> Checkpoint:
        """
        Move a checkpoint forward.

        Raises:
            CheckpointRegression: If source_offset is behind the current
                checkpoint; the table is left unchanged
        """
        current = self.get(source, partition)
        if source_offset < current.source_offset:
            raise CheckpointRegression(
                f"{source}/{partition}: {source_offset} < {current.source_offset}"
            )
        updated = Checkpoint(
            source_offset=source_offset,
            target_offset=target_offset if target_offset is not None else current.target_offset,
        )
        self._entries.setdefault(source, {})[partition_key(partition)] = updated
        return updated

    def restore(self, source: str, partition: SourcePartition, checkpoint: Checkpoint) -> None:
        """
        Put back a checkpoint that was advanced but never persisted.

        Only used to undo an optimistic in-memory advance after the write it
        anticipated failed; persisted state is never rolled back.
        """
        self._entries.setdefault(source, {})[partition_key(partition)] = checkpoint

    def merge(self, other: "CheckpointTable") -> None:
        """Keep the furthest checkpoint of each partition from self and other."""
        for source, partitions in other._entries.items():
            mine = self._entries.setdefault(source, {})
            for key, theirs in partitions.items():
                ours = mine.get(key)
                if ours is None or theirs.source_offset > ours.source_offset:
                    mine[key] = theirs

    def sources(self) -> list[str]:
        return sorted(self._entries)

    def to_dict(self) -> dict[str, Any]:
        return {
            source: {key: cp.to_dict() for key, cp in sorted(partitions.items())}
            for source, partitions in sorted(self._entries.items())
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CheckpointTable":
        return cls(
            {
                source: {key: Checkpoint.from_dict(cp) for key, cp in partitions.items()}
                for source, partitions in data.items()
            }
        )
