"""
Segment archival-state table and archive key derivation.

Segments move strictly HOT -> UPLOADING -> ARCHIVED. Only non-hot segments
are stored: a segment without an entry is hot. Archived entries are kept
after their local bytes are reclaimed so the archive key stays available
for lookup and restore.
"""

from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Any

from shazamq_protocols.types import SegmentInfo


class SegmentState(str, Enum):
    """Archival state of one segment, in lifecycle order."""

    HOT = "Hot"
    UPLOADING = "Uploading"
    ARCHIVED = "Archived"

    @property
    def rank(self) -> int:
        return list(SegmentState).index(self)


ALLOWED_TRANSITIONS = {
    SegmentState.HOT: {SegmentState.UPLOADING},
    SegmentState.UPLOADING: {SegmentState.ARCHIVED},
    SegmentState.ARCHIVED: set(),
}


class IllegalTransition(ValueError):
    """A state change that skips or reverses the archival lifecycle."""

    def __init__(self, segment_id: str, current: SegmentState, target: SegmentState) -> None:
        self.segment_id = segment_id
        self.current = current
        self.target = target
        super().__init__(f"{segment_id}: {current.value} -> {target.value} is not allowed")


def archive_key(prefix: str, namespace: str, cluster: str, segment: SegmentInfo) -> str:
    """
    Deterministic object-storage key for a segment.

    Example:
        archive_key("shazamq", "kafka", "orders", seg)
        # "shazamq/kafka/orders/payments/3/00000000000000001024.log"
    """
    parts = [
        namespace,
        cluster,
        segment.topic,
        str(segment.partition),
        f"{segment.base_offset:020d}.log",
    ]
    prefix = prefix.strip("/")
    if prefix:
        parts.insert(0, prefix)
    return "/".join(parts)


@dataclass(frozen=True)
class ArchiveEntry:
    """
    Archival record of one non-hot segment.

    Attributes:
        state: UPLOADING or ARCHIVED
        key: Object-storage key
        sha256: Verified hex digest (set once archived)
        size_bytes: Segment size
        updated_at: When the state last changed
        archived_at: When the segment was archived
        local_reclaimed: True once local bytes were deleted on every broker
    """

    state: SegmentState
    key: str
    sha256: str | None = None
    size_bytes: int = 0
    updated_at: datetime | None = None
    archived_at: datetime | None = None
    local_reclaimed: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "key": self.key,
            "sha256": self.sha256,
            "sizeBytes": self.size_bytes,
            "updatedAt": self.updated_at.isoformat() if self.updated_at else None,
            "archivedAt": self.archived_at.isoformat() if self.archived_at else None,
            "localReclaimed": self.local_reclaimed,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ArchiveEntry":
        return cls(
            state=SegmentState(data["state"]),
            key=data["key"],
            sha256=data.get("sha256"),
            size_bytes=int(data.get("sizeBytes", 0)),
            updated_at=(
                datetime.fromisoformat(data["updatedAt"]) if data.get("updatedAt") else None
            ),
            archived_at=(
                datetime.fromisoformat(data["archivedAt"]) if data.get("archivedAt") else None
            ),
            local_reclaimed=bool(data.get("localReclaimed", False)),
        )


class ArchiveTable:
    """
    Segment id -> ArchiveEntry, with validated transitions.

    Example:
        table.transition(seg.segment_id, SegmentState.UPLOADING, key=key, now=now)
        table.transition(seg.segment_id, SegmentState.ARCHIVED, sha256=digest, now=now)
    """

    def __init__(self, entries: dict[str, ArchiveEntry] | None = None) -> None:
        self._entries: dict[str, ArchiveEntry] = entries or {}

    def state(self, segment_id: str) -> SegmentState:
        entry = self._entries.get(segment_id)
        return entry.state if entry else SegmentState.HOT

    def get(self, segment_id: str) -> ArchiveEntry | None:
        return self._entries.get(segment_id)

    def transition(
        self,
        segment_id: str,
        target: SegmentState,
        *,
        now: datetime,
        key: str | None = None,
        sha256: str | None = None,
        size_bytes: int | None = None,
    ) -> ArchiveEntry:
        """
        Move a segment to its next lifecycle state.

        Raises:
            IllegalTransition: If target is not the next state; the table is
                left unchanged
        """
        current = self.state(segment_id)
        if target not in ALLOWED_TRANSITIONS[current]:
            raise IllegalTransition(segment_id, current, target)

        entry = self._entries.get(segment_id)
        if entry is None:
            if key is None:
                raise ValueError(f"{segment_id}: an archive key is required to start upload")
            entry = ArchiveEntry(state=target, key=key, size_bytes=size_bytes or 0, updated_at=now)
        else:
            entry = replace(entry, state=target, updated_at=now)
        if target == SegmentState.ARCHIVED:
            entry = replace(entry, sha256=sha256, archived_at=now)
        self._entries[segment_id] = entry
        return entry

    def mark_reclaimed(self, segment_id: str) -> ArchiveEntry:
        """Record that an archived segment's local bytes were reclaimed."""
        entry = self._entries.get(segment_id)
        if entry is None or entry.state != SegmentState.ARCHIVED:
            raise IllegalTransition(segment_id, self.state(segment_id), SegmentState.ARCHIVED)
        entry = replace(entry, local_reclaimed=True)
        self._entries[segment_id] = entry
        return entry

    def items(self) -> list[tuple[str, ArchiveEntry]]:
        return sorted(self._entries.items())

    def merge(self, other: "ArchiveTable") -> None:
        """Keep the most advanced entry per segment from self and other."""
        for segment_id, theirs in other._entries.items():
            ours = self._entries.get(segment_id)
            if ours is None or theirs.state.rank > ours.state.rank:
                self._entries[segment_id] = theirs
            elif theirs.state == ours.state and theirs.local_reclaimed and not ours.local_reclaimed:
                self._entries[segment_id] = replace(ours, local_reclaimed=True)

    def to_dict(self) -> dict[str, Any]:
        return {segment_id: entry.to_dict() for segment_id, entry in self.items()}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ArchiveTable":
        return cls({sid: ArchiveEntry.from_dict(entry) for sid, entry in data.items()})
