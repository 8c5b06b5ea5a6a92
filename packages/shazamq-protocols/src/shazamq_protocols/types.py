"""
Shared types for the reconciliation engine and its collaborators.

These are plain dataclasses describing the things that cross a protocol
boundary: owned-object kinds, watch events, broker segments, and mirror
records. Pydantic models are reserved for the custom resource itself and for
external API responses.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class ObjectKind(str, Enum):
    """
    Kinds of objects the engine reads or writes on the platform.

    The first five are the owned-object variants the compiler can emit.
    """

    WORKLOAD = "StatefulSet"
    SERVICE = "Service"
    CONFIG = "ConfigMap"
    SECRET = "Secret"
    MONITOR = "ServiceMonitor"
    POD = "Pod"
    CLUSTER = "ShazamqCluster"
    LEASE = "Lease"


OWNED_KINDS = (
    ObjectKind.WORKLOAD,
    ObjectKind.SERVICE,
    ObjectKind.CONFIG,
    ObjectKind.SECRET,
    ObjectKind.MONITOR,
)
"""Kinds that carry an owner reference back to a cluster object."""


@dataclass(frozen=True)
class ObjectRef:
    """Identity of a namespaced platform object."""

    kind: ObjectKind
    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.kind.value}/{self.namespace}/{self.name}"


@dataclass
class WatchEvent:
    """
    One change notification from a platform watch stream.

    Attributes:
        type: "ADDED", "MODIFIED", "DELETED" or "BOOKMARK"
        kind: Kind of the object that changed
        object: The object body as a plain dict (camelCase keys)
    """

    type: str
    kind: ObjectKind
    object: dict[str, Any]


# =============================================================================
# Broker admin types
# =============================================================================


@dataclass
class BrokerHealth:
    """
    Application-level health of one broker replica.

    Attributes:
        ordinal: Replica ordinal
        ready: True only if the broker reports it is serving
        version: Broker version string reported by the replica
        controller: True if this replica is the cluster controller
    """

    ordinal: int
    ready: bool
    version: str = ""
    controller: bool = False


@dataclass(frozen=True)
class SegmentInfo:
    """
    A closed log segment on a broker's local disk.

    Attributes:
        topic: Topic name
        partition: Partition number
        base_offset: First offset stored in the segment
        size_bytes: Segment size on disk
        closed_at: When the segment was rolled (closed for writes)
        sha256: Hex SHA-256 digest reported by the broker
    """

    topic: str
    partition: int
    base_offset: int
    size_bytes: int
    closed_at: datetime
    sha256: str

    @property
    def segment_id(self) -> str:
        """Cluster-wide identifier: topic/partition/base_offset."""
        return f"{self.topic}/{self.partition}/{self.base_offset}"


# =============================================================================
# Mirror types
# =============================================================================


@dataclass(frozen=True, order=True)
class SourcePartition:
    """A (topic, partition) pair on a mirror source."""

    topic: str
    partition: int

    def __str__(self) -> str:
        return f"{self.topic}:{self.partition}"


@dataclass
class MirrorRecord:
    """A record read from a mirror source at its native offset."""

    topic: str
    partition: int
    offset: int
    key: bytes | None
    value: bytes | None
    headers: list[tuple[str, bytes]] = field(default_factory=list)
    timestamp_ms: int | None = None


@dataclass
class TargetWrite:
    """
    A record to write to the target cluster.

    Attributes:
        record: The source record being mirrored
        idempotency_key: Dedup key derived from (source partition, source
            offset); None when exactly-once is disabled
    """

    record: MirrorRecord
    idempotency_key: str | None = None


@dataclass(frozen=True)
class WriteAck:
    """Acknowledgment that a write was committed on the target."""

    topic: str
    partition: int
    offset: int
