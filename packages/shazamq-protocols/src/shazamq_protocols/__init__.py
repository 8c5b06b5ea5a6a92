"""
Protocol definitions for the Shazamq cluster operator.

This package provides the Protocol definitions every external collaborator
of the reconciliation engine is reached through, the dataclass types that
cross those boundaries, and the shared error taxonomy. It has zero
dependencies on other packages.

Key protocols:
- PlatformClientProtocol: orchestration API (objects, status, watches)
- BrokerAdminProtocol: per-replica broker health and segment management
- ObjectStoreProtocol: warm-tier archival storage
- MirrorSourceProtocol / MirrorTargetProtocol: mirroring endpoints
"""

from shazamq_protocols.broker import BrokerAdminProtocol
from shazamq_protocols.errors import (
    ChecksumMismatch,
    ConflictError,
    ExternalDependencyError,
    LeadershipLost,
    OperatorError,
    OwnershipConflict,
    SpecValidationError,
    TransientAPIError,
    UpgradeReadinessTimeout,
)
from shazamq_protocols.mirror import MirrorSourceProtocol, MirrorTargetProtocol
from shazamq_protocols.platform import PlatformClientProtocol
from shazamq_protocols.storage import ObjectStoreProtocol
from shazamq_protocols.types import (
    OWNED_KINDS,
    BrokerHealth,
    MirrorRecord,
    ObjectKind,
    ObjectRef,
    SegmentInfo,
    SourcePartition,
    TargetWrite,
    WatchEvent,
    WriteAck,
)

__all__ = [
    # Protocols
    "PlatformClientProtocol",
    "BrokerAdminProtocol",
    "ObjectStoreProtocol",
    "MirrorSourceProtocol",
    "MirrorTargetProtocol",
    # Data types
    "ObjectKind",
    "OWNED_KINDS",
    "ObjectRef",
    "WatchEvent",
    "BrokerHealth",
    "SegmentInfo",
    "SourcePartition",
    "MirrorRecord",
    "TargetWrite",
    "WriteAck",
    # Errors
    "OperatorError",
    "TransientAPIError",
    "ConflictError",
    "SpecValidationError",
    "OwnershipConflict",
    "ExternalDependencyError",
    "ChecksumMismatch",
    "UpgradeReadinessTimeout",
    "LeadershipLost",
]
