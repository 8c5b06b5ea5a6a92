"""Hot/warm tiered storage of closed log segments."""

from shazamq_operator.tiered.archive import (
    ArchiveEntry,
    ArchiveTable,
    IllegalTransition,
    SegmentState,
    archive_key,
)
from shazamq_operator.tiered.controller import TieredResult, TieredStorageController

__all__ = [
    "ArchiveEntry",
    "ArchiveTable",
    "IllegalTransition",
    "SegmentState",
    "TieredResult",
    "TieredStorageController",
    "archive_key",
]
