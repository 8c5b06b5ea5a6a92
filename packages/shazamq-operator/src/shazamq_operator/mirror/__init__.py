"""Mirroring of external source clusters into the managed cluster."""

from shazamq_operator.mirror.assignment import assign, worker_for
from shazamq_operator.mirror.checkpoint import Checkpoint, CheckpointRegression, CheckpointTable
from shazamq_operator.mirror.controller import (
    IDEMPOTENCY_HEADER,
    MirrorController,
    MirrorResult,
    SourceResult,
    idempotency_key,
)

__all__ = [
    "IDEMPOTENCY_HEADER",
    "Checkpoint",
    "CheckpointRegression",
    "CheckpointTable",
    "MirrorController",
    "MirrorResult",
    "SourceResult",
    "assign",
    "idempotency_key",
    "worker_for",
]
