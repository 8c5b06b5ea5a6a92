"""
Event journal and recorder.

This module provides:
- EventJournal: async context manager over an aiosqlite database holding
  the append-only events table
- EventRecorder: the engine-facing emitter; logs every event and, when a
  journal is attached, appends it there too

The journal opens its connection in __aenter__ and creates the schema
there, so a fresh path is usable without a migration step.
"""

import json
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import aiosqlite

from shazamq_operator.db.schema import SCHEMA_SQL

logger = logging.getLogger(__name__)

OPERATOR_KEY = "-"
"""Cluster key used for operator-wide events such as leadership changes."""


@dataclass
class EventRecord:
    """
    One journaled event.

    Attributes:
        cluster_key: namespace/name of the cluster, or OPERATOR_KEY
        reason: Stable event reason
        message: Human-readable description
        severity: "info" or "warning"
        details: Event-specific fields
        recorded_at: When the event was emitted
        id: Journal row id (None until persisted)
    """

    cluster_key: str
    reason: str
    message: str
    severity: str = "info"
    details: dict[str, Any] = field(default_factory=dict)
    recorded_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    id: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "cluster": self.cluster_key,
            "reason": self.reason,
            "message": self.message,
            "severity": self.severity,
            "details": self.details,
            "recorded_at": self.recorded_at.isoformat(),
        }


class EventJournal:
    """
    Async context manager for the event journal database.

    Example:
        async with EventJournal(Path("events.db")) as journal:
            await journal.append(EventRecord("kafka/orders", "ObjectCreated", "..."))
            events = await journal.list_events(cluster_key="kafka/orders")
    """

    def __init__(self, db_path: Path) -> None:
        """
        Initialize the database connection manager.

        Args:
            db_path: Path to the SQLite database file
        """
        self.db_path = db_path
        self._conn: aiosqlite.Connection | None = None

    async def __aenter__(self) -> "EventJournal":
        """Open database connection and ensure schema exists."""
        self._conn = await aiosqlite.connect(self.db_path)
        self._conn.row_factory = aiosqlite.Row
        await self._conn.executescript(SCHEMA_SQL)
        await self._conn.commit()
        return self

    async def __aexit__(self, *args: Any) -> None:
        """Close database connection."""
        if self._conn:
            await self._conn.close()
            self._conn = None

    def _row_to_record(self, row: aiosqlite.Row) -> EventRecord:
        return EventRecord(
            id=row["id"],
            cluster_key=row["cluster_key"],
            reason=row["reason"],
            message=row["message"],
            severity=row["severity"],
            details=json.loads(row["details"]) if row["details"] else {},
            recorded_at=datetime.fromisoformat(row["recorded_at"]),
        )

    async def append(self, record: EventRecord) -> EventRecord:
        """
        Append one event.

        Returns:
            The record with its journal id filled in
        """
        cursor = await self._conn.execute(
            """
            INSERT INTO events (cluster_key, reason, message, severity, details, recorded_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                record.cluster_key,
                record.reason,
                record.message,
                record.severity,
                json.dumps(record.details, sort_keys=True) if record.details else None,
                record.recorded_at.isoformat(),
            ),
        )
        await self._conn.commit()
        record.id = cursor.lastrowid
        return record

    async def list_events(
        self,
        cluster_key: str | None = None,
        reason: str | None = None,
        limit: int = 100,
    ) -> list[EventRecord]:
        """
        List events, newest first.

        Args:
            cluster_key: Only events for this cluster
            reason: Only events with this reason
            limit: Maximum number of rows
        """
        query = "SELECT * FROM events"
        clauses: list[str] = []
        params: list[Any] = []
        if cluster_key is not None:
            clauses.append("cluster_key = ?")
            params.append(cluster_key)
        if reason is not None:
            clauses.append("reason = ?")
            params.append(reason)
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY id DESC LIMIT ?"
        params.append(limit)

        async with self._conn.execute(query, params) as cursor:
            rows = await cursor.fetchall()
        return [self._row_to_record(row) for row in rows]


class EventRecorder:
    """
    Emits structured events on notable engine transitions.

    Every event is logged. A bounded in-memory history is kept for
    inspection, and events are appended to the journal when one is attached.
    Journal write failures are logged and do not fail the reconcile pass.

    Example:
        recorder = EventRecorder()
        await recorder.emit("kafka/orders", "UpgradeOrdinalReplaced", "replaced ordinal 2")
    """

    def __init__(
        self, journal: EventJournal | None = None, history_size: int = 1000
    ) -> None:
        self.journal = journal
        self.history: deque[EventRecord] = deque(maxlen=history_size)

    async def emit(
        self,
        cluster_key: str,
        reason: str,
        message: str,
        *,
        warning: bool = False,
        **details: Any,
    ) -> EventRecord:
        """
        Emit one event.

        Args:
            cluster_key: namespace/name of the cluster (OPERATOR_KEY for
                operator-wide events)
            reason: Stable event reason
            message: Human-readable description
            warning: Log at WARNING and journal with severity "warning"
            **details: Extra fields stored with the event

        Returns:
            The emitted record
        """
        record = EventRecord(
            cluster_key=cluster_key,
            reason=reason,
            message=message,
            severity="warning" if warning else "info",
            details=details,
        )
        logger.log(
            logging.WARNING if warning else logging.INFO,
            "[%s] %s: %s",
            cluster_key,
            reason,
            message,
        )
        self.history.append(record)

        if self.journal is not None:
            try:
                await self.journal.append(record)
            except aiosqlite.Error as e:
                logger.error("Failed to journal event %s: %s", reason, e)
        return record

    def reasons(self, cluster_key: str | None = None) -> list[str]:
        """Reasons of the recorded history, oldest first."""
        return [
            r.reason
            for r in self.history
            if cluster_key is None or r.cluster_key == cluster_key
        ]
