"""
SQLite schema for the operator event journal.

The journal is an append-only record of notable engine transitions:
- Owned objects created, updated or deleted
- Upgrade ordinals replaced, advanced or halted
- Mirror checkpoints advanced and segments archived or reclaimed
- Phase changes and leadership acquired/lost

It is a local audit trail only; cluster status remains the sole
failure-reporting channel.
"""

SCHEMA_SQL = """
-- Append-only event journal
CREATE TABLE IF NOT EXISTS events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    cluster_key TEXT NOT NULL,             -- namespace/name, or '-' for operator-wide events
    reason TEXT NOT NULL,                  -- stable event reason (ObjectCreated, UpgradeHalted, ...)
    message TEXT NOT NULL,
    severity TEXT NOT NULL DEFAULT 'info', -- info, warning
    details TEXT,                          -- JSON blob with event-specific fields
    recorded_at TEXT NOT NULL              -- ISO8601 timestamp
);

-- Index for per-cluster listing
CREATE INDEX IF NOT EXISTS idx_events_cluster
ON events(cluster_key, recorded_at);

-- Index for filtering by reason
CREATE INDEX IF NOT EXISTS idx_events_reason
ON events(reason);
"""
