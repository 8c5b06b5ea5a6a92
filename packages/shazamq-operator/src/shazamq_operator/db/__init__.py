"""Event journal persistence."""

from shazamq_operator.db.events import EventJournal, EventRecord, EventRecorder

__all__ = ["EventJournal", "EventRecord", "EventRecorder"]
