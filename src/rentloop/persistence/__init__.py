"""Persistence — rental records and the append-only audit log."""

from rentloop.persistence.event_log import EventKind, EventLog, EventRecord
from rentloop.persistence.rental_store import RentalStore

__all__ = ["EventKind", "EventLog", "EventRecord", "RentalStore"]
