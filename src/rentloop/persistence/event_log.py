"""Append-only event log — the audit trail of every rental and wallet action.

Every committed rental transition produces one event record per new
timeline entry, the last of which carries the rental snapshot; payout
requests are logged the same way. Events are immutable once written. The
log can be persisted to a JSONL file (one JSON object per line) and loaded
back for recovery. On load each record's hash is recomputed; a tampered
or replayed record aborts the load.
"""

from __future__ import annotations

import enum
import hashlib
import json
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional


class EventKind(str, enum.Enum):
    """Classification of audit events."""
    # Request / negotiation
    RENTAL_REQUESTED = "rental_requested"
    RENTAL_APPROVED = "rental_approved"
    RENTAL_REJECTED = "rental_rejected"
    RENTAL_CANCELLED = "rental_cancelled"
    RENTAL_UPDATED = "rental_updated"
    # Payment
    PAYMENT_SESSION_OPENED = "payment_session_opened"
    PAYMENT_PROVIDER_FAILED = "payment_provider_failed"
    PAYMENT_CONFIRMED = "payment_confirmed"
    PAYMENT_FAILED = "payment_failed"
    PAYMENT_AMOUNT_MISMATCH = "payment_amount_mismatch"
    # Handover and return
    HANDOVER_CONFIRMED = "handover_confirmed"
    RENTAL_ACTIVATED = "rental_activated"
    ITEM_RECEIVED_CONFIRMED = "item_received_confirmed"
    ITEM_RETURNED_CONFIRMED = "item_returned_confirmed"
    RENTAL_COMPLETED = "rental_completed"
    # Disputes
    DISPUTE_RAISED = "dispute_raised"
    DISPUTE_RESOLVED = "dispute_resolved"
    # Wallet
    PAYOUT_REQUESTED = "payout_requested"


def _canonical_hash(
    event_id: str,
    event_kind: str,
    timestamp_utc: str,
    actor_id: str,
    payload: dict[str, Any],
) -> str:
    canonical = json.dumps(
        {
            "event_id": event_id,
            "event_kind": event_kind,
            "timestamp_utc": timestamp_utc,
            "actor_id": actor_id,
            "payload": payload,
        },
        sort_keys=True,
        ensure_ascii=False,
    ).encode("utf-8")
    return f"sha256:{hashlib.sha256(canonical).hexdigest()}"


@dataclass(frozen=True)
class EventRecord:
    """A single immutable event in the audit log."""
    event_id: str
    event_kind: EventKind
    timestamp_utc: str
    actor_id: str
    payload: dict[str, Any]
    event_hash: str  # SHA-256 of canonical JSON

    @property
    def rental_id(self) -> Optional[str]:
        return self.payload.get("rental_id")

    @staticmethod
    def create(
        event_id: str,
        event_kind: EventKind,
        actor_id: str,
        payload: dict[str, Any],
        timestamp_utc: Optional[datetime] = None,
    ) -> EventRecord:
        """Create a new event record with computed hash."""
        ts = timestamp_utc or datetime.now(timezone.utc)
        ts_str = ts.strftime("%Y-%m-%dT%H:%M:%SZ")
        return EventRecord(
            event_id=event_id,
            event_kind=event_kind,
            timestamp_utc=ts_str,
            actor_id=actor_id,
            payload=payload,
            event_hash=_canonical_hash(event_id, event_kind.value, ts_str, actor_id, payload),
        )


class EventLog:
    """Append-only event log with optional file persistence.

    Events can only be appended, never modified or deleted.
    """

    def __init__(self, storage_path: Optional[Path] = None) -> None:
        self._events: list[EventRecord] = []
        self._storage_path = storage_path
        self._event_ids: set[str] = set()
        self._lock = threading.Lock()

        if storage_path and storage_path.exists():
            self._load_from_file(storage_path)

    def append(self, event: EventRecord) -> None:
        """Append an event to the log.

        Raises ValueError if event_id is a duplicate (replay protection).
        """
        self.append_many([event])

    def append_many(self, events: list[EventRecord]) -> None:
        """Append several events; all are checked before any is written."""
        with self._lock:
            seen: set[str] = set()
            for event in events:
                if event.event_id in self._event_ids or event.event_id in seen:
                    raise ValueError(f"Duplicate event ID: {event.event_id}")
                seen.add(event.event_id)

            if self._storage_path:
                self._append_to_file(events)
            for event in events:
                self._events.append(event)
                self._event_ids.add(event.event_id)

    def events(self, kind: Optional[EventKind] = None) -> list[EventRecord]:
        """Return events, optionally filtered by kind."""
        with self._lock:
            if kind is None:
                return list(self._events)
            return [e for e in self._events if e.event_kind == kind]

    def events_for(self, rental_id: str) -> list[EventRecord]:
        """Return the audit trail of one rental, oldest first."""
        with self._lock:
            return [e for e in self._events if e.rental_id == rental_id]

    def events_since(
        self,
        since_utc: str,
        kind: Optional[EventKind] = None,
    ) -> list[EventRecord]:
        """Return events after a timestamp, optionally filtered by kind."""
        return [e for e in self.events(kind) if e.timestamp_utc >= since_utc]

    @property
    def count(self) -> int:
        return len(self._events)

    @property
    def last_event(self) -> Optional[EventRecord]:
        return self._events[-1] if self._events else None

    def _append_to_file(self, events: list[EventRecord]) -> None:
        lines = []
        for event in events:
            record = {
                "event_id": event.event_id,
                "event_kind": event.event_kind.value,
                "timestamp_utc": event.timestamp_utc,
                "actor_id": event.actor_id,
                "payload": event.payload,
                "event_hash": event.event_hash,
            }
            lines.append(json.dumps(record, sort_keys=True, ensure_ascii=False) + "\n")
        with self._storage_path.open("a", encoding="utf-8") as f:
            f.writelines(lines)

    def _load_from_file(self, path: Path) -> None:
        """Load events from a JSONL file with integrity verification.

        Fail-closed: rejects tampered records (hash mismatch) and
        duplicate event IDs (replay protection on recovery).
        """
        with path.open("r", encoding="utf-8") as f:
            for line_num, line in enumerate(f, 1):
                line = line.strip()
                if not line:
                    continue
                data = json.loads(line)
                event_id = data["event_id"]

                if event_id in self._event_ids:
                    raise ValueError(
                        f"Duplicate event ID on recovery (line {line_num}): {event_id}"
                    )

                expected_hash = _canonical_hash(
                    data["event_id"],
                    data["event_kind"],
                    data["timestamp_utc"],
                    data["actor_id"],
                    data["payload"],
                )
                if data["event_hash"] != expected_hash:
                    raise ValueError(
                        f"Integrity check failed (line {line_num}): event {event_id} "
                        f"stored hash {data['event_hash']} != computed {expected_hash}"
                    )

                self._events.append(EventRecord(
                    event_id=event_id,
                    event_kind=EventKind(data["event_kind"]),
                    timestamp_utc=data["timestamp_utc"],
                    actor_id=data["actor_id"],
                    payload=data["payload"],
                    event_hash=data["event_hash"],
                ))
                self._event_ids.add(event_id)
