"""Rental store — per-rental serialization with versioned commits.

``transaction(rental_id)`` is the only way to change a stored rental:

    with store.transaction(rental_id) as rental:
        ...mutate the working copy...

The block holds that rental's lock, so two actions on the same rental never
interleave while different rentals proceed in parallel. The yielded object
is a deep copy. A block that changes nothing commits nothing. On a clean
exit with changes the copy replaces the stored record with
``version + 1`` after a compare-and-swap on the version, and its new
timeline entries are appended to the event log. If the block raises, or
the event log refuses the append, the stored record is untouched and no
partial state is ever observed.

Callbacks registered with ``after_commit`` run once the record is stored,
still under the rental's lock. They are dropped if the block does not
commit.

Durability: the last event record of every commit carries a full snapshot
of the rental (``RentalRequest.to_record``). A store built on a persisted
event log replays those snapshots, so rentals survive a restart together
with their audit trail.

Lock order across the engine: item lock → rental lock → ledger lock.
"""

from __future__ import annotations

import copy
import logging
import threading
from contextlib import contextmanager
from datetime import date
from typing import Callable, Iterable, Iterator, Optional

from rentloop.errors import Internal, NotFound
from rentloop.models.rental import RentalRequest, RentalStatus
from rentloop.persistence.event_log import EventKind, EventLog, EventRecord

logger = logging.getLogger(__name__)


class RentalStore:
    """Rental records with an audit-log tail.

    Usage:
        store = RentalStore(event_log=EventLog())
        store.add(rental)
        with store.transaction(rental.rental_id) as working:
            working.status = ...
    """

    def __init__(self, event_log: Optional[EventLog] = None) -> None:
        self._records: dict[str, RentalRequest] = {}
        self._by_order: dict[str, str] = {}
        self._rental_locks: dict[str, threading.Lock] = {}
        self._item_locks: dict[str, threading.Lock] = {}
        self._hooks: dict[str, list[Callable[[], None]]] = {}
        self._registry_lock = threading.Lock()
        self._event_log = event_log

        if event_log is not None and event_log.count:
            self._replay(event_log)

    @property
    def event_log(self) -> Optional[EventLog]:
        return self._event_log

    @property
    def count(self) -> int:
        return len(self._records)

    def add(self, rental: RentalRequest) -> RentalRequest:
        """Store a new rental and log its initial timeline."""
        with self._registry_lock:
            if rental.rental_id in self._records:
                raise ValueError(f"Rental ID already exists: {rental.rental_id}")
            self._log_timeline(rental, start=0)
            stored = copy.deepcopy(rental)
            self._records[rental.rental_id] = stored
            self._rental_locks[rental.rental_id] = threading.Lock()
            self._index(stored)
        return copy.deepcopy(stored)

    def get(self, rental_id: str) -> RentalRequest:
        """Return a snapshot of a rental. Raises NotFound."""
        with self._registry_lock:
            record = self._records.get(rental_id)
            if record is None:
                raise NotFound(f"Rental not found: {rental_id}")
            return copy.deepcopy(record)

    def find_by_order(self, order_id: str) -> Optional[str]:
        """Rental ID carrying a payment provider order, if any."""
        with self._registry_lock:
            return self._by_order.get(order_id)

    def rentals(
        self,
        item_id: Optional[str] = None,
        statuses: Optional[Iterable[RentalStatus]] = None,
    ) -> list[RentalRequest]:
        wanted = set(statuses) if statuses is not None else None
        with self._registry_lock:
            return [
                copy.deepcopy(r) for r in self._records.values()
                if (item_id is None or r.item_id == item_id)
                and (wanted is None or r.status in wanted)
            ]

    def overlapping(
        self,
        item_id: str,
        start: date,
        end: date,
        statuses: Iterable[RentalStatus],
        exclude: Optional[str] = None,
    ) -> list[str]:
        """IDs of rentals of ``item_id`` in ``statuses`` whose dates overlap."""
        wanted = set(statuses)
        with self._registry_lock:
            clashes = []
            for record in self._records.values():
                if record.item_id != item_id or record.rental_id == exclude:
                    continue
                if record.status not in wanted:
                    continue
                other_start, other_end = record.occupied_dates
                if other_start < end and start < other_end:
                    clashes.append(record.rental_id)
            return clashes

    @contextmanager
    def item_lock(self, item_id: str) -> Iterator[None]:
        """Serialize date-claiming decisions on one item."""
        with self._registry_lock:
            lock = self._item_locks.setdefault(item_id, threading.Lock())
        with lock:
            yield

    def after_commit(self, rental_id: str, callback: Callable[[], None]) -> None:
        """Run ``callback`` when the open transaction on ``rental_id`` commits.

        Raises:
            Internal: no transaction is open on the rental.
        """
        hooks = self._hooks.get(rental_id)
        if hooks is None:
            raise Internal(f"No open transaction on rental {rental_id}")
        hooks.append(callback)

    @contextmanager
    def transaction(self, rental_id: str) -> Iterator[RentalRequest]:
        """Yield a working copy of a rental and commit it on clean exit."""
        with self._registry_lock:
            lock = self._rental_locks.get(rental_id)
        if lock is None:
            raise NotFound(f"Rental not found: {rental_id}")

        with lock:
            hooks: list[Callable[[], None]] = []
            self._hooks[rental_id] = hooks
            try:
                with self._registry_lock:
                    working = copy.deepcopy(self._records[rental_id])
                base_version = working.version
                timeline_len = len(working.timeline)

                yield working

                with self._registry_lock:
                    current = self._records[rental_id]
                    if working == current:
                        return
                    if current.version != base_version:
                        logger.critical(
                            "Lost update on rental %s: expected version %d, found %d",
                            rental_id, base_version, current.version,
                        )
                        raise Internal(f"Concurrent modification of rental {rental_id}")
                    if working.timeline[:timeline_len] != current.timeline:
                        raise Internal(f"Timeline of rental {rental_id} was rewritten")
                    working.version = base_version + 1
                    self._log_timeline(working, start=timeline_len)
                    self._records[rental_id] = copy.deepcopy(working)
                    self._index(working)

                for callback in hooks:
                    callback()
            finally:
                del self._hooks[rental_id]

    def _index(self, rental: RentalRequest) -> None:
        order_id = rental.payment.provider_order_id
        if order_id:
            self._by_order[order_id] = rental.rental_id

    def _log_timeline(self, rental: RentalRequest, start: int) -> None:
        if self._event_log is None:
            return
        records = []
        snapshot = rental.to_record()
        last = len(rental.timeline) - 1
        for index, entry in enumerate(rental.timeline[start:], start):
            payload = {
                "rental_id": rental.rental_id,
                "status": rental.status.value,
                "details": entry.details,
            }
            if index == last:
                payload["snapshot"] = snapshot
            records.append(EventRecord.create(
                event_id=f"{rental.rental_id}:{index}",
                event_kind=EventKind(entry.event),
                actor_id=entry.actor,
                payload=payload,
                timestamp_utc=entry.timestamp_utc,
            ))
        if not records:
            records.append(EventRecord.create(
                event_id=f"{rental.rental_id}:v{rental.version}",
                event_kind=EventKind.RENTAL_UPDATED,
                actor_id="system",
                payload={
                    "rental_id": rental.rental_id,
                    "status": rental.status.value,
                    "snapshot": snapshot,
                },
                timestamp_utc=rental.updated_utc,
            ))
        self._event_log.append_many(records)

    def _replay(self, event_log: EventLog) -> None:
        """Rebuild records from the snapshots in the log. Fail-closed."""
        for event in event_log.events():
            snapshot = event.payload.get("snapshot")
            if snapshot is None:
                continue
            rental = RentalRequest.from_record(snapshot)
            known = self._records.get(rental.rental_id)
            if known is not None and rental.version <= known.version:
                raise ValueError(
                    f"Out-of-order snapshot of rental {rental.rental_id} in {event.event_id}: "
                    f"version {rental.version} after {known.version}"
                )
            self._records[rental.rental_id] = rental
            self._rental_locks.setdefault(rental.rental_id, threading.Lock())
            self._index(rental)
        logger.info("Replayed %d rentals from the event log", len(self._records))
