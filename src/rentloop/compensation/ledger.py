"""Wallet ledger — double-entry store of escrowed and withdrawable funds.

Every call to ``post`` is one atomic posting. The entries of a posting sum
to exactly zero across all accounts, including the platform's own
(``platform:revenue``, ``platform:escrow``, ``platform:payouts``). Entries
are immutable; the only permitted change is promotion of a PENDING entry
to AVAILABLE.

Balances are derived. A running balance per user is cached for fast reads
and can always be checked against a full fold of the user's entries with
``reconcile``.

Fold rules (entries whose status is FAILED are ignored):
- ``rental_payment`` entries record the gateway charge for audit and do
  not draw on the wallet
- AVAILABLE entries sum into ``available``
- PENDING entries sum into ``pending``, or into ``locked`` while their
  rental is frozen by a dispute

Concurrency: one re-entrant lock serializes posts, promotions and reads.
Callers that need check-then-post (payouts) hold ``locked()`` around both.
Lock order across the engine is always rental lock first, ledger second.

Idempotency: a posting may carry a ``key`` naming the business event it
settles (``<rental_id>:payment_captured``). Posting the same key again
returns the committed posting instead of writing a second set of entries,
so an operation retried after a failed rental commit settles exactly once.

Durability (optional): each committed posting is appended to a JSONL
journal. On construction the journal is replayed, fail-closed: duplicate
transaction IDs, duplicate keys or an unbalanced posting abort the load.
"""

from __future__ import annotations

import json
import logging
import threading
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Iterator, Optional, Sequence
from uuid import uuid4

from rentloop.errors import LedgerInvariantError, LedgerRejected, NotFound
from rentloop.models.compensation import ZERO, quantize_money
from rentloop.models.ledger import (
    Availability,
    Posting,
    TransactionIntent,
    TransactionStatus,
    TransactionType,
    WalletBalance,
    WalletTransaction,
)

logger = logging.getLogger(__name__)


@dataclass
class _RunningBalance:
    available: Decimal = ZERO
    # PENDING amounts keyed by related rental (None for unrelated entries)
    pending_by_rental: dict[Optional[str], Decimal] = field(
        default_factory=lambda: defaultdict(lambda: ZERO),
    )


def _counts_toward_balance(entry: WalletTransaction) -> bool:
    return (
        entry.status != TransactionStatus.FAILED
        and entry.type != TransactionType.RENTAL_PAYMENT
    )


class LedgerStore:
    """Append-only wallet ledger with optional JSONL journal.

    Usage:
        ledger = LedgerStore()
        posting = ledger.post([
            TransactionIntent("renter", TransactionType.RENTAL_PAYMENT, ...),
            TransactionIntent("owner", TransactionType.RENTAL_INCOME, ...),
            ...
        ])
        balance = ledger.balance("owner")
    """

    def __init__(
        self,
        storage_path: Optional[Path] = None,
        currency: str = "EGP",
    ) -> None:
        self._lock = threading.RLock()
        self._entries: dict[str, WalletTransaction] = {}
        self._postings: dict[str, Posting] = {}
        self._keys: dict[str, str] = {}
        self._running: dict[str, _RunningBalance] = defaultdict(_RunningBalance)
        self._frozen: set[str] = set()
        self._currency = currency
        self._storage_path = storage_path

        if storage_path and storage_path.exists():
            self._load_from_file(storage_path)

    # ------------------------------------------------------------------
    # Locking
    # ------------------------------------------------------------------

    @contextmanager
    def locked(self) -> Iterator[LedgerStore]:
        """Hold the ledger lock across a read and a post."""
        with self._lock:
            yield self

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def post(
        self,
        intents: Sequence[TransactionIntent],
        promote: Sequence[str] = (),
        now: Optional[datetime] = None,
        key: Optional[str] = None,
    ) -> Posting:
        """Atomically commit a balanced set of entries.

        Args:
            intents: Entries to create. Must sum to zero.
            promote: Transaction IDs to move PENDING → AVAILABLE in the
                same commit.
            now: Timestamp for the new entries (defaults to UTC now).
            key: Idempotency key. If a posting with this key exists it is
                returned unchanged.

        Returns:
            The committed Posting.

        Raises:
            LedgerRejected: malformed intents or an invalid promotion.
            LedgerInvariantError: the intents do not sum to zero, or ``key``
                was already used for different entries.
        """
        if not intents:
            raise LedgerRejected("A posting needs at least one entry")
        self._validate_intents(intents)

        total = sum((i.amount for i in intents), ZERO)
        if total != ZERO:
            logger.critical(
                "Unbalanced posting rejected: entries sum to %s (%s)",
                total, ", ".join(f"{i.user_id}:{i.type.value}:{i.amount}" for i in intents),
            )
            raise LedgerInvariantError(f"Posting entries sum to {total}, not 0")

        if now is None:
            now = datetime.now(timezone.utc)
        posting_id = f"post_{uuid4().hex[:12]}"

        with self._lock:
            if key is not None and key in self._keys:
                return self._replayed(key, intents)
            self._validate_promotions(promote)
            entries = tuple(
                WalletTransaction(
                    transaction_id=f"txn_{uuid4().hex[:12]}",
                    posting_id=posting_id,
                    user_id=i.user_id,
                    type=i.type,
                    amount=i.amount,
                    currency=i.currency,
                    availability=i.availability,
                    status=i.status,
                    created_utc=now,
                    related_rental_id=i.related_rental_id,
                    description=i.description,
                )
                for i in intents
            )
            posting = Posting(
                posting_id=posting_id,
                entries=entries,
                promoted_ids=tuple(promote),
                key=key,
            )
            self._commit(posting)
        logger.info(
            "Posted %s: %d entries, %d promotions",
            posting_id, len(posting.entries), len(posting.promoted_ids),
        )
        return posting

    def promote(self, transaction_id: str) -> WalletTransaction:
        """Move one PENDING entry to AVAILABLE.

        Promoting an entry that is already AVAILABLE is a no-op.
        """
        with self._lock:
            entry = self._entries.get(transaction_id)
            if entry is None:
                raise NotFound(f"Transaction not found: {transaction_id}")
            if entry.availability == Availability.AVAILABLE:
                return entry
            self._validate_promotions([transaction_id])
            posting = Posting(
                posting_id=f"post_{uuid4().hex[:12]}",
                entries=(),
                promoted_ids=(transaction_id,),
            )
            self._commit(posting)
            return self._entries[transaction_id]

    def freeze(self, rental_id: str) -> None:
        """Lock a rental's PENDING funds while it is under dispute."""
        with self._lock:
            self._frozen.add(rental_id)
        logger.info("Froze escrowed funds of rental %s", rental_id)

    def unfreeze(self, rental_id: str) -> None:
        with self._lock:
            self._frozen.discard(rental_id)
        logger.info("Unfroze escrowed funds of rental %s", rental_id)

    def is_frozen(self, rental_id: str) -> bool:
        with self._lock:
            return rental_id in self._frozen

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def balance(self, user_id: str) -> WalletBalance:
        """Return the cached balance of a user."""
        with self._lock:
            running = self._running.get(user_id, _RunningBalance())
            pending = ZERO
            locked = ZERO
            for rental_id, amount in running.pending_by_rental.items():
                if rental_id is not None and rental_id in self._frozen:
                    locked += amount
                else:
                    pending += amount
            return WalletBalance(
                user_id=user_id,
                available=running.available,
                pending=pending,
                locked=locked,
                currency=self._currency,
            )

    def folded_balance(self, user_id: str) -> WalletBalance:
        """Recompute a user's balance from their entries alone."""
        with self._lock:
            available = pending = locked = ZERO
            for entry in self._entries.values():
                if entry.user_id != user_id or not _counts_toward_balance(entry):
                    continue
                if entry.availability == Availability.AVAILABLE:
                    available += entry.amount
                elif entry.related_rental_id in self._frozen:
                    locked += entry.amount
                else:
                    pending += entry.amount
            return WalletBalance(
                user_id=user_id,
                available=available,
                pending=pending,
                locked=locked,
                currency=self._currency,
            )

    def reconcile(self, user_id: str) -> WalletBalance:
        """Check the cached balance against the fold.

        Raises:
            LedgerInvariantError: the two disagree.
        """
        with self._lock:
            cached = self.balance(user_id)
            folded = self.folded_balance(user_id)
        if cached != folded:
            logger.critical(
                "Balance drift for %s: cached %s, folded %s",
                user_id, cached.to_dict(), folded.to_dict(),
            )
            raise LedgerInvariantError(f"Cached balance of {user_id} drifted from ledger")
        return folded

    def verify(self) -> list[str]:
        """Audit the whole ledger. Returns problems (empty = OK)."""
        problems: list[str] = []
        with self._lock:
            for posting in self._postings.values():
                total = sum((e.amount for e in posting.entries), ZERO)
                if total != ZERO:
                    problems.append(f"Posting {posting.posting_id} sums to {total}")
            for user_id in self.users():
                try:
                    self.reconcile(user_id)
                except LedgerInvariantError as e:
                    problems.append(e.message)
        return problems

    def get(self, transaction_id: str) -> Optional[WalletTransaction]:
        with self._lock:
            return self._entries.get(transaction_id)

    def transactions(
        self,
        user_id: Optional[str] = None,
        rental_id: Optional[str] = None,
    ) -> list[WalletTransaction]:
        """Entries in commit order, optionally filtered."""
        with self._lock:
            return [
                e for e in self._entries.values()
                if (user_id is None or e.user_id == user_id)
                and (rental_id is None or e.related_rental_id == rental_id)
            ]

    def posting_for_key(self, key: str) -> Optional[Posting]:
        with self._lock:
            posting_id = self._keys.get(key)
            return self._postings[posting_id] if posting_id is not None else None

    def postings(self) -> list[Posting]:
        with self._lock:
            return list(self._postings.values())

    def users(self) -> list[str]:
        with self._lock:
            return sorted({e.user_id for e in self._entries.values()})

    @property
    def count(self) -> int:
        return len(self._entries)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    def _validate_intents(intents: Sequence[TransactionIntent]) -> None:
        currencies = {i.currency for i in intents}
        if len(currencies) > 1:
            raise LedgerRejected(f"Mixed currencies in one posting: {sorted(currencies)}")
        for intent in intents:
            if not intent.user_id:
                raise LedgerRejected("Ledger entry has no user")
            if not isinstance(intent.availability, Availability):
                raise LedgerRejected(f"Unknown availability: {intent.availability!r}")
            if not isinstance(intent.type, TransactionType):
                raise LedgerRejected(f"Unknown transaction type: {intent.type!r}")
            if not isinstance(intent.amount, Decimal):
                raise LedgerRejected(
                    f"Ledger amounts must be Decimal, got {type(intent.amount).__name__}"
                )
            if not intent.amount.is_finite() or intent.amount != quantize_money(intent.amount):
                raise LedgerRejected(f"Amount {intent.amount} is not in minor units")

    def _validate_promotions(self, promote: Sequence[str]) -> None:
        for transaction_id in promote:
            entry = self._entries.get(transaction_id)
            if entry is None:
                raise LedgerRejected(f"Cannot promote unknown transaction: {transaction_id}")
            if entry.related_rental_id in self._frozen:
                raise LedgerRejected(
                    f"Cannot promote {transaction_id}: rental "
                    f"{entry.related_rental_id} is frozen by a dispute"
                )
            if entry.status == TransactionStatus.FAILED:
                raise LedgerRejected(f"Cannot promote failed transaction: {transaction_id}")

    def _replayed(self, key: str, intents: Sequence[TransactionIntent]) -> Posting:
        """The posting already committed under ``key``. Caller holds the lock."""
        posting = self._postings[self._keys[key]]
        committed = sorted(
            (e.user_id, e.type.value, e.amount, e.availability.value) for e in posting.entries
        )
        requested = sorted(
            (i.user_id, i.type.value, i.amount, i.availability.value) for i in intents
        )
        if committed != requested:
            logger.critical(
                "Posting key %s reused with different entries (committed as %s)",
                key, posting.posting_id,
            )
            raise LedgerInvariantError(f"Posting key {key} was already used for other entries")
        logger.warning("Posting key %s already committed as %s", key, posting.posting_id)
        return posting

    def _commit(self, posting: Posting) -> None:
        """Journal first, then apply. Caller holds the lock."""
        if self._storage_path:
            self._append_to_file(posting)
        self._apply(posting)

    def _apply(self, posting: Posting) -> None:
        for entry in posting.entries:
            self._entries[entry.transaction_id] = entry
            if not _counts_toward_balance(entry):
                continue
            running = self._running[entry.user_id]
            if entry.availability == Availability.AVAILABLE:
                running.available += entry.amount
            else:
                running.pending_by_rental[entry.related_rental_id] += entry.amount
        for transaction_id in posting.promoted_ids:
            entry = self._entries[transaction_id]
            if entry.availability == Availability.AVAILABLE:
                continue
            self._entries[transaction_id] = entry.promoted()
            if _counts_toward_balance(entry):
                running = self._running[entry.user_id]
                running.pending_by_rental[entry.related_rental_id] -= entry.amount
                running.available += entry.amount
        self._postings[posting.posting_id] = posting
        if posting.key is not None:
            self._keys[posting.key] = posting.posting_id

    def _append_to_file(self, posting: Posting) -> None:
        record = {
            "posting_id": posting.posting_id,
            "entries": [e.to_dict() for e in posting.entries],
            "promoted_ids": list(posting.promoted_ids),
            "key": posting.key,
        }
        with self._storage_path.open("a", encoding="utf-8") as f:
            f.write(json.dumps(record, sort_keys=True, ensure_ascii=False) + "\n")

    def _load_from_file(self, path: Path) -> None:
        """Replay the journal. Fail-closed on duplicates or imbalance."""
        with path.open("r", encoding="utf-8") as f:
            for line_num, line in enumerate(f, 1):
                line = line.strip()
                if not line:
                    continue
                data = json.loads(line)
                entries = tuple(WalletTransaction.from_dict(e) for e in data["entries"])

                for entry in entries:
                    if entry.transaction_id in self._entries:
                        raise LedgerInvariantError(
                            f"Duplicate transaction ID on recovery (line {line_num}): "
                            f"{entry.transaction_id}"
                        )
                key = data.get("key")
                if key is not None and key in self._keys:
                    raise LedgerInvariantError(
                        f"Duplicate posting key on recovery (line {line_num}): {key}"
                    )
                total = sum((e.amount for e in entries), ZERO)
                if total != ZERO:
                    raise LedgerInvariantError(
                        f"Unbalanced posting on recovery (line {line_num}): "
                        f"{data['posting_id']} sums to {total}"
                    )
                for transaction_id in data["promoted_ids"]:
                    if transaction_id not in self._entries and not any(
                        e.transaction_id == transaction_id for e in entries
                    ):
                        raise LedgerInvariantError(
                            f"Promotion of unknown transaction on recovery "
                            f"(line {line_num}): {transaction_id}"
                        )

                self._apply(Posting(
                    posting_id=data["posting_id"],
                    entries=entries,
                    promoted_ids=tuple(data["promoted_ids"]),
                    key=key,
                ))
