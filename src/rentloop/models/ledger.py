"""Ledger models — wallet transactions, posting intents, derived balances.

A wallet transaction is one ledger entry. Entries are never edited; the
only permitted change is the one-way PENDING → AVAILABLE promotion of an
income entry. Balances are always recomputable by folding entries.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional


PLATFORM_REVENUE = "platform:revenue"
PLATFORM_ESCROW = "platform:escrow"
PLATFORM_PAYOUTS = "platform:payouts"


class TransactionType(str, enum.Enum):
    """Economic meaning of a ledger entry."""
    RENTAL_PAYMENT = "rental_payment"
    RENTAL_INCOME = "rental_income"
    PLATFORM_FEE = "platform_fee"
    DEPOSIT_HOLD = "deposit_hold"
    DEPOSIT_RELEASE = "deposit_release"
    DEPOSIT_REFUND = "deposit_refund"
    DAMAGE_COMPENSATION = "damage_compensation"
    DISPUTE_REFUND = "dispute_refund"
    DISPUTE_COMPENSATION = "dispute_compensation"
    ESCROW_REVERSAL = "escrow_reversal"
    PLATFORM_ADJUSTMENT = "platform_adjustment"
    WITHDRAWAL_REQUEST = "withdrawal_request"
    PAYOUT_CLEARING = "payout_clearing"


class Availability(str, enum.Enum):
    """Fund state of an entry: escrowed or withdrawable."""
    PENDING = "PENDING"
    AVAILABLE = "AVAILABLE"


class TransactionStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class TransactionIntent:
    """An entry the caller wants posted. Becomes a WalletTransaction."""
    user_id: str
    type: TransactionType
    amount: Decimal
    currency: str
    availability: Availability
    related_rental_id: Optional[str] = None
    status: TransactionStatus = TransactionStatus.COMPLETED
    description: str = ""


@dataclass(frozen=True)
class WalletTransaction:
    """A committed ledger entry."""
    transaction_id: str
    posting_id: str
    user_id: str
    type: TransactionType
    amount: Decimal
    currency: str
    availability: Availability
    status: TransactionStatus
    created_utc: datetime
    related_rental_id: Optional[str] = None
    description: str = ""

    def promoted(self) -> WalletTransaction:
        return replace(self, availability=Availability.AVAILABLE)

    def to_dict(self) -> dict[str, Any]:
        return {
            "transaction_id": self.transaction_id,
            "posting_id": self.posting_id,
            "user_id": self.user_id,
            "type": self.type.value,
            "amount": str(self.amount),
            "currency": self.currency,
            "availability": self.availability.value,
            "status": self.status.value,
            "created_utc": self.created_utc.isoformat(),
            "related_rental_id": self.related_rental_id,
            "description": self.description,
        }

    @staticmethod
    def from_dict(data: dict[str, Any]) -> WalletTransaction:
        return WalletTransaction(
            transaction_id=data["transaction_id"],
            posting_id=data["posting_id"],
            user_id=data["user_id"],
            type=TransactionType(data["type"]),
            amount=Decimal(data["amount"]),
            currency=data["currency"],
            availability=Availability(data["availability"]),
            status=TransactionStatus(data["status"]),
            created_utc=datetime.fromisoformat(data["created_utc"]),
            related_rental_id=data.get("related_rental_id"),
            description=data.get("description", ""),
        )


@dataclass(frozen=True)
class Posting:
    """One atomic ledger commit: entries plus promotions applied together."""
    posting_id: str
    entries: tuple[WalletTransaction, ...]
    promoted_ids: tuple[str, ...] = field(default_factory=tuple)
    # idempotency key; a key is committed at most once
    key: Optional[str] = None

    def entry_for(
        self, user_id: str, type: TransactionType,
    ) -> Optional[WalletTransaction]:
        for entry in self.entries:
            if entry.user_id == user_id and entry.type == type:
                return entry
        return None


@dataclass(frozen=True)
class WalletBalance:
    """Derived balance of one user. Never the sole source of truth."""
    user_id: str
    available: Decimal
    pending: Decimal
    locked: Decimal
    currency: str

    @property
    def total(self) -> Decimal:
        return self.available + self.pending + self.locked

    def to_dict(self) -> dict[str, str]:
        return {
            "user_id": self.user_id,
            "available": str(self.available),
            "pending": str(self.pending),
            "locked": str(self.locked),
            "total": str(self.total),
            "currency": self.currency,
        }
