"""Core data models for rentloop."""

from rentloop.models.compensation import (
    CommissionResult,
    CommissionTier,
    PricingSnapshot,
    SettlementSummary,
)
from rentloop.models.ledger import (
    Availability,
    Posting,
    TransactionIntent,
    TransactionStatus,
    TransactionType,
    WalletBalance,
    WalletTransaction,
)
from rentloop.models.rental import (
    DamageReport,
    Dispute,
    DisputeStatus,
    Item,
    PartyRole,
    PaymentStatus,
    RentalRequest,
    RentalStatus,
    TimelineEntry,
)

__all__ = [
    "Availability",
    "CommissionResult",
    "CommissionTier",
    "DamageReport",
    "Dispute",
    "DisputeStatus",
    "Item",
    "PartyRole",
    "PaymentStatus",
    "Posting",
    "PricingSnapshot",
    "RentalRequest",
    "RentalStatus",
    "SettlementSummary",
    "TimelineEntry",
    "TransactionIntent",
    "TransactionStatus",
    "TransactionType",
    "WalletBalance",
    "WalletTransaction",
]
