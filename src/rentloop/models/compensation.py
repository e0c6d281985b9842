"""Compensation models — commission tiers, pricing snapshots, settlements.

All monetary values use Decimal for exact arithmetic. No floats in finance.
Amounts are quantized to the minor currency unit with ROUND_HALF_UP, once,
at the final figure.

Invariants enforced by these models:
- PricingSnapshot.total is always derived, never stored or accepted as input
- subtotal - commission_amount + delivery_fee == owner_payout
- A settlement accounts for every unit the renter paid
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Any


MINOR_UNIT = Decimal("0.01")
ZERO = Decimal("0")


def quantize_money(amount: Decimal) -> Decimal:
    """Round to the minor currency unit, half-up."""
    return amount.quantize(MINOR_UNIT, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class CommissionTier:
    """A commission rate bracket selected by completed-rental count."""
    name: str
    min_rentals: int
    commission_rate: Decimal
    description: str = ""


@dataclass(frozen=True)
class CommissionResult:
    """Outcome of a commission computation.

    Invariant: commission_amount + owner_payout == amount
    """
    tier: str
    rate: Decimal
    amount: Decimal
    commission_amount: Decimal
    owner_payout: Decimal


@dataclass(frozen=True)
class PricingSnapshot:
    """Immutable pricing computed once, at request time.

    Re-pricing requires a new rental request. ``owner_payout`` is the single
    source of truth for what the owner is owed out of the rental price;
    both the escrowed income entry and the completion figures derive from
    it.
    """
    daily_rate: Decimal
    total_days: int
    subtotal: Decimal
    platform_fee: Decimal
    security_deposit: Decimal
    delivery_fee: Decimal
    currency: str
    commission_tier: str
    commission_rate: Decimal
    commission_amount: Decimal
    owner_payout: Decimal

    @property
    def total(self) -> Decimal:
        return (
            self.subtotal
            + self.platform_fee
            + self.delivery_fee
            + self.security_deposit
        )

    @property
    def platform_take(self) -> Decimal:
        """Renter-side service fee plus owner-side commission."""
        return self.platform_fee + self.commission_amount

    def to_dict(self) -> dict[str, str | int]:
        return {
            "daily_rate": str(self.daily_rate),
            "total_days": self.total_days,
            "subtotal": str(self.subtotal),
            "platform_fee": str(self.platform_fee),
            "security_deposit": str(self.security_deposit),
            "delivery_fee": str(self.delivery_fee),
            "total": str(self.total),
            "currency": self.currency,
            "commission_tier": self.commission_tier,
            "commission_rate": str(self.commission_rate),
            "commission_amount": str(self.commission_amount),
            "owner_payout": str(self.owner_payout),
        }

    @staticmethod
    def from_dict(data: dict[str, Any]) -> PricingSnapshot:
        return PricingSnapshot(
            daily_rate=Decimal(data["daily_rate"]),
            total_days=int(data["total_days"]),
            subtotal=Decimal(data["subtotal"]),
            platform_fee=Decimal(data["platform_fee"]),
            security_deposit=Decimal(data["security_deposit"]),
            delivery_fee=Decimal(data["delivery_fee"]),
            currency=data["currency"],
            commission_tier=data["commission_tier"],
            commission_rate=Decimal(data["commission_rate"]),
            commission_amount=Decimal(data["commission_amount"]),
            owner_payout=Decimal(data["owner_payout"]),
        )


@dataclass(frozen=True)
class SettlementSummary:
    """Where every unit of a completed rental's payment ended up.

    Invariant:
        owner_payout + platform_take + deposit_refund + damage_deduction
        == total_paid
    """
    total_paid: Decimal
    owner_payout: Decimal
    platform_take: Decimal
    deposit_refund: Decimal
    damage_deduction: Decimal

    @property
    def balanced(self) -> bool:
        return (
            self.owner_payout
            + self.platform_take
            + self.deposit_refund
            + self.damage_deduction
        ) == self.total_paid
