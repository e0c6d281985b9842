"""Commission engine — resolves an owner's tier and splits an amount.

The commission rate is selected from an ordered tier table by the owner's
cumulative completed-rental count:

    tier = the tier with the highest min_rentals <= completed_rentals
    commission = round_half_up(amount × tier.commission_rate)
    owner_payout = amount - commission

Rounding is applied once, to the final commission amount. The owner's
share is the remainder, so commission + owner_payout == amount exactly,
however many times the computation is repeated.

Invariants:
- Tier lookup is monotonic: more completed rentals never raise the rate
- Equal thresholds resolve to the tier listed later (the higher tier)
- Pure and deterministic: no I/O, no clock, no side effects
"""

from __future__ import annotations

from decimal import Decimal
from typing import Sequence

from rentloop.errors import InvalidArgument
from rentloop.models.compensation import (
    ZERO,
    CommissionResult,
    CommissionTier,
    quantize_money,
)


DEFAULT_TIERS: tuple[CommissionTier, ...] = (
    CommissionTier("Bronze", 0, Decimal("0.10"), "Standard rate for new owners"),
    CommissionTier("Silver", 10, Decimal("0.08"), "Reduced rate for active owners"),
    CommissionTier("Gold", 50, Decimal("0.06"), "Premium rate for power owners"),
    CommissionTier("Platinum", 100, Decimal("0.05"), "Best rate for top owners"),
)


def validate_tier_table(tiers: Sequence[CommissionTier]) -> list[str]:
    """Check a tier table. Returns errors (empty = OK)."""
    errors: list[str] = []
    if not tiers:
        return ["Commission tier table is empty"]
    if min(t.min_rentals for t in tiers) != 0:
        errors.append("Commission tier table must start at min_rentals=0")
    for tier in tiers:
        if tier.min_rentals < 0:
            errors.append(f"Tier {tier.name}: min_rentals must be >= 0")
        if not (ZERO <= tier.commission_rate <= Decimal("1")):
            errors.append(f"Tier {tier.name}: commission_rate must be in [0, 1]")
    ordered = sorted(tiers, key=lambda t: t.min_rentals)
    for lower, higher in zip(ordered, ordered[1:]):
        if higher.commission_rate > lower.commission_rate:
            errors.append(
                f"Tier {higher.name} ({higher.commission_rate}) charges more "
                f"than {lower.name} ({lower.commission_rate}); rates must "
                f"not increase with completed rentals"
            )
    return errors


def resolve_tier(
    owner_completed_rentals: int,
    tier_table: Sequence[CommissionTier],
) -> CommissionTier:
    """Return the applicable tier for a completed-rental count."""
    if owner_completed_rentals < 0:
        raise InvalidArgument("Completed rental count cannot be negative")
    if not tier_table:
        raise InvalidArgument("Commission tier table is empty")

    selected = None
    # Stable sort: among equal thresholds the later-listed tier wins.
    for tier in sorted(tier_table, key=lambda t: t.min_rentals):
        if tier.min_rentals <= owner_completed_rentals:
            selected = tier
    if selected is None:
        raise InvalidArgument(
            f"No commission tier covers {owner_completed_rentals} completed rentals"
        )
    return selected


def calculate(
    amount: Decimal,
    owner_completed_rentals: int,
    tier_table: Sequence[CommissionTier] = DEFAULT_TIERS,
) -> CommissionResult:
    """Compute the commission and owner payout for a gross amount.

    Args:
        amount: Gross amount in currency units (a daily rate or a subtotal).
        owner_completed_rentals: The owner's cumulative completed rentals.
        tier_table: Ordered commission tiers.

    Returns:
        A frozen CommissionResult.
    """
    if not isinstance(amount, Decimal):
        raise InvalidArgument(f"Amount must be a Decimal, got {type(amount).__name__}")
    if amount < ZERO:
        raise InvalidArgument("Amount cannot be negative")

    tier = resolve_tier(owner_completed_rentals, tier_table)
    commission_amount = quantize_money(amount * tier.commission_rate)
    return CommissionResult(
        tier=tier.name,
        rate=tier.commission_rate,
        amount=amount,
        commission_amount=commission_amount,
        owner_payout=amount - commission_amount,
    )


class CommissionEngine:
    """Commission calculator bound to a configured tier table.

    Usage:
        engine = CommissionEngine(resolver.commission_tiers())
        result = engine.calculate(Decimal("500.00"), owner_completed_rentals=12)
    """

    def __init__(self, tier_table: Sequence[CommissionTier] = DEFAULT_TIERS) -> None:
        errors = validate_tier_table(tier_table)
        if errors:
            raise InvalidArgument("; ".join(errors))
        self._tiers = tuple(tier_table)

    @property
    def tiers(self) -> tuple[CommissionTier, ...]:
        return self._tiers

    def calculate(
        self, amount: Decimal, owner_completed_rentals: int,
    ) -> CommissionResult:
        return calculate(amount, owner_completed_rentals, self._tiers)
