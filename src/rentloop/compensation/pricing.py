"""Pricing quote — the immutable snapshot taken when a rental is requested.

    total_days    = ceil((end - start) / 1 day), at least 1
    subtotal      = bundled rate × days (monthly, weekly or daily)
    platform_fee  = round_half_up(subtotal × platform_fee_rate)   renter side
    commission    = tier rate on the subtotal                     owner side
    owner_payout  = subtotal - commission + delivery_fee
    total         = subtotal + platform_fee + delivery_fee + security_deposit

The snapshot never changes after the request is created. Re-pricing
requires a new request.
"""

from __future__ import annotations

import math
from datetime import date, datetime
from decimal import Decimal
from typing import Union

from rentloop.compensation.engine import CommissionEngine
from rentloop.errors import InvalidArgument
from rentloop.models.compensation import ZERO, PricingSnapshot, quantize_money
from rentloop.models.rental import Item
from rentloop.policy.resolver import PolicyResolver


WEEK_DAYS = 7
MONTH_DAYS = 30


def rental_days(start: Union[date, datetime], end: Union[date, datetime]) -> int:
    """Number of billable days between two points. Partial days round up."""
    if end <= start:
        raise InvalidArgument("Rental end must be after its start")
    seconds = (end - start).total_seconds()
    return max(1, math.ceil(seconds / 86400))


def rental_subtotal(item: Item, days: int) -> Decimal:
    """Price ``days`` of rental using the item's bundled rates.

    Monthly and weekly rates cover whole blocks; the remainder is charged
    at the next smaller rate.
    """
    remaining = days
    subtotal = ZERO
    if item.monthly_rate is not None and remaining >= MONTH_DAYS:
        months, remaining = divmod(remaining, MONTH_DAYS)
        subtotal += item.monthly_rate * months
    if item.weekly_rate is not None and remaining >= WEEK_DAYS:
        weeks, remaining = divmod(remaining, WEEK_DAYS)
        subtotal += item.weekly_rate * weeks
    subtotal += item.daily_rate * remaining
    return quantize_money(subtotal)


def quote(
    item: Item,
    start: Union[date, datetime],
    end: Union[date, datetime],
    delivery: bool,
    owner_completed_rentals: int,
    policy: PolicyResolver,
) -> PricingSnapshot:
    """Compute the pricing snapshot for a rental request.

    Args:
        item: The listed item being rented.
        start: Requested start (date or datetime).
        end: Requested end, strictly after ``start``.
        delivery: Whether the owner delivers the item.
        owner_completed_rentals: Owner's completed rentals, for the tier.
        policy: Marketplace policy (fee rate, tiers, currency).

    Returns:
        A frozen PricingSnapshot.
    """
    for label, amount in (
        ("daily_rate", item.daily_rate),
        ("security_deposit", item.security_deposit),
        ("delivery_fee", item.delivery_fee),
    ):
        if not isinstance(amount, Decimal):
            raise InvalidArgument(f"Item {label} must be a Decimal")
        if amount < ZERO:
            raise InvalidArgument(f"Item {label} cannot be negative")

    days = rental_days(start, end)
    subtotal = rental_subtotal(item, days)
    platform_fee = quantize_money(subtotal * policy.platform_fee_rate())
    delivery_fee = quantize_money(item.delivery_fee) if delivery else ZERO
    commission = CommissionEngine(policy.commission_tiers()).calculate(
        subtotal, owner_completed_rentals,
    )

    return PricingSnapshot(
        daily_rate=item.daily_rate,
        total_days=days,
        subtotal=subtotal,
        platform_fee=platform_fee,
        security_deposit=quantize_money(item.security_deposit),
        delivery_fee=delivery_fee,
        currency=item.currency or policy.currency(),
        commission_tier=commission.tier,
        commission_rate=commission.rate,
        commission_amount=commission.commission_amount,
        owner_payout=commission.owner_payout + delivery_fee,
    )
