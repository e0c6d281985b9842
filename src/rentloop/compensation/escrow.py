"""Escrow planner — turns rental milestones into balanced ledger postings.

The planner is pure: it reads a rental's pricing snapshot and returns the
entries the ledger should post. It never touches the ledger itself, so the
service can post the plan inside the rental's critical section.

Payment captured (100/day × 5, fee 10%, deposit 50, Bronze commission):
    renter            -600.00  rental_payment   AVAILABLE
    owner             +450.00  rental_income    PENDING
    platform:escrow    +50.00  deposit_hold     PENDING
    platform:revenue  +100.00  platform_fee     AVAILABLE  (fee 50 + commission 50)

Completion (damage d, deduction = min(d, deposit)):
    platform:escrow   -deposit            deposit_release
    renter            +deposit-deduction  deposit_refund        AVAILABLE
    owner             +deduction          damage_compensation   AVAILABLE
    + promotion of the owner's rental_income entry

Dispute resolution (refund r, compensation c, bounded by the total paid):
    renter            +r                       dispute_refund        AVAILABLE
    owner             +c                       dispute_compensation  AVAILABLE
    owner             -owner_payout            escrow_reversal       PENDING
    platform:escrow   -deposit                 deposit_release       PENDING
    platform:revenue  owner_payout+deposit-r-c platform_adjustment   AVAILABLE
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from rentloop.errors import InvalidArgument, InvalidState, LedgerInvariantError
from rentloop.models.compensation import ZERO, SettlementSummary, quantize_money
from rentloop.models.ledger import (
    PLATFORM_ESCROW,
    PLATFORM_PAYOUTS,
    PLATFORM_REVENUE,
    Availability,
    TransactionIntent,
    TransactionStatus,
    TransactionType,
)
from rentloop.models.rental import RentalRequest


@dataclass(frozen=True)
class PlannedPosting:
    """Entries and promotions to post in one ledger commit."""
    intents: tuple[TransactionIntent, ...]
    promote: tuple[str, ...] = ()
    summary: Optional[SettlementSummary] = None


def _check_amount(label: str, amount: Decimal) -> Decimal:
    if not isinstance(amount, Decimal):
        raise InvalidArgument(f"{label} must be a Decimal")
    if not amount.is_finite() or amount < ZERO:
        raise InvalidArgument(f"{label} cannot be negative")
    if amount != quantize_money(amount):
        raise InvalidArgument(f"{label} has more precision than the currency allows")
    return amount


class EscrowPlanner:
    """Builds ledger postings from a rental's frozen pricing snapshot.

    Usage:
        planner = EscrowPlanner()
        plan = planner.payment_captured(rental)
        posting = ledger.post(plan.intents, plan.promote)
    """

    def payment_captured(self, rental: RentalRequest) -> PlannedPosting:
        """Entries for a confirmed gateway charge of the rental total."""
        p = rental.pricing
        rid = rental.rental_id
        return PlannedPosting(intents=(
            TransactionIntent(
                user_id=rental.renter_id,
                type=TransactionType.RENTAL_PAYMENT,
                amount=-p.total,
                currency=p.currency,
                availability=Availability.AVAILABLE,
                related_rental_id=rid,
                description=f"Payment for rental {rid}",
            ),
            TransactionIntent(
                user_id=rental.owner_id,
                type=TransactionType.RENTAL_INCOME,
                amount=p.owner_payout,
                currency=p.currency,
                availability=Availability.PENDING,
                related_rental_id=rid,
                description=f"Escrowed income for rental {rid}",
            ),
            TransactionIntent(
                user_id=PLATFORM_ESCROW,
                type=TransactionType.DEPOSIT_HOLD,
                amount=p.security_deposit,
                currency=p.currency,
                availability=Availability.PENDING,
                related_rental_id=rid,
                description=f"Security deposit held for rental {rid}",
            ),
            TransactionIntent(
                user_id=PLATFORM_REVENUE,
                type=TransactionType.PLATFORM_FEE,
                amount=p.platform_take,
                currency=p.currency,
                availability=Availability.AVAILABLE,
                related_rental_id=rid,
                description=(
                    f"Service fee {p.platform_fee} + {p.commission_tier} "
                    f"commission {p.commission_amount}"
                ),
            ),
        ))

    def completion(
        self,
        rental: RentalRequest,
        damage_amount: Decimal = ZERO,
    ) -> PlannedPosting:
        """Entries that settle a rental both parties have closed out.

        Args:
            rental: The active rental being completed.
            damage_amount: Damage claimed by the owner. Only the part
                covered by the deposit is deducted.

        Returns:
            The plan, including the owner income promotion and a
            balanced SettlementSummary.
        """
        _check_amount("Damage amount", damage_amount)
        income_id = rental.payment.owner_income_transaction_id
        if income_id is None:
            raise InvalidState(f"Rental {rental.rental_id} has no escrowed income to release")

        p = rental.pricing
        rid = rental.rental_id
        deduction = min(damage_amount, p.security_deposit)
        refund = max(p.security_deposit - deduction, ZERO)

        intents = [
            TransactionIntent(
                user_id=PLATFORM_ESCROW,
                type=TransactionType.DEPOSIT_RELEASE,
                amount=-p.security_deposit,
                currency=p.currency,
                availability=Availability.PENDING,
                related_rental_id=rid,
                description=f"Security deposit released for rental {rid}",
            ),
        ]
        if refund > ZERO:
            intents.append(TransactionIntent(
                user_id=rental.renter_id,
                type=TransactionType.DEPOSIT_REFUND,
                amount=refund,
                currency=p.currency,
                availability=Availability.AVAILABLE,
                related_rental_id=rid,
                description=f"Deposit refund for rental {rid}",
            ))
        if deduction > ZERO:
            intents.append(TransactionIntent(
                user_id=rental.owner_id,
                type=TransactionType.DAMAGE_COMPENSATION,
                amount=deduction,
                currency=p.currency,
                availability=Availability.AVAILABLE,
                related_rental_id=rid,
                description=f"Damage deduction from deposit of rental {rid}",
            ))

        summary = SettlementSummary(
            total_paid=p.total,
            owner_payout=p.owner_payout,
            platform_take=p.platform_take,
            deposit_refund=refund,
            damage_deduction=deduction,
        )
        if not summary.balanced:
            raise LedgerInvariantError(
                f"Settlement of rental {rid} does not account for the "
                f"{p.total} paid: {summary}"
            )
        return PlannedPosting(
            intents=tuple(intents),
            promote=(income_id,),
            summary=summary,
        )

    def dispute_resolution(
        self,
        rental: RentalRequest,
        refund_amount: Decimal,
        owner_compensation: Decimal,
    ) -> PlannedPosting:
        """Entries that unwind escrow according to a moderator decision.

        Raises:
            InvalidArgument: negative amounts, or a sum above the total
                the renter paid. Checked before anything is posted.
        """
        _check_amount("Refund amount", refund_amount)
        _check_amount("Owner compensation", owner_compensation)
        p = rental.pricing
        rid = rental.rental_id
        if refund_amount + owner_compensation > p.total:
            raise InvalidArgument(
                f"Refund {refund_amount} + compensation {owner_compensation} "
                f"exceeds the {p.total} held for rental {rid}"
            )

        adjustment = p.owner_payout + p.security_deposit - refund_amount - owner_compensation
        return PlannedPosting(intents=(
            TransactionIntent(
                user_id=rental.renter_id,
                type=TransactionType.DISPUTE_REFUND,
                amount=refund_amount,
                currency=p.currency,
                availability=Availability.AVAILABLE,
                related_rental_id=rid,
                description=f"Dispute refund for rental {rid}",
            ),
            TransactionIntent(
                user_id=rental.owner_id,
                type=TransactionType.DISPUTE_COMPENSATION,
                amount=owner_compensation,
                currency=p.currency,
                availability=Availability.AVAILABLE,
                related_rental_id=rid,
                description=f"Dispute compensation for rental {rid}",
            ),
            TransactionIntent(
                user_id=rental.owner_id,
                type=TransactionType.ESCROW_REVERSAL,
                amount=-p.owner_payout,
                currency=p.currency,
                availability=Availability.PENDING,
                related_rental_id=rid,
                description=f"Escrowed income reversed by dispute on rental {rid}",
            ),
            TransactionIntent(
                user_id=PLATFORM_ESCROW,
                type=TransactionType.DEPOSIT_RELEASE,
                amount=-p.security_deposit,
                currency=p.currency,
                availability=Availability.PENDING,
                related_rental_id=rid,
                description=f"Security deposit released by dispute on rental {rid}",
            ),
            TransactionIntent(
                user_id=PLATFORM_REVENUE,
                type=TransactionType.PLATFORM_ADJUSTMENT,
                amount=adjustment,
                currency=p.currency,
                availability=Availability.AVAILABLE,
                related_rental_id=rid,
                description=f"Dispute settlement adjustment for rental {rid}",
            ),
        ))

    def payout(self, user_id: str, amount: Decimal, currency: str) -> PlannedPosting:
        """Entries for a withdrawal request awaiting the payout run."""
        _check_amount("Payout amount", amount)
        return PlannedPosting(intents=(
            TransactionIntent(
                user_id=user_id,
                type=TransactionType.WITHDRAWAL_REQUEST,
                amount=-amount,
                currency=currency,
                availability=Availability.AVAILABLE,
                status=TransactionStatus.PENDING,
                description="Withdrawal request",
            ),
            TransactionIntent(
                user_id=PLATFORM_PAYOUTS,
                type=TransactionType.PAYOUT_CLEARING,
                amount=amount,
                currency=currency,
                availability=Availability.AVAILABLE,
                status=TransactionStatus.PENDING,
                description=f"Payout owed to {user_id}",
            ),
        ))
