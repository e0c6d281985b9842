"""Dispute handler — freezes escrow on a complaint and settles it on review.

Raising a dispute moves an AWAITING_HANDOVER or ACTIVE rental to DISPUTED
and freezes its escrowed funds: they are reported as ``locked`` and cannot
be promoted. A moderator then resolves the dispute by splitting, at most,
the total the renter paid between a refund and owner compensation.

Resolution outcome:
- owner_compensation > 0 → COMPLETED
- otherwise              → CANCELLED

Both operations mutate a working copy of the rental and must run while the
caller holds the rental lock. The caller freezes the escrow once a raised
dispute commits and unfreezes it once a resolution commits, so a rolled
back rental never leaves the ledger frozen. The bound on a resolution is
checked before anything is posted; a refused resolution leaves the ledger
untouched. The resolution posting is keyed by rental, so a retry after a
failed commit reuses it.
"""

from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal
from typing import Iterable

from rentloop.compensation.escrow import EscrowPlanner
from rentloop.compensation.ledger import LedgerStore
from rentloop.engine.state_machine import RentalStateMachine
from rentloop.errors import AlreadyDone, InvalidArgument, InvalidState, PermissionDenied
from rentloop.models.compensation import ZERO
from rentloop.models.ledger import Posting
from rentloop.models.rental import (
    Dispute,
    DisputeResolution,
    DisputeStatus,
    RentalRequest,
    RentalStatus,
)

logger = logging.getLogger(__name__)

DISPUTABLE_STATES = frozenset({RentalStatus.AWAITING_HANDOVER, RentalStatus.ACTIVE})


class DisputeHandler:
    """Raises and resolves rental disputes against the wallet ledger.

    Usage:
        handler = DisputeHandler(ledger, EscrowPlanner(), moderators={"mod-1"})
        with rentals.transaction(rental_id) as rental:
            handler.raise_dispute(rental, "renter-1", "Item broken", [], now)
            rentals.after_commit(rental_id, lambda: ledger.freeze(rental_id))
    """

    def __init__(
        self,
        ledger: LedgerStore,
        planner: EscrowPlanner,
        moderators: Iterable[str],
    ) -> None:
        self._ledger = ledger
        self._planner = planner
        self._moderators = frozenset(moderators)

    def is_moderator(self, actor_id: str) -> bool:
        return actor_id in self._moderators

    def raise_dispute(
        self,
        rental: RentalRequest,
        raised_by: str,
        reason: str,
        evidence: Iterable[str],
        now: datetime,
    ) -> Dispute:
        """Open a dispute. The caller freezes the escrow after commit."""
        role = rental.role_of(raised_by)
        if role is None:
            raise PermissionDenied(f"{raised_by} is not a party to rental {rental.rental_id}")
        if rental.dispute is not None and rental.dispute.status in (
            DisputeStatus.OPEN, DisputeStatus.INVESTIGATING,
        ):
            raise AlreadyDone(f"Rental {rental.rental_id} already has an open dispute")
        if rental.status not in DISPUTABLE_STATES:
            raise InvalidState(
                f"Rental {rental.rental_id} is {rental.status.value}; disputes "
                f"can only be raised on rentals awaiting handover or active"
            )
        if not reason or not reason.strip():
            raise InvalidArgument("A dispute needs a reason")

        RentalStateMachine.transition(rental, RentalStatus.DISPUTED)
        dispute = Dispute(
            rental_id=rental.rental_id,
            reported_by=raised_by,
            reported_against=rental.counterparty(raised_by),
            reporter_role=role,
            reason=reason.strip(),
            evidence=list(evidence),
            opened_utc=now,
        )
        rental.dispute = dispute
        rental.record("dispute_raised", raised_by, now, {
            "reason": dispute.reason,
            "reporter_role": role.value,
        })
        logger.info("Dispute raised on rental %s by %s", rental.rental_id, raised_by)
        return dispute

    def resolve(
        self,
        rental: RentalRequest,
        moderator_id: str,
        decision: str,
        refund_amount: Decimal,
        owner_compensation: Decimal,
        now: datetime,
    ) -> tuple[DisputeResolution, Posting]:
        """Settle a dispute and release the rental's escrow.

        Args:
            rental: Working copy of the disputed rental, under its lock.
            moderator_id: Caller; must hold the moderator capability.
            decision: Free-text ruling kept on the dispute record.
            refund_amount: Paid back to the renter.
            owner_compensation: Paid to the owner.
            now: Resolution time.

        Returns:
            The resolution and the ledger posting that settled it.
        """
        if not self.is_moderator(moderator_id):
            raise PermissionDenied(f"{moderator_id} cannot resolve disputes")
        dispute = rental.dispute
        if dispute is not None and dispute.status in (
            DisputeStatus.RESOLVED, DisputeStatus.CLOSED,
        ):
            raise AlreadyDone(f"Dispute on rental {rental.rental_id} is already resolved")
        if rental.status != RentalStatus.DISPUTED or dispute is None:
            raise InvalidState(f"Rental {rental.rental_id} is {rental.status.value}, not disputed")
        if not decision or not decision.strip():
            raise InvalidArgument("A resolution needs a decision")

        # Bound check happens in the planner, before anything is posted.
        plan = self._planner.dispute_resolution(rental, refund_amount, owner_compensation)
        posting = self._ledger.post(
            plan.intents, plan.promote, now=now, key=f"{rental.rental_id}:dispute_resolution",
        )

        target = RentalStatus.COMPLETED if owner_compensation > ZERO else RentalStatus.CANCELLED
        RentalStateMachine.transition(rental, target)
        resolution = DisputeResolution(
            decision=decision.strip(),
            refund_amount=refund_amount,
            owner_compensation=owner_compensation,
            resolved_by=moderator_id,
            resolved_utc=now,
        )
        dispute.status = DisputeStatus.RESOLVED
        dispute.resolution = resolution
        rental.actual_end = now
        rental.record("dispute_resolved", moderator_id, now, {
            "decision": resolution.decision,
            "refund_amount": str(refund_amount),
            "owner_compensation": str(owner_compensation),
            "outcome": target.value,
        })
        logger.info(
            "Dispute on rental %s resolved by %s: refund %s, compensation %s → %s",
            rental.rental_id, moderator_id, refund_amount, owner_compensation, target.value,
        )
        return resolution, posting
