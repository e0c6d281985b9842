"""Handover protocol — two-party confirmation of pickup and return.

Pickup: once paid, the rental waits in AWAITING_HANDOVER until BOTH the
renter and the owner confirm that the item changed hands. The second
confirmation activates the rental, exactly once.

Return: an ACTIVE rental completes once the owner confirms the item came
back (optionally reporting damage) and the renter confirms the exchange
too. Settlement of the deposit happens in the service, in the same
critical section as the second return confirmation.

Every function here mutates a working copy of the rental and must run
while the caller holds that rental's lock, so the flag write and the
activation it may trigger are never observed apart.

Repeat confirmations by the same party raise AlreadyDone, also after the
rental has moved on, so clients can tell "already happened" from
"not allowed".
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from rentloop.engine.state_machine import RentalStateMachine
from rentloop.errors import AlreadyDone, InvalidArgument, InvalidState, PermissionDenied
from rentloop.models.compensation import ZERO
from rentloop.models.rental import DamageReport, PartyRole, RentalRequest, RentalStatus


@dataclass(frozen=True)
class HandoverOutcome:
    activated: bool
    renter_confirmed: bool
    owner_confirmed: bool


@dataclass(frozen=True)
class ReturnOutcome:
    item_received: bool
    item_returned: bool

    @property
    def ready_to_complete(self) -> bool:
        return self.item_received and self.item_returned


def _require_party(rental: RentalRequest, actor_id: str, role: PartyRole) -> None:
    expected = rental.owner_id if role == PartyRole.OWNER else rental.renter_id
    if actor_id != expected:
        raise PermissionDenied(
            f"{actor_id} is not the {role.value} of rental {rental.rental_id}"
        )


def confirm(
    rental: RentalRequest,
    actor_id: str,
    role: PartyRole,
    now: datetime,
) -> HandoverOutcome:
    """Record one party's pickup confirmation.

    Args:
        rental: Working copy of the rental, under its lock.
        actor_id: The authenticated caller.
        role: The side the caller confirms as.
        now: Confirmation time.

    Returns:
        HandoverOutcome; ``activated`` is True only for the confirmation
        that moved the rental to ACTIVE.
    """
    _require_party(rental, actor_id, role)
    handover = rental.handover
    already = handover.owner_confirmed if role == PartyRole.OWNER else handover.renter_confirmed
    if already:
        raise AlreadyDone(
            f"Handover of rental {rental.rental_id} already confirmed by the {role.value}"
        )
    if rental.status != RentalStatus.AWAITING_HANDOVER:
        raise InvalidState(
            f"Rental {rental.rental_id} is {rental.status.value}, not awaiting handover"
        )

    if role == PartyRole.OWNER:
        handover.owner_confirmed = True
        handover.owner_confirmed_utc = now
    else:
        handover.renter_confirmed = True
        handover.renter_confirmed_utc = now
    rental.record("handover_confirmed", actor_id, now, {"role": role.value})

    activated = False
    if handover.both_confirmed:
        RentalStateMachine.transition(rental, RentalStatus.ACTIVE)
        rental.actual_start = now
        rental.record("rental_activated", actor_id, now)
        activated = True

    return HandoverOutcome(
        activated=activated,
        renter_confirmed=handover.renter_confirmed,
        owner_confirmed=handover.owner_confirmed,
    )


def confirm_received(
    rental: RentalRequest,
    actor_id: str,
    now: datetime,
) -> ReturnOutcome:
    """Renter confirms the return exchange from their side."""
    _require_party(rental, actor_id, PartyRole.RENTER)
    completion = rental.completion
    if completion.item_received:
        raise AlreadyDone(f"Rental {rental.rental_id}: return already confirmed by the renter")
    _require_active(rental)

    completion.item_received = True
    completion.item_received_utc = now
    rental.record("item_received_confirmed", actor_id, now)
    return ReturnOutcome(completion.item_received, completion.item_returned)


def confirm_returned(
    rental: RentalRequest,
    actor_id: str,
    now: datetime,
    damage_report: Optional[DamageReport] = None,
) -> ReturnOutcome:
    """Owner confirms the item came back, optionally reporting damage."""
    _require_party(rental, actor_id, PartyRole.OWNER)
    completion = rental.completion
    if completion.item_returned:
        raise AlreadyDone(f"Rental {rental.rental_id}: return already confirmed by the owner")
    _require_active(rental)
    if damage_report is not None and damage_report.amount < ZERO:
        raise InvalidArgument("Damage amount cannot be negative")

    completion.item_returned = True
    completion.item_returned_utc = now
    completion.damage_report = damage_report
    details = {}
    if damage_report is not None:
        details = {
            "damage_amount": str(damage_report.amount),
            "damage_description": damage_report.description,
        }
    rental.record("item_returned_confirmed", actor_id, now, details)
    return ReturnOutcome(completion.item_received, completion.item_returned)


def _require_active(rental: RentalRequest) -> None:
    if rental.status != RentalStatus.ACTIVE:
        raise InvalidState(f"Rental {rental.rental_id} is {rental.status.value}, not active")
