"""Rental state machine — enforces valid lifecycle transitions.

Rental lifecycle:
    PENDING → APPROVED → PAYMENT_PENDING → AWAITING_HANDOVER → ACTIVE → COMPLETED
    PENDING → REJECTED | CANCELLED
    APPROVED → REJECTED             (payment provider failed or timed out)
    PAYMENT_PENDING → REJECTED      (payment failed at the gateway)
    AWAITING_HANDOVER | ACTIVE → DISPUTED
    DISPUTED → COMPLETED | CANCELLED  (moderator resolution)

State semantics:
- PENDING: renter asked, owner has not answered.
- APPROVED: owner accepted; dates locked; payment session being opened.
- PAYMENT_PENDING: payment key issued, waiting for the gateway webhook.
- AWAITING_HANDOVER: paid; both parties must confirm the physical handover.
- ACTIVE: item is with the renter.
- COMPLETED, REJECTED, CANCELLED: terminal.
- DISPUTED: escrow frozen until a moderator resolves.

Fail-closed: invalid transitions return errors. There are no implicit
transitions.
"""

from __future__ import annotations

from rentloop.errors import InvalidState
from rentloop.models.rental import RentalRequest, RentalStatus


# Valid transitions: {from_state: {allowed_to_states}}
_TRANSITIONS: dict[RentalStatus, set[RentalStatus]] = {
    RentalStatus.PENDING: {
        RentalStatus.APPROVED,
        RentalStatus.REJECTED,
        RentalStatus.CANCELLED,
    },
    RentalStatus.APPROVED: {
        RentalStatus.PAYMENT_PENDING,
        RentalStatus.REJECTED,
    },
    RentalStatus.PAYMENT_PENDING: {
        RentalStatus.AWAITING_HANDOVER,
        RentalStatus.REJECTED,
    },
    RentalStatus.AWAITING_HANDOVER: {
        RentalStatus.ACTIVE,
        RentalStatus.DISPUTED,
    },
    RentalStatus.ACTIVE: {
        RentalStatus.COMPLETED,
        RentalStatus.DISPUTED,
    },
    RentalStatus.DISPUTED: {
        RentalStatus.COMPLETED,
        RentalStatus.CANCELLED,
    },
    # Terminal states have no outgoing transitions
    RentalStatus.COMPLETED: set(),
    RentalStatus.REJECTED: set(),
    RentalStatus.CANCELLED: set(),
}

_TERMINAL = frozenset({
    RentalStatus.COMPLETED,
    RentalStatus.REJECTED,
    RentalStatus.CANCELLED,
})

# States from which the rental holds the item's dates.
OCCUPYING_STATES = frozenset({
    RentalStatus.APPROVED,
    RentalStatus.PAYMENT_PENDING,
    RentalStatus.AWAITING_HANDOVER,
    RentalStatus.ACTIVE,
    RentalStatus.DISPUTED,
})


class RentalStateMachine:
    """Validates and applies rental state transitions.

    Pure computation: validates transitions only. Ledger postings, event
    logging and notifications are handled by the service layer.
    """

    @staticmethod
    def validate_transition(
        rental: RentalRequest,
        target: RentalStatus,
    ) -> list[str]:
        """Check if a transition is valid. Returns errors (empty = OK)."""
        current = rental.status
        allowed = _TRANSITIONS.get(current, set())

        if target not in allowed:
            allowed_str = ", ".join(s.value for s in sorted(allowed, key=lambda x: x.value))
            return [
                f"Invalid rental transition: {current.value} → {target.value}. "
                f"Allowed from {current.value}: [{allowed_str}]"
            ]
        return []

    @staticmethod
    def apply_transition(
        rental: RentalRequest,
        target: RentalStatus,
    ) -> list[str]:
        """Validate and apply a state transition.

        Returns errors if transition is invalid. On success,
        mutates rental.status and returns empty list.
        """
        errors = RentalStateMachine.validate_transition(rental, target)
        if errors:
            return errors
        rental.status = target
        return []

    @staticmethod
    def transition(rental: RentalRequest, target: RentalStatus) -> RentalStatus:
        """Apply a transition or raise InvalidState. Returns the old status."""
        previous = rental.status
        errors = RentalStateMachine.apply_transition(rental, target)
        if errors:
            raise InvalidState(errors[0])
        return previous

    @staticmethod
    def is_terminal(state: RentalStatus) -> bool:
        """Check if a state is terminal (no further transitions)."""
        return state in _TERMINAL

    @staticmethod
    def valid_transitions(state: RentalStatus) -> set[RentalStatus]:
        """Return the set of valid target states from the given state."""
        return set(_TRANSITIONS.get(state, set()))
