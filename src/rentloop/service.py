"""Rental service — unified facade for the rental and escrow engine.

This is the primary interface for programmatic access to the engine.
It orchestrates all subsystems:
- Rental lifecycle (request, approve/reject, cancel)
- Payment sessions (provider order + payment key) and payment webhooks
- Two-party handover and return confirmation
- Escrow settlement on completion, deposit refund, damage deduction
- Disputes (freeze, moderator resolution)
- Wallet balances and payout requests

Every operation follows the same shape:

    acquire the rental lock → validate the transition → post the ledger
    plan → append timeline events → commit → dispatch notifications

All operations return a ServiceResult. Engine refusals are reported with
a stable ``error_code``; unexpected exceptions propagate. Notifications
are sent only after the commit, and a failing dispatcher never undoes it.
"""

from __future__ import annotations

import functools
import logging
import threading
from collections import Counter
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Iterable, Optional, Union
from uuid import uuid4

from rentloop.collaborators import (
    IdentityVerifier,
    InMemoryItemCatalog,
    ItemCatalog,
    Notification,
    NotificationDispatcher,
    RecordingDispatcher,
    StaticIdentityVerifier,
)
from rentloop.compensation.escrow import EscrowPlanner
from rentloop.compensation.ledger import LedgerStore
from rentloop.compensation.payment_provider import (
    PaymentProvider,
    ProviderGateway,
    to_minor_units,
)
from rentloop.compensation.pricing import quote
from rentloop.engine import handover
from rentloop.engine.dispute import DisputeHandler
from rentloop.engine.state_machine import OCCUPYING_STATES, RentalStateMachine
from rentloop.errors import (
    AlreadyDone,
    EngineError,
    Internal,
    InvalidArgument,
    InvalidState,
    NotFound,
    PermissionDenied,
    Unauthenticated,
)
from rentloop.models.compensation import ZERO, quantize_money
from rentloop.models.ledger import TransactionType
from rentloop.models.rental import (
    DamageReport,
    HandoverState,
    PartyRole,
    PaymentStatus,
    RentalRequest,
    RentalStatus,
)
from rentloop.persistence.event_log import EventKind, EventLog, EventRecord
from rentloop.persistence.rental_store import RentalStore
from rentloop.policy.resolver import PolicyResolver
from rentloop.webhooks.events import PaymentFailed, PaymentSucceeded
from rentloop.webhooks.processor import PaymentOutcome, WebhookAck, WebhookProcessor

logger = logging.getLogger(__name__)

_Outbox = list[tuple[str, Notification]]


@dataclass(frozen=True)
class ServiceResult:
    """Result of a service operation."""
    success: bool
    errors: list[str] = field(default_factory=list)
    data: dict[str, Any] = field(default_factory=dict)
    error_code: Optional[str] = None


def _service_call(method: Callable[..., dict[str, Any]]) -> Callable[..., ServiceResult]:
    """Wrap an operation so engine refusals become failed results."""

    @functools.wraps(method)
    def wrapper(self: RentalService, *args: Any, **kwargs: Any) -> ServiceResult:
        try:
            data = method(self, *args, **kwargs)
        except EngineError as e:
            if isinstance(e, Internal):
                logger.critical("%s failed with an internal error: %s", method.__name__, e.message)
            return ServiceResult(success=False, errors=[e.message], error_code=e.code)
        return ServiceResult(success=True, data=data)

    return wrapper


def _require_actor(actor_id: Optional[str]) -> str:
    if actor_id is None or not str(actor_id).strip():
        raise Unauthenticated("An authenticated actor is required")
    return str(actor_id).strip()


def _as_date(value: Union[date, str], label: str) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value))
    except ValueError:
        raise InvalidArgument(f"{label} is not an ISO date: {value!r}") from None


def _as_money(value: Union[Decimal, str, int], label: str) -> Decimal:
    if isinstance(value, float):
        raise InvalidArgument(f"{label} must not be a float")
    try:
        amount = Decimal(str(value))
    except ArithmeticError:
        raise InvalidArgument(f"{label} is not a decimal amount: {value!r}") from None
    if not amount.is_finite():
        raise InvalidArgument(f"{label} is not a finite amount")
    if amount != quantize_money(amount):
        raise InvalidArgument(f"{label} has more precision than the currency allows")
    return amount


class RentalService:
    """Rental transaction and escrow engine facade.

    Usage:
        resolver = PolicyResolver.from_config_dir(config_dir)
        service = RentalService(resolver, payment_provider=SandboxPaymentProvider())

        result = service.request_rental("renter-1", "item-1", start, end)
        rental_id = result.data["rental_id"]
        service.respond_to_rental("owner-1", rental_id, "approve")
        service.handle_payment_webhook(body, signature)
        service.confirm_handover("renter-1", rental_id, "renter")
        service.confirm_handover("owner-1", rental_id, "owner")
        service.confirm_returned("owner-1", rental_id)
        service.confirm_received("renter-1", rental_id)

    Persistence (optional):
        service = RentalService(resolver, payment_provider=provider,
                                event_log=EventLog(path), ledger=LedgerStore(path))

    Rentals are replayed from the event log on construction; completed
    counts and dispute freezes are derived from them.
    """

    def __init__(
        self,
        resolver: PolicyResolver,
        payment_provider: PaymentProvider,
        notifier: Optional[NotificationDispatcher] = None,
        identity: Optional[IdentityVerifier] = None,
        catalog: Optional[ItemCatalog] = None,
        ledger: Optional[LedgerStore] = None,
        event_log: Optional[EventLog] = None,
        rentals: Optional[RentalStore] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._resolver = resolver
        self._gateway = ProviderGateway(
            payment_provider, timeout_seconds=resolver.provider_timeout_seconds(),
        )
        self._notifier = notifier or RecordingDispatcher()
        self._identity = identity or StaticIdentityVerifier(verify_all=True)
        self._catalog = catalog or InMemoryItemCatalog()
        self._ledger = ledger or LedgerStore(currency=resolver.currency())
        self._event_log = event_log if event_log is not None else EventLog()
        self._rentals = rentals or RentalStore(event_log=self._event_log)
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._planner = EscrowPlanner()
        self._disputes = DisputeHandler(self._ledger, self._planner, resolver.moderators())
        self._webhooks = WebhookProcessor(
            self,
            secret=resolver.webhook_secret(),
            require_signature=resolver.require_signature(),
        )
        self._owner_completed: Counter[str] = Counter()
        self._stats_lock = threading.Lock()
        self._restore()

    def _restore(self) -> None:
        """Derive tier counters and dispute freezes from replayed rentals."""
        for rental in self._rentals.rentals(statuses=(RentalStatus.COMPLETED,)):
            self._owner_completed[rental.owner_id] += 1
        disputed = self._rentals.rentals(statuses=(RentalStatus.DISPUTED,))
        for rental in disputed:
            self._ledger.freeze(rental.rental_id)
        if self._rentals.count:
            logger.info(
                "Restored %d rentals (%d completed, %d frozen by disputes)",
                self._rentals.count, sum(self._owner_completed.values()), len(disputed),
            )

    def close(self) -> None:
        """Release the payment provider worker threads."""
        self._gateway.shutdown()

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def ledger(self) -> LedgerStore:
        return self._ledger

    @property
    def rentals(self) -> RentalStore:
        return self._rentals

    @property
    def event_log(self) -> EventLog:
        return self._event_log

    @property
    def catalog(self) -> ItemCatalog:
        return self._catalog

    @property
    def resolver(self) -> PolicyResolver:
        return self._resolver

    def owner_completed_rentals(self, owner_id: str) -> int:
        with self._stats_lock:
            return self._owner_completed[owner_id]

    def set_owner_completed_rentals(self, owner_id: str, count: int) -> None:
        """Seed an owner's completed-rental count (imports, tests)."""
        if count < 0:
            raise ValueError("Completed rental count cannot be negative")
        with self._stats_lock:
            self._owner_completed[owner_id] = count

    # ------------------------------------------------------------------
    # Request and negotiation
    # ------------------------------------------------------------------

    @_service_call
    def request_rental(
        self,
        actor_id: Optional[str],
        item_id: str,
        start_date: Union[date, str],
        end_date: Union[date, str],
        delivery: bool = False,
        message: str = "",
    ) -> dict[str, Any]:
        """Renter asks to rent an item. Prices the request once, now."""
        renter_id = _require_actor(actor_id)
        if not self._identity.is_verified(renter_id):
            raise PermissionDenied("Identity verification is required to request rentals")
        item = self._catalog.get_item(item_id)
        if item is None:
            raise NotFound(f"Item not found: {item_id}")
        if item.owner_id == renter_id:
            raise PermissionDenied("Owners cannot rent their own items")
        if not item.is_available:
            raise InvalidState(f"Item {item_id} is not available for rent")

        now = self._clock()
        start = _as_date(start_date, "start_date")
        end = _as_date(end_date, "end_date")
        if start < now.date():
            raise InvalidArgument("Rental cannot start in the past")
        if self._rentals.overlapping(item_id, start, end, OCCUPYING_STATES):
            raise InvalidState(f"Item {item_id} is already booked for those dates")

        pricing = quote(
            item, start, end, delivery,
            self.owner_completed_rentals(item.owner_id),
            self._resolver,
        )
        rental = RentalRequest(
            rental_id=f"rental_{uuid4().hex[:12]}",
            item_id=item_id,
            owner_id=item.owner_id,
            renter_id=renter_id,
            requested_start=start,
            requested_end=end,
            pricing=pricing,
            delivery=delivery,
            message=message,
            created_utc=now,
        )
        rental.record("rental_requested", renter_id, now, {"total": str(pricing.total)})
        rental = self._rentals.add(rental)

        self._dispatch([(item.owner_id, Notification(
            type="rental_request",
            title="New rental request",
            body=f"{item.title} requested for {pricing.total_days} day(s)",
            data={"rental_id": rental.rental_id},
        ))])
        return rental.to_dict()

    @_service_call
    def respond_to_rental(
        self,
        actor_id: Optional[str],
        rental_id: str,
        action: str,
        reason: str = "",
    ) -> dict[str, Any]:
        """Owner approves or rejects a pending request.

        Approval locks the dates, then opens a payment session with the
        provider outside every lock. A provider failure or timeout rejects
        the rental and is reported as ``external_failure``.
        """
        owner_id = _require_actor(actor_id)
        if action not in ("approve", "reject"):
            raise InvalidArgument(f"Unknown response action: {action!r}")
        if action == "reject":
            return self._reject(owner_id, rental_id, reason)

        snapshot = self._rentals.get(rental_id)
        with self._rentals.item_lock(snapshot.item_id):
            with self._rentals.transaction(rental_id) as rental:
                self._require_role(rental, owner_id, PartyRole.OWNER)
                if rental.status in (RentalStatus.APPROVED, RentalStatus.PAYMENT_PENDING):
                    raise AlreadyDone(f"Rental {rental_id} is already approved")
                if rental.status != RentalStatus.PENDING:
                    raise InvalidState(f"Rental {rental_id} is {rental.status.value}, not pending")
                start, end = rental.requested_start, rental.requested_end
                if self._rentals.overlapping(
                    rental.item_id, start, end, OCCUPYING_STATES, exclude=rental_id,
                ):
                    raise InvalidState(f"Item {rental.item_id} is already booked for those dates")
                now = self._clock()
                RentalStateMachine.transition(rental, RentalStatus.APPROVED)
                rental.confirmed_start = start
                rental.confirmed_end = end
                rental.record("rental_approved", owner_id, now)

        pricing = snapshot.pricing
        try:
            session = self._gateway.open_session(
                pricing.total, pricing.currency,
                {"rental_id": rental_id, "renter_id": snapshot.renter_id},
            )
        except EngineError as failure:
            with self._rentals.transaction(rental_id) as rental:
                if rental.status == RentalStatus.APPROVED:
                    RentalStateMachine.transition(rental, RentalStatus.REJECTED)
                    rental.record(
                        "payment_provider_failed", owner_id, self._clock(),
                        {"error": failure.message},
                    )
            self._dispatch([(snapshot.renter_id, Notification(
                type="rental_rejected",
                title="Rental could not be confirmed",
                body="The payment provider could not open a payment session",
                data={"rental_id": rental_id},
            ))])
            raise

        with self._rentals.transaction(rental_id) as rental:
            if rental.status != RentalStatus.APPROVED:
                raise InvalidState(f"Rental {rental_id} changed while opening payment")
            rental.payment.provider_order_id = session.order_id
            rental.payment.provider_payment_key = session.payment_key
            rental.payment.payment_status = PaymentStatus.PENDING
            RentalStateMachine.transition(rental, RentalStatus.PAYMENT_PENDING)
            rental.record("payment_session_opened", owner_id, self._clock(), {
                "order_id": session.order_id,
            })

        self._dispatch([(rental.renter_id, Notification(
            type="rental_approved",
            title="Rental approved",
            body="Your request was approved. Complete the payment to confirm.",
            data={"rental_id": rental_id, "payment_key": session.payment_key},
        ))])
        data = rental.to_dict()
        data["payment_key"] = session.payment_key
        return data

    def _reject(self, owner_id: str, rental_id: str, reason: str) -> dict[str, Any]:
        with self._rentals.transaction(rental_id) as rental:
            self._require_role(rental, owner_id, PartyRole.OWNER)
            if rental.status == RentalStatus.REJECTED:
                raise AlreadyDone(f"Rental {rental_id} is already rejected")
            if rental.status != RentalStatus.PENDING:
                raise InvalidState(f"Rental {rental_id} is {rental.status.value}, not pending")
            RentalStateMachine.transition(rental, RentalStatus.REJECTED)
            rental.record("rental_rejected", owner_id, self._clock(), {"reason": reason})

        self._dispatch([(rental.renter_id, Notification(
            type="rental_rejected",
            title="Rental request declined",
            body=reason or "The owner declined your request",
            data={"rental_id": rental_id},
        ))])
        return rental.to_dict()

    @_service_call
    def cancel_request(self, actor_id: Optional[str], rental_id: str) -> dict[str, Any]:
        """Renter withdraws a request the owner has not answered yet."""
        renter_id = _require_actor(actor_id)
        with self._rentals.transaction(rental_id) as rental:
            self._require_role(rental, renter_id, PartyRole.RENTER)
            if rental.status == RentalStatus.CANCELLED:
                raise AlreadyDone(f"Rental {rental_id} is already cancelled")
            if rental.status != RentalStatus.PENDING:
                raise InvalidState(f"Rental {rental_id} is {rental.status.value}, not pending")
            RentalStateMachine.transition(rental, RentalStatus.CANCELLED)
            rental.record("rental_cancelled", renter_id, self._clock())

        self._dispatch([(rental.owner_id, Notification(
            type="rental_cancelled",
            title="Rental request withdrawn",
            body="The renter withdrew their request",
            data={"rental_id": rental_id},
        ))])
        return rental.to_dict()

    # ------------------------------------------------------------------
    # Payment webhooks
    # ------------------------------------------------------------------

    def handle_payment_webhook(
        self, raw_payload: bytes, signature: Optional[str] = None,
    ) -> WebhookAck:
        """Ingress for payment gateway callbacks."""
        return self._webhooks.handle(raw_payload, signature)

    def on_payment_succeeded(self, event: PaymentSucceeded) -> PaymentOutcome:
        rental_id = self._rentals.find_by_order(event.order_id)
        if rental_id is None:
            return PaymentOutcome(None, f"No rental for order {event.order_id}")

        outbox: _Outbox = []
        with self._rentals.transaction(rental_id) as rental:
            if rental.status != RentalStatus.PAYMENT_PENDING or (
                event.transaction_id
                and rental.payment.provider_transaction_id == event.transaction_id
            ):
                return PaymentOutcome(rental_id, f"Already processed ({rental.status.value})")

            now = self._clock()
            expected_cents = to_minor_units(rental.pricing.total)
            if event.amount_cents is not None and event.amount_cents != expected_cents:
                logger.error(
                    "Payment amount mismatch on rental %s: charged %d, expected %d",
                    rental_id, event.amount_cents, expected_cents,
                )
                rental.record("payment_amount_mismatch", "payment_provider", now, {
                    "transaction_id": event.transaction_id,
                    "amount_cents": event.amount_cents,
                    "expected_cents": expected_cents,
                })
                return PaymentOutcome(rental_id, "Amount mismatch recorded")

            plan = self._planner.payment_captured(rental)
            with self._ledger.locked():
                posting = self._ledger.post(
                    plan.intents, plan.promote, now=now, key=f"{rental_id}:payment_captured",
                )
            income = posting.entry_for(rental.owner_id, TransactionType.RENTAL_INCOME)
            rental.payment.owner_income_transaction_id = income.transaction_id
            rental.payment.provider_transaction_id = event.transaction_id
            rental.payment.payment_status = PaymentStatus.PAID
            rental.handover = HandoverState()
            RentalStateMachine.transition(rental, RentalStatus.AWAITING_HANDOVER)
            rental.record("payment_confirmed", "payment_provider", now, {
                "transaction_id": event.transaction_id,
                "posting_id": posting.posting_id,
            })
            for user_id in (rental.renter_id, rental.owner_id):
                outbox.append((user_id, Notification(
                    type="payment_confirmed",
                    title="Payment confirmed",
                    body="Payment received. Arrange the handover.",
                    data={"rental_id": rental_id},
                )))

        self._dispatch(outbox)
        return PaymentOutcome(rental_id, "Payment applied")

    def on_payment_failed(self, event: PaymentFailed) -> PaymentOutcome:
        rental_id = self._rentals.find_by_order(event.order_id)
        if rental_id is None:
            return PaymentOutcome(None, f"No rental for order {event.order_id}")

        with self._rentals.transaction(rental_id) as rental:
            if rental.status != RentalStatus.PAYMENT_PENDING:
                return PaymentOutcome(rental_id, f"Already processed ({rental.status.value})")
            rental.payment.payment_status = PaymentStatus.FAILED
            rental.payment.provider_transaction_id = event.transaction_id
            RentalStateMachine.transition(rental, RentalStatus.REJECTED)
            rental.record("payment_failed", "payment_provider", self._clock(), {
                "transaction_id": event.transaction_id,
            })

        self._dispatch([(rental.renter_id, Notification(
            type="payment_failed",
            title="Payment failed",
            body="Your payment did not go through and the rental was cancelled",
            data={"rental_id": rental_id},
        ))])
        return PaymentOutcome(rental_id, "Payment failure applied")

    # ------------------------------------------------------------------
    # Handover and return
    # ------------------------------------------------------------------

    @_service_call
    def confirm_handover(
        self,
        actor_id: Optional[str],
        rental_id: str,
        role: Union[PartyRole, str],
    ) -> dict[str, Any]:
        """One party confirms the item changed hands at pickup."""
        party = _require_actor(actor_id)
        try:
            role = PartyRole(role)
        except ValueError:
            raise InvalidArgument(f"Unknown handover role: {role!r}") from None

        with self._rentals.transaction(rental_id) as rental:
            outcome = handover.confirm(rental, party, role, self._clock())

        outbox: _Outbox = [(rental.counterparty(party), Notification(
            type="handover_confirmed",
            title="Handover confirmed",
            body=f"The {role.value} confirmed the handover",
            data={"rental_id": rental_id},
        ))]
        if outcome.activated:
            for user_id in (rental.renter_id, rental.owner_id):
                outbox.append((user_id, Notification(
                    type="rental_active",
                    title="Rental started",
                    body="Both parties confirmed the handover",
                    data={"rental_id": rental_id},
                )))
        self._dispatch(outbox)
        data = rental.to_dict()
        data["activated"] = outcome.activated
        return data

    @_service_call
    def confirm_received(self, actor_id: Optional[str], rental_id: str) -> dict[str, Any]:
        """Renter confirms the return exchange."""
        renter_id = _require_actor(actor_id)
        with self._rentals.transaction(rental_id) as rental:
            now = self._clock()
            outcome = handover.confirm_received(rental, renter_id, now)
            if outcome.ready_to_complete:
                self._complete(rental, renter_id, now)
        return self._after_return_step(rental, renter_id)

    @_service_call
    def confirm_returned(
        self,
        actor_id: Optional[str],
        rental_id: str,
        damage_report: Optional[DamageReport] = None,
    ) -> dict[str, Any]:
        """Owner confirms the item came back, optionally reporting damage."""
        owner_id = _require_actor(actor_id)
        if damage_report is not None:
            _as_money(damage_report.amount, "Damage amount")
        with self._rentals.transaction(rental_id) as rental:
            now = self._clock()
            outcome = handover.confirm_returned(rental, owner_id, now, damage_report)
            if outcome.ready_to_complete:
                self._complete(rental, owner_id, now)
        return self._after_return_step(rental, owner_id)

    def _complete(self, rental: RentalRequest, actor_id: str, now: datetime) -> None:
        """Settle escrow and complete. Caller holds the rental lock."""
        report = rental.completion.damage_report
        damage = report.amount if report is not None else ZERO
        plan = self._planner.completion(rental, damage)
        with self._ledger.locked():
            posting = self._ledger.post(
                plan.intents, plan.promote, now=now, key=f"{rental.rental_id}:completion",
            )

        summary = plan.summary
        rental.completion.deposit_refund = summary.deposit_refund
        rental.completion.damage_deduction = summary.damage_deduction
        rental.completion.owner_payout = summary.owner_payout
        rental.completion.completed_utc = now
        rental.actual_end = now
        RentalStateMachine.transition(rental, RentalStatus.COMPLETED)
        rental.record("rental_completed", actor_id, now, {
            "posting_id": posting.posting_id,
            "owner_payout": str(summary.owner_payout),
            "platform_take": str(summary.platform_take),
            "deposit_refund": str(summary.deposit_refund),
            "damage_deduction": str(summary.damage_deduction),
        })

    def _after_return_step(self, rental: RentalRequest, actor_id: str) -> dict[str, Any]:
        outbox: _Outbox = []
        if rental.status == RentalStatus.COMPLETED:
            self._record_owner_completion(rental.owner_id)
            for user_id in (rental.renter_id, rental.owner_id):
                outbox.append((user_id, Notification(
                    type="rental_completed",
                    title="Rental completed",
                    body="Escrow released and the deposit settled",
                    data={"rental_id": rental.rental_id},
                )))
        else:
            outbox.append((rental.counterparty(actor_id), Notification(
                type="return_confirmed",
                title="Return confirmed",
                body="The other party confirmed the return. Please confirm too.",
                data={"rental_id": rental.rental_id},
            )))
        self._dispatch(outbox)
        return rental.to_dict()

    def _record_owner_completion(self, owner_id: str) -> None:
        with self._stats_lock:
            self._owner_completed[owner_id] += 1

    # ------------------------------------------------------------------
    # Disputes
    # ------------------------------------------------------------------

    @_service_call
    def raise_dispute(
        self,
        actor_id: Optional[str],
        rental_id: str,
        reason: str,
        evidence: Iterable[str] = (),
    ) -> dict[str, Any]:
        """Either party disputes a paid rental. Escrow is frozen."""
        party = _require_actor(actor_id)
        with self._rentals.transaction(rental_id) as rental:
            dispute = self._disputes.raise_dispute(
                rental, party, reason, evidence, self._clock(),
            )
            self._rentals.after_commit(rental_id, functools.partial(self._ledger.freeze, rental_id))

        self._dispatch([(dispute.reported_against, Notification(
            type="dispute_raised",
            title="A dispute was opened",
            body=dispute.reason,
            data={"rental_id": rental_id},
        ))])
        return rental.to_dict()

    @_service_call
    def resolve_dispute(
        self,
        actor_id: Optional[str],
        rental_id: str,
        decision: str,
        refund_amount: Union[Decimal, str],
        owner_compensation: Union[Decimal, str],
    ) -> dict[str, Any]:
        """Moderator settles a dispute and releases the escrow."""
        moderator_id = _require_actor(actor_id)
        refund = _as_money(refund_amount, "Refund amount")
        compensation = _as_money(owner_compensation, "Owner compensation")
        with self._rentals.transaction(rental_id) as rental:
            with self._ledger.locked():
                _, posting = self._disputes.resolve(
                    rental, moderator_id, decision, refund, compensation, self._clock(),
                )
            self._rentals.after_commit(rental_id, functools.partial(self._ledger.unfreeze, rental_id))

        if rental.status == RentalStatus.COMPLETED:
            self._record_owner_completion(rental.owner_id)
        self._dispatch([
            (user_id, Notification(
                type="dispute_resolved",
                title="Dispute resolved",
                body=f"Refund {refund}, owner compensation {compensation}",
                data={"rental_id": rental_id},
            ))
            for user_id in (rental.renter_id, rental.owner_id)
        ])
        data = rental.to_dict()
        data["posting_id"] = posting.posting_id
        return data

    # ------------------------------------------------------------------
    # Wallet
    # ------------------------------------------------------------------

    @_service_call
    def request_payout(
        self, actor_id: Optional[str], amount: Union[Decimal, str],
    ) -> dict[str, Any]:
        """Withdraw available funds. Requires a verified identity."""
        user_id = _require_actor(actor_id)
        if not self._identity.is_verified(user_id):
            raise PermissionDenied("Identity verification is required for payouts")
        amount = _as_money(amount, "Payout amount")
        if amount <= ZERO:
            raise InvalidArgument("Payout amount must be positive")
        minimum = self._resolver.minimum_payout()
        if amount < minimum:
            raise InvalidArgument(f"Payout amount is below the minimum of {minimum}")

        now = self._clock()
        plan = self._planner.payout(user_id, amount, self._resolver.currency())
        with self._ledger.locked():
            available = self._ledger.balance(user_id).available
            if amount > available:
                raise InvalidArgument(
                    f"Payout of {amount} exceeds the available balance of {available}"
                )
            posting = self._ledger.post(plan.intents, now=now)
            balance = self._ledger.balance(user_id)

        withdrawal = posting.entry_for(user_id, TransactionType.WITHDRAWAL_REQUEST)
        self._event_log.append(EventRecord.create(
            event_id=f"payout:{posting.posting_id}",
            event_kind=EventKind.PAYOUT_REQUESTED,
            actor_id=user_id,
            payload={"amount": str(amount), "transaction_id": withdrawal.transaction_id},
            timestamp_utc=now,
        ))
        return {
            "transaction_id": withdrawal.transaction_id,
            "amount": str(amount),
            "status": withdrawal.status.value,
            "balance": balance.to_dict(),
        }

    @_service_call
    def get_wallet_balance(
        self, actor_id: Optional[str], user_id: Optional[str] = None,
    ) -> dict[str, Any]:
        """A user's derived balance. Moderators may read any wallet."""
        caller = _require_actor(actor_id)
        target = user_id or caller
        if target != caller and not self._disputes.is_moderator(caller):
            raise PermissionDenied(f"{caller} cannot read the wallet of {target}")
        return self._ledger.balance(target).to_dict()

    @_service_call
    def get_rental(self, actor_id: Optional[str], rental_id: str) -> dict[str, Any]:
        caller = _require_actor(actor_id)
        rental = self._rentals.get(rental_id)
        if rental.role_of(caller) is None and not self._disputes.is_moderator(caller):
            raise PermissionDenied(f"{caller} is not a party to rental {rental_id}")
        return rental.to_dict()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    def _require_role(rental: RentalRequest, actor_id: str, role: PartyRole) -> None:
        if rental.role_of(actor_id) != role:
            raise PermissionDenied(
                f"Only the {role.value} of rental {rental.rental_id} can do this"
            )

    def _dispatch(self, outbox: _Outbox) -> None:
        """Send notifications after commit. Failures never undo the commit."""
        for user_id, notification in outbox:
            try:
                self._notifier.send(user_id, notification)
            except Exception:
                logger.exception(
                    "Failed to send %s notification to %s", notification.type, user_id,
                )
