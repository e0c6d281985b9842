"""End-to-end rental lifecycle through RentalService.

Covers the reference example (100/day × 5 days, 10% fee, 50 deposit) from
request to completion, and the closed-loop accounting of every outcome.
"""

import pytest
from datetime import date
from decimal import Decimal
from pathlib import Path

from rentloop.collaborators import InMemoryItemCatalog, StaticIdentityVerifier
from rentloop.compensation.ledger import LedgerStore
from rentloop.compensation.payment_provider import SandboxPaymentProvider
from rentloop.models.ledger import (
    PLATFORM_ESCROW,
    PLATFORM_PAYOUTS,
    PLATFORM_REVENUE,
    Availability,
    TransactionType,
)
from rentloop.models.rental import DamageReport, RentalStatus
from rentloop.persistence.event_log import EventKind, EventLog
from rentloop.policy.resolver import PolicyResolver
from rentloop.service import RentalService

from conftest import END, START, RentalDriver, camera, fail_next_append, fixed_now


def _ledger_sums_to_zero(service: RentalService) -> bool:
    return all(
        sum((e.amount for e in p.entries), Decimal("0")) == Decimal("0")
        for p in service.ledger.postings()
    )


class TestRequest:
    def test_request_prices_once(self, service: RentalService) -> None:
        result = service.request_rental("renter-1", "item-1", START, END)
        assert result.success
        pricing = result.data["pricing"]
        assert pricing["subtotal"] == "500.00"
        assert pricing["platform_fee"] == "50.00"
        assert pricing["security_deposit"] == "50.00"
        assert pricing["total"] == "600.00"
        assert result.data["status"] == "pending"

    def test_iso_dates_accepted(self, service: RentalService) -> None:
        result = service.request_rental("renter-1", "item-1", "2026-03-10", "2026-03-15")
        assert result.success
        assert result.data["pricing"]["total_days"] == 5

    def test_unauthenticated(self, service: RentalService) -> None:
        for actor in (None, "", "   "):
            result = service.request_rental(actor, "item-1", START, END)
            assert result.error_code == "unauthenticated"

    def test_unknown_item(self, service: RentalService) -> None:
        result = service.request_rental("renter-1", "item-x", START, END)
        assert result.error_code == "not_found"

    def test_end_before_start(self, service: RentalService) -> None:
        result = service.request_rental("renter-1", "item-1", END, START)
        assert result.error_code == "invalid_argument"

    def test_past_start_rejected(self, service: RentalService) -> None:
        result = service.request_rental("renter-1", "item-1", date(2026, 2, 1), date(2026, 2, 3))
        assert result.error_code == "invalid_argument"

    def test_owner_cannot_rent_own_item(self, service: RentalService) -> None:
        result = service.request_rental("owner-1", "item-1", START, END)
        assert result.error_code == "permission_denied"

    def test_unverified_renter(self, service: RentalService, identity: StaticIdentityVerifier) -> None:
        identity._verify_all = False
        result = service.request_rental("renter-1", "item-1", START, END)
        assert result.error_code == "permission_denied"

    def test_owner_notified(self, driver: RentalDriver, notifier) -> None:
        driver.request()
        assert "rental_request" in notifier.types_for("owner-1")


class TestNegotiation:
    def test_approve_opens_payment_session(self, service: RentalService, driver: RentalDriver) -> None:
        rental_id = driver.request()
        result = service.respond_to_rental("owner-1", rental_id, "approve")
        assert result.success
        assert result.data["status"] == "payment_pending"
        assert result.data["payment_key"].startswith("sandbox-key-")
        rental = service.rentals.get(rental_id)
        assert rental.confirmed_start == START
        assert rental.payment.payment_status.value == "pending"

    def test_only_owner_may_respond(self, service: RentalService, driver: RentalDriver) -> None:
        rental_id = driver.request()
        result = service.respond_to_rental("renter-1", rental_id, "approve")
        assert result.error_code == "permission_denied"

    def test_approve_twice_is_already_done(self, service: RentalService, driver: RentalDriver) -> None:
        rental_id = driver.request()
        driver.approve(rental_id)
        result = service.respond_to_rental("owner-1", rental_id, "approve")
        assert result.error_code == "already_done"

    def test_reject(self, service: RentalService, driver: RentalDriver, notifier) -> None:
        rental_id = driver.request()
        result = service.respond_to_rental("owner-1", rental_id, "reject", reason="Busy")
        assert result.success
        assert result.data["status"] == "rejected"
        assert service.ledger.count == 0
        assert "rental_rejected" in notifier.types_for("renter-1")

    def test_unknown_action(self, service: RentalService, driver: RentalDriver) -> None:
        rental_id = driver.request()
        result = service.respond_to_rental("owner-1", rental_id, "maybe")
        assert result.error_code == "invalid_argument"

    def test_provider_failure_rejects_rental(
        self, service: RentalService, driver: RentalDriver, provider: SandboxPaymentProvider,
    ) -> None:
        rental_id = driver.request()
        provider.fail_with = "gateway down"
        result = service.respond_to_rental("owner-1", rental_id, "approve")
        assert result.error_code == "external_failure"
        rental = service.rentals.get(rental_id)
        assert rental.status == RentalStatus.REJECTED
        assert rental.timeline[-1].event == "payment_provider_failed"

    def test_provider_timeout_rejects_rental(self, resolver, notifier) -> None:
        resolver._params["payment"] = {"provider_timeout_seconds": 0.05}
        slow = SandboxPaymentProvider(delay_seconds=0.5)
        service = RentalService(
            resolver, payment_provider=slow, notifier=notifier,
            catalog=InMemoryItemCatalog([camera()]), clock=fixed_now,
        )
        rental_id = RentalDriver(service).request()
        result = service.respond_to_rental("owner-1", rental_id, "approve")
        assert result.error_code == "external_failure"
        assert service.rentals.get(rental_id).status == RentalStatus.REJECTED

    def test_cancel_pending_request(self, service: RentalService, driver: RentalDriver) -> None:
        rental_id = driver.request()
        result = service.cancel_request("renter-1", rental_id)
        assert result.data["status"] == "cancelled"
        again = service.cancel_request("renter-1", rental_id)
        assert again.error_code == "already_done"

    def test_cannot_cancel_after_approval(self, service: RentalService, driver: RentalDriver) -> None:
        rental_id = driver.request()
        driver.approve(rental_id)
        result = service.cancel_request("renter-1", rental_id)
        assert result.error_code == "invalid_state"

    def test_overlapping_dates_blocked_after_approval(
        self, service: RentalService, driver: RentalDriver,
    ) -> None:
        first = driver.request()
        second = driver.request(renter="renter-2")
        driver.approve(first)
        result = service.respond_to_rental("owner-1", second, "approve")
        assert result.error_code == "invalid_state"
        clash = service.request_rental("renter-3", "item-1", date(2026, 3, 12), date(2026, 3, 20))
        assert clash.error_code == "invalid_state"

    def test_closed_service_cannot_open_payments(
        self, service: RentalService, driver: RentalDriver,
    ) -> None:
        rental_id = driver.request()
        service.close()
        result = service.respond_to_rental("owner-1", rental_id, "approve")
        assert result.error_code == "external_failure"
        assert service.rentals.get(rental_id).status == RentalStatus.REJECTED


class TestPayment:
    def test_payment_posts_escrow_entries(self, service: RentalService, driver: RentalDriver) -> None:
        rental_id = driver.paid()
        rental = service.rentals.get(rental_id)
        assert rental.status == RentalStatus.AWAITING_HANDOVER
        assert rental.payment.payment_status.value == "paid"

        entries = service.ledger.transactions(rental_id=rental_id)
        by_key = {(e.user_id, e.type): e for e in entries}
        payment = by_key[("renter-1", TransactionType.RENTAL_PAYMENT)]
        income = by_key[("owner-1", TransactionType.RENTAL_INCOME)]
        assert payment.amount == Decimal("-600.00")
        assert income.amount == Decimal("450.00")
        assert income.availability == Availability.PENDING
        assert by_key[(PLATFORM_ESCROW, TransactionType.DEPOSIT_HOLD)].amount == Decimal("50.00")
        assert by_key[(PLATFORM_REVENUE, TransactionType.PLATFORM_FEE)].amount == Decimal("100.00")
        assert _ledger_sums_to_zero(service)

        balance = service.ledger.balance("owner-1")
        assert balance.pending == Decimal("450.00")
        assert balance.available == Decimal("0")

    def test_handover_flags_reset_on_payment(self, service: RentalService, driver: RentalDriver) -> None:
        rental_id = driver.paid()
        rental = service.rentals.get(rental_id)
        assert not rental.handover.renter_confirmed
        assert not rental.handover.owner_confirmed

    def test_parties_notified(self, driver: RentalDriver, notifier) -> None:
        driver.paid()
        assert "payment_confirmed" in notifier.types_for("renter-1")
        assert "payment_confirmed" in notifier.types_for("owner-1")


class TestHandover:
    def test_both_confirm_then_already_done(self, service: RentalService, driver: RentalDriver) -> None:
        rental_id = driver.paid()
        first = service.confirm_handover("renter-1", rental_id, "renter")
        assert first.success and not first.data["activated"]
        second = service.confirm_handover("owner-1", rental_id, "owner")
        assert second.data["activated"]
        assert second.data["status"] == "active"
        third = service.confirm_handover("renter-1", rental_id, "renter")
        assert third.error_code == "already_done"

    def test_unknown_role(self, service: RentalService, driver: RentalDriver) -> None:
        rental_id = driver.paid()
        result = service.confirm_handover("renter-1", rental_id, "landlord")
        assert result.error_code == "invalid_argument"

    def test_handover_before_payment(self, service: RentalService, driver: RentalDriver) -> None:
        rental_id = driver.request()
        result = service.confirm_handover("renter-1", rental_id, "renter")
        assert result.error_code == "invalid_state"


class TestCompletion:
    def test_clean_return(self, service: RentalService, driver: RentalDriver, notifier) -> None:
        rental_id = driver.active()
        returned = service.confirm_returned("owner-1", rental_id)
        assert returned.data["status"] == "active"
        received = service.confirm_received("renter-1", rental_id)
        assert received.data["status"] == "completed"

        rental = service.rentals.get(rental_id)
        income = service.ledger.get(rental.payment.owner_income_transaction_id)
        assert income.availability == Availability.AVAILABLE
        refund = [
            e for e in service.ledger.transactions(user_id="renter-1")
            if e.type == TransactionType.DEPOSIT_REFUND
        ]
        assert len(refund) == 1
        assert refund[0].amount == Decimal("50.00")
        assert refund[0].availability == Availability.AVAILABLE

        assert service.ledger.balance("owner-1").available == Decimal("450.00")
        assert service.ledger.balance("renter-1").available == Decimal("50.00")
        assert service.ledger.balance(PLATFORM_ESCROW).total == Decimal("0")
        assert service.ledger.balance(PLATFORM_REVENUE).available == Decimal("100.00")
        assert "rental_completed" in notifier.types_for("renter-1")

    def test_settlement_accounts_for_every_unit(self, service: RentalService, driver: RentalDriver) -> None:
        rental_id = driver.active()
        service.confirm_returned("owner-1", rental_id, DamageReport("Dent", Decimal("20.00")))
        service.confirm_received("renter-1", rental_id)
        c = service.rentals.get(rental_id).completion
        assert c.damage_deduction == Decimal("20.00")
        assert c.deposit_refund == Decimal("30.00")
        assert c.owner_payout == Decimal("450.00")
        p = service.rentals.get(rental_id).pricing
        assert c.owner_payout + p.platform_take + c.deposit_refund + c.damage_deduction == p.total
        assert service.ledger.balance("owner-1").available == Decimal("470.00")
        assert _ledger_sums_to_zero(service)

    def test_damage_capped_at_deposit(self, service: RentalService, driver: RentalDriver) -> None:
        rental_id = driver.active()
        service.confirm_returned("owner-1", rental_id, DamageReport("Broken", Decimal("500.00")))
        service.confirm_received("renter-1", rental_id)
        c = service.rentals.get(rental_id).completion
        assert c.damage_deduction == Decimal("50.00")
        assert c.deposit_refund == Decimal("0")
        assert not [
            e for e in service.ledger.transactions(user_id="renter-1")
            if e.type == TransactionType.DEPOSIT_REFUND
        ]

    def test_completion_counts_toward_owner_tier(self, service: RentalService, driver: RentalDriver) -> None:
        assert service.owner_completed_rentals("owner-1") == 0
        rental_id = driver.active()
        service.confirm_received("renter-1", rental_id)
        service.confirm_returned("owner-1", rental_id)
        assert service.owner_completed_rentals("owner-1") == 1

    def test_tier_upgrade_changes_new_quotes(self, service: RentalService, driver: RentalDriver) -> None:
        service.set_owner_completed_rentals("owner-1", 9)
        rental_id = driver.active()
        service.confirm_received("renter-1", rental_id)
        service.confirm_returned("owner-1", rental_id)
        result = service.request_rental("renter-1", "item-1", date(2026, 4, 1), date(2026, 4, 6))
        assert result.data["pricing"]["commission_tier"] == "Silver"
        assert result.data["pricing"]["owner_payout"] == "460.00"

    def test_reconcile_after_full_lifecycle(self, service: RentalService, driver: RentalDriver) -> None:
        rental_id = driver.active()
        service.confirm_received("renter-1", rental_id)
        service.confirm_returned("owner-1", rental_id)
        assert service.ledger.verify() == []

    def test_retry_after_failed_commit_settles_once(
        self, service: RentalService, driver: RentalDriver, monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        rental_id = driver.active()
        assert service.confirm_returned("owner-1", rental_id).success
        fail_next_append(monkeypatch, service.event_log)
        with pytest.raises(OSError):
            service.confirm_received("renter-1", rental_id)
        rental = service.rentals.get(rental_id)
        assert rental.status == RentalStatus.ACTIVE
        assert not rental.completion.item_received
        assert service.owner_completed_rentals("owner-1") == 0

        result = service.confirm_received("renter-1", rental_id)
        assert result.data["status"] == "completed"
        refunds = [
            e for e in service.ledger.transactions(user_id="renter-1")
            if e.type == TransactionType.DEPOSIT_REFUND
        ]
        assert len(refunds) == 1
        assert service.ledger.balance("renter-1").available == Decimal("50.00")
        assert service.ledger.balance("owner-1").available == Decimal("450.00")
        assert service.owner_completed_rentals("owner-1") == 1
        assert service.ledger.verify() == []


class TestPayout:
    def _complete(self, service: RentalService, driver: RentalDriver) -> None:
        rental_id = driver.active()
        service.confirm_received("renter-1", rental_id)
        service.confirm_returned("owner-1", rental_id)

    def test_payout_reduces_available(self, service: RentalService, driver: RentalDriver) -> None:
        self._complete(service, driver)
        result = service.request_payout("owner-1", "200.00")
        assert result.success
        assert result.data["balance"]["available"] == "250.00"
        assert service.ledger.balance(PLATFORM_PAYOUTS).available == Decimal("200.00")
        assert _ledger_sums_to_zero(service)
        kinds = [e.event_kind for e in service.event_log.events()]
        assert EventKind.PAYOUT_REQUESTED in kinds

    def test_payout_above_available(self, service: RentalService, driver: RentalDriver) -> None:
        self._complete(service, driver)
        result = service.request_payout("owner-1", "450.01")
        assert result.error_code == "invalid_argument"

    def test_payout_below_minimum(self, service: RentalService, driver: RentalDriver) -> None:
        self._complete(service, driver)
        result = service.request_payout("owner-1", "0.50")
        assert result.error_code == "invalid_argument"

    def test_payout_requires_verification(
        self, service: RentalService, driver: RentalDriver, identity: StaticIdentityVerifier,
    ) -> None:
        self._complete(service, driver)
        identity._verify_all = False
        result = service.request_payout("owner-1", "10.00")
        assert result.error_code == "permission_denied"


class TestReads:
    def test_get_rental_for_parties_only(self, service: RentalService, driver: RentalDriver) -> None:
        rental_id = driver.request()
        assert service.get_rental("renter-1", rental_id).success
        assert service.get_rental("owner-1", rental_id).success
        assert service.get_rental("moderator-1", rental_id).success
        assert service.get_rental("stranger", rental_id).error_code == "permission_denied"
        assert service.get_rental("renter-1", "rental_missing").error_code == "not_found"

    def test_wallet_balance_is_private(self, service: RentalService) -> None:
        assert service.get_wallet_balance("owner-1").success
        assert service.get_wallet_balance("renter-1", "owner-1").error_code == "permission_denied"
        assert service.get_wallet_balance("moderator-1", "owner-1").success

    def test_audit_trail(self, service: RentalService, driver: RentalDriver) -> None:
        rental_id = driver.active()
        kinds = [e.event_kind for e in service.event_log.events_for(rental_id)]
        assert kinds[:4] == [
            EventKind.RENTAL_REQUESTED,
            EventKind.RENTAL_APPROVED,
            EventKind.PAYMENT_SESSION_OPENED,
            EventKind.PAYMENT_CONFIRMED,
        ]
        assert kinds[-1] == EventKind.RENTAL_ACTIVATED


class TestNotificationFailures:
    def test_dispatcher_errors_do_not_undo_commit(self, resolver, provider) -> None:
        class Broken:
            def send(self, user_id, notification) -> None:
                raise RuntimeError("push service down")

        service = RentalService(
            resolver, payment_provider=provider, notifier=Broken(),
            catalog=InMemoryItemCatalog([camera()]), clock=fixed_now,
        )
        result = service.request_rental("renter-1", "item-1", START, END)
        assert result.success
        assert service.rentals.get(result.data["rental_id"]).status == RentalStatus.PENDING


class TestRestart:
    def _open(self, resolver: PolicyResolver, data_dir: Path) -> RentalService:
        return RentalService(
            resolver,
            payment_provider=SandboxPaymentProvider(),
            catalog=InMemoryItemCatalog([camera()]),
            ledger=LedgerStore(storage_path=data_dir / "ledger.jsonl"),
            event_log=EventLog(storage_path=data_dir / "events.jsonl"),
            clock=fixed_now,
        )

    def test_escrow_settles_after_restart(self, resolver: PolicyResolver, tmp_path: Path) -> None:
        before = self._open(resolver, tmp_path)
        rental_id = RentalDriver(before).active()
        before.close()

        after = self._open(resolver, tmp_path)
        assert after.get_rental("owner-1", rental_id).data["status"] == "active"
        assert after.ledger.balance("owner-1").pending == Decimal("450.00")
        assert after.confirm_returned("owner-1", rental_id).success
        assert after.confirm_received("renter-1", rental_id).data["status"] == "completed"
        assert after.ledger.balance("owner-1").available == Decimal("450.00")
        assert after.ledger.balance("owner-1").pending == Decimal("0")
        assert after.ledger.verify() == []
        after.close()

    def test_tier_count_and_freeze_restored(self, resolver: PolicyResolver, tmp_path: Path) -> None:
        before = self._open(resolver, tmp_path)
        driver = RentalDriver(before)
        done = driver.active()
        before.confirm_returned("owner-1", done)
        before.confirm_received("renter-1", done)
        disputed = driver.active(start=date(2026, 3, 20), end=date(2026, 3, 25))
        assert before.raise_dispute("renter-1", disputed, "Lens cracked").success
        before.close()

        after = self._open(resolver, tmp_path)
        assert after.owner_completed_rentals("owner-1") == 1
        assert after.ledger.is_frozen(disputed)
        assert after.ledger.balance("owner-1").locked == Decimal("450.00")
        resolved = after.resolve_dispute("moderator-1", disputed, "Split", "300.00", "250.00")
        assert resolved.data["status"] == "completed"
        assert not after.ledger.is_frozen(disputed)
        assert after.owner_completed_rentals("owner-1") == 2
        after.close()
