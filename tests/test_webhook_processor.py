"""Tests for payment webhook ingress — authenticity, parsing, idempotency."""

import json
import logging
import pytest
from decimal import Decimal

from rentloop.errors import Internal
from rentloop.models.ledger import TransactionType
from rentloop.models.rental import RentalStatus
from rentloop.service import RentalService
from rentloop.webhooks.events import (
    PaymentFailed,
    PaymentPending,
    PaymentSucceeded,
    UnrecognizedEvent,
    classify,
)
from rentloop.webhooks.processor import (
    AckStatus,
    PaymentOutcome,
    WebhookProcessor,
)
from rentloop.webhooks.signature import compute_signature, verify_signature

from conftest import WEBHOOK_SECRET, RentalDriver, fail_next_append


class _Broken:
    def on_payment_succeeded(self, event: PaymentSucceeded) -> PaymentOutcome:
        raise Internal("Concurrent modification of rental rental-1")

    def on_payment_failed(self, event: PaymentFailed) -> PaymentOutcome:
        raise Internal("Concurrent modification of rental rental-1")


class _Recorder:
    def __init__(self) -> None:
        self.succeeded: list[PaymentSucceeded] = []
        self.failed: list[PaymentFailed] = []

    def on_payment_succeeded(self, event: PaymentSucceeded) -> PaymentOutcome:
        self.succeeded.append(event)
        return PaymentOutcome("rental-1", "applied")

    def on_payment_failed(self, event: PaymentFailed) -> PaymentOutcome:
        self.failed.append(event)
        return PaymentOutcome(None, "unknown")


def _body(**fields) -> bytes:
    return json.dumps(fields).encode("utf-8")


class TestSignature:
    def test_round_trip(self) -> None:
        sig = compute_signature("s3cret", b"{}")
        assert len(sig) == 128
        assert verify_signature("s3cret", b"{}", sig)
        assert verify_signature("s3cret", b"{}", sig.upper())

    def test_tampered_payload(self) -> None:
        sig = compute_signature("s3cret", b'{"a": 1}')
        assert not verify_signature("s3cret", b'{"a": 2}', sig)

    def test_empty_inputs(self) -> None:
        assert not verify_signature("", b"{}", "abc")
        assert not verify_signature("s3cret", b"{}", "")


class TestClassify:
    def test_flat_success(self) -> None:
        event = classify({"orderId": "o-1", "transactionId": 7, "success": True, "amountCents": 600})
        assert event == PaymentSucceeded("o-1", "7", 600)

    def test_string_flags(self) -> None:
        event = classify({"order": "o-1", "id": "t", "success": "true", "pending": "false"})
        assert isinstance(event, PaymentSucceeded)

    def test_pending_wins(self) -> None:
        event = classify({"orderId": "o-1", "success": True, "pending": True})
        assert isinstance(event, PaymentPending)

    def test_failure(self) -> None:
        event = classify({"orderId": "o-1", "success": False})
        assert event == PaymentFailed("o-1", "")

    def test_envelope(self) -> None:
        event = classify({
            "type": "TRANSACTION",
            "obj": {"id": 99, "order": {"id": 123}, "success": True, "pending": False,
                    "amount_cents": 60000},
        })
        assert event == PaymentSucceeded("123", "99", 60000)

    def test_other_envelope_types_unrecognized(self) -> None:
        event = classify({"type": "TOKEN", "obj": {"token": "x"}})
        assert isinstance(event, UnrecognizedEvent)

    def test_missing_order_unrecognized(self) -> None:
        assert isinstance(classify({"success": True}), UnrecognizedEvent)

    @pytest.mark.parametrize("data", [
        {"orderId": "o-1", "transactionId": "t1"},
        {"orderId": "o-1", "transactionId": "t1", "success": None},
        {"type": "TRANSACTION", "obj": {"id": 1, "order": {"id": 2}, "pending": False}},
    ])
    def test_missing_outcome_unrecognized(self, data: dict) -> None:
        event = classify(data)
        assert isinstance(event, UnrecognizedEvent)
        assert event.reason == "Payload carries no outcome"


class TestProcessor:
    def test_unsigned_accepted_when_not_required(self) -> None:
        handler = _Recorder()
        ack = WebhookProcessor(handler, secret="s").handle(_body(orderId="o", success=True))
        assert ack.status == AckStatus.ACKNOWLEDGED
        assert ack.rental_id == "rental-1"
        assert len(handler.succeeded) == 1

    def test_unsigned_rejected_when_required(self) -> None:
        handler = _Recorder()
        processor = WebhookProcessor(handler, secret="s", require_signature=True)
        ack = processor.handle(_body(orderId="o", success=True))
        assert ack.status == AckStatus.UNAUTHORIZED
        assert not handler.succeeded

    def test_bad_signature_rejected_even_if_optional(self) -> None:
        handler = _Recorder()
        ack = WebhookProcessor(handler, secret="s").handle(_body(orderId="o"), "deadbeef")
        assert ack.status == AckStatus.UNAUTHORIZED

    def test_required_without_secret_rejects(self) -> None:
        processor = WebhookProcessor(_Recorder(), secret=None, require_signature=True)
        ack = processor.handle(_body(orderId="o"), "anything")
        assert ack.status == AckStatus.UNAUTHORIZED

    def test_valid_signature(self) -> None:
        handler = _Recorder()
        raw = _body(orderId="o", success=False)
        processor = WebhookProcessor(handler, secret="s", require_signature=True)
        ack = processor.handle(raw, compute_signature("s", raw))
        assert ack.status == AckStatus.ACKNOWLEDGED
        assert len(handler.failed) == 1

    @pytest.mark.parametrize("raw", [b"not json", b"[1, 2]", b"\xff\xfe", _body(orderId="o", success=True, amountCents="lots")])
    def test_invalid_bodies(self, raw: bytes) -> None:
        ack = WebhookProcessor(_Recorder()).handle(raw)
        assert ack.status == AckStatus.INVALID

    def test_pending_acknowledged_without_dispatch(self) -> None:
        handler = _Recorder()
        ack = WebhookProcessor(handler).handle(_body(orderId="o", pending=True))
        assert ack.status == AckStatus.ACKNOWLEDGED
        assert not handler.succeeded and not handler.failed

    def test_unknown_order_logged(self, caplog: pytest.LogCaptureFixture) -> None:
        with caplog.at_level(logging.WARNING, logger="rentloop.webhooks.processor"):
            ack = WebhookProcessor(_Recorder()).handle(_body(orderId="ghost", success=False))
        assert ack.status == AckStatus.ACKNOWLEDGED
        assert ack.rental_id is None
        assert "ghost" in caplog.text

    def test_engine_error_is_error_ack(self, caplog: pytest.LogCaptureFixture) -> None:
        with caplog.at_level(logging.CRITICAL, logger="rentloop.webhooks.processor"):
            ack = WebhookProcessor(_Broken()).handle(_body(orderId="o", success=True))
        assert ack.status == AckStatus.ERROR
        assert ack.to_dict()["status"] == "error"
        assert "Concurrent modification" in ack.detail
        assert "not applied" in caplog.text


class TestServiceWebhooks:
    def test_redelivery_is_noop(self, service: RentalService, driver: RentalDriver) -> None:
        rental_id = driver.request()
        driver.approve(rental_id)
        first = driver.pay(rental_id)
        entries = service.ledger.count
        version = service.rentals.get(rental_id).version
        for _ in range(3):
            again = driver.pay(rental_id)
            assert again.status == AckStatus.ACKNOWLEDGED
        assert first.rental_id == rental_id
        assert service.ledger.count == entries
        assert service.rentals.get(rental_id).version == version
        payments = [
            e for e in service.ledger.transactions(rental_id=rental_id)
            if e.type == TransactionType.RENTAL_PAYMENT
        ]
        assert len(payments) == 1

    def test_unsigned_delivery_accepted(self, service: RentalService, driver: RentalDriver) -> None:
        rental_id = driver.request()
        driver.approve(rental_id)
        ack = driver.pay(rental_id, signed=False)
        assert ack.status == AckStatus.ACKNOWLEDGED
        assert service.rentals.get(rental_id).status == RentalStatus.AWAITING_HANDOVER

    def test_forged_signature_changes_nothing(self, service: RentalService, driver: RentalDriver) -> None:
        rental_id = driver.request()
        order_id = driver.approve(rental_id)
        raw = driver.payload(order_id)
        ack = service.handle_payment_webhook(raw, compute_signature("wrong-" + WEBHOOK_SECRET, raw))
        assert ack.status == AckStatus.UNAUTHORIZED
        assert service.rentals.get(rental_id).status == RentalStatus.PAYMENT_PENDING
        assert service.ledger.count == 0

    def test_failure_rejects_rental(self, service: RentalService, driver: RentalDriver, notifier) -> None:
        rental_id = driver.request()
        driver.approve(rental_id)
        ack = driver.pay(rental_id, success=False)
        assert ack.status == AckStatus.ACKNOWLEDGED
        rental = service.rentals.get(rental_id)
        assert rental.status == RentalStatus.REJECTED
        assert rental.payment.payment_status.value == "failed"
        assert service.ledger.count == 0
        assert "payment_failed" in notifier.types_for("renter-1")

    def test_late_failure_after_success_ignored(self, service: RentalService, driver: RentalDriver) -> None:
        rental_id = driver.paid()
        ack = driver.pay(rental_id, success=False)
        assert ack.status == AckStatus.ACKNOWLEDGED
        assert service.rentals.get(rental_id).status == RentalStatus.AWAITING_HANDOVER

    def test_pending_leaves_rental_untouched(self, service: RentalService, driver: RentalDriver) -> None:
        rental_id = driver.request()
        driver.approve(rental_id)
        driver.pay(rental_id, pending=True)
        assert service.rentals.get(rental_id).status == RentalStatus.PAYMENT_PENDING

    def test_amount_mismatch_recorded_not_applied(
        self, service: RentalService, driver: RentalDriver, caplog: pytest.LogCaptureFixture,
    ) -> None:
        rental_id = driver.request()
        driver.approve(rental_id)
        with caplog.at_level(logging.ERROR, logger="rentloop.service"):
            ack = driver.pay(rental_id, amount_cents=100)
        assert ack.status == AckStatus.ACKNOWLEDGED
        rental = service.rentals.get(rental_id)
        assert rental.status == RentalStatus.PAYMENT_PENDING
        assert rental.timeline[-1].event == "payment_amount_mismatch"
        assert service.ledger.count == 0
        assert "mismatch" in caplog.text

    def test_envelope_shape_end_to_end(self, service: RentalService, driver: RentalDriver) -> None:
        rental_id = driver.request()
        order_id = driver.approve(rental_id)
        raw = json.dumps({
            "type": "TRANSACTION",
            "obj": {"id": 5, "order": {"id": order_id}, "success": True,
                    "pending": False, "amount_cents": 60000},
        }).encode("utf-8")
        ack = service.handle_payment_webhook(raw, compute_signature(WEBHOOK_SECRET, raw))
        assert ack.rental_id == rental_id
        assert service.ledger.balance("owner-1").pending == Decimal("450.00")

    def test_payload_without_outcome_leaves_rental_pending(
        self, service: RentalService, driver: RentalDriver,
    ) -> None:
        rental_id = driver.request()
        order_id = driver.approve(rental_id)
        raw = json.dumps({"orderId": order_id, "transactionId": "t1"}).encode("utf-8")
        ack = service.handle_payment_webhook(raw, compute_signature(WEBHOOK_SECRET, raw))
        assert ack.status == AckStatus.ACKNOWLEDGED
        assert ack.rental_id is None
        rental = service.rentals.get(rental_id)
        assert rental.status == RentalStatus.PAYMENT_PENDING
        assert rental.payment.payment_status.value == "pending"
        assert driver.pay(rental_id).detail == "Payment applied"

    def test_redelivery_after_failed_commit_posts_once(
        self, service: RentalService, driver: RentalDriver, monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        rental_id = driver.request()
        driver.approve(rental_id)
        fail_next_append(monkeypatch, service.event_log)
        with pytest.raises(OSError):
            driver.pay(rental_id)
        assert service.rentals.get(rental_id).status == RentalStatus.PAYMENT_PENDING

        ack = driver.pay(rental_id)
        assert ack.detail == "Payment applied"
        owner_entries = [e.amount for e in service.ledger.transactions(user_id="owner-1")]
        assert owner_entries == [Decimal("450.00")]
        assert service.ledger.balance("owner-1").pending == Decimal("450.00")

        rental = service.rentals.get(rental_id)
        posting = service.ledger.posting_for_key(f"{rental_id}:payment_captured")
        income = posting.entry_for("owner-1", TransactionType.RENTAL_INCOME)
        assert rental.status == RentalStatus.AWAITING_HANDOVER
        assert rental.payment.owner_income_transaction_id == income.transaction_id
        assert service.ledger.verify() == []
