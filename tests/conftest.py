"""Shared fixtures — a fully wired service with in-process collaborators."""

import json
import pytest
from datetime import date, datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any, Optional

from rentloop.collaborators import (
    InMemoryItemCatalog,
    RecordingDispatcher,
    StaticIdentityVerifier,
)
from rentloop.compensation.payment_provider import SandboxPaymentProvider
from rentloop.models.rental import Item
from rentloop.persistence.event_log import EventLog
from rentloop.policy.resolver import WEBHOOK_SECRET_ENV, PolicyResolver
from rentloop.service import RentalService
from rentloop.webhooks.signature import compute_signature


CONFIG_DIR = Path(__file__).resolve().parents[1] / "config"
WEBHOOK_SECRET = "test-webhook-secret"
START = date(2026, 3, 10)
END = date(2026, 3, 15)


def fixed_now() -> datetime:
    return datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


def fail_next_append(monkeypatch: pytest.MonkeyPatch, log: EventLog) -> None:
    """Make the next event-log append raise, as a full disk would."""
    original = log.append_many
    calls = []

    def flaky(records):
        calls.append(len(records))
        if len(calls) == 1:
            raise OSError("disk full")
        return original(records)

    monkeypatch.setattr(log, "append_many", flaky)


def camera() -> Item:
    return Item(
        item_id="item-1",
        owner_id="owner-1",
        title="Camera",
        daily_rate=Decimal("100.00"),
        security_deposit=Decimal("50.00"),
        currency="EGP",
    )


class RentalDriver:
    """Walks a rental through its lifecycle via the public service API."""

    def __init__(self, service: RentalService) -> None:
        self.service = service

    def request(self, renter: str = "renter-1", **kwargs: Any) -> str:
        result = self.service.request_rental(
            renter, kwargs.pop("item_id", "item-1"),
            kwargs.pop("start", START), kwargs.pop("end", END), **kwargs,
        )
        assert result.success, result.errors
        return result.data["rental_id"]

    def approve(self, rental_id: str) -> str:
        result = self.service.respond_to_rental("owner-1", rental_id, "approve")
        assert result.success, result.errors
        return self.service.rentals.get(rental_id).payment.provider_order_id

    def payload(
        self,
        order_id: str,
        success: bool = True,
        pending: bool = False,
        amount_cents: Optional[int] = 60000,
        transaction_id: str = "gw-txn-1",
    ) -> bytes:
        body: dict[str, Any] = {
            "orderId": order_id,
            "transactionId": transaction_id,
            "success": success,
            "pending": pending,
        }
        if amount_cents is not None:
            body["amountCents"] = amount_cents
        return json.dumps(body).encode("utf-8")

    def pay(self, rental_id: str, signed: bool = True, **kwargs: Any):
        order_id = self.service.rentals.get(rental_id).payment.provider_order_id
        raw = self.payload(order_id, **kwargs)
        signature = compute_signature(WEBHOOK_SECRET, raw) if signed else None
        return self.service.handle_payment_webhook(raw, signature)

    def paid(self, **kwargs: Any) -> str:
        rental_id = self.request(**kwargs)
        self.approve(rental_id)
        ack = self.pay(rental_id)
        assert ack.status.value == "acknowledged"
        return rental_id

    def active(self, **kwargs: Any) -> str:
        rental_id = self.paid(**kwargs)
        assert self.service.confirm_handover("renter-1", rental_id, "renter").success
        assert self.service.confirm_handover("owner-1", rental_id, "owner").success
        return rental_id


@pytest.fixture
def notifier() -> RecordingDispatcher:
    return RecordingDispatcher()


@pytest.fixture
def provider() -> SandboxPaymentProvider:
    return SandboxPaymentProvider()


@pytest.fixture
def identity() -> StaticIdentityVerifier:
    return StaticIdentityVerifier(verify_all=True)


@pytest.fixture
def resolver(monkeypatch: pytest.MonkeyPatch) -> PolicyResolver:
    monkeypatch.setenv(WEBHOOK_SECRET_ENV, WEBHOOK_SECRET)
    monkeypatch.delenv("RENTLOOP_MODERATORS", raising=False)
    return PolicyResolver.from_config_dir(CONFIG_DIR)


@pytest.fixture
def service(
    resolver: PolicyResolver,
    provider: SandboxPaymentProvider,
    notifier: RecordingDispatcher,
    identity: StaticIdentityVerifier,
) -> RentalService:
    return RentalService(
        resolver,
        payment_provider=provider,
        notifier=notifier,
        identity=identity,
        catalog=InMemoryItemCatalog([camera()]),
        clock=fixed_now,
    )


@pytest.fixture
def driver(service: RentalService) -> RentalDriver:
    return RentalDriver(service)
