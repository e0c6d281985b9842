"""Payment events — the closed set of variants a webhook payload becomes.

Raw gateway payloads are normalized here before anything touches the
rental state machine. Two payload shapes are accepted:

Flat (gateway redirect/callback style):
    {"orderId": "...", "transactionId": "...", "success": true,
     "pending": false, "amountCents": 60000}

Envelope (gateway processed-transaction callback):
    {"type": "TRANSACTION",
     "obj": {"id": ..., "order": {"id": ...}, "success": true,
             "pending": false, "amount_cents": 60000}}

Classification:
    pending              → PaymentPending
    success, not pending → PaymentSucceeded
    success false        → PaymentFailed
    no success flag      → UnrecognizedEvent (acknowledged, no state change)
Anything without an order reference, or an envelope of another type,
is an UnrecognizedEvent.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Optional, Union

from rentloop.errors import InvalidArgument


@dataclass(frozen=True)
class PaymentSucceeded:
    order_id: str
    transaction_id: str
    amount_cents: Optional[int] = None


@dataclass(frozen=True)
class PaymentFailed:
    order_id: str
    transaction_id: str


@dataclass(frozen=True)
class PaymentPending:
    order_id: str
    transaction_id: str


@dataclass(frozen=True)
class UnrecognizedEvent:
    reason: str
    raw: dict[str, Any] = field(default_factory=dict)


PaymentEvent = Union[PaymentSucceeded, PaymentFailed, PaymentPending, UnrecognizedEvent]


def _flag(value: Any) -> bool:
    """Gateways send booleans either as JSON booleans or as strings."""
    if isinstance(value, str):
        return value.strip().lower() == "true"
    return bool(value)


def _cents(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise InvalidArgument(f"Amount in cents is not an integer: {value!r}") from None


def _fields(data: dict[str, Any]) -> Optional[tuple[Any, Any, Any, Any, Any]]:
    if "obj" in data or "type" in data:
        if data.get("type") != "TRANSACTION" or not isinstance(data.get("obj"), dict):
            return None
        obj = data["obj"]
        order = obj.get("order")
        order_id = order.get("id") if isinstance(order, dict) else order
        return (
            order_id,
            obj.get("id"),
            obj.get("success"),
            obj.get("pending"),
            obj.get("amount_cents"),
        )
    return (
        data.get("orderId", data.get("order")),
        data.get("transactionId", data.get("id")),
        data.get("success"),
        data.get("pending"),
        data.get("amountCents", data.get("amount_cents")),
    )


def classify(data: dict[str, Any]) -> PaymentEvent:
    """Turn a decoded payload into one of the event variants."""
    fields = _fields(data)
    if fields is None:
        return UnrecognizedEvent(f"Unsupported event type: {data.get('type')!r}", data)
    order_id, transaction_id, success, pending, amount = fields
    if order_id in (None, ""):
        return UnrecognizedEvent("Payload carries no order reference", data)

    order_id = str(order_id)
    transaction_id = "" if transaction_id is None else str(transaction_id)
    if _flag(pending):
        return PaymentPending(order_id, transaction_id)
    if success is None or success == "":
        return UnrecognizedEvent("Payload carries no outcome", data)
    if _flag(success):
        return PaymentSucceeded(order_id, transaction_id, _cents(amount))
    return PaymentFailed(order_id, transaction_id)


def parse_event(raw_payload: bytes) -> PaymentEvent:
    """Decode and classify a raw webhook body.

    Raises:
        InvalidArgument: the body is not a JSON object.
    """
    try:
        data = json.loads(raw_payload.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise InvalidArgument(f"Webhook body is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise InvalidArgument("Webhook body must be a JSON object")
    return classify(data)
