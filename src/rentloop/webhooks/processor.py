"""Payment webhook processor — authenticates, normalizes and dispatches.

Pipeline for one delivery:
1. Authenticity: verify the HMAC-SHA512 signature whenever one is sent,
   or always when ``require_signature`` is configured. Failure →
   ``unauthorized``, no state change.
2. Parse into a closed event variant. Undecodable body → ``invalid``.
3. Dispatch success/failure to the event handler, which applies the
   transition under the rental's lock. Redeliveries are acknowledged
   no-ops there.
4. Pending and unrecognized events are acknowledged without mutation.
5. An engine error while applying an event → ``error``; the rental is
   left as it was and the gateway is expected to redeliver.

Unknown orders are acknowledged too: a gateway retry cannot make a
missing rental appear.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import Any, Optional, Protocol

from rentloop.errors import EngineError, InvalidArgument
from rentloop.webhooks.events import (
    PaymentFailed,
    PaymentPending,
    PaymentSucceeded,
    UnrecognizedEvent,
    parse_event,
)
from rentloop.webhooks.signature import verify_signature

logger = logging.getLogger(__name__)


class AckStatus(str, enum.Enum):
    ACKNOWLEDGED = "acknowledged"
    UNAUTHORIZED = "unauthorized"
    INVALID = "invalid"
    ERROR = "error"


@dataclass(frozen=True)
class WebhookAck:
    """What the ingress tells the gateway."""
    status: AckStatus
    detail: str
    rental_id: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "detail": self.detail,
            "rental_id": self.rental_id,
        }


@dataclass(frozen=True)
class PaymentOutcome:
    """Result of applying one payment event to its rental.

    ``rental_id`` is None when no rental carries the event's order.
    """
    rental_id: Optional[str]
    detail: str


class PaymentEventHandler(Protocol):
    def on_payment_succeeded(self, event: PaymentSucceeded) -> PaymentOutcome:
        ...

    def on_payment_failed(self, event: PaymentFailed) -> PaymentOutcome:
        ...


class WebhookProcessor:
    """Entry point for payment gateway callbacks.

    Usage:
        processor = WebhookProcessor(service, secret="...", require_signature=True)
        ack = processor.handle(request_body, request_signature)
    """

    def __init__(
        self,
        handler: PaymentEventHandler,
        secret: Optional[str] = None,
        require_signature: bool = False,
    ) -> None:
        self._handler = handler
        self._secret = secret
        self._require_signature = require_signature

    def handle(self, raw_payload: bytes, signature: Optional[str] = None) -> WebhookAck:
        if signature or self._require_signature:
            if not self._secret or not verify_signature(self._secret, raw_payload, signature or ""):
                logger.warning("Rejected payment webhook: signature verification failed")
                return WebhookAck(AckStatus.UNAUTHORIZED, "Signature verification failed")

        try:
            event = parse_event(raw_payload)
        except InvalidArgument as e:
            logger.warning("Rejected payment webhook: %s", e.message)
            return WebhookAck(AckStatus.INVALID, e.message)

        if isinstance(event, UnrecognizedEvent):
            logger.info("Ignoring unrecognized payment webhook: %s", event.reason)
            return WebhookAck(AckStatus.ACKNOWLEDGED, f"Ignored: {event.reason}")
        if isinstance(event, PaymentPending):
            logger.info("Payment for order %s still pending", event.order_id)
            return WebhookAck(AckStatus.ACKNOWLEDGED, "Payment pending")

        try:
            if isinstance(event, PaymentSucceeded):
                outcome = self._handler.on_payment_succeeded(event)
            else:
                outcome = self._handler.on_payment_failed(event)
        except EngineError as e:
            logger.critical(
                "Payment webhook for order %s was not applied: %s", event.order_id, e.message,
            )
            return WebhookAck(AckStatus.ERROR, e.message)

        if outcome.rental_id is None:
            logger.warning("Payment webhook for unknown order %s", event.order_id)
        return WebhookAck(AckStatus.ACKNOWLEDGED, outcome.detail, outcome.rental_id)
