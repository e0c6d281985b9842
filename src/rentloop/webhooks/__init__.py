"""Payment gateway webhooks — signature check, event parsing, dispatch."""

from rentloop.webhooks.processor import AckStatus, WebhookAck, WebhookProcessor

__all__ = ["AckStatus", "WebhookAck", "WebhookProcessor"]
