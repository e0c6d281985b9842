"""Webhook authenticity — HMAC-SHA512 over the raw request body."""

from __future__ import annotations

import hashlib
import hmac


def compute_signature(secret: str, payload: bytes) -> str:
    """Hex HMAC-SHA512 of ``payload`` keyed with ``secret``."""
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha512).hexdigest()


def verify_signature(secret: str, payload: bytes, signature: str) -> bool:
    """Constant-time check of a hex signature against the payload."""
    if not secret or not signature:
        return False
    expected = compute_signature(secret, payload)
    return hmac.compare_digest(expected, signature.strip().lower())
