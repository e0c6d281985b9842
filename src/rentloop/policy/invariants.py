"""Invariant checks against the marketplace parameter file."""

from __future__ import annotations

import json
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any

from rentloop.compensation.engine import validate_tier_table
from rentloop.models.compensation import CommissionTier


def load_json(path: Path) -> dict:
    with path.open("r", encoding="utf-8") as handle:
        return json.load(handle)


def _decimal(value: Any, label: str, errors: list[str]) -> Decimal | None:
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        errors.append(f"{label} must be a decimal, got {value!r}")
        return None


def check_params(params: dict[str, Any]) -> list[str]:
    """Validate a parameter dict. Returns errors (empty = OK)."""
    errors: list[str] = []

    fee_rate = _decimal(params.get("platform_fee_rate"), "platform_fee_rate", errors)
    if fee_rate is not None and not (Decimal("0") <= fee_rate < Decimal("1")):
        errors.append("platform_fee_rate must be in [0, 1)")

    raw_tiers = params.get("commission_tiers") or []
    tiers: list[CommissionTier] = []
    for i, raw in enumerate(raw_tiers):
        rate = _decimal(raw.get("commission_rate"), f"commission_tiers[{i}].commission_rate", errors)
        if rate is None:
            continue
        tiers.append(CommissionTier(
            name=raw.get("name", f"tier-{i}"),
            min_rentals=int(raw.get("min_rentals", -1)),
            commission_rate=rate,
        ))
    errors.extend(validate_tier_table(tiers))

    payment = params.get("payment", {})
    timeout = payment.get("provider_timeout_seconds", 0)
    if not isinstance(timeout, (int, float)) or timeout <= 0:
        errors.append("payment.provider_timeout_seconds must be > 0")

    minimum = _decimal(params.get("payout", {}).get("minimum_amount", "0"), "payout.minimum_amount", errors)
    if minimum is not None and minimum < Decimal("0"):
        errors.append("payout.minimum_amount cannot be negative")

    if not isinstance(params.get("currency"), str) or len(params["currency"]) != 3:
        errors.append("currency must be a 3-letter code")

    return errors


def check(params_path: Path) -> int:
    """Print the result of the parameter checks. Returns an exit code."""
    errors = check_params(load_json(params_path))
    if errors:
        print("Invariant check failed:")
        for error in errors:
            print(f"  - {error}")
        return 1
    print("Invariant checks passed.")
    return 0
