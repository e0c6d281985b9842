"""Policy resolver — typed access to marketplace parameters.

Parameters live in ``config/marketplace_params.json``. Secrets never do:
the webhook HMAC secret is read from the environment, with a ``.env`` file
next to the config directory loaded first (existing environment variables
win over the file).
"""

from __future__ import annotations

import json
import os
from decimal import Decimal
from pathlib import Path
from typing import Any, Optional

from dotenv import load_dotenv

from rentloop.compensation.engine import DEFAULT_TIERS, validate_tier_table
from rentloop.models.compensation import CommissionTier


PARAMS_FILENAME = "marketplace_params.json"
WEBHOOK_SECRET_ENV = "RENTLOOP_WEBHOOK_SECRET"
MODERATORS_ENV = "RENTLOOP_MODERATORS"


class PolicyResolver:
    """Resolves marketplace policy from a parameter dict.

    Usage:
        resolver = PolicyResolver.from_config_dir(Path("config"))
        rate = resolver.platform_fee_rate()
        tiers = resolver.commission_tiers()
    """

    def __init__(self, params: dict[str, Any]) -> None:
        self._params = params
        self._tiers = self._load_tiers(params)

    @classmethod
    def from_config_dir(
        cls,
        config_dir: Path,
        env_file: Optional[Path] = None,
    ) -> PolicyResolver:
        """Load parameters from a config directory and the matching .env."""
        load_dotenv(env_file or config_dir.parent / ".env")
        params_path = config_dir / PARAMS_FILENAME
        with params_path.open("r", encoding="utf-8") as handle:
            params = json.load(handle)
        return cls(params)

    @classmethod
    def defaults(cls) -> PolicyResolver:
        """Built-in parameters, for tests and tooling without a config dir."""
        return cls({})

    @property
    def params(self) -> dict[str, Any]:
        return dict(self._params)

    def currency(self) -> str:
        return self._params.get("currency", "EGP")

    def platform_fee_rate(self) -> Decimal:
        return Decimal(str(self._params.get("platform_fee_rate", "0.10")))

    def commission_tiers(self) -> tuple[CommissionTier, ...]:
        return self._tiers

    def provider_timeout_seconds(self) -> float:
        return float(self._params.get("payment", {}).get("provider_timeout_seconds", 10))

    def require_signature(self) -> bool:
        return bool(self._params.get("payment", {}).get("require_signature", False))

    def webhook_secret(self) -> Optional[str]:
        secret = os.environ.get(WEBHOOK_SECRET_ENV, "")
        return secret or None

    def minimum_payout(self) -> Decimal:
        return Decimal(str(self._params.get("payout", {}).get("minimum_amount", "1.00")))

    def moderators(self) -> frozenset[str]:
        configured = set(self._params.get("moderators", []))
        extra = os.environ.get(MODERATORS_ENV, "")
        configured.update(m.strip() for m in extra.split(",") if m.strip())
        return frozenset(configured)

    @staticmethod
    def _load_tiers(params: dict[str, Any]) -> tuple[CommissionTier, ...]:
        raw = params.get("commission_tiers")
        if raw is None:
            return DEFAULT_TIERS
        tiers = tuple(
            CommissionTier(
                name=t["name"],
                min_rentals=int(t["min_rentals"]),
                commission_rate=Decimal(str(t["commission_rate"])),
                description=t.get("description", ""),
            )
            for t in raw
        )
        errors = validate_tier_table(tiers)
        if errors:
            raise ValueError("Invalid commission tiers: " + "; ".join(errors))
        return tiers
