"""Payment provider contract and the timeout-guarded gateway wrapper.

The engine never talks to a card gateway directly. It depends on the
``PaymentProvider`` Protocol below, injected into the service. Swapping the
provider requires zero changes to escrow, commission or ledger logic.

Provider calls run outside every rental and ledger lock and are bounded by
``provider_timeout_seconds``. A raised error or a timeout surfaces as
``ExternalFailure``: a first-class outcome the caller turns into a
rejected rental, never a retryable system error.
"""

from __future__ import annotations

import itertools
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Callable, Optional, Protocol, TypeVar, runtime_checkable
from uuid import uuid4

from rentloop.errors import ExternalFailure

logger = logging.getLogger(__name__)

T = TypeVar("T")


def to_minor_units(amount: Decimal) -> int:
    """Currency units → integer minor units (cents, piastres)."""
    return int((amount * 100).to_integral_value())


class PaymentProviderError(Exception):
    """Raised by provider implementations when the gateway refuses a call."""


@runtime_checkable
class PaymentProvider(Protocol):
    """Abstract contract for payment gateway integrations."""

    def create_order(self, amount: Decimal, currency: str) -> str:
        """Register an order for ``amount`` and return its provider ID."""
        ...

    def create_payment_key(
        self,
        amount: Decimal,
        currency: str,
        order_id: str,
        billing_data: dict[str, Any],
    ) -> str:
        """Issue the client-side payment key for an order."""
        ...


@dataclass(frozen=True)
class PaymentSession:
    order_id: str
    payment_key: str


class ProviderGateway:
    """Runs provider calls with a timeout and normalizes failures.

    Usage:
        gateway = ProviderGateway(provider, timeout_seconds=10)
        session = gateway.open_session(Decimal("600.00"), "EGP", billing)
    """

    def __init__(
        self,
        provider: PaymentProvider,
        timeout_seconds: float = 10.0,
        max_workers: int = 4,
    ) -> None:
        self._provider = provider
        self._timeout = timeout_seconds
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="payment-provider",
        )

    @property
    def provider(self) -> PaymentProvider:
        return self._provider

    def open_session(
        self,
        amount: Decimal,
        currency: str,
        billing_data: dict[str, Any],
    ) -> PaymentSession:
        """Create an order and a payment key for it.

        Raises:
            ExternalFailure: the provider raised or did not answer in time.
        """
        order_id = self._call(
            "create_order", self._provider.create_order, amount, currency,
        )
        payment_key = self._call(
            "create_payment_key", self._provider.create_payment_key,
            amount, currency, order_id, billing_data,
        )
        return PaymentSession(order_id=str(order_id), payment_key=str(payment_key))

    def shutdown(self) -> None:
        """Stop the worker threads. Later calls fail with ExternalFailure."""
        self._executor.shutdown(wait=False)

    def _call(self, name: str, fn: Callable[..., T], *args: Any) -> T:
        try:
            future = self._executor.submit(fn, *args)
            return future.result(timeout=self._timeout)
        except FutureTimeout:
            future.cancel()
            logger.warning("Payment provider %s timed out after %ss", name, self._timeout)
            raise ExternalFailure(
                f"Payment provider did not answer {name} within {self._timeout}s"
            ) from None
        except Exception as e:
            logger.warning("Payment provider %s failed: %s", name, e)
            raise ExternalFailure(f"Payment provider {name} failed: {e}") from e


class SandboxPaymentProvider:
    """Deterministic in-process provider for development and tests.

    Order IDs are sequential under a per-instance prefix, so a restarted
    process never reissues an order ID already held by a stored rental. Set ``fail_with`` to make every call raise,
    or ``delay_seconds`` to simulate a slow gateway.
    """

    def __init__(
        self,
        fail_with: Optional[str] = None,
        delay_seconds: float = 0.0,
    ) -> None:
        self.fail_with = fail_with
        self.delay_seconds = delay_seconds
        self._counter = itertools.count(1)
        self._prefix = f"sandbox-order-{uuid4().hex[:8]}"
        self._lock = threading.Lock()
        self.orders: dict[str, int] = {}

    def create_order(self, amount: Decimal, currency: str) -> str:
        self._simulate()
        with self._lock:
            order_id = f"{self._prefix}-{next(self._counter)}"
            self.orders[order_id] = to_minor_units(amount)
        return order_id

    def create_payment_key(
        self,
        amount: Decimal,
        currency: str,
        order_id: str,
        billing_data: dict[str, Any],
    ) -> str:
        self._simulate()
        if order_id not in self.orders:
            raise PaymentProviderError(f"Unknown order: {order_id}")
        return f"sandbox-key-{order_id}"

    def _simulate(self) -> None:
        if self.delay_seconds:
            time.sleep(self.delay_seconds)
        if self.fail_with:
            raise PaymentProviderError(self.fail_with)
