"""Compensation subsystem — commission, pricing, escrow planning, wallet ledger."""

from rentloop.compensation.engine import CommissionEngine
from rentloop.compensation.escrow import EscrowPlanner
from rentloop.compensation.ledger import LedgerStore

__all__ = [
    "CommissionEngine",
    "EscrowPlanner",
    "LedgerStore",
]
