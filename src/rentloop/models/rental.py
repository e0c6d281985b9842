"""Rental models — items, rental requests, handover, completion, disputes.

A rental request is the contract between one owner and one renter for one
item over a date range. It is mutated only through named state-machine
transitions, carries an append-only timeline, and is never deleted:
terminal rentals are kept for audit.

Rental lifecycle:
    PENDING → APPROVED → PAYMENT_PENDING → AWAITING_HANDOVER → ACTIVE → COMPLETED
    PENDING → REJECTED | CANCELLED
    APPROVED / PAYMENT_PENDING → REJECTED   (provider failure, payment failure)
    AWAITING_HANDOVER / ACTIVE → DISPUTED → COMPLETED | CANCELLED
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Optional

from rentloop.models.compensation import PricingSnapshot


class RentalStatus(str, enum.Enum):
    """Lifecycle state of a rental request."""
    PENDING = "pending"
    APPROVED = "approved"
    PAYMENT_PENDING = "payment_pending"
    AWAITING_HANDOVER = "awaiting_handover"
    ACTIVE = "active"
    COMPLETED = "completed"
    REJECTED = "rejected"
    CANCELLED = "cancelled"
    DISPUTED = "disputed"


class PaymentStatus(str, enum.Enum):
    NONE = "none"
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"


class PartyRole(str, enum.Enum):
    OWNER = "owner"
    RENTER = "renter"


class DisputeStatus(str, enum.Enum):
    OPEN = "open"
    INVESTIGATING = "investigating"
    RESOLVED = "resolved"
    CLOSED = "closed"


@dataclass(frozen=True)
class Item:
    """Listing reference data consumed from the item catalog."""
    item_id: str
    owner_id: str
    title: str
    daily_rate: Decimal
    security_deposit: Decimal
    currency: str
    weekly_rate: Optional[Decimal] = None
    monthly_rate: Optional[Decimal] = None
    delivery_fee: Decimal = Decimal("0")
    is_available: bool = True


@dataclass
class HandoverState:
    renter_confirmed: bool = False
    owner_confirmed: bool = False
    renter_confirmed_utc: Optional[datetime] = None
    owner_confirmed_utc: Optional[datetime] = None

    @property
    def both_confirmed(self) -> bool:
        return self.renter_confirmed and self.owner_confirmed


@dataclass(frozen=True)
class DamageReport:
    description: str
    amount: Decimal
    images: tuple[str, ...] = ()


@dataclass
class CompletionState:
    item_received: bool = False
    item_received_utc: Optional[datetime] = None
    item_returned: bool = False
    item_returned_utc: Optional[datetime] = None
    damage_report: Optional[DamageReport] = None
    deposit_refund: Optional[Decimal] = None
    damage_deduction: Optional[Decimal] = None
    owner_payout: Optional[Decimal] = None
    completed_utc: Optional[datetime] = None


@dataclass
class PaymentInfo:
    provider_order_id: Optional[str] = None
    provider_payment_key: Optional[str] = None
    provider_transaction_id: Optional[str] = None
    payment_status: PaymentStatus = PaymentStatus.NONE
    owner_income_transaction_id: Optional[str] = None


@dataclass(frozen=True)
class TimelineEntry:
    """One audit-trail record. Never mutated once appended."""
    event: str
    actor: str
    timestamp_utc: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class DisputeResolution:
    decision: str
    refund_amount: Decimal
    owner_compensation: Decimal
    resolved_by: str
    resolved_utc: datetime


@dataclass
class Dispute:
    """A dispute raised by one party against the other."""
    rental_id: str
    reported_by: str
    reported_against: str
    reporter_role: PartyRole
    reason: str
    evidence: list[str] = field(default_factory=list)
    status: DisputeStatus = DisputeStatus.OPEN
    opened_utc: Optional[datetime] = None
    resolution: Optional[DisputeResolution] = None


@dataclass
class RentalRequest:
    """A rental negotiation/contract between an owner and a renter."""
    rental_id: str
    item_id: str
    owner_id: str
    renter_id: str
    requested_start: date
    requested_end: date
    pricing: PricingSnapshot
    status: RentalStatus = RentalStatus.PENDING
    delivery: bool = False
    message: str = ""
    confirmed_start: Optional[date] = None
    confirmed_end: Optional[date] = None
    actual_start: Optional[datetime] = None
    actual_end: Optional[datetime] = None
    handover: HandoverState = field(default_factory=HandoverState)
    completion: CompletionState = field(default_factory=CompletionState)
    payment: PaymentInfo = field(default_factory=PaymentInfo)
    dispute: Optional[Dispute] = None
    timeline: list[TimelineEntry] = field(default_factory=list)
    created_utc: Optional[datetime] = None
    updated_utc: Optional[datetime] = None
    version: int = 0

    def record(
        self,
        event: str,
        actor: str,
        now: datetime,
        details: Optional[dict[str, Any]] = None,
    ) -> TimelineEntry:
        """Append a timeline entry. The timeline is never rewritten."""
        entry = TimelineEntry(
            event=event,
            actor=actor,
            timestamp_utc=now,
            details=dict(details or {}),
        )
        self.timeline.append(entry)
        self.updated_utc = now
        return entry

    def role_of(self, actor_id: str) -> Optional[PartyRole]:
        if actor_id == self.owner_id:
            return PartyRole.OWNER
        if actor_id == self.renter_id:
            return PartyRole.RENTER
        return None

    def counterparty(self, actor_id: str) -> str:
        return self.renter_id if actor_id == self.owner_id else self.owner_id

    @property
    def occupied_dates(self) -> tuple[date, date]:
        return (
            self.confirmed_start or self.requested_start,
            self.confirmed_end or self.requested_end,
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "rental_id": self.rental_id,
            "item_id": self.item_id,
            "owner_id": self.owner_id,
            "renter_id": self.renter_id,
            "status": self.status.value,
            "requested_start": self.requested_start.isoformat(),
            "requested_end": self.requested_end.isoformat(),
            "confirmed_start": _iso(self.confirmed_start),
            "confirmed_end": _iso(self.confirmed_end),
            "pricing": self.pricing.to_dict(),
            "handover": {
                "renter_confirmed": self.handover.renter_confirmed,
                "owner_confirmed": self.handover.owner_confirmed,
            },
            "completion": {
                "item_received": self.completion.item_received,
                "item_returned": self.completion.item_returned,
                "deposit_refund": _money(self.completion.deposit_refund),
                "damage_deduction": _money(self.completion.damage_deduction),
                "owner_payout": _money(self.completion.owner_payout),
            },
            "payment": {
                "provider_order_id": self.payment.provider_order_id,
                "provider_payment_key": self.payment.provider_payment_key,
                "payment_status": self.payment.payment_status.value,
            },
            "timeline": [
                {
                    "event": e.event,
                    "actor": e.actor,
                    "timestamp_utc": e.timestamp_utc.isoformat(),
                    "details": e.details,
                }
                for e in self.timeline
            ],
            "version": self.version,
        }
        if self.dispute is not None:
            data["dispute"] = {
                "status": self.dispute.status.value,
                "reported_by": self.dispute.reported_by,
                "reason": self.dispute.reason,
            }
        return data

    def to_record(self) -> dict[str, Any]:
        """Full JSON-safe state, for persistence. ``to_dict`` is the API view."""
        report = self.completion.damage_report
        dispute = self.dispute
        return {
            "rental_id": self.rental_id,
            "item_id": self.item_id,
            "owner_id": self.owner_id,
            "renter_id": self.renter_id,
            "requested_start": self.requested_start.isoformat(),
            "requested_end": self.requested_end.isoformat(),
            "pricing": self.pricing.to_dict(),
            "status": self.status.value,
            "delivery": self.delivery,
            "message": self.message,
            "confirmed_start": _iso(self.confirmed_start),
            "confirmed_end": _iso(self.confirmed_end),
            "actual_start": _iso(self.actual_start),
            "actual_end": _iso(self.actual_end),
            "handover": {
                "renter_confirmed": self.handover.renter_confirmed,
                "owner_confirmed": self.handover.owner_confirmed,
                "renter_confirmed_utc": _iso(self.handover.renter_confirmed_utc),
                "owner_confirmed_utc": _iso(self.handover.owner_confirmed_utc),
            },
            "completion": {
                "item_received": self.completion.item_received,
                "item_received_utc": _iso(self.completion.item_received_utc),
                "item_returned": self.completion.item_returned,
                "item_returned_utc": _iso(self.completion.item_returned_utc),
                "damage_report": None if report is None else {
                    "description": report.description,
                    "amount": str(report.amount),
                    "images": list(report.images),
                },
                "deposit_refund": _money(self.completion.deposit_refund),
                "damage_deduction": _money(self.completion.damage_deduction),
                "owner_payout": _money(self.completion.owner_payout),
                "completed_utc": _iso(self.completion.completed_utc),
            },
            "payment": {
                "provider_order_id": self.payment.provider_order_id,
                "provider_payment_key": self.payment.provider_payment_key,
                "provider_transaction_id": self.payment.provider_transaction_id,
                "payment_status": self.payment.payment_status.value,
                "owner_income_transaction_id": self.payment.owner_income_transaction_id,
            },
            "dispute": None if dispute is None else {
                "reported_by": dispute.reported_by,
                "reported_against": dispute.reported_against,
                "reporter_role": dispute.reporter_role.value,
                "reason": dispute.reason,
                "evidence": list(dispute.evidence),
                "status": dispute.status.value,
                "opened_utc": _iso(dispute.opened_utc),
                "resolution": None if dispute.resolution is None else {
                    "decision": dispute.resolution.decision,
                    "refund_amount": str(dispute.resolution.refund_amount),
                    "owner_compensation": str(dispute.resolution.owner_compensation),
                    "resolved_by": dispute.resolution.resolved_by,
                    "resolved_utc": dispute.resolution.resolved_utc.isoformat(),
                },
            },
            "timeline": [
                {
                    "event": e.event,
                    "actor": e.actor,
                    "timestamp_utc": e.timestamp_utc.isoformat(),
                    "details": e.details,
                }
                for e in self.timeline
            ],
            "created_utc": _iso(self.created_utc),
            "updated_utc": _iso(self.updated_utc),
            "version": self.version,
        }

    @staticmethod
    def from_record(data: dict[str, Any]) -> RentalRequest:
        handover = data["handover"]
        completion = data["completion"]
        payment = data["payment"]
        report = completion["damage_report"]
        dispute = data["dispute"]
        resolution = dispute["resolution"] if dispute is not None else None
        return RentalRequest(
            rental_id=data["rental_id"],
            item_id=data["item_id"],
            owner_id=data["owner_id"],
            renter_id=data["renter_id"],
            requested_start=date.fromisoformat(data["requested_start"]),
            requested_end=date.fromisoformat(data["requested_end"]),
            pricing=PricingSnapshot.from_dict(data["pricing"]),
            status=RentalStatus(data["status"]),
            delivery=data["delivery"],
            message=data["message"],
            confirmed_start=_parse_date(data["confirmed_start"]),
            confirmed_end=_parse_date(data["confirmed_end"]),
            actual_start=_parse_datetime(data["actual_start"]),
            actual_end=_parse_datetime(data["actual_end"]),
            handover=HandoverState(
                renter_confirmed=handover["renter_confirmed"],
                owner_confirmed=handover["owner_confirmed"],
                renter_confirmed_utc=_parse_datetime(handover["renter_confirmed_utc"]),
                owner_confirmed_utc=_parse_datetime(handover["owner_confirmed_utc"]),
            ),
            completion=CompletionState(
                item_received=completion["item_received"],
                item_received_utc=_parse_datetime(completion["item_received_utc"]),
                item_returned=completion["item_returned"],
                item_returned_utc=_parse_datetime(completion["item_returned_utc"]),
                damage_report=None if report is None else DamageReport(
                    description=report["description"],
                    amount=Decimal(report["amount"]),
                    images=tuple(report["images"]),
                ),
                deposit_refund=_parse_money(completion["deposit_refund"]),
                damage_deduction=_parse_money(completion["damage_deduction"]),
                owner_payout=_parse_money(completion["owner_payout"]),
                completed_utc=_parse_datetime(completion["completed_utc"]),
            ),
            payment=PaymentInfo(
                provider_order_id=payment["provider_order_id"],
                provider_payment_key=payment["provider_payment_key"],
                provider_transaction_id=payment["provider_transaction_id"],
                payment_status=PaymentStatus(payment["payment_status"]),
                owner_income_transaction_id=payment["owner_income_transaction_id"],
            ),
            dispute=None if dispute is None else Dispute(
                rental_id=data["rental_id"],
                reported_by=dispute["reported_by"],
                reported_against=dispute["reported_against"],
                reporter_role=PartyRole(dispute["reporter_role"]),
                reason=dispute["reason"],
                evidence=list(dispute["evidence"]),
                status=DisputeStatus(dispute["status"]),
                opened_utc=_parse_datetime(dispute["opened_utc"]),
                resolution=None if resolution is None else DisputeResolution(
                    decision=resolution["decision"],
                    refund_amount=Decimal(resolution["refund_amount"]),
                    owner_compensation=Decimal(resolution["owner_compensation"]),
                    resolved_by=resolution["resolved_by"],
                    resolved_utc=datetime.fromisoformat(resolution["resolved_utc"]),
                ),
            ),
            timeline=[
                TimelineEntry(
                    event=e["event"],
                    actor=e["actor"],
                    timestamp_utc=datetime.fromisoformat(e["timestamp_utc"]),
                    details=e["details"],
                )
                for e in data["timeline"]
            ],
            created_utc=_parse_datetime(data["created_utc"]),
            updated_utc=_parse_datetime(data["updated_utc"]),
            version=data["version"],
        )


def _iso(value: Optional[date]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _money(value: Optional[Decimal]) -> Optional[str]:
    return str(value) if value is not None else None


def _parse_date(value: Optional[str]) -> Optional[date]:
    return date.fromisoformat(value) if value is not None else None


def _parse_datetime(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value is not None else None


def _parse_money(value: Optional[str]) -> Optional[Decimal]:
    return Decimal(value) if value is not None else None
