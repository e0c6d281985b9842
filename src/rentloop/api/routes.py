"""HTTP routes — payment webhook ingress and the rental callables.

The caller's identity arrives in the ``X-Actor-Id`` header, set by the
upstream authentication layer. Every route delegates to RentalService and
maps its ServiceResult onto a JSON response.
"""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any

from flask import Blueprint, current_app, jsonify, request

from rentloop.errors import InvalidArgument
from rentloop.models.rental import DamageReport
from rentloop.service import RentalService, ServiceResult
from rentloop.webhooks.processor import AckStatus

logger = logging.getLogger(__name__)

bp = Blueprint("rentloop", __name__)

ERROR_STATUS = {
    "unauthenticated": 401,
    "permission_denied": 403,
    "not_found": 404,
    "invalid_state": 409,
    "already_done": 409,
    "invalid_argument": 400,
    "external_failure": 502,
    "internal": 500,
}

ACK_STATUS = {
    AckStatus.ACKNOWLEDGED: 200,
    AckStatus.UNAUTHORIZED: 401,
    AckStatus.INVALID: 400,
    AckStatus.ERROR: 500,
}


def _service() -> RentalService:
    return current_app.extensions["rentloop"]


def _actor() -> str | None:
    return request.headers.get("X-Actor-Id")


def _body() -> dict[str, Any]:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def _respond(result: ServiceResult, created: bool = False):
    if result.success:
        return jsonify({"ok": True, "data": result.data}), 201 if created else 200
    code = result.error_code or "internal"
    return jsonify({
        "ok": False,
        "error": {"code": code, "message": "; ".join(result.errors)},
    }), ERROR_STATUS.get(code, 500)


def _invalid(message: str):
    error = InvalidArgument(message)
    return jsonify({"ok": False, "error": error.to_dict()}), 400


@bp.post("/webhooks/payment")
def payment_webhook():
    signature = (
        request.headers.get("X-Signature")
        or request.headers.get("Hmac")
        or request.args.get("hmac")
    )
    ack = _service().handle_payment_webhook(request.get_data(), signature)
    return jsonify(ack.to_dict()), ACK_STATUS[ack.status]


@bp.post("/rentals")
def request_rental():
    data = _body()
    for key in ("item_id", "start_date", "end_date"):
        if not data.get(key):
            return _invalid(f"Missing field: {key}")
    result = _service().request_rental(
        _actor(),
        data["item_id"],
        data["start_date"],
        data["end_date"],
        delivery=bool(data.get("delivery", False)),
        message=data.get("message", ""),
    )
    return _respond(result, created=True)


@bp.get("/rentals/<rental_id>")
def get_rental(rental_id: str):
    return _respond(_service().get_rental(_actor(), rental_id))


@bp.post("/rentals/<rental_id>/respond")
def respond_to_rental(rental_id: str):
    data = _body()
    return _respond(_service().respond_to_rental(
        _actor(), rental_id, data.get("action", ""), reason=data.get("reason", ""),
    ))


@bp.post("/rentals/<rental_id>/cancel")
def cancel_request(rental_id: str):
    return _respond(_service().cancel_request(_actor(), rental_id))


@bp.post("/rentals/<rental_id>/handover")
def confirm_handover(rental_id: str):
    return _respond(_service().confirm_handover(
        _actor(), rental_id, _body().get("role", ""),
    ))


@bp.post("/rentals/<rental_id>/received")
def confirm_received(rental_id: str):
    return _respond(_service().confirm_received(_actor(), rental_id))


@bp.post("/rentals/<rental_id>/returned")
def confirm_returned(rental_id: str):
    raw = _body().get("damage_report")
    report = None
    if raw:
        try:
            report = DamageReport(
                description=str(raw.get("description", "")),
                amount=Decimal(str(raw.get("amount", "0"))),
                images=tuple(raw.get("images", ())),
            )
        except (ArithmeticError, AttributeError, TypeError):
            return _invalid("Malformed damage report")
    return _respond(_service().confirm_returned(_actor(), rental_id, report))


@bp.post("/rentals/<rental_id>/disputes")
def raise_dispute(rental_id: str):
    data = _body()
    return _respond(_service().raise_dispute(
        _actor(), rental_id, data.get("reason", ""), data.get("evidence", []),
    ))


@bp.post("/rentals/<rental_id>/disputes/resolve")
def resolve_dispute(rental_id: str):
    data = _body()
    return _respond(_service().resolve_dispute(
        _actor(),
        rental_id,
        data.get("decision", ""),
        str(data.get("refund_amount", "0")),
        str(data.get("owner_compensation", "0")),
    ))


@bp.post("/wallet/payouts")
def request_payout():
    data = _body()
    if "amount" not in data:
        return _invalid("Missing field: amount")
    return _respond(_service().request_payout(_actor(), str(data["amount"])), created=True)


@bp.get("/wallet/balance")
def wallet_balance():
    return _respond(_service().get_wallet_balance(_actor(), request.args.get("user_id")))
