from __future__ import annotations

from flask import Blueprint, jsonify, request

from bata.errors import ValidationError
from bata.services.dispute_service import (
    get_dispute,
    list_dispute_messages,
    list_disputes_for_user,
    mark_under_review,
    open_dispute,
    post_dispute_message,
    resolve_dispute,
)
from bata.utils.auth import require_admin, require_user
from bata.utils.money import parse_minor

disputes_bp = Blueprint("disputes_bp", __name__, url_prefix="/api/disputes")
admin_disputes_bp = Blueprint("admin_disputes_bp", __name__, url_prefix="/api/admin/disputes")


def _as_bool(value) -> bool:
    if isinstance(value, bool):
        return value
    return str(value or "").strip().lower() in ("1", "true", "yes", "on")


@disputes_bp.post("")
def create_dispute():
    u = require_user()
    payload = request.get_json(silent=True) or {}
    try:
        order_id = int(payload.get("order_id"))
    except Exception:
        raise ValidationError("order_id is required", reason="order_id_required")
    dispute = open_dispute(
        order_id,
        int(u.id),
        str(payload.get("reason") or ""),
        payload.get("evidence"),
    )
    return jsonify({"ok": True, "dispute": dispute}), 201


@disputes_bp.get("")
def list_disputes():
    u = require_user()
    items = list_disputes_for_user(int(u.id), status=request.args.get("status"))
    return jsonify({"ok": True, "items": items}), 200


@disputes_bp.get("/<int:dispute_id>")
def dispute_detail(dispute_id: int):
    u = require_user()
    return jsonify({"ok": True, "dispute": get_dispute(int(dispute_id), int(u.id))}), 200


@disputes_bp.get("/<int:dispute_id>/messages")
def dispute_messages(dispute_id: int):
    u = require_user()
    return jsonify({"ok": True, "items": list_dispute_messages(int(dispute_id), int(u.id))}), 200


@disputes_bp.post("/<int:dispute_id>/messages")
def add_dispute_message(dispute_id: int):
    u = require_user()
    payload = request.get_json(silent=True) or {}
    message = post_dispute_message(
        int(dispute_id),
        int(u.id),
        str(payload.get("message") or ""),
        payload.get("attachments"),
    )
    return jsonify({"ok": True, "message": message}), 201


@admin_disputes_bp.post("/<int:dispute_id>/review")
def review_dispute(dispute_id: int):
    u = require_admin()
    return jsonify({"ok": True, "dispute": mark_under_review(int(dispute_id), int(u.id))}), 200


@admin_disputes_bp.post("/<int:dispute_id>/resolve")
def resolve(dispute_id: int):
    u = require_admin()
    payload = request.get_json(silent=True) or {}
    try:
        refund = parse_minor(payload, "refund_amount_minor", "refund_amount")
    except ValueError as e:
        raise ValidationError(str(e), reason="invalid_refund")
    result = resolve_dispute(
        int(dispute_id),
        int(u.id),
        str(payload.get("status") or ""),
        str(payload.get("resolution") or ""),
        refund_amount_minor=refund,
        penalize_buyer=_as_bool(payload.get("penalize_buyer")),
        penalize_seller=_as_bool(payload.get("penalize_seller")),
        penalty_reason=str(payload.get("penalty_reason") or ""),
    )
    return jsonify({"ok": True, **result}), 200
