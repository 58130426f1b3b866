from __future__ import annotations

from flask import Blueprint, jsonify, request

from bata.errors import ValidationError
from bata.services.wallet_service import get_wallet, list_transactions, withdraw
from bata.utils.auth import require_active_user, require_user
from bata.utils.money import parse_minor

wallet_bp = Blueprint("wallet_bp", __name__, url_prefix="/api/wallet")


def _int_arg(name: str, default: int) -> int:
    try:
        return int(request.args.get(name) or default)
    except Exception:
        return default


@wallet_bp.get("")
def wallet():
    u = require_user()
    return jsonify({"ok": True, "wallet": get_wallet(int(u.id))}), 200


@wallet_bp.get("/transactions")
def transactions():
    u = require_user()
    items = list_transactions(
        int(u.id),
        limit=_int_arg("limit", 50),
        offset=_int_arg("offset", 0),
    )
    return jsonify({"ok": True, "items": items}), 200


@wallet_bp.post("/withdraw")
def wallet_withdraw():
    u = require_active_user()
    payload = request.get_json(silent=True) or {}
    try:
        amount = parse_minor(payload, "amount_minor", "amount")
    except ValueError as e:
        raise ValidationError(str(e), reason="invalid_amount")
    if amount is None:
        raise ValidationError("amount_minor is required", reason="amount_required")
    result = withdraw(
        int(u.id),
        amount,
        bank_name=str(payload.get("bank_name") or ""),
        account_number=str(payload.get("account_number") or ""),
        account_name=str(payload.get("account_name") or ""),
    )
    return jsonify({"ok": True, **result}), 201
