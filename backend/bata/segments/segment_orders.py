from __future__ import annotations

from flask import Blueprint, jsonify, request, current_app

from bata.errors import Forbidden, ValidationError
from bata.integrations.common import IntegrationDisabledError, IntegrationMisconfiguredError
from bata.models import Order
from bata.services.checkout_service import initialize_checkout, quote_checkout
from bata.services.dispute_service import check_dispute_eligibility
from bata.services.escrow_service import escrow_history
from bata.services.order_state import (
    OrderStatus,
    allowed_next,
    get_order_or_404,
    order_timeline,
    status_graph,
    transition_order,
)
from bata.services.settlement_service import confirm_delivery
from bata.utils.auth import is_admin, require_active_user, require_user, role_of
from bata.utils.idempotency import lookup_response, release_key, store_response
from bata.utils.money import parse_minor

orders_bp = Blueprint("orders_bp", __name__, url_prefix="/api")


def _can_view(order: Order, u) -> bool:
    if is_admin(u):
        return True
    uid = int(u.id)
    if uid in (int(order.buyer_id), int(order.seller_id)):
        return True
    return order.rider_id is not None and int(order.rider_id) == uid


def _checkout_args(payload: dict) -> dict:
    items = payload.get("items")
    if items is None:
        items = payload.get("cart_items")
    try:
        delivery_fee = parse_minor(payload, "delivery_fee_minor", "delivery_fee")
    except ValueError as e:
        raise ValidationError(str(e), reason="invalid_delivery_fee")
    return {
        "cart_items": items,
        "delivery_fee_minor": delivery_fee,
        "payment_method": (payload.get("payment_method") or "gateway"),
    }


@orders_bp.post("/checkout/quote")
def checkout_quote():
    u = require_user()
    args = _checkout_args(request.get_json(silent=True) or {})
    quote = quote_checkout(int(u.id), args["cart_items"], delivery_fee_minor=args["delivery_fee_minor"])
    groups = [{"seller_id": g["seller_id"], "snapshot": g["snapshot"]} for g in quote["groups"]]
    return jsonify({
        "ok": True,
        "delivery_fee_minor": quote["delivery_fee_minor"],
        "groups": groups,
        "total_minor": sum(int(g["snapshot"]["total_minor"]) for g in groups),
    }), 200


@orders_bp.post("/checkout")
@orders_bp.post("/payments/initialize")
def checkout():
    u = require_active_user()
    payload = request.get_json(silent=True) or {}

    idem = lookup_response(int(u.id), "checkout", payload)
    if idem is not None and idem[0] != "miss":
        return jsonify(idem[1]), idem[2]
    idem_row = idem[1] if idem is not None else None

    try:
        args = _checkout_args(payload)
        result = initialize_checkout(int(u.id), **args)
    except IntegrationDisabledError as exc:
        if idem_row is not None:
            release_key(idem_row)
        return jsonify({"ok": False, "error": "INTEGRATION_DISABLED", "message": str(exc)}), 503
    except IntegrationMisconfiguredError as exc:
        if idem_row is not None:
            release_key(idem_row)
        return jsonify({"ok": False, "error": "INTEGRATION_MISCONFIGURED", "message": str(exc)}), 500
    except Exception:
        if idem_row is not None:
            release_key(idem_row)
        raise

    body = {"ok": True, **result}
    if idem_row is not None:
        store_response(idem_row, body, 201)
    current_app.logger.info(
        "checkout_ok user_id=%s reference=%s orders=%s",
        int(u.id),
        result["checkout_reference"],
        len(result["orders"]),
    )
    return jsonify(body), 201


@orders_bp.get("/orders/status-graph")
def order_status_graph():
    return jsonify({"ok": True, **status_graph()}), 200


@orders_bp.get("/orders/my")
def my_orders():
    u = require_user()
    role = role_of(u)
    uid = int(u.id)
    q = Order.query
    if role == "seller":
        q = q.filter(Order.seller_id == uid)
    elif role == "rider":
        q = q.filter(Order.rider_id == uid)
    elif role != "admin":
        q = q.filter(Order.buyer_id == uid)
    status = (request.args.get("status") or "").strip().upper()
    if status:
        q = q.filter(Order.status == status)
    rows = q.order_by(Order.created_at.desc(), Order.id.desc()).limit(200).all()

    items = []
    for o in rows:
        payload = o.to_dict()
        payload["allowed_next"] = allowed_next(o.status)
        if int(o.buyer_id) == uid:
            eligible, reason, _ = check_dispute_eligibility(o)
            payload["dispute"] = {"eligible": eligible, "reason": reason}
        items.append(payload)
    return jsonify({"ok": True, "items": items}), 200


@orders_bp.get("/orders/<int:order_id>")
def get_order(order_id: int):
    u = require_user()
    order = get_order_or_404(order_id)
    if not _can_view(order, u):
        raise Forbidden("You cannot view this order")
    payload = order.to_dict()
    payload["allowed_next"] = allowed_next(order.status)
    payload["fee_snapshot"] = order.fee_snapshot()
    return jsonify({"ok": True, "order": payload}), 200


@orders_bp.get("/orders/<int:order_id>/timeline")
def get_order_timeline(order_id: int):
    u = require_user()
    order = get_order_or_404(order_id)
    if not _can_view(order, u):
        raise Forbidden("You cannot view this order")
    return jsonify({
        "ok": True,
        "order_id": int(order.id),
        "events": order_timeline(int(order.id)),
        "escrow": escrow_history(int(order.id)),
    }), 200


@orders_bp.post("/orders/<int:order_id>/status")
def update_order_status(order_id: int):
    u = require_active_user()
    payload = request.get_json(silent=True) or {}
    new_status = (payload.get("status") or "").strip()
    if not new_status:
        raise ValidationError("status is required", reason="status_required")
    rider_id = payload.get("rider_id")
    if rider_id is not None:
        try:
            rider_id = int(rider_id)
        except Exception:
            raise ValidationError("rider_id must be an integer", reason="invalid_rider")
    order = transition_order(
        int(order_id),
        int(u.id),
        new_status,
        rider_id=rider_id,
        note=str(payload.get("note") or ""),
    )
    return jsonify({"ok": True, "order": order}), 200


@orders_bp.post("/orders/<int:order_id>/confirm-delivery")
def confirm_order_delivery(order_id: int):
    u = require_user()
    order = confirm_delivery(int(order_id), int(u.id))
    return jsonify({"ok": True, "order": order}), 200


@orders_bp.post("/orders/confirm-delivery")
def confirm_order_delivery_body():
    u = require_user()
    payload = request.get_json(silent=True) or {}
    try:
        order_id = int(payload.get("order_id"))
    except Exception:
        raise ValidationError("order_id is required", reason="order_id_required")
    order = confirm_delivery(order_id, int(u.id))
    return jsonify({"ok": True, "order": order}), 200


@orders_bp.get("/riders/available-orders")
def rider_available_orders():
    u = require_user()
    if role_of(u) not in ("rider", "admin"):
        raise Forbidden("Riders only")
    rows = (
        Order.query.filter(
            Order.rider_id.is_(None),
            Order.is_paid.is_(True),
            Order.status.in_((OrderStatus.PENDING, OrderStatus.PROCESSING, OrderStatus.SHIPPED)),
        )
        .order_by(Order.created_at.asc(), Order.id.asc())
        .limit(100)
        .all()
    )
    return jsonify({"ok": True, "items": [o.to_dict() for o in rows]}), 200


@orders_bp.post("/riders/accept-order")
def rider_accept_order():
    u = require_active_user()
    payload = request.get_json(silent=True) or {}
    try:
        order_id = int(payload.get("order_id"))
    except Exception:
        raise ValidationError("order_id is required", reason="order_id_required")
    order = transition_order(order_id, int(u.id), OrderStatus.RIDER_ASSIGNED)
    return jsonify({"ok": True, "order": order}), 200
