from __future__ import annotations

import json
import logging
import secrets
import string
import time
from collections import OrderedDict
from datetime import datetime

from sqlalchemy.exc import IntegrityError

from bata.errors import ConcurrentModification, InsufficientBalance, NotFound, ProductUnavailable, ValidationError
from bata.extensions import db
from bata.integrations.payments.factory import build_payments_provider
from bata.models import Order, OrderItem, Product, User
from bata.services.escrow_service import EscrowStatus, transition_escrow
from bata.services.ledger_service import EntryType, lock_user, post_entry
from bata.services.order_state import OrderStatus, record_order_event, seller_ref
from bata.utils.events import log_event
from bata.utils.fees import compute_order_split_minor, default_delivery_fee_minor, snapshot_to_order_columns
from bata.utils.money import money_minor_to_major

logger = logging.getLogger(__name__)

PAYMENT_METHODS = ("gateway", "wallet")

_ORDER_SUFFIX_ALPHABET = string.ascii_uppercase + string.digits


def _now():
    return datetime.utcnow()


def generate_order_number() -> str:
    suffix = "".join(secrets.choice(_ORDER_SUFFIX_ALPHABET) for _ in range(9))
    return f"BATA-{int(time.time() * 1000)}-{suffix}"


def _normalize_cart(cart_items) -> "OrderedDict[int, int]":
    if not isinstance(cart_items, list) or not cart_items:
        raise ValidationError("Cart is empty", reason="empty_cart")
    merged: OrderedDict[int, int] = OrderedDict()
    for raw in cart_items:
        if not isinstance(raw, dict):
            raise ValidationError("Cart items must be objects", reason="invalid_item")
        try:
            product_id = int(raw.get("product_id"))
        except Exception:
            raise ValidationError("product_id is required for every cart item", reason="invalid_item")
        qty_raw = raw.get("quantity", 1)
        if isinstance(qty_raw, bool) or not isinstance(qty_raw, int) or qty_raw <= 0:
            raise ValidationError(
                "quantity must be a positive integer",
                reason="invalid_quantity",
                debug={"product_id": product_id, "quantity": qty_raw},
            )
        merged[product_id] = merged.get(product_id, 0) + int(qty_raw)
    return merged


def _load_lines(buyer_id: int, cart: "OrderedDict[int, int]") -> list[dict]:
    lines = []
    for product_id, qty in cart.items():
        product = db.session.get(Product, int(product_id))
        if product is None or not product.is_active or int(product.quantity or 0) < qty:
            raise ProductUnavailable(
                f"Product unavailable: {product.name if product is not None else product_id}",
                reason="out_of_stock" if product is not None and product.is_active else "not_available",
                debug={
                    "product_id": int(product_id),
                    "name": product.name if product is not None else None,
                    "requested": int(qty),
                    "available": int(product.quantity or 0) if product is not None and product.is_active else 0,
                },
            )
        if int(product.seller_id) == int(buyer_id):
            raise ValidationError(
                f"You cannot buy your own product: {product.name}",
                reason="own_product",
                debug={"product_id": int(product.id)},
            )
        lines.append(
            {
                "product_id": int(product.id),
                "seller_id": int(product.seller_id),
                "name": product.name or "",
                "category": product.category or "",
                "unit_price_minor": int(product.price_minor or 0),
                "quantity": int(qty),
                "line_total_minor": int(product.price_minor or 0) * int(qty),
            }
        )
    return lines


def _group_by_seller(lines: list[dict]) -> "OrderedDict[int, list[dict]]":
    groups: OrderedDict[int, list[dict]] = OrderedDict()
    for line in lines:
        groups.setdefault(int(line["seller_id"]), []).append(line)
    return groups


def quote_checkout(buyer_id: int, cart_items, *, delivery_fee_minor: int | None = None) -> dict:
    """Validate the cart and price every seller group without touching anything."""
    delivery_fee = default_delivery_fee_minor() if delivery_fee_minor is None else int(delivery_fee_minor)
    if delivery_fee < 0:
        raise ValidationError("delivery fee cannot be negative", reason="invalid_delivery_fee")
    cart = _normalize_cart(cart_items)
    lines = _load_lines(int(buyer_id), cart)
    groups = []
    for seller_id, seller_lines in _group_by_seller(lines).items():
        snapshot = compute_order_split_minor(items=seller_lines, delivery_fee_minor=delivery_fee)
        groups.append({"seller_id": seller_id, "lines": seller_lines, "snapshot": snapshot})
    return {"delivery_fee_minor": delivery_fee, "groups": groups}


def _breakdown(groups: list[dict], delivery_fee: int) -> dict:
    subtotal = sum(g["snapshot"]["subtotal_minor"] for g in groups)
    delivery_total = delivery_fee * len(groups)
    seller_escrow = sum(g["snapshot"]["seller_escrow_minor"] for g in groups)
    rider_escrow = sum(g["snapshot"]["rider_payout_minor"] for g in groups)
    commission = sum(g["snapshot"]["platform_commission_minor"] for g in groups)
    total = sum(g["snapshot"]["total_minor"] for g in groups)
    item_fees = [item for g in groups for item in g["snapshot"]["items"]]
    return {
        "total_minor": int(total),
        "subtotal_minor": int(subtotal),
        "delivery_fee_minor": int(delivery_total),
        "seller_escrow_minor": int(seller_escrow),
        "rider_escrow_minor": int(rider_escrow),
        "platform_commission_minor": int(commission),
        "item_fees": item_fees,
        "total": money_minor_to_major(total),
        "subtotal": money_minor_to_major(subtotal),
        "delivery_fee": money_minor_to_major(delivery_total),
        "seller_escrow": money_minor_to_major(seller_escrow),
        "rider_escrow": money_minor_to_major(rider_escrow),
        "platform_commission": money_minor_to_major(commission),
        "orders": [
            {
                "seller_id": g["seller_id"],
                "subtotal_minor": g["snapshot"]["subtotal_minor"],
                "platform_fee_minor": g["snapshot"]["platform_fee_minor"],
                "seller_escrow_minor": g["snapshot"]["seller_escrow_minor"],
                "rider_payout_minor": g["snapshot"]["rider_payout_minor"],
                "platform_commission_minor": g["snapshot"]["platform_commission_minor"],
                "total_minor": g["snapshot"]["total_minor"],
            }
            for g in groups
        ],
    }


def _decrement_stock(line: dict) -> None:
    updated = (
        Product.query.filter(
            Product.id == int(line["product_id"]),
            Product.is_active.is_(True),
            Product.quantity >= int(line["quantity"]),
        )
        .update({Product.quantity: Product.quantity - int(line["quantity"])}, synchronize_session=False)
    )
    if updated != 1:
        raise ProductUnavailable(
            f"Product unavailable: {line['name']}",
            reason="out_of_stock",
            debug={"product_id": int(line["product_id"]), "name": line["name"], "requested": int(line["quantity"])},
        )


def initialize_checkout(
    buyer_id: int,
    cart_items,
    *,
    delivery_fee_minor: int | None = None,
    payment_method: str = "gateway",
) -> dict:
    """Turn a cart into one paid, escrow-held order per seller in a single commit."""
    method = (payment_method or "gateway").strip().lower()
    if method not in PAYMENT_METHODS:
        raise ValidationError(f"Unsupported payment method {payment_method!r}", reason="invalid_payment_method")
    buyer = db.session.get(User, int(buyer_id))
    if buyer is None:
        raise NotFound(f"User {buyer_id} not found")

    quote = quote_checkout(int(buyer_id), cart_items, delivery_fee_minor=delivery_fee_minor)
    groups = quote["groups"]
    delivery_fee = int(quote["delivery_fee_minor"])
    grand_total = sum(int(g["snapshot"]["total_minor"]) for g in groups)
    checkout_reference = f"CHK-{int(time.time() * 1000)}-{secrets.token_hex(4).upper()}"

    if method == "wallet":
        available = int(buyer.available_balance_minor or 0)
        if available < grand_total:
            raise InsufficientBalance(
                "Insufficient wallet balance for this checkout",
                reason="available",
                debug={"available_minor": available, "required_minor": grand_total},
            )
        payment_reference = checkout_reference
    else:
        provider = build_payments_provider()
        auth = provider.authorize(
            payer_id=int(buyer_id),
            amount_minor=grand_total,
            reference=checkout_reference,
            metadata={"orders": len(groups)},
        )
        if not auth.ok:
            raise ValidationError(auth.message or "Payment was not authorized", reason="payment_declined")
        payment_reference = auth.reference

    now = _now()
    created = []
    try:
        if method == "wallet":
            lock_user(int(buyer_id))
        for group in groups:
            snapshot = group["snapshot"]
            order_number = generate_order_number()
            order = Order(
                order_number=order_number,
                checkout_reference=checkout_reference,
                buyer_id=int(buyer_id),
                seller_id=int(group["seller_id"]),
                status=OrderStatus.PENDING,
                escrow_status=EscrowStatus.NONE,
                is_paid=True,
                payment_method=method,
                payment_reference=payment_reference,
                fee_snapshot_json=json.dumps(snapshot),
                created_at=now,
                updated_at=now,
                **snapshot_to_order_columns(snapshot),
            )
            db.session.add(order)
            db.session.flush()

            fees_by_product = {item["product_id"]: item for item in snapshot["items"]}
            for line in group["lines"]:
                fee = fees_by_product.get(line["product_id"], {})
                db.session.add(
                    OrderItem(
                        order_id=int(order.id),
                        product_id=int(line["product_id"]),
                        name=line["name"][:200],
                        category=(line["category"] or "")[:64],
                        unit_price_minor=int(line["unit_price_minor"]),
                        quantity=int(line["quantity"]),
                        line_total_minor=int(line["line_total_minor"]),
                        fee_bps=int(fee.get("fee_bps") or 0),
                        fee_minor=int(fee.get("fee_minor") or 0),
                    )
                )
                _decrement_stock(line)

            items_label = ", ".join(f"{line['name']} (x{line['quantity']})" for line in group["lines"])
            total = int(order.total_amount_minor)
            if method == "gateway":
                post_entry(
                    int(buyer_id),
                    EntryType.CREDIT,
                    total,
                    reference=f"{order_number}-BUYER-FUNDING",
                    description=f"Card payment received (Order: {order_number})",
                    order_id=int(order.id),
                    metadata={"payment_reference": payment_reference},
                )
            post_entry(
                int(buyer_id),
                EntryType.DEBIT,
                total,
                reference=f"{order_number}-BUYER-PAYMENT",
                description=f"Payment for {items_label} (Order: {order_number})"[:255],
                order_id=int(order.id),
            )
            post_entry(
                int(group["seller_id"]),
                EntryType.ESCROW,
                int(order.seller_escrow_minor),
                reference=f"{order_number}-{seller_ref(order)}-ESCROW",
                description=f"Escrow for {items_label} (Order: {order_number})"[:255],
                order_id=int(order.id),
            )
            transition_escrow(
                order,
                EscrowStatus.HELD,
                idempotency_key=f"fund:{int(order.id)}",
                actor={"type": "buyer", "id": int(buyer_id)},
                reason="checkout",
            )
            record_order_event(
                order,
                "created",
                actor_user_id=int(buyer_id),
                to_status=OrderStatus.PENDING,
                note=f"Paid via {method}",
                idempotency_key=f"order:{int(order.id)}:created",
            )
            log_event(
                "escrow_funded",
                actor_user_id=int(buyer_id),
                subject_type="order",
                subject_id=int(order.id),
                idempotency_key=f"escrow_funded:{int(order.id)}",
                metadata={"seller_escrow_minor": int(order.seller_escrow_minor), "total_minor": total},
            )
            created.append(order)

        log_event(
            "checkout_completed",
            actor_user_id=int(buyer_id),
            subject_type="checkout",
            subject_id=checkout_reference,
            idempotency_key=f"checkout_completed:{checkout_reference}",
            metadata={"orders": [o.order_number for o in created], "total_minor": grand_total, "method": method},
        )
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        logger.exception("checkout_conflict buyer_id=%s reference=%s", buyer_id, checkout_reference)
        raise ConcurrentModification("Checkout conflicted with another request; please retry")
    except Exception:
        db.session.rollback()
        logger.warning("checkout_rolled_back buyer_id=%s reference=%s method=%s", buyer_id, checkout_reference, method)
        raise

    logger.info(
        "checkout_completed buyer_id=%s orders=%s total_minor=%s method=%s",
        buyer_id,
        len(created),
        grand_total,
        method,
    )
    return {
        "checkout_reference": checkout_reference,
        "payment_reference": payment_reference,
        "payment_method": method,
        "orders": [
            {"order_number": o.order_number, "order_id": int(o.id), "seller_id": int(o.seller_id)}
            for o in created
        ],
        "order_id": int(created[0].id) if created else None,
        "breakdown": _breakdown(groups, delivery_fee),
    }
