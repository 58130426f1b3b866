from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy.exc import IntegrityError

from bata.errors import (
    ConcurrentModification,
    Forbidden,
    IllegalTransition,
    MarketplaceError,
    NotFound,
    ValidationError,
)
from bata.extensions import db
from bata.models import Dispute, Order, OrderEvent, User
from bata.services.escrow_service import EscrowStatus, transition_escrow
from bata.services.ledger_service import EntryType, Bucket, post_entry
from bata.utils.events import log_event

logger = logging.getLogger(__name__)


class OrderStatus:
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    SHIPPED = "SHIPPED"
    RIDER_ASSIGNED = "RIDER_ASSIGNED"
    PICKED_UP = "PICKED_UP"
    ON_THE_WAY = "ON_THE_WAY"
    DELIVERED = "DELIVERED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"

    ALL = (
        PENDING,
        PROCESSING,
        SHIPPED,
        RIDER_ASSIGNED,
        PICKED_UP,
        ON_THE_WAY,
        DELIVERED,
        COMPLETED,
        CANCELLED,
    )


# The one transition table. Display code reads it through status_graph().
TRANSITIONS: dict[str, tuple[str, ...]] = {
    OrderStatus.PENDING: (OrderStatus.RIDER_ASSIGNED, OrderStatus.CANCELLED, OrderStatus.PROCESSING),
    OrderStatus.PROCESSING: (OrderStatus.SHIPPED, OrderStatus.RIDER_ASSIGNED, OrderStatus.CANCELLED),
    OrderStatus.SHIPPED: (OrderStatus.RIDER_ASSIGNED, OrderStatus.CANCELLED),
    OrderStatus.RIDER_ASSIGNED: (OrderStatus.PICKED_UP, OrderStatus.CANCELLED),
    OrderStatus.PICKED_UP: (OrderStatus.ON_THE_WAY, OrderStatus.CANCELLED),
    OrderStatus.ON_THE_WAY: (OrderStatus.DELIVERED, OrderStatus.CANCELLED),
    OrderStatus.DELIVERED: (OrderStatus.COMPLETED,),
    OrderStatus.COMPLETED: (),
    OrderStatus.CANCELLED: (),
}

# Timestamp owned by each entered status; stamped once.
STATUS_TIMESTAMPS = {
    OrderStatus.RIDER_ASSIGNED: "rider_assigned_at",
    OrderStatus.PICKED_UP: "picked_up_at",
    OrderStatus.DELIVERED: "delivered_at",
    OrderStatus.COMPLETED: "completed_at",
    OrderStatus.CANCELLED: "cancelled_at",
}

RIDER_PROGRESS = (OrderStatus.PICKED_UP, OrderStatus.ON_THE_WAY, OrderStatus.DELIVERED)
SELLER_PROGRESS = (OrderStatus.PROCESSING, OrderStatus.SHIPPED)


def _now():
    return datetime.utcnow()


def can_transition(current: str, requested: str) -> bool:
    return requested in TRANSITIONS.get(current, ())


def allowed_next(current: str) -> list[str]:
    return list(TRANSITIONS.get(current, ()))


def status_graph() -> dict:
    return {
        "statuses": list(OrderStatus.ALL),
        "transitions": {k: list(v) for k, v in TRANSITIONS.items()},
        "terminal": [k for k, v in TRANSITIONS.items() if not v],
    }


def seller_ref(order: Order) -> str:
    return f"{int(order.seller_id):08d}"[-8:]


def get_order_or_404(order_id: int) -> Order:
    order = db.session.get(Order, int(order_id))
    if order is None:
        raise NotFound(f"Order {order_id} not found")
    return order


def lock_order(order_id: int) -> Order:
    """Load an order under SELECT ... FOR UPDATE, replacing any stale copy in the session."""
    order = (
        Order.query.filter(Order.id == int(order_id))
        .with_for_update()
        .populate_existing()
        .first()
    )
    if order is None:
        raise NotFound(f"Order {order_id} not found")
    return order


def record_order_event(
    order: Order,
    event: str,
    *,
    actor_user_id: int | None = None,
    from_status: str | None = None,
    to_status: str | None = None,
    note: str = "",
    idempotency_key: str | None = None,
) -> OrderEvent:
    row = OrderEvent(
        order_id=int(order.id),
        actor_user_id=int(actor_user_id) if actor_user_id is not None else None,
        event=event[:64],
        from_status=from_status,
        to_status=to_status,
        note=(note or "")[:240],
        idempotency_key=(idempotency_key or "")[:160] or None,
    )
    db.session.add(row)
    return row


def compare_and_set_status(order: Order, expected: str, new_status: str, *, now=None, extra: dict | None = None) -> None:
    """Write ``new_status`` only if the stored status is still ``expected``.

    Losing a race raises ConcurrentModification and leaves the row as the
    winner wrote it.
    """
    now = now or _now()
    values = {"status": new_status, "updated_at": now}
    stamp = STATUS_TIMESTAMPS.get(new_status)
    if stamp and getattr(order, stamp) is None:
        values[stamp] = now
    if extra:
        values.update(extra)
    updated = (
        Order.query.filter(Order.id == int(order.id), Order.status == expected)
        .update(values, synchronize_session=False)
    )
    if updated != 1:
        raise ConcurrentModification(
            f"Order {order.order_number} changed while it was being updated",
            debug={"order_id": int(order.id), "expected_status": expected, "requested": new_status},
        )
    for key, value in values.items():
        setattr(order, key, value)


def _authorize(order: Order, actor: User, new_status: str, rider_id: int | None) -> int | None:
    """Return the rider id to assign (if any) or raise Forbidden."""
    role = (actor.role or "buyer").strip().lower()
    actor_id = int(actor.id)
    current = order.status

    if role == "admin":
        if new_status == OrderStatus.RIDER_ASSIGNED:
            target = rider_id if rider_id is not None else order.rider_id
            if target is None:
                raise ValidationError("rider_id is required to assign a rider", reason="rider_required")
            rider = db.session.get(User, int(target))
            if rider is None or (rider.role or "") != "rider":
                raise ValidationError("rider_id must reference a rider account", reason="invalid_rider")
            return int(target)
        return None

    if new_status == OrderStatus.RIDER_ASSIGNED:
        if role != "rider":
            raise Forbidden("Only riders can accept deliveries")
        if order.rider_id is not None and int(order.rider_id) != actor_id:
            raise Forbidden("Order already has a rider")
        return actor_id

    if new_status in RIDER_PROGRESS:
        if order.rider_id is None or int(order.rider_id) != actor_id:
            raise Forbidden("Only the assigned rider can update delivery progress")
        return None

    if new_status in SELLER_PROGRESS:
        if int(order.seller_id) != actor_id:
            raise Forbidden("Only the seller can update this order")
        return None

    if new_status == OrderStatus.CANCELLED:
        if actor_id not in (int(order.buyer_id), int(order.seller_id)):
            raise Forbidden("You cannot cancel this order")
        if current != OrderStatus.PENDING:
            raise Forbidden("Only pending orders can be cancelled")
        return None

    if new_status == OrderStatus.COMPLETED:
        if int(order.buyer_id) != actor_id:
            raise Forbidden("Only the buyer can confirm delivery")
        return None

    raise Forbidden("Not allowed")


def _escrow_rider_payout(order: Order, rider_id: int) -> None:
    payout = int(order.rider_payout_minor or 0)
    if not order.is_paid or payout <= 0:
        return
    post_entry(
        rider_id,
        EntryType.ESCROW,
        payout,
        reference=f"{order.order_number}-RIDER-ESCROW",
        description=f"Escrow for delivery (Order: {order.order_number})",
        order_id=int(order.id),
    )


def refund_cancelled_order(order: Order, *, actor=None) -> None:
    """Reverse everything checkout and rider assignment put in escrow."""
    if not order.is_paid:
        return
    if order.escrow_status != EscrowStatus.HELD:
        raise IllegalTransition(
            f"Order {order.order_number} escrow is {order.escrow_status}; it cannot be reversed by cancellation",
            reason="dispute_active" if order.escrow_status == EscrowStatus.DISPUTED else "escrow_not_held",
            debug={"escrow_status": order.escrow_status},
        )
    on = order.order_number
    post_entry(
        int(order.buyer_id),
        EntryType.CREDIT,
        int(order.total_amount_minor or 0),
        reference=f"{on}-BUYER-REFUND",
        description=f"Refund for cancelled order {on}",
        order_id=int(order.id),
    )
    post_entry(
        int(order.seller_id),
        EntryType.DEBIT,
        int(order.seller_escrow_minor or 0),
        bucket=Bucket.PENDING,
        reference=f"{on}-{seller_ref(order)}-ESCROW-REVERSAL",
        description=f"Escrow reversed for cancelled order {on}",
        order_id=int(order.id),
    )
    if order.rider_id is not None:
        post_entry(
            int(order.rider_id),
            EntryType.DEBIT,
            int(order.rider_payout_minor or 0),
            bucket=Bucket.PENDING,
            reference=f"{on}-RIDER-ESCROW-REVERSAL",
            description=f"Delivery escrow reversed for cancelled order {on}",
            order_id=int(order.id),
        )
    transition_escrow(
        order,
        EscrowStatus.REFUNDED,
        idempotency_key=f"cancel:{int(order.id)}",
        actor=actor,
        reason="order_cancelled",
    )


def transition_order(
    order_id: int,
    actor_id: int,
    new_status: str,
    *,
    rider_id: int | None = None,
    note: str = "",
    now=None,
) -> dict:
    """Move an order along the lifecycle on behalf of ``actor_id``.

    COMPLETED is delegated to the settlement engine. Cancellation refunds the
    buyer and reverses escrow in the same commit.
    """
    requested = (new_status or "").strip().upper()
    if requested not in OrderStatus.ALL:
        raise ValidationError(f"Unknown status {new_status!r}", reason="unknown_status")

    # Cancellation must see a dispute opened by a concurrent request.
    order = lock_order(order_id) if requested == OrderStatus.CANCELLED else get_order_or_404(order_id)
    actor = db.session.get(User, int(actor_id))
    if actor is None:
        db.session.rollback()
        raise Forbidden("Unknown actor")

    current = order.status
    try:
        if not can_transition(current, requested):
            raise IllegalTransition(
                f"Cannot move order from {current} to {requested}",
                reason="illegal_transition",
                debug={"current": current, "requested": requested, "allowed": allowed_next(current)},
            )
        assign_to = _authorize(order, actor, requested, rider_id)
        if requested == OrderStatus.CANCELLED and Dispute.active_for_order(int(order.id)) is not None:
            raise IllegalTransition(
                "Order has an active dispute; it is resolved through the dispute workflow",
                reason="dispute_active",
                debug={"current": current, "requested": requested},
            )
    except MarketplaceError:
        db.session.rollback()
        raise

    if requested == OrderStatus.COMPLETED:
        from bata.services.settlement_service import settle_order  # lazy import

        return settle_order(int(order.id), actor_id=int(actor.id), actor_type=actor.role or "buyer", now=now)

    now = now or _now()
    actor_ref = {"type": actor.role or "user", "id": int(actor.id)}
    try:
        extra = {}
        if requested == OrderStatus.RIDER_ASSIGNED and assign_to is not None:
            extra["rider_id"] = int(assign_to)
        compare_and_set_status(order, current, requested, now=now, extra=extra)

        if requested == OrderStatus.RIDER_ASSIGNED and assign_to is not None:
            _escrow_rider_payout(order, int(assign_to))
        if requested == OrderStatus.CANCELLED:
            refund_cancelled_order(order, actor=actor_ref)

        record_order_event(
            order,
            requested.lower(),
            actor_user_id=int(actor.id),
            from_status=current,
            to_status=requested,
            note=note,
        )
        log_event(
            "order_transitioned",
            actor_user_id=int(actor.id),
            subject_type="order",
            subject_id=int(order.id),
            idempotency_key=f"order_transitioned:{int(order.id)}:{current}:{requested}",
            metadata={"from": current, "to": requested, "rider_id": order.rider_id},
        )
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise ConcurrentModification(
            f"Order {order_id} changed while it was being updated",
            debug={"order_id": int(order_id), "requested": requested},
        )
    except Exception:
        db.session.rollback()
        raise

    logger.info("order_transitioned order_id=%s from=%s to=%s actor=%s", order.id, current, requested, actor.id)
    return order.to_dict()


def order_timeline(order_id: int) -> list[dict]:
    rows = (
        OrderEvent.query.filter_by(order_id=int(order_id))
        .order_by(OrderEvent.created_at.asc(), OrderEvent.id.asc())
        .all()
    )
    return [r.to_dict() for r in rows]
