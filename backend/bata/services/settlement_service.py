from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy.exc import IntegrityError

from bata.errors import Forbidden, NotSettleable
from bata.extensions import db
from bata.models import Dispute, Order, User
from bata.services.escrow_service import EscrowStatus, transition_escrow
from bata.services.ledger_service import Bucket, EntryType, platform_user_id, post_entry
from bata.services.order_state import (
    OrderStatus,
    compare_and_set_status,
    get_order_or_404,
    lock_order,
    record_order_event,
)
from bata.utils.events import log_event

logger = logging.getLogger(__name__)


def _now():
    return datetime.utcnow()


def _bump_completed(user_id: int | None) -> None:
    if user_id is None:
        return
    db.session.query(User).filter(User.id == int(user_id)).update(
        {User.completed_orders: User.completed_orders + 1},
        synchronize_session=False,
    )


def check_settleable(order: Order) -> None:
    if order.status == OrderStatus.COMPLETED or order.escrow_status == EscrowStatus.RELEASED:
        raise NotSettleable(
            f"Order {order.order_number} is already settled",
            reason="already_settled",
            debug={"status": order.status, "escrow_status": order.escrow_status},
        )
    if order.escrow_status == EscrowStatus.DISPUTED or Dispute.active_for_order(int(order.id)) is not None:
        raise NotSettleable(
            f"Order {order.order_number} has an active dispute",
            reason="dispute_active",
            debug={"status": order.status, "escrow_status": order.escrow_status},
        )
    if order.status != OrderStatus.DELIVERED:
        raise NotSettleable(
            f"Order {order.order_number} must be DELIVERED before settlement (currently {order.status})",
            reason="not_delivered",
            debug={"status": order.status},
        )
    if order.escrow_status != EscrowStatus.HELD:
        raise NotSettleable(
            f"Order {order.order_number} has no escrow to release",
            reason="escrow_not_held",
            debug={"escrow_status": order.escrow_status},
        )


def apply_settlement(order: Order, *, actor=None, now=None) -> dict:
    """Stage the ledger moves that release an order's escrow. The caller commits.

    Amounts come from the snapshot captured at checkout.
    """
    if order.escrow_status != EscrowStatus.HELD:
        raise NotSettleable(
            f"Order {order.order_number} escrow is no longer held",
            reason="dispute_active" if order.escrow_status == EscrowStatus.DISPUTED else "escrow_not_held",
            debug={"status": order.status, "escrow_status": order.escrow_status},
        )
    now = now or _now()
    on = order.order_number
    oid = int(order.id)
    seller_escrow = int(order.seller_escrow_minor or 0)
    rider_payout = int(order.rider_payout_minor or 0)
    commission = int(order.platform_commission_minor or 0)
    platform_id = platform_user_id()

    post_entry(
        int(order.seller_id),
        EntryType.DEBIT,
        seller_escrow,
        bucket=Bucket.PENDING,
        reference=f"{on}-SELLER-ESCROW-RELEASE",
        description=f"Escrow released for order {on}",
        order_id=oid,
    )
    post_entry(
        int(order.seller_id),
        EntryType.CREDIT,
        seller_escrow,
        reference=f"{on}-SELLER-CREDIT",
        description=f"Payment received for order {on}",
        order_id=oid,
    )

    if order.rider_id is not None:
        post_entry(
            int(order.rider_id),
            EntryType.DEBIT,
            rider_payout,
            bucket=Bucket.PENDING,
            reference=f"{on}-RIDER-ESCROW-RELEASE",
            description=f"Delivery escrow released for order {on}",
            order_id=oid,
        )
        post_entry(
            int(order.rider_id),
            EntryType.CREDIT,
            rider_payout,
            reference=f"{on}-RIDER-CREDIT",
            description=f"Delivery fee for order {on}",
            order_id=oid,
        )
    else:
        post_entry(
            platform_id,
            EntryType.CREDIT,
            rider_payout,
            reference=f"{on}-PLATFORM-UNCLAIMED-RIDER",
            description=f"Unclaimed delivery payout for order {on}",
            order_id=oid,
        )

    post_entry(
        platform_id,
        EntryType.CREDIT,
        commission,
        reference=f"{on}-PLATFORM-CREDIT",
        description=f"Platform commission for order {on}",
        order_id=oid,
    )

    transition_escrow(
        order,
        EscrowStatus.RELEASED,
        idempotency_key=f"settle:{oid}",
        actor=actor,
        reason="settlement",
    )
    compare_and_set_status(order, OrderStatus.DELIVERED, OrderStatus.COMPLETED, now=now)
    _bump_completed(int(order.seller_id))
    _bump_completed(int(order.rider_id) if order.rider_id is not None else None)

    summary = {
        "order_id": oid,
        "order_number": on,
        "seller_credit_minor": seller_escrow,
        "rider_credit_minor": rider_payout if order.rider_id is not None else 0,
        "platform_credit_minor": commission + (0 if order.rider_id is not None else rider_payout),
    }
    log_event(
        "settlement_applied",
        actor_user_id=actor.get("id") if isinstance(actor, dict) else None,
        subject_type="order",
        subject_id=oid,
        idempotency_key=f"settlement_applied:{oid}",
        metadata=summary,
    )
    return summary


def settle_order(
    order_id: int,
    *,
    actor_id: int | None = None,
    actor_type: str = "system",
    now=None,
) -> dict:
    """Release escrow for a delivered order and mark it COMPLETED, exactly once."""
    order = lock_order(order_id)
    try:
        check_settleable(order)
    except NotSettleable:
        db.session.rollback()
        raise

    actor = {"type": actor_type, "id": actor_id}
    try:
        summary = apply_settlement(order, actor=actor, now=now)
        record_order_event(
            order,
            "completed",
            actor_user_id=actor_id,
            from_status=OrderStatus.DELIVERED,
            to_status=OrderStatus.COMPLETED,
            note="Escrow released",
            idempotency_key=f"order:{int(order.id)}:completed",
        )
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise NotSettleable(
            f"Order {order_id} is already settled",
            reason="already_settled",
            debug={"order_id": int(order_id)},
        )
    except Exception:
        db.session.rollback()
        raise

    logger.info(
        "settlement_applied order_id=%s seller=%s rider=%s platform=%s",
        summary["order_id"],
        summary["seller_credit_minor"],
        summary["rider_credit_minor"],
        summary["platform_credit_minor"],
    )
    payload = order.to_dict()
    payload["settlement"] = summary
    return payload


def confirm_delivery(order_id: int, buyer_id: int, *, now=None) -> dict:
    order = get_order_or_404(order_id)
    if int(order.buyer_id) != int(buyer_id):
        raise Forbidden("Only the buyer can confirm delivery")
    return settle_order(int(order.id), actor_id=int(buyer_id), actor_type="buyer", now=now)
