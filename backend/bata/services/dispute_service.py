from __future__ import annotations

import json
import logging
import os
from datetime import datetime, timedelta

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError

from bata.errors import (
    ConcurrentModification,
    DisputeIneligible,
    DisputeTerminal,
    Forbidden,
    IllegalTransition,
    MarketplaceError,
    NotFound,
    ValidationError,
)
from bata.extensions import db
from bata.models import Dispute, DisputeMessage, DisputeStatus, Order, Penalty, User
from bata.services.escrow_service import EscrowStatus, transition_escrow
from bata.services.ledger_service import Bucket, EntryType, platform_user_id, post_entry
from bata.services.order_state import OrderStatus, compare_and_set_status, lock_order, record_order_event
from bata.services.settlement_service import apply_settlement, check_settleable
from bata.utils.events import log_event

logger = logging.getLogger(__name__)

DEFAULT_DISPUTE_WINDOW_DAYS = 7

# Statuses a buyer may dispute from. PENDING and CANCELLED are excluded.
DISPUTABLE_STATUSES = (
    OrderStatus.DELIVERED,
    OrderStatus.COMPLETED,
    OrderStatus.ON_THE_WAY,
    OrderStatus.PICKED_UP,
    OrderStatus.RIDER_ASSIGNED,
    OrderStatus.PROCESSING,
    OrderStatus.SHIPPED,
)
FULFILLED_STATUSES = (OrderStatus.DELIVERED, OrderStatus.COMPLETED)

DISPUTE_TRANSITIONS = {
    DisputeStatus.OPEN: (DisputeStatus.UNDER_REVIEW,) + DisputeStatus.TERMINAL,
    DisputeStatus.UNDER_REVIEW: DisputeStatus.TERMINAL,
}

REFUND_REQUIRED = (DisputeStatus.RESOLVED_BUYER_FAVOR, DisputeStatus.RESOLVED_COMPROMISE)

BUYER_PENALTY_POINTS = 2
SELLER_PENALTY_POINTS = 2
SELLER_BUYER_FAVOR_PENALTY_POINTS = 3


def _now():
    return datetime.utcnow()


def dispute_window() -> timedelta:
    raw = (os.getenv("DISPUTE_WINDOW_DAYS") or "").strip()
    try:
        days = int(raw) if raw else DEFAULT_DISPUTE_WINDOW_DAYS
    except Exception:
        days = DEFAULT_DISPUTE_WINDOW_DAYS
    return timedelta(days=max(0, days))


def _is_admin(user: User | None) -> bool:
    return user is not None and (user.role or "").strip().lower() == "admin"


def _require_admin(admin_id: int) -> User:
    admin = db.session.get(User, int(admin_id))
    if not _is_admin(admin):
        raise Forbidden("Admin access required")
    return admin


def get_dispute_or_404(dispute_id: int) -> Dispute:
    dispute = db.session.get(Dispute, int(dispute_id))
    if dispute is None:
        raise NotFound(f"Dispute {dispute_id} not found")
    return dispute


def refunded_minor(order_id: int, *, exclude_dispute_id: int | None = None) -> int:
    """Sum of refunds already granted by resolved disputes on this order."""
    q = db.session.query(func.coalesce(func.sum(Dispute.refund_amount_minor), 0)).filter(
        Dispute.order_id == int(order_id),
        Dispute.status.in_(REFUND_REQUIRED),
    )
    if exclude_dispute_id is not None:
        q = q.filter(Dispute.id != int(exclude_dispute_id))
    return int(q.scalar() or 0)


def check_dispute_eligibility(order: Order, now=None) -> tuple[bool, str | None, dict]:
    """Decide whether the buyer may open a dispute on ``order`` right now.

    Returns ``(eligible, reason, debug)``; reason is None when eligible.
    """
    now = now or _now()
    window = dispute_window()
    debug = {
        "order_status": order.status,
        "delivered_at": order.delivered_at.isoformat() if order.delivered_at else None,
        "now": now.isoformat(),
        "window_days": window.days,
    }

    active = Dispute.active_for_order(int(order.id))
    if active is not None:
        debug["dispute_id"] = int(active.id)
        return False, "already_disputed", debug

    if order.status not in DISPUTABLE_STATUSES:
        return False, "wrong_status", debug

    already = refunded_minor(int(order.id))
    if order.escrow_status == EscrowStatus.REFUNDED or already >= int(order.total_amount_minor or 0):
        debug["refunded_minor"] = already
        return False, "already_refunded", debug

    if order.status in FULFILLED_STATUSES:
        if order.delivered_at is None:
            return False, "no_fulfillment_timestamp", debug
        deadline = order.delivered_at + window
        debug["deadline"] = deadline.isoformat()
        if now > deadline:
            return False, "window_expired", debug
    return True, None, debug


def open_dispute(order_id: int, buyer_id: int, reason: str, evidence: list | None = None, *, now=None) -> dict:
    now = now or _now()
    text = (reason or "").strip()
    if not text:
        raise ValidationError("A reason is required to open a dispute", reason="reason_required")
    if evidence is not None and not isinstance(evidence, list):
        raise ValidationError("evidence must be a list", reason="invalid_evidence")

    order = lock_order(order_id)
    try:
        if int(order.buyer_id) != int(buyer_id):
            raise Forbidden("Only the buyer can open a dispute on this order")
        eligible, why, debug = check_dispute_eligibility(order, now)
        if not eligible:
            raise DisputeIneligible(_ineligible_message(why), reason=why, debug=debug)
    except MarketplaceError:
        db.session.rollback()
        raise

    try:
        dispute = Dispute(
            order_id=int(order.id),
            buyer_id=int(order.buyer_id),
            seller_id=int(order.seller_id),
            status=DisputeStatus.OPEN,
            reason=text,
            buyer_evidence_json=json.dumps(evidence or []),
            created_at=now,
            updated_at=now,
        )
        db.session.add(dispute)
        db.session.flush()
        db.session.add(
            DisputeMessage(
                dispute_id=int(dispute.id),
                sender_id=int(buyer_id),
                sender_type="BUYER",
                message=text,
                attachments_json=json.dumps(evidence or []),
                created_at=now,
            )
        )
        if order.escrow_status == EscrowStatus.HELD:
            transition_escrow(
                order,
                EscrowStatus.DISPUTED,
                idempotency_key=f"dispute:{int(dispute.id)}:open",
                actor={"type": "buyer", "id": int(buyer_id)},
                reason="dispute_opened",
            )
        record_order_event(
            order,
            "dispute_opened",
            actor_user_id=int(buyer_id),
            note=text[:240],
            idempotency_key=f"order:{int(order.id)}:dispute:{int(dispute.id)}:opened",
        )
        log_event(
            "dispute_opened",
            actor_user_id=int(buyer_id),
            subject_type="dispute",
            subject_id=int(dispute.id),
            idempotency_key=f"dispute_opened:{int(dispute.id)}",
            metadata={"order_id": int(order.id), "order_status": order.status},
        )
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    logger.info("dispute_opened dispute_id=%s order_id=%s buyer_id=%s", dispute.id, order.id, buyer_id)
    return dispute.to_dict(include_messages=True)


def _ineligible_message(reason: str | None) -> str:
    return {
        "already_disputed": "This order already has an open dispute",
        "wrong_status": "This order cannot be disputed in its current status",
        "window_expired": "The dispute window for this order has closed",
        "no_fulfillment_timestamp": "This order has no recorded delivery time",
        "already_refunded": "This order has already been refunded in full",
    }.get(reason or "", "This order cannot be disputed")


def _cas_dispute_status(dispute: Dispute, new_status: str, *, now, extra: dict | None = None) -> None:
    values = {"status": new_status, "updated_at": now}
    if extra:
        values.update(extra)
    updated = (
        Dispute.query.filter(Dispute.id == int(dispute.id), Dispute.status == dispute.status)
        .update(values, synchronize_session=False)
    )
    if updated != 1:
        raise DisputeTerminal(
            f"Dispute {dispute.id} was already updated by someone else",
            reason="concurrent_update",
            debug={"dispute_id": int(dispute.id)},
        )
    for key, value in values.items():
        setattr(dispute, key, value)


def mark_under_review(dispute_id: int, admin_id: int, *, now=None) -> dict:
    _require_admin(admin_id)
    dispute = get_dispute_or_404(dispute_id)
    if dispute.is_terminal():
        raise DisputeTerminal(f"Dispute {dispute.id} is already {dispute.status}", reason=dispute.status)
    if dispute.status == DisputeStatus.UNDER_REVIEW:
        return dispute.to_dict()
    now = now or _now()
    try:
        _cas_dispute_status(dispute, DisputeStatus.UNDER_REVIEW, now=now)
        log_event(
            "dispute_under_review",
            actor_user_id=int(admin_id),
            subject_type="dispute",
            subject_id=int(dispute.id),
            idempotency_key=f"dispute_under_review:{int(dispute.id)}",
        )
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    return dispute.to_dict()


def _draw(shares: tuple[int, int, int], amount_minor: int) -> tuple[int, int, int]:
    remaining = int(amount_minor)
    drawn = []
    for share in shares:
        take = min(remaining, share)
        drawn.append(take)
        remaining -= take
    if remaining > 0:
        raise ValidationError("Refund exceeds the order total", reason="refund_exceeds_total")
    return drawn[0], drawn[1], drawn[2]


def split_refund(order: Order, refund_minor: int, *, already_refunded_minor: int = 0) -> dict:
    """Draw the refund from seller escrow first, then platform commission, then rider payout.

    Earlier refunds on the same order have already consumed the front of that
    sequence, so only the next slice is drawn.
    """
    seller = int(order.seller_escrow_minor or 0)
    platform = int(order.platform_commission_minor or 0)
    rider = int(order.rider_payout_minor or 0)
    prior = _draw((seller, platform, rider), int(already_refunded_minor))
    upto = _draw((seller, platform, rider), int(already_refunded_minor) + int(refund_minor))
    from_seller, from_platform, from_rider = (u - p for u, p in zip(upto, prior))
    return {
        "from_seller_minor": from_seller,
        "from_platform_minor": from_platform,
        "from_rider_minor": from_rider,
        "seller_remainder_minor": seller - from_seller,
        "platform_remainder_minor": platform - from_platform,
        "rider_remainder_minor": rider - from_rider,
    }


def _refund_before_release(order: Order, dispute: Dispute, refund: int, split: dict, *, actor, now) -> None:
    prefix = f"DISPUTE-{int(dispute.id)}"
    oid = int(order.id)
    platform_id = platform_user_id()

    post_entry(
        int(order.buyer_id),
        EntryType.CREDIT,
        refund,
        reference=f"{prefix}-BUYER-REFUND",
        description=f"Refund from dispute resolution (Order: {order.order_number})",
        order_id=oid,
    )
    post_entry(
        int(order.seller_id),
        EntryType.DEBIT,
        int(order.seller_escrow_minor or 0),
        bucket=Bucket.PENDING,
        reference=f"{prefix}-SELLER-ESCROW-RELEASE",
        description=f"Escrow released by dispute resolution (Order: {order.order_number})",
        order_id=oid,
    )
    post_entry(
        int(order.seller_id),
        EntryType.CREDIT,
        split["seller_remainder_minor"],
        reference=f"{prefix}-SELLER-CREDIT",
        description=f"Partial payment after dispute (Order: {order.order_number})",
        order_id=oid,
    )
    if order.rider_id is not None:
        post_entry(
            int(order.rider_id),
            EntryType.DEBIT,
            int(order.rider_payout_minor or 0),
            bucket=Bucket.PENDING,
            reference=f"{prefix}-RIDER-ESCROW-RELEASE",
            description=f"Delivery escrow released by dispute resolution (Order: {order.order_number})",
            order_id=oid,
        )
        post_entry(
            int(order.rider_id),
            EntryType.CREDIT,
            split["rider_remainder_minor"],
            reference=f"{prefix}-RIDER-CREDIT",
            description=f"Delivery fee after dispute (Order: {order.order_number})",
            order_id=oid,
        )
    else:
        post_entry(
            platform_id,
            EntryType.CREDIT,
            split["rider_remainder_minor"],
            reference=f"{prefix}-PLATFORM-UNCLAIMED-RIDER",
            description=f"Unclaimed delivery payout after dispute (Order: {order.order_number})",
            order_id=oid,
        )
    post_entry(
        platform_id,
        EntryType.CREDIT,
        split["platform_remainder_minor"],
        reference=f"{prefix}-PLATFORM-CREDIT",
        description=f"Platform commission after dispute (Order: {order.order_number})",
        order_id=oid,
    )

    full_refund = refund >= int(order.total_amount_minor or 0)
    transition_escrow(
        order,
        EscrowStatus.REFUNDED if full_refund else EscrowStatus.RELEASED,
        idempotency_key=f"dispute:{int(dispute.id)}:resolve",
        actor=actor,
        reason=dispute.status,
    )
    if order.status == OrderStatus.DELIVERED:
        compare_and_set_status(order, OrderStatus.DELIVERED, OrderStatus.COMPLETED, now=now)
        for uid in (order.seller_id, order.rider_id):
            if uid is not None:
                db.session.query(User).filter(User.id == int(uid)).update(
                    {User.completed_orders: User.completed_orders + 1},
                    synchronize_session=False,
                )
    else:
        compare_and_set_status(order, order.status, OrderStatus.CANCELLED, now=now)


def _refund_after_release(order: Order, dispute: Dispute, refund: int, split: dict) -> None:
    """Claw a refund back from an order whose escrow was already paid out."""
    prefix = f"DISPUTE-{int(dispute.id)}"
    oid = int(order.id)
    post_entry(
        int(order.buyer_id),
        EntryType.CREDIT,
        refund,
        reference=f"{prefix}-BUYER-REFUND",
        description=f"Refund from dispute resolution (Order: {order.order_number})",
        order_id=oid,
    )
    post_entry(
        int(order.seller_id),
        EntryType.DEBIT,
        split["from_seller_minor"],
        reference=f"{prefix}-SELLER-CLAWBACK",
        description=f"Dispute refund recovered (Order: {order.order_number})",
        order_id=oid,
        allow_negative=True,
    )
    post_entry(
        platform_user_id(),
        EntryType.DEBIT,
        refund - split["from_seller_minor"],
        reference=f"{prefix}-PLATFORM-CLAWBACK",
        description=f"Dispute refund absorbed by platform (Order: {order.order_number})",
        order_id=oid,
        allow_negative=True,
    )


def _apply_penalty(user_id: int, dispute: Dispute, *, action: str, points: int, reason: str, admin_id: int, now) -> Penalty:
    banned_until = now + timedelta(days=1) if action == "TEMP_BAN_1DAY" else None
    penalty = Penalty(
        user_id=int(user_id),
        dispute_id=int(dispute.id),
        action=action,
        reason=reason[:255],
        points_added=int(points),
        issued_by=int(admin_id),
        banned_until=banned_until,
        created_at=now,
    )
    db.session.add(penalty)
    values = {
        User.penalty_points: User.penalty_points + int(points),
        User.warning_count: User.warning_count + 1,
        User.last_warning_at: now,
    }
    if banned_until is not None:
        values[User.suspended_until] = banned_until
    db.session.query(User).filter(User.id == int(user_id)).update(values, synchronize_session=False)
    return penalty


def resolve_dispute(
    dispute_id: int,
    admin_id: int,
    target_status: str,
    resolution: str,
    *,
    refund_amount_minor: int | None = None,
    penalize_buyer: bool = False,
    penalize_seller: bool = False,
    penalty_reason: str = "",
    now=None,
) -> dict:
    """Close a dispute and apply its money outcome in one commit."""
    _require_admin(admin_id)
    dispute = get_dispute_or_404(dispute_id)
    if dispute.is_terminal():
        raise DisputeTerminal(f"Dispute {dispute.id} is already {dispute.status}", reason=dispute.status)

    target = (target_status or "").strip().upper()
    if target not in DisputeStatus.TERMINAL:
        raise ValidationError(f"Invalid resolution status {target_status!r}", reason="invalid_status")
    if target not in DISPUTE_TRANSITIONS.get(dispute.status, ()):
        raise IllegalTransition(f"Cannot move dispute from {dispute.status} to {target}", reason="illegal_transition")
    text = (resolution or "").strip()
    if not text:
        raise ValidationError("Resolution text is required", reason="resolution_required")

    refund = int(refund_amount_minor or 0)
    if refund < 0:
        raise ValidationError("Refund amount cannot be negative", reason="invalid_refund")
    if target in REFUND_REQUIRED and refund <= 0:
        raise ValidationError(f"{target} requires a refund amount", reason="refund_required")
    if target not in REFUND_REQUIRED and refund > 0:
        raise ValidationError(f"{target} cannot carry a refund", reason="refund_not_allowed")

    order = lock_order(int(dispute.order_id))
    total = int(order.total_amount_minor or 0)
    already_refunded = refunded_minor(int(order.id), exclude_dispute_id=int(dispute.id))
    if refund > total - already_refunded:
        db.session.rollback()
        raise ValidationError(
            "Refund cannot exceed what remains of the order total",
            reason="refund_exceeds_total",
            debug={"refund_minor": refund, "total_minor": total, "already_refunded_minor": already_refunded},
        )

    now = now or _now()
    actor = {"type": "admin", "id": int(admin_id)}
    previous_status = dispute.status
    outcome = {"refund_minor": refund, "order_status_before": order.status}
    try:
        _cas_dispute_status(
            dispute,
            target,
            now=now,
            extra={
                "resolution": text,
                "refund_amount_minor": refund,
                "resolved_by": int(admin_id),
                "resolved_at": now,
            },
        )
        db.session.add(
            DisputeMessage(
                dispute_id=int(dispute.id),
                sender_id=int(admin_id),
                sender_type="ADMIN",
                message=f"Resolution ({target}): {text}",
                created_at=now,
            )
        )
        db.session.flush()

        if refund > 0:
            split = split_refund(order, refund, already_refunded_minor=already_refunded)
            outcome["split"] = split
            if order.escrow_status in (EscrowStatus.HELD, EscrowStatus.DISPUTED):
                _refund_before_release(order, dispute, refund, split, actor=actor, now=now)
            elif order.escrow_status == EscrowStatus.RELEASED:
                _refund_after_release(order, dispute, refund, split)
            else:
                raise ValidationError(
                    f"Order {order.order_number} has no funds to refund",
                    reason="nothing_to_refund",
                    debug={"escrow_status": order.escrow_status},
                )
        else:
            if order.escrow_status == EscrowStatus.DISPUTED:
                transition_escrow(
                    order,
                    EscrowStatus.HELD,
                    idempotency_key=f"dispute:{int(dispute.id)}:restore",
                    actor=actor,
                    reason=target,
                )
            if order.status == OrderStatus.DELIVERED:
                check_settleable(order)
                outcome["settlement"] = apply_settlement(order, actor=actor, now=now)

        if penalize_buyer:
            _apply_penalty(
                int(dispute.buyer_id),
                dispute,
                action="WARNING",
                points=BUYER_PENALTY_POINTS,
                reason=penalty_reason or "False dispute claim",
                admin_id=int(admin_id),
                now=now,
            )
        if penalize_seller:
            buyer_favored = target == DisputeStatus.RESOLVED_BUYER_FAVOR
            _apply_penalty(
                int(dispute.seller_id),
                dispute,
                action="TEMP_BAN_1DAY" if buyer_favored else "WARNING",
                points=SELLER_BUYER_FAVOR_PENALTY_POINTS if buyer_favored else SELLER_PENALTY_POINTS,
                reason=penalty_reason or "Dispute resolved against seller",
                admin_id=int(admin_id),
                now=now,
            )

        record_order_event(
            order,
            "dispute_resolved",
            actor_user_id=int(admin_id),
            from_status=outcome["order_status_before"],
            to_status=order.status,
            note=f"{target}: {text}"[:240],
            idempotency_key=f"order:{int(order.id)}:dispute:{int(dispute.id)}:resolved",
        )
        outcome["order_status_after"] = order.status
        log_event(
            "dispute_resolved",
            actor_user_id=int(admin_id),
            subject_type="dispute",
            subject_id=int(dispute.id),
            idempotency_key=f"dispute_resolved:{int(dispute.id)}",
            metadata={"from": previous_status, "to": target, **outcome},
        )
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise ConcurrentModification(
            f"Dispute {dispute_id} was resolved concurrently",
            debug={"dispute_id": int(dispute_id)},
        )
    except Exception:
        db.session.rollback()
        raise

    logger.info(
        "dispute_resolved dispute_id=%s status=%s refund_minor=%s order_status=%s",
        dispute.id,
        target,
        refund,
        order.status,
    )
    payload = dispute.to_dict(include_messages=True)
    payload["order"] = order.to_dict()
    payload["outcome"] = outcome
    return payload


def _sender_type(dispute: Dispute, user: User) -> str:
    if int(user.id) == int(dispute.buyer_id):
        return "BUYER"
    if int(user.id) == int(dispute.seller_id):
        return "SELLER"
    if _is_admin(user):
        return "ADMIN"
    raise Forbidden("Not authorized to take part in this dispute")


def post_dispute_message(dispute_id: int, sender_id: int, message: str, attachments: list | None = None, *, now=None) -> dict:
    dispute = get_dispute_or_404(dispute_id)
    sender = db.session.get(User, int(sender_id))
    if sender is None:
        raise Forbidden("Unknown sender")
    sender_type = _sender_type(dispute, sender)
    if dispute.is_terminal():
        raise DisputeTerminal(
            f"Dispute {dispute.id} is {dispute.status}; no further messages are accepted",
            reason=dispute.status,
        )
    text = (message or "").strip()
    if not text:
        raise ValidationError("Message is required", reason="message_required")
    if attachments is not None and not isinstance(attachments, list):
        raise ValidationError("attachments must be a list", reason="invalid_attachments")

    now = now or _now()
    try:
        row = DisputeMessage(
            dispute_id=int(dispute.id),
            sender_id=int(sender.id),
            sender_type=sender_type,
            message=text,
            attachments_json=json.dumps(attachments or []),
            created_at=now,
        )
        db.session.add(row)
        if sender_type == "SELLER" and attachments:
            existing = json.loads(dispute.seller_evidence_json or "[]")
            dispute.seller_evidence_json = json.dumps(list(existing) + list(attachments))
        dispute.updated_at = now
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    return row.to_dict()


def _require_participant(dispute: Dispute, user_id: int) -> User:
    user = db.session.get(User, int(user_id))
    if user is None:
        raise Forbidden("Unknown user")
    _sender_type(dispute, user)
    return user


def get_dispute(dispute_id: int, user_id: int) -> dict:
    dispute = get_dispute_or_404(dispute_id)
    _require_participant(dispute, user_id)
    payload = dispute.to_dict(include_messages=True)
    order = db.session.get(Order, int(dispute.order_id))
    payload["order"] = order.to_dict() if order is not None else None
    return payload


def list_dispute_messages(dispute_id: int, user_id: int) -> list[dict]:
    dispute = get_dispute_or_404(dispute_id)
    _require_participant(dispute, user_id)
    rows = (
        DisputeMessage.query.filter_by(dispute_id=int(dispute.id))
        .order_by(DisputeMessage.created_at.asc(), DisputeMessage.id.asc())
        .all()
    )
    return [r.to_dict() for r in rows]


def list_disputes_for_user(user_id: int, *, status: str | None = None) -> list[dict]:
    user = db.session.get(User, int(user_id))
    if user is None:
        raise Forbidden("Unknown user")
    q = Dispute.query
    if not _is_admin(user):
        q = q.filter((Dispute.buyer_id == int(user_id)) | (Dispute.seller_id == int(user_id)))
    if status:
        q = q.filter(Dispute.status == status.strip().upper())
    rows = q.order_by(Dispute.created_at.desc(), Dispute.id.desc()).limit(200).all()
    return [r.to_dict() for r in rows]
