from __future__ import annotations

import json
from datetime import datetime

from sqlalchemy.orm.attributes import set_committed_value

from bata.errors import ConcurrentModification
from bata.extensions import db
from bata.models import EscrowTransition, Order


class EscrowStatus:
    NONE = "NONE"
    HELD = "HELD"
    RELEASED = "RELEASED"
    REFUNDED = "REFUNDED"
    DISPUTED = "DISPUTED"

    # A move to the current status is always allowed.
    EDGES = {
        NONE: frozenset({HELD}),
        HELD: frozenset({RELEASED, REFUNDED, DISPUTED}),
        DISPUTED: frozenset({HELD, RELEASED, REFUNDED}),
        RELEASED: frozenset(),
        REFUNDED: frozenset(),
    }

    @classmethod
    def can_move(cls, current: str, target: str) -> bool:
        return target == current or target in cls.EDGES.get(current, frozenset())


def _actor_fields(actor) -> tuple[str, int | None]:
    if not isinstance(actor, dict):
        return "system", None
    try:
        actor_id = int(actor["id"]) if actor.get("id") is not None else None
    except (TypeError, ValueError):
        actor_id = None
    return str(actor.get("type") or "system")[:32], actor_id


def _normalise(status) -> str:
    return (status or EscrowStatus.NONE).strip().upper()


def _swap_stored_status(order: Order, source: str, target: str) -> None:
    # Matches no row when another writer moved the escrow first.
    db.session.flush()
    updated = (
        Order.query.filter(Order.id == int(order.id), Order.escrow_status == source)
        .update({Order.escrow_status: target}, synchronize_session=False)
    )
    if updated != 1:
        raise ConcurrentModification(
            f"Escrow for order {order.order_number} changed while it was being updated",
            reason="escrow_changed",
            debug={"order_id": int(order.id), "expected_escrow_status": source, "requested": target},
        )
    set_committed_value(order, "escrow_status", target)


def transition_escrow(
    order: Order,
    to_state: str,
    *,
    idempotency_key: str,
    actor=None,
    reason: str = "",
    metadata: dict | None = None,
) -> EscrowTransition:
    """Stage an escrow state change plus its audit row. The caller commits.

    A repeated ``idempotency_key`` for the same order returns the earlier row
    untouched; the unique constraint covers concurrent writers.
    """
    if order is None:
        raise ValueError("order required")
    key = (idempotency_key or "").strip()[:160]
    if not key:
        raise ValueError("idempotency_key required")

    prior = EscrowTransition.query.filter_by(order_id=int(order.id), idempotency_key=key).first()
    if prior is not None:
        return prior

    source = _normalise(order.escrow_status)
    target = _normalise(to_state)
    if not EscrowStatus.can_move(source, target):
        raise ValueError(f"invalid_escrow_transition {source}->{target}")

    actor_type, actor_id = _actor_fields(actor)
    audit = EscrowTransition(
        order_id=int(order.id),
        from_status=source,
        to_status=target,
        actor_type=actor_type,
        actor_id=actor_id,
        idempotency_key=key,
        reason=(reason or "")[:240],
        metadata_json=json.dumps(metadata or {}, default=str)[:4000],
        created_at=datetime.utcnow(),
    )
    db.session.add(audit)
    if target != source:
        _swap_stored_status(order, source, target)
    db.session.flush()
    return audit


def escrow_history(order_id: int) -> list[dict]:
    """Audit trail for one order, oldest first."""
    return [
        row.to_dict()
        for row in EscrowTransition.query.filter_by(order_id=int(order_id)).order_by(EscrowTransition.id.asc())
    ]
