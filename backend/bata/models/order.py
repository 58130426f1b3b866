from datetime import datetime
import json

from bata.extensions import db
from bata.utils.money import money_minor_to_major


class Order(db.Model):
    __tablename__ = "orders"

    id = db.Column(db.Integer, primary_key=True)
    order_number = db.Column(db.String(64), nullable=False, unique=True, index=True)
    checkout_reference = db.Column(db.String(80), nullable=True, index=True)

    buyer_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    seller_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    rider_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True, index=True)

    # Captured once at checkout; settlement never re-derives these.
    product_price_minor = db.Column(db.BigInteger, nullable=False, default=0)
    delivery_fee_minor = db.Column(db.BigInteger, nullable=False, default=0)
    platform_fee_minor = db.Column(db.BigInteger, nullable=False, default=0)
    platform_commission_minor = db.Column(db.BigInteger, nullable=False, default=0)
    seller_escrow_minor = db.Column(db.BigInteger, nullable=False, default=0)
    rider_payout_minor = db.Column(db.BigInteger, nullable=False, default=0)
    total_amount_minor = db.Column(db.BigInteger, nullable=False, default=0)
    fee_snapshot_json = db.Column(db.Text, nullable=True)

    status = db.Column(db.String(24), nullable=False, default="PENDING", index=True)
    escrow_status = db.Column(db.String(16), nullable=False, default="NONE", index=True)

    is_paid = db.Column(db.Boolean, nullable=False, default=False)
    payment_method = db.Column(db.String(24), nullable=True)
    payment_reference = db.Column(db.String(120), nullable=True, index=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, index=True)
    rider_assigned_at = db.Column(db.DateTime, nullable=True)
    picked_up_at = db.Column(db.DateTime, nullable=True)
    delivered_at = db.Column(db.DateTime, nullable=True, index=True)
    completed_at = db.Column(db.DateTime, nullable=True)
    cancelled_at = db.Column(db.DateTime, nullable=True)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    items = db.relationship(
        "OrderItem",
        backref="order",
        lazy="select",
        order_by="OrderItem.id",
    )

    def fee_snapshot(self) -> dict:
        raw = self.fee_snapshot_json
        if not raw:
            return {}
        try:
            parsed = json.loads(raw)
        except Exception:
            return {}
        return parsed if isinstance(parsed, dict) else {}

    def to_dict(self) -> dict:
        return {
            "id": int(self.id),
            "order_number": self.order_number or "",
            "checkout_reference": self.checkout_reference or "",
            "buyer_id": int(self.buyer_id),
            "seller_id": int(self.seller_id),
            "rider_id": int(self.rider_id) if self.rider_id is not None else None,
            "status": self.status or "PENDING",
            "escrow_status": self.escrow_status or "NONE",
            "is_paid": bool(self.is_paid),
            "payment_method": self.payment_method or "",
            "payment_reference": self.payment_reference or "",
            "product_price_minor": int(self.product_price_minor or 0),
            "delivery_fee_minor": int(self.delivery_fee_minor or 0),
            "platform_fee_minor": int(self.platform_fee_minor or 0),
            "platform_commission_minor": int(self.platform_commission_minor or 0),
            "seller_escrow_minor": int(self.seller_escrow_minor or 0),
            "rider_payout_minor": int(self.rider_payout_minor or 0),
            "total_amount_minor": int(self.total_amount_minor or 0),
            "total_amount": money_minor_to_major(self.total_amount_minor),
            "items": [item.to_dict() for item in (self.items or [])],
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "rider_assigned_at": self.rider_assigned_at.isoformat() if self.rider_assigned_at else None,
            "picked_up_at": self.picked_up_at.isoformat() if self.picked_up_at else None,
            "delivered_at": self.delivered_at.isoformat() if self.delivered_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "cancelled_at": self.cancelled_at.isoformat() if self.cancelled_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


class OrderItem(db.Model):
    __tablename__ = "order_items"

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    name = db.Column(db.String(200), nullable=False, default="")
    category = db.Column(db.String(64), nullable=False, default="")
    unit_price_minor = db.Column(db.BigInteger, nullable=False, default=0)
    quantity = db.Column(db.Integer, nullable=False, default=1)
    line_total_minor = db.Column(db.BigInteger, nullable=False, default=0)
    fee_bps = db.Column(db.Integer, nullable=False, default=0)
    fee_minor = db.Column(db.BigInteger, nullable=False, default=0)

    def to_dict(self) -> dict:
        return {
            "id": int(self.id),
            "product_id": int(self.product_id),
            "name": self.name or "",
            "category": self.category or "",
            "unit_price_minor": int(self.unit_price_minor or 0),
            "quantity": int(self.quantity or 0),
            "line_total_minor": int(self.line_total_minor or 0),
            "fee_bps": int(self.fee_bps or 0),
            "fee_minor": int(self.fee_minor or 0),
        }


class OrderEvent(db.Model):
    __tablename__ = "order_events"

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    actor_user_id = db.Column(db.Integer, nullable=True)
    event = db.Column(db.String(64), nullable=False)
    from_status = db.Column(db.String(24), nullable=True)
    to_status = db.Column(db.String(24), nullable=True)
    note = db.Column(db.String(240), nullable=True)
    idempotency_key = db.Column(db.String(160), nullable=True, unique=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, index=True)

    def to_dict(self) -> dict:
        return {
            "id": int(self.id),
            "order_id": int(self.order_id),
            "actor_user_id": int(self.actor_user_id) if self.actor_user_id is not None else None,
            "event": self.event or "",
            "from_status": self.from_status or "",
            "to_status": self.to_status or "",
            "note": self.note or "",
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
