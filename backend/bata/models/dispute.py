from datetime import datetime
import json

from bata.extensions import db


class DisputeStatus:
    OPEN = "OPEN"
    UNDER_REVIEW = "UNDER_REVIEW"
    RESOLVED_BUYER_FAVOR = "RESOLVED_BUYER_FAVOR"
    RESOLVED_SELLER_FAVOR = "RESOLVED_SELLER_FAVOR"
    RESOLVED_COMPROMISE = "RESOLVED_COMPROMISE"
    DISMISSED = "DISMISSED"

    ACTIVE = (OPEN, UNDER_REVIEW)
    TERMINAL = (RESOLVED_BUYER_FAVOR, RESOLVED_SELLER_FAVOR, RESOLVED_COMPROMISE, DISMISSED)


def _json_list(raw) -> list:
    if not raw:
        return []
    try:
        parsed = json.loads(raw)
    except Exception:
        return []
    return parsed if isinstance(parsed, list) else []


class Dispute(db.Model):
    __tablename__ = "disputes"

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    buyer_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    seller_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    status = db.Column(db.String(32), nullable=False, default="OPEN", index=True)
    reason = db.Column(db.Text, nullable=False, default="")
    buyer_evidence_json = db.Column(db.Text, nullable=True)
    seller_evidence_json = db.Column(db.Text, nullable=True)

    resolution = db.Column(db.Text, nullable=True)
    refund_amount_minor = db.Column(db.BigInteger, nullable=True)
    resolved_by = db.Column(db.Integer, nullable=True)
    resolved_at = db.Column(db.DateTime, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, index=True)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    @classmethod
    def active_for_order(cls, order_id: int):
        return (
            cls.query.filter(cls.order_id == int(order_id), cls.status.in_(DisputeStatus.ACTIVE))
            .order_by(cls.id.desc())
            .first()
        )

    def is_terminal(self) -> bool:
        return (self.status or "") in DisputeStatus.TERMINAL

    messages = db.relationship(
        "DisputeMessage",
        backref="dispute",
        lazy="select",
        order_by="DisputeMessage.id",
    )

    def to_dict(self, include_messages: bool = False) -> dict:
        payload = {
            "id": int(self.id),
            "order_id": int(self.order_id),
            "buyer_id": int(self.buyer_id),
            "seller_id": int(self.seller_id),
            "status": self.status or "OPEN",
            "reason": self.reason or "",
            "buyer_evidence": _json_list(self.buyer_evidence_json),
            "seller_evidence": _json_list(self.seller_evidence_json),
            "resolution": self.resolution or "",
            "refund_amount_minor": int(self.refund_amount_minor) if self.refund_amount_minor is not None else None,
            "resolved_by": int(self.resolved_by) if self.resolved_by is not None else None,
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
        if include_messages:
            payload["messages"] = [m.to_dict() for m in (self.messages or [])]
        return payload


class DisputeMessage(db.Model):
    __tablename__ = "dispute_messages"

    id = db.Column(db.Integer, primary_key=True)
    dispute_id = db.Column(db.Integer, db.ForeignKey("disputes.id"), nullable=False, index=True)
    sender_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    # BUYER | SELLER | ADMIN
    sender_type = db.Column(db.String(16), nullable=False)
    message = db.Column(db.Text, nullable=False)
    attachments_json = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, index=True)

    def to_dict(self) -> dict:
        return {
            "id": int(self.id),
            "dispute_id": int(self.dispute_id),
            "sender_id": int(self.sender_id),
            "sender_type": self.sender_type or "",
            "message": self.message or "",
            "attachments": _json_list(self.attachments_json),
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
