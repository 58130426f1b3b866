from datetime import datetime

from bata.extensions import db
from bata.utils.money import money_minor_to_major


class LedgerEntry(db.Model):
    """Append-only money movement. Never updated or deleted once written."""

    __tablename__ = "ledger_entries"
    __table_args__ = (
        db.CheckConstraint("amount_minor > 0", name="ck_ledger_amount_positive"),
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=True, index=True)

    # CREDIT | DEBIT | ESCROW | WITHDRAWAL
    type = db.Column(db.String(16), nullable=False, index=True)
    # available | pending
    bucket = db.Column(db.String(16), nullable=False, default="available")

    amount_minor = db.Column(db.BigInteger, nullable=False)
    description = db.Column(db.String(255), nullable=False, default="")
    reference = db.Column(db.String(160), nullable=False, unique=True, index=True)
    balance_before_minor = db.Column(db.BigInteger, nullable=False, default=0)
    balance_after_minor = db.Column(db.BigInteger, nullable=False, default=0)
    metadata_json = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, index=True)

    def to_dict(self) -> dict:
        return {
            "id": int(self.id),
            "user_id": int(self.user_id),
            "order_id": int(self.order_id) if self.order_id is not None else None,
            "type": self.type or "",
            "bucket": self.bucket or "available",
            "amount_minor": int(self.amount_minor or 0),
            "amount": money_minor_to_major(self.amount_minor),
            "description": self.description or "",
            "reference": self.reference or "",
            "balance_before_minor": int(self.balance_before_minor or 0),
            "balance_after_minor": int(self.balance_after_minor or 0),
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
