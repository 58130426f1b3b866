from datetime import datetime

from bata.extensions import db


class CategoryFeeRate(db.Model):
    __tablename__ = "category_fee_rates"

    id = db.Column(db.Integer, primary_key=True)
    category = db.Column(db.String(64), nullable=False, unique=True, index=True)
    rate_bps = db.Column(db.Integer, nullable=False, default=500)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_by_admin_id = db.Column(db.Integer, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    def to_dict(self) -> dict:
        return {
            "id": int(self.id),
            "category": self.category or "",
            "rate_bps": int(self.rate_bps or 0),
            "is_active": bool(self.is_active),
            "created_by_admin_id": int(self.created_by_admin_id) if self.created_by_admin_id is not None else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
