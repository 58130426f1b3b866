from datetime import datetime

from bata.extensions import db


class User(db.Model):
    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)

    name = db.Column(db.String(120), nullable=False, default="")
    email = db.Column(db.String(255), unique=True, index=True, nullable=True)
    phone = db.Column(db.String(32), unique=True, index=True, nullable=True)

    # buyer | seller | rider | admin
    role = db.Column(db.String(32), nullable=False, default="buyer")

    # Denormalized wallet balances; every change is paired with a LedgerEntry.
    available_balance_minor = db.Column(db.BigInteger, nullable=False, default=0, server_default="0")
    pending_balance_minor = db.Column(db.BigInteger, nullable=False, default=0, server_default="0")

    penalty_points = db.Column(db.Integer, nullable=False, default=0, server_default="0")
    warning_count = db.Column(db.Integer, nullable=False, default=0, server_default="0")
    last_warning_at = db.Column(db.DateTime, nullable=True)
    completed_orders = db.Column(db.Integer, nullable=False, default=0, server_default="0")
    suspended_until = db.Column(db.DateTime, nullable=True)

    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "phone": getattr(self, "phone", None),
            "role": self.role or "buyer",
            "penalty_points": int(self.penalty_points or 0),
            "warning_count": int(self.warning_count or 0),
            "completed_orders": int(self.completed_orders or 0),
            "suspended_until": self.suspended_until.isoformat() if self.suspended_until else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
