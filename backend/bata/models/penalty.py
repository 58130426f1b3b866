from datetime import datetime

from bata.extensions import db


class Penalty(db.Model):
    __tablename__ = "penalties"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    dispute_id = db.Column(db.Integer, db.ForeignKey("disputes.id"), nullable=True, index=True)
    # WARNING | TEMP_BAN_1DAY
    action = db.Column(db.String(32), nullable=False)
    reason = db.Column(db.String(255), nullable=False, default="")
    points_added = db.Column(db.Integer, nullable=False, default=0)
    issued_by = db.Column(db.Integer, nullable=True)
    banned_until = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    def to_dict(self) -> dict:
        return {
            "id": int(self.id),
            "user_id": int(self.user_id),
            "dispute_id": int(self.dispute_id) if self.dispute_id is not None else None,
            "action": self.action or "",
            "reason": self.reason or "",
            "points_added": int(self.points_added or 0),
            "issued_by": int(self.issued_by) if self.issued_by is not None else None,
            "banned_until": self.banned_until.isoformat() if self.banned_until else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
