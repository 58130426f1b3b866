from datetime import datetime

from bata.extensions import db


class Product(db.Model):
    """Catalog row as seen by checkout. Catalog CRUD lives elsewhere."""

    __tablename__ = "products"

    id = db.Column(db.Integer, primary_key=True)
    seller_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    name = db.Column(db.String(200), nullable=False, default="")
    category = db.Column(db.String(64), nullable=False, default="OTHERS", index=True)
    price_minor = db.Column(db.BigInteger, nullable=False, default=0)
    quantity = db.Column(db.Integer, nullable=False, default=0)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    def to_dict(self) -> dict:
        return {
            "id": int(self.id),
            "seller_id": int(self.seller_id),
            "name": self.name or "",
            "category": self.category or "",
            "price_minor": int(self.price_minor or 0),
            "quantity": int(self.quantity or 0),
            "is_active": bool(self.is_active),
        }
