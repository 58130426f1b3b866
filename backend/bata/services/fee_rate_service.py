from __future__ import annotations

import logging
from datetime import datetime

from bata.errors import ValidationError
from bata.extensions import db
from bata.models import CategoryFeeRate
from bata.utils.events import log_event
from bata.utils.fees import category_fee_overrides, default_fee_bps, normalize_category

logger = logging.getLogger(__name__)


def list_fee_rates() -> dict:
    rows = CategoryFeeRate.query.order_by(CategoryFeeRate.category.asc()).all()
    return {
        "default_bps": default_fee_bps(),
        "env_overrides": category_fee_overrides(),
        "rules": [r.to_dict() for r in rows],
    }


def upsert_fee_rate(category: str, rate_bps, *, is_active: bool = True, admin_id: int | None = None) -> dict:
    cat = normalize_category(category)
    if not cat:
        raise ValidationError("category is required", reason="category_required")
    if isinstance(rate_bps, bool):
        raise ValidationError("rate_bps must be an integer", reason="invalid_rate")
    try:
        bps = int(rate_bps)
    except Exception:
        raise ValidationError("rate_bps must be an integer", reason="invalid_rate")
    if bps < 0 or bps > 10000:
        raise ValidationError("rate_bps must be between 0 and 10000", reason="invalid_rate", debug={"rate_bps": bps})

    try:
        row = CategoryFeeRate.query.filter_by(category=cat).first()
        previous = int(row.rate_bps) if row is not None else None
        if row is None:
            row = CategoryFeeRate(category=cat)
            db.session.add(row)
        row.rate_bps = bps
        row.is_active = bool(is_active)
        row.created_by_admin_id = int(admin_id) if admin_id is not None else row.created_by_admin_id
        row.updated_at = datetime.utcnow()
        log_event(
            "fee_rate_updated",
            actor_user_id=admin_id,
            subject_type="category_fee_rate",
            subject_id=cat,
            metadata={"category": cat, "from_bps": previous, "to_bps": bps, "is_active": bool(is_active)},
        )
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    logger.info("fee_rate_updated category=%s bps=%s active=%s", cat, bps, bool(is_active))
    return row.to_dict()
