from __future__ import annotations

import logging
import os
from datetime import datetime, timedelta

from bata.errors import MarketplaceError
from bata.extensions import db
from bata.models import Order
from bata.services.escrow_service import EscrowStatus
from bata.services.order_state import OrderStatus
from bata.services.settlement_service import settle_order
from bata.utils.job_runs import record_job_run

logger = logging.getLogger(__name__)

DEFAULT_AUTO_CONFIRM_AFTER_HOURS = 72


def _now():
    return datetime.utcnow()


def auto_confirm_after() -> timedelta:
    raw = (os.getenv("AUTO_CONFIRM_AFTER_HOURS") or "").strip()
    try:
        hours = int(raw) if raw else DEFAULT_AUTO_CONFIRM_AFTER_HOURS
    except Exception:
        hours = DEFAULT_AUTO_CONFIRM_AFTER_HOURS
    return timedelta(hours=max(1, hours))


def run_escrow_automation(*, limit: int = 500, now=None) -> dict:
    """Settle delivered orders the buyer never confirmed.

    Rules:
      - Only DELIVERED orders with escrow HELD are candidates.
      - delivered_at must be older than AUTO_CONFIRM_AFTER_HOURS.
      - Each order settles in its own commit through settle_order, so one
        failure (or an active dispute) never blocks the rest.
    """
    started_at = _now()
    now = now or _now()
    cutoff = now - auto_confirm_after()

    processed = 0
    settled = 0
    skipped = 0
    errors = 0

    candidate_ids = [
        int(row.id)
        for row in (
            Order.query.filter(
                Order.status == OrderStatus.DELIVERED,
                Order.escrow_status == EscrowStatus.HELD,
                Order.delivered_at.isnot(None),
                Order.delivered_at <= cutoff,
            )
            .order_by(Order.delivered_at.asc(), Order.id.asc())
            .limit(int(limit))
            .all()
        )
    ]

    for order_id in candidate_ids:
        processed += 1
        try:
            settle_order(order_id, actor_type="system", now=now)
            settled += 1
        except MarketplaceError as exc:
            # Disputed or already settled by the buyer in the meantime.
            skipped += 1
            logger.info("auto_confirm_skipped order_id=%s code=%s reason=%s", order_id, exc.code, exc.reason)
        except Exception:
            errors += 1
            db.session.rollback()
            logger.exception("auto_confirm_failed order_id=%s", order_id)

    result = {
        "ok": errors == 0,
        "processed": processed,
        "settled": settled,
        "skipped": skipped,
        "errors": errors,
        "cutoff": cutoff.isoformat(),
        "ts": _now().isoformat(),
    }
    record_job_run(
        job_name="escrow_runner",
        ok=errors == 0,
        started_at=started_at,
        result=result,
        error=None if errors == 0 else f"errors={errors}",
    )
    return result


def run_once(*, limit: int = 500) -> dict:
    from bata import create_app

    app = create_app()
    with app.app_context():
        return run_escrow_automation(limit=limit)
