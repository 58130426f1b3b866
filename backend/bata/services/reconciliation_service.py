from __future__ import annotations

import json
from datetime import datetime

from bata.extensions import db
from bata.models import ReconciliationReport, User
from bata.services.ledger_service import replay_balances


def recompute_wallet_balances() -> dict:
    """Replay the ledger for every user and report drift against stored balances."""
    users = User.query.order_by(User.id.asc()).all()
    drift_items = []

    for user in users:
        computed = replay_balances(int(user.id))
        stored_available = int(user.available_balance_minor or 0)
        stored_pending = int(user.pending_balance_minor or 0)
        available_drift = stored_available - computed["available_balance_minor"]
        pending_drift = stored_pending - computed["pending_balance_minor"]
        if available_drift or pending_drift:
            drift_items.append(
                {
                    "user_id": int(user.id),
                    "stored_available_minor": stored_available,
                    "computed_available_minor": computed["available_balance_minor"],
                    "stored_pending_minor": stored_pending,
                    "computed_pending_minor": computed["pending_balance_minor"],
                    "available_drift_minor": available_drift,
                    "pending_drift_minor": pending_drift,
                }
            )

    return {
        "ok": True,
        "scope": "ledger_replay",
        "user_count": len(users),
        "drift_count": len(drift_items),
        "drift_items": drift_items,
        "generated_at": datetime.utcnow().isoformat(),
    }


def persist_report(summary: dict, *, created_by: int | None = None) -> ReconciliationReport:
    report = ReconciliationReport(
        scope=(summary.get("scope") or "ledger_replay")[:64],
        users_checked=int(summary.get("user_count") or 0),
        drift_count=int(summary.get("drift_count") or 0),
        summary_json=json.dumps(summary)[:200000],
        created_by=int(created_by) if created_by is not None else None,
    )
    db.session.add(report)
    db.session.commit()
    return report
