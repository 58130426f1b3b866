from __future__ import annotations

import json
import os
import time
from datetime import datetime

from celery import shared_task
from flask import current_app


def _task_log(task_name: str, *, status: str, started_at: float, trace_id: str = "", **extra):
    duration_ms = int(max(0.0, (time.perf_counter() - float(started_at))) * 1000.0)
    payload = {
        "task_name": task_name,
        "status": status,
        "duration_ms": duration_ms,
        "trace_id": str(trace_id or ""),
        "timestamp": datetime.utcnow().isoformat(),
    }
    payload.update(extra or {})
    current_app.logger.info(json.dumps(payload, default=str))


def _retry_countdown(retries: int) -> int:
    # Exponential backoff with cap.
    return int(min(900, max(5, 5 * (2 ** int(max(0, retries))))))


def _settlement_limit() -> int:
    try:
        limit = int((os.getenv("ESCROW_SETTLEMENT_LIMIT") or "50").strip() or 50)
    except Exception:
        limit = 50
    return max(1, min(limit, 500))


@shared_task(
    bind=True,
    name="bata.tasks.settlement_tasks.run_escrow_settlement",
    max_retries=3,
)
def run_escrow_settlement(self, *, trace_id: str = ""):
    started = time.perf_counter()
    limit = _settlement_limit()
    from bata.jobs.escrow_runner import run_escrow_automation

    try:
        result = run_escrow_automation(limit=limit)
        _task_log(
            "run_escrow_settlement",
            status="ok" if bool(result.get("ok")) else "failed",
            started_at=started,
            trace_id=trace_id,
            limit=limit,
            settled=result.get("settled"),
        )
        return result
    except Exception as exc:
        if int(self.request.retries or 0) < int(self.max_retries or 0):
            countdown = _retry_countdown(int(self.request.retries or 0))
            _task_log(
                "run_escrow_settlement",
                status="retrying",
                started_at=started,
                trace_id=trace_id,
                detail=str(exc),
                countdown=countdown,
            )
            raise self.retry(exc=exc, countdown=countdown)
        _task_log(
            "run_escrow_settlement",
            status="failed",
            started_at=started,
            trace_id=trace_id,
            detail=str(exc),
        )
        raise


@shared_task(
    bind=True,
    name="bata.tasks.settlement_tasks.settle_order",
    max_retries=3,
)
def settle_order_task(self, order_id: int, *, trace_id: str = ""):
    """Settle one order off the request path (admin bulk actions)."""
    started = time.perf_counter()
    from bata.errors import MarketplaceError
    from bata.services.settlement_service import settle_order

    try:
        result = settle_order(int(order_id), actor_type="system")
    except MarketplaceError as exc:
        _task_log(
            "settle_order",
            status="rejected",
            started_at=started,
            trace_id=trace_id,
            order_id=int(order_id),
            code=exc.code,
            reason=exc.reason,
        )
        return exc.to_payload()
    except Exception as exc:
        if int(self.request.retries or 0) < int(self.max_retries or 0):
            raise self.retry(exc=exc, countdown=_retry_countdown(int(self.request.retries or 0)))
        raise
    _task_log("settle_order", status="ok", started_at=started, trace_id=trace_id, order_id=int(order_id))
    return {"ok": True, "order": result}


@shared_task(
    bind=True,
    name="bata.tasks.settlement_tasks.reconcile_ledger",
    max_retries=1,
)
def reconcile_ledger_task(self, *, trace_id: str = ""):
    started = time.perf_counter()
    job_started = datetime.utcnow()
    from bata.services.reconciliation_service import persist_report, recompute_wallet_balances
    from bata.utils.job_runs import record_job_run

    summary = recompute_wallet_balances()
    report = persist_report(summary)
    drift = int(summary.get("drift_count") or 0)
    record_job_run(
        job_name="ledger_reconciliation",
        ok=drift == 0,
        started_at=job_started,
        result={"report_id": int(report.id), "drift_count": drift, "user_count": summary.get("user_count")},
        error=f"drift for {drift} user(s)" if drift else None,
    )
    _task_log(
        "reconcile_ledger",
        status="ok" if drift == 0 else "drift",
        started_at=started,
        trace_id=trace_id,
        report_id=int(report.id),
        drift_count=drift,
    )
    if drift:
        current_app.logger.warning("ledger_drift_detected report_id=%s drift_count=%s", int(report.id), drift)
    return {"ok": drift == 0, "report_id": int(report.id), "drift_count": drift}
