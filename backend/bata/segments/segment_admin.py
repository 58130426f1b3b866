from __future__ import annotations

from flask import Blueprint, jsonify, request

from bata.models import JobRun, ReconciliationReport
from bata.services.fee_rate_service import list_fee_rates, upsert_fee_rate
from bata.services.reconciliation_service import persist_report, recompute_wallet_balances
from bata.jobs.escrow_runner import run_escrow_automation
from bata.utils.auth import require_admin

admin_bp = Blueprint("admin_bp", __name__, url_prefix="/api/admin")


@admin_bp.get("/fee-rates")
def fee_rates():
    require_admin()
    return jsonify({"ok": True, **list_fee_rates()}), 200


@admin_bp.put("/fee-rates")
def put_fee_rate():
    u = require_admin()
    payload = request.get_json(silent=True) or {}
    active = payload.get("is_active", True)
    rule = upsert_fee_rate(
        str(payload.get("category") or ""),
        payload.get("rate_bps"),
        is_active=bool(active) if isinstance(active, bool) else str(active).strip().lower() in ("1", "true", "yes"),
        admin_id=int(u.id),
    )
    return jsonify({"ok": True, "rule": rule}), 200


@admin_bp.get("/reconciliation/ledger")
def ledger_reconciliation():
    u = require_admin()
    summary = recompute_wallet_balances()
    report_id = None
    if (request.args.get("persist") or "").strip() == "1":
        report_id = int(persist_report(summary, created_by=int(u.id)).id)
    return jsonify({"ok": True, "report_id": report_id, "summary": summary}), 200


@admin_bp.get("/reconciliation/latest")
def latest_reconciliation():
    require_admin()
    row = ReconciliationReport.query.order_by(ReconciliationReport.created_at.desc(), ReconciliationReport.id.desc()).first()
    return jsonify({"ok": True, "report": row.to_dict() if row else None}), 200


@admin_bp.post("/escrow/run-auto-confirm")
def run_auto_confirm():
    require_admin()
    payload = request.get_json(silent=True) or {}
    try:
        limit = int(payload.get("limit") or 500)
    except Exception:
        limit = 500
    return jsonify({"ok": True, **run_escrow_automation(limit=limit)}), 200


@admin_bp.get("/job-runs")
def job_runs():
    require_admin()
    rows = JobRun.query.order_by(JobRun.ran_at.desc(), JobRun.id.desc()).limit(50).all()
    return jsonify({"ok": True, "items": [r.to_dict() for r in rows]}), 200
