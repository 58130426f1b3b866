from __future__ import annotations

import json
import os
import unittest
from datetime import datetime, timedelta
from unittest.mock import patch

from escrow_fixtures import BOOK_SELLER_ESCROW_MINOR, EscrowTestCase

from bata.extensions import db
from bata.jobs.escrow_runner import auto_confirm_after, run_escrow_automation
from bata.models import JobRun
from bata.services.dispute_service import open_dispute
from bata.services.escrow_service import EscrowStatus
from bata.services.order_state import OrderStatus


class EscrowRunnerTestCase(EscrowTestCase):
    def test_settles_orders_past_the_confirmation_window(self):
        now = datetime.utcnow()
        stale = self.buy_book()
        self.deliver(stale, delivered_at=now - timedelta(hours=73))
        fresh = self.buy_book()
        self.deliver(fresh, delivered_at=now - timedelta(hours=10))

        result = run_escrow_automation(now=now)
        self.assertEqual(result["processed"], 1)
        self.assertEqual(result["settled"], 1)
        self.assertTrue(result["ok"])
        self.assertEqual(self.order(stale).status, OrderStatus.COMPLETED)
        self.assertEqual(self.order(fresh).status, OrderStatus.DELIVERED)
        self.assertEqual(self.order(fresh).escrow_status, EscrowStatus.HELD)
        self.assertEqual(int(self.user(self.seller_id).available_balance_minor), BOOK_SELLER_ESCROW_MINOR)

        again = run_escrow_automation(now=now)
        self.assertEqual(again["processed"], 0)
        self.assertEqual(int(self.user(self.seller_id).available_balance_minor), BOOK_SELLER_ESCROW_MINOR)

    def test_disputed_orders_are_left_alone(self):
        now = datetime.utcnow()
        order_id = self.buy_book()
        self.deliver(order_id, delivered_at=now - timedelta(hours=80))
        open_dispute(order_id, self.buyer_id, "Wrong book", now=now - timedelta(hours=1))

        result = run_escrow_automation(now=now)
        self.assertEqual(result["settled"], 0)
        order = self.order(order_id)
        self.assertEqual(order.status, OrderStatus.DELIVERED)
        self.assertEqual(order.escrow_status, EscrowStatus.DISPUTED)

    def test_each_run_is_recorded(self):
        run_escrow_automation()
        run_escrow_automation()
        rows = JobRun.query.filter_by(job_name="escrow_runner").all()
        self.assertEqual(len(rows), 2)
        self.assertTrue(all(r.ok for r in rows))
        self.assertIn("settled", json.loads(rows[0].result_json))

    def test_reconcile_task_persists_report_and_job_run(self):
        from bata.models import ReconciliationReport
        from bata.tasks.settlement_tasks import reconcile_ledger_task

        self.fund_wallet(self.buyer_id, 150_000, "TOPUP-ADA-BEAT")
        clean = reconcile_ledger_task.run()
        self.assertEqual(clean["drift_count"], 0)
        self.assertTrue(clean["ok"])

        buyer = self.user(self.buyer_id)
        buyer.available_balance_minor = 1
        db.session.commit()
        drifted = reconcile_ledger_task.run()
        self.assertFalse(drifted["ok"])
        self.assertEqual(drifted["drift_count"], 1)

        self.assertEqual(ReconciliationReport.query.count(), 2)
        runs = JobRun.query.filter_by(job_name="ledger_reconciliation").order_by(JobRun.id.asc()).all()
        self.assertEqual([r.ok for r in runs], [True, False])

    def test_window_is_configurable(self):
        with patch.dict(os.environ, {"AUTO_CONFIRM_AFTER_HOURS": "24"}):
            self.assertEqual(auto_confirm_after(), timedelta(hours=24))
        with patch.dict(os.environ, {"AUTO_CONFIRM_AFTER_HOURS": "soon"}):
            self.assertEqual(auto_confirm_after(), timedelta(hours=72))


class CelerySetupTestCase(unittest.TestCase):
    def test_beat_schedule_targets_settlement_task(self):
        from bata import create_app
        from bata.celery_app import create_celery_app

        with patch.dict(os.environ, {"SQLALCHEMY_DATABASE_URI": "sqlite:///:memory:", "ESCROW_SETTLEMENT_INTERVAL_SECONDS": "120", "LEDGER_RECONCILE_INTERVAL_SECONDS": "86400"}):
            flask_app = create_app()
            celery = create_celery_app(flask_app)
        entry = celery.conf.beat_schedule["escrow-auto-confirm-runner"]
        self.assertEqual(entry["task"], "bata.tasks.settlement_tasks.run_escrow_settlement")
        self.assertEqual(entry["schedule"], 120.0)
        reconcile = celery.conf.beat_schedule["ledger-reconciliation"]
        self.assertEqual(reconcile["task"], "bata.tasks.settlement_tasks.reconcile_ledger")
        self.assertEqual(reconcile["schedule"], 86400.0)

    def test_task_names_are_stable(self):
        from bata.tasks.settlement_tasks import reconcile_ledger_task, run_escrow_settlement, settle_order_task

        self.assertEqual(run_escrow_settlement.name, "bata.tasks.settlement_tasks.run_escrow_settlement")
        self.assertEqual(settle_order_task.name, "bata.tasks.settlement_tasks.settle_order")
        self.assertEqual(reconcile_ledger_task.name, "bata.tasks.settlement_tasks.reconcile_ledger")


if __name__ == "__main__":
    unittest.main()
