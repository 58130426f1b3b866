from __future__ import annotations

import json
import os
import unittest
from datetime import datetime, timedelta
from unittest.mock import patch

from escrow_fixtures import BOOK_SELLER_ESCROW_MINOR, EscrowTestCase

from bata.extensions import db
from bata.models import ReconciliationReport, User


class CliCommandsTestCase(EscrowTestCase):
    def setUp(self):
        super().setUp()
        self.runner = self.app.test_cli_runner()

    def test_bootstrap_platform_account(self):
        with patch.dict(os.environ, {"ADMIN_EMAIL": "Ops@Campus.test"}):
            result = self.runner.invoke(args=["bootstrap-platform-account"])
        self.assertEqual(result.exit_code, 0, result.output)
        user = User.query.filter_by(email="ops@campus.test").one()
        self.assertEqual(user.role, "admin")

        with patch.dict(os.environ, {"ADMIN_EMAIL": "ops@campus.test"}):
            again = self.runner.invoke(args=["bootstrap-platform-account"])
        self.assertEqual(again.exit_code, 0, again.output)
        self.assertEqual(User.query.filter_by(email="ops@campus.test").count(), 1)

    def test_bootstrap_requires_email(self):
        with patch.dict(os.environ, {"ADMIN_EMAIL": ""}):
            result = self.runner.invoke(args=["bootstrap-platform-account"])
        self.assertNotEqual(result.exit_code, 0)
        self.assertIn("ADMIN_EMAIL", result.output)

    def test_auto_confirm_command(self):
        order_id = self.buy_book()
        self.deliver(order_id, delivered_at=datetime.utcnow() - timedelta(hours=90))
        result = self.runner.invoke(args=["run-escrow-auto-confirm", "--limit", "10"])
        self.assertEqual(result.exit_code, 0, result.output)
        self.assertEqual(json.loads(result.output.strip().splitlines()[-1])["settled"], 1)
        self.assertEqual(int(self.user(self.seller_id).available_balance_minor), BOOK_SELLER_ESCROW_MINOR)

    def test_reconcile_ledger_command(self):
        self.fund_wallet(self.buyer_id, 150_000, "TOPUP-ADA-CLI")
        clean = self.runner.invoke(args=["reconcile-ledger", "--persist"])
        self.assertEqual(clean.exit_code, 0, clean.output)
        self.assertEqual(ReconciliationReport.query.count(), 1)

        buyer = self.user(self.buyer_id)
        buyer.pending_balance_minor = 5
        db.session.commit()
        drifted = self.runner.invoke(args=["reconcile-ledger"])
        self.assertEqual(drifted.exit_code, 1)
        self.assertIn("ledger drift detected", drifted.output)


if __name__ == "__main__":
    unittest.main()
