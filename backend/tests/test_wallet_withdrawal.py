from __future__ import annotations

import unittest

from escrow_fixtures import EscrowTestCase

from bata.errors import InsufficientBalance, ValidationError
from bata.models import LedgerEntry, PlatformEvent
from bata.services.wallet_service import get_wallet, list_transactions, withdraw

BANK = {"bank_name": "First Bank", "account_number": "3012345678", "account_name": "Bola Seller"}


class WithdrawalTestCase(EscrowTestCase):
    def setUp(self):
        super().setUp()
        self.fund_wallet(self.seller_id, 500_000, "PAYOUT-BOLA-1")

    def test_withdrawal_debits_available_balance(self):
        result = withdraw(self.seller_id, 200_000, **BANK)
        self.assertTrue(result["reference"].startswith(f"WD-{self.seller_id}-"))
        self.assertEqual(result["wallet"]["available_balance_minor"], 300_000)
        self.assertEqual(result["entry"]["type"], "WITHDRAWAL")
        self.assertIn("****5678", result["entry"]["description"])

        entry = LedgerEntry.query.filter_by(reference=result["reference"]).one()
        self.assertEqual(int(entry.balance_before_minor), 500_000)
        self.assertEqual(int(entry.balance_after_minor), 300_000)
        self.assertEqual(PlatformEvent.query.filter_by(event_type="withdrawal_completed").count(), 1)

    def test_minimum_withdrawal_is_one_thousand_naira(self):
        with self.assertRaises(ValidationError) as ctx:
            withdraw(self.seller_id, 99_999, **BANK)
        self.assertEqual(ctx.exception.reason, "below_minimum")
        self.assertEqual(ctx.exception.debug["minimum_minor"], 100_000)

    def test_cannot_withdraw_more_than_available(self):
        with self.assertRaises(InsufficientBalance):
            withdraw(self.seller_id, 500_001, **BANK)
        self.assertEqual(int(self.user(self.seller_id).available_balance_minor), 500_000)

    def test_pending_escrow_is_not_withdrawable(self):
        self.buy_book()
        self.assertEqual(int(self.user(self.seller_id).pending_balance_minor), 950_000)
        with self.assertRaises(InsufficientBalance):
            withdraw(self.seller_id, 600_000, **BANK)

    def test_bank_details_are_required(self):
        with self.assertRaises(ValidationError) as ctx:
            withdraw(self.seller_id, 200_000, bank_name="First Bank", account_number=" ", account_name="Bola")
        self.assertEqual(ctx.exception.reason, "bank_details_required")

    def test_wallet_view_lists_recent_transactions(self):
        withdraw(self.seller_id, 100_000, **BANK)
        wallet = get_wallet(self.seller_id)
        self.assertEqual(wallet["available_balance_minor"], 400_000)
        self.assertEqual(wallet["available_balance"], 4000.0)
        self.assertEqual(len(wallet["transactions"]), 2)
        self.assertEqual(len(list_transactions(self.seller_id, limit=1)), 1)
        self.assertEqual(len(list_transactions(self.seller_id, limit=5, offset=1)), 1)


if __name__ == "__main__":
    unittest.main()
