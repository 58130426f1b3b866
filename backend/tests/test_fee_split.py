from __future__ import annotations

import os
import unittest
from unittest.mock import patch

from escrow_fixtures import EscrowTestCase

from bata.extensions import db
from bata.models import CategoryFeeRate
from bata.utils.fees import compute_order_split_minor, resolve_fee_bps, snapshot_to_order_columns
from bata.utils.money import bps_minor_half_up, money_major_to_minor, money_minor_to_major, parse_minor


class MoneyHelpersTestCase(unittest.TestCase):
    def test_bps_rounds_half_up(self):
        self.assertEqual(bps_minor_half_up(10010, 500), 501)
        self.assertEqual(bps_minor_half_up(10009, 500), 500)
        self.assertEqual(bps_minor_half_up(0, 500), 0)

    def test_major_minor_conversion(self):
        self.assertEqual(money_major_to_minor("10800.00"), 1_080_000)
        self.assertEqual(money_major_to_minor(0.015), 2)
        self.assertEqual(money_minor_to_major(1_080_000), 10800.0)
        self.assertEqual(money_minor_to_major(-56_000), -560.0)

    def test_parse_minor_prefers_integer_field(self):
        self.assertEqual(parse_minor({"amount_minor": 5000, "amount": 1}, "amount_minor", "amount"), 5000)
        self.assertEqual(parse_minor({"amount": "12.50"}, "amount_minor", "amount"), 1250)
        self.assertIsNone(parse_minor({}, "amount_minor", "amount"))
        with self.assertRaises(ValueError):
            parse_minor({"amount_minor": "12.5"}, "amount_minor")


class FeeSplitTestCase(EscrowTestCase):
    def test_default_rate_split_conserves_total(self):
        snap = compute_order_split_minor(
            items=[{"product_id": 1, "line_total_minor": 1_000_000, "category": "Books"}],
            delivery_fee_minor=80_000,
        )
        self.assertEqual(snap["platform_fee_minor"], 50_000)
        self.assertEqual(snap["seller_escrow_minor"], 950_000)
        self.assertEqual(snap["rider_payout_minor"], 56_000)
        self.assertEqual(snap["delivery"]["platform_minor"], 24_000)
        self.assertEqual(snap["platform_commission_minor"], 74_000)
        self.assertEqual(snap["total_minor"], 1_080_000)
        self.assertEqual(
            snap["seller_escrow_minor"] + snap["rider_payout_minor"] + snap["platform_commission_minor"],
            snap["total_minor"],
        )

    def test_high_fee_categories_use_ten_percent(self):
        snap = compute_order_split_minor(
            items=[
                {"product_id": 1, "line_total_minor": 250_000, "category": "snacks"},
                {"product_id": 2, "line_total_minor": 100_000, "category": "STATIONERY"},
            ],
            delivery_fee_minor=80_000,
        )
        fees = {line["product_id"]: (line["fee_bps"], line["fee_minor"]) for line in snap["items"]}
        self.assertEqual(fees[1], (1000, 25_000))
        self.assertEqual(fees[2], (500, 5_000))
        self.assertEqual(snap["platform_fee_minor"], 30_000)
        self.assertEqual(snap["seller_escrow_minor"], 320_000)

    def test_database_rule_beats_environment(self):
        with patch.dict(os.environ, {"CATEGORY_FEE_BPS": '{"BOOKS": 700}'}):
            self.assertEqual(resolve_fee_bps("books"), 700)
            db.session.add(CategoryFeeRate(category="BOOKS", rate_bps=300))
            db.session.commit()
            self.assertEqual(resolve_fee_bps("books"), 300)

    def test_inactive_rule_is_ignored(self):
        db.session.add(CategoryFeeRate(category="FOOD", rate_bps=200, is_active=False))
        db.session.commit()
        self.assertEqual(resolve_fee_bps("food"), 1000)

    def test_small_delivery_fee_goes_entirely_to_rider(self):
        snap = compute_order_split_minor(
            items=[{"product_id": 1, "line_total_minor": 100_000, "category": "BOOKS"}],
            delivery_fee_minor=50_000,
        )
        self.assertEqual(snap["rider_payout_minor"], 50_000)
        self.assertEqual(snap["delivery"]["platform_minor"], 0)
        self.assertEqual(snap["platform_commission_minor"], 5_000)

    def test_snapshot_maps_onto_order_columns(self):
        snap = compute_order_split_minor(
            items=[{"product_id": 1, "line_total_minor": 1_000_000, "category": "BOOKS"}],
            delivery_fee_minor=80_000,
        )
        cols = snapshot_to_order_columns(snap)
        self.assertEqual(cols["product_price_minor"], 1_000_000)
        self.assertEqual(cols["delivery_fee_minor"], 80_000)
        self.assertEqual(cols["total_amount_minor"], 1_080_000)
        self.assertEqual(snapshot_to_order_columns(None)["total_amount_minor"], 0)


if __name__ == "__main__":
    unittest.main()
