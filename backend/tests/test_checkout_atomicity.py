from __future__ import annotations

import unittest
from unittest.mock import patch

from escrow_fixtures import BOOK_SELLER_ESCROW_MINOR, BOOK_TOTAL_MINOR, EscrowTestCase

from bata.errors import InsufficientBalance, ProductUnavailable, ValidationError
from bata.integrations.payments.mock_provider import MockPaymentsProvider
from bata.models import EscrowTransition, LedgerEntry, Order, OrderItem, PlatformEvent, Product
from bata.services.checkout_service import initialize_checkout, quote_checkout
from bata.services.escrow_service import EscrowStatus
from bata.services.order_state import OrderStatus


class CheckoutTestCase(EscrowTestCase):
    def _stock(self, product_id: int) -> int:
        from bata.extensions import db

        db.session.expire_all()
        return int(db.session.get(Product, product_id).quantity)

    def test_two_sellers_produce_two_funded_orders(self):
        book = self.make_product(self.seller_id, quantity=3)
        chips = self.make_product(self.seller2_id, name="Plantain chips", category="SNACKS", price_minor=50_000, quantity=20)

        result = initialize_checkout(
            self.buyer_id,
            [{"product_id": book, "quantity": 1}, {"product_id": chips, "quantity": 4}],
        )

        self.assertEqual(len(result["orders"]), 2)
        self.assertTrue(result["checkout_reference"].startswith("CHK-"))
        self.assertTrue(result["payment_reference"].startswith("MOCK-CHK-"))
        self.assertEqual(len(self.payments.authorized), 1)

        orders = Order.query.order_by(Order.id.asc()).all()
        self.assertEqual({int(o.seller_id) for o in orders}, {self.seller_id, self.seller2_id})
        for o in orders:
            self.assertRegex(o.order_number, r"^BATA-\d{13}-[A-Z0-9]{9}$")
            self.assertEqual(o.status, OrderStatus.PENDING)
            self.assertEqual(o.escrow_status, EscrowStatus.HELD)
            self.assertTrue(o.is_paid)
            self.assertEqual(o.checkout_reference, result["checkout_reference"])
            self.assertEqual(int(o.delivery_fee_minor), 80_000)

        chips_order = next(o for o in orders if int(o.seller_id) == self.seller2_id)
        # 4 x ₦500 snacks at 10%.
        self.assertEqual(int(chips_order.platform_fee_minor), 20_000)
        self.assertEqual(int(chips_order.seller_escrow_minor), 180_000)
        self.assertEqual(int(chips_order.total_amount_minor), 280_000)

        breakdown = result["breakdown"]
        self.assertEqual(breakdown["total_minor"], BOOK_TOTAL_MINOR + 280_000)
        self.assertEqual(breakdown["delivery_fee_minor"], 160_000)
        self.assertEqual(len(breakdown["item_fees"]), 2)

        self.assertEqual(self._stock(book), 2)
        self.assertEqual(self._stock(chips), 16)
        self.assertEqual(int(self.user(self.seller_id).pending_balance_minor), BOOK_SELLER_ESCROW_MINOR)
        self.assertEqual(int(self.user(self.seller2_id).pending_balance_minor), 180_000)
        # Gateway funding and payment cancel out on the buyer wallet.
        self.assertEqual(int(self.user(self.buyer_id).available_balance_minor), 0)

        refs = {e.reference for e in LedgerEntry.query.filter_by(order_id=int(chips_order.id))}
        n = chips_order.order_number
        self.assertEqual(
            refs,
            {f"{n}-BUYER-FUNDING", f"{n}-BUYER-PAYMENT", f"{n}-{int(self.seller2_id):08d}-ESCROW"},
        )
        self.assertEqual(EscrowTransition.query.count(), 2)
        self.assertEqual(PlatformEvent.query.filter_by(event_type="checkout_completed").count(), 1)

    def test_duplicate_lines_are_merged(self):
        book = self.make_product(self.seller_id, quantity=5)
        initialize_checkout(self.buyer_id, [{"product_id": book, "quantity": 1}, {"product_id": book, "quantity": 2}])
        item = OrderItem.query.one()
        self.assertEqual(int(item.quantity), 3)
        self.assertEqual(self._stock(book), 2)

    def test_unavailable_product_aborts_whole_checkout(self):
        book = self.make_product(self.seller_id, quantity=3)
        lamp = self.make_product(self.seller2_id, name="Reading lamp", category="ELECTRONICS", price_minor=300_000, quantity=1)

        with self.assertRaises(ProductUnavailable) as ctx:
            initialize_checkout(
                self.buyer_id,
                [{"product_id": book, "quantity": 1}, {"product_id": lamp, "quantity": 2}],
            )
        self.assertIn("Reading lamp", ctx.exception.message)
        self.assertEqual(ctx.exception.debug["product_id"], lamp)

        self.assertEqual(Order.query.count(), 0)
        self.assertEqual(LedgerEntry.query.count(), 0)
        self.assertEqual(self._stock(book), 3)
        self.assertEqual(self._stock(lamp), 1)
        self.assertEqual(self.payments.authorized, [])

    def test_stock_lost_mid_checkout_rolls_back_earlier_sellers(self):
        from bata.extensions import db
        from bata.services import checkout_service

        book = self.make_product(self.seller_id, quantity=3)
        chips = self.make_product(self.seller2_id, name="Plantain chips", category="SNACKS", price_minor=50_000, quantity=20)
        real_decrement = checkout_service._decrement_stock
        seen = {}

        def depleted_by_another_buyer(line):
            if int(line["product_id"]) == chips:
                seen["orders"] = Order.query.count()
                seen["ledger"] = LedgerEntry.query.count()
                Product.query.filter(Product.id == chips).update({Product.quantity: 0}, synchronize_session=False)
            real_decrement(line)

        with patch.object(checkout_service, "_decrement_stock", depleted_by_another_buyer):
            with self.assertRaises(ProductUnavailable) as ctx:
                initialize_checkout(
                    self.buyer_id,
                    [{"product_id": book, "quantity": 1}, {"product_id": chips, "quantity": 4}],
                )
        self.assertEqual(ctx.exception.reason, "out_of_stock")
        # Both orders and the first seller's ledger rows were flushed before stock ran out.
        self.assertEqual(seen["orders"], 2)
        self.assertGreater(seen["ledger"], 0)

        db.session.expire_all()
        self.assertEqual(Order.query.count(), 0)
        self.assertEqual(OrderItem.query.count(), 0)
        self.assertEqual(LedgerEntry.query.count(), 0)
        self.assertEqual(EscrowTransition.query.count(), 0)
        self.assertEqual(self._stock(book), 3)
        self.assertEqual(self._stock(chips), 20)
        self.assertEqual(int(self.user(self.seller_id).pending_balance_minor), 0)
        self.assertEqual(int(self.user(self.buyer_id).available_balance_minor), 0)

    def test_inactive_or_missing_product_is_unavailable(self):
        book = self.make_product(self.seller_id)
        from bata.extensions import db

        db.session.get(Product, book).is_active = False
        db.session.commit()
        with self.assertRaises(ProductUnavailable):
            initialize_checkout(self.buyer_id, [{"product_id": book, "quantity": 1}])
        with self.assertRaises(ProductUnavailable):
            initialize_checkout(self.buyer_id, [{"product_id": 9999, "quantity": 1}])

    def test_cart_validation(self):
        book = self.make_product(self.seller_id)
        with self.assertRaises(ValidationError):
            initialize_checkout(self.buyer_id, [])
        with self.assertRaises(ValidationError):
            initialize_checkout(self.buyer_id, [{"product_id": book, "quantity": 0}])
        with self.assertRaises(ValidationError):
            initialize_checkout(self.buyer_id, [{"product_id": book, "quantity": "2"}])
        with self.assertRaises(ValidationError) as ctx:
            initialize_checkout(self.seller_id, [{"product_id": book, "quantity": 1}])
        self.assertEqual(ctx.exception.reason, "own_product")
        with self.assertRaises(ValidationError):
            initialize_checkout(self.buyer_id, [{"product_id": book, "quantity": 1}], payment_method="cash")
        self.assertEqual(Order.query.count(), 0)

    def test_declined_card_writes_nothing(self):
        self.app.extensions["bata_payments_provider"] = MockPaymentsProvider(decline=True)
        book = self.make_product(self.seller_id, quantity=2)
        with self.assertRaises(ValidationError) as ctx:
            initialize_checkout(self.buyer_id, [{"product_id": book, "quantity": 1}])
        self.assertEqual(ctx.exception.reason, "payment_declined")
        self.assertEqual(Order.query.count(), 0)
        self.assertEqual(self._stock(book), 2)

    def test_wallet_checkout_debits_existing_balance(self):
        self.fund_wallet(self.buyer_id, 2_000_000, "TOPUP-ADA-1")
        book = self.make_product(self.seller_id)
        result = initialize_checkout(self.buyer_id, [{"product_id": book, "quantity": 1}], payment_method="wallet")
        order = self.order(result["order_id"])
        self.assertEqual(order.payment_method, "wallet")
        self.assertEqual(int(self.user(self.buyer_id).available_balance_minor), 2_000_000 - BOOK_TOTAL_MINOR)
        refs = {e.reference for e in LedgerEntry.query.filter_by(order_id=int(order.id))}
        self.assertNotIn(f"{order.order_number}-BUYER-FUNDING", refs)
        self.assertEqual(self.payments.authorized, [])

    def test_wallet_checkout_rejects_short_balance(self):
        self.fund_wallet(self.buyer_id, 100_000, "TOPUP-ADA-2")
        book = self.make_product(self.seller_id)
        with self.assertRaises(InsufficientBalance):
            initialize_checkout(self.buyer_id, [{"product_id": book, "quantity": 1}], payment_method="wallet")
        self.assertEqual(Order.query.count(), 0)
        self.assertEqual(int(self.user(self.buyer_id).available_balance_minor), 100_000)

    def test_quote_touches_nothing(self):
        book = self.make_product(self.seller_id, quantity=1)
        quote = quote_checkout(self.buyer_id, [{"product_id": book, "quantity": 1}], delivery_fee_minor=0)
        self.assertEqual(quote["groups"][0]["snapshot"]["total_minor"], 1_000_000)
        self.assertEqual(quote["groups"][0]["snapshot"]["rider_payout_minor"], 0)
        self.assertEqual(self._stock(book), 1)
        self.assertEqual(Order.query.count(), 0)


if __name__ == "__main__":
    unittest.main()
