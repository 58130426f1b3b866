from __future__ import annotations

import unittest
from unittest.mock import patch

from escrow_fixtures import (
    BOOK_PLATFORM_COMMISSION_MINOR,
    BOOK_SELLER_ESCROW_MINOR,
    RIDER_PAYOUT_MINOR,
    EscrowTestCase,
)

from bata.errors import ConcurrentModification, Forbidden, IllegalTransition, NotSettleable
from bata.extensions import db
from bata.models import Dispute, EscrowTransition, LedgerEntry, Order, OrderEvent
from bata.services.escrow_service import EscrowStatus, transition_escrow
from bata.services.ledger_service import replay_balances
from bata.services.order_state import OrderStatus, transition_order
from bata.services.reconciliation_service import persist_report, recompute_wallet_balances
from bata.services.settlement_service import confirm_delivery, settle_order


class SettlementTestCase(EscrowTestCase):
    def test_buyer_confirmation_pays_everyone(self):
        order_id = self.buy_book()
        self.deliver(order_id)

        payload = confirm_delivery(order_id, self.buyer_id)
        self.assertEqual(payload["status"], OrderStatus.COMPLETED)
        self.assertEqual(payload["escrow_status"], EscrowStatus.RELEASED)
        self.assertEqual(payload["settlement"]["seller_credit_minor"], BOOK_SELLER_ESCROW_MINOR)

        seller = self.user(self.seller_id)
        rider = self.user(self.rider_id)
        platform = self.user(self.admin_id)
        self.assertEqual(int(seller.available_balance_minor), BOOK_SELLER_ESCROW_MINOR)
        self.assertEqual(int(seller.pending_balance_minor), 0)
        self.assertEqual(int(rider.available_balance_minor), RIDER_PAYOUT_MINOR)
        self.assertEqual(int(rider.pending_balance_minor), 0)
        self.assertEqual(int(platform.available_balance_minor), BOOK_PLATFORM_COMMISSION_MINOR)
        self.assertEqual(int(seller.completed_orders), 1)
        self.assertEqual(int(rider.completed_orders), 1)

        order = self.order(order_id)
        self.assertIsNotNone(order.completed_at)
        events = [e.event for e in OrderEvent.query.filter_by(order_id=order_id).order_by(OrderEvent.id.asc())]
        self.assertEqual(events[-1], "completed")
        keys = [t.idempotency_key for t in EscrowTransition.query.filter_by(order_id=order_id).order_by(EscrowTransition.id.asc())]
        self.assertEqual(keys, [f"fund:{order_id}", f"settle:{order_id}"])

    def test_only_the_buyer_confirms(self):
        order_id = self.buy_book()
        self.deliver(order_id)
        with self.assertRaises(Forbidden):
            confirm_delivery(order_id, self.seller_id)

    def test_settlement_happens_exactly_once(self):
        order_id = self.buy_book()
        self.deliver(order_id)
        settle_order(order_id)
        entries = LedgerEntry.query.count()

        with self.assertRaises(NotSettleable) as ctx:
            settle_order(order_id)
        self.assertEqual(ctx.exception.reason, "already_settled")
        self.assertEqual(ctx.exception.http_status, 409)
        self.assertEqual(LedgerEntry.query.count(), entries)
        self.assertEqual(int(self.user(self.seller_id).available_balance_minor), BOOK_SELLER_ESCROW_MINOR)

    def test_undelivered_order_is_not_settleable(self):
        order_id = self.buy_book()
        transition_order(order_id, self.rider_id, OrderStatus.RIDER_ASSIGNED)
        with self.assertRaises(NotSettleable) as ctx:
            settle_order(order_id)
        self.assertEqual(ctx.exception.reason, "not_delivered")
        self.assertEqual(ctx.exception.http_status, 400)

    def test_settlement_reference_scheme(self):
        order_id = self.buy_book()
        self.deliver(order_id)
        settle_order(order_id)
        n = self.order(order_id).order_number
        refs = {e.reference for e in LedgerEntry.query.filter_by(order_id=order_id)}
        for suffix in (
            "SELLER-ESCROW-RELEASE",
            "SELLER-CREDIT",
            "RIDER-ESCROW",
            "RIDER-ESCROW-RELEASE",
            "RIDER-CREDIT",
            "PLATFORM-CREDIT",
        ):
            self.assertIn(f"{n}-{suffix}", refs)
        self.assertNotIn(f"{n}-PLATFORM-UNCLAIMED-RIDER", refs)

    def test_unclaimed_rider_payout_goes_to_platform(self):
        order_id = self.buy_book()
        # Seller delivers personally; no rider was ever assigned.
        order = self.order(order_id)
        order.status = OrderStatus.DELIVERED
        db.session.commit()

        payload = settle_order(order_id, actor_id=self.admin_id, actor_type="admin")
        self.assertEqual(payload["settlement"]["rider_credit_minor"], 0)
        self.assertEqual(
            int(self.user(self.admin_id).available_balance_minor),
            BOOK_PLATFORM_COMMISSION_MINOR + RIDER_PAYOUT_MINOR,
        )
        n = self.order(order_id).order_number
        self.assertEqual(LedgerEntry.query.filter_by(reference=f"{n}-PLATFORM-UNCLAIMED-RIDER").count(), 1)

    def test_dispute_landing_after_the_check_blocks_release(self):
        from bata.services import settlement_service
        from bata.services.dispute_service import open_dispute

        order_id = self.buy_book()
        self.deliver(order_id)
        real_check = settlement_service.check_settleable

        def buyer_disputes_meanwhile(order):
            real_check(order)
            open_dispute(order_id, self.buyer_id, "Spine is cracked")

        with patch.object(settlement_service, "check_settleable", buyer_disputes_meanwhile):
            with self.assertRaises(NotSettleable) as ctx:
                settle_order(order_id)
        self.assertEqual(ctx.exception.reason, "dispute_active")

        db.session.expire_all()
        order = self.order(order_id)
        self.assertEqual(order.status, OrderStatus.DELIVERED)
        self.assertEqual(order.escrow_status, EscrowStatus.DISPUTED)
        self.assertEqual(int(self.user(self.seller_id).available_balance_minor), 0)
        self.assertEqual(int(self.user(self.seller_id).pending_balance_minor), BOOK_SELLER_ESCROW_MINOR)
        self.assertEqual(LedgerEntry.query.filter(LedgerEntry.reference.like("%-SELLER-CREDIT")).count(), 0)

    def test_cancellation_does_not_reverse_disputed_escrow(self):
        from bata.services.dispute_service import open_dispute

        order_id = self.buy_book()
        transition_order(order_id, self.seller_id, OrderStatus.PROCESSING)
        open_dispute(order_id, self.buyer_id, "Seller asked for extra money")

        # The dispute is committed but the cancel path's own lookup missed it.
        with patch.object(Dispute, "active_for_order", return_value=None):
            with self.assertRaises(IllegalTransition) as ctx:
                transition_order(order_id, self.admin_id, OrderStatus.CANCELLED)
        self.assertEqual(ctx.exception.reason, "dispute_active")

        db.session.expire_all()
        order = self.order(order_id)
        self.assertEqual(order.status, OrderStatus.PROCESSING)
        self.assertEqual(order.escrow_status, EscrowStatus.DISPUTED)
        self.assertEqual(int(self.user(self.buyer_id).available_balance_minor), 0)
        self.assertEqual(LedgerEntry.query.filter(LedgerEntry.reference.like("%-BUYER-REFUND")).count(), 0)

    def test_stale_escrow_status_is_not_overwritten(self):
        order_id = self.buy_book()
        self.deliver(order_id)
        order = self.order(order_id)
        self.assertEqual(order.escrow_status, EscrowStatus.HELD)
        Order.query.filter(Order.id == order_id).update(
            {Order.escrow_status: EscrowStatus.DISPUTED}, synchronize_session=False
        )

        with self.assertRaises(ConcurrentModification) as ctx:
            transition_escrow(order, EscrowStatus.RELEASED, idempotency_key=f"settle:{order_id}")
        self.assertEqual(ctx.exception.reason, "escrow_changed")
        db.session.rollback()


class LedgerReplayTestCase(EscrowTestCase):
    def test_replay_matches_stored_balances(self):
        self.fund_wallet(self.buyer_id, 2_500_000, "TOPUP-ADA-9")
        first = self.buy_book(method="wallet")
        second = self.buy_book()
        self.deliver(first)
        settle_order(first)
        transition_order(second, self.buyer_id, OrderStatus.CANCELLED)

        for uid in (self.buyer_id, self.seller_id, self.rider_id, self.admin_id):
            replay = replay_balances(uid)
            stored = self.user(uid)
            self.assertEqual(replay["available_balance_minor"], int(stored.available_balance_minor), msg=uid)
            self.assertEqual(replay["pending_balance_minor"], int(stored.pending_balance_minor), msg=uid)

        summary = recompute_wallet_balances()
        self.assertEqual(summary["drift_count"], 0)
        self.assertEqual(summary["user_count"], 6)

    def test_tampered_balance_shows_up_as_drift(self):
        order_id = self.buy_book()
        self.deliver(order_id)
        settle_order(order_id)

        seller = self.user(self.seller_id)
        seller.available_balance_minor = int(seller.available_balance_minor) + 1
        db.session.commit()

        summary = recompute_wallet_balances()
        self.assertEqual(summary["drift_count"], 1)
        item = summary["drift_items"][0]
        self.assertEqual(item["user_id"], self.seller_id)
        self.assertEqual(item["available_drift_minor"], 1)
        self.assertEqual(item["pending_drift_minor"], 0)

        report = persist_report(summary, created_by=self.admin_id)
        self.assertEqual(int(report.drift_count), 1)
        self.assertEqual(int(report.users_checked), 6)


if __name__ == "__main__":
    unittest.main()
