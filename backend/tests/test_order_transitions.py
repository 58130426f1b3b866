from __future__ import annotations

import unittest

from escrow_fixtures import BOOK_TOTAL_MINOR, RIDER_PAYOUT_MINOR, EscrowTestCase

from bata.errors import Forbidden, IllegalTransition, ValidationError
from bata.models import EscrowTransition, OrderEvent
from bata.services.escrow_service import EscrowStatus
from bata.services.order_state import (
    TRANSITIONS,
    OrderStatus,
    can_transition,
    status_graph,
    transition_order,
)


class TransitionTableTestCase(unittest.TestCase):
    def test_terminal_states_have_no_exits(self):
        self.assertEqual(TRANSITIONS[OrderStatus.COMPLETED], ())
        self.assertEqual(TRANSITIONS[OrderStatus.CANCELLED], ())
        graph = status_graph()
        self.assertEqual(set(graph["terminal"]), {OrderStatus.COMPLETED, OrderStatus.CANCELLED})

    def test_only_listed_edges_are_legal(self):
        for current in OrderStatus.ALL:
            for requested in OrderStatus.ALL:
                self.assertEqual(
                    can_transition(current, requested),
                    requested in TRANSITIONS[current],
                    msg=f"{current}->{requested}",
                )
        self.assertFalse(can_transition(OrderStatus.PENDING, OrderStatus.DELIVERED))
        self.assertFalse(can_transition(OrderStatus.DELIVERED, OrderStatus.CANCELLED))


class OrderTransitionTestCase(EscrowTestCase):
    def test_skipping_states_is_rejected_with_detail(self):
        order_id = self.buy_book()
        with self.assertRaises(IllegalTransition) as ctx:
            transition_order(order_id, self.rider_id, OrderStatus.DELIVERED)
        self.assertEqual(ctx.exception.debug["current"], OrderStatus.PENDING)
        self.assertEqual(ctx.exception.debug["requested"], OrderStatus.DELIVERED)
        self.assertEqual(self.order(order_id).status, OrderStatus.PENDING)

    def test_unknown_status_is_a_validation_error(self):
        order_id = self.buy_book()
        with self.assertRaises(ValidationError):
            transition_order(order_id, self.rider_id, "TELEPORTED")

    def test_rider_acceptance_escrows_rider_payout(self):
        order_id = self.buy_book()
        order = transition_order(order_id, self.rider_id, OrderStatus.RIDER_ASSIGNED)
        self.assertEqual(order["status"], OrderStatus.RIDER_ASSIGNED)
        self.assertEqual(order["rider_id"], self.rider_id)
        self.assertIsNotNone(order["rider_assigned_at"])
        rider = self.user(self.rider_id)
        self.assertEqual(int(rider.pending_balance_minor), RIDER_PAYOUT_MINOR)
        self.assertEqual(int(rider.available_balance_minor), 0)

    def test_buyer_cannot_accept_delivery(self):
        order_id = self.buy_book()
        with self.assertRaises(Forbidden):
            transition_order(order_id, self.buyer_id, OrderStatus.RIDER_ASSIGNED)

    def test_only_assigned_rider_progresses_delivery(self):
        order_id = self.buy_book()
        transition_order(order_id, self.rider_id, OrderStatus.RIDER_ASSIGNED)
        with self.assertRaises(Forbidden):
            transition_order(order_id, self.rider2_id, OrderStatus.PICKED_UP)
        transition_order(order_id, self.rider_id, OrderStatus.PICKED_UP)
        self.assertEqual(self.order(order_id).status, OrderStatus.PICKED_UP)

    def test_seller_moves_order_through_processing(self):
        order_id = self.buy_book()
        with self.assertRaises(Forbidden):
            transition_order(order_id, self.buyer_id, OrderStatus.PROCESSING)
        transition_order(order_id, self.seller_id, OrderStatus.PROCESSING)
        transition_order(order_id, self.seller_id, OrderStatus.SHIPPED)
        transition_order(order_id, self.rider_id, OrderStatus.RIDER_ASSIGNED)
        self.assertEqual(self.order(order_id).status, OrderStatus.RIDER_ASSIGNED)

    def test_admin_assignment_requires_a_rider(self):
        order_id = self.buy_book()
        with self.assertRaises(ValidationError) as ctx:
            transition_order(order_id, self.admin_id, OrderStatus.RIDER_ASSIGNED)
        self.assertEqual(ctx.exception.reason, "rider_required")
        with self.assertRaises(ValidationError):
            transition_order(order_id, self.admin_id, OrderStatus.RIDER_ASSIGNED, rider_id=self.buyer_id)
        order = transition_order(order_id, self.admin_id, OrderStatus.RIDER_ASSIGNED, rider_id=self.rider2_id)
        self.assertEqual(order["rider_id"], self.rider2_id)

    def test_every_transition_leaves_an_event(self):
        order_id = self.buy_book()
        self.deliver(order_id)
        events = [e.event for e in OrderEvent.query.filter_by(order_id=order_id).order_by(OrderEvent.id.asc()).all()]
        self.assertEqual(events, ["created", "rider_assigned", "picked_up", "on_the_way", "delivered"])
        order = self.order(order_id)
        self.assertIsNotNone(order.delivered_at)
        self.assertIsNotNone(order.picked_up_at)


class CancellationTestCase(EscrowTestCase):
    def test_buyer_cancel_refunds_and_reverses_escrow(self):
        order_id = self.buy_book()
        order = transition_order(order_id, self.buyer_id, OrderStatus.CANCELLED)
        self.assertEqual(order["status"], OrderStatus.CANCELLED)
        self.assertEqual(order["escrow_status"], EscrowStatus.REFUNDED)
        self.assertIsNotNone(order["cancelled_at"])

        buyer = self.user(self.buyer_id)
        seller = self.user(self.seller_id)
        self.assertEqual(int(buyer.available_balance_minor), BOOK_TOTAL_MINOR)
        self.assertEqual(int(seller.pending_balance_minor), 0)
        self.assertEqual(int(seller.available_balance_minor), 0)

        keys = [t.idempotency_key for t in EscrowTransition.query.filter_by(order_id=order_id).order_by(EscrowTransition.id.asc())]
        self.assertEqual(keys, [f"fund:{order_id}", f"cancel:{order_id}"])

    def test_seller_may_cancel_pending_order(self):
        order_id = self.buy_book()
        transition_order(order_id, self.seller_id, OrderStatus.CANCELLED)
        self.assertEqual(int(self.user(self.seller_id).pending_balance_minor), 0)

    def test_buyer_cannot_cancel_once_rider_assigned(self):
        order_id = self.buy_book()
        transition_order(order_id, self.rider_id, OrderStatus.RIDER_ASSIGNED)
        with self.assertRaises(Forbidden):
            transition_order(order_id, self.buyer_id, OrderStatus.CANCELLED)

    def test_admin_cancel_after_assignment_reverses_rider_escrow(self):
        order_id = self.buy_book()
        transition_order(order_id, self.rider_id, OrderStatus.RIDER_ASSIGNED)
        transition_order(order_id, self.admin_id, OrderStatus.CANCELLED)
        rider = self.user(self.rider_id)
        self.assertEqual(int(rider.pending_balance_minor), 0)
        self.assertEqual(int(self.user(self.seller_id).pending_balance_minor), 0)
        self.assertEqual(int(self.user(self.buyer_id).available_balance_minor), BOOK_TOTAL_MINOR)

    def test_cancelled_order_is_terminal(self):
        order_id = self.buy_book()
        transition_order(order_id, self.buyer_id, OrderStatus.CANCELLED)
        with self.assertRaises(IllegalTransition):
            transition_order(order_id, self.rider_id, OrderStatus.RIDER_ASSIGNED)
        self.assertIsNone(self.order(order_id).rider_id)


if __name__ == "__main__":
    unittest.main()
