"""
Tests for the order state machine, refunds, export and operator API.

Test Cases:
1. Pending order creation: snapshots, totals, validation
2. Payment confirmation commits stock all-or-nothing, exactly once
3. Paid but out of stock orders are held for reconciliation
4. Discount cap lost at confirmation does not block the order
5. Fulfillment transitions and their notifications
6. Cancellation releases stock and reverses discount usage
7. Refund and dispute mirroring
8. Export and operator endpoints
9. Concurrent confirmations
"""
import threading
from datetime import timedelta
from unittest.mock import patch

from django.contrib.auth import get_user_model
from django.contrib.auth.models import Permission
from django.core import mail
from django.db import IntegrityError, connection, transaction
from django.test import TestCase, TransactionTestCase, override_settings
from django.utils import timezone
from rest_framework import status
from rest_framework.test import APIClient

from core.exceptions import (
    ConcurrencyConflict,
    DiscountRejected,
    InsufficientStock,
    OrderValidationError,
    SkuInactive,
)
from discounts.models import DiscountCode, DiscountUsage
from inventory import ledger as stock_ledger
from inventory.models import Product, StockMovement, StockUnit
from orders import refunds, state_machine
from orders.exports import CSV_BOM, export_queryset, export_rows
from orders.models import VERIFYING_MESSAGE, Dispute, Order, OrderHistory, Refund
from orders.state_machine import Outcome
from orders.tasks import expire_abandoned_checkouts, send_order_confirmation

SHIPPING = {
    'first_name': 'Ada',
    'last_name': 'Lovelace',
    'address1': '12 St James Square',
    'postal_code': 'SW1Y 4JH',
    'city': 'London',
    'country': 'GB',
}


class OrderFixtureMixin:
    """Catalog shared by the order tests: two SKUs and a 10% code."""

    def setUp(self):
        product = Product.objects.create(title='Classic Stacking Ring')
        necklace = Product.objects.create(title='Pendant Necklace')
        self.ring = StockUnit.objects.create(
            product=product, sku='RING-01', color='Gold', size='52', price=4990, inventory=10
        )
        self.neck = StockUnit.objects.create(
            product=necklace, sku='NECK-05', color='Silver', size='45cm', price=5900, inventory=5
        )
        self.welcome = DiscountCode.objects.create(code='WELCOME10', value=10)

    def create_order(self, items, discount_code='', email='ada@example.com', **kwargs):
        result = state_machine.create_pending_order(
            customer_email=email,
            items=items,
            shipping=SHIPPING,
            shipping_cost=490,
            discount_code=discount_code,
            **kwargs
        )
        return result.order

    def paid_order(self, items, discount_code='', **kwargs):
        order = self.create_order(items, discount_code, **kwargs)
        result = state_machine.confirm_payment(order.pk, charge_ref=f'pi_{order.pk}')
        self.assertEqual(result.outcome, Outcome.APPLIED)
        order.refresh_from_db()
        return order

    def refresh(self, *objects):
        for obj in objects:
            obj.refresh_from_db()


class OrderCreationTestCase(OrderFixtureMixin, TestCase):
    """Test cases for create_pending_order."""

    def test_create_snapshots_items_and_totals(self):
        """
        Given: Two SKUs and a 10% code
        When: Creating an order for 2 rings and 1 necklace with 4.90 shipping
        Then: Totals are computed once and stock is untouched
        """
        result = state_machine.create_pending_order(
            customer_email='ada@example.com',
            items=[{'sku_id': self.ring.pk, 'quantity': 2}, {'sku_id': self.neck.pk, 'quantity': 1}],
            shipping=SHIPPING,
            shipping_cost=490,
            discount_code='welcome10',
            user_id='42',
        )
        order = result.order

        self.assertEqual(result.outcome, Outcome.APPLIED)
        self.assertEqual(order.status, Order.Status.PENDING)
        self.assertEqual(order.payment_status, Order.PaymentStatus.PENDING)
        self.assertEqual(order.order_number, f'ORD-{1000 + order.pk}')
        # (2 * 4990) + 5900 = 15880, 10% = 1588
        self.assertEqual(order.subtotal, 15880)
        self.assertEqual(order.discount_amount, 1588)
        self.assertEqual(order.total, 15880 - 1588 + 490)
        self.assertEqual(order.discount_code, self.welcome)
        self.assertEqual(order.shipping_city, 'London')
        self.assertIn('user:42:orders', result.invalidation)

        ring_item = order.items.get(sku_code='RING-01')
        self.assertEqual(ring_item.product_title, 'Classic Stacking Ring')
        self.assertEqual(ring_item.sku_color, 'Gold')
        self.assertEqual(ring_item.unit_price, 4990)
        self.assertEqual(ring_item.line_total, 9980)

        self.refresh(self.ring)
        self.assertEqual(self.ring.inventory, 10)
        self.assertFalse(StockMovement.objects.exists())
        self.assertEqual(order.history.get().action, OrderHistory.Action.CREATED)

    def test_order_number_is_stored(self):
        order = self.create_order([{'sku_id': self.ring.pk, 'quantity': 1}])

        self.assertEqual(Order.objects.get(pk=order.pk).order_number, order.order_number)

    def test_snapshot_survives_price_change(self):
        order = self.create_order([{'sku_id': self.ring.pk, 'quantity': 1}])
        StockUnit.objects.filter(pk=self.ring.pk).update(price=9999)

        self.assertEqual(order.items.get().unit_price, 4990)

    def test_insufficient_stock_creates_nothing(self):
        with self.assertRaises(InsufficientStock):
            self.create_order([{'sku_id': self.ring.pk, 'quantity': 1}, {'sku_id': self.neck.pk, 'quantity': 6}])

        self.assertFalse(Order.all_objects.exists())

    def test_inactive_sku(self):
        StockUnit.objects.filter(pk=self.neck.pk).update(is_active=False)

        with self.assertRaises(SkuInactive):
            self.create_order([{'sku_id': self.neck.pk, 'quantity': 1}])

    def test_validation_errors(self):
        with self.assertRaises(OrderValidationError):
            self.create_order([])
        with self.assertRaises(OrderValidationError):
            self.create_order([{'sku_id': self.ring.pk, 'quantity': 0}])
        with self.assertRaises(OrderValidationError) as context:
            self.create_order([{'sku_id': self.ring.pk, 'quantity': 1}, {'sku_id': self.ring.pk, 'quantity': 2}])
        self.assertIn('duplicate', str(context.exception))

    def test_rejected_discount_creates_nothing(self):
        with self.assertRaises(DiscountRejected) as context:
            self.create_order([{'sku_id': self.ring.pk, 'quantity': 1}], discount_code='BOGUS')

        self.assertEqual(context.exception.reason, 'NOT_FOUND')
        self.assertFalse(Order.all_objects.exists())

    def test_database_enforces_total(self):
        """
        Test: A row whose total does not match its components is rejected.
        """
        with self.assertRaises(IntegrityError):
            with transaction.atomic():
                Order.objects.create(customer_email='x@example.com', subtotal=1000, shipping_cost=490, total=1000)

        with self.assertRaises(IntegrityError):
            with transaction.atomic():
                Order.objects.create(customer_email='x@example.com', subtotal=100, discount_amount=200, total=-100)


class ConfirmPaymentTestCase(OrderFixtureMixin, TestCase):
    """Test cases for confirm_payment."""

    def test_confirm_commits_stock_and_notifies(self):
        """
        Given: A pending order for 2 rings
        When: The payment is confirmed
        Then: Stock is committed, the order is PAID/PROCESSING and emails go out after commit
        """
        order = self.create_order([{'sku_id': self.ring.pk, 'quantity': 2}])

        with self.captureOnCommitCallbacks(execute=True):
            result = state_machine.confirm_payment(
                order.pk, charge_ref='pi_123', checkout_session_id='cs_123', gateway_customer_id='cus_9'
            )

        self.assertEqual(result.outcome, Outcome.APPLIED)
        self.refresh(order, self.ring)
        self.assertEqual(order.status, Order.Status.PROCESSING)
        self.assertEqual(order.payment_status, Order.PaymentStatus.PAID)
        self.assertEqual(order.fulfillment_status, Order.FulfillmentStatus.PROCESSING)
        self.assertEqual(order.payment_intent_id, 'pi_123')
        self.assertEqual(order.checkout_session_id, 'cs_123')
        self.assertEqual(order.gateway_customer_id, 'cus_9')
        self.assertIsNotNone(order.paid_at)
        self.assertEqual(self.ring.inventory, 8)
        self.assertIn(f'stock:sku:{self.ring.pk}', result.invalidation)

        subjects = sorted(message.subject for message in mail.outbox)
        self.assertEqual(len(subjects), 2)
        self.assertTrue(subjects[0].startswith('New order'))
        self.assertEqual(subjects[1], f'Order confirmation {order.order_number}')

    def test_no_notification_without_commit(self):
        order = self.create_order([{'sku_id': self.ring.pk, 'quantity': 1}])

        with self.captureOnCommitCallbacks(execute=False) as callbacks:
            state_machine.confirm_payment(order.pk, charge_ref='pi_1')

        self.assertEqual(len(callbacks), 2)
        self.assertEqual(mail.outbox, [])

    def test_confirm_is_idempotent(self):
        """
        Test: A second confirmation changes nothing.
        """
        order = self.create_order([{'sku_id': self.ring.pk, 'quantity': 2}])
        state_machine.confirm_payment(order.pk, charge_ref='pi_1')

        result = state_machine.confirm_payment(order.pk, charge_ref='pi_1')

        self.assertEqual(result.outcome, Outcome.ALREADY_APPLIED)
        self.refresh(self.ring)
        self.assertEqual(self.ring.inventory, 8)
        self.assertEqual(StockMovement.objects.filter(order=order).count(), 1)
        self.assertEqual(order.history.filter(action=OrderHistory.Action.PAYMENT_CONFIRMED).count(), 1)

    def test_confirm_unknown_order(self):
        self.assertEqual(state_machine.confirm_payment(99999).outcome, Outcome.NOT_FOUND)

    def test_confirm_cancelled_order(self):
        """
        Given: A checkout that expired unpaid
        When: A payment for it succeeds anyway
        Then: Nothing is committed, the order is flagged and an operator alerted once
        """
        order = self.create_order([{'sku_id': self.ring.pk, 'quantity': 1}])
        state_machine.expire_checkout(order.pk)

        with self.captureOnCommitCallbacks(execute=True):
            result = state_machine.confirm_payment(order.pk, charge_ref='pi_late')
        repeat = state_machine.confirm_payment(order.pk, charge_ref='pi_late')

        self.assertEqual(result.outcome, Outcome.INVALID_TRANSITION)
        self.assertEqual(repeat.outcome, Outcome.INVALID_TRANSITION)
        self.refresh(order, self.ring)
        self.assertEqual(self.ring.inventory, 10)
        self.assertEqual(order.status, Order.Status.CANCELLED)
        self.assertTrue(order.needs_reconciliation)
        self.assertEqual(order.payment_intent_id, 'pi_late')
        self.assertIn('after the order was cancelled', order.reconciliation_reason)
        self.assertEqual(order.history.filter(action=OrderHistory.Action.RECONCILIATION).count(), 1)
        self.assertEqual(
            [m.subject for m in mail.outbox], [f'[ALERT] Order {order.order_number} needs reconciliation']
        )

    def test_payment_retry_after_decline_is_held(self):
        """
        Given: A first card attempt was declined and the order cancelled
        When: The retry in the same checkout succeeds
        Then: The order is flagged for reconciliation instead of silently dropped
        """
        order = self.create_order([{'sku_id': self.ring.pk, 'quantity': 1}])
        state_machine.mark_payment_failed(order.pk, charge_ref='pi_1', failure_code='card_declined')

        result = state_machine.confirm_payment(order.pk, charge_ref='pi_1')

        self.assertEqual(result.outcome, Outcome.INVALID_TRANSITION)
        self.refresh(order)
        self.assertTrue(order.needs_reconciliation)
        self.assertEqual(order.payment_status, Order.PaymentStatus.FAILED)

    def test_payment_event_after_privileged_cancel_is_not_held(self):
        order = self.paid_order([{'sku_id': self.ring.pk, 'quantity': 1}])
        state_machine.cancel(order.pk, privileged=True)

        result = state_machine.confirm_payment(order.pk, charge_ref=order.payment_intent_id)

        self.assertEqual(result.outcome, Outcome.INVALID_TRANSITION)
        self.refresh(order)
        self.assertFalse(order.needs_reconciliation)

    def test_last_unit_goes_to_one_order(self):
        """
        Test: Two orders for the last ring, confirmed one after the other.

        Given: RING-01 has 1 unit, orders A and B each want it
        When: Both payments are confirmed
        Then: A is PAID/PROCESSING; B stays PENDING, flagged for reconciliation
        """
        StockUnit.objects.filter(pk=self.ring.pk).update(inventory=1)
        order_a = self.create_order([{'sku_id': self.ring.pk, 'quantity': 1}])
        order_b = self.create_order([{'sku_id': self.ring.pk, 'quantity': 1}], email='bob@example.com')

        with self.captureOnCommitCallbacks(execute=True):
            result_a = state_machine.confirm_payment(order_a.pk, charge_ref='pi_a')
            result_b = state_machine.confirm_payment(order_b.pk, charge_ref='pi_b')

        self.assertEqual(result_a.outcome, Outcome.APPLIED)
        self.assertEqual(result_b.outcome, Outcome.INSUFFICIENT_STOCK)
        self.refresh(order_a, order_b, self.ring)
        self.assertEqual(order_a.payment_status, Order.PaymentStatus.PAID)
        self.assertEqual(order_b.status, Order.Status.PENDING)
        self.assertEqual(order_b.payment_status, Order.PaymentStatus.PENDING)
        self.assertTrue(order_b.needs_reconciliation)
        self.assertIn('Insufficient stock', order_b.reconciliation_reason)
        self.assertEqual(order_b.payment_intent_id, 'pi_b')
        self.assertEqual(order_b.customer_message, VERIFYING_MESSAGE)
        self.assertIsNone(order_a.customer_message)
        self.assertEqual(self.ring.inventory, 0)
        self.assertFalse(self.ring.is_active)
        self.assertTrue(any(m.subject.startswith('[ALERT]') for m in mail.outbox))

    def test_partial_commit_is_rolled_back(self):
        """
        Given: An order for 1 ring and 5 necklaces, and necklace stock cut to 3 afterwards
        When: The payment is confirmed
        Then: Nothing is committed, not even the ring
        """
        order = self.create_order([{'sku_id': self.ring.pk, 'quantity': 1}, {'sku_id': self.neck.pk, 'quantity': 5}])
        stock_ledger.adjust(self.neck.pk, -2, 'breakage')

        result = state_machine.confirm_payment(order.pk, charge_ref='pi_1')

        self.assertEqual(result.outcome, Outcome.INSUFFICIENT_STOCK)
        self.refresh(self.ring, self.neck)
        self.assertEqual(self.ring.inventory, 10)
        self.assertEqual(self.neck.inventory, 3)
        self.assertFalse(StockMovement.objects.filter(order=order).exists())

    def test_held_order_confirms_after_restock(self):
        order = self.create_order([{'sku_id': self.neck.pk, 'quantity': 5}])
        stock_ledger.adjust(self.neck.pk, -1, 'breakage')
        state_machine.confirm_payment(order.pk, charge_ref='pi_1')
        stock_ledger.adjust(self.neck.pk, 1, 'found in back room')

        result = state_machine.confirm_payment(order.pk, charge_ref='pi_1')

        self.assertEqual(result.outcome, Outcome.APPLIED)
        self.refresh(order)
        self.assertFalse(order.needs_reconciliation)
        self.assertEqual(order.history.filter(action=OrderHistory.Action.RECONCILIATION).count(), 1)

    @override_settings(LEDGER_CONFLICT_RETRIES=2)
    def test_conflicts_exhausted_hold_the_order(self):
        order = self.create_order([{'sku_id': self.ring.pk, 'quantity': 1}])

        with patch('orders.state_machine.stock_ledger.commit', side_effect=ConcurrencyConflict('lost')) as commit:
            result = state_machine.confirm_payment(order.pk, charge_ref='pi_1')

        self.assertEqual(commit.call_count, 2)
        self.assertEqual(result.outcome, Outcome.INSUFFICIENT_STOCK)
        self.refresh(order)
        self.assertTrue(order.needs_reconciliation)

    def test_discount_redeemed_at_confirmation(self):
        order = self.create_order([{'sku_id': self.ring.pk, 'quantity': 1}], discount_code='WELCOME10')

        result = state_machine.confirm_payment(order.pk, charge_ref='pi_1')

        self.assertIn('discount:WELCOME10', result.invalidation)
        self.refresh(self.welcome)
        self.assertEqual(self.welcome.usage_count, 1)
        self.assertEqual(DiscountUsage.objects.get().order_id, order.pk)

    def test_cap_lost_does_not_block_payment(self):
        """
        Given: WELCOME10 capped at 1 and two pending orders using it
        When: Both payments are confirmed
        Then: Both orders are paid; only the first redemption is counted
        """
        self.welcome.usage_cap = 1
        self.welcome.save()
        first = self.create_order([{'sku_id': self.ring.pk, 'quantity': 1}], discount_code='WELCOME10')
        second = self.create_order([{'sku_id': self.ring.pk, 'quantity': 1}], discount_code='WELCOME10')

        state_machine.confirm_payment(first.pk, charge_ref='pi_1')
        result = state_machine.confirm_payment(second.pk, charge_ref='pi_2')

        self.assertEqual(result.outcome, Outcome.APPLIED)
        self.refresh(self.welcome, second)
        self.assertEqual(self.welcome.usage_count, 1)
        self.assertEqual(DiscountUsage.objects.count(), 1)
        self.assertEqual(second.payment_status, Order.PaymentStatus.PAID)
        confirmed = second.history.get(action=OrderHistory.Action.PAYMENT_CONFIRMED)
        self.assertEqual(confirmed.metadata['discount_redemption'], 'CAP_REACHED')
        # Totals were fixed at creation
        self.assertEqual(second.discount_amount, 499)


class FulfillmentTestCase(OrderFixtureMixin, TestCase):
    """Test cases for ship, deliver, return and unpaid cancellation."""

    def test_ship_requires_payment(self):
        order = self.create_order([{'sku_id': self.ring.pk, 'quantity': 1}])

        result = state_machine.mark_shipped(order.pk, tracking_number='TRK1')

        self.assertEqual(result.outcome, Outcome.INVALID_TRANSITION)

    def test_ship_deliver_return(self):
        """
        Given: A paid order
        When: It is shipped, delivered and returned
        Then: Each step notifies once and a return does not restock
        """
        order = self.paid_order([{'sku_id': self.ring.pk, 'quantity': 1}])

        with self.captureOnCommitCallbacks(execute=True):
            shipped = state_machine.mark_shipped(
                order.pk, tracking_number='TRK1', tracking_url='https://track.example.com/TRK1',
                carrier='DHL', author_name='ops'
            )
        self.assertEqual(shipped.outcome, Outcome.APPLIED)
        self.assertEqual(mail.outbox[-1].subject, f'Your order {order.order_number} has shipped')
        self.assertIn('TRK1', mail.outbox[-1].body)
        self.assertEqual(state_machine.mark_shipped(order.pk).outcome, Outcome.ALREADY_APPLIED)

        mail.outbox.clear()
        with self.captureOnCommitCallbacks(execute=True):
            delivered = state_machine.mark_delivered(order.pk)
        self.assertEqual(delivered.outcome, Outcome.APPLIED)
        # Delivery confirmation and the (delayed) review request
        self.assertEqual(len(mail.outbox), 2)

        returned = state_machine.mark_returned(order.pk)
        self.assertEqual(returned.outcome, Outcome.APPLIED)
        self.refresh(order, self.ring)
        self.assertEqual(order.status, Order.Status.DELIVERED)
        self.assertEqual(order.fulfillment_status, Order.FulfillmentStatus.RETURNED)
        self.assertEqual(order.tracking_number, 'TRK1')
        self.assertEqual(self.ring.inventory, 9)
        self.assertEqual(state_machine.mark_returned(order.pk).outcome, Outcome.ALREADY_APPLIED)

        actions = list(order.history.values_list('action', flat=True))
        self.assertEqual(actions, [
            OrderHistory.Action.CREATED,
            OrderHistory.Action.PAYMENT_CONFIRMED,
            OrderHistory.Action.SHIPPED,
            OrderHistory.Action.DELIVERED,
            OrderHistory.Action.RETURNED,
        ])

    def test_deliver_requires_shipment(self):
        order = self.paid_order([{'sku_id': self.ring.pk, 'quantity': 1}])

        self.assertEqual(state_machine.mark_delivered(order.pk).outcome, Outcome.INVALID_TRANSITION)
        self.assertEqual(state_machine.mark_returned(order.pk).outcome, Outcome.INVALID_TRANSITION)

    def test_delivered_is_terminal(self):
        order = self.paid_order([{'sku_id': self.ring.pk, 'quantity': 1}])
        state_machine.mark_shipped(order.pk)
        state_machine.mark_delivered(order.pk)

        result = state_machine.cancel(order.pk, privileged=True)

        self.assertEqual(result.outcome, Outcome.INVALID_TRANSITION)
        self.refresh(order)
        self.assertTrue(order.is_terminal)

    def test_expire_checkout(self):
        order = self.create_order([{'sku_id': self.ring.pk, 'quantity': 1}])

        result = state_machine.expire_checkout(order.pk)

        self.assertEqual(result.outcome, Outcome.APPLIED)
        self.refresh(order)
        self.assertEqual(order.status, Order.Status.CANCELLED)
        self.assertEqual(order.payment_status, Order.PaymentStatus.FAILED)
        self.assertEqual(state_machine.expire_checkout(order.pk).outcome, Outcome.ALREADY_APPLIED)

    def test_expire_leaves_paid_and_held_orders(self):
        paid = self.paid_order([{'sku_id': self.ring.pk, 'quantity': 1}])
        held = self.create_order([{'sku_id': self.neck.pk, 'quantity': 5}])
        stock_ledger.adjust(self.neck.pk, -1, 'breakage')
        state_machine.confirm_payment(held.pk, charge_ref='pi_held')

        self.assertEqual(state_machine.expire_checkout(paid.pk).outcome, Outcome.INVALID_TRANSITION)
        self.assertEqual(state_machine.expire_checkout(held.pk).outcome, Outcome.INVALID_TRANSITION)
        self.refresh(held)
        self.assertEqual(held.status, Order.Status.PENDING)

    def test_payment_failed(self):
        order = self.create_order([{'sku_id': self.ring.pk, 'quantity': 1}])

        result = state_machine.mark_payment_failed(
            order.pk, charge_ref='pi_1', failure_code='card_declined', failure_message='Your card was declined.'
        )

        self.assertEqual(result.outcome, Outcome.APPLIED)
        self.refresh(order)
        self.assertEqual(order.status, Order.Status.CANCELLED)
        self.assertEqual(order.payment_failure_code, 'card_declined')
        self.assertEqual(order.history.last().note, 'Your card was declined.')
        self.assertEqual(state_machine.mark_payment_failed(order.pk).outcome, Outcome.ALREADY_APPLIED)

    def test_abandoned_checkouts_expire(self):
        stale = self.create_order([{'sku_id': self.ring.pk, 'quantity': 1}])
        fresh = self.create_order([{'sku_id': self.ring.pk, 'quantity': 1}])
        Order.objects.filter(pk=stale.pk).update(created_at=timezone.now() - timedelta(hours=25))

        self.assertEqual(expire_abandoned_checkouts(), {'expired': 1})

        self.refresh(stale, fresh)
        self.assertEqual(stale.status, Order.Status.CANCELLED)
        self.assertEqual(stale.history.last().source, OrderHistory.Source.SYSTEM)
        self.assertEqual(fresh.status, Order.Status.PENDING)

    def test_delayed_payment_survives_abandoned_sweep(self):
        """
        Given: A checkout completed with a bank debit that has not settled, 25 hours ago
        When: The abandoned-checkout sweep runs and the payment later succeeds
        Then: The order is left alone by the sweep and confirmed normally
        """
        order = self.create_order([{'sku_id': self.ring.pk, 'quantity': 1}])
        Order.objects.filter(pk=order.pk).update(created_at=timezone.now() - timedelta(hours=25))

        result = state_machine.mark_awaiting_payment(order.pk, charge_ref='pi_debit', checkout_session_id='cs_1')
        repeat = state_machine.mark_awaiting_payment(order.pk, charge_ref='pi_debit')

        self.assertEqual(result.outcome, Outcome.APPLIED)
        self.assertEqual(repeat.outcome, Outcome.ALREADY_APPLIED)
        self.assertEqual(expire_abandoned_checkouts(), {'expired': 0})
        self.assertEqual(state_machine.expire_checkout(order.pk).outcome, Outcome.INVALID_TRANSITION)
        self.refresh(order)
        self.assertTrue(order.awaiting_payment)
        self.assertEqual(order.payment_intent_id, 'pi_debit')
        self.assertEqual(order.history.last().action, OrderHistory.Action.AWAITING_PAYMENT)

        confirmed = state_machine.confirm_payment(order.pk, charge_ref='pi_debit')

        self.assertEqual(confirmed.outcome, Outcome.APPLIED)
        self.refresh(order)
        self.assertEqual(order.status, Order.Status.PROCESSING)
        self.assertFalse(order.awaiting_payment)

    def test_confirmation_email_skipped_for_unpaid_order(self):
        order = self.create_order([{'sku_id': self.ring.pk, 'quantity': 1}])

        self.assertEqual(send_order_confirmation(order.pk)['status'], 'skipped')
        self.assertEqual(mail.outbox, [])

    def test_soft_delete(self):
        order = self.create_order([{'sku_id': self.ring.pk, 'quantity': 1}])

        order.delete()

        self.assertFalse(Order.objects.filter(pk=order.pk).exists())
        self.assertTrue(Order.all_objects.filter(pk=order.pk).exists())
        self.assertEqual(state_machine.mark_shipped(order.pk).outcome, Outcome.NOT_FOUND)


class CancellationTestCase(OrderFixtureMixin, TestCase):
    """Test cases for cancel."""

    def test_cancel_pending_without_side_effects(self):
        order = self.create_order([{'sku_id': self.ring.pk, 'quantity': 1}])

        with self.captureOnCommitCallbacks(execute=True):
            result = state_machine.cancel(order.pk, reason='Changed my mind')

        self.assertEqual(result.outcome, Outcome.APPLIED)
        self.refresh(order, self.ring)
        self.assertEqual(order.status, Order.Status.CANCELLED)
        self.assertEqual(self.ring.inventory, 10)
        self.assertEqual(mail.outbox[0].body, 'Changed my mind')

    def test_cancel_paid_order_restocks_and_reverses_discount(self):
        """
        Given: A PROCESSING order with 2 committed NECK-05 and WELCOME10 redeemed
        When: A privileged operator cancels it
        Then: NECK-05 goes up by exactly 2 and the discount usage is voided
        """
        order = self.paid_order([{'sku_id': self.neck.pk, 'quantity': 2}], discount_code='WELCOME10')
        self.refresh(self.neck)
        self.assertEqual(self.neck.inventory, 3)

        denied = state_machine.cancel(order.pk, reason='fraud check')
        self.assertEqual(denied.outcome, Outcome.NOT_PERMITTED)
        self.refresh(self.neck)
        self.assertEqual(self.neck.inventory, 3)

        result = state_machine.cancel(order.pk, reason='fraud check', privileged=True, author_name='ops')

        self.assertEqual(result.outcome, Outcome.APPLIED)
        self.assertIn(f'stock:sku:{self.neck.pk}', result.invalidation)
        self.assertIn('discount:WELCOME10', result.invalidation)
        self.refresh(order, self.neck, self.welcome)
        self.assertEqual(self.neck.inventory, 5)
        self.assertEqual(order.status, Order.Status.CANCELLED)
        self.assertEqual(order.payment_status, Order.PaymentStatus.REFUNDED)
        self.assertEqual(self.welcome.usage_count, 0)
        self.assertFalse(DiscountUsage.objects.get().is_active)
        cancelled = order.history.get(action=OrderHistory.Action.CANCELLED)
        self.assertEqual(cancelled.previous_status, Order.Status.PROCESSING)
        self.assertEqual(cancelled.author_name, 'ops')

        # Repeating is a no-op
        again = state_machine.cancel(order.pk, privileged=True)
        self.assertEqual(again.outcome, Outcome.ALREADY_APPLIED)
        self.refresh(self.neck)
        self.assertEqual(self.neck.inventory, 5)

    def test_cancel_shipped_order(self):
        order = self.paid_order([{'sku_id': self.ring.pk, 'quantity': 3}])
        state_machine.mark_shipped(order.pk)

        result = state_machine.cancel(order.pk, privileged=True)

        self.assertEqual(result.outcome, Outcome.APPLIED)
        self.refresh(self.ring)
        self.assertEqual(self.ring.inventory, 10)

    def test_cancel_unknown_order(self):
        self.assertEqual(state_machine.cancel(99999).outcome, Outcome.NOT_FOUND)


class RefundTestCase(OrderFixtureMixin, TestCase):
    """Test cases for refund and dispute mirroring."""

    def setUp(self):
        super().setUp()
        # 4990 + 490 shipping
        self.order = self.paid_order([{'sku_id': self.ring.pk, 'quantity': 1}])
        self.pi = self.order.payment_intent_id

    def test_partial_refund(self):
        with self.captureOnCommitCallbacks(execute=True):
            result = refunds.sync_refund(self.pi, 're_1', 1000, 'succeeded', reason='requested_by_customer')

        self.assertEqual(result.outcome, Outcome.APPLIED)
        self.refresh(self.order)
        self.assertEqual(self.order.payment_status, Order.PaymentStatus.PARTIALLY_REFUNDED)
        self.assertEqual(self.order.status, Order.Status.PROCESSING)
        self.assertEqual(Refund.objects.get().status, Refund.Status.COMPLETED)
        self.assertEqual(mail.outbox[-1].subject, f'Refund for order {self.order.order_number}')

        # Redelivery
        repeat = refunds.sync_refund(self.pi, 're_1', 1000, 'succeeded')
        self.assertEqual(repeat.outcome, Outcome.ALREADY_APPLIED)
        self.assertEqual(Refund.objects.count(), 1)

    def test_pending_then_succeeded(self):
        refunds.sync_refund(self.pi, 're_1', 5480, 'pending')
        self.refresh(self.order)
        self.assertEqual(self.order.payment_status, Order.PaymentStatus.PAID)

        refunds.sync_refund(self.pi, 're_1', 5480, 'succeeded')
        self.refresh(self.order)
        self.assertEqual(self.order.payment_status, Order.PaymentStatus.REFUNDED)

    def test_refund_after_privileged_cancel_keeps_refunded(self):
        """
        Given: A PROCESSING order cancelled by an operator (payment REFUNDED)
        When: The gateway reports the refund as pending, then canceled, then succeeded
        Then: The payment status never falls back to PAID and stock is released only once
        """
        state_machine.cancel(self.order.pk, reason='out of stock', privileged=True)

        pending = refunds.sync_refund(self.pi, 're_1', 5480, 'pending')
        self.refresh(self.order)
        self.assertEqual(pending.outcome, Outcome.APPLIED)
        self.assertEqual(self.order.status, Order.Status.CANCELLED)
        self.assertEqual(self.order.payment_status, Order.PaymentStatus.REFUNDED)

        refunds.sync_refund(self.pi, 're_1', 5480, 'canceled')
        self.refresh(self.order)
        self.assertEqual(self.order.payment_status, Order.PaymentStatus.REFUNDED)

        refunds.sync_refund(self.pi, 're_1', 5480, 'succeeded')
        self.refresh(self.order, self.ring)
        self.assertEqual(self.order.payment_status, Order.PaymentStatus.REFUNDED)
        self.assertEqual(self.ring.inventory, 10)
        self.assertEqual(StockMovement.objects.filter(kind=StockMovement.Kind.RELEASE).count(), 1)

    def test_pending_refund_does_not_undo_partial_refund(self):
        refunds.sync_refund(self.pi, 're_1', 1000, 'succeeded')

        refunds.sync_refund(self.pi, 're_2', 500, 'pending')

        self.refresh(self.order)
        self.assertEqual(self.order.payment_status, Order.PaymentStatus.PARTIALLY_REFUNDED)

    def test_full_refund_before_shipping_cancels(self):
        """
        Given: A paid order that has not shipped
        When: The whole amount is refunded
        Then: The order is cancelled and its stock released
        """
        result = refunds.sync_refund(self.pi, 're_full', 5480, 'succeeded')

        self.assertIn(f'stock:sku:{self.ring.pk}', result.invalidation)
        self.refresh(self.order, self.ring)
        self.assertEqual(self.order.payment_status, Order.PaymentStatus.REFUNDED)
        self.assertEqual(self.order.status, Order.Status.CANCELLED)
        self.assertEqual(self.ring.inventory, 10)

    def test_full_refund_after_shipping_keeps_status(self):
        state_machine.mark_shipped(self.order.pk)

        refunds.sync_refund(self.pi, 're_full', 5480, 'succeeded')

        self.refresh(self.order, self.ring)
        self.assertEqual(self.order.payment_status, Order.PaymentStatus.REFUNDED)
        self.assertEqual(self.order.status, Order.Status.SHIPPED)
        self.assertEqual(self.ring.inventory, 9)

    def test_refund_for_unknown_payment(self):
        self.assertEqual(refunds.sync_refund('pi_ghost', 're_1', 100, 'succeeded').outcome, Outcome.NOT_FOUND)

    def test_refund_for_unpaid_order(self):
        order = self.create_order([{'sku_id': self.ring.pk, 'quantity': 1}])
        Order.objects.filter(pk=order.pk).update(payment_intent_id='pi_unpaid')

        result = refunds.sync_refund('pi_unpaid', 're_1', 100, 'succeeded')

        self.assertEqual(result.outcome, Outcome.INVALID_TRANSITION)
        self.assertFalse(Refund.objects.exists())

    def test_charge_refunded_applies_every_refund(self):
        charge = {
            'id': 'ch_1',
            'payment_intent': self.pi,
            'amount_refunded': 1500,
            'refunds': {'data': [
                {'id': 're_1', 'amount': 1000, 'status': 'succeeded'},
                {'id': 're_2', 'amount': 500, 'status': 'succeeded'},
            ]},
        }

        results = refunds.sync_charge_refunds(charge)

        self.assertEqual([r.outcome for r in results], [Outcome.APPLIED, Outcome.APPLIED])
        self.assertEqual(Refund.objects.count(), 2)
        self.assertEqual(refunds.sync_charge_refunds({'id': 'ch_2', 'refunds': {'data': []}}), [])

    def test_refund_failure_restores_payment_status(self):
        """
        Given: A completed partial refund
        When: The gateway reports it failed
        Then: The order is PAID again and an operator is alerted
        """
        refunds.sync_refund(self.pi, 're_1', 1000, 'succeeded')

        with self.captureOnCommitCallbacks(execute=True):
            result = refunds.mark_refund_failed('re_1', failure_reason='insufficient_funds')

        self.assertEqual(result.outcome, Outcome.APPLIED)
        self.refresh(self.order)
        self.assertEqual(self.order.payment_status, Order.PaymentStatus.PAID)
        refund = Refund.objects.get()
        self.assertEqual(refund.status, Refund.Status.FAILED)
        self.assertEqual(refund.failure_reason, 'insufficient_funds')
        self.assertTrue(mail.outbox[-1].subject.startswith('[ALERT] Refund failed'))
        self.assertEqual(refunds.mark_refund_failed('re_1').outcome, Outcome.ALREADY_APPLIED)

    def test_failure_of_unseen_refund_is_recorded(self):
        result = refunds.mark_refund_failed('re_new', 'expired_or_canceled_card', payment_intent_id=self.pi, amount=700)

        self.assertEqual(result.outcome, Outcome.APPLIED)
        refund = Refund.objects.get(gateway_refund_id='re_new')
        self.assertEqual(refund.amount, 700)
        self.assertEqual(refund.status, Refund.Status.FAILED)

    def test_dispute_lifecycle(self):
        dispute = {
            'id': 'dp_1',
            'payment_intent': self.pi,
            'amount': 5480,
            'reason': 'fraudulent',
            'status': 'needs_response',
            'evidence_details': {'due_by': 1767225600},
        }

        with self.captureOnCommitCallbacks(execute=True):
            opened = refunds.record_dispute_opened(dispute)

        self.assertEqual(opened.outcome, Outcome.APPLIED)
        note = self.order.history.get(action=OrderHistory.Action.DISPUTE_OPENED).note
        self.assertIn('Fraudulent', note)
        self.assertIn('2026-01-01', note)
        self.assertEqual(len([m for m in mail.outbox if m.subject.startswith('[ALERT] Dispute opened')]), 1)
        self.assertEqual(refunds.record_dispute_opened(dispute).outcome, Outcome.ALREADY_APPLIED)

        closed = refunds.record_dispute_closed(dict(dispute, status='lost'))
        self.assertEqual(closed.outcome, Outcome.APPLIED)
        self.assertEqual(Dispute.objects.get().status, 'lost')
        self.assertEqual(refunds.record_dispute_closed(dict(dispute, status='lost')).outcome, Outcome.ALREADY_APPLIED)

    def test_dispute_closed_before_seen_open(self):
        result = refunds.record_dispute_closed({
            'id': 'dp_2', 'payment_intent': self.pi, 'amount': 5480, 'reason': 'general', 'status': 'won'
        })

        self.assertEqual(result.outcome, Outcome.APPLIED)
        self.assertEqual(Dispute.objects.get().status, 'won')
        actions = set(self.order.history.values_list('action', flat=True))
        self.assertIn(OrderHistory.Action.DISPUTE_OPENED, actions)
        self.assertIn(OrderHistory.Action.DISPUTE_CLOSED, actions)


class ExportTestCase(OrderFixtureMixin, TestCase):
    """Test cases for the bookkeeping export."""

    def setUp(self):
        super().setUp()
        User = get_user_model()
        self.admin = User.objects.create_user('ops', 'ops@example.com', 'pw', is_staff=True)
        self.client = APIClient()
        self.client.force_authenticate(self.admin)
        self.paid = self.paid_order([{'sku_id': self.ring.pk, 'quantity': 2}], discount_code='WELCOME10')
        refunds.sync_refund(self.paid.payment_intent_id, 're_1', 1234, 'succeeded')
        self.pending = self.create_order([{'sku_id': self.neck.pk, 'quantity': 1}])

    def test_rows_use_decimal_amounts(self):
        rows = {row['order_number']: row for row in export_rows(export_queryset())}

        row = rows[self.paid.order_number]
        self.assertEqual(row['subtotal'], '99.80')
        self.assertEqual(row['discount_amount'], '9.98')
        self.assertEqual(row['shipping_cost'], '4.90')
        self.assertEqual(row['total'], '94.72')
        self.assertEqual(row['refunded'], '12.34')
        self.assertEqual(row['discount_code'], 'WELCOME10')
        self.assertEqual(rows[self.pending.order_number]['refunded'], '0.00')

    def test_csv_export(self):
        response = self.client.get('/api/orders/export/', {'format': 'csv'})

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertTrue(response['Content-Type'].startswith('text/csv'))
        self.assertIn('attachment;', response['Content-Disposition'])
        content = response.content.decode('utf-8')
        self.assertTrue(content.startswith(CSV_BOM))
        lines = content[len(CSV_BOM):].splitlines()
        self.assertTrue(lines[0].startswith('Order number,Created at'))
        self.assertEqual(len(lines), 3)

    def test_json_export_with_status_filter(self):
        response = self.client.get('/api/orders/export/', {'format': 'json', 'status': 'PROCESSING'})

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual([row['order_number'] for row in response.json()], [self.paid.order_number])

    def test_date_filter(self):
        tomorrow = (timezone.now() + timedelta(days=1)).date().isoformat()

        response = self.client.get('/api/orders/export/', {'format': 'json', 'date_from': tomorrow})
        self.assertEqual(response.json(), [])

        response = self.client.get(
            '/api/orders/export/', {'format': 'json', 'date_from': tomorrow, 'date_to': '2020-01-01'}
        )
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_export_requires_staff(self):
        customer = get_user_model().objects.create_user('cust', 'cust@example.com', 'pw')
        self.client.force_authenticate(customer)

        response = self.client.get('/api/orders/export/', {'format': 'json'})

        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)


class OrderApiTestCase(OrderFixtureMixin, TestCase):
    """Test cases for checkout and operator endpoints."""

    def setUp(self):
        super().setUp()
        User = get_user_model()
        self.staff = User.objects.create_user('ops', 'ops@example.com', 'pw', is_staff=True)
        self.client = APIClient()

    def checkout(self, **overrides):
        payload = {
            'customer_email': 'ada@example.com',
            'items': [{'sku_id': self.ring.pk, 'quantity': 1}],
            'shipping': SHIPPING,
            'shipping_cost': 490,
        }
        payload.update(overrides)
        return self.client.post('/api/orders/', payload, format='json')

    def test_guest_checkout(self):
        response = self.checkout(discount_code='welcome10')

        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        self.assertEqual(response.data['status'], Order.Status.PENDING)
        self.assertEqual(response.data['total'], 4990 - 499 + 490)
        self.assertIsNone(response.data['customer_message'])
        self.assertNotIn('reconciliation_reason', response.data)

    def test_checkout_errors(self):
        response = self.checkout(items=[{'sku_id': self.ring.pk, 'quantity': 11}])
        self.assertEqual(response.status_code, status.HTTP_409_CONFLICT)
        self.assertEqual(response.data['available'], 10)

        response = self.checkout(discount_code='BOGUS')
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(response.data['reason'], 'NOT_FOUND')

        response = self.checkout(items=[{'sku_id': 99999, 'quantity': 1}])
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

        response = self.checkout(items=[])
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_list_requires_staff(self):
        self.assertEqual(self.client.get('/api/orders/').status_code, status.HTTP_403_FORBIDDEN)

        self.client.force_authenticate(self.staff)
        self.create_order([{'sku_id': self.ring.pk, 'quantity': 1}])
        response = self.client.get('/api/orders/', {'status': 'pending'})

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['count'], 1)
        self.assertEqual(response.data['results'][0]['item_count'], 1)

    def test_ship_and_invalid_transition(self):
        order = self.paid_order([{'sku_id': self.ring.pk, 'quantity': 1}])
        self.client.force_authenticate(self.staff)

        response = self.client.post(f'/api/orders/{order.pk}/ship/', {'tracking_number': 'TRK1'}, format='json')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['outcome'], 'APPLIED')
        self.assertEqual(response.data['order']['status'], Order.Status.SHIPPED)
        self.assertEqual(response.data['order']['history'][-1]['author_name'], 'ops')

        response = self.client.post(f'/api/orders/{order.pk}/return/')
        self.assertEqual(response.status_code, status.HTTP_409_CONFLICT)

        response = self.client.post('/api/orders/99999/deliver/')
        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)

    def test_cancel_paid_order_needs_permission(self):
        """
        Given: A paid order
        When: Staff without cancel_paid_order tries to cancel it, then with it
        Then: 403 first, 200 once the permission is granted
        """
        order = self.paid_order([{'sku_id': self.ring.pk, 'quantity': 1}])
        self.client.force_authenticate(self.staff)

        response = self.client.post(f'/api/orders/{order.pk}/cancel/', {'reason': 'duplicate'}, format='json')
        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)
        self.assertEqual(response.data['outcome'], 'NOT_PERMITTED')

        self.staff.user_permissions.add(Permission.objects.get(codename='cancel_paid_order'))
        self.staff = get_user_model().objects.get(pk=self.staff.pk)
        self.client.force_authenticate(self.staff)

        response = self.client.post(f'/api/orders/{order.pk}/cancel/', {'reason': 'duplicate'}, format='json')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['order']['status'], Order.Status.CANCELLED)

    def test_detail_hides_nothing_from_operators(self):
        order = self.create_order([{'sku_id': self.neck.pk, 'quantity': 5}])
        stock_ledger.adjust(self.neck.pk, -1, 'breakage')
        state_machine.confirm_payment(order.pk, charge_ref='pi_1')
        self.client.force_authenticate(self.staff)

        response = self.client.get(f'/api/orders/{order.pk}/')

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertTrue(response.data['needs_reconciliation'])
        self.assertIn('Insufficient stock', response.data['reconciliation_reason'])
        self.assertEqual(response.data['customer_message'], VERIFYING_MESSAGE)


class ConcurrentConfirmationTestCase(OrderFixtureMixin, TransactionTestCase):
    """
    Concurrent confirmations from separate threads and connections.
    Uses TransactionTestCase for proper multi-threading support. On
    PostgreSQL the ledgers' row locks serialize them, on SQLite the
    database write lock does.
    """

    def run_concurrently(self, *calls):
        results = [None] * len(calls)
        barrier = threading.Barrier(len(calls))

        def run(index, func, args):
            try:
                barrier.wait()
                results[index] = func(*args)
            finally:
                connection.close()

        threads = [
            threading.Thread(target=run, args=(index, func, args))
            for index, (func, args) in enumerate(calls)
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        return results

    def test_last_unit_is_sold_once(self):
        """
        Given: RING-01 has 1 unit and two pending orders want it
        When: Both payments are confirmed at the same time
        Then: Exactly one order is paid; the other stays PENDING
        """
        StockUnit.objects.filter(pk=self.ring.pk).update(inventory=1)
        order_a = self.create_order([{'sku_id': self.ring.pk, 'quantity': 1}])
        order_b = self.create_order([{'sku_id': self.ring.pk, 'quantity': 1}])

        results = self.run_concurrently(
            (state_machine.confirm_payment, (order_a.pk, 'pi_a')),
            (state_machine.confirm_payment, (order_b.pk, 'pi_b')),
        )

        outcomes = sorted(result.outcome.value for result in results)
        self.assertEqual(outcomes, ['APPLIED', 'INSUFFICIENT_STOCK'])
        self.refresh(self.ring)
        self.assertEqual(self.ring.inventory, 0)
        self.assertEqual(Order.objects.filter(payment_status=Order.PaymentStatus.PAID).count(), 1)

    def test_same_order_confirmed_twice(self):
        order = self.create_order([{'sku_id': self.ring.pk, 'quantity': 2}])

        results = self.run_concurrently(
            (state_machine.confirm_payment, (order.pk, 'pi_1')),
            (state_machine.confirm_payment, (order.pk, 'pi_1')),
        )

        outcomes = sorted(result.outcome.value for result in results)
        self.assertEqual(outcomes, ['ALREADY_APPLIED', 'APPLIED'])
        self.refresh(self.ring)
        self.assertEqual(self.ring.inventory, 8)

    def test_discount_cap_under_contention(self):
        self.welcome.usage_cap = 1
        self.welcome.save()
        orders = [
            self.create_order([{'sku_id': self.ring.pk, 'quantity': 1}], discount_code='WELCOME10')
            for _ in range(3)
        ]

        self.run_concurrently(*[
            (state_machine.confirm_payment, (order.pk, f'pi_{order.pk}')) for order in orders
        ])

        self.refresh(self.welcome)
        self.assertEqual(self.welcome.usage_count, 1)
        self.assertEqual(DiscountUsage.objects.count(), 1)
        self.assertEqual(Order.objects.filter(payment_status=Order.PaymentStatus.PAID).count(), 3)

    def test_ledger_never_oversells(self):
        """
        Given: RING-01 has 3 units and five orders want one each
        When: All five commit at the same time
        Then: Exactly three succeed and stock ends at zero, never below
        """
        StockUnit.objects.filter(pk=self.ring.pk).update(inventory=3)
        orders = [self.create_order([{'sku_id': self.ring.pk, 'quantity': 1}]) for _ in range(5)]

        def attempt(order_id):
            try:
                return stock_ledger.commit(self.ring.pk, 1, order_id)
            except InsufficientStock:
                return False

        results = self.run_concurrently(*[(attempt, (order.pk,)) for order in orders])

        self.assertEqual(results.count(True), 3)
        self.refresh(self.ring)
        self.assertEqual(self.ring.inventory, 0)
        self.assertEqual(StockMovement.objects.filter(stock_unit=self.ring).count(), 3)
