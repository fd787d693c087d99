"""
Tests for webhook ingestion.

Test Cases:
1. Signature verification over the raw body
2. Anti-replay window
3. Exactly-once application of redelivered events
4. Dispatch of every handled event category
5. Unknown events and unknown orders are acknowledged
6. Dedup record pruning
7. Payments and refunds that arrive after a cancellation
"""
import hashlib
import hmac
import json
import time
from datetime import timedelta
from unittest.mock import patch

from django.core import mail
from django.db import DatabaseError
from django.test import TestCase, override_settings
from django.utils import timezone
from rest_framework import status
from rest_framework.test import APIClient

from core.exceptions import PayloadValidationError
from discounts.models import DiscountCode, DiscountUsage
from inventory.models import Product, StockMovement, StockUnit
from orders import state_machine
from orders.models import Dispute, Order, Refund
from orders.tasks import expire_abandoned_checkouts
from webhooks import dedup, pipeline
from webhooks.events import EventCategory, WebhookEvent
from webhooks.handlers import find_order_id
from webhooks.models import ProcessedEvent

WEBHOOK_URL = '/api/webhooks/stripe/'
SECRET = 'whsec_test_secret'


def sign(payload: str, secret: str = SECRET, timestamp: int = None) -> str:
    timestamp = timestamp or int(time.time())
    signature = hmac.new(
        secret.encode('utf-8'), f'{timestamp}.{payload}'.encode('utf-8'), hashlib.sha256
    ).hexdigest()
    return f't={timestamp},v1={signature}'


def build_event(event_type, obj, event_id='evt_1', created=None):
    return {
        'id': event_id,
        'object': 'event',
        'type': event_type,
        'created': created if created is not None else int(time.time()),
        'livemode': False,
        'data': {'object': obj},
    }


class WebhookTestCase(TestCase):
    """Shared catalog, one pending order and a signed-post helper."""

    def setUp(self):
        self.client = APIClient()
        product = Product.objects.create(title='Classic Stacking Ring')
        self.ring = StockUnit.objects.create(product=product, sku='RING-01', price=4990, inventory=10)
        self.welcome = DiscountCode.objects.create(code='WELCOME10', value=10)
        self.order = state_machine.create_pending_order(
            customer_email='ada@example.com',
            items=[{'sku_id': self.ring.pk, 'quantity': 1}],
            shipping_cost=490,
            discount_code='WELCOME10',
            checkout_session_id='cs_1',
        ).order

    def post_event(self, event, signature=None):
        body = json.dumps(event)
        return self.client.post(
            WEBHOOK_URL,
            data=body,
            content_type='application/json',
            HTTP_STRIPE_SIGNATURE=signature if signature is not None else sign(body),
        )

    def session(self, **overrides):
        obj = {
            'id': 'cs_1',
            'object': 'checkout.session',
            'payment_status': 'paid',
            'payment_intent': 'pi_1',
            'customer': 'cus_1',
            'metadata': {'order_number': self.order.order_number},
        }
        obj.update(overrides)
        return obj

    def pay(self):
        state_machine.confirm_payment(self.order.pk, charge_ref='pi_1')
        self.order.refresh_from_db()


class SignatureTestCase(WebhookTestCase):

    def test_valid_signature_is_accepted(self):
        response = self.post_event(build_event('checkout.session.completed', self.session()))

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data, {'received': True, 'status': 'processed'})

    def test_bad_signature_rejected(self):
        """
        Given: A body signed with another secret
        When: It is delivered
        Then: 400 and no state change
        """
        body = json.dumps(build_event('checkout.session.completed', self.session()))

        response = self.post_event(json.loads(body), signature=sign(body, secret='whsec_other'))

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(response.data['error'], 'invalid_signature')
        self.order.refresh_from_db()
        self.assertEqual(self.order.status, Order.Status.PENDING)
        self.assertFalse(ProcessedEvent.objects.exists())

    def test_missing_signature_rejected(self):
        response = self.post_event(build_event('checkout.session.completed', self.session()), signature='')

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_tampered_body_rejected(self):
        event = build_event('checkout.session.completed', self.session())
        signature = sign(json.dumps(event))
        event['data']['object']['payment_intent'] = 'pi_attacker'

        response = self.post_event(event, signature=signature)

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    @override_settings(STRIPE_WEBHOOK_SECRET='')
    def test_missing_secret_rejects_everything(self):
        response = self.post_event(build_event('checkout.session.completed', self.session()))

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_malformed_body(self):
        body = 'not json'
        response = self.client.post(
            WEBHOOK_URL, data=body, content_type='application/json', HTTP_STRIPE_SIGNATURE=sign(body)
        )

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(response.data['error'], 'malformed')

    def test_missing_data_object(self):
        event = build_event('checkout.session.completed', {})
        del event['data']

        response = self.post_event(event)

        self.assertEqual(response.data['error'], 'malformed')

    def test_storage_failure_returns_500(self):
        with patch('webhooks.views.handle_event', side_effect=DatabaseError('connection lost')):
            response = self.post_event(build_event('checkout.session.completed', self.session()))

        self.assertEqual(response.status_code, status.HTTP_500_INTERNAL_SERVER_ERROR)


class ReplayTestCase(WebhookTestCase):

    def test_expired_event_rejected(self):
        """
        Given: A correctly signed event created 400 seconds ago (window 300s)
        When: It is delivered
        Then: It is rejected as expired and nothing changes
        """
        event = build_event('checkout.session.completed', self.session(), created=int(time.time()) - 400)

        response = self.post_event(event)

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(response.data['error'], 'expired')
        self.order.refresh_from_db()
        self.assertEqual(self.order.payment_status, Order.PaymentStatus.PENDING)
        self.assertFalse(ProcessedEvent.objects.exists())
        self.assertFalse(StockMovement.objects.exists())

    def test_window_boundary(self):
        now = time.time()
        body = json.dumps(build_event('customer.created', {}, created=int(now) - 300))

        result = pipeline.handle_event(body.encode('utf-8'), sign(body), now=int(now))

        self.assertTrue(result.accepted)

    def test_redelivery_applies_once(self):
        """
        Given: checkout.session.completed for the order
        When: The same event is delivered twice
        Then: The order is paid once, stock and discount are counted once
        """
        event = build_event('checkout.session.completed', self.session(), event_id='evt_double')

        with self.captureOnCommitCallbacks(execute=True):
            first = self.post_event(event)
        second = self.post_event(event)

        self.assertEqual(first.data['status'], 'processed')
        self.assertEqual(second.data['status'], 'duplicate')
        self.order.refresh_from_db()
        self.ring.refresh_from_db()
        self.welcome.refresh_from_db()
        self.assertEqual(self.order.payment_status, Order.PaymentStatus.PAID)
        self.assertEqual(self.order.payment_intent_id, 'pi_1')
        self.assertEqual(self.order.gateway_customer_id, 'cus_1')
        self.assertEqual(self.ring.inventory, 9)
        self.assertEqual(StockMovement.objects.filter(order=self.order).count(), 1)
        self.assertEqual(DiscountUsage.objects.filter(order=self.order).count(), 1)
        self.assertEqual(self.welcome.usage_count, 1)
        self.assertEqual(ProcessedEvent.objects.get().outcome, 'APPLIED')

    def test_second_event_for_same_payment(self):
        """
        Test: payment_intent.succeeded after checkout.session.completed is a no-op.
        """
        self.post_event(build_event('checkout.session.completed', self.session(), event_id='evt_a'))
        intent = {'id': 'pi_1', 'object': 'payment_intent', 'metadata': {}}

        response = self.post_event(build_event('payment_intent.succeeded', intent, event_id='evt_b'))

        self.assertEqual(response.data['status'], 'processed')
        self.assertEqual(ProcessedEvent.objects.get(event_id='evt_b').outcome, 'ALREADY_APPLIED')
        self.ring.refresh_from_db()
        self.assertEqual(self.ring.inventory, 9)

    @patch('core.invalidation.publish')
    def test_invalidation_published_after_commit(self, mock_publish):
        with self.captureOnCommitCallbacks(execute=True):
            self.post_event(build_event('checkout.session.completed', self.session()))

        signal = mock_publish.call_args[0][0]
        self.assertIn('order:list', signal)
        self.assertIn(f'stock:sku:{self.ring.pk}', signal)
        self.assertIn('discount:WELCOME10', signal)


class DispatchTestCase(WebhookTestCase):
    """One test per handled category."""

    def test_unknown_type_is_ignored(self):
        response = self.post_event(build_event('customer.created', {'id': 'cus_1'}))

        self.assertEqual(response.data['status'], 'ignored')
        self.assertEqual(ProcessedEvent.objects.get().outcome, 'UNHANDLED')

    def test_unknown_order_is_acknowledged(self):
        session = self.session(id='cs_other', metadata={'order_number': 'ORD-999999'}, payment_intent='pi_x')

        response = self.post_event(build_event('checkout.session.completed', session))

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(ProcessedEvent.objects.get().outcome, 'NOT_FOUND')

    def test_unpaid_session_waits(self):
        response = self.post_event(build_event('checkout.session.completed', self.session(payment_status='unpaid')))

        self.assertEqual(response.data['status'], 'processed')
        self.order.refresh_from_db()
        self.assertEqual(self.order.payment_status, Order.PaymentStatus.PENDING)
        self.assertTrue(self.order.awaiting_payment)
        self.assertEqual(self.order.payment_intent_id, 'pi_1')

    def test_delayed_payment_outlives_abandoned_sweep(self):
        """
        Given: A session completed unpaid, older than the abandoned-checkout threshold
        When: The sweep runs and async_payment_succeeded arrives afterwards
        Then: The order is paid, not cancelled
        """
        self.post_event(build_event(
            'checkout.session.completed', self.session(payment_status='unpaid'), event_id='evt_a'
        ))
        Order.objects.filter(pk=self.order.pk).update(created_at=timezone.now() - timedelta(hours=25))

        self.assertEqual(expire_abandoned_checkouts(), {'expired': 0})
        self.post_event(build_event('checkout.session.async_payment_succeeded', self.session(), event_id='evt_b'))

        self.order.refresh_from_db()
        self.assertEqual(self.order.status, Order.Status.PROCESSING)
        self.assertEqual(self.order.payment_status, Order.PaymentStatus.PAID)

    def test_successful_retry_after_decline_is_held(self):
        """
        Given: payment_intent.payment_failed cancelled the order
        When: The retried card succeeds and checkout.session.completed arrives
        Then: The order is flagged for reconciliation and an operator alerted
        """
        Order.objects.filter(pk=self.order.pk).update(payment_intent_id='pi_1')
        intent = {'id': 'pi_1', 'object': 'payment_intent', 'metadata': {},
                  'last_payment_error': {'code': 'card_declined'}}
        self.post_event(build_event('payment_intent.payment_failed', intent, event_id='evt_a'))

        with self.captureOnCommitCallbacks(execute=True):
            response = self.post_event(build_event('checkout.session.completed', self.session(), event_id='evt_b'))

        self.assertEqual(response.data['status'], 'processed')
        self.assertEqual(ProcessedEvent.objects.get(event_id='evt_b').outcome, 'INVALID_TRANSITION')
        self.order.refresh_from_db()
        self.assertEqual(self.order.status, Order.Status.CANCELLED)
        self.assertTrue(self.order.needs_reconciliation)
        self.assertEqual(mail.outbox[-1].subject, f'[ALERT] Order {self.order.order_number} needs reconciliation')

    def test_async_payment_succeeded(self):
        self.post_event(build_event('checkout.session.async_payment_succeeded', self.session()))

        self.order.refresh_from_db()
        self.assertEqual(self.order.status, Order.Status.PROCESSING)

    def test_async_payment_failed(self):
        self.post_event(build_event('checkout.session.async_payment_failed', self.session()))

        self.order.refresh_from_db()
        self.assertEqual(self.order.status, Order.Status.CANCELLED)
        self.assertEqual(self.order.payment_failure_code, 'async_payment_failed')

    def test_checkout_expired(self):
        self.post_event(build_event('checkout.session.expired', self.session(payment_status='unpaid')))

        self.order.refresh_from_db()
        self.assertEqual(self.order.status, Order.Status.CANCELLED)

    def test_payment_failed(self):
        Order.objects.filter(pk=self.order.pk).update(payment_intent_id='pi_1')
        intent = {
            'id': 'pi_1',
            'object': 'payment_intent',
            'metadata': {},
            'last_payment_error': {'code': 'card_declined', 'decline_code': 'insufficient_funds',
                                   'message': 'Your card has insufficient funds.'},
        }

        self.post_event(build_event('payment_intent.payment_failed', intent))

        self.order.refresh_from_db()
        self.assertEqual(self.order.status, Order.Status.CANCELLED)
        self.assertEqual(self.order.payment_failure_code, 'insufficient_funds')
        self.assertEqual(self.order.payment_failure_message, 'Your card has insufficient funds.')

    def test_charge_refunded(self):
        self.pay()
        charge = {
            'id': 'ch_1',
            'object': 'charge',
            'payment_intent': 'pi_1',
            'amount_refunded': self.order.total,
            'refunds': {'data': [{'id': 're_1', 'amount': self.order.total, 'status': 'succeeded'}]},
        }

        self.post_event(build_event('charge.refunded', charge))

        self.order.refresh_from_db()
        self.ring.refresh_from_db()
        self.assertEqual(self.order.payment_status, Order.PaymentStatus.REFUNDED)
        self.assertEqual(self.order.status, Order.Status.CANCELLED)
        self.assertEqual(self.ring.inventory, 10)

    def test_pending_refund_after_cancel(self):
        self.pay()
        state_machine.cancel(self.order.pk, privileged=True)
        refund = {'id': 're_1', 'object': 'refund', 'payment_intent': 'pi_1',
                  'amount': self.order.total, 'status': 'pending'}

        response = self.post_event(build_event('refund.created', refund))

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.order.refresh_from_db()
        self.assertEqual(self.order.status, Order.Status.CANCELLED)
        self.assertEqual(self.order.payment_status, Order.PaymentStatus.REFUNDED)

    def test_refund_updated_to_failed(self):
        self.pay()
        refund = {'id': 're_1', 'object': 'refund', 'payment_intent': 'pi_1', 'amount': 1000, 'status': 'succeeded'}
        self.post_event(build_event('refund.created', refund, event_id='evt_a'))

        self.post_event(build_event(
            'refund.updated', dict(refund, status='failed', failure_reason='lost_or_stolen_card'), event_id='evt_b'
        ))

        self.order.refresh_from_db()
        self.assertEqual(self.order.payment_status, Order.PaymentStatus.PAID)
        self.assertEqual(Refund.objects.get().status, Refund.Status.FAILED)

    def test_dispute_created_and_closed(self):
        self.pay()
        dispute = {
            'id': 'dp_1', 'object': 'dispute', 'payment_intent': {'id': 'pi_1'},
            'amount': self.order.total, 'reason': 'product_not_received', 'status': 'needs_response',
        }

        self.post_event(build_event('charge.dispute.created', dispute, event_id='evt_a'))
        self.post_event(build_event('charge.dispute.closed', dict(dispute, status='won'), event_id='evt_b'))

        self.assertEqual(Dispute.objects.get().status, 'won')


class EventParsingTestCase(TestCase):

    def test_category(self):
        self.assertEqual(EventCategory.from_type('charge.refunded'), EventCategory.CHARGE_REFUNDED)
        self.assertEqual(EventCategory.from_type('invoice.paid'), EventCategory.UNKNOWN)

    def test_envelope_validation(self):
        with self.assertRaises(PayloadValidationError):
            WebhookEvent.from_payload([])
        with self.assertRaises(PayloadValidationError):
            WebhookEvent.from_payload({'id': 'evt_1', 'type': 'x', 'created': 'yesterday', 'data': {'object': {}}})

        event = WebhookEvent.from_payload(build_event('charge.refunded', {'id': 'ch_1'}))
        self.assertEqual(event.category, EventCategory.CHARGE_REFUNDED)
        self.assertEqual(event.data_object, {'id': 'ch_1'})


class OrderLookupTestCase(WebhookTestCase):

    def test_lookup_order(self):
        """
        Test: Orders are found by number, client reference, session or payment.
        """
        Order.objects.filter(pk=self.order.pk).update(payment_intent_id='pi_9')
        number = self.order.order_number

        self.assertEqual(find_order_id({'metadata': {'order_number': number}}), self.order.pk)
        self.assertEqual(find_order_id({'client_reference_id': number}), self.order.pk)
        self.assertEqual(find_order_id({}, session_id='cs_1'), self.order.pk)
        self.assertEqual(find_order_id({}, payment_intent_id='pi_9'), self.order.pk)
        self.assertIsNone(find_order_id({'metadata': {'order_number': 'ORD-0'}}))


class DedupTestCase(TestCase):

    def test_record_event_claims_once(self):
        event = WebhookEvent(id='evt_1', type='charge.refunded', created=int(time.time()))

        self.assertTrue(dedup.record_event(event))
        self.assertFalse(dedup.record_event(event))
        self.assertTrue(dedup.already_processed('evt_1'))

    @override_settings(PROCESSED_EVENT_RETENTION_SECONDS=3600)
    def test_prune(self):
        ProcessedEvent.objects.create(event_id='evt_old', event_type='x')
        ProcessedEvent.objects.create(event_id='evt_new', event_type='x')
        ProcessedEvent.objects.filter(event_id='evt_old').update(received_at=timezone.now() - timedelta(hours=2))

        self.assertEqual(dedup.prune(), 1)
        self.assertEqual(list(ProcessedEvent.objects.values_list('event_id', flat=True)), ['evt_new'])
