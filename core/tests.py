"""
Tests for shared infrastructure.

Test Cases:
1. Cache invalidation topics and publishing
2. Bounded retry on ledger conflicts
3. Redis-backed rate limiting
4. Lazy Redis client
"""
import json
from unittest.mock import MagicMock, patch

import redis
from django.db import OperationalError
from django.test import RequestFactory, TestCase, override_settings
from rest_framework import permissions
from rest_framework.response import Response
from rest_framework.views import APIView

from core import invalidation
from core.concurrency import is_transient, retry_on_conflict
from core.exceptions import ConcurrencyConflict
from core.invalidation import CacheInvalidation
from core.rate_limiting import RateLimitMixin, get_client_ip
from core.redis_client import get_redis_client, reset_redis_client


class StubOrder:
    def __init__(self, order_number, user_id=''):
        self.order_number = order_number
        self.user_id = user_id


class CacheInvalidationTestCase(TestCase):
    """Test cases for invalidation topics."""

    def test_order_topics(self):
        """
        Given: An order placed by a known customer
        When: Building its topics
        Then: Lists, the order page, admin counters and the customer's history are stale
        """
        signal = invalidation.for_order(StubOrder('ORD-1001', user_id='42'))

        self.assertEqual(signal.sorted(), [
            'admin:badges', 'admin:dashboard', 'order:ORD-1001', 'order:list', 'user:42:orders'
        ])

    def test_guest_order_has_no_user_topic(self):
        signal = invalidation.for_order(StubOrder('ORD-1002'))

        self.assertFalse(any(topic.startswith('user:') for topic in signal.topics))

    def test_union_and_empty(self):
        """
        Test: Signals combine with | and the empty signal is falsy.
        """
        combined = invalidation.for_stock_units([3, 1]) | invalidation.for_discount('WELCOME10')

        self.assertIn('stock:list', combined)
        self.assertIn('stock:sku:1', combined)
        self.assertIn('stock:sku:3', combined)
        self.assertIn('discount:WELCOME10', combined)
        self.assertFalse(invalidation.NONE)
        self.assertFalse(invalidation.for_stock_units([]))
        self.assertEqual(invalidation.NONE | combined, combined)

    @patch('core.invalidation.get_redis_client')
    def test_publish_sends_sorted_topics(self, mock_client):
        client = MagicMock()
        mock_client.return_value = client

        published = invalidation.publish(CacheInvalidation.of('stock:list', 'order:list'))

        self.assertTrue(published)
        channel, message = client.publish.call_args[0]
        self.assertEqual(channel, 'cache-invalidation')
        self.assertEqual(json.loads(message), {'topics': ['order:list', 'stock:list']})

    @patch('core.invalidation.get_redis_client')
    def test_publish_failure_is_not_raised(self, mock_client):
        """
        Given: Redis rejects the publish
        When: Publishing after commit
        Then: False is returned and nothing is raised
        """
        client = MagicMock()
        client.publish.side_effect = redis.ConnectionError('down')
        mock_client.return_value = client

        self.assertFalse(invalidation.publish(CacheInvalidation.of('order:list')))

    @patch('core.invalidation.get_redis_client', return_value=None)
    def test_publish_without_redis(self, mock_client):
        self.assertFalse(invalidation.publish(CacheInvalidation.of('order:list')))
        self.assertTrue(invalidation.publish(invalidation.NONE))

    @patch('core.invalidation.publish')
    def test_publish_on_commit_waits_for_commit(self, mock_publish):
        signal = CacheInvalidation.of('order:list')

        with self.captureOnCommitCallbacks(execute=True) as callbacks:
            invalidation.publish_on_commit(signal)
            mock_publish.assert_not_called()

        self.assertEqual(len(callbacks), 1)
        mock_publish.assert_called_once_with(signal)

    @patch('core.invalidation.publish')
    def test_publish_on_commit_skips_empty_signal(self, mock_publish):
        with self.captureOnCommitCallbacks(execute=True) as callbacks:
            invalidation.publish_on_commit(invalidation.NONE)

        self.assertEqual(callbacks, [])


@override_settings(LEDGER_CONFLICT_RETRIES=3)
class RetryOnConflictTestCase(TestCase):
    """Test cases for the bounded retry decorator."""

    def test_retries_until_success(self):
        """
        Given: A function that loses two races
        When: Wrapped with retry_on_conflict
        Then: The third attempt's result is returned
        """
        calls = []

        @retry_on_conflict
        def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise ConcurrencyConflict('lost race')
            return 'done'

        self.assertEqual(flaky(), 'done')
        self.assertEqual(len(calls), 3)

    def test_gives_up_after_attempts(self):
        calls = []

        @retry_on_conflict(attempts=2)
        def always_conflicts():
            calls.append(1)
            raise ConcurrencyConflict('lost race')

        with self.assertRaises(ConcurrencyConflict):
            always_conflicts()
        self.assertEqual(len(calls), 2)

    def test_transient_operational_error_is_retried(self):
        calls = []

        @retry_on_conflict
        def deadlocks_once():
            calls.append(1)
            if len(calls) == 1:
                raise OperationalError('deadlock detected')
            return len(calls)

        self.assertEqual(deadlocks_once(), 2)

    def test_other_operational_errors_propagate(self):
        """
        Test: Storage errors that are not lock conflicts are not retried.
        """
        calls = []

        @retry_on_conflict
        def broken():
            calls.append(1)
            raise OperationalError('no such table: orders_order')

        with self.assertRaises(OperationalError):
            broken()
        self.assertEqual(len(calls), 1)

    def test_is_transient(self):
        self.assertTrue(is_transient(OperationalError('database is locked')))
        self.assertTrue(is_transient(OperationalError('could not serialize access')))
        self.assertFalse(is_transient(OperationalError('connection refused')))


class PingView(RateLimitMixin, APIView):
    permission_classes = [permissions.AllowAny]
    rate_limit_max_requests = 2
    rate_limit_window_seconds = 60

    def get(self, request):
        return Response({'ok': True})


@override_settings(RATE_LIMIT_ENABLED=True)
class RateLimitTestCase(TestCase):
    """Test cases for the fixed-window rate limiter."""

    def setUp(self):
        self.factory = RequestFactory()
        self.view = PingView.as_view()
        self.client_mock = MagicMock()
        self.client_mock.ttl.return_value = 42
        patcher = patch('core.rate_limiting.get_redis_client', return_value=self.client_mock)
        patcher.start()
        self.addCleanup(patcher.stop)

    def test_first_request_starts_window(self):
        self.client_mock.incr.return_value = 1

        response = self.view(self.factory.get('/ping/', REMOTE_ADDR='10.0.0.1'))

        self.assertEqual(response.status_code, 200)
        self.client_mock.incr.assert_called_once_with('rate_limit:PingView:10.0.0.1')
        self.client_mock.expire.assert_called_once_with('rate_limit:PingView:10.0.0.1', 60)
        self.assertEqual(response['X-RateLimit-Remaining'], '1')

    def test_over_limit_returns_429(self):
        """
        Given: The client already used its window
        When: Sending another request
        Then: 429 with Retry-After is returned and the view never runs
        """
        self.client_mock.incr.return_value = 3

        response = self.view(self.factory.get('/ping/'))

        self.assertEqual(response.status_code, 429)
        self.assertEqual(response['Retry-After'], '42')
        self.assertEqual(json.loads(response.content)['error'], 'Rate limit exceeded')

    def test_redis_error_fails_open(self):
        self.client_mock.incr.side_effect = redis.RedisError('down')

        response = self.view(self.factory.get('/ping/'))

        self.assertEqual(response.status_code, 200)

    @override_settings(RATE_LIMIT_ENABLED=False)
    def test_disabled(self):
        response = self.view(self.factory.get('/ping/'))

        self.assertEqual(response.status_code, 200)
        self.client_mock.incr.assert_not_called()

    def test_client_ip_prefers_forwarded_header(self):
        request = self.factory.get('/ping/', HTTP_X_FORWARDED_FOR='203.0.113.7, 10.0.0.1')

        self.assertEqual(get_client_ip(request), '203.0.113.7')


class RedisClientTestCase(TestCase):

    def setUp(self):
        reset_redis_client()
        self.addCleanup(reset_redis_client)

    @override_settings(REDIS_URL='')
    def test_no_url_disables_redis(self):
        self.assertIsNone(get_redis_client())

    @override_settings(REDIS_URL='redis://localhost:6399/0')
    @patch('core.redis_client.redis.Redis.from_url')
    def test_unreachable_server_disables_redis(self, mock_from_url):
        mock_from_url.return_value.ping.side_effect = redis.ConnectionError('refused')

        self.assertIsNone(get_redis_client())
        # Not retried on every call
        self.assertIsNone(get_redis_client())
        mock_from_url.assert_called_once()

    @override_settings(REDIS_URL='redis://localhost:6379/1')
    @patch('core.redis_client.redis.Redis.from_url')
    def test_client_is_cached(self, mock_from_url):
        first = get_redis_client()

        self.assertIs(first, mock_from_url.return_value)
        self.assertIs(get_redis_client(), first)
