"""
Tests for the stock ledger and the operator stock endpoints.

Test Cases:
1. Commit decrements once per order
2. Commit is all-or-nothing on insufficient or inactive stock
3. Release restocks exactly what was committed, once
4. Sold-out units are deactivated and reactivated by the ledger
5. Operator adjustments require a reason and never go below zero
6. Operator API permissions and responses
"""
from django.contrib.auth import get_user_model
from django.db import IntegrityError, transaction
from django.test import TestCase
from rest_framework import status
from rest_framework.test import APIClient

from core.exceptions import InsufficientStock, SkuInactive, SkuNotFound
from inventory import ledger
from inventory.models import Product, StockMovement, StockUnit
from orders.models import Order


def make_order(**kwargs):
    fields = dict(customer_email='ada@example.com', subtotal=1000, total=1000)
    fields.update(kwargs)
    return Order.objects.create(**fields)


class StockLedgerTestCase(TestCase):
    """Test cases for commit, release and adjust."""

    def setUp(self):
        self.product = Product.objects.create(title='Classic Stacking Ring')
        self.ring = StockUnit.objects.create(
            product=self.product, sku='RING-01', size='52', price=4990, inventory=10
        )
        self.order = make_order()

    def test_commit_decrements_stock(self):
        """
        Given: 10 units on hand
        When: An order commits 3
        Then: 7 remain and one COMMIT movement is recorded
        """
        self.assertTrue(ledger.commit(self.ring.pk, 3, self.order.pk))

        self.ring.refresh_from_db()
        self.assertEqual(self.ring.inventory, 7)
        movement = StockMovement.objects.get(stock_unit=self.ring, order=self.order)
        self.assertEqual(movement.kind, StockMovement.Kind.COMMIT)
        self.assertEqual(movement.quantity, -3)

    def test_commit_twice_for_same_order_is_noop(self):
        ledger.commit(self.ring.pk, 3, self.order.pk)

        self.assertFalse(ledger.commit(self.ring.pk, 3, self.order.pk))

        self.ring.refresh_from_db()
        self.assertEqual(self.ring.inventory, 7)
        self.assertEqual(StockMovement.objects.filter(order=self.order).count(), 1)

    def test_commit_insufficient_stock_writes_nothing(self):
        """
        Given: 10 units on hand
        When: Committing 11
        Then: InsufficientStock is raised and stock is unchanged
        """
        with self.assertRaises(InsufficientStock) as context:
            ledger.commit(self.ring.pk, 11, self.order.pk)

        self.assertEqual(context.exception.available, 10)
        self.ring.refresh_from_db()
        self.assertEqual(self.ring.inventory, 10)
        self.assertFalse(StockMovement.objects.exists())

    def test_commit_inactive_unit(self):
        self.ring.is_active = False
        self.ring.save()

        with self.assertRaises(SkuInactive):
            ledger.commit(self.ring.pk, 1, self.order.pk)

    def test_commit_unknown_unit(self):
        with self.assertRaises(SkuNotFound):
            ledger.commit(99999, 1, self.order.pk)

    def test_commit_exact_stock_deactivates_unit(self):
        """
        Test: Selling the last unit takes the SKU off sale.
        """
        ledger.commit(self.ring.pk, 10, self.order.pk)

        self.ring.refresh_from_db()
        self.assertEqual(self.ring.inventory, 0)
        self.assertFalse(self.ring.is_active)
        self.assertIsNotNone(self.ring.sold_out_at)

    def test_sold_out_unit_reports_insufficient_stock(self):
        """
        Given: The ledger took the unit off sale when its last unit sold
        When: Another order tries to commit it
        Then: The error is InsufficientStock with nothing available, not SkuInactive
        """
        ledger.commit(self.ring.pk, 10, self.order.pk)

        with self.assertRaises(InsufficientStock) as context:
            ledger.commit(self.ring.pk, 1, make_order().pk)
        self.assertEqual(context.exception.available, 0)

        with self.assertRaises(InsufficientStock):
            ledger.reserve(self.ring.pk, 1)

    def test_release_restocks_once(self):
        ledger.commit(self.ring.pk, 4, self.order.pk)

        self.assertEqual(ledger.release(self.ring.pk, self.order.pk), 4)
        self.assertEqual(ledger.release(self.ring.pk, self.order.pk), 0)

        self.ring.refresh_from_db()
        self.assertEqual(self.ring.inventory, 10)

    def test_release_without_commit_is_noop(self):
        self.assertEqual(ledger.release(self.ring.pk, self.order.pk), 0)

        self.ring.refresh_from_db()
        self.assertEqual(self.ring.inventory, 10)

    def test_release_reactivates_sold_out_unit(self):
        """
        Given: A unit the ledger deactivated when it sold out
        When: The order that emptied it is released
        Then: The unit is back on sale
        """
        ledger.commit(self.ring.pk, 10, self.order.pk)
        ledger.release(self.ring.pk, self.order.pk)

        self.ring.refresh_from_db()
        self.assertTrue(self.ring.is_active)
        self.assertIsNone(self.ring.sold_out_at)

    def test_release_keeps_manually_deactivated_unit_off(self):
        ledger.commit(self.ring.pk, 2, self.order.pk)
        StockUnit.objects.filter(pk=self.ring.pk).update(is_active=False)

        ledger.release(self.ring.pk, self.order.pk)

        self.ring.refresh_from_db()
        self.assertFalse(self.ring.is_active)

    def test_reserve_checks_without_writing(self):
        self.assertEqual(ledger.reserve(self.ring.pk, 10).pk, self.ring.pk)
        with self.assertRaises(InsufficientStock):
            ledger.reserve(self.ring.pk, 11)

        self.ring.refresh_from_db()
        self.assertEqual(self.ring.inventory, 10)
        self.assertFalse(StockMovement.objects.exists())

    def test_available_quantity(self):
        self.assertEqual(ledger.available_quantity(self.ring.pk), 10)
        StockUnit.objects.filter(pk=self.ring.pk).update(is_active=False)
        self.assertEqual(ledger.available_quantity(self.ring.pk), 0)

    def test_adjust_requires_reason(self):
        with self.assertRaises(ValueError):
            ledger.adjust(self.ring.pk, 5, '  ')
        with self.assertRaises(ValueError):
            ledger.adjust(self.ring.pk, 0, 'recount')

    def test_adjust_below_zero_rejected(self):
        with self.assertRaises(InsufficientStock):
            ledger.adjust(self.ring.pk, -11, 'damaged')

        self.ring.refresh_from_db()
        self.assertEqual(self.ring.inventory, 10)

    def test_adjust_records_movement(self):
        unit = ledger.adjust(self.ring.pk, -10, 'water damage')

        self.assertEqual(unit.inventory, 0)
        self.assertFalse(unit.is_active)
        movement = StockMovement.objects.get(stock_unit=self.ring)
        self.assertEqual(movement.kind, StockMovement.Kind.ADJUST)
        self.assertEqual(movement.reason, 'water damage')
        self.assertIsNone(movement.order_id)

        # Restocking brings the ledger-deactivated unit back
        unit = ledger.adjust(self.ring.pk, 5, 'restock')
        self.assertTrue(unit.is_active)

    def test_database_rejects_negative_inventory(self):
        with self.assertRaises(IntegrityError):
            with transaction.atomic():
                StockUnit.objects.filter(pk=self.ring.pk).update(inventory=-1)


class StockApiTestCase(TestCase):
    """Test cases for the operator stock endpoints."""

    def setUp(self):
        User = get_user_model()
        self.admin = User.objects.create_user('ops', 'ops@example.com', 'pw', is_staff=True)
        self.customer = User.objects.create_user('cust', 'cust@example.com', 'pw')
        self.client = APIClient()
        product = Product.objects.create(title='Pendant Necklace')
        self.unit = StockUnit.objects.create(product=product, sku='NECK-05', price=5900, inventory=3)
        StockUnit.objects.create(product=product, sku='NECK-06', price=5900, inventory=0, is_active=False)

    def test_list_requires_staff(self):
        self.client.force_authenticate(self.customer)

        response = self.client.get('/api/skus/')

        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)

    def test_list_filters(self):
        self.client.force_authenticate(self.admin)

        response = self.client.get('/api/skus/', {'is_active': 'true'})

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        skus = [row['sku'] for row in response.data['results']]
        self.assertEqual(skus, ['NECK-05'])

        response = self.client.get('/api/skus/', {'sold_out': 'true'})
        self.assertEqual([row['sku'] for row in response.data['results']], ['NECK-06'])

    def test_adjust(self):
        """
        Given: An operator
        When: Posting a correction with a reason
        Then: Stock changes and the movement names the operator
        """
        self.client.force_authenticate(self.admin)

        with self.captureOnCommitCallbacks(execute=True):
            response = self.client.post(
                f'/api/skus/{self.unit.pk}/adjust/', {'delta': 2, 'reason': 'recount'}, format='json'
            )

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['inventory'], 5)
        self.assertEqual(StockMovement.objects.get().reason, 'recount (ops)')

    def test_adjust_validation(self):
        self.client.force_authenticate(self.admin)

        response = self.client.post(f'/api/skus/{self.unit.pk}/adjust/', {'delta': 0, 'reason': 'x'}, format='json')
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

        response = self.client.post(f'/api/skus/{self.unit.pk}/adjust/', {'delta': 1}, format='json')
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_adjust_below_zero_conflict(self):
        self.client.force_authenticate(self.admin)

        response = self.client.post(
            f'/api/skus/{self.unit.pk}/adjust/', {'delta': -4, 'reason': 'lost'}, format='json'
        )

        self.assertEqual(response.status_code, status.HTTP_409_CONFLICT)
        self.assertEqual(response.data['available'], 3)

    def test_adjust_unknown_unit(self):
        self.client.force_authenticate(self.admin)

        response = self.client.post('/api/skus/99999/adjust/', {'delta': 1, 'reason': 'x'}, format='json')

        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)
