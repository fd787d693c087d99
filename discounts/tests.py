"""
Tests for discount validation and redemption accounting.

Test Cases:
1. Validation rules in order (existence, activity, window, minimum, caps)
2. Percentage and fixed amounts
3. Redemption is counted once per order and never passes the cap
4. Reversal voids the usage and frees the slot
5. Validate endpoint
6. Usage rows cannot be added or deleted from the admin
"""
from datetime import timedelta

from django.contrib import admin
from django.contrib.auth import get_user_model
from django.db import IntegrityError, transaction
from django.test import RequestFactory, TestCase
from django.utils import timezone
from rest_framework import status
from rest_framework.test import APIClient

from discounts import ledger
from discounts.admin import DiscountUsageAdmin
from discounts.ledger import AppliedDiscount, Rejection, RejectionReason, RedemptionStatus
from discounts.models import DiscountCode, DiscountUsage
from orders.models import Order


def make_order(**kwargs):
    fields = dict(customer_email='ada@example.com', subtotal=5000, total=5000)
    fields.update(kwargs)
    return Order.objects.create(**fields)


class DiscountValidationTestCase(TestCase):
    """Test cases for ledger.validate."""

    def setUp(self):
        self.now = timezone.now()
        self.welcome = DiscountCode.objects.create(
            code='welcome10', discount_type=DiscountCode.DiscountType.PERCENTAGE, value=10
        )

    def test_code_is_stored_upper_case(self):
        self.assertEqual(self.welcome.code, 'WELCOME10')

    def test_valid_percentage_code(self):
        """
        Given: A 10% code
        When: Validating a 4999 subtotal in lower case
        Then: The floored amount 499 is returned
        """
        result = ledger.validate(' welcome10 ', 4999)

        self.assertIsInstance(result, AppliedDiscount)
        self.assertEqual(result.code, 'WELCOME10')
        self.assertEqual(result.amount, 499)

    def test_fixed_amount_never_exceeds_subtotal(self):
        DiscountCode.objects.create(code='TENOFF', discount_type=DiscountCode.DiscountType.FIXED_AMOUNT, value=1000)

        self.assertEqual(ledger.validate('TENOFF', 600).amount, 600)
        self.assertEqual(ledger.validate('TENOFF', 5000).amount, 1000)

    def assertRejected(self, result, reason):
        self.assertIsInstance(result, Rejection)
        self.assertEqual(result.reason, reason)
        self.assertTrue(result.message)

    def test_unknown_code(self):
        self.assertRejected(ledger.validate('NOPE', 5000), RejectionReason.NOT_FOUND)

    def test_inactive_code(self):
        self.welcome.is_active = False
        self.welcome.save()

        self.assertRejected(ledger.validate('WELCOME10', 5000), RejectionReason.INACTIVE)

    def test_window(self):
        DiscountCode.objects.create(code='LATER', value=5, starts_at=self.now + timedelta(days=1))
        DiscountCode.objects.create(code='OVER', value=5, ends_at=self.now - timedelta(days=1))

        self.assertRejected(ledger.validate('LATER', 5000, now=self.now), RejectionReason.NOT_STARTED)
        self.assertRejected(ledger.validate('OVER', 5000, now=self.now), RejectionReason.EXPIRED)

    def test_minimum_subtotal(self):
        DiscountCode.objects.create(code='SUMMER5', value=500, minimum_subtotal=3000,
                                    discount_type=DiscountCode.DiscountType.FIXED_AMOUNT)

        self.assertRejected(ledger.validate('SUMMER5', 2999), RejectionReason.BELOW_MINIMUM)
        self.assertIsInstance(ledger.validate('SUMMER5', 3000), AppliedDiscount)

    def test_cap_reached(self):
        DiscountCode.objects.create(code='VIP20', value=20, usage_cap=5, usage_count=5)

        self.assertRejected(ledger.validate('VIP20', 5000), RejectionReason.CAP_REACHED)

    def test_per_user_cap(self):
        """
        Given: A once-per-customer code already used by customer 42
        When: Customer 42 validates it again
        Then: It is rejected for them but not for another customer
        """
        self.welcome.per_user_cap = 1
        self.welcome.save()
        ledger.redeem('WELCOME10', make_order(user_id='42').pk, 500, user_id='42')

        self.assertRejected(ledger.validate('WELCOME10', 5000, user_id='42'), RejectionReason.PER_USER_CAP_REACHED)
        self.assertIsInstance(ledger.validate('WELCOME10', 5000, user_id='7'), AppliedDiscount)


class DiscountRedemptionTestCase(TestCase):
    """Test cases for redeem and reverse."""

    def setUp(self):
        self.discount = DiscountCode.objects.create(code='VIP20', value=20, usage_cap=2)
        self.order = make_order(discount_code=self.discount, discount_amount=1000, total=4000)

    def test_redeem_counts_once(self):
        first = ledger.redeem('vip20', self.order.pk, 1000)
        second = ledger.redeem('VIP20', self.order.pk, 1000)

        self.assertEqual(first.status, RedemptionStatus.REDEEMED)
        self.assertEqual(second.status, RedemptionStatus.ALREADY_REDEEMED)
        self.assertTrue(second.ok)
        self.discount.refresh_from_db()
        self.assertEqual(self.discount.usage_count, 1)
        self.assertEqual(DiscountUsage.objects.count(), 1)

    def test_cap_is_never_exceeded(self):
        """
        Given: A code capped at 2 redemptions
        When: Three orders redeem it
        Then: The third gets CAP_REACHED and the counter stays at 2
        """
        results = [ledger.redeem('VIP20', make_order().pk, 1000) for _ in range(3)]

        self.assertEqual(
            [r.status for r in results],
            [RedemptionStatus.REDEEMED, RedemptionStatus.REDEEMED, RedemptionStatus.CAP_REACHED]
        )
        self.assertFalse(results[2].ok)
        self.discount.refresh_from_db()
        self.assertEqual(self.discount.usage_count, 2)
        self.assertEqual(DiscountUsage.objects.count(), 2)

    def test_redeem_unknown_code(self):
        self.assertEqual(ledger.redeem('GHOST', self.order.pk, 100).status, RedemptionStatus.NOT_FOUND)

    def test_reverse_voids_usage_once(self):
        ledger.redeem('VIP20', self.order.pk, 1000)

        self.assertTrue(ledger.reverse('VIP20', self.order.pk))
        self.assertFalse(ledger.reverse('VIP20', self.order.pk))

        self.discount.refresh_from_db()
        self.assertEqual(self.discount.usage_count, 0)
        usage = DiscountUsage.objects.get()
        self.assertFalse(usage.is_active)

    def test_redeem_after_reverse_reuses_row(self):
        ledger.redeem('VIP20', self.order.pk, 1000)
        ledger.reverse('VIP20', self.order.pk)

        result = ledger.redeem('VIP20', self.order.pk, 800)

        self.assertEqual(result.status, RedemptionStatus.REDEEMED)
        usage = DiscountUsage.objects.get()
        self.assertTrue(usage.is_active)
        self.assertEqual(usage.amount_applied, 800)
        self.discount.refresh_from_db()
        self.assertEqual(self.discount.usage_count, 1)

    def test_database_rejects_count_over_cap(self):
        with self.assertRaises(IntegrityError):
            with transaction.atomic():
                DiscountCode.objects.filter(pk=self.discount.pk).update(usage_count=3)


class DiscountApiTestCase(TestCase):

    def setUp(self):
        self.client = APIClient()
        DiscountCode.objects.create(code='WELCOME10', value=10)

    def test_validate_accepts(self):
        response = self.client.post('/api/discounts/validate/', {'code': 'welcome10', 'subtotal': 5000}, format='json')

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertTrue(response.data['valid'])
        self.assertEqual(response.data['amount'], 500)
        self.assertEqual(response.data['subtotal_after_discount'], 4500)

    def test_validate_rejects_with_reason(self):
        response = self.client.post('/api/discounts/validate/', {'code': 'NOPE', 'subtotal': 5000}, format='json')

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertFalse(response.data['valid'])
        self.assertEqual(response.data['reason'], 'NOT_FOUND')

    def test_validate_malformed(self):
        response = self.client.post('/api/discounts/validate/', {'subtotal': -1}, format='json')

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)


class DiscountUsageAdminTestCase(TestCase):

    def test_usage_rows_are_append_only(self):
        """
        Given: A superuser in the admin
        When: Looking at a redemption row
        Then: It can be neither deleted nor added by hand
        """
        discount = DiscountCode.objects.create(code='VIP20', value=20)
        ledger.redeem('VIP20', make_order().pk, 1000)
        usage = DiscountUsage.objects.get()
        request = RequestFactory().get('/admin/discounts/discountusage/')
        request.user = get_user_model().objects.create_superuser('root', 'root@example.com', 'pw')
        model_admin = DiscountUsageAdmin(DiscountUsage, admin.site)

        self.assertFalse(model_admin.has_delete_permission(request, usage))
        self.assertFalse(model_admin.has_add_permission(request))
        self.assertNotIn('delete_selected', model_admin.get_actions(request))
        discount.refresh_from_db()
        self.assertEqual(discount.usage_count, 1)
