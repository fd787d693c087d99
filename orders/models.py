"""
Order Models - Orders, their item snapshots, audit trail, refunds and disputes.

Order Status Flow:
    PENDING    -> PROCESSING (payment confirmed, stock committed)
    PENDING    -> CANCELLED  (checkout expired, payment failed, cancelled)
    PROCESSING -> SHIPPED    -> DELIVERED
    PROCESSING -> CANCELLED  (privileged, stock released)
    SHIPPED    -> CANCELLED  (privileged, stock released)

DELIVERED and CANCELLED are terminal. All transitions go through
orders.state_machine; nothing else writes status fields.
"""
from django.core.validators import MinValueValidator
from django.db import models
from django.db.models import F, Q
from django.utils import timezone

ORDER_NUMBER_OFFSET = 1000

VERIFYING_MESSAGE = (
    "We're verifying your order. We will email you as soon as it is confirmed."
)


class ActiveOrderManager(models.Manager):
    """Hides soft-deleted orders."""

    def get_queryset(self):
        return super().get_queryset().filter(deleted_at__isnull=True)


class Order(models.Model):
    """
    Customer order with payment and fulfillment tracking.

    Monetary fields are integer minor units. ``total`` is computed once
    when the order is created and the database rejects any row where
    total != subtotal - discount_amount + shipping_cost.
    """

    class Status(models.TextChoices):
        PENDING = 'PENDING', 'Pending'
        PROCESSING = 'PROCESSING', 'Processing'
        SHIPPED = 'SHIPPED', 'Shipped'
        DELIVERED = 'DELIVERED', 'Delivered'
        CANCELLED = 'CANCELLED', 'Cancelled'

    class PaymentStatus(models.TextChoices):
        PENDING = 'PENDING', 'Pending'
        PAID = 'PAID', 'Paid'
        FAILED = 'FAILED', 'Failed'
        PARTIALLY_REFUNDED = 'PARTIALLY_REFUNDED', 'Partially refunded'
        REFUNDED = 'REFUNDED', 'Refunded'

    class FulfillmentStatus(models.TextChoices):
        UNFULFILLED = 'UNFULFILLED', 'Unfulfilled'
        PROCESSING = 'PROCESSING', 'Processing'
        SHIPPED = 'SHIPPED', 'Shipped'
        DELIVERED = 'DELIVERED', 'Delivered'
        RETURNED = 'RETURNED', 'Returned'

    ALLOWED_TRANSITIONS = {
        Status.PENDING: {Status.PROCESSING, Status.CANCELLED},
        Status.PROCESSING: {Status.SHIPPED, Status.CANCELLED},
        Status.SHIPPED: {Status.DELIVERED, Status.CANCELLED},
        Status.DELIVERED: set(),
        Status.CANCELLED: set(),
    }

    order_number = models.CharField(
        max_length=32,
        unique=True,
        null=True,
        blank=True,
        help_text="Human readable number, assigned on first save"
    )
    user_id = models.CharField(
        max_length=64,
        blank=True,
        default='',
        db_index=True,
        help_text="External customer id, empty for guest checkout"
    )

    # Customer snapshot
    customer_email = models.EmailField()
    customer_name = models.CharField(max_length=200, blank=True, default='')

    # Shipping snapshot
    shipping_first_name = models.CharField(max_length=100, blank=True, default='')
    shipping_last_name = models.CharField(max_length=100, blank=True, default='')
    shipping_address1 = models.CharField(max_length=255, blank=True, default='')
    shipping_address2 = models.CharField(max_length=255, blank=True, default='')
    shipping_postal_code = models.CharField(max_length=20, blank=True, default='')
    shipping_city = models.CharField(max_length=100, blank=True, default='')
    shipping_country = models.CharField(max_length=2, blank=True, default='')
    shipping_phone = models.CharField(max_length=30, blank=True, default='')
    shipping_method = models.CharField(max_length=50, blank=True, default='')

    # Money, in minor units
    subtotal = models.PositiveIntegerField(default=0)
    discount_amount = models.PositiveIntegerField(default=0)
    shipping_cost = models.PositiveIntegerField(default=0)
    total = models.IntegerField(default=0)
    currency = models.CharField(max_length=3, default='EUR')
    discount_code = models.ForeignKey(
        'discounts.DiscountCode',
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name='orders'
    )

    status = models.CharField(
        max_length=20,
        choices=Status.choices,
        default=Status.PENDING,
        db_index=True
    )
    payment_status = models.CharField(
        max_length=20,
        choices=PaymentStatus.choices,
        default=PaymentStatus.PENDING,
        db_index=True
    )
    fulfillment_status = models.CharField(
        max_length=20,
        choices=FulfillmentStatus.choices,
        default=FulfillmentStatus.UNFULFILLED
    )

    # Payment gateway references
    checkout_session_id = models.CharField(max_length=255, blank=True, default='', db_index=True)
    payment_intent_id = models.CharField(max_length=255, blank=True, default='', db_index=True)
    invoice_id = models.CharField(max_length=255, blank=True, default='')
    gateway_customer_id = models.CharField(max_length=255, blank=True, default='')
    payment_failure_code = models.CharField(max_length=100, blank=True, default='')
    payment_failure_message = models.TextField(blank=True, default='')

    # Shipment tracking
    tracking_number = models.CharField(max_length=100, blank=True, default='')
    tracking_url = models.URLField(blank=True, default='')
    carrier = models.CharField(max_length=50, blank=True, default='')

    needs_reconciliation = models.BooleanField(
        default=False,
        db_index=True,
        help_text="Held for operator review, e.g. paid but out of stock"
    )
    reconciliation_reason = models.TextField(blank=True, default='')
    awaiting_payment = models.BooleanField(
        default=False,
        help_text="Checkout completed with a delayed payment method that has not settled yet"
    )

    deleted_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True, db_index=True)
    updated_at = models.DateTimeField(auto_now=True)
    paid_at = models.DateTimeField(null=True, blank=True)
    shipped_at = models.DateTimeField(null=True, blank=True)
    delivered_at = models.DateTimeField(null=True, blank=True)
    cancelled_at = models.DateTimeField(null=True, blank=True)

    objects = ActiveOrderManager()
    all_objects = models.Manager()

    class Meta:
        verbose_name = 'Order'
        verbose_name_plural = 'Orders'
        ordering = ['-created_at']
        base_manager_name = 'all_objects'
        permissions = [
            ('cancel_paid_order', 'Can cancel orders that are already paid'),
        ]
        constraints = [
            models.CheckConstraint(
                condition=Q(total=F('subtotal') - F('discount_amount') + F('shipping_cost')),
                name='order_total_matches_components'
            ),
            models.CheckConstraint(
                condition=Q(discount_amount__lte=F('subtotal')),
                name='order_discount_within_subtotal'
            ),
        ]
        indexes = [
            models.Index(fields=['status', 'created_at']),
            models.Index(fields=['payment_status', 'created_at']),
        ]

    def __str__(self):
        return f"Order #{self.order_number} ({self.status}/{self.payment_status})"

    def save(self, *args, **kwargs):
        super().save(*args, **kwargs)
        if not self.order_number:
            self.order_number = f"ORD-{ORDER_NUMBER_OFFSET + self.pk}"
            Order.all_objects.filter(pk=self.pk).update(order_number=self.order_number)

    def delete(self, using=None, keep_parents=False):
        """Orders are never removed, only hidden."""
        self.deleted_at = timezone.now()
        self.save(update_fields=['deleted_at', 'updated_at'])
        return 0, {}

    def can_transition_to(self, target: str) -> bool:
        return target in self.ALLOWED_TRANSITIONS.get(self.status, set())

    @property
    def is_terminal(self) -> bool:
        return not self.ALLOWED_TRANSITIONS.get(self.status)

    @property
    def has_shipped(self) -> bool:
        return self.fulfillment_status in (
            self.FulfillmentStatus.SHIPPED,
            self.FulfillmentStatus.DELIVERED,
            self.FulfillmentStatus.RETURNED,
        )

    @property
    def customer_message(self):
        """What the storefront shows instead of internal reconciliation details."""
        if self.needs_reconciliation:
            return VERIFYING_MESSAGE
        return None

    @property
    def shipping_name(self) -> str:
        return f"{self.shipping_first_name} {self.shipping_last_name}".strip()


class OrderItem(models.Model):
    """
    Immutable snapshot of a purchased stock unit.

    Product and variant details are copied at checkout so later catalog
    edits never change past orders. The stock unit FK is kept for the
    ledger and protected from deletion.
    """
    order = models.ForeignKey(
        Order,
        on_delete=models.CASCADE,
        related_name='items'
    )
    stock_unit = models.ForeignKey(
        'inventory.StockUnit',
        on_delete=models.PROTECT,
        related_name='order_items'
    )
    product_title = models.CharField(max_length=200)
    sku_code = models.CharField(max_length=64)
    sku_color = models.CharField(max_length=50, blank=True, default='')
    sku_material = models.CharField(max_length=50, blank=True, default='')
    sku_size = models.CharField(max_length=50, blank=True, default='')
    unit_price = models.PositiveIntegerField(help_text="Price per unit at time of order, minor units")
    quantity = models.PositiveIntegerField(validators=[MinValueValidator(1)])
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        verbose_name = 'Order Item'
        verbose_name_plural = 'Order Items'
        ordering = ['id']

    def __str__(self):
        return f"{self.quantity}x {self.product_title} [{self.sku_code}]"

    @property
    def line_total(self) -> int:
        return self.quantity * self.unit_price


class OrderHistory(models.Model):
    """Audit trail: one row per transition or notable event on an order."""

    class Action(models.TextChoices):
        CREATED = 'CREATED', 'Created'
        AWAITING_PAYMENT = 'AWAITING_PAYMENT', 'Awaiting payment'
        PAYMENT_CONFIRMED = 'PAYMENT_CONFIRMED', 'Payment confirmed'
        PAYMENT_FAILED = 'PAYMENT_FAILED', 'Payment failed'
        CHECKOUT_EXPIRED = 'CHECKOUT_EXPIRED', 'Checkout expired'
        SHIPPED = 'SHIPPED', 'Shipped'
        DELIVERED = 'DELIVERED', 'Delivered'
        CANCELLED = 'CANCELLED', 'Cancelled'
        RETURNED = 'RETURNED', 'Returned'
        REFUND_UPDATED = 'REFUND_UPDATED', 'Refund updated'
        REFUND_FAILED = 'REFUND_FAILED', 'Refund failed'
        DISPUTE_OPENED = 'DISPUTE_OPENED', 'Dispute opened'
        DISPUTE_CLOSED = 'DISPUTE_CLOSED', 'Dispute closed'
        RECONCILIATION = 'RECONCILIATION', 'Needs reconciliation'

    class Source(models.TextChoices):
        WEBHOOK = 'WEBHOOK', 'Webhook'
        ADMIN = 'ADMIN', 'Admin'
        SYSTEM = 'SYSTEM', 'System'
        CUSTOMER = 'CUSTOMER', 'Customer'

    order = models.ForeignKey(
        Order,
        on_delete=models.CASCADE,
        related_name='history'
    )
    action = models.CharField(max_length=30, choices=Action.choices)
    previous_status = models.CharField(max_length=20, blank=True, default='')
    new_status = models.CharField(max_length=20, blank=True, default='')
    payment_status = models.CharField(max_length=20, blank=True, default='')
    fulfillment_status = models.CharField(max_length=20, blank=True, default='')
    note = models.TextField(blank=True, default='')
    metadata = models.JSONField(default=dict, blank=True)
    author_name = models.CharField(max_length=150, blank=True, default='')
    source = models.CharField(max_length=10, choices=Source.choices, default=Source.SYSTEM)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        verbose_name = 'Order History'
        verbose_name_plural = 'Order History'
        ordering = ['created_at', 'id']

    def __str__(self):
        return f"{self.order_id}: {self.action} {self.previous_status}->{self.new_status}"


class Refund(models.Model):
    """Refund issued through the payment gateway, upserted from webhooks."""

    class Status(models.TextChoices):
        PENDING = 'PENDING', 'Pending'
        COMPLETED = 'COMPLETED', 'Completed'
        FAILED = 'FAILED', 'Failed'
        CANCELLED = 'CANCELLED', 'Cancelled'

    gateway_refund_id = models.CharField(max_length=255, unique=True)
    order = models.ForeignKey(
        Order,
        on_delete=models.PROTECT,
        related_name='refunds'
    )
    amount = models.PositiveIntegerField(help_text="Refunded amount in minor units")
    status = models.CharField(max_length=20, choices=Status.choices, default=Status.PENDING)
    reason = models.CharField(max_length=100, blank=True, default='')
    failure_reason = models.CharField(max_length=255, blank=True, default='')
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        verbose_name = 'Refund'
        verbose_name_plural = 'Refunds'
        ordering = ['-created_at']

    def __str__(self):
        return f"{self.gateway_refund_id}: {self.amount} ({self.status})"


class Dispute(models.Model):
    """Chargeback opened by the customer's bank."""

    gateway_dispute_id = models.CharField(max_length=255, unique=True)
    order = models.ForeignKey(
        Order,
        on_delete=models.PROTECT,
        related_name='disputes'
    )
    amount = models.PositiveIntegerField()
    reason = models.CharField(max_length=100, blank=True, default='')
    status = models.CharField(max_length=50, help_text="Gateway dispute status")
    due_by = models.DateTimeField(null=True, blank=True, help_text="Evidence deadline")
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        verbose_name = 'Dispute'
        verbose_name_plural = 'Disputes'
        ordering = ['-created_at']

    def __str__(self):
        return f"{self.gateway_dispute_id}: {self.amount} ({self.status})"

    @property
    def is_closed(self) -> bool:
        return self.status in ('won', 'lost', 'warning_closed')
