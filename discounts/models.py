"""
Discount Models - Discount codes and their redemption ledger.

Models:
    - DiscountCode: A promotional code with its rules and usage counter
    - DiscountUsage: One redemption of a code by an order
"""
from django.core.validators import MinValueValidator
from django.db import models
from django.db.models import Q


class DiscountCode(models.Model):
    """
    Promotional code applied at checkout.

    ``usage_count`` is denormalized from active (non-voided) usages and is
    only changed by discounts.ledger with conditional updates, which keeps
    it from ever passing ``usage_cap``.
    """

    class DiscountType(models.TextChoices):
        PERCENTAGE = 'PERCENTAGE', 'Percentage'
        FIXED_AMOUNT = 'FIXED_AMOUNT', 'Fixed amount'

    code = models.CharField(
        max_length=50,
        unique=True,
        help_text="Code entered by the customer, stored upper-case"
    )
    description = models.CharField(max_length=255, blank=True, default='')
    discount_type = models.CharField(
        max_length=20,
        choices=DiscountType.choices,
        default=DiscountType.PERCENTAGE
    )
    value = models.PositiveIntegerField(
        validators=[MinValueValidator(1)],
        help_text="Percent off (1-100) or amount off in minor units"
    )
    starts_at = models.DateTimeField(null=True, blank=True)
    ends_at = models.DateTimeField(null=True, blank=True)
    usage_cap = models.PositiveIntegerField(
        null=True,
        blank=True,
        help_text="Maximum redemptions overall, empty for unlimited"
    )
    per_user_cap = models.PositiveIntegerField(
        null=True,
        blank=True,
        help_text="Maximum redemptions per customer, empty for unlimited"
    )
    minimum_subtotal = models.PositiveIntegerField(
        default=0,
        help_text="Minimum order subtotal in minor units"
    )
    usage_count = models.PositiveIntegerField(default=0)
    is_active = models.BooleanField(default=True, db_index=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        verbose_name = 'Discount Code'
        verbose_name_plural = 'Discount Codes'
        ordering = ['code']
        constraints = [
            models.CheckConstraint(
                condition=Q(usage_cap__isnull=True) | Q(usage_count__lte=models.F('usage_cap')),
                name='discount_usage_within_cap'
            ),
        ]

    def __str__(self):
        return f"{self.code} ({self.usage_count}/{self.usage_cap or '∞'})"

    def save(self, *args, **kwargs):
        self.code = self.code.strip().upper()
        super().save(*args, **kwargs)

    @property
    def is_cap_reached(self) -> bool:
        return self.usage_cap is not None and self.usage_count >= self.usage_cap

    def amount_for(self, subtotal: int) -> int:
        """Discount in minor units for a subtotal, never more than the subtotal."""
        if self.discount_type == self.DiscountType.PERCENTAGE:
            amount = subtotal * min(self.value, 100) // 100
        else:
            amount = self.value
        return min(amount, subtotal)


class DiscountUsage(models.Model):
    """
    Redemption of a discount code by one order.

    Reversal voids the row instead of deleting it, keeping a trail of
    what was granted and taken back.
    """
    discount = models.ForeignKey(
        DiscountCode,
        on_delete=models.PROTECT,
        related_name='usages'
    )
    order = models.ForeignKey(
        'orders.Order',
        on_delete=models.PROTECT,
        related_name='discount_usages'
    )
    user_id = models.CharField(max_length=64, blank=True, default='', db_index=True)
    amount_applied = models.PositiveIntegerField(help_text="Discount granted in minor units")
    created_at = models.DateTimeField(auto_now_add=True)
    voided_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        verbose_name = 'Discount Usage'
        verbose_name_plural = 'Discount Usages'
        ordering = ['-created_at']
        constraints = [
            models.UniqueConstraint(
                fields=['discount', 'order'],
                name='unique_discount_usage_per_order'
            ),
        ]

    def __str__(self):
        state = 'voided' if self.voided_at else 'active'
        return f"{self.discount.code} on order {self.order_id} ({state})"

    @property
    def is_active(self) -> bool:
        return self.voided_at is None
