"""
Inventory Models - Products, sellable stock units and the stock movement ledger.

Models:
    - Product: Catalog item grouping its variants
    - StockUnit: One sellable variant (SKU) with its on-hand quantity
    - StockMovement: One row per ledger mutation (commit, release, adjust)

Only inventory.ledger writes StockUnit.inventory.
"""
from django.core.validators import MinValueValidator
from django.db import models
from django.db.models import Q


class Product(models.Model):
    """
    Product entity grouping one or more stock units.
    """
    title = models.CharField(
        max_length=200,
        db_index=True,
        help_text="Product title for display and order snapshots"
    )
    description = models.TextField(
        blank=True,
        default='',
        help_text="Optional product description"
    )
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        verbose_name = 'Product'
        verbose_name_plural = 'Products'
        ordering = ['title']

    def __str__(self):
        return self.title


class StockUnit(models.Model):
    """
    A sellable variant of a product.

    Prices are integer minor units (cents). ``sold_out_at`` is set only
    when the ledger deactivated the unit because its stock reached zero,
    which lets a later release reactivate it without touching units an
    operator switched off by hand.
    """
    product = models.ForeignKey(
        Product,
        on_delete=models.CASCADE,
        related_name='stock_units',
        help_text="Parent product"
    )
    sku = models.CharField(
        max_length=64,
        unique=True,
        help_text="Unique stock keeping unit code"
    )
    color = models.CharField(max_length=50, blank=True, default='')
    material = models.CharField(max_length=50, blank=True, default='')
    size = models.CharField(max_length=50, blank=True, default='')
    price = models.PositiveIntegerField(
        validators=[MinValueValidator(1)],
        help_text="Unit price in minor currency units"
    )
    inventory = models.IntegerField(
        default=0,
        help_text="On-hand quantity, never negative"
    )
    is_active = models.BooleanField(
        default=True,
        db_index=True,
        help_text="Whether the unit can be sold"
    )
    sold_out_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="When the ledger deactivated this unit for running out"
    )
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        verbose_name = 'Stock Unit'
        verbose_name_plural = 'Stock Units'
        ordering = ['sku']
        constraints = [
            models.CheckConstraint(
                condition=Q(inventory__gte=0),
                name='stock_unit_inventory_non_negative'
            ),
        ]
        indexes = [
            models.Index(fields=['product', 'is_active']),
        ]

    def __str__(self):
        return f"{self.sku}: {self.inventory} units"

    @property
    def is_sold_out(self) -> bool:
        return self.inventory == 0

    @property
    def variant_label(self) -> str:
        return ' / '.join(part for part in (self.color, self.material, self.size) if part)


class StockMovement(models.Model):
    """
    Ledger row for every stock mutation.

    COMMIT and RELEASE rows are unique per (stock unit, order), so a
    second commit or release for the same order is detected as a no-op
    rather than applied twice.
    """

    class Kind(models.TextChoices):
        COMMIT = 'COMMIT', 'Commit'
        RELEASE = 'RELEASE', 'Release'
        ADJUST = 'ADJUST', 'Adjust'

    kind = models.CharField(max_length=10, choices=Kind.choices)
    stock_unit = models.ForeignKey(
        StockUnit,
        on_delete=models.CASCADE,
        related_name='movements'
    )
    order = models.ForeignKey(
        'orders.Order',
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name='stock_movements',
        help_text="Order the movement belongs to, empty for adjustments"
    )
    quantity = models.IntegerField(help_text="Signed change applied to inventory")
    reason = models.CharField(max_length=255, blank=True, default='')
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        verbose_name = 'Stock Movement'
        verbose_name_plural = 'Stock Movements'
        ordering = ['-created_at', '-id']
        constraints = [
            models.UniqueConstraint(
                fields=['stock_unit', 'order', 'kind'],
                condition=Q(kind__in=['COMMIT', 'RELEASE']),
                name='unique_order_stock_movement'
            ),
        ]

    def __str__(self):
        return f"{self.kind} {self.quantity:+d} {self.stock_unit.sku}"
