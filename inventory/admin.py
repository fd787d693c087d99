"""
Django Admin configuration for inventory models.

Stock levels are read-only here: corrections go through the adjust
endpoint so every change lands in the movement ledger.
"""
from django.contrib import admin
from .models import Product, StockMovement, StockUnit


class StockUnitInline(admin.TabularInline):
    model = StockUnit
    extra = 0
    fields = ['sku', 'color', 'material', 'size', 'price', 'inventory', 'is_active']
    readonly_fields = ['inventory']


@admin.register(Product)
class ProductAdmin(admin.ModelAdmin):
    list_display = ['id', 'title', 'unit_count', 'created_at']
    search_fields = ['title', 'description']
    ordering = ['title']
    inlines = [StockUnitInline]

    def unit_count(self, obj):
        return obj.stock_units.count()
    unit_count.short_description = 'Stock Units'


@admin.register(StockUnit)
class StockUnitAdmin(admin.ModelAdmin):
    list_display = ['id', 'sku', 'product', 'price', 'inventory', 'is_active', 'is_sold_out', 'updated_at']
    list_filter = ['is_active', 'updated_at']
    search_fields = ['sku', 'product__title']
    ordering = ['sku']
    raw_id_fields = ['product']
    readonly_fields = ['inventory', 'sold_out_at']

    def is_sold_out(self, obj):
        return obj.is_sold_out
    is_sold_out.boolean = True
    is_sold_out.short_description = 'Sold Out'


@admin.register(StockMovement)
class StockMovementAdmin(admin.ModelAdmin):
    list_display = ['id', 'kind', 'stock_unit', 'quantity', 'order', 'reason', 'created_at']
    list_filter = ['kind', 'created_at']
    search_fields = ['stock_unit__sku', 'order__order_number', 'reason']
    raw_id_fields = ['stock_unit', 'order']

    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False
