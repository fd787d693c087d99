"""
Django Admin configuration for discount models.
"""
from django.contrib import admin
from .models import DiscountCode, DiscountUsage


class DiscountUsageInline(admin.TabularInline):
    model = DiscountUsage
    extra = 0
    fields = ['order', 'user_id', 'amount_applied', 'created_at', 'voided_at']
    readonly_fields = fields
    can_delete = False


@admin.register(DiscountCode)
class DiscountCodeAdmin(admin.ModelAdmin):
    list_display = [
        'id', 'code', 'discount_type', 'value', 'usage_count', 'usage_cap',
        'starts_at', 'ends_at', 'is_active'
    ]
    list_filter = ['discount_type', 'is_active']
    search_fields = ['code', 'description']
    ordering = ['code']
    # Changed only by the redemption ledger
    readonly_fields = ['usage_count']
    inlines = [DiscountUsageInline]


@admin.register(DiscountUsage)
class DiscountUsageAdmin(admin.ModelAdmin):
    list_display = ['id', 'discount', 'order', 'user_id', 'amount_applied', 'created_at', 'voided_at']
    list_filter = ['voided_at']
    search_fields = ['discount__code', 'order__order_number', 'user_id']
    raw_id_fields = ['discount', 'order']
    readonly_fields = ['discount', 'order', 'user_id', 'amount_applied', 'created_at', 'voided_at']

    def has_add_permission(self, request):
        return False

    def has_delete_permission(self, request, obj=None):
        return False
