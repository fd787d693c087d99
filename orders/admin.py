"""
Django Admin configuration for order models.

Orders are read-only here: status changes go through the operator API so
that stock, discounts and notifications stay consistent.
"""
from django.contrib import admin
from .models import Dispute, Order, OrderHistory, OrderItem, Refund


class OrderItemInline(admin.TabularInline):
    model = OrderItem
    extra = 0
    readonly_fields = ['product_title', 'sku_code', 'quantity', 'unit_price', 'line_total']
    fields = readonly_fields
    can_delete = False

    def line_total(self, obj):
        return obj.line_total
    line_total.short_description = 'Line total'


class OrderHistoryInline(admin.TabularInline):
    model = OrderHistory
    extra = 0
    readonly_fields = ['action', 'previous_status', 'new_status', 'payment_status', 'note', 'source', 'author_name', 'created_at']
    fields = readonly_fields
    can_delete = False


class RefundInline(admin.TabularInline):
    model = Refund
    extra = 0
    readonly_fields = ['gateway_refund_id', 'amount', 'status', 'reason', 'failure_reason', 'created_at']
    fields = readonly_fields
    can_delete = False


@admin.register(Order)
class OrderAdmin(admin.ModelAdmin):
    list_display = [
        'order_number', 'customer_email', 'status', 'payment_status',
        'fulfillment_status', 'total', 'needs_reconciliation', 'created_at'
    ]
    list_filter = ['status', 'payment_status', 'fulfillment_status', 'needs_reconciliation', 'created_at']
    search_fields = ['order_number', 'customer_email', 'payment_intent_id', 'checkout_session_id']
    ordering = ['-created_at']
    readonly_fields = [
        'order_number', 'status', 'payment_status', 'fulfillment_status',
        'subtotal', 'discount_amount', 'shipping_cost', 'total', 'discount_code',
        'payment_intent_id', 'checkout_session_id', 'awaiting_payment', 'needs_reconciliation',
        'reconciliation_reason', 'created_at', 'updated_at', 'paid_at',
        'shipped_at', 'delivered_at', 'cancelled_at'
    ]
    inlines = [OrderItemInline, RefundInline, OrderHistoryInline]

    def has_delete_permission(self, request, obj=None):
        return False


@admin.register(Dispute)
class DisputeAdmin(admin.ModelAdmin):
    list_display = ['gateway_dispute_id', 'order', 'amount', 'reason', 'status', 'due_by']
    list_filter = ['status', 'reason']
    search_fields = ['gateway_dispute_id', 'order__order_number']
    raw_id_fields = ['order']
