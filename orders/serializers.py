"""
Serializers for order models and operator actions.
"""
from rest_framework import serializers

from .models import Order, OrderHistory, OrderItem, Refund


class OrderItemSerializer(serializers.ModelSerializer):
    """Serializer for the immutable item snapshot."""
    line_total = serializers.IntegerField(read_only=True)

    class Meta:
        model = OrderItem
        fields = [
            'id', 'stock_unit', 'product_title', 'sku_code', 'sku_color',
            'sku_material', 'sku_size', 'unit_price', 'quantity', 'line_total'
        ]


class OrderHistorySerializer(serializers.ModelSerializer):
    class Meta:
        model = OrderHistory
        fields = [
            'action', 'previous_status', 'new_status', 'payment_status',
            'fulfillment_status', 'note', 'metadata', 'author_name', 'source', 'created_at'
        ]


class RefundSerializer(serializers.ModelSerializer):
    class Meta:
        model = Refund
        fields = ['gateway_refund_id', 'amount', 'status', 'reason', 'failure_reason', 'created_at']


class OrderSerializer(serializers.ModelSerializer):
    """
    Full order for operators, with items, refunds and audit trail.
    Expects items, refunds and history to be prefetched.
    """
    items = OrderItemSerializer(many=True, read_only=True)
    refunds = RefundSerializer(many=True, read_only=True)
    history = OrderHistorySerializer(many=True, read_only=True)
    discount_code = serializers.SlugRelatedField(slug_field='code', read_only=True)
    customer_message = serializers.CharField(read_only=True)

    class Meta:
        model = Order
        fields = [
            'id', 'order_number', 'user_id', 'customer_email', 'customer_name',
            'shipping_first_name', 'shipping_last_name', 'shipping_address1',
            'shipping_address2', 'shipping_postal_code', 'shipping_city',
            'shipping_country', 'shipping_phone', 'shipping_method',
            'subtotal', 'discount_code', 'discount_amount', 'shipping_cost', 'total', 'currency',
            'status', 'payment_status', 'fulfillment_status',
            'checkout_session_id', 'payment_intent_id',
            'payment_failure_code', 'payment_failure_message',
            'tracking_number', 'tracking_url', 'carrier',
            'awaiting_payment', 'needs_reconciliation', 'reconciliation_reason', 'customer_message',
            'items', 'refunds', 'history',
            'created_at', 'updated_at', 'paid_at', 'shipped_at', 'delivered_at', 'cancelled_at'
        ]
        read_only_fields = fields


class OrderListSerializer(serializers.ModelSerializer):
    """Optimized serializer for listing orders."""
    item_count = serializers.SerializerMethodField()

    class Meta:
        model = Order
        fields = [
            'id', 'order_number', 'customer_email', 'status', 'payment_status',
            'fulfillment_status', 'total', 'currency', 'needs_reconciliation',
            'item_count', 'created_at'
        ]

    def get_item_count(self, obj):
        # Use prefetched items count if available
        if hasattr(obj, '_prefetched_objects_cache') and 'items' in obj._prefetched_objects_cache:
            return len(obj.items.all())
        return obj.items.count()


class CustomerOrderSerializer(serializers.ModelSerializer):
    """
    What the storefront shows the customer after checkout.

    Reconciliation details stay internal; the customer only sees
    ``customer_message``.
    """
    items = OrderItemSerializer(many=True, read_only=True)
    customer_message = serializers.CharField(read_only=True)

    class Meta:
        model = Order
        fields = [
            'id', 'order_number', 'status', 'payment_status', 'subtotal',
            'discount_amount', 'shipping_cost', 'total', 'currency',
            'items', 'customer_message', 'created_at'
        ]


class OrderItemCreateSerializer(serializers.Serializer):
    """Serializer for creating order items in order creation request."""
    sku_id = serializers.IntegerField(min_value=1)
    quantity = serializers.IntegerField(min_value=1)


class ShippingAddressSerializer(serializers.Serializer):
    first_name = serializers.CharField(max_length=100)
    last_name = serializers.CharField(max_length=100)
    address1 = serializers.CharField(max_length=255)
    address2 = serializers.CharField(max_length=255, required=False, allow_blank=True, default='')
    postal_code = serializers.CharField(max_length=20)
    city = serializers.CharField(max_length=100)
    country = serializers.CharField(min_length=2, max_length=2)
    phone = serializers.CharField(max_length=30, required=False, allow_blank=True, default='')
    method = serializers.CharField(max_length=50, required=False, allow_blank=True, default='')

    def validate_country(self, value):
        return value.upper()


class OrderCreateSerializer(serializers.Serializer):
    """
    Serializer for creating orders via POST /orders/

    Request format:
    {
        "customer_email": "ada@example.com",
        "items": [
            {"sku_id": 1, "quantity": 2},
            {"sku_id": 3, "quantity": 1}
        ],
        "shipping": {"first_name": "Ada", ...},
        "shipping_cost": 490,
        "discount_code": "WELCOME10"
    }
    """
    customer_email = serializers.EmailField()
    customer_name = serializers.CharField(max_length=200, required=False, allow_blank=True, default='')
    user_id = serializers.CharField(max_length=64, required=False, allow_blank=True, default='')
    items = OrderItemCreateSerializer(many=True)
    shipping = ShippingAddressSerializer()
    shipping_cost = serializers.IntegerField(min_value=0, default=0)
    discount_code = serializers.CharField(max_length=50, required=False, allow_blank=True, default='')
    currency = serializers.CharField(min_length=3, max_length=3, default='EUR')
    checkout_session_id = serializers.CharField(max_length=255, required=False, allow_blank=True, default='')

    def validate_items(self, value):
        if not value:
            raise serializers.ValidationError("At least one item is required")

        sku_ids = [item['sku_id'] for item in value]
        if len(sku_ids) != len(set(sku_ids)):
            raise serializers.ValidationError("Duplicate SKUs in order items")

        return value


class ShipOrderSerializer(serializers.Serializer):
    tracking_number = serializers.CharField(max_length=100, required=False, allow_blank=True, default='')
    tracking_url = serializers.URLField(required=False, allow_blank=True, default='')
    carrier = serializers.CharField(max_length=50, required=False, allow_blank=True, default='')


class CancelOrderSerializer(serializers.Serializer):
    reason = serializers.CharField(max_length=500, required=False, allow_blank=True, default='')


class OrderExportQuerySerializer(serializers.Serializer):
    date_from = serializers.DateField(required=False)
    date_to = serializers.DateField(required=False)
    status = serializers.ChoiceField(choices=Order.Status.choices, required=False)
    format = serializers.ChoiceField(choices=['csv', 'json'], default='csv')

    def validate(self, attrs):
        if attrs.get('date_from') and attrs.get('date_to') and attrs['date_from'] > attrs['date_to']:
            raise serializers.ValidationError("date_from must not be after date_to")
        return attrs
