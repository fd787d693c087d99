"""
Serializers for inventory models.
Provides data validation and JSON conversion for API endpoints.
"""
from rest_framework import serializers
from .models import Product, StockMovement, StockUnit


class ProductMinimalSerializer(serializers.ModelSerializer):
    """Minimal serializer for nested product representation."""
    class Meta:
        model = Product
        fields = ['id', 'title']


class StockUnitSerializer(serializers.ModelSerializer):
    """Serializer for StockUnit with its product."""
    product = ProductMinimalSerializer(read_only=True)
    variant_label = serializers.CharField(read_only=True)

    class Meta:
        model = StockUnit
        fields = [
            'id', 'sku', 'product', 'color', 'material', 'size', 'variant_label',
            'price', 'inventory', 'is_active', 'sold_out_at', 'updated_at'
        ]
        read_only_fields = fields


class StockMovementSerializer(serializers.ModelSerializer):
    order_number = serializers.CharField(source='order.order_number', read_only=True, default=None)

    class Meta:
        model = StockMovement
        fields = ['id', 'kind', 'quantity', 'order_number', 'reason', 'created_at']


class StockAdjustmentSerializer(serializers.Serializer):
    """
    Request format:
    {
        "delta": -2,
        "reason": "Damaged in storage"
    }
    """
    delta = serializers.IntegerField()
    reason = serializers.CharField(max_length=255)

    def validate_delta(self, value):
        if value == 0:
            raise serializers.ValidationError("Delta must not be zero")
        return value

    def validate_reason(self, value):
        if not value.strip():
            raise serializers.ValidationError("A reason is required")
        return value.strip()
