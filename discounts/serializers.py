"""
Serializers for discount codes.
"""
from rest_framework import serializers
from .models import DiscountCode


class DiscountCodeSerializer(serializers.ModelSerializer):
    class Meta:
        model = DiscountCode
        fields = [
            'id', 'code', 'description', 'discount_type', 'value', 'starts_at', 'ends_at',
            'usage_cap', 'per_user_cap', 'minimum_subtotal', 'usage_count', 'is_active'
        ]
        read_only_fields = fields


class ValidateDiscountSerializer(serializers.Serializer):
    """
    Request format:
    {
        "code": "welcome10",
        "subtotal": 4990,
        "user_id": "cus_123"
    }
    """
    code = serializers.CharField(max_length=50)
    subtotal = serializers.IntegerField(min_value=0)
    user_id = serializers.CharField(max_length=64, required=False, allow_blank=True, default='')

    def validate_code(self, value):
        value = value.strip()
        if not value:
            raise serializers.ValidationError("A code is required")
        return value
