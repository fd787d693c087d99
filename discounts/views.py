"""
Discount API Views.

Implements:
- POST /discounts/validate/ - Check a code for a subtotal at checkout
- GET /discounts/ - List codes with their usage (operators)
"""
import logging

from rest_framework import generics, permissions, status
from rest_framework.response import Response
from rest_framework.views import APIView

from core.rate_limiting import RateLimitMixin
from . import ledger
from .models import DiscountCode
from .serializers import DiscountCodeSerializer, ValidateDiscountSerializer

logger = logging.getLogger(__name__)


class DiscountValidateView(RateLimitMixin, APIView):
    """
    POST: Validate a discount code without reserving it.

    Returns:
        - 200: {"valid": true, "code": ..., "amount": ...}
        - 200: {"valid": false, "code": ..., "reason": ..., "detail": ...}
        - 400: Malformed request
    """
    permission_classes = [permissions.AllowAny]
    rate_limit_max_requests = 30
    rate_limit_window_seconds = 60

    def post(self, request):
        serializer = ValidateDiscountSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        result = ledger.validate(data['code'], data['subtotal'], user_id=data['user_id'] or None)
        if isinstance(result, ledger.Rejection):
            logger.info(f"Discount {result.code} rejected: {result.reason.value}")
            return Response({
                'valid': False,
                'code': result.code,
                'reason': result.reason.value,
                'detail': result.message,
            }, status=status.HTTP_200_OK)

        return Response({
            'valid': True,
            'code': result.code,
            'amount': result.amount,
            'subtotal_after_discount': data['subtotal'] - result.amount,
        }, status=status.HTTP_200_OK)


class DiscountCodeListView(generics.ListAPIView):
    serializer_class = DiscountCodeSerializer
    permission_classes = [permissions.IsAdminUser]
    queryset = DiscountCode.objects.all()
