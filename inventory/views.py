"""
Inventory API Views for operators.

Implements:
- GET /skus/ - List stock units with filters
- GET /skus/{id}/ - Stock unit detail
- GET /skus/{id}/movements/ - Stock ledger history for a unit
- POST /skus/{id}/adjust/ - Manual stock correction with a reason
"""
import logging

from django.db.models import Q
from rest_framework import generics, permissions, status
from rest_framework.response import Response
from rest_framework.views import APIView

from core.exceptions import InsufficientStock, SkuNotFound
from core.invalidation import for_stock_units, publish_on_commit
from . import ledger
from .models import StockMovement, StockUnit
from .serializers import StockAdjustmentSerializer, StockMovementSerializer, StockUnitSerializer

logger = logging.getLogger(__name__)


class StockUnitListView(generics.ListAPIView):
    """
    GET: List stock units.

    Query Parameters:
        - q: Keyword matched against SKU code and product title
        - product_id: Filter by product
        - is_active: "true" or "false"
        - sold_out: "true" for units at zero stock

    Uses select_related to eliminate N+1 queries.
    """
    serializer_class = StockUnitSerializer
    permission_classes = [permissions.IsAdminUser]

    def get_queryset(self):
        queryset = StockUnit.objects.select_related('product')

        keyword = self.request.query_params.get('q', '').strip()
        if keyword:
            queryset = queryset.filter(
                Q(sku__icontains=keyword) |
                Q(product__title__icontains=keyword)
            )

        product_id = self.request.query_params.get('product_id')
        if product_id:
            queryset = queryset.filter(product_id=product_id)

        is_active = self.request.query_params.get('is_active', '').lower()
        if is_active in ('true', 'false'):
            queryset = queryset.filter(is_active=is_active == 'true')

        if self.request.query_params.get('sold_out', '').lower() == 'true':
            queryset = queryset.filter(inventory=0)

        return queryset.order_by('sku')


class StockUnitDetailView(generics.RetrieveAPIView):
    serializer_class = StockUnitSerializer
    permission_classes = [permissions.IsAdminUser]
    queryset = StockUnit.objects.select_related('product')


class StockMovementListView(generics.ListAPIView):
    serializer_class = StockMovementSerializer
    permission_classes = [permissions.IsAdminUser]

    def get_queryset(self):
        return StockMovement.objects.select_related('order').filter(stock_unit_id=self.kwargs['pk'])


class StockAdjustView(APIView):
    """
    POST: Apply an operator correction to a stock unit.

    Returns:
        - 200: Adjusted unit
        - 400: Missing reason or zero delta
        - 404: Unknown unit
        - 409: Correction would take stock below zero
    """
    permission_classes = [permissions.IsAdminUser]

    def post(self, request, pk):
        serializer = StockAdjustmentSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        delta = serializer.validated_data['delta']
        reason = f"{serializer.validated_data['reason']} ({request.user.get_username()})"

        try:
            unit = ledger.adjust(pk, delta, reason)
        except SkuNotFound as e:
            return Response({'error': 'Not Found', 'detail': str(e)}, status=status.HTTP_404_NOT_FOUND)
        except InsufficientStock as e:
            return Response(
                {'error': 'Insufficient Stock', 'detail': str(e), 'available': e.available},
                status=status.HTTP_409_CONFLICT
            )

        publish_on_commit(for_stock_units([unit.pk]))
        unit = StockUnit.objects.select_related('product').get(pk=unit.pk)
        return Response(StockUnitSerializer(unit).data)
