"""
Order API Views.

Implements:
- POST /orders/ - Create a PENDING order for checkout
- GET /orders/ - List orders (operators)
- GET /orders/{id}/ - Order detail with items, refunds and history (operators)
- POST /orders/{id}/ship|deliver|cancel|return/ - Operator transitions
- GET /orders/export/ - CSV or JSON export (operators, rate limited)
"""
import logging

from django.utils import timezone
from rest_framework import generics, permissions, renderers, status
from rest_framework.response import Response
from rest_framework.views import APIView

from core.exceptions import BusinessRuleError, DiscountRejected, InsufficientStock
from core.invalidation import publish_on_commit
from core.rate_limiting import RateLimitMixin

from . import state_machine
from .exports import CSVRenderer, export_queryset, export_rows
from .models import Order
from .serializers import (
    CancelOrderSerializer,
    CustomerOrderSerializer,
    OrderCreateSerializer,
    OrderExportQuerySerializer,
    OrderListSerializer,
    OrderSerializer,
    ShipOrderSerializer,
)
from .state_machine import Outcome

logger = logging.getLogger(__name__)

OUTCOME_HTTP_STATUS = {
    Outcome.APPLIED: status.HTTP_200_OK,
    Outcome.ALREADY_APPLIED: status.HTTP_200_OK,
    Outcome.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    Outcome.INVALID_TRANSITION: status.HTTP_409_CONFLICT,
    Outcome.NOT_PERMITTED: status.HTTP_403_FORBIDDEN,
    Outcome.INSUFFICIENT_STOCK: status.HTTP_409_CONFLICT,
}


def detail_queryset():
    return Order.objects.select_related('discount_code').prefetch_related('items', 'refunds', 'history')


class OrderListCreateView(generics.ListCreateAPIView):
    """
    GET: List orders for operators
    POST: Create a PENDING order for checkout (guest checkout allowed)

    Query Parameters (GET):
        - status: Filter by order status
        - payment_status: Filter by payment status
        - needs_reconciliation: "true" to list held orders only

    Request Body (POST): see OrderCreateSerializer
    """

    def get_permissions(self):
        if self.request.method == 'POST':
            return [permissions.AllowAny()]
        return [permissions.IsAdminUser()]

    def get_serializer_class(self):
        if self.request.method == 'POST':
            return OrderCreateSerializer
        return OrderListSerializer

    def get_queryset(self):
        queryset = Order.objects.prefetch_related('items')

        status_filter = self.request.query_params.get('status', '').upper()
        if status_filter in Order.Status.values:
            queryset = queryset.filter(status=status_filter)

        payment_filter = self.request.query_params.get('payment_status', '').upper()
        if payment_filter in Order.PaymentStatus.values:
            queryset = queryset.filter(payment_status=payment_filter)

        if self.request.query_params.get('needs_reconciliation', '').lower() == 'true':
            queryset = queryset.filter(needs_reconciliation=True)

        return queryset.order_by('-created_at')

    def create(self, request, *args, **kwargs):
        """
        Create a PENDING order.

        Returns:
            - 201: Order created
            - 400: Validation error, unknown or inactive SKU, rejected discount
            - 409: Not enough stock
        """
        serializer = OrderCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        try:
            result = state_machine.create_pending_order(
                customer_email=data['customer_email'],
                customer_name=data['customer_name'],
                user_id=data['user_id'],
                items=[dict(item) for item in data['items']],
                shipping=dict(data['shipping']),
                shipping_cost=data['shipping_cost'],
                discount_code=data['discount_code'],
                currency=data['currency'].upper(),
                checkout_session_id=data['checkout_session_id'],
            )
        except InsufficientStock as e:
            logger.info(f"Checkout rejected: {e}")
            return Response(
                {'error': 'Insufficient Stock', 'detail': str(e), 'sku_id': e.sku_id, 'available': e.available},
                status=status.HTTP_409_CONFLICT
            )
        except DiscountRejected as e:
            return Response(
                {'error': 'Discount Rejected', 'detail': str(e), 'reason': e.reason},
                status=status.HTTP_400_BAD_REQUEST
            )
        except BusinessRuleError as e:
            logger.warning(f"Order validation failed: {e}")
            return Response(
                {'error': 'Validation Error', 'detail': str(e)},
                status=status.HTTP_400_BAD_REQUEST
            )

        publish_on_commit(result.invalidation)
        order = Order.objects.prefetch_related('items').get(pk=result.order.pk)
        return Response(CustomerOrderSerializer(order).data, status=status.HTTP_201_CREATED)


class OrderDetailView(generics.RetrieveAPIView):
    """
    GET: Retrieve order details with items, refunds and audit trail.
    """
    serializer_class = OrderSerializer
    permission_classes = [permissions.IsAdminUser]

    def get_queryset(self):
        return detail_queryset()


class OrderTransitionView(APIView):
    """
    Base view for operator transitions.

    Subclasses implement ``transition`` and return a TransitionResult;
    the outcome decides the HTTP status.
    """
    permission_classes = [permissions.IsAdminUser]
    serializer_class = None

    def transition(self, request, order_id, data):
        raise NotImplementedError

    def post(self, request, pk):
        data = {}
        if self.serializer_class is not None:
            serializer = self.serializer_class(data=request.data)
            serializer.is_valid(raise_exception=True)
            data = serializer.validated_data

        result = self.transition(request, pk, data)
        publish_on_commit(result.invalidation)

        body = {'outcome': result.outcome.value}
        if result.message:
            body['detail'] = result.message
        if result.order is not None:
            body['order'] = OrderSerializer(detail_queryset().get(pk=result.order.pk)).data
        return Response(body, status=OUTCOME_HTTP_STATUS[result.outcome])


class ShipOrderView(OrderTransitionView):
    serializer_class = ShipOrderSerializer

    def transition(self, request, order_id, data):
        return state_machine.mark_shipped(
            order_id,
            tracking_number=data['tracking_number'],
            tracking_url=data['tracking_url'],
            carrier=data['carrier'],
            author_name=request.user.get_username(),
        )


class DeliverOrderView(OrderTransitionView):
    def transition(self, request, order_id, data):
        return state_machine.mark_delivered(order_id, author_name=request.user.get_username())


class CancelOrderView(OrderTransitionView):
    """
    Cancel an order. Orders already paid need the
    orders.cancel_paid_order permission (superusers have it).
    """
    serializer_class = CancelOrderSerializer

    def transition(self, request, order_id, data):
        return state_machine.cancel(
            order_id,
            reason=data['reason'],
            privileged=request.user.has_perm('orders.cancel_paid_order'),
            author_name=request.user.get_username(),
        )


class ReturnOrderView(OrderTransitionView):
    def transition(self, request, order_id, data):
        return state_machine.mark_returned(order_id, author_name=request.user.get_username())


class OrderExportView(RateLimitMixin, APIView):
    """
    GET: Export orders with their monetary fields.

    Query Parameters:
        - date_from, date_to: ISO dates, inclusive
        - status: Order status filter
        - format: csv (default) or json
    """
    permission_classes = [permissions.IsAdminUser]
    renderer_classes = [CSVRenderer, renderers.JSONRenderer]
    rate_limit_max_requests = 10
    rate_limit_window_seconds = 60

    def get(self, request):
        serializer = OrderExportQuerySerializer(data=request.query_params)
        serializer.is_valid(raise_exception=True)
        params = serializer.validated_data

        rows = list(export_rows(export_queryset(
            date_from=params.get('date_from'),
            date_to=params.get('date_to'),
            status=params.get('status', ''),
        )))
        logger.info(f"Order export by {request.user.get_username()}: {len(rows)} rows")

        response = Response(rows)
        if request.accepted_renderer.format == 'csv':
            filename = f"orders-{timezone.now().date().isoformat()}.csv"
            response['Content-Disposition'] = f'attachment; filename="{filename}"'
        return response
