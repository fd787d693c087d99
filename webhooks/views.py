"""
Webhook endpoint for the payment gateway.

POST /webhooks/stripe/

Responses:
    - 200: processed, duplicate or ignored (the gateway stops retrying)
    - 400: bad signature, malformed body or expired event
    - 500: storage failure (the gateway retries)
"""
import logging

from django.db import DatabaseError
from rest_framework import permissions, status
from rest_framework.response import Response
from rest_framework.views import APIView

from .pipeline import handle_event

logger = logging.getLogger(__name__)


class StripeWebhookView(APIView):
    """
    Authenticated by signature, not by session: no DRF authentication
    and no CSRF. The body is read raw so the signature covers exactly
    what was sent.
    """
    authentication_classes = []
    permission_classes = [permissions.AllowAny]

    def post(self, request):
        signature = request.META.get('HTTP_STRIPE_SIGNATURE', '')

        try:
            result = handle_event(request.body, signature)
        except DatabaseError as e:
            logger.exception(f"[WEBHOOK] Storage failure, asking the gateway to retry: {e}")
            return Response(
                {'error': 'Server Error', 'detail': 'Event could not be stored'},
                status=status.HTTP_500_INTERNAL_SERVER_ERROR
            )

        if result.accepted:
            return Response({'received': True, 'status': result.ack.value})

        return Response(
            {'error': result.reject.value, 'detail': result.detail},
            status=status.HTTP_400_BAD_REQUEST
        )
