"""
Redis-based rate limiting for operator endpoints.

Fixed-window counter keyed by view and client IP. Fails open when Redis is
unavailable so an outage never blocks operators.
"""
import logging

import redis
from django.conf import settings
from django.http import JsonResponse

from .redis_client import get_redis_client

logger = logging.getLogger(__name__)


def get_client_ip(request):
    """Extract client IP address from request."""
    x_forwarded_for = request.META.get('HTTP_X_FORWARDED_FOR')
    if x_forwarded_for:
        return x_forwarded_for.split(',')[0].strip()
    return request.META.get('REMOTE_ADDR', 'unknown')


class RateLimitMixin:
    """
    Mixin class for class-based views to add rate limiting.

    Usage:
        class OrderExportView(RateLimitMixin, APIView):
            rate_limit_max_requests = 10
            rate_limit_window_seconds = 60
    """
    rate_limit_max_requests = 20
    rate_limit_window_seconds = 60

    def dispatch(self, request, *args, **kwargs):
        client = get_redis_client()
        if not settings.RATE_LIMIT_ENABLED or client is None:
            return super().dispatch(request, *args, **kwargs)

        try:
            key = f"rate_limit:{self.__class__.__name__}:{get_client_ip(request)}"
            current_count = client.incr(key)
            if current_count == 1:
                client.expire(key, self.rate_limit_window_seconds)
            ttl = client.ttl(key)
        except redis.RedisError as e:
            logger.error(f"Redis error in rate limiting: {e}")
            return super().dispatch(request, *args, **kwargs)

        if current_count > self.rate_limit_max_requests:
            # Rejected before DRF negotiates a renderer
            response = JsonResponse(
                {
                    'error': 'Rate limit exceeded',
                    'detail': (
                        f'Maximum {self.rate_limit_max_requests} requests per '
                        f'{self.rate_limit_window_seconds} seconds allowed.'
                    ),
                    'retry_after': ttl
                },
                status=429
            )
            response['X-RateLimit-Limit'] = str(self.rate_limit_max_requests)
            response['X-RateLimit-Remaining'] = '0'
            response['Retry-After'] = str(ttl)
            return response

        response = super().dispatch(request, *args, **kwargs)
        response['X-RateLimit-Limit'] = str(self.rate_limit_max_requests)
        response['X-RateLimit-Remaining'] = str(max(0, self.rate_limit_max_requests - current_count))
        response['X-RateLimit-Reset'] = str(ttl)
        return response
