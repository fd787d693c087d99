"""
Shared Redis client used for rate limiting and invalidation publishing.

The client is created on first use. An empty REDIS_URL, or a server that
does not answer, disables both features instead of failing requests.
"""
import logging

import redis
from django.conf import settings

logger = logging.getLogger(__name__)

_client = None
_initialized = False


def get_redis_client():
    global _client, _initialized
    if _initialized:
        return _client

    _initialized = True
    if not settings.REDIS_URL:
        return None

    try:
        _client = redis.Redis.from_url(
            settings.REDIS_URL,
            decode_responses=True,
            socket_connect_timeout=5
        )
        _client.ping()
    except (redis.ConnectionError, redis.TimeoutError) as e:
        logger.warning(f"Redis connection failed: {e}. Rate limiting and cache invalidation are disabled.")
        _client = None
    return _client


def reset_redis_client():
    """Forget the cached client so the next call reconnects."""
    global _client, _initialized
    _client = None
    _initialized = False
