"""
Cache invalidation signal.

Every state-changing operation returns the set of cache topics it made
stale. Callers publish the set once their transaction commits; the cache
layer subscribes to CACHE_INVALIDATION_CHANNEL and refreshes what it holds.

Topics:
    order:list                  all order lists
    order:{order_number}        a single order page
    user:{user_id}:orders       a customer's order history
    admin:badges                counters in the operator UI
    admin:dashboard             operator dashboard aggregates
    stock:sku:{id}              one stock unit
    stock:list                  catalog availability
    discount:{code}             one discount code
"""
import json
import logging
from dataclasses import dataclass, field
from typing import FrozenSet, Iterable

import redis
from django.conf import settings
from django.db import transaction

from .redis_client import get_redis_client

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CacheInvalidation:
    topics: FrozenSet[str] = field(default_factory=frozenset)

    @classmethod
    def of(cls, *topics: str) -> 'CacheInvalidation':
        return cls(frozenset(topics))

    def __or__(self, other: 'CacheInvalidation') -> 'CacheInvalidation':
        return CacheInvalidation(self.topics | other.topics)

    def __bool__(self) -> bool:
        return bool(self.topics)

    def __contains__(self, topic: str) -> bool:
        return topic in self.topics

    def sorted(self) -> list:
        return sorted(self.topics)


NONE = CacheInvalidation()


def for_order(order) -> CacheInvalidation:
    """Topics made stale by any change to an order."""
    topics = [
        'order:list',
        f'order:{order.order_number}',
        'admin:badges',
        'admin:dashboard',
    ]
    if order.user_id:
        topics.append(f'user:{order.user_id}:orders')
    return CacheInvalidation.of(*topics)


def for_stock_units(sku_ids: Iterable[int]) -> CacheInvalidation:
    sku_ids = list(sku_ids)
    if not sku_ids:
        return NONE
    return CacheInvalidation.of('stock:list', *(f'stock:sku:{sku_id}' for sku_id in sku_ids))


def for_discount(code: str) -> CacheInvalidation:
    return CacheInvalidation.of(f'discount:{code}')


def publish(signal: CacheInvalidation) -> bool:
    """
    Publish topics to the invalidation channel.

    Fire-and-forget: returns False instead of raising when Redis is
    unreachable, the database work this follows has already committed.
    """
    if not signal:
        return True

    client = get_redis_client()
    if client is None:
        logger.debug(f"Redis unavailable, dropping invalidation of {signal.sorted()}")
        return False

    try:
        client.publish(settings.CACHE_INVALIDATION_CHANNEL, json.dumps({'topics': signal.sorted()}))
    except redis.RedisError as e:
        logger.warning(f"Failed to publish cache invalidation {signal.sorted()}: {e}")
        return False
    return True


def publish_on_commit(signal: CacheInvalidation) -> None:
    """Publish once the current transaction commits (immediately outside one)."""
    if signal:
        transaction.on_commit(lambda: publish(signal))
