"""
Event deduplication store.

already_processed() is a cheap pre-check outside any transaction.
record_event() is the authoritative one: it must run inside the
transaction that applies the event, and the unique constraint on
event_id decides which of two concurrent deliveries wins.
"""
import logging
from datetime import timedelta

from django.conf import settings
from django.db import IntegrityError, transaction
from django.utils import timezone

from .events import WebhookEvent
from .models import ProcessedEvent

logger = logging.getLogger(__name__)


def already_processed(event_id: str) -> bool:
    return ProcessedEvent.objects.filter(event_id=event_id).exists()


def record_event(event: WebhookEvent) -> bool:
    """
    Claim an event for processing.

    Returns:
        True if this caller claimed it, False if another delivery already did.
    """
    try:
        with transaction.atomic():
            ProcessedEvent.objects.create(event_id=event.id, event_type=event.type)
    except IntegrityError:
        return False
    return True


def mark_processed(event_id: str, outcome: str) -> None:
    ProcessedEvent.objects.filter(event_id=event_id).update(
        processed_at=timezone.now(), outcome=outcome[:100]
    )


def prune(now=None) -> int:
    """Delete records older than the retention window. Returns the count deleted."""
    now = now or timezone.now()
    cutoff = now - timedelta(seconds=settings.PROCESSED_EVENT_RETENTION_SECONDS)
    deleted, _ = ProcessedEvent.objects.filter(received_at__lt=cutoff).delete()
    if deleted:
        logger.info(f"Pruned {deleted} processed events received before {cutoff.isoformat()}")
    return deleted
