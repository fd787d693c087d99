"""
Celery tasks for webhook housekeeping.
"""
import logging
from celery import shared_task

from . import dedup

logger = logging.getLogger(__name__)


@shared_task
def prune_processed_events():
    """
    Periodic task removing dedup records past the retention window.

    Retention is never shorter than the anti-replay window, so an event
    old enough to lose its record is already rejected as expired.
    """
    deleted = dedup.prune()
    return {'deleted': deleted}
