"""
Webhook Models - the event deduplication store.
"""
from django.db import models


class ProcessedEvent(models.Model):
    """
    One row per gateway event that was applied.

    The unique ``event_id`` makes the insert the dedup decision: the row is
    written in the same transaction as the business change it guards, so an
    event is either fully applied and recorded, or neither.
    """
    event_id = models.CharField(max_length=255, unique=True)
    event_type = models.CharField(max_length=100, db_index=True)
    received_at = models.DateTimeField(auto_now_add=True, db_index=True)
    processed_at = models.DateTimeField(null=True, blank=True)
    outcome = models.CharField(max_length=100, blank=True, default='')

    class Meta:
        verbose_name = 'Processed Event'
        verbose_name_plural = 'Processed Events'
        ordering = ['-received_at']

    def __str__(self):
        return f"{self.event_id} ({self.event_type}: {self.outcome or 'pending'})"
