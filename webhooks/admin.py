"""
Django Admin configuration for webhook models.
"""
from django.contrib import admin
from .models import ProcessedEvent


@admin.register(ProcessedEvent)
class ProcessedEventAdmin(admin.ModelAdmin):
    list_display = ['event_id', 'event_type', 'outcome', 'received_at', 'processed_at']
    list_filter = ['event_type', 'outcome']
    search_fields = ['event_id']
    ordering = ['-received_at']
    readonly_fields = ['event_id', 'event_type', 'outcome', 'received_at', 'processed_at']
