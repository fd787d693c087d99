"""
Webhook ingestion pipeline.

    raw body + signature header
        -> verify signature (shared secret)
        -> parse envelope
        -> reject events older than the anti-replay window
        -> dedup pre-check
        -> one transaction: claim event id, dispatch, record outcome
        -> publish cache invalidation after commit

Every delivery ends in a WebhookResult. Security and format problems are
rejections; everything the gateway should stop retrying is an ack.
Storage errors propagate so the HTTP layer answers 500 and the gateway
retries.
"""
import json
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Optional

import stripe
from django.conf import settings
from django.db import transaction

from core.exceptions import ExpiredEventError, PayloadValidationError, SecurityError
from core.invalidation import CacheInvalidation, NONE, publish_on_commit

from . import dedup, handlers
from .events import WebhookEvent

logger = logging.getLogger(__name__)


class AckStatus(str, Enum):
    PROCESSED = 'processed'
    DUPLICATE = 'duplicate'
    IGNORED = 'ignored'


class RejectReason(str, Enum):
    INVALID_SIGNATURE = 'invalid_signature'
    EXPIRED = 'expired'
    MALFORMED = 'malformed'


@dataclass(frozen=True)
class WebhookResult:
    event_id: Optional[str] = None
    ack: Optional[AckStatus] = None
    reject: Optional[RejectReason] = None
    detail: str = ''
    invalidation: CacheInvalidation = NONE

    @property
    def accepted(self) -> bool:
        return self.ack is not None

    @classmethod
    def acked(cls, event_id, ack, detail='', invalidation=NONE) -> 'WebhookResult':
        return cls(event_id=event_id, ack=ack, detail=detail, invalidation=invalidation)

    @classmethod
    def rejected(cls, reason, detail='', event_id=None) -> 'WebhookResult':
        return cls(event_id=event_id, reject=reason, detail=detail)


def verify_signature(raw_body: bytes, signature_header: str, secret: str) -> None:
    """
    Check the gateway signature over the exact raw body.

    Raises:
        SecurityError: missing header, missing secret or bad signature.
    """
    if not signature_header:
        raise SecurityError("Missing signature header")
    if not secret:
        logger.error("STRIPE_WEBHOOK_SECRET is not configured, rejecting all webhooks")
        raise SecurityError("Webhook secret not configured")

    try:
        payload = raw_body.decode('utf-8')
    except UnicodeDecodeError:
        raise SecurityError("Body is not valid UTF-8")

    try:
        # Freshness is checked against the event's own timestamp below
        stripe.WebhookSignature.verify_header(payload, signature_header, secret, tolerance=None)
    except stripe.SignatureVerificationError as e:
        raise SecurityError(str(e))


def parse_event(raw_body: bytes) -> WebhookEvent:
    try:
        payload = json.loads(raw_body)
    except ValueError as e:
        raise PayloadValidationError(f"Body is not valid JSON: {e}")
    return WebhookEvent.from_payload(payload)


def check_freshness(event: WebhookEvent, now: Optional[float] = None) -> None:
    """
    Raises:
        ExpiredEventError: the event is older than ANTI_REPLAY_WINDOW_SECONDS.
    """
    now = time.time() if now is None else now
    window = settings.ANTI_REPLAY_WINDOW_SECONDS
    age = int(now - event.created)
    if age > window:
        raise ExpiredEventError(event.id, age, window)


def handle_event(raw_body: bytes, signature_header: str, now: Optional[float] = None) -> WebhookResult:
    """
    Run one delivery through the pipeline.

    Args:
        raw_body: Request body exactly as received
        signature_header: Value of the Stripe-Signature header
        now: Current unix time, for tests

    Returns:
        WebhookResult, acked or rejected
    """
    try:
        verify_signature(raw_body, signature_header, settings.STRIPE_WEBHOOK_SECRET)
    except SecurityError as e:
        logger.warning(f"[WEBHOOK] Signature verification failed: {e}")
        return WebhookResult.rejected(RejectReason.INVALID_SIGNATURE, str(e))

    try:
        event = parse_event(raw_body)
    except PayloadValidationError as e:
        logger.warning(f"[WEBHOOK] Malformed event: {e}")
        return WebhookResult.rejected(RejectReason.MALFORMED, str(e))

    try:
        check_freshness(event, now)
    except ExpiredEventError as e:
        logger.warning(f"[WEBHOOK {event.id}] {e}, rejecting")
        return WebhookResult.rejected(RejectReason.EXPIRED, str(e), event_id=event.id)

    if dedup.already_processed(event.id):
        logger.info(f"[WEBHOOK {event.id}] already processed, skipping")
        return WebhookResult.acked(event.id, AckStatus.DUPLICATE)

    with transaction.atomic():
        if not dedup.record_event(event):
            logger.info(f"[WEBHOOK {event.id}] claimed by a concurrent delivery, skipping")
            return WebhookResult.acked(event.id, AckStatus.DUPLICATE)

        result = handlers.dispatch(event)
        ack = AckStatus.IGNORED if result.ignored else AckStatus.PROCESSED
        dedup.mark_processed(event.id, result.detail or ack.value)
        publish_on_commit(result.invalidation)

    logger.info(f"[WEBHOOK {event.id}] {event.type} {ack.value}: {result.detail}")
    return WebhookResult.acked(event.id, ack, result.detail, result.invalidation)
