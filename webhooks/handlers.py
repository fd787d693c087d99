"""
Event dispatch: one handler per event category.

Handlers translate the gateway object into a state-machine or refund
workflow call. They never raise for business conditions (unknown order,
transition already applied); those are logged and acknowledged so the
gateway stops redelivering.
"""
import logging
from dataclasses import dataclass
from functools import reduce
from typing import Any, Dict, Iterable, Optional

from core import invalidation
from core.invalidation import CacheInvalidation
from orders import refunds, state_machine
from orders.models import Order
from orders.state_machine import Outcome, TransitionResult

from .events import EventCategory, WebhookEvent

logger = logging.getLogger(__name__)

PAID_SESSION_STATUSES = ('paid', 'no_payment_required')


@dataclass(frozen=True)
class HandlerResult:
    ignored: bool = False
    detail: str = ''
    invalidation: CacheInvalidation = invalidation.NONE


def _from_transition(event: WebhookEvent, result: TransitionResult) -> HandlerResult:
    if result.outcome not in (Outcome.APPLIED, Outcome.ALREADY_APPLIED):
        logger.warning(f"[WEBHOOK {event.id}] {event.type}: {result.outcome.value} {result.message}")
    return HandlerResult(detail=result.outcome.value, invalidation=result.invalidation)


def _from_transitions(event: WebhookEvent, results: Iterable[TransitionResult]) -> HandlerResult:
    results = list(results)
    for result in results:
        if result.outcome not in (Outcome.APPLIED, Outcome.ALREADY_APPLIED):
            logger.warning(f"[WEBHOOK {event.id}] {event.type}: {result.outcome.value} {result.message}")
    signal = reduce(lambda acc, r: acc | r.invalidation, results, invalidation.NONE)
    return HandlerResult(detail=','.join(r.outcome.value for r in results), invalidation=signal)


def _order_not_found(event: WebhookEvent) -> HandlerResult:
    logger.warning(f"[WEBHOOK {event.id}] {event.type}: no matching order, acknowledging")
    return HandlerResult(detail=Outcome.NOT_FOUND.value)


def _ref(value: Any) -> str:
    """Gateway references arrive either as ids or as expanded objects."""
    if isinstance(value, dict):
        return value.get('id') or ''
    return value or ''


def find_order_id(obj: Dict[str, Any], *, session_id: str = '', payment_intent_id: str = '') -> Optional[int]:
    """
    Resolve the order an event refers to.

    Checked in order: metadata.order_number, client_reference_id, then
    the stored checkout session or payment references.
    """
    metadata = obj.get('metadata') or {}
    order_number = metadata.get('order_number') or obj.get('client_reference_id')
    orders = Order.objects.values_list('id', flat=True)

    if order_number:
        order_id = orders.filter(order_number=order_number).first()
        if order_id is not None:
            return order_id
    if session_id:
        order_id = orders.filter(checkout_session_id=session_id).first()
        if order_id is not None:
            return order_id
    if payment_intent_id:
        return orders.filter(payment_intent_id=payment_intent_id).first()
    return None


# =============================================================================
# Checkout sessions
# =============================================================================

def _confirm_session(event: WebhookEvent, session: Dict[str, Any]) -> HandlerResult:
    order_id = find_order_id(session, session_id=session.get('id', ''))
    if order_id is None:
        return _order_not_found(event)

    result = state_machine.confirm_payment(
        order_id,
        charge_ref=_ref(session.get('payment_intent')),
        checkout_session_id=session.get('id', ''),
        gateway_customer_id=_ref(session.get('customer')),
        invoice_id=_ref(session.get('invoice')),
    )
    return _from_transition(event, result)


def handle_checkout_completed(event: WebhookEvent) -> HandlerResult:
    session = event.data_object
    if session.get('payment_status') not in PAID_SESSION_STATUSES:
        # Delayed payment methods settle later via async_payment_succeeded
        logger.info(f"[WEBHOOK {event.id}] session {session.get('id')} completed unpaid, awaiting payment")
        order_id = find_order_id(session, session_id=session.get('id', ''))
        if order_id is None:
            return _order_not_found(event)
        result = state_machine.mark_awaiting_payment(
            order_id,
            charge_ref=_ref(session.get('payment_intent')),
            checkout_session_id=session.get('id', ''),
        )
        return _from_transition(event, result)
    return _confirm_session(event, session)


def handle_async_payment_succeeded(event: WebhookEvent) -> HandlerResult:
    return _confirm_session(event, event.data_object)


def handle_async_payment_failed(event: WebhookEvent) -> HandlerResult:
    session = event.data_object
    order_id = find_order_id(session, session_id=session.get('id', ''))
    if order_id is None:
        return _order_not_found(event)
    result = state_machine.mark_payment_failed(
        order_id,
        charge_ref=_ref(session.get('payment_intent')),
        failure_code='async_payment_failed',
        failure_message='The delayed payment did not go through.',
    )
    return _from_transition(event, result)


def handle_checkout_expired(event: WebhookEvent) -> HandlerResult:
    session = event.data_object
    order_id = find_order_id(session, session_id=session.get('id', ''))
    if order_id is None:
        return _order_not_found(event)
    return _from_transition(event, state_machine.expire_checkout(order_id))


# =============================================================================
# Payment intents
# =============================================================================

def handle_payment_succeeded(event: WebhookEvent) -> HandlerResult:
    intent = event.data_object
    order_id = find_order_id(intent, payment_intent_id=intent.get('id', ''))
    if order_id is None:
        return _order_not_found(event)
    result = state_machine.confirm_payment(
        order_id,
        charge_ref=intent.get('id', ''),
        gateway_customer_id=_ref(intent.get('customer')),
    )
    return _from_transition(event, result)


def handle_payment_failed(event: WebhookEvent) -> HandlerResult:
    intent = event.data_object
    order_id = find_order_id(intent, payment_intent_id=intent.get('id', ''))
    if order_id is None:
        return _order_not_found(event)

    error = intent.get('last_payment_error') or {}
    code = error.get('decline_code') or error.get('code') or 'payment_failed'
    result = state_machine.mark_payment_failed(
        order_id,
        charge_ref=intent.get('id', ''),
        failure_code=code,
        failure_message=error.get('message') or '',
    )
    return _from_transition(event, result)


def handle_payment_canceled(event: WebhookEvent) -> HandlerResult:
    intent = event.data_object
    order_id = find_order_id(intent, payment_intent_id=intent.get('id', ''))
    if order_id is None:
        return _order_not_found(event)
    result = state_machine.mark_payment_failed(
        order_id,
        charge_ref=intent.get('id', ''),
        failure_code='canceled',
        failure_message=intent.get('cancellation_reason') or '',
    )
    return _from_transition(event, result)


# =============================================================================
# Refunds and disputes
# =============================================================================

def handle_charge_refunded(event: WebhookEvent) -> HandlerResult:
    charge = dict(event.data_object, payment_intent=_ref(event.data_object.get('payment_intent')))
    return _from_transitions(event, refunds.sync_charge_refunds(charge))


def handle_refund_changed(event: WebhookEvent) -> HandlerResult:
    refund = event.data_object
    if refund.get('status') == 'failed':
        return handle_refund_failed(event)
    result = refunds.sync_refund(
        _ref(refund.get('payment_intent')),
        refund.get('id', ''),
        refund.get('amount') or 0,
        refund.get('status') or '',
        reason=refund.get('reason') or '',
    )
    return _from_transition(event, result)


def handle_refund_failed(event: WebhookEvent) -> HandlerResult:
    refund = event.data_object
    result = refunds.mark_refund_failed(
        refund.get('id', ''),
        failure_reason=refund.get('failure_reason') or '',
        payment_intent_id=_ref(refund.get('payment_intent')),
        amount=refund.get('amount') or 0,
    )
    return _from_transition(event, result)


def handle_dispute_created(event: WebhookEvent) -> HandlerResult:
    dispute = dict(event.data_object, payment_intent=_ref(event.data_object.get('payment_intent')))
    return _from_transition(event, refunds.record_dispute_opened(dispute))


def handle_dispute_closed(event: WebhookEvent) -> HandlerResult:
    dispute = dict(event.data_object, payment_intent=_ref(event.data_object.get('payment_intent')))
    return _from_transition(event, refunds.record_dispute_closed(dispute))


def dispatch(event: WebhookEvent) -> HandlerResult:
    match event.category:
        case EventCategory.CHECKOUT_COMPLETED:
            return handle_checkout_completed(event)
        case EventCategory.ASYNC_PAYMENT_SUCCEEDED:
            return handle_async_payment_succeeded(event)
        case EventCategory.ASYNC_PAYMENT_FAILED:
            return handle_async_payment_failed(event)
        case EventCategory.CHECKOUT_EXPIRED:
            return handle_checkout_expired(event)
        case EventCategory.PAYMENT_SUCCEEDED:
            return handle_payment_succeeded(event)
        case EventCategory.PAYMENT_FAILED:
            return handle_payment_failed(event)
        case EventCategory.PAYMENT_CANCELED:
            return handle_payment_canceled(event)
        case EventCategory.CHARGE_REFUNDED:
            return handle_charge_refunded(event)
        case EventCategory.REFUND_CREATED | EventCategory.REFUND_UPDATED:
            return handle_refund_changed(event)
        case EventCategory.REFUND_FAILED:
            return handle_refund_failed(event)
        case EventCategory.DISPUTE_CREATED:
            return handle_dispute_created(event)
        case EventCategory.DISPUTE_CLOSED:
            return handle_dispute_closed(event)
        case EventCategory.UNKNOWN:
            logger.info(f"[WEBHOOK {event.id}] unhandled event type {event.type}, ignoring")
            return HandlerResult(ignored=True, detail='UNHANDLED')
