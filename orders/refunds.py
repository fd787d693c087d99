"""
Refund and dispute workflow.

Refunds are issued at the payment gateway (dashboard or API) and reported
back through webhooks. This module mirrors them into Refund rows and keeps
Order.payment_status consistent with what was actually refunded:

    completed refunds == 0       PAID
    0 < completed < total        PARTIALLY_REFUNDED
    completed >= total           REFUNDED

Refund events never lower the status: a privileged cancel already marked
REFUNDED stays REFUNDED while its gateway refund is still pending. Only a
refund that completed and then failed moves it back.

A full refund of an order whose goods never left releases its stock,
reverses its discount usage and cancels it.
"""
import logging
from datetime import datetime, timezone as dt_timezone
from typing import Dict, List, Optional

from django.db.models import Sum
from django.utils import timezone

from core import invalidation
from core.concurrency import retry_on_conflict

from . import tasks
from .models import Dispute, Order, OrderHistory, Refund
from .state_machine import (
    Outcome,
    TransitionResult,
    defer_task,
    record_history,
    release_order_stock,
    reverse_order_discount,
)

logger = logging.getLogger(__name__)

REFUND_STATUS_MAP = {
    'succeeded': Refund.Status.COMPLETED,
    'pending': Refund.Status.PENDING,
    'requires_action': Refund.Status.PENDING,
    'failed': Refund.Status.FAILED,
    'canceled': Refund.Status.CANCELLED,
}

DISPUTE_REASON_LABELS = {
    'duplicate': 'Duplicate payment',
    'fraudulent': 'Fraudulent',
    'subscription_canceled': 'Subscription cancelled',
    'product_unacceptable': 'Product unacceptable',
    'product_not_received': 'Product not received',
    'unrecognized': 'Unrecognized transaction',
    'credit_not_processed': 'Credit not processed',
    'general': 'General dispute',
}

REFUNDABLE_PAYMENT_STATUSES = (
    Order.PaymentStatus.PAID,
    Order.PaymentStatus.PARTIALLY_REFUNDED,
    Order.PaymentStatus.REFUNDED,
)

# Refund events only ever move payment status forward along this order
PAYMENT_STATUS_RANK = {
    Order.PaymentStatus.PAID: 0,
    Order.PaymentStatus.PARTIALLY_REFUNDED: 1,
    Order.PaymentStatus.REFUNDED: 2,
}


def _order_for_charge(payment_intent_id: str) -> Optional[Order]:
    if not payment_intent_id:
        return None
    order_id = (
        Order.objects.filter(payment_intent_id=payment_intent_id)
        .values_list('id', flat=True)
        .first()
    )
    if order_id is None:
        return None
    return Order.objects.select_for_update().get(pk=order_id)


def _missing_order(payment_intent_id: str, what: str) -> TransitionResult:
    message = f"No order found for {what} (payment {payment_intent_id})"
    logger.warning(message)
    return TransitionResult(Outcome.NOT_FOUND, message=message)


def _payment_status_for(order: Order) -> str:
    refunded = order.refunds.filter(status=Refund.Status.COMPLETED).aggregate(
        total=Sum('amount')
    )['total'] or 0
    if refunded <= 0:
        return Order.PaymentStatus.PAID
    if refunded < order.total:
        return Order.PaymentStatus.PARTIALLY_REFUNDED
    return Order.PaymentStatus.REFUNDED


@retry_on_conflict
def sync_refund(
    payment_intent_id: str,
    gateway_refund_id: str,
    amount: int,
    status: str,
    reason: str = '',
    failure_reason: str = '',
    source: str = OrderHistory.Source.WEBHOOK,
) -> TransitionResult:
    """
    Upsert a gateway refund and recompute the order's payment status.

    ``status`` is the gateway's refund status (succeeded, pending, failed,
    canceled). Re-delivering the same refund changes nothing.
    """
    order = _order_for_charge(payment_intent_id)
    if order is None:
        return _missing_order(payment_intent_id, f"refund {gateway_refund_id}")

    if order.payment_status not in REFUNDABLE_PAYMENT_STATUSES:
        message = (
            f"Order #{order.order_number}: refund {gateway_refund_id} reported "
            f"but payment is {order.payment_status}"
        )
        logger.warning(message)
        return TransitionResult(Outcome.INVALID_TRANSITION, order, message)

    refund_status = REFUND_STATUS_MAP.get(status, Refund.Status.PENDING)
    existing = Refund.objects.filter(gateway_refund_id=gateway_refund_id).first()
    if existing is not None and existing.status == refund_status and existing.amount == amount:
        return TransitionResult(Outcome.ALREADY_APPLIED, order)

    refund, _ = Refund.objects.update_or_create(
        gateway_refund_id=gateway_refund_id,
        defaults={
            'order': order,
            'amount': amount,
            'status': refund_status,
            'reason': reason or '',
            'failure_reason': failure_reason or '',
        },
    )

    previous_status = order.status
    previous_payment = order.payment_status
    order.payment_status = max(
        previous_payment, _payment_status_for(order), key=PAYMENT_STATUS_RANK.__getitem__
    )
    signal = invalidation.for_order(order)
    metadata = {
        'gateway_refund_id': gateway_refund_id,
        'amount': amount,
        'refund_status': refund_status,
        'previous_payment_status': previous_payment,
    }

    fully_refunded = order.payment_status == Order.PaymentStatus.REFUNDED
    if fully_refunded and not order.has_shipped and order.status == Order.Status.PROCESSING:
        released = release_order_stock(order)
        signal = signal | invalidation.for_stock_units(released) | reverse_order_discount(order)
        metadata['released_sku_ids'] = released
        order.status = Order.Status.CANCELLED
        order.fulfillment_status = Order.FulfillmentStatus.UNFULFILLED
        order.cancelled_at = timezone.now()
    order.save()

    record_history(
        order, OrderHistory.Action.REFUND_UPDATED, previous_status,
        note=f"Refund {gateway_refund_id}: {refund_status}", source=source, metadata=metadata,
    )
    if refund_status == Refund.Status.COMPLETED and (existing is None or existing.status != refund_status):
        defer_task(tasks.send_refund_notice, refund.pk)

    logger.info(
        f"Order #{order.order_number}: refund {gateway_refund_id} {refund_status}, "
        f"payment {previous_payment} -> {order.payment_status}"
    )
    return TransitionResult(Outcome.APPLIED, order, invalidation=signal)


def sync_charge_refunds(charge: Dict) -> List[TransitionResult]:
    """Apply every refund listed on a charge.refunded payload."""
    payment_intent_id = charge.get('payment_intent') or ''
    refunds = (charge.get('refunds') or {}).get('data') or []
    if not refunds:
        logger.warning(
            f"Charge {charge.get('id')} refunded {charge.get('amount_refunded', 0)} "
            "without refund details, waiting for refund events"
        )
        return []

    return [
        sync_refund(
            payment_intent_id,
            refund['id'],
            refund.get('amount') or 0,
            refund.get('status') or '',
            reason=refund.get('reason') or '',
            failure_reason=refund.get('failure_reason') or '',
        )
        for refund in refunds
        if refund.get('id')
    ]


@retry_on_conflict
def mark_refund_failed(
    gateway_refund_id: str,
    failure_reason: str = '',
    payment_intent_id: str = '',
    amount: int = 0,
) -> TransitionResult:
    """
    Flag a refund the gateway could not pay out and alert an operator.

    A failure reported before the refund itself was seen is recorded from
    ``payment_intent_id`` and ``amount``.
    """
    refund = Refund.objects.filter(gateway_refund_id=gateway_refund_id).first()
    if refund is None:
        order = _order_for_charge(payment_intent_id)
        if order is None:
            return _missing_order(payment_intent_id, f"failed refund {gateway_refund_id}")
        refund = Refund.objects.create(
            gateway_refund_id=gateway_refund_id,
            order=order,
            amount=amount,
            status=Refund.Status.PENDING,
        )
    else:
        order = Order.objects.select_for_update().get(pk=refund.order_id)

    if refund.status == Refund.Status.FAILED:
        return TransitionResult(Outcome.ALREADY_APPLIED, order)

    was_completed = refund.status == Refund.Status.COMPLETED
    refund.status = Refund.Status.FAILED
    refund.failure_reason = failure_reason or ''
    refund.save(update_fields=['status', 'failure_reason', 'updated_at'])

    previous_payment = order.payment_status
    if was_completed:
        order.payment_status = _payment_status_for(order)
        order.save(update_fields=['payment_status', 'updated_at'])

    record_history(
        order, OrderHistory.Action.REFUND_FAILED,
        note=f"Refund {gateway_refund_id} failed: {failure_reason or 'unknown reason'}",
        source=OrderHistory.Source.WEBHOOK,
        metadata={'gateway_refund_id': gateway_refund_id, 'previous_payment_status': previous_payment},
    )
    logger.error(f"Order #{order.order_number}: refund {gateway_refund_id} failed ({failure_reason})")
    defer_task(
        tasks.send_admin_alert,
        f"Refund failed for order {order.order_number}",
        f"Refund {gateway_refund_id} of {refund.amount} failed: {failure_reason or 'unknown reason'}.\n"
        f"Customer: {order.customer_email}",
    )
    return TransitionResult(Outcome.APPLIED, order, invalidation=invalidation.for_order(order))


def _due_by(dispute: Dict) -> Optional[datetime]:
    due_by = (dispute.get('evidence_details') or {}).get('due_by')
    if not due_by:
        return None
    return datetime.fromtimestamp(due_by, tz=dt_timezone.utc)


@retry_on_conflict
def record_dispute_opened(dispute: Dict) -> TransitionResult:
    """Record a chargeback, add an audit note once and alert an operator."""
    dispute_id = dispute.get('id') or ''
    order = _order_for_charge(dispute.get('payment_intent') or '')
    if order is None:
        return _missing_order(dispute.get('payment_intent') or '', f"dispute {dispute_id}")

    record, created = Dispute.objects.update_or_create(
        gateway_dispute_id=dispute_id,
        defaults={
            'order': order,
            'amount': dispute.get('amount') or 0,
            'reason': dispute.get('reason') or '',
            'status': dispute.get('status') or 'needs_response',
            'due_by': _due_by(dispute),
        },
    )
    if not created:
        logger.info(f"Order #{order.order_number}: dispute {dispute_id} already recorded")
        return TransitionResult(Outcome.ALREADY_APPLIED, order)

    reason = DISPUTE_REASON_LABELS.get(record.reason, record.reason or 'unknown')
    due = record.due_by.date().isoformat() if record.due_by else 'n/a'
    note = f"Dispute {dispute_id} opened. Reason: {reason}. Amount: {record.amount}. Respond by: {due}."
    record_history(
        order, OrderHistory.Action.DISPUTE_OPENED, note=note,
        source=OrderHistory.Source.WEBHOOK, metadata={'gateway_dispute_id': dispute_id},
    )
    logger.error(f"Order #{order.order_number}: {note}")
    defer_task(tasks.send_admin_alert, f"Dispute opened on order {order.order_number}", note)
    return TransitionResult(Outcome.APPLIED, order, invalidation=invalidation.for_order(order))


@retry_on_conflict
def record_dispute_closed(dispute: Dict) -> TransitionResult:
    """Store the final dispute status and note the result on the order."""
    dispute_id = dispute.get('id') or ''
    record = Dispute.objects.select_related('order').filter(gateway_dispute_id=dispute_id).first()
    if record is None:
        # Closed before we saw it open: record the opening first
        result = record_dispute_opened(dict(dispute, status='needs_response'))
        if result.order is None:
            return result
        record = Dispute.objects.select_related('order').get(gateway_dispute_id=dispute_id)

    status = dispute.get('status') or record.status
    order = Order.objects.select_for_update().get(pk=record.order_id)
    if record.status == status and record.is_closed:
        return TransitionResult(Outcome.ALREADY_APPLIED, order)

    record.status = status
    record.save(update_fields=['status', 'updated_at'])
    note = f"Dispute {dispute_id} closed: {status}."
    record_history(
        order, OrderHistory.Action.DISPUTE_CLOSED, note=note,
        source=OrderHistory.Source.WEBHOOK, metadata={'gateway_dispute_id': dispute_id},
    )
    logger.warning(f"Order #{order.order_number}: {note}")
    defer_task(tasks.send_admin_alert, f"Dispute closed on order {order.order_number}", note)
    return TransitionResult(Outcome.APPLIED, order, invalidation=invalidation.for_order(order))
