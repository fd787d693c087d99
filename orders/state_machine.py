"""
Order State Machine - every order transition and its side effects.

Each operation:
1. Locks the order row with select_for_update()
2. Checks the current state and returns early when the transition was
   already applied (webhooks are delivered at least once)
3. Applies ledger changes and the order update in one atomic block
4. Queues notifications with transaction.on_commit
5. Returns a TransitionResult carrying the cache topics it made stale;
   the caller publishes them after its own transaction commits

Business-rule failures are results, not exceptions. Storage errors
propagate unchanged.
"""
import logging
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from typing import Dict, List, Optional

from django.conf import settings
from django.db import transaction
from django.utils import timezone

from core import invalidation
from core.concurrency import retry_on_conflict
from core.exceptions import (
    ConcurrencyConflict,
    DiscountRejected,
    InsufficientStock,
    OrderValidationError,
    SkuInactive,
    SkuNotFound,
)
from core.invalidation import CacheInvalidation
from discounts import ledger as discount_ledger
from inventory import ledger as stock_ledger

from . import tasks
from .models import Order, OrderHistory, OrderItem

logger = logging.getLogger(__name__)

STOCK_ERRORS = (InsufficientStock, SkuInactive, SkuNotFound)

# A cancelled order in one of these never took money before
UNPAID_STATUSES = (Order.PaymentStatus.PENDING, Order.PaymentStatus.FAILED)


class Outcome(str, Enum):
    APPLIED = 'APPLIED'
    ALREADY_APPLIED = 'ALREADY_APPLIED'
    NOT_FOUND = 'NOT_FOUND'
    INVALID_TRANSITION = 'INVALID_TRANSITION'
    NOT_PERMITTED = 'NOT_PERMITTED'
    INSUFFICIENT_STOCK = 'INSUFFICIENT_STOCK'


@dataclass(frozen=True)
class TransitionResult:
    outcome: Outcome
    order: Optional[Order] = None
    message: str = ''
    invalidation: CacheInvalidation = invalidation.NONE

    @property
    def applied(self) -> bool:
        return self.outcome == Outcome.APPLIED

    @property
    def ok(self) -> bool:
        return self.outcome in (Outcome.APPLIED, Outcome.ALREADY_APPLIED)


def _lock_order(order_id: int) -> Optional[Order]:
    return Order.objects.select_for_update().filter(pk=order_id).first()


def _not_found(order_id: int) -> TransitionResult:
    logger.warning(f"Order {order_id} not found")
    return TransitionResult(Outcome.NOT_FOUND, message=f"Order {order_id} not found")


def _invalid(order: Order, target: str) -> TransitionResult:
    message = f"Order #{order.order_number}: cannot go from {order.status} to {target}"
    logger.warning(message)
    return TransitionResult(Outcome.INVALID_TRANSITION, order, message)


def defer_task(task, *args, countdown: Optional[int] = None):
    """Queue a Celery task once the surrounding transaction commits."""
    def send():
        if countdown:
            task.apply_async(args=args, countdown=countdown)
        else:
            task.delay(*args)
    # robust: a broker outage is logged and never undoes committed work
    transaction.on_commit(send, robust=True)


def record_history(
    order: Order,
    action: str,
    previous_status: str = '',
    note: str = '',
    source: str = OrderHistory.Source.SYSTEM,
    author_name: str = '',
    metadata: Optional[Dict] = None,
) -> OrderHistory:
    return OrderHistory.objects.create(
        order=order,
        action=action,
        previous_status=previous_status or order.status,
        new_status=order.status,
        payment_status=order.payment_status,
        fulfillment_status=order.fulfillment_status,
        note=note,
        source=source,
        author_name=author_name,
        metadata=metadata or {},
    )


def _stock_keys(order: Order) -> List[OrderItem]:
    # Locking stock units in id order keeps concurrent confirmations from deadlocking
    return list(order.items.order_by('stock_unit_id'))


def release_order_stock(order: Order) -> List[int]:
    """Restock everything the order committed. Returns the touched SKU ids."""
    touched = []
    for item in _stock_keys(order):
        if stock_ledger.release(item.stock_unit_id, order.pk):
            touched.append(item.stock_unit_id)
    return touched


def reverse_order_discount(order: Order) -> CacheInvalidation:
    if order.discount_code_id is None:
        return invalidation.NONE
    code = order.discount_code.code
    if discount_ledger.reverse(code, order.pk):
        return invalidation.for_discount(code)
    return invalidation.NONE


# =============================================================================
# Checkout
# =============================================================================

def validate_order_items(items: List[Dict]) -> None:
    """
    Validate order items structure.

    Args:
        items: List of dicts with 'sku_id' and 'quantity'

    Raises:
        OrderValidationError: If validation fails
    """
    if not items:
        raise OrderValidationError("Order must contain at least one item")

    seen_skus = set()
    for idx, item in enumerate(items):
        if 'sku_id' not in item:
            raise OrderValidationError(f"Item {idx}: missing 'sku_id'")
        if 'quantity' not in item:
            raise OrderValidationError(f"Item {idx}: missing 'quantity'")

        quantity = item['quantity']
        if not isinstance(quantity, int) or quantity < 1:
            raise OrderValidationError(f"Item {idx}: quantity must be a positive integer")

        if item['sku_id'] in seen_skus:
            raise OrderValidationError(f"Item {idx}: duplicate sku_id {item['sku_id']}")
        seen_skus.add(item['sku_id'])


@transaction.atomic
def create_pending_order(
    customer_email: str,
    items: List[Dict],
    shipping: Optional[Dict] = None,
    shipping_cost: int = 0,
    discount_code: str = '',
    user_id: str = '',
    customer_name: str = '',
    currency: str = 'EUR',
    checkout_session_id: str = '',
) -> TransitionResult:
    """
    Persist a PENDING order for a checkout session.

    Items are snapshotted from their stock units at current prices and the
    totals are computed here, once. Stock is only checked, not held: it is
    committed when payment is confirmed.

    Raises:
        OrderValidationError, SkuNotFound, SkuInactive, InsufficientStock,
        DiscountRejected: nothing is written.
    """
    validate_order_items(items)

    lines = []
    for item in items:
        unit = stock_ledger.reserve(item['sku_id'], item['quantity'])
        lines.append((unit, item['quantity']))

    subtotal = sum(unit.price * quantity for unit, quantity in lines)

    discount = None
    discount_amount = 0
    if discount_code:
        applied = discount_ledger.validate(discount_code, subtotal, user_id=user_id or None)
        if isinstance(applied, discount_ledger.Rejection):
            raise DiscountRejected(applied.code, applied.reason.value, applied.message)
        discount = applied.discount_id
        discount_amount = applied.amount

    shipping = shipping or {}
    order = Order.objects.create(
        customer_email=customer_email,
        customer_name=customer_name,
        user_id=user_id,
        subtotal=subtotal,
        discount_amount=discount_amount,
        shipping_cost=shipping_cost,
        total=subtotal - discount_amount + shipping_cost,
        currency=currency,
        discount_code_id=discount,
        checkout_session_id=checkout_session_id,
        **{f'shipping_{key}': value for key, value in shipping.items()},
    )
    OrderItem.objects.bulk_create([
        OrderItem(
            order=order,
            stock_unit=unit,
            product_title=unit.product.title,
            sku_code=unit.sku,
            sku_color=unit.color,
            sku_material=unit.material,
            sku_size=unit.size,
            unit_price=unit.price,
            quantity=quantity,
        )
        for unit, quantity in lines
    ])
    record_history(order, OrderHistory.Action.CREATED, source=OrderHistory.Source.CUSTOMER)

    logger.info(f"Order #{order.order_number} created: {len(lines)} items, total {order.total}")
    return TransitionResult(Outcome.APPLIED, order, invalidation=invalidation.for_order(order))


# =============================================================================
# Payment
# =============================================================================

def _hold_for_reconciliation(
    order: Order,
    reason: str,
    charge_ref: str,
    source: str,
    outcome: Outcome = Outcome.INSUFFICIENT_STOCK,
) -> TransitionResult:
    """Paid but unfulfillable: leave the order as it is and flag it for an operator."""
    first_time = not order.needs_reconciliation
    order.needs_reconciliation = True
    order.reconciliation_reason = reason
    if charge_ref:
        order.payment_intent_id = charge_ref
    order.save(update_fields=['needs_reconciliation', 'reconciliation_reason', 'payment_intent_id', 'updated_at'])

    logger.error(f"Order #{order.order_number}: payment received but cannot be fulfilled: {reason}")
    if first_time:
        record_history(order, OrderHistory.Action.RECONCILIATION, note=reason, source=source)
        defer_task(
            tasks.send_admin_alert,
            f"Order {order.order_number} needs reconciliation",
            f"Payment {charge_ref or 'n/a'} was received but the order cannot be fulfilled.\n\n{reason}",
        )

    return TransitionResult(outcome, order, reason, invalidation.for_order(order))


@retry_on_conflict
def _apply_payment(order_id: int, charge_ref: str, refs: Dict, source: str) -> TransitionResult:
    order = _lock_order(order_id)
    if order is None:
        return _not_found(order_id)

    if order.payment_status != Order.PaymentStatus.PENDING or order.status != Order.Status.PENDING:
        if order.status == Order.Status.CANCELLED and order.payment_status in UNPAID_STATUSES:
            # Money was taken for an order we already gave up on
            reason = (
                f"Payment {charge_ref or 'n/a'} succeeded after the order was cancelled "
                f"(payment {order.payment_status}): refund it or restore the order"
            )
            return _hold_for_reconciliation(order, reason, charge_ref, source, Outcome.INVALID_TRANSITION)
        if order.status == Order.Status.CANCELLED:
            message = f"Order #{order.order_number}: payment {charge_ref} received for a cancelled order"
            logger.warning(message)
            return TransitionResult(Outcome.INVALID_TRANSITION, order, message)
        logger.info(f"Order #{order.order_number} already paid, skipping")
        return TransitionResult(Outcome.ALREADY_APPLIED, order)

    items = _stock_keys(order)
    try:
        with transaction.atomic():
            for item in items:
                stock_ledger.commit(item.stock_unit_id, item.quantity, order.pk)
    except STOCK_ERRORS as e:
        return _hold_for_reconciliation(order, str(e), charge_ref, source)

    signal = invalidation.for_order(order) | invalidation.for_stock_units(i.stock_unit_id for i in items)

    metadata = {}
    if order.discount_code_id:
        code = order.discount_code.code
        redemption = discount_ledger.redeem(code, order.pk, order.discount_amount, order.user_id or None)
        metadata['discount_redemption'] = redemption.status.value
        if not redemption.ok:
            logger.warning(
                f"Order #{order.order_number}: discount {code} not redeemed ({redemption.status.value}), "
                "keeping the order"
            )
        signal = signal | invalidation.for_discount(code)

    previous = order.status
    order.status = Order.Status.PROCESSING
    order.payment_status = Order.PaymentStatus.PAID
    order.fulfillment_status = Order.FulfillmentStatus.PROCESSING
    order.paid_at = timezone.now()
    order.needs_reconciliation = False
    order.reconciliation_reason = ''
    order.awaiting_payment = False
    if charge_ref:
        order.payment_intent_id = charge_ref
    for field, value in refs.items():
        if value:
            setattr(order, field, value)
    order.save()

    record_history(order, OrderHistory.Action.PAYMENT_CONFIRMED, previous, source=source, metadata=metadata)
    defer_task(tasks.send_order_confirmation, order.pk)
    defer_task(tasks.send_admin_new_order, order.pk)

    logger.info(f"Order #{order.order_number} paid, {len(items)} items committed")
    return TransitionResult(Outcome.APPLIED, order, invalidation=signal)


def confirm_payment(
    order_id: int,
    charge_ref: str = '',
    checkout_session_id: str = '',
    gateway_customer_id: str = '',
    invoice_id: str = '',
    source: str = OrderHistory.Source.WEBHOOK,
) -> TransitionResult:
    """
    PENDING -> PROCESSING once the gateway reports the payment.

    Stock for every item is committed all-or-nothing. If any unit cannot
    be committed the order stays PENDING, is flagged for reconciliation
    and an operator is alerted. A discount that can no longer be redeemed
    is logged but does not block the order.

    Safe to call repeatedly: a paid order is returned unchanged.
    """
    refs = {
        'checkout_session_id': checkout_session_id,
        'gateway_customer_id': gateway_customer_id,
        'invoice_id': invoice_id,
    }
    try:
        return _apply_payment(order_id, charge_ref, refs, source)
    except ConcurrencyConflict as e:
        with transaction.atomic():
            order = _lock_order(order_id)
            if order is None:
                return _not_found(order_id)
            return _hold_for_reconciliation(order, f"Stock could not be committed: {e}", charge_ref, source)


@retry_on_conflict
def mark_awaiting_payment(
    order_id: int,
    charge_ref: str = '',
    checkout_session_id: str = '',
    source: str = OrderHistory.Source.WEBHOOK,
) -> TransitionResult:
    """
    Checkout completed with a payment that settles later (bank debit,
    vouchers). The order stays PENDING and is left out of the
    abandoned-checkout sweep until the async result arrives.
    """
    order = _lock_order(order_id)
    if order is None:
        return _not_found(order_id)

    if order.awaiting_payment or order.paid_at is not None:
        return TransitionResult(Outcome.ALREADY_APPLIED, order)
    if order.status != Order.Status.PENDING or order.payment_status != Order.PaymentStatus.PENDING:
        return _invalid(order, Order.Status.PROCESSING)

    order.awaiting_payment = True
    if charge_ref:
        order.payment_intent_id = charge_ref
    if checkout_session_id:
        order.checkout_session_id = checkout_session_id
    order.save(update_fields=['awaiting_payment', 'payment_intent_id', 'checkout_session_id', 'updated_at'])

    record_history(
        order, OrderHistory.Action.AWAITING_PAYMENT,
        note=f"Payment {charge_ref or 'n/a'} pending", source=source,
    )
    logger.info(f"Order #{order.order_number} awaiting delayed payment {charge_ref or 'n/a'}")
    return TransitionResult(Outcome.APPLIED, order, invalidation=invalidation.for_order(order))


def _cancel_unpaid(order: Order, action: str, source: str, **fields) -> TransitionResult:
    previous = order.status
    order.status = Order.Status.CANCELLED
    order.payment_status = Order.PaymentStatus.FAILED
    order.cancelled_at = timezone.now()
    order.awaiting_payment = False
    for field, value in fields.items():
        if value:
            setattr(order, field, value)
    order.save()

    record_history(order, action, previous, note=fields.get('payment_failure_message', ''), source=source)
    logger.info(f"Order #{order.order_number} cancelled ({action})")
    return TransitionResult(Outcome.APPLIED, order, invalidation=invalidation.for_order(order))


@retry_on_conflict
def expire_checkout(order_id: int, source: str = OrderHistory.Source.WEBHOOK) -> TransitionResult:
    """PENDING -> CANCELLED when the checkout session expired unpaid."""
    order = _lock_order(order_id)
    if order is None:
        return _not_found(order_id)

    if order.status == Order.Status.CANCELLED:
        return TransitionResult(Outcome.ALREADY_APPLIED, order)
    if order.status != Order.Status.PENDING or order.payment_status != Order.PaymentStatus.PENDING:
        return _invalid(order, Order.Status.CANCELLED)
    if order.needs_reconciliation:
        message = f"Order #{order.order_number} is held for reconciliation, not expiring"
        logger.warning(message)
        return TransitionResult(Outcome.INVALID_TRANSITION, order, message)
    if order.awaiting_payment:
        message = f"Order #{order.order_number} is waiting for a delayed payment, not expiring"
        logger.warning(message)
        return TransitionResult(Outcome.INVALID_TRANSITION, order, message)

    return _cancel_unpaid(order, OrderHistory.Action.CHECKOUT_EXPIRED, source)


@retry_on_conflict
def mark_payment_failed(
    order_id: int,
    charge_ref: str = '',
    failure_code: str = '',
    failure_message: str = '',
    source: str = OrderHistory.Source.WEBHOOK,
) -> TransitionResult:
    """PENDING -> CANCELLED with payment FAILED and the gateway's failure details."""
    order = _lock_order(order_id)
    if order is None:
        return _not_found(order_id)

    if order.status == Order.Status.CANCELLED and order.payment_status == Order.PaymentStatus.FAILED:
        return TransitionResult(Outcome.ALREADY_APPLIED, order)
    if order.status != Order.Status.PENDING or order.payment_status != Order.PaymentStatus.PENDING:
        return _invalid(order, Order.Status.CANCELLED)

    return _cancel_unpaid(
        order,
        OrderHistory.Action.PAYMENT_FAILED,
        source,
        payment_intent_id=charge_ref,
        payment_failure_code=failure_code,
        payment_failure_message=failure_message,
    )


# =============================================================================
# Fulfillment
# =============================================================================

@retry_on_conflict
def mark_shipped(
    order_id: int,
    tracking_number: str = '',
    tracking_url: str = '',
    carrier: str = '',
    author_name: str = '',
    source: str = OrderHistory.Source.ADMIN,
) -> TransitionResult:
    """PROCESSING -> SHIPPED, then notify the customer."""
    order = _lock_order(order_id)
    if order is None:
        return _not_found(order_id)

    if order.status == Order.Status.SHIPPED:
        return TransitionResult(Outcome.ALREADY_APPLIED, order)
    if not order.can_transition_to(Order.Status.SHIPPED):
        return _invalid(order, Order.Status.SHIPPED)

    previous = order.status
    order.status = Order.Status.SHIPPED
    order.fulfillment_status = Order.FulfillmentStatus.SHIPPED
    order.shipped_at = timezone.now()
    order.tracking_number = tracking_number
    order.tracking_url = tracking_url
    order.carrier = carrier
    order.save()

    record_history(
        order, OrderHistory.Action.SHIPPED, previous, source=source, author_name=author_name,
        metadata={'tracking_number': tracking_number, 'carrier': carrier},
    )
    defer_task(tasks.send_shipping_notification, order.pk)

    logger.info(f"Order #{order.order_number} shipped ({carrier} {tracking_number})")
    return TransitionResult(Outcome.APPLIED, order, invalidation=invalidation.for_order(order))


@retry_on_conflict
def mark_delivered(order_id: int, author_name: str = '', source: str = OrderHistory.Source.ADMIN) -> TransitionResult:
    """SHIPPED -> DELIVERED, then schedule the review request."""
    order = _lock_order(order_id)
    if order is None:
        return _not_found(order_id)

    if order.status == Order.Status.DELIVERED:
        return TransitionResult(Outcome.ALREADY_APPLIED, order)
    if not order.can_transition_to(Order.Status.DELIVERED):
        return _invalid(order, Order.Status.DELIVERED)

    previous = order.status
    order.status = Order.Status.DELIVERED
    order.fulfillment_status = Order.FulfillmentStatus.DELIVERED
    order.delivered_at = timezone.now()
    order.save()

    record_history(order, OrderHistory.Action.DELIVERED, previous, source=source, author_name=author_name)
    defer_task(tasks.send_delivery_confirmation, order.pk)
    defer_task(
        tasks.send_review_request,
        order.pk,
        countdown=int(timedelta(days=settings.REVIEW_REQUEST_DELAY_DAYS).total_seconds()),
    )

    logger.info(f"Order #{order.order_number} delivered")
    return TransitionResult(Outcome.APPLIED, order, invalidation=invalidation.for_order(order))


@retry_on_conflict
def mark_returned(order_id: int, author_name: str = '', source: str = OrderHistory.Source.ADMIN) -> TransitionResult:
    """
    Record that a delivered order came back. Status stays DELIVERED.

    Returned goods are inspected before going back on sale, so stock is
    not restocked here; operators use a stock adjustment.
    """
    order = _lock_order(order_id)
    if order is None:
        return _not_found(order_id)

    if order.fulfillment_status == Order.FulfillmentStatus.RETURNED:
        return TransitionResult(Outcome.ALREADY_APPLIED, order)
    if order.status != Order.Status.DELIVERED:
        message = f"Order #{order.order_number}: only delivered orders can be returned (status {order.status})"
        logger.warning(message)
        return TransitionResult(Outcome.INVALID_TRANSITION, order, message)

    order.fulfillment_status = Order.FulfillmentStatus.RETURNED
    order.save(update_fields=['fulfillment_status', 'updated_at'])

    record_history(order, OrderHistory.Action.RETURNED, source=source, author_name=author_name)
    logger.info(f"Order #{order.order_number} returned")
    return TransitionResult(Outcome.APPLIED, order, invalidation=invalidation.for_order(order))


# =============================================================================
# Cancellation
# =============================================================================

@retry_on_conflict
def cancel(
    order_id: int,
    reason: str = '',
    privileged: bool = False,
    author_name: str = '',
    source: str = OrderHistory.Source.ADMIN,
) -> TransitionResult:
    """
    Cancel an order.

    PENDING orders cancel without side effects. PROCESSING and SHIPPED
    orders require ``privileged``: committed stock is released, the
    discount usage reversed and the payment marked REFUNDED (the refund
    itself is issued at the gateway).
    """
    order = _lock_order(order_id)
    if order is None:
        return _not_found(order_id)

    if order.status == Order.Status.CANCELLED:
        return TransitionResult(Outcome.ALREADY_APPLIED, order)
    if not order.can_transition_to(Order.Status.CANCELLED):
        return _invalid(order, Order.Status.CANCELLED)

    previous = order.status
    signal = invalidation.for_order(order)
    metadata = {}

    if previous != Order.Status.PENDING:
        if not privileged:
            message = f"Order #{order.order_number}: cancelling a {previous} order requires privileges"
            logger.warning(message)
            return TransitionResult(Outcome.NOT_PERMITTED, order, message)

        released = release_order_stock(order)
        signal = signal | invalidation.for_stock_units(released) | reverse_order_discount(order)
        metadata['released_sku_ids'] = released
        if order.payment_status in (Order.PaymentStatus.PAID, Order.PaymentStatus.PARTIALLY_REFUNDED):
            order.payment_status = Order.PaymentStatus.REFUNDED

    order.status = Order.Status.CANCELLED
    order.cancelled_at = timezone.now()
    order.save()

    record_history(
        order, OrderHistory.Action.CANCELLED, previous, note=reason,
        source=source, author_name=author_name, metadata=metadata,
    )
    defer_task(tasks.send_cancellation_notice, order.pk, reason)

    logger.info(f"Order #{order.order_number} cancelled from {previous}: {reason or 'no reason given'}")
    return TransitionResult(Outcome.APPLIED, order, invalidation=signal)
