"""
Celery tasks for order notifications and housekeeping.

Notification tasks are queued with transaction.on_commit by the state
machine, so they only ever see committed orders. Each one re-reads the
order and skips quietly when it no longer matches what triggered it.

Tasks:
    - send_order_confirmation: Customer email after payment
    - send_admin_new_order: Operator email for a new paid order
    - send_shipping_notification: Customer email with tracking details
    - send_delivery_confirmation: Customer email on delivery
    - send_review_request: Delayed customer email asking for a review
    - send_cancellation_notice: Customer email on cancellation
    - send_refund_notice: Customer email when a refund completes
    - send_admin_alert: Operator email for conditions needing a human
    - expire_abandoned_checkouts: Periodic cancellation of stale PENDING orders
"""
import logging
from datetime import timedelta

from celery import shared_task
from django.conf import settings
from django.core.mail import send_mail
from django.utils import timezone

logger = logging.getLogger(__name__)

NOTIFICATION_TASK_OPTIONS = dict(
    bind=True,
    max_retries=3,
    default_retry_delay=60,
    autoretry_for=(Exception,),
    retry_backoff=True
)


def format_amount(amount: int, currency: str) -> str:
    return f"{amount / 100:.2f} {currency}"


def _load_order(order_id: int):
    from orders.models import Order

    try:
        return Order.objects.prefetch_related('items').get(id=order_id)
    except Order.DoesNotExist:
        logger.error(f"Order #{order_id} not found for notification")
        return None


def _items_summary(order) -> str:
    return '\n'.join(
        f"  - {item.quantity}x {item.product_title} ({item.sku_code}) "
        f"@ {format_amount(item.unit_price, order.currency)}"
        for item in order.items.all()
    )


@shared_task(**NOTIFICATION_TASK_OPTIONS)
def send_order_confirmation(self, order_id: int):
    """
    Email the customer once payment is confirmed.

    Args:
        order_id: ID of the paid order

    Returns:
        Dict with confirmation details
    """
    from orders.models import Order

    order = _load_order(order_id)
    if order is None:
        return {'status': 'error', 'message': f'Order {order_id} not found'}

    if order.payment_status != Order.PaymentStatus.PAID:
        logger.warning(
            f"Order #{order.order_number} is not paid (payment: {order.payment_status}), "
            "skipping confirmation"
        )
        return {'status': 'skipped', 'message': f'Order {order_id} is not paid'}

    message = f"""
Thank you for your order!

Order: {order.order_number}
Subtotal: {format_amount(order.subtotal, order.currency)}
Discount: -{format_amount(order.discount_amount, order.currency)}
Shipping: {format_amount(order.shipping_cost, order.currency)}
Total: {format_amount(order.total, order.currency)}

Items:
{_items_summary(order)}

Ships to:
{order.shipping_name}
{order.shipping_address1}
{order.shipping_postal_code} {order.shipping_city} {order.shipping_country}
"""
    send_mail(
        subject=f"Order confirmation {order.order_number}",
        message=message,
        from_email=settings.DEFAULT_FROM_EMAIL,
        recipient_list=[order.customer_email],
    )
    logger.info(f"[CELERY] Confirmation sent for Order #{order.order_number}")

    return {
        'status': 'success',
        'order_id': order.id,
        'message': f'Confirmation sent for order {order_id}'
    }


@shared_task(**NOTIFICATION_TASK_OPTIONS)
def send_admin_new_order(self, order_id: int):
    order = _load_order(order_id)
    if order is None:
        return {'status': 'error', 'message': f'Order {order_id} not found'}

    send_mail(
        subject=f"New order {order.order_number} ({format_amount(order.total, order.currency)})",
        message=(
            f"Customer: {order.customer_name} <{order.customer_email}>\n"
            f"Shipping method: {order.shipping_method or 'standard'}\n\n"
            f"{_items_summary(order)}\n\n"
            f"{settings.SITE_URL}/admin/orders/order/{order.id}/change/"
        ),
        from_email=settings.DEFAULT_FROM_EMAIL,
        recipient_list=[settings.ADMIN_ALERT_EMAIL],
    )
    return {'status': 'success', 'order_id': order.id}


@shared_task(**NOTIFICATION_TASK_OPTIONS)
def send_shipping_notification(self, order_id: int):
    from orders.models import Order

    order = _load_order(order_id)
    if order is None:
        return {'status': 'error', 'message': f'Order {order_id} not found'}
    if order.status != Order.Status.SHIPPED:
        return {'status': 'skipped', 'message': f'Order {order_id} is {order.status}'}

    tracking = order.tracking_number or 'not available yet'
    send_mail(
        subject=f"Your order {order.order_number} has shipped",
        message=(
            f"Carrier: {order.carrier or 'n/a'}\n"
            f"Tracking number: {tracking}\n"
            f"{order.tracking_url}"
        ),
        from_email=settings.DEFAULT_FROM_EMAIL,
        recipient_list=[order.customer_email],
    )
    return {'status': 'success', 'order_id': order.id}


@shared_task(**NOTIFICATION_TASK_OPTIONS)
def send_delivery_confirmation(self, order_id: int):
    from orders.models import Order

    order = _load_order(order_id)
    if order is None:
        return {'status': 'error', 'message': f'Order {order_id} not found'}
    if order.status != Order.Status.DELIVERED:
        return {'status': 'skipped', 'message': f'Order {order_id} is {order.status}'}

    send_mail(
        subject=f"Your order {order.order_number} was delivered",
        message="Your parcel has been delivered. We hope you enjoy it!",
        from_email=settings.DEFAULT_FROM_EMAIL,
        recipient_list=[order.customer_email],
    )
    return {'status': 'success', 'order_id': order.id}


@shared_task(**NOTIFICATION_TASK_OPTIONS)
def send_review_request(self, order_id: int):
    """Sent REVIEW_REQUEST_DELAY_DAYS after delivery, unless the order changed since."""
    from orders.models import Order

    order = _load_order(order_id)
    if order is None:
        return {'status': 'error', 'message': f'Order {order_id} not found'}
    if order.fulfillment_status != Order.FulfillmentStatus.DELIVERED:
        return {'status': 'skipped', 'message': f'Order {order_id} is {order.fulfillment_status}'}

    send_mail(
        subject=f"How was your order {order.order_number}?",
        message=f"Tell us what you think:\n\n{_items_summary(order)}",
        from_email=settings.DEFAULT_FROM_EMAIL,
        recipient_list=[order.customer_email],
    )
    return {'status': 'success', 'order_id': order.id}


@shared_task(**NOTIFICATION_TASK_OPTIONS)
def send_cancellation_notice(self, order_id: int, reason: str = ''):
    order = _load_order(order_id)
    if order is None:
        return {'status': 'error', 'message': f'Order {order_id} not found'}

    send_mail(
        subject=f"Your order {order.order_number} was cancelled",
        message=reason or "Your order has been cancelled.",
        from_email=settings.DEFAULT_FROM_EMAIL,
        recipient_list=[order.customer_email],
    )
    return {'status': 'success', 'order_id': order.id}


@shared_task(**NOTIFICATION_TASK_OPTIONS)
def send_refund_notice(self, refund_id: int):
    from orders.models import Refund

    try:
        refund = Refund.objects.select_related('order').get(id=refund_id)
    except Refund.DoesNotExist:
        logger.error(f"Refund {refund_id} not found for notification")
        return {'status': 'error', 'message': f'Refund {refund_id} not found'}

    order = refund.order
    send_mail(
        subject=f"Refund for order {order.order_number}",
        message=f"We refunded {format_amount(refund.amount, order.currency)} to your original payment method.",
        from_email=settings.DEFAULT_FROM_EMAIL,
        recipient_list=[order.customer_email],
    )
    return {'status': 'success', 'refund_id': refund.id}


@shared_task(**NOTIFICATION_TASK_OPTIONS)
def send_admin_alert(self, subject: str, message: str):
    send_mail(
        subject=f"[ALERT] {subject}",
        message=message,
        from_email=settings.DEFAULT_FROM_EMAIL,
        recipient_list=[settings.ADMIN_ALERT_EMAIL],
    )
    return {'status': 'success', 'subject': subject}


@shared_task
def expire_abandoned_checkouts():
    """
    Periodic task cancelling checkouts that were never paid.

    Covers orders whose checkout.session.expired event never arrived.
    Orders held for reconciliation are left for an operator, and orders
    waiting for a delayed payment to settle are left for the gateway.
    """
    from core.invalidation import publish
    from orders.models import Order
    from orders.state_machine import Outcome, expire_checkout

    threshold = timezone.now() - timedelta(hours=settings.ABANDONED_CHECKOUT_HOURS)
    stale_ids = list(
        Order.objects.filter(
            status=Order.Status.PENDING,
            payment_status=Order.PaymentStatus.PENDING,
            needs_reconciliation=False,
            awaiting_payment=False,
            created_at__lt=threshold
        ).values_list('id', flat=True)
    )

    expired = 0
    for order_id in stale_ids:
        result = expire_checkout(order_id, source='SYSTEM')
        if result.outcome == Outcome.APPLIED:
            expired += 1
            publish(result.invalidation)

    if expired:
        logger.warning(f"Expired {expired} abandoned checkouts older than {settings.ABANDONED_CHECKOUT_HOURS}h")
    return {'expired': expired}
