"""
Read-only order export for bookkeeping.

Amounts are converted from minor units to decimal strings. CSV output
starts with a UTF-8 byte order mark so spreadsheet tools detect the
encoding.
"""
import csv
import io
from datetime import date, datetime, time, timezone as dt_timezone
from decimal import Decimal
from typing import Dict, Iterable, Iterator, Optional

from django.db.models import Q, Sum
from rest_framework import renderers

from .models import Order, Refund

CSV_BOM = '\ufeff'

EXPORT_COLUMNS = [
    ('order_number', 'Order number'),
    ('created_at', 'Created at'),
    ('paid_at', 'Paid at'),
    ('customer_name', 'Customer'),
    ('customer_email', 'Email'),
    ('status', 'Status'),
    ('payment_status', 'Payment status'),
    ('currency', 'Currency'),
    ('subtotal', 'Subtotal'),
    ('discount_code', 'Discount code'),
    ('discount_amount', 'Discount'),
    ('shipping_cost', 'Shipping'),
    ('total', 'Total'),
    ('refunded', 'Refunded'),
    ('payment_intent_id', 'Payment reference'),
]

MONEY_FIELDS = ('subtotal', 'discount_amount', 'shipping_cost', 'total', 'refunded')


def to_decimal(amount: int) -> str:
    return str((Decimal(amount) / 100).quantize(Decimal('0.01')))


def export_queryset(date_from: Optional[date] = None, date_to: Optional[date] = None, status: str = ''):
    """Orders created within [date_from, date_to] (whole days, UTC), oldest first."""
    queryset = Order.objects.select_related('discount_code').annotate(
        refunded=Sum('refunds__amount', filter=Q(refunds__status=Refund.Status.COMPLETED))
    )
    if date_from:
        queryset = queryset.filter(created_at__gte=datetime.combine(date_from, time.min, tzinfo=dt_timezone.utc))
    if date_to:
        queryset = queryset.filter(created_at__lte=datetime.combine(date_to, time.max, tzinfo=dt_timezone.utc))
    if status:
        queryset = queryset.filter(status=status)
    return queryset.order_by('created_at', 'id')


def export_rows(orders: Iterable[Order]) -> Iterator[Dict[str, str]]:
    for order in orders:
        yield {
            'order_number': order.order_number,
            'created_at': order.created_at.isoformat(),
            'paid_at': order.paid_at.isoformat() if order.paid_at else '',
            'customer_name': order.customer_name,
            'customer_email': order.customer_email,
            'status': order.status,
            'payment_status': order.payment_status,
            'currency': order.currency,
            'subtotal': to_decimal(order.subtotal),
            'discount_code': order.discount_code.code if order.discount_code_id else '',
            'discount_amount': to_decimal(order.discount_amount),
            'shipping_cost': to_decimal(order.shipping_cost),
            'total': to_decimal(order.total),
            'refunded': to_decimal(getattr(order, 'refunded', None) or 0),
            'payment_intent_id': order.payment_intent_id,
        }


def write_csv(rows: Iterable[Dict[str, str]], stream) -> None:
    stream.write(CSV_BOM)
    writer = csv.writer(stream)
    writer.writerow([label for _, label in EXPORT_COLUMNS])
    for row in rows:
        writer.writerow([row[key] for key, _ in EXPORT_COLUMNS])


class CSVRenderer(renderers.BaseRenderer):
    """Renders a list of export rows; selected with ?format=csv."""
    media_type = 'text/csv'
    format = 'csv'
    charset = 'utf-8'

    def render(self, data, accepted_media_type=None, renderer_context=None):
        stream = io.StringIO()
        if isinstance(data, dict):
            # Error responses carry a dict
            writer = csv.writer(stream)
            for key, value in data.items():
                writer.writerow([key, value])
        else:
            write_csv(data, stream)
        return stream.getvalue().encode(self.charset)
