"""
Stock Ledger - the only code path that changes StockUnit.inventory.

Every mutation is keyed by (stock unit, order) and recorded as a
StockMovement row, so commit and release can be re-run safely:

    commit   decrement once per order, all-or-nothing with the caller
    release  restock exactly what the order committed, once
    adjust   operator correction with a mandatory reason

Functions must run inside the caller's transaction.atomic() block when
they are part of a larger change (order confirmation, cancellation); each
also opens its own savepoint so a failure rolls back only its own writes
until the caller decides.

Concurrency control:
    1. select_for_update() on the stock unit row serializes writers
       on PostgreSQL.
    2. The decrement itself is a conditional UPDATE
       (inventory >= quantity AND is_active), so even without row locks
       two writers can never drive inventory below zero.
"""
import logging

from django.db import IntegrityError, transaction
from django.db.models import F
from django.utils import timezone

from core.exceptions import ConcurrencyConflict, InsufficientStock, SkuInactive, SkuNotFound

from .models import StockMovement, StockUnit

logger = logging.getLogger(__name__)


def _lock_unit(sku_id: int) -> StockUnit:
    try:
        return StockUnit.objects.select_for_update().get(pk=sku_id)
    except StockUnit.DoesNotExist:
        raise SkuNotFound(sku_id)


def _record(kind: str, unit: StockUnit, quantity: int, order_id=None, reason: str = '') -> StockMovement:
    try:
        with transaction.atomic():
            return StockMovement.objects.create(
                kind=kind,
                stock_unit=unit,
                order_id=order_id,
                quantity=quantity,
                reason=reason,
            )
    except IntegrityError as e:
        # Another transaction recorded the same (unit, order, kind) first
        raise ConcurrencyConflict(f"{kind} for SKU {unit.pk} order {order_id} already recorded: {e}")


def _sync_sold_out(sku_id: int) -> None:
    """Deactivate a unit that hit zero, reactivate one the ledger switched off."""
    now = timezone.now()
    deactivated = StockUnit.objects.filter(pk=sku_id, inventory=0, is_active=True).update(
        is_active=False, sold_out_at=now, updated_at=now
    )
    if deactivated:
        logger.info(f"SKU {sku_id} sold out, deactivated")
        return

    reactivated = StockUnit.objects.filter(
        pk=sku_id, inventory__gt=0, is_active=False, sold_out_at__isnull=False
    ).update(is_active=True, sold_out_at=None, updated_at=now)
    if reactivated:
        logger.info(f"SKU {sku_id} back in stock, reactivated")


def _unavailable(unit: StockUnit, quantity: int) -> Exception:
    """The error for an inactive unit: sold out reads as insufficient stock."""
    if unit.sold_out_at is not None:
        return InsufficientStock(unit.pk, quantity, unit.inventory)
    return SkuInactive(unit.pk)


def available_quantity(sku_id: int) -> int:
    """Units that can currently be sold. Inactive units have none."""
    try:
        unit = StockUnit.objects.only('inventory', 'is_active').get(pk=sku_id)
    except StockUnit.DoesNotExist:
        raise SkuNotFound(sku_id)
    return unit.inventory if unit.is_active else 0


def reserve(sku_id: int, quantity: int, order_id=None) -> StockUnit:
    """
    Check that ``quantity`` units could be committed right now.

    Stock is never held before payment: this is an availability check that
    raises exactly what commit() would, without writing anything.
    """
    if quantity < 1:
        raise ValueError(f"Quantity must be positive, got {quantity}")

    try:
        unit = StockUnit.objects.get(pk=sku_id)
    except StockUnit.DoesNotExist:
        raise SkuNotFound(sku_id)

    if not unit.is_active:
        raise _unavailable(unit, quantity)
    if unit.inventory < quantity:
        raise InsufficientStock(sku_id, quantity, unit.inventory)
    return unit


def commit(sku_id: int, quantity: int, order_id: int) -> bool:
    """
    Decrement stock for an order.

    Returns:
        True if stock was decremented, False if this order had already
        committed this unit (nothing changes).

    Raises:
        SkuNotFound, SkuInactive, InsufficientStock: nothing was written.
        ConcurrencyConflict: a concurrent commit for the same order won.
    """
    if quantity < 1:
        raise ValueError(f"Quantity must be positive, got {quantity}")

    with transaction.atomic():
        unit = _lock_unit(sku_id)

        if StockMovement.objects.filter(
            stock_unit=unit, order_id=order_id, kind=StockMovement.Kind.COMMIT
        ).exists():
            logger.info(f"SKU {unit.sku}: already committed for order {order_id}, skipping")
            return False

        if not unit.is_active:
            raise _unavailable(unit, quantity)

        updated = StockUnit.objects.filter(
            pk=sku_id, is_active=True, inventory__gte=quantity
        ).update(inventory=F('inventory') - quantity, updated_at=timezone.now())
        if not updated:
            unit.refresh_from_db(fields=['inventory', 'is_active', 'sold_out_at'])
            if not unit.is_active:
                raise _unavailable(unit, quantity)
            raise InsufficientStock(sku_id, quantity, unit.inventory)

        _record(StockMovement.Kind.COMMIT, unit, -quantity, order_id=order_id)
        _sync_sold_out(sku_id)

    logger.info(f"SKU {unit.sku}: committed {quantity} for order {order_id}")
    return True


def release(sku_id: int, order_id: int) -> int:
    """
    Return the stock an order committed.

    Returns:
        The number of units restocked; 0 when the order never committed
        this unit or already released it.
    """
    with transaction.atomic():
        unit = _lock_unit(sku_id)

        movements = {
            m.kind: m for m in StockMovement.objects.filter(
                stock_unit=unit,
                order_id=order_id,
                kind__in=[StockMovement.Kind.COMMIT, StockMovement.Kind.RELEASE],
            )
        }
        committed = movements.get(StockMovement.Kind.COMMIT)
        if committed is None or StockMovement.Kind.RELEASE in movements:
            return 0

        quantity = -committed.quantity
        StockUnit.objects.filter(pk=sku_id).update(
            inventory=F('inventory') + quantity, updated_at=timezone.now()
        )
        _record(StockMovement.Kind.RELEASE, unit, quantity, order_id=order_id)
        _sync_sold_out(sku_id)

    logger.info(f"SKU {unit.sku}: released {quantity} from order {order_id}")
    return quantity


def adjust(sku_id: int, delta: int, reason: str) -> StockUnit:
    """
    Operator correction of on-hand stock (recount, damage, restock).

    Raises:
        ValueError: zero delta or missing reason.
        InsufficientStock: the correction would go below zero.
    """
    reason = (reason or '').strip()
    if not reason:
        raise ValueError("A reason is required for stock adjustments")
    if delta == 0:
        raise ValueError("Adjustment delta must not be zero")

    with transaction.atomic():
        unit = _lock_unit(sku_id)

        updated = StockUnit.objects.filter(
            pk=sku_id, inventory__gte=max(0, -delta)
        ).update(inventory=F('inventory') + delta, updated_at=timezone.now())
        if not updated:
            unit.refresh_from_db(fields=['inventory'])
            raise InsufficientStock(sku_id, -delta, unit.inventory)

        _record(StockMovement.Kind.ADJUST, unit, delta, reason=reason)
        _sync_sold_out(sku_id)
        unit.refresh_from_db()

    logger.info(f"SKU {unit.sku}: adjusted by {delta:+d} ({reason}), now {unit.inventory}")
    return unit
