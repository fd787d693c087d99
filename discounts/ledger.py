"""
Discount Ledger - validation and redemption accounting for discount codes.

validate() is read-only and used at checkout. redeem() and reverse() run
inside the order transaction and are keyed by (code, order), so repeating
either for the same order changes nothing.
"""
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Union

from django.db import IntegrityError, transaction
from django.db.models import F, Q
from django.utils import timezone

from core.exceptions import CapReached

from .models import DiscountCode, DiscountUsage

logger = logging.getLogger(__name__)


class RejectionReason(str, Enum):
    NOT_FOUND = 'NOT_FOUND'
    INACTIVE = 'INACTIVE'
    NOT_STARTED = 'NOT_STARTED'
    EXPIRED = 'EXPIRED'
    BELOW_MINIMUM = 'BELOW_MINIMUM'
    CAP_REACHED = 'CAP_REACHED'
    PER_USER_CAP_REACHED = 'PER_USER_CAP_REACHED'


REJECTION_MESSAGES = {
    RejectionReason.NOT_FOUND: "This discount code does not exist.",
    RejectionReason.INACTIVE: "This discount code is no longer active.",
    RejectionReason.NOT_STARTED: "This discount code is not valid yet.",
    RejectionReason.EXPIRED: "This discount code has expired.",
    RejectionReason.BELOW_MINIMUM: "Your order does not reach the minimum amount for this code.",
    RejectionReason.CAP_REACHED: "This discount code has reached its usage limit.",
    RejectionReason.PER_USER_CAP_REACHED: "You have already used this discount code.",
}


@dataclass(frozen=True)
class AppliedDiscount:
    code: str
    amount: int
    discount_id: int


@dataclass(frozen=True)
class Rejection:
    code: str
    reason: RejectionReason

    @property
    def message(self) -> str:
        return REJECTION_MESSAGES[self.reason]


class RedemptionStatus(str, Enum):
    REDEEMED = 'REDEEMED'
    ALREADY_REDEEMED = 'ALREADY_REDEEMED'
    CAP_REACHED = 'CAP_REACHED'
    NOT_FOUND = 'NOT_FOUND'


@dataclass(frozen=True)
class RedemptionResult:
    status: RedemptionStatus
    code: str

    @property
    def ok(self) -> bool:
        return self.status in (RedemptionStatus.REDEEMED, RedemptionStatus.ALREADY_REDEEMED)


def normalize_code(code: str) -> str:
    return (code or '').strip().upper()


def validate(code: str, subtotal: int, user_id: Optional[str] = None, now=None) -> Union[AppliedDiscount, Rejection]:
    """
    Check a code against its rules for a prospective order.

    Checks run in a fixed order and the first failing rule is reported.
    The returned amount is what the order would be discounted; it is
    not reserved.
    """
    code = normalize_code(code)
    now = now or timezone.now()

    discount = DiscountCode.objects.filter(code=code).first()
    if discount is None:
        return Rejection(code, RejectionReason.NOT_FOUND)
    if not discount.is_active:
        return Rejection(code, RejectionReason.INACTIVE)
    if discount.starts_at and now < discount.starts_at:
        return Rejection(code, RejectionReason.NOT_STARTED)
    if discount.ends_at and now > discount.ends_at:
        return Rejection(code, RejectionReason.EXPIRED)
    if subtotal < discount.minimum_subtotal:
        return Rejection(code, RejectionReason.BELOW_MINIMUM)
    if discount.is_cap_reached:
        return Rejection(code, RejectionReason.CAP_REACHED)
    if user_id and discount.per_user_cap is not None:
        used = discount.usages.filter(user_id=user_id, voided_at__isnull=True).count()
        if used >= discount.per_user_cap:
            return Rejection(code, RejectionReason.PER_USER_CAP_REACHED)

    return AppliedDiscount(code=code, amount=discount.amount_for(subtotal), discount_id=discount.pk)


def _claim_slot(discount_id: int) -> None:
    """Increment the usage counter only while it is under the cap."""
    updated = DiscountCode.objects.filter(
        Q(usage_cap__isnull=True) | Q(usage_count__lt=F('usage_cap')),
        pk=discount_id,
    ).update(usage_count=F('usage_count') + 1, updated_at=timezone.now())
    if not updated:
        discount = DiscountCode.objects.get(pk=discount_id)
        raise CapReached(discount.code, discount.usage_cap)


def redeem(code: str, order_id: int, amount: int, user_id: Optional[str] = None) -> RedemptionResult:
    """
    Record that an order used a code.

    The counter increment and the usage row are written in one savepoint:
    the increment is conditional on the cap, and the usage row is unique
    per (code, order), so neither the cap nor a double redemption can be
    exceeded by concurrent confirmations.
    """
    code = normalize_code(code)
    discount = DiscountCode.objects.filter(code=code).first()
    if discount is None:
        logger.warning(f"Discount {code}: not found while redeeming for order {order_id}")
        return RedemptionResult(RedemptionStatus.NOT_FOUND, code)

    existing = DiscountUsage.objects.filter(discount=discount, order_id=order_id).first()
    if existing is not None and existing.is_active:
        return RedemptionResult(RedemptionStatus.ALREADY_REDEEMED, code)

    try:
        with transaction.atomic():
            _claim_slot(discount.pk)
            if existing is not None:
                # Re-redeeming after a reversal reuses the voided row
                updated = DiscountUsage.objects.filter(
                    pk=existing.pk, voided_at__isnull=False
                ).update(voided_at=None, amount_applied=amount)
                if not updated:
                    raise IntegrityError(f"usage {existing.pk} reactivated concurrently")
            else:
                DiscountUsage.objects.create(
                    discount=discount,
                    order_id=order_id,
                    user_id=user_id or '',
                    amount_applied=amount,
                )
    except CapReached as e:
        logger.warning(f"Discount {code}: {e} (order {order_id})")
        return RedemptionResult(RedemptionStatus.CAP_REACHED, code)
    except IntegrityError:
        # A concurrent redemption for the same order won; the increment was rolled back
        return RedemptionResult(RedemptionStatus.ALREADY_REDEEMED, code)

    logger.info(f"Discount {code}: redeemed by order {order_id} for {amount}")
    return RedemptionResult(RedemptionStatus.REDEEMED, code)


def reverse(code: str, order_id: int) -> bool:
    """
    Void an order's usage of a code and free its slot.

    Returns True if a usage was voided, False if there was nothing to void.
    """
    code = normalize_code(code)
    with transaction.atomic():
        usage = (
            DiscountUsage.objects.select_for_update()
            .filter(discount__code=code, order_id=order_id, voided_at__isnull=True)
            .first()
        )
        if usage is None:
            return False

        now = timezone.now()
        voided = DiscountUsage.objects.filter(pk=usage.pk, voided_at__isnull=True).update(voided_at=now)
        if not voided:
            return False
        DiscountCode.objects.filter(pk=usage.discount_id, usage_count__gt=0).update(
            usage_count=F('usage_count') - 1, updated_at=now
        )

    logger.info(f"Discount {code}: usage by order {order_id} reversed")
    return True
