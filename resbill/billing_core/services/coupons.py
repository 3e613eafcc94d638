import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import List

from ..exceptions import CouponNotApplicable
from ..models import Coupon, CouponUsage
from ..money import ZERO, allocate_proportionally, to_money
from .currency import convert_amount

logger = logging.getLogger(__name__)


@dataclass
class CouponApplication:
    coupon: Coupon
    discount_amount: Decimal
    # one entry per priced line, in the same order
    line_discounts: List[Decimal] = field(default_factory=list)


def is_line_eligible(coupon, line):
    if line.is_gateway_fee:
        return False
    if coupon.eligible_line_types:
        return line.line_type in coupon.eligible_line_types
    return True


def validate_coupon(coupon, customer, as_of):
    """Reject an unusable coupon before anything is priced or written."""
    if not coupon.is_active:
        raise CouponNotApplicable(f"Coupon {coupon.code} is not active")
    if as_of < coupon.valid_from:
        raise CouponNotApplicable(f"Coupon {coupon.code} is not valid yet")
    if coupon.valid_until and as_of >= coupon.valid_until:
        raise CouponNotApplicable(f"Coupon {coupon.code} has expired")
    if coupon.max_usages is not None and coupon.usage_count() >= coupon.max_usages:
        raise CouponNotApplicable(f"Coupon {coupon.code} has been used up")
    if (
        coupon.max_usages_per_customer is not None
        and coupon.usage_count(customer) >= coupon.max_usages_per_customer
    ):
        raise CouponNotApplicable(
            f"Coupon {coupon.code} was already used by this customer")


def apply_coupon(coupon, customer, lines, currency, as_of):
    """
    Price the discount for `lines` (objects with line_subtotal, line_type,
    is_gateway_fee). The discount is spread over eligible lines in
    proportion to their pre-discount totals; the last eligible line takes
    the rounding remainder so the parts add up to discount_amount exactly.
    """
    validate_coupon(coupon, customer, as_of)

    weights = [line.line_subtotal if is_line_eligible(coupon, line) else ZERO for line in lines]
    eligible_total = sum(weights, ZERO)
    if eligible_total <= 0:
        raise CouponNotApplicable(f"Coupon {coupon.code} does not apply to any line")
    if eligible_total < coupon.minimum_amount:
        raise CouponNotApplicable(
            f"Coupon {coupon.code} needs at least {coupon.minimum_amount} of eligible items")

    if coupon.discount_type == "percentage":
        discount = to_money(eligible_total * coupon.value / Decimal("100"))
    else:
        discount, _ = convert_amount(coupon.value, coupon.currency_id, currency, as_of)
        # a fixed coupon never makes lines negative
        discount = min(discount, eligible_total)

    line_discounts = allocate_proportionally(discount, weights)
    return CouponApplication(coupon=coupon, discount_amount=discount, line_discounts=line_discounts)


def record_usage(coupon, customer, invoice, discount_amount):
    """
    Book one usage. The coupon row is locked so two invoices compiled at
    the same time cannot both squeeze under the usage caps.
    Must run inside transaction.atomic().
    """
    locked = Coupon.objects.select_for_update().get(pk=coupon.pk)
    if locked.max_usages is not None and locked.usage_count() >= locked.max_usages:
        raise CouponNotApplicable(f"Coupon {coupon.code} has been used up")
    if (
        locked.max_usages_per_customer is not None
        and locked.usage_count(customer) >= locked.max_usages_per_customer
    ):
        raise CouponNotApplicable(
            f"Coupon {coupon.code} was already used by this customer")

    usage = CouponUsage.objects.create(
        coupon=locked, customer=customer, invoice=invoice, discount_amount=discount_amount)
    logger.info("Coupon %s applied to invoice %s (%s)", coupon.code, invoice.pk, discount_amount)
    return usage
