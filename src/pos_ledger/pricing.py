"""Cart pricing: discount, coupon, and tax composition.

Everything in this module is side-effect free. The calculation order is fixed
(subtotal, discount, taxable amount, tax, total, change) and every
intermediate amount is rounded to cents before it feeds the next step, so the
same cart always prices to the same figures no matter how often it is
recomputed.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, date, datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, Optional, Sequence

from . import log
from .constants import CENT, HUNDRED, ZERO, AdjustmentType, PaymentMethod
from .data_manager import Adjustment, CouponRow
from .exceptions import CouponError, CouponExpired, CouponInvalid


@dataclass(frozen=True)
class CartLine:
    """A product, its unit price at the time it entered the cart, and a quantity."""

    product_id: str
    product_name: str
    unit_price: Decimal
    quantity: int

    @property
    def line_total(self) -> Decimal:
        return self.unit_price * self.quantity


@dataclass(frozen=True)
class PriceBreakdown:
    """Result of pricing a cart.

    ``discount`` is the adjustment that was actually applied (the coupon's
    terms when a coupon was accepted). ``coupon_error`` carries the rejection
    when a coupon was supplied but could not be applied.
    """

    subtotal: Decimal
    discount: Adjustment
    discount_amount: Decimal
    taxable_amount: Decimal
    tax: Adjustment
    tax_amount: Decimal
    total: Decimal
    change: Decimal = ZERO
    coupon_code: Optional[str] = None
    coupon_error: Optional[CouponError] = None


def quantize_money(amount: Decimal) -> Decimal:
    """Round ``amount`` to cents using commercial (half-up) rounding."""

    return Decimal(amount).quantize(CENT, rounding=ROUND_HALF_UP)


def adjustment_amount(adjustment: Adjustment, base: Decimal) -> Decimal:
    """Return the money value of ``adjustment`` applied to ``base``."""

    if adjustment.adjustment_type is AdjustmentType.FIXED:
        return quantize_money(adjustment.value)
    return quantize_money(base * adjustment.value / HUNDRED)


def _require_valid_adjustment(adjustment: Adjustment, label: str) -> None:
    if adjustment.value < ZERO:
        log.error("Negative %s value rejected: %s", label, adjustment.value)
        raise ValueError(f"{label.capitalize()} value must be zero or positive")


def find_coupon(coupons: Iterable[CouponRow], code: str) -> CouponRow:
    """Look up a coupon by code, ignoring case.

    Raises:
        CouponInvalid: If no coupon carries ``code``.
    """

    wanted = code.strip().lower()
    for coupon in coupons:
        if coupon.code.lower() == wanted:
            return coupon
    log.warning("Unknown coupon code '%s'", code)
    raise CouponInvalid(f"Unknown coupon code: {code}")


def check_coupon(coupon: CouponRow, *, today: date) -> None:
    """Validate that ``coupon`` may be applied on ``today``.

    A coupon is usable while it is active and its expiry date has not passed;
    the expiry date itself is still a valid day.

    Raises:
        CouponInvalid: If the coupon has been deactivated.
        CouponExpired: If ``today`` is after the expiry date.
    """

    if not coupon.is_active:
        log.warning("Coupon '%s' is inactive", coupon.code)
        raise CouponInvalid(f"Coupon '{coupon.code}' is not active")
    if coupon.expiry_date < today:
        log.warning("Coupon '%s' expired on %s", coupon.code, coupon.expiry_date.isoformat())
        raise CouponExpired(f"Coupon '{coupon.code}' expired on {coupon.expiry_date.isoformat()}")


def calculate_totals(
    lines: Sequence[CartLine],
    *,
    discount: Optional[Adjustment] = None,
    tax: Optional[Adjustment] = None,
    coupon: Optional[CouponRow] = None,
    payment_method: PaymentMethod = PaymentMethod.CASH,
    tendered: Optional[Decimal] = None,
    now: Optional[datetime] = None,
) -> PriceBreakdown:
    """Price a cart.

    A supplied ``coupon`` replaces the manual ``discount``. When the coupon
    fails :func:`check_coupon` the cart is priced with the manual discount
    instead and the rejection is returned in ``coupon_error``; nothing is
    raised, since a preview must still render.

    ``change`` is ``tendered - total`` for cash sales with a tendered amount
    (negative when the tender is short) and zero otherwise.

    Raises:
        ValueError: If the discount or tax value is negative.
    """

    discount = discount or Adjustment()
    tax = tax or Adjustment()
    _require_valid_adjustment(discount, "discount")
    _require_valid_adjustment(tax, "tax")

    applied_discount = discount
    coupon_code: Optional[str] = None
    coupon_error: Optional[CouponError] = None
    if coupon is not None:
        # Coupons expire on the shop's calendar day, not the UTC one.
        today = (now or datetime.now(UTC)).astimezone().date()
        try:
            check_coupon(coupon, today=today)
        except CouponError as exc:
            coupon_error = exc
        else:
            applied_discount = Adjustment(coupon.adjustment_type, coupon.value)
            coupon_code = coupon.code

    subtotal = quantize_money(sum((line.line_total for line in lines), ZERO))
    discount_amount = adjustment_amount(applied_discount, subtotal)
    taxable_amount = subtotal - discount_amount
    tax_amount = adjustment_amount(tax, taxable_amount)
    total = taxable_amount + tax_amount

    change = ZERO
    if payment_method is PaymentMethod.CASH and tendered is not None:
        change = quantize_money(tendered) - total

    return PriceBreakdown(
        subtotal=subtotal,
        discount=applied_discount,
        discount_amount=discount_amount,
        taxable_amount=taxable_amount,
        tax=tax,
        tax_amount=tax_amount,
        total=total,
        change=change,
        coupon_code=coupon_code,
        coupon_error=coupon_error,
    )
