"""Unit tests for cart pricing and coupon validation."""

from __future__ import annotations

from datetime import UTC, date, datetime
from decimal import Decimal

import pytest

from pos_ledger import constants, pricing
from pos_ledger.constants import AdjustmentType, PaymentMethod
from pos_ledger.data_manager import Adjustment
from pos_ledger.exceptions import CouponExpired, CouponInvalid

from conftest import make_coupon

NOW = datetime(2025, 6, 1, 12, 0, tzinfo=UTC)


def _lines(quantity: int = 2, price: str = "100") -> list[pricing.CartLine]:
    return [pricing.CartLine("P", "Widget", Decimal(price), quantity)]


def test_calculate_totals_applies_discount_then_tax():
    """A fixed discount comes off the subtotal before a percentage tax."""

    breakdown = pricing.calculate_totals(
        _lines(),
        discount=Adjustment(AdjustmentType.FIXED, Decimal("10")),
        tax=Adjustment(AdjustmentType.PERCENTAGE, Decimal("14")),
        now=NOW,
    )

    assert breakdown.subtotal == Decimal("200.00")
    assert breakdown.discount_amount == Decimal("10.00")
    assert breakdown.taxable_amount == Decimal("190.00")
    assert breakdown.tax_amount == Decimal("26.60")
    assert breakdown.total == Decimal("216.60")


def test_calculate_totals_is_deterministic():
    """Pricing the same cart twice yields identical breakdowns."""

    options = dict(
        discount=Adjustment(AdjustmentType.PERCENTAGE, Decimal("7.5")),
        tax=Adjustment(AdjustmentType.PERCENTAGE, Decimal("14")),
        now=NOW,
    )
    first = pricing.calculate_totals(_lines(3, "33.33"), **options)
    second = pricing.calculate_totals(_lines(3, "33.33"), **options)

    assert first == second
    assert first.total == first.taxable_amount + first.tax_amount


def test_calculate_totals_rounds_half_up_to_cents():
    """Percentage amounts are rounded half-up at each step."""

    breakdown = pricing.calculate_totals(
        _lines(1, "0.50"),
        tax=Adjustment(AdjustmentType.PERCENTAGE, Decimal("5")),
        now=NOW,
    )

    # 0.50 * 5% = 0.025 -> 0.03
    assert breakdown.tax_amount == Decimal("0.03")
    assert breakdown.total == Decimal("0.53")


def test_calculate_totals_reports_change_for_cash():
    """Cash tenders produce change, including negative change in previews."""

    tax = Adjustment(AdjustmentType.PERCENTAGE, Decimal("14"))
    discount = Adjustment(AdjustmentType.FIXED, Decimal("10"))
    enough = pricing.calculate_totals(_lines(), discount=discount, tax=tax, tendered=Decimal("220"), now=NOW)
    short = pricing.calculate_totals(_lines(), discount=discount, tax=tax, tendered=Decimal("200"), now=NOW)

    assert enough.change == Decimal("3.40")
    assert short.change == Decimal("-16.60")


def test_calculate_totals_has_no_change_for_credit():
    """Non-cash payment methods never report change."""

    breakdown = pricing.calculate_totals(
        _lines(),
        payment_method=PaymentMethod.CREDIT,
        tendered=Decimal("500"),
        now=NOW,
    )
    assert breakdown.change == constants.ZERO


def test_calculate_totals_rejects_negative_adjustments():
    with pytest.raises(ValueError):
        pricing.calculate_totals(_lines(), discount=Adjustment(AdjustmentType.FIXED, Decimal("-1")), now=NOW)
    with pytest.raises(ValueError):
        pricing.calculate_totals(_lines(), tax=Adjustment(AdjustmentType.PERCENTAGE, Decimal("-5")), now=NOW)


def test_coupon_replaces_manual_discount():
    """A valid coupon wins over the manual discount."""

    breakdown = pricing.calculate_totals(
        _lines(),
        discount=Adjustment(AdjustmentType.FIXED, Decimal("50")),
        coupon=make_coupon("SAVE10", value="10"),
        now=NOW,
    )

    assert breakdown.coupon_code == "SAVE10"
    assert breakdown.discount == Adjustment(AdjustmentType.PERCENTAGE, Decimal("10"))
    assert breakdown.discount_amount == Decimal("20.00")
    assert breakdown.coupon_error is None


def test_expired_coupon_falls_back_to_manual_discount():
    """Rejected coupons are reported, not raised, and the manual discount stays."""

    expired = make_coupon("OLD", expiry=date(2025, 5, 31))
    breakdown = pricing.calculate_totals(
        _lines(),
        discount=Adjustment(AdjustmentType.FIXED, Decimal("5")),
        coupon=expired,
        now=NOW,
    )

    assert isinstance(breakdown.coupon_error, CouponExpired)
    assert breakdown.coupon_code is None
    assert breakdown.discount_amount == Decimal("5.00")


@pytest.mark.parametrize(
    ("zone", "moment", "expired"),
    [
        # 13:00 UTC is already the next day twelve hours east.
        ("UTC-12", datetime(2025, 6, 1, 13, 0, tzinfo=UTC), True),
        # 06:00 UTC is still the expiry day twelve hours west.
        ("UTC+12", datetime(2025, 6, 2, 6, 0, tzinfo=UTC), False),
    ],
)
def test_coupon_expiry_follows_local_calendar_day(local_timezone, zone, moment, expired):
    local_timezone(zone)

    breakdown = pricing.calculate_totals(_lines(), coupon=make_coupon(expiry=date(2025, 6, 1)), now=moment)

    assert isinstance(breakdown.coupon_error, CouponExpired) is expired
    assert (breakdown.coupon_code is None) is expired


def test_check_coupon_accepts_expiry_day():
    """The expiry date itself is still a valid day."""

    pricing.check_coupon(make_coupon(expiry=date(2025, 6, 1)), today=date(2025, 6, 1))


def test_check_coupon_rejects_inactive():
    with pytest.raises(CouponInvalid):
        pricing.check_coupon(make_coupon(is_active=False), today=date(2025, 6, 1))


def test_find_coupon_ignores_case():
    coupons = [make_coupon("SAVE10"), make_coupon("WELCOME")]
    assert pricing.find_coupon(coupons, "welcome").code == "WELCOME"


def test_find_coupon_unknown_code_raises():
    with pytest.raises(CouponInvalid):
        pricing.find_coupon([make_coupon("SAVE10")], "NOPE")
