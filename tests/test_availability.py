"""Unit tests for reservations and availability-guarded cart editing."""

from __future__ import annotations

from decimal import Decimal

import pytest

from pos_ledger import availability
from pos_ledger.constants import BookingStatus
from pos_ledger.data_manager import BookingItem, BookingRow
from pos_ledger.exceptions import InsufficientStock

from conftest import make_product


def _booking(booking_id: str, quantity: int, status: BookingStatus = BookingStatus.CONFIRMED) -> BookingRow:
    return BookingRow(
        booking_id=booking_id,
        customer_id="C",
        items=(BookingItem("P", quantity),),
        booking_date_iso="2025-03-01T10:00:00+00:00",
        status=status,
    )


def test_reserved_quantities_counts_only_confirmed_bookings():
    bookings = [
        _booking("B1", 2),
        _booking("B2", 3, BookingStatus.COMPLETED),
        _booking("B3", 4, BookingStatus.CANCELED),
        _booking("B4", 1),
    ]
    assert availability.reserved_quantities(bookings) == {"P": 3}


def test_reserved_quantities_can_exclude_one_booking():
    """A cart built from a booking must not compete with its own reservation."""

    bookings = [_booking("B1", 2), _booking("B2", 5)]
    assert availability.reserved_quantities(bookings, exclude_booking_id="B2") == {"P": 2}


def test_available_quantity_subtracts_reservations():
    product = make_product(stock=10)
    assert availability.available_quantity(product, {"P": 4}) == 6
    assert availability.available_quantity(product, {}) == 10


def test_cart_add_merges_lines_and_enforces_availability():
    cart = availability.Cart()
    product = make_product(stock=3)

    cart.add(product, available=3)
    line = cart.add(product, available=3, quantity=2)

    assert len(cart) == 1
    assert line.quantity == 3
    assert line.unit_price == Decimal("100")
    with pytest.raises(InsufficientStock) as excinfo:
        cart.add(product, available=3)
    assert excinfo.value.requested == 4
    assert excinfo.value.available == 3
    assert cart.quantity_of("P") == 3


def test_cart_add_rejects_non_positive_quantity():
    with pytest.raises(ValueError):
        availability.Cart().add(make_product(), available=10, quantity=0)


def test_cart_set_quantity_to_zero_removes_line():
    cart = availability.Cart()
    product = make_product()
    cart.add(product, available=10, quantity=2)

    assert cart.set_quantity(product, 0, available=10) is None
    assert len(cart) == 0


def test_cart_set_quantity_beyond_available_leaves_cart_untouched():
    cart = availability.Cart()
    product = make_product()
    cart.add(product, available=5, quantity=2)

    with pytest.raises(InsufficientStock):
        cart.set_quantity(product, 6, available=5)
    assert cart.quantity_of("P") == 2


def test_cart_as_lines_returns_snapshot():
    cart = availability.Cart()
    cart.add(make_product("A"), available=1)
    snapshot = cart.as_lines()
    cart.add(make_product("B"), available=1)

    assert [line.product_id for line in snapshot] == ["A"]
