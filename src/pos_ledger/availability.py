"""Sellable-quantity resolution and availability-guarded cart editing.

Sellable quantity is on-hand stock minus everything reserved by confirmed
bookings. The check is advisory: it does not lock products, and the sale
orchestrator repeats it right before committing.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

from . import log
from .constants import BookingStatus
from .data_manager import BookingRow, ProductRow
from .exceptions import InsufficientStock
from .pricing import CartLine


def reserved_quantities(
    bookings: Iterable[BookingRow],
    *,
    exclude_booking_id: Optional[str] = None,
) -> Dict[str, int]:
    """Sum the quantities reserved per product by confirmed bookings.

    ``exclude_booking_id`` drops one booking from the total; a sale that
    converts a booking must not compete with its own reservation.
    """

    reserved: Dict[str, int] = {}
    for booking in bookings:
        if booking.status is not BookingStatus.CONFIRMED or booking.booking_id == exclude_booking_id:
            continue
        for item in booking.items:
            reserved[item.product_id] = reserved.get(item.product_id, 0) + item.quantity
    return reserved


def available_quantity(product: ProductRow, reserved: Mapping[str, int]) -> int:
    """Return ``product.stock`` minus its reservations (may be negative)."""

    return product.stock - reserved.get(product.product_id, 0)


def require_available(product_id: str, requested: int, available: int) -> None:
    """Raise :class:`InsufficientStock` when ``requested`` exceeds ``available``."""

    if requested > available:
        log.warning(
            "Insufficient stock for product '%s': requested %d, available %d",
            product_id,
            requested,
            available,
        )
        raise InsufficientStock(product_id, requested, available)


@dataclass
class Cart:
    """Mutable list of cart lines, one line per product.

    Every method that raises a line's quantity takes the product's current
    sellable quantity and rejects the change with :class:`InsufficientStock`
    before touching the cart.
    """

    lines: List[CartLine] = field(default_factory=list)
    booking_id: Optional[str] = None

    def _index_of(self, product_id: str) -> Optional[int]:
        for index, line in enumerate(self.lines):
            if line.product_id == product_id:
                return index
        return None

    def quantity_of(self, product_id: str) -> int:
        index = self._index_of(product_id)
        return 0 if index is None else self.lines[index].quantity

    def add(self, product: ProductRow, *, available: int, quantity: int = 1) -> CartLine:
        """Add ``quantity`` units of ``product``, merging into an existing line."""

        if quantity <= 0:
            raise ValueError("Quantity must be greater than zero")
        index = self._index_of(product.product_id)
        current = 0 if index is None else self.lines[index].quantity
        require_available(product.product_id, current + quantity, available)

        if index is None:
            line = CartLine(product.product_id, product.product_name, product.price, quantity)
            self.lines.append(line)
        else:
            line = replace(self.lines[index], quantity=current + quantity)
            self.lines[index] = line
        log.debug("Cart line '%s' now holds %d unit(s)", product.product_id, line.quantity)
        return line

    def set_quantity(self, product: ProductRow, quantity: int, *, available: int) -> Optional[CartLine]:
        """Set a line's quantity; zero or less removes the line."""

        if quantity <= 0:
            self.remove(product.product_id)
            return None
        require_available(product.product_id, quantity, available)

        index = self._index_of(product.product_id)
        if index is None:
            line = CartLine(product.product_id, product.product_name, product.price, quantity)
            self.lines.append(line)
        else:
            line = replace(self.lines[index], quantity=quantity)
            self.lines[index] = line
        return line

    def remove(self, product_id: str) -> None:
        self.lines = [line for line in self.lines if line.product_id != product_id]

    def as_lines(self) -> Tuple[CartLine, ...]:
        return tuple(self.lines)

    def __len__(self) -> int:
        return len(self.lines)
