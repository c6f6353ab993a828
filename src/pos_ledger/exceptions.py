"""Exception taxonomy for the sales and ledger engine.

Every rule violation below is raised while a unit of work is still being
staged, so none of them can leave the collections partially updated.
"""

from __future__ import annotations

from typing import Sequence


class BusinessRuleViolation(Exception):
    """Raised when a requested operation violates a domain constraint."""


class MissingReferenceError(BusinessRuleViolation):
    """Raised when a referenced product, account, invoice, or booking is unknown."""


class EmptyCart(BusinessRuleViolation):
    """Raised when a sale is attempted without any cart lines."""


class InsufficientStock(BusinessRuleViolation):
    """Raised when a requested quantity exceeds the sellable quantity."""

    def __init__(self, product_id: str, requested: int, available: int) -> None:
        super().__init__(
            f"Insufficient stock for product '{product_id}': requested {requested}, available {available}"
        )
        self.product_id = product_id
        self.requested = requested
        self.available = available


class MissingCustomerForCredit(BusinessRuleViolation):
    """Raised when a credit or partial sale has no customer account attached."""


class InsufficientPayment(BusinessRuleViolation):
    """Raised when the cash tendered does not cover the invoice total."""


class CouponError(BusinessRuleViolation):
    """Base class for coupon rejections."""


class CouponInvalid(CouponError):
    """Raised for unknown or inactive coupon codes."""


class CouponExpired(CouponError):
    """Raised for coupons whose expiry date has passed."""


class NothingToReturn(BusinessRuleViolation):
    """Raised when every requested return quantity clamps to zero."""


class PermissionDenied(BusinessRuleViolation):
    """Raised by callers that check the sales-mutation permission."""


class PersistenceError(Exception):
    """Raised after a commit when one or more collections could not be saved.

    The in-memory collections already hold the committed state when this is
    raised; ``failed`` lists the collection keys whose write did not succeed.
    """

    def __init__(self, failed: Sequence[str], message: str) -> None:
        super().__init__(message)
        self.failed = tuple(failed)


__all__ = [
    "BusinessRuleViolation",
    "MissingReferenceError",
    "EmptyCart",
    "InsufficientStock",
    "MissingCustomerForCredit",
    "InsufficientPayment",
    "CouponError",
    "CouponInvalid",
    "CouponExpired",
    "NothingToReturn",
    "PermissionDenied",
    "PersistenceError",
]
