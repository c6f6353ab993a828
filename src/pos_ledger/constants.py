"""Enumerations shared across the POS ledger modules.

Keeps the identifiers used by the pricing, availability and ledger layers, the
workbook store, and the CLI in one place so that persisted values and in-memory
values never drift apart.
"""

from __future__ import annotations

from decimal import Decimal
from enum import Enum
from typing import Mapping, Sequence


# Central schema version expected by all layers when validating workbooks.
EXPECTED_SCHEMA_VERSION = "1.0.0"

ZERO = Decimal("0.00")
CENT = Decimal("0.01")
HUNDRED = Decimal("100")

DEFAULT_WALK_IN_NAME = "Cash Customer"


class AdjustmentType(str, Enum):
    """How a discount, coupon, or tax value is applied to an amount."""

    FIXED = "fixed"
    PERCENTAGE = "percentage"


class PaymentMethod(str, Enum):
    """Enumerate supported payment plans for a sale."""

    CASH = "cash"
    CREDIT = "credit"
    PARTIAL = "partial"


class InvoiceStatus(str, Enum):
    """Lifecycle states of a sales invoice."""

    PAID = "paid"
    PARTIAL = "partial"
    DUE = "due"
    RETURNED = "returned"
    PARTIALLY_RETURNED = "partially_returned"


RETURN_STATUSES = frozenset({InvoiceStatus.RETURNED, InvoiceStatus.PARTIALLY_RETURNED})


class RefundMethod(str, Enum):
    """How the value of returned goods is handed back to a customer."""

    CASH = "cash"
    BALANCE = "balance"


class LedgerEntryType(str, Enum):
    """Enumerate the transaction types recorded in an account ledger."""

    INVOICE = "invoice"
    PAYMENT = "payment"
    RETURN = "return"
    PURCHASE = "purchase"


class AccountKind(str, Enum):
    """The two kinds of running-balance accounts."""

    CUSTOMER = "customer"
    SUPPLIER = "supplier"


class BookingStatus(str, Enum):
    """Booking states; only ``confirmed`` bookings reserve stock."""

    CONFIRMED = "confirmed"
    COMPLETED = "completed"
    CANCELED = "canceled"


class AuditAction(str, Enum):
    """Action types written to the audit trail."""

    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    PAYMENT = "PAYMENT"


class CollectionKey(str, Enum):
    """Keys understood by the persistence collaborator."""

    PRODUCTS = "products"
    INVOICES = "invoices"
    CUSTOMERS = "customers"
    SUPPLIERS = "suppliers"
    BOOKINGS = "bookings"
    COUPONS = "coupons"
    AUDIT_LOG = "audit_log"


ACCOUNT_COLLECTIONS: Mapping[AccountKind, CollectionKey] = {
    AccountKind.CUSTOMER: CollectionKey.CUSTOMERS,
    AccountKind.SUPPLIER: CollectionKey.SUPPLIERS,
}


class SheetName(str, Enum):
    """Enumerate the workbook sheet names managed by the workbook store."""

    PRODUCTS = "Products"
    INVOICES = "Invoices"
    INVOICE_ITEMS = "InvoiceItems"
    CUSTOMERS = "Customers"
    CUSTOMER_LEDGER = "CustomerLedger"
    SUPPLIERS = "Suppliers"
    SUPPLIER_LEDGER = "SupplierLedger"
    BOOKINGS = "Bookings"
    BOOKING_ITEMS = "BookingItems"
    COUPONS = "Coupons"
    AUDIT_LOG = "AuditLog"


_LEDGER_COLUMNS = (
    "AccountID",
    "TransactionID",
    "Type",
    "Date",
    "Amount",
    "BalanceDelta",
    "RelatedInvoiceID",
    "Notes",
    "Items",
)

# Column order for every sheet; the workbook store serializes rows in this order.
SHEET_COLUMNS: Mapping[str, Sequence[str]] = {
    SheetName.PRODUCTS.value: ("ProductID", "ProductName", "Price", "Cost", "Stock", "Barcode"),
    SheetName.INVOICES.value: (
        "InvoiceID",
        "Date",
        "CustomerID",
        "CustomerName",
        "Subtotal",
        "DiscountType",
        "DiscountValue",
        "TaxType",
        "TaxValue",
        "Total",
        "PaymentMethod",
        "PaidAmount",
        "DueAmount",
        "Status",
        "CouponCode",
        "BookingID",
        "ReturnedAmount",
    ),
    SheetName.INVOICE_ITEMS.value: (
        "InvoiceID",
        "ProductID",
        "ProductName",
        "UnitPrice",
        "Quantity",
        "ReturnedQuantity",
    ),
    SheetName.CUSTOMERS.value: ("CustomerID", "CustomerName", "Phone", "Debt"),
    SheetName.CUSTOMER_LEDGER.value: _LEDGER_COLUMNS,
    SheetName.SUPPLIERS.value: ("SupplierID", "SupplierName", "Phone", "Debt"),
    SheetName.SUPPLIER_LEDGER.value: _LEDGER_COLUMNS,
    SheetName.BOOKINGS.value: ("BookingID", "CustomerID", "BookingDate", "Status", "Deposit", "Notes"),
    SheetName.BOOKING_ITEMS.value: ("BookingID", "ProductID", "Quantity"),
    SheetName.COUPONS.value: ("CouponID", "Code", "DiscountType", "Value", "ExpiryDate", "IsActive"),
    SheetName.AUDIT_LOG.value: ("EntryID", "Timestamp", "ActionType", "EntityType", "EntityID", "Details"),
}


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "ZERO",
    "CENT",
    "HUNDRED",
    "DEFAULT_WALK_IN_NAME",
    "AdjustmentType",
    "PaymentMethod",
    "InvoiceStatus",
    "RETURN_STATUSES",
    "RefundMethod",
    "LedgerEntryType",
    "AccountKind",
    "BookingStatus",
    "AuditAction",
    "CollectionKey",
    "ACCOUNT_COLLECTIONS",
    "SheetName",
    "SHEET_COLUMNS",
]
