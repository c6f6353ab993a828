"""Data access layer for the POS ledger.

This module provides low-level helpers that read from and write to the
``master_workbook.xlsx`` workbook. Business rules belong elsewhere.

The public API is designed around four responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening, validating, and persisting the Excel file.
3. Record types: the immutable dataclasses every other layer passes around.
4. Collection storage: :class:`WorkbookStore`, which loads and saves whole
   collections (products, invoices, accounts, bookings, coupons, audit log)
   by collection key, flattening nested lists into child sheets.
"""


from __future__ import annotations

import configparser
import json
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Iterator, List, Mapping, Optional, Sequence, Tuple

import openpyxl
from openpyxl.styles import Font
from openpyxl.workbook import Workbook

from . import log
from .constants import (
    DEFAULT_WALK_IN_NAME,
    SHEET_COLUMNS,
    ZERO,
    AccountKind,
    AdjustmentType,
    BookingStatus,
    CollectionKey,
    InvoiceStatus,
    LedgerEntryType,
    PaymentMethod,
    SheetName,
)


CONFIG_FILE_NAME = "config.ini"


@dataclass(frozen=True)
class Adjustment:
    """A discount or tax specification: a fixed amount or a percentage."""

    adjustment_type: AdjustmentType = AdjustmentType.FIXED
    value: Decimal = ZERO


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    shop_name: str
    schema_version: str
    walk_in_customer_name: str = DEFAULT_WALK_IN_NAME
    default_tax: Adjustment = field(default_factory=Adjustment)
    can_mutate_sales: bool = True


@dataclass(frozen=True)
class ProductRow:
    """In-memory view of a row from the ``Products`` sheet."""

    product_id: str
    product_name: str
    price: Decimal
    cost: Decimal
    stock: int
    barcode: str = ""


@dataclass(frozen=True)
class InvoiceItem:
    """One priced line of a sales invoice."""

    product_id: str
    product_name: str
    unit_price: Decimal
    quantity: int
    returned_quantity: int = 0

    @property
    def returnable_quantity(self) -> int:
        return max(self.quantity - self.returned_quantity, 0)


@dataclass(frozen=True)
class InvoiceRow:
    """A sales invoice together with its items."""

    invoice_id: str
    date_iso: str
    items: Tuple[InvoiceItem, ...]
    subtotal: Decimal
    discount: Adjustment
    tax: Adjustment
    total: Decimal
    payment_method: PaymentMethod
    paid_amount: Decimal
    due_amount: Decimal
    status: InvoiceStatus
    customer_id: Optional[str] = None
    customer_name: str = DEFAULT_WALK_IN_NAME
    coupon_code: Optional[str] = None
    booking_id: Optional[str] = None
    returned_amount: Decimal = ZERO


@dataclass(frozen=True)
class LedgerTransaction:
    """One append-only entry in a customer or supplier ledger.

    ``balance_delta`` is the signed change the entry applied to the account's
    running ``debt``; ``related_invoice_id`` links invoice and return entries
    back to the sales invoice that produced them.
    """

    transaction_id: str
    entry_type: LedgerEntryType
    date_iso: str
    amount: Decimal
    balance_delta: Decimal
    related_invoice_id: Optional[str] = None
    notes: str = ""
    items: Tuple[InvoiceItem, ...] = ()


@dataclass(frozen=True)
class AccountRow:
    """A customer or supplier with its running balance and ledger."""

    account_id: str
    name: str
    phone: str = ""
    debt: Decimal = ZERO
    transactions: Tuple[LedgerTransaction, ...] = ()


@dataclass(frozen=True)
class BookingItem:
    """Quantity of a product reserved by a booking."""

    product_id: str
    quantity: int


@dataclass(frozen=True)
class BookingRow:
    """A customer booking that reserves stock without decrementing it."""

    booking_id: str
    customer_id: str
    items: Tuple[BookingItem, ...]
    booking_date_iso: str
    status: BookingStatus = BookingStatus.CONFIRMED
    deposit: Decimal = ZERO
    notes: Optional[str] = None


@dataclass(frozen=True)
class CouponRow:
    """A discount coupon redeemable at the point of sale."""

    coupon_id: str
    code: str
    adjustment_type: AdjustmentType
    value: Decimal
    expiry_date: date
    is_active: bool = True


@dataclass(frozen=True)
class AuditEntry:
    """One line of the audit trail."""

    entry_id: str
    timestamp_iso: str
    action_type: str
    entity_type: str
    entity_id: Optional[str]
    details: str


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the data layer behaves.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification. Otherwise the function walks up from the current
    working directory toward the filesystem root looking for
    ``CONFIG_FILE_NAME``; the first match is authoritative.

    Raises:
        FileNotFoundError: If no parent directory holds ``CONFIG_FILE_NAME``.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for directory in (current, *current.parents):
        candidate = directory / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` and return a populated ``ConfigParser`` instance.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist after expansion.
    """

    config_path = Path(config_path).expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path, encoding="utf-8")
    return parser


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    ``[System]`` entries are mandatory. ``[Defaults]`` (walk-in customer name,
    default tax) and ``[Permissions]`` (``CanMutateSales``) fall back to
    permissive defaults when absent. Relative ``DataFile`` entries are anchored
    to ``base_path`` or, failing that, the current working directory.

    Raises:
        KeyError: If a required section or option is missing.
        ValueError: If the default tax type or value cannot be parsed.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        shop_name = parser.get("System", "ShopName")
        schema_version = parser.get("System", "SchemaVersion")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    walk_in_name = parser.get("Defaults", "WalkInCustomerName", fallback=DEFAULT_WALK_IN_NAME)
    tax_type_raw = parser.get("Defaults", "TaxType", fallback=AdjustmentType.FIXED.value)
    tax_value_raw = parser.get("Defaults", "TaxValue", fallback="0")
    try:
        default_tax = Adjustment(AdjustmentType(tax_type_raw.strip().lower()), Decimal(tax_value_raw.strip()))
    except (ArithmeticError, ValueError) as exc:
        raise ValueError(f"Invalid default tax configuration: {tax_type_raw!r} / {tax_value_raw!r}") from exc

    can_mutate_sales = parser.getboolean("Permissions", "CanMutateSales", fallback=True)

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    return ConfigSettings(
        data_file=data_file_path,
        shop_name=shop_name,
        schema_version=schema_version,
        walk_in_customer_name=walk_in_name,
        default_tax=default_tax,
        can_mutate_sales=can_mutate_sales,
    )


def open_workbook(data_file: Path) -> Workbook:
    """Open the master Excel workbook and return a live ``openpyxl`` workbook.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist after expansion.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    return openpyxl.load_workbook(data_file)


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook to ``destination``, creating parent folders on demand."""

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    workbook.save(dest)


def refresh_workbook(data_file: Path) -> Workbook:
    """Reload the workbook from disk, discarding any unsaved in-memory changes."""

    return open_workbook(data_file)


def ensure_sheet(workbook: Workbook, sheet_name: str) -> Any:
    """Return ``sheet_name``, creating it with a bold header row when missing."""

    if sheet_name in workbook.sheetnames:
        return workbook[sheet_name]

    worksheet = workbook.create_sheet(title=sheet_name)
    bold_font = Font(bold=True)
    for column_index, column_name in enumerate(SHEET_COLUMNS[sheet_name], start=1):
        cell = worksheet.cell(row=1, column=column_index)
        cell.value = column_name
        cell.font = bold_font
    log.debug("Created missing worksheet '%s'", sheet_name)
    return worksheet


def iter_sheet_rows(workbook: Workbook, sheet_name: str) -> Iterator[Tuple[Any, ...]]:
    """Yield raw value tuples below the header, skipping fully empty rows.

    Missing sheets yield nothing. Rows shorter than the declared column list
    are padded with ``None`` so deserializers can unpack them positionally.
    """

    if sheet_name not in workbook.sheetnames:
        return
    width = len(SHEET_COLUMNS[sheet_name])
    for raw in workbook[sheet_name].iter_rows(min_row=2, values_only=True):
        if any(cell is not None for cell in raw):
            padded = tuple(raw[:width]) + (None,) * max(width - len(raw), 0)
            yield padded


def rewrite_sheet(workbook: Workbook, sheet_name: str, rows: Iterable[Sequence[object]]) -> int:
    """Replace every data row of ``sheet_name`` with ``rows``; returns the row count."""

    sheet = ensure_sheet(workbook, sheet_name)
    if sheet.max_row > 1:
        sheet.delete_rows(2, sheet.max_row - 1)
    count = 0
    for row_index, row in enumerate(rows, start=2):
        for column_index, value in enumerate(row, start=1):
            sheet.cell(row=row_index, column=column_index, value=value)
        count += 1
    return count


# ---------------------------------------------------------------------------
# Cell coercion
# ---------------------------------------------------------------------------


def _to_decimal(raw: object, default: Decimal = ZERO) -> Decimal:
    if raw is None or raw == "":
        return default
    return Decimal(str(raw))


def _to_int(raw: object) -> int:
    if raw is None or raw == "":
        return 0
    return int(Decimal(str(raw)))


def _to_text(raw: object) -> Optional[str]:
    if raw is None:
        return None
    text = str(raw)
    return text if text != "" else None


def _to_bool(raw: object) -> bool:
    if isinstance(raw, str):
        return raw.strip().lower() in {"1", "true", "yes", "y"}
    return bool(raw)


def _to_date(raw: object) -> date:
    if isinstance(raw, datetime):
        return raw.date()
    if isinstance(raw, date):
        return raw
    return date.fromisoformat(str(raw)[:10])


def _item_to_json(item: InvoiceItem) -> Dict[str, object]:
    return {
        "product_id": item.product_id,
        "product_name": item.product_name,
        "unit_price": str(item.unit_price),
        "quantity": item.quantity,
        "returned_quantity": item.returned_quantity,
    }


def _item_from_json(payload: Mapping[str, Any]) -> InvoiceItem:
    return InvoiceItem(
        product_id=str(payload["product_id"]),
        product_name=str(payload.get("product_name", "")),
        unit_price=Decimal(str(payload["unit_price"])),
        quantity=int(payload["quantity"]),
        returned_quantity=int(payload.get("returned_quantity", 0)),
    )


# ---------------------------------------------------------------------------
# Row serialization
# ---------------------------------------------------------------------------


def serialize_product(record: ProductRow) -> List[object]:
    """Arrange a product as ``[ProductID, ProductName, Price, Cost, Stock, Barcode]``."""

    return [record.product_id, record.product_name, record.price, record.cost, record.stock, record.barcode]


def deserialize_product(raw_row: Sequence[object]) -> ProductRow:
    """Convert a raw ``Products`` row into a :class:`ProductRow`.

    Identifiers are coerced to ``str`` because Excel likes to turn numeric
    looking ids and barcodes into numbers.
    """

    product_id, product_name, price, cost, stock, barcode = raw_row
    return ProductRow(
        product_id=str(product_id),
        product_name=str(product_name or ""),
        price=_to_decimal(price),
        cost=_to_decimal(cost),
        stock=_to_int(stock),
        barcode=_to_text(barcode) or "",
    )


def serialize_invoice(record: InvoiceRow) -> List[object]:
    return [
        record.invoice_id,
        record.date_iso,
        record.customer_id,
        record.customer_name,
        record.subtotal,
        record.discount.adjustment_type.value,
        record.discount.value,
        record.tax.adjustment_type.value,
        record.tax.value,
        record.total,
        record.payment_method.value,
        record.paid_amount,
        record.due_amount,
        record.status.value,
        record.coupon_code,
        record.booking_id,
        record.returned_amount,
    ]


def serialize_invoice_items(record: InvoiceRow) -> List[List[object]]:
    return [
        [record.invoice_id, item.product_id, item.product_name, item.unit_price, item.quantity, item.returned_quantity]
        for item in record.items
    ]


def deserialize_invoice(raw_row: Sequence[object], items: Sequence[InvoiceItem]) -> InvoiceRow:
    """Rebuild an :class:`InvoiceRow` from its sheet row and its item rows."""

    (
        invoice_id,
        date_iso,
        customer_id,
        customer_name,
        subtotal,
        discount_type,
        discount_value,
        tax_type,
        tax_value,
        total,
        payment_method,
        paid_amount,
        due_amount,
        status,
        coupon_code,
        booking_id,
        returned_amount,
    ) = raw_row
    return InvoiceRow(
        invoice_id=str(invoice_id),
        date_iso=str(date_iso or ""),
        items=tuple(items),
        subtotal=_to_decimal(subtotal),
        discount=Adjustment(AdjustmentType(discount_type or AdjustmentType.FIXED.value), _to_decimal(discount_value)),
        tax=Adjustment(AdjustmentType(tax_type or AdjustmentType.FIXED.value), _to_decimal(tax_value)),
        total=_to_decimal(total),
        payment_method=PaymentMethod(payment_method),
        paid_amount=_to_decimal(paid_amount),
        due_amount=_to_decimal(due_amount),
        status=InvoiceStatus(status),
        customer_id=_to_text(customer_id),
        customer_name=_to_text(customer_name) or DEFAULT_WALK_IN_NAME,
        coupon_code=_to_text(coupon_code),
        booking_id=_to_text(booking_id),
        returned_amount=_to_decimal(returned_amount),
    )


def deserialize_invoice_item(raw_row: Sequence[object]) -> Tuple[str, InvoiceItem]:
    invoice_id, product_id, product_name, unit_price, quantity, returned_quantity = raw_row
    item = InvoiceItem(
        product_id=str(product_id),
        product_name=str(product_name or ""),
        unit_price=_to_decimal(unit_price),
        quantity=_to_int(quantity),
        returned_quantity=_to_int(returned_quantity),
    )
    return str(invoice_id), item


def serialize_account(record: AccountRow) -> List[object]:
    return [record.account_id, record.name, record.phone, record.debt]


def serialize_ledger_transaction(account_id: str, record: LedgerTransaction) -> List[object]:
    """Flatten a ledger entry; attached items are stored as a JSON array."""

    items_json = json.dumps([_item_to_json(item) for item in record.items]) if record.items else None
    return [
        account_id,
        record.transaction_id,
        record.entry_type.value,
        record.date_iso,
        record.amount,
        record.balance_delta,
        record.related_invoice_id,
        record.notes,
        items_json,
    ]


def deserialize_ledger_transaction(raw_row: Sequence[object]) -> Tuple[str, LedgerTransaction]:
    (
        account_id,
        transaction_id,
        entry_type,
        date_iso,
        amount,
        balance_delta,
        related_invoice_id,
        notes,
        items_json,
    ) = raw_row
    items = tuple(_item_from_json(payload) for payload in json.loads(items_json)) if items_json else ()
    transaction = LedgerTransaction(
        transaction_id=str(transaction_id),
        entry_type=LedgerEntryType(entry_type),
        date_iso=str(date_iso or ""),
        amount=_to_decimal(amount),
        balance_delta=_to_decimal(balance_delta),
        related_invoice_id=_to_text(related_invoice_id),
        notes=str(notes or ""),
        items=items,
    )
    return str(account_id), transaction


def deserialize_account(raw_row: Sequence[object], transactions: Sequence[LedgerTransaction]) -> AccountRow:
    account_id, name, phone, debt = raw_row
    return AccountRow(
        account_id=str(account_id),
        name=str(name or ""),
        phone=_to_text(phone) or "",
        debt=_to_decimal(debt),
        transactions=tuple(transactions),
    )


def serialize_booking(record: BookingRow) -> List[object]:
    return [
        record.booking_id,
        record.customer_id,
        record.booking_date_iso,
        record.status.value,
        record.deposit,
        record.notes,
    ]


def deserialize_booking(raw_row: Sequence[object], items: Sequence[BookingItem]) -> BookingRow:
    booking_id, customer_id, booking_date_iso, status, deposit, notes = raw_row
    return BookingRow(
        booking_id=str(booking_id),
        customer_id=str(customer_id or ""),
        items=tuple(items),
        booking_date_iso=str(booking_date_iso or ""),
        status=BookingStatus(status or BookingStatus.CONFIRMED.value),
        deposit=_to_decimal(deposit),
        notes=_to_text(notes),
    )


def serialize_coupon(record: CouponRow) -> List[object]:
    return [
        record.coupon_id,
        record.code,
        record.adjustment_type.value,
        record.value,
        record.expiry_date.isoformat(),
        record.is_active,
    ]


def deserialize_coupon(raw_row: Sequence[object]) -> CouponRow:
    coupon_id, code, adjustment_type, value, expiry_date, is_active = raw_row
    return CouponRow(
        coupon_id=str(coupon_id),
        code=str(code),
        adjustment_type=AdjustmentType(adjustment_type),
        value=_to_decimal(value),
        expiry_date=_to_date(expiry_date),
        is_active=_to_bool(is_active),
    )


def serialize_audit_entry(record: AuditEntry) -> List[object]:
    return [
        record.entry_id,
        record.timestamp_iso,
        record.action_type,
        record.entity_type,
        record.entity_id,
        record.details,
    ]


def deserialize_audit_entry(raw_row: Sequence[object]) -> AuditEntry:
    entry_id, timestamp_iso, action_type, entity_type, entity_id, details = raw_row
    return AuditEntry(
        entry_id=str(entry_id),
        timestamp_iso=str(timestamp_iso or ""),
        action_type=str(action_type or ""),
        entity_type=str(entity_type or ""),
        entity_id=_to_text(entity_id),
        details=str(details or ""),
    )


# ---------------------------------------------------------------------------
# Collection storage
# ---------------------------------------------------------------------------


_ACCOUNT_SHEETS: Mapping[AccountKind, Tuple[str, str]] = {
    AccountKind.CUSTOMER: (SheetName.CUSTOMERS.value, SheetName.CUSTOMER_LEDGER.value),
    AccountKind.SUPPLIER: (SheetName.SUPPLIERS.value, SheetName.SUPPLIER_LEDGER.value),
}

# The sheet whose presence decides whether a collection exists at all.
PRIMARY_SHEETS: Mapping[CollectionKey, str] = {
    CollectionKey.PRODUCTS: SheetName.PRODUCTS.value,
    CollectionKey.INVOICES: SheetName.INVOICES.value,
    CollectionKey.CUSTOMERS: SheetName.CUSTOMERS.value,
    CollectionKey.SUPPLIERS: SheetName.SUPPLIERS.value,
    CollectionKey.BOOKINGS: SheetName.BOOKINGS.value,
    CollectionKey.COUPONS: SheetName.COUPONS.value,
    CollectionKey.AUDIT_LOG: SheetName.AUDIT_LOG.value,
}


def _group_children(pairs: Iterable[Tuple[str, Any]]) -> Dict[str, List[Any]]:
    grouped: Dict[str, List[Any]] = {}
    for parent_id, child in pairs:
        grouped.setdefault(parent_id, []).append(child)
    return grouped


def load_products(workbook: Workbook) -> List[ProductRow]:
    return [deserialize_product(raw) for raw in iter_sheet_rows(workbook, SheetName.PRODUCTS.value)]


def save_products(workbook: Workbook, records: Sequence[ProductRow]) -> None:
    rewrite_sheet(workbook, SheetName.PRODUCTS.value, (serialize_product(record) for record in records))


def load_invoices(workbook: Workbook) -> List[InvoiceRow]:
    items = _group_children(
        deserialize_invoice_item(raw) for raw in iter_sheet_rows(workbook, SheetName.INVOICE_ITEMS.value)
    )
    return [
        deserialize_invoice(raw, items.get(str(raw[0]), ()))
        for raw in iter_sheet_rows(workbook, SheetName.INVOICES.value)
    ]


def save_invoices(workbook: Workbook, records: Sequence[InvoiceRow]) -> None:
    rewrite_sheet(workbook, SheetName.INVOICES.value, (serialize_invoice(record) for record in records))
    rewrite_sheet(
        workbook,
        SheetName.INVOICE_ITEMS.value,
        (row for record in records for row in serialize_invoice_items(record)),
    )


def load_accounts(workbook: Workbook, kind: AccountKind) -> List[AccountRow]:
    account_sheet, ledger_sheet = _ACCOUNT_SHEETS[kind]
    ledgers = _group_children(deserialize_ledger_transaction(raw) for raw in iter_sheet_rows(workbook, ledger_sheet))
    return [
        deserialize_account(raw, ledgers.get(str(raw[0]), ()))
        for raw in iter_sheet_rows(workbook, account_sheet)
    ]


def save_accounts(workbook: Workbook, kind: AccountKind, records: Sequence[AccountRow]) -> None:
    account_sheet, ledger_sheet = _ACCOUNT_SHEETS[kind]
    rewrite_sheet(workbook, account_sheet, (serialize_account(record) for record in records))
    rewrite_sheet(
        workbook,
        ledger_sheet,
        (
            serialize_ledger_transaction(record.account_id, transaction)
            for record in records
            for transaction in record.transactions
        ),
    )


def load_bookings(workbook: Workbook) -> List[BookingRow]:
    items = _group_children(
        (str(booking_id), BookingItem(product_id=str(product_id), quantity=_to_int(quantity)))
        for booking_id, product_id, quantity in iter_sheet_rows(workbook, SheetName.BOOKING_ITEMS.value)
    )
    return [
        deserialize_booking(raw, items.get(str(raw[0]), ()))
        for raw in iter_sheet_rows(workbook, SheetName.BOOKINGS.value)
    ]


def save_bookings(workbook: Workbook, records: Sequence[BookingRow]) -> None:
    rewrite_sheet(workbook, SheetName.BOOKINGS.value, (serialize_booking(record) for record in records))
    rewrite_sheet(
        workbook,
        SheetName.BOOKING_ITEMS.value,
        ([record.booking_id, item.product_id, item.quantity] for record in records for item in record.items),
    )


def load_coupons(workbook: Workbook) -> List[CouponRow]:
    return [deserialize_coupon(raw) for raw in iter_sheet_rows(workbook, SheetName.COUPONS.value)]


def save_coupons(workbook: Workbook, records: Sequence[CouponRow]) -> None:
    rewrite_sheet(workbook, SheetName.COUPONS.value, (serialize_coupon(record) for record in records))


def load_audit_log(workbook: Workbook) -> List[AuditEntry]:
    return [deserialize_audit_entry(raw) for raw in iter_sheet_rows(workbook, SheetName.AUDIT_LOG.value)]


def save_audit_log(workbook: Workbook, records: Sequence[AuditEntry]) -> None:
    rewrite_sheet(workbook, SheetName.AUDIT_LOG.value, (serialize_audit_entry(record) for record in records))


_LOADERS: Mapping[CollectionKey, Callable[[Workbook], List[Any]]] = {
    CollectionKey.PRODUCTS: load_products,
    CollectionKey.INVOICES: load_invoices,
    CollectionKey.CUSTOMERS: lambda workbook: load_accounts(workbook, AccountKind.CUSTOMER),
    CollectionKey.SUPPLIERS: lambda workbook: load_accounts(workbook, AccountKind.SUPPLIER),
    CollectionKey.BOOKINGS: load_bookings,
    CollectionKey.COUPONS: load_coupons,
    CollectionKey.AUDIT_LOG: load_audit_log,
}

_SAVERS: Mapping[CollectionKey, Callable[[Workbook, Sequence[Any]], None]] = {
    CollectionKey.PRODUCTS: save_products,
    CollectionKey.INVOICES: save_invoices,
    CollectionKey.CUSTOMERS: lambda workbook, records: save_accounts(workbook, AccountKind.CUSTOMER, records),
    CollectionKey.SUPPLIERS: lambda workbook, records: save_accounts(workbook, AccountKind.SUPPLIER, records),
    CollectionKey.BOOKINGS: save_bookings,
    CollectionKey.COUPONS: save_coupons,
    CollectionKey.AUDIT_LOG: save_audit_log,
}


class WorkbookStore:
    """Persistence collaborator that keeps each collection in workbook sheets.

    ``load`` returns ``None`` when the collection's primary sheet does not
    exist, otherwise a list of records. ``save`` replaces the collection's
    sheets with the supplied records; with ``autosave`` enabled the workbook
    is also written to ``data_file`` immediately, otherwise the caller writes
    it once through :meth:`flush`.
    """

    def __init__(self, workbook: Workbook, *, data_file: Optional[Path] = None, autosave: bool = False) -> None:
        if autosave and data_file is None:
            raise ValueError("autosave requires a data_file")
        self.workbook = workbook
        self.data_file = data_file
        self.autosave = autosave

    def load(self, key: CollectionKey | str) -> Optional[List[Any]]:
        collection = CollectionKey(key)
        if PRIMARY_SHEETS[collection] not in self.workbook.sheetnames:
            log.debug("Collection '%s' has no sheet in the workbook", collection.value)
            return None
        records = _LOADERS[collection](self.workbook)
        log.debug("Loaded %d '%s' records from workbook", len(records), collection.value)
        return records

    def save(self, key: CollectionKey | str, records: Sequence[Any]) -> None:
        collection = CollectionKey(key)
        _SAVERS[collection](self.workbook, list(records))
        log.debug("Wrote %d '%s' records to workbook", len(records), collection.value)
        if self.autosave:
            self.flush()

    def flush(self) -> None:
        if self.data_file is None:
            raise ValueError("WorkbookStore has no data_file to write to")
        save_workbook(self.workbook, self.data_file)
