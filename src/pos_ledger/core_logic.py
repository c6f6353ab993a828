"""Business logic layer for the POS ledger.

This module holds the sales transaction and ledger engine. Products, invoices,
and customer/supplier accounts live in in-memory collections loaded from the
persistence collaborator. Every operation that touches more than one of them
(sale, return, reversal, payment, purchase) stages its replacement records in
a :class:`UnitOfWork`, validates everything while staging, swaps the staged
records into the collections in one step, and only then issues the writes.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import UTC, date, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Collection, Dict, Iterable, List, Mapping, Optional, Sequence, Set, Tuple

from . import data_manager, log
from .audit import AuditTrail
from .availability import Cart, available_quantity, require_available, reserved_quantities
from .constants import (
    ACCOUNT_COLLECTIONS,
    EXPECTED_SCHEMA_VERSION,
    ZERO,
    AccountKind,
    AdjustmentType,
    AuditAction,
    BookingStatus,
    CollectionKey,
    LedgerEntryType,
    PaymentMethod,
    RefundMethod,
)
from .data_manager import (
    AccountRow,
    Adjustment,
    BookingItem,
    BookingRow,
    CouponRow,
    InvoiceItem,
    InvoiceRow,
    LedgerTransaction,
    ProductRow,
)
from .exceptions import (
    BusinessRuleViolation,
    CouponError,
    EmptyCart,
    InsufficientPayment,
    MissingCustomerForCredit,
    MissingReferenceError,
    NothingToReturn,
    PersistenceError,
)
from .ledger import (
    LedgerDiscrepancy,
    build_invoice_entry,
    build_return_entry,
    find_discrepancies,
    next_invoice_status,
    post_entry,
    remove_invoice_entry,
)
from .pricing import CartLine, PriceBreakdown, calculate_totals, check_coupon, find_coupon, quantize_money


_ID_ATTRIBUTES: Mapping[CollectionKey, str] = {
    CollectionKey.PRODUCTS: "product_id",
    CollectionKey.INVOICES: "invoice_id",
    CollectionKey.CUSTOMERS: "account_id",
    CollectionKey.SUPPLIERS: "account_id",
    CollectionKey.BOOKINGS: "booking_id",
    CollectionKey.COUPONS: "coupon_id",
}

_ENTITY_NAMES: Mapping[CollectionKey, str] = {
    CollectionKey.PRODUCTS: "Product",
    CollectionKey.INVOICES: "Invoice",
    CollectionKey.CUSTOMERS: "Customer",
    CollectionKey.SUPPLIERS: "Supplier",
    CollectionKey.BOOKINGS: "Booking",
    CollectionKey.COUPONS: "Coupon",
}


@dataclass(frozen=True)
class RuntimeContext:
    """Container for configuration, collaborators, and the loaded collections."""

    settings: data_manager.ConfigSettings
    store: Any
    audit: AuditTrail
    _cache: Dict[str, Dict[str, Any]] = field(default_factory=dict, repr=False, compare=False)


@dataclass(frozen=True)
class SaleCommand:
    """User intent for completing a sale from a priced cart."""

    lines: Tuple[CartLine, ...]
    payment_method: PaymentMethod = PaymentMethod.CASH
    customer_id: Optional[str] = None
    tendered: Optional[Decimal] = None
    paid_amount: Optional[Decimal] = None
    discount: Optional[Adjustment] = None
    tax: Optional[Adjustment] = None
    coupon_code: Optional[str] = None
    booking_id: Optional[str] = None
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class ReturnCommand:
    """User intent for returning items of an existing invoice."""

    invoice_id: str
    quantities: Mapping[str, int]
    refund_method: RefundMethod = RefundMethod.CASH
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class PaymentCommand:
    """User intent for settling part of a customer's or supplier's balance."""

    account_kind: AccountKind
    account_id: str
    amount: Decimal
    timestamp: Optional[datetime] = None
    notes: Optional[str] = None


@dataclass(frozen=True)
class PurchaseLine:
    product_id: str
    unit_cost: Decimal
    quantity: int


@dataclass(frozen=True)
class PurchaseCommand:
    """User intent for receiving goods from a supplier."""

    supplier_id: str
    lines: Tuple[PurchaseLine, ...]
    paid_amount: Decimal = ZERO
    timestamp: Optional[datetime] = None
    notes: Optional[str] = None


@dataclass(frozen=True)
class SaleReceipt:
    invoice: InvoiceRow
    breakdown: PriceBreakdown

    @property
    def change(self) -> Decimal:
        return self.breakdown.change


@dataclass(frozen=True)
class ReturnReceipt:
    invoice: InvoiceRow
    return_value: Decimal
    returned_items: Tuple[InvoiceItem, ...]
    credited_to_balance: bool


@dataclass(frozen=True)
class BookingDraft:
    """A cart pre-filled from a confirmed booking, plus suggested payment terms."""

    cart: Cart
    customer_id: str
    payment_method: PaymentMethod
    paid_amount: Optional[Decimal]


@dataclass(frozen=True)
class StockLevel:
    product_id: str
    product_name: str
    stock: int
    reserved: int
    available: int


def _resolve_timestamp(candidate: Optional[datetime]) -> datetime:
    """Return ``candidate`` when provided, otherwise the current UTC time."""

    return candidate if candidate is not None else datetime.now(UTC)


def generate_identifier(prefix: str, *, when: Optional[datetime] = None, taken: Collection[str] = ()) -> str:
    """Generate a sortable identifier ``{prefix}{YYYYMMDDHHMMSSffffff}``.

    A ``-2``, ``-3``... suffix is appended while the candidate collides with
    ``taken``, so caller-fixed timestamps still yield unique identifiers.
    """

    when = when or _resolve_timestamp(None)
    candidate = f"{prefix}{when.strftime('%Y%m%d%H%M%S%f')}"
    unique = candidate
    suffix = 1
    while unique in taken:
        suffix += 1
        unique = f"{candidate}-{suffix}"
    return unique


def require_positive_quantity(quantity: int) -> None:
    """Validate that a quantity is strictly positive.

    Raises:
        ValueError: If ``quantity`` is zero or negative.
    """
    if quantity <= 0:
        log.error("Quantity validation failed: %s", quantity)
        raise ValueError("Quantity must be greater than zero")


def require_nonnegative_money(amount: Decimal) -> None:
    """Validate that a monetary value is nonnegative.

    Raises:
        ValueError: If ``amount`` is less than zero.
    """
    if amount < ZERO:
        log.error("Monetary value validation failed: %s", amount)
        raise ValueError("Amount must be zero or positive")


def require_positive_money(amount: Decimal) -> None:
    if amount <= ZERO:
        log.error("Monetary value validation failed: %s", amount)
        raise ValueError("Amount must be greater than zero")


# ---------------------------------------------------------------------------
# Collections and caches
# ---------------------------------------------------------------------------


def _ensure_collection(context: RuntimeContext, key: CollectionKey) -> Dict[str, Any]:
    """Populate the cache bucket for ``key`` from the store on first use.

    Buckets map record identifiers to records in storage order. A store that
    answers ``None`` (collection never saved) yields an empty bucket.
    """

    bucket = context._cache.get(key.value)
    if bucket is None:
        loaded = context.store.load(key)
        id_attribute = _ID_ATTRIBUTES[key]
        bucket = {getattr(record, id_attribute): record for record in (loaded or [])}
        context._cache[key.value] = bucket
        log.debug("Populated '%s' cache with %d entries", key.value, len(bucket))
    return bucket


def _invalidate_cache(context: RuntimeContext, *keys: CollectionKey) -> None:
    """Evict cache buckets so the next read reloads them from the store."""

    for key in keys:
        context._cache.pop(key.value, None)


def load_runtime_context(config_path: Optional[Path] = None, *, autosave: bool = False) -> RuntimeContext:
    """Load configuration settings and open the workbook-backed store.

    Raises:
        FileNotFoundError: If the configuration file or workbook is missing.
        KeyError: When mandatory configuration options are missing.
    """
    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    workbook = data_manager.open_workbook(settings.data_file)
    store = data_manager.WorkbookStore(workbook, data_file=settings.data_file, autosave=autosave)
    log.info("Loaded runtime context for workbook '%s'", settings.data_file)
    return RuntimeContext(settings=settings, store=store, audit=AuditTrail(store))


def ensure_schema_version(context: RuntimeContext) -> None:
    """Validate workbook compatibility before mutating state.

    Raises:
        RuntimeError: If the configured schema version differs from
            ``EXPECTED_SCHEMA_VERSION``.
    """
    if context.settings.schema_version != EXPECTED_SCHEMA_VERSION:
        log.error(
            "Workbook schema mismatch: expected %s, found %s",
            EXPECTED_SCHEMA_VERSION,
            context.settings.schema_version,
        )
        raise RuntimeError(
            "Workbook schema mismatch: expected %s, found %s"
            % (EXPECTED_SCHEMA_VERSION, context.settings.schema_version)
        )


def persist_context(context: RuntimeContext) -> None:
    """Write the store's workbook to the configured data file."""

    context.store.flush()
    log.info("Persisted workbook '%s'", context.settings.data_file)


def refresh_context(context: RuntimeContext) -> RuntimeContext:
    """Reload the workbook from disk, dropping unsaved edits and all caches."""

    workbook = data_manager.refresh_workbook(context.settings.data_file)
    autosave = getattr(context.store, "autosave", False)
    store = data_manager.WorkbookStore(workbook, data_file=context.settings.data_file, autosave=autosave)
    log.info("Reloaded workbook '%s'", context.settings.data_file)
    return RuntimeContext(settings=context.settings, store=store, audit=AuditTrail(store))


def _lookup(context: RuntimeContext, key: CollectionKey, record_id: str) -> Any:
    try:
        return _ensure_collection(context, key)[record_id]
    except KeyError as exc:
        label = _ENTITY_NAMES[key].lower()
        log.warning("%s lookup failed for id '%s'", _ENTITY_NAMES[key], record_id)
        raise MissingReferenceError(f"Unknown {label} id: {record_id}") from exc


def list_products(context: RuntimeContext) -> List[ProductRow]:
    return list(_ensure_collection(context, CollectionKey.PRODUCTS).values())


def get_product(context: RuntimeContext, product_id: str) -> ProductRow:
    """Resolve a product by id.

    Raises:
        MissingReferenceError: If ``product_id`` is unknown.
    """
    return _lookup(context, CollectionKey.PRODUCTS, product_id)


def list_invoices(context: RuntimeContext, *, customer_id: Optional[str] = None) -> List[InvoiceRow]:
    invoices = _ensure_collection(context, CollectionKey.INVOICES).values()
    if customer_id is None:
        return list(invoices)
    return [invoice for invoice in invoices if invoice.customer_id == customer_id]


def get_invoice(context: RuntimeContext, invoice_id: str) -> InvoiceRow:
    return _lookup(context, CollectionKey.INVOICES, invoice_id)


def list_accounts(context: RuntimeContext, kind: AccountKind) -> List[AccountRow]:
    return list(_ensure_collection(context, ACCOUNT_COLLECTIONS[kind]).values())


def get_account(context: RuntimeContext, kind: AccountKind, account_id: str) -> AccountRow:
    return _lookup(context, ACCOUNT_COLLECTIONS[kind], account_id)


def list_customers(context: RuntimeContext) -> List[AccountRow]:
    return list_accounts(context, AccountKind.CUSTOMER)


def get_customer(context: RuntimeContext, customer_id: str) -> AccountRow:
    return get_account(context, AccountKind.CUSTOMER, customer_id)


def list_suppliers(context: RuntimeContext) -> List[AccountRow]:
    return list_accounts(context, AccountKind.SUPPLIER)


def get_supplier(context: RuntimeContext, supplier_id: str) -> AccountRow:
    return get_account(context, AccountKind.SUPPLIER, supplier_id)


def list_bookings(context: RuntimeContext) -> List[BookingRow]:
    return list(_ensure_collection(context, CollectionKey.BOOKINGS).values())


def get_booking(context: RuntimeContext, booking_id: str) -> BookingRow:
    return _lookup(context, CollectionKey.BOOKINGS, booking_id)


def list_coupons(context: RuntimeContext) -> List[CouponRow]:
    return list(_ensure_collection(context, CollectionKey.COUPONS).values())


def outstanding_balances(context: RuntimeContext, kind: AccountKind = AccountKind.CUSTOMER) -> Dict[str, Decimal]:
    """Map account ids to their non-zero running balance."""

    return {account.account_id: account.debt for account in list_accounts(context, kind) if account.debt != ZERO}


def account_statement(
    context: RuntimeContext, kind: AccountKind, account_id: str
) -> Tuple[AccountRow, Tuple[LedgerTransaction, ...]]:
    """Return the account with its ledger entries, oldest first."""

    account = get_account(context, kind, account_id)
    return account, account.transactions


def verify_ledger(context: RuntimeContext) -> List[LedgerDiscrepancy]:
    """Recompute every account balance and report the ones that disagree.

    Customers are checked against both their ledger deltas and the live
    invoice collection; suppliers against their ledger deltas.
    """

    problems = find_discrepancies(list_customers(context), list_invoices(context))
    problems.extend(find_discrepancies(list_suppliers(context)))
    log.info("Ledger verification finished with %d discrepancies", len(problems))
    return problems


# ---------------------------------------------------------------------------
# Unit of work
# ---------------------------------------------------------------------------


@dataclass
class UnitOfWork:
    """Replacement records staged by one multi-collection operation.

    Reads through the unit of work see staged records first, so an operation
    that touches the same product twice builds on its own earlier change.
    Nothing staged here is visible to the rest of the process until
    :func:`_commit` runs.
    """

    context: RuntimeContext
    timestamp: datetime
    _staged: Dict[CollectionKey, Dict[str, Optional[Any]]] = field(default_factory=dict)
    _audit: Dict[Tuple[str, Optional[str]], Tuple[AuditAction, List[str]]] = field(default_factory=dict)

    def get(self, key: CollectionKey, record_id: str) -> Optional[Any]:
        staged = self._staged.get(key, {})
        if record_id in staged:
            return staged[record_id]
        return _ensure_collection(self.context, key).get(record_id)

    def require(self, key: CollectionKey, record_id: str) -> Any:
        record = self.get(key, record_id)
        if record is None:
            label = _ENTITY_NAMES[key].lower()
            log.warning("%s lookup failed for id '%s'", _ENTITY_NAMES[key], record_id)
            raise MissingReferenceError(f"Unknown {label} id: {record_id}")
        return record

    def put(self, key: CollectionKey, record: Any) -> None:
        self._staged.setdefault(key, {})[getattr(record, _ID_ATTRIBUTES[key])] = record

    def delete(self, key: CollectionKey, record_id: str) -> None:
        self._staged.setdefault(key, {})[record_id] = None

    def ids(self, key: CollectionKey) -> Set[str]:
        current = set(_ensure_collection(self.context, key))
        for record_id, record in self._staged.get(key, {}).items():
            if record is None:
                current.discard(record_id)
            else:
                current.add(record_id)
        return current

    def audit(self, action: AuditAction, entity_type: str, entity_id: Optional[str], details: str) -> None:
        """Queue one audit record per entity; repeated notes on an entity are merged."""

        slot = (entity_type, entity_id)
        if slot in self._audit:
            previous_action, notes = self._audit[slot]
            notes.append(details)
            if action is AuditAction.DELETE or previous_action is AuditAction.DELETE:
                self._audit[slot] = (AuditAction.DELETE, notes)
            return
        self._audit[slot] = (action, [details])


def _commit(uow: UnitOfWork) -> None:
    """Apply a unit of work to the collections, audit it, then persist it.

    The new buckets are fully built before any of them replaces the current
    one. Persistence is attempted for every touched collection even when an
    earlier write fails; failures surface together as :class:`PersistenceError`
    and leave the in-memory state committed.
    """

    context = uow.context
    rebuilt: Dict[CollectionKey, Dict[str, Any]] = {}
    for key, staged in uow._staged.items():
        bucket = dict(_ensure_collection(context, key))
        for record_id, record in staged.items():
            if record is None:
                bucket.pop(record_id, None)
            else:
                bucket[record_id] = record
        rebuilt[key] = bucket
    for key, bucket in rebuilt.items():
        context._cache[key.value] = bucket

    for (entity_type, entity_id), (action, notes) in uow._audit.items():
        context.audit.record(action, entity_type, entity_id, "; ".join(notes))

    failed: List[str] = []
    first_error: Optional[BaseException] = None
    for key, bucket in rebuilt.items():
        try:
            context.store.save(key, list(bucket.values()))
        except Exception as exc:
            log.error("Failed to persist collection '%s': %s", key.value, exc)
            failed.append(key.value)
            first_error = first_error or exc
    try:
        context.audit.flush()
    except Exception as exc:
        log.error("Failed to persist the audit log: %s", exc)
        failed.append(CollectionKey.AUDIT_LOG.value)
        first_error = first_error or exc

    if failed:
        raise PersistenceError(
            failed,
            "Changes were applied in memory but could not be saved for: " + ", ".join(failed),
        ) from first_error
    log.debug("Committed unit of work touching %s", ", ".join(key.value for key in rebuilt))


# ---------------------------------------------------------------------------
# Cart editing and pricing preview
# ---------------------------------------------------------------------------


def available_for_sale(context: RuntimeContext, product_id: str, *, exclude_booking_id: Optional[str] = None) -> int:
    """Return the sellable quantity of ``product_id``.

    Raises:
        MissingReferenceError: If the product is unknown.
    """
    product = get_product(context, product_id)
    reserved = reserved_quantities(list_bookings(context), exclude_booking_id=exclude_booking_id)
    return available_quantity(product, reserved)


def stock_report(context: RuntimeContext) -> List[StockLevel]:
    reserved = reserved_quantities(list_bookings(context))
    return [
        StockLevel(
            product_id=product.product_id,
            product_name=product.product_name,
            stock=product.stock,
            reserved=reserved.get(product.product_id, 0),
            available=available_quantity(product, reserved),
        )
        for product in list_products(context)
    ]


def add_to_cart(context: RuntimeContext, cart: Cart, product_id: str, quantity: int = 1) -> CartLine:
    """Add units of a product to ``cart`` unless that exceeds its sellable quantity.

    Raises:
        InsufficientStock: If the line would exceed the available quantity.
        MissingReferenceError: If the product is unknown.
    """
    product = get_product(context, product_id)
    available = available_for_sale(context, product_id, exclude_booking_id=cart.booking_id)
    return cart.add(product, available=available, quantity=quantity)


def update_cart_quantity(context: RuntimeContext, cart: Cart, product_id: str, quantity: int) -> Optional[CartLine]:
    product = get_product(context, product_id)
    available = available_for_sale(context, product_id, exclude_booking_id=cart.booking_id)
    return cart.set_quantity(product, quantity, available=available)


def cart_from_booking(context: RuntimeContext, booking_id: str) -> BookingDraft:
    """Pre-fill a cart from a confirmed booking at current product prices.

    A booking with a positive deposit suggests a partial payment of that
    deposit; otherwise cash is suggested.

    Raises:
        BusinessRuleViolation: If the booking is not confirmed.
        MissingReferenceError: If the booking or one of its products is unknown.
    """
    booking = get_booking(context, booking_id)
    if booking.status is not BookingStatus.CONFIRMED:
        log.warning("Booking '%s' is %s and cannot be converted", booking_id, booking.status.value)
        raise BusinessRuleViolation(f"Booking '{booking_id}' is not confirmed")

    cart = Cart(booking_id=booking_id)
    for item in booking.items:
        product = get_product(context, item.product_id)
        cart.lines.append(CartLine(product.product_id, product.product_name, product.price, item.quantity))

    if booking.deposit > ZERO:
        return BookingDraft(cart, booking.customer_id, PaymentMethod.PARTIAL, booking.deposit)
    return BookingDraft(cart, booking.customer_id, PaymentMethod.CASH, None)


def quote_cart(
    context: RuntimeContext,
    lines: Sequence[CartLine],
    *,
    discount: Optional[Adjustment] = None,
    tax: Optional[Adjustment] = None,
    coupon_code: Optional[str] = None,
    payment_method: PaymentMethod = PaymentMethod.CASH,
    tendered: Optional[Decimal] = None,
    now: Optional[datetime] = None,
) -> PriceBreakdown:
    """Price a cart for display without mutating anything.

    Coupon problems (unknown, inactive, expired) never raise here; the cart is
    priced without the coupon and the reason is returned in ``coupon_error``.
    """

    coupon: Optional[CouponRow] = None
    lookup_error: Optional[CouponError] = None
    if coupon_code:
        try:
            coupon = find_coupon(list_coupons(context), coupon_code)
        except CouponError as exc:
            lookup_error = exc

    breakdown = calculate_totals(
        lines,
        discount=discount,
        tax=tax,
        coupon=coupon,
        payment_method=payment_method,
        tendered=tendered,
        now=now,
    )
    if lookup_error is not None:
        breakdown = replace(breakdown, coupon_error=lookup_error)
    return breakdown


# ---------------------------------------------------------------------------
# Sale completion
# ---------------------------------------------------------------------------


def _merge_lines(lines: Iterable[CartLine]) -> List[CartLine]:
    merged: Dict[str, CartLine] = {}
    for line in lines:
        existing = merged.get(line.product_id)
        merged[line.product_id] = line if existing is None else replace(existing, quantity=existing.quantity + line.quantity)
    return list(merged.values())


def _resolve_paid_amount(command: SaleCommand, total: Decimal) -> Decimal:
    """Work out the amount paid at the counter for the command's payment plan.

    Raises:
        InsufficientPayment: If cash tendered is below ``total``.
        BusinessRuleViolation: If a partial payment exceeds ``total``.
    """
    method = command.payment_method
    if method is PaymentMethod.CASH:
        tendered = command.tendered if command.tendered is not None else ZERO
        if tendered < total:
            log.warning("Cash tendered %s is below invoice total %s", tendered, total)
            raise InsufficientPayment(f"Amount tendered {tendered} is less than the total {total}")
        return total
    if method is PaymentMethod.CREDIT:
        return ZERO

    paid = quantize_money(command.paid_amount) if command.paid_amount is not None else ZERO
    require_nonnegative_money(paid)
    if paid > total:
        log.warning("Partial payment %s exceeds invoice total %s", paid, total)
        raise BusinessRuleViolation(f"Paid amount {paid} exceeds the invoice total {total}")
    return paid


def complete_sale(context: RuntimeContext, command: SaleCommand) -> SaleReceipt:
    """Turn a priced cart into an invoice and apply its effects.

    One unit of work creates the invoice, decrements stock for every line,
    posts an ``invoice`` entry (``debt += dueAmount``) on the attached
    customer, and completes the originating booking. All of it is validated
    before anything is applied.

    Raises:
        EmptyCart: If the command carries no lines.
        MissingCustomerForCredit: Credit or partial sale without a customer.
        InsufficientPayment: Cash tendered below the total.
        CouponInvalid, CouponExpired: The coupon code cannot be honoured.
        InsufficientStock: A line exceeds the product's sellable quantity.
        MissingReferenceError: Unknown product, customer, or booking.
        BusinessRuleViolation: Booking not confirmed, or overpaid partial sale.
        PersistenceError: The commit applied but could not be saved.
    """
    timestamp = _resolve_timestamp(command.timestamp)
    lines = _merge_lines(command.lines)
    if not lines:
        log.warning("Attempted to complete a sale with an empty cart")
        raise EmptyCart("Cannot complete a sale with an empty cart")
    for line in lines:
        require_positive_quantity(line.quantity)
        require_nonnegative_money(line.unit_price)

    uow = UnitOfWork(context, timestamp)
    customer: Optional[AccountRow] = None
    if command.customer_id is not None:
        customer = uow.require(CollectionKey.CUSTOMERS, command.customer_id)
    if command.payment_method in (PaymentMethod.CREDIT, PaymentMethod.PARTIAL) and customer is None:
        log.warning("Rejected %s sale without a customer account", command.payment_method.value)
        raise MissingCustomerForCredit(f"A customer is required for {command.payment_method.value} sales")

    coupon: Optional[CouponRow] = None
    if command.coupon_code:
        coupon = find_coupon(list_coupons(context), command.coupon_code)
        check_coupon(coupon, today=timestamp.astimezone().date())

    booking: Optional[BookingRow] = None
    if command.booking_id is not None:
        booking = uow.require(CollectionKey.BOOKINGS, command.booking_id)
        if booking.status is not BookingStatus.CONFIRMED:
            log.warning("Booking '%s' is %s and cannot be converted", booking.booking_id, booking.status.value)
            raise BusinessRuleViolation(f"Booking '{booking.booking_id}' is not confirmed")

    breakdown = calculate_totals(
        lines,
        discount=command.discount,
        tax=command.tax,
        coupon=coupon,
        payment_method=command.payment_method,
        tendered=command.tendered,
        now=timestamp,
    )
    if breakdown.total < ZERO:
        log.warning(
            "Discount %s exceeds subtotal %s; refusing a negative invoice total",
            breakdown.discount_amount,
            breakdown.subtotal,
        )
        raise BusinessRuleViolation(
            f"Discount {breakdown.discount_amount} exceeds the subtotal {breakdown.subtotal}"
        )
    paid_amount = _resolve_paid_amount(command, breakdown.total)
    due_amount = breakdown.total - paid_amount

    reserved = reserved_quantities(list_bookings(context), exclude_booking_id=command.booking_id)
    products: List[ProductRow] = []
    for line in lines:
        product = uow.require(CollectionKey.PRODUCTS, line.product_id)
        require_available(product.product_id, line.quantity, available_quantity(product, reserved))
        products.append(product)

    items = tuple(
        InvoiceItem(line.product_id, line.product_name or product.product_name, line.unit_price, line.quantity)
        for line, product in zip(lines, products)
    )
    invoice = InvoiceRow(
        invoice_id=generate_identifier("INV-", when=timestamp, taken=uow.ids(CollectionKey.INVOICES)),
        date_iso=timestamp.isoformat(),
        items=items,
        subtotal=breakdown.subtotal,
        discount=breakdown.discount,
        tax=breakdown.tax,
        total=breakdown.total,
        payment_method=command.payment_method,
        paid_amount=paid_amount,
        due_amount=due_amount,
        status=next_invoice_status(None, due_amount=due_amount, paid_amount=paid_amount, items=items),
        customer_id=customer.account_id if customer else None,
        customer_name=customer.name if customer else context.settings.walk_in_customer_name,
        coupon_code=breakdown.coupon_code,
        booking_id=command.booking_id,
    )
    uow.put(CollectionKey.INVOICES, invoice)
    uow.audit(
        AuditAction.CREATE,
        "Invoice",
        invoice.invoice_id,
        f"Sale to {invoice.customer_name} for {invoice.total} ({invoice.payment_method.value})",
    )

    for line, product in zip(lines, products):
        uow.put(CollectionKey.PRODUCTS, replace(product, stock=product.stock - line.quantity))
        uow.audit(AuditAction.UPDATE, "Product", product.product_id, f"stock -{line.quantity} (invoice #{invoice.invoice_id})")

    if customer is not None:
        entry_id = generate_identifier(
            "TX-", when=timestamp, taken={entry.transaction_id for entry in customer.transactions}
        )
        uow.put(CollectionKey.CUSTOMERS, post_entry(customer, build_invoice_entry(entry_id, invoice)))
        uow.audit(AuditAction.UPDATE, "Customer", customer.account_id, f"debt +{due_amount} (invoice #{invoice.invoice_id})")

    if booking is not None:
        uow.put(CollectionKey.BOOKINGS, replace(booking, status=BookingStatus.COMPLETED))
        uow.audit(AuditAction.UPDATE, "Booking", booking.booking_id, f"completed by invoice #{invoice.invoice_id}")

    _commit(uow)
    log.info(
        "Completed sale '%s' (total=%s, paid=%s, due=%s, status=%s)",
        invoice.invoice_id,
        invoice.total,
        invoice.paid_amount,
        invoice.due_amount,
        invoice.status.value,
    )
    return SaleReceipt(invoice=invoice, breakdown=breakdown)


# ---------------------------------------------------------------------------
# Returns
# ---------------------------------------------------------------------------


def process_return(context: RuntimeContext, command: ReturnCommand) -> ReturnReceipt:
    """Return items of an invoice, restocking them and settling the value.

    Requested quantities are clamped to what is still returnable per item;
    unknown product ids are ignored. The customer's debt is reduced by the
    return value when the refund goes to the balance, or whenever the
    original sale was not a cash sale (the return then forgives debt rather
    than handing out cash).

    Raises:
        MissingReferenceError: If the invoice is unknown.
        NothingToReturn: If every requested quantity clamps to zero.
        PersistenceError: The commit applied but could not be saved.
    """
    timestamp = _resolve_timestamp(command.timestamp)
    uow = UnitOfWork(context, timestamp)
    invoice: InvoiceRow = uow.require(CollectionKey.INVOICES, command.invoice_id)

    unknown = set(command.quantities) - {item.product_id for item in invoice.items}
    if unknown:
        log.warning("Ignoring return quantities for products not on invoice '%s': %s", invoice.invoice_id, sorted(unknown))

    updated_items: List[InvoiceItem] = []
    returned_lines: List[InvoiceItem] = []
    raw_value = ZERO
    for item in invoice.items:
        requested = int(command.quantities.get(item.product_id, 0))
        accepted = min(max(requested, 0), item.returnable_quantity)
        if requested > accepted:
            log.info(
                "Return of %d x '%s' on invoice '%s' clamped to %d",
                requested,
                item.product_id,
                invoice.invoice_id,
                accepted,
            )
        if accepted:
            returned_lines.append(replace(item, quantity=accepted, returned_quantity=0))
            raw_value += item.unit_price * accepted
        updated_items.append(replace(item, returned_quantity=item.returned_quantity + accepted))

    return_value = quantize_money(raw_value)
    if return_value <= ZERO:
        log.warning("Nothing to return on invoice '%s'", invoice.invoice_id)
        raise NothingToReturn(f"No returnable quantities were requested for invoice '{invoice.invoice_id}'")

    for line in returned_lines:
        product: Optional[ProductRow] = uow.get(CollectionKey.PRODUCTS, line.product_id)
        if product is None:
            log.warning("Returned product '%s' no longer exists; stock not restored", line.product_id)
            continue
        uow.put(CollectionKey.PRODUCTS, replace(product, stock=product.stock + line.quantity))
        uow.audit(AuditAction.UPDATE, "Product", product.product_id, f"stock +{line.quantity} (return on #{invoice.invoice_id})")

    credited = False
    if invoice.customer_id is not None:
        customer: Optional[AccountRow] = uow.get(CollectionKey.CUSTOMERS, invoice.customer_id)
        if customer is None:
            log.warning("Customer '%s' of invoice '%s' no longer exists", invoice.customer_id, invoice.invoice_id)
        else:
            credited = command.refund_method is RefundMethod.BALANCE or invoice.payment_method is not PaymentMethod.CASH
            entry = build_return_entry(
                generate_identifier("RET-", when=timestamp, taken={entry.transaction_id for entry in customer.transactions}),
                invoice_id=invoice.invoice_id,
                date_iso=timestamp.isoformat(),
                return_value=return_value,
                credited=credited,
                items=returned_lines,
            )
            uow.put(CollectionKey.CUSTOMERS, post_entry(customer, entry))
            uow.audit(
                AuditAction.UPDATE,
                "Customer",
                customer.account_id,
                f"return {return_value} ({'debt reduced' if credited else 'cash refund'})",
            )

    items = tuple(updated_items)
    updated_invoice = replace(
        invoice,
        items=items,
        status=next_invoice_status(
            invoice.status,
            due_amount=invoice.due_amount,
            paid_amount=invoice.paid_amount,
            items=items,
        ),
        returned_amount=invoice.returned_amount + return_value,
    )
    uow.put(CollectionKey.INVOICES, updated_invoice)
    uow.audit(AuditAction.UPDATE, "Invoice", invoice.invoice_id, f"return recorded for {return_value}")

    _commit(uow)
    log.info(
        "Processed return on '%s' (value=%s, refund=%s, credited=%s, status=%s)",
        invoice.invoice_id,
        return_value,
        command.refund_method.value,
        credited,
        updated_invoice.status.value,
    )
    return ReturnReceipt(
        invoice=updated_invoice,
        return_value=return_value,
        returned_items=tuple(returned_lines),
        credited_to_balance=credited,
    )


# ---------------------------------------------------------------------------
# Reversal
# ---------------------------------------------------------------------------


def reverse_invoices(
    context: RuntimeContext,
    invoice_ids: Iterable[str],
    *,
    timestamp: Optional[datetime] = None,
) -> List[InvoiceRow]:
    """Delete invoices and undo their sale effects in one unit of work.

    For every invoice the originally sold quantities go back to stock (returns
    already processed are not taken into account), the customer's debt drops
    by the invoice's due amount, and the invoice's ledger entry is removed.
    Return entries stay in the ledger.

    Raises:
        MissingReferenceError: If any invoice id is unknown; nothing is applied.
        PersistenceError: The commit applied but could not be saved.
    """
    uow = UnitOfWork(context, _resolve_timestamp(timestamp))
    removed: List[InvoiceRow] = []
    for invoice_id in dict.fromkeys(invoice_ids):
        invoice: InvoiceRow = uow.require(CollectionKey.INVOICES, invoice_id)

        for item in invoice.items:
            product: Optional[ProductRow] = uow.get(CollectionKey.PRODUCTS, item.product_id)
            if product is None:
                log.warning("Product '%s' of invoice '%s' no longer exists", item.product_id, invoice_id)
                continue
            uow.put(CollectionKey.PRODUCTS, replace(product, stock=product.stock + item.quantity))
            uow.audit(AuditAction.UPDATE, "Product", product.product_id, f"stock +{item.quantity} (deleted #{invoice_id})")

        if invoice.customer_id is not None:
            customer: Optional[AccountRow] = uow.get(CollectionKey.CUSTOMERS, invoice.customer_id)
            if customer is not None:
                uow.put(CollectionKey.CUSTOMERS, remove_invoice_entry(customer, invoice_id, invoice.due_amount))
                uow.audit(AuditAction.UPDATE, "Customer", customer.account_id, f"debt -{invoice.due_amount} (deleted #{invoice_id})")

        uow.delete(CollectionKey.INVOICES, invoice_id)
        uow.audit(AuditAction.DELETE, "Invoice", invoice_id, f"deleted invoice of {invoice.customer_name} ({invoice.total})")
        removed.append(invoice)

    if not removed:
        return removed
    _commit(uow)
    log.info("Reversed %d invoice(s): %s", len(removed), ", ".join(invoice.invoice_id for invoice in removed))
    return removed


def reverse_invoice(context: RuntimeContext, invoice_id: str, *, timestamp: Optional[datetime] = None) -> InvoiceRow:
    return reverse_invoices(context, [invoice_id], timestamp=timestamp)[0]


# ---------------------------------------------------------------------------
# Payments and purchases
# ---------------------------------------------------------------------------


def record_payment(context: RuntimeContext, command: PaymentCommand) -> AccountRow:
    """Post a ``payment`` entry that lowers an account's balance.

    Raises:
        ValueError: If the amount is not positive.
        MissingReferenceError: If the account is unknown.
    """
    amount = quantize_money(command.amount)
    require_positive_money(amount)
    timestamp = _resolve_timestamp(command.timestamp)
    key = ACCOUNT_COLLECTIONS[command.account_kind]
    uow = UnitOfWork(context, timestamp)
    account: AccountRow = uow.require(key, command.account_id)

    entry = LedgerTransaction(
        transaction_id=generate_identifier("PAY-", when=timestamp, taken={t.transaction_id for t in account.transactions}),
        entry_type=LedgerEntryType.PAYMENT,
        date_iso=timestamp.isoformat(),
        amount=amount,
        balance_delta=-amount,
        notes=command.notes or f"{command.account_kind.value} payment",
    )
    updated = post_entry(account, entry)
    uow.put(key, updated)
    uow.audit(AuditAction.PAYMENT, _ENTITY_NAMES[key], account.account_id, f"payment of {amount}")
    _commit(uow)
    log.info("Recorded payment of %s on %s '%s'", amount, command.account_kind.value, account.account_id)
    return updated


def record_purchase(context: RuntimeContext, command: PurchaseCommand) -> LedgerTransaction:
    """Receive goods from a supplier.

    Stock rises by each line's quantity and the product cost is updated to
    the purchase cost; the supplier's balance rises by the unpaid part.

    Raises:
        ValueError: Empty purchase, non-positive quantity, or negative money.
        MissingReferenceError: Unknown supplier or product.
        BusinessRuleViolation: Paid amount above the purchase total.
    """
    if not command.lines:
        log.error("Purchase for supplier '%s' has no lines", command.supplier_id)
        raise ValueError("A purchase requires at least one line")
    timestamp = _resolve_timestamp(command.timestamp)
    uow = UnitOfWork(context, timestamp)
    supplier: AccountRow = uow.require(CollectionKey.SUPPLIERS, command.supplier_id)

    purchased: List[InvoiceItem] = []
    for line in command.lines:
        require_positive_quantity(line.quantity)
        require_nonnegative_money(line.unit_cost)
        product: ProductRow = uow.require(CollectionKey.PRODUCTS, line.product_id)
        uow.put(CollectionKey.PRODUCTS, replace(product, stock=product.stock + line.quantity, cost=line.unit_cost))
        purchased.append(InvoiceItem(product.product_id, product.product_name, line.unit_cost, line.quantity))

    total = quantize_money(sum((item.unit_price * item.quantity for item in purchased), ZERO))
    paid = quantize_money(command.paid_amount)
    require_nonnegative_money(paid)
    if paid > total:
        log.warning("Purchase payment %s exceeds total %s", paid, total)
        raise BusinessRuleViolation(f"Paid amount {paid} exceeds the purchase total {total}")
    due = total - paid

    purchase_id = generate_identifier("PUR-", when=timestamp, taken={t.transaction_id for t in supplier.transactions})
    entry = LedgerTransaction(
        transaction_id=purchase_id,
        entry_type=LedgerEntryType.PURCHASE,
        date_iso=timestamp.isoformat(),
        amount=total,
        balance_delta=due,
        notes=command.notes or f"purchase #{purchase_id}",
        items=tuple(purchased),
    )
    uow.put(CollectionKey.SUPPLIERS, post_entry(supplier, entry))
    for item in purchased:
        uow.audit(AuditAction.UPDATE, "Product", item.product_id, f"stock +{item.quantity} at cost {item.unit_price}")
    uow.audit(AuditAction.CREATE, "Purchase", purchase_id, f"purchase from {supplier.name} for {total}")
    uow.audit(AuditAction.UPDATE, "Supplier", supplier.account_id, f"debt +{due}")

    _commit(uow)
    log.info("Recorded purchase '%s' from '%s' (total=%s, due=%s)", purchase_id, supplier.account_id, total, due)
    return entry


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


def _create(context: RuntimeContext, key: CollectionKey, record: Any, details: str) -> Any:
    record_id = getattr(record, _ID_ATTRIBUTES[key])
    uow = UnitOfWork(context, _resolve_timestamp(None))
    if uow.get(key, record_id) is not None:
        log.warning("%s '%s' already exists", _ENTITY_NAMES[key], record_id)
        raise BusinessRuleViolation(f"{_ENTITY_NAMES[key]} '{record_id}' already exists")
    uow.put(key, record)
    uow.audit(AuditAction.CREATE, _ENTITY_NAMES[key], record_id, details)
    _commit(uow)
    return record


def add_product(
    context: RuntimeContext,
    *,
    product_id: str,
    product_name: str,
    price: Decimal,
    cost: Decimal = ZERO,
    stock: int = 0,
    barcode: str = "",
) -> ProductRow:
    require_nonnegative_money(price)
    require_nonnegative_money(cost)
    if stock < 0:
        log.error("Opening stock validation failed: %s", stock)
        raise ValueError("Stock must be zero or positive")
    record = ProductRow(product_id, product_name, price, cost, stock, barcode)
    return _create(context, CollectionKey.PRODUCTS, record, f"product {product_name} at {price}")


def add_account(context: RuntimeContext, kind: AccountKind, *, account_id: str, name: str, phone: str = "") -> AccountRow:
    record = AccountRow(account_id=account_id, name=name, phone=phone)
    return _create(context, ACCOUNT_COLLECTIONS[kind], record, f"{kind.value} {name}")


def add_customer(context: RuntimeContext, *, customer_id: str, name: str, phone: str = "") -> AccountRow:
    return add_account(context, AccountKind.CUSTOMER, account_id=customer_id, name=name, phone=phone)


def add_supplier(context: RuntimeContext, *, supplier_id: str, name: str, phone: str = "") -> AccountRow:
    return add_account(context, AccountKind.SUPPLIER, account_id=supplier_id, name=name, phone=phone)


def add_coupon(
    context: RuntimeContext,
    *,
    code: str,
    adjustment_type: AdjustmentType,
    value: Decimal,
    expiry_date: date,
    is_active: bool = True,
    coupon_id: Optional[str] = None,
) -> CouponRow:
    require_nonnegative_money(value)
    if any(coupon.code.lower() == code.lower() for coupon in list_coupons(context)):
        log.warning("Coupon code '%s' already exists", code)
        raise BusinessRuleViolation(f"Coupon code '{code}' already exists")
    record = CouponRow(coupon_id or code.upper(), code, adjustment_type, value, expiry_date, is_active)
    return _create(context, CollectionKey.COUPONS, record, f"coupon {code}")


def add_booking(
    context: RuntimeContext,
    *,
    customer_id: str,
    items: Sequence[BookingItem],
    booking_date: Optional[datetime] = None,
    deposit: Decimal = ZERO,
    notes: Optional[str] = None,
    booking_id: Optional[str] = None,
) -> BookingRow:
    """Reserve stock for a customer.

    Raises:
        ValueError: No items, non-positive quantity, or negative deposit.
        MissingReferenceError: Unknown customer or product.
        InsufficientStock: A quantity exceeds what is still sellable.
    """
    if not items:
        raise ValueError("A booking requires at least one item")
    require_nonnegative_money(deposit)
    get_customer(context, customer_id)
    reserved = reserved_quantities(list_bookings(context))
    for item in items:
        require_positive_quantity(item.quantity)
        product = get_product(context, item.product_id)
        require_available(product.product_id, item.quantity, available_quantity(product, reserved))

    moment = _resolve_timestamp(booking_date)
    record = BookingRow(
        booking_id=booking_id or generate_identifier("BK-", when=moment, taken=set(_ensure_collection(context, CollectionKey.BOOKINGS))),
        customer_id=customer_id,
        items=tuple(items),
        booking_date_iso=moment.isoformat(),
        deposit=deposit,
        notes=notes,
    )
    return _create(context, CollectionKey.BOOKINGS, record, f"booking for {customer_id}")


def cancel_booking(context: RuntimeContext, booking_id: str) -> BookingRow:
    """Cancel a confirmed booking, releasing its reservation."""

    uow = UnitOfWork(context, _resolve_timestamp(None))
    booking: BookingRow = uow.require(CollectionKey.BOOKINGS, booking_id)
    if booking.status is not BookingStatus.CONFIRMED:
        log.warning("Booking '%s' is %s and cannot be canceled", booking_id, booking.status.value)
        raise BusinessRuleViolation(f"Booking '{booking_id}' is not confirmed")
    updated = replace(booking, status=BookingStatus.CANCELED)
    uow.put(CollectionKey.BOOKINGS, updated)
    uow.audit(AuditAction.UPDATE, "Booking", booking_id, "canceled")
    _commit(uow)
    return updated


class LedgerService:
    """The single mutation interface over products, invoices, and accounts.

    Callers that hold a :class:`LedgerService` never edit the collections
    directly; every change goes through one of the methods below.
    """

    def __init__(self, context: RuntimeContext) -> None:
        self.context = context

    def quote(self, lines: Sequence[CartLine], **options: Any) -> PriceBreakdown:
        return quote_cart(self.context, lines, **options)

    def complete_sale(self, command: SaleCommand) -> SaleReceipt:
        return complete_sale(self.context, command)

    def process_return(self, command: ReturnCommand) -> ReturnReceipt:
        return process_return(self.context, command)

    def reverse_invoice(self, invoice_id: str, *, timestamp: Optional[datetime] = None) -> InvoiceRow:
        return reverse_invoice(self.context, invoice_id, timestamp=timestamp)

    def reverse_invoices(self, invoice_ids: Iterable[str], *, timestamp: Optional[datetime] = None) -> List[InvoiceRow]:
        return reverse_invoices(self.context, invoice_ids, timestamp=timestamp)

    def record_payment(self, command: PaymentCommand) -> AccountRow:
        return record_payment(self.context, command)

    def record_purchase(self, command: PurchaseCommand) -> LedgerTransaction:
        return record_purchase(self.context, command)

    def verify(self) -> List[LedgerDiscrepancy]:
        return verify_ledger(self.context)
