"""Command-line entry points for the POS ledger.

All orchestration in this module is limited to argparse wiring, translating
command-line arguments into the command objects consumed by the business
layer, and printing reports. Mutating commands are gated by the
``[Permissions] CanMutateSales`` setting and the workbook is written only
after one of them succeeds.
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass
from datetime import date
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Callable, Dict, Iterable, Mapping, MutableMapping, Optional, Sequence, Tuple

from . import core_logic, data_manager, log
from .availability import Cart
from .constants import AccountKind, AdjustmentType, PaymentMethod, RefundMethod
from .data_manager import Adjustment, BookingItem
from .exceptions import BusinessRuleViolation, PermissionDenied, PersistenceError
from .pricing import PriceBreakdown


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int]
    mutating: bool = False


# ---------------------------------------------------------------------------
# Argument types
# ---------------------------------------------------------------------------


def parse_money(raw: str) -> Decimal:
    try:
        return Decimal(raw)
    except InvalidOperation as exc:
        raise argparse.ArgumentTypeError(f"invalid amount: {raw!r}") from exc


def parse_item(raw: str) -> Tuple[str, int]:
    """Parse ``PRODUCT_ID[:QTY]``; the quantity defaults to 1."""

    product_id, _, quantity_raw = raw.partition(":")
    if not product_id:
        raise argparse.ArgumentTypeError(f"invalid item: {raw!r}")
    try:
        quantity = int(quantity_raw) if quantity_raw else 1
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"invalid quantity in item: {raw!r}") from exc
    return product_id, quantity


def parse_purchase_line(raw: str) -> core_logic.PurchaseLine:
    """Parse ``PRODUCT_ID:QTY:UNIT_COST``."""

    parts = raw.split(":")
    if len(parts) != 3 or not parts[0]:
        raise argparse.ArgumentTypeError(f"expected PRODUCT_ID:QTY:UNIT_COST, got {raw!r}")
    try:
        return core_logic.PurchaseLine(parts[0], Decimal(parts[2]), int(parts[1]))
    except (InvalidOperation, ValueError) as exc:
        raise argparse.ArgumentTypeError(f"invalid purchase line: {raw!r}") from exc


def parse_date(raw: str) -> date:
    try:
        return date.fromisoformat(raw)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"expected YYYY-MM-DD, got {raw!r}") from exc


# ---------------------------------------------------------------------------
# Parser construction
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="pos-ledger",
        description="Point-of-sale transactions and ledgers backed by an Excel workbook.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (searched upward from the working directory by default).",
    )
    return parser


def configure_subcommands(
    parser: argparse.ArgumentParser,
) -> Mapping[str, CommandSpec]:
    """Wire all CLI sub-commands onto the supplied parser."""
    subparsers = parser.add_subparsers(dest="command", required=True, title="commands")
    write_specs = register_write_commands(subparsers)
    read_specs = register_read_commands(subparsers)
    return build_command_table([*write_specs.values(), *read_specs.values()])


def register_write_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare mutating CLI commands such as sales and returns."""
    specs = {
        "add-product": register_add_product_command(subparsers),
        "add-customer": register_add_account_command(subparsers, AccountKind.CUSTOMER),
        "add-supplier": register_add_account_command(subparsers, AccountKind.SUPPLIER),
        "add-coupon": register_add_coupon_command(subparsers),
        "add-booking": register_add_booking_command(subparsers),
        "cancel-booking": register_cancel_booking_command(subparsers),
        "sale": register_sale_command(subparsers),
        "return": register_return_command(subparsers),
        "delete-invoice": register_delete_invoice_command(subparsers),
        "pay-debt": register_payment_command(subparsers, AccountKind.CUSTOMER),
        "purchase": register_purchase_command(subparsers),
        "pay-supplier": register_payment_command(subparsers, AccountKind.SUPPLIER),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only CLI commands such as reports."""
    specs = {
        "stock": register_stock_command(subparsers),
        "quote": register_quote_command(subparsers),
        "invoices": register_invoices_command(subparsers),
        "debts": register_debts_command(subparsers),
        "statement": register_statement_command(subparsers),
        "verify": register_verify_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def _add_pricing_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--item", dest="items", action="append", type=parse_item, default=[], metavar="PID[:QTY]")
    parser.add_argument("--payment", choices=[member.value for member in PaymentMethod], default=None)
    parser.add_argument("--tendered", type=parse_money, default=None)
    parser.add_argument("--discount", type=parse_money, default=None)
    parser.add_argument("--discount-type", choices=[member.value for member in AdjustmentType], default="fixed")
    parser.add_argument("--tax", type=parse_money, default=None, help="Overrides the configured default tax.")
    parser.add_argument("--tax-type", choices=[member.value for member in AdjustmentType], default=None)
    parser.add_argument("--coupon", default=None)


def register_add_product_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-product``."""
    name = "add-product"
    help_text = "Register a new product."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-id", required=True)
        parser.add_argument("--product-name", required=True)
        parser.add_argument("--price", type=parse_money, required=True)
        parser.add_argument("--cost", type=parse_money, default=Decimal("0"))
        parser.add_argument("--stock", type=int, default=0)
        parser.add_argument("--barcode", default="")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_product, mutating=True)


def register_add_account_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
    kind: AccountKind,
) -> CommandSpec:
    """Register ``add-customer`` or ``add-supplier``."""
    name = f"add-{kind.value}"
    help_text = f"Register a new {kind.value} account."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--account-id", f"--{kind.value}-id", dest="account_id", required=True)
        parser.add_argument("--name", required=True)
        parser.add_argument("--phone", default="")
        parser.set_defaults(command=name, account_kind=kind.value)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_account, mutating=True)


def register_add_coupon_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-coupon``."""
    name = "add-coupon"
    help_text = "Create a discount coupon."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--code", required=True)
        parser.add_argument("--type", dest="coupon_type", choices=[member.value for member in AdjustmentType], required=True)
        parser.add_argument("--value", type=parse_money, required=True)
        parser.add_argument("--expiry", type=parse_date, required=True, help="Last valid day (YYYY-MM-DD).")
        parser.add_argument("--inactive", action="store_true", help="Create the coupon deactivated.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_coupon, mutating=True)


def register_add_booking_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-booking``."""
    name = "add-booking"
    help_text = "Reserve stock for a customer."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--customer-id", required=True)
        parser.add_argument("--item", dest="items", action="append", type=parse_item, required=True, metavar="PID[:QTY]")
        parser.add_argument("--deposit", type=parse_money, default=Decimal("0"))
        parser.add_argument("--notes", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_booking, mutating=True)


def register_cancel_booking_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    name = "cancel-booking"
    help_text = "Cancel a confirmed booking."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--booking-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_cancel_booking, mutating=True)


def register_sale_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``sale``."""
    name = "sale"
    help_text = "Complete a sale and create an invoice."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        _add_pricing_arguments(parser)
        parser.add_argument("--customer-id", default=None)
        parser.add_argument("--paid", type=parse_money, default=None, help="Amount paid now (partial sales).")
        parser.add_argument("--booking-id", default=None, help="Convert a confirmed booking into this sale.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_sale, mutating=True)


def register_return_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``return``."""
    name = "return"
    help_text = "Return items of an invoice."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--invoice-id", required=True)
        parser.add_argument("--item", dest="items", action="append", type=parse_item, required=True, metavar="PID[:QTY]")
        parser.add_argument("--refund", choices=[member.value for member in RefundMethod], default=RefundMethod.CASH.value)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_return, mutating=True)


def register_delete_invoice_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``delete-invoice``."""
    name = "delete-invoice"
    help_text = "Delete invoices and reverse their stock and balance effects."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("invoice_ids", nargs="+", metavar="INVOICE_ID")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_delete_invoice, mutating=True)


def register_payment_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
    kind: AccountKind,
) -> CommandSpec:
    """Register ``pay-debt`` (customers) or ``pay-supplier`` (suppliers)."""
    name = "pay-debt" if kind is AccountKind.CUSTOMER else "pay-supplier"
    help_text = f"Record a payment against a {kind.value} balance."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--account-id", f"--{kind.value}-id", dest="account_id", required=True)
        parser.add_argument("--amount", type=parse_money, required=True)
        parser.add_argument("--notes", default=None)
        parser.set_defaults(command=name, account_kind=kind.value)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_payment, mutating=True)


def register_purchase_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``purchase``."""
    name = "purchase"
    help_text = "Receive goods from a supplier."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--supplier-id", required=True)
        parser.add_argument(
            "--line",
            dest="lines",
            action="append",
            type=parse_purchase_line,
            required=True,
            metavar="PID:QTY:UNIT_COST",
        )
        parser.add_argument("--paid", type=parse_money, default=Decimal("0"))
        parser.add_argument("--notes", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_purchase, mutating=True)


def register_stock_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``stock``."""
    name = "stock"
    help_text = "Display stock, reserved, and sellable quantities."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_stock_report)


def register_quote_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``quote``."""
    name = "quote"
    help_text = "Price a cart without completing the sale."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        _add_pricing_arguments(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_quote)


def register_invoices_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    name = "invoices"
    help_text = "List invoices."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--customer-id", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_invoices_report)


def register_debts_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``debts``."""
    name = "debts"
    help_text = "Display outstanding balances."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--suppliers", action="store_true", help="Show supplier balances instead.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_debts_report)


def register_statement_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    name = "statement"
    help_text = "Display the ledger of one customer or supplier."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        group = parser.add_mutually_exclusive_group(required=True)
        group.add_argument("--customer-id", default=None)
        group.add_argument("--supplier-id", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_statement_report)


def register_verify_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    name = "verify"
    help_text = "Check every account balance against its ledger and invoices."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_verify)


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------


def load_runtime_context(config_path: Optional[Path] = None) -> core_logic.RuntimeContext:
    """Resolve the runtime context for CLI operations."""
    context = core_logic.load_runtime_context(config_path)
    core_logic.ensure_schema_version(context)
    return context


def can_mutate_sales(settings: data_manager.ConfigSettings) -> bool:
    return settings.can_mutate_sales


def dispatch_command(
    context: core_logic.RuntimeContext,
    args: argparse.Namespace,
    command_table: Mapping[str, CommandSpec],
) -> int:
    """Dispatch the parsed arguments to the configured executor.

    Raises:
        PermissionDenied: If a mutating command runs while sales mutation is
            disabled in the configuration.
    """
    if not hasattr(args, "command") or args.command is None:
        raise KeyError("No command specified")
    spec = command_table.get(args.command)
    if spec is None:
        raise KeyError(f"Unknown command: {args.command}")
    if spec.mutating and not can_mutate_sales(context.settings):
        log.warning("Command '%s' refused: sales mutation is disabled", spec.name)
        raise PermissionDenied(f"Command '{spec.name}' requires sales mutation permission")
    return spec.execute(context, args)


def build_command_table(
    specs: Iterable[CommandSpec],
) -> MutableMapping[str, CommandSpec]:
    """Build an index of command specifications keyed by command name."""
    table: Dict[str, CommandSpec] = {}
    for spec in specs:
        if spec.name in table:
            raise ValueError(f"Duplicate command name: {spec.name}")
        table[spec.name] = spec
    return table


# ---------------------------------------------------------------------------
# Translation
# ---------------------------------------------------------------------------


def translate_adjustments(
    context: core_logic.RuntimeContext,
    args: argparse.Namespace,
) -> Tuple[Optional[Adjustment], Adjustment]:
    """Build the manual discount and the tax; the tax falls back to configuration."""
    discount = None
    if args.discount is not None:
        discount = Adjustment(AdjustmentType(args.discount_type), args.discount)
    tax = context.settings.default_tax
    if args.tax is not None:
        tax = Adjustment(AdjustmentType(args.tax_type or tax.adjustment_type.value), args.tax)
    elif args.tax_type is not None:
        tax = Adjustment(AdjustmentType(args.tax_type), tax.value)
    return discount, tax


def build_cart(
    context: core_logic.RuntimeContext,
    items: Sequence[Tuple[str, int]],
    *,
    booking_id: Optional[str] = None,
) -> Cart:
    """Price ``items`` at current product prices, checking availability per line."""
    cart = Cart(booking_id=booking_id)
    for product_id, quantity in items:
        core_logic.add_to_cart(context, cart, product_id, quantity)
    return cart


def translate_sale(context: core_logic.RuntimeContext, args: argparse.Namespace) -> core_logic.SaleCommand:
    """Translate CLI args into a sale command object.

    With ``--booking-id`` and no ``--item`` the cart, customer, and suggested
    payment plan come from the booking.
    """
    customer_id = args.customer_id
    payment = args.payment
    paid = args.paid
    if args.booking_id is not None and not args.items:
        draft = core_logic.cart_from_booking(context, args.booking_id)
        cart = draft.cart
        customer_id = customer_id or draft.customer_id
        payment = payment or draft.payment_method.value
        paid = paid if paid is not None else draft.paid_amount
    else:
        cart = build_cart(context, args.items, booking_id=args.booking_id)

    discount, tax = translate_adjustments(context, args)
    return core_logic.SaleCommand(
        lines=cart.as_lines(),
        payment_method=PaymentMethod(payment or PaymentMethod.CASH.value),
        customer_id=customer_id,
        tendered=args.tendered,
        paid_amount=paid,
        discount=discount,
        tax=tax,
        coupon_code=args.coupon,
        booking_id=args.booking_id,
    )


def translate_return(args: argparse.Namespace) -> core_logic.ReturnCommand:
    quantities: Dict[str, int] = {}
    for product_id, quantity in args.items:
        quantities[product_id] = quantities.get(product_id, 0) + quantity
    return core_logic.ReturnCommand(
        invoice_id=args.invoice_id,
        quantities=quantities,
        refund_method=RefundMethod(args.refund),
    )


def translate_payment(args: argparse.Namespace) -> core_logic.PaymentCommand:
    return core_logic.PaymentCommand(
        account_kind=AccountKind(args.account_kind),
        account_id=args.account_id,
        amount=args.amount,
        notes=args.notes,
    )


def translate_purchase(args: argparse.Namespace) -> core_logic.PurchaseCommand:
    return core_logic.PurchaseCommand(
        supplier_id=args.supplier_id,
        lines=tuple(args.lines),
        paid_amount=args.paid,
        notes=args.notes,
    )


# ---------------------------------------------------------------------------
# Executors
# ---------------------------------------------------------------------------


def _print_breakdown(breakdown: PriceBreakdown) -> None:
    print(f"Subtotal:  {breakdown.subtotal}")
    print(f"Discount: -{breakdown.discount_amount}")
    print(f"Tax:      +{breakdown.tax_amount}")
    print(f"Total:     {breakdown.total}")
    if breakdown.change:
        print(f"Change:    {breakdown.change}")
    if breakdown.coupon_code:
        print(f"Coupon:    {breakdown.coupon_code}")
    if breakdown.coupon_error is not None:
        print(f"Coupon not applied: {breakdown.coupon_error}")


def run_add_product(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    product = core_logic.add_product(
        context,
        product_id=args.product_id,
        product_name=args.product_name,
        price=args.price,
        cost=args.cost,
        stock=args.stock,
        barcode=args.barcode,
    )
    print(f"Added product {product.product_id}")
    return 0


def run_add_account(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    kind = AccountKind(args.account_kind)
    account = core_logic.add_account(context, kind, account_id=args.account_id, name=args.name, phone=args.phone)
    print(f"Added {kind.value} {account.account_id}")
    return 0


def run_add_coupon(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    coupon = core_logic.add_coupon(
        context,
        code=args.code,
        adjustment_type=AdjustmentType(args.coupon_type),
        value=args.value,
        expiry_date=args.expiry,
        is_active=not args.inactive,
    )
    print(f"Added coupon {coupon.code}")
    return 0


def run_add_booking(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    booking = core_logic.add_booking(
        context,
        customer_id=args.customer_id,
        items=[BookingItem(product_id, quantity) for product_id, quantity in args.items],
        deposit=args.deposit,
        notes=args.notes,
    )
    print(f"Added booking {booking.booking_id}")
    return 0


def run_cancel_booking(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    core_logic.cancel_booking(context, args.booking_id)
    print(f"Canceled booking {args.booking_id}")
    return 0


def run_sale(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the sale workflow via the business layer."""
    command = translate_sale(context, args)
    receipt = core_logic.complete_sale(context, command)
    invoice = receipt.invoice
    print(f"Invoice {invoice.invoice_id} ({invoice.status.value})")
    _print_breakdown(receipt.breakdown)
    if invoice.due_amount:
        print(f"Due:       {invoice.due_amount}")
    return 0


def run_return(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    receipt = core_logic.process_return(context, translate_return(args))
    settlement = "credited to balance" if receipt.credited_to_balance else "refunded"
    print(f"Returned {receipt.return_value} on {receipt.invoice.invoice_id} ({settlement})")
    return 0


def run_delete_invoice(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    removed = core_logic.reverse_invoices(context, args.invoice_ids)
    for invoice in removed:
        print(f"Deleted invoice {invoice.invoice_id}")
    return 0


def run_payment(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    account = core_logic.record_payment(context, translate_payment(args))
    print(f"{account.name}: balance {account.debt}")
    return 0


def run_purchase(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    entry = core_logic.record_purchase(context, translate_purchase(args))
    print(f"Purchase {entry.transaction_id}: total {entry.amount}, due {entry.balance_delta}")
    return 0


def run_stock_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    for level in core_logic.stock_report(context):
        print(f"{level.product_id}\t{level.product_name}\tstock={level.stock}\treserved={level.reserved}\tavailable={level.available}")
    return 0


def run_quote(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    cart = build_cart(context, args.items)
    discount, tax = translate_adjustments(context, args)
    breakdown = core_logic.quote_cart(
        context,
        cart.as_lines(),
        discount=discount,
        tax=tax,
        coupon_code=args.coupon,
        payment_method=PaymentMethod(args.payment or PaymentMethod.CASH.value),
        tendered=args.tendered,
    )
    _print_breakdown(breakdown)
    return 0


def run_invoices_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    for invoice in core_logic.list_invoices(context, customer_id=args.customer_id):
        print(
            f"{invoice.invoice_id}\t{invoice.date_iso}\t{invoice.customer_name}\t"
            f"{invoice.total}\t{invoice.status.value}\tdue={invoice.due_amount}"
        )
    return 0


def run_debts_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    kind = AccountKind.SUPPLIER if args.suppliers else AccountKind.CUSTOMER
    for account_id, balance in core_logic.outstanding_balances(context, kind).items():
        print(f"{account_id}\t{balance}")
    return 0


def run_statement_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    if args.customer_id is not None:
        kind, account_id = AccountKind.CUSTOMER, args.customer_id
    else:
        kind, account_id = AccountKind.SUPPLIER, args.supplier_id
    account, entries = core_logic.account_statement(context, kind, account_id)
    print(f"{account.name} ({account.account_id}) balance {account.debt}")
    for entry in entries:
        print(f"{entry.date_iso}\t{entry.entry_type.value}\t{entry.amount}\t{entry.balance_delta:+}\t{entry.notes}")
    return 0


def run_verify(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    problems = core_logic.verify_ledger(context)
    for problem in problems:
        print(
            f"{problem.account_id}: cached {problem.cached_debt}, "
            f"expected {problem.expected_debt} ({problem.source})"
        )
    if problems:
        return 1
    print("All balances reconcile.")
    return 0


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, BusinessRuleViolation):
        log.error("%s", error)
        return 2
    if isinstance(error, FileNotFoundError):
        log.error("%s", error)
        return 3
    if isinstance(error, PersistenceError):
        log.error("%s (failed: %s)", error, ", ".join(error.failed))
        return 1
    log.error("%s", error)
    return 1


def persist_workbook(context: core_logic.RuntimeContext) -> None:
    """Persist workbook changes after a successful write command."""
    try:
        core_logic.persist_context(context)
    except PermissionError as error:
        raise RuntimeError(str(error)) from error


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    try:
        context = load_runtime_context(getattr(args, "config", None))
        exit_code = dispatch_command(context, args, command_table)
        if exit_code == 0 and command_table[args.command].mutating:
            persist_workbook(context)
        return exit_code
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)
