"""Integration tests describing the end-to-end POS ledger workflows.

These scenarios run the business layer against a real workbook, persisting and
reloading between steps so every figure is checked after a round trip through
the Excel file.
"""

from __future__ import annotations

from datetime import UTC, date, datetime
from decimal import Decimal

import pytest

from pos_ledger import cli, core_logic
from pos_ledger.availability import Cart
from pos_ledger.constants import (
    AccountKind,
    AdjustmentType,
    BookingStatus,
    InvoiceStatus,
    LedgerEntryType,
    PaymentMethod,
    RefundMethod,
)
from pos_ledger.data_manager import Adjustment, BookingItem
from pos_ledger.exceptions import CouponExpired, InsufficientStock

SALE_MOMENT = datetime(2025, 3, 14, 9, 30, tzinfo=UTC)


def _reload(context: core_logic.RuntimeContext) -> core_logic.RuntimeContext:
    """Write the workbook to disk and continue from a freshly loaded copy."""

    core_logic.persist_context(context)
    return core_logic.refresh_context(context)


def _seed(context: core_logic.RuntimeContext, *, stock: int = 10) -> core_logic.RuntimeContext:
    core_logic.add_product(
        context,
        product_id="P1",
        product_name="Desk Lamp",
        price=Decimal("100"),
        cost=Decimal("60"),
        stock=stock,
    )
    core_logic.add_customer(context, customer_id="C1", name="Carla", phone="555-0100")
    return _reload(context)


def test_partial_sale_return_and_reversal_flow(runtime_context):
    """Sell on partial payment, return one unit, then delete the invoice."""

    context = _seed(runtime_context)

    cart = Cart()
    core_logic.add_to_cart(context, cart, "P1", 2)
    receipt = core_logic.complete_sale(
        context,
        core_logic.SaleCommand(
            lines=cart.as_lines(),
            payment_method=PaymentMethod.PARTIAL,
            customer_id="C1",
            paid_amount=Decimal("100"),
            discount=Adjustment(AdjustmentType.FIXED, Decimal("10")),
            tax=Adjustment(AdjustmentType.PERCENTAGE, Decimal("14")),
            timestamp=SALE_MOMENT,
        ),
    )
    invoice_id = receipt.invoice.invoice_id
    assert receipt.invoice.total == Decimal("216.60")

    context = _reload(context)
    invoice = core_logic.get_invoice(context, invoice_id)
    assert invoice.total == Decimal("216.60")
    assert invoice.paid_amount == Decimal("100.00")
    assert invoice.due_amount == Decimal("116.60")
    assert invoice.status is InvoiceStatus.PARTIAL
    assert core_logic.get_product(context, "P1").stock == 8
    assert core_logic.get_customer(context, "C1").debt == Decimal("116.60")
    assert core_logic.verify_ledger(context) == []

    return_receipt = core_logic.process_return(
        context,
        core_logic.ReturnCommand(invoice_id=invoice_id, quantities={"P1": 1}, refund_method=RefundMethod.CASH),
    )
    # A non-cash sale always settles returns against the balance.
    assert return_receipt.credited_to_balance is True
    assert return_receipt.return_value == Decimal("100.00")

    context = _reload(context)
    invoice = core_logic.get_invoice(context, invoice_id)
    assert invoice.status is InvoiceStatus.PARTIALLY_RETURNED
    assert invoice.items[0].returned_quantity == 1
    assert invoice.returned_amount == Decimal("100.00")
    assert core_logic.get_product(context, "P1").stock == 9
    customer = core_logic.get_customer(context, "C1")
    assert customer.debt == Decimal("16.60")
    assert [entry.entry_type for entry in customer.transactions] == [LedgerEntryType.INVOICE, LedgerEntryType.RETURN]
    assert customer.transactions[1].items[0].quantity == 1
    assert core_logic.verify_ledger(context) == []

    core_logic.reverse_invoice(context, invoice_id)

    context = _reload(context)
    assert core_logic.list_invoices(context) == []
    assert core_logic.get_product(context, "P1").stock == 11
    customer = core_logic.get_customer(context, "C1")
    assert customer.debt == Decimal("-100.00")
    assert [entry.entry_type for entry in customer.transactions] == [LedgerEntryType.RETURN]
    assert core_logic.verify_ledger(context) == []
    actions = [entry.action_type for entry in context.audit.entries() if entry.entity_id == invoice_id]
    assert actions == ["CREATE", "UPDATE", "DELETE"]


def test_coupon_sale_flow(runtime_context):
    """Coupons are honoured until their expiry date and survive a reload."""

    context = _seed(runtime_context)
    core_logic.add_coupon(
        context,
        code="save10",
        adjustment_type=AdjustmentType.PERCENTAGE,
        value=Decimal("10"),
        expiry_date=date(2025, 12, 31),
    )
    context = _reload(context)
    assert [coupon.coupon_id for coupon in core_logic.list_coupons(context)] == ["SAVE10"]

    line = core_logic.CartLine("P1", "Desk Lamp", Decimal("100"), 1)
    receipt = core_logic.complete_sale(
        context,
        core_logic.SaleCommand(
            lines=(line,),
            tendered=Decimal("110"),
            tax=Adjustment(AdjustmentType.PERCENTAGE, Decimal("14")),
            coupon_code="SAVE10",
            timestamp=SALE_MOMENT,
        ),
    )
    assert receipt.invoice.total == Decimal("102.60")
    assert receipt.change == Decimal("7.40")
    assert receipt.invoice.customer_name == "Cash Customer"

    with pytest.raises(CouponExpired):
        core_logic.complete_sale(
            context,
            core_logic.SaleCommand(
                lines=(line,),
                tendered=Decimal("110"),
                coupon_code="SAVE10",
                timestamp=datetime(2026, 1, 2, 12, tzinfo=UTC),
            ),
        )

    context = _reload(context)
    invoices = core_logic.list_invoices(context)
    assert len(invoices) == 1
    assert invoices[0].coupon_code == "save10"
    assert invoices[0].discount == Adjustment(AdjustmentType.PERCENTAGE, Decimal("10"))
    assert core_logic.get_product(context, "P1").stock == 9


def test_booking_reservation_and_conversion_flow(runtime_context):
    """A booking holds stock back until it is converted into a sale."""

    context = _seed(runtime_context, stock=5)
    booking = core_logic.add_booking(
        context,
        customer_id="C1",
        items=[BookingItem("P1", 3)],
        deposit=Decimal("50"),
        booking_date=SALE_MOMENT,
    )
    context = _reload(context)
    assert core_logic.available_for_sale(context, "P1") == 2

    with pytest.raises(InsufficientStock):
        core_logic.complete_sale(
            context,
            core_logic.SaleCommand(lines=(core_logic.CartLine("P1", "Desk Lamp", Decimal("100"), 3),), tendered=Decimal("300")),
        )

    draft = core_logic.cart_from_booking(context, booking.booking_id)
    assert draft.payment_method is PaymentMethod.PARTIAL
    receipt = core_logic.complete_sale(
        context,
        core_logic.SaleCommand(
            lines=draft.cart.as_lines(),
            payment_method=draft.payment_method,
            customer_id=draft.customer_id,
            paid_amount=draft.paid_amount,
            booking_id=booking.booking_id,
        ),
    )
    assert receipt.invoice.due_amount == Decimal("250.00")

    context = _reload(context)
    assert core_logic.get_booking(context, booking.booking_id).status is BookingStatus.COMPLETED
    (level,) = core_logic.stock_report(context)
    assert (level.stock, level.reserved, level.available) == (2, 0, 2)
    assert core_logic.outstanding_balances(context) == {"C1": Decimal("250.00")}


def test_purchase_and_supplier_payment_flow(runtime_context):
    """Receiving goods raises stock and the supplier balance; paying settles it."""

    context = _seed(runtime_context, stock=0)
    core_logic.add_supplier(context, supplier_id="S1", name="Bulk Co")
    context = _reload(context)

    entry = core_logic.record_purchase(
        context,
        core_logic.PurchaseCommand(
            supplier_id="S1",
            lines=(core_logic.PurchaseLine("P1", Decimal("5.50"), 4),),
            paid_amount=Decimal("10"),
        ),
    )
    assert entry.amount == Decimal("22.00")
    assert entry.balance_delta == Decimal("12.00")

    context = _reload(context)
    product = core_logic.get_product(context, "P1")
    assert (product.stock, product.cost) == (4, Decimal("5.50"))
    assert core_logic.outstanding_balances(context, AccountKind.SUPPLIER) == {"S1": Decimal("12.00")}

    core_logic.record_payment(
        context,
        core_logic.PaymentCommand(AccountKind.SUPPLIER, "S1", Decimal("12")),
    )

    context = _reload(context)
    supplier = core_logic.get_supplier(context, "S1")
    assert supplier.debt == Decimal("0")
    assert [item.entry_type for item in supplier.transactions] == [LedgerEntryType.PURCHASE, LedgerEntryType.PAYMENT]
    assert supplier.transactions[0].items[0].unit_price == Decimal("5.50")
    assert core_logic.outstanding_balances(context, AccountKind.SUPPLIER) == {}
    assert core_logic.verify_ledger(context) == []


def test_cli_credit_sale_return_and_delete_flow(config_factory, capsys):
    """Drive a credit sale, a return, and a deletion through the CLI."""

    bundle = config_factory(tax_value="0")
    config = ["--config", str(bundle.config_path)]
    assert cli.main([*config, "add-product", "--product-id", "P1", "--product-name", "Lamp", "--price", "40", "--stock", "6"]) == 0
    assert cli.main([*config, "add-customer", "--customer-id", "C1", "--name", "Carla"]) == 0
    assert cli.main([*config, "sale", "--item", "P1:3", "--payment", "credit", "--customer-id", "C1"]) == 0

    (invoice,) = core_logic.list_invoices(core_logic.load_runtime_context(bundle.config_path))
    assert invoice.due_amount == Decimal("120.00")

    assert cli.main([*config, "return", "--invoice-id", invoice.invoice_id, "--item", "P1:1"]) == 0
    assert cli.main([*config, "pay-debt", "--customer-id", "C1", "--amount", "30"]) == 0
    context = core_logic.load_runtime_context(bundle.config_path)
    assert core_logic.get_customer(context, "C1").debt == Decimal("50.00")
    assert cli.main([*config, "verify"]) == 0

    assert cli.main([*config, "delete-invoice", invoice.invoice_id]) == 0
    context = core_logic.load_runtime_context(bundle.config_path)
    assert core_logic.list_invoices(context) == []
    assert core_logic.get_product(context, "P1").stock == 7
    assert core_logic.get_customer(context, "C1").debt == Decimal("-70.00")
    assert cli.main([*config, "verify"]) == 0

    capsys.readouterr()
    assert cli.main([*config, "statement", "--customer-id", "C1"]) == 0
    lines = capsys.readouterr().out.splitlines()
    assert lines[0].startswith("Carla (C1) balance")
    assert [line.split("\t")[1] for line in lines[1:]] == ["return", "payment"]
