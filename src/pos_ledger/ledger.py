"""Customer and supplier ledger helpers.

An account's ``debt`` is a cache of the signed ``balance_delta`` values of its
transactions. The helpers here are the only place that changes one without
the other, which is what keeps the two in lock-step.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from decimal import Decimal
from typing import Iterable, List, Optional, Sequence

from . import log
from .constants import RETURN_STATUSES, ZERO, InvoiceStatus, LedgerEntryType
from .data_manager import AccountRow, InvoiceItem, InvoiceRow, LedgerTransaction


@dataclass(frozen=True)
class LedgerDiscrepancy:
    """A customer whose cached debt disagrees with a recomputed balance."""

    account_id: str
    cached_debt: Decimal
    expected_debt: Decimal
    source: str

    @property
    def difference(self) -> Decimal:
        return self.cached_debt - self.expected_debt


def invoice_note(invoice_id: str) -> str:
    return f"invoice #{invoice_id}"


def return_note(invoice_id: str) -> str:
    return f"return from invoice #{invoice_id}"


def post_entry(account: AccountRow, entry: LedgerTransaction) -> AccountRow:
    """Append ``entry`` and apply its ``balance_delta`` to the account's debt."""

    return replace(
        account,
        debt=account.debt + entry.balance_delta,
        transactions=account.transactions + (entry,),
    )


def remove_invoice_entry(account: AccountRow, invoice_id: str, due_amount: Decimal) -> AccountRow:
    """Undo a sale on an account: drop its invoice entry and subtract ``due_amount``.

    Return entries referencing the same invoice are left in place.
    """

    remaining = tuple(
        entry
        for entry in account.transactions
        if not (entry.entry_type is LedgerEntryType.INVOICE and entry.related_invoice_id == invoice_id)
    )
    if len(remaining) == len(account.transactions):
        log.warning("Account '%s' has no ledger entry for invoice '%s'", account.account_id, invoice_id)
    return replace(account, debt=account.debt - due_amount, transactions=remaining)


def build_invoice_entry(transaction_id: str, invoice: InvoiceRow) -> LedgerTransaction:
    return LedgerTransaction(
        transaction_id=transaction_id,
        entry_type=LedgerEntryType.INVOICE,
        date_iso=invoice.date_iso,
        amount=invoice.total,
        balance_delta=invoice.due_amount,
        related_invoice_id=invoice.invoice_id,
        notes=invoice_note(invoice.invoice_id),
    )


def build_return_entry(
    transaction_id: str,
    *,
    invoice_id: str,
    date_iso: str,
    return_value: Decimal,
    credited: bool,
    items: Sequence[InvoiceItem],
) -> LedgerTransaction:
    return LedgerTransaction(
        transaction_id=transaction_id,
        entry_type=LedgerEntryType.RETURN,
        date_iso=date_iso,
        amount=return_value,
        balance_delta=-return_value if credited else ZERO,
        related_invoice_id=invoice_id,
        notes=return_note(invoice_id),
        items=tuple(items),
    )


def balance_from_entries(account: AccountRow) -> Decimal:
    return sum((entry.balance_delta for entry in account.transactions), ZERO)


def expected_customer_balance(account: AccountRow, invoices: Iterable[InvoiceRow]) -> Decimal:
    """Recompute a customer's debt from live invoices and ledger history.

    ``Σ dueAmount(live invoices) − Σ payments − Σ balance-credited returns``.
    """

    due = sum((invoice.due_amount for invoice in invoices if invoice.customer_id == account.account_id), ZERO)
    paid = sum(
        (entry.amount for entry in account.transactions if entry.entry_type is LedgerEntryType.PAYMENT),
        ZERO,
    )
    credited = sum(
        (-entry.balance_delta for entry in account.transactions if entry.entry_type is LedgerEntryType.RETURN),
        ZERO,
    )
    return due - paid - credited


def find_discrepancies(
    accounts: Iterable[AccountRow],
    invoices: Optional[Sequence[InvoiceRow]] = None,
) -> List[LedgerDiscrepancy]:
    """Compare every account's cached debt with its recomputed balances.

    Each account is checked against the sum of its ledger deltas; when
    ``invoices`` is supplied (customer accounts) it is also checked against
    :func:`expected_customer_balance`.
    """

    problems: List[LedgerDiscrepancy] = []
    for account in accounts:
        from_entries = balance_from_entries(account)
        if from_entries != account.debt:
            problems.append(LedgerDiscrepancy(account.account_id, account.debt, from_entries, "entries"))
        if invoices is not None:
            from_invoices = expected_customer_balance(account, invoices)
            if from_invoices != account.debt:
                problems.append(LedgerDiscrepancy(account.account_id, account.debt, from_invoices, "invoices"))
    for problem in problems:
        log.warning(
            "Ledger mismatch on '%s' (%s): cached %s, expected %s",
            problem.account_id,
            problem.source,
            problem.cached_debt,
            problem.expected_debt,
        )
    return problems


def payment_status(due_amount: Decimal, paid_amount: Decimal) -> InvoiceStatus:
    if due_amount <= ZERO:
        return InvoiceStatus.PAID
    if paid_amount > ZERO:
        return InvoiceStatus.PARTIAL
    return InvoiceStatus.DUE


def next_invoice_status(
    current: Optional[InvoiceStatus],
    *,
    due_amount: Decimal,
    paid_amount: Decimal,
    items: Sequence[InvoiceItem],
) -> InvoiceStatus:
    """Pure transition function for invoice status.

    Fully returned items give ``returned``; any returned item, or an invoice
    already in a returned state, gives ``partially_returned``; otherwise the
    status follows the payment amounts. ``returned`` is terminal.
    """

    if current is InvoiceStatus.RETURNED:
        return InvoiceStatus.RETURNED
    if items and all(item.returned_quantity >= item.quantity for item in items):
        return InvoiceStatus.RETURNED
    if current in RETURN_STATUSES or any(item.returned_quantity > 0 for item in items):
        return InvoiceStatus.PARTIALLY_RETURNED
    return payment_status(due_amount, paid_amount)
