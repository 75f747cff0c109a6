# swimdesk/billing/ledger.py - Invoice balance and status rules
"""
Pure read model over a family's invoices.

Invoices are handled as frozen ``InvoiceState`` snapshots; every mutation
returns a new snapshot so the coordinator can compute a whole payment in
memory before anything is written.
"""
from __future__ import annotations

import enum
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Iterable, List, Optional, Tuple
from uuid import UUID

from swimdesk.billing import money


class InvoiceStatus(str, enum.Enum):
    OPEN = "OPEN"
    PARTIALLY_PAID = "PARTIALLY_PAID"
    PAID = "PAID"
    OVERDUE = "OVERDUE"
    CANCELLED = "CANCELLED"


OPEN_STATUSES = (InvoiceStatus.OPEN, InvoiceStatus.PARTIALLY_PAID, InvoiceStatus.OVERDUE)


@dataclass(frozen=True)
class InvoiceState:
    id: UUID
    family_id: UUID
    amount_cents: int
    amount_paid_cents: int
    status: InvoiceStatus
    issued_at: datetime
    due_at: Optional[datetime] = None
    enrolment_id: Optional[UUID] = None

    @property
    def balance_cents(self) -> int:
        return balance_of(self)

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_STATUSES


def compute_status(
    amount_paid_cents: int,
    amount_cents: int,
    due_at: Optional[datetime],
    now: datetime,
    *,
    cancelled: bool = False,
) -> InvoiceStatus:
    """Status is derived, never stored independently of the paid amount."""
    if cancelled:
        return InvoiceStatus.CANCELLED
    if amount_paid_cents >= amount_cents:
        return InvoiceStatus.PAID
    if amount_paid_cents > 0:
        return InvoiceStatus.PARTIALLY_PAID
    if due_at is not None and due_at < now:
        return InvoiceStatus.OVERDUE
    return InvoiceStatus.OPEN


def balance_of(invoice: InvoiceState) -> int:
    if invoice.status == InvoiceStatus.CANCELLED:
        return 0
    return money.subtract(invoice.amount_cents, invoice.amount_paid_cents, floor_at_zero=True)


def allocation_order_key(invoice: InvoiceState):
    """Oldest due first; undated invoices fall back to their issue date."""
    return (invoice.due_at or invoice.issued_at, invoice.issued_at, invoice.id)


def open_invoices(invoices: Iterable[InvoiceState], family_id: Optional[UUID] = None) -> List[InvoiceState]:
    """Open invoices with a balance, in the order auto-allocation consumes them."""
    candidates = [
        inv
        for inv in invoices
        if inv.is_open
        and balance_of(inv) > 0
        and (family_id is None or inv.family_id == family_id)
    ]
    return sorted(candidates, key=allocation_order_key)


def apply_amount(invoice: InvoiceState, amount_cents: int, now: datetime) -> Tuple[int, InvoiceState]:
    """
    Apply up to ``amount_cents`` to the invoice.

    Returns:
        (applied_cents, updated_invoice); applied may be less than requested
        when the balance is smaller.
    """
    money.ensure_cents(amount_cents)
    applied = min(max(amount_cents, 0), balance_of(invoice))
    paid = invoice.amount_paid_cents + applied
    status = compute_status(
        paid,
        invoice.amount_cents,
        invoice.due_at,
        now,
        cancelled=invoice.status == InvoiceStatus.CANCELLED,
    )
    return applied, replace(invoice, amount_paid_cents=paid, status=status)


def reverse_amount(invoice: InvoiceState, amount_cents: int, now: datetime) -> InvoiceState:
    """Inverse of ``apply_amount``; the paid total is clamped at zero."""
    money.ensure_cents(amount_cents)
    paid = money.subtract(invoice.amount_paid_cents, max(amount_cents, 0), floor_at_zero=True)
    status = compute_status(
        paid,
        invoice.amount_cents,
        invoice.due_at,
        now,
        cancelled=invoice.status == InvoiceStatus.CANCELLED,
    )
    return replace(invoice, amount_paid_cents=paid, status=status)


def refresh_status(invoice: InvoiceState, now: datetime) -> InvoiceState:
    """Re-derive a stored status against the current clock (e.g. OPEN -> OVERDUE)."""
    status = compute_status(
        invoice.amount_paid_cents,
        invoice.amount_cents,
        invoice.due_at,
        now,
        cancelled=invoice.status == InvoiceStatus.CANCELLED,
    )
    if status == invoice.status:
        return invoice
    return replace(invoice, status=status)
