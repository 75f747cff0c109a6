# swimdesk/billing/allocation.py - Decide how a payment is spread across invoices
"""
Allocation engine.

Only computes an ``AllocationPlan``; executing it (updating invoices,
writing allocation rows) is the payment coordinator's job. The same
functions back the preview endpoint, so what an admin sees before
submitting is exactly what the server will do.
"""
from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Dict, Iterable, Mapping, Optional, Tuple, Union
from uuid import UUID

from swimdesk.billing import money
from swimdesk.billing.errors import BillingError, ErrorKind
from swimdesk.billing.ledger import InvoiceState, InvoiceStatus, balance_of, open_invoices


class AllocationMode(str, enum.Enum):
    AUTO = "AUTO"
    MANUAL = "MANUAL"


@dataclass(frozen=True)
class InvoiceAllocationTarget:
    mode: AllocationMode = AllocationMode.AUTO
    allocations: Optional[Mapping[UUID, int]] = None


@dataclass(frozen=True)
class EnrolmentPurchaseTarget:
    enrolment_id: UUID
    quantity: Optional[int] = None  # None: derived from amount / unit price
    plan_id: Optional[UUID] = None


PaymentTarget = Union[InvoiceAllocationTarget, EnrolmentPurchaseTarget]


@dataclass(frozen=True)
class AllocationLine:
    invoice_id: UUID
    amount_cents: int


@dataclass(frozen=True)
class AllocationPlan:
    lines: Tuple[AllocationLine, ...] = field(default_factory=tuple)
    unallocated_cents: int = 0

    @property
    def allocated_cents(self) -> int:
        return money.total(line.amount_cents for line in self.lines)


def aggregate_requested(pairs: Iterable[Tuple[UUID, int]]) -> Dict[UUID, int]:
    """Merge repeated invoice ids from a manual allocation list."""
    merged: Dict[UUID, int] = {}
    for invoice_id, amount_cents in pairs:
        money.ensure_positive(amount_cents, field="allocation amount")
        merged[invoice_id] = merged.get(invoice_id, 0) + amount_cents
    return merged


def plan_auto(amount_cents: int, invoices: Iterable[InvoiceState]) -> AllocationPlan:
    """Walk open invoices oldest-first until the amount or the invoices run out."""
    remaining = money.ensure_positive(amount_cents)
    lines = []
    for invoice in open_invoices(invoices):
        if remaining == 0:
            break
        applied = min(remaining, balance_of(invoice))
        lines.append(AllocationLine(invoice.id, applied))
        remaining -= applied
    return AllocationPlan(tuple(lines), remaining)


def plan_manual(
    amount_cents: int,
    family_id: UUID,
    requested: Mapping[UUID, int],
    invoices_by_id: Mapping[UUID, InvoiceState],
) -> AllocationPlan:
    """
    Validate an explicit ``{invoice_id: cents}`` split.

    Raises:
        BillingError: NOT_FOUND / INVALID_TARGET for unknown, foreign or
            cancelled invoices, ALLOCATION_EXCEEDS_BALANCE naming the
            offending invoice, ALLOCATION_MISMATCH when the split does not
            sum to the payment amount.
    """
    money.ensure_positive(amount_cents)
    lines = []
    for invoice_id, line_cents in requested.items():
        money.ensure_positive(line_cents, field="allocation amount")
        invoice = invoices_by_id.get(invoice_id)
        if invoice is None:
            raise BillingError(ErrorKind.NOT_FOUND, f"Invoice {invoice_id} not found", invoice_id=invoice_id)
        if invoice.family_id != family_id:
            raise BillingError(
                ErrorKind.INVALID_TARGET,
                "Payment allocations must belong to the same family",
                invoice_id=invoice_id,
            )
        if invoice.status == InvoiceStatus.CANCELLED:
            raise BillingError(
                ErrorKind.INVALID_TARGET,
                f"Cannot allocate payments to cancelled invoice {invoice_id}",
                invoice_id=invoice_id,
            )
        # A PAID invoice has a zero balance and lands here too.
        if line_cents > balance_of(invoice):
            raise BillingError(
                ErrorKind.ALLOCATION_EXCEEDS_BALANCE,
                f"Allocation cannot exceed the balance of invoice {invoice_id}",
                invoice_id=invoice_id,
            )
        lines.append(AllocationLine(invoice_id, line_cents))

    allocated = money.total(line.amount_cents for line in lines)
    if allocated != amount_cents:
        raise BillingError(
            ErrorKind.ALLOCATION_MISMATCH,
            f"Allocation total {money.to_display(allocated)} must equal payment amount "
            f"{money.to_display(amount_cents)}",
        )
    return AllocationPlan(tuple(lines), 0)


def plan_enrolment_purchase(amount_cents: int, unit_price_cents: int, quantity: int) -> AllocationPlan:
    """The whole amount buys ``quantity`` units; no invoice balances are touched."""
    money.ensure_positive(amount_cents)
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        raise BillingError(ErrorKind.INVALID_AMOUNT, "Quantity must be a positive whole number")
    expected = money.multiply(unit_price_cents, quantity)
    if amount_cents != expected:
        raise BillingError(
            ErrorKind.AMOUNT_MISMATCH,
            f"Amount {money.to_display(amount_cents)} does not match {quantity} x "
            f"{money.to_display(unit_price_cents)}",
        )
    return AllocationPlan((), 0)


def plan_allocation(
    amount_cents: int,
    family_id: UUID,
    target: InvoiceAllocationTarget,
    invoices: Iterable[InvoiceState],
) -> AllocationPlan:
    """Dispatch an invoice-allocation target to the AUTO or MANUAL policy."""
    money.ensure_positive(amount_cents)
    invoices = list(invoices)
    if target.mode == AllocationMode.AUTO:
        return plan_auto(amount_cents, [inv for inv in invoices if inv.family_id == family_id])
    return plan_manual(
        amount_cents,
        family_id,
        target.allocations or {},
        {inv.id: inv for inv in invoices},
    )
