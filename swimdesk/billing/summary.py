# swimdesk/billing/summary.py - Family billing position
from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from typing import Iterable, List, Optional

from swimdesk.billing import money
from swimdesk.billing.entitlements import BillingType, EnrolmentEntitlement
from swimdesk.billing.ledger import InvoiceState, balance_of, open_invoices


@dataclass(frozen=True)
class BillingPosition:
    outstanding_cents: int
    credits_total: int
    paid_through_latest: Optional[date]
    next_due_invoice: Optional[InvoiceState]
    open_invoices: List[InvoiceState]


def next_due_key(invoice: InvoiceState):
    return (invoice.due_at is None, invoice.due_at or invoice.issued_at, invoice.id)


def build_position(
    invoices: Iterable[InvoiceState],
    enrolments: Iterable[EnrolmentEntitlement],
) -> BillingPosition:
    """Derived on every call; nothing here is cached."""
    unpaid = open_invoices(invoices)
    enrolments = list(enrolments)

    credits_total = sum(
        e.credits_remaining or 0 for e in enrolments if e.plan.billing_type == BillingType.PER_CLASS
    )
    paid_through = [
        e.paid_through_date
        for e in enrolments
        if e.plan.billing_type == BillingType.PER_WEEK and e.paid_through_date is not None
    ]
    by_due = sorted(unpaid, key=next_due_key)

    return BillingPosition(
        outstanding_cents=money.total(balance_of(inv) for inv in unpaid),
        credits_total=credits_total,
        paid_through_latest=max(paid_through) if paid_through else None,
        next_due_invoice=by_due[0] if by_due else None,
        open_invoices=unpaid,
    )
