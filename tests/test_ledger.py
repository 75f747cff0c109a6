"""Tests for invoice balance/status rules."""
import random
import uuid
from datetime import datetime, timedelta

import pytest

from swimdesk.billing.errors import BillingError
from swimdesk.billing.ledger import (
    InvoiceState,
    InvoiceStatus,
    apply_amount,
    balance_of,
    compute_status,
    open_invoices,
    refresh_status,
    reverse_amount,
)

NOW = datetime(2025, 3, 3, 9, 0)
FAMILY = uuid.UUID("00000000-0000-0000-0000-0000000000f1")


def invoice(amount=5000, paid=0, status=InvoiceStatus.OPEN, due_at=None, issued_at=None, invoice_id=None):
    return InvoiceState(
        id=invoice_id or uuid.uuid4(),
        family_id=FAMILY,
        amount_cents=amount,
        amount_paid_cents=paid,
        status=status,
        issued_at=issued_at or NOW - timedelta(days=30),
        due_at=due_at,
    )


class TestComputeStatus:

    def test_paid_when_fully_covered(self):
        assert compute_status(5000, 5000, None, NOW) == InvoiceStatus.PAID

    def test_partially_paid(self):
        assert compute_status(1, 5000, None, NOW) == InvoiceStatus.PARTIALLY_PAID

    def test_overdue_only_when_nothing_paid_and_past_due(self):
        past = NOW - timedelta(days=1)
        assert compute_status(0, 5000, past, NOW) == InvoiceStatus.OVERDUE
        assert compute_status(100, 5000, past, NOW) == InvoiceStatus.PARTIALLY_PAID

    def test_open_when_due_in_future_or_undated(self):
        assert compute_status(0, 5000, NOW + timedelta(days=1), NOW) == InvoiceStatus.OPEN
        assert compute_status(0, 5000, None, NOW) == InvoiceStatus.OPEN

    def test_cancelled_wins(self):
        assert compute_status(5000, 5000, None, NOW, cancelled=True) == InvoiceStatus.CANCELLED

    def test_refresh_status_marks_overdue(self):
        inv = invoice(due_at=NOW - timedelta(hours=1))
        assert refresh_status(inv, NOW).status == InvoiceStatus.OVERDUE
        assert refresh_status(inv, NOW - timedelta(days=1)) is inv


class TestBalance:

    def test_balance_is_amount_minus_paid(self):
        assert balance_of(invoice(amount=5000, paid=1200, status=InvoiceStatus.PARTIALLY_PAID)) == 3800

    def test_cancelled_invoice_has_no_balance(self):
        assert balance_of(invoice(status=InvoiceStatus.CANCELLED)) == 0


class TestOpenInvoices:

    def test_oldest_due_first_with_issue_date_fallback(self):
        a = invoice(due_at=NOW + timedelta(days=10))
        b = invoice(due_at=None, issued_at=NOW - timedelta(days=3))
        c = invoice(due_at=NOW - timedelta(days=20))
        assert [i.id for i in open_invoices([a, b, c])] == [c.id, b.id, a.id]

    def test_ties_are_broken_by_id(self):
        due = NOW + timedelta(days=5)
        first = invoice(due_at=due, invoice_id=uuid.UUID(int=1))
        second = invoice(due_at=due, invoice_id=uuid.UUID(int=2))
        assert [i.id for i in open_invoices([second, first])] == [first.id, second.id]

    def test_excludes_paid_cancelled_and_other_families(self):
        paid = invoice(paid=5000, status=InvoiceStatus.PAID)
        cancelled = invoice(status=InvoiceStatus.CANCELLED)
        other = InvoiceState(uuid.uuid4(), uuid.uuid4(), 100, 0, InvoiceStatus.OPEN, NOW)
        keep = invoice()
        assert open_invoices([paid, cancelled, other, keep], family_id=FAMILY) == [keep]


class TestApplyAndReverse:

    def test_apply_caps_at_balance(self):
        applied, updated = apply_amount(invoice(amount=5000, paid=3000, status=InvoiceStatus.PARTIALLY_PAID), 5000, NOW)
        assert applied == 2000
        assert updated.amount_paid_cents == 5000
        assert updated.status == InvoiceStatus.PAID

    def test_apply_to_cancelled_applies_nothing(self):
        applied, updated = apply_amount(invoice(status=InvoiceStatus.CANCELLED), 1000, NOW)
        assert applied == 0
        assert updated.status == InvoiceStatus.CANCELLED

    def test_reverse_clamps_at_zero(self):
        updated = reverse_amount(invoice(amount=5000, paid=1000, status=InvoiceStatus.PARTIALLY_PAID), 4000, NOW)
        assert updated.amount_paid_cents == 0
        assert updated.status == InvoiceStatus.OPEN

    def test_apply_rejects_float_amount(self):
        with pytest.raises(BillingError):
            apply_amount(invoice(), 10.5, NOW)

    @pytest.mark.parametrize("seed", range(20))
    def test_paid_stays_within_bounds_for_random_sequences(self, seed):
        rng = random.Random(seed)
        inv = invoice(amount=rng.randint(1, 20000), due_at=NOW + timedelta(days=rng.randint(-10, 10)))
        for _ in range(50):
            amount = rng.randint(0, 25000)
            if rng.random() < 0.5:
                _, inv = apply_amount(inv, amount, NOW)
            else:
                inv = reverse_amount(inv, amount, NOW)
            assert 0 <= inv.amount_paid_cents <= inv.amount_cents
            assert inv.status == compute_status(inv.amount_paid_cents, inv.amount_cents, inv.due_at, NOW)

    @pytest.mark.parametrize("seed", range(20))
    def test_apply_then_reverse_restores_prior_state(self, seed):
        rng = random.Random(1000 + seed)
        amount = rng.randint(1, 20000)
        paid = rng.randint(0, amount)
        status = compute_status(paid, amount, None, NOW)
        before = invoice(amount=amount, paid=paid, status=status)

        applied, after = apply_amount(before, rng.randint(0, 25000), NOW)
        restored = reverse_amount(after, applied, NOW)

        assert (restored.amount_paid_cents, restored.status) == (before.amount_paid_cents, before.status)
