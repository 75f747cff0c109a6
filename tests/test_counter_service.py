"""Tests for counter (product) sales."""
import uuid

import pytest
from sqlalchemy import select

from swimdesk.billing.errors import BillingError, ErrorKind
from swimdesk.models import Family, Invoice, Payment
from swimdesk.services.counter_service import CounterItem, CounterService


@pytest.fixture
def counter(db, clock):
    return CounterService(db, clock=clock)


class TestCounterSales:

    def test_unpaid_sale_leaves_open_invoice(self, counter, factory):
        family = factory.family()
        cap = factory.product("Swim cap", 1200)
        goggles = factory.product("Goggles", 2550)

        sale = counter.create_counter_invoice(family.id, [CounterItem(cap.id, 2), CounterItem(goggles.id, 1)])

        assert sale.payment is None
        assert sale.invoice.amount_cents == 4950
        assert sale.invoice.status == "OPEN"
        assert sale.invoice.source == "COUNTER_SALE"
        assert [li.quantity for li in sale.invoice.line_items] == [2, 1]

    def test_pay_now_pays_invoice_in_same_commit(self, db, counter, factory):
        family = factory.family()
        cap = factory.product("Swim cap", 1200)

        sale = counter.create_counter_invoice(family.id, [CounterItem(cap.id, 1)], pay_now=True, payment_method="cash")

        db.refresh(sale.invoice)
        assert sale.invoice.status == "PAID"
        payment = db.get(Payment, sale.payment.payment_id)
        assert payment.method == "cash"
        assert payment.allocations[0].invoice_id == sale.invoice.id

    def test_walk_in_sale_uses_counter_family(self, db, counter, factory):
        cap = factory.product("Swim cap", 1200)

        first = counter.create_counter_invoice(None, [CounterItem(cap.id, 1)])
        second = counter.create_counter_invoice(None, [CounterItem(cap.id, 1)])

        assert first.invoice.family_id == second.invoice.family_id
        families = db.execute(select(Family).where(Family.name == "Counter Sale")).scalars().all()
        assert len(families) == 1

    def test_inactive_product_rejected_without_writes(self, db, counter, factory):
        family = factory.family()
        old = factory.product("Old kickboard", 900, is_active=False)

        with pytest.raises(BillingError) as exc:
            counter.create_counter_invoice(family.id, [CounterItem(old.id, 1)], pay_now=True)

        assert exc.value.kind == ErrorKind.INVALID_TARGET
        assert db.execute(select(Invoice)).scalars().all() == []

    def test_unknown_product(self, counter, factory):
        family = factory.family()
        with pytest.raises(BillingError) as exc:
            counter.create_counter_invoice(family.id, [CounterItem(uuid.uuid4(), 1)])
        assert exc.value.kind == ErrorKind.NOT_FOUND

    def test_empty_sale_rejected(self, counter, factory):
        with pytest.raises(BillingError) as exc:
            counter.create_counter_invoice(factory.family().id, [])
        assert exc.value.kind == ErrorKind.INVALID_TARGET
