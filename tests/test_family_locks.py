"""Per-family serialisation of payment commits."""
import gc
import threading
import uuid

from sqlalchemy import select

from swimdesk.billing.allocation import InvoiceAllocationTarget
from swimdesk.models import Invoice, PaymentAllocation
from swimdesk.services.payment_service import (
    FamilyLockRegistry,
    PaymentRequest,
    PaymentService,
    family_locks,
)

WAIT_SECONDS = 5


class TestFamilyLockRegistry:

    def test_same_family_waits_for_holder(self):
        registry = FamilyLockRegistry()
        family_id = uuid.uuid4()
        entered = threading.Event()

        def contender():
            with registry.hold(family_id):
                entered.set()

        with registry.hold(family_id):
            worker = threading.Thread(target=contender)
            worker.start()
            assert not entered.wait(0.2)
        worker.join(WAIT_SECONDS)

        assert entered.is_set()

    def test_different_families_do_not_block(self):
        registry = FamilyLockRegistry()
        entered = threading.Event()

        def other_family():
            with registry.hold(uuid.uuid4()):
                entered.set()

        with registry.hold(uuid.uuid4()):
            worker = threading.Thread(target=other_family)
            worker.start()
            assert entered.wait(WAIT_SECONDS)
        worker.join(WAIT_SECONDS)

    def test_released_locks_are_evicted(self):
        registry = FamilyLockRegistry()

        for _ in range(50):
            with registry.hold(uuid.uuid4()):
                pass
        gc.collect()

        assert len(registry) == 0

    def test_held_lock_is_kept(self):
        registry = FamilyLockRegistry()

        with registry.hold(uuid.uuid4()):
            gc.collect()
            assert len(registry) == 1


class TestConcurrentSubmissions:

    def test_two_payments_never_over_allocate(self, database, db, factory, clock):
        family = factory.family()
        inv = factory.invoice(family, 5000)
        start = threading.Barrier(2)
        results, errors = [], []

        def pay():
            session = database.SessionLocal()
            try:
                start.wait(WAIT_SECONDS)
                service = PaymentService(session, clock=clock)
                results.append(service.submit_payment(PaymentRequest(family.id, 4000, InvoiceAllocationTarget())))
            except Exception as e:
                errors.append(e)
            finally:
                session.close()

        workers = [threading.Thread(target=pay) for _ in range(2)]
        for worker in workers:
            worker.start()
        for worker in workers:
            worker.join(WAIT_SECONDS)

        assert errors == []
        assert len(results) == 2
        assert sorted(r.allocated_cents for r in results) == [1000, 4000]
        assert sum(r.unallocated_cents for r in results) == 3000

        db.expire_all()
        invoice = db.get(Invoice, inv.id)
        assert invoice.amount_paid_cents == 5000
        assert invoice.status == "PAID"
        allocated = db.execute(select(PaymentAllocation.amount_cents)).scalars().all()
        assert sum(allocated) == 5000

    def test_submission_waits_while_family_is_held(self, database, factory, clock):
        family = factory.family()
        factory.invoice(family, 5000)
        finished = threading.Event()

        def pay():
            session = database.SessionLocal()
            try:
                PaymentService(session, clock=clock).submit_payment(
                    PaymentRequest(family.id, 1000, InvoiceAllocationTarget())
                )
                finished.set()
            finally:
                session.close()

        with family_locks.hold(family.id):
            worker = threading.Thread(target=pay)
            worker.start()
            assert not finished.wait(0.2)
        worker.join(WAIT_SECONDS)

        assert finished.is_set()
