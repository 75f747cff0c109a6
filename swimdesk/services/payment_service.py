# swimdesk/services/payment_service.py - Payment transaction coordinator
"""
Records payments against a family's invoices or enrolments, and undoes them.

Each submission runs VALIDATING -> ALLOCATING -> PROJECTING -> PERSISTING
-> COMMITTED (or FAILED). Everything up to PERSISTING is computed on
in-memory snapshots; the rows are only mutated once the whole plan is known
and are written in a single commit.
"""
import enum
import logging
import threading
import uuid
import weakref
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Callable, Dict, Iterable, List, Optional, Tuple
from uuid import UUID

from sqlalchemy import select, func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from swimdesk.core.config import settings
from swimdesk.billing import money
from swimdesk.billing.allocation import (
    AllocationLine,
    AllocationPlan,
    EnrolmentPurchaseTarget,
    InvoiceAllocationTarget,
    AllocationMode,
    PaymentTarget,
    plan_allocation,
    plan_auto,
    plan_enrolment_purchase,
)
from swimdesk.billing.entitlements import (
    BillingType,
    EnrolmentEntitlement,
    EntitlementDelta,
    EntitlementField,
    Projection,
    apply_delta,
    merge_deltas,
    project_purchase,
    quantity_from_amount,
)
from swimdesk.billing.errors import BillingError, ErrorKind
from swimdesk.billing.ledger import (
    OPEN_STATUSES,
    InvoiceState,
    InvoiceStatus,
    apply_amount,
    refresh_status,
    reverse_amount,
)
from swimdesk.models import (
    EntitlementChange,
    Enrolment,
    EnrolmentPlan,
    Family,
    Invoice,
    InvoiceLineItem,
    Payment,
    PaymentAllocation,
)

logger = logging.getLogger(__name__)

DEFAULT_UNDO_REASON = "Payment reversed via admin undo"


class TransactionState(str, enum.Enum):
    IDLE = "IDLE"
    VALIDATING = "VALIDATING"
    ALLOCATING = "ALLOCATING"
    PROJECTING = "PROJECTING"
    PERSISTING = "PERSISTING"
    COMMITTED = "COMMITTED"
    FAILED = "FAILED"


class FamilyLockRegistry:
    """
    One in-process mutex per family; payments to different families never wait on each other.

    Entries are weak: a family's lock lives only while some caller holds or waits on it.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: "weakref.WeakValueDictionary[UUID, threading.Lock]" = weakref.WeakValueDictionary()

    def __len__(self) -> int:
        return len(self._locks)

    @contextmanager
    def hold(self, family_id: UUID):
        with self._guard:
            lock = self._locks.get(family_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[family_id] = lock
        with lock:
            yield


family_locks = FamilyLockRegistry()


@dataclass(frozen=True)
class PaymentRequest:
    family_id: UUID
    amount_cents: int
    target: PaymentTarget
    idempotency_key: Optional[str] = None
    method: Optional[str] = None
    note: Optional[str] = None
    paid_at: Optional[datetime] = None


@dataclass(frozen=True)
class PayAheadItem:
    enrolment_id: UUID
    quantity: Optional[int] = 1
    plan_id: Optional[UUID] = None


@dataclass(frozen=True)
class PurchaseOutcome:
    enrolment_id: UUID
    invoice_id: UUID
    amount_cents: int
    quantity_requested: int
    quantity_applied: int
    credits_granted: int = 0
    coverage_start: Optional[date] = None
    coverage_end: Optional[date] = None


@dataclass(frozen=True)
class PaymentResult:
    payment_id: UUID
    amount_cents: int
    allocations: Tuple[AllocationLine, ...]
    unallocated_cents: int
    purchases: Tuple[PurchaseOutcome, ...] = ()
    replayed: bool = False

    @property
    def allocated_cents(self) -> int:
        return money.total(line.amount_cents for line in self.allocations)


@dataclass
class _Work:
    """Everything one payment will write, computed before any row is touched."""
    now: datetime
    paid_at: datetime
    invoice_rows: Dict[UUID, Invoice] = field(default_factory=dict)
    original_states: Dict[UUID, InvoiceState] = field(default_factory=dict)
    invoice_states: Dict[UUID, InvoiceState] = field(default_factory=dict)
    allocation_lines: Dict[UUID, int] = field(default_factory=dict)
    enrolment_rows: Dict[UUID, Enrolment] = field(default_factory=dict)
    enrolment_states: Dict[UUID, EnrolmentEntitlement] = field(default_factory=dict)
    deltas: Dict[UUID, EntitlementDelta] = field(default_factory=dict)
    entitled_invoice_ids: List[UUID] = field(default_factory=list)
    new_invoices: List[Invoice] = field(default_factory=list)
    granted_invoices: List[Invoice] = field(default_factory=list)
    purchases: List[PurchaseOutcome] = field(default_factory=list)

    @property
    def today(self) -> date:
        return self.now.date()

    def track_invoice(self, row: Invoice) -> None:
        if row.id in self.invoice_rows:
            return
        state = refresh_status(row.to_state(), self.now)
        self.invoice_rows[row.id] = row
        self.original_states[row.id] = state
        self.invoice_states[row.id] = state


class PaymentService:
    """Service class for payment submission, pay-ahead and undo"""

    def __init__(self, db: Session, clock: Callable[[], datetime] = datetime.utcnow):
        self.db = db
        self.clock = clock
        self.state = TransactionState.IDLE

    def _advance(self, state: TransactionState) -> None:
        self.state = state
        logger.debug(f"Payment transaction -> {state.value}")

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    def submit_payment(self, request: PaymentRequest) -> PaymentResult:
        """
        Record a payment and apply it to invoices or an enrolment.

        Args:
            request: family, amount, target and optional idempotency key

        Returns:
            PaymentResult with the allocation lines and any unallocated amount.
            A retry with an already-used idempotency key returns the original
            payment with ``replayed=True``.

        Raises:
            BillingError: validation failures (before any write) or
                PERSISTENCE_FAILED when the commit fails.
        """
        self._advance(TransactionState.VALIDATING)
        now = self.clock()
        try:
            money.ensure_positive(request.amount_cents)
            if not isinstance(request.target, (InvoiceAllocationTarget, EnrolmentPurchaseTarget)):
                raise BillingError(ErrorKind.INVALID_TARGET, "Unknown payment target")
        except BillingError:
            self._advance(TransactionState.FAILED)
            raise

        with family_locks.hold(request.family_id):
            try:
                self._lock_family(request.family_id)
                if request.idempotency_key:
                    existing = self._find_by_idempotency_key(request.family_id, request.idempotency_key)
                    if existing is not None:
                        self.db.rollback()
                        logger.info(
                            f"Idempotent replay of payment {existing.id} for family {request.family_id}"
                        )
                        self._advance(TransactionState.COMMITTED)
                        return self._result_for(existing, replayed=True)

                work = _Work(now=now, paid_at=request.paid_at or now)
                self._advance(TransactionState.ALLOCATING)
                if isinstance(request.target, InvoiceAllocationTarget):
                    plan = self._plan_invoice_allocation(work, request.family_id, request.amount_cents, request.target)
                    self._advance(TransactionState.PROJECTING)
                    self._project_paid_invoices(work)
                    unallocated = plan.unallocated_cents
                else:
                    self._advance(TransactionState.PROJECTING)
                    self._plan_purchase(
                        work,
                        request.family_id,
                        PayAheadItem(request.target.enrolment_id, request.target.quantity, request.target.plan_id),
                        expected_amount=request.amount_cents,
                    )
                    unallocated = request.amount_cents - money.total(p.amount_cents for p in work.purchases)
            except BillingError:
                self.db.rollback()
                self._advance(TransactionState.FAILED)
                raise

            payment = Payment(
                id=uuid.uuid4(),
                family_id=request.family_id,
                amount_cents=request.amount_cents,
                method=(request.method or "").strip() or None,
                note=(request.note or "").strip() or None,
                paid_at=work.paid_at,
                idempotency_key=request.idempotency_key,
            )
            try:
                self._persist(work, payment)
            except IntegrityError as e:
                self.db.rollback()
                if request.idempotency_key:
                    existing = self._find_by_idempotency_key(request.family_id, request.idempotency_key)
                    if existing is not None:
                        logger.info(f"Concurrent duplicate of payment {existing.id}; returning original")
                        self._advance(TransactionState.COMMITTED)
                        return self._result_for(existing, replayed=True)
                self._fail_persistence(request.family_id, e)
            except SQLAlchemyError as e:
                self.db.rollback()
                self._fail_persistence(request.family_id, e)

        logger.info(
            f"Payment {payment.id} recorded for family {request.family_id}: "
            f"{money.to_display(request.amount_cents)} received, "
            f"{money.to_display(unallocated)} unallocated"
        )
        self._advance(TransactionState.COMMITTED)
        return PaymentResult(
            payment_id=payment.id,
            amount_cents=request.amount_cents,
            allocations=tuple(AllocationLine(i, c) for i, c in work.allocation_lines.items()),
            unallocated_cents=unallocated,
            purchases=tuple(work.purchases),
        )

    def pay_ahead_and_pay(
        self,
        family_id: UUID,
        items: Iterable[PayAheadItem],
        *,
        method: Optional[str] = None,
        note: Optional[str] = None,
        paid_at: Optional[datetime] = None,
        idempotency_key: Optional[str] = None,
    ) -> PaymentResult:
        """
        Buy ahead for several enrolments with one payment.

        Each item is charged for the periods or blocks that actually fit, so
        an enrolment close to its end date is never billed for coverage it
        cannot use.
        """
        items = list(items)
        self._advance(TransactionState.VALIDATING)
        if not items:
            self._advance(TransactionState.FAILED)
            raise BillingError(ErrorKind.INVALID_TARGET, "Select at least one enrolment to pay ahead")
        now = self.clock()

        with family_locks.hold(family_id):
            try:
                self._lock_family(family_id)
                if idempotency_key:
                    existing = self._find_by_idempotency_key(family_id, idempotency_key)
                    if existing is not None:
                        self.db.rollback()
                        logger.info(f"Idempotent replay of pay-ahead payment {existing.id}")
                        self._advance(TransactionState.COMMITTED)
                        return self._result_for(existing, replayed=True)

                work = _Work(now=now, paid_at=paid_at or now)
                self._advance(TransactionState.PROJECTING)
                for item in items:
                    self._plan_purchase(work, family_id, item)
                total_cents = money.total(p.amount_cents for p in work.purchases)
                if total_cents <= 0:
                    raise BillingError(ErrorKind.INVALID_AMOUNT, "Pay-ahead total must be positive")
            except BillingError:
                self.db.rollback()
                self._advance(TransactionState.FAILED)
                raise

            payment = Payment(
                id=uuid.uuid4(),
                family_id=family_id,
                amount_cents=total_cents,
                method=(method or "").strip() or None,
                note=(note or "").strip() or None,
                paid_at=work.paid_at,
                idempotency_key=idempotency_key,
            )
            try:
                self._persist(work, payment)
            except SQLAlchemyError as e:
                self.db.rollback()
                self._fail_persistence(family_id, e)

        logger.info(
            f"Pay-ahead payment {payment.id} for family {family_id}: "
            f"{len(work.purchases)} item(s), {money.to_display(total_cents)}"
        )
        self._advance(TransactionState.COMMITTED)
        return PaymentResult(
            payment_id=payment.id,
            amount_cents=total_cents,
            allocations=tuple(AllocationLine(i, c) for i, c in work.allocation_lines.items()),
            unallocated_cents=0,
            purchases=tuple(work.purchases),
        )

    def auto_allocate_payment(self, payment_id: UUID) -> PaymentResult:
        """Apply whatever a payment still has unallocated to open invoices, oldest first."""
        payment = self.db.get(Payment, payment_id)
        if payment is None:
            raise BillingError(ErrorKind.NOT_FOUND, "Payment not found")
        family_id = payment.family_id
        now = self.clock()

        with family_locks.hold(family_id):
            try:
                self._lock_family(family_id)
                payment = self._lock_payment(payment_id)
                if payment.undone:
                    raise BillingError(ErrorKind.ALREADY_UNDONE, "Payment has already been undone")
                remaining = payment.unallocated_cents
                if remaining == 0:
                    self.db.rollback()
                    return self._result_for(payment)

                work = _Work(now=now, paid_at=payment.paid_at or now)
                self._advance(TransactionState.ALLOCATING)
                for row in self._open_invoice_rows(family_id):
                    work.track_invoice(row)
                plan = plan_auto(remaining, work.invoice_states.values())
                self._apply_plan(work, plan)
                self._advance(TransactionState.PROJECTING)
                self._project_paid_invoices(work)
            except BillingError:
                self.db.rollback()
                self._advance(TransactionState.FAILED)
                raise

            try:
                self._persist(work, payment)
            except SQLAlchemyError as e:
                self.db.rollback()
                self._fail_persistence(family_id, e)

        logger.info(
            f"Auto-allocated {money.to_display(plan.allocated_cents)} of payment {payment_id}; "
            f"{money.to_display(plan.unallocated_cents)} still unallocated"
        )
        self._advance(TransactionState.COMMITTED)
        return self._result_for(payment)

    def preview_allocation(self, family_id: UUID, amount_cents: int, target: InvoiceAllocationTarget) -> AllocationPlan:
        """Same decision the server would make on submit, without writing anything."""
        if self.db.get(Family, family_id) is None:
            raise BillingError(ErrorKind.NOT_FOUND, "Family not found")
        now = self.clock()
        if target.mode == AllocationMode.AUTO:
            rows = self._open_invoice_rows(family_id, lock=False)
        else:
            rows = self._invoice_rows_by_id((target.allocations or {}).keys(), lock=False)
        states = [refresh_status(row.to_state(), now) for row in rows]
        return plan_allocation(amount_cents, family_id, target, states)

    # ------------------------------------------------------------------
    # Undo
    # ------------------------------------------------------------------

    def undo_payment(self, payment_id: UUID, reason: Optional[str] = None) -> Payment:
        """
        Reverse every effect of a payment in one commit.

        Invoice amounts are reversed allocation by allocation; enrolment
        fields are restored to the values recorded when the payment was made.
        The payment and its allocations are kept, flagged as undone.
        """
        payment = self.db.get(Payment, payment_id)
        if payment is None:
            raise BillingError(ErrorKind.NOT_FOUND, "Payment not found")
        family_id = payment.family_id
        now = self.clock()

        with family_locks.hold(family_id):
            try:
                self._lock_family(family_id)
                payment = self._lock_payment(payment_id)
                if payment.undone:
                    raise BillingError(ErrorKind.ALREADY_UNDONE, "Payment has already been undone")

                work = _Work(now=now, paid_at=payment.paid_at)
                for row in self._invoice_rows_by_id({a.invoice_id for a in payment.allocations}):
                    work.track_invoice(row)
                for allocation in payment.allocations:
                    state = work.invoice_states[allocation.invoice_id]
                    work.invoice_states[allocation.invoice_id] = reverse_amount(state, allocation.amount_cents, now)

                restores = [change.to_delta() for change in reversed(payment.entitlement_changes)]
                enrolment_rows = {}
                for delta in restores:
                    if delta.enrolment_id not in enrolment_rows:
                        enrolment_rows[delta.enrolment_id] = self._lock_enrolment(delta.enrolment_id)
            except BillingError:
                self.db.rollback()
                raise

            try:
                for invoice_id, state in work.invoice_states.items():
                    row = work.invoice_rows[invoice_id]
                    if row.source == "PAY_AHEAD" and state.amount_paid_cents == 0:
                        row.amount_paid_cents = 0
                        row.status = InvoiceStatus.CANCELLED.value
                        row.paid_at = None
                        row.entitlements_applied_at = None
                        row.entitlements_payment = None
                        continue
                    self._write_invoice(row, state, work.paid_at)
                    # A grant made by another payment stays with the invoice; its own deltas undo it
                    if state.status != InvoiceStatus.PAID and row.entitlements_payment_id == payment.id:
                        row.entitlements_applied_at = None
                        row.entitlements_payment = None

                for delta in restores:
                    row = enrolment_rows[delta.enrolment_id]
                    if delta.field == EntitlementField.CREDITS_REMAINING:
                        row.credits_remaining = delta.previous_value
                    else:
                        row.paid_through_date = delta.previous_value

                payment.undone = True
                payment.undone_at = now
                payment.undo_reason = (reason or "").strip() or DEFAULT_UNDO_REASON
                self.db.commit()
            except SQLAlchemyError as e:
                self.db.rollback()
                self._fail_persistence(family_id, e)

        logger.info(
            f"Payment {payment_id} undone for family {family_id}: "
            f"{len(work.invoice_states)} invoice(s), {len(restores)} entitlement change(s) reversed"
        )
        return payment

    # ------------------------------------------------------------------
    # Planning helpers
    # ------------------------------------------------------------------

    def _plan_invoice_allocation(
        self, work: _Work, family_id: UUID, amount_cents: int, target: InvoiceAllocationTarget
    ) -> AllocationPlan:
        if target.mode == AllocationMode.AUTO:
            rows = self._open_invoice_rows(family_id)
        else:
            rows = self._invoice_rows_by_id((target.allocations or {}).keys())
        for row in rows:
            work.track_invoice(row)
        plan = plan_allocation(amount_cents, family_id, target, work.invoice_states.values())
        self._apply_plan(work, plan)
        return plan

    def _apply_plan(self, work: _Work, plan: AllocationPlan) -> None:
        for line in plan.lines:
            applied, updated = apply_amount(work.invoice_states[line.invoice_id], line.amount_cents, work.now)
            if applied != line.amount_cents:
                raise BillingError(
                    ErrorKind.ALLOCATION_EXCEEDS_BALANCE,
                    f"Allocation cannot exceed the balance of invoice {line.invoice_id}",
                    invoice_id=line.invoice_id,
                )
            work.invoice_states[line.invoice_id] = updated
            work.allocation_lines[line.invoice_id] = work.allocation_lines.get(line.invoice_id, 0) + applied

    def _project_paid_invoices(self, work: _Work) -> None:
        """Grant what an enrolment invoice buys the moment it becomes fully paid."""
        for invoice_id in list(work.allocation_lines):
            row = work.invoice_rows.get(invoice_id)
            if row is None or row.enrolment_id is None or row.entitlements_applied_at is not None:
                continue
            if work.original_states[invoice_id].status == InvoiceStatus.PAID:
                continue
            if work.invoice_states[invoice_id].status != InvoiceStatus.PAID:
                continue

            self._track_enrolment(work, row.enrolment_id)
            current = work.enrolment_states[row.enrolment_id]
            quantity = quantity_from_amount(row.amount_cents, current.plan.price_cents)
            projection = project_purchase(
                current,
                quantity,
                work.today,
                latest_coverage_end=self._latest_coverage_end(row.enrolment_id),
            )
            self._record_projection(work, projection)
            work.entitled_invoice_ids.append(invoice_id)

    def _plan_purchase(
        self,
        work: _Work,
        family_id: UUID,
        item: PayAheadItem,
        *,
        expected_amount: Optional[int] = None,
    ) -> PurchaseOutcome:
        enrolment = self._track_enrolment(work, item.enrolment_id)
        if enrolment.student.family_id != family_id:
            raise BillingError(ErrorKind.INVALID_TARGET, "Selected enrolments must belong to the same family")
        if not enrolment.is_payable:
            raise BillingError(ErrorKind.INVALID_TARGET, "Only active enrolments can be billed ahead")

        plan_row = self._resolve_plan(enrolment, item.plan_id)
        terms = plan_row.terms()
        quantity = item.quantity
        if quantity is None and expected_amount is not None:
            quantity = quantity_from_amount(expected_amount, terms.price_cents)
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
            raise BillingError(ErrorKind.INVALID_AMOUNT, "Quantity must be a positive whole number")
        if quantity > settings.PAY_AHEAD_MAX_QUANTITY:
            raise BillingError(
                ErrorKind.INVALID_AMOUNT,
                f"Cannot buy more than {settings.PAY_AHEAD_MAX_QUANTITY} periods or blocks at once",
            )
        if expected_amount is not None:
            plan_enrolment_purchase(expected_amount, terms.price_cents, quantity)

        projection = project_purchase(
            work.enrolment_states[enrolment.id],
            quantity,
            work.today,
            plan=terms,
            latest_coverage_end=self._latest_coverage_end(enrolment.id),
        )
        if projection.quantity_applied == 0:
            raise BillingError(ErrorKind.INVALID_TARGET, "No remaining periods to purchase for this enrolment")
        self._record_projection(work, projection)

        # Only the periods that fit before the end date are invoiced
        billed_quantity = projection.quantity_applied
        charged = money.multiply(terms.price_cents, billed_quantity)

        invoice = Invoice(
            id=uuid.uuid4(),
            family_id=family_id,
            enrolment_id=enrolment.id,
            source="PAY_AHEAD",
            amount_cents=charged,
            amount_paid_cents=charged,
            status=InvoiceStatus.PAID.value,
            issued_at=work.now,
            due_at=work.now + timedelta(days=settings.INVOICE_DUE_DAYS),
            paid_at=work.paid_at,
            coverage_start=projection.coverage_start,
            coverage_end=projection.coverage_end,
            credits_purchased=projection.credits_granted or None,
            entitlements_applied_at=work.now,
        )
        work.granted_invoices.append(invoice)
        invoice.line_items.append(
            InvoiceLineItem(
                kind="ENROLMENT",
                description=plan_row.name,
                quantity=billed_quantity,
                unit_price_cents=terms.price_cents,
                amount_cents=charged,
            )
        )
        work.new_invoices.append(invoice)
        if charged > 0:
            work.allocation_lines[invoice.id] = charged

        outcome = PurchaseOutcome(
            enrolment_id=enrolment.id,
            invoice_id=invoice.id,
            amount_cents=charged,
            quantity_requested=projection.quantity_requested,
            quantity_applied=projection.quantity_applied,
            credits_granted=projection.credits_granted,
            coverage_start=projection.coverage_start,
            coverage_end=projection.coverage_end,
        )
        work.purchases.append(outcome)
        if not projection.fully_applied:
            logger.info(
                f"Enrolment {enrolment.id}: {projection.quantity_applied} of "
                f"{projection.quantity_requested} periods fit before the end date"
            )
        return outcome

    def _record_projection(self, work: _Work, projection: Projection) -> None:
        delta = projection.delta
        if delta is None:
            return
        work.enrolment_states[delta.enrolment_id] = apply_delta(work.enrolment_states[delta.enrolment_id], delta)
        work.deltas[delta.enrolment_id] = merge_deltas(work.deltas.get(delta.enrolment_id), delta)

    def _resolve_plan(self, enrolment: Enrolment, plan_id: Optional[UUID]) -> EnrolmentPlan:
        if plan_id is None or plan_id == enrolment.plan_id:
            return enrolment.plan
        plan = self.db.get(EnrolmentPlan, plan_id)
        if plan is None:
            raise BillingError(ErrorKind.NOT_FOUND, "Selected plan could not be found")
        if enrolment.plan.billing_type != BillingType.PER_WEEK.value or plan.billing_type != BillingType.PER_WEEK.value:
            raise BillingError(ErrorKind.INVALID_TARGET, "Only weekly plans can be changed for pay-ahead payments")
        if not plan.is_active:
            raise BillingError(ErrorKind.INVALID_TARGET, "Selected plan is no longer offered")
        if plan.level != enrolment.plan.level:
            raise BillingError(ErrorKind.INVALID_TARGET, "Selected plan is for a different level")
        return plan

    # ------------------------------------------------------------------
    # Persistence helpers
    # ------------------------------------------------------------------

    def _persist(self, work: _Work, payment: Payment) -> None:
        """Write the computed plan in one commit; nothing was mutated before this point."""
        self._advance(TransactionState.PERSISTING)
        self.db.add(payment)
        for invoice in work.new_invoices:
            self.db.add(invoice)

        for invoice_id, state in work.invoice_states.items():
            if invoice_id in work.allocation_lines:
                self._write_invoice(work.invoice_rows[invoice_id], state, work.paid_at)
        for invoice_id in work.entitled_invoice_ids:
            work.invoice_rows[invoice_id].entitlements_applied_at = work.now
            work.granted_invoices.append(work.invoice_rows[invoice_id])
        for invoice in work.granted_invoices:
            invoice.entitlements_payment = payment

        invoices = dict(work.invoice_rows)
        invoices.update((invoice.id, invoice) for invoice in work.new_invoices)
        existing = {a.invoice_id: a for a in payment.allocations}
        for invoice_id, amount_cents in work.allocation_lines.items():
            if invoice_id in existing:
                existing[invoice_id].amount_cents += amount_cents
            else:
                self.db.add(PaymentAllocation(payment=payment, invoice=invoices[invoice_id], amount_cents=amount_cents))

        sequence = len(payment.entitlement_changes)
        for enrolment_id, delta in work.deltas.items():
            row = work.enrolment_rows[enrolment_id]
            if delta.field == EntitlementField.CREDITS_REMAINING:
                row.credits_remaining = delta.new_value
            else:
                row.paid_through_date = delta.new_value
            change = EntitlementChange.from_delta(payment.id, delta, sequence)
            change.payment = payment
            self.db.add(change)
            sequence += 1

        self.db.commit()

    def _write_invoice(self, row: Invoice, state: InvoiceState, paid_at: Optional[datetime]) -> None:
        row.amount_paid_cents = state.amount_paid_cents
        row.status = state.status.value
        if state.status == InvoiceStatus.PAID:
            row.paid_at = row.paid_at or paid_at
        else:
            row.paid_at = None

    def _fail_persistence(self, family_id: UUID, error: Exception) -> None:
        self._advance(TransactionState.FAILED)
        logger.error(f"Billing commit failed for family {family_id}: {error}")
        raise BillingError(ErrorKind.PERSISTENCE_FAILED, "Payment could not be saved; nothing was changed") from error

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def _lock_family(self, family_id: UUID) -> Family:
        family = self.db.execute(
            select(Family).where(Family.id == family_id).with_for_update()
        ).scalar_one_or_none()
        if family is None:
            raise BillingError(ErrorKind.NOT_FOUND, "Family not found")
        return family

    def _lock_payment(self, payment_id: UUID) -> Payment:
        payment = self.db.execute(
            select(Payment).where(Payment.id == payment_id).with_for_update()
        ).scalar_one_or_none()
        if payment is None:
            raise BillingError(ErrorKind.NOT_FOUND, "Payment not found")
        return payment

    def _lock_enrolment(self, enrolment_id: UUID) -> Enrolment:
        enrolment = self.db.execute(
            select(Enrolment).where(Enrolment.id == enrolment_id).with_for_update()
        ).scalar_one_or_none()
        if enrolment is None:
            raise BillingError(ErrorKind.NOT_FOUND, "Enrolment not found")
        return enrolment

    def _track_enrolment(self, work: _Work, enrolment_id: UUID) -> Enrolment:
        row = work.enrolment_rows.get(enrolment_id)
        if row is None:
            row = self._lock_enrolment(enrolment_id)
            work.enrolment_rows[enrolment_id] = row
            work.enrolment_states[enrolment_id] = row.to_entitlement()
        return row

    def _find_by_idempotency_key(self, family_id: UUID, key: str) -> Optional[Payment]:
        return self.db.execute(
            select(Payment).where(Payment.family_id == family_id, Payment.idempotency_key == key)
        ).scalar_one_or_none()

    def _open_invoice_rows(self, family_id: UUID, lock: bool = True) -> List[Invoice]:
        query = select(Invoice).where(
            Invoice.family_id == family_id,
            Invoice.status.in_([s.value for s in OPEN_STATUSES]),
        )
        if lock:
            query = query.with_for_update()
        return list(self.db.execute(query).scalars().all())

    def _invoice_rows_by_id(self, invoice_ids: Iterable[UUID], lock: bool = True) -> List[Invoice]:
        ids = list(invoice_ids)
        if not ids:
            return []
        query = select(Invoice).where(Invoice.id.in_(ids))
        if lock:
            query = query.with_for_update()
        return list(self.db.execute(query).scalars().all())

    def _latest_coverage_end(self, enrolment_id: UUID) -> Optional[date]:
        return self.db.execute(
            select(func.max(Invoice.coverage_end)).where(
                Invoice.enrolment_id == enrolment_id,
                Invoice.status == InvoiceStatus.PAID.value,
            )
        ).scalar_one_or_none()

    def _result_for(self, payment: Payment, replayed: bool = False) -> PaymentResult:
        return PaymentResult(
            payment_id=payment.id,
            amount_cents=payment.amount_cents,
            allocations=tuple(AllocationLine(a.invoice_id, a.amount_cents) for a in payment.allocations),
            unallocated_cents=payment.unallocated_cents,
            replayed=replayed,
        )
