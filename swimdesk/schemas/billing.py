# swimdesk/schemas/billing.py - Request/response models for the billing API
from pydantic import BaseModel, Field, field_validator
from typing import List, Literal, Optional
from datetime import date, datetime
from uuid import UUID

from swimdesk.billing import money
from swimdesk.billing.allocation import (
    AllocationMode,
    EnrolmentPurchaseTarget,
    InvoiceAllocationTarget,
    PaymentTarget,
    aggregate_requested,
)
from swimdesk.billing.errors import BillingError, ErrorKind
from swimdesk.billing.ledger import refresh_status
from swimdesk.services.payment_service import PayAheadItem, PaymentRequest

InvoiceStatusLiteral = Literal['OPEN', 'PARTIALLY_PAID', 'PAID', 'OVERDUE', 'CANCELLED']


def _clean_text(v: Optional[str]) -> Optional[str]:
    if v is None:
        return None
    v = v.strip()
    return v or None


# ---------------------------------------------------------------------------
# Payments
# ---------------------------------------------------------------------------

class AllocationIn(BaseModel):
    invoice_id: UUID
    amount_cents: int


class PaymentCreate(BaseModel):
    """Either ``amount_cents`` or a display ``amount`` such as "15.05" must be given."""
    family_id: UUID
    amount_cents: Optional[int] = None
    amount: Optional[str] = Field(None, max_length=32)
    paid_at: Optional[datetime] = None
    method: Optional[str] = Field(None, max_length=100)
    note: Optional[str] = Field(None, max_length=1000)
    allocations: Optional[List[AllocationIn]] = None
    allocation_mode: Optional[AllocationMode] = None
    enrolment_id: Optional[UUID] = None
    plan_id: Optional[UUID] = None
    quantity: Optional[int] = None
    idempotency_key: Optional[str] = Field(None, max_length=128)

    @field_validator('method', 'note', 'idempotency_key')
    @classmethod
    def strip_text(cls, v: Optional[str]) -> Optional[str]:
        return _clean_text(v)

    def amount_in_cents(self) -> int:
        if self.amount_cents is not None:
            return self.amount_cents
        if self.amount is not None:
            return money.parse_display(self.amount)
        raise BillingError(ErrorKind.INVALID_AMOUNT, "Amount is required")

    def to_target(self) -> PaymentTarget:
        if self.enrolment_id is not None:
            return EnrolmentPurchaseTarget(self.enrolment_id, self.quantity, self.plan_id)
        mode = self.allocation_mode
        if mode is None:
            mode = AllocationMode.MANUAL if self.allocations else AllocationMode.AUTO
        if mode == AllocationMode.AUTO:
            return InvoiceAllocationTarget(AllocationMode.AUTO)
        requested = aggregate_requested((a.invoice_id, a.amount_cents) for a in self.allocations or [])
        return InvoiceAllocationTarget(AllocationMode.MANUAL, requested)

    def to_request(self) -> PaymentRequest:
        return PaymentRequest(
            family_id=self.family_id,
            amount_cents=self.amount_in_cents(),
            target=self.to_target(),
            idempotency_key=self.idempotency_key,
            method=self.method,
            note=self.note,
            paid_at=self.paid_at,
        )


class PaymentPreviewIn(BaseModel):
    family_id: UUID
    amount_cents: Optional[int] = None
    amount: Optional[str] = Field(None, max_length=32)
    allocations: Optional[List[AllocationIn]] = None
    allocation_mode: Optional[AllocationMode] = None

    def to_payment(self) -> PaymentCreate:
        return PaymentCreate(
            family_id=self.family_id,
            amount_cents=self.amount_cents,
            amount=self.amount,
            allocations=self.allocations,
            allocation_mode=self.allocation_mode,
        )


class AllocationOut(BaseModel):
    invoice_id: UUID
    amount_cents: int

    class Config:
        from_attributes = True


class AllocationPlanOut(BaseModel):
    allocations: List[AllocationOut]
    allocated_cents: int
    unallocated_cents: int


class PurchaseOut(BaseModel):
    enrolment_id: UUID
    invoice_id: UUID
    amount_cents: int
    quantity_requested: int
    quantity_applied: int
    credits_granted: int = 0
    coverage_start: Optional[date] = None
    coverage_end: Optional[date] = None

    class Config:
        from_attributes = True


class PaymentResultOut(BaseModel):
    payment_id: UUID
    amount_cents: int
    allocated_cents: int
    unallocated_cents: int
    allocations: List[AllocationOut]
    purchases: List[PurchaseOut] = []
    replayed: bool = False

    class Config:
        from_attributes = True


class UndoPaymentIn(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)

    @field_validator('reason')
    @classmethod
    def strip_reason(cls, v: Optional[str]) -> Optional[str]:
        return _clean_text(v)


class PaymentOut(BaseModel):
    id: UUID
    family_id: UUID
    amount_cents: int
    allocated_cents: int
    unallocated_cents: int
    method: Optional[str] = None
    note: Optional[str] = None
    paid_at: datetime
    idempotency_key: Optional[str] = None
    undone: bool
    undone_at: Optional[datetime] = None
    undo_reason: Optional[str] = None
    allocations: List[AllocationOut] = []

    class Config:
        from_attributes = True


# ---------------------------------------------------------------------------
# Pay ahead
# ---------------------------------------------------------------------------

class PayAheadItemIn(BaseModel):
    enrolment_id: UUID
    quantity: int = Field(1, ge=1)
    plan_id: Optional[UUID] = None


class PayAheadIn(BaseModel):
    family_id: UUID
    items: List[PayAheadItemIn] = Field(..., min_length=1)
    method: Optional[str] = Field(None, max_length=100)
    note: Optional[str] = Field(None, max_length=1000)
    paid_at: Optional[datetime] = None
    idempotency_key: Optional[str] = Field(None, max_length=128)

    @field_validator('method', 'note', 'idempotency_key')
    @classmethod
    def strip_text(cls, v: Optional[str]) -> Optional[str]:
        return _clean_text(v)

    def to_items(self) -> List[PayAheadItem]:
        return [PayAheadItem(i.enrolment_id, i.quantity, i.plan_id) for i in self.items]


# ---------------------------------------------------------------------------
# Invoices
# ---------------------------------------------------------------------------

class InvoiceLineItemOut(BaseModel):
    id: UUID
    kind: str
    description: str
    quantity: int
    unit_price_cents: int
    amount_cents: int
    product_id: Optional[UUID] = None

    class Config:
        from_attributes = True


class InvoiceOut(BaseModel):
    id: UUID
    family_id: UUID
    enrolment_id: Optional[UUID] = None
    source: str
    amount_cents: int
    amount_paid_cents: int
    balance_cents: int
    status: InvoiceStatusLiteral
    issued_at: datetime
    due_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    coverage_start: Optional[date] = None
    coverage_end: Optional[date] = None
    credits_purchased: Optional[int] = None

    class Config:
        from_attributes = True

    @classmethod
    def from_row(cls, row, now: Optional[datetime] = None):
        """Stored status re-derived against ``now`` (an OPEN invoice may have gone OVERDUE)."""
        out = cls.model_validate(row)
        if now is not None:
            out.status = refresh_status(row.to_state(), now).status.value
        return out


class InvoiceDetail(InvoiceOut):
    line_items: List[InvoiceLineItemOut] = []
    allocations: List[AllocationOut] = []


# ---------------------------------------------------------------------------
# Counter sales
# ---------------------------------------------------------------------------

class CounterItemIn(BaseModel):
    product_id: UUID
    quantity: int = Field(1, ge=1)


class CounterInvoiceIn(BaseModel):
    family_id: Optional[UUID] = None
    items: List[CounterItemIn] = Field(..., min_length=1)
    pay_now: bool = False
    payment_method: Optional[str] = Field(None, max_length=100)
    note: Optional[str] = Field(None, max_length=1000)

    @field_validator('payment_method', 'note')
    @classmethod
    def strip_text(cls, v: Optional[str]) -> Optional[str]:
        return _clean_text(v)


class CounterInvoiceOut(BaseModel):
    invoice_id: UUID
    family_id: UUID
    amount_cents: int
    status: InvoiceStatusLiteral
    payment_id: Optional[UUID] = None


# ---------------------------------------------------------------------------
# Family billing summary
# ---------------------------------------------------------------------------

class StudentOut(BaseModel):
    id: UUID
    name: str
    dob: Optional[date] = None

    class Config:
        from_attributes = True


class EnrolmentSummaryOut(BaseModel):
    id: UUID
    student_id: UUID
    plan_id: UUID
    plan_name: str
    billing_type: Literal['PER_CLASS', 'PER_WEEK']
    price_cents: int
    status: str
    start_date: date
    end_date: Optional[date] = None
    credits_remaining: int
    paid_through_date: Optional[date] = None


class FamilyBillingSummaryOut(BaseModel):
    family_id: UUID
    family_name: str
    outstanding_cents: int
    credits_total: int
    paid_through_latest: Optional[date] = None
    next_due_invoice: Optional[InvoiceOut] = None
    open_invoices: List[InvoiceOut]
    enrolments: List[EnrolmentSummaryOut]
    payments: List[PaymentOut]
    students: List[StudentOut]
