# swimdesk/models/payment.py - Invoices, payments, allocations and entitlement changes
from __future__ import annotations
import uuid
from datetime import date, datetime
from sqlalchemy import (
    String, Integer, Boolean, Date, DateTime, ForeignKey, CheckConstraint, Index, UniqueConstraint, Uuid
)
from sqlalchemy.orm import Mapped, mapped_column, relationship
from swimdesk.models.base import Base
from swimdesk.billing.entitlements import EntitlementDelta, EntitlementField
from swimdesk.billing.ledger import InvoiceState, InvoiceStatus

INVOICE_SOURCES = ("BILLING_PERIOD", "PAY_AHEAD", "COUNTER_SALE", "MANUAL")
LINE_ITEM_KINDS = ("ENROLMENT", "PRODUCT", "OTHER")


class Invoice(Base):
    __tablename__ = "invoices"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    family_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("families.id"), nullable=False, index=True)
    enrolment_id: Mapped[uuid.UUID | None] = mapped_column(Uuid(as_uuid=True), ForeignKey("enrolments.id"), index=True)
    source: Mapped[str] = mapped_column(String(16), nullable=False, default="MANUAL")

    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    amount_paid_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="OPEN")

    issued_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)
    due_at: Mapped[datetime | None] = mapped_column(DateTime)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime)

    # What the invoice buys when it is enrolment-linked
    coverage_start: Mapped[date | None] = mapped_column(Date)
    coverage_end: Mapped[date | None] = mapped_column(Date)
    credits_purchased: Mapped[int | None] = mapped_column(Integer)
    entitlements_applied_at: Mapped[datetime | None] = mapped_column(DateTime)
    entitlements_payment_id: Mapped[uuid.UUID | None] = mapped_column(Uuid(as_uuid=True), ForeignKey("payments.id"))

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    line_items: Mapped[list["InvoiceLineItem"]] = relationship("InvoiceLineItem", back_populates="invoice", cascade="all, delete-orphan")
    allocations: Mapped[list["PaymentAllocation"]] = relationship("PaymentAllocation", back_populates="invoice")
    enrolment: Mapped["Enrolment"] = relationship("Enrolment")
    entitlements_payment: Mapped["Payment"] = relationship("Payment", foreign_keys=[entitlements_payment_id])

    __table_args__ = (
        CheckConstraint("status IN ('OPEN','PARTIALLY_PAID','PAID','OVERDUE','CANCELLED')", name="ck_invoice_status"),
        CheckConstraint("source IN ('BILLING_PERIOD','PAY_AHEAD','COUNTER_SALE','MANUAL')", name="ck_invoice_source"),
        CheckConstraint("amount_cents >= 0", name="ck_invoice_amount_positive"),
        CheckConstraint("amount_paid_cents >= 0 AND amount_paid_cents <= amount_cents", name="ck_invoice_paid_within_amount"),
        Index("ix_invoices_family_status", "family_id", "status"),
    )

    @property
    def balance_cents(self) -> int:
        if self.status == InvoiceStatus.CANCELLED.value:
            return 0
        return max(self.amount_cents - self.amount_paid_cents, 0)

    def to_state(self) -> InvoiceState:
        return InvoiceState(
            id=self.id,
            family_id=self.family_id,
            amount_cents=self.amount_cents,
            amount_paid_cents=self.amount_paid_cents,
            status=InvoiceStatus(self.status),
            issued_at=self.issued_at,
            due_at=self.due_at,
            enrolment_id=self.enrolment_id,
        )


class InvoiceLineItem(Base):
    __tablename__ = "invoice_line_items"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    invoice_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("invoices.id", ondelete="CASCADE"), nullable=False, index=True)
    kind: Mapped[str] = mapped_column(String(16), nullable=False, default="OTHER")
    description: Mapped[str] = mapped_column(String(255), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    unit_price_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    product_id: Mapped[uuid.UUID | None] = mapped_column(Uuid(as_uuid=True), ForeignKey("products.id"))

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)

    invoice: Mapped["Invoice"] = relationship("Invoice", back_populates="line_items")

    __table_args__ = (
        CheckConstraint("kind IN ('ENROLMENT','PRODUCT','OTHER')", name="ck_invoice_line_item_kind"),
        CheckConstraint("quantity > 0", name="ck_invoice_line_item_quantity_positive"),
    )


class Payment(Base):
    """A cash receipt. Undone payments are kept, flagged, for audit."""
    __tablename__ = "payments"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    family_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("families.id"), nullable=False, index=True)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    method: Mapped[str | None] = mapped_column(String(100))
    note: Mapped[str | None] = mapped_column(String(1000))
    paid_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)
    idempotency_key: Mapped[str | None] = mapped_column(String(128))

    undone: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    undone_at: Mapped[datetime | None] = mapped_column(DateTime)
    undo_reason: Mapped[str | None] = mapped_column(String(500))

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    allocations: Mapped[list["PaymentAllocation"]] = relationship(
        "PaymentAllocation", back_populates="payment", order_by="PaymentAllocation.created_at"
    )
    entitlement_changes: Mapped[list["EntitlementChange"]] = relationship(
        "EntitlementChange", back_populates="payment", order_by="EntitlementChange.sequence"
    )

    __table_args__ = (
        CheckConstraint("amount_cents > 0", name="ck_payment_amount_positive"),
        UniqueConstraint("family_id", "idempotency_key", name="uq_payment_family_idempotency_key"),
        Index("ix_payments_family_paid_at", "family_id", "paid_at"),
    )

    @property
    def allocated_cents(self) -> int:
        return sum(a.amount_cents for a in self.allocations)

    @property
    def unallocated_cents(self) -> int:
        return max(self.amount_cents - self.allocated_cents, 0)


class PaymentAllocation(Base):
    __tablename__ = "payment_allocations"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    payment_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("payments.id"), nullable=False, index=True)
    invoice_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("invoices.id"), nullable=False, index=True)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)

    payment: Mapped["Payment"] = relationship("Payment", back_populates="allocations")
    invoice: Mapped["Invoice"] = relationship("Invoice", back_populates="allocations")

    __table_args__ = (
        CheckConstraint("amount_cents > 0", name="ck_payment_allocation_amount_positive"),
    )


class EntitlementChange(Base):
    """Persisted before/after of one enrolment field, restored verbatim on undo."""
    __tablename__ = "entitlement_changes"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    payment_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("payments.id"), nullable=False, index=True)
    enrolment_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("enrolments.id"), nullable=False, index=True)
    sequence: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    field: Mapped[str] = mapped_column(String(32), nullable=False)

    previous_credits: Mapped[int | None] = mapped_column(Integer)
    new_credits: Mapped[int | None] = mapped_column(Integer)
    previous_paid_through: Mapped[date | None] = mapped_column(Date)
    new_paid_through: Mapped[date | None] = mapped_column(Date)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)

    payment: Mapped["Payment"] = relationship("Payment", back_populates="entitlement_changes")

    __table_args__ = (
        CheckConstraint("field IN ('credits_remaining','paid_through_date')", name="ck_entitlement_change_field"),
    )

    @classmethod
    def from_delta(cls, payment_id: uuid.UUID, delta: EntitlementDelta, sequence: int = 0) -> "EntitlementChange":
        row = cls(payment_id=payment_id, enrolment_id=delta.enrolment_id, sequence=sequence, field=delta.field.value)
        if delta.field == EntitlementField.CREDITS_REMAINING:
            row.previous_credits = delta.previous_value
            row.new_credits = delta.new_value
        else:
            row.previous_paid_through = delta.previous_value
            row.new_paid_through = delta.new_value
        return row

    def to_delta(self) -> EntitlementDelta:
        field = EntitlementField(self.field)
        if field == EntitlementField.CREDITS_REMAINING:
            return EntitlementDelta(self.enrolment_id, field, self.previous_credits, self.new_credits)
        return EntitlementDelta(self.enrolment_id, field, self.previous_paid_through, self.new_paid_through)
