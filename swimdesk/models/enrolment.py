# swimdesk/models/enrolment.py - Plans and the enrolments that carry entitlements
from __future__ import annotations
import uuid
from datetime import date, datetime
from typing import Optional
from sqlalchemy import String, Integer, Boolean, Date, ForeignKey, DateTime, CheckConstraint, Index, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship
from swimdesk.models.base import Base
from swimdesk.billing.entitlements import BillingType, EnrolmentEntitlement, PlanTerms

ENROLMENT_STATUSES = ("ACTIVE", "PAUSED", "ENDED", "CANCELLED")
PAYABLE_ENROLMENT_STATUSES = ("ACTIVE", "PAUSED")


class EnrolmentPlan(Base):
    __tablename__ = "enrolment_plans"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    level: Mapped[str | None] = mapped_column(String(64))  # weekly tiers are interchangeable within a level
    billing_type: Mapped[str] = mapped_column(String(16), nullable=False)
    price_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    duration_weeks: Mapped[int | None] = mapped_column(Integer)
    block_class_count: Mapped[int | None] = mapped_column(Integer)
    sessions_per_week: Mapped[int | None] = mapped_column(Integer)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        CheckConstraint("billing_type IN ('PER_CLASS','PER_WEEK')", name="ck_enrolment_plan_billing_type"),
        CheckConstraint("price_cents >= 0", name="ck_enrolment_plan_price_positive"),
    )

    def terms(self) -> PlanTerms:
        return PlanTerms(
            billing_type=BillingType(self.billing_type),
            price_cents=self.price_cents,
            duration_weeks=self.duration_weeks,
            block_class_count=self.block_class_count,
        )


class Enrolment(Base):
    """
    A student's subscription to a plan.

    credits_remaining (PER_CLASS) and paid_through_date (PER_WEEK) are only
    written by the payment service from projected entitlement deltas.
    """
    __tablename__ = "enrolments"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    student_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("students.id", ondelete="CASCADE"), nullable=False, index=True)
    plan_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("enrolment_plans.id", ondelete="RESTRICT"), nullable=False, index=True)

    status: Mapped[str] = mapped_column(String(16), nullable=False, default="ACTIVE")
    start_date: Mapped[date] = mapped_column(Date, nullable=False, default=date.today)
    end_date: Mapped[date | None] = mapped_column(Date, nullable=True)

    credits_remaining: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    paid_through_date: Mapped[date | None] = mapped_column(Date, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    student: Mapped["Student"] = relationship("Student", back_populates="enrolments")
    plan: Mapped["EnrolmentPlan"] = relationship("EnrolmentPlan")

    __table_args__ = (
        CheckConstraint("status IN ('ACTIVE','PAUSED','ENDED','CANCELLED')", name="ck_enrolment_status"),
        CheckConstraint("credits_remaining >= 0", name="ck_enrolment_credits_non_negative"),
        Index("ix_enrolments_student_status", "student_id", "status"),
    )

    @property
    def is_payable(self) -> bool:
        return self.status in PAYABLE_ENROLMENT_STATUSES

    def to_entitlement(self, plan: Optional[EnrolmentPlan] = None) -> EnrolmentEntitlement:
        return EnrolmentEntitlement(
            id=self.id,
            plan=(plan or self.plan).terms(),
            start_date=self.start_date,
            end_date=self.end_date,
            credits_remaining=self.credits_remaining or 0,
            paid_through_date=self.paid_through_date,
        )
