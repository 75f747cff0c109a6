# swimdesk/api/routers/families.py
from datetime import datetime
from typing import Callable, List, Optional
from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import select
from sqlalchemy.orm import Session
from uuid import UUID

from swimdesk.core.db import get_db
from swimdesk.api.deps.services import get_clock, get_summary_service
from swimdesk.models import Family, Invoice, Payment
from swimdesk.schemas.billing import (
    EnrolmentSummaryOut, FamilyBillingSummaryOut, InvoiceOut, PaymentOut, StudentOut,
)
from swimdesk.services.summary_service import SummaryService

router = APIRouter()


@router.get("/{family_id}/billing", response_model=FamilyBillingSummaryOut)
async def get_family_billing_summary(
    family_id: UUID,
    service: SummaryService = Depends(get_summary_service),
):
    """Outstanding balance, next due invoice, credits and paid-through dates for a family"""
    summary = service.get_family_billing_summary(family_id)
    now = service.clock()
    position = summary.position
    next_due = summary.next_due_invoice_row

    return FamilyBillingSummaryOut(
        family_id=summary.family.id,
        family_name=summary.family.name,
        outstanding_cents=position.outstanding_cents,
        credits_total=position.credits_total,
        paid_through_latest=position.paid_through_latest,
        next_due_invoice=InvoiceOut.from_row(next_due, now) if next_due else None,
        open_invoices=[InvoiceOut.from_row(inv, now) for inv in summary.open_invoice_rows],
        enrolments=[
            EnrolmentSummaryOut(
                id=e.id,
                student_id=e.student_id,
                plan_id=e.plan_id,
                plan_name=e.plan.name,
                billing_type=e.plan.billing_type,
                price_cents=e.plan.price_cents,
                status=e.status,
                start_date=e.start_date,
                end_date=e.end_date,
                credits_remaining=e.credits_remaining,
                paid_through_date=e.paid_through_date,
            )
            for e in summary.enrolments
        ],
        payments=[PaymentOut.model_validate(p) for p in summary.payments],
        students=[StudentOut.model_validate(s) for s in summary.students],
    )


@router.get("/{family_id}/invoices", response_model=List[InvoiceOut])
async def list_family_invoices(
    family_id: UUID,
    status: Optional[str] = Query(None, description="Filter by stored status"),
    db: Session = Depends(get_db),
    clock: Callable[[], datetime] = Depends(get_clock),
):
    """List invoices for a family, newest first"""
    if not db.get(Family, family_id):
        raise HTTPException(status_code=404, detail="Family not found")

    query = select(Invoice).where(Invoice.family_id == family_id)
    if status:
        query = query.where(Invoice.status == status.upper())
    invoices = db.execute(query.order_by(Invoice.issued_at.desc())).scalars().all()

    now = clock()
    return [InvoiceOut.from_row(inv, now) for inv in invoices]


@router.get("/{family_id}/payments", response_model=List[PaymentOut])
async def list_family_payments(
    family_id: UUID,
    include_undone: bool = Query(True),
    db: Session = Depends(get_db),
):
    """List payments for a family, most recent first"""
    if not db.get(Family, family_id):
        raise HTTPException(status_code=404, detail="Family not found")

    query = select(Payment).where(Payment.family_id == family_id)
    if not include_undone:
        query = query.where(Payment.undone == False)  # noqa: E712
    payments = db.execute(query.order_by(Payment.paid_at.desc())).scalars().all()
    return [PaymentOut.model_validate(p) for p in payments]
