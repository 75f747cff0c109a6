# swimdesk/api/routers/payments.py
from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session
from typing import Optional
from uuid import UUID

from swimdesk.core.db import get_db
from swimdesk.api.deps.services import get_payment_service
from swimdesk.models.payment import Payment
from swimdesk.schemas.billing import (
    AllocationPlanOut, PayAheadIn, PaymentCreate, PaymentOut,
    PaymentPreviewIn, PaymentResultOut, UndoPaymentIn,
)
from swimdesk.services.payment_service import PaymentService

router = APIRouter()


@router.post("/", response_model=PaymentResultOut, status_code=status.HTTP_201_CREATED)
async def create_payment(
    data: PaymentCreate,
    service: PaymentService = Depends(get_payment_service),
):
    """
    Record a payment for a family.

    Without allocations the amount is applied to open invoices oldest-first;
    with allocations it must match them exactly; with an enrolment it buys
    credits or weeks directly.
    """
    result = service.submit_payment(data.to_request())
    return PaymentResultOut.model_validate(result)


@router.post("/preview", response_model=AllocationPlanOut)
async def preview_payment(
    data: PaymentPreviewIn,
    service: PaymentService = Depends(get_payment_service),
):
    """Show how a payment would be allocated without recording it"""
    payment = data.to_payment()
    plan = service.preview_allocation(data.family_id, payment.amount_in_cents(), payment.to_target())
    return AllocationPlanOut(
        allocations=[{"invoice_id": line.invoice_id, "amount_cents": line.amount_cents} for line in plan.lines],
        allocated_cents=plan.allocated_cents,
        unallocated_cents=plan.unallocated_cents,
    )


@router.post("/pay-ahead", response_model=PaymentResultOut, status_code=status.HTTP_201_CREATED)
async def pay_ahead(
    data: PayAheadIn,
    service: PaymentService = Depends(get_payment_service),
):
    """Bill one or more enrolments ahead and pay for them in one payment"""
    result = service.pay_ahead_and_pay(
        data.family_id,
        data.to_items(),
        method=data.method,
        note=data.note,
        paid_at=data.paid_at,
        idempotency_key=data.idempotency_key,
    )
    return PaymentResultOut.model_validate(result)


@router.get("/{payment_id}", response_model=PaymentOut)
async def get_payment(payment_id: UUID, db: Session = Depends(get_db)):
    payment = db.get(Payment, payment_id)
    if not payment:
        raise HTTPException(status_code=404, detail="Payment not found")
    return PaymentOut.model_validate(payment)


@router.post("/{payment_id}/undo", response_model=PaymentOut)
async def undo_payment(
    payment_id: UUID,
    data: Optional[UndoPaymentIn] = None,
    service: PaymentService = Depends(get_payment_service),
):
    """Reverse a payment's allocations and entitlements; the payment stays on record as undone"""
    payment = service.undo_payment(payment_id, reason=data.reason if data else None)
    return PaymentOut.model_validate(payment)


@router.post("/{payment_id}/auto-allocate", response_model=PaymentResultOut)
async def auto_allocate_payment(
    payment_id: UUID,
    service: PaymentService = Depends(get_payment_service),
):
    """Apply a payment's unallocated remainder to open invoices"""
    result = service.auto_allocate_payment(payment_id)
    return PaymentResultOut.model_validate(result)
