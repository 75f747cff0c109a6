# swimdesk/api/routers/invoices.py
from datetime import datetime
from typing import Callable
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session
from uuid import UUID

from swimdesk.core.db import get_db
from swimdesk.api.deps.services import get_clock
from swimdesk.models.payment import Invoice
from swimdesk.schemas.billing import InvoiceDetail

router = APIRouter()


@router.get("/{invoice_id}", response_model=InvoiceDetail)
async def get_invoice(
    invoice_id: UUID,
    db: Session = Depends(get_db),
    clock: Callable[[], datetime] = Depends(get_clock),
):
    """Invoice with line items and the payments allocated to it"""
    invoice = db.get(Invoice, invoice_id)
    if not invoice:
        raise HTTPException(status_code=404, detail="Invoice not found")
    return InvoiceDetail.from_row(invoice, clock())
