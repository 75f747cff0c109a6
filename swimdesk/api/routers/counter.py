# swimdesk/api/routers/counter.py
from fastapi import APIRouter, Depends, status

from swimdesk.api.deps.services import get_counter_service
from swimdesk.schemas.billing import CounterInvoiceIn, CounterInvoiceOut
from swimdesk.services.counter_service import CounterItem, CounterService

router = APIRouter()


@router.post("/invoices", response_model=CounterInvoiceOut, status_code=status.HTTP_201_CREATED)
async def create_counter_invoice(
    data: CounterInvoiceIn,
    service: CounterService = Depends(get_counter_service),
):
    """Sell products at the desk; with pay_now the invoice is paid in the same transaction"""
    sale = service.create_counter_invoice(
        data.family_id,
        [CounterItem(i.product_id, i.quantity) for i in data.items],
        pay_now=data.pay_now,
        payment_method=data.payment_method,
        note=data.note,
    )
    return CounterInvoiceOut(
        invoice_id=sale.invoice.id,
        family_id=sale.invoice.family_id,
        amount_cents=sale.invoice.amount_cents,
        status=sale.invoice.status,
        payment_id=sale.payment.payment_id if sale.payment else None,
    )
