# swimdesk/services/counter_service.py - Product sales at the front desk
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Iterable, Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from swimdesk.core.config import settings
from swimdesk.billing import money
from swimdesk.billing.allocation import AllocationMode, InvoiceAllocationTarget
from swimdesk.billing.errors import BillingError, ErrorKind
from swimdesk.billing.ledger import InvoiceStatus
from swimdesk.models import Family, Invoice, InvoiceLineItem, Product
from swimdesk.services.payment_service import PaymentRequest, PaymentResult, PaymentService

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CounterItem:
    product_id: UUID
    quantity: int = 1


@dataclass(frozen=True)
class CounterSale:
    invoice: Invoice
    payment: Optional[PaymentResult] = None


class CounterService:
    """Issues product invoices and, optionally, pays them in the same commit"""

    def __init__(self, db: Session, clock: Callable[[], datetime] = datetime.utcnow):
        self.db = db
        self.clock = clock

    def resolve_family(self, family_id: Optional[UUID]) -> Family:
        """Use the given family, or the shared counter-sale family for walk-in customers."""
        if family_id is not None:
            family = self.db.get(Family, family_id)
            if family is None:
                raise BillingError(ErrorKind.NOT_FOUND, "Family not found")
            return family

        if settings.COUNTER_SALE_FAMILY_ID:
            family = self.db.get(Family, UUID(settings.COUNTER_SALE_FAMILY_ID))
            if family is None:
                raise BillingError(ErrorKind.NOT_FOUND, "Configured counter sale family does not exist")
            return family

        family = self.db.execute(
            select(Family).where(Family.name == settings.COUNTER_SALE_FAMILY_NAME).order_by(Family.created_at)
        ).scalars().first()
        if family is None:
            family = Family(name=settings.COUNTER_SALE_FAMILY_NAME)
            self.db.add(family)
            self.db.flush()
            logger.info(f"Created counter sale family {family.id}")
        return family

    def create_counter_invoice(
        self,
        family_id: Optional[UUID],
        items: Iterable[CounterItem],
        *,
        pay_now: bool = False,
        payment_method: Optional[str] = None,
        note: Optional[str] = None,
    ) -> CounterSale:
        items = list(items)
        if not items:
            raise BillingError(ErrorKind.INVALID_TARGET, "Add at least one item to the sale")

        try:
            family = self.resolve_family(family_id)
            now = self.clock()
            invoice = Invoice(
                family_id=family.id,
                source="COUNTER_SALE",
                amount_cents=0,
                amount_paid_cents=0,
                status=InvoiceStatus.OPEN.value,
                issued_at=now,
                due_at=now + timedelta(days=settings.INVOICE_DUE_DAYS),
            )
            for item in items:
                if isinstance(item.quantity, bool) or not isinstance(item.quantity, int) or item.quantity <= 0:
                    raise BillingError(ErrorKind.INVALID_AMOUNT, "Quantity must be a positive whole number")
                product = self.db.get(Product, item.product_id)
                if product is None:
                    raise BillingError(ErrorKind.NOT_FOUND, f"Product {item.product_id} not found")
                if not product.is_active:
                    raise BillingError(ErrorKind.INVALID_TARGET, f"{product.name} is no longer sold")
                line_cents = money.multiply(product.price_cents, item.quantity)
                invoice.line_items.append(
                    InvoiceLineItem(
                        kind="PRODUCT",
                        description=product.name,
                        quantity=item.quantity,
                        unit_price_cents=product.price_cents,
                        amount_cents=line_cents,
                        product_id=product.id,
                    )
                )
                invoice.amount_cents = money.add(invoice.amount_cents, line_cents)

            if invoice.amount_cents <= 0:
                raise BillingError(ErrorKind.INVALID_AMOUNT, "Sale total must be greater than zero")

            self.db.add(invoice)
            self.db.flush()
        except BillingError:
            self.db.rollback()
            raise
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Failed to issue counter invoice: {e}")
            raise BillingError(ErrorKind.PERSISTENCE_FAILED, "Sale could not be saved") from e

        if not pay_now:
            try:
                self.db.commit()
            except SQLAlchemyError as e:
                self.db.rollback()
                logger.error(f"Failed to commit counter invoice: {e}")
                raise BillingError(ErrorKind.PERSISTENCE_FAILED, "Sale could not be saved") from e
            logger.info(f"Counter invoice {invoice.id} issued for {money.to_display(invoice.amount_cents)}")
            return CounterSale(invoice=invoice)

        # The invoice is only flushed; submit_payment commits both or rolls both back.
        result = PaymentService(self.db, clock=self.clock).submit_payment(
            PaymentRequest(
                family_id=family.id,
                amount_cents=invoice.amount_cents,
                target=InvoiceAllocationTarget(AllocationMode.MANUAL, {invoice.id: invoice.amount_cents}),
                method=payment_method,
                note=note,
            )
        )
        logger.info(f"Counter invoice {invoice.id} issued and paid by payment {result.payment_id}")
        return CounterSale(invoice=invoice, payment=result)
