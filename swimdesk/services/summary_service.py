# swimdesk/services/summary_service.py - Read-only family billing summary
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from swimdesk.billing.errors import BillingError, ErrorKind
from swimdesk.billing.ledger import InvoiceState, refresh_status
from swimdesk.billing.summary import BillingPosition, build_position
from swimdesk.models import Enrolment, Family, Invoice, Payment, Student

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FamilyBillingSummary:
    family: Family
    position: BillingPosition
    students: List[Student]
    enrolments: List[Enrolment]
    invoices: List[Invoice]
    payments: List[Payment]

    @property
    def open_invoice_rows(self) -> List[Invoice]:
        by_id = {inv.id: inv for inv in self.invoices}
        return [by_id[state.id] for state in self.position.open_invoices]

    @property
    def next_due_invoice_row(self) -> Optional[Invoice]:
        state = self.position.next_due_invoice
        if state is None:
            return None
        return next(inv for inv in self.invoices if inv.id == state.id)


class SummaryService:
    """Builds the billing screen for one family, fresh on every call"""

    def __init__(self, db: Session, clock: Callable[[], datetime] = datetime.utcnow):
        self.db = db
        self.clock = clock

    def get_family_billing_summary(self, family_id: UUID) -> FamilyBillingSummary:
        family = self.db.get(Family, family_id)
        if family is None:
            raise BillingError(ErrorKind.NOT_FOUND, "Family not found")
        now = self.clock()

        students = list(
            self.db.execute(
                select(Student)
                .where(Student.family_id == family_id)
                .options(selectinload(Student.enrolments).selectinload(Enrolment.plan))
                .order_by(Student.name)
            ).scalars().all()
        )
        enrolments = [e for s in students for e in s.enrolments]

        invoices = list(
            self.db.execute(
                select(Invoice)
                .where(Invoice.family_id == family_id)
                .order_by(Invoice.issued_at.desc())
            ).scalars().all()
        )
        payments = list(
            self.db.execute(
                select(Payment)
                .where(Payment.family_id == family_id)
                .options(selectinload(Payment.allocations))
                .order_by(Payment.paid_at.desc())
            ).scalars().all()
        )

        states: List[InvoiceState] = [refresh_status(inv.to_state(), now) for inv in invoices]
        position = build_position(states, [e.to_entitlement() for e in enrolments])
        logger.debug(
            f"Billing summary for family {family_id}: {len(position.open_invoices)} open invoice(s), "
            f"{position.outstanding_cents} cents outstanding"
        )
        return FamilyBillingSummary(
            family=family,
            position=position,
            students=students,
            enrolments=enrolments,
            invoices=invoices,
            payments=payments,
        )
