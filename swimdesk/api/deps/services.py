from datetime import datetime
from typing import Callable

from fastapi import Depends
from sqlalchemy.orm import Session

from swimdesk.core.db import get_db
from swimdesk.services.counter_service import CounterService
from swimdesk.services.payment_service import PaymentService
from swimdesk.services.summary_service import SummaryService


def get_clock() -> Callable[[], datetime]:
    """
    Clock shared by every billing service in a request.

    Overridden in tests to pin "now" for due dates and paid-through anchors.
    """
    return datetime.utcnow


def get_payment_service(
    db: Session = Depends(get_db),
    clock: Callable[[], datetime] = Depends(get_clock),
) -> PaymentService:
    return PaymentService(db, clock=clock)


def get_summary_service(
    db: Session = Depends(get_db),
    clock: Callable[[], datetime] = Depends(get_clock),
) -> SummaryService:
    return SummaryService(db, clock=clock)


def get_counter_service(
    db: Session = Depends(get_db),
    clock: Callable[[], datetime] = Depends(get_clock),
) -> CounterService:
    return CounterService(db, clock=clock)
