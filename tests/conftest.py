"""
Pytest fixtures for the billing test suite.

Every test gets its own in-memory SQLite database (StaticPool keeps the one
connection alive for the engine's lifetime) and a fixed, manually advanced
clock so due dates and paid-through anchors are deterministic.
"""
import os

os.environ.setdefault("ENV", "test")
os.environ.setdefault("DATABASE_URL", "sqlite://")

from datetime import date, datetime, timedelta
from typing import Optional

import pytest
from fastapi.testclient import TestClient

from swimdesk.core.db import DatabaseManager, get_db
from swimdesk.models import (
    Base,
    Enrolment,
    EnrolmentPlan,
    Family,
    Invoice,
    Product,
    Student,
)
from swimdesk.services.payment_service import PaymentService

NOW = datetime(2025, 3, 3, 9, 0, 0)


class FixedClock:
    """Callable clock that only moves when a test moves it."""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class BillingFactory:
    """Small builders for the rows the billing services read."""

    def __init__(self, db, clock: FixedClock):
        self.db = db
        self.clock = clock

    def family(self, name: str = "Nguyen Family") -> Family:
        family = Family(name=name)
        self.db.add(family)
        self.db.commit()
        return family

    def student(self, family: Family, name: str = "Mia") -> Student:
        student = Student(family_id=family.id, name=name)
        self.db.add(student)
        self.db.commit()
        return student

    def plan(
        self,
        billing_type: str = "PER_CLASS",
        price_cents: int = 15000,
        *,
        name: Optional[str] = None,
        level: Optional[str] = "Level 1",
        duration_weeks: Optional[int] = None,
        block_class_count: Optional[int] = None,
        is_active: bool = True,
    ) -> EnrolmentPlan:
        if billing_type == "PER_CLASS" and block_class_count is None:
            block_class_count = 10
        if billing_type == "PER_WEEK" and duration_weeks is None:
            duration_weeks = 4
        plan = EnrolmentPlan(
            name=name or f"{level} {billing_type.lower()}",
            level=level,
            billing_type=billing_type,
            price_cents=price_cents,
            duration_weeks=duration_weeks,
            block_class_count=block_class_count,
            is_active=is_active,
        )
        self.db.add(plan)
        self.db.commit()
        return plan

    def enrolment(
        self,
        student: Student,
        plan: EnrolmentPlan,
        *,
        start_date: date = date(2025, 1, 6),
        end_date: Optional[date] = None,
        credits_remaining: int = 0,
        paid_through_date: Optional[date] = None,
        status: str = "ACTIVE",
    ) -> Enrolment:
        enrolment = Enrolment(
            student_id=student.id,
            plan_id=plan.id,
            status=status,
            start_date=start_date,
            end_date=end_date,
            credits_remaining=credits_remaining,
            paid_through_date=paid_through_date,
        )
        self.db.add(enrolment)
        self.db.commit()
        return enrolment

    def invoice(
        self,
        family: Family,
        amount_cents: int,
        *,
        paid_cents: int = 0,
        status: Optional[str] = None,
        issued_at: Optional[datetime] = None,
        due_at: Optional[datetime] = None,
        enrolment: Optional[Enrolment] = None,
        source: str = "BILLING_PERIOD",
    ) -> Invoice:
        if status is None:
            if paid_cents >= amount_cents:
                status = "PAID"
            elif paid_cents > 0:
                status = "PARTIALLY_PAID"
            else:
                status = "OPEN"
        invoice = Invoice(
            family_id=family.id,
            enrolment_id=enrolment.id if enrolment else None,
            source=source,
            amount_cents=amount_cents,
            amount_paid_cents=paid_cents,
            status=status,
            issued_at=issued_at or self.clock.now - timedelta(days=7),
            due_at=due_at,
        )
        self.db.add(invoice)
        self.db.commit()
        return invoice

    def product(self, name: str = "Swim cap", price_cents: int = 1200, is_active: bool = True) -> Product:
        product = Product(name=name, price_cents=price_cents, is_active=is_active)
        self.db.add(product)
        self.db.commit()
        return product


@pytest.fixture
def database():
    manager = DatabaseManager("sqlite://")
    manager.initialize()
    Base.metadata.create_all(bind=manager.engine)
    yield manager
    manager.close()


@pytest.fixture
def db(database):
    session = database.SessionLocal()
    yield session
    session.close()


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def factory(db, clock):
    return BillingFactory(db, clock)


@pytest.fixture
def payments(db, clock):
    return PaymentService(db, clock=clock)


@pytest.fixture
def client(db, clock):
    from swimdesk.api.deps.services import get_clock
    from swimdesk.main import app

    def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_clock] = lambda: clock
    # Not used as a context manager: the lifespan would create tables on the app's own engine
    test_client = TestClient(app, raise_server_exceptions=False)
    yield test_client
    app.dependency_overrides.clear()
