# swimdesk/models/__init__.py - Import all models so SQLAlchemy can discover them

from swimdesk.models.base import Base

from swimdesk.models.family import Family, Student
from swimdesk.models.enrolment import Enrolment, EnrolmentPlan
from swimdesk.models.product import Product
from swimdesk.models.payment import (
    Invoice,
    InvoiceLineItem,
    Payment,
    PaymentAllocation,
    EntitlementChange,
)

__all__ = [
    "Base",
    "Family",
    "Student",
    "Enrolment",
    "EnrolmentPlan",
    "Product",
    "Invoice",
    "InvoiceLineItem",
    "Payment",
    "PaymentAllocation",
    "EntitlementChange",
]
