# swimdesk/billing/__init__.py - Pure billing core (no database access)
from swimdesk.billing.errors import BillingError, ErrorKind
from swimdesk.billing.ledger import InvoiceState, InvoiceStatus
from swimdesk.billing.allocation import (
    AllocationMode,
    AllocationPlan,
    EnrolmentPurchaseTarget,
    InvoiceAllocationTarget,
    PaymentTarget,
)
from swimdesk.billing.entitlements import (
    BillingType,
    EnrolmentEntitlement,
    EntitlementDelta,
    EntitlementField,
    PlanTerms,
    Projection,
)

__all__ = [
    "BillingError",
    "ErrorKind",
    "InvoiceState",
    "InvoiceStatus",
    "AllocationMode",
    "AllocationPlan",
    "EnrolmentPurchaseTarget",
    "InvoiceAllocationTarget",
    "PaymentTarget",
    "BillingType",
    "EnrolmentEntitlement",
    "EntitlementDelta",
    "EntitlementField",
    "PlanTerms",
    "Projection",
]
