# swimdesk/billing/errors.py - Error kinds raised by the billing core
import enum
from typing import Optional
from uuid import UUID


class ErrorKind(str, enum.Enum):
    INVALID_AMOUNT = "InvalidAmount"
    ALLOCATION_MISMATCH = "AllocationMismatch"
    ALLOCATION_EXCEEDS_BALANCE = "AllocationExceedsBalance"
    AMOUNT_MISMATCH = "AmountMismatch"
    NON_INTEGER_QUANTITY = "NonIntegerQuantity"
    ALREADY_UNDONE = "AlreadyUndone"
    PERSISTENCE_FAILED = "PersistenceFailed"
    NOT_FOUND = "NotFound"
    INVALID_TARGET = "InvalidTarget"


class BillingError(Exception):
    """Raised by the billing core; ``kind`` drives the user-facing message."""

    def __init__(self, kind: ErrorKind, message: str, *, invoice_id: Optional[UUID] = None):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.invoice_id = invoice_id

    def __repr__(self) -> str:
        return f"BillingError({self.kind.value}, {self.message!r})"
