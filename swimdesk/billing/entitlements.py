# swimdesk/billing/entitlements.py - Turn purchases into credits or paid-through dates
"""
Entitlement projector.

A purchase of N units either adds class credits (PER_CLASS) or pushes the
paid-through date forward by whole plan periods (PER_WEEK). Every
projection returns an ``EntitlementDelta`` holding the value before and
after, which is what Undo restores; the projector itself is never run
backwards.
"""
from __future__ import annotations

import enum
from dataclasses import dataclass, replace
from datetime import date, timedelta
from typing import Optional, Union
from uuid import UUID

from swimdesk.billing.errors import BillingError, ErrorKind


class BillingType(str, enum.Enum):
    PER_CLASS = "PER_CLASS"
    PER_WEEK = "PER_WEEK"


class EntitlementField(str, enum.Enum):
    CREDITS_REMAINING = "credits_remaining"
    PAID_THROUGH_DATE = "paid_through_date"


@dataclass(frozen=True)
class PlanTerms:
    billing_type: BillingType
    price_cents: int
    duration_weeks: Optional[int] = None
    block_class_count: Optional[int] = None


@dataclass(frozen=True)
class EnrolmentEntitlement:
    id: UUID
    plan: PlanTerms
    start_date: date
    end_date: Optional[date] = None
    credits_remaining: int = 0
    paid_through_date: Optional[date] = None


@dataclass(frozen=True)
class EntitlementDelta:
    enrolment_id: UUID
    field: EntitlementField
    previous_value: Union[int, date, None]
    new_value: Union[int, date, None]


@dataclass(frozen=True)
class Projection:
    delta: Optional[EntitlementDelta]
    quantity_requested: int
    quantity_applied: int
    credits_granted: int = 0
    coverage_start: Optional[date] = None
    coverage_end: Optional[date] = None

    @property
    def fully_applied(self) -> bool:
        return self.quantity_applied == self.quantity_requested


def quantity_from_amount(amount_cents: int, unit_price_cents: int) -> int:
    """Number of whole units an amount buys; partial units are refused."""
    if unit_price_cents <= 0:
        raise BillingError(ErrorKind.NON_INTEGER_QUANTITY, "Plan price must be positive to derive a quantity")
    quantity, remainder = divmod(amount_cents, unit_price_cents)
    if remainder or quantity <= 0:
        raise BillingError(
            ErrorKind.NON_INTEGER_QUANTITY,
            f"{amount_cents} cents is not a whole number of {unit_price_cents}-cent units",
        )
    return quantity


def weekly_anchor(
    enrolment: EnrolmentEntitlement,
    today: date,
    latest_coverage_end: Optional[date] = None,
) -> date:
    """First day new weekly coverage may start from."""
    candidates = [enrolment.start_date, today, enrolment.paid_through_date, latest_coverage_end]
    return max(d for d in candidates if d is not None)


def project_purchase(
    enrolment: EnrolmentEntitlement,
    quantity: int,
    today: date,
    *,
    plan: Optional[PlanTerms] = None,
    latest_coverage_end: Optional[date] = None,
) -> Projection:
    """
    Project ``quantity`` purchased units onto the enrolment.

    Args:
        enrolment: current entitlement state
        quantity: units bought (blocks or weekly periods)
        today: clock supplied by the caller
        plan: pricing tier to use instead of the enrolment's own plan
        latest_coverage_end: end of the newest paid invoice coverage, if any

    Returns:
        Projection with the delta to persist; ``delta`` is None when
        nothing could be added.
    """
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        raise BillingError(ErrorKind.INVALID_AMOUNT, "Quantity must be a positive whole number")
    plan = plan or enrolment.plan
    if plan.billing_type == BillingType.PER_CLASS:
        return _project_credits(enrolment, plan, quantity)
    return _project_weeks(enrolment, plan, quantity, today, latest_coverage_end)


def _project_credits(enrolment: EnrolmentEntitlement, plan: PlanTerms, quantity: int) -> Projection:
    if not plan.block_class_count or plan.block_class_count <= 0:
        raise BillingError(ErrorKind.INVALID_TARGET, "Plan is missing its block class count")
    previous = enrolment.credits_remaining or 0
    granted = plan.block_class_count * quantity
    delta = EntitlementDelta(enrolment.id, EntitlementField.CREDITS_REMAINING, previous, previous + granted)
    return Projection(delta, quantity, quantity, credits_granted=granted)


def _project_weeks(
    enrolment: EnrolmentEntitlement,
    plan: PlanTerms,
    quantity: int,
    today: date,
    latest_coverage_end: Optional[date],
) -> Projection:
    if not plan.duration_weeks or plan.duration_weeks <= 0:
        raise BillingError(ErrorKind.INVALID_TARGET, "Weekly plans require a duration in weeks")

    start = weekly_anchor(enrolment, today, latest_coverage_end)
    period = timedelta(weeks=plan.duration_weeks)
    end_date = enrolment.end_date
    cursor = start
    applied = 0
    while applied < quantity:
        if end_date is not None and cursor >= end_date:
            break
        cursor = cursor + period
        applied += 1
        if end_date is not None and cursor > end_date:
            cursor = end_date
            break

    if applied == 0:
        return Projection(None, quantity, 0)
    delta = EntitlementDelta(
        enrolment.id,
        EntitlementField.PAID_THROUGH_DATE,
        enrolment.paid_through_date,
        cursor,
    )
    return Projection(delta, quantity, applied, coverage_start=start, coverage_end=cursor)


def apply_delta(enrolment: EnrolmentEntitlement, delta: EntitlementDelta) -> EnrolmentEntitlement:
    if delta.field == EntitlementField.CREDITS_REMAINING:
        return replace(enrolment, credits_remaining=delta.new_value)
    return replace(enrolment, paid_through_date=delta.new_value)


def merge_deltas(first: Optional[EntitlementDelta], second: Optional[EntitlementDelta]) -> Optional[EntitlementDelta]:
    """Collapse two successive changes to one enrolment into a single delta."""
    if first is None:
        return second
    if second is None:
        return first
    if first.enrolment_id != second.enrolment_id or first.field != second.field:
        raise ValueError("Cannot merge deltas for different enrolments or fields")
    return replace(first, new_value=second.new_value)
