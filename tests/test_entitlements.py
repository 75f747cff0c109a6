"""Tests for the entitlement projector."""
import uuid
from datetime import date

import pytest

from swimdesk.billing.entitlements import (
    BillingType,
    EnrolmentEntitlement,
    EntitlementDelta,
    EntitlementField,
    PlanTerms,
    apply_delta,
    merge_deltas,
    project_purchase,
    quantity_from_amount,
    weekly_anchor,
)
from swimdesk.billing.errors import BillingError, ErrorKind

PER_CLASS = PlanTerms(BillingType.PER_CLASS, price_cents=15000, block_class_count=10)
PER_WEEK = PlanTerms(BillingType.PER_WEEK, price_cents=8000, duration_weeks=4)


def enrolment(plan, **kwargs):
    kwargs.setdefault("start_date", date(2023, 12, 1))
    return EnrolmentEntitlement(id=uuid.uuid4(), plan=plan, **kwargs)


class TestPerClass:

    def test_block_purchase_adds_credits(self):
        e = enrolment(PER_CLASS, credits_remaining=2)
        projection = project_purchase(e, 1, date(2024, 1, 1))
        assert projection.delta == EntitlementDelta(e.id, EntitlementField.CREDITS_REMAINING, 2, 12)
        assert projection.credits_granted == 10
        assert projection.fully_applied

    def test_missing_block_count_is_invalid(self):
        e = enrolment(PlanTerms(BillingType.PER_CLASS, price_cents=15000))
        with pytest.raises(BillingError) as exc:
            project_purchase(e, 1, date(2024, 1, 1))
        assert exc.value.kind == ErrorKind.INVALID_TARGET


class TestPerWeek:

    def test_clips_to_end_date(self):
        e = enrolment(PER_WEEK, paid_through_date=date(2024, 1, 1), end_date=date(2024, 1, 20))
        projection = project_purchase(e, 2, date(2023, 12, 20))
        assert projection.delta.new_value == date(2024, 1, 20)
        assert projection.delta.previous_value == date(2024, 1, 1)
        assert projection.quantity_applied == 1
        assert not projection.fully_applied

    def test_advances_whole_periods(self):
        e = enrolment(PER_WEEK, paid_through_date=date(2024, 1, 1))
        projection = project_purchase(e, 3, date(2023, 12, 20))
        assert projection.delta.new_value == date(2024, 3, 25)
        assert projection.coverage_start == date(2024, 1, 1)
        assert projection.quantity_applied == 3

    def test_never_covers_past_gap(self):
        e = enrolment(PER_WEEK, paid_through_date=date(2024, 1, 1))
        projection = project_purchase(e, 1, date(2024, 2, 5))
        assert projection.coverage_start == date(2024, 2, 5)
        assert projection.delta.new_value == date(2024, 3, 4)

    def test_latest_invoice_coverage_moves_the_anchor(self):
        e = enrolment(PER_WEEK, paid_through_date=date(2024, 1, 1))
        assert weekly_anchor(e, date(2023, 12, 20), date(2024, 1, 15)) == date(2024, 1, 15)

    def test_nothing_fits_after_end_date(self):
        e = enrolment(PER_WEEK, paid_through_date=date(2024, 1, 20), end_date=date(2024, 1, 20))
        projection = project_purchase(e, 1, date(2024, 1, 2))
        assert projection.delta is None
        assert projection.quantity_applied == 0

    def test_alternate_weekly_tier(self):
        e = enrolment(PER_WEEK, paid_through_date=date(2024, 1, 1))
        two_week = PlanTerms(BillingType.PER_WEEK, price_cents=4500, duration_weeks=2)
        projection = project_purchase(e, 1, date(2023, 12, 20), plan=two_week)
        assert projection.delta.new_value == date(2024, 1, 15)


class TestQuantity:

    def test_whole_blocks(self):
        assert quantity_from_amount(45000, 15000) == 3

    @pytest.mark.parametrize("amount", [14999, 15001, 0])
    def test_partial_blocks_rejected(self, amount):
        with pytest.raises(BillingError) as exc:
            quantity_from_amount(amount, 15000)
        assert exc.value.kind == ErrorKind.NON_INTEGER_QUANTITY

    @pytest.mark.parametrize("quantity", [0, -1, 1.5, True])
    def test_projector_rejects_bad_quantity(self, quantity):
        with pytest.raises(BillingError):
            project_purchase(enrolment(PER_CLASS), quantity, date(2024, 1, 1))


class TestDeltas:

    def test_merge_keeps_first_previous_and_last_new(self):
        eid = uuid.uuid4()
        first = EntitlementDelta(eid, EntitlementField.CREDITS_REMAINING, 2, 12)
        second = EntitlementDelta(eid, EntitlementField.CREDITS_REMAINING, 12, 22)
        assert merge_deltas(first, second) == EntitlementDelta(eid, EntitlementField.CREDITS_REMAINING, 2, 22)
        assert merge_deltas(None, second) is second

    def test_apply_delta(self):
        e = enrolment(PER_CLASS, credits_remaining=2)
        delta = EntitlementDelta(e.id, EntitlementField.CREDITS_REMAINING, 2, 12)
        assert apply_delta(e, delta).credits_remaining == 12
