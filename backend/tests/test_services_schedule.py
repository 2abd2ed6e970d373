from datetime import date
from uuid import uuid4

import pytest

from academy_billing.core.errors import InvalidPlanError, StateConflictError
from academy_billing.models.billing import CycleStatus, MembershipPlan, MembershipSubscription, SubscriptionStatus
from academy_billing.services.freeze import FreezeService
from academy_billing.services.schedule import ScheduleService, add_months, generate
from tests.factories import make_plan, make_subscription


def _unsaved_plan(**overrides) -> MembershipPlan:
    data = {
        "academy_id": uuid4(),
        "name": "Kids Judo",
        "base_price_cents": 10000,
        "cycle_length_months": 1,
        "total_installments": 12,
    }
    data.update(overrides)
    return MembershipPlan(**data)


def _unsaved_subscription(plan: MembershipPlan, **overrides) -> MembershipSubscription:
    data = {
        "academy_id": plan.academy_id,
        "contact_id": uuid4(),
        "plan_id": plan.id,
        "start_date": date(2024, 1, 31),
    }
    data.update(overrides)
    return MembershipSubscription(**data)


def test_add_months_clamps_to_month_end():
    assert add_months(date(2024, 1, 31), 1) == date(2024, 2, 29)
    assert add_months(date(2023, 1, 31), 1) == date(2023, 2, 28)
    assert add_months(date(2024, 3, 15), 12) == date(2025, 3, 15)


def test_generate_leap_year_schedule_from_month_end():
    plan = _unsaved_plan()
    subscription = _unsaved_subscription(plan)

    cycles = generate(subscription, plan, date(2024, 1, 31))

    assert len(cycles) == 12
    assert cycles[0].scheduled_date == date(2024, 1, 31)
    assert cycles[1].scheduled_date == date(2024, 2, 29)
    assert cycles[2].scheduled_date == date(2024, 3, 29)
    assert cycles[1].amount_cents == 10000
    assert cycles[2].amount_cents == 10000
    assert [c.installment_number for c in cycles] == list(range(1, 13))
    assert {c.total_installments for c in cycles} == {12}


def test_generate_amounts_sum_to_price_times_count():
    plan = _unsaved_plan(base_price_cents=7350, total_installments=9, cycle_length_months=2)
    subscription = _unsaved_subscription(plan)

    cycles = generate(subscription, plan, date(2024, 5, 10))

    assert sum(c.amount_cents for c in cycles) == 7350 * 9
    assert cycles[-1].scheduled_date == date(2025, 9, 10)


def test_renewal_discount_applies_after_commitment_and_rounds_down():
    plan = _unsaved_plan(base_price_cents=9999, commitment_installments=6)
    subscription = _unsaved_subscription(plan, renewal_discount_percentage=10)

    cycles = generate(subscription, plan, date(2024, 1, 1))

    assert [c.amount_cents for c in cycles[:6]] == [9999] * 6
    assert [c.amount_cents for c in cycles[6:]] == [8999] * 6


@pytest.mark.parametrize(
    "overrides",
    [
        {"cycle_length_months": 0},
        {"cycle_length_months": -1},
        {"base_price_cents": -1},
    ],
)
def test_generate_rejects_invalid_plan(overrides):
    plan = _unsaved_plan(**overrides)
    subscription = _unsaved_subscription(plan)

    with pytest.raises(InvalidPlanError):
        generate(subscription, plan, date(2024, 1, 1))


def test_create_plan_validates(db_session, academy):
    service = ScheduleService(db_session)
    with pytest.raises(InvalidPlanError):
        service.create_plan(academy.id, name="Broken", base_price_cents=100, cycle_length_months=0)

    plan = service.create_plan(academy.id, name="Monthly", base_price_cents=12000, total_installments=6)
    assert [p.id for p in service.list_plans(academy.id)] == [plan.id]


def test_create_subscription_persists_schedule(db_session, academy, contact):
    plan = make_plan(db_session, academy)

    subscription, cycles = make_subscription(db_session, academy, contact, plan, start=date(2024, 1, 31))

    assert subscription.status == "active"
    assert len(cycles) == 12
    assert cycles[2].scheduled_date == date(2024, 3, 29)
    assert all(c.status == CycleStatus.PENDING.value for c in cycles)


def test_open_recurring_plan_generates_next_cycle_on_demand(db_session, academy, contact):
    plan = make_plan(db_session, academy, total_installments=None, is_recurring=True)
    subscription, cycles = make_subscription(db_session, academy, contact, plan, start=date(2024, 1, 31))
    service = ScheduleService(db_session)

    assert len(cycles) == 1
    assert cycles[0].total_installments is None
    assert service.generate_next_cycle(subscription) is None

    cycles[0].status = CycleStatus.PAID.value
    db_session.add(cycles[0])
    db_session.commit()

    created = service.generate_next_cycle(subscription)
    db_session.commit()

    assert created.installment_number == 2
    assert created.scheduled_date == date(2024, 2, 29)
    assert created.total_installments is None
    # the new cycle is pending, so a repeat call is a no-op
    assert service.generate_next_cycle(subscription) is None


def test_renew_subscription_appends_discounted_term(db_session, academy, contact):
    plan = make_plan(db_session, academy, total_installments=3, commitment_installments=3)
    subscription, _ = make_subscription(
        db_session, academy, contact, plan, start=date(2024, 1, 15), renewal_discount_percentage=20
    )

    cycles = ScheduleService(db_session).renew_subscription(academy.id, subscription.id)

    assert [c.installment_number for c in cycles] == [1, 2, 3, 4, 5, 6]
    assert [c.amount_cents for c in cycles] == [10000, 10000, 10000, 8000, 8000, 8000]
    assert {c.total_installments for c in cycles} == {6}
    assert cycles[3].scheduled_date == date(2024, 4, 15)
    db_session.refresh(subscription)
    assert subscription.term_number == 2


def test_renew_rejects_open_recurring_plan(db_session, academy, contact):
    plan = make_plan(db_session, academy, total_installments=None)
    subscription, _ = make_subscription(db_session, academy, contact, plan)

    with pytest.raises(StateConflictError):
        ScheduleService(db_session).renew_subscription(academy.id, subscription.id)


def test_cancel_subscription_keeps_paid_cycles(db_session, academy, contact):
    plan = make_plan(db_session, academy, total_installments=4)
    subscription, cycles = make_subscription(db_session, academy, contact, plan)
    cycles[0].status = CycleStatus.PAID.value
    db_session.add(cycles[0])
    db_session.commit()

    affected = ScheduleService(db_session).cancel_subscription(academy.id, subscription.id)

    assert len(affected) == 3
    statuses = [c.status for c in ScheduleService(db_session).list_cycles(subscription.id)]
    assert statuses == ["paid", "cancelled", "cancelled", "cancelled"]
    db_session.refresh(subscription)
    assert subscription.status == "cancelled"


def test_term_end_follows_the_last_installment(db_session, academy, contact):
    plan = make_plan(db_session, academy)
    subscription, _ = make_subscription(db_session, academy, contact, plan, start=date(2024, 1, 1))

    assert ScheduleService(db_session).term_end(subscription, plan) == date(2025, 1, 1)


def test_term_end_renews_auto_renewal_memberships(db_session, academy, contact):
    plan = make_plan(db_session, academy, total_installments=3, commitment_installments=3)
    subscription, _ = make_subscription(
        db_session, academy, contact, plan, start=date(2024, 1, 1), auto_renewal=True, renewal_discount_percentage=10
    )
    service = ScheduleService(db_session)

    before = service.process_term_ends(date(2024, 3, 31))
    at_end = service.process_term_ends(date(2024, 4, 1))
    again = service.process_term_ends(date(2024, 4, 1))

    assert before == {"renewed": 0, "expired": 0, "failures": 0}
    assert at_end["renewed"] == 1
    assert again["renewed"] == 0
    cycles = service.list_cycles(subscription.id)
    assert [c.scheduled_date for c in cycles[3:]] == [date(2024, 4, 1), date(2024, 5, 1), date(2024, 6, 1)]
    assert [c.amount_cents for c in cycles[3:]] == [9000, 9000, 9000]
    db_session.refresh(subscription)
    assert subscription.term_number == 2
    assert subscription.status == SubscriptionStatus.ACTIVE.value


def test_term_end_expires_other_memberships(db_session, academy, contact):
    plan = make_plan(db_session, academy, total_installments=3)
    subscription, cycles = make_subscription(db_session, academy, contact, plan, start=date(2024, 1, 1))
    service = ScheduleService(db_session)

    counters = service.process_term_ends(date(2024, 4, 1))

    assert counters == {"renewed": 0, "expired": 1, "failures": 0}
    db_session.refresh(subscription)
    assert subscription.status == SubscriptionStatus.EXPIRED.value
    # unpaid installments stay owed
    assert [c.status for c in service.list_cycles(subscription.id)] == ["pending", "pending", "pending"]
    assert service.process_term_ends(date(2024, 5, 1))["expired"] == 0


def test_term_end_waits_for_an_active_freeze(db_session, academy, contact):
    plan = make_plan(db_session, academy, total_installments=3)
    subscription, _ = make_subscription(
        db_session, academy, contact, plan, start=date(2024, 1, 1), auto_renewal=True
    )
    FreezeService(db_session).apply_freeze(academy.id, subscription.id, start_date=date(2024, 3, 1))

    counters = ScheduleService(db_session).process_term_ends(date(2024, 4, 1))

    assert counters == {"renewed": 0, "expired": 0, "failures": 0}
    db_session.refresh(subscription)
    assert subscription.term_number == 1


def test_term_end_skips_open_recurring_plans(db_session, academy, contact):
    plan = make_plan(db_session, academy, total_installments=None)
    subscription, _ = make_subscription(db_session, academy, contact, plan, start=date(2024, 1, 1))

    counters = ScheduleService(db_session).process_term_ends(date(2025, 1, 1))

    assert counters["expired"] == counters["renewed"] == 0
    db_session.refresh(subscription)
    assert subscription.status == SubscriptionStatus.ACTIVE.value
