from datetime import date
from uuid import uuid4

import pytest
from sqlmodel import select

from academy_billing.core.errors import ProviderTimeoutError
from academy_billing.models.audit import AuditLog
from academy_billing.models.billing import CycleStatus, SubscriptionStatus
from academy_billing.models.payment import Payment, ProviderEvent
from academy_billing.services.charges import ChargeService
from academy_billing.services.reconciler import (
    CycleView,
    DisputeOpened,
    EventReconciler,
    Ignored,
    PaymentFailed,
    PaymentSucceeded,
    Snapshot,
    SubscriptionCancelled,
    SubscriptionUpdated,
    decode_event,
    plan_transition,
)
from academy_billing.services.schedule import ScheduleService
from tests.factories import make_payment_method, make_plan, make_subscription

TODAY = date(2024, 2, 1)


def envelope(event_type: str, obj: dict, event_id: str | None = None) -> dict:
    return {"id": event_id or f"evt_{uuid4().hex[:12]}", "type": event_type, "data": {"object": obj}}


def _cycle_view(status="pending", scheduled=date(2024, 1, 1)):
    return CycleView(uuid4(), status, scheduled, 10000)


@pytest.fixture()
def billed(db_session, academy, contact):
    plan = make_plan(db_session, academy)
    subscription, cycles = make_subscription(db_session, academy, contact, plan, start=date(2024, 1, 1))
    make_payment_method(db_session, contact)
    return subscription, cycles


# ----------------------------------------------------------------------
# Pure transition
# ----------------------------------------------------------------------
def test_processed_event_is_a_duplicate():
    snapshot = Snapshot(today=TODAY, already_processed=True, payment_status="processing")

    assert plan_transition(snapshot, PaymentSucceeded("evt_1", "pi_1", 10000)).outcome == "duplicate"


def test_success_pays_a_chargeable_cycle():
    snapshot = Snapshot(today=TODAY, payment_status="processing", cycle=_cycle_view(), academy_known=True)

    transition = plan_transition(snapshot, PaymentSucceeded("evt_1", "pi_1", 10000))

    assert transition.outcome == "applied"
    assert transition.payment_status == "succeeded"
    assert transition.cycle_status == "paid"


def test_success_on_settled_payment_changes_nothing():
    snapshot = Snapshot(today=TODAY, payment_status="succeeded", cycle=_cycle_view("paid"), academy_known=True)

    assert plan_transition(snapshot, PaymentSucceeded("evt_2", "pi_1", 10000)).outcome == "duplicate"


def test_failure_on_past_cycle_marks_overdue_and_counts_retry():
    snapshot = Snapshot(today=TODAY, payment_status="processing", cycle=_cycle_view(), academy_known=True)

    transition = plan_transition(snapshot, PaymentFailed("evt_1", "pi_1", 10000, failure_code="card_declined"))

    assert transition.payment_status == "failed"
    assert transition.cycle_status == "overdue"
    assert transition.bump_retry


def test_failure_after_success_is_ignored():
    snapshot = Snapshot(today=TODAY, payment_status="succeeded", cycle=_cycle_view("paid"), academy_known=True)

    assert plan_transition(snapshot, PaymentFailed("evt_3", "pi_1", 10000)).outcome == "ignored"


def test_unknown_charge_is_unmatched():
    transition = plan_transition(Snapshot(today=TODAY), PaymentSucceeded("evt_1", "pi_unknown", 500))

    assert transition.outcome == "unmatched"


@pytest.mark.parametrize(
    ("current", "provider_status", "outcome", "target"),
    [
        ("active", "canceled", "applied", "cancelled"),
        ("active", "past_due", "duplicate", None),
        ("active", "incomplete", "ignored", None),
        ("cancelled", "active", "ignored", None),
    ],
)
def test_subscription_update_mirrors_provider_status(current, provider_status, outcome, target):
    snapshot = Snapshot(today=TODAY, subscription_status=current, academy_known=True)

    transition = plan_transition(snapshot, SubscriptionUpdated("evt_1", "sub_1", provider_status))

    assert transition.outcome == outcome
    assert transition.subscription_status == target


def test_ignored_variant_is_ignored():
    assert plan_transition(Snapshot(today=TODAY), Ignored("evt_1", "customer.created", "x")).outcome == "ignored"


# ----------------------------------------------------------------------
# Decoding
# ----------------------------------------------------------------------
def test_decode_payment_intent_succeeded():
    event = decode_event(
        envelope(
            "payment_intent.succeeded",
            {"id": "pi_1", "amount": 10000, "amount_received": 10000, "currency": "usd", "metadata": {"payment_id": "x"}},
            event_id="evt_ok",
        )
    )

    assert event == PaymentSucceeded(
        event_id="evt_ok", charge_id="pi_1", amount_cents=10000, currency="usd", metadata={"payment_id": "x"}
    )


def test_decode_invoice_failure_carries_subscription():
    event = decode_event(
        envelope(
            "invoice.payment_failed",
            {
                "id": "in_1",
                "payment_intent": "pi_9",
                "amount_due": 8000,
                "subscription": "sub_1",
                "last_payment_error": {"code": "card_declined", "decline_code": "insufficient_funds"},
            },
        )
    )

    assert isinstance(event, PaymentFailed)
    assert event.charge_id == "pi_9"
    assert event.amount_cents == 8000
    assert event.provider_subscription_id == "sub_1"
    assert event.failure_code == "insufficient_funds"


def test_decode_subscription_and_dispute_events():
    cancelled = decode_event(envelope("customer.subscription.deleted", {"id": "sub_1"}))
    dispute = decode_event(envelope("charge.dispute.created", {"charge": "ch_1", "payment_intent": "pi_1", "reason": "fraudulent"}))

    assert isinstance(cancelled, SubscriptionCancelled)
    assert cancelled.provider_subscription_id == "sub_1"
    assert isinstance(dispute, DisputeOpened)
    assert dispute.charge_id == "pi_1"


@pytest.mark.parametrize(
    "payload",
    [
        ["not", "an", "object"],
        {"id": "evt_1", "type": "payment_intent.succeeded"},
        {"id": "evt_1", "type": "customer.created", "data": {"object": {"id": "cus_1"}}},
        {"id": "evt_1", "type": "customer.subscription.deleted", "data": {"object": {}}},
    ],
)
def test_decode_unrecognised_payloads_as_ignored(payload):
    assert isinstance(decode_event(payload), Ignored)


# ----------------------------------------------------------------------
# Persistence
# ----------------------------------------------------------------------
def test_redelivered_success_for_known_charge_keeps_one_payment(db_session, academy, billed, fake_gateway):
    _, cycles = billed
    result = ChargeService(db_session, fake_gateway).charge_cycle(academy.id, cycles[0].id)
    charge_id = db_session.get(Payment, result.payment_id).provider_charge_id
    event = decode_event(envelope("payment_intent.succeeded", {"id": charge_id, "amount": 10000}))

    outcome = EventReconciler(db_session).handle(event, today=TODAY)

    assert outcome == "duplicate"
    payments = db_session.exec(select(Payment).where(Payment.provider_charge_id == charge_id)).all()
    assert len(payments) == 1
    db_session.refresh(cycles[0])
    assert cycles[0].status == CycleStatus.PAID.value


def test_success_settles_a_processing_payment(db_session, academy, billed, fake_gateway):
    _, cycles = billed
    fake_gateway.outcomes = [ProviderTimeoutError()]
    result = ChargeService(db_session, fake_gateway).charge_cycle(academy.id, cycles[0].id)
    event = decode_event(
        envelope(
            "payment_intent.succeeded",
            {"id": "pi_late", "amount": 10000, "metadata": {"payment_id": str(result.payment_id)}},
        )
    )

    assert EventReconciler(db_session).handle(event, today=TODAY) == "applied"

    payment = db_session.get(Payment, result.payment_id)
    assert payment.status == "succeeded"
    assert payment.provider_charge_id == "pi_late"
    db_session.refresh(cycles[0])
    assert cycles[0].status == CycleStatus.PAID.value


def test_failure_marks_cycle_overdue_once_per_event(db_session, academy, billed, fake_gateway):
    _, cycles = billed
    fake_gateway.outcomes = [ProviderTimeoutError()]
    result = ChargeService(db_session, fake_gateway).charge_cycle(academy.id, cycles[0].id)
    payload = envelope(
        "payment_intent.payment_failed",
        {
            "id": "pi_failed",
            "amount": 10000,
            "metadata": {"payment_id": str(result.payment_id)},
            "last_payment_error": {"code": "card_declined", "message": "Your card was declined."},
        },
        event_id="evt_failed_1",
    )
    reconciler = EventReconciler(db_session)

    first = reconciler.handle(decode_event(payload), today=TODAY)
    second = reconciler.handle(decode_event(payload), today=TODAY)

    assert (first, second) == ("applied", "duplicate")
    db_session.refresh(cycles[0])
    assert cycles[0].status == CycleStatus.OVERDUE.value
    assert cycles[0].retry_count == 1
    assert cycles[0].failure_reason == "Your card was declined."
    assert db_session.get(Payment, result.payment_id).status == "failed"
    events = db_session.exec(select(ProviderEvent).where(ProviderEvent.event_id == "evt_failed_1")).all()
    assert len(events) == 1


def test_provider_invoice_is_matched_to_the_next_due_cycle(db_session, academy, billed, fake_gateway):
    subscription, cycles = billed
    started = ChargeService(db_session, fake_gateway).start_provider_subscription(academy.id, subscription.id)
    event = decode_event(
        envelope(
            "invoice.paid",
            {"id": "in_1", "payment_intent": "pi_inv_1", "amount_paid": 10000, "subscription": started.provider_subscription_id},
        )
    )

    assert EventReconciler(db_session).handle(event, today=TODAY) == "applied"

    payment = db_session.exec(select(Payment).where(Payment.provider_charge_id == "pi_inv_1")).one()
    assert payment.billing_cycle_id == cycles[0].id
    assert payment.academy_id == academy.id
    db_session.refresh(cycles[0])
    assert cycles[0].status == CycleStatus.PAID.value


def test_provider_cancellation_cancels_future_cycles(db_session, academy, billed, fake_gateway):
    subscription, _ = billed
    started = ChargeService(db_session, fake_gateway).start_provider_subscription(academy.id, subscription.id)
    event = decode_event(envelope("customer.subscription.deleted", {"id": started.provider_subscription_id}))

    assert EventReconciler(db_session).handle(event, today=date(2024, 3, 15)) == "applied"

    db_session.refresh(subscription)
    assert subscription.status == SubscriptionStatus.CANCELLED.value
    statuses = [c.status for c in ScheduleService(db_session).list_cycles(subscription.id)]
    assert statuses[:3] == ["pending"] * 3
    assert statuses[3:] == ["cancelled"] * 9


def test_dispute_flags_payment_and_writes_audit(db_session, academy, billed, fake_gateway):
    _, cycles = billed
    result = ChargeService(db_session, fake_gateway).charge_cycle(academy.id, cycles[0].id)
    charge_id = db_session.get(Payment, result.payment_id).provider_charge_id
    event = decode_event(envelope("charge.dispute.created", {"charge": "ch_1", "payment_intent": charge_id, "reason": "fraudulent"}))

    assert EventReconciler(db_session).handle(event, today=TODAY) == "applied"

    assert db_session.get(Payment, result.payment_id).status == "disputed"
    audits = db_session.exec(select(AuditLog).where(AuditLog.event_type == "payment_disputed")).all()
    assert len(audits) == 1
    assert audits[0].details["reason"] == "fraudulent"


def test_unknown_and_ignored_events_are_recorded(db_session):
    reconciler = EventReconciler(db_session)

    unmatched = reconciler.handle(
        decode_event(envelope("payment_intent.succeeded", {"id": "pi_nowhere", "amount": 100}, event_id="evt_u")),
        today=TODAY,
    )
    ignored = reconciler.handle(
        decode_event(envelope("customer.created", {"id": "cus_1"}, event_id="evt_i")), today=TODAY
    )

    assert (unmatched, ignored) == ("unmatched", "ignored")
    recorded = {e.event_id: e.outcome for e in db_session.exec(select(ProviderEvent)).all()}
    assert recorded == {"evt_u": "unmatched", "evt_i": "ignored"}
    assert db_session.exec(select(Payment)).all() == []
