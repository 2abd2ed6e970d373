from datetime import date

import pytest

from academy_billing.core.config import settings
from academy_billing.services.billing_scheduler import run_billing_scheduler
from academy_billing.services.charges import ChargeService
from academy_billing.services.freeze import FreezeService
from tests.factories import RecordingNotifier, make_payment_method, make_plan, make_subscription


def _subscribe(db_session, academy, contact):
    plan = make_plan(db_session, academy)
    subscription, _ = make_subscription(db_session, academy, contact, plan, start=date(2024, 1, 1))
    make_payment_method(db_session, contact)
    return subscription


def test_billing_pass_charges_and_reminds(db_session, academy, contact, fake_gateway):
    _subscribe(db_session, academy, contact)
    notifier = RecordingNotifier()

    summary = run_billing_scheduler(db_session, date(2024, 1, 30), gateway=fake_gateway, notifier=notifier)

    assert summary["date"] == "2024-01-30"
    assert summary["freezes_expired"] == 0
    assert summary["charges"]["succeeded"] == 1
    assert summary["dunning"]["overdue_sent"] == 0
    assert summary["dunning"]["upcoming_sent"] == 1
    assert [item["kind"] for item in notifier.sent] == ["upcoming"]


def test_billing_pass_expires_freezes_before_charging(db_session, academy, contact, fake_gateway):
    subscription = _subscribe(db_session, academy, contact)
    FreezeService(db_session).apply_freeze(
        academy.id, subscription.id, start_date=date(2024, 1, 1), end_date=date(2024, 1, 15)
    )

    summary = run_billing_scheduler(db_session, date(2024, 1, 20), gateway=fake_gateway, notifier=RecordingNotifier())

    assert summary["freezes_expired"] == 1
    # the January cycle was skipped by the freeze, nothing else is due yet
    assert summary["charges"]["attempted"] == 0


def test_failing_step_does_not_stop_the_pass(db_session, academy, contact, fake_gateway, monkeypatch):
    _subscribe(db_session, academy, contact)

    def broken(self, today, academy_id=None):
        raise RuntimeError("provider outage")

    monkeypatch.setattr(ChargeService, "charge_due_cycles", broken)

    summary = run_billing_scheduler(db_session, date(2024, 1, 30), gateway=fake_gateway, notifier=RecordingNotifier())

    assert "charges" not in summary
    assert summary["dunning"]["overdue_marked"] == 1


@pytest.fixture()
def dunning_windows(monkeypatch):
    monkeypatch.setattr(settings, "dunning_grace_days", 0)
    monkeypatch.setattr(settings, "dunning_lead_days", 3)


def test_authentication_request_is_sent_once_and_not_recharged(
    db_session, academy, contact, fake_gateway, dunning_windows
):
    _subscribe(db_session, academy, contact)
    fake_gateway.outcomes = ["requires_action"]
    notifier = RecordingNotifier()

    first = run_billing_scheduler(db_session, date(2024, 1, 15), gateway=fake_gateway, notifier=notifier)
    second = run_billing_scheduler(db_session, date(2024, 1, 16), gateway=fake_gateway, notifier=notifier)

    assert first["charges"]["requires_action"] == 1
    assert first["dunning"]["action_required_sent"] == 1
    assert first["dunning"]["overdue_sent"] == 0
    assert second["charges"]["awaiting_action"] == 1
    assert second["dunning"]["action_required_sent"] == 0
    assert len(fake_gateway.charges) == 1
    assert [item["kind"] for item in notifier.sent] == ["action_required"]


def test_billing_pass_processes_term_ends(db_session, academy, contact, fake_gateway, dunning_windows):
    plan = make_plan(db_session, academy, total_installments=2)
    make_subscription(db_session, academy, contact, plan, start=date(2024, 1, 1))
    make_payment_method(db_session, contact)

    summary = run_billing_scheduler(db_session, date(2024, 3, 1), gateway=fake_gateway, notifier=RecordingNotifier())

    assert summary["charges"]["succeeded"] == 2
    assert summary["term_ends"] == {"renewed": 0, "expired": 1, "failures": 0}
    assert summary["payments_synced"]["checked"] == 0
