from datetime import date
from uuid import uuid4

import pytest

from academy_billing.models.billing import BillingCycle
from academy_billing.services import notification as notification_module
from academy_billing.services.notification import ReminderNotifier, format_amount
from academy_billing.utils.email_validation import EmailValidationError, normalize_email
from tests.factories import make_contact, make_plan


class FakeSMTP:
    instances: list["FakeSMTP"] = []

    def __init__(self, host, port, timeout=None):
        self.host = host
        self.port = port
        self.started_tls = False
        self.logged_in = None
        self.messages = []
        FakeSMTP.instances.append(self)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def starttls(self):
        self.started_tls = True

    def login(self, username, password):
        self.logged_in = (username, password)

    def send_message(self, message):
        self.messages.append(message)


@pytest.fixture()
def smtp(monkeypatch):
    FakeSMTP.instances = []
    monkeypatch.setattr(notification_module.smtplib, "SMTP", FakeSMTP)
    return FakeSMTP


def _cycle(academy, **overrides):
    data = {
        "academy_id": academy.id,
        "subscription_id": uuid4(),
        "installment_number": 2,
        "total_installments": 12,
        "scheduled_date": date(2024, 2, 1),
        "amount_cents": 12345,
    }
    data.update(overrides)
    return BillingCycle(**data)


def test_format_amount():
    assert format_amount(12345, "usd") == "123.45 USD"
    assert format_amount(100000000, "brl") == "1,000,000.00 BRL"


def test_normalize_email():
    assert normalize_email("  Ana.Souza@Example.COM ") == "ana.souza@example.com"
    with pytest.raises(EmailValidationError):
        normalize_email("")
    with pytest.raises(EmailValidationError):
        normalize_email("not-an-address")


def test_overdue_reminder_is_rendered_and_sent(db_session, academy, contact, smtp):
    notifier = ReminderNotifier(public_base_url="https://app.example.com/")
    notifier.configure_email(host="smtp.example.com", port=587, sender="billing@example.com", username="u", password="p")

    notifier.send_reminder(
        kind="overdue",
        academy=academy,
        contact=contact,
        cycle=_cycle(academy, failure_reason="insufficient funds"),
        plan=make_plan(db_session, academy),
        today=date(2024, 2, 4),
    )

    server = smtp.instances[0]
    assert (server.host, server.port) == ("smtp.example.com", 587)
    assert server.started_tls
    assert server.logged_in == ("u", "p")
    message = server.messages[0]
    assert message["To"] == contact.email
    assert message["Subject"] == f"{academy.name}: payment overdue since 2024-02-01"
    html = message.get_body(preferencelist=("html",)).get_content()
    assert "123.45 USD" in html
    assert "overdue by 3 days" in html
    assert "insufficient funds" in html
    assert "https://app.example.com/billing" in html


def test_upcoming_reminder_uses_upcoming_template(db_session, academy, contact, smtp):
    notifier = ReminderNotifier()
    notifier.configure_email(host="smtp.example.com", port=25, sender="billing@example.com", starttls=False)

    notifier.send_reminder(
        kind="upcoming",
        academy=academy,
        contact=contact,
        cycle=_cycle(academy),
        plan=None,
        today=date(2024, 1, 29),
    )

    server = smtp.instances[0]
    assert not server.started_tls
    assert server.logged_in is None
    assert server.messages[0]["Subject"] == f"{academy.name}: upcoming payment on 2024-02-01"


def test_action_required_reminder_asks_for_confirmation(db_session, academy, contact, smtp):
    notifier = ReminderNotifier(public_base_url="https://app.example.com")
    notifier.configure_email(host="smtp.example.com", port=25, sender="billing@example.com", starttls=False)

    notifier.send_reminder(
        kind="action_required",
        academy=academy,
        contact=contact,
        cycle=_cycle(academy),
        plan=make_plan(db_session, academy),
        today=date(2024, 2, 1),
    )

    message = smtp.instances[0].messages[0]
    assert message["Subject"] == f"{academy.name}: confirm your payment of 123.45 USD"
    html = message.get_body(preferencelist=("html",)).get_content()
    assert "installment 2/12" in html
    assert "Confirm the payment" in html
    assert "https://app.example.com/billing" in html


def test_unconfigured_notifier_raises(db_session, academy, contact, smtp):
    with pytest.raises(RuntimeError):
        ReminderNotifier().send_reminder(
            kind="upcoming", academy=academy, contact=contact, cycle=_cycle(academy), plan=None, today=date(2024, 1, 29)
        )
    assert smtp.instances == []


def test_contact_without_email_raises(db_session, academy, smtp):
    contact = make_contact(db_session, academy, email=None)
    notifier = ReminderNotifier()
    notifier.configure_email(host="smtp.example.com", port=25, sender="billing@example.com")

    with pytest.raises(ValueError):
        notifier.send_reminder(
            kind="upcoming", academy=academy, contact=contact, cycle=_cycle(academy), plan=None, today=date(2024, 1, 29)
        )
