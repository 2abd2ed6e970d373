from __future__ import annotations

from datetime import date
from uuid import uuid4

from sqlmodel import Session

from academy_billing.models.billing import MembershipPlan
from academy_billing.models.contact import Contact
from academy_billing.models.payment import PaymentMethod
from academy_billing.models.tenant import Academy
from academy_billing.services.gateway import AccountStatus, PaymentMethodDetails, ProviderCharge, ProviderRefund
from academy_billing.services.schedule import ScheduleService


class FakeGateway:
    """In-memory provider recording every call."""

    name = "fake"

    def __init__(self) -> None:
        self.outcomes: list = []
        self.charges: list[dict] = []
        self.customers: dict[tuple, str] = {}
        self.created_customers: list[dict] = []
        self.subscriptions: list[dict] = []
        self.refunds: list[dict] = []
        self.refund_outcomes: list = []
        # payment id -> status reported by retrieve_charge; None means the provider never saw it
        self.charge_statuses: dict = {}
        self.lookups: list[dict] = []
        self.accounts_created = 0
        self.charges_enabled = True
        self._counter = 0

    def _next_id(self, prefix: str) -> str:
        self._counter += 1
        return f"{prefix}_{self._counter:04d}"

    def create_account(self, *, email, name) -> str:
        self.accounts_created += 1
        return self._next_id("acct")

    def retrieve_account(self, account_id) -> AccountStatus:
        return AccountStatus(
            account_id,
            charges_enabled=self.charges_enabled,
            payouts_enabled=self.charges_enabled,
            details_submitted=True,
        )

    def create_account_link(self, account_id, *, refresh_url, return_url) -> str:
        return f"https://connect.example.com/onboarding/{account_id}"

    def find_customer(self, *, email, account_id):
        return self.customers.get((email, account_id))

    def create_customer(self, *, email, name, account_id, idempotency_key) -> str:
        customer_id = self._next_id("cus")
        self.customers[(email, account_id)] = customer_id
        self.created_customers.append(
            {"email": email, "account_id": account_id, "idempotency_key": idempotency_key}
        )
        return customer_id

    def create_setup_intent(self, *, customer_id, account_id) -> str:
        return f"seti_{customer_id}_secret"

    def create_portal_session(self, *, customer_id, account_id, return_url) -> str:
        return f"https://billing.example.com/session/{customer_id}"

    def retrieve_payment_method(self, payment_method_id, *, account_id) -> PaymentMethodDetails:
        return PaymentMethodDetails(payment_method_id=payment_method_id, type="card", brand="visa", last4="4242")

    def charge(self, **kwargs) -> ProviderCharge:
        self.charges.append(kwargs)
        outcome = self.outcomes.pop(0) if self.outcomes else "succeeded"
        if isinstance(outcome, Exception):
            raise outcome
        charge_id = self._next_id("pi")
        if outcome == "requires_action":
            return ProviderCharge(
                charge_id=charge_id,
                status="requires_action",
                client_secret=f"{charge_id}_secret",
                failure_code="authentication_required",
            )
        if outcome == "insufficient_funds":
            return ProviderCharge(
                charge_id=charge_id,
                status="failed",
                failure_code="insufficient_funds",
                failure_message="Your card has insufficient funds.",
            )
        if outcome == "failed":
            return ProviderCharge(charge_id=charge_id, status="failed", failure_code="card_declined")
        return ProviderCharge(charge_id=charge_id, status=outcome)

    def retrieve_charge(self, charge_id, *, payment_id, account_id):
        self.lookups.append({"charge_id": charge_id, "payment_id": payment_id, "account_id": account_id})
        status = self.charge_statuses.get(payment_id, "processing")
        if isinstance(status, Exception):
            raise status
        if status is None:
            return None
        return ProviderCharge(
            charge_id=charge_id or self._next_id("pi"),
            status=status,
            failure_code="card_declined" if status == "failed" else None,
        )

    def refund(self, **kwargs) -> ProviderRefund:
        self.refunds.append(kwargs)
        outcome = self.refund_outcomes.pop(0) if self.refund_outcomes else "succeeded"
        if isinstance(outcome, Exception):
            raise outcome
        return ProviderRefund(
            refund_id=self._next_id("re"),
            status=outcome,
            failure_reason="charge_disputed" if outcome == "failed" else None,
        )

    def create_subscription(self, **kwargs) -> str:
        self.subscriptions.append(kwargs)
        return self._next_id("sub")


class RecordingNotifier:
    """Collects reminders instead of sending them; fails while ``fail`` is set."""

    def __init__(self) -> None:
        self.sent: list[dict] = []
        self.fail = False

    def send_reminder(self, **kwargs) -> None:
        if self.fail:
            raise ConnectionRefusedError("smtp down")
        self.sent.append(kwargs)


def make_academy(session: Session, **overrides) -> Academy:
    data = {
        "name": "Gracie Barra Centro",
        "slug": f"academy-{uuid4().hex[:8]}",
        "email": "owner@example.com",
        "provider_account_id": "acct_academy",
        "charges_enabled": True,
        "payouts_enabled": True,
        "details_submitted": True,
    }
    data.update(overrides)
    academy = Academy(**data)
    session.add(academy)
    session.commit()
    session.refresh(academy)
    return academy


def make_contact(session: Session, academy: Academy, **overrides) -> Contact:
    data = {
        "academy_id": academy.id,
        "full_name": "Ana Souza",
        "email": f"ana.{uuid4().hex[:6]}@example.com",
    }
    data.update(overrides)
    contact = Contact(**data)
    session.add(contact)
    session.commit()
    session.refresh(contact)
    return contact


def make_plan(session: Session, academy: Academy, **overrides) -> MembershipPlan:
    data = {
        "academy_id": academy.id,
        "name": "Adult BJJ 12 months",
        "base_price_cents": 10000,
        "cycle_length_months": 1,
        "total_installments": 12,
    }
    data.update(overrides)
    plan = MembershipPlan(**data)
    session.add(plan)
    session.commit()
    session.refresh(plan)
    return plan


def make_subscription(session: Session, academy: Academy, contact: Contact, plan: MembershipPlan,
                      start: date = date(2024, 1, 1), **kwargs):
    return ScheduleService(session).create_subscription(
        academy.id,
        contact_id=contact.id,
        plan_id=plan.id,
        start_date=start,
        **kwargs,
    )


def make_payment_method(session: Session, contact: Contact, *, default: bool = True,
                        provider_id: str | None = None) -> PaymentMethod:
    method = PaymentMethod(
        academy_id=contact.academy_id,
        contact_id=contact.id,
        provider_payment_method_id=provider_id or f"pm_{uuid4().hex[:10]}",
        brand="visa",
        last4="4242",
        is_default=default,
        default_slot=contact.id if default else None,
    )
    session.add(method)
    session.commit()
    session.refresh(method)
    return method
