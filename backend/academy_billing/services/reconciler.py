"""Applies asynchronous payment-provider events to billing state.

Inbound envelopes are verified, decoded into a closed set of event variants and
turned into a :class:`Transition` by the pure :func:`plan_transition`. The
:class:`EventReconciler` loads the current state, applies the transition and
records the provider event id in the same transaction, so a redelivered event
is a no-op.
"""
from __future__ import annotations

import hashlib
import hmac
import time
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Union
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, func, select

from academy_billing.core.errors import InvalidSignatureError
from academy_billing.core.logging_setup import logger
from academy_billing.models.audit import AuditLog
from academy_billing.models.base import utcnow
from academy_billing.models.billing import (
    CHARGEABLE_CYCLE_STATUSES,
    BillingCycle,
    CycleStatus,
    MembershipSubscription,
    SubscriptionStatus,
)
from academy_billing.models.payment import Payment, PaymentStatus, ProviderEvent, Refund, RefundStatus
from academy_billing.services.schedule import ScheduleService


def verify_signature(
    raw_body: bytes,
    header: str | None,
    secret: str | None,
    tolerance_seconds: int = 300,
    now: float | None = None,
) -> None:
    """Check a ``t=<timestamp>,v1=<hex digest>`` signature header.

    The signed payload is ``"{timestamp}.{raw_body}"`` under HMAC SHA256 with the
    webhook secret.
    """
    if not secret:
        raise InvalidSignatureError("Webhook secret not configured")
    if not header:
        raise InvalidSignatureError("Missing signature header")
    try:
        parts = dict(kv.strip().split("=", 1) for kv in header.split(","))
        timestamp = parts.get("t")
        expected = parts.get("v1")
        if not timestamp or not expected:
            raise ValueError("Invalid signature header")
        signed_payload = f"{timestamp}.{raw_body.decode('utf-8')}".encode("utf-8")
        computed = hmac.new(secret.encode("utf-8"), signed_payload, hashlib.sha256).hexdigest()
        if not hmac.compare_digest(computed, expected):
            raise ValueError("Signature mismatch")
        current = time.time() if now is None else now
        if abs(int(current) - int(timestamp)) > tolerance_seconds:
            raise ValueError("Timestamp outside tolerance")
    except ValueError as exc:
        raise InvalidSignatureError(f"Invalid signature: {exc}") from exc


def sign_payload(raw_body: bytes, secret: str, timestamp: int | None = None) -> str:
    timestamp = int(time.time()) if timestamp is None else timestamp
    digest = hmac.new(
        secret.encode("utf-8"),
        f"{timestamp}.{raw_body.decode('utf-8')}".encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()
    return f"t={timestamp},v1={digest}"


# ----------------------------------------------------------------------
# Event variants
# ----------------------------------------------------------------------
@dataclass(frozen=True)
class PaymentSucceeded:
    event_id: str
    charge_id: str | None
    amount_cents: int | None
    currency: str | None = None
    provider_subscription_id: str | None = None
    metadata: dict = field(default_factory=dict)


@dataclass(frozen=True)
class PaymentFailed:
    event_id: str
    charge_id: str | None
    amount_cents: int | None
    currency: str | None = None
    provider_subscription_id: str | None = None
    failure_code: str | None = None
    failure_message: str | None = None
    metadata: dict = field(default_factory=dict)


@dataclass(frozen=True)
class SubscriptionCancelled:
    event_id: str
    provider_subscription_id: str


@dataclass(frozen=True)
class SubscriptionUpdated:
    event_id: str
    provider_subscription_id: str
    provider_status: str


@dataclass(frozen=True)
class DisputeOpened:
    event_id: str
    charge_id: str
    reason: str | None = None


@dataclass(frozen=True)
class RefundUpdated:
    event_id: str
    refund_id: str
    refund_status: str
    failure_reason: str | None = None
    metadata: dict = field(default_factory=dict)


@dataclass(frozen=True)
class Ignored:
    event_id: str | None
    event_type: str | None
    reason: str


ProviderEventVariant = Union[
    PaymentSucceeded, PaymentFailed, SubscriptionCancelled, SubscriptionUpdated, DisputeOpened, RefundUpdated, Ignored
]

SUCCEEDED_TYPES = {"payment_intent.succeeded", "invoice.payment_succeeded", "invoice.paid"}
FAILED_TYPES = {"payment_intent.payment_failed", "invoice.payment_failed"}
REFUND_TYPES = {"refund.updated", "charge.refund.updated"}
SETTLED_PAYMENT_STATUSES = {
    PaymentStatus.SUCCEEDED.value,
    PaymentStatus.PARTIALLY_REFUNDED.value,
    PaymentStatus.REFUNDED.value,
}


def _metadata(obj: dict) -> dict:
    metadata = dict(obj.get("metadata") or {})
    details = obj.get("subscription_details") or {}
    for key, value in (details.get("metadata") or {}).items():
        metadata.setdefault(key, value)
    return metadata


def _int_or_none(value) -> int | None:
    if value is None:
        return None
    return int(value)


def decode_event(payload) -> ProviderEventVariant:
    """Map a provider envelope onto one of the recognised event variants."""
    if not isinstance(payload, dict):
        return Ignored(None, None, "payload is not an object")
    event_id = payload.get("id")
    event_type = payload.get("type")
    obj = (payload.get("data") or {}).get("object")
    if not event_id or not event_type or not isinstance(obj, dict):
        return Ignored(event_id, event_type, "malformed envelope")

    try:
        if event_type in SUCCEEDED_TYPES or event_type in FAILED_TYPES:
            if event_type.startswith("invoice."):
                charge_id = obj.get("payment_intent") or obj.get("id")
                amount = obj.get("amount_paid") if event_type in SUCCEEDED_TYPES else obj.get("amount_due")
                subscription_id = obj.get("subscription")
            else:
                charge_id = obj.get("id")
                amount = obj.get("amount_received") or obj.get("amount")
                subscription_id = None
            if event_type in SUCCEEDED_TYPES:
                return PaymentSucceeded(
                    event_id=event_id,
                    charge_id=charge_id,
                    amount_cents=_int_or_none(amount),
                    currency=obj.get("currency"),
                    provider_subscription_id=subscription_id,
                    metadata=_metadata(obj),
                )
            error = obj.get("last_payment_error") or {}
            return PaymentFailed(
                event_id=event_id,
                charge_id=charge_id,
                amount_cents=_int_or_none(amount),
                currency=obj.get("currency"),
                provider_subscription_id=subscription_id,
                failure_code=error.get("decline_code") or error.get("code"),
                failure_message=error.get("message"),
                metadata=_metadata(obj),
            )
        if event_type == "customer.subscription.deleted":
            return SubscriptionCancelled(event_id=event_id, provider_subscription_id=obj["id"])
        if event_type == "customer.subscription.updated":
            return SubscriptionUpdated(
                event_id=event_id,
                provider_subscription_id=obj["id"],
                provider_status=obj.get("status") or "",
            )
        if event_type == "charge.dispute.created":
            return DisputeOpened(
                event_id=event_id,
                charge_id=obj.get("payment_intent") or obj["charge"],
                reason=obj.get("reason"),
            )
        if event_type in REFUND_TYPES:
            return RefundUpdated(
                event_id=event_id,
                refund_id=obj["id"],
                refund_status=obj.get("status") or "",
                failure_reason=obj.get("failure_reason"),
                metadata=dict(obj.get("metadata") or {}),
            )
    except (KeyError, TypeError, ValueError) as exc:
        return Ignored(event_id, event_type, f"malformed object: {exc}")
    return Ignored(event_id, event_type, "unhandled event type")


# ----------------------------------------------------------------------
# Pure transition
# ----------------------------------------------------------------------
@dataclass(frozen=True)
class CycleView:
    id: UUID
    status: str
    scheduled_date: date
    amount_cents: int


@dataclass(frozen=True)
class Snapshot:
    today: date
    already_processed: bool = False
    payment_status: str | None = None
    cycle: CycleView | None = None
    subscription_status: str | None = None
    academy_known: bool = False
    refund_status: str | None = None


@dataclass(frozen=True)
class Transition:
    outcome: str  # applied | duplicate | ignored | unmatched
    payment_status: str | None = None
    cycle_status: str | None = None
    bump_retry: bool = False
    subscription_status: str | None = None
    cancel_future_cycles: bool = False
    refund_status: str | None = None
    note: str | None = None


_PROVIDER_SUBSCRIPTION_STATUS = {
    "active": SubscriptionStatus.ACTIVE.value,
    "trialing": SubscriptionStatus.ACTIVE.value,
    "past_due": SubscriptionStatus.ACTIVE.value,
    "unpaid": SubscriptionStatus.ACTIVE.value,
    "canceled": SubscriptionStatus.CANCELLED.value,
    "incomplete_expired": SubscriptionStatus.EXPIRED.value,
}


_PROVIDER_REFUND_STATUS = {
    "pending": RefundStatus.PENDING.value,
    "succeeded": RefundStatus.SUCCEEDED.value,
    "failed": RefundStatus.FAILED.value,
    "canceled": RefundStatus.FAILED.value,
}


def plan_transition(snapshot: Snapshot, event: ProviderEventVariant) -> Transition:
    """Decide what an event changes, given the current state. No side effects."""
    if snapshot.already_processed:
        return Transition("duplicate")
    if isinstance(event, Ignored):
        return Transition("ignored", note=event.reason)

    if isinstance(event, PaymentSucceeded):
        if snapshot.payment_status in SETTLED_PAYMENT_STATUSES:
            return Transition("duplicate")
        if snapshot.payment_status is None and not snapshot.academy_known:
            return Transition("unmatched", note="no payment, cycle or subscription for charge")
        cycle_status = None
        if snapshot.cycle and snapshot.cycle.status in CHARGEABLE_CYCLE_STATUSES:
            cycle_status = CycleStatus.PAID.value
        return Transition("applied", payment_status=PaymentStatus.SUCCEEDED.value, cycle_status=cycle_status)

    if isinstance(event, PaymentFailed):
        if snapshot.payment_status == PaymentStatus.FAILED.value:
            return Transition("duplicate")
        if snapshot.payment_status in SETTLED_PAYMENT_STATUSES | {PaymentStatus.DISPUTED.value}:
            return Transition("ignored", note="failure reported after settlement")
        if snapshot.payment_status is None and not snapshot.academy_known:
            return Transition("unmatched", note="no payment, cycle or subscription for charge")
        cycle_status = None
        cycle = snapshot.cycle
        if cycle and cycle.status == CycleStatus.PENDING.value and cycle.scheduled_date < snapshot.today:
            cycle_status = CycleStatus.OVERDUE.value
        return Transition(
            "applied",
            payment_status=PaymentStatus.FAILED.value,
            cycle_status=cycle_status,
            bump_retry=cycle is not None and cycle.status in CHARGEABLE_CYCLE_STATUSES,
        )

    if isinstance(event, SubscriptionCancelled):
        if snapshot.subscription_status is None:
            return Transition("unmatched", note="unknown provider subscription")
        if snapshot.subscription_status == SubscriptionStatus.CANCELLED.value:
            return Transition("duplicate")
        return Transition(
            "applied",
            subscription_status=SubscriptionStatus.CANCELLED.value,
            cancel_future_cycles=True,
        )

    if isinstance(event, SubscriptionUpdated):
        if snapshot.subscription_status is None:
            return Transition("unmatched", note="unknown provider subscription")
        target = _PROVIDER_SUBSCRIPTION_STATUS.get(event.provider_status)
        if target is None:
            return Transition("ignored", note=f"provider status {event.provider_status!r} not mirrored")
        if target == snapshot.subscription_status:
            return Transition("duplicate")
        if snapshot.subscription_status == SubscriptionStatus.CANCELLED.value:
            return Transition("ignored", note="subscription already cancelled")
        return Transition(
            "applied",
            subscription_status=target,
            cancel_future_cycles=target == SubscriptionStatus.CANCELLED.value,
        )

    if isinstance(event, DisputeOpened):
        if snapshot.payment_status is None:
            return Transition("unmatched", note="dispute for unknown charge")
        if snapshot.payment_status == PaymentStatus.DISPUTED.value:
            return Transition("duplicate")
        return Transition("applied", payment_status=PaymentStatus.DISPUTED.value)

    if isinstance(event, RefundUpdated):
        if snapshot.refund_status is None:
            return Transition("unmatched", note="unknown refund")
        target = _PROVIDER_REFUND_STATUS.get(event.refund_status)
        if target is None:
            return Transition("ignored", note=f"refund status {event.refund_status!r} not mirrored")
        if target == snapshot.refund_status:
            return Transition("duplicate")
        if snapshot.refund_status != RefundStatus.PENDING.value:
            return Transition("ignored", note="refund already settled")
        return Transition("applied", refund_status=target)

    return Transition("ignored", note="unsupported variant")


# ----------------------------------------------------------------------
# Persistence
# ----------------------------------------------------------------------
def _uuid(value) -> UUID | None:
    if not value:
        return None
    try:
        return UUID(str(value))
    except ValueError:
        return None


def settle_refunded_amount(session: Session, payment: Payment) -> None:
    """Recompute a payment's refunded total and status from its succeeded refunds. Does not commit."""
    refunded = session.exec(
        select(func.coalesce(func.sum(Refund.amount_cents), 0)).where(
            Refund.payment_id == payment.id,
            Refund.status == RefundStatus.SUCCEEDED.value,
        )
    ).one()
    payment.refunded_amount_cents = refunded
    if payment.status in SETTLED_PAYMENT_STATUSES:
        if refunded >= payment.amount_cents:
            payment.status = PaymentStatus.REFUNDED.value
        elif refunded > 0:
            payment.status = PaymentStatus.PARTIALLY_REFUNDED.value
        else:
            payment.status = PaymentStatus.SUCCEEDED.value
    payment.updated_at = utcnow()
    session.add(payment)


@dataclass
class _Loaded:
    payment: Payment | None = None
    cycle: BillingCycle | None = None
    subscription: MembershipSubscription | None = None
    academy_id: UUID | None = None
    refund: Refund | None = None


class EventReconciler:
    def __init__(self, session: Session) -> None:
        self.session = session
        self.schedule = ScheduleService(session)

    def handle(self, event: ProviderEventVariant, today: date | None = None) -> str:
        """Apply one decoded event; returns the outcome recorded for it."""
        today = today or datetime.now(timezone.utc).date()
        event_id = event.event_id
        seen = False
        if event_id:
            seen = self.session.exec(
                select(ProviderEvent).where(ProviderEvent.event_id == event_id)
            ).first() is not None

        loaded = self._load(event)
        snapshot = Snapshot(
            today=today,
            already_processed=seen,
            payment_status=loaded.payment.status if loaded.payment else None,
            cycle=(
                CycleView(
                    loaded.cycle.id,
                    loaded.cycle.status,
                    loaded.cycle.scheduled_date,
                    loaded.cycle.amount_cents,
                )
                if loaded.cycle
                else None
            ),
            subscription_status=loaded.subscription.status if loaded.subscription else None,
            academy_known=loaded.academy_id is not None,
            refund_status=loaded.refund.status if loaded.refund else None,
        )
        transition = plan_transition(snapshot, event)
        if transition.outcome == "duplicate" and seen:
            logger.info("[WEBHOOK] event %s already processed", event_id)
            return transition.outcome

        if transition.outcome == "applied":
            self._apply(event, transition, loaded, today)
        elif transition.note:
            logger.info("[WEBHOOK] event %s %s: %s", event_id, transition.outcome, transition.note)

        if event_id:
            self.session.add(
                ProviderEvent(
                    event_id=event_id,
                    event_type=getattr(event, "event_type", None) or type(event).__name__,
                    outcome=transition.outcome,
                )
            )
        try:
            self.session.commit()
        except IntegrityError:
            # A concurrent delivery of the same event or charge committed first.
            self.session.rollback()
            logger.info("[WEBHOOK] event %s lost a concurrent delivery race", event_id)
            return "duplicate"
        logger.info("[WEBHOOK] event %s (%s) -> %s", event_id, type(event).__name__, transition.outcome)
        return transition.outcome

    def _load(self, event: ProviderEventVariant) -> _Loaded:
        loaded = _Loaded()
        if isinstance(event, (SubscriptionCancelled, SubscriptionUpdated)):
            loaded.subscription = self._subscription_by_provider_id(event.provider_subscription_id)
            loaded.academy_id = loaded.subscription.academy_id if loaded.subscription else None
            return loaded
        if isinstance(event, Ignored):
            return loaded
        if isinstance(event, RefundUpdated):
            loaded.refund = self.session.exec(
                select(Refund).where(Refund.provider_refund_id == event.refund_id)
            ).first()
            if loaded.refund is not None:
                loaded.payment = self.session.get(Payment, loaded.refund.payment_id)
                loaded.academy_id = loaded.refund.academy_id
            return loaded

        charge_id = event.charge_id
        metadata = getattr(event, "metadata", {}) or {}
        if charge_id:
            loaded.payment = self.session.exec(
                select(Payment).where(Payment.provider_charge_id == charge_id)
            ).first()
        if loaded.payment is None and _uuid(metadata.get("payment_id")):
            loaded.payment = self.session.get(Payment, _uuid(metadata.get("payment_id")))
        if isinstance(event, DisputeOpened):
            loaded.academy_id = loaded.payment.academy_id if loaded.payment else None
            return loaded

        if loaded.payment and loaded.payment.billing_cycle_id:
            loaded.cycle = self.session.get(BillingCycle, loaded.payment.billing_cycle_id)
        if loaded.cycle is None and _uuid(metadata.get("billing_cycle_id")):
            loaded.cycle = self.session.get(BillingCycle, _uuid(metadata.get("billing_cycle_id")))

        if loaded.cycle is not None:
            loaded.subscription = self.session.get(MembershipSubscription, loaded.cycle.subscription_id)
        elif loaded.payment and loaded.payment.subscription_id:
            loaded.subscription = self.session.get(MembershipSubscription, loaded.payment.subscription_id)
        elif _uuid(metadata.get("subscription_id")):
            loaded.subscription = self.session.get(MembershipSubscription, _uuid(metadata.get("subscription_id")))
        elif event.provider_subscription_id:
            loaded.subscription = self._subscription_by_provider_id(event.provider_subscription_id)

        if loaded.cycle is None and loaded.subscription is not None and loaded.payment is None:
            loaded.cycle = self._match_cycle(loaded.subscription, event.amount_cents)

        if loaded.payment is not None:
            loaded.academy_id = loaded.payment.academy_id
        elif loaded.subscription is not None:
            loaded.academy_id = loaded.subscription.academy_id
        return loaded

    def _subscription_by_provider_id(self, provider_subscription_id: str | None) -> MembershipSubscription | None:
        if not provider_subscription_id:
            return None
        return self.session.exec(
            select(MembershipSubscription).where(
                MembershipSubscription.provider_subscription_id == provider_subscription_id
            )
        ).first()

    def _match_cycle(self, subscription: MembershipSubscription, amount_cents: int | None) -> BillingCycle | None:
        """Nearest unmatched due cycle of the subscription with the same amount."""
        statement = select(BillingCycle).where(
            BillingCycle.subscription_id == subscription.id,
            BillingCycle.status.in_(CHARGEABLE_CYCLE_STATUSES),
        )
        if amount_cents is not None:
            statement = statement.where(BillingCycle.amount_cents == amount_cents)
        return self.session.exec(statement.order_by(BillingCycle.scheduled_date)).first()

    def _apply(self, event: ProviderEventVariant, transition: Transition, loaded: _Loaded, today: date) -> None:
        now = utcnow()
        payment = loaded.payment
        cycle = loaded.cycle
        subscription = loaded.subscription

        if transition.payment_status:
            if payment is None:
                payment = Payment(
                    academy_id=loaded.academy_id,
                    contact_id=subscription.contact_id if subscription else None,
                    billing_cycle_id=cycle.id if cycle else None,
                    subscription_id=subscription.id if subscription else None,
                    amount_cents=event.amount_cents if event.amount_cents is not None else (cycle.amount_cents if cycle else 0),
                    currency=event.currency or "usd",
                    description="Recorded from provider event",
                )
            payment.status = transition.payment_status
            if event.charge_id and not payment.provider_charge_id:
                payment.provider_charge_id = event.charge_id
            if transition.payment_status == PaymentStatus.SUCCEEDED.value:
                payment.paid_at = payment.paid_at or now
                payment.failure_code = None
                payment.failure_reason = None
            elif isinstance(event, PaymentFailed):
                payment.failure_code = event.failure_code
                payment.failure_reason = event.failure_message
            payment.updated_at = now
            self.session.add(payment)

        if cycle is not None and (transition.cycle_status or transition.bump_retry):
            if transition.cycle_status:
                cycle.status = transition.cycle_status
            if transition.cycle_status == CycleStatus.PAID.value:
                cycle.paid_at = now
                cycle.failure_reason = None
            if transition.bump_retry:
                cycle.retry_count += 1
                cycle.last_attempt_at = now
                if isinstance(event, PaymentFailed):
                    cycle.failure_reason = event.failure_message or event.failure_code
            cycle.updated_at = now
            self.session.add(cycle)
            self.session.flush()
            if transition.cycle_status == CycleStatus.PAID.value and subscription is not None:
                self.schedule.generate_next_cycle(subscription)

        if subscription is not None and transition.subscription_status:
            if transition.cancel_future_cycles:
                self.schedule.cancel_for_provider(subscription, today)
            else:
                subscription.status = transition.subscription_status
                subscription.updated_at = now
                self.session.add(subscription)

        if isinstance(event, DisputeOpened) and payment is not None:
            logger.warning("[WEBHOOK] dispute opened for payment=%s reason=%s", payment.id, event.reason)
            self.session.add(
                AuditLog(
                    academy_id=payment.academy_id,
                    event_type="payment_disputed",
                    subject_id=payment.id,
                    details={"charge_id": event.charge_id, "reason": event.reason},
                )
            )

        if loaded.refund is not None and transition.refund_status:
            refund = loaded.refund
            refund.status = transition.refund_status
            refund.updated_at = now
            if transition.refund_status == RefundStatus.SUCCEEDED.value:
                refund.refunded_at = now
            elif transition.refund_status == RefundStatus.FAILED.value:
                refund.failure_reason = event.failure_reason or event.refund_status
            self.session.add(refund)
            self.session.flush()
            if payment is not None:
                settle_refunded_amount(self.session, payment)
            logger.info("[WEBHOOK] refund=%s -> %s", refund.id, refund.status)
