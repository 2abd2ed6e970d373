from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, func, select

from academy_billing.core.config import settings
from academy_billing.core.errors import (
    ActionRequiredError,
    BillingError,
    NotFoundError,
    PaymentMethodRequiredError,
    ProviderTransientError,
    StateConflictError,
    ValidationError,
)
from academy_billing.core.logging_setup import logger
from academy_billing.models.base import utcnow
from academy_billing.models.billing import (
    CHARGEABLE_CYCLE_STATUSES,
    BillingCycle,
    BillingMode,
    CycleStatus,
    MembershipPlan,
    MembershipSubscription,
    SubscriptionStatus,
)
from academy_billing.models.contact import Contact
from academy_billing.models.payment import (
    REFUNDABLE_PAYMENT_STATUSES,
    Payment,
    PaymentMethod,
    PaymentStatus,
    Refund,
    RefundStatus,
)
from academy_billing.models.tenant import Academy
from academy_billing.services.audit import AuditService
from academy_billing.services.freeze import active_freeze_covering
from academy_billing.services.gateway import PaymentGateway, ProviderRefund, gateway_from_settings
from academy_billing.services.payment_router import PaymentRouter
from academy_billing.services.reconciler import (
    EventReconciler,
    PaymentFailed,
    PaymentSucceeded,
    settle_refunded_amount,
)
from academy_billing.services.schedule import ScheduleService

GENERIC_FAILURE_MESSAGE = "payment could not be processed"

_FAILURE_MESSAGES = {
    "insufficient_funds": "insufficient funds",
    "authentication_required": "authentication required",
}


def user_message(failure_code: str | None) -> str:
    return _FAILURE_MESSAGES.get(failure_code or "", GENERIC_FAILURE_MESSAGE)


def latest_cycle_payment(session: Session, cycle_id: UUID) -> Payment | None:
    return session.exec(
        select(Payment).where(Payment.billing_cycle_id == cycle_id).order_by(Payment.created_at.desc())
    ).first()


@dataclass
class ChargeResult:
    status: str
    payment_id: UUID | None = None
    billing_cycle_id: UUID | None = None
    message: str | None = None
    client_secret: str | None = None


class ChargeService:
    def __init__(
        self,
        session: Session,
        gateway: PaymentGateway | None = None,
        router: PaymentRouter | None = None,
    ) -> None:
        self.session = session
        self.gateway = gateway or gateway_from_settings()
        self.router = router or PaymentRouter(session, self.gateway)
        self.schedule = ScheduleService(session)
        self.audit = AuditService(session)

    def _compute_backoff_delay(self, attempt: int) -> timedelta:
        """Minimum wait before the scheduler re-attempts a failed cycle.

        1 -> 1 day, 2 -> 3 days, 3+ -> 7 days.
        """
        if attempt <= 1:
            return timedelta(days=1)
        if attempt == 2:
            return timedelta(days=3)
        return timedelta(days=7)

    # ------------------------------------------------------------------
    # Installment cycles
    # ------------------------------------------------------------------
    def charge_cycle(
        self,
        academy_id: UUID,
        cycle_id: UUID,
        payment_method_id: UUID | None = None,
    ) -> ChargeResult:
        cycle = self.session.get(BillingCycle, cycle_id)
        if not cycle or cycle.academy_id != academy_id:
            raise NotFoundError("Billing cycle not found")
        subscription = self.session.get(MembershipSubscription, cycle.subscription_id)
        self._ensure_cycle_chargeable(cycle, subscription)

        academy = self.router.get_academy(academy_id)
        context = self.router.resolve_routing_context(academy)
        contact = self.session.get(Contact, subscription.contact_id)
        method, payer = self._resolve_method(academy_id, contact, payment_method_id)
        customer_id = self.router.resolve_or_create_customer(academy, payer)

        attempt = self._attempt_count(cycle.id) + 1
        return self._execute(
            academy=academy,
            account_id=context.sub_account_id,
            customer_id=customer_id,
            contact=contact,
            method=method,
            amount_cents=cycle.amount_cents,
            description=f"Installment {cycle.installment_number}" + (
                f"/{cycle.total_installments}" if cycle.total_installments else ""
            ),
            idempotency_key=f"cycle-{cycle.id}-attempt-{attempt}",
            cycle=cycle,
            subscription=subscription,
        )

    def charge_due_cycles(self, today: date, academy_id: UUID | None = None) -> dict[str, int]:
        """Fire off-session charges for every due installment cycle.

        A cycle whose latest attempt is waiting for the customer to authenticate
        is left alone; the customer or a provider event settles it.
        """
        statement = (
            select(BillingCycle.id, BillingCycle.academy_id)
            .join(MembershipSubscription, MembershipSubscription.id == BillingCycle.subscription_id)
            .join(Academy, Academy.id == BillingCycle.academy_id)
            .where(
                BillingCycle.status.in_(CHARGEABLE_CYCLE_STATUSES),
                BillingCycle.scheduled_date <= today,
                BillingCycle.retry_count < max(settings.billing_max_retries, 1),
                MembershipSubscription.status == SubscriptionStatus.ACTIVE.value,
                MembershipSubscription.billing_mode == BillingMode.INSTALLMENTS.value,
                Academy.is_active.is_(True),
            )
            .order_by(BillingCycle.scheduled_date)
        )
        if academy_id is not None:
            statement = statement.where(BillingCycle.academy_id == academy_id)

        counters = {
            "attempted": 0,
            "succeeded": 0,
            "requires_action": 0,
            "failed": 0,
            "skipped": 0,
            "awaiting_action": 0,
        }
        now = utcnow()
        for cycle_id, cycle_academy_id in self.session.exec(statement).all():
            cycle = self.session.get(BillingCycle, cycle_id)
            latest = latest_cycle_payment(self.session, cycle_id)
            if latest is not None and latest.status == PaymentStatus.REQUIRES_ACTION.value:
                counters["awaiting_action"] += 1
                continue
            if cycle.last_attempt_at and cycle.retry_count:
                if now < cycle.last_attempt_at + self._compute_backoff_delay(cycle.retry_count):
                    counters["skipped"] += 1
                    continue
            try:
                result = self.charge_cycle(cycle_academy_id, cycle_id)
            except BillingError as exc:
                logger.info("[CHARGE] cycle=%s not charged: %s", cycle_id, exc.message)
                counters["skipped"] += 1
                continue
            counters["attempted"] += 1
            if result.status in counters:
                counters[result.status] += 1
        logger.info("[CHARGE] due cycles processed on %s: %s", today, counters)
        return counters

    # ------------------------------------------------------------------
    # One-time charges
    # ------------------------------------------------------------------
    def charge_ad_hoc(
        self,
        academy_id: UUID,
        contact_id: UUID,
        amount_cents: int,
        description: str | None = None,
        billing_cycle_id: UUID | None = None,
        request_id: str | None = None,
    ) -> ChargeResult:
        if amount_cents is None or amount_cents <= 0:
            raise ValidationError("amount_cents must be positive")
        academy = self.router.get_academy(academy_id)
        contact = self.router.get_contact(academy_id, contact_id)

        idempotency_key = f"adhoc-{request_id}" if request_id else f"adhoc-{uuid.uuid4().hex}"
        existing = self.session.exec(select(Payment).where(Payment.idempotency_key == idempotency_key)).first()
        if existing:
            return self._result_from_payment(existing)

        cycle = subscription = None
        if billing_cycle_id is not None:
            cycle = self.session.get(BillingCycle, billing_cycle_id)
            if not cycle or cycle.academy_id != academy_id:
                raise NotFoundError("Billing cycle not found")
            subscription = self.session.get(MembershipSubscription, cycle.subscription_id)
            if subscription.contact_id != contact.id:
                raise ValidationError("Billing cycle does not belong to this contact")
            self._ensure_cycle_chargeable(cycle, subscription)

        context = self.router.resolve_routing_context(academy)
        resolved = self.router.get_default_payment_method(contact)
        if resolved is None:
            raise PaymentMethodRequiredError("No default payment method on file for this contact")
        method, payer = resolved
        customer_id = self.router.resolve_or_create_customer(academy, payer)

        result = self._execute(
            academy=academy,
            account_id=context.sub_account_id,
            customer_id=customer_id,
            contact=contact,
            method=method,
            amount_cents=amount_cents,
            description=description,
            idempotency_key=idempotency_key,
            cycle=cycle,
            subscription=subscription,
        )
        if result.status == PaymentStatus.REQUIRES_ACTION.value:
            raise ActionRequiredError(
                user_message("authentication_required"),
                payment_id=result.payment_id,
                client_secret=result.client_secret,
            )
        return result

    # ------------------------------------------------------------------
    # Provider-native recurring subscriptions
    # ------------------------------------------------------------------
    def start_provider_subscription(self, academy_id: UUID, subscription_id: UUID) -> MembershipSubscription:
        subscription = self.schedule.get_subscription(academy_id, subscription_id)
        if subscription.provider_subscription_id:
            return subscription
        if subscription.status != SubscriptionStatus.ACTIVE.value:
            raise StateConflictError("Only active subscriptions can be billed by the provider")
        plan = self.session.get(MembershipPlan, subscription.plan_id)
        academy = self.router.get_academy(academy_id)
        context = self.router.resolve_routing_context(academy)
        contact = self.session.get(Contact, subscription.contact_id)
        resolved = self.router.get_default_payment_method(contact)
        if resolved is None:
            raise PaymentMethodRequiredError("No default payment method on file for this contact")
        method, payer = resolved
        customer_id = self.router.resolve_or_create_customer(academy, payer)

        provider_subscription_id = self.gateway.create_subscription(
            customer_id=customer_id,
            account_id=context.sub_account_id,
            amount_cents=plan.base_price_cents,
            currency=academy.currency or settings.default_currency,
            interval_months=plan.cycle_length_months,
            product_name=plan.name,
            payment_method_id=method.provider_payment_method_id,
            idempotency_key=f"subscription-{subscription.id}",
            metadata={"subscription_id": str(subscription.id), "academy_id": str(academy.id)},
        )
        subscription.provider_subscription_id = provider_subscription_id
        subscription.billing_mode = BillingMode.PROVIDER_SUBSCRIPTION.value
        subscription.updated_at = utcnow()
        self.session.add(subscription)
        self.session.commit()
        self.session.refresh(subscription)
        logger.info(
            "[CHARGE] subscription=%s handed to provider as %s",
            subscription.id,
            provider_subscription_id,
        )
        return subscription

    # ------------------------------------------------------------------
    # Refunds
    # ------------------------------------------------------------------
    def refund_payment(
        self,
        academy_id: UUID,
        payment_id: UUID,
        amount_cents: int | None = None,
        reason: str | None = None,
        request_id: str | None = None,
    ) -> Refund:
        """Refund a settled payment in full (no amount) or in part.

        Pending and succeeded refunds count against the paid amount, so the
        total refunded never exceeds it. The refund goes through the same
        provider account that took the charge.
        """
        payment = self.session.get(Payment, payment_id)
        if not payment or payment.academy_id != academy_id:
            raise NotFoundError("Payment not found")

        idempotency_key = f"refund-{request_id}" if request_id else None
        if idempotency_key:
            existing = self.session.exec(select(Refund).where(Refund.idempotency_key == idempotency_key)).first()
            if existing:
                if existing.payment_id != payment.id:
                    raise StateConflictError("request_id already used for another payment")
                return existing

        if payment.status not in REFUNDABLE_PAYMENT_STATUSES:
            raise StateConflictError(f"Payment is {payment.status}; only settled payments can be refunded")
        refundable = payment.amount_cents - self._committed_refunds(payment.id)
        if refundable <= 0:
            raise StateConflictError("Payment is already fully refunded")
        amount = refundable if amount_cents is None else amount_cents
        if amount <= 0:
            raise ValidationError("amount_cents must be positive")
        if amount > refundable:
            raise ValidationError(f"Refund exceeds the refundable balance of {refundable} cents")

        academy = self.router.get_academy(academy_id)
        account_id = None
        if payment.provider_charge_id:
            account_id = self.router.resolve_routing_context(academy, require_charges=False).sub_account_id
        count = self.session.exec(
            select(func.count()).select_from(Refund).where(Refund.payment_id == payment.id)
        ).one()
        refund = Refund(
            academy_id=academy.id,
            payment_id=payment.id,
            amount_cents=amount,
            reason=reason,
            idempotency_key=idempotency_key or f"refund-{payment.id}-{count + 1}",
        )
        self.session.add(refund)
        try:
            self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            raise StateConflictError("This refund was already submitted") from exc
        self.session.refresh(refund)

        if not payment.provider_charge_id:
            # Recorded outside the provider: nothing to send back.
            outcome = ProviderRefund(refund_id=None, status=RefundStatus.SUCCEEDED.value)
        else:
            try:
                outcome = self.gateway.refund(
                    charge_id=payment.provider_charge_id,
                    amount_cents=amount,
                    account_id=account_id,
                    idempotency_key=refund.idempotency_key,
                    reason=reason,
                    metadata={"payment_id": str(payment.id), "refund_id": str(refund.id)},
                )
            except ProviderTransientError as exc:
                logger.warning("[REFUND] refund=%s outcome unknown: %s", refund.id, exc.message)
                return refund
            except BillingError as exc:
                refund.status = RefundStatus.FAILED.value
                refund.failure_reason = exc.message
                refund.updated_at = utcnow()
                self.session.add(refund)
                self.session.commit()
                logger.error("[REFUND] refund=%s rejected by provider: %s", refund.id, exc.message)
                raise

        now = utcnow()
        refund.provider_refund_id = outcome.refund_id
        refund.status = outcome.status
        refund.updated_at = now
        if outcome.status == RefundStatus.SUCCEEDED.value:
            refund.refunded_at = now
        elif outcome.status == RefundStatus.FAILED.value:
            refund.failure_reason = outcome.failure_reason
        self.session.add(refund)
        self.session.flush()
        settle_refunded_amount(self.session, payment)
        self.session.commit()
        self.session.refresh(refund)

        self.audit.record_event(
            academy_id=academy.id,
            event_type=f"refund_{refund.status}",
            subject_id=payment.id,
            details={"refund_id": str(refund.id), "amount_cents": amount, "reason": reason},
        )
        logger.info(
            "[REFUND] payment=%s refund=%s amount=%s status=%s",
            payment.id,
            refund.id,
            amount,
            refund.status,
        )
        return refund

    def _committed_refunds(self, payment_id: UUID) -> int:
        return self.session.exec(
            select(func.coalesce(func.sum(Refund.amount_cents), 0)).where(
                Refund.payment_id == payment_id,
                Refund.status != RefundStatus.FAILED.value,
            )
        ).one()

    # ------------------------------------------------------------------
    # Unknown outcomes
    # ------------------------------------------------------------------
    def sync_processing_payments(self, now: datetime | None = None) -> dict[str, int]:
        """Ask the provider about payments still ``processing`` after the sync window.

        Settled outcomes go through :class:`EventReconciler` as synthetic events,
        so a webhook that arrives later is acknowledged as a duplicate.
        """
        now = now or utcnow()
        cutoff = now - timedelta(minutes=max(settings.payment_sync_after_minutes, 0))
        stale = self.session.exec(
            select(Payment)
            .where(
                Payment.status == PaymentStatus.PROCESSING.value,
                func.coalesce(Payment.updated_at, Payment.created_at) <= cutoff,
            )
            .order_by(Payment.created_at)
        ).all()

        counters = {"checked": 0, "settled": 0, "requires_action": 0, "pending": 0, "failures": 0}
        reconciler = EventReconciler(self.session)
        for payment in stale:
            counters["checked"] += 1
            try:
                academy = self.router.get_academy(payment.academy_id)
                context = self.router.resolve_routing_context(academy, require_charges=False)
                outcome = self.gateway.retrieve_charge(
                    payment.provider_charge_id,
                    payment_id=str(payment.id),
                    account_id=context.sub_account_id,
                )
            except BillingError as exc:
                counters["failures"] += 1
                logger.warning("[SYNC] payment=%s could not be checked: %s", payment.id, exc.message)
                continue

            metadata = {"payment_id": str(payment.id)}
            if outcome is None:
                # The provider never created the charge.
                event = PaymentFailed(
                    event_id=f"sync-{payment.id}",
                    charge_id=None,
                    amount_cents=payment.amount_cents,
                    currency=payment.currency,
                    failure_code="charge_not_found",
                    failure_message=GENERIC_FAILURE_MESSAGE,
                    metadata=metadata,
                )
            elif outcome.status == PaymentStatus.SUCCEEDED.value:
                event = PaymentSucceeded(
                    event_id=f"sync-{payment.id}",
                    charge_id=outcome.charge_id,
                    amount_cents=payment.amount_cents,
                    currency=payment.currency,
                    metadata=metadata,
                )
            elif outcome.status == PaymentStatus.FAILED.value:
                event = PaymentFailed(
                    event_id=f"sync-{payment.id}",
                    charge_id=outcome.charge_id,
                    amount_cents=payment.amount_cents,
                    currency=payment.currency,
                    failure_code=outcome.failure_code,
                    failure_message=outcome.failure_message or user_message(outcome.failure_code),
                    metadata=metadata,
                )
            elif outcome.status == PaymentStatus.REQUIRES_ACTION.value:
                payment.status = PaymentStatus.REQUIRES_ACTION.value
                payment.provider_charge_id = payment.provider_charge_id or outcome.charge_id
                payment.failure_code = outcome.failure_code or "authentication_required"
                payment.updated_at = utcnow()
                self.session.add(payment)
                self.session.commit()
                counters["requires_action"] += 1
                continue
            else:
                counters["pending"] += 1
                continue

            result = reconciler.handle(event, today=now.date())
            if result == "applied":
                counters["settled"] += 1
            logger.info("[SYNC] payment=%s provider status %s -> %s", payment.id, event.__class__.__name__, result)
        logger.info("[SYNC] processing payments checked: %s", counters)
        return counters

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _ensure_cycle_chargeable(self, cycle: BillingCycle, subscription: MembershipSubscription | None) -> None:
        if subscription is None or subscription.status != SubscriptionStatus.ACTIVE.value:
            raise StateConflictError("Subscription is not active")
        if subscription.billing_mode == BillingMode.PROVIDER_SUBSCRIPTION.value:
            raise StateConflictError("Cycle is billed by the provider subscription")
        if cycle.status not in CHARGEABLE_CYCLE_STATUSES:
            raise StateConflictError(f"Cycle is {cycle.status}; nothing to charge")
        if active_freeze_covering(self.session, subscription.id, cycle.scheduled_date):
            raise StateConflictError("Cycle falls inside an active freeze")
        in_flight = self.session.exec(
            select(Payment).where(
                Payment.billing_cycle_id == cycle.id,
                Payment.status == PaymentStatus.PROCESSING.value,
            )
        ).first()
        if in_flight:
            raise StateConflictError("A charge for this cycle is awaiting confirmation")

    def _resolve_method(
        self, academy_id: UUID, contact: Contact, payment_method_id: UUID | None
    ) -> tuple[PaymentMethod, Contact]:
        if payment_method_id is not None:
            method = self.router.get_payment_method(academy_id, payment_method_id)
            payer = self.session.get(Contact, method.contact_id)
            if payer.id not in {contact.id, contact.parent_id}:
                raise ValidationError("Payment method does not belong to this contact or guardian")
            return method, payer
        resolved = self.router.get_default_payment_method(contact)
        if resolved is None:
            raise PaymentMethodRequiredError("No default payment method on file for this contact")
        return resolved

    def _attempt_count(self, cycle_id: UUID) -> int:
        return self.session.exec(
            select(func.count()).select_from(Payment).where(Payment.billing_cycle_id == cycle_id)
        ).one()

    def _execute(
        self,
        *,
        academy: Academy,
        account_id: str | None,
        customer_id: str,
        contact: Contact,
        method: PaymentMethod,
        amount_cents: int,
        description: str | None,
        idempotency_key: str,
        cycle: BillingCycle | None,
        subscription: MembershipSubscription | None,
    ) -> ChargeResult:
        payment = Payment(
            academy_id=academy.id,
            contact_id=contact.id,
            billing_cycle_id=cycle.id if cycle else None,
            subscription_id=subscription.id if subscription else None,
            payment_method_id=method.id,
            amount_cents=amount_cents,
            currency=academy.currency or settings.default_currency,
            description=description,
            status=PaymentStatus.PROCESSING.value,
            idempotency_key=idempotency_key,
        )
        self.session.add(payment)
        try:
            self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            raise StateConflictError("This charge was already submitted") from exc
        self.session.refresh(payment)

        metadata = {"payment_id": str(payment.id), "academy_id": str(academy.id)}
        if cycle:
            metadata["billing_cycle_id"] = str(cycle.id)
        if subscription:
            metadata["subscription_id"] = str(subscription.id)

        try:
            outcome = self.gateway.charge(
                amount_cents=amount_cents,
                currency=payment.currency,
                customer_id=customer_id,
                payment_method_id=method.provider_payment_method_id,
                account_id=account_id,
                idempotency_key=idempotency_key,
                description=description,
                metadata=metadata,
            )
        except ProviderTransientError as exc:
            # Outcome unknown: the payment stays processing until an event settles it.
            logger.warning("[CHARGE] payment=%s outcome unknown: %s", payment.id, exc.message)
            if cycle:
                cycle.last_attempt_at = utcnow()
                self.session.add(cycle)
                self.session.commit()
            return ChargeResult(
                status=PaymentStatus.PROCESSING.value,
                payment_id=payment.id,
                billing_cycle_id=cycle.id if cycle else None,
                message="payment outcome pending confirmation",
            )
        except BillingError as exc:
            # The provider refused the call outright: nothing was charged.
            self._record_rejection(payment, cycle, exc)
            raise

        now = utcnow()
        payment.provider_charge_id = outcome.charge_id
        payment.updated_at = now
        if cycle:
            cycle.last_attempt_at = now

        if outcome.status == PaymentStatus.SUCCEEDED.value:
            payment.status = PaymentStatus.SUCCEEDED.value
            payment.paid_at = now
            if cycle:
                self._mark_cycle_paid(cycle, subscription, now)
        elif outcome.status == PaymentStatus.REQUIRES_ACTION.value:
            payment.status = PaymentStatus.REQUIRES_ACTION.value
            payment.failure_code = outcome.failure_code or "authentication_required"
        elif outcome.status == PaymentStatus.FAILED.value:
            payment.status = PaymentStatus.FAILED.value
            payment.failure_code = outcome.failure_code
            payment.failure_reason = outcome.failure_message or user_message(outcome.failure_code)
            if cycle:
                cycle.retry_count += 1
                cycle.failure_reason = payment.failure_reason
        self.session.add(payment)
        if cycle:
            cycle.updated_at = now
            self.session.add(cycle)
        self.session.commit()

        self.audit.record_event(
            academy_id=academy.id,
            event_type=f"charge_{payment.status}",
            subject_id=payment.id,
            details={
                "amount_cents": amount_cents,
                "billing_cycle_id": str(cycle.id) if cycle else None,
                "failure_code": payment.failure_code,
            },
        )
        log = logger.info if payment.status == PaymentStatus.SUCCEEDED.value else logger.warning
        log(
            "[CHARGE] payment=%s cycle=%s status=%s reason=%s",
            payment.id,
            cycle.id if cycle else None,
            payment.status,
            payment.failure_reason,
        )
        return self._result_from_payment(payment, client_secret=outcome.client_secret)

    def _record_rejection(self, payment: Payment, cycle: BillingCycle | None, exc: BillingError) -> None:
        now = utcnow()
        payment.status = PaymentStatus.FAILED.value
        payment.failure_code = "provider_rejected"
        payment.failure_reason = exc.message
        payment.updated_at = now
        self.session.add(payment)
        if cycle:
            cycle.retry_count += 1
            cycle.last_attempt_at = now
            cycle.failure_reason = exc.message
            cycle.updated_at = now
            self.session.add(cycle)
        self.session.commit()
        self.audit.record_event(
            academy_id=payment.academy_id,
            event_type="charge_failed",
            subject_id=payment.id,
            details={
                "amount_cents": payment.amount_cents,
                "billing_cycle_id": str(cycle.id) if cycle else None,
                "failure_code": payment.failure_code,
            },
        )
        logger.error("[CHARGE] payment=%s rejected by provider: %s", payment.id, exc.message)

    def _mark_cycle_paid(
        self, cycle: BillingCycle, subscription: MembershipSubscription | None, paid_at: datetime
    ) -> None:
        cycle.status = CycleStatus.PAID.value
        cycle.paid_at = paid_at
        cycle.failure_reason = None
        self.session.add(cycle)
        if subscription is not None:
            self.session.flush()
            self.schedule.generate_next_cycle(subscription)

    def _result_from_payment(self, payment: Payment, client_secret: str | None = None) -> ChargeResult:
        message = None
        if payment.status == PaymentStatus.REQUIRES_ACTION.value:
            message = user_message("authentication_required")
        elif payment.status == PaymentStatus.FAILED.value:
            message = user_message(payment.failure_code)
        elif payment.status == PaymentStatus.PROCESSING.value:
            message = "payment outcome pending confirmation"
        return ChargeResult(
            status=payment.status,
            payment_id=payment.id,
            billing_cycle_id=payment.billing_cycle_id,
            message=message,
            client_secret=client_secret,
        )
