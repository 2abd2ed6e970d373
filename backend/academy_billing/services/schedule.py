from __future__ import annotations

from datetime import date
from typing import Iterable
from uuid import UUID

from dateutil.relativedelta import relativedelta
from sqlmodel import Session, select

from academy_billing.core.errors import (
    BillingError,
    InvalidPlanError,
    NotFoundError,
    StateConflictError,
    ValidationError,
)
from academy_billing.core.logging_setup import logger
from academy_billing.models.base import utcnow
from academy_billing.models.billing import (
    BillingCycle,
    BillingMode,
    CycleStatus,
    FreezeStatus,
    MembershipFreeze,
    MembershipPlan,
    MembershipSubscription,
    SubscriptionStatus,
)
from academy_billing.models.contact import Contact


def add_months(value: date, months: int) -> date:
    """Calendar-month arithmetic, clamping the day to the end of shorter months."""
    return value + relativedelta(months=months)


def discounted_amount(price_cents: int, percentage: int) -> int:
    if not percentage:
        return price_cents
    return (price_cents * (100 - percentage)) // 100


def validate_plan(plan: MembershipPlan, discount_percentage: int = 0) -> None:
    if plan.cycle_length_months is None or plan.cycle_length_months <= 0:
        raise InvalidPlanError("cycle_length_months must be positive")
    if plan.base_price_cents is None or plan.base_price_cents < 0:
        raise InvalidPlanError("base_price_cents must not be negative")
    if plan.total_installments is not None and plan.total_installments < 1:
        raise InvalidPlanError("total_installments must be at least 1")
    if plan.commitment_installments is not None and plan.commitment_installments < 0:
        raise InvalidPlanError("commitment_installments must not be negative")
    if not 0 <= (discount_percentage or 0) <= 100:
        raise InvalidPlanError("renewal discount must be between 0 and 100")


def cycle_amount(plan: MembershipPlan, subscription: MembershipSubscription, installment_number: int) -> int:
    boundary = plan.commitment_installments
    if boundary is not None and installment_number > boundary:
        return discounted_amount(plan.base_price_cents, subscription.renewal_discount_percentage)
    return plan.base_price_cents


def renewal_price(plan: MembershipPlan, subscription: MembershipSubscription) -> int:
    return discounted_amount(plan.base_price_cents, subscription.renewal_discount_percentage)


def generate(subscription: MembershipSubscription, plan: MembershipPlan, start_date: date) -> list[BillingCycle]:
    """Build the ordered billing cycles of a new subscription (not yet persisted).

    Fixed-term plans get every installment up front. Open recurring plans get
    only the first cycle with ``total_installments=None``; later cycles come
    from :func:`next_cycle`.
    """
    validate_plan(plan, subscription.renewal_discount_percentage)
    count = plan.total_installments if plan.is_fixed_term else 1
    cycles: list[BillingCycle] = []
    scheduled = start_date
    for number in range(1, count + 1):
        if number > 1:
            scheduled = add_months(scheduled, plan.cycle_length_months)
        cycles.append(
            BillingCycle(
                academy_id=subscription.academy_id,
                subscription_id=subscription.id,
                installment_number=number,
                total_installments=plan.total_installments,
                scheduled_date=scheduled,
                amount_cents=cycle_amount(plan, subscription, number),
            )
        )
    return cycles


def next_cycle(subscription: MembershipSubscription, plan: MembershipPlan, last: BillingCycle) -> BillingCycle:
    number = last.installment_number + 1
    return BillingCycle(
        academy_id=subscription.academy_id,
        subscription_id=subscription.id,
        installment_number=number,
        total_installments=None,
        scheduled_date=add_months(last.scheduled_date, plan.cycle_length_months),
        amount_cents=cycle_amount(plan, subscription, number),
    )


class ScheduleService:
    def __init__(self, session: Session) -> None:
        self.session = session

    # ------------------------------------------------------------------
    # Plans
    # ------------------------------------------------------------------
    def create_plan(self, academy_id: UUID, **fields) -> MembershipPlan:
        plan = MembershipPlan(academy_id=academy_id, **fields)
        validate_plan(plan)
        self.session.add(plan)
        self.session.commit()
        self.session.refresh(plan)
        return plan

    def list_plans(self, academy_id: UUID) -> Iterable[MembershipPlan]:
        return self.session.exec(
            select(MembershipPlan)
            .where(MembershipPlan.academy_id == academy_id, MembershipPlan.is_active.is_(True))
            .order_by(MembershipPlan.base_price_cents)
        ).all()

    def get_plan(self, academy_id: UUID, plan_id: UUID) -> MembershipPlan:
        plan = self.session.get(MembershipPlan, plan_id)
        if not plan or plan.academy_id != academy_id:
            raise NotFoundError("Plan not found")
        return plan

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------
    def get_subscription(self, academy_id: UUID, subscription_id: UUID) -> MembershipSubscription:
        subscription = self.session.get(MembershipSubscription, subscription_id)
        if not subscription or subscription.academy_id != academy_id:
            raise NotFoundError("Subscription not found")
        return subscription

    def create_subscription(
        self,
        academy_id: UUID,
        *,
        contact_id: UUID,
        plan_id: UUID,
        start_date: date,
        billing_mode: str = BillingMode.INSTALLMENTS.value,
        auto_renewal: bool = False,
        renewal_discount_percentage: int = 0,
    ) -> tuple[MembershipSubscription, list[BillingCycle]]:
        contact = self.session.get(Contact, contact_id)
        if not contact or contact.academy_id != academy_id:
            raise NotFoundError("Contact not found")
        plan = self.get_plan(academy_id, plan_id)
        if not plan.is_active:
            raise ValidationError("Plan not available")
        if billing_mode not in {mode.value for mode in BillingMode}:
            raise ValidationError(f"Unknown billing mode: {billing_mode}")

        subscription = MembershipSubscription(
            academy_id=academy_id,
            contact_id=contact_id,
            plan_id=plan.id,
            start_date=start_date,
            billing_mode=billing_mode,
            auto_renewal=auto_renewal,
            renewal_discount_percentage=renewal_discount_percentage,
        )
        cycles = generate(subscription, plan, start_date)
        self.session.add(subscription)
        self.session.add_all(cycles)
        self.session.commit()
        self.session.refresh(subscription)
        logger.info(
            "[SCHEDULE] subscription=%s created with %s cycle(s) starting %s",
            subscription.id,
            len(cycles),
            start_date,
        )
        return subscription, self.list_cycles(subscription.id)

    def list_cycles(self, subscription_id: UUID, *, include_cancelled: bool = True) -> list[BillingCycle]:
        statement = select(BillingCycle).where(BillingCycle.subscription_id == subscription_id)
        if not include_cancelled:
            statement = statement.where(BillingCycle.status != CycleStatus.CANCELLED.value)
        return list(self.session.exec(statement.order_by(BillingCycle.installment_number)).all())

    def last_cycle(self, subscription_id: UUID) -> BillingCycle | None:
        return self.session.exec(
            select(BillingCycle)
            .where(BillingCycle.subscription_id == subscription_id)
            .order_by(BillingCycle.installment_number.desc())
        ).first()

    def generate_next_cycle(self, subscription: MembershipSubscription) -> BillingCycle | None:
        """Append the next cycle of an open recurring subscription.

        Only when the current last cycle is settled (paid or skipped), so the
        call is safe to repeat. Does not commit.
        """
        if subscription.status != SubscriptionStatus.ACTIVE.value:
            return None
        plan = self.session.get(MembershipPlan, subscription.plan_id)
        if plan is None or plan.is_fixed_term:
            return None
        last = self.last_cycle(subscription.id)
        if last is None:
            created = generate(subscription, plan, subscription.start_date)[0]
        elif last.status in {CycleStatus.PAID.value, CycleStatus.SKIPPED.value}:
            created = next_cycle(subscription, plan, last)
        else:
            return None
        self.session.add(created)
        logger.info(
            "[SCHEDULE] subscription=%s next cycle #%s on %s",
            subscription.id,
            created.installment_number,
            created.scheduled_date,
        )
        return created

    def renew_subscription(self, academy_id: UUID, subscription_id: UUID) -> list[BillingCycle]:
        """Append the next fixed term at the renewal price."""
        subscription = self.get_subscription(academy_id, subscription_id)
        if subscription.status != SubscriptionStatus.ACTIVE.value:
            raise StateConflictError("Only active subscriptions can be renewed")
        plan = self.session.get(MembershipPlan, subscription.plan_id)
        if plan is None or not plan.is_fixed_term:
            raise StateConflictError("Only fixed-term memberships have renewal terms")
        validate_plan(plan, subscription.renewal_discount_percentage)

        existing = self.list_cycles(subscription.id, include_cancelled=False)
        last = existing[-1]
        term = plan.total_installments
        new_total = (last.total_installments or last.installment_number) + term
        amount = renewal_price(plan, subscription)
        appended: list[BillingCycle] = []
        scheduled = last.scheduled_date
        for offset in range(1, term + 1):
            scheduled = add_months(scheduled, plan.cycle_length_months)
            appended.append(
                BillingCycle(
                    academy_id=subscription.academy_id,
                    subscription_id=subscription.id,
                    installment_number=last.installment_number + offset,
                    total_installments=new_total,
                    scheduled_date=scheduled,
                    amount_cents=amount,
                )
            )
        for cycle in existing:
            cycle.total_installments = new_total
            self.session.add(cycle)
        self.session.add_all(appended)
        subscription.term_number += 1
        subscription.updated_at = utcnow()
        self.session.add(subscription)
        self.session.commit()
        logger.info(
            "[SCHEDULE] subscription=%s renewed to term %s at %s cents",
            subscription.id,
            subscription.term_number,
            amount,
        )
        return self.list_cycles(subscription.id)

    def term_end(self, subscription: MembershipSubscription, plan: MembershipPlan) -> date | None:
        """First day no longer covered by the current fixed term."""
        cycles = self.list_cycles(subscription.id, include_cancelled=False)
        if not cycles:
            return None
        return add_months(cycles[-1].scheduled_date, plan.cycle_length_months)

    def process_term_ends(self, today: date) -> dict[str, int]:
        """Renew or expire fixed-term memberships whose term has run out.

        ``auto_renewal`` subscriptions get the next term appended; the others
        become ``expired``. Subscriptions under an active freeze wait until it
        ends. Provider-billed subscriptions are left to the provider.
        """
        statement = (
            select(MembershipSubscription, MembershipPlan)
            .join(MembershipPlan, MembershipPlan.id == MembershipSubscription.plan_id)
            .where(
                MembershipSubscription.status == SubscriptionStatus.ACTIVE.value,
                MembershipSubscription.billing_mode != BillingMode.PROVIDER_SUBSCRIPTION.value,
                MembershipPlan.total_installments.is_not(None),
            )
            .order_by(MembershipSubscription.created_at)
        )
        counters = {"renewed": 0, "expired": 0, "failures": 0}
        for subscription, plan in self.session.exec(statement).all():
            ends_on = self.term_end(subscription, plan)
            if ends_on is None or ends_on > today:
                continue
            frozen = self.session.exec(
                select(MembershipFreeze).where(
                    MembershipFreeze.subscription_id == subscription.id,
                    MembershipFreeze.status == FreezeStatus.ACTIVE.value,
                )
            ).first()
            if frozen:
                continue
            try:
                if subscription.auto_renewal:
                    self.renew_subscription(subscription.academy_id, subscription.id)
                    counters["renewed"] += 1
                else:
                    self.expire_subscription(subscription)
                    counters["expired"] += 1
            except BillingError as exc:
                self.session.rollback()
                counters["failures"] += 1
                logger.warning("[SCHEDULE] subscription=%s term end not processed: %s", subscription.id, exc.message)
        logger.info("[SCHEDULE] term ends processed on %s: %s", today, counters)
        return counters

    def expire_subscription(self, subscription: MembershipSubscription) -> MembershipSubscription:
        now = utcnow()
        outstanding = [
            c for c in self.list_cycles(subscription.id)
            if c.status in {CycleStatus.PENDING.value, CycleStatus.OVERDUE.value}
        ]
        subscription.status = SubscriptionStatus.EXPIRED.value
        subscription.updated_at = now
        self.session.add(subscription)
        self.session.commit()
        self.session.refresh(subscription)
        logger.info(
            "[SCHEDULE] subscription=%s expired at term end, %s unpaid cycle(s) outstanding",
            subscription.id,
            len(outstanding),
        )
        return subscription

    def cancel_subscription(self, academy_id: UUID, subscription_id: UUID) -> list[BillingCycle]:
        """Terminal cancel: every unpaid cycle is cancelled and freezes end."""
        subscription = self.get_subscription(academy_id, subscription_id)
        affected = self._cancel_unpaid_cycles(subscription, from_date=None)
        self.session.commit()
        return affected

    def cancel_for_provider(self, subscription: MembershipSubscription, today: date) -> list[BillingCycle]:
        """Cancellation driven by the provider: only future-dated unpaid cycles. Does not commit."""
        return self._cancel_unpaid_cycles(subscription, from_date=today)

    def _cancel_unpaid_cycles(self, subscription: MembershipSubscription, from_date: date | None) -> list[BillingCycle]:
        now = utcnow()
        affected: list[BillingCycle] = []
        for cycle in self.list_cycles(subscription.id):
            if cycle.status in {CycleStatus.PAID.value, CycleStatus.CANCELLED.value}:
                continue
            if from_date is not None and cycle.scheduled_date < from_date:
                continue
            cycle.status = CycleStatus.CANCELLED.value
            cycle.updated_at = now
            self.session.add(cycle)
            affected.append(cycle)
        freezes = self.session.exec(
            select(MembershipFreeze).where(
                MembershipFreeze.subscription_id == subscription.id,
                MembershipFreeze.status == FreezeStatus.ACTIVE.value,
            )
        ).all()
        for freeze in freezes:
            freeze.status = FreezeStatus.ENDED.value
            freeze.active_slot = None
            freeze.ended_at = now
            self.session.add(freeze)
        subscription.status = SubscriptionStatus.CANCELLED.value
        subscription.auto_renewal = False
        subscription.cancelled_at = now
        subscription.updated_at = now
        self.session.add(subscription)
        logger.info(
            "[SCHEDULE] subscription=%s cancelled, %s cycle(s) cancelled",
            subscription.id,
            len(affected),
        )
        return affected
