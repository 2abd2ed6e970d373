from __future__ import annotations

from dataclasses import dataclass
from datetime import date, timedelta

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from academy_billing.core.config import settings
from academy_billing.core.logging_setup import logger
from academy_billing.models.base import utcnow
from academy_billing.models.billing import (
    CHARGEABLE_CYCLE_STATUSES,
    BillingCycle,
    CycleStatus,
    MembershipPlan,
    MembershipSubscription,
    SubscriptionStatus,
)
from academy_billing.models.contact import Contact
from academy_billing.models.notification import BillingReminder, ReminderKind
from academy_billing.models.payment import Payment, PaymentStatus
from academy_billing.models.tenant import Academy
from academy_billing.services.charges import latest_cycle_payment
from academy_billing.services.freeze import active_freeze_covering
from academy_billing.services.notification import ReminderNotifier


@dataclass
class DunningReport:
    overdue_marked: int = 0
    overdue_sent: int = 0
    upcoming_sent: int = 0
    action_required_sent: int = 0
    failures: int = 0

    def as_dict(self) -> dict[str, int]:
        return {
            "overdue_marked": self.overdue_marked,
            "overdue_sent": self.overdue_sent,
            "upcoming_sent": self.upcoming_sent,
            "action_required_sent": self.action_required_sent,
            "failures": self.failures,
        }


class DunningService:
    def __init__(self, session: Session, notifier: ReminderNotifier | None = None) -> None:
        self.session = session
        self.notifier = notifier or ReminderNotifier.from_settings(settings)

    def run_dunning(self, today: date) -> DunningReport:
        """Reclassify overdue cycles and send due reminders.

        Safe to re-run: the reminder ledger makes sends once per cycle per day
        (overdue), once per cycle (upcoming) or once per charge attempt
        (authentication required). A failed send is logged and retried by the
        next run.
        """
        report = DunningReport()
        cutoff = today - timedelta(days=max(settings.dunning_grace_days, 0))
        horizon = today + timedelta(days=max(settings.dunning_lead_days, 0))

        overdue = self._cycles(
            BillingCycle.status.in_(CHARGEABLE_CYCLE_STATUSES),
            BillingCycle.scheduled_date < cutoff,
        )
        for cycle, subscription in overdue:
            if active_freeze_covering(self.session, subscription.id, cycle.scheduled_date):
                continue
            if cycle.status == CycleStatus.PENDING.value:
                cycle.status = CycleStatus.OVERDUE.value
                cycle.updated_at = utcnow()
                self.session.add(cycle)
                self.session.commit()
                report.overdue_marked += 1
                logger.info("[DUNNING] cycle=%s overdue since %s", cycle.id, cycle.scheduled_date)
            if self._awaiting_authentication(cycle) is not None:
                continue
            if self._remind(cycle, subscription, ReminderKind.OVERDUE.value, today, reminder_date=today, report=report):
                report.overdue_sent += 1

        awaiting = self._cycles(
            BillingCycle.status.in_(CHARGEABLE_CYCLE_STATUSES),
            BillingCycle.id.in_(
                select(Payment.billing_cycle_id).where(Payment.status == PaymentStatus.REQUIRES_ACTION.value)
            ),
        )
        for cycle, subscription in awaiting:
            payment = self._awaiting_authentication(cycle)
            if payment is None or active_freeze_covering(self.session, subscription.id, cycle.scheduled_date):
                continue
            # Once per charge attempt
            if self._remind(
                cycle,
                subscription,
                ReminderKind.ACTION_REQUIRED.value,
                today,
                reminder_date=payment.created_at.date(),
                report=report,
            ):
                report.action_required_sent += 1

        upcoming = self._cycles(
            BillingCycle.status == CycleStatus.PENDING.value,
            BillingCycle.scheduled_date >= today,
            BillingCycle.scheduled_date <= horizon,
        )
        for cycle, subscription in upcoming:
            if active_freeze_covering(self.session, subscription.id, cycle.scheduled_date):
                continue
            if self._remind(
                cycle, subscription, ReminderKind.UPCOMING.value, today, reminder_date=cycle.scheduled_date, report=report
            ):
                report.upcoming_sent += 1

        logger.info("[DUNNING] run for %s finished: %s", today, report.as_dict())
        return report

    def _cycles(self, *conditions) -> list[tuple[BillingCycle, MembershipSubscription]]:
        statement = (
            select(BillingCycle, MembershipSubscription)
            .join(MembershipSubscription, MembershipSubscription.id == BillingCycle.subscription_id)
            .where(MembershipSubscription.status == SubscriptionStatus.ACTIVE.value, *conditions)
            .order_by(BillingCycle.scheduled_date)
        )
        return list(self.session.exec(statement).all())

    def _remind(
        self,
        cycle: BillingCycle,
        subscription: MembershipSubscription,
        kind: str,
        today: date,
        *,
        reminder_date: date,
        report: DunningReport,
    ) -> bool:
        already_sent = self.session.exec(
            select(BillingReminder).where(
                BillingReminder.billing_cycle_id == cycle.id,
                BillingReminder.kind == kind,
                BillingReminder.reminder_date == reminder_date,
            )
        ).first()
        if already_sent:
            return False

        try:
            academy = self.session.get(Academy, cycle.academy_id)
            contact = self._recipient(subscription)
            plan = self.session.get(MembershipPlan, subscription.plan_id)
            self.notifier.send_reminder(
                kind=kind,
                academy=academy,
                contact=contact,
                cycle=cycle,
                plan=plan,
                today=today,
            )
        except Exception as exc:  # noqa: BLE001
            report.failures += 1
            logger.warning("[DUNNING] %s reminder for cycle=%s failed: %s", kind, cycle.id, exc)
            return False

        self.session.add(
            BillingReminder(
                academy_id=cycle.academy_id,
                billing_cycle_id=cycle.id,
                contact_id=contact.id,
                kind=kind,
                reminder_date=reminder_date,
            )
        )
        try:
            self.session.commit()
        except IntegrityError:
            # Another run recorded the same reminder.
            self.session.rollback()
            return False
        return True

    def _awaiting_authentication(self, cycle: BillingCycle) -> Payment | None:
        payment = latest_cycle_payment(self.session, cycle.id)
        if payment is not None and payment.status == PaymentStatus.REQUIRES_ACTION.value:
            return payment
        return None

    def _recipient(self, subscription: MembershipSubscription) -> Contact:
        contact = self.session.get(Contact, subscription.contact_id)
        if contact and not contact.email and contact.parent_id:
            guardian = self.session.get(Contact, contact.parent_id)
            if guardian and guardian.email:
                return guardian
        return contact
