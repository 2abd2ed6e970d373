from __future__ import annotations

from datetime import date
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from academy_billing.core.errors import (
    NotFoundError,
    OverlappingFreezeError,
    StateConflictError,
    ValidationError,
)
from academy_billing.core.logging_setup import logger
from academy_billing.models.base import utcnow
from academy_billing.models.billing import (
    BillingCycle,
    CycleStatus,
    FreezeStatus,
    MembershipFreeze,
    MembershipPlan,
    MembershipSubscription,
    ScheduleExtension,
    SubscriptionStatus,
)
from academy_billing.services.schedule import ScheduleService, add_months


def freeze_duration_months(start_date: date, end_date: date) -> int:
    """Whole calendar months needed to cover ``[start_date, end_date)``, rounded up."""
    if end_date <= start_date:
        return 0
    months = (end_date.year - start_date.year) * 12 + (end_date.month - start_date.month)
    while add_months(start_date, months) < end_date:
        months += 1
    while months > 0 and add_months(start_date, months - 1) >= end_date:
        months -= 1
    return months


def windows_overlap(a_start: date, a_end: date | None, b_start: date, b_end: date | None) -> bool:
    a_stop = a_end or date.max
    b_stop = b_end or date.max
    return a_start < b_stop and b_start < a_stop


def active_freeze_covering(session: Session, subscription_id: UUID, on: date) -> MembershipFreeze | None:
    freeze = session.exec(
        select(MembershipFreeze).where(
            MembershipFreeze.subscription_id == subscription_id,
            MembershipFreeze.status == FreezeStatus.ACTIVE.value,
        )
    ).first()
    if freeze and freeze.start_date <= on and (freeze.end_date is None or on < freeze.end_date):
        return freeze
    return None


class FreezeService:
    def __init__(self, session: Session) -> None:
        self.session = session
        self.schedule = ScheduleService(session)

    def get_freeze(self, academy_id: UUID, freeze_id: UUID) -> MembershipFreeze:
        freeze = self.session.get(MembershipFreeze, freeze_id)
        if not freeze or freeze.academy_id != academy_id:
            raise NotFoundError("Freeze not found")
        return freeze

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------
    def apply_freeze(
        self,
        academy_id: UUID,
        subscription_id: UUID,
        *,
        start_date: date,
        end_date: date | None = None,
        frozen_amount_cents: int = 0,
        reason: str | None = None,
    ) -> tuple[MembershipFreeze, list[BillingCycle]]:
        if end_date is not None and end_date < start_date:
            raise ValidationError("end_date must not be before start_date")
        if frozen_amount_cents < 0:
            raise ValidationError("frozen_amount_cents must not be negative")

        subscription = self.schedule.get_subscription(academy_id, subscription_id)
        if subscription.status != SubscriptionStatus.ACTIVE.value:
            raise StateConflictError("Only active subscriptions can be frozen")

        self._end_freezes_closing_before(subscription.id, start_date)
        self._check_overlap(subscription.id, start_date, end_date)

        freeze = MembershipFreeze(
            academy_id=academy_id,
            subscription_id=subscription.id,
            start_date=start_date,
            end_date=end_date,
            frozen_amount_cents=frozen_amount_cents,
            reason=reason,
            status=FreezeStatus.ACTIVE.value,
            active_slot=subscription.id,
        )
        self.session.add(freeze)
        try:
            self.session.flush()
            affected: list[BillingCycle] = []
            if end_date is not None:
                affected = self._extend(subscription, freeze)
            self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            logger.warning("[FREEZE] concurrent freeze rejected for subscription=%s", subscription_id)
            raise OverlappingFreezeError() from exc

        self.session.refresh(freeze)
        logger.info(
            "[FREEZE] created freeze=%s subscription=%s window=%s..%s affected=%s",
            freeze.id,
            subscription.id,
            start_date,
            end_date,
            len(affected),
        )
        return freeze, affected

    # ------------------------------------------------------------------
    # Close
    # ------------------------------------------------------------------
    def close_freeze(self, academy_id: UUID, freeze_id: UUID, end_date: date) -> list[BillingCycle]:
        freeze = self.get_freeze(academy_id, freeze_id)
        if freeze.status == FreezeStatus.ENDED.value:
            if freeze.end_date == end_date:
                return self._cycles_for(freeze)
            raise StateConflictError(f"Freeze already ended on {freeze.end_date}")
        if end_date < freeze.start_date:
            raise ValidationError("end_date must not be before start_date")
        if freeze.end_date is not None and freeze.end_date != end_date:
            raise StateConflictError(f"Freeze is already scheduled to end on {freeze.end_date}")

        subscription = self.session.get(MembershipSubscription, freeze.subscription_id)
        freeze.end_date = end_date
        freeze.status = FreezeStatus.ENDED.value
        freeze.active_slot = None
        freeze.ended_at = utcnow()
        freeze.updated_at = freeze.ended_at
        self.session.add(freeze)
        try:
            self._extend(subscription, freeze)
            self.session.commit()
        except IntegrityError:
            # A concurrent close of the same freeze won; its schedule is the result.
            self.session.rollback()
            freeze = self.get_freeze(academy_id, freeze_id)
            if freeze.status != FreezeStatus.ENDED.value or freeze.end_date != end_date:
                raise StateConflictError("Freeze was modified concurrently")
        logger.info("[FREEZE] closed freeze=%s on %s", freeze_id, end_date)
        return self._cycles_for(freeze)

    # ------------------------------------------------------------------
    # Cancel (undo)
    # ------------------------------------------------------------------
    def cancel_freeze(self, academy_id: UUID, freeze_id: UUID) -> list[BillingCycle]:
        """End a freeze and undo its schedule changes."""
        freeze = self.get_freeze(academy_id, freeze_id)
        cycles = self.schedule.list_cycles(freeze.subscription_id)
        compensation = [c for c in cycles if c.freeze_id == freeze.id and c.freeze_compensation]
        if any(c.status == CycleStatus.PAID.value for c in compensation):
            raise StateConflictError("Compensation cycles of this freeze were already paid")

        now = utcnow()
        restored: list[BillingCycle] = []
        for cycle in cycles:
            if cycle.freeze_id == freeze.id and not cycle.freeze_compensation and cycle.status == CycleStatus.SKIPPED.value:
                cycle.status = CycleStatus.PENDING.value
                cycle.freeze_id = None
                cycle.updated_at = now
                self.session.add(cycle)
                restored.append(cycle)
        for cycle in compensation:
            self.session.delete(cycle)
        extension = self.session.exec(
            select(ScheduleExtension).where(ScheduleExtension.freeze_id == freeze.id)
        ).first()
        if extension:
            self.session.delete(extension)

        freeze.status = FreezeStatus.ENDED.value
        freeze.active_slot = None
        freeze.ended_at = freeze.ended_at or now
        freeze.updated_at = now
        self.session.add(freeze)
        self.session.flush()

        if compensation:
            self._renumber(freeze.subscription_id)
        self.session.commit()
        logger.info(
            "[FREEZE] cancelled freeze=%s removed=%s restored=%s",
            freeze.id,
            len(compensation),
            len(restored),
        )
        return self.schedule.list_cycles(freeze.subscription_id)

    def expire_elapsed_freezes(self, today: date) -> int:
        """End active freezes whose end date has passed."""
        freezes = self.session.exec(
            select(MembershipFreeze).where(
                MembershipFreeze.status == FreezeStatus.ACTIVE.value,
                MembershipFreeze.end_date.is_not(None),
                MembershipFreeze.end_date < today,
            )
        ).all()
        now = utcnow()
        for freeze in freezes:
            freeze.status = FreezeStatus.ENDED.value
            freeze.active_slot = None
            freeze.ended_at = now
            self.session.add(freeze)
        if freezes:
            self.session.commit()
            logger.info("[FREEZE] expired %s elapsed freeze(s)", len(freezes))
        return len(freezes)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _end_freezes_closing_before(self, subscription_id: UUID, start_date: date) -> None:
        freezes = self.session.exec(
            select(MembershipFreeze).where(
                MembershipFreeze.subscription_id == subscription_id,
                MembershipFreeze.status == FreezeStatus.ACTIVE.value,
                MembershipFreeze.end_date.is_not(None),
                MembershipFreeze.end_date <= start_date,
            )
        ).all()
        now = utcnow()
        for freeze in freezes:
            freeze.status = FreezeStatus.ENDED.value
            freeze.active_slot = None
            freeze.ended_at = now
            self.session.add(freeze)
        if freezes:
            self.session.flush()

    def _check_overlap(self, subscription_id: UUID, start_date: date, end_date: date | None) -> None:
        existing = self.session.exec(
            select(MembershipFreeze).where(MembershipFreeze.subscription_id == subscription_id)
        ).all()
        extended = set(
            self.session.exec(
                select(ScheduleExtension.freeze_id).where(ScheduleExtension.subscription_id == subscription_id)
            ).all()
        )
        for other in existing:
            if other.status == FreezeStatus.ACTIVE.value:
                raise OverlappingFreezeError(f"Subscription already has an active freeze ({other.id})")
            if other.id in extended and windows_overlap(other.start_date, other.end_date, start_date, end_date):
                raise OverlappingFreezeError(f"Freeze window overlaps freeze {other.id}")

    def _extend(self, subscription: MembershipSubscription, freeze: MembershipFreeze) -> list[BillingCycle]:
        """Suspend in-window cycles and append compensating cycles, once per freeze.

        The ``schedule_extensions`` row keyed by ``freeze.id`` is the applied
        marker; a replay finds it and changes nothing. Does not commit.
        """
        already = self.session.exec(
            select(ScheduleExtension).where(ScheduleExtension.freeze_id == freeze.id)
        ).first()
        if already:
            logger.info("[FREEZE] extension for freeze=%s already applied", freeze.id)
            return []

        now = utcnow()
        affected: list[BillingCycle] = []
        cycles = self.schedule.list_cycles(subscription.id)
        for cycle in cycles:
            inside = freeze.start_date <= cycle.scheduled_date < freeze.end_date
            if inside and cycle.status == CycleStatus.PENDING.value:
                cycle.status = CycleStatus.SKIPPED.value
                cycle.freeze_id = freeze.id
                cycle.updated_at = now
                self.session.add(cycle)
                affected.append(cycle)

        plan = self.session.get(MembershipPlan, subscription.plan_id)
        months = freeze_duration_months(freeze.start_date, freeze.end_date)
        live = [c for c in cycles if c.status != CycleStatus.CANCELLED.value]
        if plan is None or not plan.is_fixed_term:
            logger.info("[FREEZE] subscription=%s is open recurring; schedule not extended", subscription.id)
            months = 0
        elif months > 0 and live:
            last = live[-1]
            new_total = (last.total_installments or last.installment_number) + months
            for cycle in cycles:
                cycle.total_installments = new_total
                cycle.updated_at = now
                self.session.add(cycle)
                if cycle not in affected:
                    affected.append(cycle)
            scheduled = last.scheduled_date
            for offset in range(1, months + 1):
                scheduled = add_months(scheduled, plan.cycle_length_months)
                appended = BillingCycle(
                    academy_id=subscription.academy_id,
                    subscription_id=subscription.id,
                    installment_number=last.installment_number + offset,
                    total_installments=new_total,
                    scheduled_date=scheduled,
                    amount_cents=last.amount_cents,
                    freeze_compensation=True,
                    freeze_id=freeze.id,
                )
                self.session.add(appended)
                affected.append(appended)
            logger.info(
                "[FREEZE] subscription=%s extended by %s cycle(s) for freeze=%s",
                subscription.id,
                months,
                freeze.id,
            )

        self.session.add(
            ScheduleExtension(freeze_id=freeze.id, subscription_id=subscription.id, months_added=months)
        )
        self.session.flush()
        return sorted(affected, key=lambda c: c.installment_number)

    def _cycles_for(self, freeze: MembershipFreeze) -> list[BillingCycle]:
        return self.schedule.list_cycles(freeze.subscription_id)

    def _renumber(self, subscription_id: UUID) -> None:
        cycles = self.schedule.list_cycles(subscription_id)
        live = [c for c in cycles if c.status != CycleStatus.CANCELLED.value]
        # Two passes keep (subscription_id, installment_number) unique during the flush.
        for cycle in cycles:
            cycle.installment_number = -cycle.installment_number
            self.session.add(cycle)
        self.session.flush()
        number = 0
        for cycle in cycles:
            number += 1
            cycle.installment_number = number
            if cycle in live and cycle.total_installments is not None:
                cycle.total_installments = len(live)
            self.session.add(cycle)
        self.session.flush()
