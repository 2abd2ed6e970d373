from __future__ import annotations

from datetime import date, datetime
from enum import Enum
from uuid import UUID

from sqlalchemy import UniqueConstraint
from sqlmodel import Field

from academy_billing.models.base import TimestampedModel, UUIDModel, utcnow


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class BillingMode(str, Enum):
    INSTALLMENTS = "installments"
    PROVIDER_SUBSCRIPTION = "provider_subscription"
    MANUAL = "manual"


class CycleStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    OVERDUE = "overdue"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


class FreezeStatus(str, Enum):
    ACTIVE = "active"
    ENDED = "ended"


CHARGEABLE_CYCLE_STATUSES = (CycleStatus.PENDING.value, CycleStatus.OVERDUE.value)


class MembershipPlan(UUIDModel, TimestampedModel, table=True):
    __tablename__ = "membership_plans"

    academy_id: UUID = Field(foreign_key="academies.id", index=True)
    name: str
    base_price_cents: int
    cycle_length_months: int = Field(default=1)
    is_recurring: bool = Field(default=False)
    # Fixed-term plans carry the number of installments; open recurring plans leave it empty
    total_installments: int | None = Field(default=None)
    # Installments of the initial commitment; later cycles are renewals
    commitment_installments: int | None = Field(default=None)
    is_active: bool = Field(default=True)

    @property
    def is_fixed_term(self) -> bool:
        return self.total_installments is not None


class MembershipSubscription(UUIDModel, TimestampedModel, table=True):
    __tablename__ = "membership_subscriptions"

    academy_id: UUID = Field(foreign_key="academies.id", index=True)
    contact_id: UUID = Field(foreign_key="contacts.id", index=True)
    plan_id: UUID = Field(foreign_key="membership_plans.id")
    status: str = Field(default=SubscriptionStatus.ACTIVE.value, index=True)
    billing_mode: str = Field(default=BillingMode.INSTALLMENTS.value)
    start_date: date
    auto_renewal: bool = Field(default=False)
    renewal_discount_percentage: int = Field(default=0)
    term_number: int = Field(default=1)
    provider_subscription_id: str | None = Field(default=None, unique=True, max_length=64)
    cancelled_at: datetime | None = Field(default=None)


class BillingCycle(UUIDModel, TimestampedModel, table=True):
    __tablename__ = "billing_cycles"
    __table_args__ = (
        UniqueConstraint("subscription_id", "installment_number", name="uq_billing_cycles_installment"),
    )

    academy_id: UUID = Field(foreign_key="academies.id", index=True)
    subscription_id: UUID = Field(foreign_key="membership_subscriptions.id", index=True)
    installment_number: int
    # None means open ended: the next cycle is generated on demand
    total_installments: int | None = Field(default=None)
    scheduled_date: date = Field(index=True)
    amount_cents: int
    status: str = Field(default=CycleStatus.PENDING.value, index=True)
    retry_count: int = Field(default=0)
    last_attempt_at: datetime | None = Field(default=None)
    paid_at: datetime | None = Field(default=None)
    failure_reason: str | None = Field(default=None)
    freeze_compensation: bool = Field(default=False)
    freeze_id: UUID | None = Field(default=None, foreign_key="membership_freezes.id")


class MembershipFreeze(UUIDModel, TimestampedModel, table=True):
    __tablename__ = "membership_freezes"

    academy_id: UUID = Field(foreign_key="academies.id", index=True)
    subscription_id: UUID = Field(foreign_key="membership_subscriptions.id", index=True)
    start_date: date
    end_date: date | None = Field(default=None)
    frozen_amount_cents: int = Field(default=0)
    reason: str | None = Field(default=None)
    status: str = Field(default=FreezeStatus.ACTIVE.value)
    # Holds the subscription id while the freeze is active: one active freeze per subscription
    active_slot: UUID | None = Field(default=None, unique=True)
    ended_at: datetime | None = Field(default=None)


class ScheduleExtension(UUIDModel, table=True):
    __tablename__ = "schedule_extensions"

    freeze_id: UUID = Field(foreign_key="membership_freezes.id", unique=True)
    subscription_id: UUID = Field(foreign_key="membership_subscriptions.id", index=True)
    months_added: int
    applied_at: datetime = Field(default_factory=utcnow, nullable=False)
