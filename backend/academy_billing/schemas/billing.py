from __future__ import annotations

from datetime import date, datetime
from uuid import UUID

from pydantic import BaseModel, Field

from academy_billing.models.billing import BillingMode
from academy_billing.schemas.common import IDModel, Timestamped


class PlanCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    base_price_cents: int
    cycle_length_months: int = 1
    is_recurring: bool = False
    total_installments: int | None = None
    commitment_installments: int | None = None


class PlanRead(IDModel, Timestamped):
    academy_id: UUID
    name: str
    base_price_cents: int
    cycle_length_months: int
    is_recurring: bool
    total_installments: int | None = None
    commitment_installments: int | None = None
    is_active: bool


class SubscriptionCreate(BaseModel):
    contact_id: UUID
    plan_id: UUID
    start_date: date
    billing_mode: BillingMode = BillingMode.INSTALLMENTS
    auto_renewal: bool = False
    renewal_discount_percentage: int = Field(default=0, ge=0, le=100)


class SubscriptionRead(IDModel, Timestamped):
    academy_id: UUID
    contact_id: UUID
    plan_id: UUID
    status: str
    billing_mode: str
    start_date: date
    auto_renewal: bool
    renewal_discount_percentage: int
    term_number: int
    provider_subscription_id: str | None = None
    cancelled_at: datetime | None = None


class BillingCycleRead(IDModel):
    subscription_id: UUID
    installment_number: int
    total_installments: int | None = None
    scheduled_date: date
    amount_cents: int
    status: str
    retry_count: int
    last_attempt_at: datetime | None = None
    paid_at: datetime | None = None
    failure_reason: str | None = None
    freeze_compensation: bool
    freeze_id: UUID | None = None


class SubscriptionWithCycles(BaseModel):
    subscription: SubscriptionRead
    cycles: list[BillingCycleRead]


class FreezeCreate(BaseModel):
    subscription_id: UUID
    start_date: date
    end_date: date | None = None
    frozen_amount_cents: int = Field(default=0, ge=0)
    reason: str | None = Field(default=None, max_length=500)


class FreezeClose(BaseModel):
    end_date: date


class FreezeRead(IDModel, Timestamped):
    subscription_id: UUID
    start_date: date
    end_date: date | None = None
    frozen_amount_cents: int
    reason: str | None = None
    status: str
    ended_at: datetime | None = None


class FreezeResult(BaseModel):
    freeze: FreezeRead | None = None
    cycles: list[BillingCycleRead]
