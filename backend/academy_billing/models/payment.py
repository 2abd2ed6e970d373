from __future__ import annotations

from datetime import datetime
from enum import Enum
from uuid import UUID

from sqlmodel import Field

from academy_billing.models.base import TimestampedModel, UUIDModel


class PaymentStatus(str, Enum):
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    REQUIRES_ACTION = "requires_action"
    FAILED = "failed"
    DISPUTED = "disputed"
    PARTIALLY_REFUNDED = "partially_refunded"
    REFUNDED = "refunded"


REFUNDABLE_PAYMENT_STATUSES = (
    PaymentStatus.SUCCEEDED.value,
    PaymentStatus.PARTIALLY_REFUNDED.value,
)


class RefundStatus(str, Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class PaymentMethod(UUIDModel, TimestampedModel, table=True):
    __tablename__ = "payment_methods"

    academy_id: UUID = Field(foreign_key="academies.id", index=True)
    contact_id: UUID = Field(foreign_key="contacts.id", index=True)
    provider_payment_method_id: str = Field(unique=True, max_length=64)
    type: str = Field(default="card", max_length=32)
    brand: str | None = Field(default=None, max_length=32)
    last4: str | None = Field(default=None, max_length=4)
    bank_name: str | None = Field(default=None, max_length=128)
    is_default: bool = Field(default=False)
    # Holds the contact id while this is the default method: one default per contact
    default_slot: UUID | None = Field(default=None, unique=True)
    is_active: bool = Field(default=True)

    @property
    def label(self) -> str:
        if self.type == "card":
            return f"{self.brand or 'card'} ****{self.last4 or '????'}"
        return f"{self.bank_name or self.type} ****{self.last4 or '????'}"


class Payment(UUIDModel, TimestampedModel, table=True):
    __tablename__ = "payments"

    academy_id: UUID = Field(foreign_key="academies.id", index=True)
    contact_id: UUID | None = Field(default=None, foreign_key="contacts.id", index=True)
    billing_cycle_id: UUID | None = Field(default=None, foreign_key="billing_cycles.id", index=True)
    subscription_id: UUID | None = Field(default=None, foreign_key="membership_subscriptions.id")
    payment_method_id: UUID | None = Field(default=None, foreign_key="payment_methods.id")
    amount_cents: int
    currency: str = Field(default="usd", max_length=3)
    description: str | None = Field(default=None)
    status: str = Field(default=PaymentStatus.PROCESSING.value, index=True)
    idempotency_key: str | None = Field(default=None, unique=True, max_length=128)
    provider_charge_id: str | None = Field(default=None, unique=True, max_length=128)
    failure_code: str | None = Field(default=None, max_length=64)
    failure_reason: str | None = Field(default=None)
    paid_at: datetime | None = Field(default=None)
    refunded_amount_cents: int = Field(default=0)


class ProviderEvent(UUIDModel, TimestampedModel, table=True):
    __tablename__ = "provider_events"

    event_id: str = Field(unique=True, max_length=128)
    event_type: str = Field(max_length=64)
    outcome: str = Field(default="applied", max_length=32)


class Refund(UUIDModel, TimestampedModel, table=True):
    __tablename__ = "refunds"

    academy_id: UUID = Field(foreign_key="academies.id", index=True)
    payment_id: UUID = Field(foreign_key="payments.id", index=True)
    amount_cents: int
    reason: str | None = Field(default=None)
    status: str = Field(default=RefundStatus.PENDING.value, index=True)
    idempotency_key: str = Field(unique=True, max_length=128)
    provider_refund_id: str | None = Field(default=None, unique=True, max_length=128)
    failure_reason: str | None = Field(default=None)
    refunded_at: datetime | None = Field(default=None)
