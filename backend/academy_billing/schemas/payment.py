from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, Field

from academy_billing.schemas.common import IDModel, Timestamped


class ChargeCreate(BaseModel):
    contact_id: UUID
    amount_cents: int = Field(gt=0)
    description: str | None = Field(default=None, max_length=500)
    billing_cycle_id: UUID | None = None
    request_id: str | None = Field(default=None, max_length=64)


class CycleChargeCreate(BaseModel):
    payment_method_id: UUID | None = None


class ChargeRead(BaseModel):
    status: str
    payment_id: UUID | None = None
    billing_cycle_id: UUID | None = None
    message: str | None = None
    client_secret: str | None = None


class RefundCreate(BaseModel):
    # Omitted amount refunds the whole remaining balance
    amount_cents: int | None = Field(default=None, gt=0)
    reason: str | None = Field(default=None, max_length=500)
    request_id: str | None = Field(default=None, max_length=64)


class RefundRead(IDModel, Timestamped):
    payment_id: UUID
    amount_cents: int
    reason: str | None = None
    status: str
    provider_refund_id: str | None = None
    failure_reason: str | None = None
    refunded_at: datetime | None = None


class PaymentMethodCreate(BaseModel):
    provider_payment_method_id: str = Field(min_length=1, max_length=64)
    make_default: bool = False


class PaymentMethodRead(IDModel, Timestamped):
    contact_id: UUID
    provider_payment_method_id: str
    type: str
    brand: str | None = None
    last4: str | None = None
    bank_name: str | None = None
    is_default: bool
    label: str


class ClientSecretRead(BaseModel):
    client_secret: str


class PortalSessionCreate(BaseModel):
    return_url: str | None = None


class PortalSessionRead(BaseModel):
    url: str


class WebhookAck(BaseModel):
    ok: bool = True
    outcome: str
