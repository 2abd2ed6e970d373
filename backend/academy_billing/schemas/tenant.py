from __future__ import annotations

from pydantic import BaseModel, Field

from academy_billing.schemas.common import IDModel, Timestamped


class AcademyCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    slug: str = Field(min_length=2, max_length=64, pattern=r"^[a-zA-Z0-9-]+$")
    email: str | None = None
    currency: str | None = Field(default=None, min_length=3, max_length=3)


class AcademyRead(IDModel, Timestamped):
    name: str
    slug: str
    email: str | None = None
    currency: str
    is_active: bool
    provider_account_id: str | None = None
    charges_enabled: bool
    payouts_enabled: bool
    details_submitted: bool


class PaymentAccountRead(BaseModel):
    academy: AcademyRead
    onboarding_url: str | None = None
