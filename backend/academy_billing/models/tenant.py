from sqlmodel import Field

from academy_billing.models.base import TimestampedModel, UUIDModel


class Academy(UUIDModel, TimestampedModel, table=True):
    __tablename__ = "academies"

    name: str = Field(index=True)
    slug: str = Field(unique=True, index=True)
    email: str | None = Field(default=None, max_length=255)
    currency: str = Field(default="usd", max_length=3)
    is_active: bool = Field(default=True)
    # Payment provider sub-account (connected account)
    provider_account_id: str | None = Field(default=None, max_length=64)
    charges_enabled: bool = Field(default=False)
    payouts_enabled: bool = Field(default=False)
    details_submitted: bool = Field(default=False)
