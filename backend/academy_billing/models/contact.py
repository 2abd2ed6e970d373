from __future__ import annotations

from uuid import UUID

from sqlmodel import Field

from academy_billing.models.base import TimestampedModel, UUIDModel


class Contact(UUIDModel, TimestampedModel, table=True):
    __tablename__ = "contacts"

    academy_id: UUID = Field(foreign_key="academies.id", index=True)
    full_name: str = Field(max_length=255)
    email: str | None = Field(default=None, max_length=255, index=True)
    phone_number: str | None = Field(default=None, max_length=32)
    # Guardian who pays for a minor student
    parent_id: UUID | None = Field(default=None, foreign_key="contacts.id")
    provider_customer_id: str | None = Field(default=None, max_length=64)
