from __future__ import annotations

from uuid import UUID

from pydantic import BaseModel, Field

from academy_billing.schemas.common import IDModel, Timestamped


class ContactCreate(BaseModel):
    full_name: str = Field(min_length=1, max_length=255)
    email: str | None = None
    phone_number: str | None = None
    parent_id: UUID | None = None


class ContactRead(IDModel, Timestamped):
    academy_id: UUID
    full_name: str
    email: str | None = None
    phone_number: str | None = None
    parent_id: UUID | None = None
    provider_customer_id: str | None = None
