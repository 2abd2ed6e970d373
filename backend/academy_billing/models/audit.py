from __future__ import annotations

from uuid import UUID

from sqlalchemy import JSON
from sqlmodel import Field

from academy_billing.models.base import TimestampedModel, UUIDModel


class AuditLog(UUIDModel, TimestampedModel, table=True):
    __tablename__ = "audit_logs"

    academy_id: UUID | None = Field(default=None, foreign_key="academies.id", index=True)
    event_type: str = Field(index=True)
    subject_id: UUID | None = Field(default=None, index=True)
    ip_address: str | None = Field(default=None)
    details: dict | None = Field(default_factory=dict, sa_type=JSON)
