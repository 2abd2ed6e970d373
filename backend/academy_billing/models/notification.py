from datetime import date
from enum import Enum
from uuid import UUID

from sqlalchemy import UniqueConstraint
from sqlmodel import Field

from academy_billing.models.base import TimestampedModel, UUIDModel


class ReminderKind(str, Enum):
    UPCOMING = "upcoming"
    OVERDUE = "overdue"
    ACTION_REQUIRED = "action_required"


class BillingReminder(UUIDModel, TimestampedModel, table=True):
    __tablename__ = "billing_reminders"
    __table_args__ = (
        UniqueConstraint("billing_cycle_id", "kind", "reminder_date", name="uq_billing_reminders_once"),
    )

    academy_id: UUID = Field(foreign_key="academies.id", index=True)
    billing_cycle_id: UUID = Field(foreign_key="billing_cycles.id", index=True)
    contact_id: UUID | None = Field(default=None, foreign_key="contacts.id")
    kind: str = Field(max_length=16)
    # Upcoming reminders are keyed by the due date, overdue ones by the send day,
    # authentication reminders by the day of the charge attempt
    reminder_date: date
    channel: str = Field(default="email", max_length=16)
