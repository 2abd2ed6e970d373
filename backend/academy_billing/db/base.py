# noqa: F401 to ensure models are imported for metadata
from academy_billing.models.audit import AuditLog
from academy_billing.models.billing import (
    BillingCycle,
    MembershipFreeze,
    MembershipPlan,
    MembershipSubscription,
    ScheduleExtension,
)
from academy_billing.models.contact import Contact
from academy_billing.models.notification import BillingReminder
from academy_billing.models.payment import Payment, PaymentMethod, ProviderEvent, Refund
from academy_billing.models.tenant import Academy

__all__ = [
    "AuditLog",
    "BillingCycle",
    "MembershipFreeze",
    "MembershipPlan",
    "MembershipSubscription",
    "ScheduleExtension",
    "Contact",
    "BillingReminder",
    "Payment",
    "PaymentMethod",
    "ProviderEvent",
    "Refund",
    "Academy",
]
