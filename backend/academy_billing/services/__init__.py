from academy_billing.services.audit import AuditService
from academy_billing.services.charges import ChargeService
from academy_billing.services.contact import ContactService
from academy_billing.services.dunning import DunningService
from academy_billing.services.freeze import FreezeService
from academy_billing.services.notification import ReminderNotifier
from academy_billing.services.payment_router import PaymentRouter
from academy_billing.services.reconciler import EventReconciler
from academy_billing.services.schedule import ScheduleService
from academy_billing.services.tenant import AcademyService

__all__ = [
    "AcademyService",
    "AuditService",
    "ChargeService",
    "ContactService",
    "DunningService",
    "EventReconciler",
    "FreezeService",
    "PaymentRouter",
    "ReminderNotifier",
    "ScheduleService",
]
