from __future__ import annotations

from datetime import date, datetime, timezone

from apscheduler.schedulers.background import BackgroundScheduler
from sqlmodel import Session

from academy_billing.core.config import settings
from academy_billing.core.logging_setup import logger
from academy_billing.services.charges import ChargeService
from academy_billing.services.dunning import DunningService
from academy_billing.services.freeze import FreezeService
from academy_billing.services.gateway import PaymentGateway
from academy_billing.services.notification import ReminderNotifier
from academy_billing.services.schedule import ScheduleService


def run_billing_scheduler(
    session: Session,
    today: date | None = None,
    *,
    gateway: PaymentGateway | None = None,
    notifier: ReminderNotifier | None = None,
) -> dict:
    """One pass of the periodic billing job.

    Each step is independent; a failing step is logged and the next one runs.
    """
    today = today or datetime.now(timezone.utc).date()
    summary: dict = {"date": today.isoformat()}

    try:
        summary["freezes_expired"] = FreezeService(session).expire_elapsed_freezes(today)
    except Exception as exc:  # noqa: BLE001
        session.rollback()
        logger.exception("[SCHEDULER] freeze expiry failed: %s", exc)

    charges = ChargeService(session, gateway=gateway)
    try:
        summary["payments_synced"] = charges.sync_processing_payments()
    except Exception as exc:  # noqa: BLE001
        session.rollback()
        logger.exception("[SCHEDULER] payment sync failed: %s", exc)

    try:
        summary["charges"] = charges.charge_due_cycles(today)
    except Exception as exc:  # noqa: BLE001
        session.rollback()
        logger.exception("[SCHEDULER] due charges failed: %s", exc)

    try:
        summary["term_ends"] = ScheduleService(session).process_term_ends(today)
    except Exception as exc:  # noqa: BLE001
        session.rollback()
        logger.exception("[SCHEDULER] term ends failed: %s", exc)

    try:
        summary["dunning"] = DunningService(session, notifier=notifier).run_dunning(today).as_dict()
    except Exception as exc:  # noqa: BLE001
        session.rollback()
        logger.exception("[SCHEDULER] dunning failed: %s", exc)

    return summary


def start_billing_scheduler() -> BackgroundScheduler:
    """Start the background scheduler running the billing pass on a fixed interval."""
    from academy_billing.db.session import engine

    scheduler = BackgroundScheduler(timezone="UTC")

    def billing_pass():
        with Session(engine) as session:
            summary = run_billing_scheduler(session)
            logger.info("[SCHEDULER] billing pass done: %s", summary)

    scheduler.add_job(
        func=billing_pass,
        trigger="interval",
        minutes=max(settings.billing_scheduler_interval_minutes, 1),
        id="billing_pass",
        max_instances=1,
        coalesce=True,
        replace_existing=True,
    )
    scheduler.start()
    logger.info("[SCHEDULER] billing job every %s minute(s)", settings.billing_scheduler_interval_minutes)
    return scheduler
