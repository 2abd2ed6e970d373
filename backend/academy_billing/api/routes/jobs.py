from datetime import date

from fastapi import APIRouter, Depends, Query
from sqlmodel import Session

from academy_billing.api.deps import get_db, get_gateway
from academy_billing.services.billing_scheduler import run_billing_scheduler
from academy_billing.services.gateway import PaymentGateway

router = APIRouter(prefix="/billing/jobs", tags=["billing-jobs"])


@router.post("/run")
def run_billing_job(
    today: date | None = Query(None),
    session: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
) -> dict:
    """Run the periodic billing pass now (operations use only)."""
    return run_billing_scheduler(session, today, gateway=gateway)
