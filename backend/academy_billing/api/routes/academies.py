from uuid import UUID

from fastapi import APIRouter, Depends, status
from sqlmodel import Session

from academy_billing.api.deps import get_academy, get_db, get_gateway, http_error
from academy_billing.core.errors import BillingError
from academy_billing.models.tenant import Academy
from academy_billing.schemas.tenant import AcademyCreate, AcademyRead, PaymentAccountRead
from academy_billing.services.gateway import PaymentGateway
from academy_billing.services.payment_router import PaymentRouter
from academy_billing.services.tenant import AcademyService

router = APIRouter(prefix="/academies", tags=["academies"])


@router.post("", response_model=AcademyRead, status_code=status.HTTP_201_CREATED)
def create_academy(payload: AcademyCreate, session: Session = Depends(get_db)) -> AcademyRead:
    try:
        academy = AcademyService(session).create_academy(payload)
    except BillingError as exc:
        raise http_error(exc) from exc
    return AcademyRead.model_validate(academy)


@router.get("/{academy_id}", response_model=AcademyRead)
def read_academy(academy: Academy = Depends(get_academy)) -> AcademyRead:
    return AcademyRead.model_validate(academy)


@router.post("/{academy_id}/payment-account", response_model=PaymentAccountRead)
def ensure_payment_account(
    academy_id: UUID,
    session: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
) -> PaymentAccountRead:
    try:
        academy, onboarding_url = PaymentRouter(session, gateway).ensure_sub_account(academy_id)
    except BillingError as exc:
        raise http_error(exc) from exc
    return PaymentAccountRead(academy=AcademyRead.model_validate(academy), onboarding_url=onboarding_url)


@router.post("/{academy_id}/payment-account/sync", response_model=AcademyRead)
def sync_payment_account(
    academy_id: UUID,
    session: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
) -> AcademyRead:
    try:
        academy = PaymentRouter(session, gateway).sync_account_status(academy_id)
    except BillingError as exc:
        raise http_error(exc) from exc
    return AcademyRead.model_validate(academy)
