from typing import Annotated
from uuid import UUID

from fastapi import Depends, HTTPException
from sqlmodel import Session

from academy_billing.core.errors import BillingError
from academy_billing.db.session import get_session
from academy_billing.models.tenant import Academy
from academy_billing.services.gateway import PaymentGateway, gateway_from_settings
from academy_billing.services.tenant import AcademyService


def get_db() -> Session:
    yield from get_session()


def get_gateway() -> PaymentGateway:
    return gateway_from_settings()


def get_academy(academy_id: UUID, session: Annotated[Session, Depends(get_db)]) -> Academy:
    try:
        return AcademyService(session).get_academy(academy_id)
    except BillingError as exc:
        raise http_error(exc) from exc


def http_error(exc: BillingError) -> HTTPException:
    return HTTPException(status_code=exc.status_code, detail=exc.message)
