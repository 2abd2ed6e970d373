from typing import List
from uuid import UUID

from fastapi import APIRouter, Depends, status
from sqlmodel import Session

from academy_billing.api.deps import get_academy, get_db, get_gateway, http_error
from academy_billing.core.errors import BillingError
from academy_billing.models.tenant import Academy
from academy_billing.schemas.payment import (
    ClientSecretRead,
    PaymentMethodCreate,
    PaymentMethodRead,
    PortalSessionCreate,
    PortalSessionRead,
)
from academy_billing.services.gateway import PaymentGateway
from academy_billing.services.payment_router import PaymentRouter

router = APIRouter(prefix="/academies/{academy_id}", tags=["payment-methods"])


@router.get("/contacts/{contact_id}/payment-methods", response_model=List[PaymentMethodRead])
def list_payment_methods(
    contact_id: UUID,
    academy: Academy = Depends(get_academy),
    session: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
) -> List[PaymentMethodRead]:
    try:
        methods = PaymentRouter(session, gateway).list_payment_methods(academy.id, contact_id)
    except BillingError as exc:
        raise http_error(exc) from exc
    return [PaymentMethodRead.model_validate(method) for method in methods]


@router.post(
    "/contacts/{contact_id}/payment-methods",
    response_model=PaymentMethodRead,
    status_code=status.HTTP_201_CREATED,
)
def save_payment_method(
    contact_id: UUID,
    payload: PaymentMethodCreate,
    academy: Academy = Depends(get_academy),
    session: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
) -> PaymentMethodRead:
    try:
        method = PaymentRouter(session, gateway).save_payment_method(
            academy.id,
            contact_id,
            payload.provider_payment_method_id,
            make_default=payload.make_default,
        )
    except BillingError as exc:
        raise http_error(exc) from exc
    return PaymentMethodRead.model_validate(method)


@router.put("/payment-methods/{payment_method_id}/default", response_model=PaymentMethodRead)
def set_default_payment_method(
    payment_method_id: UUID,
    academy: Academy = Depends(get_academy),
    session: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
) -> PaymentMethodRead:
    try:
        method = PaymentRouter(session, gateway).set_default_payment_method(academy.id, payment_method_id)
    except BillingError as exc:
        raise http_error(exc) from exc
    return PaymentMethodRead.model_validate(method)


@router.post("/contacts/{contact_id}/setup-intent", response_model=ClientSecretRead)
def create_setup_intent(
    contact_id: UUID,
    academy: Academy = Depends(get_academy),
    session: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
) -> ClientSecretRead:
    try:
        secret = PaymentRouter(session, gateway).create_setup_intent(academy.id, contact_id)
    except BillingError as exc:
        raise http_error(exc) from exc
    return ClientSecretRead(client_secret=secret)


@router.post("/contacts/{contact_id}/portal-session", response_model=PortalSessionRead)
def create_portal_session(
    contact_id: UUID,
    payload: PortalSessionCreate | None = None,
    academy: Academy = Depends(get_academy),
    session: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
) -> PortalSessionRead:
    try:
        url = PaymentRouter(session, gateway).create_portal_session(
            academy.id, contact_id, return_url=payload.return_url if payload else None
        )
    except BillingError as exc:
        raise http_error(exc) from exc
    return PortalSessionRead(url=url)
