from dataclasses import asdict
from uuid import UUID

from fastapi import APIRouter, Depends, status
from sqlmodel import Session

from academy_billing.api.deps import get_academy, get_db, get_gateway, http_error
from academy_billing.core.errors import ActionRequiredError, BillingError
from academy_billing.models.tenant import Academy
from academy_billing.schemas.payment import ChargeCreate, ChargeRead, CycleChargeCreate, RefundCreate, RefundRead
from academy_billing.services.charges import ChargeService
from academy_billing.services.gateway import PaymentGateway

router = APIRouter(prefix="/academies/{academy_id}", tags=["charges"])


@router.post("/charges", response_model=ChargeRead)
def create_charge(
    payload: ChargeCreate,
    academy: Academy = Depends(get_academy),
    session: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
) -> ChargeRead:
    try:
        result = ChargeService(session, gateway).charge_ad_hoc(
            academy.id,
            payload.contact_id,
            payload.amount_cents,
            payload.description,
            billing_cycle_id=payload.billing_cycle_id,
            request_id=payload.request_id,
        )
    except ActionRequiredError as exc:
        return ChargeRead(
            status="requires_action",
            payment_id=exc.payment_id,
            message=exc.message,
            client_secret=exc.client_secret,
        )
    except BillingError as exc:
        raise http_error(exc) from exc
    return ChargeRead(**asdict(result))


@router.post("/cycles/{cycle_id}/charge", response_model=ChargeRead)
def charge_cycle(
    cycle_id: UUID,
    payload: CycleChargeCreate | None = None,
    academy: Academy = Depends(get_academy),
    session: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
) -> ChargeRead:
    try:
        result = ChargeService(session, gateway).charge_cycle(
            academy.id,
            cycle_id,
            payment_method_id=payload.payment_method_id if payload else None,
        )
    except BillingError as exc:
        raise http_error(exc) from exc
    return ChargeRead(**asdict(result))


@router.post("/payments/{payment_id}/refunds", response_model=RefundRead, status_code=status.HTTP_201_CREATED)
def refund_payment(
    payment_id: UUID,
    payload: RefundCreate,
    academy: Academy = Depends(get_academy),
    session: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
) -> RefundRead:
    try:
        refund = ChargeService(session, gateway).refund_payment(
            academy.id,
            payment_id,
            amount_cents=payload.amount_cents,
            reason=payload.reason,
            request_id=payload.request_id,
        )
    except BillingError as exc:
        raise http_error(exc) from exc
    return RefundRead.model_validate(refund)
