from typing import List
from uuid import UUID

from fastapi import APIRouter, Depends, status
from sqlmodel import Session

from academy_billing.api.deps import get_academy, get_db, get_gateway, http_error
from academy_billing.core.errors import BillingError
from academy_billing.models.tenant import Academy
from academy_billing.schemas.billing import (
    BillingCycleRead,
    PlanCreate,
    PlanRead,
    SubscriptionCreate,
    SubscriptionRead,
    SubscriptionWithCycles,
)
from academy_billing.services.charges import ChargeService
from academy_billing.services.gateway import PaymentGateway
from academy_billing.services.schedule import ScheduleService

router = APIRouter(prefix="/academies/{academy_id}", tags=["subscriptions"])


def _service(session: Session) -> ScheduleService:
    return ScheduleService(session)


def _cycles(cycles) -> list[BillingCycleRead]:
    return [BillingCycleRead.model_validate(cycle) for cycle in cycles]


@router.get("/plans", response_model=List[PlanRead])
def list_plans(academy: Academy = Depends(get_academy), session: Session = Depends(get_db)) -> List[PlanRead]:
    return [PlanRead.model_validate(plan) for plan in _service(session).list_plans(academy.id)]


@router.post("/plans", response_model=PlanRead, status_code=status.HTTP_201_CREATED)
def create_plan(
    payload: PlanCreate,
    academy: Academy = Depends(get_academy),
    session: Session = Depends(get_db),
) -> PlanRead:
    try:
        plan = _service(session).create_plan(academy.id, **payload.model_dump())
    except BillingError as exc:
        raise http_error(exc) from exc
    return PlanRead.model_validate(plan)


@router.post("/subscriptions", response_model=SubscriptionWithCycles, status_code=status.HTTP_201_CREATED)
def create_subscription(
    payload: SubscriptionCreate,
    academy: Academy = Depends(get_academy),
    session: Session = Depends(get_db),
) -> SubscriptionWithCycles:
    try:
        subscription, cycles = _service(session).create_subscription(
            academy.id,
            contact_id=payload.contact_id,
            plan_id=payload.plan_id,
            start_date=payload.start_date,
            billing_mode=payload.billing_mode.value,
            auto_renewal=payload.auto_renewal,
            renewal_discount_percentage=payload.renewal_discount_percentage,
        )
    except BillingError as exc:
        raise http_error(exc) from exc
    return SubscriptionWithCycles(subscription=SubscriptionRead.model_validate(subscription), cycles=_cycles(cycles))


@router.get("/subscriptions/{subscription_id}/cycles", response_model=List[BillingCycleRead])
def list_cycles(
    subscription_id: UUID,
    academy: Academy = Depends(get_academy),
    session: Session = Depends(get_db),
) -> List[BillingCycleRead]:
    service = _service(session)
    try:
        subscription = service.get_subscription(academy.id, subscription_id)
    except BillingError as exc:
        raise http_error(exc) from exc
    return _cycles(service.list_cycles(subscription.id))


@router.post("/subscriptions/{subscription_id}/cancel", response_model=List[BillingCycleRead])
def cancel_subscription(
    subscription_id: UUID,
    academy: Academy = Depends(get_academy),
    session: Session = Depends(get_db),
) -> List[BillingCycleRead]:
    try:
        cycles = _service(session).cancel_subscription(academy.id, subscription_id)
    except BillingError as exc:
        raise http_error(exc) from exc
    return _cycles(cycles)


@router.post("/subscriptions/{subscription_id}/renew", response_model=List[BillingCycleRead])
def renew_subscription(
    subscription_id: UUID,
    academy: Academy = Depends(get_academy),
    session: Session = Depends(get_db),
) -> List[BillingCycleRead]:
    try:
        cycles = _service(session).renew_subscription(academy.id, subscription_id)
    except BillingError as exc:
        raise http_error(exc) from exc
    return _cycles(cycles)


@router.post("/subscriptions/{subscription_id}/provider-subscription", response_model=SubscriptionRead)
def start_provider_subscription(
    subscription_id: UUID,
    academy: Academy = Depends(get_academy),
    session: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
) -> SubscriptionRead:
    try:
        subscription = ChargeService(session, gateway).start_provider_subscription(academy.id, subscription_id)
    except BillingError as exc:
        raise http_error(exc) from exc
    return SubscriptionRead.model_validate(subscription)
