from uuid import UUID

from fastapi import APIRouter, Depends, status
from sqlmodel import Session

from academy_billing.api.deps import get_academy, get_db, http_error
from academy_billing.core.errors import BillingError
from academy_billing.models.tenant import Academy
from academy_billing.schemas.billing import BillingCycleRead, FreezeClose, FreezeCreate, FreezeRead, FreezeResult
from academy_billing.services.freeze import FreezeService

router = APIRouter(prefix="/academies/{academy_id}/freezes", tags=["freezes"])


@router.post("", response_model=FreezeResult, status_code=status.HTTP_201_CREATED)
def create_freeze(
    payload: FreezeCreate,
    academy: Academy = Depends(get_academy),
    session: Session = Depends(get_db),
) -> FreezeResult:
    try:
        freeze, cycles = FreezeService(session).apply_freeze(
            academy.id,
            payload.subscription_id,
            start_date=payload.start_date,
            end_date=payload.end_date,
            frozen_amount_cents=payload.frozen_amount_cents,
            reason=payload.reason,
        )
    except BillingError as exc:
        raise http_error(exc) from exc
    return FreezeResult(
        freeze=FreezeRead.model_validate(freeze),
        cycles=[BillingCycleRead.model_validate(cycle) for cycle in cycles],
    )


@router.post("/{freeze_id}/close", response_model=FreezeResult)
def close_freeze(
    freeze_id: UUID,
    payload: FreezeClose,
    academy: Academy = Depends(get_academy),
    session: Session = Depends(get_db),
) -> FreezeResult:
    service = FreezeService(session)
    try:
        cycles = service.close_freeze(academy.id, freeze_id, payload.end_date)
        freeze = service.get_freeze(academy.id, freeze_id)
    except BillingError as exc:
        raise http_error(exc) from exc
    return FreezeResult(
        freeze=FreezeRead.model_validate(freeze),
        cycles=[BillingCycleRead.model_validate(cycle) for cycle in cycles],
    )


@router.delete("/{freeze_id}", response_model=FreezeResult)
def cancel_freeze(
    freeze_id: UUID,
    academy: Academy = Depends(get_academy),
    session: Session = Depends(get_db),
) -> FreezeResult:
    try:
        cycles = FreezeService(session).cancel_freeze(academy.id, freeze_id)
    except BillingError as exc:
        raise http_error(exc) from exc
    return FreezeResult(cycles=[BillingCycleRead.model_validate(cycle) for cycle in cycles])
