from fastapi import APIRouter, Depends, Query, Response, status
from sqlmodel import Session
from uuid import UUID

from academy_billing.api.deps import get_academy, get_db, http_error
from academy_billing.core.errors import BillingError
from academy_billing.models.tenant import Academy
from academy_billing.schemas.contact import ContactCreate, ContactRead
from academy_billing.services.contact import ContactService

router = APIRouter(prefix="/academies/{academy_id}/contacts", tags=["contacts"])


@router.get("", response_model=list[ContactRead])
def search_contacts(
    q: str = Query(""),
    limit: int = Query(10, ge=1, le=50),
    academy: Academy = Depends(get_academy),
    session: Session = Depends(get_db),
) -> list[ContactRead]:
    contacts = ContactService(session).search(academy.id, q.strip(), limit)
    return [ContactRead.model_validate(contact, from_attributes=True) for contact in contacts]


@router.post("", response_model=ContactRead, status_code=status.HTTP_201_CREATED)
def create_contact(
    payload: ContactCreate,
    academy: Academy = Depends(get_academy),
    session: Session = Depends(get_db),
) -> ContactRead:
    try:
        contact = ContactService(session).create_contact(academy.id, payload.model_dump())
    except BillingError as exc:
        raise http_error(exc) from exc
    return ContactRead.model_validate(contact, from_attributes=True)


@router.delete("/{contact_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_contact(
    contact_id: UUID,
    academy: Academy = Depends(get_academy),
    session: Session = Depends(get_db),
) -> Response:
    try:
        ContactService(session).delete_contact(academy.id, contact_id)
    except BillingError as exc:
        raise http_error(exc) from exc
    return Response(status_code=status.HTTP_204_NO_CONTENT)
