from __future__ import annotations

from typing import Any
from uuid import UUID

from sqlmodel import Session, func, select

from academy_billing.core.errors import NotFoundError, StateConflictError, ValidationError
from academy_billing.core.logging_setup import logger
from academy_billing.models.billing import MembershipSubscription
from academy_billing.models.contact import Contact
from academy_billing.models.payment import Payment, PaymentMethod
from academy_billing.utils.email_validation import EmailValidationError, normalize_email


class ContactService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def search(self, academy_id: UUID, query: str = "", limit: int = 10) -> list[Contact]:
        statement = select(Contact).where(Contact.academy_id == academy_id)
        if query:
            pattern = f"%{query.lower()}%"
            statement = statement.where(
                func.lower(Contact.full_name).like(pattern)
                | func.lower(Contact.email).like(pattern)
                | func.lower(Contact.phone_number).like(pattern)
            )
        statement = statement.order_by(Contact.created_at.desc()).limit(max(limit, 1))
        return list(self.session.exec(statement).all())

    def get_contact(self, academy_id: UUID, contact_id: UUID) -> Contact:
        contact = self.session.get(Contact, contact_id)
        if not contact or contact.academy_id != academy_id:
            raise NotFoundError("Contact not found")
        return contact

    def create_contact(self, academy_id: UUID, payload: dict[str, Any]) -> Contact:
        data = self._normalize_payload(payload)
        if not data.get("full_name"):
            raise ValidationError("full_name is required")
        if data.get("parent_id"):
            self.get_contact(academy_id, data["parent_id"])
        contact = Contact(academy_id=academy_id, **data)
        self.session.add(contact)
        self.session.commit()
        self.session.refresh(contact)
        return contact

    def delete_contact(self, academy_id: UUID, contact_id: UUID) -> None:
        """Delete a contact that nothing in billing points at."""
        contact = self.get_contact(academy_id, contact_id)
        references = {
            "subscriptions": select(func.count()).select_from(MembershipSubscription).where(
                MembershipSubscription.contact_id == contact.id
            ),
            "payments": select(func.count()).select_from(Payment).where(Payment.contact_id == contact.id),
            "payment methods": select(func.count()).select_from(PaymentMethod).where(
                PaymentMethod.contact_id == contact.id
            ),
            "dependents": select(func.count()).select_from(Contact).where(Contact.parent_id == contact.id),
        }
        blocking = [name for name, statement in references.items() if self.session.exec(statement).one()]
        if blocking:
            raise StateConflictError(f"Contact is referenced by {', '.join(blocking)}")
        self.session.delete(contact)
        self.session.commit()
        logger.info("[CONTACT] contact=%s deleted", contact_id)

    def _normalize_payload(self, payload: dict[str, Any]) -> dict[str, Any]:
        cleaned: dict[str, Any] = {}
        for key in ("full_name", "email", "phone_number"):
            value = payload.get(key)
            if isinstance(value, str):
                cleaned[key] = value.strip() or None
            elif value is not None:
                cleaned[key] = value
        if cleaned.get("email"):
            try:
                cleaned["email"] = normalize_email(cleaned["email"])
            except EmailValidationError as exc:
                raise ValidationError(str(exc)) from exc
        if payload.get("parent_id"):
            cleaned["parent_id"] = UUID(str(payload["parent_id"]))
        return cleaned
