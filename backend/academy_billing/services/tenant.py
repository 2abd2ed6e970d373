from __future__ import annotations

from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session

from academy_billing.core.config import settings
from academy_billing.core.errors import NotFoundError, StateConflictError
from academy_billing.models.tenant import Academy
from academy_billing.schemas.tenant import AcademyCreate


class AcademyService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def create_academy(self, payload: AcademyCreate) -> Academy:
        data = payload.model_dump()
        data["slug"] = data["slug"].strip().lower()
        data["currency"] = (data.get("currency") or settings.default_currency).lower()
        academy = Academy(**data)
        self.session.add(academy)
        try:
            self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            raise StateConflictError("Slug already in use") from exc
        self.session.refresh(academy)
        return academy

    def get_academy(self, academy_id: str | UUID) -> Academy:
        academy = self.session.get(Academy, UUID(str(academy_id)))
        if not academy or not academy.is_active:
            raise NotFoundError("Academy not found")
        return academy
