from typing import Optional
from uuid import UUID

from sqlmodel import Session, select

from academy_billing.models.audit import AuditLog


class AuditService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def record_event(
        self,
        event_type: str,
        academy_id: UUID | None = None,
        subject_id: UUID | None = None,
        ip_address: str | None = None,
        details: dict | None = None,
    ) -> None:
        log = AuditLog(
            academy_id=academy_id,
            event_type=event_type,
            subject_id=subject_id,
            ip_address=ip_address,
            details=details or {},
        )
        self.session.add(log)
        self.session.commit()

    def list_events(
        self,
        academy_id: UUID | None = None,
        event_type: Optional[str] = None,
        subject_id: Optional[UUID] = None,
    ) -> list[AuditLog]:
        statement = select(AuditLog)
        if academy_id is not None:
            statement = statement.where(AuditLog.academy_id == academy_id)
        if event_type:
            statement = statement.where(AuditLog.event_type == event_type)
        if subject_id is not None:
            statement = statement.where(AuditLog.subject_id == subject_id)
        return list(self.session.exec(statement.order_by(AuditLog.created_at.desc())).all())
