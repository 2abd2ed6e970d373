import json

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlmodel import Session

from academy_billing.api.deps import get_db, http_error
from academy_billing.core.config import settings
from academy_billing.core.errors import InvalidSignatureError
from academy_billing.core.logging_setup import logger
from academy_billing.schemas.payment import WebhookAck
from academy_billing.services.audit import AuditService
from academy_billing.services.reconciler import EventReconciler, decode_event, verify_signature

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/payments", response_model=WebhookAck, status_code=status.HTTP_200_OK)
async def payments_webhook(request: Request, session: Session = Depends(get_db)) -> WebhookAck:
    """Provider events, verified with the ``Stripe-Signature`` scheme before anything is read."""
    raw_body = await request.body()
    try:
        verify_signature(
            raw_body,
            request.headers.get("Stripe-Signature"),
            settings.payment_webhook_secret,
            settings.webhook_tolerance_seconds,
        )
    except InvalidSignatureError as exc:
        client_ip = request.client.host if request.client else None
        logger.warning("[WEBHOOK] rejected delivery from %s: %s", client_ip, exc.message)
        AuditService(session).record_event(
            "webhook_signature_rejected",
            ip_address=client_ip,
            details={"reason": exc.message},
        )
        raise http_error(exc) from exc

    try:
        payload = json.loads(raw_body)
    except ValueError:
        payload = None
    event = decode_event(payload)
    try:
        outcome = EventReconciler(session).handle(event)
    except Exception as exc:  # noqa: BLE001
        session.rollback()
        logger.exception("[WEBHOOK] event %s failed: %s", event.event_id, exc)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Event processing failed"
        ) from exc
    return WebhookAck(outcome=outcome)
