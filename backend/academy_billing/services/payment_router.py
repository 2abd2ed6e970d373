from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from academy_billing.core.config import settings
from academy_billing.core.errors import NotFoundError, StateConflictError, TenantNotPayableError
from academy_billing.core.logging_setup import logger
from academy_billing.models.base import utcnow
from academy_billing.models.contact import Contact
from academy_billing.models.payment import PaymentMethod
from academy_billing.models.tenant import Academy
from academy_billing.services.gateway import PaymentGateway, gateway_from_settings


@dataclass
class RoutingContext:
    sub_account_id: str | None
    charges_enabled: bool

    @property
    def uses_platform_account(self) -> bool:
        return self.sub_account_id is None


class PaymentRouter:
    """Decides which provider account and customer every call is made against."""

    def __init__(self, session: Session, gateway: PaymentGateway | None = None) -> None:
        self.session = session
        self.gateway = gateway or gateway_from_settings()

    def get_academy(self, academy_id: UUID) -> Academy:
        academy = self.session.get(Academy, academy_id)
        if not academy or not academy.is_active:
            raise NotFoundError("Academy not found")
        return academy

    def get_contact(self, academy_id: UUID, contact_id: UUID) -> Contact:
        contact = self.session.get(Contact, contact_id)
        if not contact or contact.academy_id != academy_id:
            raise NotFoundError("Contact not found")
        return contact

    # ------------------------------------------------------------------
    # Routing
    # ------------------------------------------------------------------
    def resolve_routing_context(self, academy: Academy, *, require_charges: bool = True) -> RoutingContext:
        if academy.provider_account_id:
            context = RoutingContext(academy.provider_account_id, bool(academy.charges_enabled))
        elif settings.billing_allow_platform_fallback:
            context = RoutingContext(None, True)
        else:
            raise TenantNotPayableError("Academy has no payment account configured")
        if require_charges and not context.charges_enabled:
            raise TenantNotPayableError(
                "Academy payment account is not enabled for charges; finish onboarding first"
            )
        return context

    def resolve_or_create_customer(self, academy: Academy, contact: Contact) -> str:
        if contact.provider_customer_id:
            return contact.provider_customer_id
        context = self.resolve_routing_context(academy, require_charges=False)
        customer_id = None
        if contact.email:
            customer_id = self.gateway.find_customer(email=contact.email, account_id=context.sub_account_id)
        if customer_id:
            logger.info("[ROUTER] reusing customer %s for contact=%s", customer_id, contact.id)
        else:
            customer_id = self.gateway.create_customer(
                email=contact.email,
                name=contact.full_name,
                account_id=context.sub_account_id,
                idempotency_key=f"customer-{contact.id}",
            )
            logger.info("[ROUTER] created customer %s for contact=%s", customer_id, contact.id)
        contact.provider_customer_id = customer_id
        contact.updated_at = utcnow()
        self.session.add(contact)
        self.session.commit()
        return customer_id

    # ------------------------------------------------------------------
    # Sub-account onboarding
    # ------------------------------------------------------------------
    def ensure_sub_account(self, academy_id: UUID) -> tuple[Academy, str]:
        academy = self.get_academy(academy_id)
        if not academy.provider_account_id:
            academy.provider_account_id = self.gateway.create_account(email=academy.email, name=academy.name)
            academy.charges_enabled = False
            academy.updated_at = utcnow()
            self.session.add(academy)
            self.session.commit()
            self.session.refresh(academy)
            logger.info("[ROUTER] academy=%s sub-account %s created", academy.id, academy.provider_account_id)
        base_url = settings.resolved_public_app_url()
        onboarding_url = self.gateway.create_account_link(
            academy.provider_account_id,
            refresh_url=f"{base_url}/billing/onboarding/refresh",
            return_url=f"{base_url}/billing/onboarding/complete",
        )
        return academy, onboarding_url

    def sync_account_status(self, academy_id: UUID) -> Academy:
        academy = self.get_academy(academy_id)
        if not academy.provider_account_id:
            raise StateConflictError("Academy has no payment account to sync")
        status = self.gateway.retrieve_account(academy.provider_account_id)
        academy.charges_enabled = status.charges_enabled
        academy.payouts_enabled = status.payouts_enabled
        academy.details_submitted = status.details_submitted
        academy.updated_at = utcnow()
        self.session.add(academy)
        self.session.commit()
        self.session.refresh(academy)
        logger.info(
            "[ROUTER] academy=%s account synced charges_enabled=%s",
            academy.id,
            academy.charges_enabled,
        )
        return academy

    # ------------------------------------------------------------------
    # Customer-facing provider sessions
    # ------------------------------------------------------------------
    def create_setup_intent(self, academy_id: UUID, contact_id: UUID) -> str:
        academy = self.get_academy(academy_id)
        contact = self.get_contact(academy_id, contact_id)
        context = self.resolve_routing_context(academy, require_charges=False)
        customer_id = self.resolve_or_create_customer(academy, contact)
        return self.gateway.create_setup_intent(customer_id=customer_id, account_id=context.sub_account_id)

    def create_portal_session(self, academy_id: UUID, contact_id: UUID, return_url: str | None = None) -> str:
        academy = self.get_academy(academy_id)
        contact = self.get_contact(academy_id, contact_id)
        context = self.resolve_routing_context(academy, require_charges=False)
        customer_id = self.resolve_or_create_customer(academy, contact)
        return self.gateway.create_portal_session(
            customer_id=customer_id,
            account_id=context.sub_account_id,
            return_url=return_url or f"{settings.resolved_public_app_url()}/billing",
        )

    # ------------------------------------------------------------------
    # Stored payment methods
    # ------------------------------------------------------------------
    def list_payment_methods(self, academy_id: UUID, contact_id: UUID) -> Iterable[PaymentMethod]:
        self.get_contact(academy_id, contact_id)
        return self.session.exec(
            select(PaymentMethod)
            .where(PaymentMethod.contact_id == contact_id, PaymentMethod.is_active.is_(True))
            .order_by(PaymentMethod.created_at)
        ).all()

    def get_payment_method(self, academy_id: UUID, payment_method_id: UUID) -> PaymentMethod:
        method = self.session.get(PaymentMethod, payment_method_id)
        if not method or method.academy_id != academy_id or not method.is_active:
            raise NotFoundError("Payment method not found")
        return method

    def save_payment_method(
        self,
        academy_id: UUID,
        contact_id: UUID,
        provider_payment_method_id: str,
        *,
        make_default: bool = False,
    ) -> PaymentMethod:
        academy = self.get_academy(academy_id)
        contact = self.get_contact(academy_id, contact_id)
        method = self.session.exec(
            select(PaymentMethod).where(PaymentMethod.provider_payment_method_id == provider_payment_method_id)
        ).first()
        if method and method.contact_id != contact.id:
            raise StateConflictError("Payment method belongs to another contact")
        if method is None:
            context = self.resolve_routing_context(academy, require_charges=False)
            details = self.gateway.retrieve_payment_method(
                provider_payment_method_id, account_id=context.sub_account_id
            )
            method = PaymentMethod(
                academy_id=academy.id,
                contact_id=contact.id,
                provider_payment_method_id=provider_payment_method_id,
                type=details.type,
                brand=details.brand,
                last4=details.last4,
                bank_name=details.bank_name,
            )
        method.is_active = True
        self.session.add(method)
        self.session.commit()
        self.session.refresh(method)

        has_default = self._current_default(contact.id) is not None
        if make_default or not has_default:
            method = self.set_default_payment_method(academy_id, method.id)
        logger.info("[ROUTER] payment method %s saved for contact=%s", method.label, contact.id)
        return method

    def set_default_payment_method(self, academy_id: UUID, payment_method_id: UUID) -> PaymentMethod:
        """Unset the contact's other defaults and set this one, in one transaction.

        ``default_slot`` is unique, so two defaults can never be committed; a
        writer that loses the race retries once and wins as the last writer.
        """
        for attempt in range(2):
            method = self.get_payment_method(academy_id, payment_method_id)
            try:
                self._swap_default(method)
                self.session.commit()
                self.session.refresh(method)
                return method
            except IntegrityError:
                self.session.rollback()
                logger.warning(
                    "[ROUTER] concurrent default change for contact=%s (attempt %s)",
                    method.contact_id,
                    attempt + 1,
                )
        raise StateConflictError("Default payment method changed concurrently; try again")

    def get_default_payment_method(
        self, contact: Contact, *, include_guardian: bool = True
    ) -> tuple[PaymentMethod, Contact] | None:
        """Default method and the contact who owns it (the guardian for minors)."""
        method = self._current_default(contact.id)
        if method:
            return method, contact
        if include_guardian and contact.parent_id:
            guardian = self.session.get(Contact, contact.parent_id)
            if guardian and guardian.academy_id == contact.academy_id:
                method = self._current_default(guardian.id)
                if method:
                    return method, guardian
        return None

    def _current_default(self, contact_id: UUID) -> PaymentMethod | None:
        return self.session.exec(
            select(PaymentMethod).where(
                PaymentMethod.contact_id == contact_id,
                PaymentMethod.is_default.is_(True),
                PaymentMethod.is_active.is_(True),
            )
        ).first()

    def _swap_default(self, method: PaymentMethod) -> None:
        now = utcnow()
        others = self.session.exec(
            select(PaymentMethod).where(
                PaymentMethod.contact_id == method.contact_id,
                PaymentMethod.id != method.id,
                PaymentMethod.default_slot.is_not(None),
            )
        ).all()
        for other in others:
            other.is_default = False
            other.default_slot = None
            other.updated_at = now
            self.session.add(other)
        self.session.flush()
        method.is_default = True
        method.default_slot = method.contact_id
        method.updated_at = now
        self.session.add(method)
        self.session.flush()
