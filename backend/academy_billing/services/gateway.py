from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from typing import Protocol

import stripe

from academy_billing.core.config import settings
from academy_billing.core.errors import (
    ProviderRejectedError,
    ProviderTimeoutError,
    ProviderTransientError,
    ValidationError,
)
from academy_billing.core.logging_setup import logger


@dataclass
class ProviderCharge:
    charge_id: str | None
    status: str  # succeeded | processing | requires_action | failed
    client_secret: str | None = None
    failure_code: str | None = None
    failure_message: str | None = None


@dataclass
class ProviderRefund:
    refund_id: str | None
    status: str  # succeeded | pending | failed
    failure_reason: str | None = None


@dataclass
class AccountStatus:
    account_id: str
    charges_enabled: bool
    payouts_enabled: bool
    details_submitted: bool


@dataclass
class PaymentMethodDetails:
    payment_method_id: str
    type: str
    brand: str | None = None
    last4: str | None = None
    bank_name: str | None = None
    metadata: dict = field(default_factory=dict)


class PaymentGateway(Protocol):
    name: str

    def create_account(self, *, email: str | None, name: str) -> str:
        ...

    def retrieve_account(self, account_id: str) -> AccountStatus:
        ...

    def create_account_link(self, account_id: str, *, refresh_url: str, return_url: str) -> str:
        ...

    def find_customer(self, *, email: str, account_id: str | None) -> str | None:
        ...

    def create_customer(
        self, *, email: str | None, name: str, account_id: str | None, idempotency_key: str
    ) -> str:
        ...

    def create_setup_intent(self, *, customer_id: str, account_id: str | None) -> str:
        ...

    def create_portal_session(self, *, customer_id: str, account_id: str | None, return_url: str) -> str:
        ...

    def retrieve_payment_method(self, payment_method_id: str, *, account_id: str | None) -> PaymentMethodDetails:
        ...

    def charge(
        self,
        *,
        amount_cents: int,
        currency: str,
        customer_id: str,
        payment_method_id: str,
        account_id: str | None,
        idempotency_key: str,
        description: str | None = None,
        metadata: dict | None = None,
    ) -> ProviderCharge:
        ...

    def retrieve_charge(
        self, charge_id: str | None, *, payment_id: str, account_id: str | None
    ) -> ProviderCharge | None:
        ...

    def refund(
        self,
        *,
        charge_id: str,
        amount_cents: int,
        account_id: str | None,
        idempotency_key: str,
        reason: str | None = None,
        metadata: dict | None = None,
    ) -> ProviderRefund:
        ...

    def create_subscription(
        self,
        *,
        customer_id: str,
        account_id: str | None,
        amount_cents: int,
        currency: str,
        interval_months: int,
        product_name: str,
        payment_method_id: str | None,
        idempotency_key: str,
        metadata: dict | None = None,
    ) -> str:
        ...


class ManualGateway:
    """Offline provider for development: nothing leaves the process.

    Charges stay ``processing`` until settled by an operator or an event.
    """

    name = "manual"

    def create_account(self, *, email: str | None, name: str) -> str:
        return f"manual-acct-{uuid.uuid4().hex[:12]}"

    def retrieve_account(self, account_id: str) -> AccountStatus:
        return AccountStatus(account_id, charges_enabled=True, payouts_enabled=True, details_submitted=True)

    def create_account_link(self, account_id: str, *, refresh_url: str, return_url: str) -> str:
        return return_url

    def find_customer(self, *, email: str, account_id: str | None) -> str | None:
        return None

    def create_customer(
        self, *, email: str | None, name: str, account_id: str | None, idempotency_key: str
    ) -> str:
        return f"manual-cus-{uuid.uuid5(uuid.NAMESPACE_URL, idempotency_key).hex[:12]}"

    def create_setup_intent(self, *, customer_id: str, account_id: str | None) -> str:
        return f"manual-seti-{uuid.uuid4().hex[:12]}_secret"

    def create_portal_session(self, *, customer_id: str, account_id: str | None, return_url: str) -> str:
        return return_url

    def retrieve_payment_method(self, payment_method_id: str, *, account_id: str | None) -> PaymentMethodDetails:
        return PaymentMethodDetails(payment_method_id=payment_method_id, type="card")

    def charge(self, *, idempotency_key: str, **kwargs) -> ProviderCharge:
        return ProviderCharge(charge_id=f"manual-{uuid.uuid4().hex[:12]}", status="processing")

    def retrieve_charge(self, charge_id: str | None, *, payment_id: str, account_id: str | None) -> ProviderCharge | None:
        return ProviderCharge(charge_id=charge_id, status="processing")

    def refund(self, *, idempotency_key: str, **kwargs) -> ProviderRefund:
        return ProviderRefund(refund_id=f"manual-re-{uuid.uuid4().hex[:12]}", status="succeeded")

    def create_subscription(self, *, idempotency_key: str, **kwargs) -> str:
        return f"manual-sub-{uuid.uuid4().hex[:12]}"


class StripeGateway:
    name = "stripe"

    def __init__(self, api_key: str, timeout_seconds: float | None = None) -> None:
        self.api_key = api_key
        timeout = timeout_seconds or settings.payment_provider_timeout_seconds
        stripe.default_http_client = stripe.RequestsClient(timeout=timeout)
        stripe.max_network_retries = 0

    def _scope(self, account_id: str | None) -> dict:
        options: dict = {"api_key": self.api_key}
        if account_id:
            options["stripe_account"] = account_id
        return options

    def create_account(self, *, email: str | None, name: str) -> str:
        account = self._call(
            stripe.Account.create,
            type="express",
            email=email,
            business_profile={"name": name},
            capabilities={"card_payments": {"requested": True}, "transfers": {"requested": True}},
            api_key=self.api_key,
        )
        return account.id

    def retrieve_account(self, account_id: str) -> AccountStatus:
        account = self._call(stripe.Account.retrieve, account_id, api_key=self.api_key)
        return AccountStatus(
            account_id=account.id,
            charges_enabled=bool(account.get("charges_enabled")),
            payouts_enabled=bool(account.get("payouts_enabled")),
            details_submitted=bool(account.get("details_submitted")),
        )

    def create_account_link(self, account_id: str, *, refresh_url: str, return_url: str) -> str:
        link = self._call(
            stripe.AccountLink.create,
            account=account_id,
            refresh_url=refresh_url,
            return_url=return_url,
            type="account_onboarding",
            api_key=self.api_key,
        )
        return link.url

    def find_customer(self, *, email: str, account_id: str | None) -> str | None:
        found = self._call(stripe.Customer.list, email=email, limit=1, **self._scope(account_id))
        return found.data[0].id if found.data else None

    def create_customer(
        self, *, email: str | None, name: str, account_id: str | None, idempotency_key: str
    ) -> str:
        customer = self._call(
            stripe.Customer.create,
            email=email,
            name=name,
            idempotency_key=idempotency_key,
            **self._scope(account_id),
        )
        return customer.id

    def create_setup_intent(self, *, customer_id: str, account_id: str | None) -> str:
        intent = self._call(
            stripe.SetupIntent.create,
            customer=customer_id,
            usage="off_session",
            automatic_payment_methods={"enabled": True},
            **self._scope(account_id),
        )
        return intent.client_secret

    def create_portal_session(self, *, customer_id: str, account_id: str | None, return_url: str) -> str:
        portal = self._call(
            stripe.billing_portal.Session.create,
            customer=customer_id,
            return_url=return_url,
            **self._scope(account_id),
        )
        return portal.url

    def retrieve_payment_method(self, payment_method_id: str, *, account_id: str | None) -> PaymentMethodDetails:
        method = self._call(stripe.PaymentMethod.retrieve, payment_method_id, **self._scope(account_id))
        details = PaymentMethodDetails(payment_method_id=method.id, type=method.type)
        if method.type == "card" and method.get("card"):
            details.brand = method.card.get("brand")
            details.last4 = method.card.get("last4")
        elif method.type == "us_bank_account" and method.get("us_bank_account"):
            details.bank_name = method.us_bank_account.get("bank_name")
            details.last4 = method.us_bank_account.get("last4")
        return details

    def charge(
        self,
        *,
        amount_cents: int,
        currency: str,
        customer_id: str,
        payment_method_id: str,
        account_id: str | None,
        idempotency_key: str,
        description: str | None = None,
        metadata: dict | None = None,
    ) -> ProviderCharge:
        try:
            intent = self._call(
                stripe.PaymentIntent.create,
                amount=amount_cents,
                currency=currency,
                customer=customer_id,
                payment_method=payment_method_id,
                off_session=True,
                confirm=True,
                description=description,
                metadata=metadata or {},
                idempotency_key=idempotency_key,
                **self._scope(account_id),
            )
        except stripe.CardError as exc:
            error = exc.error
            intent = getattr(error, "payment_intent", None) if error else None
            if exc.code == "authentication_required":
                return ProviderCharge(
                    charge_id=intent.get("id") if intent else None,
                    status="requires_action",
                    client_secret=intent.get("client_secret") if intent else None,
                    failure_code=exc.code,
                )
            return ProviderCharge(
                charge_id=intent.get("id") if intent else None,
                status="failed",
                failure_code=getattr(error, "decline_code", None) or exc.code,
                failure_message=exc.user_message,
            )

        return self._charge_from_intent(intent)

    def retrieve_charge(
        self, charge_id: str | None, *, payment_id: str, account_id: str | None
    ) -> ProviderCharge | None:
        if charge_id:
            intent = self._call(stripe.PaymentIntent.retrieve, charge_id, **self._scope(account_id))
        else:
            # The create call timed out before an id came back: look it up by our metadata
            found = self._call(
                stripe.PaymentIntent.search,
                query=f"metadata['payment_id']:'{payment_id}'",
                limit=1,
                **self._scope(account_id),
            )
            if not found.data:
                return None
            intent = found.data[0]
        return self._charge_from_intent(intent)

    def refund(
        self,
        *,
        charge_id: str,
        amount_cents: int,
        account_id: str | None,
        idempotency_key: str,
        reason: str | None = None,
        metadata: dict | None = None,
    ) -> ProviderRefund:
        refund = self._call(
            stripe.Refund.create,
            payment_intent=charge_id,
            amount=amount_cents,
            reason="requested_by_customer",
            metadata={**(metadata or {}), "refund_reason": reason or ""},
            idempotency_key=idempotency_key,
            **self._scope(account_id),
        )
        if refund.status == "succeeded":
            return ProviderRefund(refund_id=refund.id, status="succeeded")
        if refund.status in {"failed", "canceled"}:
            return ProviderRefund(
                refund_id=refund.id,
                status="failed",
                failure_reason=refund.get("failure_reason") or refund.status,
            )
        return ProviderRefund(refund_id=refund.id, status="pending")

    def _charge_from_intent(self, intent) -> ProviderCharge:
        if intent.status == "succeeded":
            return ProviderCharge(charge_id=intent.id, status="succeeded")
        if intent.status in {"requires_action", "requires_confirmation", "requires_payment_method"}:
            status = "requires_action" if intent.status == "requires_action" else "failed"
            error = intent.get("last_payment_error") or {}
            return ProviderCharge(
                charge_id=intent.id,
                status=status,
                client_secret=intent.client_secret,
                failure_code=error.get("decline_code") or error.get("code"),
                failure_message=error.get("message"),
            )
        if intent.status == "canceled":
            return ProviderCharge(charge_id=intent.id, status="failed", failure_code="canceled")
        return ProviderCharge(charge_id=intent.id, status="processing")

    def create_subscription(
        self,
        *,
        customer_id: str,
        account_id: str | None,
        amount_cents: int,
        currency: str,
        interval_months: int,
        product_name: str,
        payment_method_id: str | None,
        idempotency_key: str,
        metadata: dict | None = None,
    ) -> str:
        params: dict = {
            "customer": customer_id,
            "items": [
                {
                    "price_data": {
                        "currency": currency,
                        "unit_amount": amount_cents,
                        "product_data": {"name": product_name},
                        "recurring": {"interval": "month", "interval_count": interval_months},
                    }
                }
            ],
            "metadata": metadata or {},
        }
        if payment_method_id:
            params["default_payment_method"] = payment_method_id
        subscription = self._call(
            stripe.Subscription.create,
            idempotency_key=idempotency_key,
            **params,
            **self._scope(account_id),
        )
        return subscription.id

    def _call(self, method, *args, **kwargs):
        try:
            return method(*args, **kwargs)
        except stripe.APIConnectionError as exc:
            logger.warning("[STRIPE] connection failure: %s", exc)
            raise ProviderTimeoutError() from exc
        except stripe.RateLimitError as exc:
            logger.warning("[STRIPE] rate limited: %s", exc)
            raise ProviderTransientError() from exc
        except stripe.APIError as exc:
            logger.warning("[STRIPE] provider error: %s", exc)
            raise ProviderTransientError() from exc
        except stripe.InvalidRequestError as exc:
            logger.warning("[STRIPE] rejected request: %s", exc)
            raise ValidationError(exc.user_message or "Payment provider rejected the request") from exc
        except stripe.CardError:
            raise
        except stripe.StripeError as exc:
            logger.error("[STRIPE] request refused: %s", exc)
            raise ProviderRejectedError() from exc


def gateway_from_settings() -> PaymentGateway:
    name = (settings.payment_provider or "manual").lower()
    if name == "stripe" and settings.stripe_api_key:
        return StripeGateway(settings.stripe_api_key)
    return ManualGateway()
