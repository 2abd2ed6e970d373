"""Billing error taxonomy.

Every error carries the HTTP status the API layer answers with. Validation and
state-conflict errors are raised before any mutation is flushed.
"""
from __future__ import annotations

from fastapi import status


class BillingError(Exception):
    status_code: int = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.__class__.__doc__ or self.__class__.__name__)
        self.message = str(self)


class ValidationError(BillingError):
    """Invalid input."""

    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY


class InvalidPlanError(ValidationError):
    """Membership plan is not valid for scheduling."""


class NotFoundError(BillingError):
    """Resource not found."""

    status_code = status.HTTP_404_NOT_FOUND


class StateConflictError(BillingError):
    """Operation conflicts with the current state."""

    status_code = status.HTTP_409_CONFLICT


class OverlappingFreezeError(StateConflictError):
    """Subscription already has an active or overlapping freeze."""


class TenantNotPayableError(BillingError):
    """Academy cannot accept charges until its payment account is enabled."""

    status_code = status.HTTP_402_PAYMENT_REQUIRED


class PaymentMethodRequiredError(BillingError):
    """No stored default payment method for this contact."""

    status_code = status.HTTP_402_PAYMENT_REQUIRED


class ProviderTransientError(BillingError):
    """Payment provider is temporarily unavailable."""

    status_code = status.HTTP_502_BAD_GATEWAY


class ProviderTimeoutError(ProviderTransientError):
    """Payment provider did not answer in time; outcome unknown."""

    status_code = status.HTTP_504_GATEWAY_TIMEOUT


class ProviderRejectedError(BillingError):
    """Payment provider refused the request."""

    status_code = status.HTTP_502_BAD_GATEWAY


class ProviderAuthRequiredError(BillingError):
    """Payment requires additional authentication by the customer."""

    status_code = status.HTTP_402_PAYMENT_REQUIRED

    def __init__(self, message: str | None = None, *, payment_id=None, client_secret: str | None = None) -> None:
        super().__init__(message)
        self.payment_id = payment_id
        self.client_secret = client_secret


ActionRequiredError = ProviderAuthRequiredError


class InvalidSignatureError(BillingError):
    """Invalid webhook signature."""

    status_code = status.HTTP_400_BAD_REQUEST
