from __future__ import annotations

from functools import lru_cache

from email_validator import EmailNotValidError, validate_email


class EmailValidationError(ValueError):
    pass


@lru_cache(maxsize=512)
def _validate_format_only(candidate: str) -> str:
    """Normalize addresses validating only syntax/IDNA information."""
    info = validate_email(candidate, check_deliverability=False)
    return info.normalized or info.email


def normalize_email(value: str) -> str:
    """Return a normalized, lower-cased e-mail address.

    Reminders are sent to whatever the academy stored, so no DNS lookup is made.
    """
    candidate = (value or "").strip()
    if not candidate:
        raise EmailValidationError("E-mail is required.")
    try:
        return _validate_format_only(candidate.lower())
    except EmailNotValidError as exc:  # pragma: no cover - library error text varies
        raise EmailValidationError(f"Invalid e-mail: {exc}") from exc
