from __future__ import annotations

import smtplib
from dataclasses import dataclass
from datetime import date
from email.message import EmailMessage
from pathlib import Path
from typing import Optional

from jinja2 import Environment, FileSystemLoader, select_autoescape

from academy_billing.models.billing import BillingCycle, MembershipPlan
from academy_billing.models.contact import Contact
from academy_billing.models.notification import ReminderKind
from academy_billing.models.tenant import Academy
from academy_billing.utils.email_validation import EmailValidationError, normalize_email


@dataclass
class EmailConfig:
    host: str
    port: int
    username: str | None
    password: str | None
    sender: str
    starttls: bool


def format_amount(amount_cents: int, currency: str) -> str:
    return f"{amount_cents / 100:,.2f} {currency.upper()}"


class ReminderNotifier:
    """Renders and e-mails payment reminders."""

    def __init__(
        self,
        email_config: Optional[EmailConfig] = None,
        public_base_url: str | None = None,
        template_root: Path | None = None,
    ) -> None:
        self.email_config = email_config
        self.public_base_url = public_base_url
        self.template_root = template_root or Path(__file__).resolve().parent.parent / "templates"
        self.template_env = Environment(
            loader=FileSystemLoader(self.template_root),
            autoescape=select_autoescape(["html", "xml"]),
        )

    @classmethod
    def from_settings(cls, settings) -> "ReminderNotifier":
        config = None
        if settings.smtp_host and settings.smtp_sender and settings.smtp_port:
            config = EmailConfig(
                host=settings.smtp_host,
                port=int(settings.smtp_port),
                username=settings.smtp_username,
                password=settings.smtp_password,
                sender=settings.smtp_sender,
                starttls=bool(settings.smtp_starttls),
            )
        return cls(email_config=config, public_base_url=settings.resolved_public_app_url())

    def configure_email(
        self,
        *,
        host: str,
        port: int,
        sender: str,
        username: str | None = None,
        password: str | None = None,
        starttls: bool = True,
    ) -> None:
        self.email_config = EmailConfig(
            host=host,
            port=port,
            username=username,
            password=password,
            sender=sender,
            starttls=starttls,
        )

    def send_reminder(
        self,
        *,
        kind: str,
        academy: Academy,
        contact: Contact,
        cycle: BillingCycle,
        plan: MembershipPlan | None,
        today: date,
    ) -> None:
        """Send one reminder; raises when the message cannot be delivered."""
        if not contact.email:
            raise ValueError(f"Contact {contact.id} has no e-mail address")
        recipient = normalize_email(contact.email)

        context = {
            "contact_name": contact.full_name,
            "academy_name": academy.name,
            "plan_name": plan.name if plan else "membership",
            "amount": format_amount(cycle.amount_cents, academy.currency),
            "due_date": cycle.scheduled_date.isoformat(),
            "installment": (
                f"{cycle.installment_number}/{cycle.total_installments}"
                if cycle.total_installments
                else None
            ),
            "days_overdue": (today - cycle.scheduled_date).days,
            "failure_reason": cycle.failure_reason,
            "manage_url": f"{self.public_base_url.rstrip('/')}/billing" if self.public_base_url else None,
        }
        if kind == ReminderKind.ACTION_REQUIRED.value:
            subject = f"{academy.name}: confirm your payment of {context['amount']}"
            template = "reminder_action_required.html"
            text_body = (
                f"Hi {contact.full_name}, your bank asked to confirm the payment of "
                f"{context['amount']} to {academy.name}. It will not be retried until you confirm it."
            )
        elif kind == ReminderKind.OVERDUE.value:
            subject = f"{academy.name}: payment overdue since {context['due_date']}"
            template = "reminder_overdue.html"
            text_body = (
                f"Hi {contact.full_name}, your payment of {context['amount']} "
                f"to {academy.name} was due on {context['due_date']}."
            )
        else:
            subject = f"{academy.name}: upcoming payment on {context['due_date']}"
            template = "reminder_upcoming.html"
            text_body = (
                f"Hi {contact.full_name}, your payment of {context['amount']} "
                f"to {academy.name} is due on {context['due_date']}."
            )
        html_body = self._render_template(template, context)
        self._send_email(to=recipient, subject=subject, html_body=html_body, text_body=text_body)

    def _render_template(self, template_name: str, context: dict) -> str:
        template = self.template_env.get_template(template_name)
        return template.render(**context)

    def _send_email(self, *, to: str, subject: str, html_body: str, text_body: str | None = None) -> None:
        if not self.email_config:
            raise RuntimeError("Email sender not configured")

        message = EmailMessage()
        message["Subject"] = subject
        message["From"] = self.email_config.sender
        message["To"] = to
        message.set_content(text_body or "", subtype="plain", charset="utf-8")
        message.add_alternative(html_body, subtype="html", charset="utf-8")

        with smtplib.SMTP(self.email_config.host, self.email_config.port, timeout=30) as smtp:
            if self.email_config.starttls:
                smtp.starttls()
            if self.email_config.username and self.email_config.password:
                smtp.login(self.email_config.username, self.email_config.password)
            smtp.send_message(message)


__all__ = ["EmailConfig", "EmailValidationError", "ReminderNotifier", "format_amount"]
