from __future__ import annotations

import asyncio
import html
import smtplib
import ssl
from dataclasses import dataclass
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Dict, Optional

from pydantic import ValidationError as PydanticValidationError

from airsocial.logging import get_logger
from airsocial.service.events import (
    EVENT_EMAIL_RESET_PASSWORD,
    EVENT_EMAIL_VERIFY,
    EmailEventData,
    EventEnvelope,
)

logger = get_logger(__name__)


class EmailDeliveryError(Exception):
    """Sending failed in a way that may succeed on a later attempt."""


class PermanentEmailError(Exception):
    """The event can never be delivered (bad payload); do not retry."""


@dataclass
class OutgoingEmail:
    to: str
    subject: str
    html_body: str
    text_body: Optional[str] = None


def redact_email(email: str) -> str:
    """Redact an email address for logging to avoid PII leakage."""
    if "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


class EmailSender:
    """SMTP sender for transactional emails.

    When no SMTP host is configured the message is logged instead of sent,
    which keeps local development and tests free of a mail server.
    """

    def __init__(
        self,
        *,
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        smtp_use_tls: bool = True,
        from_email: Optional[str] = None,
        from_name: str = "Air Social",
        timeout: float = 30.0,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.timeout = timeout

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    @property
    def from_header(self) -> str:
        return f"{self.from_name} <{self.from_email}>"

    def _build_message(self, message: OutgoingEmail) -> MIMEMultipart:
        msg = MIMEMultipart("alternative")
        msg["Subject"] = message.subject
        msg["From"] = self.from_header
        msg["To"] = message.to
        if message.text_body:
            msg.attach(MIMEText(message.text_body, "plain"))
        msg.attach(MIMEText(message.html_body, "html"))
        return msg

    def send(self, message: OutgoingEmail) -> None:
        """Send one email; raises EmailDeliveryError on any SMTP failure."""
        to = redact_email(message.to)
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                to=to,
                subject=message.subject,
                body_preview=(message.text_body or message.html_body)[:200],
            )
            return

        msg = self._build_message(message)
        context = ssl.create_default_context()
        try:
            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, message.to, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=self.timeout
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, message.to, msg.as_string())
        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=to,
                host=self.smtp_host,
                error=str(e),
                error_code=getattr(e, "smtp_code", None),
            )
            raise EmailDeliveryError("smtp authentication failed") from e
        except smtplib.SMTPRecipientsRefused as e:
            logger.error("email_recipient_refused", to=to, error=str(e))
            raise EmailDeliveryError("recipient refused") from e
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                to=to,
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            raise EmailDeliveryError("smtp error") from e
        except ssl.SSLError as e:
            logger.error("email_ssl_error", to=to, host=self.smtp_host, port=self.smtp_port, error=str(e))
            raise EmailDeliveryError("smtp tls error") from e
        except OSError as e:
            # Connection refused, DNS failure, socket timeout
            logger.error(
                "email_connect_failed", to=to, host=self.smtp_host, port=self.smtp_port, error=str(e)
            )
            raise EmailDeliveryError("smtp connection failed") from e

        logger.info("email_sent", to=to, subject=message.subject)


_LAYOUT = """<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <title>{title}</title>
    <style>
        body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933; }}
        .container {{ max-width: 600px; margin: 0 auto; padding: 40px 20px; }}
        .button {{ display: inline-block; background: #1d9bf0; color: white; padding: 12px 24px; border-radius: 8px; text-decoration: none; font-weight: 600; }}
        .footer {{ margin-top: 40px; font-size: 12px; color: #5b6470; }}
    </style>
</head>
<body>
    <div class="container">
{content}
        <div class="footer">
            <p>{app_name}</p>
            <p>If the button doesn't work, copy and paste this URL: {link}</p>
        </div>
    </div>
</body>
</html>
"""


@dataclass(frozen=True)
class EmailTemplate:
    subject: str
    html_content: str
    text: str

    def render(self, data: EmailEventData, app_name: str) -> OutgoingEmail:
        safe = {
            "name": html.escape(data.name),
            "link": html.escape(data.link, quote=True),
            "expiry": html.escape(data.expiry),
            "app_name": html.escape(app_name),
        }
        subject = self.subject.format(app_name=app_name)
        body = _LAYOUT.format(
            title=html.escape(subject),
            content=self.html_content.format(**safe),
            app_name=safe["app_name"],
            link=safe["link"],
        )
        text = self.text.format(
            name=data.name, link=data.link, expiry=data.expiry, app_name=app_name
        )
        return OutgoingEmail(to=data.email, subject=subject, html_body=body, text_body=text)


VERIFY_EMAIL_TEMPLATE = EmailTemplate(
    subject="Verify your {app_name} email",
    html_content="""        <h1>Verify your email</h1>
        <p>Hi {name}, thanks for signing up! Please verify your email address by clicking the button below:</p>
        <p style="margin: 30px 0;">
            <a href="{link}" class="button">Verify Email</a>
        </p>
        <p>This link will expire in {expiry}.</p>""",
    text="""Verify your {app_name} email

Hi {name}, thanks for signing up! Please verify your email address by visiting the link below:

{link}

This link will expire in {expiry}.

---
{app_name}
""",
)

RESET_PASSWORD_TEMPLATE = EmailTemplate(
    subject="Reset your {app_name} password",
    html_content="""        <h1>Reset your password</h1>
        <p>Hi {name}, we received a request to reset your password. Click the button below to choose a new password:</p>
        <p style="margin: 30px 0;">
            <a href="{link}" class="button">Reset Password</a>
        </p>
        <p>This link will expire in {expiry}.</p>
        <p>If you didn't request this, you can safely ignore this email.</p>""",
    text="""Reset your {app_name} password

Hi {name}, we received a request to reset your password. Visit the link below to choose a new password:

{link}

This link will expire in {expiry}.

If you didn't request this, you can safely ignore this email.

---
{app_name}
""",
)


class EmailEventHandler:
    """Renders email events into messages and hands them to the sender."""

    def __init__(
        self,
        sender: EmailSender,
        *,
        app_name: str = "Air Social",
        templates: Optional[Dict[str, EmailTemplate]] = None,
    ) -> None:
        self.sender = sender
        self.app_name = app_name
        self.templates = templates or {
            EVENT_EMAIL_VERIFY: VERIFY_EMAIL_TEMPLATE,
            EVENT_EMAIL_RESET_PASSWORD: RESET_PASSWORD_TEMPLATE,
        }

    def render(self, envelope: EventEnvelope) -> Optional[OutgoingEmail]:
        template = self.templates.get(envelope.event_type)
        if template is None:
            return None
        try:
            data = EmailEventData.model_validate(envelope.data)
        except PydanticValidationError as exc:
            raise PermanentEmailError(f"invalid {envelope.event_type} payload") from exc
        return template.render(data, self.app_name)

    async def __call__(self, envelope: EventEnvelope) -> None:
        message = self.render(envelope)
        if message is None:
            logger.warning(
                "email_event_unknown_type",
                event_type=envelope.event_type,
                event_id=envelope.event_id,
            )
            return
        await asyncio.to_thread(self.sender.send, message)

