"""Transactional email providers used by the notification dispatcher."""

from __future__ import annotations

import html
import logging
from typing import Optional, Protocol

import httpx

from ..domain.account import OtpContext

logger = logging.getLogger(__name__)

_RESEND_API_URL = "https://api.resend.com/emails"
_BRAND = "mywellbeingtoday"

_OTP_SUBJECTS = {
    OtpContext.registration: f"Verify Your Email - {_BRAND}",
    OtpContext.login: f"Your Login Code - {_BRAND}",
    OtpContext.reverify: f"Confirm It's You - {_BRAND}",
}


class EmailDeliveryError(RuntimeError):
    """Raised when the email provider rejects or cannot accept a message."""


def redact_email(email: str) -> str:
    if "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


class EmailProvider(Protocol):
    def send_otp_email(
        self, email: str, user_name: Optional[str], otp_code: str, context: OtpContext
    ) -> None: ...

    def send_welcome_email(self, email: str, user_name: Optional[str]) -> None: ...

    def send_password_reset_email(
        self, email: str, user_name: Optional[str], reset_link: str
    ) -> None: ...

    def send_password_changed_email(self, email: str, user_name: Optional[str]) -> None: ...

    def close(self) -> None: ...


def _greeting(user_name: Optional[str]) -> str:
    return f"Hello {user_name}," if user_name else "Hello,"


class _TemplatedProvider:
    """Builds message bodies; subclasses decide how a message leaves the process."""

    def _send(self, to_email: str, subject: str, html_body: str) -> None:
        raise NotImplementedError

    def send_otp_email(
        self, email: str, user_name: Optional[str], otp_code: str, context: OtpContext
    ) -> None:
        body = (
            f"<p>{html.escape(_greeting(user_name))}</p>"
            f"<p>Your verification code is <strong>{otp_code}</strong>.</p>"
            "<p>This code expires in 10 minutes. If you did not request it, ignore this email.</p>"
        )
        self._send(email, _OTP_SUBJECTS[context], body)

    def send_welcome_email(self, email: str, user_name: Optional[str]) -> None:
        name = html.escape(user_name or "there")
        body = (
            f"<p>Welcome, {name}!</p>"
            f"<p>Your {_BRAND} account is verified and ready to use.</p>"
        )
        self._send(email, f"Welcome to {_BRAND}", body)

    def send_password_reset_email(
        self, email: str, user_name: Optional[str], reset_link: str
    ) -> None:
        body = (
            f"<p>{html.escape(_greeting(user_name))}</p>"
            "<p>We received a request to reset your password. This link expires in 1 hour:</p>"
            f'<p><a href="{html.escape(reset_link, quote=True)}">Reset Password</a></p>'
            "<p>If you didn't request a password reset, please ignore this email.</p>"
        )
        self._send(email, f"Reset Your Password - {_BRAND}", body)

    def send_password_changed_email(self, email: str, user_name: Optional[str]) -> None:
        body = (
            f"<p>{html.escape(_greeting(user_name))}</p>"
            "<p>Your password was just changed. If this wasn't you, contact support immediately.</p>"
        )
        self._send(email, f"Your Password Was Changed - {_BRAND}", body)


class ResendEmailProvider(_TemplatedProvider):
    """Delivers email through the Resend HTTP API."""

    def __init__(
        self,
        api_key: str,
        sender_email: str,
        *,
        client: httpx.Client | None = None,
        timeout: float = 10.0,
    ) -> None:
        self._api_key = api_key
        self._sender = sender_email
        self._client = client or httpx.Client(timeout=timeout)
        self._owns_client = client is None

    def _send(self, to_email: str, subject: str, html_body: str) -> None:
        try:
            response = self._client.post(
                _RESEND_API_URL,
                json={"from": self._sender, "to": [to_email], "subject": subject, "html": html_body},
                headers={"Authorization": f"Bearer {self._api_key}"},
            )
        except httpx.HTTPError as exc:
            raise EmailDeliveryError(f"resend request failed: {type(exc).__name__}") from exc
        if response.status_code not in (200, 201, 202):
            raise EmailDeliveryError(
                f"resend rejected message with status {response.status_code}: {response.text[:200]}"
            )
        logger.info("email sent to %s subject=%r", redact_email(to_email), subject)

    def close(self) -> None:
        if self._owns_client:
            self._client.close()


class LoggingEmailProvider(_TemplatedProvider):
    """Development provider used when no API key is configured.

    Records that a message would have been sent; bodies are not logged because
    they carry codes and reset links.
    """

    def _send(self, to_email: str, subject: str, html_body: str) -> None:
        logger.info(
            "RESEND_API_KEY not configured; email to %s subject=%r not delivered",
            redact_email(to_email),
            subject,
        )

    def close(self) -> None:
        return None
