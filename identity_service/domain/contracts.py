"""Domain-level request contracts shared by multiple layers."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional, Protocol, Tuple

from .account import Account, OtpContext, Role


@dataclass(slots=True)
class RegisterInput:
    """Validated inputs required to create a self-registered account."""

    email: str
    password: str
    first_name: str
    last_name: str
    role: Role | None = None


@dataclass(slots=True)
class AdminRegisterInput:
    email: str
    password: str
    first_name: str
    last_name: str
    role: Role
    secret_key: str


@dataclass(slots=True)
class AuditLogRecord:
    """Row projection for items in identity_audit_log."""

    audit_id: int
    account_id: str | None
    event_type: str
    actor: str | None
    metadata: dict[str, Any]
    created_at: datetime


class DuplicateAccountError(Exception):
    """Raised by a credential store when the email is already taken."""


class CredentialStore(Protocol):
    """Persistence contract consumed by :class:`~identity_service.domain.service.AuthService`.

    ``compare_and_set`` is the only way to modify an existing account: it writes
    the whole document if and only if the stored ``version`` still equals
    ``expected_version``, bumping the version on success.
    """

    def create_account(self, account: Account) -> Account: ...

    def get_account(self, account_id: str) -> Account | None: ...

    def get_account_by_email(self, email: str) -> Account | None: ...

    def get_account_by_reset_token(self, token_hash: str) -> Account | None: ...

    def compare_and_set(self, account: Account, expected_version: int) -> bool: ...

    def write_audit_event(
        self,
        *,
        account_id: str | None,
        event_type: str,
        actor: str | None,
        metadata: dict[str, Any] | None = None,
    ) -> None: ...

    def list_audit_events(
        self,
        *,
        account_id: str | None = None,
        event_type: str | None = None,
        created_after: datetime | None = None,
        created_before: datetime | None = None,
        limit: int = 50,
        cursor: Tuple[datetime, int] | None = None,
    ) -> tuple[list[AuditLogRecord], Optional[Tuple[datetime, int]]]: ...

    def create_notification(
        self,
        *,
        account_id: str,
        notification_type: str,
        title: str,
        message: str,
        link: str | None = None,
    ) -> None: ...


@dataclass(slots=True)
class TokenBundle:
    """Encapsulates the access/refresh token pair returned to API consumers."""

    access_token: str
    access_expires_in: int
    refresh_token: str
    refresh_expires_in: int


@dataclass(slots=True)
class RegistrationResult:
    email: str
    requires_verification: bool = True


@dataclass(slots=True)
class LoginChallenge:
    """Outcome of a password-correct login: an OTP has been sent."""

    email: str
    context: OtpContext
    requires_verification: bool = True

    @property
    def is_login_verification(self) -> bool:
        return self.context is OtpContext.login


@dataclass(slots=True)
class SessionGrant:
    """Tokens minted after a successful OTP verification."""

    account: Account
    tokens: TokenBundle
    remember_me: bool


@dataclass(slots=True)
class RefreshOutcome:
    """Either a fresh token pair or a demand for OTP re-verification."""

    email: str
    tokens: TokenBundle | None = None

    @property
    def requires_otp_reverification(self) -> bool:
        return self.tokens is None
