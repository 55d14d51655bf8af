from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class Role(str, Enum):
    user = "user"
    provider = "provider"
    admin = "admin"
    super_admin = "super_admin"


ADMIN_ROLES = frozenset({Role.admin, Role.super_admin})


class OtpContext(str, Enum):
    """Why a one-time passcode was issued."""

    registration = "registration"
    login = "login"
    reverify = "reverify"


@dataclass(slots=True)
class Verification:
    """Email verification state plus the pending OTP challenge, if any."""

    email_verified: bool = False
    otp_hash: str | None = None
    otp_expires_at: datetime | None = None
    otp_attempts: int = 0
    otp_context: OtpContext = OtpContext.registration

    @property
    def has_pending_challenge(self) -> bool:
        return self.otp_hash is not None

    def clear_challenge(self) -> None:
        self.otp_hash = None
        self.otp_expires_at = None
        self.otp_attempts = 0


@dataclass(slots=True)
class PasswordReset:
    token_hash: str | None = None
    expires_at: datetime | None = None

    def clear(self) -> None:
        self.token_hash = None
        self.expires_at = None


@dataclass(slots=True)
class Account:
    """Aggregate root for a platform user's credentials and session policy."""

    account_id: str
    email: str
    password_hash: str
    role: Role
    created_at: datetime
    first_name: str = ""
    last_name: str = ""
    is_active: bool = True
    verification: Verification = field(default_factory=Verification)
    password_reset: PasswordReset = field(default_factory=PasswordReset)
    remember_me: bool = False
    last_login: datetime | None = None
    last_otp_verified_at: datetime | None = None
    version: int = 0

    @property
    def display_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    def to_profile(self) -> dict:
        """Public representation of the account, without any credential material."""
        return {
            "id": self.account_id,
            "email": self.email,
            "role": self.role.value,
            "isActive": self.is_active,
            "profile": {
                "firstName": self.first_name,
                "lastName": self.last_name,
                "displayName": self.display_name,
            },
            "verification": {"emailVerified": self.verification.email_verified},
            "rememberMe": self.remember_me,
            "lastLogin": self.last_login.isoformat() if self.last_login else None,
            "createdAt": self.created_at.isoformat(),
        }
