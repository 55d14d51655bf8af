"""Utilities for issuing and validating application JWTs."""

from __future__ import annotations

import logging
import secrets
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable

import jwt

from ..config import Settings
from ..domain.account import Account
from ..errors import ConfigurationError

logger = logging.getLogger(__name__)

ACCESS = "access"
REFRESH = "refresh"


@dataclass(frozen=True)
class SigningSecret:
    """Signing key selection: an explicit secret, or permission to mint one per process."""

    secret: bytes | None
    allow_ephemeral: bool

    @classmethod
    def from_settings(cls, settings: Settings) -> "SigningSecret":
        secret = settings.jwt_secret.encode("utf-8") if settings.jwt_secret else None
        return cls(secret=secret, allow_ephemeral=not settings.is_production)

    def resolve(self) -> bytes:
        """Return the key to sign with.

        Raises
        ------
        ConfigurationError
            When no secret is configured and ephemeral secrets are not allowed.
        """
        if self.secret:
            return self.secret
        if not self.allow_ephemeral:
            raise ConfigurationError("JWT_SECRET environment variable must be set in production")
        logger.warning(
            "using a generated JWT secret; tokens will not survive a restart. Set JWT_SECRET for persistent sessions."
        )
        return secrets.token_bytes(64)


class TokenInvalid(str, Enum):
    """Reasons a token failed verification."""

    INVALID = "INVALID"
    EXPIRED = "EXPIRED"


@dataclass(frozen=True, slots=True)
class TokenClaims:
    subject_id: str
    role: str
    token_type: str
    issued_at: int
    expires_at: int


class TokenCodec:
    """Signs and verifies HS256 access and refresh tokens.

    The key is resolved once at construction and is read-only afterwards.
    """

    algorithm = "HS256"

    def __init__(
        self,
        signing_secret: SigningSecret,
        *,
        issuer: str,
        access_ttl_seconds: int,
        remember_me_access_ttl_seconds: int,
        refresh_ttl_seconds: int,
        time_source: Callable[[], float] = time.time,
    ) -> None:
        self._key = signing_secret.resolve()
        self._issuer = issuer
        self.access_ttl_seconds = access_ttl_seconds
        self.remember_me_access_ttl_seconds = remember_me_access_ttl_seconds
        self.refresh_ttl_seconds = refresh_ttl_seconds
        self._time = time_source

    @classmethod
    def from_settings(
        cls, settings: Settings, *, time_source: Callable[[], float] = time.time
    ) -> "TokenCodec":
        return cls(
            SigningSecret.from_settings(settings),
            issuer=settings.jwt_issuer,
            access_ttl_seconds=settings.access_ttl_seconds,
            remember_me_access_ttl_seconds=settings.remember_me_access_ttl_seconds,
            refresh_ttl_seconds=settings.refresh_ttl_seconds,
            time_source=time_source,
        )

    def sign(self, subject_id: str, role: str, lifetime: int, token_type: str = ACCESS) -> str:
        """Create a signed JWT for ``subject_id`` expiring ``lifetime`` seconds from now."""
        now = int(self._time())
        payload: dict[str, Any] = {
            "iss": self._issuer,
            "sub": subject_id,
            "role": role,
            "type": token_type,
            "iat": now,
            "exp": now + lifetime,
        }
        return jwt.encode(payload, self._key, algorithm=self.algorithm)

    def access_lifetime(self, remember_me: bool) -> int:
        return self.remember_me_access_ttl_seconds if remember_me else self.access_ttl_seconds

    def issue_access(self, account: Account, remember_me: bool) -> tuple[str, int]:
        lifetime = self.access_lifetime(remember_me)
        return self.sign(account.account_id, account.role.value, lifetime, ACCESS), lifetime

    def issue_refresh(self, account: Account) -> tuple[str, int]:
        lifetime = self.refresh_ttl_seconds
        return self.sign(account.account_id, account.role.value, lifetime, REFRESH), lifetime

    def verify(self, token: str, expected_type: str | None = None) -> TokenClaims | TokenInvalid:
        """Decode ``token`` and return its claims, or a :class:`TokenInvalid` reason.

        Never raises for malformed, forged, or expired input; callers branch on the
        return type instead.
        """
        try:
            # exp and iat are checked against the injected clock, not the wall clock
            payload = jwt.decode(
                token,
                self._key,
                algorithms=[self.algorithm],
                issuer=self._issuer,
                options={
                    "verify_exp": False,
                    "verify_iat": False,
                    "require": ["exp", "iat", "sub"],
                },
            )
        except jwt.PyJWTError:
            return TokenInvalid.INVALID

        try:
            claims = TokenClaims(
                subject_id=str(payload["sub"]),
                role=str(payload.get("role", "")),
                token_type=str(payload.get("type", ACCESS)),
                issued_at=int(payload["iat"]),
                expires_at=int(payload["exp"]),
            )
        except (KeyError, TypeError, ValueError):
            return TokenInvalid.INVALID

        if expected_type is not None and claims.token_type != expected_type:
            return TokenInvalid.INVALID
        if claims.expires_at <= int(self._time()):
            return TokenInvalid.EXPIRED
        return claims
