"""One-time passcode issuance and verification against an account snapshot."""

from __future__ import annotations

import hashlib
import hmac
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

from ..domain.account import Account, OtpContext
from ..errors import ErrorCode

OTP_TTL = timedelta(minutes=10)
MAX_OTP_ATTEMPTS = 5


def generate_otp_code() -> str:
    """Return a uniformly random six digit code in the range 100000-999999."""
    return str(100000 + secrets.randbelow(900000))


def hash_otp(code: str) -> str:
    """Return the SHA-256 hex digest stored in place of the plaintext code."""
    return hashlib.sha256(code.encode("utf-8")).hexdigest()


@dataclass(frozen=True, slots=True)
class OtpCheck:
    ok: bool
    reason: ErrorCode | None = None
    context: OtpContext | None = None


class OtpService:
    """Issues and checks OTP challenges embedded in ``Account.verification``.

    Both operations mutate the account passed in and nothing else; persisting
    the result with a single conditional write is the caller's job.
    """

    def __init__(
        self,
        *,
        ttl: timedelta = OTP_TTL,
        max_attempts: int = MAX_OTP_ATTEMPTS,
        code_generator: Callable[[], str] = generate_otp_code,
    ) -> None:
        self._ttl = ttl
        self._max_attempts = max_attempts
        self._generate = code_generator

    def issue(self, account: Account, context: OtpContext, now: datetime) -> str:
        """Start a fresh challenge and return the plaintext code for delivery."""
        code = self._generate()
        verification = account.verification
        verification.otp_hash = hash_otp(code)
        verification.otp_expires_at = now + self._ttl
        verification.otp_attempts = 0
        verification.otp_context = context
        return code

    def verify(self, account: Account, candidate: str, now: datetime) -> OtpCheck:
        verification = account.verification
        if not verification.has_pending_challenge:
            return OtpCheck(ok=False, reason=ErrorCode.ACCOUNT_NOT_FOUND)
        if verification.otp_attempts >= self._max_attempts:
            return OtpCheck(ok=False, reason=ErrorCode.TOO_MANY_ATTEMPTS)
        if verification.otp_expires_at is None or now > verification.otp_expires_at:
            return OtpCheck(ok=False, reason=ErrorCode.OTP_EXPIRED)

        candidate_hash = hash_otp(candidate.strip())
        if not hmac.compare_digest(candidate_hash, verification.otp_hash or ""):
            verification.otp_attempts += 1
            return OtpCheck(ok=False, reason=ErrorCode.INVALID_OTP)

        context = verification.otp_context
        verification.clear_challenge()
        return OtpCheck(ok=True, context=context)
