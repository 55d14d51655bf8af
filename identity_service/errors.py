"""Typed failures raised by the authentication workflows."""

from __future__ import annotations

from enum import Enum


class ErrorCode(str, Enum):
    """Stable machine-readable failure codes paired with their HTTP status."""

    VALIDATION_ERROR = "VALIDATION_ERROR"
    WEAK_PASSWORD = "WEAK_PASSWORD"
    ACCOUNT_NOT_FOUND = "ACCOUNT_NOT_FOUND"
    INVALID_CREDENTIALS = "INVALID_CREDENTIALS"
    INVALID_OTP = "INVALID_OTP"
    OTP_EXPIRED = "OTP_EXPIRED"
    TOO_MANY_ATTEMPTS = "TOO_MANY_ATTEMPTS"
    ACCOUNT_DEACTIVATED = "ACCOUNT_DEACTIVATED"
    INVALID_TOKEN = "INVALID_TOKEN"
    TOKEN_EXPIRED = "TOKEN_EXPIRED"
    INVALID_PASSWORD = "INVALID_PASSWORD"
    EMAIL_EXISTS = "EMAIL_EXISTS"
    EMAIL_NOT_VERIFIED = "EMAIL_NOT_VERIFIED"
    INSUFFICIENT_ROLE = "INSUFFICIENT_ROLE"
    INVALID_SECRET_KEY = "INVALID_SECRET_KEY"
    CONCURRENT_UPDATE = "CONCURRENT_UPDATE"

    @property
    def status_code(self) -> int:
        return _STATUS_CODES[self]


_STATUS_CODES: dict[ErrorCode, int] = {
    ErrorCode.VALIDATION_ERROR: 400,
    ErrorCode.WEAK_PASSWORD: 400,
    ErrorCode.ACCOUNT_NOT_FOUND: 400,
    ErrorCode.INVALID_CREDENTIALS: 401,
    ErrorCode.INVALID_OTP: 401,
    ErrorCode.OTP_EXPIRED: 401,
    ErrorCode.TOO_MANY_ATTEMPTS: 429,
    ErrorCode.ACCOUNT_DEACTIVATED: 403,
    ErrorCode.INVALID_TOKEN: 401,
    ErrorCode.TOKEN_EXPIRED: 401,
    ErrorCode.INVALID_PASSWORD: 401,
    ErrorCode.EMAIL_EXISTS: 409,
    ErrorCode.EMAIL_NOT_VERIFIED: 403,
    ErrorCode.INSUFFICIENT_ROLE: 403,
    ErrorCode.INVALID_SECRET_KEY: 403,
    ErrorCode.CONCURRENT_UPDATE: 409,
}

_DEFAULT_MESSAGES: dict[ErrorCode, str] = {
    ErrorCode.VALIDATION_ERROR: "Invalid request",
    ErrorCode.WEAK_PASSWORD: "Password does not meet the password policy",
    ErrorCode.ACCOUNT_NOT_FOUND: "No pending verification code. Please request a new code.",
    ErrorCode.INVALID_CREDENTIALS: "Invalid email or password",
    ErrorCode.INVALID_OTP: "Invalid verification code",
    ErrorCode.OTP_EXPIRED: "Verification code has expired. Please request a new code.",
    ErrorCode.TOO_MANY_ATTEMPTS: "Too many failed attempts. Please request a new code.",
    ErrorCode.ACCOUNT_DEACTIVATED: "Account is deactivated",
    ErrorCode.INVALID_TOKEN: "Invalid or expired token",
    ErrorCode.TOKEN_EXPIRED: "Token expired",
    ErrorCode.INVALID_PASSWORD: "Incorrect password",
    ErrorCode.EMAIL_EXISTS: "Email already registered",
    ErrorCode.EMAIL_NOT_VERIFIED: "Email verification required",
    ErrorCode.INSUFFICIENT_ROLE: "Access denied. Insufficient permissions.",
    ErrorCode.INVALID_SECRET_KEY: "Invalid secret key",
    ErrorCode.CONCURRENT_UPDATE: "The account was modified concurrently. Please retry.",
}


class AuthError(Exception):
    """Authentication or authorisation failure with a stable error code."""

    def __init__(
        self,
        code: ErrorCode,
        message: str | None = None,
        *,
        status_code: int | None = None,
    ) -> None:
        self.code = code
        self.message = message or _DEFAULT_MESSAGES[code]
        self.status_code = status_code or code.status_code
        super().__init__(self.message)

    def __repr__(self) -> str:
        return f"AuthError(code={self.code.value!r}, status_code={self.status_code})"


class ConfigurationError(RuntimeError):
    """Raised at startup when the process configuration is unusable."""
