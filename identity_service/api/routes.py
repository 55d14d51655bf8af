"""HTTP route definitions for the authentication endpoints."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Annotated, Callable

from fastapi import APIRouter, Depends, Header, Query, Request, status
from pydantic import BaseModel, ConfigDict, EmailStr, Field, StringConstraints

from ..domain.account import ADMIN_ROLES, Account, Role
from ..domain.contracts import AdminRegisterInput, RegisterInput, SessionGrant
from ..domain.service import AuthService
from ..errors import AuthError, ErrorCode

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/auth")

Name = Annotated[str, StringConstraints(strip_whitespace=True, min_length=2, max_length=50)]
OtpCode = Annotated[str, StringConstraints(strip_whitespace=True, pattern=r"^\d{6}$")]

FORGOT_PASSWORD_MESSAGE = "If an account exists, a password reset link will be sent"
RESEND_OTP_MESSAGE = "If an account exists, a new verification code has been sent"


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class ApiResponse(BaseModel):
    """Envelope shared by every endpoint."""

    success: bool = True
    message: str
    data: dict[str, Any] | None = None


class RegisterRequest(_CamelModel):
    """Payload accepted when a patient or provider signs up."""

    email: EmailStr
    password: str
    first_name: Name = Field(..., alias="firstName")
    last_name: Name = Field(..., alias="lastName")
    role: Role | None = None


class RegisterAdminRequest(_CamelModel):
    email: EmailStr
    password: str
    first_name: Name = Field(..., alias="firstName")
    last_name: Name = Field(..., alias="lastName")
    role: Role
    secret_key: str = Field(..., alias="secretKey")


class LoginRequest(_CamelModel):
    email: EmailStr
    password: str = Field(..., min_length=1)
    remember_me: bool = Field(default=False, alias="rememberMe")


class VerifyOtpRequest(_CamelModel):
    email: EmailStr
    otp: OtpCode


class EmailRequest(_CamelModel):
    email: EmailStr


class RefreshTokenRequest(_CamelModel):
    """Request body for exchanging refresh tokens for new access credentials."""

    refresh_token: str = Field(..., min_length=1, alias="refreshToken")


class ResetPasswordRequest(_CamelModel):
    token: str = Field(..., min_length=1)
    password: str


class PasswordRequest(_CamelModel):
    password: str = Field(..., min_length=1)


class ChangePasswordRequest(_CamelModel):
    current_password: str = Field(..., min_length=1, alias="currentPassword")
    new_password: str = Field(..., alias="newPassword")


class ProfileFields(_CamelModel):
    first_name: Name | None = Field(default=None, alias="firstName")
    last_name: Name | None = Field(default=None, alias="lastName")


class UpdateProfileRequest(_CamelModel):
    """Partial profile update; only the supplied fields change."""

    profile: ProfileFields


class AuditLogEntry(BaseModel):
    """Audit log response entry."""

    audit_id: int
    account_id: str | None
    event_type: str
    actor: str | None
    metadata: dict[str, Any]
    created_at: datetime


class AuditLogResponse(BaseModel):
    """Envelope for paginated audit log data."""

    success: bool = True
    items: list[AuditLogEntry]
    next_cursor: str | None = None


def get_service(request: Request) -> AuthService:
    """Resolve the `AuthService` stored on the FastAPI application state."""
    service: AuthService = request.app.state.auth_service
    return service


def get_current_account(
    service: AuthService = Depends(get_service),
    authorization: str | None = Header(default=None),
) -> Account:
    """Authenticate the ``Authorization: Bearer <token>`` header."""
    if not authorization or not authorization.startswith("Bearer "):
        raise AuthError(ErrorCode.INVALID_TOKEN, "Access denied. No token provided.")
    token = authorization[len("Bearer "):].strip()
    if not token:
        raise AuthError(ErrorCode.INVALID_TOKEN, "Access denied. No token provided.")
    return service.authenticate(token)


def require_roles(*roles: Role) -> Callable[..., Account]:
    """Build a dependency admitting only accounts holding one of ``roles``."""
    allowed = frozenset(roles)

    def dependency(account: Account = Depends(get_current_account)) -> Account:
        if account.role not in allowed:
            raise AuthError(ErrorCode.INSUFFICIENT_ROLE)
        return account

    return dependency


def require_verified_email(account: Account = Depends(get_current_account)) -> Account:
    if not account.verification.email_verified:
        raise AuthError(ErrorCode.EMAIL_NOT_VERIFIED)
    return account


def _session_data(grant: SessionGrant) -> dict[str, Any]:
    return {
        "user": grant.account.to_profile(),
        "accessToken": grant.tokens.access_token,
        "refreshToken": grant.tokens.refresh_token,
        "expiresIn": grant.tokens.access_expires_in,
        "rememberMe": grant.remember_me,
    }


@router.post("/register", response_model=ApiResponse, status_code=status.HTTP_201_CREATED)
def register(payload: RegisterRequest, service: AuthService = Depends(get_service)) -> ApiResponse:
    """Create an unverified account and email a registration code."""
    result = service.register(
        RegisterInput(
            email=payload.email,
            password=payload.password,
            first_name=payload.first_name,
            last_name=payload.last_name,
            role=payload.role,
        )
    )
    return ApiResponse(
        message="Registration successful. Please check your email for a verification code.",
        data={"email": result.email, "requiresVerification": result.requires_verification},
    )


@router.post("/register-admin", response_model=ApiResponse, status_code=status.HTTP_201_CREATED)
def register_admin(
    payload: RegisterAdminRequest, service: AuthService = Depends(get_service)
) -> ApiResponse:
    account = service.register_admin(
        AdminRegisterInput(
            email=payload.email,
            password=payload.password,
            first_name=payload.first_name,
            last_name=payload.last_name,
            role=payload.role,
            secret_key=payload.secret_key,
        )
    )
    return ApiResponse(message="Admin account created successfully.", data={"user": account.to_profile()})


@router.post("/login", response_model=ApiResponse)
def login(payload: LoginRequest, service: AuthService = Depends(get_service)) -> ApiResponse:
    """Check credentials and send a one-time code; tokens follow OTP verification."""
    challenge = service.login(payload.email, payload.password, payload.remember_me)
    return ApiResponse(
        message="Verification code sent to your email",
        data={
            "email": challenge.email,
            "requiresVerification": challenge.requires_verification,
            "isLoginVerification": challenge.is_login_verification,
        },
    )


@router.post("/verify-otp", response_model=ApiResponse)
def verify_otp(payload: VerifyOtpRequest, service: AuthService = Depends(get_service)) -> ApiResponse:
    grant = service.verify_otp(payload.email, payload.otp)
    return ApiResponse(message="Verification successful", data=_session_data(grant))


@router.post("/resend-otp", response_model=ApiResponse)
def resend_otp(payload: EmailRequest, service: AuthService = Depends(get_service)) -> ApiResponse:
    service.resend_otp(payload.email)
    return ApiResponse(message=RESEND_OTP_MESSAGE)


@router.post("/refresh-token", response_model=ApiResponse)
def refresh_token(
    payload: RefreshTokenRequest, service: AuthService = Depends(get_service)
) -> ApiResponse:
    outcome = service.refresh(payload.refresh_token)
    if outcome.tokens is None:
        return ApiResponse(
            message="Please verify your identity with the code sent to your email",
            data={"requiresOtpReverification": True, "email": outcome.email},
        )
    return ApiResponse(
        message="Token refreshed",
        data={
            "accessToken": outcome.tokens.access_token,
            "refreshToken": outcome.tokens.refresh_token,
            "expiresIn": outcome.tokens.access_expires_in,
        },
    )


@router.post("/reverify-otp", response_model=ApiResponse)
def reverify_otp(payload: VerifyOtpRequest, service: AuthService = Depends(get_service)) -> ApiResponse:
    grant = service.reverify_otp(payload.email, payload.otp)
    return ApiResponse(message="Verification successful", data=_session_data(grant))


@router.post("/forgot-password", response_model=ApiResponse)
def forgot_password(payload: EmailRequest, service: AuthService = Depends(get_service)) -> ApiResponse:
    service.forgot_password(payload.email)
    return ApiResponse(message=FORGOT_PASSWORD_MESSAGE)


@router.post("/reset-password", response_model=ApiResponse)
def reset_password(
    payload: ResetPasswordRequest, service: AuthService = Depends(get_service)
) -> ApiResponse:
    service.reset_password(payload.token, payload.password)
    return ApiResponse(message="Password reset successful")


@router.post("/verify-password", response_model=ApiResponse)
def verify_password(
    payload: PasswordRequest,
    account: Account = Depends(get_current_account),
    service: AuthService = Depends(get_service),
) -> ApiResponse:
    service.verify_password(account, payload.password)
    return ApiResponse(message="Password verified successfully")


@router.post("/change-password", response_model=ApiResponse)
def change_password(
    payload: ChangePasswordRequest,
    account: Account = Depends(require_verified_email),
    service: AuthService = Depends(get_service),
) -> ApiResponse:
    service.change_password(account, payload.current_password, payload.new_password)
    return ApiResponse(message="Password changed successfully")


@router.post("/logout", response_model=ApiResponse)
def logout(
    account: Account = Depends(get_current_account),
    service: AuthService = Depends(get_service),
) -> ApiResponse:
    service.logout(account)
    return ApiResponse(message="Logged out successfully")


@router.get("/profile", response_model=ApiResponse)
def profile(account: Account = Depends(get_current_account)) -> ApiResponse:
    return ApiResponse(message="Profile retrieved", data={"user": account.to_profile()})


@router.put("/profile", response_model=ApiResponse)
def update_profile(
    payload: UpdateProfileRequest,
    account: Account = Depends(get_current_account),
    service: AuthService = Depends(get_service),
) -> ApiResponse:
    updated = service.update_profile(
        account,
        first_name=payload.profile.first_name,
        last_name=payload.profile.last_name,
    )
    return ApiResponse(message="Profile updated successfully", data={"user": updated.to_profile()})


@router.get("/audit/logs", response_model=AuditLogResponse)
def list_audit_logs(
    account_id: str | None = Query(default=None),
    event_type: str | None = Query(default=None),
    created_after: datetime | None = Query(default=None),
    created_before: datetime | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=100),
    cursor: str | None = Query(default=None),
    _admin: Account = Depends(require_roles(*ADMIN_ROLES)),
    service: AuthService = Depends(get_service),
) -> AuditLogResponse:
    """Return paginated audit events with optional filtering."""
    records, next_cursor = service.list_audit_events(
        account_id=account_id,
        event_type=event_type,
        created_after=created_after,
        created_before=created_before,
        limit=limit,
        cursor=cursor,
    )
    items = [
        AuditLogEntry(
            audit_id=record.audit_id,
            account_id=record.account_id,
            event_type=record.event_type,
            actor=record.actor,
            metadata=record.metadata,
            created_at=record.created_at,
        )
        for record in records
    ]
    return AuditLogResponse(items=items, next_cursor=next_cursor)
