"""Account service orchestrating credentials, OTP challenges, token issuance, and auditing."""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import secrets
import uuid
from base64 import urlsafe_b64decode, urlsafe_b64encode
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional, Tuple, TypeVar

from .account import ADMIN_ROLES, Account, OtpContext, Role, Verification
from .contracts import (
    AdminRegisterInput,
    AuditLogRecord,
    CredentialStore,
    DuplicateAccountError,
    LoginChallenge,
    RefreshOutcome,
    RegisterInput,
    RegistrationResult,
    SessionGrant,
    TokenBundle,
)
from ..errors import AuthError, ErrorCode
from ..metrics import AUTH_EVENTS, OTP_VERIFICATIONS
from ..notifications.dispatcher import NotificationDispatcher
from ..notifications.email import redact_email
from ..security.otp import OtpCheck, OtpService
from ..security.passwords import hash_password, password_policy_errors, verify_password
from ..security.tokens import ACCESS, REFRESH, TokenCodec, TokenInvalid

logger = logging.getLogger(__name__)

R = TypeVar("R")

REVERIFY_AFTER = timedelta(hours=2)
RESET_TOKEN_TTL = timedelta(hours=1)
MAX_WRITE_ATTEMPTS = 5
MIN_NAME_LENGTH = 2
MAX_NAME_LENGTH = 50


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def normalize_email(email: str) -> str:
    return email.strip().lower()


def hash_reset_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


class AuthService:
    """Session policy engine for registration, OTP verification, tokens and password reset.

    The service holds no per-user state of its own. Every change to an account is
    made through :meth:`_update`, which applies the change to a freshly loaded
    snapshot and persists it with the store's conditional write, retrying from a
    new snapshot when another request won the race.
    """

    def __init__(
        self,
        store: CredentialStore,
        codec: TokenCodec,
        dispatcher: NotificationDispatcher,
        *,
        otp: OtpService | None = None,
        clock: Callable[[], datetime] = _utcnow,
        reverify_after: timedelta = REVERIFY_AFTER,
        reset_token_ttl: timedelta = RESET_TOKEN_TTL,
        admin_registration_secret: str = "",
        max_write_attempts: int = MAX_WRITE_ATTEMPTS,
    ) -> None:
        """Store dependencies used to orchestrate persistence, OTP delivery and token issuance."""
        self._store = store
        self._codec = codec
        self._dispatcher = dispatcher
        self._otp = otp or OtpService()
        self._clock = clock
        self._reverify_after = reverify_after
        self._reset_token_ttl = reset_token_ttl
        self._admin_secret = admin_registration_secret
        self._max_write_attempts = max_write_attempts

    # -- registration -------------------------------------------------------

    def register(self, payload: RegisterInput) -> RegistrationResult:
        """Create an unverified account and send its registration code."""
        email = normalize_email(payload.email)
        self._check_password_policy(payload.password)
        if self._store.get_account_by_email(email) is not None:
            raise AuthError(ErrorCode.EMAIL_EXISTS)

        role = payload.role or Role.user
        if role in ADMIN_ROLES:
            role = Role.user

        now = self._clock()
        account = Account(
            account_id=str(uuid.uuid4()),
            email=email,
            password_hash=hash_password(payload.password),
            role=role,
            created_at=now,
            first_name=payload.first_name.strip(),
            last_name=payload.last_name.strip(),
        )
        code = self._otp.issue(account, OtpContext.registration, now)
        try:
            account = self._store.create_account(account)
        except DuplicateAccountError as exc:
            raise AuthError(ErrorCode.EMAIL_EXISTS) from exc

        logger.info("account %s registered as %s", account.account_id, account.role.value)
        AUTH_EVENTS.labels(event="register").inc()
        self._audit(account.account_id, "REGISTER", {"email": account.email})
        self._dispatcher.send_otp(account, code, OtpContext.registration)
        return RegistrationResult(email=account.email)

    def register_admin(self, payload: AdminRegisterInput) -> Account:
        """Create a pre-verified admin account guarded by the registration secret."""
        if not self._admin_secret or not hmac.compare_digest(
            payload.secret_key.encode("utf-8"), self._admin_secret.encode("utf-8")
        ):
            raise AuthError(ErrorCode.INVALID_SECRET_KEY)
        if payload.role not in ADMIN_ROLES:
            raise AuthError(ErrorCode.VALIDATION_ERROR, "Invalid admin role")
        email = normalize_email(payload.email)
        self._check_password_policy(payload.password)
        if self._store.get_account_by_email(email) is not None:
            raise AuthError(ErrorCode.EMAIL_EXISTS)

        account = Account(
            account_id=str(uuid.uuid4()),
            email=email,
            password_hash=hash_password(payload.password),
            role=payload.role,
            created_at=self._clock(),
            first_name=payload.first_name.strip(),
            last_name=payload.last_name.strip(),
            verification=Verification(email_verified=True),
        )
        try:
            account = self._store.create_account(account)
        except DuplicateAccountError as exc:
            raise AuthError(ErrorCode.EMAIL_EXISTS) from exc

        logger.info("admin account %s registered as %s", account.account_id, account.role.value)
        self._audit(
            account.account_id, "REGISTER_ADMIN", {"email": account.email, "role": account.role.value}
        )
        return account

    # -- login and OTP ------------------------------------------------------

    def login(self, email: str, password: str, remember_me: bool = False) -> LoginChallenge:
        """Check the password and, when it matches, challenge the account with a fresh OTP.

        An unknown email and a wrong password fail identically. No code is issued
        unless the password check passes.
        """
        email = normalize_email(email)
        account = self._store.get_account_by_email(email)
        password_ok = verify_password(account.password_hash if account else None, password)
        if account is None or not password_ok:
            AUTH_EVENTS.labels(event="login_failed").inc()
            logger.info("login rejected for %s", redact_email(email))
            raise AuthError(ErrorCode.INVALID_CREDENTIALS)
        if not account.is_active:
            raise AuthError(ErrorCode.ACCOUNT_DEACTIVATED)

        now = self._clock()

        def challenge(current: Account) -> tuple[tuple[str, OtpContext], bool]:
            current.remember_me = remember_me
            context = (
                OtpContext.login if current.verification.email_verified else OtpContext.registration
            )
            return (self._otp.issue(current, context, now), context), True

        account, (code, context) = self._update_existing(account.account_id, challenge)
        AUTH_EVENTS.labels(event="login_challenge").inc()
        self._dispatcher.send_otp(account, code, context)
        return LoginChallenge(email=account.email, context=context)

    def verify_otp(self, email: str, otp: str) -> SessionGrant:
        """Consume a pending challenge of any context and mint a session."""
        account, context, first_verification = self._consume_otp(email, otp, None)

        if context is OtpContext.login:
            self._audit(account.account_id, "LOGIN", {"email": account.email})
            self._dispatcher.notify_login(account)
        elif context is OtpContext.registration:
            self._audit(account.account_id, "VERIFY_EMAIL", None)
            if first_verification:
                self._dispatcher.send_welcome(account)
                self._dispatcher.notify_registration(account)
        else:
            self._audit(account.account_id, "REVERIFY", None)

        AUTH_EVENTS.labels(event=f"verified_{context.value}").inc()
        return SessionGrant(
            account=account,
            tokens=self._mint(account),
            remember_me=account.remember_me,
        )

    def reverify_otp(self, email: str, otp: str) -> SessionGrant:
        """Consume a ``reverify`` challenge raised by :meth:`refresh`."""
        account, _, _ = self._consume_otp(email, otp, OtpContext.reverify)
        self._audit(account.account_id, "REVERIFY", None)
        AUTH_EVENTS.labels(event="verified_reverify").inc()
        return SessionGrant(
            account=account,
            tokens=self._mint(account),
            remember_me=account.remember_me,
        )

    def resend_otp(self, email: str) -> None:
        """Replace the code of a pending challenge.

        Silent for unknown or inactive accounts and for accounts with no pending
        challenge: only login, registration and refresh may open a challenge.
        """
        email = normalize_email(email)
        account = self._store.get_account_by_email(email)
        if account is None or not account.is_active:
            logger.info("resend-otp ignored for %s", redact_email(email))
            return

        now = self._clock()

        def reissue(current: Account) -> tuple[tuple[str, OtpContext] | None, bool]:
            verification = current.verification
            if not verification.has_pending_challenge:
                return None, False
            context = verification.otp_context
            return (self._otp.issue(current, context, now), context), True

        account, reissued = self._update_existing(account.account_id, reissue)
        if reissued is None:
            logger.info("resend-otp ignored for %s: no pending challenge", redact_email(email))
            return
        code, context = reissued
        self._dispatcher.send_otp(account, code, context)

    # -- tokens -------------------------------------------------------------

    def refresh(self, refresh_token: str) -> RefreshOutcome:
        """Exchange a refresh token for a new pair, or demand OTP re-verification.

        Accounts without remember-me must have passed an OTP challenge within the
        re-verification window; otherwise a ``reverify`` code is sent instead of
        tokens.
        """
        claims = self._codec.verify(refresh_token, expected_type=REFRESH)
        if claims is TokenInvalid.EXPIRED:
            raise AuthError(ErrorCode.TOKEN_EXPIRED)
        if isinstance(claims, TokenInvalid):
            raise AuthError(ErrorCode.INVALID_TOKEN)

        account = self._store.get_account(claims.subject_id)
        if account is None:
            raise AuthError(ErrorCode.INVALID_TOKEN)
        if not account.is_active:
            raise AuthError(ErrorCode.ACCOUNT_DEACTIVATED)

        now = self._clock()

        def maybe_challenge(current: Account) -> tuple[Optional[str], bool]:
            if not self._needs_reverification(current, now):
                return None, False
            return self._otp.issue(current, OtpContext.reverify, now), True

        account, code = self._update_existing(account.account_id, maybe_challenge)
        if code is not None:
            logger.info("refresh for account %s requires OTP re-verification", account.account_id)
            AUTH_EVENTS.labels(event="reverify_required").inc()
            self._audit(account.account_id, "REVERIFY_REQUIRED", None)
            self._dispatcher.send_otp(account, code, OtpContext.reverify)
            return RefreshOutcome(email=account.email)

        AUTH_EVENTS.labels(event="token_refreshed").inc()
        self._audit(account.account_id, "TOKEN_REFRESHED", None)
        return RefreshOutcome(email=account.email, tokens=self._mint(account))

    def authenticate(self, access_token: str) -> Account:
        """Resolve a bearer access token to its active account."""
        claims = self._codec.verify(access_token, expected_type=ACCESS)
        if claims is TokenInvalid.EXPIRED:
            raise AuthError(ErrorCode.TOKEN_EXPIRED)
        if isinstance(claims, TokenInvalid):
            raise AuthError(ErrorCode.INVALID_TOKEN)
        account = self._store.get_account(claims.subject_id)
        if account is None:
            raise AuthError(ErrorCode.INVALID_TOKEN)
        if not account.is_active:
            raise AuthError(ErrorCode.ACCOUNT_DEACTIVATED)
        return account

    def logout(self, account: Account) -> None:
        self._audit(account.account_id, "LOGOUT", None)

    # -- passwords ----------------------------------------------------------

    def forgot_password(self, email: str) -> None:
        """Email a reset link when the account exists; callers respond identically either way."""
        email = normalize_email(email)
        account = self._store.get_account_by_email(email)
        if account is None or not account.is_active:
            logger.info("forgot-password ignored for %s", redact_email(email))
            return

        token = secrets.token_hex(32)
        token_hash = hash_reset_token(token)
        expires_at = self._clock() + self._reset_token_ttl

        def store_token(current: Account) -> tuple[None, bool]:
            current.password_reset.token_hash = token_hash
            current.password_reset.expires_at = expires_at
            return None, True

        account, _ = self._update_existing(account.account_id, store_token)
        self._audit(account.account_id, "FORGOT_PASSWORD", None)
        self._dispatcher.send_password_reset(account, token)

    def reset_password(self, token: str, new_password: str) -> None:
        """Replace the password and consume the reset token in one write."""
        self._check_password_policy(new_password)
        token_hash = hash_reset_token(token)
        new_hash = hash_password(new_password)
        now = self._clock()

        def consume(current: Account) -> tuple[bool, bool]:
            reset = current.password_reset
            if reset.token_hash is None or not hmac.compare_digest(reset.token_hash, token_hash):
                return False, False
            if reset.expires_at is None or now > reset.expires_at:
                return False, False
            current.password_hash = new_hash
            reset.clear()
            return True, True

        outcome = self._update(lambda: self._store.get_account_by_reset_token(token_hash), consume)
        if outcome is None or not outcome[1]:
            raise AuthError(ErrorCode.INVALID_TOKEN, "Invalid or expired reset token", status_code=400)

        account = outcome[0]
        logger.info("password reset for account %s", account.account_id)
        self._audit(account.account_id, "RESET_PASSWORD", None)
        self._dispatcher.send_password_changed(account)

    def change_password(self, account: Account, current_password: str, new_password: str) -> None:
        if not verify_password(account.password_hash, current_password):
            raise AuthError(
                ErrorCode.INVALID_PASSWORD, "Current password is incorrect", status_code=400
            )
        self._check_password_policy(new_password)
        checked_hash = account.password_hash
        new_hash = hash_password(new_password)

        def replace(current: Account) -> tuple[bool, bool]:
            if current.password_hash != checked_hash:
                return False, False
            current.password_hash = new_hash
            current.password_reset.clear()
            return True, True

        account, changed = self._update_existing(account.account_id, replace)
        if not changed:
            raise AuthError(ErrorCode.CONCURRENT_UPDATE)
        self._audit(account.account_id, "CHANGE_PASSWORD", None)
        self._dispatcher.send_password_changed(account)

    def verify_password(self, account: Account, password: str) -> None:
        if not verify_password(account.password_hash, password):
            raise AuthError(ErrorCode.INVALID_PASSWORD)
        self._audit(account.account_id, "VERIFY_PASSWORD", {"purpose": "unlock_profile_edit"})

    # -- profile ------------------------------------------------------------

    def update_profile(
        self,
        account: Account,
        *,
        first_name: str | None = None,
        last_name: str | None = None,
    ) -> Account:
        """Replace the supplied name fields; omitted fields keep their stored value."""
        changes: dict[str, str] = {}
        for field_name, value in (("first_name", first_name), ("last_name", last_name)):
            if value is None:
                continue
            value = value.strip()
            if not MIN_NAME_LENGTH <= len(value) <= MAX_NAME_LENGTH:
                raise AuthError(
                    ErrorCode.VALIDATION_ERROR,
                    f"{field_name}: must be between {MIN_NAME_LENGTH} and {MAX_NAME_LENGTH} characters",
                )
            changes[field_name] = value

        def apply(current: Account) -> tuple[None, bool]:
            dirty = False
            for field_name, value in changes.items():
                if getattr(current, field_name) != value:
                    setattr(current, field_name, value)
                    dirty = True
            return None, dirty

        account, _ = self._update_existing(account.account_id, apply)
        self._audit(account.account_id, "UPDATE_PROFILE", {"fields": sorted(changes)})
        return account

    # -- audit --------------------------------------------------------------

    def list_audit_events(
        self,
        *,
        account_id: str | None = None,
        event_type: str | None = None,
        created_after: datetime | None = None,
        created_before: datetime | None = None,
        limit: int = 50,
        cursor: str | None = None,
    ) -> tuple[list[AuditLogRecord], str | None]:
        """Return audit log records with optional filters and cursor pagination."""
        decoded_cursor: Optional[Tuple[datetime, int]] = None
        if cursor:
            decoded_cursor = self._decode_cursor(cursor)
        records, next_cursor_tuple = self._store.list_audit_events(
            account_id=account_id,
            event_type=event_type,
            created_after=created_after,
            created_before=created_before,
            limit=limit,
            cursor=decoded_cursor,
        )
        next_cursor = self._encode_cursor(next_cursor_tuple) if next_cursor_tuple else None
        return records, next_cursor

    # -- internals ----------------------------------------------------------

    def _consume_otp(
        self, email: str, otp: str, required_context: OtpContext | None
    ) -> tuple[Account, OtpContext, bool]:
        email = normalize_email(email)
        now = self._clock()

        def attempt(current: Account) -> tuple[tuple[OtpCheck, bool], bool]:
            if not current.is_active:
                return (OtpCheck(ok=False, reason=ErrorCode.ACCOUNT_DEACTIVATED), False), False
            verification = current.verification
            if required_context is not None and (
                not verification.has_pending_challenge
                or verification.otp_context is not required_context
            ):
                return (OtpCheck(ok=False, reason=ErrorCode.ACCOUNT_NOT_FOUND), False), False

            first_verification = not verification.email_verified
            check = self._otp.verify(current, otp, now)
            if not check.ok:
                # only a wrong code changes state (the attempt counter)
                return (check, False), check.reason is ErrorCode.INVALID_OTP
            verification.email_verified = True
            current.last_login = now
            current.last_otp_verified_at = now
            return (check, first_verification), True

        outcome = self._update(lambda: self._store.get_account_by_email(email), attempt)
        if outcome is None:
            OTP_VERIFICATIONS.labels(result=ErrorCode.ACCOUNT_NOT_FOUND.value).inc()
            raise AuthError(ErrorCode.ACCOUNT_NOT_FOUND)

        account, (check, first_verification) = outcome
        if check.reason is not None:
            OTP_VERIFICATIONS.labels(result=check.reason.value).inc()
            logger.info(
                "OTP verification failed for account %s: %s", account.account_id, check.reason.value
            )
            raise AuthError(check.reason)

        OTP_VERIFICATIONS.labels(result="OK").inc()
        return account, check.context, first_verification

    def _needs_reverification(self, account: Account, now: datetime) -> bool:
        if account.remember_me:
            return False
        last = account.last_otp_verified_at
        return last is None or now - last > self._reverify_after

    def _mint(self, account: Account) -> TokenBundle:
        access_token, access_expires_in = self._codec.issue_access(account, account.remember_me)
        refresh_token, refresh_expires_in = self._codec.issue_refresh(account)
        return TokenBundle(
            access_token=access_token,
            access_expires_in=access_expires_in,
            refresh_token=refresh_token,
            refresh_expires_in=refresh_expires_in,
        )

    def _update(
        self,
        load: Callable[[], Account | None],
        mutation: Callable[[Account], tuple[R, bool]],
    ) -> tuple[Account, R] | None:
        """Apply ``mutation`` to a fresh snapshot and persist it with a conditional write.

        ``mutation`` returns ``(result, dirty)``; clean snapshots are not written.
        Returns ``None`` when ``load`` finds no account.
        """
        for _ in range(self._max_write_attempts):
            account = load()
            if account is None:
                return None
            expected_version = account.version
            result, dirty = mutation(account)
            if not dirty or self._store.compare_and_set(account, expected_version):
                return account, result
            logger.info(
                "account %s changed concurrently at version %s; retrying",
                account.account_id,
                expected_version,
            )
        raise AuthError(ErrorCode.CONCURRENT_UPDATE)

    def _update_existing(
        self, account_id: str, mutation: Callable[[Account], tuple[R, bool]]
    ) -> tuple[Account, R]:
        outcome = self._update(lambda: self._store.get_account(account_id), mutation)
        if outcome is None:
            raise AuthError(ErrorCode.INVALID_CREDENTIALS)
        return outcome

    def _check_password_policy(self, password: str) -> None:
        errors = password_policy_errors(password)
        if errors:
            raise AuthError(ErrorCode.WEAK_PASSWORD, ". ".join(errors))

    def _audit(self, account_id: str, event_type: str, metadata: dict[str, Any] | None) -> None:
        # audit trail failures never fail the request that produced them
        try:
            self._store.write_audit_event(
                account_id=account_id,
                event_type=event_type,
                actor=account_id,
                metadata=metadata,
            )
        except Exception:
            logger.exception("failed to write %s audit event for account %s", event_type, account_id)

    def _encode_cursor(self, cursor: Tuple[datetime, int] | None) -> str | None:
        if cursor is None:
            return None
        created_at, audit_id = cursor
        payload = json.dumps({"created_at": created_at.isoformat(), "audit_id": audit_id})
        return urlsafe_b64encode(payload.encode("utf-8")).decode("utf-8")

    def _decode_cursor(self, cursor: str) -> Tuple[datetime, int]:
        try:
            data = json.loads(urlsafe_b64decode(cursor.encode("utf-8")).decode("utf-8"))
            created_at = datetime.fromisoformat(data["created_at"])
            audit_id = int(data["audit_id"])
            return created_at, audit_id
        except Exception as exc:
            raise AuthError(ErrorCode.VALIDATION_ERROR, "invalid cursor") from exc
