from __future__ import annotations

import copy
import threading
from concurrent.futures import Executor, Future
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from identity_service.api import routes
from identity_service.api.error_handling import register_exception_handlers
from identity_service.domain.account import Account, OtpContext
from identity_service.domain.contracts import DuplicateAccountError
from identity_service.domain.service import AuthService
from identity_service.notifications.dispatcher import NotificationDispatcher
from identity_service.security.otp import OtpService, generate_otp_code
from identity_service.security.tokens import SigningSecret, TokenCodec

TEST_SECRET = b"test-signing-secret-with-enough-entropy-0123456789"
ADMIN_SECRET = "let-me-in-as-admin"
STRONG_PASSWORD = "Password123!"


class FakeRepository:
    """In-memory credential store honouring the compare-and-set contract.

    Reads and writes copy accounts so every caller works on its own snapshot,
    as it would against a real database.
    """

    def __init__(self) -> None:
        self._accounts: dict[str, Account] = {}
        self._lock = threading.Lock()
        self.audit_log: list[FakeAuditLogRecord] = []
        self.notifications: list[dict[str, Any]] = []
        self._audit_seq = 0
        self.read_hook: Callable[[], None] | None = None
        self.fail_audit = False

    def create_account(self, account: Account) -> Account:
        with self._lock:
            if any(stored.email == account.email.lower() for stored in self._accounts.values()):
                raise DuplicateAccountError(account.email)
            self._accounts[account.account_id] = copy.deepcopy(account)
            return copy.deepcopy(account)

    def get_account(self, account_id: str) -> Account | None:
        return self._read(lambda: self._accounts.get(account_id))

    def get_account_by_email(self, email: str) -> Account | None:
        return self._read(
            lambda: next((a for a in self._accounts.values() if a.email == email.lower()), None)
        )

    def get_account_by_reset_token(self, token_hash: str) -> Account | None:
        return self._read(
            lambda: next(
                (a for a in self._accounts.values() if a.password_reset.token_hash == token_hash),
                None,
            )
        )

    def compare_and_set(self, account: Account, expected_version: int) -> bool:
        with self._lock:
            stored = self._accounts.get(account.account_id)
            if stored is None or stored.version != expected_version:
                return False
            account.version = expected_version + 1
            self._accounts[account.account_id] = copy.deepcopy(account)
            return True

    def _read(self, finder: Callable[[], Account | None]) -> Account | None:
        with self._lock:
            found = finder()
            snapshot = copy.deepcopy(found) if found is not None else None
        if self.read_hook is not None:
            self.read_hook()
        return snapshot

    # helpers for tests

    def stored(self, email: str) -> Account:
        with self._lock:
            return copy.deepcopy(next(a for a in self._accounts.values() if a.email == email))

    def modify(self, email: str, **changes: Any) -> None:
        with self._lock:
            account = next(a for a in self._accounts.values() if a.email == email)
            for key, value in changes.items():
                setattr(account, key, value)
            account.version += 1

    def write_audit_event(
        self,
        *,
        account_id: str | None,
        event_type: str,
        actor: str | None,
        metadata: dict | None = None,
    ) -> None:
        if self.fail_audit:
            raise RuntimeError("audit store unavailable")
        with self._lock:
            self._audit_seq += 1
            self.audit_log.append(
                FakeAuditLogRecord(
                    audit_id=self._audit_seq,
                    account_id=account_id,
                    event_type=event_type,
                    actor=actor,
                    metadata=metadata or {},
                    created_at=datetime.now(timezone.utc),
                )
            )

    def list_audit_events(
        self,
        *,
        account_id: str | None = None,
        event_type: str | None = None,
        created_after: datetime | None = None,
        created_before: datetime | None = None,
        limit: int = 50,
        cursor: tuple[datetime, int] | None = None,
    ):
        results = list(self.audit_log)
        if account_id:
            results = [record for record in results if record.account_id == account_id]
        if event_type:
            results = [record for record in results if record.event_type == event_type]
        if created_after:
            results = [record for record in results if record.created_at >= created_after]
        if created_before:
            results = [record for record in results if record.created_at <= created_before]
        results.sort(key=lambda r: (r.created_at, r.audit_id), reverse=True)
        if cursor:
            results = [record for record in results if (record.created_at, record.audit_id) < cursor]
        slice_ = results[:limit]
        next_cursor = None
        if len(slice_) == limit:
            last = slice_[-1]
            next_cursor = (last.created_at, last.audit_id)
        return slice_, next_cursor

    def create_notification(
        self,
        *,
        account_id: str,
        notification_type: str,
        title: str,
        message: str,
        link: str | None = None,
    ) -> None:
        self.notifications.append(
            {
                "account_id": account_id,
                "type": notification_type,
                "title": title,
                "message": message,
                "link": link,
            }
        )

    def event_types(self) -> list[str]:
        return [record.event_type for record in self.audit_log]


@dataclass
class FakeAuditLogRecord:
    audit_id: int
    account_id: str | None
    event_type: str
    actor: str | None
    metadata: dict
    created_at: datetime


@dataclass
class SentEmail:
    kind: str
    to: str
    user_name: str | None
    code: str | None = None
    context: OtpContext | None = None
    link: str | None = None


class RecordingEmailProvider:
    """Email provider capturing outgoing messages instead of sending them."""

    def __init__(self) -> None:
        self.sent: list[SentEmail] = []
        self.fail = False
        self.closed = False

    def _record(self, message: SentEmail) -> None:
        if self.fail:
            raise ConnectionError("smtp relay unreachable")
        self.sent.append(message)

    def send_otp_email(self, email, user_name, otp_code, context) -> None:
        self._record(SentEmail("otp", email, user_name, code=otp_code, context=context))

    def send_welcome_email(self, email, user_name) -> None:
        self._record(SentEmail("welcome", email, user_name))

    def send_password_reset_email(self, email, user_name, reset_link) -> None:
        self._record(SentEmail("password_reset", email, user_name, link=reset_link))

    def send_password_changed_email(self, email, user_name) -> None:
        self._record(SentEmail("password_changed", email, user_name))

    def close(self) -> None:
        self.closed = True

    def of_kind(self, kind: str, to: str | None = None) -> list[SentEmail]:
        return [m for m in self.sent if m.kind == kind and (to is None or m.to == to)]

    def last_code(self, to: str) -> str:
        codes = [m.code for m in self.of_kind("otp", to)]
        assert codes, f"no OTP email sent to {to}"
        return codes[-1]  # type: ignore[return-value]


class ImmediateExecutor(Executor):
    """Runs submitted callables inline so background deliveries are observable."""

    def submit(self, fn, /, *args, **kwargs):
        future: Future = Future()
        try:
            future.set_result(fn(*args, **kwargs))
        except BaseException as exc:  # pragma: no cover - dispatcher catches
            future.set_exception(exc)
        return future


class MutableClock:
    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> None:
        self.now = self.now + timedelta(**delta)


class CodeSequence:
    """OTP generator returning queued codes first, then random ones."""

    def __init__(self) -> None:
        self.queue: list[str] = []

    def __call__(self) -> str:
        if self.queue:
            return self.queue.pop(0)
        return generate_otp_code()


@pytest.fixture
def clock() -> MutableClock:
    return MutableClock(datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def repository() -> FakeRepository:
    return FakeRepository()


@pytest.fixture
def email_provider() -> RecordingEmailProvider:
    return RecordingEmailProvider()


@pytest.fixture
def otp_codes() -> CodeSequence:
    return CodeSequence()


@pytest.fixture
def codec(clock: MutableClock) -> TokenCodec:
    return TokenCodec(
        SigningSecret(secret=TEST_SECRET, allow_ephemeral=False),
        issuer="wellbeing.identity.test",
        access_ttl_seconds=2 * 60 * 60,
        remember_me_access_ttl_seconds=7 * 24 * 60 * 60,
        refresh_ttl_seconds=7 * 24 * 60 * 60,
        time_source=lambda: clock().timestamp(),
    )


@pytest.fixture
def service(repository, email_provider, clock, otp_codes, codec) -> AuthService:
    dispatcher = NotificationDispatcher(
        email_provider,
        repository,
        app_url="https://app.example.com",
        executor=ImmediateExecutor(),
    )
    return AuthService(
        repository,
        codec,
        dispatcher,
        otp=OtpService(code_generator=otp_codes),
        clock=clock,
        admin_registration_secret=ADMIN_SECRET,
    )


@pytest.fixture
def api_client(service):
    """Provide a FastAPI test client with isolated state."""
    app = FastAPI()
    register_exception_handlers(app)
    app.include_router(routes.router)
    app.state.auth_service = service

    with TestClient(app) as client:
        yield client
