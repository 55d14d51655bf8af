"""Fire-and-forget delivery of codes, emails and in-app notifications."""

from __future__ import annotations

import logging
from concurrent.futures import Executor, ThreadPoolExecutor
from typing import Any, Callable

from ..domain.account import Account, OtpContext
from ..domain.contracts import CredentialStore
from ..metrics import NOTIFICATION_FAILURES
from .email import EmailProvider, redact_email

logger = logging.getLogger(__name__)


class NotificationDispatcher:
    """Schedules outbound notifications on a background executor.

    Every public method returns immediately. Failures are logged and counted but
    never propagate: a lost email must not fail the authentication response that
    triggered it. Callers invoke the dispatcher only after their account write has
    committed, so no account state is held while a delivery is in flight.
    """

    def __init__(
        self,
        email: EmailProvider,
        store: CredentialStore,
        *,
        app_url: str,
        otp_email_enabled: bool = True,
        executor: Executor | None = None,
        max_workers: int = 4,
    ) -> None:
        self._email = email
        self._store = store
        self._app_url = app_url.rstrip("/")
        self._otp_email_enabled = otp_email_enabled
        self._executor = executor or ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="notify"
        )
        self._owns_executor = executor is None

    def send_otp(self, account: Account, code: str, context: OtpContext) -> None:
        if not self._otp_email_enabled:
            logger.info(
                "OTP email delivery disabled; %s code for %s not sent",
                context.value,
                redact_email(account.email),
            )
            return
        self._submit(
            "otp_email", self._email.send_otp_email, account.email, account.first_name or None, code, context
        )

    def send_welcome(self, account: Account) -> None:
        self._submit("welcome_email", self._email.send_welcome_email, account.email, account.first_name or None)

    def send_password_reset(self, account: Account, reset_token: str) -> None:
        link = f"{self._app_url}/reset-password?token={reset_token}"
        self._submit(
            "password_reset_email",
            self._email.send_password_reset_email,
            account.email,
            account.first_name or None,
            link,
        )

    def send_password_changed(self, account: Account) -> None:
        self._submit(
            "password_changed_email",
            self._email.send_password_changed_email,
            account.email,
            account.first_name or None,
        )

    def notify_login(self, account: Account) -> None:
        name = account.first_name or "there"
        self._submit(
            "login_notification",
            self._store.create_notification,
            account_id=account.account_id,
            notification_type="login",
            title="New Login",
            message=f"Welcome back, {name}! You logged in successfully.",
            link="/dashboard",
        )

    def notify_registration(self, account: Account) -> None:
        name = account.first_name or "there"
        self._submit(
            "registration_notification",
            self._store.create_notification,
            account_id=account.account_id,
            notification_type="register",
            title="Welcome!",
            message=f"Welcome to mywellbeingtoday, {name}! Start tracking your wellbeing journey.",
            link="/dashboard",
        )

    def shutdown(self, wait: bool = True) -> None:
        """Drain in-flight deliveries and release the email client; part of the application teardown."""
        if self._owns_executor:
            self._executor.shutdown(wait=wait)
        self._email.close()

    def _submit(self, kind: str, func: Callable[..., Any], *args: Any, **kwargs: Any) -> None:
        try:
            self._executor.submit(self._run, kind, func, *args, **kwargs)
        except RuntimeError:
            # executor already shut down during teardown
            NOTIFICATION_FAILURES.labels(kind=kind).inc()
            logger.warning("notification %s dropped: dispatcher is shut down", kind)

    @staticmethod
    def _run(kind: str, func: Callable[..., Any], *args: Any, **kwargs: Any) -> None:
        try:
            func(*args, **kwargs)
        except Exception:
            NOTIFICATION_FAILURES.labels(kind=kind).inc()
            logger.exception("notification %s failed", kind)
