"""Database repository for account credentials, audit trail and in-app notifications."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Optional, Tuple

from psycopg import errors as pg_errors
from psycopg.rows import tuple_row
from psycopg.types.json import Json
from psycopg_pool import ConnectionPool

from .domain.account import Account, OtpContext, PasswordReset, Role, Verification
from .domain.contracts import AuditLogRecord, DuplicateAccountError

_ACCOUNT_COLUMNS = """
    account_id, email, password_hash, role, is_active, first_name, last_name, created_at,
    email_verified, otp_hash, otp_expires_at, otp_attempts, otp_context,
    reset_token_hash, reset_expires_at, remember_me, last_login, last_otp_verified_at, version
"""


class AccountRepository:
    """Postgres-backed credential store with optimistic concurrency on ``version``."""

    def __init__(self, pool: ConnectionPool) -> None:
        """Store the connection pool used for all database interactions."""
        self._pool = pool

    def create_account(self, account: Account) -> Account:
        """Insert a new account; raises :class:`DuplicateAccountError` when the email is taken."""
        now = datetime.now(timezone.utc)
        try:
            with self._pool.connection() as conn:
                with conn.cursor(row_factory=tuple_row) as cur:
                    cur.execute(
                        f"""
                        INSERT INTO accounts ({_ACCOUNT_COLUMNS}, updated_at)
                        VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s,
                                %s, %s, %s, %s, %s, %s, %s)
                        RETURNING {_ACCOUNT_COLUMNS}
                        """,
                        (*self._account_params(account), account.version, now),
                    )
                    row = cur.fetchone()
                    conn.commit()
        except pg_errors.UniqueViolation as exc:
            raise DuplicateAccountError(account.email) from exc
        return self._map_record(row)

    def get_account(self, account_id: str) -> Account | None:
        return self._fetch_one("account_id = %s", (account_id,))

    def get_account_by_email(self, email: str) -> Account | None:
        return self._fetch_one("lower(email) = lower(%s)", (email,))

    def get_account_by_reset_token(self, token_hash: str) -> Account | None:
        return self._fetch_one("reset_token_hash = %s", (token_hash,))

    def compare_and_set(self, account: Account, expected_version: int) -> bool:
        """Write every mutable field if the stored version still equals ``expected_version``.

        On success ``account.version`` is advanced in place to the stored value.
        """
        with self._pool.connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(
                    """
                    UPDATE accounts
                    SET password_hash = %s, role = %s, is_active = %s,
                        first_name = %s, last_name = %s,
                        email_verified = %s, otp_hash = %s, otp_expires_at = %s,
                        otp_attempts = %s, otp_context = %s,
                        reset_token_hash = %s, reset_expires_at = %s,
                        remember_me = %s, last_login = %s, last_otp_verified_at = %s,
                        version = version + 1, updated_at = NOW()
                    WHERE account_id = %s AND version = %s
                    RETURNING version
                    """,
                    (
                        account.password_hash,
                        account.role.value,
                        account.is_active,
                        account.first_name,
                        account.last_name,
                        account.verification.email_verified,
                        account.verification.otp_hash,
                        account.verification.otp_expires_at,
                        account.verification.otp_attempts,
                        account.verification.otp_context.value,
                        account.password_reset.token_hash,
                        account.password_reset.expires_at,
                        account.remember_me,
                        account.last_login,
                        account.last_otp_verified_at,
                        account.account_id,
                        expected_version,
                    ),
                )
                row = cur.fetchone()
                conn.commit()
        if not row:
            return False
        account.version = row[0]
        return True

    def _fetch_one(self, where_sql: str, params: tuple) -> Account | None:
        with self._pool.connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(f"SELECT {_ACCOUNT_COLUMNS} FROM accounts WHERE {where_sql}", params)
                row = cur.fetchone()
                if not row:
                    return None
        return self._map_record(row)

    def _account_params(self, account: Account) -> tuple:
        return (
            account.account_id,
            account.email.lower(),
            account.password_hash,
            account.role.value,
            account.is_active,
            account.first_name,
            account.last_name,
            account.created_at,
            account.verification.email_verified,
            account.verification.otp_hash,
            account.verification.otp_expires_at,
            account.verification.otp_attempts,
            account.verification.otp_context.value,
            account.password_reset.token_hash,
            account.password_reset.expires_at,
            account.remember_me,
            account.last_login,
            account.last_otp_verified_at,
        )

    def _map_record(self, row: tuple) -> Account:
        """Convert a raw database tuple into the domain ``Account`` dataclass."""
        return Account(
            account_id=row[0],
            email=row[1],
            password_hash=row[2],
            role=Role(row[3]),
            is_active=row[4],
            first_name=row[5],
            last_name=row[6],
            created_at=row[7],
            verification=Verification(
                email_verified=row[8],
                otp_hash=row[9],
                otp_expires_at=row[10],
                otp_attempts=row[11],
                otp_context=OtpContext(row[12]),
            ),
            password_reset=PasswordReset(token_hash=row[13], expires_at=row[14]),
            remember_me=row[15],
            last_login=row[16],
            last_otp_verified_at=row[17],
            version=row[18],
        )

    def write_audit_event(
        self,
        *,
        account_id: str | None,
        event_type: str,
        actor: str | None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        """Record an audit trail entry capturing identity workflow activity."""
        with self._pool.connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO identity_audit_log (account_id, event_type, actor, metadata)
                    VALUES (%s, %s, %s, %s)
                    """,
                    (account_id, event_type, actor, Json(metadata or {})),
                )
                conn.commit()

    def list_audit_events(
        self,
        *,
        account_id: str | None = None,
        event_type: str | None = None,
        created_after: datetime | None = None,
        created_before: datetime | None = None,
        limit: int = 50,
        cursor: Tuple[datetime, int] | None = None,
    ) -> tuple[list[AuditLogRecord], Optional[Tuple[datetime, int]]]:
        """Return audit log entries with optional filters and cursor pagination."""
        limit = max(1, min(limit, 100))
        clauses = ["TRUE"]
        params: list[Any] = []

        if account_id:
            clauses.append("account_id = %s")
            params.append(account_id)
        if event_type:
            clauses.append("event_type = %s")
            params.append(event_type)
        if created_after:
            clauses.append("created_at >= %s")
            params.append(created_after)
        if created_before:
            clauses.append("created_at <= %s")
            params.append(created_before)
        if cursor:
            clauses.append("(created_at, audit_id) < (%s, %s)")
            params.extend(cursor)

        where_sql = " AND ".join(clauses)
        query = f"""
            SELECT audit_id, account_id, event_type, actor, metadata, created_at
            FROM identity_audit_log
            WHERE {where_sql}
            ORDER BY created_at DESC, audit_id DESC
            LIMIT %s
        """
        params.append(limit)

        records: list[AuditLogRecord] = []
        with self._pool.connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(query, params)
                for row in cur.fetchall():
                    records.append(
                        AuditLogRecord(
                            audit_id=row[0],
                            account_id=row[1],
                            event_type=row[2],
                            actor=row[3],
                            metadata=row[4] or {},
                            created_at=row[5],
                        )
                    )

        next_cursor: Tuple[datetime, int] | None = None
        if len(records) == limit:
            last = records[-1]
            next_cursor = (last.created_at, last.audit_id)
        return records, next_cursor

    def create_notification(
        self,
        *,
        account_id: str,
        notification_type: str,
        title: str,
        message: str,
        link: str | None = None,
    ) -> None:
        """Persist an in-app notification shown in the user's notification centre."""
        with self._pool.connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO notifications (notification_id, account_id, type, title, message, link)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    """,
                    (str(uuid.uuid4()), account_id, notification_type, title, message, link),
                )
                conn.commit()
