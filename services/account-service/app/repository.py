"""Postgres-backed identity store for user accounts, roles and audit data."""

from __future__ import annotations

import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Iterator, Optional, Tuple

import psycopg
from psycopg import errors
from psycopg.rows import tuple_row
from psycopg.types.json import Json
from psycopg_pool import ConnectionPool

from .domain.account import UserAccount
from .domain.errors import StoreFailure, UniquenessConflict
from .security import passwords

_USER_COLUMNS = """
    id, login, email, password_hash, first_name, last_name, image_url, lang_key,
    activated, activation_key, reset_key, reset_date, created_at
"""


@dataclass(slots=True)
class AuditLogRecord:
    """Row projection for items in account_audit_log."""

    audit_id: int
    account_id: str | None
    event_type: str
    actor: str | None
    metadata: dict[str, Any]
    created_at: datetime


class IdentityStore:
    """Postgres persistence for accounts, role membership and password hashes.

    Every public method runs on its own pooled connection and commits before
    returning. Unique violations are raised as :class:`UniquenessConflict`;
    any other driver error as :class:`StoreFailure`.
    """

    def __init__(self, pool: ConnectionPool) -> None:
        """Store the connection pool used for all database interactions."""
        self._pool = pool

    @contextmanager
    def _cursor(self) -> Iterator[psycopg.Cursor]:
        try:
            with self._pool.connection() as conn:
                with conn.cursor(row_factory=tuple_row) as cur:
                    yield cur
                conn.commit()
        except errors.UniqueViolation as exc:
            raise UniquenessConflict(str(exc)) from exc
        except psycopg.Error as exc:
            raise StoreFailure(str(exc)) from exc

    def _find_one(self, where_sql: str, params: tuple) -> UserAccount | None:
        with self._cursor() as cur:
            cur.execute(f"SELECT {_USER_COLUMNS} FROM users WHERE {where_sql}", params)
            row = cur.fetchone()
        if not row:
            return None
        return self._map_record(row)

    def find_by_id(self, account_id: str) -> UserAccount | None:
        return self._find_one("id = %s", (account_id,))

    def find_by_login(self, login: str) -> UserAccount | None:
        """Case-insensitive lookup by login."""
        return self._find_one("lower(login) = lower(%s)", (login,))

    def find_by_email(self, email: str) -> UserAccount | None:
        """Case-insensitive lookup by email address."""
        return self._find_one("lower(email) = lower(%s)", (email,))

    def find_by_activation_key(self, key: str) -> UserAccount | None:
        return self._find_one("activation_key = %s", (key,))

    def find_by_reset_key(self, key: str) -> UserAccount | None:
        return self._find_one("reset_key = %s", (key,))

    def list_users(self, *, limit: int = 50, offset: int = 0) -> list[UserAccount]:
        """Return a page of accounts ordered by login."""
        limit = max(1, min(limit, 100))
        with self._cursor() as cur:
            cur.execute(
                f"SELECT {_USER_COLUMNS} FROM users ORDER BY login LIMIT %s OFFSET %s",
                (limit, max(offset, 0)),
            )
            rows = cur.fetchall()
        return [self._map_record(row) for row in rows]

    def create(self, account: UserAccount) -> UserAccount:
        """Insert ``account`` and fill in its store-assigned id and creation time."""
        account.id = account.id or str(uuid.uuid4())
        account.created_at = datetime.now(timezone.utc)
        with self._cursor() as cur:
            cur.execute(
                """
                INSERT INTO users (
                    id, login, email, password_hash, first_name, last_name, image_url, lang_key,
                    activated, activation_key, reset_key, reset_date, created_at
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    account.id,
                    account.login,
                    account.email,
                    account.password_hash,
                    account.first_name,
                    account.last_name,
                    account.image_url,
                    account.lang_key,
                    account.activated,
                    account.activation_key,
                    account.reset_key,
                    account.reset_date,
                    account.created_at,
                ),
            )
        return account

    def update(self, account: UserAccount) -> UserAccount:
        """Persist every mutable column of ``account``."""
        with self._cursor() as cur:
            cur.execute(
                """
                UPDATE users
                SET login = %s, email = %s, password_hash = %s, first_name = %s, last_name = %s,
                    image_url = %s, lang_key = %s, activated = %s, activation_key = %s,
                    reset_key = %s, reset_date = %s, updated_at = NOW()
                WHERE id = %s
                """,
                (
                    account.login,
                    account.email,
                    account.password_hash,
                    account.first_name,
                    account.last_name,
                    account.image_url,
                    account.lang_key,
                    account.activated,
                    account.activation_key,
                    account.reset_key,
                    account.reset_date,
                    account.id,
                ),
            )
        return account

    def delete(self, account: UserAccount) -> None:
        with self._cursor() as cur:
            cur.execute("DELETE FROM users WHERE id = %s", (account.id,))

    def hash_password(self, password: str) -> str:
        return passwords.hash_password(password)

    def verify_password(self, password: str, password_hash: str) -> bool:
        return passwords.verify_password(password, password_hash)

    def list_roles(self) -> list[str]:
        """Return every role name defined in the catalog."""
        with self._cursor() as cur:
            cur.execute("SELECT name FROM roles ORDER BY name")
            rows = cur.fetchall()
        return [row[0] for row in rows]

    def get_roles_for_user(self, account: UserAccount) -> set[str]:
        with self._cursor() as cur:
            cur.execute("SELECT role_name FROM user_roles WHERE user_id = %s", (account.id,))
            rows = cur.fetchall()
        return {row[0] for row in rows}

    def add_role_to_user(self, account: UserAccount, role: str) -> None:
        with self._cursor() as cur:
            cur.execute(
                """
                INSERT INTO user_roles (user_id, role_name)
                VALUES (%s, %s)
                ON CONFLICT (user_id, role_name) DO NOTHING
                """,
                (account.id, role),
            )

    def remove_role_from_user(self, account: UserAccount, role: str) -> None:
        with self._cursor() as cur:
            cur.execute(
                "DELETE FROM user_roles WHERE user_id = %s AND role_name = %s",
                (account.id, role),
            )

    def _map_record(self, row: tuple) -> UserAccount:
        """Convert a raw database tuple into the domain ``UserAccount`` dataclass."""
        return UserAccount(
            id=str(row[0]),
            login=row[1],
            email=row[2],
            password_hash=row[3],
            first_name=row[4],
            last_name=row[5],
            image_url=row[6],
            lang_key=row[7],
            activated=row[8],
            activation_key=row[9],
            reset_key=row[10],
            reset_date=row[11],
            created_at=row[12],
        )

    def write_audit_event(
        self,
        *,
        account_id: str | None,
        event_type: str,
        actor: str | None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        """Record an audit trail entry capturing account lifecycle activity."""
        with self._cursor() as cur:
            cur.execute(
                """
                INSERT INTO account_audit_log (account_id, event_type, actor, metadata)
                VALUES (%s, %s, %s, %s)
                """,
                (account_id, event_type, actor, Json(metadata or {})),
            )

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
        """Return audit log entries with optional filters and keyset pagination."""
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
            FROM account_audit_log
            WHERE {where_sql}
            ORDER BY created_at DESC, audit_id DESC
            LIMIT %s
        """
        params.append(limit)

        with self._cursor() as cur:
            cur.execute(query, params)
            records = [
                AuditLogRecord(
                    audit_id=row[0],
                    account_id=str(row[1]) if row[1] is not None else None,
                    event_type=row[2],
                    actor=row[3],
                    metadata=row[4] or {},
                    created_at=row[5],
                )
                for row in cur.fetchall()
            ]

        next_cursor: Tuple[datetime, int] | None = None
        if len(records) == limit:
            last = records[-1]
            next_cursor = (last.created_at, last.audit_id)
        return records, next_cursor
