from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, List, Optional, Tuple

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from warden.logging import get_logger
from warden.storage.errors import ConstraintViolation
from warden.storage.models import Account, utcnow

_SCHEMA = """
CREATE TABLE IF NOT EXISTS account (
    id UUID PRIMARY KEY,
    name TEXT NOT NULL,
    email TEXT NOT NULL,
    password_hash TEXT NOT NULL,
    is_verified BOOLEAN NOT NULL DEFAULT FALSE,
    roles TEXT[] NOT NULL DEFAULT ARRAY['user']::TEXT[],
    email_verification_token_hash TEXT,
    email_verification_expires_at TIMESTAMPTZ,
    password_reset_token_hash TEXT,
    password_reset_expires_at TIMESTAMPTZ,
    last_login_at TIMESTAMPTZ,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    CONSTRAINT account_roles_valid CHECK (
        cardinality(roles) > 0 AND roles <@ ARRAY['user', 'admin']::TEXT[]
    ),
    CONSTRAINT account_verification_pair CHECK (
        (email_verification_token_hash IS NULL) = (email_verification_expires_at IS NULL)
    ),
    CONSTRAINT account_reset_pair CHECK (
        (password_reset_token_hash IS NULL) = (password_reset_expires_at IS NULL)
    )
);
CREATE UNIQUE INDEX IF NOT EXISTS account_email_lower_idx ON account (lower(email));
CREATE INDEX IF NOT EXISTS account_verification_token_idx
    ON account (email_verification_token_hash)
    WHERE email_verification_token_hash IS NOT NULL;
CREATE INDEX IF NOT EXISTS account_reset_token_idx
    ON account (password_reset_token_hash)
    WHERE password_reset_token_hash IS NOT NULL;
"""


def _escape_like(term: str) -> str:
    return term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _valid_id(account_id: str) -> bool:
    try:
        uuid.UUID(str(account_id))
    except ValueError:
        return False
    return True


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class PostgresStore:
    """Account store backed by a pooled Postgres connection."""

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        """Create the ``account`` table and its indexes if they are missing."""

        with self._connect() as conn:
            conn.execute(_SCHEMA)

    def close(self) -> None:
        self.pool.close()

    @staticmethod
    def _row_to_account(row: dict) -> Account:
        return Account(
            id=str(row["id"]),
            name=row["name"],
            email=row["email"],
            password_hash=row["password_hash"],
            is_verified=bool(row.get("is_verified", False)),
            roles=list(row.get("roles") or ["user"]),
            email_verification_token_hash=row.get("email_verification_token_hash"),
            email_verification_expires_at=_aware(row.get("email_verification_expires_at")),
            password_reset_token_hash=row.get("password_reset_token_hash"),
            password_reset_expires_at=_aware(row.get("password_reset_expires_at")),
            last_login_at=_aware(row.get("last_login_at")),
            created_at=_aware(row.get("created_at")) or utcnow(),
            updated_at=_aware(row.get("updated_at")) or utcnow(),
        )

    def _fetch_one(self, sql: str, params: tuple) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(sql, params).fetchone()
        if not row:
            return None
        return self._row_to_account(row)

    # accounts
    def create_account(
        self,
        name: str,
        email: str,
        password_hash: str,
        *,
        roles: Optional[List[str]] = None,
        is_verified: bool = False,
        verification_token_hash: Optional[str] = None,
        verification_expires_at: Optional[datetime] = None,
        now: Optional[datetime] = None,
    ) -> Account:
        account = Account.new(
            name, email, password_hash, roles=roles, is_verified=is_verified, now=now
        )
        if verification_token_hash:
            account.email_verification_token_hash = verification_token_hash
            account.email_verification_expires_at = verification_expires_at
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO account (
                        id, name, email, password_hash, is_verified, roles,
                        email_verification_token_hash, email_verification_expires_at,
                        created_at, updated_at
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        account.id,
                        account.name,
                        account.email,
                        account.password_hash,
                        account.is_verified,
                        account.roles,
                        account.email_verification_token_hash,
                        account.email_verification_expires_at,
                        account.created_at,
                        account.updated_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", "email")
        return account

    def get_account(self, account_id: str) -> Optional[Account]:
        # ids arrive from URLs and token claims; a malformed one matches nothing
        if not _valid_id(account_id):
            return None
        return self._fetch_one("SELECT * FROM account WHERE id = %s", (account_id,))

    def get_account_by_email(self, email: str) -> Optional[Account]:
        return self._fetch_one(
            "SELECT * FROM account WHERE lower(email) = lower(%s)", (email,)
        )

    def list_accounts(
        self, *, search: Optional[str] = None, offset: int = 0, limit: int = 10
    ) -> Tuple[int, List[Account]]:
        where = ""
        params: list[Any] = []
        if search:
            pattern = f"%{_escape_like(search)}%"
            where = "WHERE name ILIKE %s OR email ILIKE %s"
            params = [pattern, pattern]
        with self._connect() as conn:
            count_row = conn.execute(
                f"SELECT count(*) AS total FROM account {where}", tuple(params)
            ).fetchone()
            rows = conn.execute(
                f"SELECT * FROM account {where} ORDER BY created_at ASC, id ASC LIMIT %s OFFSET %s",
                tuple(params + [limit, offset]),
            ).fetchall()
        total = int(count_row["total"]) if count_row else 0
        return total, [self._row_to_account(row) for row in rows]

    def set_verification_token(
        self, account_id: str, token_hash: str, expires_at: datetime
    ) -> Optional[Account]:
        return self._fetch_one(
            """
            UPDATE account
            SET email_verification_token_hash = %s,
                email_verification_expires_at = %s,
                updated_at = now()
            WHERE id = %s
            RETURNING *
            """,
            (token_hash, expires_at, account_id),
        )

    def consume_verification_token(
        self, token_hash: str, now: datetime
    ) -> Optional[Account]:
        return self._fetch_one(
            """
            UPDATE account
            SET is_verified = TRUE,
                email_verification_token_hash = NULL,
                email_verification_expires_at = NULL,
                updated_at = %s
            WHERE email_verification_token_hash = %s
              AND email_verification_expires_at > %s
            RETURNING *
            """,
            (now, token_hash, now),
        )

    def set_reset_token(
        self, account_id: str, token_hash: str, expires_at: datetime
    ) -> Optional[Account]:
        return self._fetch_one(
            """
            UPDATE account
            SET password_reset_token_hash = %s,
                password_reset_expires_at = %s,
                updated_at = now()
            WHERE id = %s
            RETURNING *
            """,
            (token_hash, expires_at, account_id),
        )

    def consume_reset_token(
        self, token_hash: str, now: datetime, password_hash: str
    ) -> Optional[Account]:
        return self._fetch_one(
            """
            UPDATE account
            SET password_hash = %s,
                password_reset_token_hash = NULL,
                password_reset_expires_at = NULL,
                updated_at = %s
            WHERE password_reset_token_hash = %s
              AND password_reset_expires_at > %s
            RETURNING *
            """,
            (password_hash, now, token_hash, now),
        )

    def update_password(self, account_id: str, password_hash: str) -> Optional[Account]:
        return self._fetch_one(
            "UPDATE account SET password_hash = %s, updated_at = now() WHERE id = %s RETURNING *",
            (password_hash, account_id),
        )

    def update_profile(
        self,
        account_id: str,
        *,
        name: Optional[str] = None,
        email: Optional[str] = None,
    ) -> Optional[Account]:
        try:
            return self._fetch_one(
                """
                UPDATE account
                SET name = COALESCE(%s, name),
                    email = COALESCE(%s, email),
                    updated_at = now()
                WHERE id = %s
                RETURNING *
                """,
                (name, email, account_id),
            )
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", "email")

    def update_roles(self, account_id: str, roles: List[str]) -> Optional[Account]:
        if not _valid_id(account_id):
            return None
        return self._fetch_one(
            "UPDATE account SET roles = %s, updated_at = now() WHERE id = %s RETURNING *",
            (list(roles), account_id),
        )

    def touch_login(self, account_id: str, when: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE account SET last_login_at = %s WHERE id = %s", (when, account_id)
            )

    def delete_account(self, account_id: str) -> bool:
        if not _valid_id(account_id):
            return False
        with self._connect() as conn:
            result = conn.execute("DELETE FROM account WHERE id = %s", (account_id,))
            return result.rowcount > 0


__all__ = ["PostgresStore"]
