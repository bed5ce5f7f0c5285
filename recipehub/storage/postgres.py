from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from recipehub.logging import get_logger
from recipehub.storage.errors import ConstraintViolation
from recipehub.storage.models import (
    Role,
    SingleUseToken,
    TokenPurpose,
    User,
    utcnow,
)

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        first_name TEXT NOT NULL DEFAULT '',
        last_name TEXT NOT NULL DEFAULT '',
        role TEXT NOT NULL DEFAULT 'user' CHECK (role IN ('user', 'admin')),
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        is_email_verified BOOLEAN NOT NULL DEFAULT FALSE,
        avatar TEXT,
        bio TEXT,
        last_login_at TIMESTAMPTZ,
        token_version INTEGER NOT NULL DEFAULT 1,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_auth_credential (
        user_id TEXT PRIMARY KEY REFERENCES app_user(id) ON DELETE CASCADE,
        password_hash TEXT NOT NULL,
        password_algo TEXT NOT NULL,
        last_updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS single_use_token (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        purpose TEXT NOT NULL,
        token TEXT NOT NULL UNIQUE,
        expires_at TIMESTAMPTZ NOT NULL,
        is_used BOOLEAN NOT NULL DEFAULT FALSE,
        used_at TIMESTAMPTZ,
        ip_address TEXT,
        user_agent TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS single_use_token_user_purpose_idx
        ON single_use_token (user_id, purpose) WHERE NOT is_used
    """,
)


class PostgresStore:
    """Postgres-backed credential and single-use token store."""

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
        """Create the auth tables if they are missing."""

        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def ping(self) -> bool:
        with self._connect() as conn:
            row = conn.execute("SELECT 1 AS ok").fetchone()
        return bool(row and row.get("ok") == 1)

    def close(self) -> None:
        self.pool.close()

    @staticmethod
    def _user_from_row(row: dict[str, Any]) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            first_name=row.get("first_name") or "",
            last_name=row.get("last_name") or "",
            role=Role(row.get("role") or Role.USER.value),
            is_active=row.get("is_active", True),
            is_email_verified=row.get("is_email_verified", False),
            avatar=row.get("avatar"),
            bio=row.get("bio"),
            last_login_at=row.get("last_login_at"),
            token_version=int(row.get("token_version") or 1),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or utcnow(),
        )

    @staticmethod
    def _token_from_row(row: dict[str, Any]) -> SingleUseToken:
        return SingleUseToken(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            purpose=TokenPurpose(row["purpose"]),
            token=row["token"],
            expires_at=row["expires_at"],
            is_used=row.get("is_used", False),
            used_at=row.get("used_at"),
            ip_address=row.get("ip_address"),
            user_agent=row.get("user_agent"),
            created_at=row.get("created_at") or utcnow(),
        )

    # Users

    def create_user(
        self,
        email: str,
        password_hash: str,
        *,
        password_algo: str = "argon2id",
        first_name: str = "",
        last_name: str = "",
        role: Role = Role.USER,
        avatar: Optional[str] = None,
        bio: Optional[str] = None,
        is_active: bool = True,
    ) -> User:
        user = User(
            id=str(uuid.uuid4()),
            email=email,
            first_name=first_name,
            last_name=last_name,
            role=Role(role),
            avatar=avatar,
            bio=bio,
            is_active=is_active,
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO app_user (id, email, first_name, last_name, role, is_active, avatar, bio)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        user.id,
                        user.email,
                        user.first_name,
                        user.last_name,
                        user.role.value,
                        user.is_active,
                        user.avatar,
                        user.bio,
                    ),
                )
                conn.execute(
                    """
                    INSERT INTO user_auth_credential (user_id, password_hash, password_algo)
                    VALUES (%s, %s, %s)
                    """,
                    (user.id, password_hash, password_algo),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM app_user WHERE id = %s", (user_id,)).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM app_user WHERE email = %s", (email,)).fetchone()
        return self._user_from_row(row) if row else None

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM user_auth_credential WHERE user_id = %s",
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return str(row["password_hash"]), str(row["password_algo"])

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE user_auth_credential
                SET password_hash = %s, password_algo = %s, last_updated_at = now()
                WHERE user_id = %s
                """,
                (password_hash, password_algo, user_id),
            )
            updated = cur.rowcount == 1
            if updated:
                conn.execute("UPDATE app_user SET updated_at = now() WHERE id = %s", (user_id,))
        return updated

    def _update_user(self, user_id: str, assignments: str, params: tuple) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE app_user SET {assignments}, updated_at = now() WHERE id = %s RETURNING *",
                (*params, user_id),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def update_last_login(self, user_id: str, at: Optional[datetime] = None) -> Optional[User]:
        return self._update_user(user_id, "last_login_at = %s", (at or utcnow(),))

    def mark_email_verified(self, user_id: str) -> Optional[User]:
        return self._update_user(user_id, "is_email_verified = TRUE", ())

    def update_user_role(self, user_id: str, role: Role) -> Optional[User]:
        return self._update_user(user_id, "role = %s", (Role(role).value,))

    def set_user_active(self, user_id: str, is_active: bool) -> Optional[User]:
        return self._update_user(user_id, "is_active = %s", (is_active,))

    def increment_token_version(self, user_id: str) -> Optional[int]:
        user = self._update_user(user_id, "token_version = token_version + 1", ())
        return user.token_version if user else None

    def list_users(self, limit: int = 100) -> List[User]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM app_user ORDER BY created_at DESC LIMIT %s", (limit,)
            ).fetchall()
        return [self._user_from_row(row) for row in rows]

    # Single-use tokens

    def replace_single_use_token(self, record: SingleUseToken) -> int:
        """Invalidate unused siblings of ``record`` and insert it in one transaction.

        The user row lock serialises concurrent issuers, so the second
        transaction's invalidation sees (and kills) the first one's token.
        """
        try:
            with self._connect() as conn:
                conn.execute(
                    "SELECT id FROM app_user WHERE id = %s FOR UPDATE", (record.user_id,)
                )
                cur = conn.execute(
                    """
                    UPDATE single_use_token SET is_used = TRUE
                    WHERE user_id = %s AND purpose = %s AND NOT is_used
                    """,
                    (record.user_id, record.purpose.value),
                )
                invalidated = max(cur.rowcount, 0)
                conn.execute(
                    """
                    INSERT INTO single_use_token
                        (id, user_id, purpose, token, expires_at, is_used, used_at, ip_address, user_agent, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        record.id,
                        record.user_id,
                        record.purpose.value,
                        record.token,
                        record.expires_at,
                        record.is_used,
                        record.used_at,
                        record.ip_address,
                        record.user_agent,
                        record.created_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("token already exists", {"field": "token"})
        return invalidated

    def get_single_use_token(self, token: str) -> Optional[SingleUseToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM single_use_token WHERE token = %s", (token,)
            ).fetchone()
        return self._token_from_row(row) if row else None

    def list_single_use_tokens(
        self, user_id: str, purpose: Optional[TokenPurpose] = None
    ) -> List[SingleUseToken]:
        with self._connect() as conn:
            if purpose is None:
                rows = conn.execute(
                    "SELECT * FROM single_use_token WHERE user_id = %s ORDER BY created_at",
                    (user_id,),
                ).fetchall()
            else:
                rows = conn.execute(
                    """
                    SELECT * FROM single_use_token
                    WHERE user_id = %s AND purpose = %s ORDER BY created_at
                    """,
                    (user_id, purpose.value),
                ).fetchall()
        return [self._token_from_row(row) for row in rows]

    def mark_single_use_token_used(self, token_id: str, used_at: datetime) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE single_use_token SET is_used = TRUE, used_at = %s
                WHERE id = %s AND NOT is_used
                """,
                (used_at, token_id),
            )
            return cur.rowcount == 1

    def invalidate_single_use_tokens(
        self, user_id: str, purpose: TokenPurpose, *, except_id: Optional[str] = None
    ) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE single_use_token SET is_used = TRUE
                WHERE user_id = %s AND purpose = %s AND NOT is_used AND id IS DISTINCT FROM %s
                """,
                (user_id, purpose.value, except_id),
            )
            return max(cur.rowcount, 0)
