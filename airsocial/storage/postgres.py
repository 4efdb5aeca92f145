from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from airsocial.logging import get_logger
from airsocial.storage.errors import ConstraintViolation, StorageError
from airsocial.storage.models import Profile, RefreshToken, User

_ACTIVE_DEVICE_INDEX = "refresh_tokens_active_device_idx"

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS users (
        id BIGSERIAL PRIMARY KEY,
        email TEXT NOT NULL,
        username TEXT NOT NULL,
        password_hash TEXT NOT NULL,
        full_name TEXT,
        bio TEXT,
        avatar TEXT,
        cover_image TEXT,
        location TEXT,
        website TEXT,
        verified BOOLEAN NOT NULL DEFAULT FALSE,
        verified_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        version INTEGER NOT NULL DEFAULT 1,
        CONSTRAINT users_verified_at_check CHECK (verified = (verified_at IS NOT NULL))
    )
    """,
    "CREATE UNIQUE INDEX IF NOT EXISTS users_email_key ON users (lower(email))",
    "CREATE UNIQUE INDEX IF NOT EXISTS users_username_key ON users (username)",
    """
    CREATE TABLE IF NOT EXISTS refresh_tokens (
        id BIGSERIAL PRIMARY KEY,
        user_id BIGINT NOT NULL REFERENCES users (id) ON DELETE CASCADE,
        device_id TEXT NOT NULL,
        token_hash TEXT NOT NULL UNIQUE,
        expires_at TIMESTAMPTZ NOT NULL,
        revoked_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    f"""
    CREATE UNIQUE INDEX IF NOT EXISTS {_ACTIVE_DEVICE_INDEX}
        ON refresh_tokens (user_id, device_id) WHERE revoked_at IS NULL
    """,
    "CREATE INDEX IF NOT EXISTS refresh_tokens_user_idx ON refresh_tokens (user_id)",
)

_USER_COLUMNS = (
    "id, email, username, password_hash, full_name, bio, avatar, cover_image, "
    "location, website, verified, verified_at, created_at, updated_at, version"
)


def _constraint_name(exc: psycopg.Error) -> Optional[str]:
    return getattr(getattr(exc, "diag", None), "constraint_name", None)


class PostgresStore:
    """Postgres-backed user and refresh-token store."""

    def __init__(
        self,
        dsn: str,
        *,
        min_size: int = 1,
        max_size: int = 10,
        timeout: float = 10.0,
        statement_timeout_ms: int = 5000,
    ) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            timeout=timeout,
            kwargs={
                "row_factory": dict_row,
                "autocommit": False,
                "options": f"-c statement_timeout={int(statement_timeout_ms)}",
            },
            open=True,
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    @contextmanager
    def _translate_errors(self, operation: str) -> Iterator[None]:
        """Re-raise driver errors as storage errors tagged with a constraint kind."""
        try:
            yield
        except errors.UniqueViolation as exc:
            constraint = _constraint_name(exc)
            field = {
                "users_email_key": "email",
                "users_username_key": "username",
                "refresh_tokens_token_hash_key": "token_hash",
            }.get(constraint or "")
            message = f"{field} already exists" if field else "duplicate record"
            raise ConstraintViolation(
                message, {"field": field, "constraint": constraint}, kind="unique"
            ) from exc
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation(
                "referenced record missing", {"constraint": _constraint_name(exc)}, kind="foreign_key"
            ) from exc
        except errors.CheckViolation as exc:
            raise ConstraintViolation(
                "check constraint failed", {"constraint": _constraint_name(exc)}, kind="check"
            ) from exc
        except errors.NotNullViolation as exc:
            column = getattr(getattr(exc, "diag", None), "column_name", None)
            raise ConstraintViolation(
                "required field missing", {"field": column}, kind="not_null"
            ) from exc
        except errors.SerializationFailure as exc:
            raise ConstraintViolation(
                "concurrent update conflict", {"operation": operation}, kind="serialization"
            ) from exc
        except psycopg.Error as exc:
            self.logger.error(
                "postgres_operation_failed",
                operation=operation,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise StorageError(f"{operation} failed", {"operation": operation}) from exc

    def _ensure_schema(self) -> None:
        """Create the users and refresh_tokens tables if they are missing."""

        with self._translate_errors("ensure_schema"), self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    @staticmethod
    def _row_to_user(row: Dict[str, Any]) -> User:
        return User(
            id=row["id"],
            email=row["email"],
            username=row["username"],
            password_hash=row["password_hash"],
            profile=Profile(
                full_name=row.get("full_name"),
                bio=row.get("bio"),
                avatar=row.get("avatar"),
                cover_image=row.get("cover_image"),
                location=row.get("location"),
                website=row.get("website"),
            ),
            verified=row.get("verified", False),
            verified_at=row.get("verified_at"),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            version=row.get("version", 1),
        )

    @staticmethod
    def _row_to_refresh_token(row: Dict[str, Any]) -> RefreshToken:
        return RefreshToken(
            id=row["id"],
            user_id=row["user_id"],
            device_id=row["device_id"],
            token_hash=row["token_hash"],
            expires_at=row["expires_at"],
            revoked_at=row.get("revoked_at"),
            created_at=row["created_at"],
        )

    # users
    def create_user(
        self,
        email: str,
        username: str,
        password_hash: str,
        *,
        full_name: Optional[str] = None,
    ) -> User:
        with self._translate_errors("create_user"), self._connect() as conn:
            row = conn.execute(
                f"""
                INSERT INTO users (email, username, password_hash, full_name)
                VALUES (%s, %s, %s, %s)
                RETURNING {_USER_COLUMNS}
                """,
                (email.strip().lower(), username, password_hash, full_name),
            ).fetchone()
        return self._row_to_user(row)

    def get_user(self, user_id: int) -> Optional[User]:
        with self._translate_errors("get_user"), self._connect() as conn:
            row = conn.execute(
                f"SELECT {_USER_COLUMNS} FROM users WHERE id = %s", (user_id,)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._translate_errors("get_user_by_email"), self._connect() as conn:
            row = conn.execute(
                f"SELECT {_USER_COLUMNS} FROM users WHERE lower(email) = lower(%s)",
                (email.strip(),),
            ).fetchone()
        return self._row_to_user(row) if row else None

    def get_user_by_username(self, username: str) -> Optional[User]:
        with self._translate_errors("get_user_by_username"), self._connect() as conn:
            row = conn.execute(
                f"SELECT {_USER_COLUMNS} FROM users WHERE username = %s", (username,)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def update_password(self, email: str, password_hash: str) -> Optional[User]:
        with self._translate_errors("update_password"), self._connect() as conn:
            row = conn.execute(
                f"""
                UPDATE users
                SET password_hash = %s, updated_at = now(), version = version + 1
                WHERE lower(email) = lower(%s)
                RETURNING {_USER_COLUMNS}
                """,
                (password_hash, email.strip()),
            ).fetchone()
        return self._row_to_user(row) if row else None

    def mark_email_verified(self, email: str) -> Optional[User]:
        with self._translate_errors("mark_email_verified"), self._connect() as conn:
            row = conn.execute(
                f"""
                UPDATE users
                SET verified = TRUE,
                    verified_at = COALESCE(verified_at, now()),
                    updated_at = now(),
                    version = version + 1
                WHERE lower(email) = lower(%s)
                RETURNING {_USER_COLUMNS}
                """,
                (email.strip(),),
            ).fetchone()
        return self._row_to_user(row) if row else None

    # refresh tokens
    def create_refresh_token(
        self,
        user_id: int,
        device_id: str,
        token_hash: str,
        expires_at: datetime,
    ) -> RefreshToken:
        """Insert a refresh token, revoking any active token for the same device.

        Both statements run in one transaction. A concurrent insert for the same
        device trips the partial unique index; the loser retries once so the
        newest token ends up as the only active row.
        """
        for attempt in range(2):
            try:
                with self._connect() as conn, conn.transaction():
                    conn.execute(
                        """
                        UPDATE refresh_tokens SET revoked_at = now()
                        WHERE user_id = %s AND device_id = %s AND revoked_at IS NULL
                        """,
                        (user_id, device_id),
                    )
                    row = conn.execute(
                        """
                        INSERT INTO refresh_tokens (user_id, device_id, token_hash, expires_at)
                        VALUES (%s, %s, %s, %s)
                        RETURNING id, user_id, device_id, token_hash, expires_at, revoked_at, created_at
                        """,
                        (user_id, device_id, token_hash, expires_at),
                    ).fetchone()
                return self._row_to_refresh_token(row)
            except errors.UniqueViolation as exc:
                if _constraint_name(exc) == _ACTIVE_DEVICE_INDEX and attempt == 0:
                    self.logger.info(
                        "refresh_token_device_race_retry", user_id=user_id, device_id=device_id
                    )
                    continue
                with self._translate_errors("create_refresh_token"):
                    raise
            except psycopg.Error:
                with self._translate_errors("create_refresh_token"):
                    raise
        raise StorageError("create_refresh_token failed", {"operation": "create_refresh_token"})

    def get_refresh_token_by_hash(self, token_hash: str) -> Optional[RefreshToken]:
        with self._translate_errors("get_refresh_token"), self._connect() as conn:
            row = conn.execute(
                """
                SELECT id, user_id, device_id, token_hash, expires_at, revoked_at, created_at
                FROM refresh_tokens WHERE token_hash = %s
                """,
                (token_hash,),
            ).fetchone()
        return self._row_to_refresh_token(row) if row else None

    def list_refresh_tokens(self, user_id: int) -> List[RefreshToken]:
        with self._translate_errors("list_refresh_tokens"), self._connect() as conn:
            rows = conn.execute(
                """
                SELECT id, user_id, device_id, token_hash, expires_at, revoked_at, created_at
                FROM refresh_tokens WHERE user_id = %s ORDER BY id
                """,
                (user_id,),
            ).fetchall()
        return [self._row_to_refresh_token(row) for row in rows]

    def revoke_refresh_token(self, token_id: int) -> bool:
        """Revoke one token if it is still unrevoked; False when another caller won."""
        with self._translate_errors("revoke_refresh_token"), self._connect() as conn:
            row = conn.execute(
                """
                UPDATE refresh_tokens SET revoked_at = now()
                WHERE id = %s AND revoked_at IS NULL
                RETURNING id
                """,
                (token_id,),
            ).fetchone()
        return row is not None

    def revoke_device_refresh_tokens(self, user_id: int, device_id: str) -> int:
        with self._translate_errors("revoke_device_refresh_tokens"), self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE refresh_tokens SET revoked_at = now()
                WHERE user_id = %s AND device_id = %s AND revoked_at IS NULL
                """,
                (user_id, device_id),
            )
            return cur.rowcount

    def revoke_user_refresh_tokens(self, user_id: int) -> int:
        with self._translate_errors("revoke_user_refresh_tokens"), self._connect() as conn:
            cur = conn.execute(
                "UPDATE refresh_tokens SET revoked_at = now() WHERE user_id = %s AND revoked_at IS NULL",
                (user_id,),
            )
            return cur.rowcount

    def delete_stale_refresh_tokens(self, before: datetime) -> int:
        with self._translate_errors("delete_stale_refresh_tokens"), self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM refresh_tokens WHERE revoked_at < %s OR expires_at < %s",
                (before, before),
            )
            return cur.rowcount
