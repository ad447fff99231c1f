from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from harbinger.logging import get_logger
from harbinger.storage.errors import ConstraintViolation
from harbinger.storage.models import User

_USER_COLUMNS = "id, username, email, password_hash, created_at, updated_at"


class PostgresStore:
    """Thin Postgres-backed user store."""

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=1,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        """Create the ``app_user`` table if it is missing."""

        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS app_user (
                    id BIGSERIAL PRIMARY KEY,
                    username TEXT NOT NULL UNIQUE,
                    email TEXT NOT NULL UNIQUE,
                    password_hash TEXT NOT NULL,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                    updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
                )
                """
            )

    @staticmethod
    def _row_to_user(row: dict[str, Any]) -> User:
        now = datetime.now(timezone.utc)
        return User(
            id=int(row["id"]),
            username=row["username"],
            email=row["email"],
            password_hash=row["password_hash"],
            created_at=row.get("created_at") or now,
            updated_at=row.get("updated_at") or now,
        )

    def create_user(self, username: str, email: str, password_hash: str) -> User:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"""
                    INSERT INTO app_user (username, email, password_hash)
                    VALUES (%s, %s, %s)
                    RETURNING {_USER_COLUMNS}
                    """,
                    (username, email, password_hash),
                ).fetchone()
        except errors.UniqueViolation as exc:
            field = "username"
            constraint = getattr(exc.diag, "constraint_name", "") or ""
            if "email" in constraint:
                field = "email"
            raise ConstraintViolation(f"{field} already exists", {"field": field}) from exc
        user = self._row_to_user(row)
        self.logger.info("user_created", user_id=user.id)
        return user

    def get_user(self, user_id: int) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_USER_COLUMNS} FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        if not row:
            return None
        return self._row_to_user(row)

    def get_user_by_username_or_email(self, value: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_USER_COLUMNS} FROM app_user WHERE username = %s OR email = %s LIMIT 1",
                (value, value),
            ).fetchone()
        if not row:
            return None
        return self._row_to_user(row)

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()
