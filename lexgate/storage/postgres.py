from __future__ import annotations

import uuid
from typing import Any, Dict, List, Optional

from psycopg import errors, sql
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from lexgate.logging import get_logger
from lexgate.storage.errors import ConstraintViolation
from lexgate.storage.memory import INCREMENTABLE_FIELDS, UPDATABLE_FIELDS
from lexgate.storage.models import Credential, Role, UserStatus, utcnow


class PostgresStore:
    """Postgres-backed credential repository."""

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_user_table()

    def _connect(self):
        return self.pool.connection()

    def _ensure_user_table(self) -> None:
        """Create the ``app_user`` table if it is missing."""

        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS app_user (
                    id UUID PRIMARY KEY,
                    email TEXT NOT NULL,
                    phone TEXT,
                    password_hash TEXT NOT NULL,
                    name TEXT NOT NULL,
                    avatar TEXT,
                    role TEXT NOT NULL DEFAULT 'user',
                    status TEXT NOT NULL DEFAULT 'active',
                    token_quota BIGINT NOT NULL DEFAULT 100000,
                    token_used BIGINT NOT NULL DEFAULT 0,
                    last_login_at TIMESTAMPTZ,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                    updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                    CONSTRAINT app_user_email_key UNIQUE (email),
                    CONSTRAINT app_user_phone_key UNIQUE (phone)
                )
                """
            )

    @staticmethod
    def _violation(exc: errors.UniqueViolation) -> ConstraintViolation:
        constraint = getattr(getattr(exc, "diag", None), "constraint_name", None) or ""
        field = "phone" if "phone" in constraint else "email"
        return ConstraintViolation(f"{field} already exists", {"field": field})

    @staticmethod
    def _row_to_credential(row: Dict[str, Any]) -> Credential:
        return Credential(
            id=str(row["id"]),
            email=row["email"],
            phone=row.get("phone"),
            password_hash=row["password_hash"],
            name=row["name"],
            avatar=row.get("avatar"),
            role=row.get("role", Role.USER.value),
            status=row.get("status", UserStatus.ACTIVE.value),
            token_quota=int(row.get("token_quota") or 0),
            token_used=int(row.get("token_used") or 0),
            last_login_at=row.get("last_login_at"),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or utcnow(),
        )

    def create_user(
        self,
        email: str,
        password_hash: str,
        name: str,
        *,
        phone: Optional[str] = None,
        role: str = Role.USER.value,
        token_quota: int = 100000,
    ) -> Credential:
        user_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, email, phone, password_hash, name, role, token_quota)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (user_id, email, phone, password_hash, name, role, token_quota),
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise self._violation(exc) from exc
        return self._row_to_credential(row)

    def _get_one(self, column: str, value: str) -> Optional[Credential]:
        query = sql.SQL("SELECT * FROM app_user WHERE {} = %s").format(sql.Identifier(column))
        with self._connect() as conn:
            row = conn.execute(query, (value,)).fetchone()
        return self._row_to_credential(row) if row else None

    def get_user(self, user_id: str) -> Optional[Credential]:
        try:
            uuid.UUID(str(user_id))
        except ValueError:
            return None
        return self._get_one("id", user_id)

    def get_user_by_email(self, email: str) -> Optional[Credential]:
        return self._get_one("email", email)

    def get_user_by_phone(self, phone: str) -> Optional[Credential]:
        return self._get_one("phone", phone)

    def email_exists(self, email: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT 1 FROM app_user WHERE email = %s", (email,)
            ).fetchone()
        return row is not None

    def list_users(self, limit: int = 100) -> List[Credential]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM app_user ORDER BY created_at DESC LIMIT %s", (limit,)
            ).fetchall()
        return [self._row_to_credential(row) for row in rows]

    def update_user_fields(self, user_id: str, fields: Dict[str, Any]) -> Optional[Credential]:
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"cannot update fields: {sorted(unknown)}")
        if not fields:
            return self.get_user(user_id)
        assignments = sql.SQL(", ").join(
            sql.SQL("{} = %s").format(sql.Identifier(name)) for name in fields
        )
        query = sql.SQL(
            "UPDATE app_user SET {}, updated_at = now() WHERE id = %s RETURNING *"
        ).format(assignments)
        params = [
            value.value if hasattr(value, "value") else value for value in fields.values()
        ]
        try:
            with self._connect() as conn:
                row = conn.execute(query, (*params, user_id)).fetchone()
        except errors.UniqueViolation as exc:
            raise self._violation(exc) from exc
        return self._row_to_credential(row) if row else None

    def increment_user_field(self, user_id: str, field: str, amount: int) -> Optional[int]:
        if field not in INCREMENTABLE_FIELDS:
            raise ValueError(f"cannot increment field: {field}")
        query = sql.SQL(
            "UPDATE app_user SET {col} = {col} + %s, updated_at = now() WHERE id = %s RETURNING {col}"
        ).format(col=sql.Identifier(field))
        with self._connect() as conn:
            row = conn.execute(query, (amount, user_id)).fetchone()
        return int(row[field]) if row else None

    def get_quota(self, user_id: str) -> Optional[tuple[int, int]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT token_quota, token_used FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        if not row:
            return None
        return (int(row["token_quota"]), int(row["token_used"]))

    def consume_quota(self, user_id: str, amount: int) -> Optional[tuple[int, int]]:
        """Single guarded UPDATE so the check and the deduction cannot interleave."""
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user
                SET token_used = token_used + %s, updated_at = now()
                WHERE id = %s AND token_used < token_quota
                RETURNING token_quota, token_used
                """,
                (amount, user_id),
            ).fetchone()
        if not row:
            return None
        return (int(row["token_quota"]), int(row["token_used"]))

    def ping(self) -> bool:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()
        return True

    def close(self) -> None:
        self.pool.close()
