from __future__ import annotations

from typing import Any, Dict, Optional

from psycopg import Error as PsycopgError
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from gatehouse.logging import get_logger
from gatehouse.storage.directory import check_password_hash, normalize_identifier
from gatehouse.storage.models import Principal

_USER_COLUMNS = "id, email, role, is_active, display_name"


class PostgresDirectory:
    """Credential directory reading the platform's existing ``users`` table.

    The table is owned elsewhere; this class only reads it, apart from the
    admin bootstrap helpers used by ``scripts/bootstrap_admin.py``.
    """

    def __init__(self, dsn: str, *, min_size: int = 1, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )

    def _connect(self):
        return self.pool.connection()

    @staticmethod
    def _row_to_principal(row: Dict[str, Any]) -> Principal:
        return Principal(
            id=str(row["id"]),
            email=row["email"],
            role=row.get("role") or "user",
            is_active=bool(row.get("is_active", True)),
            display_name=row.get("display_name"),
        )

    def find_by_identifier(self, identifier: str) -> Optional[Principal]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_USER_COLUMNS} FROM users WHERE lower(email) = %s",
                (normalize_identifier(identifier),),
            ).fetchone()
        return self._row_to_principal(row) if row else None

    def get_by_id(self, user_id: str) -> Optional[Principal]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_USER_COLUMNS} FROM users WHERE id::text = %s", (user_id,)
            ).fetchone()
        return self._row_to_principal(row) if row else None

    def verify_password(self, principal: Principal, password: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash FROM users WHERE id::text = %s", (principal.id,)
            ).fetchone()
        stored = row.get("password_hash") if row else None
        return check_password_hash(stored, password, user_id=principal.id)

    def ping(self) -> bool:
        try:
            with self._connect() as conn:
                conn.execute("SELECT 1").fetchone()
        except PsycopgError as exc:
            self.logger.warning("directory_ping_failed", error_type=type(exc).__name__)
            return False
        return True

    def create_user(
        self,
        email: str,
        password_hash: str,
        *,
        role: str = "user",
        display_name: Optional[str] = None,
    ) -> Principal:
        with self._connect() as conn:
            row = conn.execute(
                f"""
                INSERT INTO users (email, password_hash, role, is_active, display_name)
                VALUES (%s, %s, %s, TRUE, %s)
                RETURNING {_USER_COLUMNS}
                """,
                (normalize_identifier(email), password_hash, role, display_name),
            ).fetchone()
            conn.commit()
        principal = self._row_to_principal(row)
        self.logger.info("directory_user_created", user_id=principal.id, role=role)
        return principal

    def update_role(self, user_id: str, role: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE users SET role = %s WHERE id::text = %s", (role, user_id)
            )
            conn.commit()
        self.logger.info("directory_role_updated", user_id=user_id, role=role)

    def close(self) -> None:
        self.pool.close()
