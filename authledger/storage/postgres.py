from __future__ import annotations

from typing import List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from authledger.logging import get_logger
from authledger.storage.common import normalize_email, session_from_row, user_from_row
from authledger.storage.errors import ConstraintViolation
from authledger.storage.models import Session, SessionState, User


_REQUIRED_TABLES = ("app_user", "auth_session")


class PostgresStore:
    """Thin Postgres-backed store for users and sessions.

    Uniqueness of ``lower(email)`` and ``token_hash`` is enforced by unique
    indexes (see ``scripts/schema.sql``), so concurrent writers cannot both
    pass an existence check and insert duplicates.
    """

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    def close(self) -> None:
        self.pool.close()

    def _verify_required_schema(self) -> None:
        """Ensure the auth tables exist before serving requests."""

        with self._connect() as conn:
            missing_tables = []
            for table in _REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)

        if missing_tables:
            raise RuntimeError(
                "Missing required Postgres tables: {}. Apply scripts/schema.sql first.".format(
                    ", ".join(sorted(missing_tables))
                )
            )

    # users
    def create_user(self, email: str, password_hash: str) -> User:
        normalized = normalize_email(email)
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (email, password_hash)
                    VALUES (%s, %s)
                    RETURNING id, email, password_hash, created_at
                    """,
                    (normalized, password_hash),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return user_from_row(row)

    def get_user(self, user_id: int) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        return user_from_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE lower(email) = %s",
                (normalize_email(email),),
            ).fetchone()
        return user_from_row(row) if row else None

    def update_password_hash(self, user_id: int, password_hash: str) -> None:
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE app_user SET password_hash = %s WHERE id = %s",
                (password_hash, user_id),
            )
            if result.rowcount == 0:
                raise ConstraintViolation(
                    "user not found for credentials", {"field": "user_id", "user_id": user_id}
                )

    # sessions
    def create_session(
        self,
        user_id: int,
        token_hash: str,
        state: SessionState = SessionState.ACTIVE,
    ) -> Session:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO auth_session (user_id, token_hash, state)
                    VALUES (%s, %s, %s)
                    RETURNING id, user_id, token_hash, state, created_at
                    """,
                    (user_id, token_hash, SessionState(state).value),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("token already recorded", {"field": "token_hash"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "user does not exist", {"field": "user_id", "user_id": user_id}
            )
        return session_from_row(row)

    def get_session(self, session_id: int) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_session WHERE id = %s", (session_id,)
            ).fetchone()
        return session_from_row(row) if row else None

    def get_session_by_token(self, token_hash: str, user_id: int) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_session WHERE token_hash = %s AND user_id = %s",
                (token_hash, user_id),
            ).fetchone()
        return session_from_row(row) if row else None

    def list_user_sessions(self, user_id: int) -> List[Session]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM auth_session WHERE user_id = %s ORDER BY id", (user_id,)
            ).fetchall()
        return [session_from_row(row) for row in rows]

    def set_session_state(self, session_id: int, state: SessionState) -> None:
        # Conditional update keeps concurrent expiry writers idempotent
        with self._connect() as conn:
            conn.execute(
                "UPDATE auth_session SET state = %s WHERE id = %s AND state <> %s",
                (SessionState(state).value, session_id, SessionState(state).value),
            )

    def revoke_session(self, session_id: int) -> bool:
        with self._connect() as conn:
            result = conn.execute("DELETE FROM auth_session WHERE id = %s", (session_id,))
            return result.rowcount > 0

    def revoke_user_sessions(self, user_id: int) -> int:
        with self._connect() as conn:
            result = conn.execute("DELETE FROM auth_session WHERE user_id = %s", (user_id,))
            return result.rowcount
