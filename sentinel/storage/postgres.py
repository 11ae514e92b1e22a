from __future__ import annotations

import json
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Iterator, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from sentinel.logging import get_logger
from sentinel.storage.errors import ConstraintViolation, StoreUnavailable
from sentinel.storage.models import GeoLocation, Session, SessionStatus, User

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id UUID PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        name TEXT,
        role TEXT NOT NULL DEFAULT 'user',
        is_verified BOOLEAN NOT NULL DEFAULT FALSE,
        risk_score INTEGER NOT NULL DEFAULT 0,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_auth_credential (
        user_id UUID PRIMARY KEY REFERENCES app_user(id) ON DELETE CASCADE,
        password_hash TEXT NOT NULL,
        password_algo TEXT NOT NULL,
        last_updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_session (
        id UUID PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        refresh_token_hash TEXT NOT NULL UNIQUE,
        device_fingerprint TEXT NOT NULL,
        user_agent TEXT NOT NULL DEFAULT '',
        device_name TEXT NOT NULL DEFAULT 'Unknown Device',
        ip_first_seen TEXT NOT NULL,
        ip_last_seen TEXT NOT NULL,
        ip_last_changed_at TIMESTAMPTZ,
        ip_change_count INTEGER NOT NULL DEFAULT 0,
        location JSONB NOT NULL DEFAULT '{}'::jsonb,
        status TEXT NOT NULL DEFAULT 'active',
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        last_active_at TIMESTAMPTZ,
        refresh_token_expiry TIMESTAMPTZ NOT NULL,
        is_legacy BOOLEAN NOT NULL DEFAULT FALSE,
        is_suspicious BOOLEAN NOT NULL DEFAULT FALSE,
        expire_at TIMESTAMPTZ
    )
    """,
    "CREATE INDEX IF NOT EXISTS auth_session_user_status_idx ON auth_session (user_id, status)",
    "CREATE INDEX IF NOT EXISTS auth_session_user_fp_idx ON auth_session (user_id, device_fingerprint)",
    "CREATE INDEX IF NOT EXISTS auth_session_expire_idx ON auth_session (expire_at) WHERE expire_at IS NOT NULL",
)

_SESSION_COLUMNS = (
    "id, user_id, refresh_token_hash, device_fingerprint, user_agent, device_name, "
    "ip_first_seen, ip_last_seen, ip_last_changed_at, ip_change_count, location, status, "
    "created_at, last_active_at, refresh_token_expiry, is_legacy, is_suspicious, expire_at"
)


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class PostgresStore:
    """Postgres-backed store of record for users and sessions."""

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    @contextmanager
    def _connect(self) -> Iterator[Any]:
        """Borrow a pooled connection, translating driver outages to StoreUnavailable."""
        try:
            with self.pool.connection() as conn:
                yield conn
        except (errors.OperationalError, errors.InterfaceError) as exc:
            self.logger.error("postgres_unavailable", error=str(exc))
            raise StoreUnavailable("database unavailable") from exc

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    # -- users ---------------------------------------------------------------

    @staticmethod
    def _user_from_row(row: dict) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            name=row.get("name"),
            role=row.get("role", "user"),
            is_verified=row.get("is_verified", False),
            risk_score=int(row.get("risk_score") or 0),
            created_at=_aware(row.get("created_at")) or datetime.now(timezone.utc),
        )

    def create_user(
        self, email: str, name: Optional[str] = None, *, role: str = "user"
    ) -> User:
        user_id = str(uuid.uuid4())
        normalized = email.strip().lower()
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, email, name, role)
                    VALUES (%s, %s, %s, %s)
                    RETURNING *
                    """,
                    (user_id, normalized, name, role),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._user_from_row(row)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM app_user WHERE id = %s", (user_id,)).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (email.strip().lower(),)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def list_users(self, limit: int = 500) -> List[User]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM app_user ORDER BY created_at DESC LIMIT %s", (limit,)
            ).fetchall()
        return [self._user_from_row(row) for row in rows]

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_auth_credential (user_id, password_hash, password_algo)
                    VALUES (%s, %s, %s)
                    ON CONFLICT (user_id) DO UPDATE
                    SET password_hash = EXCLUDED.password_hash,
                        password_algo = EXCLUDED.password_algo,
                        last_updated_at = now()
                    """,
                    (user_id, password_hash, password_algo),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user not found for credentials", {"user_id": user_id})

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM user_auth_credential WHERE user_id = %s",
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return row["password_hash"], row["password_algo"]

    def _update_user(self, sql: str, params: tuple) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(sql, params).fetchone()
        return self._user_from_row(row) if row else None

    def update_user_role(self, user_id: str, role: str) -> Optional[User]:
        return self._update_user(
            "UPDATE app_user SET role = %s WHERE id = %s RETURNING *", (role, user_id)
        )

    def set_user_verified(self, user_id: str, verified: bool = True) -> Optional[User]:
        return self._update_user(
            "UPDATE app_user SET is_verified = %s WHERE id = %s RETURNING *",
            (verified, user_id),
        )

    def increment_risk_score(self, user_id: str, delta: int) -> Optional[User]:
        return self._update_user(
            "UPDATE app_user SET risk_score = risk_score + %s WHERE id = %s RETURNING *",
            (delta, user_id),
        )

    def reset_risk_score(self, user_id: str) -> Optional[User]:
        return self._update_user(
            "UPDATE app_user SET risk_score = 0 WHERE id = %s RETURNING *", (user_id,)
        )

    # -- sessions ------------------------------------------------------------

    @staticmethod
    def _session_from_row(row: dict) -> Session:
        location = row.get("location")
        if isinstance(location, str):
            try:
                location = json.loads(location)
            except json.JSONDecodeError:
                location = None
        return Session(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            refresh_token_hash=row["refresh_token_hash"],
            device_fingerprint=row["device_fingerprint"],
            user_agent=row.get("user_agent") or "",
            device_name=row.get("device_name") or "Unknown Device",
            ip_first_seen=row["ip_first_seen"],
            ip_last_seen=row["ip_last_seen"],
            ip_last_changed_at=_aware(row.get("ip_last_changed_at")),
            ip_change_count=int(row.get("ip_change_count") or 0),
            location=GeoLocation.from_dict(location),
            status=SessionStatus(row.get("status", "active")),
            created_at=_aware(row.get("created_at")) or datetime.now(timezone.utc),
            last_active_at=_aware(row.get("last_active_at")),
            refresh_token_expiry=_aware(row["refresh_token_expiry"]),
            is_legacy=row.get("is_legacy", False),
            is_suspicious=row.get("is_suspicious", False),
            expire_at=_aware(row.get("expire_at")),
        )

    def insert_session(self, session: Session) -> Session:
        try:
            with self._connect() as conn:
                conn.execute(
                    f"""
                    INSERT INTO auth_session ({_SESSION_COLUMNS})
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        session.id,
                        session.user_id,
                        session.refresh_token_hash,
                        session.device_fingerprint,
                        session.user_agent,
                        session.device_name,
                        session.ip_first_seen,
                        session.ip_last_seen,
                        session.ip_last_changed_at,
                        session.ip_change_count,
                        json.dumps(session.location.to_dict()),
                        session.status.value,
                        session.created_at,
                        session.last_active_at,
                        session.refresh_token_expiry,
                        session.is_legacy,
                        session.is_suspicious,
                        session.expire_at,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("session user missing", {"user_id": session.user_id})
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "refresh token already bound", {"field": "refresh_token_hash"}
            )
        return session

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_SESSION_COLUMNS} FROM auth_session WHERE id = %s", (session_id,)
            ).fetchone()
        return self._session_from_row(row) if row else None

    def find_active_session_by_token(self, token_hash: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                f"""
                SELECT {_SESSION_COLUMNS} FROM auth_session
                WHERE refresh_token_hash = %s AND status = 'active'
                """,
                (token_hash,),
            ).fetchone()
        return self._session_from_row(row) if row else None

    def list_user_sessions(
        self, user_id: str, statuses: Optional[Iterable[SessionStatus]] = None
    ) -> List[Session]:
        sql = f"SELECT {_SESSION_COLUMNS} FROM auth_session WHERE user_id = %s"
        params: list[Any] = [user_id]
        if statuses is not None:
            sql += " AND status = ANY(%s)"
            params.append([status.value for status in statuses])
        sql += " ORDER BY COALESCE(last_active_at, created_at) DESC"
        with self._connect() as conn:
            rows = conn.execute(sql, tuple(params)).fetchall()
        return [self._session_from_row(row) for row in rows]

    def count_active_sessions(self, user_id: str, now: datetime) -> int:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT COUNT(*) AS active FROM auth_session
                WHERE user_id = %s AND status = 'active' AND refresh_token_expiry > %s
                """,
                (user_id, now),
            ).fetchone()
        return int(row["active"]) if row else 0

    def count_active_sessions_by_user(self, now: datetime) -> Dict[str, int]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT user_id, COUNT(*) AS active FROM auth_session
                WHERE status = 'active' AND refresh_token_expiry > %s
                GROUP BY user_id
                """,
                (now,),
            ).fetchall()
        return {str(row["user_id"]): int(row["active"]) for row in rows}

    def has_session_with_fingerprint(self, user_id: str, fingerprint: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT 1 AS found FROM auth_session
                WHERE user_id = %s AND device_fingerprint = %s LIMIT 1
                """,
                (user_id, fingerprint),
            ).fetchone()
        return row is not None

    def latest_session(self, user_id: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                f"""
                SELECT {_SESSION_COLUMNS} FROM auth_session
                WHERE user_id = %s
                ORDER BY COALESCE(last_active_at, created_at) DESC
                LIMIT 1
                """,
                (user_id,),
            ).fetchone()
        return self._session_from_row(row) if row else None

    def _update_session(self, sql: str, params: tuple) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(sql, params).fetchone()
        return self._session_from_row(row) if row else None

    def touch_session(self, session_id: str, at: datetime) -> Optional[Session]:
        return self._update_session(
            f"UPDATE auth_session SET last_active_at = %s WHERE id = %s RETURNING {_SESSION_COLUMNS}",
            (at, session_id),
        )

    def record_ip_change(
        self, session_id: str, ip: str, at: datetime, location: GeoLocation
    ) -> Optional[Session]:
        return self._update_session(
            f"""
            UPDATE auth_session
            SET ip_last_seen = %s,
                ip_last_changed_at = %s,
                ip_change_count = ip_change_count + 1,
                location = %s,
                last_active_at = %s
            WHERE id = %s
            RETURNING {_SESSION_COLUMNS}
            """,
            (ip, at, json.dumps(location.to_dict()), at, session_id),
        )

    def set_session_status(
        self, session_id: str, status: SessionStatus
    ) -> Optional[Session]:
        return self._update_session(
            f"UPDATE auth_session SET status = %s WHERE id = %s RETURNING {_SESSION_COLUMNS}",
            (status.value, session_id),
        )

    def set_session_suspicious(self, session_id: str, flag: bool) -> Optional[Session]:
        return self._update_session(
            f"UPDATE auth_session SET is_suspicious = %s WHERE id = %s RETURNING {_SESSION_COLUMNS}",
            (flag, session_id),
        )

    def schedule_session_expiry(self, session_id: str, expire_at: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE auth_session SET expire_at = %s WHERE id = %s",
                (expire_at, session_id),
            )

    def delete_expired_sessions(self, now: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM auth_session WHERE expire_at IS NOT NULL AND expire_at <= %s",
                (now,),
            )
            deleted = cur.rowcount or 0
        if deleted:
            self.logger.info("expired_sessions_purged", count=deleted)
        return deleted

    def close(self) -> None:
        self.pool.close()
