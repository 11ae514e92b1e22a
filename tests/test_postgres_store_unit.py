import json
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone

import pytest
from psycopg import errors

from conftest import LONDON, NEW_YORK, NY_IP
from sentinel.logging import get_logger
from sentinel.storage.errors import CacheUnavailable, ConstraintViolation, StoreUnavailable
from sentinel.storage.models import Session, SessionStatus
from sentinel.storage.postgres import PostgresStore
from sentinel.storage.redis_cache import SyncRedisCache, _ttl
from sentinel.storage.repository import SessionRepository

NOW = datetime(2026, 1, 5, 12, 0, tzinfo=timezone.utc)


class FakeCursor:
    def __init__(self, rows, rowcount=0):
        self.rows = rows
        self.rowcount = rowcount

    def fetchone(self):
        return self.rows[0] if self.rows else None

    def fetchall(self):
        return list(self.rows)


class FakeConnection:
    def __init__(self, rows=None, exc=None, rowcount=0):
        self.rows = rows or []
        self.exc = exc
        self.rowcount = rowcount
        self.statements = []

    def execute(self, sql, params=None):
        self.statements.append((" ".join(sql.split()), params))
        if self.exc is not None:
            raise self.exc
        return FakeCursor(self.rows, self.rowcount)


class FakePool:
    def __init__(self, conn=None, exc=None):
        self.conn = conn
        self.exc = exc

    @contextmanager
    def connection(self):
        if self.exc is not None:
            raise self.exc
        yield self.conn


def _store(pool) -> PostgresStore:
    # bypass __init__ so no pool or schema setup touches a real database
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.dsn = "postgresql://unit-test"
    store.pool = pool
    store.logger = get_logger("test")
    return store


def _session_row(**overrides):
    row = {
        "id": "3f1c9a52-1111-4c1e-9d8e-000000000001",
        "user_id": "3f1c9a52-2222-4c1e-9d8e-000000000002",
        "refresh_token_hash": "hash",
        "device_fingerprint": "fp",
        "user_agent": "ua",
        "device_name": "Apple Mac",
        "ip_first_seen": NY_IP,
        "ip_last_seen": NY_IP,
        "ip_last_changed_at": None,
        "ip_change_count": 0,
        "location": NEW_YORK.to_dict(),
        "status": "active",
        "created_at": NOW.replace(tzinfo=None),
        "last_active_at": NOW,
        "refresh_token_expiry": NOW + timedelta(days=7),
        "is_legacy": False,
        "is_suspicious": False,
        "expire_at": None,
    }
    row.update(overrides)
    return row


class TestPostgresStoreMapping:
    def test_session_row_mapping(self):
        store = _store(FakePool(FakeConnection(rows=[_session_row()])))

        session = store.get_session("3f1c9a52-1111-4c1e-9d8e-000000000001")

        assert session.location == NEW_YORK
        assert session.status == SessionStatus.ACTIVE
        assert session.created_at.tzinfo is not None

    def test_location_stored_as_text_is_parsed(self):
        row = _session_row(location=json.dumps(LONDON.to_dict()), status="revoked")
        store = _store(FakePool(FakeConnection(rows=[row])))

        session = store.get_session(row["id"])

        assert session.location == LONDON
        assert session.status == SessionStatus.REVOKED

    def test_status_filter_is_passed_as_array(self):
        conn = FakeConnection(rows=[])
        store = _store(FakePool(conn))

        store.list_user_sessions("user-1", [SessionStatus.INACTIVE, SessionStatus.REVOKED])

        sql, params = conn.statements[0]
        assert "status = ANY(%s)" in sql
        assert params == ("user-1", ["inactive", "revoked"])

    def test_delete_expired_reports_rowcount(self):
        store = _store(FakePool(FakeConnection(rowcount=3)))
        assert store.delete_expired_sessions(NOW) == 3

    def test_count_by_user(self):
        rows = [{"user_id": "a", "active": 2}, {"user_id": "b", "active": 1}]
        store = _store(FakePool(FakeConnection(rows=rows)))
        assert store.count_active_sessions_by_user(NOW) == {"a": 2, "b": 1}


class TestPostgresStoreErrors:
    def test_duplicate_email(self):
        store = _store(FakePool(FakeConnection(exc=errors.UniqueViolation("duplicate key"))))
        with pytest.raises(ConstraintViolation):
            store.create_user("alice@example.com")

    def test_duplicate_refresh_token(self):
        store = _store(FakePool(FakeConnection(exc=errors.UniqueViolation("duplicate key"))))
        session = Session.new(
            "user-1",
            "hash",
            fingerprint="fp",
            user_agent="ua",
            device_name="Apple Mac",
            ip=NY_IP,
            location=NEW_YORK,
            refresh_token_expiry=NOW + timedelta(days=7),
            now=NOW,
        )
        with pytest.raises(ConstraintViolation):
            store.insert_session(session)

    def test_unreachable_database(self):
        store = _store(FakePool(exc=errors.OperationalError("connection refused")))
        with pytest.raises(StoreUnavailable):
            store.get_user("user-1")


class TestRedisCacheOutage:
    def test_ttl_is_clamped(self):
        assert _ttl(0) == 1
        assert _ttl(-5) == 1
        assert _ttl(30.9) == 30

    async def test_driver_errors_become_cache_unavailable(self):
        cache = SyncRedisCache("redis://127.0.0.1:1/0", socket_timeout=0.2)
        with pytest.raises(CacheUnavailable):
            await cache.get_session_snapshot("hash")
        with pytest.raises(CacheUnavailable):
            await cache.incr("risk:ip:x", 60)

    async def test_repository_falls_back_to_durable_store(self, store, user):
        repository = SessionRepository(store, SyncRedisCache("redis://127.0.0.1:1/0", socket_timeout=0.2))
        session = store.insert_session(
            Session.new(
                user.id,
                "hash",
                fingerprint="fp",
                user_agent="ua",
                device_name="Apple Mac",
                ip=NY_IP,
                location=NEW_YORK,
                refresh_token_expiry=NOW + timedelta(days=7),
                now=NOW,
            )
        )

        snapshot = await repository.load_snapshot("hash")

        assert snapshot.session_id == session.id
        assert await repository.store_snapshot("hash", snapshot, 60) is False
