from __future__ import annotations

from datetime import datetime
from typing import Dict, Iterable, List, Optional, Protocol, Set

from sentinel.logging import get_logger
from sentinel.storage.errors import CacheUnavailable
from sentinel.storage.models import (
    Challenge,
    GeoLocation,
    Session,
    SessionSnapshot,
    SessionStatus,
    User,
)

logger = get_logger(__name__)


class FastStore(Protocol):
    """Ephemeral TTL-bearing key/value store (Redis in production).

    Implementations raise ``CacheUnavailable`` when the backend cannot be reached.
    """

    async def get_session_snapshot(self, token_hash: str) -> Optional[SessionSnapshot]: ...

    async def set_session_snapshot(
        self, token_hash: str, snapshot: SessionSnapshot, ttl_seconds: int
    ) -> None: ...

    async def delete_session_snapshot(self, token_hash: str) -> None: ...

    async def get_challenge(self, identity: str) -> Optional[Challenge]: ...

    async def set_challenge(
        self, identity: str, challenge: Challenge, ttl_seconds: int
    ) -> None: ...

    async def consume_challenge(self, identity: str, code_hash: str) -> bool: ...

    async def get_geo(self, ip: str) -> Optional[GeoLocation]: ...

    async def set_geo(self, ip: str, location: GeoLocation, ttl_seconds: int) -> None: ...


class RateCounter(Protocol):
    async def incr(self, key: str, window_seconds: int) -> int:
        """Atomically increment ``key``; the first increment in a window sets its expiry."""
        ...


class DurableStore(Protocol):
    """Queryable store of record for users and sessions.

    Implementations raise ``StoreUnavailable`` when the backend fails.
    """

    def create_user(
        self, email: str, name: Optional[str] = None, *, role: str = "user"
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def list_users(self, limit: int = 500) -> List[User]: ...

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None: ...

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]: ...

    def update_user_role(self, user_id: str, role: str) -> Optional[User]: ...

    def set_user_verified(self, user_id: str, verified: bool = True) -> Optional[User]: ...

    def increment_risk_score(self, user_id: str, delta: int) -> Optional[User]: ...

    def reset_risk_score(self, user_id: str) -> Optional[User]: ...

    def insert_session(self, session: Session) -> Session: ...

    def get_session(self, session_id: str) -> Optional[Session]: ...

    def find_active_session_by_token(self, token_hash: str) -> Optional[Session]: ...

    def list_user_sessions(
        self, user_id: str, statuses: Optional[Iterable[SessionStatus]] = None
    ) -> List[Session]: ...

    def count_active_sessions(self, user_id: str, now: datetime) -> int: ...

    def count_active_sessions_by_user(self, now: datetime) -> Dict[str, int]: ...

    def has_session_with_fingerprint(self, user_id: str, fingerprint: str) -> bool: ...

    def latest_session(self, user_id: str) -> Optional[Session]: ...

    def touch_session(self, session_id: str, at: datetime) -> Optional[Session]: ...

    def record_ip_change(
        self, session_id: str, ip: str, at: datetime, location: GeoLocation
    ) -> Optional[Session]: ...

    def set_session_status(
        self, session_id: str, status: SessionStatus
    ) -> Optional[Session]: ...

    def set_session_suspicious(self, session_id: str, flag: bool) -> Optional[Session]: ...

    def schedule_session_expiry(self, session_id: str, expire_at: datetime) -> None: ...

    def delete_expired_sessions(self, now: datetime) -> int: ...


class SessionRepository:
    """Read-through / write-throttle facade over a FastStore and a DurableStore.

    Cache failures are logged and absorbed so the request falls back to the durable
    store. Durable failures propagate as ``StoreUnavailable``. A token whose cache
    entry could not be evicted is read from the durable store until a later
    eviction succeeds, so a terminated session cannot be revived by a stale entry
    once the cache comes back.
    """

    def __init__(self, durable: DurableStore, fast: Optional[FastStore] = None) -> None:
        self.durable = durable
        self.fast = fast
        self._unevicted: Set[str] = set()

    async def load_snapshot(self, token_hash: str) -> Optional[SessionSnapshot]:
        if token_hash in self._unevicted:
            session = self.durable.find_active_session_by_token(token_hash)
            if session is None:
                await self.evict_snapshot(token_hash)
                return None
            self._unevicted.discard(token_hash)
            return SessionSnapshot.from_session(session)
        snapshot = await self.cached_snapshot(token_hash)
        if snapshot is not None:
            return snapshot
        session = self.durable.find_active_session_by_token(token_hash)
        if not session:
            return None
        return SessionSnapshot.from_session(session)

    async def cached_snapshot(self, token_hash: str) -> Optional[SessionSnapshot]:
        if not self.fast:
            return None
        try:
            return await self.fast.get_session_snapshot(token_hash)
        except CacheUnavailable as exc:
            logger.warning("cache_unavailable", operation="get_session", error=str(exc))
            return None

    async def store_snapshot(
        self, token_hash: str, snapshot: SessionSnapshot, ttl_seconds: int
    ) -> bool:
        if not self.fast:
            return False
        try:
            await self.fast.set_session_snapshot(token_hash, snapshot, ttl_seconds)
            return True
        except CacheUnavailable as exc:
            logger.warning("cache_unavailable", operation="set_session", error=str(exc))
            return False

    async def evict_snapshot(self, token_hash: str) -> None:
        if not self.fast:
            return
        try:
            await self.fast.delete_session_snapshot(token_hash)
        except CacheUnavailable as exc:
            self._unevicted.add(token_hash)
            logger.warning("cache_unavailable", operation="delete_session", error=str(exc))
            return
        self._unevicted.discard(token_hash)

    def insert_session(self, session: Session) -> Session:
        return self.durable.insert_session(session)

    def get_session(self, session_id: str) -> Optional[Session]:
        return self.durable.get_session(session_id)

    def list_sessions(
        self, user_id: str, statuses: Optional[Iterable[SessionStatus]] = None
    ) -> List[Session]:
        return self.durable.list_user_sessions(user_id, statuses)

    def count_active(self, user_id: str, now: datetime) -> int:
        return self.durable.count_active_sessions(user_id, now)

    def has_fingerprint(self, user_id: str, fingerprint: str) -> bool:
        return self.durable.has_session_with_fingerprint(user_id, fingerprint)

    def latest_session(self, user_id: str) -> Optional[Session]:
        return self.durable.latest_session(user_id)

    def touch(self, session_id: str, at: datetime) -> Optional[Session]:
        return self.durable.touch_session(session_id, at)

    def record_ip_change(
        self, session_id: str, ip: str, at: datetime, location: GeoLocation
    ) -> Optional[Session]:
        return self.durable.record_ip_change(session_id, ip, at, location)

    def set_status(self, session_id: str, status: SessionStatus) -> Optional[Session]:
        return self.durable.set_session_status(session_id, status)

    def set_suspicious(self, session_id: str, flag: bool) -> Optional[Session]:
        return self.durable.set_session_suspicious(session_id, flag)

    def schedule_expiry(self, session_id: str, expire_at: datetime) -> None:
        self.durable.schedule_session_expiry(session_id, expire_at)

    def purge_expired(self, now: datetime) -> int:
        return self.durable.delete_expired_sessions(now)


__all__ = ["DurableStore", "FastStore", "RateCounter", "SessionRepository"]
