from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta
from typing import Callable, Iterable, List, Optional

from sentinel.config import Settings
from sentinel.logging import get_logger
from sentinel.service.client import device_name_from_user_agent
from sentinel.service.geo import GeoLookup
from sentinel.service.tokens import hash_token
from sentinel.storage.models import (
    GeoLocation,
    Session,
    SessionSnapshot,
    SessionStatus,
    utcnow,
)
from sentinel.storage.repository import SessionRepository

logger = get_logger(__name__)

_RETIRED = (SessionStatus.INACTIVE, SessionStatus.REVOKED)


class SessionStore:
    """Session creation, validation and termination across cache and durable store.

    The cache entry keyed by the hashed refresh token is the fast path. When it is
    missing the durable store is consulted and the entry rebuilt. Durable writes on
    the hot path are throttled to one per ``activity_write_interval_seconds`` unless
    the client IP changed, which is always written immediately.
    """

    def __init__(
        self,
        repository: SessionRepository,
        geo: GeoLookup,
        settings: Settings,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.repository = repository
        self.geo = geo
        self.settings = settings
        self._clock = clock or utcnow

    def _now(self) -> datetime:
        return self._clock()

    def _cache_ttl(self, expiry: datetime, now: datetime) -> int:
        remaining = int((expiry - now).total_seconds())
        return max(1, min(self.settings.session_cache_ttl_seconds, remaining))

    async def create_session(
        self,
        user_id: str,
        *,
        ip: str,
        user_agent: str,
        fingerprint: str,
        geo: GeoLocation,
        raw_refresh_token: str,
        is_legacy: bool = False,
        device_name: Optional[str] = None,
        refresh_ttl: Optional[timedelta] = None,
    ) -> Session:
        now = self._now()
        await self._apply_retention(user_id, now)

        token_hash = hash_token(raw_refresh_token)
        expiry = now + (refresh_ttl or timedelta(days=self.settings.refresh_token_ttl_days))
        session = Session.new(
            user_id,
            token_hash,
            fingerprint=fingerprint,
            user_agent=user_agent,
            device_name=device_name or device_name_from_user_agent(user_agent),
            ip=ip,
            location=geo,
            refresh_token_expiry=expiry,
            is_legacy=is_legacy,
            now=now,
        )
        stored = self.repository.insert_session(session)
        await self.repository.store_snapshot(
            token_hash, SessionSnapshot.from_session(stored), self._cache_ttl(expiry, now)
        )
        logger.info(
            "session_created",
            session_id=stored.id,
            user_id=user_id,
            ip=ip,
            device=stored.device_name,
            is_legacy=is_legacy,
        )
        return stored

    async def _apply_retention(self, user_id: str, now: datetime) -> None:
        """Schedule deletion of retired sessions beyond the most recent few."""
        retired = self.repository.list_sessions(user_id, _RETIRED)
        keep = self.settings.max_retained_inactive_sessions
        retention = timedelta(days=self.settings.inactive_retention_days)
        scheduled = 0
        for session in retired[keep:]:
            if session.expire_at is not None:
                continue
            last_active = session.last_active_at or session.created_at
            if now - last_active >= retention:
                expire_at = now + timedelta(hours=self.settings.expire_soon_hours)
            else:
                expire_at = last_active + retention
            self.repository.schedule_expiry(session.id, expire_at)
            await self.repository.evict_snapshot(session.refresh_token_hash)
            scheduled += 1
        if scheduled:
            logger.info("session_retention_applied", user_id=user_id, scheduled=scheduled)

    def count_active(self, user_id: str) -> int:
        return self.repository.count_active(user_id, self._now())

    async def validate_and_refresh(
        self, token_hash: str, current_ip: str
    ) -> Optional[SessionSnapshot]:
        """Validate a hashed refresh token and record activity.

        Returns the snapshot as it was *before* this request, so callers can compare
        the previous IP, location and activity time against the current request.
        Returns None for absent, expired or no-longer-active sessions alike.
        """
        now = self._now()
        snapshot = await self.repository.load_snapshot(token_hash)
        if snapshot is None:
            return None

        if snapshot.refresh_token_expiry <= now:
            await self.repository.evict_snapshot(token_hash)
            self.repository.set_status(snapshot.session_id, SessionStatus.INACTIVE)
            logger.info("session_expired", session_id=snapshot.session_id)
            return None

        ip_changed = snapshot.ip_last_seen != current_ip
        write_due = ip_changed or self._write_due(snapshot, now)
        refreshed = replace(snapshot, last_active_at=now)
        if ip_changed:
            location = await self.geo.resolve(current_ip)
            refreshed = replace(
                refreshed,
                ip_last_seen=current_ip,
                ip_last_changed_at=now,
                location=location,
                last_persisted_at=now,
            )
        elif write_due:
            refreshed = replace(refreshed, last_persisted_at=now)

        await self.repository.store_snapshot(
            token_hash, refreshed, self._cache_ttl(snapshot.refresh_token_expiry, now)
        )

        if ip_changed:
            session = self.repository.record_ip_change(
                snapshot.session_id, current_ip, now, refreshed.location
            )
            logger.info(
                "session_ip_changed",
                session_id=snapshot.session_id,
                previous_ip=snapshot.ip_last_seen,
                ip=current_ip,
            )
        elif write_due:
            session = self.repository.touch(snapshot.session_id, now)
        else:
            return snapshot

        if session is None or not session.is_active:
            # cache entry outlived a termination it never heard about
            await self.repository.evict_snapshot(token_hash)
            logger.warning("stale_session_cache_entry", session_id=snapshot.session_id)
            return None
        return snapshot

    def _write_due(self, snapshot: SessionSnapshot, now: datetime) -> bool:
        if snapshot.last_persisted_at is None:
            return True
        elapsed = (now - snapshot.last_persisted_at).total_seconds()
        return elapsed >= self.settings.activity_write_interval_seconds

    async def _terminate(self, session_id: str, status: SessionStatus) -> Optional[Session]:
        session = self.repository.set_status(session_id, status)
        if session is None:
            return None
        await self.repository.evict_snapshot(session.refresh_token_hash)
        logger.info("session_terminated", session_id=session_id, status=status.value)
        return session

    async def revoke(self, session_id: str) -> Optional[Session]:
        return await self._terminate(session_id, SessionStatus.REVOKED)

    async def deactivate(self, session_id: str) -> Optional[Session]:
        return await self._terminate(session_id, SessionStatus.INACTIVE)

    def mark_suspicious(self, session_id: str, flag: bool = True) -> Optional[Session]:
        session = self.repository.set_suspicious(session_id, flag)
        if session is not None:
            logger.info("session_suspicious_flag", session_id=session_id, flag=flag)
        return session

    def get(self, session_id: str) -> Optional[Session]:
        return self.repository.get_session(session_id)

    def list_sessions(
        self, user_id: str, statuses: Optional[Iterable[SessionStatus]] = None
    ) -> List[Session]:
        return self.repository.list_sessions(user_id, statuses)

    def list_active(self, user_id: str) -> List[Session]:
        now = self._now()
        return [
            s
            for s in self.repository.list_sessions(user_id, [SessionStatus.ACTIVE])
            if s.refresh_token_expiry > now
        ]

    def purge_expired(self) -> int:
        removed = self.repository.purge_expired(self._now())
        if removed:
            logger.info("expired_sessions_purged", count=removed)
        return removed
