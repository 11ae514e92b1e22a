from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Optional, Union

from sentinel.config import Settings
from sentinel.logging import get_logger
from sentinel.service.client import ClientContext
from sentinel.service.geo import GeoLookup
from sentinel.service.sessions import SessionStore
from sentinel.service.tokens import TokenService, generate_refresh_token, hash_token
from sentinel.service.travel import TravelFingerprintDetector, Verdict
from sentinel.storage.errors import CacheUnavailable
from sentinel.storage.models import User, utcnow
from sentinel.storage.repository import DurableStore, RateCounter

logger = get_logger(__name__)

LEGACY_USER_AGENT = "Legacy Client"


class RejectReason(str, Enum):
    NO_TOKEN = "no_token"
    INVALID_TOKEN = "invalid_token"
    USER_NOT_FOUND = "user_not_found"
    MISSING_REFRESH_TOKEN = "missing_refresh_token"
    SESSION_INVALID = "session_invalid"
    HIJACK_DETECTED = "hijack_detected"


@dataclass(frozen=True)
class Allowed:
    user: User
    session_id: str


@dataclass(frozen=True)
class Migrated:
    """A legacy token was upgraded; the caller must hand the new pair to the client."""

    user: User
    session_id: str
    access_token: str
    refresh_token: str
    access_max_age: int
    refresh_max_age: int


@dataclass(frozen=True)
class Rejected:
    reason: RejectReason


AuthResult = Union[Allowed, Migrated, Rejected]


class RequestAuthenticator:
    """Decides whether one inbound request is authenticated.

    Tokens without a session id predate session tracking; they are migrated onto a
    fresh legacy session once, with a risk penalty. Everything else must present a
    refresh token that validates against the session store and matches the device
    fingerprint the session was created with.
    """

    def __init__(
        self,
        tokens: TokenService,
        users: DurableStore,
        sessions: SessionStore,
        detector: TravelFingerprintDetector,
        geo: GeoLookup,
        counter: RateCounter,
        settings: Settings,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.tokens = tokens
        self.users = users
        self.sessions = sessions
        self.detector = detector
        self.geo = geo
        self.counter = counter
        self.settings = settings
        self._clock = clock or utcnow

    async def authenticate(
        self,
        access_token: Optional[str],
        refresh_token: Optional[str],
        client: ClientContext,
    ) -> AuthResult:
        if not access_token:
            return Rejected(RejectReason.NO_TOKEN)
        claims = self.tokens.decode_access_token(access_token)
        if claims is None:
            return Rejected(RejectReason.INVALID_TOKEN)
        user = self.users.get_user(claims["sub"])
        if user is None:
            return Rejected(RejectReason.USER_NOT_FOUND)

        session_id = claims.get("sid")
        if not session_id:
            return await self._migrate(user, access_token, claims, client)

        if not refresh_token:
            return Rejected(RejectReason.MISSING_REFRESH_TOKEN)
        snapshot = await self.sessions.validate_and_refresh(hash_token(refresh_token), client.ip)
        if snapshot is None:
            return Rejected(RejectReason.SESSION_INVALID)
        if snapshot.session_id != session_id:
            logger.warning(
                "session_token_mismatch",
                user_id=user.id,
                claimed_session_id=session_id,
                session_id=snapshot.session_id,
            )
            return Rejected(RejectReason.SESSION_INVALID)

        verdict = await self.detector.inspect(user, snapshot, client)
        if verdict is Verdict.HIJACK:
            return Rejected(RejectReason.HIJACK_DETECTED)
        return Allowed(user=user, session_id=session_id)

    async def _first_presentation(self, access_token: str, claims: dict) -> bool:
        remaining = int(float(claims["exp"]) - self._clock().timestamp())
        try:
            seen = await self.counter.incr(
                f"legacy:{hash_token(access_token)}", max(1, remaining)
            )
        except CacheUnavailable as exc:
            logger.warning("cache_unavailable", operation="legacy_guard", error=str(exc))
            return True
        return seen == 1

    async def _migrate(
        self, user: User, access_token: str, claims: dict, client: ClientContext
    ) -> AuthResult:
        if not await self._first_presentation(access_token, claims):
            logger.warning("legacy_token_replayed", user_id=user.id)
            return Rejected(RejectReason.INVALID_TOKEN)

        logger.warning("legacy_token_migrating", user_id=user.id, ip=client.ip)
        location = await self.geo.resolve(client.ip)
        raw_refresh = generate_refresh_token()
        # legacy sessions are never renewed silently
        access_ttl = timedelta(minutes=self.settings.legacy_access_token_ttl_minutes)
        refresh_ttl = timedelta(minutes=self.settings.legacy_refresh_token_ttl_minutes)
        session = await self.sessions.create_session(
            user.id,
            ip=client.ip,
            user_agent=client.user_agent or LEGACY_USER_AGENT,
            fingerprint=client.fingerprint,
            geo=location,
            raw_refresh_token=raw_refresh,
            is_legacy=True,
            refresh_ttl=refresh_ttl,
        )
        updated = self.users.increment_risk_score(
            user.id, self.settings.legacy_migration_penalty
        )
        user = updated or user
        return Migrated(
            user=user,
            session_id=session.id,
            access_token=self.tokens.issue_access_token(user, session.id, access_ttl),
            refresh_token=raw_refresh,
            access_max_age=int(access_ttl.total_seconds()),
            refresh_max_age=int(refresh_ttl.total_seconds()),
        )
