from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Callable, Optional

from sentinel.config import Settings
from sentinel.logging import get_logger, log_security_event
from sentinel.service import templates
from sentinel.service.client import ClientContext
from sentinel.service.geo import GeoLookup, travel_metrics
from sentinel.service.notifications import Notifier
from sentinel.service.sessions import SessionStore
from sentinel.storage.models import SessionSnapshot, User, utcnow
from sentinel.storage.repository import DurableStore

logger = get_logger(__name__)


class Verdict(str, Enum):
    ALLOW = "allow"
    HIJACK = "hijack"


class TravelFingerprintDetector:
    """Per-request comparison of the caller against the session's last known signals.

    A fingerprint mismatch is a hard binding failure: the session is revoked and the
    request refused. Impossible travel between requests is only surfaced, by alert
    email and a bump to the user's standing risk.
    """

    def __init__(
        self,
        sessions: SessionStore,
        users: DurableStore,
        geo: GeoLookup,
        notifier: Notifier,
        settings: Settings,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.sessions = sessions
        self.users = users
        self.geo = geo
        self.notifier = notifier
        self.settings = settings
        self._clock = clock or utcnow

    async def inspect(
        self, user: User, snapshot: SessionSnapshot, client: ClientContext
    ) -> Verdict:
        if snapshot.fingerprint != client.fingerprint:
            await self._handle_hijack(user, snapshot, client)
            return Verdict.HIJACK
        if snapshot.ip_last_seen != client.ip:
            await self._check_travel(user, snapshot, client)
        return Verdict.ALLOW

    async def _handle_hijack(
        self, user: User, snapshot: SessionSnapshot, client: ClientContext
    ) -> None:
        log_security_event(
            "hijack_detected",
            logger,
            user_id=user.id,
            session_id=snapshot.session_id,
            ip=client.ip,
        )
        revoked = await self.sessions.revoke(snapshot.session_id)
        device = revoked.device_name if revoked else client.device_name
        subject, body = templates.session_hijack_blocked(
            user.name, ip=client.ip, device=device, location=snapshot.location
        )
        self.notifier.send(user.email, subject, body)

    async def _check_travel(
        self, user: User, snapshot: SessionSnapshot, client: ClientContext
    ) -> None:
        current = await self.geo.resolve(client.ip)
        metrics = travel_metrics(
            snapshot.location, snapshot.last_active_at, current, self._clock()
        )
        if metrics.speed_kmh <= self.settings.impossible_travel_kmh:
            return
        log_security_event(
            "impossible_travel_detected",
            logger,
            user_id=user.id,
            session_id=snapshot.session_id,
            phase="session",
            distance_km=round(metrics.distance_km, 1),
            speed_kmh=round(metrics.speed_kmh, 1),
        )
        self.users.increment_risk_score(user.id, self.settings.travel_risk_increment)
        subject, body = templates.suspicious_activity(
            user.name,
            previous=snapshot.location,
            current=current,
            distance_km=metrics.distance_km,
            speed_kmh=metrics.speed_kmh,
            ip=client.ip,
            device=client.device_name,
        )
        self.notifier.send(user.email, subject, body)
