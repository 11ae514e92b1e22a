from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, List, Optional

from sentinel.config import Settings
from sentinel.logging import get_logger, log_security_event
from sentinel.service import templates
from sentinel.service.client import ClientContext
from sentinel.service.geo import GeoLookup, travel_metrics
from sentinel.service.notifications import Notifier
from sentinel.storage.errors import CacheUnavailable
from sentinel.storage.models import GeoLocation, User, utcnow
from sentinel.storage.repository import DurableStore, RateCounter, SessionRepository

logger = get_logger(__name__)

SIGNAL_IP_VELOCITY = "ip_velocity"
SIGNAL_FINGERPRINT_VELOCITY = "fingerprint_velocity"
SIGNAL_NEW_DEVICE = "new_device"
SIGNAL_GEO_JUMP = "geo_jump"
SIGNAL_IMPOSSIBLE_TRAVEL = "impossible_travel"
SIGNAL_ELEVATED_USER = "elevated_user_risk"


@dataclass
class RiskAssessment:
    score: int
    requires_challenge: bool
    location: GeoLocation
    signals: List[str] = field(default_factory=list)


class RiskEngine:
    """Additive risk score for a login attempt.

    Only the velocity counters carry state between calls; everything else is read
    from the durable store. Signal names are for logs only and are never returned
    to the client.
    """

    def __init__(
        self,
        repository: SessionRepository,
        users: DurableStore,
        counter: RateCounter,
        geo: GeoLookup,
        notifier: Notifier,
        settings: Settings,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.repository = repository
        self.users = users
        self.counter = counter
        self.geo = geo
        self.notifier = notifier
        self.settings = settings
        self._clock = clock or utcnow

    async def _attempts(self, key: str, window_seconds: int) -> int:
        try:
            return await self.counter.incr(key, window_seconds)
        except CacheUnavailable as exc:
            logger.warning("cache_unavailable", operation="rate_counter", key=key, error=str(exc))
            return 0

    async def evaluate(self, user: User, client: ClientContext) -> RiskAssessment:
        s = self.settings
        now = self._clock()
        location = await self.geo.resolve(client.ip)
        score = 0
        signals: List[str] = []

        ip_attempts = await self._attempts(f"risk:ip:{client.ip}", s.ip_velocity_window_seconds)
        if ip_attempts > s.ip_velocity_threshold:
            score += s.risk_weight_ip_velocity
            signals.append(SIGNAL_IP_VELOCITY)

        fp_attempts = await self._attempts(
            f"risk:fingerprint:{client.fingerprint}", s.fingerprint_velocity_window_seconds
        )
        if fp_attempts > s.fingerprint_velocity_threshold:
            score += s.risk_weight_fingerprint_velocity
            signals.append(SIGNAL_FINGERPRINT_VELOCITY)

        if not self.repository.has_fingerprint(user.id, client.fingerprint):
            score += s.risk_weight_new_device
            signals.append(SIGNAL_NEW_DEVICE)

        last = self.repository.latest_session(user.id)
        if last is not None and last.ip_last_seen != client.ip:
            if last.location.country != location.country:
                score += s.risk_weight_geo_jump
                signals.append(SIGNAL_GEO_JUMP)

            metrics = travel_metrics(
                last.location, last.last_active_at or last.created_at, location, now
            )
            if metrics.speed_kmh > s.impossible_travel_kmh:
                score += s.risk_weight_impossible_travel
                signals.append(SIGNAL_IMPOSSIBLE_TRAVEL)
                log_security_event(
                    "impossible_travel_detected",
                    logger,
                    user_id=user.id,
                    phase="login",
                    distance_km=round(metrics.distance_km, 1),
                    speed_kmh=round(metrics.speed_kmh, 1),
                )
                subject, body = templates.suspicious_login(
                    user.name,
                    previous=last.location,
                    current=location,
                    distance_km=metrics.distance_km,
                    speed_kmh=metrics.speed_kmh,
                    ip=client.ip,
                    device=client.device_name,
                )
                self.notifier.send(user.email, subject, body)

        standing = self.users.get_user(user.id) or user
        if standing.risk_score > s.user_risk_score_ceiling:
            score += s.risk_weight_elevated_user
            signals.append(SIGNAL_ELEVATED_USER)

        requires_challenge = score > s.challenge_threshold
        logger.info(
            "risk_evaluated",
            user_id=user.id,
            score=score,
            signals=signals,
            requires_challenge=requires_challenge,
        )
        return RiskAssessment(
            score=score,
            requires_challenge=requires_challenge,
            location=location,
            signals=signals,
        )
