from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_datetime(raw: Any) -> Optional[datetime]:
    if raw is None or raw == "":
        return None
    if isinstance(raw, datetime):
        value = raw
    else:
        value = datetime.fromisoformat(str(raw))
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


def _format_datetime(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


class SessionStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    REVOKED = "revoked"


ROLES = ("user", "admin", "super_admin")


@dataclass
class GeoLocation:
    city: str = "Unknown"
    country: str = "Unknown"
    lat: float = 0.0
    lon: float = 0.0

    @classmethod
    def fallback(cls) -> "GeoLocation":
        return cls()

    @property
    def is_fallback(self) -> bool:
        return self.city == "Unknown" and self.country == "Unknown"

    def to_dict(self) -> Dict[str, Any]:
        return {"city": self.city, "country": self.country, "lat": self.lat, "lon": self.lon}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "GeoLocation":
        if not data:
            return cls.fallback()
        return cls(
            city=data.get("city") or "Unknown",
            country=data.get("country") or "Unknown",
            lat=float(data.get("lat") or 0.0),
            lon=float(data.get("lon") or 0.0),
        )


@dataclass
class User:
    id: str
    email: str
    name: Optional[str] = None
    role: str = "user"
    is_verified: bool = False
    risk_score: int = 0
    created_at: datetime = field(default_factory=utcnow)

    @property
    def is_admin(self) -> bool:
        return self.role in {"admin", "super_admin"}


@dataclass
class Session:
    """One authenticated device/browser instance for one user."""

    id: str
    user_id: str
    refresh_token_hash: str
    device_fingerprint: str
    user_agent: str
    device_name: str
    ip_first_seen: str
    ip_last_seen: str
    refresh_token_expiry: datetime
    location: GeoLocation = field(default_factory=GeoLocation.fallback)
    ip_last_changed_at: Optional[datetime] = None
    ip_change_count: int = 0
    status: SessionStatus = SessionStatus.ACTIVE
    created_at: datetime = field(default_factory=utcnow)
    last_active_at: Optional[datetime] = None
    is_legacy: bool = False
    is_suspicious: bool = False
    expire_at: Optional[datetime] = None

    @classmethod
    def new(
        cls,
        user_id: str,
        refresh_token_hash: str,
        *,
        fingerprint: str,
        user_agent: str,
        device_name: str,
        ip: str,
        location: GeoLocation,
        refresh_token_expiry: datetime,
        is_legacy: bool = False,
        now: Optional[datetime] = None,
    ) -> "Session":
        created = now or utcnow()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            refresh_token_hash=refresh_token_hash,
            device_fingerprint=fingerprint,
            user_agent=user_agent,
            device_name=device_name,
            ip_first_seen=ip,
            ip_last_seen=ip,
            refresh_token_expiry=refresh_token_expiry,
            location=location,
            status=SessionStatus.ACTIVE,
            created_at=created,
            last_active_at=created,
            is_legacy=is_legacy,
        )

    @property
    def is_active(self) -> bool:
        return self.status == SessionStatus.ACTIVE


@dataclass
class SessionSnapshot:
    """Cache-resident subset of a Session needed on the validation hot path."""

    session_id: str
    fingerprint: str
    ip_last_seen: str
    refresh_token_expiry: datetime
    ip_last_changed_at: Optional[datetime] = None
    last_active_at: Optional[datetime] = None
    location: GeoLocation = field(default_factory=GeoLocation.fallback)
    # when lastActiveAt was last written to the durable store
    last_persisted_at: Optional[datetime] = None

    @classmethod
    def from_session(cls, session: Session) -> "SessionSnapshot":
        return cls(
            session_id=session.id,
            fingerprint=session.device_fingerprint,
            ip_last_seen=session.ip_last_seen,
            refresh_token_expiry=session.refresh_token_expiry,
            ip_last_changed_at=session.ip_last_changed_at,
            last_active_at=session.last_active_at,
            location=session.location,
            last_persisted_at=session.last_active_at,
        )

    def to_json(self) -> str:
        return json.dumps(
            {
                "session_id": self.session_id,
                "fingerprint": self.fingerprint,
                "ip_last_seen": self.ip_last_seen,
                "refresh_token_expiry": _format_datetime(self.refresh_token_expiry),
                "ip_last_changed_at": _format_datetime(self.ip_last_changed_at),
                "last_active_at": _format_datetime(self.last_active_at),
                "location": self.location.to_dict(),
                "last_persisted_at": _format_datetime(self.last_persisted_at),
            }
        )

    @classmethod
    def from_json(cls, raw: str) -> "SessionSnapshot":
        data = json.loads(raw)
        return cls(
            session_id=data["session_id"],
            fingerprint=data["fingerprint"],
            ip_last_seen=data["ip_last_seen"],
            refresh_token_expiry=_parse_datetime(data["refresh_token_expiry"]),
            ip_last_changed_at=_parse_datetime(data.get("ip_last_changed_at")),
            last_active_at=_parse_datetime(data.get("last_active_at")),
            location=GeoLocation.from_dict(data.get("location")),
            last_persisted_at=_parse_datetime(data.get("last_persisted_at")),
        )


@dataclass
class Challenge:
    """A pending one-time code, bound to the network and device that requested it."""

    code_hash: str
    ip: str
    fingerprint: str
    issued_at: datetime = field(default_factory=utcnow)

    def to_json(self) -> str:
        return json.dumps(
            {
                "code_hash": self.code_hash,
                "ip": self.ip,
                "fingerprint": self.fingerprint,
                "issued_at": _format_datetime(self.issued_at),
            }
        )

    @classmethod
    def from_json(cls, raw: str) -> "Challenge":
        data = json.loads(raw)
        return cls(
            code_hash=data["code_hash"],
            ip=data["ip"],
            fingerprint=data["fingerprint"],
            issued_at=_parse_datetime(data.get("issued_at")) or utcnow(),
        )


__all__ = [
    "Challenge",
    "GeoLocation",
    "ROLES",
    "Session",
    "SessionSnapshot",
    "SessionStatus",
    "User",
    "utcnow",
]
