from __future__ import annotations

import json
import threading
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional, Tuple

from sentinel.storage.models import Challenge, GeoLocation, SessionSnapshot, utcnow


class MemoryCache:
    """In-process stand-in for ``RedisCache`` with the same key layout and TTL rules.

    Used when Redis is disabled in development/test mode and as the deterministic
    fake in unit tests (pass ``clock`` to control expiry). The lock only guards the
    dict operations themselves.
    """

    def __init__(self, *, clock: Optional[Callable[[], datetime]] = None) -> None:
        self._clock = clock or utcnow
        self._values: Dict[str, Tuple[str, datetime]] = {}
        self._lock = threading.Lock()

    def _now(self) -> datetime:
        return self._clock()

    def _get(self, key: str) -> Optional[str]:
        with self._lock:
            entry = self._values.get(key)
            if not entry:
                return None
            value, expires_at = entry
            if expires_at <= self._now():
                self._values.pop(key, None)
                return None
            return value

    def _set(self, key: str, value: str, ttl_seconds: float) -> None:
        expires_at = self._now() + timedelta(seconds=max(1, int(ttl_seconds)))
        with self._lock:
            self._values[key] = (value, expires_at)

    def _delete(self, key: str) -> None:
        with self._lock:
            self._values.pop(key, None)

    def ttl(self, key: str) -> Optional[float]:
        """Seconds left on ``key``, or None when absent (mirrors Redis TTL for tests)."""
        with self._lock:
            entry = self._values.get(key)
        if not entry:
            return None
        remaining = (entry[1] - self._now()).total_seconds()
        return remaining if remaining > 0 else None

    async def get_session_snapshot(self, token_hash: str) -> Optional[SessionSnapshot]:
        raw = self._get(f"refresh:{token_hash}")
        return SessionSnapshot.from_json(raw) if raw else None

    async def set_session_snapshot(
        self, token_hash: str, snapshot: SessionSnapshot, ttl_seconds: int
    ) -> None:
        self._set(f"refresh:{token_hash}", snapshot.to_json(), ttl_seconds)

    async def delete_session_snapshot(self, token_hash: str) -> None:
        self._delete(f"refresh:{token_hash}")

    async def get_challenge(self, identity: str) -> Optional[Challenge]:
        raw = self._get(f"otp:{identity}")
        return Challenge.from_json(raw) if raw else None

    async def set_challenge(
        self, identity: str, challenge: Challenge, ttl_seconds: int
    ) -> None:
        self._set(f"otp:{identity}", challenge.to_json(), ttl_seconds)

    async def consume_challenge(self, identity: str, code_hash: str) -> bool:
        key = f"otp:{identity}"
        with self._lock:
            entry = self._values.get(key)
            if not entry or entry[1] <= self._now():
                return False
            if json.loads(entry[0]).get("code_hash") != code_hash:
                return False
            self._values.pop(key, None)
            return True

    async def get_geo(self, ip: str) -> Optional[GeoLocation]:
        raw = self._get(f"geo:{ip}")
        return GeoLocation.from_dict(json.loads(raw)) if raw else None

    async def set_geo(self, ip: str, location: GeoLocation, ttl_seconds: int) -> None:
        self._set(f"geo:{ip}", json.dumps(location.to_dict()), ttl_seconds)

    async def incr(self, key: str, window_seconds: int) -> int:
        now = self._now()
        with self._lock:
            entry = self._values.get(key)
            if entry and entry[1] > now:
                count = int(entry[0]) + 1
                self._values[key] = (str(count), entry[1])
            else:
                count = 1
                self._values[key] = (
                    str(count),
                    now + timedelta(seconds=max(1, int(window_seconds))),
                )
            return count

    async def close(self) -> None:
        with self._lock:
            self._values.clear()
