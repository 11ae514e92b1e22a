from __future__ import annotations

import json
from contextlib import contextmanager
from typing import Iterator, Optional

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import RedisError

from sentinel.storage.errors import CacheUnavailable
from sentinel.storage.models import Challenge, GeoLocation, SessionSnapshot

# First INCR in a window sets the expiry; later increments leave it alone so the
# window does not slide forward on every attempt.
_INCR_WITH_EXPIRY_SCRIPT = """
local count = redis.call('INCR', KEYS[1])
if count == 1 then
  redis.call('EXPIRE', KEYS[1], ARGV[1])
end
return count
"""

# Delete the challenge only if it still holds the code that was verified, so two
# concurrent verifications cannot both consume it.
_CONSUME_CHALLENGE_SCRIPT = """
local raw = redis.call('GET', KEYS[1])
if not raw then
  return 0
end
local data = cjson.decode(raw)
if data['code_hash'] == ARGV[1] then
  redis.call('DEL', KEYS[1])
  return 1
end
return 0
"""


def _session_key(token_hash: str) -> str:
    return f"refresh:{token_hash}"


def _challenge_key(identity: str) -> str:
    return f"otp:{identity}"


def _geo_key(ip: str) -> str:
    return f"geo:{ip}"


@contextmanager
def _translate_errors(operation: str) -> Iterator[None]:
    try:
        yield
    except RedisError as exc:
        raise CacheUnavailable(f"redis {operation} failed: {exc}") from exc


def _ttl(ttl_seconds: float) -> int:
    """Redis rejects zero or negative expiries; clamp to one second."""
    return max(1, int(ttl_seconds))


class RedisCache:
    """Async Redis wrapper for session snapshots, challenges, geo and rate counters."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._incr_with_expiry = self.client.register_script(_INCR_WITH_EXPIRY_SCRIPT)
        self._consume_challenge = self.client.register_script(_CONSUME_CHALLENGE_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async client is not bound to a temporary loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def get_session_snapshot(self, token_hash: str) -> Optional[SessionSnapshot]:
        with _translate_errors("get"):
            raw = await self.client.get(_session_key(token_hash))
        return SessionSnapshot.from_json(raw) if raw else None

    async def set_session_snapshot(
        self, token_hash: str, snapshot: SessionSnapshot, ttl_seconds: int
    ) -> None:
        with _translate_errors("set"):
            await self.client.set(
                _session_key(token_hash), snapshot.to_json(), ex=_ttl(ttl_seconds)
            )

    async def delete_session_snapshot(self, token_hash: str) -> None:
        with _translate_errors("delete"):
            await self.client.delete(_session_key(token_hash))

    async def get_challenge(self, identity: str) -> Optional[Challenge]:
        with _translate_errors("get"):
            raw = await self.client.get(_challenge_key(identity))
        return Challenge.from_json(raw) if raw else None

    async def set_challenge(
        self, identity: str, challenge: Challenge, ttl_seconds: int
    ) -> None:
        with _translate_errors("set"):
            await self.client.set(
                _challenge_key(identity), challenge.to_json(), ex=_ttl(ttl_seconds)
            )

    async def consume_challenge(self, identity: str, code_hash: str) -> bool:
        with _translate_errors("eval"):
            result = await self._consume_challenge(
                keys=[_challenge_key(identity)], args=[code_hash]
            )
        return bool(int(result or 0))

    async def get_geo(self, ip: str) -> Optional[GeoLocation]:
        with _translate_errors("get"):
            raw = await self.client.get(_geo_key(ip))
        return GeoLocation.from_dict(json.loads(raw)) if raw else None

    async def set_geo(self, ip: str, location: GeoLocation, ttl_seconds: int) -> None:
        with _translate_errors("set"):
            await self.client.set(
                _geo_key(ip), json.dumps(location.to_dict()), ex=_ttl(ttl_seconds)
            )

    async def incr(self, key: str, window_seconds: int) -> int:
        with _translate_errors("eval"):
            result = await self._incr_with_expiry(keys=[key], args=[_ttl(window_seconds)])
        return int(result)

    async def close(self) -> None:
        await self.client.aclose()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous Redis client internally to avoid event loop binding issues
    when every test runs in its own ``asyncio.run``, but exposes the same async
    methods as ``RedisCache``.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self._sync_client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._incr_with_expiry = self._sync_client.register_script(_INCR_WITH_EXPIRY_SCRIPT)
        self._consume_challenge = self._sync_client.register_script(
            _CONSUME_CHALLENGE_SCRIPT
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity."""
        self._sync_client.ping()

    async def get_session_snapshot(self, token_hash: str) -> Optional[SessionSnapshot]:
        with _translate_errors("get"):
            raw = self._sync_client.get(_session_key(token_hash))
        return SessionSnapshot.from_json(raw) if raw else None

    async def set_session_snapshot(
        self, token_hash: str, snapshot: SessionSnapshot, ttl_seconds: int
    ) -> None:
        with _translate_errors("set"):
            self._sync_client.set(
                _session_key(token_hash), snapshot.to_json(), ex=_ttl(ttl_seconds)
            )

    async def delete_session_snapshot(self, token_hash: str) -> None:
        with _translate_errors("delete"):
            self._sync_client.delete(_session_key(token_hash))

    async def get_challenge(self, identity: str) -> Optional[Challenge]:
        with _translate_errors("get"):
            raw = self._sync_client.get(_challenge_key(identity))
        return Challenge.from_json(raw) if raw else None

    async def set_challenge(
        self, identity: str, challenge: Challenge, ttl_seconds: int
    ) -> None:
        with _translate_errors("set"):
            self._sync_client.set(
                _challenge_key(identity), challenge.to_json(), ex=_ttl(ttl_seconds)
            )

    async def consume_challenge(self, identity: str, code_hash: str) -> bool:
        with _translate_errors("eval"):
            result = self._consume_challenge(keys=[_challenge_key(identity)], args=[code_hash])
        return bool(int(result or 0))

    async def get_geo(self, ip: str) -> Optional[GeoLocation]:
        with _translate_errors("get"):
            raw = self._sync_client.get(_geo_key(ip))
        return GeoLocation.from_dict(json.loads(raw)) if raw else None

    async def set_geo(self, ip: str, location: GeoLocation, ttl_seconds: int) -> None:
        with _translate_errors("set"):
            self._sync_client.set(
                _geo_key(ip), json.dumps(location.to_dict()), ex=_ttl(ttl_seconds)
            )

    async def incr(self, key: str, window_seconds: int) -> int:
        with _translate_errors("eval"):
            result = self._incr_with_expiry(keys=[key], args=[_ttl(window_seconds)])
        return int(result)

    async def close(self) -> None:
        self._sync_client.close()
