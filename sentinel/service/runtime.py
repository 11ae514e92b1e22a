from __future__ import annotations

import asyncio
import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from sentinel.config import get_settings, reset_settings_cache
from sentinel.logging import get_logger
from sentinel.service.auth import AuthService
from sentinel.service.authenticator import RequestAuthenticator
from sentinel.service.challenge import ChallengeManager
from sentinel.service.email import EmailService
from sentinel.service.geo import GeoResolver, StaticGeoResolver
from sentinel.service.notifications import NotificationDispatcher
from sentinel.service.risk import RiskEngine
from sentinel.service.sessions import SessionStore
from sentinel.service.tokens import TokenService
from sentinel.service.travel import TravelFingerprintDetector
from sentinel.storage.memory import MemoryStore
from sentinel.storage.memory_cache import MemoryCache
from sentinel.storage.postgres import PostgresStore
from sentinel.storage.redis_cache import RedisCache, SyncRedisCache
from sentinel.storage.repository import SessionRepository

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask password in URL for safe logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if parsed.password:
            netloc = parsed.hostname or ""
            if parsed.port:
                netloc = f"{netloc}:{parsed.port}"
            if parsed.username:
                netloc = f"{parsed.username}:***@{netloc}"
            else:
                netloc = f":***@{netloc}"
            return urlunparse(
                (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
            )
        return url
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store: Union[MemoryStore, PostgresStore] = (
                MemoryStore(fs_root=self.settings.shared_fs_root)
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
            logger.info("runtime_store_initialized", store_type=store_type)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache: Union[RedisCache, SyncRedisCache, MemoryCache, None] = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # Use sync Redis client in test mode to avoid event loop issues
                if self.settings.test_mode:
                    cache = SyncRedisCache(self.settings.redis_url)
                else:
                    cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        if not self.cache:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for session snapshots, challenges and risk counters; "
                    "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error

            fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=(
                    f"Running without Redis under {fallback_mode}; session snapshots, "
                    "challenges and risk counters are in-process only."
                ),
                mode=fallback_mode,
            )
            self.cache = MemoryCache()

        if self.settings.test_mode:
            self.geo: Union[GeoResolver, StaticGeoResolver] = StaticGeoResolver()
        else:
            self.geo = GeoResolver(
                api_url=self.settings.geo_api_url,
                timeout=self.settings.geo_timeout_seconds,
                cache=self.cache,
                cache_ttl_seconds=self.settings.geo_cache_ttl_seconds,
            )

        self.email = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
        )
        self.dispatcher = NotificationDispatcher(
            self.email.send_message,
            workers=self.settings.notifier_workers,
            queue_size=self.settings.notifier_queue_size,
            max_attempts=self.settings.notifier_max_attempts,
            backoff_seconds=self.settings.notifier_backoff_seconds,
            failure_log_size=self.settings.notifier_failure_log_size,
        )

        self.tokens = TokenService(self.settings)
        self.repository = SessionRepository(self.store, self.cache)
        self.sessions = SessionStore(self.repository, self.geo, self.settings)
        self.risk = RiskEngine(
            self.repository, self.store, self.cache, self.geo, self.dispatcher, self.settings
        )
        self.challenges = ChallengeManager(
            self.cache, self.store, self.dispatcher, self.settings
        )
        self.detector = TravelFingerprintDetector(
            self.sessions, self.store, self.geo, self.dispatcher, self.settings
        )
        self.authenticator = RequestAuthenticator(
            self.tokens,
            self.store,
            self.sessions,
            self.detector,
            self.geo,
            self.cache,
            self.settings,
        )
        self.auth = AuthService(
            self.store,
            self.sessions,
            self.risk,
            self.challenges,
            self.detector,
            self.tokens,
            self.geo,
            self.dispatcher,
            self.settings,
        )
        logger.info(
            "runtime_init_completed",
            cache_type=type(self.cache).__name__,
            geo_type=type(self.geo).__name__,
        )

    async def close(self) -> None:
        self.dispatcher.stop()
        if self.cache is not None:
            await self.cache.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking: a lock-free fast path for an existing runtime, and
    a second check under the lock before creating one.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None:
            runtime.dispatcher.stop(timeout=1.0)
            if runtime.cache is not None:
                try:
                    loop = asyncio.get_running_loop()
                    loop.create_task(runtime.cache.close())
                except RuntimeError:
                    asyncio.run(runtime.cache.close())

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
