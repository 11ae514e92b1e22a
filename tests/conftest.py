import asyncio
import inspect
import os
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path
from types import SimpleNamespace

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="sentinel_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
# In-process cache; the Redis-backed cache is exercised only where a server is available
os.environ.setdefault("REDIS_URL", "")
os.environ.setdefault("COOKIE_SECURE", "false")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from sentinel.config import Settings  # noqa: E402
from sentinel.service.auth import AuthService  # noqa: E402
from sentinel.service.authenticator import RequestAuthenticator  # noqa: E402
from sentinel.service.challenge import ChallengeManager  # noqa: E402
from sentinel.service.client import ClientContext, compute_fingerprint  # noqa: E402
from sentinel.service.geo import StaticGeoResolver  # noqa: E402
from sentinel.service.risk import RiskEngine  # noqa: E402
from sentinel.service.runtime import reset_runtime_for_tests  # noqa: E402
from sentinel.service.sessions import SessionStore  # noqa: E402
from sentinel.service.tokens import TokenService  # noqa: E402
from sentinel.service.travel import TravelFingerprintDetector  # noqa: E402
from sentinel.storage.errors import CacheUnavailable  # noqa: E402
from sentinel.storage.memory import MemoryStore  # noqa: E402
from sentinel.storage.memory_cache import MemoryCache  # noqa: E402
from sentinel.storage.models import GeoLocation  # noqa: E402
from sentinel.storage.repository import SessionRepository  # noqa: E402

NEW_YORK = GeoLocation(city="New York", country="US", lat=40.7128, lon=-74.0060)
LONDON = GeoLocation(city="London", country="GB", lat=51.5074, lon=-0.1278)
BOSTON = GeoLocation(city="Boston", country="US", lat=42.3601, lon=-71.0589)

NY_IP = "198.51.100.10"
LONDON_IP = "198.51.100.20"
BOSTON_IP = "198.51.100.30"

DESKTOP_UA = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Version/17.0 Safari/605.1.15"
)
PHONE_UA = (
    "Mozilla/5.0 (iPhone; CPU iPhone OS 17_0 like Mac OS X) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Version/17.0 Mobile/15E148 Safari/604.1"
)


@pytest.fixture(autouse=True)
def reset_runtime_state(tmp_path, monkeypatch):
    # fresh durable state for every test
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path / "shared"))
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")


class FakeClock:
    """Deterministic clock passed as ``clock=`` to services and the memory cache."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 5, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta) -> datetime:
        self.now = self.now + timedelta(**delta)
        return self.now


class RecordingNotifier:
    def __init__(self) -> None:
        self.sent: list[tuple[str, str, str]] = []

    def send(self, address: str, subject: str, body: str) -> None:
        self.sent.append((address, subject, body))

    def subjects(self) -> list[str]:
        return [subject for _, subject, _ in self.sent]

    def last_body(self, subject_fragment: str) -> str:
        for _, subject, body in reversed(self.sent):
            if subject_fragment in subject:
                return body
        raise AssertionError(f"no message matching {subject_fragment!r}")


class CountingMemoryStore(MemoryStore):
    """MemoryStore that counts hot-path durable writes."""

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.touch_calls = 0
        self.ip_change_calls = 0

    def touch_session(self, session_id, at):
        self.touch_calls += 1
        return super().touch_session(session_id, at)

    def record_ip_change(self, session_id, ip, at, location):
        self.ip_change_calls += 1
        return super().record_ip_change(session_id, ip, at, location)


class UnavailableCache:
    """FastStore and RateCounter whose backend is permanently down."""

    async def _fail(self, *args, **kwargs):
        raise CacheUnavailable("connection refused")

    get_session_snapshot = _fail
    set_session_snapshot = _fail
    delete_session_snapshot = _fail
    get_challenge = _fail
    set_challenge = _fail
    consume_challenge = _fail
    get_geo = _fail
    set_geo = _fail
    incr = _fail


def make_client(ip: str = NY_IP, user_agent: str = DESKTOP_UA, language: str = "en-US") -> ClientContext:
    return ClientContext(
        ip=ip, user_agent=user_agent, fingerprint=compute_fingerprint(user_agent, language)
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    return Settings(jwt_secret="unit-test-secret", test_mode=True)


@pytest.fixture
def store(tmp_path):
    return CountingMemoryStore(str(tmp_path / "store"))


@pytest.fixture
def cache(clock):
    return MemoryCache(clock=clock)


@pytest.fixture
def geo():
    return StaticGeoResolver({NY_IP: NEW_YORK, LONDON_IP: LONDON, BOSTON_IP: BOSTON})


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def repository(store, cache):
    return SessionRepository(store, cache)


@pytest.fixture
def sessions(repository, geo, settings, clock):
    return SessionStore(repository, geo, settings, clock=clock)


@pytest.fixture
def user(store):
    return store.create_user("alice@example.com", "Alice")


def build_services(store, cache, geo, notifier, settings, clock) -> SimpleNamespace:
    """Wire the engine the way the runtime does, around test doubles."""
    repository = SessionRepository(store, cache)
    tokens = TokenService(settings, clock=clock)
    sessions = SessionStore(repository, geo, settings, clock=clock)
    risk = RiskEngine(repository, store, cache, geo, notifier, settings, clock=clock)
    challenges = ChallengeManager(cache, store, notifier, settings, clock=clock)
    detector = TravelFingerprintDetector(sessions, store, geo, notifier, settings, clock=clock)
    authenticator = RequestAuthenticator(
        tokens, store, sessions, detector, geo, cache, settings, clock=clock
    )
    auth = AuthService(
        store,
        sessions,
        risk,
        challenges,
        detector,
        tokens,
        geo,
        notifier,
        settings,
        clock=clock,
    )
    return SimpleNamespace(
        store=store,
        cache=cache,
        geo=geo,
        notifier=notifier,
        settings=settings,
        clock=clock,
        repository=repository,
        tokens=tokens,
        sessions=sessions,
        risk=risk,
        challenges=challenges,
        detector=detector,
        authenticator=authenticator,
        auth=auth,
    )


@pytest.fixture
def services(store, cache, geo, notifier, settings, clock):
    return build_services(store, cache, geo, notifier, settings, clock)
