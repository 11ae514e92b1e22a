"""Per-request fingerprint binding and mid-session travel checks."""

from __future__ import annotations

from conftest import LONDON_IP, NY_IP, PHONE_UA, make_client
from sentinel.service.tokens import generate_refresh_token, hash_token
from sentinel.service.travel import Verdict
from sentinel.storage.models import SessionStatus


async def _login(services, user, client):
    raw = generate_refresh_token()
    session = await services.sessions.create_session(
        user.id,
        ip=client.ip,
        user_agent=client.user_agent,
        fingerprint=client.fingerprint,
        geo=await services.geo.resolve(client.ip),
        raw_refresh_token=raw,
    )
    return session, raw


class TestFingerprintBinding:
    async def test_mismatch_revokes_session(self, services, user, store, notifier):
        owner = make_client()
        session, raw = await _login(services, user, owner)
        snapshot = await services.sessions.validate_and_refresh(hash_token(raw), owner.ip)

        thief = make_client(user_agent=PHONE_UA)
        verdict = await services.detector.inspect(user, snapshot, thief)

        assert verdict is Verdict.HIJACK
        assert store.get_session(session.id).status == SessionStatus.REVOKED
        assert await services.sessions.validate_and_refresh(hash_token(raw), owner.ip) is None
        assert notifier.subjects() == ["Security Alert: Suspicious Session Blocked"]

    async def test_matching_device_same_ip_is_allowed(self, services, user, geo, notifier):
        client = make_client()
        _, raw = await _login(services, user, client)
        lookups = len(geo.lookups)
        snapshot = await services.sessions.validate_and_refresh(hash_token(raw), client.ip)

        assert await services.detector.inspect(user, snapshot, client) is Verdict.ALLOW
        assert len(geo.lookups) == lookups
        assert notifier.sent == []


class TestMidSessionTravel:
    async def test_impossible_travel_raises_risk_without_blocking(
        self, services, user, store, clock, notifier, settings
    ):
        _, raw = await _login(services, user, make_client(ip=NY_IP))
        clock.advance(hours=1)
        moved = make_client(ip=LONDON_IP)

        snapshot = await services.sessions.validate_and_refresh(hash_token(raw), moved.ip)
        verdict = await services.detector.inspect(user, snapshot, moved)

        assert verdict is Verdict.ALLOW
        assert store.get_user(user.id).risk_score == settings.travel_risk_increment
        assert notifier.subjects() == ["Security Alert: Suspicious Activity Detected"]

    async def test_plausible_travel_is_silent(self, services, user, store, clock, notifier):
        _, raw = await _login(services, user, make_client(ip=NY_IP))
        clock.advance(hours=20)
        moved = make_client(ip=LONDON_IP)

        snapshot = await services.sessions.validate_and_refresh(hash_token(raw), moved.ip)
        assert await services.detector.inspect(user, snapshot, moved) is Verdict.ALLOW

        assert store.get_user(user.id).risk_score == 0
        assert notifier.sent == []

    async def test_new_ip_in_same_city_is_silent(self, services, user, store, geo, clock, notifier):
        _, raw = await _login(services, user, make_client(ip=NY_IP))
        geo.table["198.51.100.11"] = geo.table[NY_IP]
        clock.advance(minutes=1)
        moved = make_client(ip="198.51.100.11")

        snapshot = await services.sessions.validate_and_refresh(hash_token(raw), moved.ip)
        assert await services.detector.inspect(user, snapshot, moved) is Verdict.ALLOW

        assert store.get_user(user.id).risk_score == 0
        assert notifier.sent == []
        assert store.ip_change_calls == 1
