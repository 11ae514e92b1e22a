"""Access/revoke tokens and request client extraction."""

from __future__ import annotations

from datetime import timedelta
from types import SimpleNamespace

import pytest

from conftest import DESKTOP_UA, PHONE_UA
from sentinel.config import Settings
from sentinel.service import client as client_module
from sentinel.service.client import (
    UNKNOWN_IP,
    client_context,
    client_ip,
    compute_fingerprint,
    device_name_from_user_agent,
)
from sentinel.service.tokens import TokenService, generate_refresh_token, hash_token


class TestTokenService:
    def test_access_token_claims(self, settings, clock, user):
        tokens = TokenService(settings, clock=clock)
        claims = tokens.decode_access_token(tokens.issue_access_token(user, "session-1"))

        assert claims["sub"] == user.id
        assert claims["sid"] == "session-1"
        assert claims["role"] == "user"
        assert claims["exp"] - claims["iat"] == settings.access_token_ttl_minutes * 60

    def test_legacy_token_has_no_session_id(self, settings, clock, user):
        tokens = TokenService(settings, clock=clock)
        claims = tokens.decode_access_token(tokens.issue_access_token(user, None))
        assert "sid" not in claims

    def test_expiry_allows_small_skew(self, settings, clock, user):
        tokens = TokenService(settings, clock=clock)
        token = tokens.issue_access_token(user, "session-1")

        clock.advance(minutes=settings.access_token_ttl_minutes, seconds=10)
        assert tokens.decode_access_token(token) is not None
        clock.advance(seconds=30)
        assert tokens.decode_access_token(token) is None

    def test_foreign_signature_rejected(self, settings, clock, user):
        other = TokenService(Settings(jwt_secret="someone-else", test_mode=True), clock=clock)
        token = other.issue_access_token(user, "session-1")
        assert TokenService(settings, clock=clock).decode_access_token(token) is None

    def test_tampered_payload_rejected(self, settings, clock, user):
        tokens = TokenService(settings, clock=clock)
        header, payload, signature = tokens.issue_access_token(user, "s").split(".")
        forged = tokens.encode({"sub": "someone-else"}).split(".")[1]
        assert tokens.decode(f"{header}.{forged}.{signature}") is None

    def test_token_types_do_not_cross(self, settings, clock, user):
        tokens = TokenService(settings, clock=clock)
        revoke = tokens.issue_revoke_token(user.id, "session-1")
        access = tokens.issue_access_token(user, "session-1")

        assert tokens.decode_access_token(revoke) is None
        assert tokens.decode_revoke_token(access) is None
        assert tokens.decode_revoke_token(revoke)["sid"] == "session-1"

    def test_revoke_link_lifetime(self, settings, clock, user):
        tokens = TokenService(settings, clock=clock)
        revoke = tokens.issue_revoke_token(user.id, "session-1")
        clock.advance(minutes=settings.revoke_link_ttl_minutes + 1)
        assert tokens.decode_revoke_token(revoke) is None

    def test_refresh_tokens_are_random_and_hashable(self):
        first, second = generate_refresh_token(), generate_refresh_token()
        assert first != second
        assert len(first) == 64
        assert hash_token(first) == hash_token(first)
        assert hash_token(first) != first


class TestClientContext:
    def test_forwarded_for_first_hop_wins(self):
        headers = {"x-forwarded-for": "203.0.113.5, 10.0.0.1", "x-real-ip": "10.0.0.2"}
        assert client_ip(headers, "10.0.0.3") == "203.0.113.5"

    def test_real_ip_then_peer(self):
        assert client_ip({"x-real-ip": " 203.0.113.6 "}, "10.0.0.3") == "203.0.113.6"
        assert client_ip({}, "10.0.0.3") == "10.0.0.3"
        assert client_ip({}) == UNKNOWN_IP

    def test_fingerprint_depends_on_agent_and_language(self):
        assert compute_fingerprint(DESKTOP_UA, "en-US") == compute_fingerprint(DESKTOP_UA, "en-US")
        assert compute_fingerprint(DESKTOP_UA, "en-US") != compute_fingerprint(DESKTOP_UA, "de-DE")
        assert compute_fingerprint(DESKTOP_UA, "en-US") != compute_fingerprint(PHONE_UA, "en-US")

    def test_client_context_from_headers(self):
        context = client_context(
            {"user-agent": DESKTOP_UA, "accept-language": "en-US", "x-forwarded-for": "203.0.113.5"}
        )
        assert context.ip == "203.0.113.5"
        assert context.fingerprint == compute_fingerprint(DESKTOP_UA, "en-US")
        assert context.device_name == "Apple Mac"

    @pytest.mark.parametrize(
        "user_agent, expected",
        [
            (
                "Mozilla/5.0 (Linux; U; Android 4.0.4; en-gb; GT-I9300 Build/IMM76D) "
                "AppleWebKit/534.30 (KHTML, like Gecko) Version/4.0 Mobile Safari/534.30",
                "Samsung GT-I9300",
            ),
            (PHONE_UA, "Apple iPhone"),
            ("Mozilla/5.0 (Windows NT 10.0; Win64; x64)", "Windows PC"),
            ("Mozilla/5.0 (X11; CrOS x86_64 14541.0.0)", "Chromebook"),
            ("Mozilla/5.0 (X11; Linux x86_64)", "Linux Machine"),
            ("", "Unknown Device"),
            ("curl/8.0", "Unknown Device"),
        ],
    )
    def test_device_names(self, user_agent, expected):
        assert device_name_from_user_agent(user_agent) == expected

    @pytest.mark.parametrize(
        "brand, model, mobile, tablet, os_family, os_version, expected",
        [
            ("Xiaomi", "Redmi Note 12", True, False, "Android", "13", "Xiaomi Redmi Note 12"),
            (None, None, True, False, "Android", "13", "Mobile Device"),
            ("Generic", None, False, True, "Android", "12", "Tablet Device"),
            (None, None, False, False, "iOS", "17", "Apple iPhone / iPad"),
            (None, None, False, False, "FreeBSD", "14", "FreeBSD 14"),
            ("Other", "Other", False, False, "Other", "", "Unknown Device"),
        ],
    )
    def test_device_name_fallbacks(
        self, monkeypatch, brand, model, mobile, tablet, os_family, os_version, expected
    ):
        parsed = SimpleNamespace(
            device=SimpleNamespace(brand=brand, model=model),
            os=SimpleNamespace(family=os_family, version_string=os_version),
            is_mobile=mobile,
            is_tablet=tablet,
        )
        monkeypatch.setattr(client_module, "parse_user_agent", lambda ua: parsed)
        assert device_name_from_user_agent("Mozilla/5.0") == expected
