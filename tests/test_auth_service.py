"""AuthService flows: registration, login with challenges, renewal and admin controls."""

from __future__ import annotations

import re

import pytest

from conftest import LONDON_IP, NY_IP, build_services, make_client
from sentinel.config import Settings
from sentinel.service.errors import (
    ChallengeRequiredError,
    ConflictError,
    ForbiddenError,
    InvalidCredentialsError,
    NotFoundError,
    SessionCapExceededError,
    SessionInvalidOrExpiredError,
    ValidationError,
)
from sentinel.storage.models import SessionStatus

PASSWORD = "correct horse battery"


def _latest_code(notifier) -> str:
    body = notifier.last_body("Verify Your Sentinel Login")
    return body.split("verification code is: ")[1].split()[0]


async def _verified_user(services, email="bob@example.com"):
    user = await services.auth.register(email, PASSWORD, "Bob", make_client())
    return services.store.set_user_verified(user.id, True)


class TestRegister:
    async def test_register_sends_code(self, services, notifier):
        user = await services.auth.register("Bob@Example.com ", PASSWORD, "Bob", make_client())

        assert user.email == "bob@example.com"
        assert user.role == "user"
        assert not user.is_verified
        assert notifier.subjects() == ["Verify Your Sentinel Login"]
        assert services.auth.verify_password(user.id, PASSWORD)
        assert not services.auth.verify_password(user.id, "wrong password")

    async def test_duplicate_email(self, services):
        await services.auth.register("bob@example.com", PASSWORD, None, make_client())
        with pytest.raises(ConflictError):
            await services.auth.register("BOB@example.com", PASSWORD, None, make_client())

    async def test_rejects_weak_input(self, services):
        with pytest.raises(ValidationError):
            await services.auth.register("not-an-email", PASSWORD, None, make_client())
        with pytest.raises(ValidationError):
            await services.auth.register("bob@example.com", "short", None, make_client())

    async def test_super_admin_email_is_promoted(self, store, cache, geo, notifier, clock):
        settings = Settings(
            jwt_secret="unit-test-secret", test_mode=True, super_admin_email="root@example.com"
        )
        services = build_services(store, cache, geo, notifier, settings, clock)

        root = await services.auth.register("root@example.com", PASSWORD, None, make_client())

        assert root.role == "super_admin"


class TestLogin:
    async def test_unverified_user_must_complete_challenge(self, services, notifier):
        client = make_client()
        await services.auth.register("bob@example.com", PASSWORD, "Bob", client)

        with pytest.raises(ChallengeRequiredError):
            await services.auth.login("bob@example.com", PASSWORD, client)

        result = await services.auth.login(
            "bob@example.com", PASSWORD, client, otp=_latest_code(notifier)
        )

        assert result.user.is_verified
        assert result.session.status == SessionStatus.ACTIVE
        claims = services.tokens.decode_access_token(result.access_token)
        assert claims["sid"] == result.session.id
        assert claims["sub"] == result.user.id

    async def test_known_device_logs_in_without_challenge(self, services, notifier):
        client = make_client()
        await services.auth.register("bob@example.com", PASSWORD, "Bob", client)
        with pytest.raises(ChallengeRequiredError):
            await services.auth.login("bob@example.com", PASSWORD, client)
        await services.auth.login("bob@example.com", PASSWORD, client, otp=_latest_code(notifier))
        sent = len(notifier.sent)

        result = await services.auth.login("bob@example.com", PASSWORD, client)

        assert result.refresh_token
        assert len(notifier.sent) == sent

    async def test_impossible_travel_requires_challenge(self, services, clock, notifier):
        await _verified_user(services)
        await services.auth.login("bob@example.com", PASSWORD, make_client(ip=NY_IP))
        clock.advance(hours=1)

        with pytest.raises(ChallengeRequiredError):
            await services.auth.login("bob@example.com", PASSWORD, make_client(ip=LONDON_IP))

        assert "Security Alert: Suspicious Login Detected" in notifier.subjects()
        assert notifier.subjects()[-1] == "Verify Your Sentinel Login"

    async def test_bad_credentials(self, services):
        await _verified_user(services)
        with pytest.raises(InvalidCredentialsError):
            await services.auth.login("bob@example.com", "wrong password", make_client())
        with pytest.raises(InvalidCredentialsError):
            await services.auth.login("nobody@example.com", PASSWORD, make_client())

    async def test_session_cap_mails_revoke_links(self, services, notifier, store):
        user = await _verified_user(services)
        client = make_client()
        for _ in range(services.settings.max_active_sessions):
            await services.auth.login("bob@example.com", PASSWORD, client)

        with pytest.raises(SessionCapExceededError):
            await services.auth.login("bob@example.com", PASSWORD, client)

        body = notifier.last_body("Session Limit Reached")
        tokens = re.findall(r"token=([\w\-\.]+)", body)
        assert len(tokens) == services.settings.max_active_sessions

        await services.auth.revoke_via_link(tokens[0])

        assert services.sessions.count_active(user.id) == services.settings.max_active_sessions - 1
        await services.auth.login("bob@example.com", PASSWORD, client)

    async def test_revoke_link_rejects_garbage(self, services):
        with pytest.raises(ValidationError):
            await services.auth.revoke_via_link("garbage")

    async def test_logout_deactivates(self, services, store):
        await _verified_user(services)
        result = await services.auth.login("bob@example.com", PASSWORD, make_client())

        await services.auth.logout(result.session.id)

        assert store.get_session(result.session.id).status == SessionStatus.INACTIVE


class TestRenewAccessToken:
    async def test_renews_for_healthy_session(self, services):
        await _verified_user(services)
        client = make_client()
        result = await services.auth.login("bob@example.com", PASSWORD, client)

        user, session_id, access = await services.auth.renew_access_token(
            result.refresh_token, client
        )

        assert user.id == result.user.id
        assert session_id == result.session.id
        assert services.tokens.decode_access_token(access)["sid"] == session_id

    async def test_missing_or_unknown_refresh_token(self, services):
        with pytest.raises(SessionInvalidOrExpiredError):
            await services.auth.renew_access_token(None, make_client())
        with pytest.raises(SessionInvalidOrExpiredError):
            await services.auth.renew_access_token("unknown", make_client())

    async def test_legacy_session_must_log_in(self, services):
        user = await _verified_user(services)
        client = make_client()
        legacy = services.tokens.issue_access_token(user, None)
        migrated = await services.authenticator.authenticate(legacy, None, client)

        with pytest.raises(SessionInvalidOrExpiredError):
            await services.auth.renew_access_token(migrated.refresh_token, client)

    async def test_suspicious_session_must_log_in(self, services):
        await _verified_user(services)
        client = make_client()
        result = await services.auth.login("bob@example.com", PASSWORD, client)
        services.auth.mark_session_suspicious(result.session.id)

        with pytest.raises(SessionInvalidOrExpiredError):
            await services.auth.renew_access_token(result.refresh_token, client)

    async def test_high_risk_user_must_log_in(self, services, store):
        user = await _verified_user(services)
        client = make_client()
        result = await services.auth.login("bob@example.com", PASSWORD, client)
        store.increment_risk_score(user.id, services.settings.max_risk_score)

        with pytest.raises(SessionInvalidOrExpiredError):
            await services.auth.renew_access_token(result.refresh_token, client)

    async def test_mark_unknown_session(self, services):
        with pytest.raises(NotFoundError):
            services.auth.mark_session_suspicious("missing")


class TestAdminControls:
    async def _admin(self, services, role="admin"):
        admin = services.store.create_user("admin@example.com", "Admin", role=role)
        session = await services.sessions.create_session(
            admin.id,
            ip=NY_IP,
            user_agent="admin-console",
            fingerprint="admin-fp",
            geo=await services.geo.resolve(NY_IP),
            raw_refresh_token="admin-refresh",
        )
        return admin, session

    async def test_cannot_revoke_own_session(self, services):
        admin, session = await self._admin(services)
        with pytest.raises(ForbiddenError):
            await services.auth.revoke_session(admin, session.id, session.id)

    async def test_cannot_revoke_admin_sessions(self, services):
        admin, _ = await self._admin(services)
        other = services.store.create_user("ops@example.com", "Ops", role="admin")
        other_session = await services.sessions.create_session(
            other.id,
            ip=NY_IP,
            user_agent="ops",
            fingerprint="ops-fp",
            geo=await services.geo.resolve(NY_IP),
            raw_refresh_token="ops-refresh",
        )
        with pytest.raises(ForbiddenError):
            await services.auth.revoke_session(admin, None, other_session.id)
        with pytest.raises(ForbiddenError):
            await services.auth.revoke_all_user_sessions(other.id)

    async def test_revoke_user_session(self, services, store):
        admin, admin_session = await self._admin(services)
        await _verified_user(services)
        result = await services.auth.login("bob@example.com", PASSWORD, make_client())

        await services.auth.revoke_session(admin, admin_session.id, result.session.id)

        assert store.get_session(result.session.id).status == SessionStatus.REVOKED
        with pytest.raises(NotFoundError):
            await services.auth.revoke_session(admin, admin_session.id, "missing")

    async def test_revoke_all_user_sessions(self, services):
        user = await _verified_user(services)
        client = make_client()
        for _ in range(2):
            await services.auth.login("bob@example.com", PASSWORD, client)

        assert await services.auth.revoke_all_user_sessions(user.id) == 2
        assert services.sessions.count_active(user.id) == 0
        with pytest.raises(NotFoundError):
            await services.auth.revoke_all_user_sessions("missing")

    async def test_only_super_admin_changes_roles(self, services):
        admin, _ = await self._admin(services)
        user = await _verified_user(services)
        with pytest.raises(ForbiddenError):
            await services.auth.update_role(admin, user.id, "admin")

    async def test_role_change_revokes_sessions(self, services, store):
        root, _ = await self._admin(services, role="super_admin")
        user = await _verified_user(services)
        result = await services.auth.login("bob@example.com", PASSWORD, make_client())

        updated = await services.auth.update_role(root, user.id, "admin")

        assert updated.role == "admin"
        assert store.get_session(result.session.id).status == SessionStatus.REVOKED
        with pytest.raises(ValidationError):
            await services.auth.update_role(root, user.id, "owner")
        with pytest.raises(ForbiddenError):
            await services.auth.update_role(root, root.id, "user")

    async def test_list_users_orders_by_risk(self, services, store, user):
        risky = await _verified_user(services)
        store.increment_risk_score(risky.id, 40)
        await services.auth.login("bob@example.com", PASSWORD, make_client())

        overview = services.auth.list_users()

        assert [item.user.id for item in overview] == [risky.id, user.id]
        assert overview[0].active_sessions == 1
        assert overview[1].active_sessions == 0

    async def test_list_user_sessions_splits_by_status(self, services):
        user = await _verified_user(services)
        client = make_client()
        first = await services.auth.login("bob@example.com", PASSWORD, client)
        second = await services.auth.login("bob@example.com", PASSWORD, client)
        await services.auth.logout(first.session.id)

        active, retired = services.auth.list_user_sessions(user.id)

        assert [s.id for s in active] == [second.session.id]
        assert [s.id for s in retired] == [first.session.id]
        with pytest.raises(NotFoundError):
            services.auth.list_user_sessions("missing")
