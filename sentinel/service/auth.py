from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, List, Optional, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerifyMismatchError

from sentinel.config import Settings
from sentinel.logging import get_logger
from sentinel.service import templates
from sentinel.service.challenge import ChallengeManager
from sentinel.service.client import ClientContext
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
from sentinel.service.geo import GeoLookup
from sentinel.service.notifications import Notifier
from sentinel.service.risk import RiskEngine
from sentinel.service.sessions import SessionStore
from sentinel.service.tokens import TokenService, generate_refresh_token, hash_token
from sentinel.service.travel import TravelFingerprintDetector, Verdict
from sentinel.storage.errors import ConstraintViolation
from sentinel.storage.models import Session, SessionStatus, User
from sentinel.storage.repository import DurableStore

logger = get_logger(__name__)

MIN_PASSWORD_LENGTH = 8
ASSIGNABLE_ROLES = ("user", "admin")


@dataclass
class LoginResult:
    user: User
    session: Session
    access_token: str
    refresh_token: str


@dataclass
class UserOverview:
    user: User
    active_sessions: int


class AuthService:
    """Login, registration, token renewal and the admin session controls.

    The adaptive checks live in the engine components; this class sequences them
    for each externally visible operation.
    """

    def __init__(
        self,
        users: DurableStore,
        sessions: SessionStore,
        risk: RiskEngine,
        challenges: ChallengeManager,
        detector: TravelFingerprintDetector,
        tokens: TokenService,
        geo: GeoLookup,
        notifier: Notifier,
        settings: Settings,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.users = users
        self.sessions = sessions
        self.risk = risk
        self.challenges = challenges
        self.detector = detector
        self.tokens = tokens
        self.geo = geo
        self.notifier = notifier
        self.settings = settings
        self._clock = clock
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self.logger = logger

    def _now(self) -> datetime:
        """Timezone-aware UTC helper to avoid naive datetime usage."""

        return self._clock() if self._clock else datetime.now(timezone.utc)

    # -- credentials -------------------------------------------------------

    def _hash_password(self, password: str) -> Tuple[str, str]:
        algo = "argon2id"
        digest = self._pwd_hasher.hash(password)
        return digest, algo

    def verify_password(self, user_id: str, password: str) -> bool:
        """Verify a user's password against stored hash."""
        record = self.users.get_password_record(user_id)
        if not record:
            self.logger.warning("password_record_missing", user_id=user_id)
            return False
        stored_hash, algo = record
        if algo != "argon2id":
            self.logger.warning("password_algo_mismatch", user_id=user_id, algo=algo)
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError):
            self.logger.warning("password_verification_failed", user_id=user_id)
            return False

    def save_password(self, user_id: str, password: str) -> None:
        """Hash and save a new password for a user."""
        pwd_hash, algo = self._hash_password(password)
        self.users.save_password(user_id, pwd_hash, algo)

    # -- registration and login -------------------------------------------

    async def register(
        self,
        email: str,
        password: str,
        name: Optional[str],
        client: ClientContext,
    ) -> User:
        email = (email or "").strip().lower()
        if "@" not in email:
            raise ValidationError("A valid email address is required")
        if len(password or "") < MIN_PASSWORD_LENGTH:
            raise ValidationError(
                f"Password must be at least {MIN_PASSWORD_LENGTH} characters"
            )
        if self.users.get_user_by_email(email):
            raise ConflictError("Email already registered")

        super_admin = (self.settings.super_admin_email or "").strip().lower()
        role = "super_admin" if super_admin and email == super_admin else "user"
        try:
            user = self.users.create_user(email, name, role=role)
        except ConstraintViolation as exc:
            raise ConflictError("Email already registered") from exc
        self.save_password(user.id, password)
        self.logger.info("user_registered", user_id=user.id, role=role)

        await self.challenges.send(user, client.ip, client.fingerprint)
        return user

    async def login(
        self,
        email: str,
        password: str,
        client: ClientContext,
        otp: Optional[str] = None,
    ) -> LoginResult:
        user = self.users.get_user_by_email((email or "").strip().lower())
        if not user or not self.verify_password(user.id, password or ""):
            self.logger.info("login_failed", ip=client.ip)
            raise InvalidCredentialsError()

        if self.sessions.count_active(user.id) >= self.settings.max_active_sessions:
            self._notify_session_limit(user)
            self.logger.info("login_session_cap_reached", user_id=user.id)
            raise SessionCapExceededError()

        location = None
        if otp:
            await self.challenges.verify(user.id, client.ip, client.fingerprint, otp)
            if not user.is_verified:
                user = self.users.set_user_verified(user.id, True) or user
        else:
            assessment = await self.risk.evaluate(user, client)
            location = assessment.location
            if assessment.requires_challenge or not user.is_verified:
                await self.challenges.send(user, client.ip, client.fingerprint)
                raise ChallengeRequiredError()

        if location is None:
            location = await self.geo.resolve(client.ip)
        raw_refresh = generate_refresh_token()
        session = await self.sessions.create_session(
            user.id,
            ip=client.ip,
            user_agent=client.user_agent,
            fingerprint=client.fingerprint,
            geo=location,
            raw_refresh_token=raw_refresh,
        )
        user = self.users.get_user(user.id) or user
        self.logger.info("login_succeeded", user_id=user.id, session_id=session.id)
        return LoginResult(
            user=user,
            session=session,
            access_token=self.tokens.issue_access_token(user, session.id),
            refresh_token=raw_refresh,
        )

    def _notify_session_limit(self, user: User) -> None:
        active = self.sessions.list_active(user.id)
        links = {
            session.id: (
                f"{self.settings.app_base_url.rstrip('/')}/v1/auth/revoke-via-email"
                f"?token={self.tokens.issue_revoke_token(user.id, session.id)}"
            )
            for session in active
        }
        subject, body = templates.session_limit_reached(
            user.name, sessions=active, revoke_links=links
        )
        self.notifier.send(user.email, subject, body)

    async def logout(self, session_id: str) -> None:
        await self.sessions.deactivate(session_id)
        self.logger.info("logout", session_id=session_id)

    async def renew_access_token(
        self, raw_refresh_token: Optional[str], client: ClientContext
    ) -> Tuple[User, str, str]:
        """Mint a new access token from a refresh token alone.

        Returns ``(user, session_id, access_token)``. Legacy and suspicious sessions
        and users at the risk ceiling must log in again instead.
        """
        if not raw_refresh_token:
            raise SessionInvalidOrExpiredError()
        snapshot = await self.sessions.validate_and_refresh(
            hash_token(raw_refresh_token), client.ip
        )
        if snapshot is None:
            raise SessionInvalidOrExpiredError()
        session = self.sessions.get(snapshot.session_id)
        if session is None or session.is_legacy or session.is_suspicious:
            raise SessionInvalidOrExpiredError()
        user = self.users.get_user(session.user_id)
        if user is None:
            raise SessionInvalidOrExpiredError()
        if await self.detector.inspect(user, snapshot, client) is Verdict.HIJACK:
            raise SessionInvalidOrExpiredError()
        user = self.users.get_user(user.id) or user
        if user.risk_score >= self.settings.max_risk_score:
            self.logger.info("token_renewal_refused", user_id=user.id, reason="risk")
            raise SessionInvalidOrExpiredError()
        return user, session.id, self.tokens.issue_access_token(user, session.id)

    async def revoke_via_link(self, token: str) -> None:
        payload = self.tokens.decode_revoke_token(token or "")
        if not payload:
            raise ValidationError("Revoke link is invalid or has expired")
        session = self.sessions.get(payload["sid"])
        if session is None or session.user_id != payload.get("sub"):
            raise NotFoundError("Session not found")
        await self.sessions.revoke(session.id)
        self.logger.info("session_revoked_via_link", session_id=session.id)

    def mark_session_suspicious(self, session_id: str, flag: bool = True) -> Session:
        session = self.sessions.mark_suspicious(session_id, flag)
        if session is None:
            raise NotFoundError("Session not found")
        return session

    # -- admin ----------------------------------------------------------------

    def list_users(self, limit: int = 500) -> List[UserOverview]:
        counts = self.users.count_active_sessions_by_user(self._now())
        overview = [
            UserOverview(user=user, active_sessions=counts.get(user.id, 0))
            for user in self.users.list_users(limit)
        ]
        overview.sort(key=lambda item: (item.user.risk_score, item.user.created_at), reverse=True)
        return overview

    def list_user_sessions(self, user_id: str) -> Tuple[List[Session], List[Session]]:
        """Return ``(active, retired)`` sessions, most recently active first."""
        if not self.users.get_user(user_id):
            raise NotFoundError("User not found")
        sessions = self.sessions.list_sessions(user_id)
        active = [s for s in sessions if s.status == SessionStatus.ACTIVE]
        retired = [s for s in sessions if s.status != SessionStatus.ACTIVE]
        return active, retired

    async def revoke_session(
        self, actor: User, actor_session_id: Optional[str], session_id: str
    ) -> None:
        if session_id == actor_session_id:
            raise ForbiddenError("You cannot revoke your own session")
        session = self.sessions.get(session_id)
        if session is None:
            raise NotFoundError("Session not found")
        owner = self.users.get_user(session.user_id)
        if owner and owner.is_admin:
            raise ForbiddenError("Cannot revoke an administrator's session")
        if owner and owner.id == actor.id:
            raise ForbiddenError("You cannot revoke your own session")
        await self.sessions.revoke(session_id)
        self.logger.info("admin_session_revoked", actor_id=actor.id, session_id=session_id)

    async def _revoke_active(self, user_id: str) -> int:
        revoked = 0
        for session in self.sessions.list_sessions(user_id, [SessionStatus.ACTIVE]):
            await self.sessions.revoke(session.id)
            revoked += 1
        return revoked

    async def revoke_all_user_sessions(self, user_id: str) -> int:
        user = self.users.get_user(user_id)
        if user is None:
            raise NotFoundError("User not found")
        if user.is_admin:
            raise ForbiddenError("Cannot revoke an administrator's sessions")
        revoked = await self._revoke_active(user_id)
        self.logger.info("user_sessions_revoked", user_id=user_id, count=revoked)
        return revoked

    async def update_role(self, actor: User, user_id: str, role: str) -> User:
        if actor.role != "super_admin":
            raise ForbiddenError("Only the super admin can change roles")
        if role not in ASSIGNABLE_ROLES:
            raise ValidationError("Role must be one of: " + ", ".join(ASSIGNABLE_ROLES))
        target = self.users.get_user(user_id)
        if target is None:
            raise NotFoundError("User not found")
        if target.role == "super_admin":
            raise ForbiddenError("Cannot change the super admin's role")
        updated = self.users.update_user_role(user_id, role)
        if updated is None:
            raise NotFoundError("User not found")
        # sessions carry the old role in their access tokens
        revoked = await self._revoke_active(user_id)
        self.logger.info(
            "user_role_updated_sessions_revoked", user_id=user_id, new_role=role, revoked=revoked
        )
        return updated
