from __future__ import annotations

import hmac
import secrets
import string
from datetime import datetime
from typing import Callable, Optional

from sentinel.config import Settings
from sentinel.logging import get_logger, log_security_event
from sentinel.service import templates
from sentinel.service.errors import (
    ChallengeFingerprintMismatchError,
    ChallengeIncorrectError,
    ChallengeIpMismatchError,
    ChallengeNotFoundOrExpiredError,
    StoreUnavailableError,
)
from sentinel.service.notifications import Notifier
from sentinel.service.tokens import hash_token
from sentinel.storage.errors import CacheUnavailable
from sentinel.storage.models import Challenge, User, utcnow
from sentinel.storage.repository import DurableStore, FastStore

logger = get_logger(__name__)


class ChallengeManager:
    """Single-use numeric codes bound to the IP and device that requested them.

    There is one slot per user identity; issuing a new code overwrites any pending
    one. Challenges only live in the fast store, so a cache outage makes step-up
    verification unavailable rather than silently skipping it.
    """

    def __init__(
        self,
        fast: FastStore,
        users: DurableStore,
        notifier: Notifier,
        settings: Settings,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.fast = fast
        self.users = users
        self.notifier = notifier
        self.settings = settings
        self._clock = clock or utcnow

    def _generate_code(self) -> str:
        return "".join(secrets.choice(string.digits) for _ in range(self.settings.otp_length))

    async def issue(self, identity: str, ip: str, fingerprint: str) -> str:
        code = self._generate_code()
        challenge = Challenge(
            code_hash=hash_token(code), ip=ip, fingerprint=fingerprint, issued_at=self._clock()
        )
        try:
            await self.fast.set_challenge(identity, challenge, self.settings.otp_ttl_seconds)
        except CacheUnavailable as exc:
            logger.error("challenge_store_unavailable", operation="issue", error=str(exc))
            raise StoreUnavailableError("Verification is temporarily unavailable") from exc
        logger.info("challenge_issued", identity=identity, ip=ip)
        return code

    async def send(self, user: User, ip: str, fingerprint: str) -> None:
        """Issue a code for ``user`` and mail it to them."""
        code = await self.issue(user.id, ip, fingerprint)
        subject, body = templates.otp_code(
            user.name, code=code, ttl_seconds=self.settings.otp_ttl_seconds
        )
        self.notifier.send(user.email, subject, body)

    async def verify(self, identity: str, ip: str, fingerprint: str, code: str) -> None:
        """Consume the pending challenge or raise the matching ``ChallengeError``."""
        try:
            challenge = await self.fast.get_challenge(identity)
        except CacheUnavailable as exc:
            logger.error("challenge_store_unavailable", operation="verify", error=str(exc))
            raise StoreUnavailableError("Verification is temporarily unavailable") from exc

        if challenge is None:
            raise ChallengeNotFoundOrExpiredError()
        if challenge.ip != ip:
            logger.info("challenge_ip_mismatch", identity=identity, ip=ip)
            raise ChallengeIpMismatchError()
        if challenge.fingerprint != fingerprint:
            log_security_event("otp_interception_detected", logger, identity=identity, ip=ip)
            user = self.users.get_user(identity)
            if user:
                subject, body = templates.otp_interception_blocked(user.name, ip=ip)
                self.notifier.send(user.email, subject, body)
            raise ChallengeFingerprintMismatchError()

        code_hash = hash_token((code or "").strip())
        if not hmac.compare_digest(code_hash, challenge.code_hash):
            raise ChallengeIncorrectError()

        try:
            consumed = await self.fast.consume_challenge(identity, code_hash)
        except CacheUnavailable as exc:
            logger.error("challenge_store_unavailable", operation="consume", error=str(exc))
            raise StoreUnavailableError("Verification is temporarily unavailable") from exc
        if not consumed:
            # a concurrent verification or a re-issue got there first
            raise ChallengeNotFoundOrExpiredError()

        self.users.reset_risk_score(identity)
        logger.info("challenge_verified", identity=identity)
