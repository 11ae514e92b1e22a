from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from sentinel.config import Settings
from sentinel.logging import get_logger
from sentinel.storage.models import User, utcnow

logger = get_logger(__name__)


def generate_refresh_token() -> str:
    """Opaque refresh token: 32 random bytes, hex encoded."""
    return secrets.token_hex(32)


def hash_token(token: str) -> str:
    """Refresh tokens and OTP codes are only ever stored as sha256 hex digests."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


class TokenService:
    """HS256 access tokens and signed revoke-link tokens."""

    def __init__(
        self, settings: Settings, *, clock: Optional[Callable[[], datetime]] = None
    ) -> None:
        self.settings = settings
        self._clock = clock or utcnow
        # Allowance for small clock skew across nodes
        self._clock_skew_leeway = timedelta(seconds=30)

    def _now(self) -> datetime:
        return self._clock()

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(
                self.settings.jwt_secret.encode(), signing_input.encode(), hashlib.sha256
            ).digest()
        )

    def encode(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def decode(self, token: str) -> Optional[dict[str, Any]]:
        """Return the verified payload, or None for any malformed, forged or expired token."""
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            return None
        if not hmac.compare_digest(self._sign(f"{header_b64}.{payload_b64}"), sig_b64):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        if payload.get("aud") != self.settings.jwt_audience:
            return None
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            return None
        if exp_ts <= self._now().timestamp() - self._clock_skew_leeway.total_seconds():
            return None
        return payload

    def issue_access_token(
        self, user: User, session_id: Optional[str], ttl: Optional[timedelta] = None
    ) -> str:
        now = self._now()
        lifetime = ttl or timedelta(minutes=self.settings.access_token_ttl_minutes)
        payload: dict[str, Any] = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": user.id,
            "role": user.role,
            "token_type": "access",
            "jti": str(uuid.uuid4()),
            "iat": int(now.timestamp()),
            "exp": int((now + lifetime).timestamp()),
        }
        # Tokens minted before session tracking carry no sid
        if session_id:
            payload["sid"] = session_id
        return self.encode(payload)

    def decode_access_token(self, token: str) -> Optional[dict[str, Any]]:
        payload = self.decode(token)
        if not payload or payload.get("token_type") != "access" or not payload.get("sub"):
            return None
        return payload

    def issue_revoke_token(self, user_id: str, session_id: str) -> str:
        now = self._now()
        return self.encode(
            {
                "iss": self.settings.jwt_issuer,
                "aud": self.settings.jwt_audience,
                "sub": user_id,
                "sid": session_id,
                "token_type": "revoke",
                "exp": int(
                    (now + timedelta(minutes=self.settings.revoke_link_ttl_minutes)).timestamp()
                ),
            }
        )

    def decode_revoke_token(self, token: str) -> Optional[dict[str, Any]]:
        payload = self.decode(token)
        if not payload or payload.get("token_type") != "revoke" or not payload.get("sid"):
            return None
        return payload
