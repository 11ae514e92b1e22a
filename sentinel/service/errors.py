from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass carries an HTTP ``status_code`` and a stable ``error_code`` that
    clients can branch on (for example to show the OTP form on
    ``challenge_required``). Messages never name the risk signal that fired.
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidCredentialsError(AuthenticationError):
    error_code = "invalid_credentials"

    def __init__(self, message: str = "Invalid email or password", **kwargs) -> None:
        super().__init__(message, **kwargs)


class SessionInvalidOrExpiredError(AuthenticationError):
    """Covers absent, expired, revoked and hijacked sessions alike."""

    error_code = "session_invalid_or_expired"

    def __init__(
        self, message: str = "Session invalid or expired. Please log in again.", **kwargs
    ) -> None:
        super().__init__(message, **kwargs)


class ChallengeRequiredError(AuthenticationError):
    error_code = "challenge_required"

    def __init__(
        self,
        message: str = "Additional verification required. A code has been sent to your email.",
        **kwargs,
    ) -> None:
        kwargs.setdefault("detail", {"require_otp": True})
        super().__init__(message, **kwargs)


class ChallengeError(AuthenticationError):
    """Base for failed OTP verifications."""


class ChallengeNotFoundOrExpiredError(ChallengeError):
    error_code = "challenge_not_found_or_expired"

    def __init__(self, message: str = "Verification code expired or not found", **kwargs) -> None:
        super().__init__(message, **kwargs)


class ChallengeIpMismatchError(ChallengeError):
    error_code = "challenge_ip_mismatch"

    def __init__(
        self, message: str = "Verification must be completed from the same network", **kwargs
    ) -> None:
        super().__init__(message, **kwargs)


class ChallengeFingerprintMismatchError(ChallengeError):
    error_code = "challenge_fingerprint_mismatch"

    def __init__(
        self, message: str = "Verification must be completed from the same device", **kwargs
    ) -> None:
        super().__init__(message, **kwargs)


class ChallengeIncorrectError(ChallengeError):
    error_code = "challenge_incorrect"

    def __init__(self, message: str = "Incorrect verification code", **kwargs) -> None:
        super().__init__(message, **kwargs)


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class SessionCapExceededError(ForbiddenError):
    error_code = "session_cap_exceeded"

    def __init__(
        self,
        message: str = "Maximum active sessions reached. Check your email to sign out other devices.",
        **kwargs,
    ) -> None:
        super().__init__(message, **kwargs)


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class StoreUnavailableError(ServiceError):
    """Durable store failure; the operation was aborted with no partial mutation (503)."""
    status_code = 503
    error_code = "store_unavailable"

    def __init__(self, message: str = "Service temporarily unavailable", **kwargs) -> None:
        super().__init__(message, **kwargs)


__all__ = [
    "AuthenticationError",
    "ChallengeError",
    "ChallengeFingerprintMismatchError",
    "ChallengeIncorrectError",
    "ChallengeIpMismatchError",
    "ChallengeNotFoundOrExpiredError",
    "ChallengeRequiredError",
    "ConflictError",
    "ForbiddenError",
    "InvalidCredentialsError",
    "NotFoundError",
    "ServiceError",
    "SessionCapExceededError",
    "SessionInvalidOrExpiredError",
    "StoreUnavailableError",
    "ValidationError",
]
