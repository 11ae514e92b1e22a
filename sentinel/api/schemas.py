from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, List, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from sentinel.storage.models import Session, User

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
    "invalid_credentials",
    "session_cap_exceeded",
    "challenge_required",
    "challenge_not_found_or_expired",
    "challenge_ip_mismatch",
    "challenge_fingerprint_mismatch",
    "challenge_incorrect",
    "session_invalid_or_expired",
    "store_unavailable",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values clients can branch on."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    """API envelope format."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = unicodedata.normalize("NFKC", value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


class RegisterRequest(BaseModel):
    email: str
    password: str = Field(..., min_length=8, max_length=256)
    name: Optional[str] = Field(default=None, max_length=128)

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)


class LoginRequest(BaseModel):
    email: str
    password: str = Field(..., max_length=256)
    otp: Optional[str] = Field(default=None, max_length=12)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class UpdateUserRoleRequest(BaseModel):
    role: Literal["user", "admin"]


class SessionFlagRequest(BaseModel):
    suspicious: bool = True


class UserResponse(BaseModel):
    id: str
    email: str
    name: Optional[str] = None
    role: str
    is_verified: bool
    risk_score: int
    created_at: datetime

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            email=user.email,
            name=user.name,
            role=user.role,
            is_verified=user.is_verified,
            risk_score=user.risk_score,
            created_at=user.created_at,
        )


class AdminUserResponse(UserResponse):
    active_session_count: int = 0


class UserListResponse(BaseModel):
    items: List[AdminUserResponse]


class SessionResponse(BaseModel):
    id: str
    device_name: str
    user_agent: str
    ip_first_seen: str
    ip_last_seen: str
    ip_change_count: int
    city: str
    country: str
    status: str
    is_legacy: bool
    is_suspicious: bool
    created_at: datetime
    last_active_at: Optional[datetime] = None
    refresh_token_expiry: datetime

    @classmethod
    def from_session(cls, session: Session) -> "SessionResponse":
        return cls(
            id=session.id,
            device_name=session.device_name,
            user_agent=session.user_agent,
            ip_first_seen=session.ip_first_seen,
            ip_last_seen=session.ip_last_seen,
            ip_change_count=session.ip_change_count,
            city=session.location.city,
            country=session.location.country,
            status=session.status.value,
            is_legacy=session.is_legacy,
            is_suspicious=session.is_suspicious,
            created_at=session.created_at,
            last_active_at=session.last_active_at,
            refresh_token_expiry=session.refresh_token_expiry,
        )


class UserSessionsResponse(BaseModel):
    active: List[SessionResponse]
    inactive: List[SessionResponse]


class AuthResponse(BaseModel):
    user: UserResponse
    session_id: str
    access_token: str
    refresh_token: Optional[str] = None
    token_type: str = "bearer"


class RegisterResponse(BaseModel):
    user_id: str
    require_otp: bool = True
