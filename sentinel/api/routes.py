from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, Response

from sentinel.api.schemas import (
    AdminUserResponse,
    AuthResponse,
    Envelope,
    LoginRequest,
    RegisterRequest,
    RegisterResponse,
    SessionFlagRequest,
    SessionResponse,
    UpdateUserRoleRequest,
    UserListResponse,
    UserResponse,
    UserSessionsResponse,
)
from sentinel.config import get_settings
from sentinel.logging import get_logger
from sentinel.service.authenticator import Migrated, Rejected, RejectReason
from sentinel.service.client import ClientContext, client_context
from sentinel.service.errors import SessionInvalidOrExpiredError
from sentinel.service.runtime import get_runtime
from sentinel.storage.models import User

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

ACCESS_COOKIE = "access_token"
REFRESH_COOKIE = "refresh_token"


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


@dataclass
class AuthContext:
    user: User
    session_id: str

    @property
    def user_id(self) -> str:
        return self.user.id

    @property
    def role(self) -> str:
        return self.user.role


def _client(request: Request) -> ClientContext:
    peer = request.client.host if request.client else None
    return client_context(request.headers, peer)


def _bearer(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def _set_access_cookie(
    response: Response, access_token: str, max_age: Optional[int] = None
) -> None:
    settings = get_settings()
    response.set_cookie(
        ACCESS_COOKIE,
        access_token,
        httponly=True,
        secure=settings.cookie_secure,
        samesite="lax",
        max_age=max_age or settings.access_token_ttl_minutes * 60,
        path="/",
    )


def _apply_session_cookies(
    response: Response,
    access_token: str,
    refresh_token: Optional[str],
    *,
    access_max_age: Optional[int] = None,
    refresh_max_age: Optional[int] = None,
) -> None:
    settings = get_settings()
    _set_access_cookie(response, access_token, access_max_age)
    if refresh_token:
        response.set_cookie(
            REFRESH_COOKIE,
            refresh_token,
            httponly=True,
            secure=settings.cookie_secure,
            samesite="lax",
            max_age=refresh_max_age
            or int(timedelta(days=settings.refresh_token_ttl_days).total_seconds()),
            path="/",
        )


def _clear_session_cookies(response: Response) -> None:
    secure = get_settings().cookie_secure
    response.delete_cookie(ACCESS_COOKIE, path="/", secure=secure, samesite="lax")
    response.delete_cookie(REFRESH_COOKIE, path="/", secure=secure, samesite="lax")


async def get_user(
    request: Request,
    response: Response,
    authorization: Optional[str] = Header(None),
    x_refresh_token: Optional[str] = Header(None, alias="X-Refresh-Token"),
) -> AuthContext:
    runtime = get_runtime()
    client = _client(request)
    access_token = _bearer(authorization) or request.cookies.get(ACCESS_COOKIE)
    refresh_token = x_refresh_token or request.cookies.get(REFRESH_COOKIE)

    if not access_token and refresh_token:
        user, session_id, renewed = await runtime.auth.renew_access_token(
            refresh_token, client
        )
        _set_access_cookie(response, renewed)
        response.headers["X-Access-Token"] = renewed
        return AuthContext(user=user, session_id=session_id)

    result = await runtime.authenticator.authenticate(access_token, refresh_token, client)
    if isinstance(result, Rejected):
        logger.info("request_rejected", reason=result.reason.value, ip=client.ip)
        if result.reason is RejectReason.NO_TOKEN:
            raise _http_error("unauthorized", "authentication required", status_code=401)
        raise SessionInvalidOrExpiredError()
    if isinstance(result, Migrated):
        _apply_session_cookies(
            response,
            result.access_token,
            result.refresh_token,
            access_max_age=result.access_max_age,
            refresh_max_age=result.refresh_max_age,
        )
        response.headers["X-Access-Token"] = result.access_token
        response.headers["X-Refresh-Token"] = result.refresh_token
    return AuthContext(user=result.user, session_id=result.session_id)


async def get_admin_user(principal: AuthContext = Depends(get_user)) -> AuthContext:
    if not principal.user.is_admin:
        raise _http_error("forbidden", "admin access required", status_code=403)
    return principal


# -- auth -------------------------------------------------------------------


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, request: Request):
    """Create an unverified account and mail the first verification code."""
    runtime = get_runtime()
    user = await runtime.auth.register(body.email, body.password, body.name, _client(request))
    return Envelope(status="ok", data=RegisterResponse(user_id=user.id).model_dump())


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    """Password login with adaptive risk checks.

    Raises:
        401: invalid credentials, or ``challenge_required`` when an emailed code must
            be supplied in ``otp`` on the next attempt
        403: the account already holds the maximum number of active sessions
    """
    runtime = get_runtime()
    result = await runtime.auth.login(body.email, body.password, _client(request), otp=body.otp)
    _apply_session_cookies(response, result.access_token, result.refresh_token)
    payload = AuthResponse(
        user=UserResponse.from_user(result.user),
        session_id=result.session.id,
        access_token=result.access_token,
        refresh_token=result.refresh_token,
    )
    return Envelope(status="ok", data=payload.model_dump(mode="json"))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(response: Response, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    await runtime.auth.logout(principal.session_id)
    _clear_session_cookies(response)
    return Envelope(status="ok", data={"message": "session ended"})


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh(
    request: Request,
    response: Response,
    x_refresh_token: Optional[str] = Header(None, alias="X-Refresh-Token"),
):
    runtime = get_runtime()
    refresh_token = x_refresh_token or request.cookies.get(REFRESH_COOKIE)
    user, session_id, access_token = await runtime.auth.renew_access_token(
        refresh_token, _client(request)
    )
    _set_access_cookie(response, access_token)
    payload = AuthResponse(
        user=UserResponse.from_user(user),
        session_id=session_id,
        access_token=access_token,
    )
    return Envelope(status="ok", data=payload.model_dump(mode="json"))


@router.get("/auth/revoke-via-email", response_model=Envelope, tags=["auth"])
async def revoke_via_email(token: str = Query(..., min_length=1)):
    """Target of the links in the session-limit email."""
    runtime = get_runtime()
    await runtime.auth.revoke_via_link(token)
    return Envelope(status="ok", data={"message": "session revoked"})


@router.get("/me", response_model=Envelope, tags=["auth"])
async def get_current_user(principal: AuthContext = Depends(get_user)):
    data = UserResponse.from_user(principal.user).model_dump(mode="json")
    data["session_id"] = principal.session_id
    return Envelope(status="ok", data=data)


# -- admin ------------------------------------------------------------------


@router.get("/admin/users", response_model=Envelope, tags=["admin"])
async def admin_list_users(
    limit: int = Query(500, ge=1, le=1000),
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    items = [
        AdminUserResponse(
            **UserResponse.from_user(entry.user).model_dump(),
            active_session_count=entry.active_sessions,
        )
        for entry in runtime.auth.list_users(limit)
    ]
    return Envelope(status="ok", data=UserListResponse(items=items).model_dump(mode="json"))


@router.get("/admin/users/{user_id}/sessions", response_model=Envelope, tags=["admin"])
async def admin_list_user_sessions(
    user_id: str, principal: AuthContext = Depends(get_admin_user)
):
    runtime = get_runtime()
    active, inactive = runtime.auth.list_user_sessions(user_id)
    payload = UserSessionsResponse(
        active=[SessionResponse.from_session(s) for s in active],
        inactive=[SessionResponse.from_session(s) for s in inactive],
    )
    return Envelope(status="ok", data=payload.model_dump(mode="json"))


@router.patch("/admin/users/{user_id}/role", response_model=Envelope, tags=["admin"])
async def admin_update_user_role(
    user_id: str,
    body: UpdateUserRoleRequest,
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    updated = await runtime.auth.update_role(principal.user, user_id, body.role)
    return Envelope(status="ok", data=UserResponse.from_user(updated).model_dump(mode="json"))


@router.delete("/admin/users/{user_id}/sessions", response_model=Envelope, tags=["admin"])
async def admin_revoke_user_sessions(
    user_id: str, principal: AuthContext = Depends(get_admin_user)
):
    runtime = get_runtime()
    revoked = await runtime.auth.revoke_all_user_sessions(user_id)
    return Envelope(status="ok", data={"revoked": revoked})


@router.delete("/admin/sessions/{session_id}", response_model=Envelope, tags=["admin"])
async def admin_revoke_session(
    session_id: str, principal: AuthContext = Depends(get_admin_user)
):
    runtime = get_runtime()
    await runtime.auth.revoke_session(principal.user, principal.session_id, session_id)
    return Envelope(status="ok", data={"message": "session revoked"})


@router.patch("/admin/sessions/{session_id}/suspicious", response_model=Envelope, tags=["admin"])
async def admin_flag_session(
    session_id: str,
    body: SessionFlagRequest,
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    session = runtime.auth.mark_session_suspicious(session_id, body.suspicious)
    return Envelope(
        status="ok", data=SessionResponse.from_session(session).model_dump(mode="json")
    )
