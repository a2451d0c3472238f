from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Cookie, Depends, Header, Query, Request, Response

from sessionkeeper.api.device import session_context
from sessionkeeper.api.schemas import (
    Envelope,
    RefreshRequest,
    RevokeAllResponse,
    SessionListResponse,
    SessionResponse,
    TokenResponse,
)
from sessionkeeper.config import Settings
from sessionkeeper.logging import get_logger
from sessionkeeper.service.access import MANAGE_SESSIONS
from sessionkeeper.service.errors import AuthenticationError, ForbiddenError, InvalidTokenError
from sessionkeeper.service.issuer import TokenPair
from sessionkeeper.service.runtime import get_runtime
from sessionkeeper.service.sessions import SessionPage
from sessionkeeper.service.store_ops import call_store
from sessionkeeper.storage.models import Principal

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

ACCESS_COOKIE = "accessToken"
REFRESH_COOKIE = "refreshToken"


def _apply_session_cookies(response: Response, pair: TokenPair, settings: Settings) -> None:
    response.set_cookie(
        ACCESS_COOKIE,
        pair.access.token,
        httponly=True,
        secure=settings.secure_cookies,
        samesite=settings.cookie_samesite,
        expires=pair.access.expires_at,
        path="/",
    )
    response.set_cookie(
        REFRESH_COOKIE,
        pair.refresh.token,
        httponly=True,
        secure=settings.secure_cookies,
        samesite=settings.cookie_samesite,
        expires=pair.refresh.expires_at,
        path=settings.refresh_cookie_path,
    )


def _clear_session_cookies(response: Response, settings: Settings) -> None:
    response.delete_cookie(
        ACCESS_COOKIE,
        path="/",
        secure=settings.secure_cookies,
        httponly=True,
        samesite=settings.cookie_samesite,
    )
    response.delete_cookie(
        REFRESH_COOKIE,
        path=settings.refresh_cookie_path,
        secure=settings.secure_cookies,
        httponly=True,
        samesite=settings.cookie_samesite,
    )


def _token_response(pair: TokenPair) -> dict:
    return TokenResponse(
        access_token=pair.access.token,
        access_token_expires_at=pair.access.expires_at,
        refresh_token=pair.refresh.token,
        refresh_token_expires_at=pair.refresh.expires_at,
    ).model_dump(mode="json")


def _session_list_response(page: SessionPage) -> dict:
    return SessionListResponse(
        items=[
            SessionResponse(
                id=item.id,
                kind=item.kind.value,
                device_id=item.device_id,
                device_name=item.device_name,
                user_agent=item.user_agent,
                ip_address=item.ip_address,
                remember_me=item.remember_me,
                issued_at=item.issued_at,
                last_used_at=item.last_used_at,
                expires_at=item.expires_at,
                metadata=item.metadata,
            )
            for item in page.items
        ],
        next_cursor=page.next_cursor,
    ).model_dump(mode="json")


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, value = authorization.partition(" ")
    if scheme.lower() != "bearer" or not value.strip():
        return None
    return value.strip()


async def get_principal(
    authorization: Optional[str] = Header(None),
    access_cookie: Optional[str] = Cookie(None, alias=ACCESS_COOKIE),
) -> Principal:
    """Resolve the caller from a bearer access token or the access cookie."""

    token = _bearer_token(authorization) or access_cookie
    if not token:
        raise AuthenticationError("authentication required")
    runtime = get_runtime()
    principal_id = runtime.tokens.validate_access(token)
    user = await call_store(runtime.users.get_user, principal_id)
    if user is None or not user.is_active:
        logger.info("access_denied_inactive_user", principal_id=principal_id)
        raise InvalidTokenError("user is not active")
    return user


async def get_session_admin(principal: Principal = Depends(get_principal)) -> Principal:
    runtime = get_runtime()
    if MANAGE_SESSIONS not in runtime.rights.rights_for(principal.role):
        raise ForbiddenError("manage_sessions right required")
    return principal


@router.post("/auth/refresh-tokens", response_model=Envelope, tags=["auth"])
async def refresh_tokens(
    request: Request,
    response: Response,
    body: Optional[RefreshRequest] = None,
    refresh_cookie: Optional[str] = Cookie(None, alias=REFRESH_COOKIE),
):
    """Exchange a refresh token for a new pair; the presented token is consumed.

    Any failure means the client must sign in again.
    """
    runtime = get_runtime()
    presented = (body.refresh_token if body else None) or refresh_cookie
    if not presented:
        raise InvalidTokenError("refresh token required")
    pair = await runtime.tokens.rotate(presented, session_context(request))
    _apply_session_cookies(response, pair, runtime.settings)
    return Envelope(status="ok", data=_token_response(pair))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    response: Response,
    body: Optional[RefreshRequest] = None,
    refresh_cookie: Optional[str] = Cookie(None, alias=REFRESH_COOKIE),
):
    runtime = get_runtime()
    presented = (body.refresh_token if body else None) or refresh_cookie
    revoked = False
    if presented:
        revoked = await runtime.tokens.revoke_one(presented)
    _clear_session_cookies(response, runtime.settings)
    return Envelope(status="ok", data={"revoked": revoked})


@router.get("/auth/sessions", response_model=Envelope, tags=["sessions"])
async def list_sessions(
    limit: Optional[int] = Query(None, ge=1),
    cursor: Optional[str] = Query(None, max_length=256),
    principal: Principal = Depends(get_principal),
):
    runtime = get_runtime()
    page = await runtime.tokens.list_sessions(principal.id, limit=limit, cursor=cursor)
    return Envelope(status="ok", data=_session_list_response(page))


@router.delete("/auth/sessions/{session_id}", response_model=Envelope, tags=["sessions"])
async def revoke_session(session_id: str, principal: Principal = Depends(get_principal)):
    runtime = get_runtime()
    await runtime.tokens.revoke_session(principal.id, session_id)
    return Envelope(status="ok", data={"revoked": True, "session_id": session_id})


@router.post("/auth/sessions/revoke-all", response_model=Envelope, tags=["sessions"])
async def revoke_all_sessions(
    response: Response, principal: Principal = Depends(get_principal)
):
    """Log out everywhere. Access tokens already issued stay valid until they expire."""
    runtime = get_runtime()
    count = await runtime.tokens.revoke_all_sessions(principal.id)
    _clear_session_cookies(response, runtime.settings)
    return Envelope(
        status="ok", data=RevokeAllResponse(revoked=count).model_dump(mode="json")
    )


@router.get(
    "/admin/users/{principal_id}/sessions", response_model=Envelope, tags=["admin"]
)
async def admin_list_sessions(
    principal_id: str,
    limit: Optional[int] = Query(None, ge=1),
    cursor: Optional[str] = Query(None, max_length=256),
    admin: Principal = Depends(get_session_admin),
):
    runtime = get_runtime()
    page = await runtime.tokens.list_sessions(principal_id, limit=limit, cursor=cursor)
    return Envelope(status="ok", data=_session_list_response(page))


@router.delete(
    "/admin/users/{principal_id}/sessions/{session_id}",
    response_model=Envelope,
    tags=["admin"],
)
async def admin_revoke_session(
    principal_id: str,
    session_id: str,
    admin: Principal = Depends(get_session_admin),
):
    runtime = get_runtime()
    await runtime.tokens.revoke_session(principal_id, session_id)
    logger.info(
        "admin_session_revoked",
        admin_id=admin.id,
        principal_id=principal_id,
        session_id=session_id,
    )
    return Envelope(status="ok", data={"revoked": True, "session_id": session_id})
