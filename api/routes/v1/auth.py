"""
api/routes/v1/auth.py -- Login, logout, session and user management endpoints.

Routes:
  POST   /api/v1/auth/login                 -- password login; sets session cookie
  POST   /api/v1/auth/logout                -- revokes session, clears cookie
  GET    /api/v1/auth/logout                -- same, then redirects (browser link)
  GET    /api/v1/auth/me                    -- current identity (requires auth)
  GET    /api/v1/auth/sessions              -- caller's active sessions (requires auth)
  DELETE /api/v1/auth/sessions/{session_id} -- revoke one of them (ownership checked)
  POST   /api/v1/auth/users                 -- create user (admin only)
  GET    /api/v1/auth/users                 -- list users (admin only)

Security:
  POST /login is rate-limited per peer address (LOGIN_RATE_LIMIT).
  authenticate_user() provides timing equalization -- use it, never inline.
  Cache-Control: no-store on login responses.
  A login revokes the session cookie it arrived with (no session fixation).
  The session TTL is chosen once at login (remember_me or not); nothing
      extends an issued session.
  IDOR guard: DELETE /sessions/{id} passes user_id to the store; the store's
      WHERE clause checks ownership.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request, Response
from fastapi.responses import JSONResponse, RedirectResponse
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from api.limiter import limiter, login_rate_limit
from api.models import (
    LoginRequest,
    LoginResponse,
    LogoutResponse,
    MeResponse,
    SessionResponse,
    UserCreate,
    UserResponse,
)
from auth.config_store import SystemConfigStore
from auth.cookies import clear_session_cookie, set_session_cookie
from auth.dependencies import get_current_user, get_identity, require_admin
from auth.models import User
from auth.passwords import authenticate_user, hash_password
from auth.sessions import SessionStore
from auth.store import UserStore
from core.config import Settings

logger = logging.getLogger("homeboard.api.auth")

# Auth policy:
# - POST   /api/v1/auth/login:           public -- login endpoint must be unauthenticated
# - POST   /api/v1/auth/logout:          public -- revoking your own cookie needs no prior auth
# - GET    /api/v1/auth/logout:          public
# - GET    /api/v1/auth/me:              requires auth (resolved identity)
# - GET    /api/v1/auth/sessions:        requires auth (get_current_user)
# - DELETE /api/v1/auth/sessions/{id}:   requires auth + ownership check in store
# - POST   /api/v1/auth/users:           requires admin (require_admin)
# - GET    /api/v1/auth/users:           requires admin (require_admin)
router = APIRouter()


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/login", response_model=LoginResponse)
@limiter.limit(login_rate_limit)  # must be BELOW @router so the registered endpoint is the limited wrapper
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with username and password; set the session cookie.

    Returns the same generic error for wrong username and wrong password
    ("bad_credentials") to avoid leaking username existence information.
    Accounts created by proxy provisioning have no usable password and
    always land on that branch.
    """
    settings: Settings = request.app.state.settings
    user_store: UserStore = request.app.state.user_store
    sessions: SessionStore = request.app.state.session_store
    auth_config = request.app.state.config_store.get_auth_config()

    if not auth_config.local_enabled:
        raise HTTPException(
            status_code=403,
            detail={"code": "local_auth_disabled", "message": "Password login is disabled."},
        )

    user = authenticate_user(user_store, body.username, body.password)
    if user is None:
        logger.info("Failed login for %r from %s", body.username, _peer(request))
        resp = JSONResponse(
            status_code=401,
            content={"error": {"code": "bad_credentials", "message": "Invalid username or password."}},
        )
        resp.headers["Cache-Control"] = "no-store"
        return resp

    sessions.revoke(request.cookies.get(settings.session_cookie_name))

    ttl = auth_config.session.remember_me if body.remember_me else auth_config.session.timeout
    session = sessions.create(
        user,
        ttl=ttl,
        ip_address=_peer(request),
        user_agent=request.headers.get("user-agent"),
    )
    user_store.update_last_login(user.id)
    logger.info("User %r logged in (remember_me=%s)", user.username, body.remember_me)

    resp = JSONResponse(
        status_code=200,
        content=LoginResponse(username=user.username, group_id=user.group_id, expires_in=ttl).model_dump(),
    )
    set_session_cookie(resp, session.token, ttl, settings)
    resp.headers["Cache-Control"] = "no-store"
    return resp


@router.post("/auth/logout", response_model=LogoutResponse)
def logout(request: Request) -> JSONResponse:
    """Revoke the session behind the cookie and clear it.

    When the proxy logout override is on, redirect_url tells the browser
    where to go to end the proxy's own session as well.
    """
    settings: Settings = request.app.state.settings
    request.app.state.session_store.revoke(request.cookies.get(settings.session_cookie_name))
    resp = JSONResponse(content=LogoutResponse(redirect_url=_proxy_logout_url(request)).model_dump())
    clear_session_cookie(resp, settings)
    return resp


@router.get("/auth/logout", include_in_schema=False)
def logout_redirect(request: Request) -> RedirectResponse:
    """Browser-link variant of logout: revoke, clear, then redirect."""
    settings: Settings = request.app.state.settings
    request.app.state.session_store.revoke(request.cookies.get(settings.session_cookie_name))
    resp = RedirectResponse(_proxy_logout_url(request) or "/", status_code=302)
    clear_session_cookie(resp, settings)
    return resp


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.get("/auth/me", response_model=MeResponse)
def me(request: Request) -> JSONResponse:
    """Return the resolved identity of the caller.

    An unauthenticated request that still carries a session cookie holds a
    stale one (expired or revoked); the 401 response clears it.
    """
    settings: Settings = request.app.state.settings
    identity = get_identity(request)
    if identity.user is None:
        resp = JSONResponse(
            status_code=401,
            content={"error": {"code": "unauthorized", "message": "Authentication required."}},
        )
        if settings.session_cookie_name in request.cookies:
            clear_session_cookie(resp, settings)
        return resp

    user = identity.user
    return JSONResponse(
        content=MeResponse(
            user_id=user.id,
            username=user.username,
            email=user.email,
            group_id=user.group_id,
            auth_method=identity.method.value,
        ).model_dump()
    )


@router.get("/auth/sessions", response_model=list[SessionResponse])
def list_sessions(
    request: Request,
    current_user: User = Depends(get_current_user),
) -> list[SessionResponse]:
    """List the caller's unexpired sessions, newest first."""
    sessions: SessionStore = request.app.state.session_store
    current = get_identity(request).session
    current_hash = current.token_hash if current else None
    return [SessionResponse.from_session(s, current_hash) for s in sessions.list_for_user(current_user.id)]


@router.delete("/auth/sessions/{session_id}", status_code=204)
def revoke_session(
    request: Request,
    session_id: str,
    current_user: User = Depends(get_current_user),
) -> Response:
    """Revoke one of the caller's sessions. Ownership is verified server-side."""
    settings: Settings = request.app.state.settings
    sessions: SessionStore = request.app.state.session_store
    if not sessions.revoke_by_id(session_id, current_user.id):
        raise HTTPException(
            status_code=404,
            detail={"code": "not_found", "message": "Session not found."},
        )
    resp = Response(status_code=204)
    current = get_identity(request).session
    if current is not None and current.token_hash == session_id:
        clear_session_cookie(resp, settings)
    return resp


# ---------------------------------------------------------------------------
# User management (admin only)
# ---------------------------------------------------------------------------


@router.post("/auth/users", response_model=UserResponse, status_code=201)
def create_user(
    request: Request,
    body: UserCreate,
    current_user: User = Depends(require_admin),
) -> UserResponse:
    """Create a local user account with a password. Admin only."""
    user_store: UserStore = request.app.state.user_store
    new_user = User(
        username=body.username,
        email=body.email or None,
        group_id=body.group_id.value,
        hashed_password=hash_password(body.password),
    )
    try:
        user_id = user_store.create_user(new_user)
    except IntegrityError as exc:
        raise HTTPException(
            status_code=409,
            detail={"code": "conflict", "message": "A user with that username already exists."},
        ) from exc

    logger.info("User %r created by %r", body.username, current_user.username)
    created = user_store.get_by_id(user_id)
    if created is None:
        raise HTTPException(
            status_code=500,
            detail={"code": "internal_error", "message": "User not found after write."},
        )
    return UserResponse.from_user(created)


@router.get("/auth/users", response_model=list[UserResponse])
def list_users(
    request: Request,
    current_user: User = Depends(require_admin),
) -> list[UserResponse]:
    """List all user accounts. Admin only."""
    user_store: UserStore = request.app.state.user_store
    return [UserResponse.from_user(u) for u in user_store.list_users()]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _peer(request: Request) -> str | None:
    return request.client.host if request.client else None


def _proxy_logout_url(request: Request) -> str | None:
    """The configured proxy logout URL, or None when the override is off.

    Logout must still clear the local session when the configuration cannot
    be read, so a storage error here only costs the redirect.
    """
    config_store: SystemConfigStore = request.app.state.config_store
    try:
        proxy = config_store.get_proxy_config()
    except SQLAlchemyError:
        logger.exception("Could not load proxy configuration during logout")
        return None
    if proxy.override_logout and proxy.logout_url:
        return proxy.logout_url
    return None
