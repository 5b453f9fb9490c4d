"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Identity is decided once per request by the identity middleware in
api/main.py, which runs IdentityResolver and stores the result on
request.state.identity. These helpers only read that decision; they never
look at headers or cookies themselves, so there is exactly one place where
proxy trust is evaluated.

try_get_current_user() is the soft variant (returns None when anonymous).
get_current_user() wraps it and raises HTTP 401 if unauthenticated.
require_admin() wraps get_current_user() and raises HTTP 403 if not admin.

Layer rule: may import fastapi (Depends/HTTPException/Request) because this
module is part of the FastAPI dependency injection system; never api/.
"""

from __future__ import annotations

from fastapi import HTTPException, Request

from auth.models import ANONYMOUS, Identity, User
from auth.resolver import RequestMeta


def request_meta_from(request: Request) -> RequestMeta:
    """Project a Starlette request onto what the resolver needs.

    remote_addr is the transport peer (request.client.host). uvicorn runs
    with proxy_headers=False so X-Forwarded-For never rewrites it.
    """
    return RequestMeta.build(
        remote_addr=request.client.host if request.client else None,
        headers=request.headers,
        cookies=request.cookies,
    )


def get_identity(request: Request) -> Identity:
    """Return the identity resolved for this request (anonymous if none)."""
    return getattr(request.state, "identity", ANONYMOUS)


def try_get_current_user(request: Request) -> User | None:
    """Return the authenticated User, None otherwise. Never raises."""
    return get_identity(request).user


def get_current_user(request: Request) -> User:
    """Require authentication. Raises HTTP 401 if the request is not authenticated.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(user: User = Depends(get_current_user)): ...
    """
    user = try_get_current_user(request)
    if user is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
        )
    return user


def require_admin(request: Request) -> User:
    """Require the admin group. Raises HTTP 401 if unauthenticated, HTTP 403 if not admin."""
    user = get_current_user(request)
    if not user.is_admin:
        raise HTTPException(
            status_code=403,
            detail={"code": "forbidden", "message": "Admin access required."},
        )
    return user
