"""
auth/cookies.py -- Session cookie helpers.

httponly=True: JS cannot read the cookie (XSS mitigation).
samesite="lax": sent on same-site requests and top-level GET navigations,
    not on cross-site POST -- CSRF mitigation for the login/logout forms.
secure: only sent over HTTPS when SECURE_COOKIES=true (set in production).
max_age: matches the session TTL chosen at login so both expire together.
"""

from __future__ import annotations

from core.config import Settings


def set_session_cookie(response, token: str, max_age: int, settings: Settings) -> None:
    """Write the raw session token as an httpOnly cookie on the response."""
    response.set_cookie(
        settings.session_cookie_name,
        value=token,
        httponly=True,
        samesite="lax",
        secure=settings.secure_cookies,
        max_age=int(max_age),
        path="/",
    )


def clear_session_cookie(response, settings: Settings) -> None:
    response.delete_cookie(
        settings.session_cookie_name,
        path="/",
        httponly=True,
        samesite="lax",
        secure=settings.secure_cookies,
    )
