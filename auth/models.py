"""
auth/models.py -- Domain dataclasses for identity entities.

Pattern: Data class (pure data container, zero logic beyond derived
properties). Stores and the resolver do the work; api/models.py owns the
HTTP representation.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


@dataclass
class User:
    """A local identity record.

    hashed_password is a bcrypt hash for users who log in with a password, an
    unusable "!"-prefixed placeholder for users created by proxy
    provisioning, or None for records created without any credential. The
    placeholder never verifies, so provisioned accounts are reachable only
    through the proxy path.

    group_id names a permission group ("admin", "user", "guest").
    """

    username: str
    group_id: str = "user"
    id: int | None = None
    email: str | None = None
    hashed_password: str | None = None
    is_setup_admin: bool = False
    created_at: str | None = None
    last_login: str | None = None

    @property
    def is_admin(self) -> bool:
        return self.group_id == "admin"


@dataclass
class Session:
    """A server-side login session.

    token_hash is HMAC-SHA256(SECRET_KEY, raw token) and doubles as the
    session's public identifier. token carries the raw value only on the
    object returned by SessionStore.create(); it is never persisted and never
    reconstructed from storage.

    Timestamps are epoch seconds (float).
    """

    token_hash: str
    user_id: int
    created_at: float
    expires_at: float
    ip_address: str | None = None
    user_agent: str | None = None
    token: str | None = field(default=None, repr=False)

    def is_valid_at(self, now: float) -> bool:
        return now < self.expires_at


@dataclass(frozen=True)
class ProxyTrustConfig:
    """Proxy-header authentication settings as last saved by an administrator.

    whitelist is the raw comma-separated string (or list of strings) exactly
    as stored; auth/whitelist.py parses it per request.
    """

    enabled: bool = False
    header_name: str = "X-authentik-username"
    email_header_name: str = "X-authentik-email"
    whitelist: str | list[str] = ""
    override_logout: bool = False
    logout_url: str = ""


@dataclass(frozen=True)
class SessionTimeouts:
    """Session lifetimes in seconds. Each login picks one of them, once."""

    timeout: int = 86_400  # 24 hours
    remember_me: int = 2_592_000  # 30 days


@dataclass(frozen=True)
class AuthConfig:
    """Snapshot of the runtime auth configuration for a single request."""

    local_enabled: bool = True
    proxy: ProxyTrustConfig = field(default_factory=ProxyTrustConfig)
    session: SessionTimeouts = field(default_factory=SessionTimeouts)
    default_group: str = "user"


# ---------------------------------------------------------------------------
# Lookup and resolution results
# ---------------------------------------------------------------------------


class LookupStatus(str, Enum):
    FOUND = "found"
    NOT_FOUND = "not_found"
    ERROR = "error"


@dataclass(frozen=True)
class SessionLookup:
    """Typed outcome of a session lookup.

    NOT_FOUND covers unknown, expired and malformed tokens alike -- the caller
    cannot and need not tell them apart. ERROR means storage failed and the
    answer is unknown; it must never be treated as FOUND.
    """

    status: LookupStatus
    session: Session | None = None
    user: User | None = None

    @property
    def found(self) -> bool:
        return self.status is LookupStatus.FOUND


class AuthMethod(str, Enum):
    PROXY = "proxy"
    SESSION = "session"


@dataclass(frozen=True)
class Identity:
    """Result of resolving one request.

    user is None for anonymous requests. degraded is True when an error
    (config load, storage) forced the anonymous outcome; it exists for
    logging and diagnostics, never for authorization decisions.
    """

    user: User | None = None
    method: AuthMethod | None = None
    session: Session | None = None
    degraded: bool = False

    @property
    def is_authenticated(self) -> bool:
        return self.user is not None

    @property
    def proxy_authenticated(self) -> bool:
        return self.method is AuthMethod.PROXY


ANONYMOUS = Identity()
