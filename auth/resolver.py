"""
auth/resolver.py -- Decide who the caller is, once per request.

State machine, evaluated from scratch on every call (no decision is cached):

  1. Load the current ProxyTrustConfig through the injected accessor.
  2. Proxy path -- taken only when ALL of these hold:
       proxy auth is enabled,
       a username header is present (see precedence below),
       the source address passes the whitelist.
     The user is looked up or provisioned, the identity is marked
     proxy-authenticated, and the session cookie is NOT consulted at all.
  3. Session path -- otherwise, a session cookie is looked up in the
     SessionStore; a live session yields its owner.
  4. Anonymous -- otherwise. Authorization is the route layer's business.
  5. Any exception on the way (config load, provisioning, storage) yields an
     anonymous, degraded identity. An error never grants identity and never
     falls through from a failed proxy attempt to the session cookie.

Header precedence: the configured header name first, then the fixed
fallbacks in declared order; the first non-empty value wins.

  username: <configured>, X-Forwarded-User, Remote-User
  email:    <configured>, X-Forwarded-Email, Remote-Email

Trust flows one way. A proxy assertion from a trusted source overrides any
cookie; a cookie never overrides a proxy assertion; headers from an
untrusted source are ignored (and logged), never honoured.

Dependencies are injected at construction (config accessor, session store,
provisioner, whitelist matcher) so the resolver holds no module-level state
and tests can substitute any of them.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field

from auth.models import ANONYMOUS, AuthMethod, Identity, LookupStatus, ProxyTrustConfig
from auth.provisioning import UserProvisioner
from auth.sessions import SessionStore
from auth.whitelist import WhitelistMatcher

logger = logging.getLogger("homeboard.auth.resolver")

FALLBACK_USERNAME_HEADERS = ("X-Forwarded-User", "Remote-User")
FALLBACK_EMAIL_HEADERS = ("X-Forwarded-Email", "Remote-Email")

DEGRADED = Identity(degraded=True)


@dataclass(frozen=True)
class RequestMeta:
    """The parts of a request identity resolution looks at.

    Header names are stored lower-cased; use build() rather than the
    constructor when headers come from an arbitrary mapping.
    """

    remote_addr: str | None
    headers: Mapping[str, str] = field(default_factory=dict)
    cookies: Mapping[str, str] = field(default_factory=dict)

    @classmethod
    def build(
        cls,
        remote_addr: str | None,
        headers: Mapping[str, str] | None = None,
        cookies: Mapping[str, str] | None = None,
    ) -> RequestMeta:
        # Starlette Headers.items() yields repeated names; the first one wins,
        # as with Headers.get().
        lowered: dict[str, str] = {}
        for name, value in (headers or {}).items():
            lowered.setdefault(name.lower(), value)
        return cls(remote_addr=remote_addr, headers=lowered, cookies=dict(cookies or {}))


def first_header(headers: Mapping[str, str], names: Iterable[str]) -> str | None:
    """Return the first non-blank value among names, checked in order."""
    for name in names:
        if not name:
            continue
        value = headers.get(name.lower())
        if value and value.strip():
            return value.strip()
    return None


class IdentityResolver:
    """Per-request identity decision.

    Usage:
        resolver = IdentityResolver(
            load_proxy_config=config_store.get_proxy_config,
            sessions=session_store,
            provisioner=provisioner,
        )
        identity = resolver.resolve(RequestMeta.build("172.19.5.5", headers, cookies))
    """

    def __init__(
        self,
        load_proxy_config: Callable[[], ProxyTrustConfig],
        sessions: SessionStore,
        provisioner: UserProvisioner,
        matcher: WhitelistMatcher | None = None,
        cookie_name: str = "session_id",
    ) -> None:
        self._load_proxy_config = load_proxy_config
        self.sessions = sessions
        self.provisioner = provisioner
        self.matcher = matcher or WhitelistMatcher()
        self.cookie_name = cookie_name

    def resolve(self, request: RequestMeta) -> Identity:
        """Return the caller's Identity. Never raises."""
        try:
            return self._resolve(request)
        except Exception:
            logger.exception("Identity resolution failed; treating request as unauthenticated")
            return DEGRADED

    def _resolve(self, request: RequestMeta) -> Identity:
        proxy = self._load_proxy_config()

        username = first_header(request.headers, (proxy.header_name, *FALLBACK_USERNAME_HEADERS))
        if username is not None:
            if not proxy.enabled:
                logger.debug("Proxy identity headers present but proxy auth is disabled; ignoring them")
            elif not self.matcher.is_trusted(request.remote_addr, proxy.whitelist):
                logger.warning(
                    "Ignoring proxy identity headers from untrusted source %s (user=%r)",
                    request.remote_addr,
                    username,
                )
            else:
                email = first_header(request.headers, (proxy.email_header_name, *FALLBACK_EMAIL_HEADERS))
                user = self.provisioner.ensure_user(username, email)
                return Identity(user=user, method=AuthMethod.PROXY)

        return self._resolve_session(request)

    def _resolve_session(self, request: RequestMeta) -> Identity:
        token = request.cookies.get(self.cookie_name)
        if not token:
            return ANONYMOUS
        lookup = self.sessions.lookup(token)
        if lookup.status is LookupStatus.ERROR:
            return DEGRADED
        if not lookup.found:
            return ANONYMOUS
        return Identity(user=lookup.user, method=AuthMethod.SESSION, session=lookup.session)
