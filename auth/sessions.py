"""
auth/sessions.py -- Opaque server-side session tokens.

Security design:
  Tokens: secrets.token_urlsafe(32) -- 256 bits from the OS CSPRNG. The raw
      token is handed to the client once, in the session cookie, and never
      stored. The sessions table keys rows by HMAC-SHA256(SECRET_KEY, token)
      so a leaked database does not yield usable cookies, and lookup stays a
      single primary-key read.

  Validity: a session is valid iff now < expires_at, with now read from the
      server clock at lookup time. Nothing about validity is cached between
      calls. An expired row found during lookup is deleted on the spot (lazy
      deletion); purge_expired() is the optional reaper.

  Fail-closed: lookup() returns a typed SessionLookup. Unknown, expired and
      malformed tokens are NOT_FOUND; a storage failure is ERROR, logged at
      ERROR with traceback. validate() collapses both to None so one bad
      lookup degrades a single request to unauthenticated instead of failing
      it.

  Revocation is idempotent: revoking an unknown or already-revoked token is
      not an error.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
import time
from collections.abc import Callable

from sqlalchemy import and_, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from auth.models import LookupStatus, Session, SessionLookup, User
from database.schema import sessions as _sessions
from database.schema import users as _users

logger = logging.getLogger("homeboard.auth.sessions")

# 32 random bytes -> 43 URL-safe characters.
_TOKEN_BYTES = 32
# Anything longer cannot be one of ours; skip the hash and the query.
_MAX_TOKEN_LENGTH = 128


class SessionStore:
    """Create, look up and revoke sessions.

    Usage:
        sessions = SessionStore(engine, secret_key=settings.secret_key)
        session = sessions.create(user, ttl=86400, ip_address="10.0.0.2")
        user = sessions.validate(session.token)   # User or None
        sessions.revoke(session.token)

    clock is injectable (epoch seconds) so expiry can be tested without
    sleeping.
    """

    def __init__(self, engine: Engine, secret_key: str, clock: Callable[[], float] = time.time) -> None:
        if not secret_key:
            raise ValueError("SessionStore requires a non-empty secret_key")
        self.engine = engine
        self._secret = secret_key.encode("utf-8")
        self._clock = clock

    def hash_token(self, token: str) -> str:
        """Return HMAC-SHA256(SECRET_KEY, token) as a hex string."""
        return hmac.new(self._secret, token.encode("utf-8"), hashlib.sha256).hexdigest()

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    def create(
        self,
        user: User,
        ttl: int | float,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> Session:
        """Persist a new session for user expiring ttl seconds from now.

        The returned Session carries the raw token in .token; it is the only
        place the raw value exists server-side. Storage errors propagate --
        a login that cannot create its session must fail visibly.
        """
        if user.id is None:
            raise ValueError("Cannot create a session for an unsaved user")
        if ttl <= 0:
            raise ValueError(f"Session TTL must be positive, got {ttl}")

        token = secrets.token_urlsafe(_TOKEN_BYTES)
        now = self._clock()
        session = Session(
            token_hash=self.hash_token(token),
            user_id=user.id,
            created_at=now,
            expires_at=now + ttl,
            ip_address=ip_address,
            user_agent=user_agent[:512] if user_agent else None,
            token=token,
        )
        with self.engine.begin() as conn:
            conn.execute(
                _sessions.insert().values(
                    token_hash=session.token_hash,
                    user_id=session.user_id,
                    created_at=session.created_at,
                    expires_at=session.expires_at,
                    ip_address=session.ip_address,
                    user_agent=session.user_agent,
                )
            )
        logger.debug("Session created for user_id=%s (ttl=%ss)", user.id, ttl)
        return session

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def lookup(self, token: str | None) -> SessionLookup:
        """Find the live session for token and its owning user.

        Never raises. Storage failures come back as LookupStatus.ERROR.
        """
        if not token or len(token) > _MAX_TOKEN_LENGTH:
            return SessionLookup(LookupStatus.NOT_FOUND)

        token_hash = self.hash_token(token)
        try:
            with self.engine.connect() as conn:
                row = conn.execute(
                    select(_sessions, _users)
                    .select_from(_sessions.join(_users, _users.c.id == _sessions.c.user_id))
                    .where(_sessions.c.token_hash == token_hash)
                ).fetchone()

            if row is None:
                return SessionLookup(LookupStatus.NOT_FOUND)

            session = _row_to_session(row)
            if not session.is_valid_at(self._clock()):
                self._delete(token_hash)
                return SessionLookup(LookupStatus.NOT_FOUND)

            return SessionLookup(LookupStatus.FOUND, session=session, user=_row_to_owner(row))
        except SQLAlchemyError:
            logger.exception("Session lookup failed; treating request as unauthenticated")
            return SessionLookup(LookupStatus.ERROR)

    def validate(self, token: str | None) -> User | None:
        """Return the owning User of a live session, None otherwise (fail-closed)."""
        result = self.lookup(token)
        return result.user if result.found else None

    # ------------------------------------------------------------------
    # Revoke / list / reap
    # ------------------------------------------------------------------

    def revoke(self, token: str | None) -> None:
        """Delete the session for token. Idempotent."""
        if not token or len(token) > _MAX_TOKEN_LENGTH:
            return
        self._delete(self.hash_token(token))

    def revoke_by_id(self, token_hash: str, user_id: int) -> bool:
        """Delete one of user_id's sessions by its public id (the token hash).

        user_id is part of the WHERE clause so a user cannot revoke someone
        else's session by guessing an id. Returns True if a row was deleted.
        """
        with self.engine.begin() as conn:
            result = conn.execute(
                _sessions.delete().where(
                    and_(_sessions.c.token_hash == token_hash, _sessions.c.user_id == user_id)
                )
            )
        return result.rowcount > 0

    def revoke_all_for_user(self, user_id: int) -> int:
        """Delete every session of user_id. Returns the number removed."""
        with self.engine.begin() as conn:
            result = conn.execute(_sessions.delete().where(_sessions.c.user_id == user_id))
        return result.rowcount

    def list_for_user(self, user_id: int) -> list[Session]:
        """Return the user's unexpired sessions, newest first."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _sessions.select()
                .where(and_(_sessions.c.user_id == user_id, _sessions.c.expires_at > self._clock()))
                .order_by(_sessions.c.created_at.desc())
            ).fetchall()
        return [_row_to_session(r) for r in rows]

    def purge_expired(self) -> int:
        """Delete every expired session. Returns the number removed."""
        with self.engine.begin() as conn:
            result = conn.execute(_sessions.delete().where(_sessions.c.expires_at <= self._clock()))
        if result.rowcount:
            logger.debug("Purged %d expired sessions", result.rowcount)
        return result.rowcount

    def _delete(self, token_hash: str) -> None:
        with self.engine.begin() as conn:
            conn.execute(_sessions.delete().where(_sessions.c.token_hash == token_hash))


# ---------------------------------------------------------------------------
# Row mappers
# ---------------------------------------------------------------------------


def _row_to_session(row) -> Session:
    # Keyed by Column objects: joined rows carry two "created_at" columns.
    m = row._mapping
    return Session(
        token_hash=m[_sessions.c.token_hash],
        user_id=m[_sessions.c.user_id],
        created_at=m[_sessions.c.created_at],
        expires_at=m[_sessions.c.expires_at],
        ip_address=m[_sessions.c.ip_address],
        user_agent=m[_sessions.c.user_agent],
    )


def _row_to_owner(row) -> User:
    m = row._mapping
    return User(
        id=m[_users.c.id],
        username=m[_users.c.username],
        email=m[_users.c.email],
        hashed_password=m[_users.c.hashed_password],
        group_id=m[_users.c.group_id],
        is_setup_admin=bool(m[_users.c.is_setup_admin]),
        created_at=m[_users.c.created_at],
        last_login=m[_users.c.last_login],
    )
