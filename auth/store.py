"""
auth/store.py -- SQLAlchemy Core persistence for User records.

Pattern: Repository + Data Mapper. UserStore is the repository; _row_to_user
is the mapper. Route, resolver and provisioning code never touches SQL.

Security:
  All queries use bound parameters. No f-strings in SQL.

  username is UNIQUE at the SQL level. create_user() lets IntegrityError
  propagate: it is the signal UserProvisioner relies on to detect a
  concurrent first request for the same new username, and the admin route
  turns it into 409.

Schema ownership: the users table is created and evolved by the migration
system (database/migrations.py). The store assumes migrations have run.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import func, select
from sqlalchemy.engine import Engine

from auth.models import User
from database.schema import users as _users


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class UserStore:
    """Repository for User entities.

    Usage:
        store = UserStore(engine)
        store.create_user(User(username="admin", group_id="admin", hashed_password=hash_password("secret")))
        user = store.get_by_username("admin")
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def has_users(self) -> bool:
        """Return True if at least one user record exists."""
        with self.engine.connect() as conn:
            result = conn.execute(select(func.count()).select_from(_users)).scalar()
        return (result or 0) > 0

    def create_user(self, user: User) -> int:
        """Insert a new user and return its assigned database ID.

        Raises sqlalchemy.exc.IntegrityError if the username already exists.
        The INSERT is the first statement of its transaction so concurrent
        writers queue on the database lock instead of failing a read snapshot.
        """
        with self.engine.begin() as conn:
            result = conn.execute(
                _users.insert().values(
                    username=user.username,
                    email=user.email,
                    hashed_password=user.hashed_password,
                    group_id=user.group_id,
                    is_setup_admin=1 if user.is_setup_admin else 0,
                    created_at=_now_iso(),
                )
            )
            return result.inserted_primary_key[0]

    def get_by_username(self, username: str) -> User | None:
        """Look up a user by exact username (case-sensitive). Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.username == username)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_id(self, user_id: int) -> User | None:
        """Look up a user by primary key. Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def list_users(self) -> list[User]:
        """Return all users ordered by creation. Admin-only operation."""
        with self.engine.connect() as conn:
            rows = conn.execute(_users.select().order_by(_users.c.created_at, _users.c.id)).fetchall()
        return [_row_to_user(r) for r in rows]

    def delete_user(self, user_id: int) -> bool:
        """Delete a user. Their sessions go with them (ON DELETE CASCADE)."""
        with self.engine.begin() as conn:
            result = conn.execute(_users.delete().where(_users.c.id == user_id))
        return result.rowcount > 0

    def update_last_login(self, user_id: int) -> None:
        """Stamp the current UTC timestamp as last_login.

        Called on successful password login. Proxy-authenticated requests do
        not stamp it: every proxied request would otherwise become a write.
        """
        with self.engine.begin() as conn:
            conn.execute(_users.update().where(_users.c.id == user_id).values(last_login=_now_iso()))


# ---------------------------------------------------------------------------
# Row mapper (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        username=row.username,
        email=row.email,
        hashed_password=row.hashed_password,
        group_id=row.group_id,
        is_setup_admin=bool(row.is_setup_admin),
        created_at=row.created_at,
        last_login=row.last_login,
    )
