"""
database/migrations.py -- The ordered registry of schema migration steps.

Each step is a plain object: the version it transitions the store TO, a short
name for logs, and an apply(conn) function that runs inside the transaction
the runner opens for it. Steps never commit, never open their own
transactions and never stamp the version -- the runner does all three, so a
step can be executed against any Connection (including a throwaway test
database) with identical results.

Rules for adding a step:
  - Next integer version, no gaps. validate_steps() refuses a registry with a
    gap or duplicate at import time.
  - Idempotent: guard ALTER TABLE ADD COLUMN with a column check
    and use IF NOT EXISTS for CREATE. A store upgraded by a pre-migrator
    release may already carry part of the change.
  - Update database/schema.py in the same change (FRESH stores are created
    from it directly).

Version 1 is the baseline. Stores created before the migrator existed have
user_version 0 but already contain tables; step 1 is written with
IF NOT EXISTS so it adopts them instead of failing.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass

from sqlalchemy import inspect, text
from sqlalchemy.engine import Connection


@dataclass(frozen=True)
class MigrationStep:
    """One unit of schema change, identified by the version it transitions to."""

    version: int
    name: str
    apply: Callable[[Connection], None]

    def __str__(self) -> str:
        return f"v{self.version} ({self.name})"


_REGISTRY: list[MigrationStep] = []


def migration(version: int, name: str) -> Callable[[Callable[[Connection], None]], Callable[[Connection], None]]:
    """Register the decorated function as the step for version."""

    def register(fn: Callable[[Connection], None]) -> Callable[[Connection], None]:
        _REGISTRY.append(MigrationStep(version=version, name=name, apply=fn))
        return fn

    return register


def validate_steps(steps: Iterable[MigrationStep]) -> tuple[MigrationStep, ...]:
    """Return steps sorted by version, or raise ValueError on a gap or duplicate.

    Versions must be exactly 1..N. A gap would make the runner skip a change
    silently; a duplicate would make the applied schema depend on list order.
    """
    ordered = tuple(sorted(steps, key=lambda s: s.version))
    for expected, step in enumerate(ordered, start=1):
        if step.version != expected:
            seen = [s.version for s in ordered]
            raise ValueError(f"Migration versions must be contiguous from 1; got {seen}")
    return ordered


# ---------------------------------------------------------------------------
# Helpers for step bodies
# ---------------------------------------------------------------------------


def _column_names(conn: Connection, table: str) -> set[str]:
    return {col["name"] for col in inspect(conn).get_columns(table)}


def _add_column(conn: Connection, table: str, column_ddl: str) -> None:
    """ALTER TABLE ADD COLUMN unless the column already exists.

    SQLite does not support IF NOT EXISTS in ALTER TABLE, so existence is
    checked through the inspector first.
    """
    column = column_ddl.split()[0]
    if column not in _column_names(conn, table):
        conn.execute(text(f"ALTER TABLE {table} ADD COLUMN {column_ddl}"))


# ---------------------------------------------------------------------------
# Steps
# ---------------------------------------------------------------------------


@migration(1, "initial_schema")
def _initial_schema(conn: Connection) -> None:
    conn.execute(
        text(
            """
            CREATE TABLE IF NOT EXISTS users (
                id INTEGER NOT NULL PRIMARY KEY,
                username VARCHAR(255) NOT NULL UNIQUE,
                hashed_password TEXT,
                group_id VARCHAR(30) DEFAULT 'user' NOT NULL,
                is_setup_admin INTEGER DEFAULT '0' NOT NULL,
                created_at VARCHAR(32) NOT NULL,
                last_login VARCHAR(32)
            )
            """
        )
    )
    conn.execute(
        text(
            """
            CREATE TABLE IF NOT EXISTS sessions (
                token_hash VARCHAR(64) NOT NULL PRIMARY KEY,
                user_id INTEGER NOT NULL REFERENCES users (id) ON DELETE CASCADE,
                created_at FLOAT NOT NULL,
                expires_at FLOAT NOT NULL
            )
            """
        )
    )
    conn.execute(
        text(
            """
            CREATE TABLE IF NOT EXISTS system_config (
                "key" VARCHAR(100) NOT NULL PRIMARY KEY,
                value TEXT NOT NULL
            )
            """
        )
    )


@migration(2, "add_user_email")
def _add_user_email(conn: Connection) -> None:
    _add_column(conn, "users", "email VARCHAR(255)")


@migration(3, "add_session_client_metadata")
def _add_session_client_metadata(conn: Connection) -> None:
    _add_column(conn, "sessions", "ip_address VARCHAR(45)")
    _add_column(conn, "sessions", "user_agent TEXT")


@migration(4, "add_session_indexes")
def _add_session_indexes(conn: Connection) -> None:
    conn.execute(text("CREATE INDEX IF NOT EXISTS idx_sessions_user_id ON sessions (user_id)"))
    conn.execute(text("CREATE INDEX IF NOT EXISTS idx_sessions_expires_at ON sessions (expires_at)"))


@migration(5, "add_system_config_updated_at")
def _add_system_config_updated_at(conn: Connection) -> None:
    _add_column(conn, "system_config", "updated_at VARCHAR(32)")


MIGRATIONS: tuple[MigrationStep, ...] = validate_steps(_REGISTRY)

# The version this build of Homeboard expects to find in the store.
EXPECTED_VERSION: int = MIGRATIONS[-1].version
