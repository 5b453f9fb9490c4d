"""
database/version.py -- The single integer schema version stamped in the store.

SQLite keeps the version in the database header (PRAGMA user_version). The
pragma is transactional: a version written inside a step's transaction is
rolled back together with the step if the step fails, so the stored version
can never run ahead of the schema it describes.

Other dialects have no equivalent header field. For them the version lives in
a single-row schema_meta table whose CHECK (id = 1) constraint enforces the
single-row invariant at the DB level.

Every method takes an open Connection rather than an Engine so the caller
decides the transaction boundary.
"""

from __future__ import annotations

from sqlalchemy import inspect, text
from sqlalchemy.engine import Connection

# A store with no version stamped and none of these tables is FRESH.
_SENTINEL_TABLE = "users"


class SchemaVersionStore:
    """Read and stamp the schema version.

    Usage:
        versions = SchemaVersionStore()
        with engine.begin() as conn:
            current = versions.get_version(conn)
            versions.set_version(conn, current + 1)
    """

    def get_version(self, conn: Connection) -> int:
        """Return the stamped version, 0 when nothing has been stamped yet."""
        if conn.dialect.name == "sqlite":
            return int(conn.exec_driver_sql("PRAGMA user_version").scalar() or 0)
        if not inspect(conn).has_table("schema_meta"):
            return 0
        return int(conn.execute(text("SELECT version FROM schema_meta WHERE id = 1")).scalar() or 0)

    def set_version(self, conn: Connection, version: int) -> None:
        """Stamp version. Callers enforce monotonicity; see database/runner.py."""
        version = int(version)
        if version < 0:
            raise ValueError(f"Schema version must be non-negative, got {version}")
        if conn.dialect.name == "sqlite":
            # PRAGMA does not accept bound parameters; version is a validated int.
            conn.exec_driver_sql(f"PRAGMA user_version = {version}")
            return
        conn.execute(
            text(
                """
                CREATE TABLE IF NOT EXISTS schema_meta (
                    id INTEGER PRIMARY KEY CHECK (id = 1),
                    version INTEGER NOT NULL
                )
                """
            )
        )
        updated = conn.execute(text("UPDATE schema_meta SET version = :v WHERE id = 1"), {"v": version})
        if updated.rowcount == 0:
            conn.execute(text("INSERT INTO schema_meta (id, version) VALUES (1, :v)"), {"v": version})

    def is_fresh(self, conn: Connection) -> bool:
        """True when no version is stamped and the store holds no application tables."""
        return self.get_version(conn) == 0 and not inspect(conn).has_table(_SENTINEL_TABLE)
