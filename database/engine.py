"""
database/engine.py -- SQLAlchemy engine factory shared by every store.

One engine per process. The stores (users, sessions, system config) and the
migration runner all receive the same Engine, so its connection pool is the
only piece of shared mutable state between concurrent requests.

SQLite specifics:
  check_same_thread=False -- FastAPI runs sync handlers in a thread pool.

  WAL journal mode -- readers proceed without blocking during writes. Set per
      connection because SQLite PRAGMAs are not inherited by new connections
      from the pool.

  foreign_keys=ON -- sessions reference users with ON DELETE CASCADE; SQLite
      ignores the clause unless the pragma is on for that connection.

  Transactional DDL -- the pysqlite driver only opens a transaction before
      DML, so an ALTER TABLE in a migration would otherwise autocommit on its
      own. The driver's implicit handling is switched off and BEGIN is emitted
      by SQLAlchemy's "begin" event instead, which makes every statement in a
      migration step part of one transaction.
"""

from __future__ import annotations

import logging
from pathlib import Path

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine, make_url

logger = logging.getLogger("homeboard.database")


def _on_sqlite_connect(dbapi_conn, connection_record) -> None:
    # Disable pysqlite's own BEGIN handling; _on_sqlite_begin takes over.
    dbapi_conn.isolation_level = None
    dbapi_conn.execute("PRAGMA journal_mode=WAL")
    dbapi_conn.execute("PRAGMA foreign_keys=ON")


def _on_sqlite_begin(conn) -> None:
    conn.exec_driver_sql("BEGIN")


def create_db_engine(db_url: str) -> Engine:
    """Build the process-wide Engine for db_url.

    For file-backed SQLite URLs the parent directory is created if missing so
    a first start against an empty DATA_DIR works.
    """
    connect_args: dict = {}
    is_sqlite = db_url.startswith("sqlite")
    if is_sqlite:
        connect_args["check_same_thread"] = False
        database = make_url(db_url).database
        if database and database != ":memory:" and not database.startswith("file:"):
            Path(database).parent.mkdir(parents=True, exist_ok=True)

    engine = create_engine(db_url, connect_args=connect_args)
    if is_sqlite:
        event.listen(engine, "connect", _on_sqlite_connect)
        event.listen(engine, "begin", _on_sqlite_begin)
    logger.debug("Engine created for %s", engine.url.render_as_string(hide_password=True))
    return engine


def sqlite_file_path(engine: Engine) -> Path | None:
    """Return the on-disk path of a file-backed SQLite engine, else None.

    In-memory and URI-style (file:...?mode=memory) databases have no file to
    back up, so they yield None as well.
    """
    if engine.dialect.name != "sqlite":
        return None
    database = engine.url.database
    if not database or database == ":memory:" or database.startswith("file:"):
        return None
    return Path(database)
