"""
database/runner.py -- Startup schema migration: detect, apply, or refuse.

Pattern: State machine over the stamped version vs. the version this build
expects (EXPECTED_VERSION from database/migrations.py):

  FRESH    no version stamped and no tables -- create the current schema from
           database/schema.py and stamp the expected version.
  CURRENT  stored == expected -- nothing to do, nothing written.
  BEHIND   stored < expected -- apply stored+1 .. expected strictly in order,
           one transaction per step. A failing step rolls back alone; the
           store stays at the last committed version.
  AHEAD    stored > expected -- a downgrade. Refuse unconditionally: the newer
           schema may have shapes this build cannot interpret.

Fatal on failure by intent. run() raises DowngradeError or
MigrationStepError and never returns a partial success. The CLI turns either
into exit status 1; the ASGI lifespan lets them propagate so the listener
never starts. Recovery ("fix and restart", "restore a backup") is the
operator's job.

Statement timeout: each step runs under a deadline
(Settings.migration_statement_timeout_seconds). On SQLite a progress handler
interrupts the running statement once the deadline passes; on PostgreSQL
SET LOCAL statement_timeout is issued inside the step's transaction. Either
way a pathological step fails with a diagnostic instead of hanging startup.

Migrations run strictly before the listener binds. Steps never run
concurrently.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from sqlalchemy import MetaData
from sqlalchemy.engine import Connection, Engine

from core.config import Settings
from database.backup import create_backup
from database.migrations import MIGRATIONS, MigrationStep, validate_steps
from database.schema import metadata as current_metadata
from database.version import SchemaVersionStore

logger = logging.getLogger("homeboard.database.migrations")

# SQLite VM instructions between progress-handler callbacks.
_PROGRESS_INTERVAL = 10_000


# ---------------------------------------------------------------------------
# Status and result types
# ---------------------------------------------------------------------------


class MigrationState(str, Enum):
    FRESH = "fresh"
    CURRENT = "current"
    BEHIND = "behind"
    AHEAD = "ahead"


@dataclass(frozen=True)
class MigrationStatus:
    state: MigrationState
    current_version: int
    expected_version: int

    @property
    def needs_migration(self) -> bool:
        return self.state in (MigrationState.FRESH, MigrationState.BEHIND)

    @property
    def is_downgrade(self) -> bool:
        return self.state is MigrationState.AHEAD


@dataclass
class MigrationResult:
    state: MigrationState
    migrated_from: int
    migrated_to: int
    applied: list[MigrationStep] = field(default_factory=list)
    backup_path: Path | None = None


class MigrationError(RuntimeError):
    """Base class for every condition that must stop startup."""


class DowngradeError(MigrationError):
    def __init__(self, current_version: int, expected_version: int) -> None:
        self.current_version = current_version
        self.expected_version = expected_version
        super().__init__(
            f"Database schema (v{current_version}) is newer than this build expects "
            f"(v{expected_version}). Upgrade Homeboard or restore a backup."
        )


class MigrationStepError(MigrationError):
    def __init__(self, step: MigrationStep, last_committed_version: int, cause: BaseException) -> None:
        self.step = step
        self.last_committed_version = last_committed_version
        self.cause = cause
        super().__init__(
            f"Migration {step} failed: {cause}. "
            f"Store left at v{last_committed_version}; fix the cause and restart, or restore a backup."
        )


# ---------------------------------------------------------------------------
# Runner
# ---------------------------------------------------------------------------


class MigrationRunner:
    """Bring the store to the expected schema version or refuse.

    Usage:
        runner = MigrationRunner(engine, backup_dir=Path("data/backups"))
        status = runner.check_migration_status()
        result = runner.run()   # raises MigrationError subclasses on refusal

    steps and schema_metadata are injectable so tests can drive the state
    machine with synthetic steps against a throwaway store.
    """

    def __init__(
        self,
        engine: Engine,
        steps: Iterable[MigrationStep] = MIGRATIONS,
        versions: SchemaVersionStore | None = None,
        *,
        schema_metadata: MetaData = current_metadata,
        backup_dir: Path | None = None,
        max_backups: int = 3,
        statement_timeout: float | None = None,
    ) -> None:
        self.engine = engine
        self.steps = validate_steps(steps)
        if not self.steps:
            raise ValueError("At least one migration step (the baseline) is required")
        self.expected_version = self.steps[-1].version
        self.versions = versions or SchemaVersionStore()
        self.schema_metadata = schema_metadata
        self.backup_dir = backup_dir
        self.max_backups = max_backups
        self.statement_timeout = statement_timeout

    @classmethod
    def from_settings(cls, engine: Engine, settings: Settings) -> MigrationRunner:
        """The runner both entry points use: real steps, configured backups and deadline."""
        return cls(
            engine,
            backup_dir=settings.backup_dir,
            max_backups=settings.max_backups,
            statement_timeout=settings.migration_statement_timeout_seconds,
        )

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def check_migration_status(self) -> MigrationStatus:
        """Classify the store. Read-only."""
        with self.engine.connect() as conn:
            fresh = self.versions.is_fresh(conn)
            current = self.versions.get_version(conn)

        if fresh:
            state = MigrationState.FRESH
        elif current == self.expected_version:
            state = MigrationState.CURRENT
        elif current < self.expected_version:
            state = MigrationState.BEHIND
        else:
            state = MigrationState.AHEAD
        return MigrationStatus(state=state, current_version=current, expected_version=self.expected_version)

    def pending_steps(self, status: MigrationStatus | None = None) -> list[MigrationStep]:
        """Steps a run() would apply, in order. Empty unless the store is BEHIND."""
        status = status or self.check_migration_status()
        if status.state is not MigrationState.BEHIND:
            return []
        return [s for s in self.steps if s.version > status.current_version]

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    def run(self) -> MigrationResult:
        status = self.check_migration_status()

        if status.is_downgrade:
            raise DowngradeError(status.current_version, status.expected_version)

        if status.state is MigrationState.CURRENT:
            logger.debug("Database at version %d, no migration needed", status.current_version)
            return MigrationResult(
                state=status.state,
                migrated_from=status.current_version,
                migrated_to=status.current_version,
            )

        if status.state is MigrationState.FRESH:
            self._initialize_fresh()
            logger.info("Fresh database initialized at schema v%d", self.expected_version)
            return MigrationResult(state=status.state, migrated_from=0, migrated_to=self.expected_version)

        pending = self.pending_steps(status)
        logger.info(
            "Running %d migration(s) (v%d -> v%d)",
            len(pending),
            status.current_version,
            status.expected_version,
        )
        backup_path = self._backup(status.current_version)

        last_committed = status.current_version
        applied: list[MigrationStep] = []
        for step in pending:
            self._apply(step, last_committed)
            last_committed = step.version
            applied.append(step)

        logger.info("All migrations complete (v%d -> v%d)", status.current_version, last_committed)
        return MigrationResult(
            state=status.state,
            migrated_from=status.current_version,
            migrated_to=last_committed,
            applied=applied,
            backup_path=backup_path,
        )

    def _initialize_fresh(self) -> None:
        with self.engine.begin() as conn:
            self.schema_metadata.create_all(conn)
            self.versions.set_version(conn, self.expected_version)

    def _backup(self, current_version: int) -> Path | None:
        if self.backup_dir is None:
            return None
        try:
            return create_backup(self.engine, self.backup_dir, current_version, self.max_backups)
        except Exception:
            # A missing snapshot does not make the migration itself unsafe.
            logger.warning("Failed to create pre-migration backup, proceeding anyway", exc_info=True)
            return None

    def _apply(self, step: MigrationStep, last_committed: int) -> None:
        logger.info("Running migration %s", step)
        started = time.monotonic()
        try:
            with self.engine.begin() as conn:
                with _statement_deadline(conn, self.statement_timeout):
                    step.apply(conn)
                self.versions.set_version(conn, step.version)
        except Exception as exc:
            raise MigrationStepError(step, last_committed, exc) from exc
        logger.info("Migration %s complete in %.1fms", step, (time.monotonic() - started) * 1000)


# ---------------------------------------------------------------------------
# Statement deadline
# ---------------------------------------------------------------------------


@contextmanager
def _statement_deadline(conn: Connection, seconds: float | None) -> Iterator[None]:
    """Bound how long the statements issued inside the block may run."""
    if not seconds or seconds <= 0:
        yield
        return

    dialect = conn.dialect.name
    if dialect == "sqlite":
        raw = conn.connection.driver_connection
        deadline = time.monotonic() + seconds
        raw.set_progress_handler(lambda: 1 if time.monotonic() > deadline else 0, _PROGRESS_INTERVAL)
        try:
            yield
        finally:
            raw.set_progress_handler(None, 0)
    elif dialect == "postgresql":
        conn.exec_driver_sql(f"SET LOCAL statement_timeout = {int(seconds * 1000)}")
        yield
    else:
        logger.debug("Statement timeout not supported on %s; running without one", dialect)
        yield


# ---------------------------------------------------------------------------
# Startup entry point
# ---------------------------------------------------------------------------


def run_startup_migrations(runner: MigrationRunner) -> MigrationResult:
    """Run migrations, logging refusal at CRITICAL before re-raising.

    Both entry points call this: main.py turns the exception into exit status
    1, the ASGI lifespan lets it abort startup.
    """
    try:
        return runner.run()
    except DowngradeError as exc:
        logger.critical("Refusing to start: %s", exc)
        raise
    except MigrationStepError as exc:
        logger.critical(
            "Refusing to start: migration to v%d (%s) failed; store remains at v%d",
            exc.step.version,
            exc.step.name,
            exc.last_committed_version,
            exc_info=exc.cause,
        )
        raise
