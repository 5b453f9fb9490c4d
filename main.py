#!/usr/bin/env python3
"""
Homeboard -- self-hosted dashboard server.

Usage:
  python main.py serve                  migrate, then start the HTTP server
  python main.py migrate                bring the schema to this build's version
  python main.py status                 show schema state and pending steps
  python main.py backups                list pre-migration backups, newest first
  python main.py create-user NAME       create a local user (prompts for a password)

Environment variables (or .env):
  SECRET_KEY    Required unless DEBUG=true. At least 32 characters.
  DATA_DIR      Where homeboard.db and backups/ live (default: ./data).
  DATABASE_URL  Overrides the database location entirely.

Exit status is 1 whenever the schema cannot be brought to the expected
version (downgrade or failed step); the store is left at its last committed
version in that case.
"""

import argparse
import getpass
import sys
from typing import Optional

from sqlalchemy.exc import IntegrityError

from auth.models import User
from auth.passwords import BCRYPT_MAX_BYTES, hash_password
from auth.store import UserStore
from core.config import Settings, get_settings
from core.log import configure_logging
from database.backup import list_backups
from database.engine import create_db_engine
from database.runner import MigrationError, MigrationRunner, run_startup_migrations


def _migrate(settings: Settings) -> int:
    engine = create_db_engine(settings.database_url)
    try:
        result = run_startup_migrations(MigrationRunner.from_settings(engine, settings))
    except MigrationError as e:
        print(f"  [!] {e}", file=sys.stderr)
        return 1
    finally:
        engine.dispose()

    if result.applied:
        names = ", ".join(str(step) for step in result.applied)
        print(f"  Migrated v{result.migrated_from} -> v{result.migrated_to}: {names}")
        if result.backup_path:
            print(f"  Backup written to {result.backup_path}")
    elif result.state.value == "fresh":
        print(f"  Initialized a new database at v{result.migrated_to}")
    else:
        print(f"  Schema is current (v{result.migrated_to})")
    return 0


def cmd_serve(args: argparse.Namespace, settings: Settings) -> int:
    if _migrate(settings) != 0:
        return 1

    import uvicorn

    # proxy_headers=False: request.client.host must be the real peer, never a
    # value taken from X-Forwarded-For. The proxy whitelist depends on it.
    uvicorn.run(
        "api.main:app",
        host=args.host or settings.host,
        port=args.port or settings.port,
        proxy_headers=False,
        log_level=settings.log_level.lower(),
    )
    return 0


def cmd_migrate(args: argparse.Namespace, settings: Settings) -> int:
    return _migrate(settings)


def cmd_status(args: argparse.Namespace, settings: Settings) -> int:
    engine = create_db_engine(settings.database_url)
    try:
        runner = MigrationRunner.from_settings(engine, settings)
        status = runner.check_migration_status()
        pending = runner.pending_steps(status)
    finally:
        engine.dispose()

    print(f"  State:    {status.state.value}")
    print(f"  Stored:   v{status.current_version}")
    print(f"  Expected: v{status.expected_version}")
    for step in pending:
        print(f"  Pending:  {step}")
    if status.is_downgrade:
        print("  [!] The database is newer than this build. Upgrade Homeboard or restore a backup.")
        return 1
    return 0


def cmd_backups(args: argparse.Namespace, settings: Settings) -> int:
    backups = list_backups(settings.backup_dir)
    if not backups:
        print(f"  No backups in {settings.backup_dir}")
        return 0
    for b in backups:
        print(f"  {b.created:%Y-%m-%d %H:%M:%S}  {b.size:>10}  {b.filename}")
    return 0


def cmd_create_user(args: argparse.Namespace, settings: Settings) -> int:
    """Create a local user. The very first user becomes the setup admin."""
    if _migrate(settings) != 0:
        return 1

    password = getpass.getpass("Password: ")
    if len(password) < 8:
        print("  [!] Password must be at least 8 characters.", file=sys.stderr)
        return 1
    if len(password.encode("utf-8")) > BCRYPT_MAX_BYTES:
        print(f"  [!] Password must be at most {BCRYPT_MAX_BYTES} bytes.", file=sys.stderr)
        return 1
    if getpass.getpass("Confirm password: ") != password:
        print("  [!] Passwords do not match.", file=sys.stderr)
        return 1

    engine = create_db_engine(settings.database_url)
    try:
        store = UserStore(engine)
        first = not store.has_users()
        user = User(
            username=args.username,
            email=args.email,
            group_id="admin" if first else args.group,
            hashed_password=hash_password(password),
            is_setup_admin=first,
        )
        try:
            store.create_user(user)
        except IntegrityError:
            print(f"  [!] User '{args.username}' already exists.", file=sys.stderr)
            return 1
    finally:
        engine.dispose()

    suffix = " (setup admin)" if first else ""
    print(f"  Created user '{user.username}' in group '{user.group_id}'{suffix}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="homeboard",
        description="Self-hosted dashboard server.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")
    sub.required = True

    serve = sub.add_parser("serve", help="Migrate, then start the HTTP server")
    serve.add_argument("--host", default=None, help="Bind address (default: HOST setting)")
    serve.add_argument("--port", type=int, default=None, help="Bind port (default: PORT setting)")
    serve.set_defaults(func=cmd_serve)

    sub.add_parser("migrate", help="Bring the schema to this build's version").set_defaults(func=cmd_migrate)
    sub.add_parser("status", help="Show schema state and pending steps").set_defaults(func=cmd_status)
    sub.add_parser("backups", help="List pre-migration backups").set_defaults(func=cmd_backups)

    create = sub.add_parser("create-user", help="Create a local user")
    create.add_argument("username")
    create.add_argument("--email", default=None)
    create.add_argument(
        "--group",
        choices=["admin", "user", "guest"],
        default="user",
        help="Permission group (ignored for the first user, who is always admin)",
    )
    create.set_defaults(func=cmd_create_user)
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    settings = get_settings()
    configure_logging(settings.log_level)
    return args.func(args, settings)


if __name__ == "__main__":
    sys.exit(main())
