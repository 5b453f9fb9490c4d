"""
database/schema.py -- Current table definitions (SQLAlchemy Core).

These Table objects describe the schema at EXPECTED_VERSION. They serve two
purposes:

  1. Query building for the stores in auth/ (users, sessions, system_config).
  2. One-shot creation of a FRESH store: the runner calls
     metadata.create_all() and stamps the expected version directly instead of
     replaying every step.

Invariant: applying every step in database/migrations.py to an empty store
must produce the same tables, columns and indexes as create_all() here. When
a step is added, update this module in the same change.
"""

from sqlalchemy import Column, Float, ForeignKey, Index, Integer, MetaData, String, Table, Text

metadata = MetaData()

users = Table(
    "users",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    # Case-sensitive lookup key. Proxy-provisioned and local users share it.
    Column("username", String(255), nullable=False, unique=True),
    Column("email", String(255)),
    # bcrypt hash, or an unusable "!"-prefixed placeholder for provisioned users.
    Column("hashed_password", Text),
    Column("group_id", String(30), nullable=False, server_default="user"),
    Column("is_setup_admin", Integer, nullable=False, server_default="0"),
    Column("created_at", String(32), nullable=False),
    Column("last_login", String(32)),
)

sessions = Table(
    "sessions",
    metadata,
    # HMAC-SHA256 of the raw token; the raw token only ever lives in the cookie.
    Column("token_hash", String(64), primary_key=True),
    Column("user_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
    Column("created_at", Float, nullable=False),  # epoch seconds
    Column("expires_at", Float, nullable=False),  # epoch seconds
    Column("ip_address", String(45)),
    Column("user_agent", Text),
    Index("idx_sessions_user_id", "user_id"),
    Index("idx_sessions_expires_at", "expires_at"),
)

system_config = Table(
    "system_config",
    metadata,
    Column("key", String(100), primary_key=True),
    Column("value", Text, nullable=False),  # JSON document
    Column("updated_at", String(32)),
)
