"""
auth/schema.py -- SQLAlchemy Core tables and engine factory for the identity core.

All three stores (UserStore, SessionStore, CodeVerifier) share one MetaData and
one Engine, so the schema lives here rather than in any single store.

Uniqueness is enforced by the database, never by check-then-insert in code:
  users.email                              unique among non-deleted users (partial index)
  user_identities(provider, external_id)   one local account per external identity
  user_identities(user_id, provider)       one identity per provider per account
  sessions.token                           opaque token lookup
  pending_verifications(email, kind)       at most one live code per flow

Timestamps on sessions and pending_verifications are epoch seconds (REAL) so
expiry checks are plain numeric comparisons in SQL. User timestamps are ISO
8601 strings, display only.
"""

from __future__ import annotations

from sqlalchemy import (
    Column,
    Float,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    event,
)
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool

metadata = MetaData()

users = Table(
    "users",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), nullable=False),  # lower-cased, stripped
    Column("name", String(255), nullable=False, server_default=""),
    Column("hashed_password", Text),  # NULL for OAuth-only users
    Column("role", String(50), nullable=False, server_default="user"),
    Column("permissions", Text, nullable=False, server_default="[]"),  # JSON list of direct grants
    Column("is_verified", Integer, nullable=False, server_default="0"),
    Column("is_deleted", Integer, nullable=False, server_default="0"),
    Column("deleted_at", String(32)),
    Column("created_at", String(32), nullable=False),
    Column("last_login", String(32)),
)

# Deleted accounts keep their email, so uniqueness only covers live rows.
Index(
    "uq_users_email_live",
    users.c.email,
    unique=True,
    sqlite_where=users.c.is_deleted == 0,
    postgresql_where=users.c.is_deleted == 0,
)

user_identities = Table(
    "user_identities",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False, index=True),
    Column("provider", String(30), nullable=False),  # "github", "google", "oidc"
    Column("external_id", String(255), nullable=False),  # provider's stable user ID
    Column("linked_at", String(32), nullable=False),
    UniqueConstraint("provider", "external_id", name="uq_identity_provider_external_id"),
    UniqueConstraint("user_id", "provider", name="uq_identity_user_provider"),
)

roles = Table(
    "roles",
    metadata,
    Column("slug", String(50), primary_key=True),
    Column("description", Text, nullable=False, server_default=""),
    Column("permissions", Text, nullable=False, server_default="[]"),  # JSON list
    Column("is_protected", Integer, nullable=False, server_default="0"),
)

sessions = Table(
    "sessions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False, index=True),
    Column("token", String(64), nullable=False, unique=True),
    Column("user_agent", Text, nullable=False, server_default="Unknown"),
    Column("ip", String(64), nullable=False, server_default="127.0.0.1"),
    Column("device_name", String(255)),
    Column("is_valid", Integer, nullable=False, server_default="1"),
    Column("created_at", Float, nullable=False),
    Column("expires_at", Float, nullable=False),
    Column("last_used_at", Float, nullable=False),
)

pending_verifications = Table(
    "pending_verifications",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), nullable=False),
    Column("kind", String(20), nullable=False),  # "registration" | "password_reset"
    Column("payload", Text, nullable=False, server_default="{}"),  # JSON
    Column("code_hash", String(64), nullable=False),  # HMAC-SHA256 hex
    Column("attempts", Integer, nullable=False, server_default="0"),
    Column("max_attempts", Integer, nullable=False),
    Column("issued_at", Float, nullable=False),
    Column("expires_at", Float, nullable=False),
    UniqueConstraint("email", "kind", name="uq_pending_email_kind"),
)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


def _set_sqlite_pragmas(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode and a busy timeout on every new SQLite connection.

    PRAGMAs are per-connection, so this runs on connect rather than once.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")
    dbapi_conn.execute("PRAGMA busy_timeout=5000")


def _is_in_memory(db_url: str) -> bool:
    return db_url in ("sqlite://", "sqlite:///:memory:") or "mode=memory" in db_url


def create_auth_engine(db_url: str) -> Engine:
    """Create an Engine for db_url and make sure every table exists.

    In-memory SQLite databases use StaticPool so every thread sees the same
    database instead of a blank per-connection one.
    """
    kwargs: dict = {}
    if db_url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
        if _is_in_memory(db_url):
            kwargs["poolclass"] = StaticPool
    engine = create_engine(db_url, **kwargs)
    if db_url.startswith("sqlite"):
        event.listen(engine, "connect", _set_sqlite_pragmas)
    metadata.create_all(engine)
    return engine
