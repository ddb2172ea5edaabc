"""
auth/schema.py -- SQLAlchemy Core schema and connection helpers for auth entities.

One MetaData owns every credential table so the Credential Store, Token
Ledger and Invite Ledger can share an engine and, where a flow needs it, a
single transaction (reset-password, invite acceptance).

Security:
  All queries built on these tables use bound parameters. No f-strings in SQL.

  Opaque token values are stored as-is. They carry 256 bits of entropy, which
  is the security control; UNIQUE on the token column enforces "one row per
  opaque value".

Timestamps are stored as ISO-8601 UTC strings with fixed microsecond
precision ("2026-01-01T00:00:00.000000+00:00", 32 chars). The fixed width
makes lexicographic order equal chronological order, so expiry checks can
run inside a single conditional UPDATE/SELECT.

Layer rule: no imports from api/, core/ or audit/.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import datetime, timezone

from sqlalchemy import Column, Index, Integer, MetaData, String, Table, Text, create_engine, event
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.pool import StaticPool

from auth.errors import StorageUnavailable

logger = logging.getLogger("tasknest.auth")

Clock = Callable[[], datetime]

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

principals = Table(
    "principals",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), nullable=False, unique=True),  # normalised lower-case
    Column("name", String(255), nullable=False),
    Column("hashed_password", Text, nullable=False),
    Column("role", String(30), nullable=False, server_default="employee"),
    Column("department", String(255)),
    Column("position", String(255)),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("created_at", String(32), nullable=False),
    Column("last_login", String(32)),
)

refresh_tokens = Table(
    "refresh_tokens",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("token", String(64), nullable=False, unique=True),
    Column("principal_id", Integer, nullable=False),
    Column("expires_at", String(32), nullable=False),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("created_at", String(32), nullable=False),
    Index("ix_refresh_tokens_principal", "principal_id"),
    Index("ix_refresh_tokens_expires", "expires_at"),
)

password_reset_tokens = Table(
    "password_reset_tokens",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("token", String(64), nullable=False, unique=True),
    Column("principal_id", Integer, nullable=False),
    Column("expires_at", String(32), nullable=False),
    Column("is_used", Integer, nullable=False, server_default="0"),
    Column("created_at", String(32), nullable=False),
    Index("ix_password_reset_principal", "principal_id"),
    Index("ix_password_reset_expires", "expires_at"),
)

user_invites = Table(
    "user_invites",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("token", String(64), nullable=False, unique=True),
    Column("email", String(255), nullable=False),
    Column("role", String(30), nullable=False, server_default="employee"),
    Column("department", String(255)),
    Column("position", String(255)),
    Column("invited_by", Integer, nullable=False),
    Column("expires_at", String(32), nullable=False),
    Column("is_used", Integer, nullable=False, server_default="0"),
    Column("created_at", String(32), nullable=False),
    Index("ix_user_invites_email", "email"),
    Index("ix_user_invites_expires", "expires_at"),
)


# ---------------------------------------------------------------------------
# Time helpers
# ---------------------------------------------------------------------------


def utcnow() -> datetime:
    """The single trusted server clock. Never trust client-supplied timestamps."""
    return datetime.now(timezone.utc)


def to_iso(moment: datetime) -> str:
    """Serialise a datetime in the fixed-width form every table uses."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).isoformat(timespec="microseconds")


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def _is_memory_url(db_url: str) -> bool:
    return db_url in ("sqlite://", "sqlite:///:memory:") or "mode=memory" in db_url


def make_engine(db_url: str) -> Engine:
    """Create an engine for db_url and make sure every auth table exists.

    In-memory SQLite uses StaticPool so every checkout sees the same database
    (a plain :memory: pool would hand each thread a blank schema).
    """
    kwargs: dict = {}
    if db_url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
        if _is_memory_url(db_url):
            kwargs["poolclass"] = StaticPool
    engine = create_engine(db_url, **kwargs)
    if db_url.startswith("sqlite") and not _is_memory_url(db_url):
        event.listen(engine, "connect", _set_wal_mode)
    metadata.create_all(engine)
    return engine


@contextmanager
def transaction(engine: Engine, conn: Connection | None = None) -> Iterator[Connection]:
    """Yield a connection inside a transaction.

    If conn is given the caller already owns a transaction: it is reused and
    commit/rollback stay with the caller. Otherwise a new transaction is
    opened with engine.begin() and committed on clean exit.

    Driver failures surface as StorageUnavailable. IntegrityError passes
    through untouched so callers can map unique violations to domain errors.
    """
    if conn is not None:
        yield conn
        return
    try:
        with engine.begin() as new_conn:
            yield new_conn
    except IntegrityError:
        raise
    except SQLAlchemyError as exc:
        logger.error("Credential storage failure: %s", exc.__class__.__name__)
        raise StorageUnavailable() from exc
