"""
audit/recorder.py -- Fire-and-forget writer for the audit trail.

Availability over durability, for this one write path only:
  Losing an audit record must never abort or roll back the user-facing action
  it describes. record() therefore does not participate in the caller's
  transaction and never raises. It stamps the entry with the server time,
  hands it to a single-thread BestEffortWorker and returns. Any failure, such
  as a bad argument or a dropped DB connection, is reported on the
  "tasknest.audit" logger and absorbed.

  Every other write path in the system propagates its errors. Do not copy
  this pattern elsewhere.

Pattern: Repository (append-only). There is no update or delete method.
list_entries() is a read helper for operators and tests; the
reporting UI that normally reads the trail is a separate collaborator.

Layer rule: imports only stdlib, SQLAlchemy and core/.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from datetime import datetime, timezone

from sqlalchemy import Column, Index, Integer, MetaData, String, Table, Text, create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool

from audit.models import AUDIT_SCHEMA_VERSION, AuditAction, AuditEntry
from core.background import BestEffortWorker

logger = logging.getLogger("tasknest.audit")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_audit_log = Table(
    "audit_log",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("principal_id", Integer),  # NULL when the actor is unknown
    Column("action", String(40), nullable=False),
    Column("resource_type", String(40), nullable=False),
    Column("resource_id", String(64), nullable=False),
    Column("details", Text, nullable=False, server_default="{}"),  # JSON object
    Column("ip_address", String(45)),
    Column("user_agent", String(512)),
    Column("schema_version", Integer, nullable=False),
    Column("created_at", String(32), nullable=False),
    Index("ix_audit_principal_created", "principal_id", "created_at"),
    Index("ix_audit_action_created", "action", "created_at"),
    Index("ix_audit_resource", "resource_type", "resource_id"),
)


def _utc_iso(moment: datetime) -> str:
    return moment.astimezone(timezone.utc).isoformat(timespec="microseconds")


def make_audit_engine(db_url: str) -> Engine:
    """Engine for a standalone audit database (tests, or a separate audit DSN)."""
    kwargs: dict = {}
    if db_url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
        if db_url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
    return create_engine(db_url, **kwargs)


# ---------------------------------------------------------------------------
# Recorder
# ---------------------------------------------------------------------------


class AuditRecorder:
    """Append-only audit trail with a best-effort background writer.

    Usage:
        audit = AuditRecorder(engine)
        audit.record(user.id, AuditAction.LOGIN, "User", user.id, ip_address=ip)
        audit.flush()   # wait for queued writes (tests, shutdown)
        audit.close()
    """

    def __init__(self, engine: Engine, clock: Callable[[], datetime] | None = None) -> None:
        self.engine = engine
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        _metadata.create_all(engine)
        self._worker = BestEffortWorker("audit", logger)

    def record(
        self,
        principal_id: int | None,
        action: AuditAction | str,
        resource_type: str,
        resource_id: int | str,
        details: dict | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> None:
        """Queue one audit entry. Returns immediately and never raises."""
        try:
            entry = AuditEntry(
                principal_id=principal_id,
                action=AuditAction(action),
                resource_type=resource_type,
                resource_id=str(resource_id),
                details=dict(details or {}),
                ip_address=ip_address,
                user_agent=user_agent[:512] if user_agent else user_agent,
                timestamp=_utc_iso(self._clock()),
            )
        except Exception:
            logger.exception("Dropped malformed audit entry (action=%r)", action)
            return
        self._worker.submit(self._write, entry, description=f"audit {entry.action.value}")

    def _write(self, entry: AuditEntry) -> None:
        with self.engine.connect() as conn:
            conn.execute(
                _audit_log.insert().values(
                    principal_id=entry.principal_id,
                    action=entry.action.value,
                    resource_type=entry.resource_type,
                    resource_id=entry.resource_id,
                    details=json.dumps(entry.details, default=str, sort_keys=True),
                    ip_address=entry.ip_address,
                    user_agent=entry.user_agent,
                    schema_version=entry.schema_version,
                    created_at=entry.timestamp,
                )
            )
            conn.commit()

    def flush(self, timeout: float | None = 5.0) -> bool:
        """Wait for queued writes. False on timeout or after close()."""
        return self._worker.flush(timeout)

    def list_entries(
        self,
        principal_id: int | None = None,
        action: AuditAction | str | None = None,
        limit: int = 100,
    ) -> list[AuditEntry]:
        """Newest-first entries, optionally filtered by actor and action."""
        query = _audit_log.select()
        if principal_id is not None:
            query = query.where(_audit_log.c.principal_id == principal_id)
        if action is not None:
            query = query.where(_audit_log.c.action == AuditAction(action).value)
        query = query.order_by(_audit_log.c.created_at.desc(), _audit_log.c.id.desc()).limit(limit)
        with self.engine.connect() as conn:
            rows = conn.execute(query).fetchall()
        return [_row_to_entry(r) for r in rows]

    def close(self) -> None:
        """Drain pending writes and stop the worker."""
        self._worker.close()


def _row_to_entry(row) -> AuditEntry:
    return AuditEntry(
        id=row.id,
        principal_id=row.principal_id,
        action=AuditAction(row.action),
        resource_type=row.resource_type,
        resource_id=row.resource_id,
        details=json.loads(row.details or "{}"),
        ip_address=row.ip_address,
        user_agent=row.user_agent,
        schema_version=row.schema_version or AUDIT_SCHEMA_VERSION,
        timestamp=row.created_at,
    )
