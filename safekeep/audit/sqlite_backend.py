"""LocalSQLiteBackend — aiosqlite-based async audit backend.

Uses aiosqlite EXCLUSIVELY; the synchronous sqlite3 module would block the
event loop on every guard request.

Features:
  - WAL mode: PRAGMA journal_mode=WAL
  - Schema version guard: PRAGMA user_version=1 — RuntimeError on mismatch
  - Long-lived connection: opened in initialize(), closed in close()
  - Idempotent writes: INSERT OR IGNORE on event_id UNIQUE constraint
  - prune_old_events(): DELETE WHERE timestamp < cutoff
  - run_retention_pruner(): background asyncio task, daily 3am UTC

Timestamps are stored as timezone-aware UTC ISO 8601 strings so that string
comparison matches chronological order.
"""

from __future__ import annotations

import asyncio
import os
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import aiosqlite

from safekeep.audit.models import GuardEvent
from safekeep.audit.protocol import EventFilters
from safekeep.utils.logger import get_logger

logger = get_logger(__name__)

# ─── Schema DDL ───────────────────────────────────────────────────────────────

_CREATE_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS guard_events (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    event_id        TEXT NOT NULL UNIQUE,
    timestamp       TEXT NOT NULL,
    caller          TEXT NOT NULL,
    operation       TEXT NOT NULL,
    outcome         TEXT NOT NULL CHECK(outcome IN ('COMMITTED', 'DENIED')),
    subject         TEXT,
    amount          TEXT,
    error_kind      TEXT,
    owner_after     TEXT,
    detail          TEXT,
    schema_version  INTEGER NOT NULL DEFAULT 1
);

CREATE INDEX IF NOT EXISTS idx_events_timestamp
    ON guard_events(timestamp DESC);

CREATE INDEX IF NOT EXISTS idx_events_operation
    ON guard_events(operation, timestamp DESC);

CREATE INDEX IF NOT EXISTS idx_events_caller
    ON guard_events(caller);
"""

_SCHEMA_VERSION = 1


def _row_to_event(row: aiosqlite.Row) -> GuardEvent:
    return GuardEvent(
        event_id=row["event_id"],
        timestamp=datetime.fromisoformat(row["timestamp"]),
        caller=row["caller"],
        operation=row["operation"],
        outcome=row["outcome"],
        schema_version=row["schema_version"],
        subject=row["subject"],
        amount=row["amount"],
        error_kind=row["error_kind"],
        owner_after=row["owner_after"],
        detail=row["detail"],
    )


def _to_utc(value: datetime) -> datetime:
    """Naive datetimes are taken to be UTC already."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# ─── LocalSQLiteBackend ───────────────────────────────────────────────────────


class LocalSQLiteBackend:
    """Async SQLite audit backend.

    Usage:
        backend = LocalSQLiteBackend("~/.safekeep/audit.db")
        await backend.initialize()
        asyncio.create_task(backend.log_event(event))  # fire-and-forget
        events = await backend.query_events(EventFilters(outcome="DENIED"))
        await backend.close()
    """

    def __init__(self, db_path: str = "~/.safekeep/audit.db") -> None:
        self._db_path: str = os.path.expanduser(db_path)
        self._db: Optional[aiosqlite.Connection] = None

    @property
    def db_path(self) -> str:
        return self._db_path

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    async def initialize(self) -> None:
        """Open the connection, enable WAL mode, and create/verify the schema.

        Raises:
            RuntimeError: If PRAGMA user_version is neither 0 nor 1.
        """
        parent_dir = os.path.dirname(self._db_path)
        if parent_dir:
            os.makedirs(parent_dir, exist_ok=True)

        self._db = await aiosqlite.connect(self._db_path)
        self._db.row_factory = aiosqlite.Row
        await self._db.execute("PRAGMA journal_mode=WAL;")

        cursor = await self._db.execute("PRAGMA user_version;")
        row = await cursor.fetchone()
        current_version: int = row[0] if row else 0

        if current_version == 0:
            await self._db.executescript(_CREATE_SCHEMA_SQL)
            # executescript may not honour PRAGMA in all SQLite builds
            await self._db.execute(f"PRAGMA user_version = {_SCHEMA_VERSION};")
            await self._db.commit()
            logger.info(
                "audit_db_schema_created",
                db_path=self._db_path,
                schema_version=_SCHEMA_VERSION,
            )
        elif current_version == _SCHEMA_VERSION:
            logger.info(
                "audit_db_schema_ok",
                db_path=self._db_path,
                schema_version=current_version,
            )
        else:
            await self._db.close()
            self._db = None
            raise RuntimeError(
                f"Unsupported audit database schema version: {current_version}. "
                f"Delete {self._db_path} to reset."
            )

    async def close(self) -> None:
        if self._db is not None:
            await self._db.close()
            self._db = None
            logger.debug("audit_db_closed", db_path=self._db_path)

    # ── AuditBackend Protocol Methods ─────────────────────────────────────────

    async def log_event(self, event: GuardEvent) -> None:
        """Persist an event. Catches ALL exceptions — never re-raises."""
        try:
            assert self._db is not None, "Database not initialized — call initialize() first"
            await self._db.execute(
                """INSERT OR IGNORE INTO guard_events
                   (event_id, timestamp, caller, operation, outcome, subject,
                    amount, error_kind, owner_after, detail, schema_version)
                   VALUES (?,?,?,?,?,?,?,?,?,?,?)""",
                (
                    event.event_id,
                    _to_utc(event.timestamp).isoformat(),
                    event.caller,
                    event.operation,
                    event.outcome,
                    event.subject,
                    event.amount,
                    event.error_kind,
                    event.owner_after,
                    event.detail,
                    event.schema_version,
                ),
            )
            await self._db.commit()
        except Exception as exc:
            logger.error(
                "audit_write_failed",
                event_id=event.event_id,
                error=str(exc),
                error_type=type(exc).__name__,
            )

    async def query_events(self, filters: EventFilters) -> list[GuardEvent]:
        assert self._db is not None, "Database not initialized"
        sql, params = _build_select_sql(filters, count_only=False)
        cursor = await self._db.execute(sql, params)
        rows = await cursor.fetchall()
        return [_row_to_event(row) for row in rows]

    async def count_events(self, filters: EventFilters) -> int:
        assert self._db is not None, "Database not initialized"
        sql, params = _build_select_sql(filters, count_only=True)
        cursor = await self._db.execute(sql, params)
        row = await cursor.fetchone()
        return row[0] if row else 0

    async def health_check(self) -> bool:
        try:
            assert self._db is not None
            await self._db.execute("SELECT 1")
            return True
        except Exception:
            return False

    async def prune_old_events(self, retention_days: int = 90) -> int:
        """Delete events older than retention_days.

        Events exactly at the cutoff are kept.
        """
        assert self._db is not None, "Database not initialized"
        cutoff = datetime.now(timezone.utc) - timedelta(days=retention_days)

        cursor = await self._db.execute(
            "DELETE FROM guard_events WHERE timestamp < ?",
            (cutoff.isoformat(),),
        )
        await self._db.commit()
        count: int = cursor.rowcount  # type: ignore[assignment]

        if count > 0:
            logger.info(
                "retention_prune_complete",
                deleted_count=count,
                retention_days=retention_days,
                cutoff=cutoff.isoformat(),
            )
        return count


# ─── SQL Builder Helper ───────────────────────────────────────────────────────


def _build_select_sql(
    filters: EventFilters, *, count_only: bool
) -> tuple[str, list[Any]]:
    """Build a parameterized SELECT query from EventFilters."""
    if count_only:
        sql = "SELECT COUNT(*) FROM guard_events"
    else:
        sql = "SELECT * FROM guard_events"

    conditions: list[str] = []
    params: list[Any] = []

    if filters.operation is not None:
        conditions.append("operation = ?")
        params.append(filters.operation)

    if filters.outcome is not None:
        conditions.append("outcome = ?")
        params.append(filters.outcome)

    if filters.caller is not None:
        conditions.append("caller = ?")
        params.append(filters.caller)

    if filters.subject is not None:
        conditions.append("subject = ?")
        params.append(filters.subject)

    if filters.since is not None:
        conditions.append("timestamp >= ?")
        params.append(_to_utc(filters.since).isoformat())

    if filters.until is not None:
        conditions.append("timestamp <= ?")
        params.append(_to_utc(filters.until).isoformat())

    if conditions:
        sql += " WHERE " + " AND ".join(conditions)

    if not count_only:
        sql += " ORDER BY timestamp DESC, id DESC"
        sql += " LIMIT ? OFFSET ?"
        params.extend([filters.limit, filters.offset])

    return sql, params


# ─── Background Retention Pruner ──────────────────────────────────────────────


async def run_retention_pruner(
    backend: LocalSQLiteBackend,
    retention_days: int = 90,
) -> None:
    """Background asyncio task: run prune_old_events() daily at 3:00 AM UTC.

    Cancelled cleanly on shutdown via task.cancel(). Any other exception is
    logged and retried after one hour.
    """
    while True:
        try:
            now = datetime.now(timezone.utc)
            next_run = now.replace(hour=3, minute=0, second=0, microsecond=0)
            if next_run <= now:
                next_run += timedelta(days=1)
            sleep_seconds = (next_run - now).total_seconds()

            logger.info(
                "retention_pruner_scheduled",
                next_run_utc=next_run.isoformat(),
                sleep_seconds=sleep_seconds,
            )
            await asyncio.sleep(sleep_seconds)
            await backend.prune_old_events(retention_days=retention_days)

        except asyncio.CancelledError:
            logger.info("retention_pruner_cancelled")
            raise

        except Exception as exc:
            logger.error(
                "retention_prune_error",
                error=str(exc),
                error_type=type(exc).__name__,
                retry_in_seconds=3600,
            )
            await asyncio.sleep(3600)
