"""Unit tests for LocalSQLiteBackend — aiosqlite, WAL mode, schema, CRUD, prune.

Coverage:
  - schema creation, WAL mode, version guard, parent directory creation
  - log_event (idempotent, never raises), query_events, count_events, filters
  - prune_old_events boundary, health_check, run_retention_pruner cancellation
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional

import aiosqlite
import pytest

from safekeep.audit.models import GuardEvent
from safekeep.audit.protocol import AuditBackend, EventFilters
from safekeep.audit.sqlite_backend import LocalSQLiteBackend, run_retention_pruner

pytestmark = pytest.mark.asyncio

OWNER = "0x" + "11" * 20
SPENDER = "0x" + "22" * 20
RECIPIENT = "0x" + "33" * 20

# ─── Helpers ──────────────────────────────────────────────────────────────────


def _make_event(
    event_id: str,
    operation: str = "transfer",
    outcome: str = "COMMITTED",
    caller: str = SPENDER,
    subject: Optional[str] = RECIPIENT,
    amount: Optional[str] = "10",
    error_kind: Optional[str] = None,
    timestamp: Optional[datetime] = None,
) -> GuardEvent:
    return GuardEvent(
        event_id=event_id,
        timestamp=timestamp or datetime.now(timezone.utc),
        caller=caller,
        operation=operation,  # type: ignore[arg-type]
        outcome=outcome,  # type: ignore[arg-type]
        subject=subject,
        amount=amount,
        error_kind=error_kind,
        owner_after=OWNER,
    )


async def _backend(tmp_path: Path) -> LocalSQLiteBackend:
    backend = LocalSQLiteBackend(db_path=str(tmp_path / "audit.db"))
    await backend.initialize()
    return backend


# ─── Schema ───────────────────────────────────────────────────────────────────


class TestSchema:
    async def test_fresh_db_creates_schema(self, tmp_path: Path) -> None:
        backend = await _backend(tmp_path)
        await backend.close()

        async with aiosqlite.connect(str(tmp_path / "audit.db")) as db:
            cursor = await db.execute("PRAGMA user_version;")
            assert (await cursor.fetchone())[0] == 1
            cursor = await db.execute(
                "SELECT name FROM sqlite_master WHERE type='table' AND name='guard_events'"
            )
            assert await cursor.fetchone() is not None

    async def test_indexes_created(self, tmp_path: Path) -> None:
        backend = await _backend(tmp_path)
        await backend.close()

        async with aiosqlite.connect(str(tmp_path / "audit.db")) as db:
            cursor = await db.execute("SELECT name FROM sqlite_master WHERE type='index'")
            names = {row[0] for row in await cursor.fetchall()}
        assert {"idx_events_timestamp", "idx_events_operation", "idx_events_caller"} <= names

    async def test_wal_mode(self, tmp_path: Path) -> None:
        backend = await _backend(tmp_path)
        await backend.close()

        async with aiosqlite.connect(str(tmp_path / "audit.db")) as db:
            cursor = await db.execute("PRAGMA journal_mode;")
            assert (await cursor.fetchone())[0].lower() == "wal"

    async def test_version_mismatch_raises(self, tmp_path: Path) -> None:
        db_path = str(tmp_path / "audit.db")
        async with aiosqlite.connect(db_path) as db:
            await db.execute("PRAGMA user_version = 9;")
            await db.commit()
        with pytest.raises(RuntimeError):
            await LocalSQLiteBackend(db_path).initialize()

    async def test_creates_parent_dir(self, tmp_path: Path) -> None:
        db_path = tmp_path / "a" / "b" / "audit.db"
        backend = LocalSQLiteBackend(str(db_path))
        await backend.initialize()
        await backend.close()
        assert db_path.exists()

    async def test_satisfies_protocol(self, tmp_path: Path) -> None:
        backend = await _backend(tmp_path)
        assert isinstance(backend, AuditBackend)
        await backend.close()


# ─── Writes and queries ───────────────────────────────────────────────────────


class TestLogAndQuery:
    async def test_log_then_query(self, tmp_path: Path) -> None:
        backend = await _backend(tmp_path)
        await backend.log_event(_make_event("E1", amount=str(2**255)))

        events = await backend.query_events(EventFilters())
        assert len(events) == 1
        event = events[0]
        assert event.event_id == "E1"
        assert event.amount == str(2**255)
        assert event.owner_after == OWNER
        assert event.timestamp.tzinfo is not None
        await backend.close()

    async def test_duplicate_event_id_ignored(self, tmp_path: Path) -> None:
        backend = await _backend(tmp_path)
        await backend.log_event(_make_event("E1"))
        await backend.log_event(_make_event("E1"))
        assert await backend.count_events(EventFilters()) == 1
        await backend.close()

    async def test_log_event_never_raises_when_closed(self, tmp_path: Path) -> None:
        backend = LocalSQLiteBackend(str(tmp_path / "audit.db"))
        await backend.log_event(_make_event("E1"))

    async def test_newest_first(self, tmp_path: Path) -> None:
        backend = await _backend(tmp_path)
        base = datetime(2026, 1, 1, tzinfo=timezone.utc)
        for i in range(3):
            await backend.log_event(_make_event(f"E{i}", timestamp=base + timedelta(minutes=i)))
        events = await backend.query_events(EventFilters())
        assert [e.event_id for e in events] == ["E2", "E1", "E0"]
        await backend.close()

    async def test_filters(self, tmp_path: Path) -> None:
        backend = await _backend(tmp_path)
        await backend.log_event(_make_event("T1"))
        await backend.log_event(
            _make_event("D1", outcome="DENIED", error_kind="NotAllowed", caller=RECIPIENT)
        )
        await backend.log_event(
            _make_event("G1", operation="set_guardian", caller=OWNER, subject=SPENDER, amount=None)
        )

        denied = await backend.query_events(EventFilters(outcome="DENIED"))
        assert [e.event_id for e in denied] == ["D1"]
        assert denied[0].error_kind == "NotAllowed"

        assert await backend.count_events(EventFilters(operation="transfer")) == 2
        assert await backend.count_events(EventFilters(caller=OWNER)) == 1
        assert await backend.count_events(EventFilters(subject=SPENDER)) == 1
        await backend.close()

    async def test_time_window(self, tmp_path: Path) -> None:
        backend = await _backend(tmp_path)
        base = datetime(2026, 3, 1, tzinfo=timezone.utc)
        for i in range(5):
            await backend.log_event(_make_event(f"E{i}", timestamp=base + timedelta(hours=i)))

        filters = EventFilters(since=base + timedelta(hours=1), until=base + timedelta(hours=3))
        assert await backend.count_events(filters) == 3
        await backend.close()

    async def test_limit_offset(self, tmp_path: Path) -> None:
        backend = await _backend(tmp_path)
        base = datetime(2026, 1, 1, tzinfo=timezone.utc)
        for i in range(5):
            await backend.log_event(_make_event(f"E{i}", timestamp=base + timedelta(seconds=i)))

        page = await backend.query_events(EventFilters(limit=2, offset=1))
        assert [e.event_id for e in page] == ["E3", "E2"]
        # count ignores pagination
        assert await backend.count_events(EventFilters(limit=2, offset=1)) == 5
        await backend.close()


# ─── Retention ────────────────────────────────────────────────────────────────


class TestRetention:
    async def test_prune_deletes_only_old(self, tmp_path: Path) -> None:
        backend = await _backend(tmp_path)
        now = datetime.now(timezone.utc)
        await backend.log_event(_make_event("OLD", timestamp=now - timedelta(days=91)))
        await backend.log_event(_make_event("NEW", timestamp=now - timedelta(days=89)))

        deleted = await backend.prune_old_events(retention_days=90)
        assert deleted == 1
        remaining = await backend.query_events(EventFilters())
        assert [e.event_id for e in remaining] == ["NEW"]
        await backend.close()

    async def test_health_check(self, tmp_path: Path) -> None:
        backend = await _backend(tmp_path)
        assert await backend.health_check() is True
        await backend.close()
        assert await backend.health_check() is False

    async def test_pruner_cancels_cleanly(self, tmp_path: Path) -> None:
        backend = await _backend(tmp_path)
        task = asyncio.create_task(run_retention_pruner(backend, retention_days=90))
        await asyncio.sleep(0)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        await backend.close()
