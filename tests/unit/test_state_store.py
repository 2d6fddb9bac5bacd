"""Unit tests for safekeep/guard/store.py — GuardStateStore snapshot persistence."""

from __future__ import annotations

from pathlib import Path

import aiosqlite
import pytest

from safekeep.guard.account import AccountGuard
from safekeep.guard.identity import Address
from safekeep.guard.ledger import InMemoryLedger
from safekeep.guard.store import GuardStateStore

pytestmark = pytest.mark.asyncio

OWNER = Address(b"\x01" * 20)
GUARDIAN = Address(b"\x02" * 20)
SPENDER = Address(b"\x03" * 20)


class TestSchema:
    async def test_fresh_db_sets_user_version(self, tmp_path: Path) -> None:
        db_path = str(tmp_path / "state.db")
        store = GuardStateStore(db_path)
        await store.initialize()
        await store.close()

        async with aiosqlite.connect(db_path) as db:
            cursor = await db.execute("PRAGMA user_version;")
            row = await cursor.fetchone()
            assert row[0] == 1

    async def test_wal_mode_enabled(self, tmp_path: Path) -> None:
        db_path = str(tmp_path / "state.db")
        store = GuardStateStore(db_path)
        await store.initialize()
        await store.close()

        async with aiosqlite.connect(db_path) as db:
            cursor = await db.execute("PRAGMA journal_mode;")
            row = await cursor.fetchone()
            assert row[0].lower() == "wal"

    async def test_creates_parent_directory(self, tmp_path: Path) -> None:
        db_path = tmp_path / "nested" / "dir" / "state.db"
        store = GuardStateStore(str(db_path))
        await store.initialize()
        await store.close()
        assert db_path.exists()

    async def test_reopen_existing_db(self, tmp_path: Path) -> None:
        db_path = str(tmp_path / "state.db")
        for _ in range(2):
            store = GuardStateStore(db_path)
            await store.initialize()
            await store.close()

    async def test_unknown_schema_version_raises(self, tmp_path: Path) -> None:
        db_path = str(tmp_path / "state.db")
        async with aiosqlite.connect(db_path) as db:
            await db.execute("PRAGMA user_version = 42;")
            await db.commit()

        store = GuardStateStore(db_path)
        with pytest.raises(RuntimeError, match="42"):
            await store.initialize()


class TestSnapshots:
    async def test_load_empty_returns_none(self, tmp_path: Path) -> None:
        store = GuardStateStore(str(tmp_path / "state.db"))
        await store.initialize()
        assert await store.load() is None
        await store.close()

    async def test_save_then_load(self, tmp_path: Path) -> None:
        guard = AccountGuard(OWNER, InMemoryLedger())
        guard.set_guardian(GUARDIAN, True, OWNER)
        guard.set_allowance(SPENDER, 2**255, OWNER)

        store = GuardStateStore(str(tmp_path / "state.db"))
        await store.initialize()
        await store.save(guard.snapshot())
        loaded = await store.load()
        await store.close()

        assert loaded == guard.snapshot()

    async def test_save_replaces_previous(self, tmp_path: Path) -> None:
        guard = AccountGuard(OWNER, InMemoryLedger())
        store = GuardStateStore(str(tmp_path / "state.db"))
        await store.initialize()
        await store.save(guard.snapshot())
        guard.set_guardian(GUARDIAN, True, OWNER)
        await store.save(guard.snapshot())

        loaded = await store.load()
        assert loaded is not None
        assert loaded["guardians"] == [str(GUARDIAN)]

        async with aiosqlite.connect(store.db_path) as db:
            cursor = await db.execute("SELECT COUNT(*) FROM guard_state")
            row = await cursor.fetchone()
            assert row[0] == 1
        await store.close()

    async def test_survives_reopen(self, tmp_path: Path) -> None:
        db_path = str(tmp_path / "state.db")
        guard = AccountGuard(OWNER, InMemoryLedger())
        guard.set_guardian(GUARDIAN, True, OWNER)

        store = GuardStateStore(db_path)
        await store.initialize()
        await store.save(guard.snapshot())
        await store.close()

        store = GuardStateStore(db_path)
        await store.initialize()
        restored = AccountGuard.from_snapshot(await store.load(), InMemoryLedger())
        await store.close()
        assert restored.is_guardian(GUARDIAN) is True
        assert restored.owner == OWNER

    async def test_balances_saved_with_snapshot(self, tmp_path: Path) -> None:
        ledger = InMemoryLedger()
        guard = AccountGuard(OWNER, ledger)
        ledger.credit(guard.address, 300)

        store = GuardStateStore(str(tmp_path / "state.db"))
        await store.initialize()
        assert await store.load_balances() == {}
        await store.save(guard.snapshot(), ledger.balances())
        assert await store.load_balances() == {str(guard.address): "300"}

        await store.save(guard.snapshot())
        assert await store.load_balances() == {}
        await store.close()


class TestHealth:
    async def test_healthy_when_open(self, tmp_path: Path) -> None:
        store = GuardStateStore(str(tmp_path / "state.db"))
        await store.initialize()
        assert await store.health_check() is True
        await store.close()

    async def test_unhealthy_when_closed(self, tmp_path: Path) -> None:
        store = GuardStateStore(str(tmp_path / "state.db"))
        assert await store.health_check() is False
