"""GuardStateStore — aiosqlite persistence for AccountGuard snapshots.

The guard's five logical fields (owner, guardian flags, allowance table,
proposal state with its vote records, quorum constant) are stored as one JSON
snapshot in a single-row table, next to the ledger balances that were current
when the snapshot was taken. The service saves after every committed mutation
and loads once at startup.

Features:
  - WAL mode: PRAGMA journal_mode=WAL
  - Schema version guard: PRAGMA user_version=1 — RuntimeError on mismatch
  - Long-lived connection: opened in initialize(), closed in close()
  - Upsert on the fixed row id=1
"""

from __future__ import annotations

import json
import os
from datetime import datetime, timezone
from typing import Any, Optional

import aiosqlite

from safekeep.utils.logger import get_logger

logger = get_logger(__name__)

_CREATE_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS guard_state (
    id          INTEGER PRIMARY KEY CHECK(id = 1),
    payload     TEXT NOT NULL,
    balances    TEXT NOT NULL DEFAULT '{}',
    updated_at  TEXT NOT NULL
);
"""

_SCHEMA_VERSION = 1


class GuardStateStore:
    """Single-row snapshot store.

    Usage:
        store = GuardStateStore("~/.safekeep/state.db")
        await store.initialize()
        snapshot = await store.load()          # None on a fresh database
        await store.save(guard.snapshot(), ledger.balances())
        balances = await store.load_balances()
        await store.close()
    """

    def __init__(self, db_path: str = "~/.safekeep/state.db") -> None:
        self._db_path: str = os.path.expanduser(db_path)
        self._db: Optional[aiosqlite.Connection] = None

    @property
    def db_path(self) -> str:
        return self._db_path

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
            await self._db.execute(f"PRAGMA user_version = {_SCHEMA_VERSION};")
            await self._db.commit()
            logger.info("state_db_schema_created", db_path=self._db_path)
        elif current_version != _SCHEMA_VERSION:
            await self._db.close()
            self._db = None
            raise RuntimeError(
                f"Unsupported guard state schema version: {current_version}. "
                f"Move {self._db_path} aside to start from the configured owner."
            )

    async def load(self) -> Optional[dict[str, Any]]:
        """Return the stored snapshot, or None if nothing was saved yet."""
        assert self._db is not None, "State store not initialized — call initialize() first"
        cursor = await self._db.execute("SELECT payload FROM guard_state WHERE id = 1")
        row = await cursor.fetchone()
        if row is None:
            return None
        return json.loads(row["payload"])

    async def load_balances(self) -> dict[str, str]:
        """Return the stored ledger balances (empty on a fresh database)."""
        assert self._db is not None, "State store not initialized — call initialize() first"
        cursor = await self._db.execute("SELECT balances FROM guard_state WHERE id = 1")
        row = await cursor.fetchone()
        if row is None:
            return {}
        return json.loads(row["balances"])

    async def save(
        self,
        snapshot: dict[str, Any],
        balances: Optional[dict[str, str]] = None,
    ) -> None:
        """Replace the stored snapshot and ledger balances.

        ``balances`` maps addresses to decimal-string amounts
        (InMemoryLedger.balances()); omitted means no balances.

        Unlike audit writes, failures propagate: a committed mutation that
        cannot be persisted must be visible to the caller.
        """
        assert self._db is not None, "State store not initialized — call initialize() first"
        await self._db.execute(
            """INSERT INTO guard_state (id, payload, balances, updated_at) VALUES (1, ?, ?, ?)
               ON CONFLICT(id) DO UPDATE SET payload = excluded.payload,
                                             balances = excluded.balances,
                                             updated_at = excluded.updated_at""",
            (
                json.dumps(snapshot, sort_keys=True),
                json.dumps(balances or {}, sort_keys=True),
                datetime.now(timezone.utc).isoformat(),
            ),
        )
        await self._db.commit()

    async def health_check(self) -> bool:
        try:
            assert self._db is not None
            await self._db.execute("SELECT 1")
            return True
        except Exception:
            return False

    async def close(self) -> None:
        if self._db is not None:
            await self._db.close()
            self._db = None
            logger.debug("state_db_closed", db_path=self._db_path)
