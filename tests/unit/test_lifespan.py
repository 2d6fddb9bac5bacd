"""Unit tests for safekeep/main.py — application factory, readiness gate, guard bootstrap.

Covers:
  - create_app() importable, independent instances, ready=False before lifespan
  - X-SafeKeep-Request-ID set on every response
  - /health and /guard routes return 503 before ready
  - build_guard(): fresh start from config, restore from snapshot, opening balance
    credited on first start only, stored balances restored
  - startup failure without an owner (SystemExit, non-zero)
"""

from __future__ import annotations

from pathlib import Path

import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from safekeep.config import Config
from safekeep.guard.account import AccountGuard
from safekeep.guard.identity import Address, derive_address
from safekeep.guard.ledger import InMemoryLedger
from safekeep.guard.store import GuardStateStore
from safekeep.main import build_guard, create_app

OWNER = "0x" + "11" * 20
CUSTODY = "0x" + "22" * 20
GUARDIAN = Address(b"\x33" * 20)
RECIPIENT = Address(b"\x55" * 20)


def _config(owner: str | None = OWNER, opening_balance: int = 0) -> Config:
    config = Config.defaults()
    config.guard.owner = owner
    config.ledger.opening_balance = opening_balance
    return config


async def _store(tmp_path: Path) -> GuardStateStore:
    store = GuardStateStore(str(tmp_path / "state.db"))
    await store.initialize()
    return store


# ─── create_app() ─────────────────────────────────────────────────────────────


class TestCreateAppFactory:
    def test_returns_fastapi_instance(self) -> None:
        assert isinstance(create_app(), FastAPI)

    def test_independent_instances(self) -> None:
        assert create_app() is not create_app()

    def test_ready_false_before_lifespan(self) -> None:
        assert create_app().state.ready is False


class TestReadinessGate:
    @pytest.mark.asyncio
    async def test_health_503_before_ready(self) -> None:
        async with AsyncClient(transport=ASGITransport(app=create_app()), base_url="http://test") as client:
            response = await client.get("/health")
        assert response.status_code == 503
        assert response.json()["error"]["status"] == "starting"

    @pytest.mark.asyncio
    async def test_guard_503_before_ready(self) -> None:
        async with AsyncClient(transport=ASGITransport(app=create_app()), base_url="http://test") as client:
            response = await client.get("/guard", headers={"X-SafeKeep-Caller": OWNER})
        assert response.status_code == 503

    @pytest.mark.asyncio
    async def test_root_always_available(self) -> None:
        async with AsyncClient(transport=ASGITransport(app=create_app()), base_url="http://test") as client:
            response = await client.get("/")
        assert response.status_code == 200
        assert response.json()["service"] == "SafeKeep"

    @pytest.mark.asyncio
    async def test_request_id_header(self) -> None:
        async with AsyncClient(transport=ASGITransport(app=create_app()), base_url="http://test") as client:
            first = await client.get("/")
            second = await client.get("/health")
        assert len(first.headers["X-SafeKeep-Request-ID"]) == 26
        assert first.headers["X-SafeKeep-Request-ID"] != second.headers["X-SafeKeep-Request-ID"]


# ─── build_guard() ────────────────────────────────────────────────────────────


class TestBuildGuard:
    @pytest.mark.asyncio
    async def test_fresh_start_uses_configured_owner(self, tmp_path: Path) -> None:
        store = await _store(tmp_path)
        guard = await build_guard(_config(), store)
        assert guard.owner == Address.parse(OWNER)
        assert guard.address == derive_address(Address.parse(OWNER))
        # the initial snapshot is persisted immediately
        assert (await store.load())["owner"] == OWNER
        await store.close()

    @pytest.mark.asyncio
    async def test_configured_custody_address(self, tmp_path: Path) -> None:
        store = await _store(tmp_path)
        config = _config()
        config.guard.address = CUSTODY
        guard = await build_guard(config, store)
        assert guard.address == Address.parse(CUSTODY)
        await store.close()

    @pytest.mark.asyncio
    async def test_opening_balance_credited(self, tmp_path: Path) -> None:
        store = await _store(tmp_path)
        guard = await build_guard(_config(opening_balance=500), store)
        assert guard.balance() == 500
        await store.close()

    @pytest.mark.asyncio
    async def test_restore_keeps_stored_balance(self, tmp_path: Path) -> None:
        store = await _store(tmp_path)
        first = await build_guard(_config(opening_balance=500), store)
        first.transfer(RECIPIENT, 200, b"", first.owner)
        await store.save(first.snapshot(), first.ledger.balances())

        restored = await build_guard(_config(opening_balance=500), store)
        assert restored.balance() == 300
        assert restored.ledger.balance_of(RECIPIENT) == 200
        await store.close()

    @pytest.mark.asyncio
    async def test_restores_snapshot_over_config(self, tmp_path: Path) -> None:
        store = await _store(tmp_path)
        recovered_owner = Address(b"\x44" * 20)
        previous = AccountGuard(recovered_owner, InMemoryLedger())
        previous.set_guardian(GUARDIAN, True, recovered_owner)
        await store.save(previous.snapshot())

        guard = await build_guard(_config(), store)
        assert guard.owner == recovered_owner
        assert guard.is_guardian(GUARDIAN) is True
        await store.close()

    @pytest.mark.asyncio
    async def test_missing_owner_exits(self, tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
        store = await _store(tmp_path)
        with pytest.raises(SystemExit) as exc_info:
            await build_guard(_config(owner=None), store)
        assert exc_info.value.code == 1
        assert "guard.owner" in capsys.readouterr().err
        await store.close()
