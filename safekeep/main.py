"""SafeKeep FastAPI application factory + lifespan lifecycle.

This module implements:
  - create_app() — testable application factory
  - lifespan — @asynccontextmanager startup/shutdown sequence
  - /health router — delegated to safekeep/health.py
  - /        route  — service discovery root
  - app = create_app() — module-level instance for uvicorn

Startup sequence:
  1. load_config()            → app.state.config
  2. create_audit_backend()   → app.state.audit_backend
  3. GuardStateStore          → app.state.state_store
  4. InMemoryLedger + guard   → app.state.ledger, app.state.guard
                                (restored from the snapshot when one exists)
  5. Retention pruner         → daily asyncio task (SQLite backend only)
  6. app.state.ready = True

Shutdown sequence (reverse):
  app.state.ready = False → cancel pruner → close state store →
  close audit backend

Uvicorn hardened defaults (see safekeep/run.py):
  uvicorn safekeep.main:app \\
    --host 127.0.0.1 \\
    --port 4343 \\
    --limit-concurrency 100 \\
    --backlog 50 \\
    --timeout-keep-alive 5
"""

from __future__ import annotations

import asyncio
import os
import sys
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.routing import APIRouter

from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from safekeep.audit.factory import create_audit_backend
from safekeep.audit.protocol import AuditBackend
from safekeep.audit.sqlite_backend import LocalSQLiteBackend, run_retention_pruner
from safekeep.auth.limiter import limiter
from safekeep.auth.router import router as auth_router
from safekeep.config import Config, load_config
from safekeep.guard.account import AccountGuard
from safekeep.guard.errors import GuardError
from safekeep.guard.ledger import InMemoryLedger
from safekeep.guard.router import router as guard_router
from safekeep.guard.store import GuardStateStore
from safekeep.health import router as health_router
from safekeep.models.denial import build_denial_response
from safekeep.utils.logger import (
    clear_request_id,
    configure_logging,
    get_logger,
    set_request_id,
)
from safekeep.utils.ulid import generate_ulid

# ─── Logging Setup ────────────────────────────────────────────────────────────
DEBUG = os.getenv("DEBUG", "false").lower() == "true"
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO" if not DEBUG else "DEBUG")
JSON_LOGS = os.getenv("JSON_LOGS", "true").lower() == "true"

configure_logging(log_level=LOG_LEVEL, json_output=JSON_LOGS)
logger = get_logger(__name__)


root_router = APIRouter(tags=["root"])


# ─── Dependencies ─────────────────────────────────────────────────────────────


async def require_ready(request: Request) -> None:
    """FastAPI dependency: raises HTTP 503 if app.state.ready is not True.

    Every /guard route consumes this dependency. /health handles the 503
    case itself.
    """
    if not getattr(request.app.state, "ready", False):
        raise HTTPException(
            status_code=503,
            detail={
                "status": "starting",
                "message": "SafeKeep is starting up. Guard state loading...",
            },
        )


@root_router.get("/")
async def root() -> dict[str, str]:
    """Root endpoint — service identity / discovery."""
    return {
        "service": "SafeKeep",
        "tagline": "Self-custody account guard with guardian recovery",
        "docs": "/docs",
        "health": "/health",
        "guard": "/guard",
    }


# ─── Guard construction ───────────────────────────────────────────────────────


async def build_guard(config: Config, state_store: GuardStateStore) -> AccountGuard:
    """Restore the guard and its ledger from the state store, or create both.

    On first start the guard is built from guard.owner and the custody account
    is funded with ledger.opening_balance; the result is saved immediately.
    Later starts restore the stored snapshot and balances, so the configured
    owner and opening balance no longer apply.

    Raises:
        SystemExit(1): No snapshot exists and guard.owner is not configured.
        ValueError: The stored snapshot has an unknown version.
    """
    window = config.guard.recovery_window_s

    snapshot = await state_store.load()
    if snapshot is not None:
        ledger = InMemoryLedger.from_balances(await state_store.load_balances())
        guard = AccountGuard.from_snapshot(snapshot, ledger, recovery_window_s=window)
        logger.info(
            "guard_restored",
            owner=str(guard.owner),
            address=str(guard.address),
            balance=str(guard.balance()),
        )
        return guard

    owner = config.owner_address
    if owner is None:
        print(
            "CONFIG ERROR: guard.owner is required on first start "
            "(set it in config.yaml or SAFEKEEP_OWNER).",
            file=sys.stderr,
        )
        raise SystemExit(1)

    ledger = InMemoryLedger()
    guard = AccountGuard(owner, ledger, config.custody_address, recovery_window_s=window)
    if config.ledger.opening_balance:
        ledger.credit(guard.address, config.ledger.opening_balance)
    await state_store.save(guard.snapshot(), ledger.balances())
    logger.info(
        "guard_created",
        owner=str(guard.owner),
        address=str(guard.address),
        balance=str(guard.balance()),
    )
    return guard


# ─── Lifespan ─────────────────────────────────────────────────────────────────


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan — startup and shutdown sequence."""
    logger.info("SafeKeep starting up...")

    # ── Step 1: Load configuration ────────────────────────────────────────────
    # load_config() raises SystemExit on parse errors before ready=True is set.
    config: Config = load_config()
    app.state.config = config

    # ── Step 2: Audit backend ────────────────────────────────────────────────
    audit_backend: AuditBackend = await create_audit_backend(config)
    app.state.audit_backend = audit_backend

    # ── Step 3: Guard state store ────────────────────────────────────────────
    state_store = GuardStateStore(os.getenv("SAFEKEEP_STATE_DB_PATH", config.state.path))
    await state_store.initialize()
    app.state.state_store = state_store

    # ── Step 4: Ledger + guard ────────────────────────────────────────────────
    guard = await build_guard(config, state_store)
    app.state.guard = guard
    app.state.ledger = guard.ledger

    # ── Step 5: Retention pruner ─────────────────────────────────────────────
    retention_task: asyncio.Task[None] | None = None
    if isinstance(audit_backend, LocalSQLiteBackend):
        retention_task = asyncio.create_task(
            run_retention_pruner(audit_backend, config.audit.retention_days)
        )
        logger.info("Retention pruner started", retention_days=config.audit.retention_days)

    # ── Step 6: Mark as ready ─────────────────────────────────────────────────
    app.state.ready = True
    logger.info("SafeKeep ready", owner=str(guard.owner), address=str(guard.address))

    yield

    # ── Shutdown (reverse order) ──────────────────────────────────────────────
    logger.info("SafeKeep shutting down...")
    app.state.ready = False

    if retention_task is not None and not retention_task.done():
        retention_task.cancel()
        try:
            await retention_task
        except asyncio.CancelledError:
            pass

    await state_store.close()
    await audit_backend.close()

    logger.info("SafeKeep shutdown complete")


# ─── Application Factory ──────────────────────────────────────────────────────


def create_app() -> FastAPI:
    """Create and configure the SafeKeep FastAPI application.

    Call this function directly in tests to get an isolated app instance:
        app = create_app()

    The module-level `app` is created at import time for uvicorn:
        uvicorn safekeep.main:app --host 127.0.0.1 --port 4343
    """
    # Swagger UI and ReDoc only with DEBUG=true
    _debug = os.getenv("DEBUG", "false").lower() == "true"

    application = FastAPI(
        title="SafeKeep",
        description="Self-custody account guard: owner control, delegated allowances, guardian recovery",
        version="1.0.0",
        lifespan=lifespan,
        docs_url="/docs" if _debug else None,
        redoc_url="/redoc" if _debug else None,
        openapi_url="/openapi.json" if _debug else None,
    )

    application.state.ready = False

    application.state.limiter = limiter
    application.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

    application.add_middleware(
        CORSMiddleware,
        allow_origins=[
            "http://localhost:4343",
            "http://127.0.0.1:4343",
        ],
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
    )

    # Must be added after state.limiter is set
    application.add_middleware(SlowAPIMiddleware)

    @application.middleware("http")
    async def request_id_middleware(request: Request, call_next):
        request_id = generate_ulid()
        set_request_id(request_id)
        try:
            response = await call_next(request)
        finally:
            clear_request_id()
        response.headers["X-SafeKeep-Request-ID"] = request_id
        return response

    application.include_router(root_router)
    application.include_router(health_router)
    application.include_router(auth_router, dependencies=[Depends(require_ready)])
    application.include_router(guard_router, dependencies=[Depends(require_ready)])

    @application.exception_handler(GuardError)
    async def guard_error_handler(request: Request, exc: GuardError) -> JSONResponse:
        return build_denial_response(exc, getattr(request.state, "event_id", None))

    @application.exception_handler(HTTPException)
    async def http_exception_handler(
        request: Request, exc: HTTPException
    ) -> JSONResponse:
        logger.warning(
            "HTTP exception",
            status_code=exc.status_code,
            detail=exc.detail,
            path=str(request.url.path),
        )
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.detail},
            headers=getattr(exc, "headers", None),
        )

    @application.exception_handler(Exception)
    async def unhandled_exception_handler(
        request: Request, exc: Exception
    ) -> JSONResponse:
        logger.error(
            "Unhandled exception",
            error=str(exc),
            error_type=type(exc).__name__,
            path=str(request.url.path),
        )
        return JSONResponse(
            status_code=500, content={"error": "Internal server error"}
        )

    return application


app = create_app()
