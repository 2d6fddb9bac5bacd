"""Health endpoint for SafeKeep.

Implements:
  GET /health — 503 before ``app.state.ready``, 200 with component status after

Polled by container probes and by operators checking that the guard state
and audit trail are reachable.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, HTTPException, Request

router = APIRouter(tags=["health"])


@router.get("/health")
async def health(request: Request) -> dict[str, Any]:
    """Primary health check endpoint.

    Response body (200):
        {
          "status": "ok" | "degraded",
          "guard": "running",
          "state_store": "healthy" | "error",
          "audit": "healthy" | "error" | "disabled",
          "owner": "0x...",
          "address": "0x...",
          "audit_path": "/path/to/audit.db" | null
        }

    Response body (503):
        {"status": "starting", "message": "SafeKeep is starting up..."}
    """
    if not getattr(request.app.state, "ready", False):
        raise HTTPException(
            status_code=503,
            detail={
                "status": "starting",
                "message": "SafeKeep is starting up. Guard state loading...",
            },
        )

    state = request.app.state
    config = getattr(state, "config", None)
    audit_backend = getattr(state, "audit_backend", None)
    state_store = getattr(state, "state_store", None)

    store_ok = await state_store.health_check() if state_store is not None else False

    audit_enabled = bool(config and config.audit.enabled)
    if not audit_enabled or audit_backend is None:
        audit_status = "disabled"
        audit_ok = True
    else:
        audit_ok = await audit_backend.health_check()
        audit_status = "healthy" if audit_ok else "error"

    guard = state.guard
    return {
        "status": "ok" if (store_ok and audit_ok) else "degraded",
        "guard": "running",
        "state_store": "healthy" if store_ok else "error",
        "audit": audit_status,
        "owner": str(guard.owner),
        "address": str(guard.address),
        "audit_path": getattr(audit_backend, "db_path", None) if audit_enabled else None,
    }
