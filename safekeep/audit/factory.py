"""Audit backend factory and fire-and-forget event recording.

Backend selection:
  1. audit.enabled is false          → NullAuditBackend
  2. Otherwise                       → LocalSQLiteBackend

LocalSQLiteBackend path:
  SAFEKEEP_AUDIT_DB_PATH environment variable, else config.audit.path.

LocalSQLiteBackend.initialize() raises RuntimeError on an incompatible
schema version; the FastAPI lifespan propagates it and refuses startup.
"""

from __future__ import annotations

import asyncio
import os
from datetime import datetime, timezone
from typing import Optional

from safekeep.audit.models import GuardEvent, OperationType, OutcomeType
from safekeep.audit.protocol import AuditBackend, NullAuditBackend
from safekeep.config import Config
from safekeep.utils.logger import get_logger
from safekeep.utils.ulid import generate_ulid

logger = get_logger(__name__)

_ENV_AUDIT_DB_PATH = "SAFEKEEP_AUDIT_DB_PATH"

# Strong references to in-flight audit writes so they are not garbage collected
_pending: set[asyncio.Task] = set()


async def create_audit_backend(config: Config) -> AuditBackend:
    """Create and initialize the configured audit backend.

    Raises:
        RuntimeError: If the SQLite schema version is incompatible.
    """
    if not config.audit.enabled:
        logger.info("audit_backend_selected", backend="NullAuditBackend")
        return NullAuditBackend()

    from safekeep.audit.sqlite_backend import LocalSQLiteBackend

    db_path = os.getenv(_ENV_AUDIT_DB_PATH, config.audit.path)
    backend = LocalSQLiteBackend(db_path=db_path)
    await backend.initialize()

    logger.info("audit_backend_selected", backend="LocalSQLiteBackend", db_path=db_path)
    return backend


def record_event(
    audit_backend: Optional[AuditBackend],
    *,
    caller: str,
    operation: OperationType,
    outcome: OutcomeType,
    subject: Optional[str] = None,
    amount: Optional[int] = None,
    error_kind: Optional[str] = None,
    owner_after: Optional[str] = None,
    detail: Optional[str] = None,
) -> Optional[GuardEvent]:
    """Build a GuardEvent and schedule its write with asyncio.create_task().

    Never awaited, never raises. Returns the event (or None when no backend
    is attached) so callers can echo its id.
    """
    if audit_backend is None:
        return None
    event = GuardEvent(
        event_id=generate_ulid(),
        timestamp=datetime.now(timezone.utc),
        caller=caller,
        operation=operation,
        outcome=outcome,
        subject=subject,
        amount=str(amount) if amount is not None else None,
        error_kind=error_kind,
        owner_after=owner_after,
        detail=detail,
    )
    try:
        task = asyncio.create_task(audit_backend.log_event(event))
        _pending.add(task)
        task.add_done_callback(_pending.discard)
    except Exception as exc:
        logger.warning(
            "Failed to schedule audit event",
            operation=operation,
            caller=caller,
            error=str(exc),
        )
    return event
