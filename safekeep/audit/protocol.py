"""AuditBackend Protocol + EventFilters dataclass.

GuardEvent is defined in safekeep/audit/models.py.
This module defines the pluggable backend interface (AuditBackend Protocol),
the query filter dataclass (EventFilters) and the NullAuditBackend stub.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Protocol, runtime_checkable

from safekeep.audit.models import GuardEvent
from safekeep.utils.logger import get_logger

logger = get_logger(__name__)


# ─── EventFilters ─────────────────────────────────────────────────────────────


@dataclass
class EventFilters:
    """Query filters for AuditBackend.query_events() and count_events().

    All fields are optional. An empty EventFilters() returns the newest 50 events.
    """

    operation: Optional[str] = None
    """Filter by operation name, e.g. 'transfer'."""
    outcome: Optional[str] = None
    """Filter by outcome: 'COMMITTED' or 'DENIED'."""
    caller: Optional[str] = None
    """Filter to events initiated by one identity."""
    subject: Optional[str] = None
    """Filter to events acting on one identity."""
    since: Optional[datetime] = None
    """Include events with timestamp >= since (UTC)."""
    until: Optional[datetime] = None
    """Include events with timestamp <= until (UTC)."""
    limit: int = 50
    offset: int = 0


# ─── AuditBackend Protocol ────────────────────────────────────────────────────


@runtime_checkable
class AuditBackend(Protocol):
    """Pluggable audit backend interface.

    Implementations: LocalSQLiteBackend (default), NullAuditBackend.

    log_event() is called via asyncio.create_task() at all call sites — an
    audit failure must never turn a committed guard operation into an error.
    """

    async def log_event(self, event: GuardEvent) -> None:
        """Persist an event. Must NEVER raise."""
        ...

    async def query_events(self, filters: EventFilters) -> list[GuardEvent]:
        """Return matching events, newest first."""
        ...

    async def count_events(self, filters: EventFilters) -> int:
        """Count matching events, ignoring limit/offset."""
        ...

    async def health_check(self) -> bool:
        """Returns True if the backend is operational. Must not raise."""
        ...

    async def prune_old_events(self, retention_days: int = 90) -> int:
        """Delete events older than retention_days. Returns count of deleted rows."""
        ...

    async def close(self) -> None:
        ...


# ─── NullAuditBackend ────────────────────────────────────────────────────────


class NullAuditBackend:
    """No-op AuditBackend — used in tests and when auditing is disabled."""

    async def log_event(self, event: GuardEvent) -> None:
        logger.debug("NullAuditBackend.log_event", event_id=event.event_id)

    async def query_events(self, filters: EventFilters) -> list[GuardEvent]:
        return []

    async def count_events(self, filters: EventFilters) -> int:
        return 0

    async def health_check(self) -> bool:
        return True

    async def prune_old_events(self, retention_days: int = 90) -> int:
        return 0

    async def close(self) -> None:
        pass


assert isinstance(NullAuditBackend(), AuditBackend), (
    "NullAuditBackend does not satisfy AuditBackend protocol — implementation error"
)
