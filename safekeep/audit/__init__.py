"""SafeKeep audit backend package.

Re-exports the public API for ergonomic imports:

    from safekeep.audit import GuardEvent, AuditBackend, EventFilters

Layout:
    models.py         — GuardEvent + type aliases (OperationType, OutcomeType)
    protocol.py       — AuditBackend Protocol + EventFilters + NullAuditBackend stub
    sqlite_backend.py — LocalSQLiteBackend (aiosqlite, WAL mode, PRAGMA version guard)
    factory.py        — create_audit_backend() + record_event()
"""

from safekeep.audit.models import (
    GuardEvent,
    OperationType,
    OutcomeType,
)
from safekeep.audit.protocol import (
    AuditBackend,
    EventFilters,
    NullAuditBackend,
)

__all__ = [
    "OperationType",
    "OutcomeType",
    "GuardEvent",
    "EventFilters",
    "AuditBackend",
    "NullAuditBackend",
]
