"""GuardEvent dataclass and type aliases for the SafeKeep audit backend.

Every guard operation — committed or denied — and every API key lifecycle
change produces one GuardEvent. Amounts are stored as decimal strings because
uint256 values do not fit in an SQLite INTEGER.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Literal, Optional

# ─── Type Aliases ─────────────────────────────────────────────────────────────

OutcomeType = Literal["COMMITTED", "DENIED"]
OperationType = Literal[
    "set_guardian",
    "set_allowance",
    "transfer",
    "deposit",
    "propose_new_owner",
    "key_issued",
    "key_rotated",
    "key_revoked",
]


# ─── GuardEvent ───────────────────────────────────────────────────────────────


@dataclass
class GuardEvent:
    """Audit record of one authorization decision.

    schema_version=1 — increment on breaking schema changes.

    Field reference:
        Required at construction: event_id, timestamp, caller, operation, outcome
        Always present: schema_version (default=1)
        DENIED only: error_kind
        Optional: subject, amount, owner_after, detail
    """

    # ── Required fields ───────────────────────────────────────────────────────
    event_id: str
    """ULID-format unique identifier for this event."""
    timestamp: datetime
    """UTC datetime of the decision."""
    caller: str
    """Authenticated caller identity (0x-address)."""
    operation: OperationType
    """Which operation was attempted."""
    outcome: OutcomeType
    """'COMMITTED' if the state change happened, 'DENIED' if it was rejected."""

    schema_version: int = 1

    # ── Optional fields ───────────────────────────────────────────────────────
    subject: Optional[str] = None
    """Identity acted upon: guardian, allowance subject, recipient or candidate."""
    amount: Optional[str] = None
    """Decimal-string amount for allowance, transfer and deposit operations."""
    error_kind: Optional[str] = None
    """GuardError.kind for DENIED events (e.g. 'NotOwner', 'AlreadyVoted')."""
    owner_after: Optional[str] = None
    """Owner identity after the operation (records recovery hand-overs)."""
    detail: Optional[str] = None
    """Short free-form context (vote count, key id). Never contains key material."""
