"""SafeKeep guard package — the custody authorization core.

Public API:

    from safekeep.guard import AccountGuard, Address, InMemoryLedger

Layout:
    identity.py — Address (20-byte identity), ZERO_ADDRESS, derive_address()
    errors.py   — GuardError taxonomy (NotOwner, AlreadyVoted, ...)
    models.py   — Allowance, RecoveryProposal, VoteReceipt
    ledger.py   — ValueLedger protocol + InMemoryLedger
    account.py  — AccountGuard state machine
    store.py    — GuardStateStore (aiosqlite snapshot persistence)
    router.py   — FastAPI routes over the guard
"""

from safekeep.guard.account import AccountGuard
from safekeep.guard.errors import (
    AlreadyVotedError,
    GuardError,
    InsufficientAllowanceError,
    InvalidAddressError,
    InvalidAmountError,
    NotAllowedError,
    NotGuardianError,
    NotOwnerError,
    TransferExecutionFailedError,
)
from safekeep.guard.identity import ZERO_ADDRESS, Address, derive_address
from safekeep.guard.ledger import InMemoryLedger, LedgerError, ValueLedger
from safekeep.guard.models import Allowance, RecoveryProposal, VoteReceipt

__all__ = [
    "AccountGuard",
    "Address",
    "ZERO_ADDRESS",
    "derive_address",
    "Allowance",
    "RecoveryProposal",
    "VoteReceipt",
    "InMemoryLedger",
    "LedgerError",
    "ValueLedger",
    # Errors
    "GuardError",
    "NotOwnerError",
    "NotGuardianError",
    "InvalidAddressError",
    "AlreadyVotedError",
    "NotAllowedError",
    "InsufficientAllowanceError",
    "TransferExecutionFailedError",
    "InvalidAmountError",
]
