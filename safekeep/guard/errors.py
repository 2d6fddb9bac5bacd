"""Typed failure taxonomy for AccountGuard operations.

Every rejection is an expected policy outcome, not a crash. Each error carries:
  - kind:        stable taxonomy name ("NotOwner", "AlreadyVoted", ...)
  - code:        snake_case machine code used in HTTP error bodies
  - status_code: HTTP mapping applied by the service layer
  - message:     human-readable text

An operation that raises any GuardError has made no observable state change.
"""

from __future__ import annotations

from typing import Optional


class GuardError(Exception):
    """Base class for all AccountGuard rejections."""

    kind: str = "GuardError"
    code: str = "guard_error"
    status_code: int = 400
    default_message: str = "Operation rejected"

    def __init__(self, message: Optional[str] = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_dict(self) -> dict[str, str]:
        return {"kind": self.kind, "code": self.code, "message": self.message}


class NotOwnerError(GuardError):
    """Caller is not the current owner but invoked an owner-only operation."""

    kind = "NotOwner"
    code = "not_owner"
    status_code = 403
    default_message = "Not owner"


class NotGuardianError(GuardError):
    """Caller is not a flagged guardian but tried to vote on recovery."""

    kind = "NotGuardian"
    code = "not_guardian"
    status_code = 403
    default_message = "Not guardian"


class InvalidAddressError(GuardError):
    """Zero or malformed identity where a concrete one is required."""

    kind = "InvalidAddress"
    code = "invalid_address"
    status_code = 400
    default_message = "Invalid address"


class AlreadyVotedError(GuardError):
    """Guardian already voted for this candidate in the current proposal epoch."""

    kind = "AlreadyVoted"
    code = "already_voted"
    status_code = 409
    default_message = "Already voted"


class NotAllowedError(GuardError):
    """Non-owner transfer with a zero or absent allowance."""

    kind = "NotAllowed"
    code = "not_allowed"
    status_code = 403
    default_message = "Not allowed"


class InsufficientAllowanceError(GuardError):
    """Non-owner transfer amount exceeds the remaining allowance."""

    kind = "InsufficientAllowance"
    code = "insufficient_allowance"
    status_code = 403
    default_message = "Insufficient allowance"


class TransferExecutionFailedError(GuardError):
    """The ledger send did not succeed. Any staged deduction was refunded."""

    kind = "TransferExecutionFailed"
    code = "transfer_failed"
    status_code = 502
    default_message = "Transfer failed"


class InvalidAmountError(GuardError):
    """Amount is not an unsigned 256-bit integer."""

    kind = "InvalidAmount"
    code = "invalid_amount"
    status_code = 400
    default_message = "Invalid amount"
