"""HTTP routes over the AccountGuard held in app.state.guard.

Mutations:
  POST /guard/guardians        — set_guardian
  POST /guard/allowances       — set_allowance
  POST /guard/transfers        — transfer
  POST /guard/deposits         — deposit
  POST /guard/recovery/votes   — propose_new_owner

Reads:
  GET /guard                                   — summary
  GET /guard/guardians                         — flagged guardians
  GET /guard/guardians/{identity}              — guardian flag
  GET /guard/allowances/{subject}              — allowance
  GET /guard/recovery                          — open proposal
  GET /guard/recovery/votes/{candidate}/{guardian} — vote flag
  GET /guard/events                            — audit trail

The caller identity always comes from authenticate_request(), never from the
body. Amounts are decimal strings; payloads and handler responses are 0x-hex.

Every mutation follows one path (_run_operation): run the guard operation,
persist the snapshot and ledger balances, record a COMMITTED audit event. If
the save fails the event is still recorded, marked state_persist_failed, and
the error propagates as a 500. A GuardError records a DENIED event and
propagates to the exception handler in main.py, which renders it with
build_denial_response().
"""

from __future__ import annotations

from typing import Any, Callable, Optional, TypeVar

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field

from safekeep.audit.factory import record_event
from safekeep.audit.models import OperationType
from safekeep.audit.protocol import EventFilters
from safekeep.auth.limiter import RECOVERY_VOTE_RATE_LIMIT, limiter
from safekeep.auth.middleware import authenticate_request
from safekeep.constants import MAX_PAYLOAD_BYTES
from safekeep.guard.account import AccountGuard
from safekeep.guard.errors import GuardError
from safekeep.guard.identity import Address
from safekeep.guard.ledger import InMemoryLedger
from safekeep.utils.logger import get_logger

logger = get_logger(__name__)

router = APIRouter(prefix="/guard", tags=["guard"])

T = TypeVar("T")

_AMOUNT_PATTERN = r"^[0-9]{1,78}$"
_PAYLOAD_PATTERN = r"^0x([0-9a-fA-F]{2})*$"


# ─── Request Models ───────────────────────────────────────────────────────────


class SetGuardianRequest(BaseModel):
    identity: str
    is_guardian: bool = True


class SetAllowanceRequest(BaseModel):
    subject: str
    amount: str = Field(pattern=_AMOUNT_PATTERN)
    """Decimal string; "0" revokes."""


class TransferRequest(BaseModel):
    to: str
    amount: str = Field(pattern=_AMOUNT_PATTERN)
    payload: str = Field(default="0x", pattern=_PAYLOAD_PATTERN, max_length=2 + 2 * MAX_PAYLOAD_BYTES)


class DepositRequest(BaseModel):
    amount: str = Field(pattern=_AMOUNT_PATTERN)


class ProposeOwnerRequest(BaseModel):
    candidate: str


# ─── Helpers ──────────────────────────────────────────────────────────────────


def _guard(request: Request) -> AccountGuard:
    return request.app.state.guard


async def _persist(request: Request, guard: AccountGuard) -> None:
    state_store = getattr(request.app.state, "state_store", None)
    if state_store is None:
        return
    ledger = getattr(request.app.state, "ledger", None)
    balances = ledger.balances() if isinstance(ledger, InMemoryLedger) else None
    await state_store.save(guard.snapshot(), balances)


async def _run_operation(
    request: Request,
    caller: Address,
    operation: OperationType,
    action: Callable[[AccountGuard], T],
    *,
    subject: Optional[str] = None,
    amount: Optional[int] = None,
) -> tuple[T, Optional[str]]:
    """Run one guard mutation with persistence and audit.

    Returns:
        (action result, audit event id or None)
    """
    guard = _guard(request)
    audit_backend = getattr(request.app.state, "audit_backend", None)

    try:
        result = action(guard)
    except GuardError as exc:
        event = record_event(
            audit_backend,
            caller=str(caller),
            operation=operation,
            outcome="DENIED",
            subject=subject,
            amount=amount,
            error_kind=exc.kind,
            owner_after=str(guard.owner),
        )
        request.state.event_id = event.event_id if event else None
        logger.warning(
            "guard_operation_denied",
            operation=operation,
            caller=str(caller),
            kind=exc.kind,
            reason=exc.message,
        )
        raise

    try:
        await _persist(request, guard)
    except Exception as exc:
        # The mutation is live in memory and is written by the next
        # successful save; the trail must still show it happened.
        event = record_event(
            audit_backend,
            caller=str(caller),
            operation=operation,
            outcome="COMMITTED",
            subject=subject,
            amount=amount,
            owner_after=str(guard.owner),
            detail=f"state_persist_failed: {type(exc).__name__}",
        )
        request.state.event_id = event.event_id if event else None
        logger.error(
            "state_persist_failed",
            operation=operation,
            caller=str(caller),
            error=str(exc),
            error_type=type(exc).__name__,
        )
        raise

    event = record_event(
        audit_backend,
        caller=str(caller),
        operation=operation,
        outcome="COMMITTED",
        subject=subject,
        amount=amount,
        owner_after=str(guard.owner),
    )
    return result, event.event_id if event else None


def _summary(guard: AccountGuard) -> dict[str, Any]:
    return {
        "address": str(guard.address),
        "owner": str(guard.owner),
        "balance": str(guard.balance()),
        "confirmations_required": guard.CONFIRMATIONS_REQUIRED,
        "recovery": _recovery(guard),
    }


def _recovery(guard: AccountGuard) -> dict[str, Any]:
    candidate = guard.candidate_owner
    return {
        "candidate_owner": str(candidate) if candidate else None,
        "vote_count": guard.vote_count,
        "epoch": guard.proposal_epoch,
        "deadline": guard.proposal_deadline,
        "recovery_window_s": guard.recovery_window_s,
        "confirmations_required": guard.CONFIRMATIONS_REQUIRED,
    }


# ─── Reads ────────────────────────────────────────────────────────────────────


@router.get("")
async def get_summary(
    request: Request,
    caller: Address = Depends(authenticate_request),
) -> dict:
    """Owner, custody balance and recovery state in one call."""
    return _summary(_guard(request))


@router.get("/guardians")
async def get_guardians(
    request: Request,
    caller: Address = Depends(authenticate_request),
) -> dict:
    return {"guardians": [str(g) for g in _guard(request).guardians()]}


@router.get("/guardians/{identity}")
async def get_guardian_flag(
    identity: str,
    request: Request,
    caller: Address = Depends(authenticate_request),
) -> dict:
    address = Address.parse(identity)
    return {"identity": str(address), "is_guardian": _guard(request).is_guardian(address)}


@router.get("/allowances/{subject}")
async def get_allowance(
    subject: str,
    request: Request,
    caller: Address = Depends(authenticate_request),
) -> dict:
    address = Address.parse(subject)
    return {"subject": str(address), **_guard(request).allowance(address).to_dict()}


@router.get("/recovery")
async def get_recovery(
    request: Request,
    caller: Address = Depends(authenticate_request),
) -> dict:
    return _recovery(_guard(request))


@router.get("/recovery/votes/{candidate}/{guardian}")
async def get_vote_flag(
    candidate: str,
    guardian: str,
    request: Request,
    caller: Address = Depends(authenticate_request),
) -> dict:
    candidate_address = Address.parse(candidate)
    guardian_address = Address.parse(guardian)
    return {
        "candidate": str(candidate_address),
        "guardian": str(guardian_address),
        "has_voted": _guard(request).has_voted(candidate_address, guardian_address),
    }


@router.get("/events")
async def get_events(
    request: Request,
    operation: Optional[str] = None,
    outcome: Optional[str] = Query(default=None, pattern="^(COMMITTED|DENIED)$"),
    subject: Optional[str] = None,
    by: Optional[str] = Query(default=None, description="Filter by caller identity"),
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    caller: Address = Depends(authenticate_request),
) -> dict:
    """Audit trail, newest first."""
    audit_backend = request.app.state.audit_backend
    filters = EventFilters(
        operation=operation,
        outcome=outcome,
        caller=str(Address.parse(by)) if by else None,
        subject=str(Address.parse(subject)) if subject else None,
        limit=limit,
        offset=offset,
    )
    events = await audit_backend.query_events(filters)
    total = await audit_backend.count_events(filters)
    return {
        "total": total,
        "events": [
            {
                "event_id": e.event_id,
                "timestamp": e.timestamp.isoformat(),
                "caller": e.caller,
                "operation": e.operation,
                "outcome": e.outcome,
                "subject": e.subject,
                "amount": e.amount,
                "error_kind": e.error_kind,
                "owner_after": e.owner_after,
            }
            for e in events
        ],
    }


# ─── Mutations ────────────────────────────────────────────────────────────────


@router.post("/guardians")
async def set_guardian(
    body: SetGuardianRequest,
    request: Request,
    caller: Address = Depends(authenticate_request),
) -> dict:
    _, event_id = await _run_operation(
        request,
        caller,
        "set_guardian",
        lambda guard: guard.set_guardian(Address.parse(body.identity), body.is_guardian, caller),
        subject=body.identity.strip().lower(),
    )
    return {"identity": body.identity.lower(), "is_guardian": body.is_guardian, "event_id": event_id}


@router.post("/allowances")
async def set_allowance(
    body: SetAllowanceRequest,
    request: Request,
    caller: Address = Depends(authenticate_request),
) -> dict:
    amount = int(body.amount)
    allowance, event_id = await _run_operation(
        request,
        caller,
        "set_allowance",
        lambda guard: guard.set_allowance(Address.parse(body.subject), amount, caller),
        subject=body.subject.strip().lower(),
        amount=amount,
    )
    return {"subject": body.subject.lower(), **allowance.to_dict(), "event_id": event_id}


@router.post("/transfers")
async def transfer(
    body: TransferRequest,
    request: Request,
    caller: Address = Depends(authenticate_request),
) -> dict:
    amount = int(body.amount)
    payload = bytes.fromhex(body.payload[2:])
    response, event_id = await _run_operation(
        request,
        caller,
        "transfer",
        lambda guard: guard.transfer(Address.parse(body.to), amount, payload, caller),
        subject=body.to.strip().lower(),
        amount=amount,
    )
    guard = _guard(request)
    remaining = None if caller == guard.owner else str(guard.allowance(caller).amount)
    return {
        "to": body.to.lower(),
        "amount": str(amount),
        "response": "0x" + response.hex(),
        "remaining_allowance": remaining,
        "event_id": event_id,
    }


@router.post("/deposits")
async def deposit(
    body: DepositRequest,
    request: Request,
    caller: Address = Depends(authenticate_request),
) -> dict:
    amount = int(body.amount)
    balance, event_id = await _run_operation(
        request,
        caller,
        "deposit",
        lambda guard: guard.deposit(amount, caller),
        amount=amount,
    )
    return {"amount": str(amount), "balance": str(balance), "event_id": event_id}


@router.post("/recovery/votes")
@limiter.limit(RECOVERY_VOTE_RATE_LIMIT)
async def propose_new_owner(
    body: ProposeOwnerRequest,
    request: Request,
    caller: Address = Depends(authenticate_request),
) -> dict:
    receipt, event_id = await _run_operation(
        request,
        caller,
        "propose_new_owner",
        lambda guard: guard.propose_new_owner(Address.parse(body.candidate), caller),
        subject=body.candidate.strip().lower(),
    )
    return {**receipt.to_dict(), "event_id": event_id}
