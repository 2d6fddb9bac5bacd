"""API key management endpoints.

Provides:
  GET  /keys         — list the caller's active keys (masked)
  POST /keys         — issue an additional key for the caller itself
  POST /keys/rotate  — rotate one of the caller's keys (new plaintext shown once)
  POST /keys/revoke  — revoke one of the caller's keys

All endpoints require authentication via Depends(authenticate_request).
Plaintext keys are returned only by issuance and rotation, exactly once.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel

from safekeep.audit.factory import record_event
from safekeep.auth.keys import (
    InvalidKeyError,
    KeyLimitExceededError,
    create_api_key,
    list_keys,
    mask_key_id,
    revoke_api_key,
    rotate_api_key_by_id,
)
from safekeep.auth.limiter import KEY_MANAGEMENT_RATE_LIMIT, limiter
from safekeep.auth.middleware import authenticate_request
from safekeep.guard.identity import Address
from safekeep.utils.logger import get_logger

logger = get_logger(__name__)

router = APIRouter(tags=["api-keys"])


# ─── Request Models ───────────────────────────────────────────────────────────


class IssueKeyRequest(BaseModel):
    """Request body for POST /keys."""

    identity: str
    """0x-address the new key authenticates as."""


class KeyIdRequest(BaseModel):
    """Request body for POST /keys/rotate and POST /keys/revoke."""

    key_id: str


# ─── Endpoints ────────────────────────────────────────────────────────────────


@router.get("/keys")
@limiter.limit(KEY_MANAGEMENT_RATE_LIMIT)
async def get_keys(
    request: Request,
    caller: Address = Depends(authenticate_request),
) -> dict:
    """List the caller's active API keys in masked form."""
    keys = await list_keys(identity=caller)
    return {"keys": keys}


@router.post("/keys")
@limiter.limit(KEY_MANAGEMENT_RATE_LIMIT)
async def issue_key(
    body: IssueKeyRequest,
    request: Request,
    caller: Address = Depends(authenticate_request),
) -> dict:
    """Issue an additional API key for the calling identity.

    Keys for any other identity (the first owner, guardians, a recovered
    owner) are issued only by the operator with ``safekeep-keys issue``. A
    key holder, the owner included, can never mint credentials that vote as
    a guardian.

    Raises:
        HTTP 403: ``body.identity`` is not the caller.
        HTTP 400: identity already holds the maximum number of keys.
    """
    identity = Address.parse(body.identity)
    audit_backend = getattr(request.app.state, "audit_backend", None)

    if identity != caller:
        record_event(
            audit_backend,
            caller=str(caller),
            operation="key_issued",
            outcome="DENIED",
            subject=str(identity),
            error_kind="IdentityMismatch",
        )
        logger.warning("API key issuance denied", caller=str(caller), identity=str(identity))
        raise HTTPException(
            status_code=403,
            detail="Keys can only be issued for the calling identity; use safekeep-keys for others",
        )

    try:
        plaintext, key_id = await create_api_key(identity=identity)
    except KeyLimitExceededError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    record_event(
        audit_backend,
        caller=str(caller),
        operation="key_issued",
        outcome="COMMITTED",
        subject=str(identity),
        detail=f"key_id={key_id[:8]}",
    )
    logger.info("API key issued", caller=str(caller), identity=str(identity))

    return {
        "key": plaintext,
        "masked_key": mask_key_id(key_id),
        "id": key_id,
        "identity": str(identity),
        "message": "API key created. Store this key — it will not be shown again.",
    }


@router.post("/keys/rotate")
@limiter.limit(KEY_MANAGEMENT_RATE_LIMIT)
async def rotate_key(
    body: KeyIdRequest,
    request: Request,
    caller: Address = Depends(authenticate_request),
) -> dict:
    """Rotate one of the caller's keys. The old key stops working immediately."""
    try:
        new_plaintext, new_key_id = await rotate_api_key_by_id(identity=caller, key_id=body.key_id)
    except InvalidKeyError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    record_event(
        getattr(request.app.state, "audit_backend", None),
        caller=str(caller),
        operation="key_rotated",
        outcome="COMMITTED",
        subject=str(caller),
        detail=f"key_id={new_key_id[:8]}",
    )

    return {
        "new_key": new_plaintext,
        "masked_key": mask_key_id(new_key_id),
        "message": "Key rotated successfully. Store this key — it will not be shown again.",
    }


@router.post("/keys/revoke")
@limiter.limit(KEY_MANAGEMENT_RATE_LIMIT)
async def revoke_key(
    body: KeyIdRequest,
    request: Request,
    caller: Address = Depends(authenticate_request),
) -> dict:
    """Revoke one of the caller's keys.

    Raises:
        HTTP 404: No active key with that id belongs to the caller.
    """
    revoked = await revoke_api_key(identity=caller, key_id=body.key_id)
    if not revoked:
        raise HTTPException(status_code=404, detail="Key not found or already revoked")

    record_event(
        getattr(request.app.state, "audit_backend", None),
        caller=str(caller),
        operation="key_revoked",
        outcome="COMMITTED",
        subject=str(caller),
        detail=f"key_id={body.key_id[:8]}",
    )
    return {"revoked": True, "key_id": body.key_id}
