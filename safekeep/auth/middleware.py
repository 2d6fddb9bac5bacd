"""SafeKeep API key authentication dependency.

Provides ``authenticate_request()``: a FastAPI Depends()-compatible async
dependency that resolves the caller identity for every guard operation.

Header extraction precedence:
  1. X-SafeKeep-Key: skp-<ulid>
  2. Authorization: Bearer skp-<ulid>

Auth control:
  - SAFEKEEP_AUTH_REQUIRED=true  → key validation enforced (default)
  - SAFEKEEP_AUTH_REQUIRED=false → the caller identity is taken verbatim from
    the X-SafeKeep-Caller header (local development and tests only)

Never run in production with auth disabled: anyone could then act as the owner.
"""

from __future__ import annotations

import os
import re

from fastapi import HTTPException, Request

from safekeep.auth.keys import KEY_PREFIX, validate_api_key
from safekeep.guard.errors import InvalidAddressError
from safekeep.guard.identity import Address
from safekeep.utils.logger import get_logger

logger = get_logger(__name__)

_BEARER_KEY_RE = re.compile(r"^Bearer\s+(%s\S+)" % re.escape(KEY_PREFIX), re.IGNORECASE)

CALLER_HEADER = "X-SafeKeep-Caller"
KEY_HEADER = "X-SafeKeep-Key"


def _is_auth_required() -> bool:
    """Read SAFEKEEP_AUTH_REQUIRED per request so tests can monkeypatch it."""
    return os.environ.get("SAFEKEEP_AUTH_REQUIRED", "true").lower() == "true"


def _extract_bearer(authorization: str) -> str | None:
    if not authorization:
        return None
    m = _BEARER_KEY_RE.match(authorization.strip())
    return m.group(1) if m else None


async def authenticate_request(request: Request) -> Address:
    """FastAPI dependency: authenticate the caller and return their Address.

    Raises:
        HTTPException(401): No key, an invalid/revoked key, or (in bypass
                            mode) a missing or malformed X-SafeKeep-Caller.
    """
    if not _is_auth_required():
        claimed = request.headers.get(CALLER_HEADER)
        try:
            return Address.parse(claimed or "")
        except InvalidAddressError:
            raise HTTPException(
                status_code=401,
                detail=f"Auth disabled: {CALLER_HEADER} header must carry a 0x-address",
            )

    key = request.headers.get(KEY_HEADER) or _extract_bearer(
        request.headers.get("Authorization", "")
    )

    if not key or not key.startswith(KEY_PREFIX):
        logger.warning(
            "Authentication failed: no SafeKeep key",
            path=str(request.url.path),
            method=request.method,
        )
        raise HTTPException(status_code=401, detail="Missing SafeKeep API key")

    identity = await validate_api_key(key)

    if identity is None:
        logger.warning(
            "Authentication failed: invalid key",
            path=str(request.url.path),
            method=request.method,
        )
        raise HTTPException(status_code=401, detail="Invalid or revoked API key")

    return identity
