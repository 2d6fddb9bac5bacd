"""SafeKeep API key authentication package.

Public API:
  - create_api_key()        — generate skp-<ULID> key bound to an identity
  - validate_api_key()      — id lookup + bcrypt verify + LRU cache → Address
  - rotate_api_key_by_id()  — issue a replacement key, deactivate the old one
  - revoke_api_key()        — mark key inactive, clear cache
  - list_keys()             — masked active keys for an identity
  - init_key_store()        — create schema, chmod 0600, idempotent
  - authenticate_request()  — FastAPI Depends() dependency
"""

from __future__ import annotations

from safekeep.auth.keys import (
    InvalidKeyError,
    KeyLimitExceededError,
    clear_key_cache,
    create_api_key,
    init_key_store,
    list_keys,
    revoke_api_key,
    rotate_api_key_by_id,
    validate_api_key,
)
from safekeep.auth.middleware import authenticate_request

__all__ = [
    "KeyLimitExceededError",
    "InvalidKeyError",
    "create_api_key",
    "init_key_store",
    "list_keys",
    "revoke_api_key",
    "rotate_api_key_by_id",
    "validate_api_key",
    "clear_key_cache",
    "authenticate_request",
]
