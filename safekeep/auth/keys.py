"""SafeKeep API key store — binds bearer keys to guard identities.

Implements:
  - init_key_store()     — create SQLite schema, chmod 0600
  - create_api_key()     — generate skp-<ULID>, bcrypt rounds=12, bind to an identity
  - validate_api_key()   — id lookup + bcrypt + LRU cache → Address
  - clear_key_cache()    — invalidate LRU cache
  - rotate_api_key_by_id() — atomic key rotation
  - revoke_api_key()     — mark active=0
  - list_keys()          — masked key list

The key store is the boundary layer's proof of identity: every guard
operation receives the Address returned by validate_api_key(), never an
identity claimed in a request body.

Non-negotiables:
  - Plaintext NEVER stored in keys.db — only bcrypt hash
  - os.chmod(db_path, 0o600) on every init call
  - aiosqlite ONLY — no sqlite3 synchronous calls
  - clear_key_cache() runs synchronously before rotate/revoke returns
"""

from __future__ import annotations

import asyncio
import os
from collections import OrderedDict
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import aiosqlite
import bcrypt

from safekeep.guard.identity import Address
from safekeep.utils.logger import get_logger
from safekeep.utils.ulid import generate_ulid

logger = get_logger(__name__)

# ─── Constants ────────────────────────────────────────────────────────────────

#: Default location of the key store. Override with SAFEKEEP_KEYS_DB_PATH env var.
_DEFAULT_KEYS_DB_PATH: str = str(Path.home() / ".safekeep" / "keys.db")

#: Plaintext key prefix
KEY_PREFIX: str = "skp-"

#: bcrypt cost factor
_BCRYPT_ROUNDS: int = 12

#: Maximum active keys per identity (one in use + one during rotation)
_MAX_KEYS_PER_IDENTITY: int = 2

#: LRU cache max size for key validation results
_CACHE_MAXSIZE: int = 1000


# ─── Exceptions ───────────────────────────────────────────────────────────────


class KeyLimitExceededError(Exception):
    """Raised when an identity already holds _MAX_KEYS_PER_IDENTITY active keys.

    HTTP mapping: 400 Bad Request
    """

    code: str = "key_limit_exceeded"

    def __init__(
        self,
        message: str = (
            "Maximum active keys (2) reached. "
            "Revoke an existing key before creating a new one."
        ),
    ) -> None:
        super().__init__(message)
        self.message = message


class InvalidKeyError(Exception):
    """Raised when an operation references a key that is absent or revoked."""

    def __init__(self, message: str = "Invalid or revoked API key") -> None:
        super().__init__(message)
        self.message = message


# ─── LRU Cache (module-level) ─────────────────────────────────────────────────
# OrderedDict-based LRU: functools.lru_cache cannot wrap async functions and
# rotation/revocation need an explicit clear.
#
# Cache entry: full plaintext key → identity (0x-address string)

_cache: OrderedDict[str, str] = OrderedDict()


def _cache_get(key: str) -> Optional[str]:
    if key in _cache:
        _cache.move_to_end(key)
        return _cache[key]
    return None


def _cache_set(key: str, identity: str) -> None:
    if key in _cache:
        _cache.move_to_end(key)
        _cache[key] = identity
        return
    if len(_cache) >= _CACHE_MAXSIZE:
        _cache.popitem(last=False)
    _cache[key] = identity


def clear_key_cache() -> None:
    """Invalidate ALL cached key validations."""
    _cache.clear()
    logger.debug("Key validation cache cleared")


# ─── Path Resolution ──────────────────────────────────────────────────────────


def _resolve_db_path(db_path: Optional[Path]) -> Path:
    """Resolve the keys.db path from the argument or environment variable."""
    if db_path is not None:
        return db_path
    env_path = os.environ.get("SAFEKEEP_KEYS_DB_PATH")
    if env_path:
        return Path(env_path)
    return Path(_DEFAULT_KEYS_DB_PATH)


# ─── Schema ───────────────────────────────────────────────────────────────────

_CREATE_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS api_keys (
    id              TEXT PRIMARY KEY,
    key_hash        TEXT NOT NULL,
    identity        TEXT NOT NULL,
    created_at      TEXT NOT NULL,
    last_used_at    TEXT,
    active          INTEGER NOT NULL DEFAULT 1
);
"""

_CREATE_INDEX_SQL = """
CREATE INDEX IF NOT EXISTS idx_keys_identity_active ON api_keys (identity, active);
"""


async def init_key_store(db_path: Optional[Path] = None) -> Path:
    """Initialize the SQLite key store. Idempotent; chmod 0600 on every call."""
    path = _resolve_db_path(db_path)
    path.parent.mkdir(parents=True, exist_ok=True)

    async with aiosqlite.connect(str(path)) as db:
        await db.execute("PRAGMA journal_mode=WAL")
        await db.execute(_CREATE_TABLE_SQL)
        await db.execute(_CREATE_INDEX_SQL)
        await db.execute("PRAGMA user_version = 1")
        await db.commit()

    os.chmod(path, 0o600)

    logger.debug("Key store initialized", path=str(path))
    return path


def _new_key() -> tuple[str, str, str]:
    """Return (key_id, plaintext, bcrypt_hash) for a fresh key."""
    key_id = generate_ulid()
    plaintext = f"{KEY_PREFIX}{key_id}"
    salt = bcrypt.gensalt(rounds=_BCRYPT_ROUNDS)
    key_hash = bcrypt.hashpw(plaintext.encode(), salt).decode()
    return key_id, plaintext, key_hash


# ─── Key Creation ─────────────────────────────────────────────────────────────


async def create_api_key(
    identity: Address,
    db_path: Optional[Path] = None,
) -> tuple[str, str]:
    """Generate a new skp-<ULID> key for ``identity`` and store its hash.

    Returns:
        (plaintext_key, key_id) — show plaintext_key ONCE.

    Raises:
        KeyLimitExceededError: If identity already has the maximum active keys.
    """
    path = _resolve_db_path(db_path)
    await init_key_store(path)

    async with aiosqlite.connect(str(path)) as db:
        async with db.execute(
            "SELECT COUNT(*) FROM api_keys WHERE identity = ? AND active = 1",
            (str(identity),),
        ) as cursor:
            row = await cursor.fetchone()
        count = row[0] if row else 0
        if count >= _MAX_KEYS_PER_IDENTITY:
            raise KeyLimitExceededError()

        key_id, plaintext, key_hash = _new_key()
        now = datetime.now(timezone.utc).isoformat()
        await db.execute(
            "INSERT INTO api_keys (id, key_hash, identity, created_at, active) "
            "VALUES (?, ?, ?, ?, 1)",
            (key_id, key_hash, str(identity), now),
        )
        await db.commit()

    logger.info("API key created", identity=str(identity), key_id=key_id)
    return plaintext, key_id


# ─── Key Validation + LRU Cache ───────────────────────────────────────────────


async def validate_api_key(
    key: str,
    db_path: Optional[Path] = None,
) -> Optional[Address]:
    """Validate a SafeKeep API key. Returns the bound Address, or None.

    bcrypt.checkpw() only runs on a cache miss with an active row.
    """
    if not key or not key.startswith(KEY_PREFIX) or len(key) < 12:
        return None

    cached = _cache_get(key)
    if cached is not None:
        return Address.parse(cached)

    key_id = key[len(KEY_PREFIX):]
    path = _resolve_db_path(db_path)
    try:
        async with aiosqlite.connect(str(path)) as db:
            async with db.execute(
                "SELECT key_hash, identity FROM api_keys WHERE id = ? AND active = 1",
                (key_id,),
            ) as cursor:
                row = await cursor.fetchone()
    except Exception as exc:
        logger.warning("Key validation DB error", error=str(exc))
        return None

    if row is None:
        return None

    key_hash, identity = row

    try:
        if not bcrypt.checkpw(key.encode(), key_hash.encode()):
            return None
    except Exception as exc:
        logger.warning("bcrypt verify error", error=str(exc))
        return None

    _cache_set(key, identity)
    asyncio.create_task(_update_last_used(key_id, path))
    return Address.parse(identity)


async def _update_last_used(key_id: str, path: Path) -> None:
    """Update last_used_at timestamp for a key. Fire-and-forget."""
    try:
        now = datetime.now(timezone.utc).isoformat()
        async with aiosqlite.connect(str(path)) as db:
            await db.execute(
                "UPDATE api_keys SET last_used_at = ? WHERE id = ?",
                (now, key_id),
            )
            await db.commit()
    except Exception as exc:
        logger.debug("Failed to update last_used_at", key_id=key_id, error=str(exc))


# ─── Key Rotation ─────────────────────────────────────────────────────────────


async def rotate_api_key_by_id(
    identity: Address,
    key_id: str,
    db_path: Optional[Path] = None,
) -> tuple[str, str]:
    """Replace one of ``identity``'s keys with a fresh one.

    Returns:
        (new_plaintext_key, new_key_id).

    Raises:
        InvalidKeyError: If key_id is not an active key of identity.
    """
    path = _resolve_db_path(db_path)

    async with aiosqlite.connect(str(path)) as db:
        async with db.execute(
            "SELECT id FROM api_keys WHERE id = ? AND identity = ? AND active = 1",
            (key_id, str(identity)),
        ) as cursor:
            row = await cursor.fetchone()
        if row is None:
            raise InvalidKeyError("Key not found or already revoked")

        new_key_id, new_plaintext, new_hash = _new_key()
        now = datetime.now(timezone.utc).isoformat()

        await db.execute(
            "INSERT INTO api_keys (id, key_hash, identity, created_at, active) "
            "VALUES (?, ?, ?, ?, 1)",
            (new_key_id, new_hash, str(identity), now),
        )
        await db.execute(
            "UPDATE api_keys SET active = 0 WHERE id = ? AND identity = ?",
            (key_id, str(identity)),
        )
        await db.commit()

    clear_key_cache()

    logger.info(
        "API key rotated",
        identity=str(identity),
        old_key_id=key_id[:8],
        new_key_id=new_key_id[:8],
    )
    return new_plaintext, new_key_id


# ─── Key Revocation ───────────────────────────────────────────────────────────


async def revoke_api_key(
    identity: Address,
    key_id: str,
    db_path: Optional[Path] = None,
) -> bool:
    """Revoke one of ``identity``'s keys.

    Returns:
        True if a row was deactivated, False if no matching active key was found.
    """
    path = _resolve_db_path(db_path)

    async with aiosqlite.connect(str(path)) as db:
        cursor = await db.execute(
            "UPDATE api_keys SET active = 0 "
            "WHERE id = ? AND identity = ? AND active = 1",
            (key_id, str(identity)),
        )
        await db.commit()
        rowcount = cursor.rowcount

    clear_key_cache()

    if rowcount > 0:
        logger.info("API key revoked", identity=str(identity), key_id=key_id)
        return True

    logger.debug("revoke_api_key: no matching active key", identity=str(identity), key_id=key_id)
    return False


# ─── Key Listing (Masked) ─────────────────────────────────────────────────────


def mask_key_id(key_id: str) -> str:
    return f"{KEY_PREFIX}...{key_id[-4:]}"


async def list_keys(
    identity: Address,
    db_path: Optional[Path] = None,
) -> list[dict]:
    """Return all active keys for an identity, masked, newest first."""
    path = _resolve_db_path(db_path)

    try:
        async with aiosqlite.connect(str(path)) as db:
            async with db.execute(
                "SELECT id, created_at, last_used_at "
                "FROM api_keys WHERE identity = ? AND active = 1 "
                "ORDER BY created_at DESC",
                (str(identity),),
            ) as cursor:
                rows = await cursor.fetchall()
    except Exception as exc:
        logger.warning("list_keys DB error", identity=str(identity), error=str(exc))
        return []

    return [
        {
            "id": key_id,
            "masked_key": mask_key_id(key_id),
            "created_at": created_at,
            "last_used_at": last_used_at,
        }
        for key_id, created_at, last_used_at in rows
    ]
