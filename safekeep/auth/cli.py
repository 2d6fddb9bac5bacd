"""Operator CLI for the SafeKeep key store.

Keys are the boundary layer's proof of identity, so somebody has to issue
the first one — for the configured owner at install time, and for a new owner
after a guardian recovery (the old owner's keys are exactly what was lost).

Usage:
    safekeep-keys issue 0x<address>
    safekeep-keys list 0x<address>
    safekeep-keys revoke 0x<address> <key_id>

Honours SAFEKEEP_KEYS_DB_PATH, or pass --db explicitly.
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path
from typing import Optional

from safekeep.auth.keys import (
    KeyLimitExceededError,
    create_api_key,
    list_keys,
    revoke_api_key,
)
from safekeep.guard.errors import InvalidAddressError
from safekeep.guard.identity import Address


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="safekeep-keys", description="Manage SafeKeep API keys")
    parser.add_argument("--db", type=Path, default=None, help="Path to keys.db")
    sub = parser.add_subparsers(dest="command", required=True)

    issue = sub.add_parser("issue", help="Issue a new key for an identity")
    issue.add_argument("identity")

    lst = sub.add_parser("list", help="List an identity's active keys (masked)")
    lst.add_argument("identity")

    revoke = sub.add_parser("revoke", help="Revoke one key of an identity")
    revoke.add_argument("identity")
    revoke.add_argument("key_id")
    return parser


async def _run(args: argparse.Namespace) -> int:
    identity = Address.parse(args.identity)

    if args.command == "issue":
        try:
            plaintext, key_id = await create_api_key(identity, args.db)
        except KeyLimitExceededError as exc:
            print(f"error: {exc}", file=sys.stderr)
            return 1
        print(f"key:      {plaintext}")
        print(f"id:       {key_id}")
        print(f"identity: {identity}")
        print("Store this key — it will not be shown again.")
        return 0

    if args.command == "list":
        for entry in await list_keys(identity, args.db):
            print(f"{entry['id']}  {entry['masked_key']}  created={entry['created_at']}  "
                  f"last_used={entry['last_used_at'] or '-'}")
        return 0

    if await revoke_api_key(identity, args.key_id, args.db):
        print(f"revoked {args.key_id}")
        return 0
    print("error: key not found or already revoked", file=sys.stderr)
    return 1


def main(argv: Optional[list[str]] = None) -> int:
    args = _build_parser().parse_args(argv)
    try:
        return asyncio.run(_run(args))
    except InvalidAddressError as exc:
        print(f"error: {exc.message}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    raise SystemExit(main())
