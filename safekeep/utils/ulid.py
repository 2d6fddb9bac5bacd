"""ULID generation utility for SafeKeep.

Provides a single `generate_ulid()` function that returns a 26-character ULID
used as:
  - event_id of audit records (GuardEvent.event_id)
  - the random part of API keys (skp-<ULID>)
  - the X-SafeKeep-Request-ID correlation header

Uses the `python-ulid` library — do NOT hand-roll ULID generation.
"""

from __future__ import annotations

from ulid import ULID


def generate_ulid() -> str:
    """Generate a new ULID as a 26-character uppercase string.

    Returns:
        str: Crockford Base32 ULID, e.g. ``"01KJ0JRVHYA7KX32VPN5ZSCTMV"``.
    """
    return str(ULID())
