"""Shared constants for SafeKeep.

All quorum, width and numeric limits used across modules are defined here.
No magic numbers in other modules — import from here.
"""

# ─── Recovery quorum ──────────────────────────────────────────────────────────

# Number of distinct guardian votes that finalize an ownership change.
# Fixed for the lifetime of a guard; no operation may change it.
CONFIRMATIONS_REQUIRED: int = 3

# Default lifetime of an open recovery proposal (seconds).
# A vote arriving after the deadline discards the stale proposal and opens a
# fresh epoch. Overridden by guard.recovery_window_s; 0 disables expiry.
DEFAULT_RECOVERY_WINDOW_S: int = 259_200  # 72 hours

# ─── Identity ─────────────────────────────────────────────────────────────────

# Width of an identity in bytes (160-bit account address).
ADDRESS_BYTES: int = 20

# ─── Amounts ──────────────────────────────────────────────────────────────────

# Largest representable amount — unsigned 256-bit integer.
UINT256_MAX: int = 2**256 - 1

# Maximum size of an opaque transfer payload (bytes, after hex decoding).
MAX_PAYLOAD_BYTES: int = 32_768  # 32 KB
