"""Fixed-width identity type for SafeKeep.

Owners, guardians, allowance subjects and transfer recipients are all the
same kind of value: a 20-byte account address compared by its raw bytes.
Role checks never look at strings — parse at the boundary, compare Addresses
inside the guard.

Text form is ``0x`` followed by 40 hex digits. Parsing is case-insensitive;
formatting is always lowercase.
"""

from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass

from safekeep.constants import ADDRESS_BYTES
from safekeep.guard.errors import InvalidAddressError

_HEX_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{%d}$" % (ADDRESS_BYTES * 2))


@dataclass(frozen=True)
class Address:
    """Opaque 20-byte identity. Hashable, immutable, equal iff bytes are equal."""

    raw: bytes

    def __post_init__(self) -> None:
        if not isinstance(self.raw, bytes) or len(self.raw) != ADDRESS_BYTES:
            raise InvalidAddressError(
                f"Address must be exactly {ADDRESS_BYTES} bytes"
            )

    @classmethod
    def parse(cls, value: "str | Address") -> "Address":
        """Parse a ``0x``-prefixed hex string into an Address.

        Raises:
            InvalidAddressError: On anything that is not 0x + 40 hex digits.
        """
        if isinstance(value, Address):
            return value
        if not isinstance(value, str) or not _HEX_ADDRESS_RE.match(value.strip()):
            raise InvalidAddressError(f"Malformed address: {value!r}")
        return cls(bytes.fromhex(value.strip()[2:]))

    @property
    def is_zero(self) -> bool:
        """True for the null identity (all zero bytes)."""
        return not any(self.raw)

    def __str__(self) -> str:
        return "0x" + self.raw.hex()

    def __repr__(self) -> str:
        return f"Address({self})"


ZERO_ADDRESS = Address(bytes(ADDRESS_BYTES))


def derive_address(creator: Address, nonce: int = 0) -> Address:
    """Deterministically derive a custody address from its creator.

    Takes the last 20 bytes of SHA-256(creator || nonce). Used when the config
    does not pin guard.address, so a restarted guard keeps the same custody
    account for the same first owner.
    """
    digest = hashlib.sha256(creator.raw + nonce.to_bytes(8, "big")).digest()
    return Address(digest[-ADDRESS_BYTES:])
