"""Value-movement collaborator for AccountGuard.

The guard decides *whether* value may leave custody; a ValueLedger performs
the movement. ``send()`` must be all-or-nothing: if the recipient's payload
handler rejects the payment, every balance movement made during the send,
nested sends included, is reverted before the error propagates.

InMemoryLedger is the reference implementation used by the standalone
service and the test suite. Recipients may register a handler that receives
(sender, amount, payload) and returns raw response bytes.
"""

from __future__ import annotations

import threading
from typing import Callable, Optional, Protocol, runtime_checkable

from safekeep.guard.identity import Address
from safekeep.utils.logger import get_logger

logger = get_logger(__name__)

RecipientHandler = Callable[[Address, int, bytes], bytes]


# ─── Exceptions ───────────────────────────────────────────────────────────────


class LedgerError(Exception):
    """Base class for failed value movements."""


class InsufficientFundsError(LedgerError):
    """Sender balance is lower than the requested amount."""


class RecipientRejectedError(LedgerError):
    """Recipient payload handler raised; the movement was reverted."""


# ─── Protocol ─────────────────────────────────────────────────────────────────


@runtime_checkable
class ValueLedger(Protocol):
    """Atomic balance store the guard sends value through."""

    def balance_of(self, account: Address) -> int:
        ...

    def send(self, sender: Address, recipient: Address, amount: int, payload: bytes) -> bytes:
        """Move ``amount`` and run the recipient's payload handler.

        Returns the handler's response bytes (``b""`` when none is registered).

        Raises:
            LedgerError: On any failure. No balance change is observable.
        """
        ...


# ─── InMemoryLedger ───────────────────────────────────────────────────────────


class InMemoryLedger:
    """Thread-safe in-process ledger with optional per-recipient handlers.

    A send is a savepoint: when the recipient's handler raises, every balance
    change made since the send began is discarded, including nested sends the
    handler triggered.
    """

    def __init__(self, balances: Optional[dict[Address, int]] = None) -> None:
        self._balances: dict[Address, int] = dict(balances or {})
        self._handlers: dict[Address, RecipientHandler] = {}
        self._lock = threading.RLock()

    @classmethod
    def from_balances(cls, balances: dict[str, str]) -> "InMemoryLedger":
        """Rebuild a ledger from ``balances()`` output."""
        return cls({Address.parse(account): int(amount) for account, amount in balances.items()})

    def balances(self) -> dict[str, str]:
        """JSON-safe copy of every non-zero balance (amounts as decimal strings)."""
        with self._lock:
            return {
                str(account): str(amount)
                for account, amount in self._balances.items()
                if amount
            }

    def balance_of(self, account: Address) -> int:
        with self._lock:
            return self._balances.get(account, 0)

    def credit(self, account: Address, amount: int) -> None:
        """Fund an account from outside the ledger (faucet / opening balance)."""
        if amount < 0:
            raise ValueError("credit amount must be non-negative")
        with self._lock:
            self._balances[account] = self._balances.get(account, 0) + amount

    def register_handler(self, account: Address, handler: RecipientHandler) -> None:
        self._handlers[account] = handler

    def unregister_handler(self, account: Address) -> None:
        self._handlers.pop(account, None)

    def send(self, sender: Address, recipient: Address, amount: int, payload: bytes) -> bytes:
        with self._lock:
            available = self._balances.get(sender, 0)
            if amount > available:
                raise InsufficientFundsError(
                    f"balance {available} is lower than amount {amount}"
                )
            savepoint = dict(self._balances)
            self._move(sender, recipient, amount)

            handler = self._handlers.get(recipient)
            if handler is None:
                return b""
            try:
                response = handler(sender, amount, payload)
            except Exception as exc:
                self._balances = savepoint
                logger.warning(
                    "ledger_send_reverted",
                    recipient=str(recipient),
                    amount=str(amount),
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
                raise RecipientRejectedError(f"recipient rejected payment: {exc}") from exc
            return bytes(response or b"")

    def _move(self, sender: Address, recipient: Address, amount: int) -> None:
        self._balances[sender] = self._balances.get(sender, 0) - amount
        self._balances[recipient] = self._balances.get(recipient, 0) + amount
