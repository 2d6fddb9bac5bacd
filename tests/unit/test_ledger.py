"""Unit tests for safekeep/guard/ledger.py — InMemoryLedger."""

from __future__ import annotations

import pytest

from safekeep.guard.identity import Address
from safekeep.guard.ledger import (
    InMemoryLedger,
    InsufficientFundsError,
    RecipientRejectedError,
    ValueLedger,
)

A = Address(b"\x0a" * 20)
B = Address(b"\x0b" * 20)


def test_satisfies_protocol() -> None:
    assert isinstance(InMemoryLedger(), ValueLedger)


def test_unknown_account_has_zero_balance() -> None:
    assert InMemoryLedger().balance_of(A) == 0


def test_credit_accumulates() -> None:
    ledger = InMemoryLedger()
    ledger.credit(A, 5)
    ledger.credit(A, 7)
    assert ledger.balance_of(A) == 12


def test_negative_credit_rejected() -> None:
    with pytest.raises(ValueError):
        InMemoryLedger().credit(A, -1)


def test_send_moves_value() -> None:
    ledger = InMemoryLedger({A: 10})
    assert ledger.send(A, B, 4, b"") == b""
    assert ledger.balance_of(A) == 6
    assert ledger.balance_of(B) == 4


def test_send_more_than_balance_fails() -> None:
    ledger = InMemoryLedger({A: 3})
    with pytest.raises(InsufficientFundsError):
        ledger.send(A, B, 4, b"")
    assert ledger.balance_of(A) == 3
    assert ledger.balance_of(B) == 0


def test_handler_response_returned() -> None:
    ledger = InMemoryLedger({A: 10})
    ledger.register_handler(B, lambda sender, amount, payload: payload[::-1])
    assert ledger.send(A, B, 1, b"abc") == b"cba"


def test_handler_sees_credited_balance() -> None:
    ledger = InMemoryLedger({A: 10})
    seen: list[int] = []
    ledger.register_handler(B, lambda sender, amount, payload: seen.append(ledger.balance_of(B)) or b"")
    ledger.send(A, B, 4, b"")
    assert seen == [4]


def test_rejecting_handler_reverts() -> None:
    ledger = InMemoryLedger({A: 10})

    def reject(sender: Address, amount: int, payload: bytes) -> bytes:
        raise ValueError("nope")

    ledger.register_handler(B, reject)
    with pytest.raises(RecipientRejectedError):
        ledger.send(A, B, 4, b"")
    assert ledger.balance_of(A) == 10
    assert ledger.balance_of(B) == 0


def test_unregister_handler() -> None:
    ledger = InMemoryLedger({A: 10})
    ledger.register_handler(B, lambda *_: b"x")
    ledger.unregister_handler(B)
    assert ledger.send(A, B, 1, b"") == b""


def test_rejecting_handler_reverts_nested_sends() -> None:
    c = Address(b"\x0c" * 20)
    ledger = InMemoryLedger({A: 10})

    def forward_then_reject(sender: Address, amount: int, payload: bytes) -> bytes:
        ledger.send(B, c, amount, b"")
        raise ValueError("nope")

    ledger.register_handler(B, forward_then_reject)
    with pytest.raises(RecipientRejectedError):
        ledger.send(A, B, 4, b"")
    assert (ledger.balance_of(A), ledger.balance_of(B), ledger.balance_of(c)) == (10, 0, 0)


def test_balances_roundtrip() -> None:
    ledger = InMemoryLedger({A: 10, B: 0})
    assert ledger.balances() == {str(A): "10"}
    restored = InMemoryLedger.from_balances(ledger.balances())
    assert restored.balance_of(A) == 10
    assert restored.balance_of(B) == 0
