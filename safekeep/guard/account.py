"""AccountGuard — the custody authorization state machine.

Holds the owner, the guardian set, the allowance table and the in-flight
recovery proposal, and is the only code allowed to mutate them. Three groups
of operations share that state:

  Guardian administration / recovery   set_guardian(), propose_new_owner()
  Allowance bookkeeping                set_allowance()
  Transfer execution                   transfer(), deposit()

Every mutating operation runs under one re-entrant lock and is all-or-nothing:
preconditions are checked before anything is written, and the only step that
can fail after a write (the ledger send) undoes the write before raising.

Recovery proposals are keyed by epoch. A new epoch opens when the guard is
Idle, when a guardian votes for a different candidate, or when the open
proposal's deadline has passed. Vote records belong to an epoch and are
dropped with it, so votes from a finished or abandoned round never count
toward a later one.
"""

from __future__ import annotations

import threading
import time
from dataclasses import replace
from typing import Any, Callable, Optional

from safekeep.constants import CONFIRMATIONS_REQUIRED, DEFAULT_RECOVERY_WINDOW_S, UINT256_MAX
from safekeep.guard.errors import (
    AlreadyVotedError,
    InsufficientAllowanceError,
    InvalidAddressError,
    InvalidAmountError,
    NotAllowedError,
    NotGuardianError,
    NotOwnerError,
    TransferExecutionFailedError,
)
from safekeep.guard.identity import Address, derive_address
from safekeep.guard.ledger import ValueLedger
from safekeep.guard.models import Allowance, RecoveryProposal, VoteReceipt
from safekeep.utils.logger import get_logger

logger = get_logger(__name__)

SNAPSHOT_VERSION = 1

Clock = Callable[[], float]


def _check_amount(amount: int) -> int:
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise InvalidAmountError("Amount must be an integer")
    if amount < 0 or amount > UINT256_MAX:
        raise InvalidAmountError("Amount must be an unsigned 256-bit integer")
    return amount


class AccountGuard:
    """Authorizes value leaving one custody account.

    Args:
        owner:             First owner — the constructing identity.
        ledger:            ValueLedger that performs sends and deposits.
        address:           Custody account on the ledger. Derived from
                           ``owner`` when omitted.
        recovery_window_s: Lifetime of a recovery proposal. ``None`` or ``0``
                           disables expiry.
        clock:             Returns the current time in epoch seconds. Read
                           once per vote; never awaited.

    Raises:
        InvalidAddressError: If ``owner`` is the zero identity.
    """

    CONFIRMATIONS_REQUIRED: int = CONFIRMATIONS_REQUIRED

    def __init__(
        self,
        owner: Address,
        ledger: ValueLedger,
        address: Optional[Address] = None,
        *,
        recovery_window_s: Optional[float] = DEFAULT_RECOVERY_WINDOW_S,
        clock: Clock = time.time,
    ) -> None:
        if owner.is_zero:
            raise InvalidAddressError("Owner cannot be the zero address")
        self._owner: Address = owner
        self._guardians: dict[Address, bool] = {}
        self._allowances: dict[Address, Allowance] = {}
        self._proposal = RecoveryProposal()
        self._lock = threading.RLock()
        self._ledger = ledger
        self._clock = clock
        self.address: Address = address or derive_address(owner)
        self.recovery_window_s: Optional[float] = recovery_window_s or None

    # ── Read accessors ────────────────────────────────────────────────────────

    @property
    def owner(self) -> Address:
        return self._owner

    @property
    def ledger(self) -> ValueLedger:
        return self._ledger

    def is_guardian(self, identity: Address) -> bool:
        with self._lock:
            return self._guardians.get(identity, False)

    def guardians(self) -> list[Address]:
        """All identities currently flagged as guardians, sorted by bytes."""
        with self._lock:
            return sorted((g for g, flag in self._guardians.items() if flag), key=lambda a: a.raw)

    def allowance(self, subject: Address) -> Allowance:
        with self._lock:
            return self._allowances.get(subject, Allowance())

    @property
    def candidate_owner(self) -> Optional[Address]:
        return self._proposal.candidate

    @property
    def vote_count(self) -> int:
        return self._proposal.vote_count

    @property
    def proposal_epoch(self) -> int:
        return self._proposal.epoch

    @property
    def proposal_deadline(self) -> Optional[float]:
        return self._proposal.deadline

    def has_voted(self, candidate: Address, guardian: Address) -> bool:
        """True iff ``guardian`` voted for ``candidate`` in the open epoch."""
        with self._lock:
            proposal = self._proposal
            return proposal.candidate == candidate and guardian in proposal.votes

    def balance(self) -> int:
        """Custody balance held by the guard on its ledger."""
        return self._ledger.balance_of(self.address)

    # ── Guardian administration ───────────────────────────────────────────────

    def set_guardian(self, identity: Address, is_guardian: bool, caller: Address) -> None:
        """Flag or unflag ``identity`` as a guardian. Owner only; idempotent."""
        with self._lock:
            self._require_owner(caller)
            if is_guardian:
                self._guardians[identity] = True
            else:
                self._guardians.pop(identity, None)
        logger.info("guardian_set", guardian=str(identity), is_guardian=is_guardian)

    # ── Allowance bookkeeping ─────────────────────────────────────────────────

    def set_allowance(self, subject: Address, amount: int, caller: Address) -> Allowance:
        """Replace ``subject``'s allowance with ``amount``. Owner only.

        Setting ``0`` revokes spending rights; the entry is dropped since an
        absent entry already reads as ``Allowance(0)``.
        """
        _check_amount(amount)
        with self._lock:
            self._require_owner(caller)
            if amount == 0:
                self._allowances.pop(subject, None)
            else:
                self._allowances[subject] = Allowance(amount)
            allowance = self._allowances.get(subject, Allowance())
        logger.info("allowance_set", subject=str(subject), amount=str(amount))
        return allowance

    # ── Transfer execution ────────────────────────────────────────────────────

    def transfer(self, to: Address, amount: int, payload: bytes, caller: Address) -> bytes:
        """Send ``amount`` (plus opaque ``payload``) from custody to ``to``.

        The owner sends unconditionally. Anyone else spends from their
        allowance, which is deducted before the send so a re-entrant call from
        the recipient sees the reduced ceiling. If the send fails, guard state
        is put back exactly as it was before the call (including anything a
        re-entrant call changed) and TransferExecutionFailedError is raised.

        Returns:
            Raw response bytes from the recipient's payload handler.
        """
        _check_amount(amount)
        if to.is_zero:
            raise InvalidAddressError("Cannot transfer to the zero address")

        with self._lock:
            savepoint = self._savepoint()
            if caller == self._owner:
                try:
                    response = self._send(to, amount, payload, caller)
                except BaseException:
                    self._restore(savepoint)
                    raise
                logger.info(
                    "transfer_executed",
                    spender=str(caller),
                    to=str(to),
                    amount=str(amount),
                    owner_path=True,
                )
                return response

            allowance = self._allowances.get(caller, Allowance())
            if not allowance.is_allowed:
                raise NotAllowedError()
            if amount > allowance.amount:
                raise InsufficientAllowanceError(
                    f"Insufficient allowance: {allowance.amount} remaining, {amount} requested"
                )
            self._allowances[caller] = Allowance(allowance.amount - amount)

            try:
                response = self._send(to, amount, payload, caller)
            except BaseException:
                self._restore(savepoint)
                raise

            remaining = self._allowances.get(caller, Allowance()).amount
        logger.info(
            "transfer_executed",
            spender=str(caller),
            to=str(to),
            amount=str(amount),
            remaining_allowance=str(remaining),
            owner_path=False,
        )
        return response

    def deposit(self, amount: int, caller: Address) -> int:
        """Move ``amount`` from the caller's ledger balance into custody.

        Returns:
            The custody balance after the deposit.
        """
        _check_amount(amount)
        with self._lock:
            try:
                self._ledger.send(caller, self.address, amount, b"")
            except Exception as exc:
                logger.warning("deposit_failed", sender=str(caller), amount=str(amount), error=str(exc))
                raise TransferExecutionFailedError(f"Deposit failed: {exc}") from exc
            balance = self.balance()
        logger.info("deposit_received", sender=str(caller), amount=str(amount), balance=str(balance))
        return balance

    # ── Ownership recovery ────────────────────────────────────────────────────

    def propose_new_owner(self, candidate: Address, caller: Address) -> VoteReceipt:
        """Cast ``caller``'s recovery vote for ``candidate``.

        The vote that brings the open epoch to CONFIRMATIONS_REQUIRED distinct
        guardians also swaps the owner and returns the guard to Idle.

        Raises:
            NotGuardianError:    caller is not a flagged guardian.
            InvalidAddressError: candidate is the zero identity.
            AlreadyVotedError:   caller already voted for candidate this epoch.
        """
        with self._lock:
            now = self._clock()
            if not self._guardians.get(caller, False):
                raise NotGuardianError()
            if candidate.is_zero:
                raise InvalidAddressError("Candidate owner cannot be the zero address")

            current = self._proposal
            expired = current.expired(now)
            opens_epoch = current.candidate != candidate or expired
            if not opens_epoch and caller in current.votes:
                raise AlreadyVotedError()

            if opens_epoch:
                if expired:
                    logger.info(
                        "recovery_proposal_expired",
                        epoch=current.epoch,
                        candidate=str(current.candidate),
                        vote_count=current.vote_count,
                    )
                elif current.is_open:
                    logger.info(
                        "recovery_proposal_superseded",
                        epoch=current.epoch,
                        candidate=str(current.candidate),
                        vote_count=current.vote_count,
                    )
                current = self._open_proposal(candidate, now)

            current.votes.add(caller)
            logger.info(
                "recovery_vote_cast",
                epoch=current.epoch,
                guardian=str(caller),
                candidate=str(candidate),
                vote_count=current.vote_count,
            )

            finalized = current.vote_count >= self.CONFIRMATIONS_REQUIRED
            vote_count = current.vote_count
            if finalized:
                previous = self._owner
                self._owner = candidate
                self._proposal = RecoveryProposal(epoch=current.epoch)
                logger.info(
                    "ownership_transferred",
                    epoch=current.epoch,
                    previous_owner=str(previous),
                    new_owner=str(candidate),
                )

            return VoteReceipt(
                epoch=current.epoch,
                candidate=candidate,
                vote_count=vote_count,
                finalized=finalized,
                owner=self._owner,
            )

    # ── Persistence ───────────────────────────────────────────────────────────

    def snapshot(self) -> dict[str, Any]:
        """Serialize the five logical fields to a JSON-safe dict."""
        with self._lock:
            return {
                "snapshot_version": SNAPSHOT_VERSION,
                "address": str(self.address),
                "owner": str(self._owner),
                "guardians": [str(g) for g in self.guardians()],
                "allowances": {
                    str(subject): str(allowance.amount)
                    for subject, allowance in self._allowances.items()
                },
                "proposal": self._proposal.to_dict(),
                "confirmations_required": self.CONFIRMATIONS_REQUIRED,
            }

    @classmethod
    def from_snapshot(
        cls,
        snapshot: dict[str, Any],
        ledger: ValueLedger,
        *,
        recovery_window_s: Optional[float] = DEFAULT_RECOVERY_WINDOW_S,
        clock: Clock = time.time,
    ) -> "AccountGuard":
        """Rebuild a guard from ``snapshot()`` output.

        Raises:
            ValueError: On an unknown snapshot_version.
        """
        version = snapshot.get("snapshot_version")
        if version != SNAPSHOT_VERSION:
            raise ValueError(f"Unsupported guard snapshot version: {version}")

        guard = cls(
            Address.parse(snapshot["owner"]),
            ledger,
            Address.parse(snapshot["address"]),
            recovery_window_s=recovery_window_s,
            clock=clock,
        )
        guard._guardians = {Address.parse(g): True for g in snapshot.get("guardians", [])}
        guard._allowances = {
            Address.parse(subject): Allowance(_check_amount(int(amount)))
            for subject, amount in snapshot.get("allowances", {}).items()
            if int(amount) > 0
        }
        guard._proposal = RecoveryProposal.from_dict(snapshot.get("proposal", {}))
        return guard

    # ── Internals ─────────────────────────────────────────────────────────────

    def _require_owner(self, caller: Address) -> None:
        if caller != self._owner:
            raise NotOwnerError()

    def _open_proposal(self, candidate: Address, now: float) -> RecoveryProposal:
        deadline = now + self.recovery_window_s if self.recovery_window_s else None
        self._proposal = RecoveryProposal(
            epoch=self._proposal.epoch + 1,
            candidate=candidate,
            opened_at=now,
            deadline=deadline,
        )
        logger.info(
            "recovery_proposal_opened",
            epoch=self._proposal.epoch,
            candidate=str(candidate),
            deadline=deadline,
        )
        return self._proposal

    def _savepoint(self) -> tuple[Address, dict[Address, bool], dict[Address, Allowance], RecoveryProposal]:
        proposal = replace(self._proposal, votes=set(self._proposal.votes))
        return self._owner, dict(self._guardians), dict(self._allowances), proposal

    def _restore(
        self,
        savepoint: tuple[Address, dict[Address, bool], dict[Address, Allowance], RecoveryProposal],
    ) -> None:
        self._owner, self._guardians, self._allowances, self._proposal = savepoint

    def _send(self, to: Address, amount: int, payload: bytes, spender: Address) -> bytes:
        # Any ledger failure surfaces as TransferExecutionFailed, whatever the
        # ValueLedger implementation raised.
        try:
            return self._ledger.send(self.address, to, amount, payload)
        except Exception as exc:
            logger.warning(
                "transfer_failed",
                spender=str(spender),
                to=str(to),
                amount=str(amount),
                error=str(exc),
                error_type=type(exc).__name__,
            )
            raise TransferExecutionFailedError(f"Transfer failed: {exc}") from exc
