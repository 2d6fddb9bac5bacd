"""State records owned by AccountGuard.

Allowance      — per-subject spending ceiling; isAllowed is derived, never stored
RecoveryProposal — one proposal epoch: candidate, distinct votes, deadline
VoteReceipt    — result of a recovery vote, returned to the caller
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

from safekeep.guard.identity import Address


@dataclass(frozen=True)
class Allowance:
    """Spending ceiling for one subject.

    ``is_allowed`` is computed from ``amount`` so the two can never disagree.
    An absent table entry is equivalent to ``Allowance()``.
    """

    amount: int = 0

    @property
    def is_allowed(self) -> bool:
        return self.amount > 0

    def to_dict(self) -> dict:
        return {"amount": str(self.amount), "is_allowed": self.is_allowed}


@dataclass
class RecoveryProposal:
    """One round of recovery voting.

    ``candidate is None`` means Idle. ``votes`` holds the distinct guardians
    who voted for ``candidate`` in this epoch, so ``vote_count`` can never be
    inflated by repeated votes from one guardian.
    """

    epoch: int = 0
    candidate: Optional[Address] = None
    votes: set[Address] = field(default_factory=set)
    opened_at: Optional[float] = None
    deadline: Optional[float] = None

    @property
    def is_open(self) -> bool:
        return self.candidate is not None

    @property
    def vote_count(self) -> int:
        return len(self.votes)

    def expired(self, now: float) -> bool:
        """True when the proposal is open, has a deadline, and it has passed."""
        return self.is_open and self.deadline is not None and now > self.deadline

    def to_dict(self) -> dict:
        return {
            "epoch": self.epoch,
            "candidate": str(self.candidate) if self.candidate else None,
            "votes": sorted(str(v) for v in self.votes),
            "opened_at": self.opened_at,
            "deadline": self.deadline,
        }

    @classmethod
    def from_dict(cls, raw: dict) -> "RecoveryProposal":
        candidate = raw.get("candidate")
        return cls(
            epoch=int(raw.get("epoch", 0)),
            candidate=Address.parse(candidate) if candidate else None,
            votes={Address.parse(v) for v in raw.get("votes", [])},
            opened_at=raw.get("opened_at"),
            deadline=raw.get("deadline"),
        )


@dataclass(frozen=True)
class VoteReceipt:
    """Outcome of a single propose_new_owner() call."""

    epoch: int
    candidate: Address
    vote_count: int
    finalized: bool
    owner: Address

    def to_dict(self) -> dict:
        return {
            "epoch": self.epoch,
            "candidate": str(self.candidate),
            "vote_count": self.vote_count,
            "finalized": self.finalized,
            "owner": str(self.owner),
        }
