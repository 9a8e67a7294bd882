"""
Allowance policy for autonomous delegate pulls.

Local, advisory evaluation of an AllowanceModule allowance. The arithmetic
mirrors the module's own reset-window logic so known-failing pulls are
never submitted. Evaluation never mutates state: a due reset is only
*assumed* locally; the ledger performs it when a pull executes.

The only binding check is the ledger's: the module accepts an unsigned
pull solely because msg.sender is the registered delegate, and its reset
window is the only rate limit. Nothing here throttles or retries pulls.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Optional, Sequence, Union

from .errors import EncodingError, InsufficientAllowanceError, NotADelegateError
from .transaction import normalize_address
from .units import require_uint96


def now_minutes() -> int:
    """Current wall-clock time in whole minutes, the module's time unit."""
    return int(time.time() // 60)


@dataclass(frozen=True)
class AllowanceState:
    """One (delegate, token) allowance, as returned by getTokenAllowance."""

    amount: int
    spent: int
    reset_time_min: int
    last_reset_min: int
    nonce: int

    @classmethod
    def from_chain(cls, values: Sequence[int]) -> AllowanceState:
        if len(values) != 5:
            raise EncodingError(f"getTokenAllowance returns 5 values, got {len(values)}")
        amount, spent, reset_time_min, last_reset_min, nonce = (int(v) for v in values)
        return cls(amount, spent, reset_time_min, last_reset_min, nonce)

    def reset_due(self, now_min: int) -> bool:
        return self.reset_time_min > 0 and now_min >= self.last_reset_min + self.reset_time_min

    def effective_spent(self, now_min: int) -> int:
        return 0 if self.reset_due(now_min) else self.spent

    def remaining(self, now_min: int) -> int:
        return max(0, self.amount - self.effective_spent(now_min))

    def next_reset_minutes(self, now_min: Optional[int] = None) -> Optional[int]:
        """Minute at which the next reset becomes due, or None for a one-shot allowance."""
        if self.reset_time_min <= 0:
            return None
        last = self.last_reset_min
        if now_min is not None and self.reset_due(now_min):
            # the module re-aligns lastResetMin to the period boundary on reset
            last = now_min - ((now_min - last) % self.reset_time_min)
        return last + self.reset_time_min

    def to_dict(self) -> dict:
        return {
            "amount": self.amount,
            "spent": self.spent,
            "reset_time_min": self.reset_time_min,
            "last_reset_min": self.last_reset_min,
            "nonce": self.nonce,
        }


class DenyReason(str, Enum):
    INSUFFICIENT_ALLOWANCE = "InsufficientAllowance"
    NOT_A_DELEGATE = "NotADelegate"


@dataclass(frozen=True)
class Allow:
    amount: int
    remaining: int

    allowed = True


@dataclass(frozen=True)
class Deny:
    reason: DenyReason
    delegate: str
    requested: int
    remaining: int = 0

    allowed = False

    def raise_for_denial(self) -> None:
        if self.reason is DenyReason.NOT_A_DELEGATE:
            raise NotADelegateError(self.delegate)
        raise InsufficientAllowanceError(self.requested, self.remaining)

    def describe(self) -> str:
        if self.reason is DenyReason.NOT_A_DELEGATE:
            return f"{self.delegate} is not a registered delegate"
        return f"requested {self.requested} exceeds remaining {self.remaining}"


Decision = Union[Allow, Deny]


def decide_transfer(
    state: AllowanceState,
    requested_amount: int,
    now_min: int,
    *,
    delegate: str,
    registered_delegates: Iterable[str],
) -> Decision:
    """Decide whether ``delegate`` may pull ``requested_amount`` right now."""
    if require_uint96(requested_amount, "requested amount") == 0:
        raise EncodingError("requested amount must be > 0")
    who = normalize_address(delegate)
    if who not in {normalize_address(d) for d in registered_delegates}:
        return Deny(DenyReason.NOT_A_DELEGATE, delegate=who, requested=requested_amount)

    remaining = state.remaining(now_min)
    if requested_amount > remaining:
        return Deny(
            DenyReason.INSUFFICIENT_ALLOWANCE,
            delegate=who,
            requested=requested_amount,
            remaining=remaining,
        )
    return Allow(amount=requested_amount, remaining=remaining - requested_amount)
