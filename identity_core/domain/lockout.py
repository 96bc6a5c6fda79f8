"""Pure lockout decisions over an account's failure counters."""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timedelta

from .account import LockState


@dataclass(frozen=True, slots=True)
class LockEvaluation:
    is_currently_locked: bool
    remaining: timedelta


class LockoutPolicy:
    """Consecutive-failure lockout with exponential backoff per lock cycle.

    The first lock lasts ``base``; every further lock cycle doubles it, up to
    ``cap``. Expiry is evaluated lazily against ``now``: nothing sweeps
    expired locks in the background.
    """

    def __init__(
        self,
        threshold: int = 5,
        base: timedelta = timedelta(minutes=5),
        cap: timedelta = timedelta(hours=24),
    ) -> None:
        if threshold < 1:
            raise ValueError("lockout threshold must be positive")
        self._threshold = threshold
        self._base = base
        self._cap = cap

    @property
    def threshold(self) -> int:
        return self._threshold

    def evaluate(self, state: LockState, now: datetime) -> LockEvaluation:
        """Report whether ``state`` is locked at ``now`` and for how long."""
        if state.is_locked and state.locked_until is not None and now < state.locked_until:
            return LockEvaluation(True, state.locked_until - now)
        return LockEvaluation(False, timedelta(0))

    def on_failure(self, state: LockState, now: datetime) -> LockState:
        """Record a failed attempt, locking once the threshold is reached."""
        state = self._expire(state, now)
        failures = state.consecutive_failures + 1
        if failures < self._threshold:
            return replace(state, consecutive_failures=failures)
        cycle = state.lock_cycle + 1
        return LockState(
            is_locked=True,
            locked_until=now + self.lock_duration(cycle),
            consecutive_failures=failures,
            lock_cycle=cycle,
        )

    def on_success(self, state: LockState) -> LockState:
        return LockState()

    def lock_duration(self, cycle: int) -> timedelta:
        """Return the lock window for the given (1-based) lock cycle."""
        exponent = min(max(cycle - 1, 0), 30)
        duration = self._base * (2**exponent)
        return min(duration, self._cap)

    def _expire(self, state: LockState, now: datetime) -> LockState:
        # lapsed lock: counting restarts but the cycle is kept for backoff
        if state.is_locked and (state.locked_until is None or now >= state.locked_until):
            return LockState(lock_cycle=state.lock_cycle)
        return state
