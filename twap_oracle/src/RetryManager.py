"""RetryManager: Per-pool, per-operation retry state with exponential backoff.

Each ``(pool, operation)`` key has its own :class:`RetryState`; a failure of
one pool never delays another. The backoff duration doubles (by default) with
each consecutive failure, up to ``max_delay``. A success resets the state.

Retry state either resets at the start of every cycle, or, with
``carry_over`` enabled, persists across cycles: once a pool has exhausted its
attempts it stays in backoff (``backoff_until``) and is skipped by later
cycles until the escalated delay has passed.

.. code-block:: python

    >>> manager = RetryManager(RetryPolicy(base_delay=5.0, max_delay=300.0))
    >>> key = ("weth-usdc", OperationKind.SAMPLE)
    >>> manager.record_failure(key, NetworkError("timeout"))
    5.0
    >>> manager.record_failure(key, NetworkError("timeout"))
    10.0
    >>> manager.record_success(key)
    >>> manager.get_state(key).attempts
    0
"""

from __future__ import annotations

import time
from collections.abc import Hashable
from dataclasses import dataclass
from enum import Enum


class OperationKind(str, Enum):
    SAMPLE = "sample"
    SUBMIT = "submit"


@dataclass(frozen=True)
class RetryPolicy:
    """Backoff parameters.

    :ivar max_attempts: Attempts per cycle before the pool is skipped.
    :ivar base_delay: Delay after the first failure in seconds.
    :ivar max_delay: Cap on the delay in seconds.
    :ivar multiplier: Growth factor per consecutive failure.
    :ivar carry_over: Keep retry state across cycles.
    """

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    multiplier: float = 2.0
    carry_over: bool = False

    def delay(self, attempts: int) -> float:
        """Backoff delay after the given number of consecutive failures."""
        return min(self.base_delay * (self.multiplier ** (attempts - 1)), self.max_delay)


@dataclass
class RetryState:
    """Retry status of one pool operation.

    :ivar attempts: Consecutive failures.
    :ivar next_delay: Delay before the next attempt in seconds.
    :ivar last_error: Most recent failure.
    :ivar backoff_until: Unix timestamp when a carried-over backoff ends.
    :ivar total_failures: Total failures since tracking began.
    :ivar total_successes: Total successes since tracking began.
    """

    attempts: int = 0
    next_delay: float = 0.0
    last_error: Exception | None = None
    backoff_until: float = 0.0
    total_failures: int = 0
    total_successes: int = 0


class RetryManager:
    """Tracks retry state keyed by ``(pool, operation)``.

    :ivar policy: Backoff parameters.
    """

    def __init__(self, policy: RetryPolicy | None = None) -> None:
        self.policy = policy or RetryPolicy()
        self._states: dict[Hashable, RetryState] = {}

    def get_state(self, key: Hashable) -> RetryState:
        """Get (creating if needed) the retry state for a key."""
        state = self._states.get(key)
        if state is None:
            state = self._states[key] = RetryState()
        return state

    def start_cycle(self, key: Hashable) -> None:
        """Prepare a key for a new cycle.

        Without carry-over the consecutive failure count is reset.
        """
        if not self.policy.carry_over:
            state = self.get_state(key)
            state.attempts = 0
            state.next_delay = 0.0
            state.backoff_until = 0.0

    def record_failure(self, key: Hashable, error: Exception) -> float:
        """Record a failure and compute the next backoff delay.

        :param key: Retry key.
        :param error: The failure.
        :returns: The backoff delay in seconds.
        """
        state = self.get_state(key)
        state.attempts += 1
        state.total_failures += 1
        state.last_error = error
        state.next_delay = self.policy.delay(state.attempts)
        return state.next_delay

    def record_success(self, key: Hashable) -> None:
        """Record a success, resetting the failure state."""
        state = self.get_state(key)
        state.attempts = 0
        state.next_delay = 0.0
        state.last_error = None
        state.backoff_until = 0.0
        state.total_successes += 1

    def exhaust(self, key: Hashable) -> None:
        """Mark a key's attempts exhausted for this cycle.

        With carry-over the key stays in backoff for ``next_delay`` seconds.
        """
        if self.policy.carry_over:
            state = self.get_state(key)
            state.backoff_until = time.time() + state.next_delay

    def is_active(self, key: Hashable) -> bool:
        """Check if a key is not in a carried-over backoff."""
        state = self._states.get(key)
        return state is None or time.time() >= state.backoff_until

    def get_backoff_remaining(self, key: Hashable) -> float:
        """Seconds remaining in backoff, or 0 if not in backoff."""
        state = self._states.get(key)
        if state is None:
            return 0.0
        return max(0.0, state.backoff_until - time.time())

    def reset(self, key: Hashable) -> None:
        """Forget the retry state of a key."""
        self._states.pop(key, None)
