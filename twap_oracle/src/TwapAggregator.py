"""TwapAggregator: Per-pool sliding windows and time-weighted averaging.

Algorithm:
    1. Observations are kept per pool in timestamp order, bounded by a
       duration (not a count)
    2. Entries strictly older than ``now - window_duration`` are evicted
    3. Each observation is weighted by the time until the next one; the
       newest observation holds until ``now``
    4. TWAP = sum(price_i * weight_i) // sum(weight_i)
    5. Refuse (InsufficientCoverageError) if fewer than 2 observations remain
       or they span less than ``min_coverage`` seconds

.. code-block:: python

    >>> pool = Pool("0xB4e16d0168e52d35CaCD2c6185b44281Ec28C9Dc")
    >>> agg = TwapAggregator(window_duration=600, min_coverage=600)
    >>> for price, t in [(100, 0), (102, 300), (101, 600)]:
    ...     agg.record(pool, PriceObservation(pool, price, t, t // 12))
    >>> agg.compute(pool, now=600).price
    101
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass

from .errors import InsufficientCoverageError
from .Pool import Pool
from .PriceSampler import PriceObservation

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TwapResult:
    """Time-weighted average price of a pool.

    :ivar pool: Pool the TWAP belongs to.
    :ivar price: Fixed-point TWAP (same scale as observations).
    :ivar coverage: Seconds spanned by the observations used.
    :ivar computed_at: Chain time the TWAP was computed for.
    :ivar observation_count: Number of observations used.
    """

    pool: Pool
    price: int
    coverage: int
    computed_at: int
    observation_count: int


class ObservationWindow:
    """Timestamp-ordered observations of one pool bounded by a duration.

    :ivar duration: Maximum age of an observation in seconds.
    """

    def __init__(self, duration: int) -> None:
        self.duration = duration
        self._observations: deque[PriceObservation] = deque()

    def __len__(self) -> int:
        return len(self._observations)

    def __iter__(self):
        return iter(self._observations)

    @property
    def tail(self) -> PriceObservation | None:
        """Newest observation, or None if empty."""
        return self._observations[-1] if self._observations else None

    @property
    def coverage(self) -> int:
        """Seconds between the oldest and newest observation."""
        if len(self._observations) < 2:
            return 0
        return self._observations[-1].timestamp - self._observations[0].timestamp

    def append(self, observation: PriceObservation) -> bool:
        """Append an observation at the tail.

        An observation older than the tail is rejected. One from the same
        block timestamp replaces the tail.

        :returns: True if the observation was stored.
        """
        tail = self.tail
        if tail is not None:
            if observation.timestamp < tail.timestamp:
                return False
            if observation.timestamp == tail.timestamp:
                self._observations.pop()
        self._observations.append(observation)
        return True

    def evict(self, now: int) -> int:
        """Remove observations strictly older than ``now - duration``.

        :returns: Number of evicted observations.
        """
        cutoff = now - self.duration
        evicted = 0
        while self._observations and self._observations[0].timestamp < cutoff:
            self._observations.popleft()
            evicted += 1
        return evicted

    def snapshot(self) -> list[PriceObservation]:
        """Return a copy of the observations, oldest first."""
        return list(self._observations)


class TwapAggregator:
    """Maintains per-pool observation windows and computes TWAPs.

    :ivar window_duration: Sliding window duration in seconds.
    :ivar min_coverage: Minimum span of observations required for a TWAP.
    """

    def __init__(self, window_duration: int, min_coverage: int) -> None:
        """Initialize the aggregator.

        :param window_duration: Sliding window duration in seconds.
        :param min_coverage: Minimum coverage in seconds (inclusive).
        :raises ValueError: If parameters are invalid.
        """
        if window_duration <= 0:
            raise ValueError("window_duration must be positive")
        if min_coverage <= 0:
            raise ValueError("min_coverage must be positive")
        if min_coverage > window_duration:
            raise ValueError("min_coverage must not exceed window_duration")

        self.window_duration = window_duration
        self.min_coverage = min_coverage
        self._windows: dict[Pool, ObservationWindow] = {}

    def _window(self, pool: Pool) -> ObservationWindow:
        window = self._windows.get(pool)
        if window is None:
            window = self._windows[pool] = ObservationWindow(self.window_duration)
        return window

    def record(self, pool: Pool, observation: PriceObservation) -> bool:
        """Record an observation for a pool.

        Out-of-order observations are logged as anomalies and dropped.

        :param pool: Pool the observation belongs to.
        :param observation: Sampled observation.
        :returns: True if the observation was stored.
        """
        window = self._window(pool)
        tail = window.tail
        if not window.append(observation):
            logger.warning(
                f"{pool}: out-of-order observation at t={observation.timestamp} "
                f"(block {observation.block_number}) older than tail "
                f"t={tail.timestamp if tail else None}, dropped"
            )
            return False

        evicted = window.evict(observation.timestamp)
        if evicted:
            logger.debug(f"{pool}: evicted {evicted} stale observations")
        return True

    def compute(self, pool: Pool, now: int) -> TwapResult:
        """Compute the TWAP of a pool's window.

        :param pool: Pool to compute for.
        :param now: Current chain time; the newest price holds until then.
        :returns: TwapResult.
        :raises InsufficientCoverageError: If the window is too thin.
        """
        window = self._window(pool)
        window.evict(now)

        observations = window.snapshot()
        coverage = window.coverage
        if len(observations) < 2 or coverage < self.min_coverage:
            raise InsufficientCoverageError(
                pool, len(observations), coverage, self.min_coverage
            )

        # Clock may lag the chain; the newest observation then gets no weight
        end = max(now, observations[-1].timestamp)

        weighted_sum = 0
        total_weight = 0
        for current, following in zip(observations, observations[1:] + [None]):
            until = following.timestamp if following is not None else end
            weight = until - current.timestamp
            weighted_sum += current.price * weight
            total_weight += weight

        return TwapResult(
            pool=pool,
            price=weighted_sum // total_weight,
            coverage=coverage,
            computed_at=end,
            observation_count=len(observations),
        )

    def window(self, pool: Pool) -> list[PriceObservation]:
        """Get a snapshot of a pool's observations, oldest first."""
        window = self._windows.get(pool)
        return window.snapshot() if window else []

    def reset(self, pool: Pool) -> None:
        """Drop all observations of a pool."""
        self._windows.pop(pool, None)
