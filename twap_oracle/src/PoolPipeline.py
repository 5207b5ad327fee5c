"""PoolPipeline: Per-pool sampling, aggregation and state tracking.

Each configured pool gets its own pipeline. Pipelines share the sampler,
aggregator and retry manager but keep their own state, so a failing pool
never delays another one:

    IDLE -> SAMPLING -> RECORDED -> AGGREGATING -> READY_TO_SUBMIT
         -> SUBMITTING -> IDLE

``FAILED`` is reachable from SAMPLING and SUBMITTING and returns to IDLE at
the next cycle. ``HALTED`` marks a pool whose submission path stopped after
an integrity error; it keeps sampling to build history.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import TYPE_CHECKING

from .errors import ErrorKind, InsufficientCoverageError, SampleError
from .events import EventKind, EventSink, PipelineEvent
from .PriceSampler import PRICE_SCALE
from .RetryManager import OperationKind

if TYPE_CHECKING:
    from .Pool import Pool
    from .PriceSampler import PriceObservation, PriceSampler
    from .RetryManager import RetryManager
    from .TwapAggregator import TwapAggregator, TwapResult

logger = logging.getLogger(__name__)


class PoolState(str, Enum):
    IDLE = "idle"
    SAMPLING = "sampling"
    RECORDED = "recorded"
    AGGREGATING = "aggregating"
    READY_TO_SUBMIT = "ready_to_submit"
    SUBMITTING = "submitting"
    FAILED = "failed"
    HALTED = "halted"


class PoolPipeline:
    """Pipeline state and steps for a single pool.

    :ivar pool: The pool.
    :ivar state: Current state.
    :ivar failure_kind: Error kind of the last failure while FAILED.
    :ivar last_submitted_at: Chain time of the last confirmed update.
    :ivar halted_reason: Why submission is halted, None if not halted.
    """

    def __init__(
        self,
        pool: Pool,
        sampler: PriceSampler,
        aggregator: TwapAggregator,
        retries: RetryManager,
        events: EventSink,
        update_interval: int,
        backoff: Callable[[float], Awaitable[bool]],
    ) -> None:
        """Initialize the pipeline.

        :param pool: Pool to run.
        :param sampler: Shared price sampler.
        :param aggregator: Shared TWAP aggregator.
        :param retries: Shared retry manager.
        :param events: Event sink.
        :param update_interval: Seconds between oracle updates.
        :param backoff: Sleeps for a delay; returns False if shutdown interrupted it.
        """
        self.pool = pool
        self.sampler = sampler
        self.aggregator = aggregator
        self.retries = retries
        self.events = events
        self.update_interval = update_interval
        self.backoff = backoff

        self.state = PoolState.IDLE
        self.failure_kind: ErrorKind | None = None
        self.last_submitted_at: int | None = None
        self.halted_reason: str | None = None

    @property
    def halted(self) -> bool:
        return self.halted_reason is not None

    def emit(self, kind: EventKind, **fields) -> None:
        error_kind = fields.pop("error_kind", None)
        attempt = fields.pop("attempt", None)
        self.events.emit(
            PipelineEvent(kind, self.pool, error_kind=error_kind, attempt=attempt, fields=fields)
        )

    def begin_cycle(self) -> None:
        """Return a FAILED pool to IDLE at the start of a cycle."""
        if self.state == PoolState.FAILED:
            self.state = PoolState.IDLE
            self.failure_kind = None

    def fail(self, kind: ErrorKind) -> None:
        self.state = PoolState.FAILED
        self.failure_kind = kind

    def halt(self, reason: str) -> None:
        """Stop the submission path until restart."""
        self.halted_reason = reason
        self.state = PoolState.HALTED
        self.emit(EventKind.POOL_HALTED, error_kind=ErrorKind.INTEGRITY, reason=reason)

    def is_due(self, now: int) -> bool:
        """Check if the pool is due for an oracle update."""
        if self.halted:
            return False
        return (
            self.last_submitted_at is None
            or now - self.last_submitted_at >= self.update_interval
        )

    def mark_submitted(self, now: int) -> None:
        self.last_submitted_at = now
        self.state = PoolState.IDLE
        self.retries.record_success((self.pool, OperationKind.SUBMIT))

    async def sample(self) -> PriceObservation | None:
        """Sample the pool, retrying transient failures with backoff.

        :returns: The observation, or None if the pool skips this cycle.
        """
        key = (self.pool, OperationKind.SAMPLE)
        if not self.retries.is_active(key):
            self.emit(
                EventKind.POOL_SKIPPED,
                reason="backoff",
                remaining=round(self.retries.get_backoff_remaining(key), 1),
            )
            return None

        self.retries.start_cycle(key)
        max_attempts = self.retries.policy.max_attempts
        attempt = 0
        while True:
            attempt += 1
            if not self.halted:
                self.state = PoolState.SAMPLING
            try:
                observation = await self.sampler.sample(self.pool)
            except SampleError as e:
                delay = self.retries.record_failure(key, e)
                self.fail(e.kind)
                self.emit(
                    EventKind.SAMPLE_FAILED,
                    error_kind=e.kind,
                    attempt=attempt,
                    error=str(e),
                )

                limit = max_attempts if e.max_retries is None else min(e.max_retries + 1, max_attempts)
                if not e.retryable or attempt >= limit:
                    if e.retryable:
                        self.retries.exhaust(key)
                    self.emit(
                        EventKind.POOL_SKIPPED,
                        error_kind=e.kind,
                        attempt=attempt,
                        reason="retries_exhausted" if e.retryable else "not_retryable",
                        escalated=e.max_retries is not None and e.retryable,
                    )
                    return None

                if not await self.backoff(delay):
                    return None
                continue

            self.retries.record_success(key)
            self.emit(
                EventKind.SAMPLE_SUCCEEDED,
                attempt=attempt,
                price=observation.price,
                block=observation.block_number,
            )
            return observation

    def record(self, observation: PriceObservation) -> bool:
        """Add an observation to the pool's window."""
        if not self.aggregator.record(self.pool, observation):
            self.emit(
                EventKind.OBSERVATION_REJECTED,
                error_kind=ErrorKind.DATA_QUALITY,
                timestamp=observation.timestamp,
                block=observation.block_number,
            )
            return False
        if not self.halted:
            self.state = PoolState.RECORDED
        return True

    def aggregate(self, now: int) -> TwapResult | None:
        """Compute the pool's TWAP.

        :returns: The result, or None while coverage is insufficient.
        """
        self.state = PoolState.AGGREGATING
        try:
            result = self.aggregator.compute(self.pool, now)
        except InsufficientCoverageError as e:
            self.state = PoolState.IDLE
            self.emit(
                EventKind.TWAP_UNAVAILABLE,
                error_kind=e.kind,
                observations=e.observations,
                coverage=e.coverage,
                required=e.required,
            )
            return None

        self.state = PoolState.READY_TO_SUBMIT
        self.emit(
            EventKind.TWAP_COMPUTED,
            price=f"{result.price / PRICE_SCALE:.6f}",
            coverage=result.coverage,
            observations=result.observation_count,
        )
        return result
