"""PipelineCoordinator: Main orchestrator of the sampling-and-update pipeline.

Architecture:
    - A single scheduler loop triggers a cycle every ``sample_interval``
      without waiting for earlier cycles to finish
    - Each cycle runs one task per pool concurrently (sample with retry,
      record, aggregate when due) and joins them; a pool whose task from an
      earlier cycle is still running (backoff, receipt wait) sits the cycle
      out, so one slow pool never delays another
    - A pool whose TWAP waits in a not yet submitted batch keeps sampling
      but is not aggregated again until that batch is done
    - Pools due for an update submit their TWAP; with a batching oracle all
      ready pools go out in one transaction after the join point, otherwise
      each pool submits from its own task
    - Failures are contained per pool; only startup problems are fatal
    - ``shutdown()`` wakes the loop promptly and cancels in-flight work;
      broadcasts already under way complete (see UpdateBatcher)
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING

from .ChainClock import ChainClock
from .errors import (
    ConfigurationError,
    DuplicateSubmissionError,
    EncodingError,
    ErrorKind,
    FatalError,
    InsufficientCoverageError,
    NetworkError,
    SignerError,
    StaleResultError,
    SubmissionAbortedError,
    SubmitError,
)
from .events import EventKind, EventSink, LoggingEventSink
from .Pool import Pool, TokenPair
from .PoolPipeline import PoolPipeline, PoolState
from .PriceSampler import PriceSampler
from .RetryManager import OperationKind, RetryManager
from .TwapAggregator import TwapAggregator, TwapResult
from .UpdateBatcher import UpdateBatch, UpdateBatcher

if TYPE_CHECKING:
    from .ChainClient import ChainClient, TransactionReceipt
    from .config import OracleConfig
    from .Signer import Signer
    from .UpdateBatcher import LandedUpdate

logger = logging.getLogger(__name__)


class PipelineCoordinator:
    """Drives sampling, aggregation and submission for all pools.

    :ivar config: Validated configuration.
    :ivar clock: Chain time source.
    :ivar pipelines: Per-pool pipelines, populated by :meth:`start`.
    :ivar in_flight: Pools whose cycle task is still running.
    :ivar queued: Pools whose TWAP waits in a batch not yet submitted.
    """

    def __init__(
        self,
        config: OracleConfig,
        chain: ChainClient,
        signer: Signer,
        events: EventSink | None = None,
        clock: Callable[[], int] | None = None,
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ) -> None:
        """Initialize the coordinator.

        :param config: Pipeline configuration (validated in start()).
        :param chain: Chain client.
        :param signer: Shared transaction signer.
        :param events: Event sink (default: log events).
        :param clock: Chain time source (default: ChainClock).
        :param sleep: Backoff sleep override, mainly for tests.
        """
        self.config = config
        self.chain = chain
        self.signer = signer
        self.events = events or LoggingEventSink()
        self._chain_clock = ChainClock()
        self.clock = clock or self._chain_clock
        self._sleep = sleep
        self._shutdown = asyncio.Event()

        self.retries = RetryManager(config.retry)
        self.aggregator: TwapAggregator | None = None
        self.sampler: PriceSampler | None = None
        self.batcher: UpdateBatcher | None = None
        self.pipelines: dict[Pool, PoolPipeline] = {}
        self.in_flight: set[Pool] = set()
        self.queued: set[Pool] = set()
        self.cycles = 0
        self._cycle_tasks: set[asyncio.Task] = set()

    @property
    def started(self) -> bool:
        return bool(self.pipelines)

    def shutdown(self) -> None:
        """Request a graceful shutdown."""
        if not self._shutdown.is_set():
            logger.info("Shutdown requested")
            self._shutdown.set()

    async def _backoff(self, delay: float) -> bool:
        """Sleep for a backoff delay.

        :returns: False if shutdown was requested.
        """
        if self._shutdown.is_set():
            return False
        if self._sleep is not None:
            await self._sleep(delay)
            return not self._shutdown.is_set()
        try:
            await asyncio.wait_for(self._shutdown.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return True
        return False

    async def _resolve_pools(self) -> list[Pool]:
        pools: list[Pool] = []
        for spec in self.config.pool_specs():
            if isinstance(spec, TokenPair):
                if self.config.factory_address is None:
                    raise ConfigurationError(f"Token pair {spec} requires a factory address")
                try:
                    pool = await asyncio.wait_for(
                        spec.resolve(self.chain, self.config.factory_address),
                        timeout=self.config.call_timeout,
                    )
                except (NetworkError, asyncio.TimeoutError) as e:
                    raise FatalError(f"Cannot resolve pool for {spec}: {e}") from e
                logger.info(f"Resolved {spec} to pool {pool.address}")
            else:
                pool = spec
            if pool in pools:
                raise ConfigurationError(f"Pool {pool.address} configured twice")
            pools.append(pool)
        return pools

    async def start(self) -> None:
        """Validate configuration and check external dependencies.

        :raises ConfigurationError: If the configuration is invalid.
        :raises FatalError: If the chain or the signer is unavailable.
        """
        self.config.validate()

        try:
            block = await asyncio.wait_for(
                self.chain.get_latest_block(), timeout=self.config.call_timeout
            )
        except (NetworkError, asyncio.TimeoutError) as e:
            raise FatalError(f"Chain client unreachable: {e}") from e
        self._chain_clock.observe(block.timestamp)
        logger.info(f"Connected to chain at block {block.number}")

        try:
            await self.signer.check_available()
        except SignerError as e:
            raise FatalError(f"Signer unavailable: {e}") from e

        pools = await self._resolve_pools()

        self.aggregator = TwapAggregator(
            window_duration=self.config.window_duration,
            min_coverage=self.config.min_coverage,
        )
        self.sampler = PriceSampler(
            self.chain,
            pools,
            call_timeout=self.config.call_timeout,
            on_block=self._chain_clock.observe,
        )
        self.batcher = UpdateBatcher(
            self.chain,
            self.signer,
            self.config.oracle_address,
            clock=self.clock,
            freshness_bound=self.config.freshness_bound,
            confirmations=self.config.confirmations,
            call_timeout=self.config.call_timeout,
            receipt_timeout=self.config.receipt_timeout,
            supports_batch=self.config.batch_updates,
            shutdown=self._shutdown,
        )
        self.pipelines = {
            pool: PoolPipeline(
                pool,
                self.sampler,
                self.aggregator,
                self.retries,
                self.events,
                update_interval=self.config.update_interval,
                backoff=self._backoff,
            )
            for pool in pools
        }
        logger.info(
            f"PipelineCoordinator started: pools={[str(p) for p in pools]}, "
            f"signer={self.signer.address}, batch_updates={self.config.batch_updates}"
        )

    def _require_batcher(self) -> UpdateBatcher:
        if self.batcher is None:
            raise RuntimeError("start() must be called before submitting")
        return self.batcher

    async def _run_pool(
        self, pipeline: PoolPipeline, claimed: set[Pool], queued: set[Pool]
    ) -> TwapResult | None:
        """Run one cycle of a pool's pipeline.

        :param pipeline: The pool's pipeline.
        :param claimed: Pools this cycle holds in ``in_flight``.
        :param queued: Collects pools whose result this cycle will batch.
        :returns: A TWAP ready for a batched submission, or None.
        """
        pool = pipeline.pool
        try:
            pipeline.begin_cycle()
            observation = await pipeline.sample()
            if observation is None:
                return None
            pipeline.record(observation)

            if pool in self.queued:
                logger.debug(f"{pool}: TWAP from an earlier cycle not yet submitted")
                return None

            now = self.clock()
            if not pipeline.is_due(now):
                if not pipeline.halted:
                    pipeline.state = PoolState.IDLE
                return None

            result = pipeline.aggregate(now)
            if result is None:
                return None

            if not self._require_batcher().supports_batch:
                await self._submit(UpdateBatch((result,)))
                return None
            queued.add(pool)
            self.queued.add(pool)
            return result
        finally:
            claimed.discard(pool)
            self.in_flight.discard(pool)

    async def run_cycle(self) -> None:
        """Run one sampling cycle for all pools concurrently.

        Pools still busy with an earlier cycle are skipped.
        """
        if not self.started:
            raise RuntimeError("start() must be called before run_cycle()")
        self.cycles += 1

        pipelines: list[PoolPipeline] = []
        for pipeline in self.pipelines.values():
            if pipeline.pool in self.in_flight:
                pipeline.emit(EventKind.POOL_SKIPPED, reason="busy")
            else:
                self.in_flight.add(pipeline.pool)
                pipelines.append(pipeline)

        claimed = {p.pool for p in pipelines}
        queued: set[Pool] = set()
        try:
            results = await asyncio.gather(
                *(self._run_pool(p, claimed, queued) for p in pipelines), return_exceptions=True
            )

            ready: list[TwapResult] = []
            for pipeline, result in zip(pipelines, results, strict=True):
                if isinstance(result, asyncio.CancelledError):
                    raise result
                if isinstance(result, BaseException):
                    logger.error(
                        f"{pipeline.pool}: unexpected pipeline error: {result!r}",
                        exc_info=result,
                    )
                    pipeline.fail(ErrorKind.TRANSIENT)
                    pipeline.emit(EventKind.POOL_SKIPPED, reason="unexpected_error", error=repr(result))
                elif result is not None:
                    ready.append(result)

            for batch in self._require_batcher().build_batches(ready):
                await self._submit(batch)
        finally:
            # Tasks cancelled before they started never released their pool
            self.in_flight.difference_update(claimed)
            self.queued.difference_update(queued)

    def _recompute(self, batch: UpdateBatch, stale: list[Pool]) -> UpdateBatch | None:
        """Replace stale entries with freshly computed TWAPs."""
        if self.aggregator is None:
            raise RuntimeError("start() must be called before submitting")
        now = self.clock()
        entries: list[TwapResult] = []
        for entry in batch.entries:
            if entry.pool not in stale:
                entries.append(entry)
                continue
            try:
                entries.append(self.aggregator.compute(entry.pool, now))
            except InsufficientCoverageError as e:
                pipeline = self.pipelines[entry.pool]
                pipeline.state = PoolState.IDLE
                pipeline.emit(
                    EventKind.TWAP_UNAVAILABLE,
                    error_kind=e.kind,
                    observations=e.observations,
                    coverage=e.coverage,
                    required=e.required,
                )
        return UpdateBatch(tuple(entries)) if entries else None

    def _batch_event(self, batch: UpdateBatch, kind: EventKind, **fields) -> None:
        for pool in batch.pools:
            self.pipelines[pool].emit(kind, **fields)

    async def _submit(self, batch: UpdateBatch) -> TransactionReceipt | None:
        """Submit a batch, retrying transient failures.

        :returns: The receipt on success, None otherwise.
        """
        batcher = self._require_batcher()
        entries = tuple(e for e in batch.entries if not self.pipelines[e.pool].halted)
        if not entries:
            return None
        batch = UpdateBatch(entries)
        for pool in batch.pools:
            self.retries.start_cycle((pool, OperationKind.SUBMIT))

        max_attempts = self.retries.policy.max_attempts
        recomputed = False
        attempt = 0
        while True:
            attempt += 1
            for pool in batch.pools:
                self.pipelines[pool].state = PoolState.SUBMITTING

            try:
                landed = await batcher.reconcile(batch.pools)
                if landed:
                    remaining = self._confirm_landed(batch, landed)
                    if remaining is None:
                        return None
                    batch = remaining
                self._batch_event(batch, EventKind.SUBMISSION_ATTEMPTED, attempt=attempt, size=len(batch))
                receipt = await batcher.submit(batch)
            except StaleResultError as e:
                self._batch_event(batch, EventKind.SUBMISSION_FAILED, error_kind=e.kind, attempt=attempt, error=str(e))
                if recomputed:
                    self._fail_batch(batch, e.kind)
                    return None
                recomputed = True
                refreshed = self._recompute(batch, e.pools)
                if refreshed is None:
                    return None
                batch = refreshed
                continue
            except DuplicateSubmissionError as e:
                self._batch_event(batch, EventKind.SUBMISSION_FAILED, error_kind=e.kind, attempt=attempt, error=str(e))
                for pool in batch.pools:
                    self.pipelines[pool].state = PoolState.IDLE
                return None
            except (EncodingError, SignerError) as e:
                self._batch_event(batch, EventKind.SUBMISSION_FAILED, error_kind=e.kind, attempt=attempt, error=str(e))
                for pool in batch.pools:
                    self.pipelines[pool].halt(f"{type(e).__name__}: {e}")
                return None
            except SubmissionAbortedError as e:
                self._batch_event(batch, EventKind.SUBMISSION_ABORTED, error_kind=e.kind, attempt=attempt, error=str(e))
                self._fail_batch(batch, e.kind)
                return None
            except SubmitError as e:
                self._batch_event(batch, EventKind.SUBMISSION_FAILED, error_kind=e.kind, attempt=attempt, error=str(e))
                delay = 0.0
                for pool in batch.pools:
                    delay = self.retries.record_failure((pool, OperationKind.SUBMIT), e)
                if e.retryable and attempt < max_attempts and await self._backoff(delay):
                    continue
                self._fail_batch(batch, e.kind)
                self._batch_event(
                    batch,
                    EventKind.POOL_SKIPPED,
                    error_kind=e.kind,
                    attempt=attempt,
                    reason="submission_failed",
                )
                return None

            now = self.clock()
            for pool in batch.pools:
                self.pipelines[pool].mark_submitted(now)
            for entry in batch.entries:
                self.pipelines[entry.pool].emit(
                    EventKind.SUBMISSION_SUCCEEDED,
                    attempt=attempt,
                    tx_hash=receipt.tx_hash,
                    block=receipt.block_number,
                    price=entry.price,
                    computed_at=entry.computed_at,
                )
            return receipt

    def _confirm_landed(
        self, batch: UpdateBatch, landed: list[LandedUpdate]
    ) -> UpdateBatch | None:
        """Credit updates that landed after their receipt wait timed out.

        :returns: The entries still due for an update, or None.
        """
        for update in landed:
            pipeline = self.pipelines[update.pool]
            pipeline.mark_submitted(update.computed_at)
            pipeline.emit(
                EventKind.SUBMISSION_SUCCEEDED,
                tx_hash=update.receipt.tx_hash,
                block=update.receipt.block_number,
                computed_at=update.computed_at,
                late=True,
            )

        now = self.clock()
        entries = tuple(e for e in batch.entries if self.pipelines[e.pool].is_due(now))
        return UpdateBatch(entries) if entries else None

    def _fail_batch(self, batch: UpdateBatch, kind: ErrorKind) -> None:
        for pool in batch.pools:
            self.pipelines[pool].fail(kind)

    async def run(self) -> None:
        """Run cycles every ``sample_interval`` seconds until shutdown."""
        if not self.started:
            await self.start()

        logger.info(
            f"Starting pipeline loop for {len(self.pipelines)} pools "
            f"(sample every {self.config.sample_interval}s, "
            f"update every {self.config.update_interval}s)"
        )

        next_at = time.monotonic()
        while not self._shutdown.is_set():
            cycle = asyncio.create_task(self.run_cycle())
            self._cycle_tasks.add(cycle)
            cycle.add_done_callback(self._cycle_done)

            next_at += self.config.sample_interval
            remaining = next_at - time.monotonic()
            if remaining > 0:
                try:
                    await asyncio.wait_for(self._shutdown.wait(), timeout=remaining)
                except asyncio.TimeoutError:
                    pass
            else:
                next_at = time.monotonic()

        in_flight = list(self._cycle_tasks)
        for cycle in in_flight:
            cycle.cancel()
        await asyncio.gather(*in_flight, return_exceptions=True)

        self._log_shutdown_outcomes()
        logger.info(f"Pipeline stopped after {self.cycles} cycles")

    def _cycle_done(self, cycle: asyncio.Task) -> None:
        self._cycle_tasks.discard(cycle)
        if cycle.cancelled():
            return
        error = cycle.exception()
        if error is not None:
            logger.error(f"Cycle failed: {error!r}", exc_info=error)

    def _log_shutdown_outcomes(self) -> None:
        if self.batcher is None:
            return
        for pool, tx_hash in self.batcher.pending.items():
            logger.warning(f"{pool}: transaction {tx_hash} unconfirmed at shutdown")
