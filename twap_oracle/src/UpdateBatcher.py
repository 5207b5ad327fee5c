"""UpdateBatcher: Encodes TWAP results into oracle updates and submits them.

Submission sequence for one batch:
    1. Freshness: every result must be at most ``freshness_bound`` seconds old
    2. Pending check: an earlier unconfirmed transaction for the same pools is
       re-checked (landed, dropped or still pending) before anything new is sent;
       :meth:`UpdateBatcher.reconcile` reports the ones that landed
    3. Idempotency: results not newer than what this process already broadcast,
       or than the oracle's on-chain ``lastUpdated(pool)``, are dropped
    4. Encode ``updatePrices`` (batch) or ``updatePrice`` (single pool)
    5. Sign and broadcast while holding the signer lock
    6. Wait for the configured number of confirmations

A shutdown request before broadcast aborts cleanly (nonce released); once the
broadcast has started it is shielded from cancellation and completes. Either
way the outcome is appended to :attr:`UpdateBatcher.outcomes`.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, TypeVar

from eth_abi.exceptions import DecodingError
from eth_abi.exceptions import EncodingError as AbiEncodingError

from .abi import LAST_UPDATED, UPDATE_PRICE, UPDATE_PRICES, decode_result, encode_call
from .ChainClient import TransactionReceipt
from .errors import (
    DuplicateSubmissionError,
    EncodingError,
    NetworkError,
    ReceiptTimeoutError,
    StaleResultError,
    SubmissionAbortedError,
    SubmissionError,
    TransactionPendingError,
)
from .TwapAggregator import TwapResult

if TYPE_CHECKING:
    from .ChainClient import ChainClient
    from .Pool import Pool
    from .Signer import SignedTransaction, Signer

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Headroom added on top of the gas estimate.
GAS_MULTIPLIER = 1.2


@dataclass(frozen=True)
class UpdateBatch:
    """TWAP results destined for one oracle transaction.

    :ivar entries: Results in submission order, one per pool.
    """

    entries: tuple[TwapResult, ...]

    def __post_init__(self) -> None:
        if not self.entries:
            raise ValueError("UpdateBatch requires at least one entry")
        pools = [e.pool for e in self.entries]
        if len(set(pools)) != len(pools):
            raise ValueError("UpdateBatch contains duplicate pools")

    @property
    def pools(self) -> list[Pool]:
        return [e.pool for e in self.entries]

    def __len__(self) -> int:
        return len(self.entries)


class SubmissionOutcome(str, Enum):
    ABORTED = "aborted"
    BROADCAST = "broadcast"
    BROADCAST_FAILED = "broadcast_failed"
    CONFIRMED = "confirmed"
    REVERTED = "reverted"
    UNCONFIRMED = "unconfirmed"


@dataclass(frozen=True)
class SubmissionRecord:
    """What happened to one submission attempt.

    :ivar pools: Pools in the submitted batch.
    :ivar outcome: Final known state of the attempt.
    :ivar tx_hash: Transaction hash, if the transaction was signed.
    :ivar nonce: Nonce, if the transaction was signed.
    """

    pools: tuple[Pool, ...]
    outcome: SubmissionOutcome
    tx_hash: str | None = None
    nonce: int | None = None


@dataclass(frozen=True)
class LandedUpdate:
    """A previously unconfirmed update found included and successful.

    :ivar pool: Updated pool.
    :ivar computed_at: Timestamp of the TWAP the transaction carried.
    :ivar receipt: Receipt of the transaction.
    """

    pool: Pool
    computed_at: int
    receipt: TransactionReceipt


class UpdateBatcher:
    """Submits TWAP updates to the oracle contract.

    :ivar oracle_address: Checksummed oracle contract address.
    :ivar supports_batch: Whether the oracle accepts ``updatePrices``.
    :ivar pending: Unconfirmed transaction hash per pool.
    :ivar outcomes: Record of every signed or aborted submission.
    """

    def __init__(
        self,
        chain: ChainClient,
        signer: Signer,
        oracle_address: str,
        clock: Callable[[], int],
        freshness_bound: int = 60,
        confirmations: int = 1,
        call_timeout: float = 10.0,
        receipt_timeout: float = 120.0,
        supports_batch: bool = True,
        shutdown: asyncio.Event | None = None,
    ) -> None:
        """Initialize the batcher.

        :param chain: Chain client for reads and broadcast.
        :param signer: Shared transaction signer.
        :param oracle_address: Oracle contract address.
        :param clock: Returns current chain time in seconds.
        :param freshness_bound: Max age of a result at submission (default: 60).
        :param confirmations: Blocks to wait for (default: 1).
        :param call_timeout: Deadline for reads and broadcast (default: 10.0).
        :param receipt_timeout: Deadline for confirmation (default: 120.0).
        :param supports_batch: Oracle accepts batched updates (default: True).
        :param shutdown: Event signalling process shutdown.
        """
        self.chain = chain
        self.signer = signer
        self.oracle_address = oracle_address
        self.clock = clock
        self.freshness_bound = freshness_bound
        self.confirmations = confirmations
        self.call_timeout = call_timeout
        self.receipt_timeout = receipt_timeout
        self.supports_batch = supports_batch
        self.shutdown = shutdown

        self.pending: dict[Pool, str] = {}
        self.outcomes: list[SubmissionRecord] = []
        self._last_submitted: dict[Pool, int] = {}
        self._pending_at: dict[Pool, int] = {}

    def build_batches(self, results: Iterable[TwapResult]) -> list[UpdateBatch]:
        """Group results into batches the oracle accepts.

        :param results: TWAP results ready for submission.
        :returns: One batch for all results, or one per pool without batching.
        """
        results = list(results)
        if not results:
            return []
        if self.supports_batch:
            return [UpdateBatch(tuple(results))]
        return [UpdateBatch((r,)) for r in results]

    async def submit(self, batch: UpdateBatch) -> TransactionReceipt:
        """Submit a batch to the oracle and wait for confirmation.

        :param batch: Batch to submit.
        :returns: Receipt of the confirmed transaction.
        :raises StaleResultError: If entries exceed the freshness bound.
        :raises TransactionPendingError: If an earlier tx is still pending.
        :raises DuplicateSubmissionError: If all entries were already written.
        :raises EncodingError: If the call cannot be encoded.
        :raises SignerError: If signing fails.
        :raises SubmissionAbortedError: If shutdown aborted before broadcast.
        :raises SubmissionError: On network or gas failures, or a revert.
        :raises ReceiptTimeoutError: If not confirmed within the deadline.
        """
        self._check_freshness(batch)
        await self.reconcile(batch.pools)
        batch = await self._drop_submitted(batch)

        data = self._encode(batch)
        tx = await self._build_transaction(data)

        async with self.signer.lock:
            signed = await self._sign_and_broadcast(batch, tx)

        return await self._wait_for_confirmation(batch, signed)

    async def _rpc(self, what: str, aw: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(aw, timeout=self.call_timeout)
        except asyncio.TimeoutError as e:
            raise SubmissionError(f"{what} timed out after {self.call_timeout}s") from e
        except NetworkError as e:
            raise SubmissionError(f"{what} failed: {e}") from e

    def _shutting_down(self) -> bool:
        return self.shutdown is not None and self.shutdown.is_set()

    def _record(
        self,
        pools: Iterable[Pool],
        outcome: SubmissionOutcome,
        signed: SignedTransaction | None = None,
        tx_hash: str | None = None,
    ) -> None:
        record = SubmissionRecord(
            pools=tuple(pools),
            outcome=outcome,
            tx_hash=tx_hash or (signed.tx_hash if signed else None),
            nonce=signed.nonce if signed else None,
        )
        self.outcomes.append(record)
        logger.info(
            f"Submission {outcome.value}: pools=[{', '.join(str(p) for p in record.pools)}]"
            f" tx={record.tx_hash} nonce={record.nonce}"
        )

    def _check_freshness(self, batch: UpdateBatch) -> None:
        now = self.clock()
        stale = [
            e.pool for e in batch.entries if now - e.computed_at > self.freshness_bound
        ]
        if stale:
            raise StaleResultError(stale, self.freshness_bound)

    async def reconcile(self, pools: Iterable[Pool]) -> list[LandedUpdate]:
        """Resolve earlier unconfirmed transactions touching the given pools.

        Dropped transactions are forgotten so the pools can be resubmitted.

        :param pools: Pools about to be submitted.
        :returns: Updates whose transaction has since landed successfully.
        :raises TransactionPendingError: If a transaction is still pending.
        :raises SubmissionError: If the node cannot be queried.
        """
        landed: list[LandedUpdate] = []
        hashes = {self.pending[p] for p in pools if p in self.pending}
        for tx_hash in sorted(hashes):
            receipt = await self._rpc(
                f"receipt of {tx_hash}", self.chain.get_receipt(tx_hash)
            )
            if receipt is not None:
                logger.info(
                    f"Pending transaction {tx_hash} landed in block "
                    f"{receipt.block_number} (status={receipt.status})"
                )
                landed_pools = [p for p, h in self.pending.items() if h == tx_hash]
                if receipt.success:
                    for pool in landed_pools:
                        computed_at = self._pending_at[pool]
                        self._last_submitted[pool] = computed_at
                        landed.append(LandedUpdate(pool, computed_at, receipt))
                    self._record(landed_pools, SubmissionOutcome.CONFIRMED, tx_hash=tx_hash)
                else:
                    for pool in landed_pools:
                        self._last_submitted.pop(pool, None)
                    self._record(landed_pools, SubmissionOutcome.REVERTED, tx_hash=tx_hash)
                self._clear_pending(tx_hash)
                continue

            known = await self._rpc(
                f"lookup of {tx_hash}", self.chain.has_transaction(tx_hash)
            )
            if not known:
                logger.warning(f"Pending transaction {tx_hash} was dropped")
                for pool in [p for p, h in self.pending.items() if h == tx_hash]:
                    self._last_submitted.pop(pool, None)
                self._clear_pending(tx_hash)
                self.signer.reset_nonce()
                continue

            raise TransactionPendingError(
                f"Transaction {tx_hash} is still pending, not resubmitting"
            )
        return landed

    def _clear_pending(self, tx_hash: str) -> None:
        for pool in [p for p, h in self.pending.items() if h == tx_hash]:
            del self.pending[pool]
            self._pending_at.pop(pool, None)

    async def _last_updated(self, pool: Pool) -> int:
        data = encode_call(LAST_UPDATED, [pool.address])
        raw = await self._rpc(
            f"lastUpdated({pool})", self.chain.call(self.oracle_address, data)
        )
        try:
            (timestamp,) = decode_result(["uint256"], raw)
        except DecodingError as e:
            raise SubmissionError(f"Malformed lastUpdated({pool}) response: {e}") from e
        return timestamp

    async def _drop_submitted(self, batch: UpdateBatch) -> UpdateBatch:
        """Drop entries already written by this process or found on-chain."""
        on_chain = await asyncio.gather(*(self._last_updated(p) for p in batch.pools))

        kept: list[TwapResult] = []
        for entry, chain_ts in zip(batch.entries, on_chain, strict=True):
            local_ts = self._last_submitted.get(entry.pool)
            if local_ts is not None and entry.computed_at <= local_ts:
                logger.info(f"{entry.pool}: TWAP at t={entry.computed_at} already submitted")
            elif entry.computed_at <= chain_ts:
                logger.info(
                    f"{entry.pool}: on-chain update at t={chain_ts} is not older "
                    f"than TWAP at t={entry.computed_at}, skipping"
                )
            else:
                kept.append(entry)

        if not kept:
            raise DuplicateSubmissionError(
                f"All entries already submitted: {', '.join(str(p) for p in batch.pools)}"
            )
        return batch if len(kept) == len(batch) else UpdateBatch(tuple(kept))

    def _encode(self, batch: UpdateBatch) -> bytes:
        try:
            if self.supports_batch:
                return encode_call(
                    UPDATE_PRICES,
                    [
                        [e.pool.address for e in batch.entries],
                        [e.price for e in batch.entries],
                        [e.computed_at for e in batch.entries],
                    ],
                )
            if len(batch) != 1:
                raise EncodingError(
                    f"Oracle does not support batching, got {len(batch)} entries"
                )
            entry = batch.entries[0]
            return encode_call(
                UPDATE_PRICE, [entry.pool.address, entry.price, entry.computed_at]
            )
        except (AbiEncodingError, ValueError, TypeError) as e:
            raise EncodingError(f"Cannot encode oracle update: {e}") from e

    async def _build_transaction(self, data: bytes) -> dict[str, Any]:
        chain_id = await self._rpc("chain_id", self.chain.chain_id())
        gas_price = await self._rpc("gas_price", self.chain.gas_price())
        gas = await self._rpc(
            "estimate_gas",
            self.chain.estimate_gas(
                {
                    "from": self.signer.address,
                    "to": self.oracle_address,
                    "data": data,
                    "value": 0,
                }
            ),
        )
        return {
            "to": self.oracle_address,
            "data": data,
            "value": 0,
            "gas": int(gas * GAS_MULTIPLIER),
            "gasPrice": gas_price,
            "chainId": chain_id,
        }

    async def _sign_and_broadcast(
        self, batch: UpdateBatch, tx: dict[str, Any]
    ) -> SignedTransaction:
        """Sign and broadcast. Caller must hold the signer lock."""
        if self._shutting_down():
            self._record(batch.pools, SubmissionOutcome.ABORTED)
            raise SubmissionAbortedError("Shutdown requested before signing")

        signed = await self.signer.sign(tx)

        if self._shutting_down():
            self.signer.release(signed.nonce)
            self._record(batch.pools, SubmissionOutcome.ABORTED, signed)
            raise SubmissionAbortedError(
                f"Shutdown requested after signing {signed.tx_hash}, not broadcast"
            )

        broadcast = asyncio.ensure_future(
            self._rpc("send_raw_transaction", self.chain.submit(signed.raw_transaction))
        )
        try:
            tx_hash = await asyncio.shield(broadcast)
        except asyncio.CancelledError:
            # Cancelled mid-broadcast: let it finish so the outcome is known
            try:
                tx_hash = await broadcast
            except SubmissionError:
                self._broadcast_failed(batch, signed)
            else:
                self._broadcast_succeeded(batch, signed, tx_hash)
            raise
        except SubmissionError:
            self._broadcast_failed(batch, signed)
            raise

        self._broadcast_succeeded(batch, signed, tx_hash)
        return signed

    def _broadcast_failed(self, batch: UpdateBatch, signed: SignedTransaction) -> None:
        # The node may have accepted it anyway; re-check before resubmitting
        for entry in batch.entries:
            self.pending[entry.pool] = signed.tx_hash
            self._pending_at[entry.pool] = entry.computed_at
        self.signer.reset_nonce()
        self._record(batch.pools, SubmissionOutcome.BROADCAST_FAILED, signed)

    def _broadcast_succeeded(
        self, batch: UpdateBatch, signed: SignedTransaction, tx_hash: str
    ) -> None:
        for entry in batch.entries:
            self.pending[entry.pool] = tx_hash
            self._pending_at[entry.pool] = entry.computed_at
            self._last_submitted[entry.pool] = entry.computed_at
        self._record(batch.pools, SubmissionOutcome.BROADCAST, signed, tx_hash)

    async def _wait_for_confirmation(
        self, batch: UpdateBatch, signed: SignedTransaction
    ) -> TransactionReceipt:
        tx_hash = self.pending.get(batch.pools[0], signed.tx_hash)
        try:
            receipt = await asyncio.wait_for(
                self.chain.wait_for_receipt(
                    tx_hash, self.confirmations, self.receipt_timeout
                ),
                timeout=self.receipt_timeout + self.call_timeout,
            )
        except asyncio.TimeoutError:
            receipt = None
        except NetworkError as e:
            logger.warning(f"Lost track of {tx_hash} while waiting: {e}")
            receipt = None

        if receipt is None:
            self._record(batch.pools, SubmissionOutcome.UNCONFIRMED, signed, tx_hash)
            raise ReceiptTimeoutError(tx_hash, self.receipt_timeout)

        self._clear_pending(tx_hash)
        if not receipt.success:
            # Nothing was written; allow the same results to be retried
            for pool in batch.pools:
                self._last_submitted.pop(pool, None)
            self._record(batch.pools, SubmissionOutcome.REVERTED, signed, tx_hash)
            raise SubmissionError(f"Transaction {tx_hash} reverted")

        self._record(batch.pools, SubmissionOutcome.CONFIRMED, signed, tx_hash)
        return receipt
