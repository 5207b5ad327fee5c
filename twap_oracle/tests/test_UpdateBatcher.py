"""Unit tests for UpdateBatcher."""

import asyncio

import pytest
from web3 import Web3

from twap_oracle.src.abi import UPDATE_PRICE, UPDATE_PRICES
from twap_oracle.src.errors import (
    DuplicateSubmissionError,
    EncodingError,
    NetworkError,
    ReceiptTimeoutError,
    StaleResultError,
    SubmissionAbortedError,
    SubmissionError,
    TransactionPendingError,
)
from twap_oracle.src.TwapAggregator import TwapResult
from twap_oracle.src.UpdateBatcher import SubmissionOutcome, UpdateBatch, UpdateBatcher

ORACLE = Web3.to_checksum_address("0x" + "0c" * 20)


def result(pool, price: int, computed_at: int) -> TwapResult:
    return TwapResult(pool, price, coverage=600, computed_at=computed_at, observation_count=3)


def make_batcher(chain, signer, **kwargs) -> UpdateBatcher:
    return UpdateBatcher(chain, signer, ORACLE, clock=lambda: chain.timestamp, **kwargs)


class TestUpdateBatch:
    def test_requires_entries(self) -> None:
        with pytest.raises(ValueError, match="at least one entry"):
            UpdateBatch(())

    def test_rejects_duplicate_pools(self, pool_a) -> None:
        with pytest.raises(ValueError, match="duplicate pools"):
            UpdateBatch((result(pool_a, 1, 0), result(pool_a, 2, 0)))

    def test_pools(self, pool_a, pool_b) -> None:
        batch = UpdateBatch((result(pool_a, 1, 0), result(pool_b, 2, 0)))
        assert batch.pools == [pool_a, pool_b]
        assert len(batch) == 2

    def test_build_batches(self, chain, signer, pool_a, pool_b) -> None:
        results = [result(pool_a, 1, 0), result(pool_b, 2, 0)]

        assert len(make_batcher(chain, signer).build_batches(results)) == 1
        assert [len(b) for b in make_batcher(chain, signer, supports_batch=False).build_batches(results)] == [1, 1]
        assert make_batcher(chain, signer).build_batches([]) == []


class TestUpdateBatcherSubmit:
    def test_batched_update(self, chain, signer, pool_a, pool_b) -> None:
        now = chain.timestamp
        batcher = make_batcher(chain, signer)
        batch = UpdateBatch((result(pool_a, 101, now), result(pool_b, 5, now)))

        receipt = asyncio.run(batcher.submit(batch))
        assert receipt.success
        assert chain.decoded_updates() == [
            (UPDATE_PRICES, [(pool_a.address, pool_b.address), (101, 5), (now, now)])
        ]
        assert chain.prices == {pool_a.address: 101, pool_b.address: 5}
        assert [r.outcome for r in batcher.outcomes] == [SubmissionOutcome.BROADCAST, SubmissionOutcome.CONFIRMED]
        assert batcher.pending == {}

    def test_single_update(self, chain, signer, pool_a) -> None:
        now = chain.timestamp
        batcher = make_batcher(chain, signer, supports_batch=False)

        asyncio.run(batcher.submit(UpdateBatch((result(pool_a, 7, now),))))
        assert chain.decoded_updates() == [(UPDATE_PRICE, [pool_a.address, 7, now])]

    def test_single_mode_rejects_multiple_entries(self, chain, signer, pool_a, pool_b) -> None:
        now = chain.timestamp
        batcher = make_batcher(chain, signer, supports_batch=False)
        batch = UpdateBatch((result(pool_a, 1, now), result(pool_b, 2, now)))

        with pytest.raises(EncodingError, match="does not support batching"):
            asyncio.run(batcher.submit(batch))
        assert chain.submitted == []

    def test_unencodable_price(self, chain, signer, pool_a) -> None:
        now = chain.timestamp
        batcher = make_batcher(chain, signer)

        with pytest.raises(EncodingError):
            asyncio.run(batcher.submit(UpdateBatch((result(pool_a, -1, now),))))
        assert chain.submitted == []

    def test_same_batch_twice_written_once(self, chain, signer, pool_a) -> None:
        """Resubmitting an already written result is rejected."""
        now = chain.timestamp
        batcher = make_batcher(chain, signer)
        batch = UpdateBatch((result(pool_a, 101, now),))

        async def scenario():
            await batcher.submit(batch)
            await batcher.submit(batch)

        with pytest.raises(DuplicateSubmissionError):
            asyncio.run(scenario())
        assert len(chain.submitted) == 1

    def test_on_chain_update_not_overwritten(self, chain, signer, pool_a, pool_b) -> None:
        """A newer on-chain value (e.g., from a previous run) drops the entry."""
        now = chain.timestamp
        chain.last_updated[pool_a.address] = now
        batcher = make_batcher(chain, signer)
        batch = UpdateBatch((result(pool_a, 1, now), result(pool_b, 2, now)))

        asyncio.run(batcher.submit(batch))
        assert chain.decoded_updates() == [(UPDATE_PRICES, [(pool_b.address,), (2,), (now,)])]

    def test_stale_result(self, chain, signer, pool_a, pool_b) -> None:
        now = chain.timestamp
        batcher = make_batcher(chain, signer, freshness_bound=60)
        batch = UpdateBatch((result(pool_a, 1, now - 61), result(pool_b, 2, now - 60)))

        with pytest.raises(StaleResultError) as exc_info:
            asyncio.run(batcher.submit(batch))
        assert exc_info.value.pools == [pool_a]
        assert chain.submitted == []

    def test_reverted_transaction(self, chain, signer, pool_a) -> None:
        now = chain.timestamp
        chain.revert_next = True
        batcher = make_batcher(chain, signer)
        batch = UpdateBatch((result(pool_a, 1, now),))

        async def scenario():
            with pytest.raises(SubmissionError, match="reverted"):
                await batcher.submit(batch)
            # Nothing was written, so the same result may be retried
            return await batcher.submit(batch)

        assert asyncio.run(scenario()).success
        assert batcher.outcomes[1].outcome == SubmissionOutcome.REVERTED
        assert chain.prices == {pool_a.address: 1}

    def test_broadcast_failure(self, chain, signer, pool_a) -> None:
        now = chain.timestamp
        chain.submit_errors.append(NetworkError("connection reset"))
        batcher = make_batcher(chain, signer)

        with pytest.raises(SubmissionError, match="connection reset") as exc_info:
            asyncio.run(batcher.submit(UpdateBatch((result(pool_a, 1, now),))))
        assert exc_info.value.retryable
        assert batcher.outcomes[-1].outcome == SubmissionOutcome.BROADCAST_FAILED
        assert pool_a in batcher.pending
        assert signer.resets == 1

    def test_broadcast_failure_rechecked_before_retry(self, chain, signer, pool_a) -> None:
        """A failed broadcast the node never saw is cleared and retried."""
        now = chain.timestamp
        chain.submit_errors.append(NetworkError("connection reset"))
        batcher = make_batcher(chain, signer)
        batch = UpdateBatch((result(pool_a, 1, now),))

        async def scenario():
            with pytest.raises(SubmissionError):
                await batcher.submit(batch)
            return await batcher.submit(batch)

        assert asyncio.run(scenario()).success
        assert len(chain.submitted) == 1


class TestUpdateBatcherPending:
    """Test receipt timeouts and pending transaction handling."""

    def test_receipt_timeout(self, chain, signer, pool_a) -> None:
        now = chain.timestamp
        chain.hold_receipts = True
        batcher = make_batcher(chain, signer)

        with pytest.raises(ReceiptTimeoutError) as exc_info:
            asyncio.run(batcher.submit(UpdateBatch((result(pool_a, 1, now),))))
        assert not exc_info.value.retryable
        assert batcher.pending == {pool_a: exc_info.value.tx_hash}
        assert batcher.outcomes[-1].outcome == SubmissionOutcome.UNCONFIRMED

    def test_still_pending_not_resubmitted(self, chain, signer, pool_a) -> None:
        now = chain.timestamp
        chain.hold_receipts = True
        batcher = make_batcher(chain, signer)

        async def scenario():
            with pytest.raises(ReceiptTimeoutError):
                await batcher.submit(UpdateBatch((result(pool_a, 1, now),)))
            chain.advance(10)
            await batcher.submit(UpdateBatch((result(pool_a, 2, now + 10),)))

        with pytest.raises(TransactionPendingError):
            asyncio.run(scenario())
        assert len(chain.submitted) == 1

    def test_pending_landed(self, chain, signer, pool_a) -> None:
        now = chain.timestamp
        chain.hold_receipts = True
        batcher = make_batcher(chain, signer)

        async def scenario():
            with pytest.raises(ReceiptTimeoutError):
                await batcher.submit(UpdateBatch((result(pool_a, 1, now),)))
            chain.confirm_held()
            chain.hold_receipts = False
            chain.advance(10)
            return await batcher.submit(UpdateBatch((result(pool_a, 2, now + 10),)))

        assert asyncio.run(scenario()).success
        assert chain.prices == {pool_a.address: 2}
        assert batcher.pending == {}

    def test_pending_dropped(self, chain, signer, pool_a) -> None:
        """A dropped transaction resets the nonce and allows resubmission."""
        now = chain.timestamp
        chain.hold_receipts = True
        batcher = make_batcher(chain, signer)
        batch = UpdateBatch((result(pool_a, 1, now),))

        async def scenario():
            with pytest.raises(ReceiptTimeoutError):
                await batcher.submit(batch)
            chain.drop_held()
            chain.hold_receipts = False
            return await batcher.submit(batch)

        assert asyncio.run(scenario()).success
        assert signer.resets == 1
        assert chain.prices == {pool_a.address: 1}

    def test_reconcile_reports_landed(self, chain, signer, pool_a, pool_b) -> None:
        now = chain.timestamp
        chain.hold_receipts = True
        batcher = make_batcher(chain, signer)

        async def scenario():
            with pytest.raises(ReceiptTimeoutError):
                await batcher.submit(UpdateBatch((result(pool_a, 1, now), result(pool_b, 2, now))))
            chain.confirm_held()
            return await batcher.reconcile([pool_a, pool_b])

        landed = asyncio.run(scenario())
        assert [(u.pool, u.computed_at) for u in landed] == [(pool_a, now), (pool_b, now)]
        assert all(u.receipt.success for u in landed)
        assert batcher.pending == {}
        assert batcher.outcomes[-1].outcome == SubmissionOutcome.CONFIRMED
        assert batcher.outcomes[-1].pools == (pool_a, pool_b)

    def test_reconcile_nothing_pending(self, chain, signer, pool_a) -> None:
        batcher = make_batcher(chain, signer)
        assert asyncio.run(batcher.reconcile([pool_a])) == []

    def test_landed_revert_allows_resubmission(self, chain, signer, pool_a) -> None:
        now = chain.timestamp
        chain.hold_receipts = True
        batcher = make_batcher(chain, signer)
        batch = UpdateBatch((result(pool_a, 1, now),))

        async def scenario():
            with pytest.raises(ReceiptTimeoutError):
                await batcher.submit(batch)
            chain.revert_held()
            chain.hold_receipts = False
            assert await batcher.reconcile([pool_a]) == []
            return await batcher.submit(batch)

        assert asyncio.run(scenario()).success
        assert [r.outcome for r in batcher.outcomes][-3:] == [
            SubmissionOutcome.REVERTED,
            SubmissionOutcome.BROADCAST,
            SubmissionOutcome.CONFIRMED,
        ]
        assert chain.prices == {pool_a.address: 1}


class TestUpdateBatcherShutdown:
    """Test shutdown around signing and broadcast."""

    def test_shutdown_before_signing(self, chain, signer, pool_a) -> None:
        shutdown = asyncio.Event()
        shutdown.set()
        batcher = make_batcher(chain, signer, shutdown=shutdown)

        with pytest.raises(SubmissionAbortedError):
            asyncio.run(batcher.submit(UpdateBatch((result(pool_a, 1, chain.timestamp),))))
        assert batcher.outcomes[-1].outcome == SubmissionOutcome.ABORTED
        assert batcher.outcomes[-1].tx_hash is None
        assert signer.next_nonce == 0

    def test_shutdown_after_signing_aborts(self, chain, signer, pool_a) -> None:
        """A signed transaction is never left in an unrecorded state."""
        shutdown = asyncio.Event()
        signer.on_sign = shutdown.set
        batcher = make_batcher(chain, signer, shutdown=shutdown)

        with pytest.raises(SubmissionAbortedError, match="not broadcast"):
            asyncio.run(batcher.submit(UpdateBatch((result(pool_a, 1, chain.timestamp),))))

        record = batcher.outcomes[-1]
        assert record.outcome == SubmissionOutcome.ABORTED
        assert record.tx_hash is not None
        assert record.nonce == 0
        assert signer.released == [0]
        assert signer.next_nonce == 0
        assert chain.submitted == []

    def test_cancel_during_broadcast_completes(self, chain, signer, pool_a) -> None:
        """Cancellation after broadcast started lets it finish and records it."""
        batcher = make_batcher(chain, signer)
        batch = UpdateBatch((result(pool_a, 1, chain.timestamp),))

        async def scenario():
            chain.submit_started = asyncio.Event()
            chain.submit_gate = asyncio.Event()
            task = asyncio.create_task(batcher.submit(batch))
            await chain.submit_started.wait()
            task.cancel()
            await asyncio.sleep(0)
            chain.submit_gate.set()
            with pytest.raises(asyncio.CancelledError):
                await task

        asyncio.run(scenario())
        assert len(chain.submitted) == 1
        assert batcher.outcomes[-1].outcome == SubmissionOutcome.BROADCAST
        assert pool_a in batcher.pending
