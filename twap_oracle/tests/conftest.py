"""Shared fixtures: in-memory chain client, signer and event recorder."""

import asyncio
from typing import Any, Callable

import pytest
from eth_abi import decode, encode
from web3 import Web3

from twap_oracle.src.abi import GET_PAIR, GET_RESERVES, LAST_UPDATED, UPDATE_PRICE, UPDATE_PRICES, selector
from twap_oracle.src.ChainClient import BlockInfo, ChainClient, TransactionReceipt
from twap_oracle.src.errors import NetworkError
from twap_oracle.src.events import EventKind, PipelineEvent
from twap_oracle.src.Pool import Pool
from twap_oracle.src.Signer import SignedTransaction, Signer

T0 = 1_700_000_000

POOL_A = "0x" + "a1" * 20
POOL_B = "0x" + "b2" * 20
ORACLE = "0x" + "0c" * 20
FACTORY = "0x" + "fa" * 20
TOKEN_X = "0x" + "11" * 20
TOKEN_Y = "0x" + "22" * 20
SIGNER_ADDRESS = Web3.to_checksum_address("0x" + "5e" * 20)


class FakeChainClient(ChainClient):
    """Chain double with scripted reserves and an oracle that stores updates.

    Submitted raw transactions are ``nonce (32 bytes) + calldata`` as produced
    by :class:`FakeSigner`.
    """

    def __init__(self) -> None:
        self.block_number = 100
        self.timestamp = T0
        self.reserves: dict[str, tuple[int, int]] = {}
        self.scripted: dict[str, list[Any]] = {}
        self.pairs: dict[frozenset, str] = {}
        self.last_updated: dict[str, int] = {}
        self.prices: dict[str, int] = {}
        self.submitted: list[bytes] = []
        self.receipts: dict[str, TransactionReceipt] = {}
        self.known: set[str] = set()
        self.nonce = 0

        self.block_error: Exception | None = None
        self.call_delay = 0.0
        self.submit_errors: list[Exception] = []
        self.submit_started: asyncio.Event | None = None
        self.submit_gate: asyncio.Event | None = None
        self.hold_receipts = False
        self.revert_next = False

    def advance(self, seconds: int, blocks: int = 1) -> None:
        self.timestamp += seconds
        self.block_number += blocks

    def set_reserves(self, pool: str, reserve0: int, reserve1: int) -> None:
        self.reserves[Web3.to_checksum_address(pool)] = (reserve0, reserve1)

    def script(self, pool: str, *responses: Any) -> None:
        """Queue exceptions (raised) or bytes (returned) for getReserves()."""
        self.scripted.setdefault(Web3.to_checksum_address(pool), []).extend(responses)

    def decoded_updates(self) -> list[tuple[str, list]]:
        """Return (signature, decoded args) of every submitted transaction."""
        updates = []
        for raw in self.submitted:
            data = raw[32:]
            if data[:4] == selector(UPDATE_PRICES):
                pools, prices, timestamps = decode(["address[]", "uint256[]", "uint256[]"], data[4:])
                pools = tuple(Web3.to_checksum_address(p) for p in pools)
                updates.append((UPDATE_PRICES, [pools, prices, timestamps]))
            else:
                pool, price, timestamp = decode(["address", "uint256", "uint256"], data[4:])
                updates.append((UPDATE_PRICE, [Web3.to_checksum_address(pool), price, timestamp]))
        return updates

    async def get_latest_block(self) -> BlockInfo:
        if self.block_error is not None:
            raise self.block_error
        return BlockInfo(number=self.block_number, timestamp=self.timestamp)

    async def call(self, address: str, data: bytes, block_number: int | None = None) -> bytes:
        if self.call_delay:
            await asyncio.sleep(self.call_delay)
        address = Web3.to_checksum_address(address)
        sel, args = data[:4], data[4:]

        if sel == selector(GET_RESERVES):
            queue = self.scripted.get(address)
            if queue:
                response = queue.pop(0)
                if isinstance(response, Exception):
                    raise response
                return response
            reserve0, reserve1 = self.reserves[address]
            return encode(["uint112", "uint112", "uint32"], [reserve0, reserve1, self.timestamp % 2**32])

        if sel == selector(LAST_UPDATED):
            (pool,) = decode(["address"], args)
            return encode(["uint256"], [self.last_updated.get(Web3.to_checksum_address(pool), 0)])

        if sel == selector(GET_PAIR):
            token_a, token_b = decode(["address", "address"], args)
            key = frozenset(Web3.to_checksum_address(t) for t in (token_a, token_b))
            return encode(["address"], [self.pairs.get(key, "0x" + "00" * 20)])

        raise NetworkError(f"execution reverted: unknown selector {sel.hex()}")

    def _apply(self, data: bytes) -> None:
        if data[:4] == selector(UPDATE_PRICES):
            pools, prices, timestamps = decode(["address[]", "uint256[]", "uint256[]"], data[4:])
        else:
            pool, price, timestamp = decode(["address", "uint256", "uint256"], data[4:])
            pools, prices, timestamps = [pool], [price], [timestamp]
        for pool, price, timestamp in zip(pools, prices, timestamps):
            pool = Web3.to_checksum_address(pool)
            self.prices[pool] = price
            self.last_updated[pool] = timestamp

    def _include(self, tx_hash: str, raw: bytes, status: int = 1) -> None:
        self.block_number += 1
        if status:
            self._apply(raw[32:])
        self.receipts[tx_hash] = TransactionReceipt(tx_hash, self.block_number, status, 50_000)

    def confirm_held(self) -> None:
        """Include every held transaction."""
        for raw in self.submitted:
            tx_hash = Web3.to_hex(Web3.keccak(raw))
            if tx_hash not in self.receipts:
                self._include(tx_hash, raw)

    def revert_held(self) -> None:
        """Include every held transaction as reverted."""
        for raw in self.submitted:
            tx_hash = Web3.to_hex(Web3.keccak(raw))
            if tx_hash not in self.receipts:
                self._include(tx_hash, raw, status=0)

    def drop_held(self) -> None:
        """Forget every held transaction."""
        self.known = {h for h in self.known if h in self.receipts}

    async def submit(self, raw_transaction: bytes) -> str:
        if self.submit_started is not None:
            self.submit_started.set()
        if self.submit_gate is not None:
            await self.submit_gate.wait()
        if self.submit_errors:
            raise self.submit_errors.pop(0)

        tx_hash = Web3.to_hex(Web3.keccak(raw_transaction))
        self.submitted.append(raw_transaction)
        self.known.add(tx_hash)
        self.nonce += 1
        if self.revert_next:
            self.revert_next = False
            self._include(tx_hash, raw_transaction, status=0)
        elif not self.hold_receipts:
            self._include(tx_hash, raw_transaction)
        return tx_hash

    async def wait_for_receipt(self, tx_hash: str, confirmations: int, timeout: float) -> TransactionReceipt | None:
        return self.receipts.get(tx_hash)

    async def get_receipt(self, tx_hash: str) -> TransactionReceipt | None:
        return self.receipts.get(tx_hash)

    async def has_transaction(self, tx_hash: str) -> bool:
        return tx_hash in self.known

    async def get_transaction_count(self, address: str) -> int:
        if self.block_error is not None:
            raise self.block_error
        return self.nonce

    async def gas_price(self) -> int:
        return 100_000_000_000

    async def chain_id(self) -> int:
        return 23293

    async def estimate_gas(self, tx: dict[str, Any]) -> int:
        return 100_000


class FakeSigner(Signer):
    """Signer double producing ``nonce + calldata`` as the raw transaction."""

    def __init__(self) -> None:
        super().__init__()
        self.next_nonce = 0
        self.error: Exception | None = None
        self.on_sign: Callable[[], None] | None = None
        self.released: list[int] = []
        self.resets = 0

    @property
    def address(self) -> str:
        return SIGNER_ADDRESS

    async def sign(self, unsigned_tx: dict[str, Any]) -> SignedTransaction:
        if self.error is not None:
            raise self.error
        nonce = self.next_nonce
        self.next_nonce += 1
        raw = nonce.to_bytes(32, "big") + bytes(unsigned_tx["data"])
        if self.on_sign is not None:
            self.on_sign()
        return SignedTransaction(raw, Web3.to_hex(Web3.keccak(raw)), nonce)

    def release(self, nonce: int) -> None:
        self.released.append(nonce)
        if self.next_nonce == nonce + 1:
            self.next_nonce = nonce

    def reset_nonce(self) -> None:
        self.resets += 1


class RecordingEventSink:
    def __init__(self) -> None:
        self.events: list[PipelineEvent] = []

    def emit(self, event: PipelineEvent) -> None:
        self.events.append(event)

    def of(self, kind: EventKind, pool: Pool | None = None) -> list[PipelineEvent]:
        return [e for e in self.events if e.kind == kind and (pool is None or e.pool == pool)]


@pytest.fixture
def chain() -> FakeChainClient:
    return FakeChainClient()


@pytest.fixture
def signer() -> FakeSigner:
    return FakeSigner()


@pytest.fixture
def events() -> RecordingEventSink:
    return RecordingEventSink()


@pytest.fixture
def pool_a() -> Pool:
    return Pool(POOL_A, label="A")


@pytest.fixture
def pool_b() -> Pool:
    return Pool(POOL_B, label="B")
