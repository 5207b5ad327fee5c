"""ChainClient: Read calls and transaction submission against the RPC endpoint.

The pipeline only needs a narrow set of primitives from the chain. The
abstract :class:`ChainClient` defines them; :class:`Web3ChainClient` backs
them with a synchronous ``Web3`` instance whose blocking calls run in worker
threads so that concurrent pool pipelines are not serialized on I/O.
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, TypeVar

from sapphirepy import sapphire
from web3 import Web3
from web3.exceptions import TimeExhausted, TransactionNotFound, Web3Exception

from .errors import NetworkError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Default RPC endpoints per network name.
NETWORKS: dict[str, str] = {
    "sapphire": "https://sapphire.oasis.io",
    "sapphire-testnet": "https://testnet.sapphire.oasis.io",
    "sapphire-localnet": "http://localhost:8545",
    "localnet": "http://localhost:8545",
}

RECEIPT_POLL_INTERVAL = 1.0


@dataclass(frozen=True)
class BlockInfo:
    """Number and timestamp of a block.

    :ivar number: Block number.
    :ivar timestamp: Block timestamp (unix seconds).
    """

    number: int
    timestamp: int


@dataclass(frozen=True)
class TransactionReceipt:
    """Receipt of an included transaction.

    :ivar tx_hash: 0x-prefixed transaction hash.
    :ivar block_number: Block the transaction was included in.
    :ivar status: 1 on success, 0 if reverted.
    :ivar gas_used: Gas consumed by the transaction.
    """

    tx_hash: str
    block_number: int
    status: int
    gas_used: int = 0

    @property
    def success(self) -> bool:
        """Check if the transaction executed successfully."""
        return self.status == 1


class ChainClient(ABC):
    """Abstract chain access used by the sampler, batcher and signer."""

    @abstractmethod
    async def get_latest_block(self) -> BlockInfo:
        """Fetch the latest block.

        :raises NetworkError: On transport failure.
        """

    @abstractmethod
    async def call(
        self, address: str, data: bytes, block_number: int | None = None
    ) -> bytes:
        """Execute a read-only call.

        :param address: Contract address.
        :param data: Encoded call data.
        :param block_number: Block to execute against, latest if None.
        :returns: Raw return data.
        :raises NetworkError: On transport failure.
        """

    @abstractmethod
    async def submit(self, raw_transaction: bytes) -> str:
        """Broadcast a signed transaction.

        :returns: 0x-prefixed transaction hash.
        :raises NetworkError: On transport failure or rejection by the node.
        """

    @abstractmethod
    async def wait_for_receipt(
        self, tx_hash: str, confirmations: int, timeout: float
    ) -> TransactionReceipt | None:
        """Wait until a transaction has the given number of confirmations.

        :returns: The receipt, or None if not confirmed within timeout.
        :raises NetworkError: On transport failure.
        """

    @abstractmethod
    async def get_receipt(self, tx_hash: str) -> TransactionReceipt | None:
        """Fetch a receipt without waiting, None if not yet included."""

    @abstractmethod
    async def has_transaction(self, tx_hash: str) -> bool:
        """Check if the node knows the transaction (pending or included)."""

    @abstractmethod
    async def get_transaction_count(self, address: str) -> int:
        """Fetch the pending transaction count (next nonce) of an account."""

    @abstractmethod
    async def gas_price(self) -> int:
        """Fetch the current gas price in wei."""

    @abstractmethod
    async def chain_id(self) -> int:
        """Fetch the chain id."""

    @abstractmethod
    async def estimate_gas(self, tx: dict[str, Any]) -> int:
        """Estimate gas for a transaction."""


class Web3ChainClient(ChainClient):
    """ChainClient backed by a ``Web3`` HTTP provider.

    :ivar network: RPC URL in use.
    :ivar w3: Configured Web3 instance (Sapphire wrapped where applicable).
    """

    def __init__(self, network_name: str, rpc_url: str | None = None) -> None:
        """Initialize the client.

        :param network_name: Name of the network to connect to, or an RPC URL.
        :param rpc_url: Optional RPC URL overriding the network default.
        """
        # RPC_URL env var overrides the default for the network
        self.network = (
            rpc_url
            or os.environ.get("RPC_URL")
            or NETWORKS.get(network_name, network_name)
        )
        self.w3 = Web3(Web3.HTTPProvider(self.network))
        if network_name.startswith("sapphire"):
            self.w3 = sapphire.wrap(self.w3)
        self._chain_id: int | None = None
        logger.info(f"Chain client for {network_name} using {self.network}")

    async def _run(self, what: str, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Run a blocking Web3 call in a worker thread, mapping failures.

        :param what: Operation description for error messages.
        :raises NetworkError: On any Web3 or transport failure.
        """
        try:
            return await asyncio.to_thread(fn, *args, **kwargs)
        except (Web3Exception, OSError) as e:
            raise NetworkError(f"{what} failed: {e}") from e

    async def get_latest_block(self) -> BlockInfo:
        block = await self._run("get_block(latest)", self.w3.eth.get_block, "latest")
        return BlockInfo(number=int(block["number"]), timestamp=int(block["timestamp"]))

    async def call(
        self, address: str, data: bytes, block_number: int | None = None
    ) -> bytes:
        block_identifier = block_number if block_number is not None else "latest"
        result = await self._run(
            f"eth_call to {address}",
            self.w3.eth.call,
            {"to": address, "data": Web3.to_hex(data)},
            block_identifier,
        )
        return bytes(result)

    async def submit(self, raw_transaction: bytes) -> str:
        tx_hash = await self._run(
            "send_raw_transaction", self.w3.eth.send_raw_transaction, raw_transaction
        )
        return Web3.to_hex(tx_hash)

    async def wait_for_receipt(
        self, tx_hash: str, confirmations: int, timeout: float
    ) -> TransactionReceipt | None:
        deadline = time.monotonic() + timeout
        try:
            raw = await self._run(
                f"wait for {tx_hash}",
                self.w3.eth.wait_for_transaction_receipt,
                tx_hash,
                timeout=timeout,
                poll_latency=RECEIPT_POLL_INTERVAL,
            )
        except NetworkError as e:
            if isinstance(e.__cause__, TimeExhausted):
                return None
            raise

        receipt = self._to_receipt(raw)
        # Included; wait for the remaining confirmations
        target = receipt.block_number + confirmations - 1
        while (await self.get_latest_block()).number < target:
            if time.monotonic() >= deadline:
                return None
            await asyncio.sleep(RECEIPT_POLL_INTERVAL)
        return receipt

    async def get_receipt(self, tx_hash: str) -> TransactionReceipt | None:
        try:
            raw = await asyncio.to_thread(self.w3.eth.get_transaction_receipt, tx_hash)
        except TransactionNotFound:
            return None
        except (Web3Exception, OSError) as e:
            raise NetworkError(f"get_transaction_receipt({tx_hash}) failed: {e}") from e
        return self._to_receipt(raw)

    async def has_transaction(self, tx_hash: str) -> bool:
        try:
            await asyncio.to_thread(self.w3.eth.get_transaction, tx_hash)
        except TransactionNotFound:
            return False
        except (Web3Exception, OSError) as e:
            raise NetworkError(f"get_transaction({tx_hash}) failed: {e}") from e
        return True

    async def get_transaction_count(self, address: str) -> int:
        return await self._run(
            f"get_transaction_count({address})",
            self.w3.eth.get_transaction_count,
            address,
            "pending",
        )

    async def gas_price(self) -> int:
        return await self._run("gas_price", lambda: self.w3.eth.gas_price)

    async def chain_id(self) -> int:
        if self._chain_id is None:
            self._chain_id = await self._run("chain_id", lambda: self.w3.eth.chain_id)
        return self._chain_id

    async def estimate_gas(self, tx: dict[str, Any]) -> int:
        return await self._run("estimate_gas", self.w3.eth.estimate_gas, tx)

    @staticmethod
    def _to_receipt(raw: Any) -> TransactionReceipt:
        return TransactionReceipt(
            tx_hash=Web3.to_hex(raw["transactionHash"]),
            block_number=int(raw["blockNumber"]),
            status=int(raw["status"]),
            gas_used=int(raw.get("gasUsed", 0)),
        )
