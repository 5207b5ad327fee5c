"""PriceSampler: Spot price retrieval from Uniswap V2 style pools.

Each sample reads the latest block and then calls ``getReserves()`` pinned to
that block, so the reserves and the timestamp always belong together. The
reserve ratio is converted into an integer fixed-point price:

    price = reserve1 * 10**PRICE_DECIMALS // reserve0

which is the price of token0 expressed in token1 units.

Errors:
    - NetworkError: transport failure or deadline exceeded (retryable)
    - MalformedResponseError: undecodable response (retryable once)
    - EmptyPoolError: zero reserves (skipped for the cycle)
    - UnknownPoolError: pool is not configured
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from typing import TYPE_CHECKING, TypeVar

from eth_abi.exceptions import DecodingError

from .abi import GET_RESERVES, GET_RESERVES_RETURNS, decode_result, encode_call
from .errors import EmptyPoolError, MalformedResponseError, NetworkError, UnknownPoolError

if TYPE_CHECKING:
    from .ChainClient import ChainClient
    from .Pool import Pool

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Fixed-point precision of sampled prices.
PRICE_DECIMALS = 18
PRICE_SCALE = 10**PRICE_DECIMALS


@dataclass(frozen=True)
class PriceObservation:
    """A single spot price sample.

    :ivar pool: Sampled pool.
    :ivar price: Fixed-point price scaled by 10**PRICE_DECIMALS.
    :ivar block_timestamp: Timestamp of the block the reserves were read at.
    :ivar block_number: Number of that block.
    """

    pool: Pool
    price: int
    block_timestamp: int
    block_number: int

    @property
    def timestamp(self) -> int:
        """Alias for block_timestamp."""
        return self.block_timestamp


def reserves_to_price(reserve0: int, reserve1: int) -> int:
    """Convert pool reserves into a fixed-point price of token0 in token1.

    :param reserve0: Reserve of token0.
    :param reserve1: Reserve of token1.
    :returns: Price scaled by 10**PRICE_DECIMALS.
    :raises ZeroDivisionError: If reserve0 is zero.
    """
    return reserve1 * PRICE_SCALE // reserve0


class PriceSampler:
    """Samples spot prices of configured pools.

    :ivar chain: Chain client used for reads.
    :ivar pools: Configured pools; sampling any other pool fails.
    :ivar call_timeout: Deadline for each network operation in seconds.
    """

    def __init__(
        self,
        chain: ChainClient,
        pools: Iterable[Pool],
        call_timeout: float = 10.0,
        on_block: Callable[[int], None] | None = None,
    ) -> None:
        """Initialize the sampler.

        :param chain: Chain client used for reads.
        :param pools: Configured pools.
        :param call_timeout: Deadline per network operation (default: 10.0).
        :param on_block: Optional callback receiving each sampled block
            timestamp (used to drive the chain clock).
        """
        self.chain = chain
        self.pools = set(pools)
        self.call_timeout = call_timeout
        self.on_block = on_block
        self._calldata = encode_call(GET_RESERVES, [])

    async def _with_deadline(self, what: str, aw: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(aw, timeout=self.call_timeout)
        except asyncio.TimeoutError as e:
            raise NetworkError(f"{what} timed out after {self.call_timeout}s") from e

    async def sample(self, pool: Pool) -> PriceObservation:
        """Sample the current spot price of a pool.

        :param pool: Pool to sample.
        :returns: Observation at the latest block.
        :raises SampleError: See module docstring.
        """
        if pool not in self.pools:
            raise UnknownPoolError(f"Pool {pool!r} is not configured")

        block = await self._with_deadline(
            f"{pool}: latest block", self.chain.get_latest_block()
        )
        if self.on_block is not None:
            self.on_block(block.timestamp)

        raw = await self._with_deadline(
            f"{pool}: getReserves()",
            self.chain.call(pool.address, self._calldata, block.number),
        )

        try:
            reserve0, reserve1, _ = decode_result(GET_RESERVES_RETURNS, raw)
        except DecodingError as e:
            raise MalformedResponseError(
                f"{pool}: malformed getReserves() response ({len(raw)} bytes): {e}"
            ) from e

        if reserve0 == 0 or reserve1 == 0:
            raise EmptyPoolError(
                f"{pool}: empty pool at block {block.number} "
                f"(reserve0={reserve0}, reserve1={reserve1})"
            )

        observation = PriceObservation(
            pool=pool,
            price=reserves_to_price(reserve0, reserve1),
            block_timestamp=block.timestamp,
            block_number=block.number,
        )
        logger.debug(
            f"{pool}: sampled {observation.price / PRICE_SCALE:.6f} "
            f"at block {block.number} (t={block.timestamp})"
        )
        return observation
