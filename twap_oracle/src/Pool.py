"""Pool: Liquidity pool identity and pool spec parsing.

A pool is identified by its checksummed contract address. Pools can be
configured directly by address (optionally labelled) or as a token pair that
is resolved through the factory contract at startup:

.. code-block:: python

    >>> pool = Pool.from_string("weth-usdc=0xb4e16d0168e52d35cacd2c6185b44281ec28c9dc")
    >>> str(pool)
    'weth-usdc'
    >>> pool.address
    '0xB4e16d0168e52d35CaCD2c6185b44281Ec28C9Dc'
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from eth_abi.exceptions import DecodingError
from web3 import Web3

from .abi import GET_PAIR, decode_result, encode_call
from .errors import ConfigurationError, NetworkError

if TYPE_CHECKING:
    from .ChainClient import ChainClient

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"


def to_checksum(address: str, what: str = "address") -> str:
    """Validate and checksum an address.

    :param address: Hex address string.
    :param what: Description used in the error message.
    :returns: Checksummed address.
    :raises ConfigurationError: If the address is invalid.
    """
    address = address.strip()
    if not Web3.is_address(address):
        raise ConfigurationError(f"Invalid {what}: '{address}'")
    return Web3.to_checksum_address(address)


class Pool:
    """An on-chain liquidity pool.

    :ivar address: Checksummed pool contract address.
    :ivar label: Optional human readable name used in logs.
    """

    def __init__(self, address: str, label: str | None = None) -> None:
        """Initialize a pool.

        :param address: Pool contract address (any case).
        :param label: Optional label (e.g., "weth-usdc").
        :raises ConfigurationError: If the address is invalid.
        """
        self.address = to_checksum(address, "pool address")
        self.label = label or None

    def __str__(self) -> str:
        """Return the label, or the address when unlabelled."""
        return self.label or self.address

    def __repr__(self) -> str:
        if self.label:
            return f"Pool({self.address!r}, label={self.label!r})"
        return f"Pool({self.address!r})"

    def __hash__(self) -> int:
        return hash(self.address)

    def __eq__(self, other: object) -> bool:
        """Pools are equal when their addresses match, labels are ignored."""
        if not isinstance(other, Pool):
            return NotImplemented
        return self.address == other.address

    @classmethod
    def from_string(cls, spec: str) -> Pool:
        """Parse a pool spec in format "0xaddress" or "label=0xaddress".

        :param spec: Pool spec string.
        :returns: New Pool instance.
        :raises ConfigurationError: If the spec is invalid.
        """
        label, sep, address = spec.strip().rpartition("=")
        if sep and not label.strip():
            raise ConfigurationError(f"Invalid pool spec '{spec}': empty label")
        return cls(address, label=label.strip() if sep else None)


class TokenPair:
    """A pool given by its two tokens, resolved via the factory's getPair().

    :ivar token_a: Checksummed address of the first token.
    :ivar token_b: Checksummed address of the second token.
    :ivar label: Optional label carried over to the resolved pool.
    """

    def __init__(self, token_a: str, token_b: str, label: str | None = None) -> None:
        self.token_a = to_checksum(token_a, "token address")
        self.token_b = to_checksum(token_b, "token address")
        if self.token_a == self.token_b:
            raise ConfigurationError(f"Identical tokens in pair {self.token_a}")
        self.label = label or None

    def __str__(self) -> str:
        return self.label or f"{self.token_a}/{self.token_b}"

    def __repr__(self) -> str:
        return f"TokenPair({self.token_a!r}, {self.token_b!r})"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, TokenPair):
            return NotImplemented
        return {self.token_a, self.token_b} == {other.token_a, other.token_b}

    def __hash__(self) -> int:
        return hash(frozenset((self.token_a, self.token_b)))

    async def resolve(self, chain: ChainClient, factory_address: str) -> Pool:
        """Look up the pool address for this pair through the factory.

        :param chain: Chain client used for the read call.
        :param factory_address: Checksummed factory contract address.
        :returns: The resolved Pool.
        :raises ConfigurationError: If the factory has no pool for the pair.
        :raises NetworkError: If the read call fails.
        """
        data = encode_call(GET_PAIR, [self.token_a, self.token_b])
        raw = await chain.call(factory_address, data)
        try:
            (address,) = decode_result(["address"], raw)
        except DecodingError as e:
            raise NetworkError(f"Malformed getPair() response for {self}: {e}") from e

        if Web3.to_checksum_address(address) == ZERO_ADDRESS:
            raise ConfigurationError(f"Factory {factory_address} has no pool for {self}")
        return Pool(address, label=self.label)


def parse_pool_spec(spec: str) -> Pool | TokenPair:
    """Parse a configured pool entry.

    Accepted formats:
        - ``0xPOOL``
        - ``label=0xPOOL``
        - ``0xTOKEN_A/0xTOKEN_B`` (resolved through the factory)
        - ``label=0xTOKEN_A/0xTOKEN_B``

    :param spec: Pool spec string.
    :returns: Pool or TokenPair.
    :raises ConfigurationError: If the spec is invalid.
    """
    label, sep, rest = spec.strip().rpartition("=")
    if "/" not in rest:
        return Pool.from_string(spec)

    parts = rest.split("/")
    if len(parts) != 2:
        raise ConfigurationError(
            f"Invalid pool spec '{spec}'. Expected '0xtokenA/0xtokenB'"
        )
    return TokenPair(parts[0], parts[1], label=label.strip() if sep else None)
