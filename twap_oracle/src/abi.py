"""ABI encoding helpers keyed by function signature.

Only the handful of functions the oracle touches are needed, so calls are
encoded straight from their canonical signature instead of loading full
contract ABIs:

.. code-block:: python

    >>> encode_call(GET_RESERVES, []).hex()
    '0902f1ac'
"""

from __future__ import annotations

from collections.abc import Sequence
from functools import lru_cache
from typing import Any

from eth_abi import decode, encode
from web3 import Web3

# Uniswap V2 pair
GET_RESERVES = "getReserves()"
GET_RESERVES_RETURNS = ["uint112", "uint112", "uint32"]

# Uniswap V2 factory
GET_PAIR = "getPair(address,address)"

# TWAP oracle contract
UPDATE_PRICE = "updatePrice(address,uint256,uint256)"
UPDATE_PRICES = "updatePrices(address[],uint256[],uint256[])"
LAST_UPDATED = "lastUpdated(address)"


@lru_cache(maxsize=None)
def selector(signature: str) -> bytes:
    """Compute the 4-byte function selector for a canonical signature.

    :param signature: Canonical signature, e.g. "getReserves()".
    :returns: First 4 bytes of keccak256(signature).
    """
    return bytes(Web3.keccak(text=signature)[:4])


def argument_types(signature: str) -> list[str]:
    """Extract argument types from a canonical signature.

    :param signature: Canonical signature, e.g. "updatePrice(address,uint256)".
    :returns: List of ABI type strings.
    :raises ValueError: If the signature is malformed.
    """
    start = signature.find("(")
    if start <= 0 or not signature.endswith(")"):
        raise ValueError(f"Malformed function signature '{signature}'")
    inner = signature[start + 1 : -1]
    return inner.split(",") if inner else []


def encode_call(signature: str, args: Sequence[Any]) -> bytes:
    """Encode call data for a function.

    :param signature: Canonical function signature.
    :param args: Positional arguments matching the signature.
    :returns: Selector followed by the ABI encoded arguments.
    :raises ValueError: If the arguments do not match the signature.
    :raises eth_abi.exceptions.EncodingError: If a value cannot be encoded.
    """
    types = argument_types(signature)
    if len(types) != len(args):
        raise ValueError(
            f"{signature} takes {len(types)} arguments, got {len(args)}"
        )
    return selector(signature) + (encode(types, list(args)) if types else b"")


def decode_result(types: Sequence[str], data: bytes) -> tuple[Any, ...]:
    """Decode the return data of a read call.

    :param types: ABI return types.
    :param data: Raw return data.
    :returns: Tuple of decoded values.
    :raises eth_abi.exceptions.DecodingError: If the data does not match.
    """
    return decode(list(types), bytes(data))
