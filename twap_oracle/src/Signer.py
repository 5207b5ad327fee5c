"""Signer: Transaction signing with sequential nonce assignment.

All pool pipelines share one signer. Callers hold :attr:`Signer.lock` from
signing until the transaction has been broadcast, so nonces are assigned and
broadcast strictly in order even though pipelines run concurrently.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from eth_account import Account
from eth_account.signers.local import LocalAccount
from web3 import Web3

from .errors import NetworkError, SignerError

if TYPE_CHECKING:
    from .ChainClient import ChainClient

logger = logging.getLogger(__name__)

# Well-known first dev account of local test nodes.
LOCALNET_PRIVATE_KEY = "0xac0974bec39a17e36ba4a6b4d238ff944bacb478cbed5efcae784d7bf4f2ff80"


@dataclass(frozen=True)
class SignedTransaction:
    """A signed, not yet broadcast transaction.

    :ivar raw_transaction: RLP encoded signed transaction.
    :ivar tx_hash: 0x-prefixed hash of the signed transaction.
    :ivar nonce: Nonce assigned by the signer.
    """

    raw_transaction: bytes
    tx_hash: str
    nonce: int


class Signer(ABC):
    """Abstract base class for transaction signers.

    :ivar lock: Serializes sign-and-broadcast sequences across pipelines.
    """

    def __init__(self) -> None:
        self.lock = asyncio.Lock()

    @property
    @abstractmethod
    def address(self) -> str:
        """Checksummed address of the signing account."""

    @abstractmethod
    async def sign(self, unsigned_tx: dict[str, Any]) -> SignedTransaction:
        """Assign the next nonce and sign a transaction.

        :param unsigned_tx: Transaction fields without nonce.
        :returns: Signed transaction.
        :raises SignerError: If signing fails.
        """

    @abstractmethod
    def release(self, nonce: int) -> None:
        """Return a nonce whose transaction was never broadcast."""

    @abstractmethod
    def reset_nonce(self) -> None:
        """Forget the local nonce; the next sign() resyncs from the chain."""

    async def check_available(self) -> None:
        """Check that the signer can sign (startup check).

        :raises SignerError: If the signer is unusable.
        """
        return None


class AccountSigner(Signer):
    """Signer backed by an ``eth_account`` local account.

    :ivar account: Local signing account.
    :ivar chain: Chain client used to sync the starting nonce.
    """

    def __init__(self, private_key: str, chain: ChainClient) -> None:
        """Initialize the signer.

        :param private_key: Hex encoded secp256k1 private key.
        :param chain: Chain client used for nonce lookups.
        :raises SignerError: If the key is invalid.
        """
        super().__init__()
        try:
            self.account: LocalAccount = Account.from_key(private_key)
        except (ValueError, TypeError) as e:
            raise SignerError(f"Invalid private key: {e}") from e
        self.chain = chain
        self._next_nonce: int | None = None

    @property
    def address(self) -> str:
        return self.account.address

    async def _sync_nonce(self) -> int:
        try:
            nonce = await self.chain.get_transaction_count(self.address)
        except NetworkError as e:
            raise SignerError(f"Cannot fetch nonce for {self.address}: {e}") from e
        logger.info(f"Signer {self.address}: nonce synced to {nonce}")
        return nonce

    async def check_available(self) -> None:
        if self._next_nonce is None:
            self._next_nonce = await self._sync_nonce()

    async def sign(self, unsigned_tx: dict[str, Any]) -> SignedTransaction:
        if self._next_nonce is None:
            self._next_nonce = await self._sync_nonce()

        nonce = self._next_nonce
        tx = dict(unsigned_tx, nonce=nonce)
        try:
            signed = self.account.sign_transaction(tx)
        except Exception as e:  # eth_account raises a variety of types
            raise SignerError(f"Failed to sign transaction: {e}") from e

        self._next_nonce = nonce + 1
        return SignedTransaction(
            raw_transaction=bytes(signed.raw_transaction),
            tx_hash=Web3.to_hex(signed.hash),
            nonce=nonce,
        )

    def release(self, nonce: int) -> None:
        if self._next_nonce == nonce + 1:
            self._next_nonce = nonce
        else:
            # A later nonce was handed out; resync rather than leave a gap
            self._next_nonce = None

    def reset_nonce(self) -> None:
        self._next_nonce = None
