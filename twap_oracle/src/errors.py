"""Error taxonomy for the TWAP oracle pipeline.

Every error carries an :class:`ErrorKind` which decides how far it may
propagate:

- ``TRANSIENT``: network/timeout issues, retried with backoff.
- ``DATA_QUALITY``: empty pool, insufficient coverage, stale or duplicate
  results. The affected pool skips the cycle, no retry within the cycle.
- ``CONFIGURATION``: invalid address, missing parameter. Fatal at startup.
- ``INTEGRITY``: signer or encoding failure. The pool's submission path halts
  until an operator intervenes.
"""

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .Pool import Pool


class ErrorKind(str, Enum):
    """Classification of a pipeline failure."""

    TRANSIENT = "transient"
    DATA_QUALITY = "data_quality"
    CONFIGURATION = "configuration"
    INTEGRITY = "integrity"


class OracleError(Exception):
    """Base exception for oracle errors.

    :cvar kind: Error classification.
    :cvar max_retries: Retries allowed within one cycle, or None to use the
        configured retry policy.
    """

    kind: ErrorKind = ErrorKind.TRANSIENT
    max_retries: int | None = None

    @property
    def retryable(self) -> bool:
        """Check if the error may be retried within the cycle."""
        return self.kind == ErrorKind.TRANSIENT and self.max_retries != 0


class ConfigurationError(OracleError):
    """Raised when configuration is invalid (fatal at startup)."""

    kind = ErrorKind.CONFIGURATION


class FatalError(OracleError):
    """Raised when a startup dependency (chain, signer) is unavailable."""

    kind = ErrorKind.CONFIGURATION


# Sampling


class SampleError(OracleError):
    """Base exception for price sampling errors."""

    pass


class NetworkError(SampleError):
    """Raised on transport failures and exceeded deadlines."""

    pass


class EmptyPoolError(SampleError):
    """Raised when a pool reports zero reserves."""

    kind = ErrorKind.DATA_QUALITY
    max_retries = 0


class MalformedResponseError(SampleError):
    """Raised when a read call result cannot be decoded."""

    max_retries = 1


class UnknownPoolError(SampleError):
    """Raised when sampling a pool that was never configured."""

    kind = ErrorKind.CONFIGURATION
    max_retries = 0


# Aggregation


class AggregationError(OracleError):
    """Base exception for TWAP aggregation errors."""

    kind = ErrorKind.DATA_QUALITY
    max_retries = 0


class InsufficientCoverageError(AggregationError):
    """Raised when a window spans too little time to produce a TWAP.

    :ivar observations: Number of observations in the window.
    :ivar coverage: Seconds spanned by the observations.
    """

    def __init__(self, pool: Pool, observations: int, coverage: int, required: int):
        self.pool = pool
        self.observations = observations
        self.coverage = coverage
        self.required = required
        super().__init__(
            f"{pool}: insufficient coverage ({observations} observations "
            f"spanning {coverage}s, need >= 2 spanning {required}s)"
        )


# Submission


class SubmitError(OracleError):
    """Base exception for oracle update submission errors."""

    pass


class EncodingError(SubmitError):
    """Raised when an update call cannot be encoded (configuration bug)."""

    kind = ErrorKind.INTEGRITY
    max_retries = 0


class SignerError(SubmitError):
    """Raised when the signer cannot produce a signed transaction."""

    kind = ErrorKind.INTEGRITY
    max_retries = 0


class SubmissionError(SubmitError):
    """Raised on network or gas failures while submitting."""

    pass


class ReceiptTimeoutError(SubmitError):
    """Raised when a transaction is not confirmed within the deadline.

    The transaction may still land; it must not be resubmitted blindly.

    :ivar tx_hash: Hash of the unconfirmed transaction.
    """

    max_retries = 0

    def __init__(self, tx_hash: str, timeout: float):
        self.tx_hash = tx_hash
        super().__init__(f"Transaction {tx_hash} not confirmed within {timeout}s")


class TransactionPendingError(SubmitError):
    """Raised when a previous transaction for the pools is still pending."""

    max_retries = 0


class SubmissionAbortedError(SubmitError):
    """Raised when shutdown aborted a submission before broadcast."""

    max_retries = 0


class StaleResultError(SubmitError):
    """Raised when batch entries are older than the freshness bound.

    :ivar pools: Pools whose results must be recomputed.
    """

    kind = ErrorKind.DATA_QUALITY
    max_retries = 0

    def __init__(self, pools: list[Pool], max_age: int):
        self.pools = pools
        names = ", ".join(str(p) for p in pools)
        super().__init__(f"Stale TWAP results (older than {max_age}s): {names}")


class DuplicateSubmissionError(SubmitError):
    """Raised when every entry of a batch was already written on-chain."""

    kind = ErrorKind.DATA_QUALITY
    max_retries = 0
