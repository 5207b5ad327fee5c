"""OracleConfig: Validated configuration consumed by the pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field

from .errors import ConfigurationError
from .Pool import Pool, TokenPair, parse_pool_spec, to_checksum
from .RetryManager import RetryPolicy


@dataclass
class OracleConfig:
    """Pipeline configuration.

    Durations are in seconds.

    :ivar oracle_address: TWAP oracle contract receiving updates.
    :ivar pools: Pool specs (see :func:`~.Pool.parse_pool_spec`).
    :ivar factory_address: Factory used to resolve token pair specs.
    :ivar network: Network name (or RPC URL).
    :ivar rpc_url: Optional RPC URL override.
    :ivar sample_interval: Seconds between sampling cycles.
    :ivar update_interval: Seconds between oracle updates per pool.
    :ivar window_duration: TWAP sliding window.
    :ivar min_coverage: Minimum span of observations for a valid TWAP.
    :ivar freshness_bound: Max age of a TWAP at submission.
    :ivar retry: Backoff parameters.
    :ivar confirmations: Blocks to wait for after inclusion.
    :ivar call_timeout: Deadline for each read call and broadcast.
    :ivar receipt_timeout: Deadline for confirmation.
    :ivar batch_updates: Oracle accepts batched ``updatePrices`` calls.
    """

    oracle_address: str
    pools: list[str]
    factory_address: str | None = None
    network: str = "sapphire-localnet"
    rpc_url: str | None = None
    sample_interval: int = 60
    update_interval: int = 300
    window_duration: int = 1800
    min_coverage: int = 600
    freshness_bound: int = 60
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    confirmations: int = 1
    call_timeout: float = 10.0
    receipt_timeout: float = 120.0
    batch_updates: bool = True

    def validate(self) -> None:
        """Validate and normalize the configuration in place.

        Addresses are checksummed.

        :raises ConfigurationError: On the first invalid value found.
        """
        self.oracle_address = to_checksum(self.oracle_address, "oracle address")
        if self.factory_address:
            self.factory_address = to_checksum(self.factory_address, "factory address")

        specs = self.pool_specs()
        if not specs:
            raise ConfigurationError("At least one pool must be configured")
        if len(set(specs)) != len(specs):
            raise ConfigurationError("Duplicate pools configured")
        if any(isinstance(s, TokenPair) for s in specs) and not self.factory_address:
            raise ConfigurationError("Token pair pools require a factory address")

        for name in ("sample_interval", "update_interval", "window_duration",
                     "min_coverage", "freshness_bound"):
            if getattr(self, name) <= 0:
                raise ConfigurationError(f"{name} must be positive")
        if self.min_coverage > self.window_duration:
            raise ConfigurationError("min_coverage must not exceed window_duration")
        if self.call_timeout <= 0 or self.receipt_timeout <= 0:
            raise ConfigurationError("Timeouts must be positive")
        if self.confirmations < 1:
            raise ConfigurationError("confirmations must be at least 1")

        if self.retry.max_attempts < 1:
            raise ConfigurationError("max_attempts must be at least 1")
        if self.retry.base_delay < 0 or self.retry.max_delay < self.retry.base_delay:
            raise ConfigurationError("Backoff delays must satisfy 0 <= base <= max")
        if self.retry.multiplier < 1:
            raise ConfigurationError("Backoff multiplier must be at least 1")

    def pool_specs(self) -> list[Pool | TokenPair]:
        """Parse the configured pool specs.

        :raises ConfigurationError: If a spec is invalid.
        """
        return [parse_pool_spec(s) for s in self.pools if s.strip()]
