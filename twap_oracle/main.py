#!/usr/bin/env python3
"""TWAP Oracle Updater.

Samples spot prices of on-chain liquidity pools, computes a time-weighted
average price per pool and pushes the results to an on-chain oracle contract.

Configure via CLI arguments or environment variables (CLI args take precedence).
"""

import argparse
import asyncio
import logging
import os
import signal
import sys

from .src.ChainClient import NETWORKS, Web3ChainClient
from .src.config import OracleConfig
from .src.errors import ConfigurationError, OracleError
from .src.PipelineCoordinator import PipelineCoordinator
from .src.RetryManager import RetryPolicy
from .src.RoflKeyProvider import RoflKeyProvider
from .src.Signer import LOCALNET_PRIVATE_KEY, AccountSigner

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)

KEY_SOURCES = ("env", "rofl", "localnet")


def env_flag(name: str, default: bool) -> bool:
    """Read a boolean environment variable ("1", "true", "yes", "on")."""
    value = os.environ.get(name)
    if value is None or value == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def build_parser() -> argparse.ArgumentParser:
    """Build the CLI argument parser with environment variable defaults."""
    parser = argparse.ArgumentParser(
        description="TWAP Oracle Updater: pool TWAPs pushed to an on-chain oracle",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=f"""
Known networks:
  {', '.join(NETWORKS)}

Pool formats:
  0xPOOL, label=0xPOOL, 0xTOKEN_A/0xTOKEN_B, label=0xTOKEN_A/0xTOKEN_B
  (token pairs are resolved through --factory-address)

Examples:
  # Two pools, submit every 5 minutes from a 30 minute window
  python -m twap_oracle.main --oracle-address 0x... \\
      --pools weth-usdc=0x...,wbtc-weth=0x... \\
      --update-period 300 --window 1800 --min-coverage 600

Environment variables (CLI args take precedence):
  NETWORK, RPC_URL, ORACLE_ADDRESS, FACTORY_ADDRESS, POOLS, SAMPLE_PERIOD,
  UPDATE_PERIOD, WINDOW_DURATION, MIN_COVERAGE, FRESHNESS_BOUND, MAX_ATTEMPTS,
  BACKOFF_BASE, BACKOFF_MAX, RETRY_ACROSS_CYCLES, CONFIRMATIONS, CALL_TIMEOUT,
  RECEIPT_TIMEOUT, BATCH_UPDATES, PRIVATE_KEY, KEY_SOURCE, ROFL_KEY_ID
""",
    )

    parser.add_argument(
        "--network",
        type=str,
        help=f"Network to connect to ({', '.join(NETWORKS)}) or an RPC URL",
        default=os.environ.get("NETWORK") or "sapphire-localnet",
    )
    parser.add_argument(
        "--rpc-url",
        dest="rpc_url",
        type=str,
        help="RPC URL overriding the network default",
        default=os.environ.get("RPC_URL"),
    )
    parser.add_argument(
        "--oracle-address",
        dest="oracle_address",
        type=str,
        help="Address of the TWAP oracle contract",
        default=os.environ.get("ORACLE_ADDRESS"),
    )
    parser.add_argument(
        "--factory-address",
        dest="factory_address",
        type=str,
        help="Address of the pool factory (required for token pair pools)",
        default=os.environ.get("FACTORY_ADDRESS"),
    )
    parser.add_argument(
        "--pools",
        type=str,
        help="Comma-separated pools (see 'Pool formats')",
        default=os.environ.get("POOLS") or "",
    )
    parser.add_argument(
        "--sample-period",
        dest="sample_period",
        type=int,
        help="Seconds between sampling cycles (default: 60)",
        default=int(os.environ.get("SAMPLE_PERIOD") or "60"),
    )
    parser.add_argument(
        "--update-period",
        dest="update_period",
        type=int,
        help="Seconds between oracle updates per pool (default: 300)",
        default=int(os.environ.get("UPDATE_PERIOD") or "300"),
    )
    parser.add_argument(
        "--window",
        type=int,
        help="TWAP window duration in seconds (default: 1800)",
        default=int(os.environ.get("WINDOW_DURATION") or "1800"),
    )
    parser.add_argument(
        "--min-coverage",
        dest="min_coverage",
        type=int,
        help="Minimum seconds spanned by observations for a valid TWAP (default: 600)",
        default=int(os.environ.get("MIN_COVERAGE") or "600"),
    )
    parser.add_argument(
        "--freshness",
        type=int,
        help="Max age of a TWAP at submission in seconds (default: 60)",
        default=int(os.environ.get("FRESHNESS_BOUND") or "60"),
    )
    parser.add_argument(
        "--max-attempts",
        dest="max_attempts",
        type=int,
        help="Attempts per cycle for sampling and submission (default: 3)",
        default=int(os.environ.get("MAX_ATTEMPTS") or "3"),
    )
    parser.add_argument(
        "--backoff-base",
        dest="backoff_base",
        type=float,
        help="Backoff after the first failure in seconds (default: 1.0)",
        default=float(os.environ.get("BACKOFF_BASE") or "1.0"),
    )
    parser.add_argument(
        "--backoff-max",
        dest="backoff_max",
        type=float,
        help="Maximum backoff in seconds (default: 30.0)",
        default=float(os.environ.get("BACKOFF_MAX") or "30.0"),
    )
    parser.add_argument(
        "--retry-across-cycles",
        dest="retry_across_cycles",
        action=argparse.BooleanOptionalAction,
        help="Carry retry backoff across sampling cycles (default: off)",
        default=env_flag("RETRY_ACROSS_CYCLES", False),
    )
    parser.add_argument(
        "--confirmations",
        type=int,
        help="Block confirmations to wait for (default: 1)",
        default=int(os.environ.get("CONFIRMATIONS") or "1"),
    )
    parser.add_argument(
        "--call-timeout",
        dest="call_timeout",
        type=float,
        help="Timeout for read calls and broadcast in seconds (default: 10.0)",
        default=float(os.environ.get("CALL_TIMEOUT") or "10.0"),
    )
    parser.add_argument(
        "--receipt-timeout",
        dest="receipt_timeout",
        type=float,
        help="Timeout for transaction confirmation in seconds (default: 120.0)",
        default=float(os.environ.get("RECEIPT_TIMEOUT") or "120.0"),
    )
    parser.add_argument(
        "--batch-updates",
        dest="batch_updates",
        action=argparse.BooleanOptionalAction,
        help="Submit all pools in one updatePrices() call (default: on)",
        default=env_flag("BATCH_UPDATES", True),
    )
    parser.add_argument(
        "--key-source",
        dest="key_source",
        choices=KEY_SOURCES,
        help="Where the signing key comes from: PRIVATE_KEY env, ROFL appd, "
        "or the well-known localnet key (default: env, localnet on localnets)",
        default=os.environ.get("KEY_SOURCE"),
    )
    parser.add_argument(
        "--rofl-key-id",
        dest="rofl_key_id",
        type=str,
        help="Key ID requested from the ROFL appd (default: twap-oracle-signer)",
        default=os.environ.get("ROFL_KEY_ID") or "twap-oracle-signer",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose (DEBUG) logging",
    )
    return parser


def config_from_args(args: argparse.Namespace) -> OracleConfig:
    """Build a validated configuration from parsed arguments.

    :raises ConfigurationError: If the configuration is invalid.
    """
    if not args.oracle_address:
        raise ConfigurationError("Oracle address is required (--oracle-address)")

    config = OracleConfig(
        oracle_address=args.oracle_address,
        pools=[p.strip() for p in args.pools.split(",") if p.strip()],
        factory_address=args.factory_address,
        network=args.network,
        rpc_url=args.rpc_url,
        sample_interval=args.sample_period,
        update_interval=args.update_period,
        window_duration=args.window,
        min_coverage=args.min_coverage,
        freshness_bound=args.freshness,
        retry=RetryPolicy(
            max_attempts=args.max_attempts,
            base_delay=args.backoff_base,
            max_delay=args.backoff_max,
            carry_over=args.retry_across_cycles,
        ),
        confirmations=args.confirmations,
        call_timeout=args.call_timeout,
        receipt_timeout=args.receipt_timeout,
        batch_updates=args.batch_updates,
    )
    config.validate()
    return config


def resolve_private_key(args: argparse.Namespace) -> str:
    """Find the signing key for the configured key source.

    :raises ConfigurationError: If no key is available.
    """
    key_source = args.key_source
    if key_source is None:
        key_source = "localnet" if "localnet" in args.network else "env"

    if key_source == "rofl":
        return RoflKeyProvider().fetch_key(args.rofl_key_id)
    if key_source == "localnet":
        return LOCALNET_PRIVATE_KEY

    private_key = os.environ.get("PRIVATE_KEY")
    if not private_key:
        raise ConfigurationError("PRIVATE_KEY is required with --key-source env")
    return private_key


def log_config(config: OracleConfig, key_source: str | None) -> None:
    """Log the effective configuration."""
    logger.info("=" * 60)
    logger.info("TWAP Oracle Updater")
    logger.info("=" * 60)
    logger.info(f"Network:           {config.network}")
    logger.info(f"Oracle:            {config.oracle_address}")
    if config.factory_address:
        logger.info(f"Factory:           {config.factory_address}")
    logger.info(f"Pools:             {', '.join(config.pools)}")
    logger.info(f"Sample Period:     {config.sample_interval}s")
    logger.info(f"Update Period:     {config.update_interval}s")
    logger.info(f"Window:            {config.window_duration}s (min coverage {config.min_coverage}s)")
    logger.info(f"Freshness Bound:   {config.freshness_bound}s")
    logger.info(
        f"Retry:             {config.retry.max_attempts} attempts, "
        f"backoff {config.retry.base_delay}s..{config.retry.max_delay}s"
        f"{', across cycles' if config.retry.carry_over else ''}"
    )
    logger.info(f"Confirmations:     {config.confirmations}")
    logger.info(f"Batch Updates:     {'on' if config.batch_updates else 'off'}")
    logger.info(f"Key Source:        {key_source or 'default'}")
    logger.info("=" * 60)


async def run(coordinator: PipelineCoordinator) -> None:
    """Run the coordinator, shutting down gracefully on SIGINT/SIGTERM."""
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, coordinator.shutdown)
        except NotImplementedError:  # Windows
            pass
    await coordinator.run()


def main() -> None:
    """Main entry point for the TWAP Oracle Updater CLI."""
    parser = build_parser()
    args = parser.parse_args()

    # Configure logging level
    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    try:
        config = config_from_args(args)
    except ConfigurationError as e:
        parser.error(str(e))

    log_config(config, args.key_source)

    try:
        chain = Web3ChainClient(config.network, rpc_url=config.rpc_url)
        signer = AccountSigner(resolve_private_key(args), chain)
        coordinator = PipelineCoordinator(config, chain, signer)
        asyncio.run(run(coordinator))
    except KeyboardInterrupt:
        logger.info("Shutting down...")
    except OracleError as e:
        logger.error(f"Fatal error: {e}")
        sys.exit(1)
    except Exception as e:
        logger.exception(f"Fatal error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
