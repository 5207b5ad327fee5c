"""
TWAP Oracle Updater - Pool Sampling and Oracle Update Module

This module provides the multi-pool sampling-and-update pipeline:
- Pool: Pool identity and pool spec parsing
- PriceSampler: Spot prices from pool reserves
- TwapAggregator: Per-pool sliding windows and time-weighted averages
- UpdateBatcher: Oracle update encoding, signing and submission
- RetryManager: Per-pool retry state with exponential backoff
- PipelineCoordinator: Main orchestrator for the sampling loop
"""

from .ChainClient import BlockInfo, ChainClient, TransactionReceipt, Web3ChainClient
from .ChainClock import ChainClock
from .config import OracleConfig
from .PipelineCoordinator import PipelineCoordinator
from .Pool import Pool, TokenPair, parse_pool_spec
from .PoolPipeline import PoolPipeline, PoolState
from .PriceSampler import PRICE_DECIMALS, PriceObservation, PriceSampler
from .RetryManager import OperationKind, RetryManager, RetryPolicy, RetryState
from .Signer import AccountSigner, SignedTransaction, Signer
from .TwapAggregator import ObservationWindow, TwapAggregator, TwapResult
from .UpdateBatcher import UpdateBatch, UpdateBatcher

__all__ = [
    "AccountSigner",
    "BlockInfo",
    "ChainClient",
    "ChainClock",
    "ObservationWindow",
    "OperationKind",
    "OracleConfig",
    "PRICE_DECIMALS",
    "PipelineCoordinator",
    "Pool",
    "PoolPipeline",
    "PoolState",
    "PriceObservation",
    "PriceSampler",
    "RetryManager",
    "RetryPolicy",
    "RetryState",
    "SignedTransaction",
    "Signer",
    "TokenPair",
    "TransactionReceipt",
    "TwapAggregator",
    "TwapResult",
    "UpdateBatch",
    "UpdateBatcher",
    "Web3ChainClient",
    "parse_pool_spec",
]
