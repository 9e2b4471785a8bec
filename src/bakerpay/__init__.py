"""
bakerpay - Reward distribution engine for delegated proof-of-stake bakers

Detects when a cycle's rewards become spendable, splits them across
delegates after fees, optionally re-splits the baker's share among a
bond pool, and pays everything out in batched operations with retries.

Usage:
    from bakerpay import ChainConfig, TzKTOracle, DistributionOrchestrator
    from bakerpay.protocol import PaymentStore, FileBackend, StaticConfigProvider

    provider = StaticConfigProvider.from_file("operators.json")
    store = PaymentStore(FileBackend(Path("./data")))

    async with TzKTOracle(ChainConfig.from_env()) as oracle:
        orchestrator = DistributionOrchestrator.create(oracle, store, provider)
        outcomes = await orchestrator.process("tz1...", signer=signer)
"""

from .config import (
    ChainConfig,
    Network,
    CycleStatus,
    PaymentStatus,
    OperationMode,
)
from .tzkt import ChainOracle, TzKTOracle, ChainError, BatchSigner
from .protocol import (
    DistributionOrchestrator,
    DistributionOutcome,
    CycleTracker,
    RewardCalculator,
    RewardValidator,
    PoolDistributor,
    PaymentStore,
    StaticConfigProvider,
)

__version__ = "0.1.0"

__all__ = [
    "ChainConfig",
    "Network",
    "CycleStatus",
    "PaymentStatus",
    "OperationMode",
    "ChainOracle",
    "TzKTOracle",
    "ChainError",
    "BatchSigner",
    "DistributionOrchestrator",
    "DistributionOutcome",
    "CycleTracker",
    "RewardCalculator",
    "RewardValidator",
    "PoolDistributor",
    "PaymentStore",
    "StaticConfigProvider",
]
