"""
bakerpay/protocol/

Reward distribution protocol: cycle tracking, reward calculation,
validation, bond pool splitting and the distribution orchestrator.
"""

from .storage import (
    StorageBackend,
    MemoryBackend,
    FileBackend,
    PaymentStore,
    CycleRecord,
    PaymentRow,
    StorageError,
    KIND_DELEGATE,
    KIND_POOL,
)
from .settings import (
    OperatorSettings,
    PoolMember,
    SettingsProvider,
    FeeProvider,
    PoolMemberProvider,
    StaticConfigProvider,
    SettingsError,
)
from .cycles import CycleTracker, EpochChange, compute_ready_epoch
from .rewards import (
    RewardCalculator,
    DelegateReward,
    EpochRewardsResult,
    calculate_net_reward,
    split_epoch_rewards,
)
from .validator import RewardValidator, ValidationResult
from .pool import PoolDistributor, PoolMemberReward, PoolResult, compute_pool_distribution
from .distribution import (
    DistributionOrchestrator,
    DistributionPhase,
    DistributionOutcome,
    DistributionAttempt,
)

__all__ = [
    # Storage
    "StorageBackend",
    "MemoryBackend",
    "FileBackend",
    "PaymentStore",
    "CycleRecord",
    "PaymentRow",
    "StorageError",
    "KIND_DELEGATE",
    "KIND_POOL",
    # Settings
    "OperatorSettings",
    "PoolMember",
    "SettingsProvider",
    "FeeProvider",
    "PoolMemberProvider",
    "StaticConfigProvider",
    "SettingsError",
    # Cycles
    "CycleTracker",
    "EpochChange",
    "compute_ready_epoch",
    # Rewards
    "RewardCalculator",
    "DelegateReward",
    "EpochRewardsResult",
    "calculate_net_reward",
    "split_epoch_rewards",
    # Validation
    "RewardValidator",
    "ValidationResult",
    # Bond pool
    "PoolDistributor",
    "PoolMemberReward",
    "PoolResult",
    "compute_pool_distribution",
    # Orchestration
    "DistributionOrchestrator",
    "DistributionPhase",
    "DistributionOutcome",
    "DistributionAttempt",
]
