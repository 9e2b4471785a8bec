"""
bakerpay/tzkt - Chain oracle for Tezos-style networks.

Reports the current cycle, per-cycle reward splits and delegate stakes
from a TzKT indexer, and submits batched transfers through a signer.
"""

from .client import (
    ChainOracle,
    TzKTOracle,
    ChainError,
    BatchSigner,
    DelegateStake,
    EpochRewards,
    SubmissionReceipt,
)

__all__ = [
    "ChainOracle",
    "TzKTOracle",
    "ChainError",
    "BatchSigner",
    "DelegateStake",
    "EpochRewards",
    "SubmissionReceipt",
]
