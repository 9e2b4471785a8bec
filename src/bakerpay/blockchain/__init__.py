"""
bakerpay/blockchain/

Batched transfer construction, chunking and submission.
"""

from .tx_builder import (
    BatchTransfer,
    BatchResult,
    BatchSubmitter,
    BatchValidationError,
    build_transfers,
    split_batch,
    validate_batch,
)

__all__ = [
    "BatchTransfer",
    "BatchResult",
    "BatchSubmitter",
    "BatchValidationError",
    "build_transfers",
    "split_batch",
    "validate_batch",
]
