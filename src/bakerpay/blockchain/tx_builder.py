"""
bakerpay/blockchain/tx_builder.py

Batched transfer construction and submission.

Supports:
- Building transfers from reward lists (zero amounts dropped)
- Order-preserving chunking to a maximum batch size
- Pre-submission batch validation
- Sequential chunk submission with a fixed inter-batch delay
- Simulation mode that never touches the chain

Chunks are never submitted in parallel: each one depends on the paying
account's on-chain counter, so chunk N+1 is only sent after chunk N has
been confirmed. A failed chunk stops the run and the remaining chunks
are reported as not attempted.
"""

import asyncio
import hashlib
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional

from ..config import (
    DEFAULT_TRANSACTION_FEE,
    INTER_BATCH_DELAY,
    MAX_BATCH_SIZE,
    from_minor_units,
    is_valid_address,
)
from ..tzkt.client import ChainError, ChainOracle

logger = logging.getLogger("bakerpay.blockchain.tx_builder")


class BatchValidationError(Exception):
    """Raised when a batch fails pre-submission checks."""

    def __init__(self, errors: List[str]):
        self.errors = list(errors)
        super().__init__("; ".join(self.errors))


# ============================================================================
# DATA STRUCTURES
# ============================================================================

@dataclass(frozen=True)
class BatchTransfer:
    """A single transfer inside a batched operation."""
    recipient: str
    amount_minor_units: int

    @property
    def amount(self) -> Decimal:
        return from_minor_units(self.amount_minor_units)

    def to_dict(self) -> dict:
        return {
            "recipient": self.recipient,
            "amount_minor_units": self.amount_minor_units,
        }


@dataclass
class BatchResult:
    """Outcome of one chunk."""
    chunk_index: int
    transfers: List[BatchTransfer] = field(default_factory=list)
    op_ref: Optional[str] = None
    applied: bool = False
    attempted: bool = True
    carried_forward: bool = False   # Confirmed by an earlier attempt, not resubmitted
    simulated: bool = False
    gas_used: int = 0
    error: Optional[str] = None

    @property
    def total_amount(self) -> int:
        return sum(t.amount_minor_units for t in self.transfers)

    def to_dict(self) -> dict:
        return {
            "chunk_index": self.chunk_index,
            "transfers": [t.to_dict() for t in self.transfers],
            "op_ref": self.op_ref,
            "applied": self.applied,
            "attempted": self.attempted,
            "carried_forward": self.carried_forward,
            "simulated": self.simulated,
            "gas_used": self.gas_used,
            "total_amount": self.total_amount,
            "error": self.error,
        }


# ============================================================================
# BUILDING & CHUNKING
# ============================================================================

def build_transfers(rewards: Iterable[Any]) -> List[BatchTransfer]:
    """
    Convert rewards into transfers, dropping non-positive amounts.

    Args:
        rewards: Objects with address and net_reward_minor_units

    Returns:
        Transfers in input order
    """
    transfers = []
    for reward in rewards:
        if reward.net_reward_minor_units > 0:
            transfers.append(BatchTransfer(reward.address, reward.net_reward_minor_units))
    return transfers


def split_batch(
    transfers: List[BatchTransfer],
    max_size: int = MAX_BATCH_SIZE,
) -> List[List[BatchTransfer]]:
    """Split transfers into consecutive chunks of at most max_size."""
    if max_size <= 0:
        raise ValueError(f"max_size must be positive, got {max_size}")
    chunks = [transfers[i:i + max_size] for i in range(0, len(transfers), max_size)]
    logger.debug(f"Split {len(transfers)} transfers into {len(chunks)} batches")
    return chunks


def validate_batch(
    transfers: List[BatchTransfer],
    max_size: int = MAX_BATCH_SIZE,
) -> List[str]:
    """
    Check a batch before submission.

    Duplicate recipients are logged but allowed.

    Returns:
        List of errors (empty when the batch is valid)
    """
    errors = []

    if not transfers:
        errors.append("Batch cannot be empty")
    if len(transfers) > max_size:
        errors.append(f"Batch size {len(transfers)} exceeds maximum {max_size}")

    seen = set()
    duplicates = []
    for i, transfer in enumerate(transfers):
        if not transfer.recipient:
            errors.append(f"Transfer {i}: missing recipient address")
        elif not is_valid_address(transfer.recipient):
            errors.append(f"Transfer {i}: invalid recipient address {transfer.recipient}")
        if transfer.amount_minor_units < 0:
            errors.append(f"Transfer {i}: amount cannot be negative")
        elif transfer.amount_minor_units == 0:
            errors.append(f"Transfer {i}: amount cannot be zero")
        if transfer.recipient in seen:
            duplicates.append(transfer.recipient)
        seen.add(transfer.recipient)

    if duplicates:
        logger.warning(f"Batch contains duplicate addresses: {', '.join(duplicates)}")

    return errors


def simulated_op_ref(source: str, transfers: List[BatchTransfer]) -> str:
    """Deterministic placeholder reference for a simulated batch."""
    payload = source + "|" + ",".join(f"{t.recipient}:{t.amount_minor_units}" for t in transfers)
    return "sim_" + hashlib.sha256(payload.encode()).hexdigest()[:32]


# ============================================================================
# SUBMITTER
# ============================================================================

class BatchSubmitter:
    """
    Submits batched transfers through a chain oracle.

    Example:
        submitter = BatchSubmitter(oracle, simulate=False)
        results = await submitter.send_multiple_batches(signer, source, transfers)
        confirmed = [r for r in results if r.applied]
    """

    def __init__(
        self,
        oracle: Optional[ChainOracle] = None,
        simulate: bool = True,
        max_batch_size: int = MAX_BATCH_SIZE,
        inter_batch_delay: float = INTER_BATCH_DELAY,
        transaction_fee: int = DEFAULT_TRANSACTION_FEE,
    ):
        """
        Initialize submitter.

        Args:
            oracle: Chain oracle used for live submission
            simulate: Return synthetic results without chain calls
            max_batch_size: Transfers per batched operation
            inter_batch_delay: Seconds between live chunk submissions
            transaction_fee: Per-transfer fee used when no estimate is available
        """
        if not simulate and oracle is None:
            raise ValueError("Live submission requires a chain oracle")
        if max_batch_size <= 0:
            raise ValueError("max_batch_size must be positive")
        self.oracle = oracle
        self.simulate = simulate
        self.max_batch_size = max_batch_size
        self.inter_batch_delay = inter_batch_delay
        self.transaction_fee = transaction_fee

    async def submit_batch(
        self,
        signer: Any,
        source: str,
        transfers: List[BatchTransfer],
        chunk_index: int = 0,
    ) -> BatchResult:
        """
        Validate and submit one batch as a single operation.

        Raises:
            BatchValidationError: If the batch fails pre-submission checks
            ChainError: If the oracle cannot submit the batch
        """
        errors = validate_batch(transfers, self.max_batch_size)
        if errors:
            raise BatchValidationError(errors)

        total = sum(t.amount_minor_units for t in transfers)

        if self.simulate:
            op_ref = simulated_op_ref(source, transfers)
            logger.info(
                f"[SIMULATION] Batch {chunk_index}: {len(transfers)} transfers, "
                f"total {from_minor_units(total)}, ref {op_ref}"
            )
            return BatchResult(
                chunk_index=chunk_index,
                transfers=list(transfers),
                op_ref=op_ref,
                applied=True,
                simulated=True,
            )

        receipt = await self.oracle.submit_batch(signer, source, transfers)
        if receipt.confirmed:
            logger.info(
                f"Batch {chunk_index} confirmed: {receipt.op_ref} "
                f"({len(transfers)} transfers, total {from_minor_units(total)})"
            )
        else:
            logger.error(f"Batch {chunk_index} not confirmed: {receipt.op_ref}")

        return BatchResult(
            chunk_index=chunk_index,
            transfers=list(transfers),
            op_ref=receipt.op_ref,
            applied=receipt.confirmed,
            gas_used=receipt.gas_used,
            error=None if receipt.confirmed else f"Operation {receipt.op_ref} not confirmed",
        )

    async def send_multiple_batches(
        self,
        signer: Any,
        source: str,
        transfers: List[BatchTransfer],
        skip_chunks: Optional[Dict[int, str]] = None,
    ) -> List[BatchResult]:
        """
        Submit transfers chunk by chunk, in order.

        Args:
            signer: Opaque signer passed through to the oracle
            source: Paying account address
            transfers: All transfers for the run
            skip_chunks: {chunk_index: op_ref} of chunks already confirmed

        Returns:
            One BatchResult per chunk, in chunk order
        """
        skip_chunks = skip_chunks or {}
        chunks = split_batch(transfers, self.max_batch_size)
        results: List[BatchResult] = []
        failed = False
        submitted_any = False

        # Reject bad input before anything reaches the chain
        for index, chunk in enumerate(chunks):
            errors = validate_batch(chunk, self.max_batch_size)
            if errors:
                raise BatchValidationError([f"Batch {index}: {e}" for e in errors])

        for index, chunk in enumerate(chunks):
            if failed:
                results.append(BatchResult(chunk_index=index, transfers=list(chunk), attempted=False))
                continue

            if index in skip_chunks:
                logger.info(f"Batch {index + 1}/{len(chunks)} already confirmed, not resubmitting")
                results.append(BatchResult(
                    chunk_index=index,
                    transfers=list(chunk),
                    op_ref=skip_chunks[index],
                    applied=True,
                    attempted=False,
                    carried_forward=True,
                ))
                continue

            if submitted_any and not self.simulate and self.inter_batch_delay > 0:
                await asyncio.sleep(self.inter_batch_delay)

            logger.info(f"Processing batch {index + 1}/{len(chunks)}")
            submitted_any = True
            try:
                result = await self.submit_batch(signer, source, chunk, chunk_index=index)
            except Exception as e:
                logger.error(f"Batch {index + 1}/{len(chunks)} failed: {e}")
                result = BatchResult(chunk_index=index, transfers=list(chunk), error=str(e))

            results.append(result)
            if not result.applied:
                failed = True

        return results

    async def estimate_batch_fee(self, transfers: List[BatchTransfer]) -> int:
        """Estimated total fee in minor units."""
        if self.simulate or self.oracle is None:
            return self.transaction_fee * len(transfers)
        try:
            total = 0
            for transfer in transfers:
                total += await self.oracle.estimate_fee(transfer)
            return total
        except ChainError as e:
            logger.warning(f"Batch fee estimation failed, using flat fee: {e}")
            return self.transaction_fee * len(transfers)
