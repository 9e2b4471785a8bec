"""
bakerpay/protocol/distribution.py

Distribution orchestrator: one scheduler tick per operator.

Flow per ready epoch:
1. DETECTING          - advance cycle tracking, pick delivered epochs
2. CALCULATING        - delegate payouts from a fresh oracle snapshot
3. VALIDATING         - any error marks the epoch errored, nothing is sent
4. DISTRIBUTING       - delegate batches, retried with cleanup between tries
5. DISTRIBUTING_POOL  - bond pool re-split, only after delegates succeeded
6. RECORDING          - terminal CycleRecord status
7. DONE | FAILED

Retry policy: the distributing step (never the calculation) runs up to
payment_retries times, waiting minutes_between_retries between tries.
Before each retry the previous attempt's payment rows are deleted in one
storage write. Chunks confirmed on-chain by an earlier attempt are final:
they are carried into the next attempt and never resubmitted.

Detection and calculation errors (ChainError, SettingsError) propagate
to the caller without touching the epoch's record, so the next
scheduler tick can try again.
"""

import asyncio
import logging
from collections import Counter
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from ..config import CYCLES_UNTIL_DELIVERED, CycleStatus, OperationMode, PaymentStatus
from ..tzkt.client import ChainOracle
from ..blockchain.tx_builder import (
    BatchResult,
    BatchSubmitter,
    BatchTransfer,
    BatchValidationError,
    build_transfers,
    split_batch,
)
from .cycles import CycleTracker
from .pool import PoolDistributor, PoolResult
from .rewards import EpochRewardsResult, RewardCalculator
from .settings import (
    FeeProvider,
    OperatorSettings,
    PoolMemberProvider,
    SettingsError,
    SettingsProvider,
)
from .storage import KIND_DELEGATE, KIND_POOL, PaymentRow, PaymentStore
from .validator import RewardValidator

logger = logging.getLogger("bakerpay.protocol.distribution")


# ============================================================================
# DATA STRUCTURES
# ============================================================================

class DistributionPhase(Enum):
    """Phases of one epoch's distribution."""
    DETECTING = "detecting"
    CALCULATING = "calculating"
    VALIDATING = "validating"
    DISTRIBUTING = "distributing"
    DISTRIBUTING_POOL = "distributing_pool"
    RECORDING = "recording"
    DONE = "done"
    FAILED = "failed"


@dataclass
class DistributionAttempt:
    """One pass of the distributing step. Never persisted."""
    epoch: int
    attempt_number: int
    kind: str
    transfers: List[BatchTransfer]
    results: List[BatchResult] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return bool(self.results) and all(r.applied for r in self.results)

    @property
    def last_error(self) -> Optional[str]:
        for result in self.results:
            if result.error:
                return result.error
        return None


@dataclass
class SubmissionSummary:
    """Result of the retried distributing step for one kind of payment."""
    success: bool
    attempts: int
    results: List[BatchResult] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def operation_refs(self) -> List[str]:
        refs = []
        for result in self.results:
            if result.op_ref and result.op_ref not in refs:
                refs.append(result.op_ref)
        return refs


@dataclass
class DistributionOutcome:
    """Result of processing one operator epoch."""
    operator: str
    epoch: int
    mode: OperationMode
    phase: DistributionPhase
    status: Optional[CycleStatus] = None
    delegate_count: int = 0
    delegate_total: Decimal = Decimal(0)
    pool_member_count: int = 0
    pool_total: Decimal = Decimal(0)
    operation_refs: List[str] = field(default_factory=list)
    attempts: int = 0
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.phase == DistributionPhase.DONE

    def to_dict(self) -> dict:
        return {
            "operator": self.operator,
            "epoch": self.epoch,
            "mode": self.mode.value,
            "phase": self.phase.value,
            "status": self.status.value if self.status else None,
            "delegate_count": self.delegate_count,
            "delegate_total": str(self.delegate_total),
            "pool_member_count": self.pool_member_count,
            "pool_total": str(self.pool_total),
            "operation_refs": list(self.operation_refs),
            "attempts": self.attempts,
            "errors": list(self.errors),
            "warnings": list(self.warnings),
        }


# ============================================================================
# HELPERS
# ============================================================================

def _row_status(result: BatchResult) -> PaymentStatus:
    if result.simulated:
        return PaymentStatus.SIMULATED
    if result.applied:
        return PaymentStatus.APPLIED
    if result.attempted:
        return PaymentStatus.FAILED
    return PaymentStatus.NOT_AVAILABLE


def payment_rows(
    operator: str,
    epoch: int,
    kind: str,
    results: List[BatchResult],
    attempt: int,
) -> List[PaymentRow]:
    """One row per transfer, carrying its chunk's outcome."""
    rows = []
    for result in results:
        status = _row_status(result)
        for transfer in result.transfers:
            rows.append(PaymentRow(
                operator=operator,
                epoch=epoch,
                kind=kind,
                address=transfer.recipient,
                amount=transfer.amount,
                amount_minor_units=transfer.amount_minor_units,
                status=status,
                op_ref=result.op_ref,
                chunk_index=result.chunk_index,
                attempt=attempt,
            ))
    return rows


def confirmed_chunks_from_rows(
    rows: List[PaymentRow],
    chunks: List[List[BatchTransfer]],
) -> Dict[int, str]:
    """
    Map chunk index to op_ref for chunks already applied on-chain.

    Raises:
        BatchValidationError: If applied rows do not line up with the
            current chunking, since resubmitting could pay twice
    """
    applied: Dict[int, List[PaymentRow]] = {}
    for row in rows:
        if row.status == PaymentStatus.APPLIED:
            applied.setdefault(row.chunk_index, []).append(row)

    confirmed: Dict[int, str] = {}
    for index, chunk_rows in applied.items():
        chunk = chunks[index] if index < len(chunks) else []
        expected = Counter((t.recipient, t.amount_minor_units) for t in chunk)
        actual = Counter((r.address, r.amount_minor_units) for r in chunk_rows)
        if expected != actual:
            raise BatchValidationError([
                f"Previously applied chunk {index} does not match the current transfer set"
            ])
        confirmed[index] = chunk_rows[0].op_ref or ""
    return confirmed


# ============================================================================
# ORCHESTRATOR
# ============================================================================

class DistributionOrchestrator:
    """
    Runs the full payout workflow for operators.

    Usage:
        orchestrator = DistributionOrchestrator.create(oracle, store, provider)
        outcomes = await orchestrator.process("tz1...", signer=signer)
    """

    def __init__(
        self,
        oracle: ChainOracle,
        store: PaymentStore,
        settings_provider: SettingsProvider,
        tracker: CycleTracker,
        calculator: RewardCalculator,
        pool_distributor: PoolDistributor,
        validator: Optional[RewardValidator] = None,
    ):
        """
        Initialize DistributionOrchestrator.

        Args:
            oracle: Chain oracle used for submission
            store: Payment row persistence
            settings_provider: Source of operator settings
            tracker: Cycle tracker owning CycleRecord state
            calculator: Delegate reward calculator
            pool_distributor: Bond pool distributor
            validator: Reward validator (default instance if None)
        """
        self.oracle = oracle
        self.store = store
        self.settings_provider = settings_provider
        self.tracker = tracker
        self.calculator = calculator
        self.pool_distributor = pool_distributor
        self.validator = validator or RewardValidator()
        self._locks: Dict[str, asyncio.Lock] = {}

    @classmethod
    def create(
        cls,
        oracle: ChainOracle,
        store: PaymentStore,
        provider: Any,
        maturity_delay: int = CYCLES_UNTIL_DELIVERED,
    ) -> "DistributionOrchestrator":
        """
        Wire up default components from one provider.

        Args:
            oracle: Chain oracle
            store: Payment store
            provider: Implements SettingsProvider, FeeProvider and PoolMemberProvider
            maturity_delay: Epochs until rewards are spendable
        """
        required = (SettingsProvider, FeeProvider, PoolMemberProvider)
        if not all(isinstance(provider, cls_) for cls_ in required):
            raise TypeError("provider must implement settings, fee and pool member lookups")
        return cls(
            oracle=oracle,
            store=store,
            settings_provider=provider,
            tracker=CycleTracker(oracle, store, maturity_delay),
            calculator=RewardCalculator(oracle, provider, provider),
            pool_distributor=PoolDistributor(provider, provider),
        )

    def _lock_for(self, operator: str) -> asyncio.Lock:
        lock = self._locks.get(operator)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[operator] = lock
        return lock

    # ------------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------------

    async def process(self, operator: str, signer: Any = None) -> List[DistributionOutcome]:
        """
        Run one scheduler tick for an operator.

        Advances cycle tracking, then distributes every delivered epoch,
        oldest first.

        Raises:
            ChainError: If the oracle cannot report the current epoch
            SettingsError: If the operator has no settings
        """
        async with self._lock_for(operator):
            settings = await self.settings_provider.get_settings(operator)

            logger.info(f"=== Distribution tick for {operator} (mode {settings.mode.value}) ===")
            change = await self.tracker.update_tracking(operator)
            logger.debug(f"Detection: {change.to_dict()}")

            if settings.mode == OperationMode.OFF:
                logger.info(f"Distribution disabled for {operator}, tracking only")
                return []

            ready = await self.tracker.get_ready_for_distribution(operator)
            if not ready:
                logger.info(f"No epochs ready for distribution for {operator}")
                return []

            outcomes = []
            for record in ready:
                outcomes.append(await self._process_epoch(operator, record.epoch, signer, settings))
            return outcomes

    async def process_epoch(
        self,
        operator: str,
        epoch: int,
        signer: Any = None,
    ) -> DistributionOutcome:
        """
        Distribute a single delivered epoch (e.g. after retrigger).

        Raises:
            ValueError: If the epoch is not in delivered state
        """
        async with self._lock_for(operator):
            settings = await self.settings_provider.get_settings(operator)
            return await self._process_epoch(operator, epoch, signer, settings)

    # ------------------------------------------------------------------------
    # Phase machine
    # ------------------------------------------------------------------------

    async def _process_epoch(
        self,
        operator: str,
        epoch: int,
        signer: Any,
        settings: OperatorSettings,
    ) -> DistributionOutcome:
        record = await self.tracker.get_record(operator, epoch)
        if record is None or record.status != CycleStatus.DELIVERED:
            state = record.status.value if record else "missing"
            raise ValueError(f"Epoch {epoch} for {operator} is not ready ({state})")

        outcome = DistributionOutcome(
            operator=operator,
            epoch=epoch,
            mode=settings.mode,
            phase=DistributionPhase.DETECTING,
            attempts=record.attempts,
        )

        if settings.mode == OperationMode.OFF:
            outcome.warnings.append("Distribution disabled by operation mode")
            outcome.phase = DistributionPhase.DONE
            return outcome
        if settings.mode == OperationMode.ON and signer is None:
            raise SettingsError(f"Live distribution for {operator} requires a signer")

        # CALCULATING
        outcome.phase = DistributionPhase.CALCULATING
        logger.info(f"Processing epoch {epoch} for {operator}")
        result = await self.calculator.calculate_epoch_rewards(operator, epoch, settings)

        # VALIDATING
        outcome.phase = DistributionPhase.VALIDATING
        validation = self.validator.validate(result, settings.min_payment_amount)
        self.validator.log_validation(validation, f"Epoch {epoch} delegate rewards")
        outcome.warnings.extend(validation.warnings)
        if not validation.valid:
            outcome.errors.extend(validation.errors)
            return await self._fail(outcome, "; ".join(validation.errors))

        # DISTRIBUTING
        outcome.phase = DistributionPhase.DISTRIBUTING
        transfers = build_transfers(result.delegate_rewards)
        outcome.delegate_count = len(transfers)
        outcome.delegate_total = result.total_delegate_payments

        try:
            delegates = await self._distribute(operator, epoch, KIND_DELEGATE, transfers, signer, settings)
        except BatchValidationError as e:
            outcome.errors.extend(e.errors)
            return await self._fail(outcome, str(e))

        outcome.attempts += delegates.attempts
        outcome.operation_refs.extend(delegates.operation_refs)
        if not delegates.success:
            outcome.errors.append(delegates.error or "Delegate distribution failed")
            return await self._fail(outcome, outcome.errors[-1])

        # DISTRIBUTING_POOL
        pool_error = None
        if settings.pool_enabled:
            outcome.phase = DistributionPhase.DISTRIBUTING_POOL
            pool_error = await self._distribute_pool(operator, epoch, result, signer, settings, outcome)
            if pool_error:
                outcome.errors.append(pool_error)

        # RECORDING
        outcome.phase = DistributionPhase.RECORDING
        status = CycleStatus.SIMULATED if settings.mode == OperationMode.SIMULATION else CycleStatus.PAID
        await self.tracker.record_outcome(
            operator,
            epoch,
            status,
            total=outcome.delegate_total + outcome.pool_total,
            operation_refs=outcome.operation_refs,
            attempts=outcome.attempts,
            error_message=pool_error,
        )
        outcome.status = status
        outcome.phase = DistributionPhase.DONE

        self._log_summary(result, outcome)
        return outcome

    async def _fail(self, outcome: DistributionOutcome, message: str) -> DistributionOutcome:
        logger.error(f"Epoch {outcome.epoch} for {outcome.operator} failed: {message}")
        await self.tracker.record_outcome(
            outcome.operator,
            outcome.epoch,
            CycleStatus.ERRORED,
            operation_refs=outcome.operation_refs,
            attempts=outcome.attempts,
            error_message=message,
        )
        outcome.status = CycleStatus.ERRORED
        outcome.phase = DistributionPhase.FAILED
        return outcome

    async def _distribute(
        self,
        operator: str,
        epoch: int,
        kind: str,
        transfers: List[BatchTransfer],
        signer: Any,
        settings: OperatorSettings,
    ) -> SubmissionSummary:
        """
        Submit transfers with the retry policy.

        Raises:
            BatchValidationError: On pre-submission batch errors (not retried)
        """
        if not transfers:
            logger.info(f"No {kind} transfers to send for epoch {epoch}")
            await self.store.delete_payments(operator, epoch, kind)
            return SubmissionSummary(success=True, attempts=0)

        submitter = BatchSubmitter(
            oracle=self.oracle,
            simulate=settings.mode != OperationMode.ON,
            max_batch_size=settings.max_batch_size,
            inter_batch_delay=settings.inter_batch_delay,
        )
        chunks = split_batch(transfers, settings.max_batch_size)

        # Chunks applied by an earlier run of this epoch stay applied
        previous = await self.store.get_payments(operator, epoch, kind)
        confirmed = confirmed_chunks_from_rows(previous, chunks)
        if confirmed:
            logger.info(f"Carrying forward {len(confirmed)} confirmed {kind} chunk(s) for epoch {epoch}")

        fee = await submitter.estimate_batch_fee(transfers)
        logger.info(
            f"Distributing {len(transfers)} {kind} transfers in {len(chunks)} batch(es), "
            f"estimated fee {fee}"
        )

        attempt: Optional[DistributionAttempt] = None
        for number in range(1, settings.payment_retries + 1):
            # One write removes the previous attempt's rows
            deleted = await self.store.delete_payments(operator, epoch, kind)
            if deleted:
                logger.debug(f"Cleared {deleted} {kind} rows before attempt {number}")

            logger.info(f"{kind.capitalize()} distribution attempt {number}/{settings.payment_retries}")
            attempt = DistributionAttempt(epoch=epoch, attempt_number=number, kind=kind, transfers=transfers)
            attempt.results = await submitter.send_multiple_batches(
                signer, operator, transfers, skip_chunks=confirmed
            )
            await self.store.replace_payments(
                operator, epoch, payment_rows(operator, epoch, kind, attempt.results, number), kind=kind
            )

            for result in attempt.results:
                if result.applied and not result.simulated and result.op_ref:
                    confirmed[result.chunk_index] = result.op_ref

            if attempt.succeeded:
                return SubmissionSummary(success=True, attempts=number, results=attempt.results)

            logger.error(f"Attempt {number} failed: {attempt.last_error}")
            if number < settings.payment_retries:
                logger.info(f"Waiting {settings.minutes_between_retries} minutes before retry")
                await asyncio.sleep(settings.retry_delay_seconds)

        return SubmissionSummary(
            success=False,
            attempts=settings.payment_retries,
            results=attempt.results if attempt else [],
            error=attempt.last_error if attempt else None,
        )

    async def _distribute_pool(
        self,
        operator: str,
        epoch: int,
        result: EpochRewardsResult,
        signer: Any,
        settings: OperatorSettings,
        outcome: DistributionOutcome,
    ) -> Optional[str]:
        """Run the pool step. Returns an error message, or None on success."""
        pool: PoolResult = await self.pool_distributor.distribute_pool(
            operator, epoch, result.total_rewards, result.total_delegate_payments, settings
        )
        if pool.is_empty:
            logger.info(f"Bond pool has nothing to distribute for epoch {epoch}")
            return None

        validation = self.validator.validate_pool(pool, settings.min_payment_amount)
        self.validator.log_validation(validation, f"Epoch {epoch} bond pool")
        outcome.warnings.extend(validation.warnings)
        if not validation.valid:
            return "Bond pool validation failed: " + "; ".join(validation.errors)

        transfers = PoolDistributor.build_transfers(pool)
        try:
            summary = await self._distribute(operator, epoch, KIND_POOL, transfers, signer, settings)
        except BatchValidationError as e:
            return f"Bond pool batch rejected: {e}"

        outcome.attempts += summary.attempts
        for ref in summary.operation_refs:
            if ref not in outcome.operation_refs:
                outcome.operation_refs.append(ref)
        if not summary.success:
            return f"Bond pool distribution failed: {summary.error}"

        outcome.pool_member_count = len(pool.member_rewards)
        outcome.pool_total = pool.total_distributed
        return None

    def _log_summary(self, result: EpochRewardsResult, outcome: DistributionOutcome) -> None:
        summary = self.calculator.get_summary(result)
        logger.info(f"=== Epoch {outcome.epoch} summary ({outcome.status.value}) ===")
        logger.info(f"Total rewards: {summary['total_rewards']}")
        logger.info(
            f"Delegate payments: {summary['total_delegate_payments']} "
            f"({summary['delegate_count']} delegates)"
        )
        logger.info(f"Fees withheld: {summary['total_fees']}")
        logger.info(f"Operator share: {summary['operator_share']}")
        if outcome.pool_member_count:
            logger.info(f"Bond pool: {outcome.pool_total} ({outcome.pool_member_count} members)")
