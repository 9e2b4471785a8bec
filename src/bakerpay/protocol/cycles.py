"""
bakerpay/protocol/cycles.py

Cycle tracking: which epochs are pending, delivered, or finished.

Rewards for an epoch become spendable a fixed number of epochs after it
ends (the maturity delay). The tracker watches the chain epoch and moves
CycleRecords through their lifecycle:

    pending -> delivered -> paid | simulated | errored

Detection is read-only. State is only written by update_tracking(),
the explicit mark_* calls, retrigger(), and record_outcome() (which the
distribution orchestrator alone calls).

Usage:
    tracker = CycleTracker(oracle, store)
    await tracker.update_tracking("tz1...")
    for record in await tracker.get_ready_for_distribution("tz1..."):
        ...
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, List, Optional

from ..config import CYCLES_UNTIL_DELIVERED, CycleStatus
from ..tzkt.client import ChainOracle
from .storage import CycleRecord, PaymentStore

logger = logging.getLogger("bakerpay.protocol.cycles")


# ============================================================================
# DATA STRUCTURES
# ============================================================================

@dataclass
class EpochChange:
    """Result of one epoch detection."""
    changed: bool
    previous_epoch: Optional[int]
    current_epoch: int
    ready_epoch: Optional[int]

    def to_dict(self) -> dict:
        return {
            "changed": self.changed,
            "previous_epoch": self.previous_epoch,
            "current_epoch": self.current_epoch,
            "ready_epoch": self.ready_epoch,
        }


def compute_ready_epoch(current_epoch: int, maturity_delay: int = CYCLES_UNTIL_DELIVERED) -> Optional[int]:
    """Epoch whose rewards matured at current_epoch, or None before the first one."""
    ready = current_epoch - maturity_delay
    return ready if ready >= 0 else None


# ============================================================================
# CYCLE TRACKER
# ============================================================================

class CycleTracker:
    """Tracks epoch maturity and owns CycleRecord state."""

    def __init__(
        self,
        oracle: ChainOracle,
        store: PaymentStore,
        maturity_delay: int = CYCLES_UNTIL_DELIVERED,
    ):
        """
        Initialize CycleTracker.

        Args:
            oracle: Chain oracle for the current epoch
            store: Persistence for records and tracker state
            maturity_delay: Epochs between accrual and spendability
        """
        if maturity_delay < 0:
            raise ValueError("maturity_delay cannot be negative")
        self.oracle = oracle
        self.store = store
        self.maturity_delay = maturity_delay

    async def detect_change(self, operator: str) -> EpochChange:
        """
        Compare the chain epoch with the last observed one.

        Read-only. Oracle failures propagate to the caller.
        """
        current = await self.oracle.get_current_epoch()
        previous = await self.store.get_last_observed_epoch(operator)
        changed = previous is not None and current > previous
        return EpochChange(
            changed=changed,
            previous_epoch=previous,
            current_epoch=current,
            ready_epoch=compute_ready_epoch(current, self.maturity_delay),
        )

    async def mark_pending(self, operator: str, epoch: int) -> CycleRecord:
        """Create a pending record for the epoch if none exists."""
        record, created = await self.store.create_record(operator, epoch, CycleStatus.PENDING)
        if created:
            logger.info(f"Epoch {epoch} for {operator} marked pending")
        return record

    async def mark_delivered(self, operator: str, epoch: int) -> bool:
        """
        Move a pending record to delivered.

        Returns:
            True if a record changed state
        """
        record = await self.store.get_record(operator, epoch)
        if record is None or record.status != CycleStatus.PENDING:
            return False
        record.status = CycleStatus.DELIVERED
        await self.store.save_record(record)
        logger.info(f"Epoch {epoch} for {operator} delivered")
        return True

    async def update_tracking(self, operator: str) -> EpochChange:
        """
        Detect an epoch change and advance record state.

        First observation stores the chain epoch and marks the ready epoch
        pending. On a change, every epoch that matured since the previous
        observation is marked pending (more than one if ticks were missed),
        then every pending record older than the new ready epoch is delivered.
        """
        change = await self.detect_change(operator)

        if change.previous_epoch is None:
            logger.info(
                f"Initializing tracking for {operator} at epoch {change.current_epoch}"
            )
            if change.ready_epoch is not None:
                await self.mark_pending(operator, change.ready_epoch)
            await self.store.set_last_observed_epoch(operator, change.current_epoch)
            return change

        if not change.changed:
            logger.debug(f"No epoch change for {operator} (epoch {change.current_epoch})")
            return change

        logger.info(
            f"Epoch change for {operator}: {change.previous_epoch} -> {change.current_epoch}"
        )

        if change.ready_epoch is not None:
            # Every epoch that matured since the last observation gets a record
            previous_ready = compute_ready_epoch(change.previous_epoch, self.maturity_delay)
            first = 0 if previous_ready is None else previous_ready + 1
            if change.ready_epoch - first > 0:
                logger.warning(
                    f"Epoch jumped {change.previous_epoch} -> {change.current_epoch} for "
                    f"{operator}, catching up epochs {first}..{change.ready_epoch}"
                )
            for epoch in range(first, change.ready_epoch + 1):
                await self.mark_pending(operator, epoch)

            for record in await self.store.list_records(operator, CycleStatus.PENDING):
                if record.epoch < change.ready_epoch:
                    await self.mark_delivered(operator, record.epoch)

        await self.store.set_last_observed_epoch(operator, change.current_epoch)
        return change

    async def get_ready_for_distribution(self, operator: str) -> List[CycleRecord]:
        """Delivered records not yet finished, oldest first."""
        return await self.store.list_records(operator, CycleStatus.DELIVERED)

    async def get_record(self, operator: str, epoch: int) -> Optional[CycleRecord]:
        return await self.store.get_record(operator, epoch)

    async def record_outcome(
        self,
        operator: str,
        epoch: int,
        status: CycleStatus,
        total: Decimal = Decimal(0),
        operation_refs: Optional[List[str]] = None,
        attempts: int = 0,
        error_message: Optional[str] = None,
    ) -> CycleRecord:
        """Write the terminal state of a distribution attempt."""
        if not status.is_terminal:
            raise ValueError(f"{status.value} is not a terminal status")

        record = await self.store.get_record(operator, epoch)
        if record is None:
            record = CycleRecord(operator=operator, epoch=epoch)

        record.status = status
        record.total = total
        record.operation_refs = list(operation_refs or [])
        record.attempts = attempts
        record.error_message = error_message
        await self.store.save_record(record)

        logger.info(f"Epoch {epoch} for {operator} recorded as {status.value}")
        return record

    async def retrigger(self, operator: str, epoch: int) -> CycleRecord:
        """
        Move an errored record back to delivered for another run.

        Raises:
            ValueError: If the record is missing or not errored
        """
        record = await self.store.get_record(operator, epoch)
        if record is None:
            raise ValueError(f"No record for {operator} epoch {epoch}")
        if record.status != CycleStatus.ERRORED:
            raise ValueError(
                f"Only errored epochs can be re-triggered (epoch {epoch} is {record.status.value})"
            )
        record.status = CycleStatus.DELIVERED
        record.error_message = None
        await self.store.save_record(record)
        logger.info(f"Epoch {epoch} for {operator} re-triggered")
        return record

    def are_rewards_available(self, epoch: int, current_epoch: int) -> bool:
        """Whether an epoch's rewards have matured at current_epoch."""
        return current_epoch - epoch >= self.maturity_delay

    async def get_summary(self, operator: str) -> Dict:
        """Record counts per status plus the last observed epoch."""
        records = await self.store.list_records(operator)
        counts = {status.value: 0 for status in CycleStatus}
        for record in records:
            counts[record.status.value] += 1
        return {
            "operator": operator,
            "last_observed_epoch": await self.store.get_last_observed_epoch(operator),
            "total_records": len(records),
            "by_status": counts,
            "latest_epoch": records[-1].epoch if records else None,
        }
