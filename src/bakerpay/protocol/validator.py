"""
bakerpay/protocol/validator.py

Pre-payment checks on calculator and pool distributor output.

Nothing is submitted unless validation returns no errors. Warnings
(such as dust amounts) are logged and do not block distribution.

Delegate checks, in order:
    (a) sum of net rewards <= total rewards + EPSILON
    (b) every address is well-formed
    (c) no negative net reward
    (d) no net reward with more than 6 decimal places
    (e) fee percent within [0, 100]

Pool checks add: positive stake, admin charge within [0, 100],
total distributed <= pool rewards + EPSILON, and a manager must exist
when admin charges are nonzero.
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import List, Optional, TYPE_CHECKING

from ..config import DECIMAL_PLACES, EPSILON, QUANTUM, decimal_places, is_valid_address
from .rewards import EpochRewardsResult

if TYPE_CHECKING:
    from .pool import PoolResult

logger = logging.getLogger("bakerpay.protocol.validator")


@dataclass
class ValidationResult:
    """Outcome of a validation pass."""
    valid: bool
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "valid": self.valid,
            "errors": list(self.errors),
            "warnings": list(self.warnings),
        }


class RewardValidator:
    """Validates reward lists against payout invariants."""

    def __init__(self, min_payment_amount: Decimal = QUANTUM):
        """
        Args:
            min_payment_amount: Positive amounts below this are reported as dust
        """
        self.min_payment_amount = min_payment_amount

    @staticmethod
    def _check_amount(
        address: str,
        amount: Decimal,
        minimum: Decimal,
        errors: List[str],
        warnings: List[str],
    ) -> None:
        if amount < 0:
            errors.append(f"Negative reward for {address}: {amount}")
        elif 0 < amount < minimum:
            warnings.append(f"Dust amount for {address}: {amount}")

        places = decimal_places(amount)
        if places > DECIMAL_PLACES:
            errors.append(f"Reward for {address} has too many decimal places: {places}")

    def validate(
        self,
        result: EpochRewardsResult,
        min_payment_amount: Optional[Decimal] = None,
    ) -> ValidationResult:
        """
        Validate delegate rewards for one epoch.

        Args:
            result: Calculator output
            min_payment_amount: Dust threshold override for this call

        Returns:
            ValidationResult
        """
        errors: List[str] = []
        warnings: List[str] = []
        minimum = self.min_payment_amount if min_payment_amount is None else min_payment_amount

        distributed = sum((r.net_reward for r in result.delegate_rewards), Decimal(0))
        if distributed > result.total_rewards + EPSILON:
            errors.append(
                f"Total distributed ({distributed}) exceeds total rewards "
                f"({result.total_rewards})"
            )

        for reward in result.delegate_rewards:
            if not is_valid_address(reward.address):
                errors.append(f"Invalid address: {reward.address}")
            self._check_amount(reward.address, reward.net_reward, minimum, errors, warnings)
            if reward.fee_percent < 0 or reward.fee_percent > 100:
                errors.append(
                    f"Invalid fee percentage for {reward.address}: {reward.fee_percent}%"
                )

        return ValidationResult(valid=not errors, errors=errors, warnings=warnings)

    def validate_pool(
        self,
        pool: "PoolResult",
        min_payment_amount: Optional[Decimal] = None,
    ) -> ValidationResult:
        """Validate a bond pool distribution, with the same dust override as validate."""
        errors: List[str] = []
        warnings: List[str] = []
        minimum = self.min_payment_amount if min_payment_amount is None else min_payment_amount

        if pool.total_distributed > pool.pool_rewards + EPSILON:
            errors.append(
                f"Total distributed ({pool.total_distributed}) exceeds pool rewards "
                f"({pool.pool_rewards})"
            )

        for reward in pool.member_rewards:
            if not is_valid_address(reward.address):
                errors.append(f"Invalid address: {reward.address}")
            self._check_amount(reward.address, reward.net_reward, minimum, errors, warnings)
            if reward.stake <= 0:
                errors.append(f"Invalid stake for {reward.address}: {reward.stake}")
            if reward.admin_charge_percent < 0 or reward.admin_charge_percent > 100:
                errors.append(
                    f"Invalid admin charge for {reward.address}: {reward.admin_charge_percent}%"
                )

        if pool.total_admin_fees > 0:
            if not pool.manager_address:
                errors.append("Admin fees exist but no manager found")
            elif not is_valid_address(pool.manager_address):
                errors.append(f"Invalid manager address: {pool.manager_address}")

        return ValidationResult(valid=not errors, errors=errors, warnings=warnings)

    def log_validation(self, result: ValidationResult, context: str) -> None:
        """Log errors and warnings of a validation pass."""
        if result.valid:
            logger.info(f"{context} validation passed")
        else:
            logger.error(f"{context} validation failed with {len(result.errors)} error(s)")
            for error in result.errors:
                logger.error(f"  - {error}")

        for warning in result.warnings:
            logger.warning(f"{context}: {warning}")
