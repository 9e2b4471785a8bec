"""
bakerpay/protocol/rewards.py

Per-delegate reward calculation.

Splits an epoch's gross reward total across delegates by stake, then
applies each delegate's fee (custom override or operator default):

    gross = total_rewards * stake / staking_balance
    net   = floor6(gross * (100 - fee) / 100)
    minor = floor(net * 1_000_000)

All arithmetic is Decimal with truncation at 6 places, so the sum of
payouts never exceeds the total. Whatever is not paid out (fees, the
operator's own stake share, truncation dust) is the operator share.

Usage:
    calculator = RewardCalculator(oracle, settings_provider, fee_provider)
    result = await calculator.calculate_epoch_rewards("tz1...", 500)
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, List, Optional

from ..config import floor6, to_decimal, to_minor_units
from ..tzkt.client import ChainOracle, EpochRewards
from .settings import FeeProvider, OperatorSettings, SettingsProvider

logger = logging.getLogger("bakerpay.protocol.rewards")


# ============================================================================
# DATA STRUCTURES
# ============================================================================

@dataclass(frozen=True)
class DelegateReward:
    """Payout for one delegate."""
    address: str
    stake: Decimal
    gross_reward: Decimal       # Share of the total before fee
    fee_percent: Decimal
    net_reward: Decimal         # Truncated to 6 decimals
    net_reward_minor_units: int

    @property
    def fee_amount(self) -> Decimal:
        return self.gross_reward - self.net_reward

    def to_dict(self) -> dict:
        return {
            "address": self.address,
            "stake": str(self.stake),
            "gross_reward": str(self.gross_reward),
            "fee_percent": str(self.fee_percent),
            "net_reward": str(self.net_reward),
            "net_reward_minor_units": self.net_reward_minor_units,
        }


@dataclass
class EpochRewardsResult:
    """Calculator output for one operator epoch."""
    operator: str
    epoch: int
    total_rewards: Decimal
    delegate_rewards: List[DelegateReward] = field(default_factory=list)
    total_delegate_payments: Decimal = Decimal(0)
    operator_share: Decimal = Decimal(0)

    def to_dict(self) -> dict:
        return {
            "operator": self.operator,
            "epoch": self.epoch,
            "total_rewards": str(self.total_rewards),
            "delegate_rewards": [r.to_dict() for r in self.delegate_rewards],
            "total_delegate_payments": str(self.total_delegate_payments),
            "operator_share": str(self.operator_share),
        }


# ============================================================================
# PURE CALCULATION
# ============================================================================

def calculate_net_reward(gross_reward: Decimal, fee_percent: Decimal) -> Decimal:
    """Net payout after fee, truncated to 6 decimals."""
    keep = (Decimal(100) - fee_percent) / Decimal(100)
    return floor6(gross_reward * keep)


def calculate_delegate_reward(
    address: str,
    stake: Decimal,
    gross_reward: Decimal,
    fee_percent: Decimal,
) -> DelegateReward:
    """Build a DelegateReward from a gross share and fee."""
    net = calculate_net_reward(gross_reward, fee_percent)
    return DelegateReward(
        address=address,
        stake=stake,
        gross_reward=gross_reward,
        fee_percent=fee_percent,
        net_reward=net,
        net_reward_minor_units=to_minor_units(net),
    )


def split_epoch_rewards(
    operator: str,
    rewards: EpochRewards,
    default_fee: Decimal,
    custom_fees: Optional[Dict[str, Decimal]] = None,
) -> EpochRewardsResult:
    """
    Split gross epoch rewards across delegates.

    Args:
        operator: Operator address
        rewards: Oracle snapshot (gross total, delegate stakes)
        default_fee: Operator default fee percent
        custom_fees: Per-delegate fee overrides

    Returns:
        EpochRewardsResult
    """
    custom_fees = custom_fees or {}
    total = to_decimal(rewards.gross_total)

    denominator = to_decimal(rewards.staking_balance)
    if denominator <= 0:
        denominator = sum((to_decimal(d.stake) for d in rewards.delegates), Decimal(0))

    delegate_rewards: List[DelegateReward] = []
    total_payments = Decimal(0)

    for delegate in rewards.delegates:
        stake = to_decimal(delegate.stake)
        if total <= 0 or stake <= 0 or denominator <= 0:
            gross = Decimal(0)
        else:
            gross = total * stake / denominator

        fee = to_decimal(custom_fees.get(delegate.address, default_fee))
        reward = calculate_delegate_reward(delegate.address, stake, gross, fee)
        delegate_rewards.append(reward)
        total_payments += reward.net_reward

        logger.debug(f"{delegate.address}: {reward.net_reward} (fee: {fee}%)")

    return EpochRewardsResult(
        operator=operator,
        epoch=rewards.epoch,
        total_rewards=total,
        delegate_rewards=delegate_rewards,
        total_delegate_payments=total_payments,
        operator_share=total - total_payments,
    )


# ============================================================================
# REWARD CALCULATOR
# ============================================================================

class RewardCalculator:
    """
    Calculate delegate payouts for a completed epoch.

    Fetches a fresh snapshot from the oracle on every call; nothing is
    cached between operators or epochs.
    """

    def __init__(
        self,
        oracle: ChainOracle,
        settings_provider: SettingsProvider,
        fee_provider: FeeProvider,
    ):
        """
        Initialize RewardCalculator.

        Args:
            oracle: Chain oracle for the gross total and stake snapshot
            settings_provider: Source of the operator default fee
            fee_provider: Source of per-delegate fee overrides
        """
        self.oracle = oracle
        self.settings_provider = settings_provider
        self.fee_provider = fee_provider

    async def calculate_epoch_rewards(
        self,
        operator: str,
        epoch: int,
        settings: Optional[OperatorSettings] = None,
    ) -> EpochRewardsResult:
        """
        Calculate rewards for all delegates of an operator epoch.

        Args:
            operator: Operator address
            epoch: Epoch to calculate
            settings: Operator settings (looked up when omitted)

        Returns:
            EpochRewardsResult
        """
        logger.info(f"Calculating epoch rewards for {operator} epoch {epoch}")

        if settings is None:
            settings = await self.settings_provider.get_settings(operator)

        snapshot = await self.oracle.get_epoch_rewards(operator, epoch)

        custom_fees: Dict[str, Decimal] = {}
        for delegate in snapshot.delegates:
            custom_fees[delegate.address] = to_decimal(
                await self.fee_provider.get_fee(operator, delegate.address, settings.default_fee)
            )

        result = split_epoch_rewards(operator, snapshot, settings.default_fee, custom_fees)

        logger.info(
            f"Epoch {epoch}: total {result.total_rewards}, "
            f"delegates {result.total_delegate_payments}, "
            f"operator share {result.operator_share}"
        )
        return result

    @staticmethod
    def calculate_total_fees(rewards: List[DelegateReward]) -> Decimal:
        """Sum of fees withheld across delegates."""
        return sum((r.fee_amount for r in rewards), Decimal(0))

    def get_summary(self, result: EpochRewardsResult) -> Dict[str, object]:
        """Summary statistics for reporting."""
        count = len(result.delegate_rewards)
        average = result.total_delegate_payments / count if count else Decimal(0)
        return {
            "epoch": result.epoch,
            "total_rewards": str(floor6(result.total_rewards)),
            "total_delegate_payments": str(floor6(result.total_delegate_payments)),
            "total_fees": str(floor6(self.calculate_total_fees(result.delegate_rewards))),
            "operator_share": str(floor6(result.operator_share)),
            "delegate_count": count,
            "average_reward": str(floor6(average)),
        }
