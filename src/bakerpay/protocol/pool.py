"""
bakerpay/protocol/pool.py

Bond pool distribution of the operator's retained share.

When the operator runs a bond pool, whatever is left after delegate
payouts is re-split among pool members by stake:

    pool_rewards          = total_epoch_rewards - total_delegate_rewards
    stake_percent         = member.stake / sum(stakes) * 100
    reward_before_charge  = pool_rewards * stake_percent / 100
    admin_charge          = reward_before_charge * admin_charge_percent / 100
    net_reward            = floor6(reward_before_charge - admin_charge)

All admin charges are summed and paid to the pool manager as one extra
transfer, on top of the manager's own member payout.

Example (pool_rewards = 20, stakes 5000/3000/2000, 2% charge each):
    net payouts      9.8 / 5.88 / 3.92
    admin fees       0.4 (to manager)
    manager total    10.2 when the first member manages the pool
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import List, Optional

from ..config import floor6, to_decimal, to_minor_units
from ..blockchain.tx_builder import BatchTransfer, build_transfers
from .settings import OperatorSettings, PoolMember, PoolMemberProvider, SettingsProvider

logger = logging.getLogger("bakerpay.protocol.pool")


# ============================================================================
# DATA STRUCTURES
# ============================================================================

@dataclass(frozen=True)
class PoolMemberReward:
    """Payout for one pool member."""
    address: str
    stake: Decimal
    stake_percent: Decimal
    reward_before_charge: Decimal
    admin_charge_percent: Decimal
    admin_charge: Decimal
    net_reward: Decimal
    net_reward_minor_units: int
    is_manager: bool = False

    def to_dict(self) -> dict:
        return {
            "address": self.address,
            "stake": str(self.stake),
            "stake_percent": str(self.stake_percent),
            "reward_before_charge": str(self.reward_before_charge),
            "admin_charge_percent": str(self.admin_charge_percent),
            "admin_charge": str(self.admin_charge),
            "net_reward": str(self.net_reward),
            "net_reward_minor_units": self.net_reward_minor_units,
            "is_manager": self.is_manager,
        }


@dataclass
class PoolResult:
    """Pool distribution for one epoch."""
    epoch: int
    pool_rewards: Decimal = Decimal(0)
    total_pool_stake: Decimal = Decimal(0)
    member_rewards: List[PoolMemberReward] = field(default_factory=list)
    manager_address: Optional[str] = None
    total_admin_fees: Decimal = Decimal(0)
    manager_total_reward: Decimal = Decimal(0)
    total_distributed: Decimal = Decimal(0)

    @classmethod
    def empty(cls, epoch: int) -> "PoolResult":
        return cls(epoch=epoch)

    @property
    def is_empty(self) -> bool:
        return not self.member_rewards

    def to_dict(self) -> dict:
        return {
            "epoch": self.epoch,
            "pool_rewards": str(self.pool_rewards),
            "total_pool_stake": str(self.total_pool_stake),
            "member_rewards": [r.to_dict() for r in self.member_rewards],
            "manager_address": self.manager_address,
            "total_admin_fees": str(self.total_admin_fees),
            "manager_total_reward": str(self.manager_total_reward),
            "total_distributed": str(self.total_distributed),
        }


# ============================================================================
# CALCULATION
# ============================================================================

def calculate_member_reward(
    member: PoolMember,
    total_stake: Decimal,
    pool_rewards: Decimal,
) -> PoolMemberReward:
    """Split one member's stake share into admin charge and net payout."""
    stake = to_decimal(member.stake)
    stake_percent = stake / total_stake * 100
    before_charge = pool_rewards * stake_percent / 100
    charge_percent = to_decimal(member.admin_charge_percent)
    admin_charge = before_charge * charge_percent / 100
    net = floor6(before_charge - admin_charge)
    return PoolMemberReward(
        address=member.address,
        stake=stake,
        stake_percent=stake_percent,
        reward_before_charge=before_charge,
        admin_charge_percent=charge_percent,
        admin_charge=admin_charge,
        net_reward=net,
        net_reward_minor_units=to_minor_units(net),
        is_manager=member.is_manager,
    )


def select_manager(members: List[PoolMember]) -> Optional[PoolMember]:
    """First manager in member order; more than one is logged."""
    managers = [m for m in members if m.is_manager]
    if not managers:
        return None
    if len(managers) > 1:
        logger.warning(
            f"Multiple pool managers configured ({len(managers)}), using {managers[0].address}"
        )
    return managers[0]


def compute_pool_distribution(
    epoch: int,
    pool_rewards: Decimal,
    members: List[PoolMember],
) -> PoolResult:
    """
    Distribute pool rewards among members.

    Returns an empty result when there is nothing to distribute or no
    one to distribute it to.
    """
    if pool_rewards <= 0:
        logger.info(f"No rewards available for bond pool in epoch {epoch}")
        return PoolResult.empty(epoch)
    if not members:
        logger.info(f"No bond pool members for epoch {epoch}")
        return PoolResult.empty(epoch)

    total_stake = sum((to_decimal(m.stake) for m in members), Decimal(0))
    if total_stake <= 0:
        logger.warning(f"Bond pool has no positive stake in epoch {epoch}")
        return PoolResult.empty(epoch)

    member_rewards = [calculate_member_reward(m, total_stake, pool_rewards) for m in members]
    for reward in member_rewards:
        logger.debug(
            f"{reward.address}: stake {reward.stake} ({reward.stake_percent:.2f}%), "
            f"reward {reward.net_reward}, admin fee {reward.admin_charge}"
        )

    total_admin_fees = floor6(sum((r.admin_charge for r in member_rewards), Decimal(0)))
    manager = select_manager(members)
    manager_address = manager.address if manager else None

    manager_total = Decimal(0)
    if manager_address:
        own = next((r.net_reward for r in member_rewards if r.address == manager_address), Decimal(0))
        manager_total = own + total_admin_fees
    elif total_admin_fees > 0:
        logger.warning(f"Admin fees of {total_admin_fees} but no pool manager configured")

    total_distributed = sum((r.net_reward for r in member_rewards), Decimal(0)) + total_admin_fees

    logger.info(
        f"Pool epoch {epoch}: distributed {total_distributed} of {pool_rewards}, "
        f"admin fees {total_admin_fees}, manager total {manager_total}"
    )

    return PoolResult(
        epoch=epoch,
        pool_rewards=pool_rewards,
        total_pool_stake=total_stake,
        member_rewards=member_rewards,
        manager_address=manager_address,
        total_admin_fees=total_admin_fees,
        manager_total_reward=manager_total,
        total_distributed=total_distributed,
    )


# ============================================================================
# POOL DISTRIBUTOR
# ============================================================================

class PoolDistributor:
    """Re-splits the operator share among bond pool members."""

    def __init__(
        self,
        settings_provider: SettingsProvider,
        member_provider: PoolMemberProvider,
    ):
        self.settings_provider = settings_provider
        self.member_provider = member_provider

    async def distribute_pool(
        self,
        operator: str,
        epoch: int,
        total_epoch_rewards: Decimal,
        total_delegate_rewards: Decimal,
        settings: Optional[OperatorSettings] = None,
    ) -> PoolResult:
        """
        Compute the pool distribution for an operator epoch.

        Args:
            operator: Operator address
            epoch: Epoch being distributed
            total_epoch_rewards: Gross total for the epoch
            total_delegate_rewards: Sum of delegate net payouts
            settings: Operator settings (looked up when omitted)

        Returns:
            PoolResult, empty when the pool is disabled
        """
        if settings is None:
            settings = await self.settings_provider.get_settings(operator)
        if not settings.pool_enabled:
            logger.debug(f"Bond pool disabled for {operator}")
            return PoolResult.empty(epoch)

        pool_rewards = to_decimal(total_epoch_rewards) - to_decimal(total_delegate_rewards)
        members = await self.member_provider.get_members(operator)
        return compute_pool_distribution(epoch, pool_rewards, members)

    @staticmethod
    def build_transfers(result: PoolResult) -> List[BatchTransfer]:
        """Member transfers in member order, then one admin fee transfer to the manager."""
        transfers = build_transfers(result.member_rewards)
        if result.manager_address and result.total_admin_fees > 0:
            admin_minor = to_minor_units(result.total_admin_fees)
            if admin_minor > 0:
                transfers.append(BatchTransfer(result.manager_address, admin_minor))
        return transfers
