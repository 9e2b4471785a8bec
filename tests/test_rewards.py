"""
bakerpay/tests/test_rewards.py

Tests for per-delegate reward calculation.
"""

from decimal import Decimal

import pytest

from bakerpay.protocol.rewards import (
    RewardCalculator,
    calculate_delegate_reward,
    calculate_net_reward,
    split_epoch_rewards,
)
from bakerpay.protocol.settings import OperatorSettings, StaticConfigProvider
from bakerpay.tzkt.client import ChainError, DelegateStake, EpochRewards


def _snapshot(total, stakes, staking_balance=0, epoch=500):
    return EpochRewards(
        epoch=epoch,
        gross_total=Decimal(total),
        delegates=[DelegateStake(address, Decimal(stake)) for address, stake in stakes],
        staking_balance=Decimal(staking_balance),
    )


class TestNetReward:
    """Tests for the fee and truncation arithmetic."""

    def test_fee_applied(self):
        """Test a 5% fee."""
        assert calculate_net_reward(Decimal(30), Decimal(5)) == Decimal("28.5")

    def test_truncation(self):
        """Test net is truncated, never rounded up."""
        assert calculate_net_reward(Decimal("0.3333339"), Decimal(0)) == Decimal("0.333333")

    def test_full_fee(self):
        """Test a 100% fee pays nothing."""
        assert calculate_net_reward(Decimal(10), Decimal(100)) == Decimal(0)

    def test_delegate_reward_minor_units(self, make_address):
        """Test minor units follow the truncated net."""
        reward = calculate_delegate_reward(make_address(1), Decimal(1), Decimal("1.2345678"), Decimal(0))
        assert reward.net_reward == Decimal("1.234567")
        assert reward.net_reward_minor_units == 1_234_567
        assert reward.fee_amount == Decimal("0.0000008")


class TestSplitEpochRewards:
    """Tests for split_epoch_rewards."""

    def test_proportional_split(self, operator, make_address):
        """Test shares follow stake over staking balance."""
        a, b = make_address(1), make_address(2)
        result = split_epoch_rewards(
            operator,
            _snapshot(100, [(a, 300), (b, 200)], staking_balance=1000),
            default_fee=Decimal(5),
            custom_fees={b: Decimal(0)},
        )

        rewards = {r.address: r for r in result.delegate_rewards}
        assert rewards[a].gross_reward == Decimal(30)
        assert rewards[a].net_reward == Decimal("28.5")
        assert rewards[b].net_reward == Decimal(20)
        assert result.total_delegate_payments == Decimal("48.5")
        assert result.operator_share == Decimal("51.5")

    def test_order_preserved(self, operator, make_address):
        """Test output follows snapshot order."""
        stakes = [(make_address(i), 1) for i in (5, 3, 9)]
        result = split_epoch_rewards(operator, _snapshot(3, stakes), Decimal(0))
        assert [r.address for r in result.delegate_rewards] == [a for a, _ in stakes]

    def test_conservation_with_truncation(self, operator, make_address):
        """Test payouts never exceed the total."""
        stakes = [(make_address(i), 1) for i in range(3)]
        result = split_epoch_rewards(operator, _snapshot(1, stakes), Decimal(0))

        assert all(r.net_reward == Decimal("0.333333") for r in result.delegate_rewards)
        assert result.total_delegate_payments == Decimal("0.999999")
        assert result.total_delegate_payments <= result.total_rewards
        assert result.operator_share == Decimal("0.000001")

    @pytest.mark.parametrize("fee", ["0", "5", "12.5", "100"])
    def test_net_never_exceeds_gross(self, operator, make_address, fee):
        """Test every fee leaves net at or below gross."""
        stakes = [(make_address(i), i + 1) for i in range(7)]
        result = split_epoch_rewards(operator, _snapshot("123.456789", stakes), Decimal(fee))
        for reward in result.delegate_rewards:
            assert Decimal(0) <= reward.net_reward <= reward.gross_reward

    def test_zero_total(self, operator, make_address):
        """Test a zero total gives zero payouts."""
        result = split_epoch_rewards(
            operator, _snapshot(0, [(make_address(1), 100)], 1000), Decimal(5)
        )
        assert result.delegate_rewards[0].net_reward == Decimal(0)
        assert result.total_delegate_payments == Decimal(0)

    def test_zero_stake(self, operator, make_address):
        """Test a zero-stake delegate gets nothing."""
        a, b = make_address(1), make_address(2)
        result = split_epoch_rewards(operator, _snapshot(10, [(a, 0), (b, 10)]), Decimal(0))
        assert result.delegate_rewards[0].net_reward == Decimal(0)
        assert result.delegate_rewards[1].net_reward == Decimal(10)

    def test_all_stakes_zero(self, operator, make_address):
        """Test a zero denominator does not divide by zero."""
        result = split_epoch_rewards(operator, _snapshot(10, [(make_address(1), 0)]), Decimal(0))
        assert result.total_delegate_payments == Decimal(0)

    def test_no_delegates(self, operator):
        """Test an empty snapshot keeps everything for the operator."""
        result = split_epoch_rewards(operator, _snapshot(10, []), Decimal(5))
        assert result.delegate_rewards == []
        assert result.operator_share == Decimal(10)


class TestRewardCalculator:
    """Tests for RewardCalculator."""

    @pytest.fixture
    def provider(self, operator):
        provider = StaticConfigProvider()
        provider.set_settings(OperatorSettings(operator=operator, default_fee=10))
        return provider

    @pytest.mark.asyncio
    async def test_calculate_with_custom_fee(self, oracle, provider, operator, make_address):
        """Test settings and custom fees are looked up."""
        a, b = make_address(1), make_address(2)
        oracle.set_rewards(500, 10, {a: 50, b: 50}, staking_balance=100)
        provider.set_fee(operator, b, "0")
        calculator = RewardCalculator(oracle, provider, provider)

        result = await calculator.calculate_epoch_rewards(operator, 500)

        rewards = {r.address: r for r in result.delegate_rewards}
        assert rewards[a].fee_percent == Decimal(10)
        assert rewards[a].net_reward == Decimal("4.5")
        assert rewards[b].net_reward == Decimal(5)

    @pytest.mark.asyncio
    async def test_oracle_failure_propagates(self, oracle, provider, operator):
        """Test a missing snapshot raises."""
        calculator = RewardCalculator(oracle, provider, provider)
        with pytest.raises(ChainError):
            await calculator.calculate_epoch_rewards(operator, 1)

    @pytest.mark.asyncio
    async def test_summary(self, oracle, provider, operator, make_address):
        """Test summary totals."""
        oracle.set_rewards(500, 10, {make_address(1): 50, make_address(2): 50}, staking_balance=100)
        calculator = RewardCalculator(oracle, provider, provider)
        result = await calculator.calculate_epoch_rewards(operator, 500)

        summary = calculator.get_summary(result)

        assert summary["delegate_count"] == 2
        assert summary["total_delegate_payments"] == "9.000000"
        assert summary["total_fees"] == "1.000000"
        assert summary["operator_share"] == "1.000000"
        assert summary["average_reward"] == "4.500000"
        assert RewardCalculator.calculate_total_fees(result.delegate_rewards) == Decimal(1)
