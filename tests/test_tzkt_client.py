"""
bakerpay/tests/test_tzkt_client.py

Tests for the TzKT chain oracle.
"""

import json
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock, patch

import aiohttp
import pytest

from bakerpay.blockchain.tx_builder import BatchTransfer
from bakerpay.config import ChainConfig, Network
from bakerpay.tzkt.client import (
    BatchSigner,
    ChainError,
    SPLIT_PAGE_SIZE,
    TzKTOracle,
)

OP_HASH = "oo" + "7" * 49


@pytest.fixture
def config():
    return ChainConfig(
        network=Network.CUSTOM,
        tzkt_urls=["http://indexer-a.example", "http://indexer-b.example/"],
        rpc_urls=[],
        retry_attempts=3,
        retry_delay=0,
        confirmation_timeout=0,
        poll_interval=0,
    )


@pytest.fixture
def oracle(config):
    oracle = TzKTOracle(config)
    oracle._request = AsyncMock()
    return oracle


class TestTransport:
    """Tests for retry and failover."""

    @pytest.mark.asyncio
    async def test_failover_to_next_endpoint(self, oracle):
        """Test a failed endpoint is followed by the next one."""
        oracle._request.side_effect = [aiohttp.ClientError("down"), {"cycle": 7}]

        assert await oracle.get_current_epoch() == 7

        urls = [call.args[0] for call in oracle._request.call_args_list]
        assert urls == ["http://indexer-a.example/v1/head", "http://indexer-b.example/v1/head"]

    @pytest.mark.asyncio
    async def test_all_attempts_fail(self, oracle):
        """Test ChainError after exhausting retries."""
        oracle._request.side_effect = ChainError("HTTP 500")

        with pytest.raises(ChainError, match="failed after 3 attempts"):
            await oracle.get_current_epoch()
        assert oracle._request.call_count == 3

    @pytest.mark.asyncio
    async def test_current_epoch_from_rpc(self, config):
        """Test node RPC is preferred when configured."""
        config.rpc_urls = ["http://node.example"]
        oracle = TzKTOracle(config)
        oracle._request = AsyncMock(return_value={"level_info": {"cycle": 812}})

        assert await oracle.get_current_epoch() == 812
        assert oracle._request.call_args.args[0] == "http://node.example/chains/main/blocks/head/metadata"

    @pytest.mark.asyncio
    async def test_malformed_head(self, oracle):
        """Test a head without cycle is a ChainError."""
        oracle._request.return_value = {"level": 1}
        with pytest.raises(ChainError, match="missing cycle"):
            await oracle.get_current_epoch()

    @pytest.mark.asyncio
    async def test_invalid_json_body(self, config):
        """Test a non-JSON response body surfaces as ChainError."""
        response = MagicMock(status=200)
        response.json = AsyncMock(side_effect=json.JSONDecodeError("Expecting value", "<html>", 0))
        session = MagicMock()
        session.get.return_value.__aenter__.return_value = response
        oracle = TzKTOracle(config, session=session)

        with pytest.raises(ChainError, match="Invalid JSON"):
            await oracle._request("http://indexer-a.example/v1/head")

    @pytest.mark.asyncio
    async def test_close_without_session(self, config):
        """Test closing an unused oracle is a no-op."""
        async with TzKTOracle(config) as oracle:
            assert oracle._session is None


class TestEpochRewards:
    """Tests for the reward split lookup."""

    @pytest.mark.asyncio
    async def test_gross_and_stakes(self, oracle, operator, make_address):
        """Test gross total sums reward fields minus losses."""
        oracle._request.return_value = {
            "stakingBalance": 10_000_000_000,
            "ownBlockRewards": 20_000_000,
            "endorsementRewards": 5_000_000,
            "ownBlockFees": 500_000,
            "doubleBakingLostRewards": 1_500_000,
            "delegators": [
                {"address": make_address(1), "balance": 1_000_000_000},
                {"address": make_address(2), "delegatedBalance": 2_000_000, "stakedBalance": 500_000},
            ],
        }

        rewards = await oracle.get_epoch_rewards(operator, 500)

        assert rewards.epoch == 500
        assert rewards.gross_total == Decimal("24")
        assert rewards.staking_balance == Decimal("10000")
        assert [d.address for d in rewards.delegates] == [make_address(1), make_address(2)]
        assert rewards.delegates[0].stake == Decimal("1000")
        assert rewards.delegates[1].stake == Decimal("2.5")

    @pytest.mark.asyncio
    async def test_losses_floor_at_zero(self, oracle, operator):
        """Test losses larger than rewards give a zero total."""
        oracle._request.return_value = {
            "ownBlockRewards": 1,
            "doubleEndorsingLostRewards": 100,
            "delegators": [],
        }
        rewards = await oracle.get_epoch_rewards(operator, 1)
        assert rewards.gross_total == Decimal(0)

    @pytest.mark.asyncio
    async def test_pagination(self, oracle, operator, make_address):
        """Test delegator pages are followed until a short page."""
        full = [{"address": make_address(i), "balance": 1} for i in range(SPLIT_PAGE_SIZE)]
        oracle._request.side_effect = [
            {"ownBlockRewards": 1_000_000, "delegators": full},
            {"ownBlockRewards": 1_000_000, "delegators": [{"address": make_address(500), "balance": 1}]},
        ]

        rewards = await oracle.get_epoch_rewards(operator, 3)

        assert len(rewards.delegates) == SPLIT_PAGE_SIZE + 1
        offsets = [call.args[1]["offset"] for call in oracle._request.call_args_list]
        assert offsets == [0, SPLIT_PAGE_SIZE]

    @pytest.mark.asyncio
    async def test_missing_split(self, oracle, operator):
        """Test a 404 split is a ChainError."""
        oracle._request.return_value = None
        with pytest.raises(ChainError, match="No reward split"):
            await oracle.get_epoch_rewards(operator, 3)

    @pytest.mark.asyncio
    async def test_malformed_delegator(self, oracle, operator):
        """Test a delegator without address is rejected."""
        oracle._request.return_value = {"delegators": [{"balance": 5}]}
        with pytest.raises(ChainError, match="Malformed delegator"):
            await oracle.get_epoch_rewards(operator, 3)

    @pytest.mark.asyncio
    async def test_non_numeric_reward_field(self, oracle, operator):
        """Test a non-numeric reward amount is a ChainError."""
        oracle._request.return_value = {"ownBlockRewards": "n/a", "delegators": []}
        with pytest.raises(ChainError, match="Malformed reward split"):
            await oracle.get_epoch_rewards(operator, 3)

    @pytest.mark.asyncio
    async def test_non_numeric_balance(self, oracle, operator, make_address):
        """Test a non-numeric delegator balance is a ChainError."""
        oracle._request.return_value = {
            "delegators": [{"address": make_address(1), "balance": "lots"}],
        }
        with pytest.raises(ChainError, match="Malformed balance"):
            await oracle.get_epoch_rewards(operator, 3)

    @pytest.mark.asyncio
    async def test_repeated_page_stops(self, oracle, operator, make_address):
        """Test an indexer ignoring offset cannot loop forever."""
        full = [{"address": make_address(i), "balance": 1} for i in range(SPLIT_PAGE_SIZE)]
        oracle._request.return_value = {"ownBlockRewards": 1, "delegators": full}

        with pytest.raises(ChainError, match="same delegator page"):
            await oracle.get_epoch_rewards(operator, 3)
        assert oracle._request.call_count == 2

    @pytest.mark.asyncio
    async def test_page_cap(self, oracle, operator, make_address):
        """Test pagination stops at the page limit."""
        def next_page(url, params):
            start = params["offset"]
            return {
                "delegators": [
                    {"address": make_address(start + i), "balance": 1} for i in range(SPLIT_PAGE_SIZE)
                ],
            }

        oracle._request.side_effect = next_page
        with patch("bakerpay.tzkt.client.MAX_SPLIT_PAGES", 3):
            with pytest.raises(ChainError, match="exceeds 3 pages"):
                await oracle.get_epoch_rewards(operator, 3)
        assert oracle._request.call_count == 3


class TestSubmission:
    """Tests for batch submission and confirmation."""

    @pytest.fixture
    def signer(self):
        signer = AsyncMock(spec=BatchSigner)
        signer.inject_batch.return_value = OP_HASH
        return signer

    @pytest.mark.asyncio
    async def test_confirmed(self, oracle, signer, operator, make_address):
        """Test an applied operation gives a confirmed receipt."""
        oracle._request.return_value = [
            {"status": "applied", "gasUsed": 1000, "level": 42},
            {"status": "applied", "gasUsed": 500, "level": 42},
        ]
        transfers = [BatchTransfer(make_address(1), 10)]

        receipt = await oracle.submit_batch(signer, operator, transfers)

        signer.inject_batch.assert_awaited_once_with(operator, transfers)
        assert receipt.confirmed
        assert receipt.op_ref == OP_HASH
        assert receipt.gas_used == 1500
        assert receipt.level == 42

    @pytest.mark.asyncio
    async def test_failed_operation(self, oracle, signer, operator, make_address):
        """Test a backtracked content makes the receipt unconfirmed."""
        oracle._request.return_value = [
            {"status": "applied", "level": 42},
            {"status": "backtracked", "level": 42},
        ]
        receipt = await oracle.submit_batch(signer, operator, [BatchTransfer(make_address(1), 10)])
        assert not receipt.confirmed

    @pytest.mark.asyncio
    async def test_confirmation_timeout(self, oracle):
        """Test an operation never seen times out unconfirmed."""
        oracle._request.return_value = []
        receipt = await oracle.wait_for_confirmation(OP_HASH)
        assert not receipt.confirmed
        assert receipt.op_ref == OP_HASH

    @pytest.mark.asyncio
    async def test_signer_without_injection(self, oracle, operator):
        """Test an unusable signer is rejected."""
        with pytest.raises(ChainError, match="Signer"):
            await oracle.submit_batch(object(), operator, [])

    @pytest.mark.asyncio
    async def test_invalid_operation_hash(self, oracle, signer, operator, make_address):
        """Test a malformed hash from the signer is rejected before polling."""
        signer.inject_batch.return_value = "oopHash"

        with pytest.raises(ChainError, match="invalid operation hash"):
            await oracle.submit_batch(signer, operator, [BatchTransfer(make_address(1), 10)])
        oracle._request.assert_not_called()

    @pytest.mark.asyncio
    async def test_malformed_gas_usage(self, oracle):
        """Test a non-numeric gas figure is a ChainError."""
        oracle._request.return_value = [{"status": "applied", "gasUsed": "many", "level": 42}]
        with pytest.raises(ChainError, match="Malformed gas usage"):
            await oracle.wait_for_confirmation(OP_HASH)

    @pytest.mark.asyncio
    async def test_estimate_fee(self, oracle, config, make_address):
        """Test the flat configured fee."""
        assert await oracle.estimate_fee(BatchTransfer(make_address(1), 1)) == config.transaction_fee
