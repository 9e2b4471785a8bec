"""
bakerpay/tests/conftest.py

Shared fixtures: deterministic addresses and an in-memory chain oracle.
"""

from decimal import Decimal
from typing import Callable, Dict, List, Optional

import pytest

from bakerpay.tzkt.client import ChainError, ChainOracle, DelegateStake, EpochRewards, SubmissionReceipt

BASE58 = "123456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz"


def _address(n: int, prefix: str = "tz1") -> str:
    digits = ""
    while True:
        n, rem = divmod(n, 58)
        digits = BASE58[rem] + digits
        if n == 0:
            break
    return prefix + digits.rjust(33, "1")


class FakeOracle(ChainOracle):
    """
    In-memory oracle.

    submit_outcomes is consumed one entry per submitted batch: True for a
    confirmed batch, False for an unconfirmed one, or an exception to raise.
    When exhausted, batches are confirmed.
    """

    def __init__(self, current_epoch: int = 10):
        self.current_epoch = current_epoch
        self.rewards: Dict[int, EpochRewards] = {}
        self.submit_outcomes: List[object] = []
        self.submitted: List[list] = []
        self.epoch_error: Optional[Exception] = None

    def set_rewards(self, epoch: int, gross_total, stakes: Dict[str, object], staking_balance=0):
        self.rewards[epoch] = EpochRewards(
            epoch=epoch,
            gross_total=Decimal(str(gross_total)),
            delegates=[DelegateStake(a, Decimal(str(s))) for a, s in stakes.items()],
            staking_balance=Decimal(str(staking_balance)),
        )

    async def get_current_epoch(self) -> int:
        if self.epoch_error:
            raise self.epoch_error
        return self.current_epoch

    async def get_epoch_rewards(self, operator: str, epoch: int) -> EpochRewards:
        if epoch not in self.rewards:
            raise ChainError(f"No reward split for {operator} cycle {epoch}")
        return self.rewards[epoch]

    async def estimate_fee(self, transfer) -> int:
        return 1800

    async def submit_batch(self, signer, source, transfers) -> SubmissionReceipt:
        self.submitted.append(list(transfers))
        op_ref = f"oop{len(self.submitted)}"
        outcome = self.submit_outcomes.pop(0) if self.submit_outcomes else True
        if isinstance(outcome, Exception):
            raise outcome
        return SubmissionReceipt(op_ref=op_ref, confirmed=bool(outcome), gas_used=1000)


@pytest.fixture
def make_address() -> Callable[..., str]:
    return _address


@pytest.fixture
def operator() -> str:
    return _address(999_999)


@pytest.fixture
def oracle() -> FakeOracle:
    return FakeOracle()
