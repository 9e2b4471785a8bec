"""
bakerpay/tests/test_cli.py

Tests for the command line runner.
"""

import asyncio
import json
from unittest.mock import patch

import pytest
from click.testing import CliRunner

from bakerpay.cli import cli
from bakerpay.config import CycleStatus
from bakerpay.protocol.storage import FileBackend, PaymentStore
from bakerpay.tzkt.client import ChainError


@pytest.fixture
def workspace(tmp_path, operator):
    config_path = tmp_path / "operators.json"
    config_path.write_text(json.dumps({
        "operators": {
            operator: {
                "mode": "simulation",
                "minutes_between_retries": 0,
                "inter_batch_delay": 0,
            }
        }
    }))
    return config_path, tmp_path / "data"


@pytest.fixture
def patched_oracle(oracle):
    with patch("bakerpay.cli.TzKTOracle") as oracle_cls:
        oracle_cls.return_value.__aenter__.return_value = oracle
        yield oracle


def _invoke(workspace, *args):
    config_path, data_dir = workspace
    runner = CliRunner()
    return runner.invoke(
        cli,
        ["--config", str(config_path), "--data-dir", str(data_dir), "--log-level", "ERROR", *args],
    )


class TestRun:
    """Tests for the run command."""

    def test_first_tick(self, workspace, patched_oracle, operator):
        """Test the first run only starts tracking."""
        result = _invoke(workspace, "run")
        assert result.exit_code == 0, result.output
        assert f"{operator}: nothing to distribute" in result.output

    def test_distributes_ready_epoch(self, workspace, patched_oracle, operator, make_address):
        """Test an epoch delivered on the next tick is simulated."""
        patched_oracle.set_rewards(5, 10, {make_address(1): 50, make_address(2): 50}, staking_balance=100)
        assert _invoke(workspace, "run").exit_code == 0

        patched_oracle.current_epoch = 11
        result = _invoke(workspace, "run")

        assert result.exit_code == 0, result.output
        assert f"{operator} epoch 5: done (simulated)" in result.output
        assert patched_oracle.submitted == []

    def test_chain_error_exit_code(self, workspace, patched_oracle, operator):
        """Test an unreachable chain fails the run."""
        patched_oracle.epoch_error = ChainError("indexer down")

        result = _invoke(workspace, "run")

        assert result.exit_code == 1
        assert "indexer down" in result.output

    def test_live_mode_refused(self, workspace, patched_oracle):
        """Test the CLI will not run live payouts."""
        result = _invoke(workspace, "run", "--mode", "on")
        assert result.exit_code == 2
        assert "signer" in result.output

    def test_unknown_operator(self, workspace, patched_oracle, make_address):
        """Test selecting an unconfigured operator."""
        result = _invoke(workspace, "run", "--operator", make_address(5))
        assert result.exit_code == 2
        assert "unknown operator" in result.output


class TestStatus:
    """Tests for the status command."""

    def test_json_report(self, workspace, patched_oracle, operator):
        """Test the JSON report lists tracked records."""
        _invoke(workspace, "run")

        result = _invoke(workspace, "status", "--json")

        assert result.exit_code == 0, result.output
        report = json.loads(result.output)
        assert report[0]["operator"] == operator
        assert report[0]["last_observed_epoch"] == 10
        assert [r["status"] for r in report[0]["records"]] == ["pending"]

    def test_text_report_empty(self, workspace, operator):
        """Test the text report before any run."""
        result = _invoke(workspace, "status")
        assert result.exit_code == 0, result.output
        assert "no records" in result.output


class TestRetrigger:
    """Tests for the retrigger command."""

    def test_retrigger_errored(self, workspace, patched_oracle, operator):
        """Test an errored epoch is reopened."""
        store = PaymentStore(FileBackend(workspace[1]))

        async def seed():
            record, _ = await store.create_record(operator, 5, CycleStatus.ERRORED)
            return record

        asyncio.run(seed())

        result = _invoke(workspace, "retrigger", operator, "5")

        assert result.exit_code == 0, result.output
        assert "is delivered" in result.output

    def test_retrigger_missing(self, workspace, patched_oracle, operator):
        """Test retriggering an unknown epoch fails."""
        result = _invoke(workspace, "retrigger", operator, "5")
        assert result.exit_code == 1
        assert "No record" in result.output


class TestConfigLoading:
    """Tests for the group options."""

    def test_missing_config(self, tmp_path):
        """Test an unreadable config file."""
        result = CliRunner().invoke(cli, ["--config", str(tmp_path / "nope.json"), "status"])
        assert result.exit_code == 1
        assert "Cannot read config file" in result.output
