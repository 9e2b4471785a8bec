"""
bakerpay/cli.py

Command line runner for one scheduler tick.

Run with: bakerpay --config operators.json run
          bakerpay --config operators.json status --operator tz1...
          bakerpay --config operators.json retrigger tz1... 500

Live payouts need a signer, which only an embedding application can
supply, so the CLI runs operators in simulation or off mode.
"""

import asyncio
import dataclasses
import json
import logging
import os
import sys
from pathlib import Path
from typing import List, Optional

import click

from .config import ChainConfig, OperationMode
from .tzkt.client import ChainError, TzKTOracle
from .protocol.cycles import CycleTracker
from .protocol.distribution import DistributionOrchestrator, DistributionOutcome
from .protocol.settings import SettingsError, StaticConfigProvider
from .protocol.storage import DEFAULT_STORAGE_DIR, FileBackend, PaymentStore

logger = logging.getLogger("bakerpay.cli")

LOG_FORMAT = "%(asctime)s [%(name)s] %(levelname)s: %(message)s"


def mode_option():
    """Click option decorator for --mode override."""
    def decorator(f):
        return click.option(
            "--mode",
            type=click.Choice(["off", "simulation", "on"], case_sensitive=False),
            default=None,
            help="Override every operator's mode: off (track only), simulation, on (live)",
            callback=lambda ctx, param, value: (
                OperationMode.from_string(value) if value else None
            ),
        )(f)
    return decorator


@dataclasses.dataclass
class CliContext:
    provider: StaticConfigProvider
    data_dir: Path

    def store(self) -> PaymentStore:
        return PaymentStore(FileBackend(self.data_dir))


@click.group()
@click.option(
    "--config", "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    envvar="BAKERPAY_CONFIG",
    required=True,
    help="Operator settings JSON file (env BAKERPAY_CONFIG)",
)
@click.option(
    "--data-dir",
    type=click.Path(file_okay=False, path_type=Path),
    envvar="BAKERPAY_DATA_DIR",
    default=str(DEFAULT_STORAGE_DIR),
    show_default=True,
    help="Directory for cycle and payment records (env BAKERPAY_DATA_DIR)",
)
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default=lambda: os.environ.get("BAKERPAY_LOG_LEVEL", "INFO"),
    help="Logging verbosity (env BAKERPAY_LOG_LEVEL)",
)
@click.pass_context
def cli(ctx: click.Context, config_path: Path, data_dir: Path, log_level: str):
    """Delegation reward payouts."""
    logging.basicConfig(level=getattr(logging, log_level.upper()), format=LOG_FORMAT)
    try:
        provider = StaticConfigProvider.from_file(config_path)
    except SettingsError as e:
        raise click.ClickException(str(e))
    ctx.obj = CliContext(provider=provider, data_dir=data_dir)


def _select_operators(provider: StaticConfigProvider, operators: tuple) -> List[str]:
    known = provider.operators()
    if not operators:
        return known
    unknown = [op for op in operators if op not in known]
    if unknown:
        raise click.BadParameter(f"unknown operator(s): {', '.join(unknown)}", param_hint="--operator")
    return list(operators)


def _print_outcome(outcome: DistributionOutcome) -> None:
    status = outcome.status.value if outcome.status else "-"
    click.echo(
        f"{outcome.operator} epoch {outcome.epoch}: {outcome.phase.value} ({status}), "
        f"{outcome.delegate_count} delegates, {outcome.delegate_total} paid, "
        f"attempts {outcome.attempts}"
    )
    for error in outcome.errors:
        click.echo(f"  error: {error}", err=True)


async def _run(
    provider: StaticConfigProvider,
    store: PaymentStore,
    operators: List[str],
) -> List[object]:
    config = ChainConfig.from_env()
    async with TzKTOracle(config) as oracle:
        orchestrator = DistributionOrchestrator.create(
            oracle, store, provider, maturity_delay=config.maturity_delay
        )
        return await asyncio.gather(
            *(orchestrator.process(op) for op in operators),
            return_exceptions=True,
        )


@cli.command()
@click.option("--operator", "operators", multiple=True, help="Operator address (repeatable, default all)")
@mode_option()
@click.pass_obj
def run(obj: CliContext, operators: tuple, mode: Optional[OperationMode]):
    """Track cycles and distribute every ready epoch."""
    selected = _select_operators(obj.provider, operators)

    for operator in selected:
        settings = asyncio.run(obj.provider.get_settings(operator))
        if mode is not None:
            settings = dataclasses.replace(settings, mode=mode)
            obj.provider.set_settings(settings)
        if settings.mode == OperationMode.ON:
            raise click.UsageError(
                f"{operator} is in live mode; live payouts need a signer from an embedding application"
            )

    results = asyncio.run(_run(obj.provider, obj.store(), selected))

    failed = False
    for operator, result in zip(selected, results):
        if isinstance(result, (ChainError, SettingsError)):
            click.echo(f"{operator}: {result}", err=True)
            failed = True
            continue
        if isinstance(result, BaseException):
            raise result
        if not result:
            click.echo(f"{operator}: nothing to distribute")
        for outcome in result:
            _print_outcome(outcome)
            failed = failed or not outcome.success

    if failed:
        sys.exit(1)


@cli.command()
@click.option("--operator", "operators", multiple=True, help="Operator address (repeatable, default all)")
@click.option("--json", "as_json", is_flag=True, help="Print machine-readable JSON")
@click.pass_obj
def status(obj: CliContext, operators: tuple, as_json: bool):
    """Show tracked epochs per operator."""
    selected = _select_operators(obj.provider, operators)
    store = obj.store()

    async def collect():
        report = []
        for operator in selected:
            records = await store.list_records(operator)
            report.append({
                "operator": operator,
                "last_observed_epoch": await store.get_last_observed_epoch(operator),
                "records": [r.to_dict() for r in records],
            })
        return report

    report = asyncio.run(collect())

    if as_json:
        click.echo(json.dumps(report, indent=2))
        return

    for entry in report:
        click.echo(f"{entry['operator']} (last observed epoch {entry['last_observed_epoch']})")
        if not entry["records"]:
            click.echo("  no records")
        for record in entry["records"]:
            line = (
                f"  {record['epoch']:>6}  {record['status']:<10} total {record['total']}"
                f"  attempts {record['attempts']}"
            )
            if record["error_message"]:
                line += f"  error: {record['error_message']}"
            click.echo(line)


@cli.command()
@click.argument("operator")
@click.argument("epoch", type=int)
@click.pass_obj
def retrigger(obj: CliContext, operator: str, epoch: int):
    """Move an errored epoch back to delivered."""
    _select_operators(obj.provider, (operator,))
    store = obj.store()

    async def reopen():
        async with TzKTOracle(ChainConfig.from_env()) as oracle:
            tracker = CycleTracker(oracle, store)
            return await tracker.retrigger(operator, epoch)

    try:
        record = asyncio.run(reopen())
    except ValueError as e:
        raise click.ClickException(str(e))
    click.echo(f"{operator} epoch {record.epoch} is {record.status.value}; it will be paid on the next run")


def main():
    cli(prog_name="bakerpay")


if __name__ == "__main__":
    main()
