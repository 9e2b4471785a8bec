"""
bakerpay/protocol/settings.py

Per-operator settings, custom fees and pool membership.

The engine reads these through three capabilities so that an embedding
application can back them with its own database:
- SettingsProvider: OperatorSettings per operator
- FeeProvider: per-delegate fee overrides
- PoolMemberProvider: bond pool membership

StaticConfigProvider implements all three from a dict or a JSON file:

    {
      "operators": {
        "tz1...": {
          "default_fee": "5",
          "mode": "simulation",
          "payment_retries": 3,
          "minutes_between_retries": 5,
          "pool_enabled": true,
          "custom_fees": {"tz1...": "2.5"},
          "pool_members": [
            {"address": "tz1...", "stake": "5000",
             "admin_charge_percent": "2", "is_manager": true}
          ]
        }
      }
    }
"""

import json
import logging
from pathlib import Path
from decimal import Decimal, InvalidOperation
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Union

from ..config import (
    MAX_BATCH_SIZE,
    INTER_BATCH_DELAY,
    QUANTUM,
    OperationMode,
    to_decimal,
)

logger = logging.getLogger("bakerpay.protocol.settings")


class SettingsError(Exception):
    """Raised for missing or invalid operator settings."""
    pass


# ============================================================================
# DATA CLASSES
# ============================================================================

@dataclass
class OperatorSettings:
    """Payout configuration for one operator."""

    operator: str
    default_fee: Decimal = Decimal(5)           # Percent in [0, 100]
    mode: OperationMode = OperationMode.SIMULATION

    # Retry policy
    payment_retries: int = 1
    minutes_between_retries: float = 1.0

    # Batching
    max_batch_size: int = MAX_BATCH_SIZE
    inter_batch_delay: float = INTER_BATCH_DELAY

    # Bond pool
    pool_enabled: bool = False

    # Amounts below this are flagged as dust
    min_payment_amount: Decimal = QUANTUM

    def __post_init__(self):
        self.default_fee = to_decimal(self.default_fee)
        self.min_payment_amount = to_decimal(self.min_payment_amount)
        if isinstance(self.mode, str):
            self.mode = OperationMode.from_string(self.mode)

        if not self.operator:
            raise SettingsError("operator is required")
        if self.default_fee < 0 or self.default_fee > 100:
            raise SettingsError(f"default_fee must be within [0, 100], got {self.default_fee}")
        if self.payment_retries < 1:
            raise SettingsError("payment_retries must be at least 1")
        if self.minutes_between_retries < 0:
            raise SettingsError("minutes_between_retries cannot be negative")
        if self.max_batch_size < 1:
            raise SettingsError("max_batch_size must be at least 1")

    @property
    def retry_delay_seconds(self) -> float:
        return self.minutes_between_retries * 60

    def to_dict(self) -> dict:
        return {
            "operator": self.operator,
            "default_fee": str(self.default_fee),
            "mode": self.mode.value,
            "payment_retries": self.payment_retries,
            "minutes_between_retries": self.minutes_between_retries,
            "max_batch_size": self.max_batch_size,
            "inter_batch_delay": self.inter_batch_delay,
            "pool_enabled": self.pool_enabled,
            "min_payment_amount": str(self.min_payment_amount),
        }

    @classmethod
    def from_dict(cls, operator: str, data: Dict[str, Any]) -> "OperatorSettings":
        known = {
            "default_fee", "mode", "payment_retries", "minutes_between_retries",
            "max_batch_size", "inter_batch_delay", "pool_enabled", "min_payment_amount",
        }
        kwargs = {k: v for k, v in data.items() if k in known}
        try:
            return cls(operator=operator, **kwargs)
        except (InvalidOperation, ValueError) as e:
            raise SettingsError(f"Invalid settings for {operator}: {e}")


@dataclass
class PoolMember:
    """A bond pool stakeholder."""
    address: str
    stake: Decimal
    admin_charge_percent: Decimal = Decimal(0)
    is_manager: bool = False

    def __post_init__(self):
        self.stake = to_decimal(self.stake)
        self.admin_charge_percent = to_decimal(self.admin_charge_percent)

    def to_dict(self) -> dict:
        return {
            "address": self.address,
            "stake": str(self.stake),
            "admin_charge_percent": str(self.admin_charge_percent),
            "is_manager": self.is_manager,
        }


# ============================================================================
# PROVIDER CAPABILITIES
# ============================================================================

class SettingsProvider(ABC):
    """Source of operator settings."""

    @abstractmethod
    async def get_settings(self, operator: str) -> OperatorSettings:
        """
        Get settings for an operator.

        Raises:
            SettingsError: If the operator is unknown
        """
        pass


class FeeProvider(ABC):
    """Source of per-delegate fee overrides."""

    @abstractmethod
    async def get_fee(self, operator: str, delegate: str, default: Decimal) -> Decimal:
        """Fee percent for a delegate, or default when none is set."""
        pass


class PoolMemberProvider(ABC):
    """Source of bond pool membership."""

    @abstractmethod
    async def get_members(self, operator: str) -> List[PoolMember]:
        """Pool members in their configured order."""
        pass


# ============================================================================
# STATIC PROVIDER
# ============================================================================

class StaticConfigProvider(SettingsProvider, FeeProvider, PoolMemberProvider):
    """In-memory provider for all three capabilities."""

    def __init__(
        self,
        settings: Optional[Dict[str, OperatorSettings]] = None,
        custom_fees: Optional[Dict[str, Dict[str, Decimal]]] = None,
        pool_members: Optional[Dict[str, List[PoolMember]]] = None,
    ):
        self._settings = dict(settings or {})
        self._fees = {op: dict(fees) for op, fees in (custom_fees or {}).items()}
        self._members = {op: list(members) for op, members in (pool_members or {}).items()}

    async def get_settings(self, operator: str) -> OperatorSettings:
        settings = self._settings.get(operator)
        if settings is None:
            raise SettingsError(f"No settings configured for operator {operator}")
        return settings

    async def get_fee(self, operator: str, delegate: str, default: Decimal) -> Decimal:
        fee = self._fees.get(operator, {}).get(delegate)
        if fee is None:
            return default
        return to_decimal(fee)

    async def get_members(self, operator: str) -> List[PoolMember]:
        return list(self._members.get(operator, []))

    def operators(self) -> List[str]:
        """Operators with settings, in insertion order."""
        return list(self._settings)

    def set_settings(self, settings: OperatorSettings) -> None:
        self._settings[settings.operator] = settings

    def set_fee(self, operator: str, delegate: str, fee: Union[Decimal, str, int]) -> None:
        self._fees.setdefault(operator, {})[delegate] = to_decimal(fee)

    def set_members(self, operator: str, members: List[PoolMember]) -> None:
        self._members[operator] = list(members)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StaticConfigProvider":
        """Build from the document layout shown in the module docstring."""
        operators = data.get("operators")
        if not isinstance(operators, dict):
            raise SettingsError("Config must contain an 'operators' mapping")

        settings: Dict[str, OperatorSettings] = {}
        fees: Dict[str, Dict[str, Decimal]] = {}
        members: Dict[str, List[PoolMember]] = {}

        for operator, entry in operators.items():
            if not isinstance(entry, dict):
                raise SettingsError(f"Settings for {operator} must be a mapping")
            settings[operator] = OperatorSettings.from_dict(operator, entry)
            try:
                fees[operator] = {
                    delegate: to_decimal(fee)
                    for delegate, fee in (entry.get("custom_fees") or {}).items()
                }
                members[operator] = [
                    PoolMember(
                        address=m["address"],
                        stake=m.get("stake", 0),
                        admin_charge_percent=m.get("admin_charge_percent", 0),
                        is_manager=bool(m.get("is_manager", False)),
                    )
                    for m in (entry.get("pool_members") or [])
                ]
            except (KeyError, InvalidOperation, TypeError) as e:
                raise SettingsError(f"Invalid fee or pool entry for {operator}: {e}")

        logger.info(f"Loaded settings for {len(settings)} operator(s)")
        return cls(settings=settings, custom_fees=fees, pool_members=members)

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> "StaticConfigProvider":
        """Load from a JSON file."""
        path = Path(path)
        try:
            with open(path, "r") as f:
                data = json.load(f)
        except OSError as e:
            raise SettingsError(f"Cannot read config file {path}: {e}")
        except ValueError as e:
            raise SettingsError(f"Config file {path} is not valid JSON: {e}")
        return cls.from_dict(data)
