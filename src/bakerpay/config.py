"""
bakerpay/config.py

Configuration constants and data classes for bakerpay.

Chain settings come from (highest priority first):
1. Programmatic configuration (ChainConfig(...))
2. Environment variables: BAKERPAY_NETWORK, BAKERPAY_TZKT_URL,
   BAKERPAY_RPC_URL, BAKERPAY_MATURITY_DELAY
3. The NETWORK_CONFIG defaults below
"""

import os
import re
import logging
from decimal import Decimal, ROUND_DOWN, ROUND_FLOOR
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Union

logger = logging.getLogger("bakerpay.config")


# ============================================================================
# UNITS & PRECISION
# ============================================================================

MUTEZ_PER_TEZ = 1_000_000           # 1 tez = 1M mutez (minor units)
DECIMAL_PLACES = 6                  # Payout precision in major units
QUANTUM = Decimal("0.000001")       # Smallest representable major-unit step
EPSILON = QUANTUM                   # One minor unit of rounding tolerance

# ============================================================================
# PROTOCOL CONSTANTS
# ============================================================================

CYCLES_UNTIL_DELIVERED = 5          # Maturity delay between accrual and spendability
MAX_BATCH_SIZE = 100                # Transfers per batched operation
INTER_BATCH_DELAY = 5.0             # Seconds between sequential chunks
DEFAULT_TRANSACTION_FEE = 1800      # Estimated fee per transfer (mutez)
DEFAULT_CONFIRMATION_TIMEOUT = 600  # Seconds to wait for first confirmation
DEFAULT_POLL_INTERVAL = 5.0         # Seconds between confirmation polls

# RPC retry configuration
RPC_RETRY_ATTEMPTS = 3
RPC_RETRY_DELAY = 1.0               # Seconds, doubled per attempt
RPC_TIMEOUT = 30.0                  # Seconds per request

# Address validation (base58 payload after the 3-char prefix)
ADDRESS_PATTERNS: Dict[str, re.Pattern] = {
    "tz1": re.compile(r"^tz1[1-9A-HJ-NP-Za-km-z]{33}$"),
    "tz2": re.compile(r"^tz2[1-9A-HJ-NP-Za-km-z]{33}$"),
    "tz3": re.compile(r"^tz3[1-9A-HJ-NP-Za-km-z]{33}$"),
    "KT1": re.compile(r"^KT1[1-9A-HJ-NP-Za-km-z]{33}$"),
}

OPERATION_HASH_PATTERN = re.compile(r"^o[1-9A-HJ-NP-Za-km-z]{45,59}$")


class Network(Enum):
    """Known networks."""
    MAINNET = "mainnet"
    GHOSTNET = "ghostnet"
    CUSTOM = "custom"


# Per-network endpoints. The first URL in each list is the primary.
NETWORK_CONFIG: Dict[Network, Dict[str, List[str]]] = {
    Network.MAINNET: {
        "rpc_urls": [
            "https://mainnet.api.tez.ie",
            "https://rpc.tzbeta.net",
            "https://mainnet.smartpy.io",
        ],
        "tzkt_urls": ["https://api.tzkt.io"],
    },
    Network.GHOSTNET: {
        "rpc_urls": [
            "https://rpc.ghostnet.teztnets.xyz",
            "https://ghostnet.ecadinfra.com",
            "https://ghostnet.smartpy.io",
        ],
        "tzkt_urls": ["https://api.ghostnet.tzkt.io"],
    },
}


# ============================================================================
# STATUS ENUMS
# ============================================================================

class CycleStatus(Enum):
    """Lifecycle of a CycleRecord."""
    PENDING = "pending"        # Epoch crossed the maturity delay
    DELIVERED = "delivered"    # Rewards spendable, ready to distribute
    PAID = "paid"              # Live distribution confirmed
    SIMULATED = "simulated"    # Simulation run finished
    ERRORED = "errored"        # Validation failed or retries exhausted

    @property
    def is_terminal(self) -> bool:
        return self in (CycleStatus.PAID, CycleStatus.SIMULATED, CycleStatus.ERRORED)


class PaymentStatus(Enum):
    """Outcome of a single per-address payment row."""
    APPLIED = "applied"
    SIMULATED = "simulated"
    FAILED = "failed"
    NOT_AVAILABLE = "not available"


class OperationMode(Enum):
    """
    Operator payout mode.

    OFF: track cycles but never distribute
    SIMULATION: run the full pipeline without any on-chain call
    ON: submit real batched transfers
    """
    OFF = "off"
    SIMULATION = "simulation"
    ON = "on"

    @classmethod
    def from_string(cls, value: str) -> "OperationMode":
        """Convert string to OperationMode."""
        normalized = value.lower().strip()
        for mode in cls:
            if mode.value == normalized:
                return mode
        raise ValueError(
            f"Invalid operation mode: {value}. Valid options: off, simulation, on"
        )


# ============================================================================
# HELPERS
# ============================================================================

def to_decimal(value: Union[int, float, str, Decimal]) -> Decimal:
    """Coerce a number to Decimal without going through binary floats."""
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        return Decimal(repr(value))
    return Decimal(value)


def floor6(value: Decimal) -> Decimal:
    """Truncate a major-unit amount to 6 decimal places (never rounds up)."""
    return value.quantize(QUANTUM, rounding=ROUND_DOWN)


def to_minor_units(amount: Decimal) -> int:
    """Convert a major-unit amount to integer minor units, flooring any remainder."""
    return int((amount * MUTEZ_PER_TEZ).to_integral_value(rounding=ROUND_FLOOR))


def from_minor_units(amount: int) -> Decimal:
    """Convert integer minor units to a major-unit Decimal."""
    return Decimal(amount) / MUTEZ_PER_TEZ


def decimal_places(value: Decimal) -> int:
    """Number of significant fractional digits in a Decimal."""
    normalized = value.normalize()
    exponent = normalized.as_tuple().exponent
    if not isinstance(exponent, int) or exponent >= 0:
        return 0
    return -exponent


def is_valid_address(address: str) -> bool:
    """Validate implicit (tz1/tz2/tz3) and originated (KT1) address formats."""
    if not isinstance(address, str):
        return False
    return any(pattern.match(address) for pattern in ADDRESS_PATTERNS.values())


def is_valid_operation_hash(op_hash: str) -> bool:
    """Validate an operation hash."""
    return isinstance(op_hash, str) and bool(OPERATION_HASH_PATTERN.match(op_hash))


# ============================================================================
# CHAIN CONFIG
# ============================================================================

@dataclass
class ChainConfig:
    """
    Connection settings for the chain oracle.

    Usage:
        config = ChainConfig.from_env()
        config = ChainConfig(network=Network.MAINNET)
    """

    network: Network = Network.GHOSTNET
    rpc_urls: List[str] = field(default_factory=list)
    tzkt_urls: List[str] = field(default_factory=list)

    # Request behaviour (enforced by the oracle itself)
    timeout: float = RPC_TIMEOUT
    retry_attempts: int = RPC_RETRY_ATTEMPTS
    retry_delay: float = RPC_RETRY_DELAY

    # Submission
    confirmation_timeout: float = DEFAULT_CONFIRMATION_TIMEOUT
    poll_interval: float = DEFAULT_POLL_INTERVAL
    transaction_fee: int = DEFAULT_TRANSACTION_FEE

    # Protocol
    maturity_delay: int = CYCLES_UNTIL_DELIVERED

    def __post_init__(self):
        defaults = NETWORK_CONFIG.get(self.network)
        if not self.rpc_urls and defaults:
            self.rpc_urls = list(defaults["rpc_urls"])
        if not self.tzkt_urls and defaults:
            self.tzkt_urls = list(defaults["tzkt_urls"])
        if not self.tzkt_urls:
            raise ValueError(f"No indexer endpoints configured for network {self.network.value}")
        if self.retry_attempts < 1:
            raise ValueError("retry_attempts must be at least 1")
        if self.maturity_delay < 0:
            raise ValueError("maturity_delay cannot be negative")

    @classmethod
    def from_env(cls) -> "ChainConfig":
        """Build config from BAKERPAY_* environment variables."""
        network_name = os.environ.get("BAKERPAY_NETWORK", Network.GHOSTNET.value)
        try:
            network = Network(network_name.lower().strip())
        except ValueError:
            raise ValueError(f"Unknown network: {network_name}")

        kwargs = {"network": network}

        rpc = os.environ.get("BAKERPAY_RPC_URL")
        if rpc:
            kwargs["rpc_urls"] = [u.strip() for u in rpc.split(",") if u.strip()]

        tzkt = os.environ.get("BAKERPAY_TZKT_URL")
        if tzkt:
            kwargs["tzkt_urls"] = [u.strip() for u in tzkt.split(",") if u.strip()]

        delay = os.environ.get("BAKERPAY_MATURITY_DELAY")
        if delay:
            kwargs["maturity_delay"] = int(delay)

        config = cls(**kwargs)
        logger.info(
            f"Chain config: network={config.network.value}, "
            f"indexers={len(config.tzkt_urls)}, rpc={len(config.rpc_urls)}"
        )
        return config
