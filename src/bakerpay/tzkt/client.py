"""
bakerpay/tzkt/client.py

Chain oracle capability and its TzKT/RPC HTTP implementation.

Provides methods for:
- Current epoch (cycle) lookup
- Per-epoch gross rewards and delegate stake snapshot
- Fee estimation
- Batched transfer submission and first-confirmation wait

Endpoints are passed in explicitly. Failover walks the endpoint list
inside a single call; no endpoint index is shared between calls.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence, TYPE_CHECKING

import aiohttp

from ..config import ChainConfig, MUTEZ_PER_TEZ, from_minor_units, is_valid_operation_hash

if TYPE_CHECKING:
    from ..blockchain.tx_builder import BatchTransfer

logger = logging.getLogger("bakerpay.tzkt.client")


# ============================================================================
# CONFIGURATION
# ============================================================================

# Delegators returned per page by the rewards split endpoint
SPLIT_PAGE_SIZE = 100
MAX_SPLIT_PAGES = 1000              # 100k delegators

# Split fields contributing to the gross reward total (mutez)
REWARD_FIELDS = (
    "ownBlockRewards",
    "extraBlockRewards",
    "endorsementRewards",
    "ownBlockFees",
    "extraBlockFees",
    "revelationRewards",
)

# Split fields deducted from the gross reward total (mutez)
LOSS_FIELDS = (
    "doubleBakingLostRewards",
    "doubleEndorsingLostRewards",
)


# ============================================================================
# DATA STRUCTURES
# ============================================================================

class ChainError(Exception):
    """Raised when the chain oracle is unreachable or returns malformed data."""
    pass


@dataclass
class DelegateStake:
    """A delegate's stake at the epoch snapshot (major units)."""
    address: str
    stake: Decimal


@dataclass
class EpochRewards:
    """Gross rewards and delegate snapshot for one operator epoch."""
    epoch: int
    gross_total: Decimal                  # Major units
    delegates: List[DelegateStake] = field(default_factory=list)
    staking_balance: Decimal = Decimal(0)  # Operator's total staking balance

    def to_dict(self) -> dict:
        return {
            "epoch": self.epoch,
            "gross_total": str(self.gross_total),
            "delegates": [
                {"address": d.address, "stake": str(d.stake)} for d in self.delegates
            ],
            "staking_balance": str(self.staking_balance),
        }


@dataclass
class SubmissionReceipt:
    """Result of a submitted batched operation."""
    op_ref: str
    confirmed: bool
    gas_used: int = 0
    level: Optional[int] = None


class BatchSigner(ABC):
    """
    Signing capability supplied by the embedding application.

    Key custody and decryption happen outside bakerpay; the signer only
    needs to forge, sign and inject one batched operation.
    """

    @abstractmethod
    async def inject_batch(
        self,
        source: str,
        transfers: Sequence["BatchTransfer"],
    ) -> str:
        """
        Sign and inject a batched transfer operation.

        Args:
            source: Paying account address
            transfers: Transfers to include in a single operation

        Returns:
            Operation hash
        """
        pass


# ============================================================================
# CHAIN ORACLE
# ============================================================================

class ChainOracle(ABC):
    """
    Abstract chain oracle.

    Subclass this to implement different indexer/RPC backends.
    """

    @abstractmethod
    async def get_current_epoch(self) -> int:
        """Return the current epoch number."""
        pass

    @abstractmethod
    async def get_epoch_rewards(self, operator: str, epoch: int) -> EpochRewards:
        """
        Return gross rewards and the delegate stake snapshot.

        Args:
            operator: Operator (baker) address
            epoch: Completed epoch number

        Returns:
            EpochRewards for the epoch
        """
        pass

    @abstractmethod
    async def estimate_fee(self, transfer: "BatchTransfer") -> int:
        """Estimate the fee of one transfer in minor units."""
        pass

    @abstractmethod
    async def submit_batch(
        self,
        signer: Any,
        source: str,
        transfers: Sequence["BatchTransfer"],
    ) -> SubmissionReceipt:
        """
        Submit a batched operation and wait for its first confirmation.

        Args:
            signer: Opaque signer capability
            source: Paying account address
            transfers: Transfers to include

        Returns:
            SubmissionReceipt
        """
        pass


# ============================================================================
# TZKT ORACLE
# ============================================================================

class TzKTOracle(ChainOracle):
    """
    Chain oracle backed by a TzKT indexer and node RPC endpoints.

    Example:
        config = ChainConfig.from_env()

        async with TzKTOracle(config) as oracle:
            cycle = await oracle.get_current_epoch()
            rewards = await oracle.get_epoch_rewards("tz1...", cycle - 5)
    """

    def __init__(
        self,
        config: ChainConfig,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        """
        Initialize the oracle.

        Args:
            config: Chain configuration with endpoint lists
            session: Optional shared aiohttp session (owned by caller)
        """
        self.config = config
        self._session = session
        self._owns_session = session is None

    async def __aenter__(self) -> "TzKTOracle":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def close(self) -> None:
        """Close the HTTP session if we created it."""
        if self._session is not None and self._owns_session:
            await self._session.close()
            self._session = None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.config.timeout),
                headers={"Content-Type": "application/json"},
            )
        return self._session

    # ------------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------------

    async def _request(self, url: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """Perform a single GET against one endpoint and decode JSON."""
        session = self._get_session()
        async with session.get(url, params=params) as response:
            if response.status == 404:
                return None
            if response.status != 200:
                raise ChainError(f"HTTP {response.status} from {url}")
            try:
                return await response.json()
            except ValueError as e:
                raise ChainError(f"Invalid JSON from {url}: {e}")

    async def _get_json(
        self,
        base_urls: List[str],
        path: str,
        params: Optional[Dict[str, Any]] = None,
    ) -> Any:
        """
        GET a path with retry and endpoint failover.

        Attempts rotate through base_urls starting from the first one,
        with exponential backoff between attempts.

        Raises:
            ChainError: If every attempt fails
        """
        if not base_urls:
            raise ChainError(f"No endpoints configured for {path}")

        last_error: Optional[Exception] = None
        attempts = self.config.retry_attempts

        for attempt in range(attempts):
            base = base_urls[attempt % len(base_urls)].rstrip("/")
            url = f"{base}{path}"
            try:
                data = await self._request(url, params)
                logger.debug(f"GET {url} ok")
                return data
            except (aiohttp.ClientError, asyncio.TimeoutError, ChainError) as e:
                last_error = e
                logger.warning(f"GET {url} attempt {attempt + 1}/{attempts} failed: {e}")
                if attempt < attempts - 1:
                    await asyncio.sleep(self.config.retry_delay * (2 ** attempt))

        raise ChainError(f"GET {path} failed after {attempts} attempts: {last_error}")

    # ------------------------------------------------------------------------
    # Oracle API
    # ------------------------------------------------------------------------

    async def get_current_epoch(self) -> int:
        """Current cycle from node RPC, or from the indexer head if no RPC is set."""
        if self.config.rpc_urls:
            data = await self._get_json(
                self.config.rpc_urls, "/chains/main/blocks/head/metadata"
            )
            try:
                return int(data["level_info"]["cycle"])
            except (KeyError, TypeError, ValueError):
                raise ChainError("Malformed block metadata: missing level_info.cycle")

        data = await self._get_json(self.config.tzkt_urls, "/v1/head")
        try:
            return int(data["cycle"])
        except (KeyError, TypeError, ValueError):
            raise ChainError("Malformed indexer head: missing cycle")

    async def get_epoch_rewards(self, operator: str, epoch: int) -> EpochRewards:
        """Fetch the rewards split for an operator cycle, following delegator pages."""
        logger.info(f"Fetching reward split for {operator} cycle {epoch}")

        path = f"/v1/rewards/split/{operator}/{epoch}"
        offset = 0
        first_page: Optional[dict] = None
        delegates: List[DelegateStake] = []
        previous_addresses: Optional[List[str]] = None

        for page_number in range(MAX_SPLIT_PAGES + 1):
            if page_number == MAX_SPLIT_PAGES:
                raise ChainError(
                    f"Reward split for {operator} cycle {epoch} exceeds {MAX_SPLIT_PAGES} pages"
                )
            data = await self._get_json(
                self.config.tzkt_urls,
                path,
                {"offset": offset, "limit": SPLIT_PAGE_SIZE},
            )
            if data is None:
                raise ChainError(f"No reward split for {operator} cycle {epoch}")
            if not isinstance(data, dict):
                raise ChainError(f"Malformed reward split for {operator} cycle {epoch}")
            if first_page is None:
                first_page = data

            page = data.get("delegators") or []
            if not isinstance(page, list):
                raise ChainError("Malformed reward split: delegators is not a list")

            parsed = [self._parse_delegator(entry) for entry in page]
            addresses = [d.address for d in parsed]
            if page and addresses == previous_addresses:
                raise ChainError(
                    f"Indexer returned the same delegator page twice for {operator} cycle {epoch}"
                )
            previous_addresses = addresses
            delegates.extend(parsed)

            if len(page) < SPLIT_PAGE_SIZE:
                break
            offset += SPLIT_PAGE_SIZE

        try:
            gross_mutez = sum(int(first_page.get(name) or 0) for name in REWARD_FIELDS)
            gross_mutez -= sum(int(first_page.get(name) or 0) for name in LOSS_FIELDS)
            staking_mutez = int(first_page.get("stakingBalance") or 0)
        except (TypeError, ValueError) as e:
            raise ChainError(f"Malformed reward split for {operator} cycle {epoch}: {e}")

        rewards = EpochRewards(
            epoch=epoch,
            gross_total=from_minor_units(max(gross_mutez, 0)),
            delegates=delegates,
            staking_balance=from_minor_units(staking_mutez),
        )

        logger.info(
            f"Cycle {epoch}: gross {rewards.gross_total} tez, "
            f"{len(delegates)} delegates, staking balance {rewards.staking_balance} tez"
        )
        return rewards

    @staticmethod
    def _parse_delegator(entry: Any) -> DelegateStake:
        if not isinstance(entry, dict) or not entry.get("address"):
            raise ChainError(f"Malformed delegator entry: {entry!r}")
        try:
            if "delegatedBalance" in entry:
                balance = int(entry.get("delegatedBalance") or 0) + int(entry.get("stakedBalance") or 0)
            else:
                balance = int(entry.get("balance") or 0)
        except (TypeError, ValueError):
            raise ChainError(f"Malformed balance for delegator {entry['address']}: {entry!r}")
        return DelegateStake(address=entry["address"], stake=from_minor_units(balance))

    async def estimate_fee(self, transfer: "BatchTransfer") -> int:
        """Flat per-transfer fee estimate from configuration."""
        return self.config.transaction_fee

    async def submit_batch(
        self,
        signer: Any,
        source: str,
        transfers: Sequence["BatchTransfer"],
    ) -> SubmissionReceipt:
        """Inject through the signer, then poll the indexer for confirmation."""
        if not hasattr(signer, "inject_batch"):
            raise ChainError("Signer does not support batch injection")

        total = sum(t.amount_minor_units for t in transfers)
        logger.info(
            f"Injecting batch of {len(transfers)} transfers from {source}, "
            f"total {Decimal(total) / MUTEZ_PER_TEZ} tez"
        )

        op_hash = await signer.inject_batch(source, transfers)
        if not is_valid_operation_hash(op_hash):
            raise ChainError(f"Signer returned an invalid operation hash: {op_hash!r}")
        logger.info(f"Batch injected: {op_hash}")

        return await self.wait_for_confirmation(op_hash)

    async def wait_for_confirmation(self, op_hash: str) -> SubmissionReceipt:
        """
        Wait until the indexer reports the operation included.

        Returns an unconfirmed receipt on timeout or if any content failed.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.config.confirmation_timeout

        while True:
            ops = await self._get_json(self.config.tzkt_urls, f"/v1/operations/{op_hash}")
            if ops:
                if not isinstance(ops, list) or not all(isinstance(op, dict) for op in ops):
                    raise ChainError(f"Malformed operation lookup for {op_hash}")
                applied = all(op.get("status") == "applied" for op in ops)
                try:
                    gas_used = sum(int(op.get("gasUsed") or 0) for op in ops)
                except (TypeError, ValueError):
                    raise ChainError(f"Malformed gas usage for {op_hash}")
                level = ops[0].get("level")
                if applied:
                    logger.info(f"Operation {op_hash} confirmed at level {level}")
                else:
                    statuses = sorted({str(op.get("status")) for op in ops})
                    logger.error(f"Operation {op_hash} not applied: {statuses}")
                return SubmissionReceipt(
                    op_ref=op_hash, confirmed=applied, gas_used=gas_used, level=level
                )

            if loop.time() >= deadline:
                logger.warning(f"Timed out waiting for {op_hash} confirmation")
                return SubmissionReceipt(op_ref=op_hash, confirmed=False)

            await asyncio.sleep(self.config.poll_interval)
