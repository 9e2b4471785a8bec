"""
bakerpay/protocol/storage.py

Persistence layer for cycle tracking and payment history.

Provides:
1. StorageBackend - byte-level key/value abstraction
2. MemoryBackend - volatile, for tests and simulation
3. FileBackend - JSON files on local disk, atomic per-key writes
4. PaymentStore - CycleRecord and PaymentRow persistence on a backend

Key layout:
- cycle:{operator}:{epoch}      -> one CycleRecord
- payments:{operator}:{epoch}   -> list of PaymentRow (delegate and pool)
- tracker:{operator}            -> last observed chain epoch

All payment rows of an epoch live under one key, so replacing or deleting
an attempt's rows is a single backend write.
"""

import os
import json
import time
import logging
import hashlib
from pathlib import Path
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple
from dataclasses import dataclass, field
from abc import ABC, abstractmethod

from ..config import CycleStatus, PaymentStatus

logger = logging.getLogger("bakerpay.protocol.storage")


# ============================================================================
# CONSTANTS
# ============================================================================

CYCLE_PREFIX = "cycle:"
PAYMENTS_PREFIX = "payments:"
TRACKER_PREFIX = "tracker:"

# Payment row kinds
KIND_DELEGATE = "delegate"
KIND_POOL = "pool"

# Default storage path
DEFAULT_STORAGE_DIR = Path.home() / ".bakerpay" / "storage"


class StorageError(Exception):
    """Raised when the backend refuses a write."""
    pass


# ============================================================================
# STORAGE BACKENDS
# ============================================================================

class StorageBackend(ABC):
    """Abstract base class for storage backends."""

    @abstractmethod
    async def get(self, key: str) -> Optional[bytes]:
        """Get a value by key."""
        pass

    @abstractmethod
    async def put(self, key: str, value: bytes) -> bool:
        """Store a value, replacing any previous one."""
        pass

    @abstractmethod
    async def delete(self, key: str) -> bool:
        """Delete a value."""
        pass

    @abstractmethod
    async def list_keys(self, prefix: str = "") -> List[str]:
        """List keys with optional prefix filter."""
        pass


class MemoryBackend(StorageBackend):
    """In-memory storage backend."""

    def __init__(self):
        self._data: Dict[str, bytes] = {}

    async def get(self, key: str) -> Optional[bytes]:
        return self._data.get(key)

    async def put(self, key: str, value: bytes) -> bool:
        self._data[key] = value
        return True

    async def delete(self, key: str) -> bool:
        return self._data.pop(key, None) is not None

    async def list_keys(self, prefix: str = "") -> List[str]:
        return sorted(k for k in self._data if k.startswith(prefix))


class FileBackend(StorageBackend):
    """
    Local file storage backend.

    Each key is one file named by the key's hash. An index file maps keys
    to their files. Writes go to a temp file first and are renamed into
    place, so a crash never leaves a half-written value.
    """

    def __init__(self, storage_dir: Optional[Path] = None):
        self.storage_dir = Path(storage_dir or DEFAULT_STORAGE_DIR)
        self.storage_dir.mkdir(parents=True, exist_ok=True)
        self._index_file = self.storage_dir / "index.json"
        self._index: Dict[str, dict] = self._load_index()

    def _load_index(self) -> Dict[str, dict]:
        """Load key index from disk."""
        if not self._index_file.exists():
            return {}
        try:
            with open(self._index_file, "r") as f:
                return json.load(f)
        except (OSError, ValueError) as e:
            logger.warning(f"Failed to load storage index, starting empty: {e}")
            return {}

    def _write_atomic(self, path: Path, data: bytes) -> None:
        tmp = path.with_suffix(path.suffix + ".tmp")
        with open(tmp, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)

    def _save_index(self) -> None:
        self._write_atomic(self._index_file, json.dumps(self._index).encode())

    def _key_to_path(self, key: str) -> Path:
        """Convert key to file path."""
        hash_name = hashlib.sha256(key.encode()).hexdigest()[:32]
        return self.storage_dir / f"{hash_name}.json"

    async def get(self, key: str) -> Optional[bytes]:
        if key not in self._index:
            return None
        path = self._key_to_path(key)
        try:
            return path.read_bytes()
        except FileNotFoundError:
            logger.warning(f"Index entry without file for {key}")
            return None

    async def put(self, key: str, value: bytes) -> bool:
        path = self._key_to_path(key)
        try:
            self._write_atomic(path, value)
            now = time.time()
            entry = self._index.get(key) or {"created_at": now}
            entry["updated_at"] = now
            self._index[key] = entry
            self._save_index()
            return True
        except OSError as e:
            logger.error(f"Failed to write {key}: {e}")
            return False

    async def delete(self, key: str) -> bool:
        if key not in self._index:
            return False
        path = self._key_to_path(key)
        try:
            if path.exists():
                path.unlink()
            del self._index[key]
            self._save_index()
            return True
        except OSError as e:
            logger.error(f"Failed to delete {key}: {e}")
            return False

    async def list_keys(self, prefix: str = "") -> List[str]:
        return sorted(k for k in self._index if k.startswith(prefix))


# ============================================================================
# RECORDS
# ============================================================================

@dataclass
class CycleRecord:
    """Tracking record for one (operator, epoch) pair."""
    operator: str
    epoch: int
    status: CycleStatus = CycleStatus.PENDING
    total: Decimal = Decimal(0)                 # Net amount distributed
    operation_refs: List[str] = field(default_factory=list)
    attempts: int = 0
    error_message: Optional[str] = None
    created_at: int = 0
    updated_at: int = 0

    def __post_init__(self):
        if not self.created_at:
            self.created_at = int(time.time())
        if not self.updated_at:
            self.updated_at = self.created_at

    def to_dict(self) -> dict:
        return {
            "operator": self.operator,
            "epoch": self.epoch,
            "status": self.status.value,
            "total": str(self.total),
            "operation_refs": list(self.operation_refs),
            "attempts": self.attempts,
            "error_message": self.error_message,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "CycleRecord":
        return cls(
            operator=data["operator"],
            epoch=int(data["epoch"]),
            status=CycleStatus(data["status"]),
            total=Decimal(data.get("total", "0")),
            operation_refs=list(data.get("operation_refs", [])),
            attempts=int(data.get("attempts", 0)),
            error_message=data.get("error_message"),
            created_at=int(data.get("created_at", 0)),
            updated_at=int(data.get("updated_at", 0)),
        )


@dataclass
class PaymentRow:
    """One per-address payment outcome."""
    operator: str
    epoch: int
    kind: str                                   # KIND_DELEGATE or KIND_POOL
    address: str
    amount: Decimal
    amount_minor_units: int
    status: PaymentStatus
    op_ref: Optional[str] = None
    chunk_index: int = 0
    attempt: int = 1
    created_at: int = 0

    def __post_init__(self):
        if not self.created_at:
            self.created_at = int(time.time())

    def to_dict(self) -> dict:
        return {
            "operator": self.operator,
            "epoch": self.epoch,
            "kind": self.kind,
            "address": self.address,
            "amount": str(self.amount),
            "amount_minor_units": self.amount_minor_units,
            "status": self.status.value,
            "op_ref": self.op_ref,
            "chunk_index": self.chunk_index,
            "attempt": self.attempt,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "PaymentRow":
        return cls(
            operator=data["operator"],
            epoch=int(data["epoch"]),
            kind=data["kind"],
            address=data["address"],
            amount=Decimal(data["amount"]),
            amount_minor_units=int(data["amount_minor_units"]),
            status=PaymentStatus(data["status"]),
            op_ref=data.get("op_ref"),
            chunk_index=int(data.get("chunk_index", 0)),
            attempt=int(data.get("attempt", 1)),
            created_at=int(data.get("created_at", 0)),
        )


# ============================================================================
# PAYMENT STORE
# ============================================================================

class PaymentStore:
    """
    Cycle and payment persistence on a StorageBackend.

    Usage:
        store = PaymentStore(FileBackend(Path("./data")))
        record, created = await store.create_record("tz1...", 500)
        await store.replace_payments("tz1...", 500, rows)
    """

    def __init__(self, backend: Optional[StorageBackend] = None):
        self.backend = backend or MemoryBackend()

    # ------------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------------

    @staticmethod
    def _encode(obj: Any) -> bytes:
        return json.dumps(obj, sort_keys=True).encode()

    @staticmethod
    def _decode(data: bytes) -> Any:
        return json.loads(data.decode())

    @staticmethod
    def _cycle_key(operator: str, epoch: int) -> str:
        return f"{CYCLE_PREFIX}{operator}:{epoch:08d}"

    @staticmethod
    def _payments_key(operator: str, epoch: int) -> str:
        return f"{PAYMENTS_PREFIX}{operator}:{epoch:08d}"

    async def _put(self, key: str, obj: Any) -> None:
        if not await self.backend.put(key, self._encode(obj)):
            raise StorageError(f"Backend rejected write for {key}")

    # ------------------------------------------------------------------------
    # Cycle records
    # ------------------------------------------------------------------------

    async def get_record(self, operator: str, epoch: int) -> Optional[CycleRecord]:
        """Get the record for (operator, epoch), or None."""
        data = await self.backend.get(self._cycle_key(operator, epoch))
        if data is None:
            return None
        return CycleRecord.from_dict(self._decode(data))

    async def save_record(self, record: CycleRecord) -> CycleRecord:
        """Persist a record, stamping updated_at."""
        record.updated_at = int(time.time())
        await self._put(self._cycle_key(record.operator, record.epoch), record.to_dict())
        return record

    async def create_record(
        self,
        operator: str,
        epoch: int,
        status: CycleStatus = CycleStatus.PENDING,
    ) -> Tuple[CycleRecord, bool]:
        """
        Create a record unless one already exists.

        Returns:
            (record, created) where created is False if the record existed
        """
        existing = await self.get_record(operator, epoch)
        if existing is not None:
            return existing, False
        record = CycleRecord(operator=operator, epoch=epoch, status=status)
        await self.save_record(record)
        return record, True

    async def list_records(
        self,
        operator: str,
        status: Optional[CycleStatus] = None,
    ) -> List[CycleRecord]:
        """List an operator's records oldest first, optionally by status."""
        keys = await self.backend.list_keys(f"{CYCLE_PREFIX}{operator}:")
        records = []
        for key in keys:
            data = await self.backend.get(key)
            if data is None:
                continue
            record = CycleRecord.from_dict(self._decode(data))
            if status is None or record.status == status:
                records.append(record)
        records.sort(key=lambda r: r.epoch)
        return records

    # ------------------------------------------------------------------------
    # Payment rows
    # ------------------------------------------------------------------------

    async def get_payments(
        self,
        operator: str,
        epoch: int,
        kind: Optional[str] = None,
    ) -> List[PaymentRow]:
        """Get payment rows for an epoch, optionally of one kind."""
        data = await self.backend.get(self._payments_key(operator, epoch))
        if data is None:
            return []
        rows = [PaymentRow.from_dict(r) for r in self._decode(data)]
        if kind is not None:
            rows = [r for r in rows if r.kind == kind]
        return rows

    async def replace_payments(
        self,
        operator: str,
        epoch: int,
        rows: List[PaymentRow],
        kind: Optional[str] = None,
    ) -> None:
        """
        Replace payment rows in one write.

        With kind set, only rows of that kind are replaced and rows of
        other kinds are kept. Without it, every row of the epoch is replaced.
        """
        existing = await self.get_payments(operator, epoch)
        kept = [r for r in existing if kind is not None and r.kind != kind]
        merged = kept + list(rows)
        key = self._payments_key(operator, epoch)
        if merged:
            await self._put(key, [r.to_dict() for r in merged])
        else:
            await self.backend.delete(key)

    async def delete_payments(
        self,
        operator: str,
        epoch: int,
        kind: Optional[str] = None,
    ) -> int:
        """
        Delete an attempt's payment rows in one write.

        Returns:
            Number of rows removed
        """
        existing = await self.get_payments(operator, epoch)
        removed = [r for r in existing if kind is None or r.kind == kind]
        if removed:
            await self.replace_payments(operator, epoch, [], kind=kind)
            logger.debug(f"Deleted {len(removed)} payment rows for {operator} epoch {epoch}")
        return len(removed)

    # ------------------------------------------------------------------------
    # Tracker state
    # ------------------------------------------------------------------------

    async def get_last_observed_epoch(self, operator: str) -> Optional[int]:
        """Last chain epoch observed by the tracker for an operator."""
        data = await self.backend.get(f"{TRACKER_PREFIX}{operator}")
        if data is None:
            return None
        return int(self._decode(data)["epoch"])

    async def set_last_observed_epoch(self, operator: str, epoch: int) -> None:
        await self._put(
            f"{TRACKER_PREFIX}{operator}",
            {"epoch": epoch, "observed_at": int(time.time())},
        )
