"""
Operation record storage.

Every backend maps an operation id to its current record. The only write
primitive used after creation is ``compare_and_swap``, so backends must make
``get`` and ``compare_and_swap`` linearizable per record.
"""

import logging
import threading
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, List, Optional, Tuple, TYPE_CHECKING

from optracker.errors import AlreadyExists, NotFound
from optracker.models.operation import (
    OperationFilter,
    OperationRecord,
    OperationState,
    TERMINAL_STATES,
)

if TYPE_CHECKING:
    from optracker.config import Settings

logger = logging.getLogger(__name__)

# Keyset cursor: (created_at, id) of the last record already returned
Cursor = Tuple[datetime, str]


class BaseOperationStore(ABC):
    """Unified interface for operation storage backends."""

    @abstractmethod
    def put(self, record: OperationRecord) -> None:
        """Insert a new record. Raises AlreadyExists if the id is taken."""

    @abstractmethod
    def get(self, operation_id: str) -> OperationRecord:
        """Return the stored record. Raises NotFound."""

    @abstractmethod
    def compare_and_swap(
        self,
        operation_id: str,
        expected_state: OperationState,
        new_record: OperationRecord,
        expected_version: Optional[int] = None,
    ) -> bool:
        """Replace the record only if its stored state (and version) still match.

        Raises NotFound for unknown ids.
        """

    @abstractmethod
    def delete(self, operation_id: str) -> None:
        """Remove a record. Raises NotFound."""

    @abstractmethod
    def list(
        self,
        filter: Optional[OperationFilter] = None,
        after: Optional[Cursor] = None,
        limit: Optional[int] = None,
    ) -> List[OperationRecord]:
        """Records matching ``filter`` ordered by (created_at, id)."""

    @abstractmethod
    def purge_terminal(self, older_than: datetime) -> int:
        """Delete terminal records last updated before ``older_than``."""

    def close(self) -> None:
        """Release backend resources."""


class InMemoryOperationStore(BaseOperationStore):
    """Dict-backed store guarded by a single lock.

    Records are copied on the way in and out so that nobody holds a reference
    to the stored object.
    """

    def __init__(self):
        self._records: Dict[str, OperationRecord] = {}
        self._lock = threading.Lock()

    def put(self, record: OperationRecord) -> None:
        with self._lock:
            if record.id in self._records:
                raise AlreadyExists(f"Operation {record.id} already exists", record.id)
            self._records[record.id] = record.model_copy(deep=True)

    def get(self, operation_id: str) -> OperationRecord:
        with self._lock:
            record = self._records.get(operation_id)
            if record is None:
                raise NotFound(f"Operation {operation_id} not found", operation_id)
            return record.model_copy(deep=True)

    def compare_and_swap(self, operation_id, expected_state, new_record, expected_version=None) -> bool:
        if new_record.id != operation_id:
            raise ValueError("compare_and_swap cannot change the operation id")
        with self._lock:
            current = self._records.get(operation_id)
            if current is None:
                raise NotFound(f"Operation {operation_id} not found", operation_id)
            if current.state != expected_state:
                return False
            if expected_version is not None and current.version != expected_version:
                return False
            self._records[operation_id] = new_record.model_copy(deep=True)
            return True

    def delete(self, operation_id: str) -> None:
        with self._lock:
            if self._records.pop(operation_id, None) is None:
                raise NotFound(f"Operation {operation_id} not found", operation_id)

    def list(self, filter=None, after=None, limit=None) -> List[OperationRecord]:
        with self._lock:
            records = sorted(self._records.values(), key=OperationRecord.sort_key)
            result = []
            for record in records:
                if after is not None and record.sort_key() <= after:
                    continue
                if filter is not None and not filter.matches(record):
                    continue
                result.append(record.model_copy(deep=True))
                if limit is not None and len(result) >= limit:
                    break
            return result

    def purge_terminal(self, older_than: datetime) -> int:
        with self._lock:
            expired = [
                record.id for record in self._records.values()
                if record.state in TERMINAL_STATES and record.updated_at < older_than
            ]
            for operation_id in expired:
                del self._records[operation_id]
        if expired:
            logger.info("Purged %d expired operations", len(expired))
        return len(expired)


def create_operation_store(settings: Optional["Settings"] = None) -> BaseOperationStore:
    """Instantiate the configured store backend.

    Args:
        settings: Application settings. Defaults to the in-memory backend.

    Returns:
        Configured BaseOperationStore implementation.
    """
    backend = "memory" if settings is None else settings.store_backend

    if backend == "memory":
        return InMemoryOperationStore()

    if backend == "sqlite":
        from optracker.services.database import SqliteOperationStore
        return SqliteOperationStore(settings.database_path)

    raise ValueError(f"Unsupported store backend: {backend!r}")
