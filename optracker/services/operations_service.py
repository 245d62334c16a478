"""
Operations service: the query surface over the lifecycle manager.

Handles are returned by ``create`` before the work finishes and are valid
input to ``get``/``cancel``/``delete`` immediately.
"""

import base64
import binascii
import json
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple, TYPE_CHECKING

from optracker.errors import FailedPrecondition, InvalidArgument
from optracker.models.operation import OperationFilter, OperationRecord
from optracker.services.lifecycle import OperationLifecycleManager
from optracker.services.store import BaseOperationStore, Cursor

if TYPE_CHECKING:
    from optracker.services.runner import OperationRunner

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 500


def encode_page_token(record: OperationRecord) -> str:
    raw = json.dumps({"c": record.created_at.isoformat(), "i": record.id}).encode()
    return base64.urlsafe_b64encode(raw).decode().rstrip("=")


def decode_page_token(token: str) -> Cursor:
    try:
        padded = token + "=" * (-len(token) % 4)
        data = json.loads(base64.urlsafe_b64decode(padded.encode()))
        return datetime.fromisoformat(data["c"]), str(data["i"])
    except (binascii.Error, ValueError, KeyError, TypeError):
        raise InvalidArgument(f"Invalid page token: {token!r}") from None


class OperationsService:
    """Create, Get, List, Cancel and Delete for long-running operations."""

    def __init__(self, manager: OperationLifecycleManager, store: Optional[BaseOperationStore] = None,
                 runner: Optional["OperationRunner"] = None):
        self.manager = manager
        self.store = store if store is not None else manager.store
        self.runner = runner

    async def create(self, kind: str, metadata: Any = None,
                     params: Optional[Dict[str, Any]] = None) -> OperationRecord:
        """Start an operation of ``kind`` and hand its worker to the runner."""
        if self.runner is not None and not self.runner.has_handler(kind):
            raise InvalidArgument(f"No worker registered for operation kind {kind!r}")

        record = self.manager.start(initial_metadata=metadata, kind=kind)
        if self.runner is not None:
            await self.runner.submit(record, params or {})
        return record

    def get(self, operation_id: str) -> OperationRecord:
        return self.store.get(operation_id)

    def list(self, filter: Optional[OperationFilter] = None, page_size: Optional[int] = None,
             page_token: Optional[str] = None) -> Tuple[List[OperationRecord], Optional[str]]:
        """Return one page of operations and the token for the next page.

        Pages follow the store's (created_at, id) order. Tokens name a
        position, not a record, so a record deleted between pages is skipped
        without disturbing the rest of the listing.
        """
        if page_size is None:
            page_size = DEFAULT_PAGE_SIZE
        if page_size <= 0:
            raise InvalidArgument("page_size must be positive")
        page_size = min(page_size, MAX_PAGE_SIZE)

        after = decode_page_token(page_token) if page_token else None
        # One extra row tells us whether another page exists
        records = self.store.list(filter, after=after, limit=page_size + 1)
        if len(records) > page_size:
            records = records[:page_size]
            return records, encode_page_token(records[-1])
        return records, None

    def cancel(self, operation_id: str) -> OperationRecord:
        return self.manager.cancel(operation_id)

    def delete(self, operation_id: str) -> None:
        record = self.store.get(operation_id)
        if not record.done:
            raise FailedPrecondition(
                f"Operation {operation_id} is still running; cancel it first", operation_id
            )
        # Terminal records never change again, so the check above cannot go stale.
        self.store.delete(operation_id)
        logger.info("Deleted operation %s", operation_id)
