"""
SQLite-backed operation store.
Uses SQLite for simplicity and reliability.
"""

import sqlite3
import json
import logging
import threading
from datetime import datetime
from typing import Optional, List, Any
from pathlib import Path

from optracker.errors import AlreadyExists, NotFound
from optracker.models.operation import (
    ErrorStatus,
    OperationFilter,
    OperationRecord,
    OperationState,
    Payload,
    TERMINAL_STATES,
)
from optracker.services.store import BaseOperationStore, Cursor

logger = logging.getLogger(__name__)

_COLUMNS = (
    "id, kind, state, metadata, result, error, history, "
    "created_at, updated_at, completed_at, version"
)


def _ts(value: Optional[datetime]) -> Optional[str]:
    # Fixed-width ISO strings so text ordering matches time ordering
    return value.isoformat(timespec="microseconds") if value else None


def _dump(model: Any) -> Optional[str]:
    if model is None:
        return None
    return json.dumps(model.model_dump(mode="json"))


class SqliteOperationStore(BaseOperationStore):
    """SQLite-based store for operation persistence.

    A single connection is shared by all threads and every statement runs
    under one lock; compare-and-swap is a single conditional UPDATE.
    """

    def __init__(self, db_path: str = "optracker.db"):
        self.db_path = db_path
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._init_database()

    def _init_database(self):
        """Initialize the database with required tables."""
        with self._lock, self._conn:
            cursor = self._conn.cursor()

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS operations (
                    id TEXT PRIMARY KEY,
                    kind TEXT,
                    state TEXT NOT NULL,
                    metadata TEXT,  -- JSON payload
                    result TEXT,  -- JSON payload
                    error TEXT,  -- JSON error status
                    history TEXT,  -- JSON list
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    completed_at TEXT,
                    version INTEGER NOT NULL DEFAULT 1
                )
            """)

            # Indexes for listing and retention
            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_operations_order ON operations(created_at, id)
            """)
            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_operations_state ON operations(state, updated_at)
            """)
        logger.info(f"Operation store initialized at {self.db_path}")

    def put(self, record: OperationRecord) -> None:
        """Insert a new operation."""
        try:
            with self._lock, self._conn:
                self._conn.execute(
                    f"INSERT INTO operations ({_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    self._record_to_row(record),
                )
        except sqlite3.IntegrityError:
            raise AlreadyExists(f"Operation {record.id} already exists", record.id) from None

    def get(self, operation_id: str) -> OperationRecord:
        """Get an operation by ID."""
        with self._lock:
            row = self._conn.execute(
                f"SELECT {_COLUMNS} FROM operations WHERE id = ?", (operation_id,)
            ).fetchone()
        if not row:
            raise NotFound(f"Operation {operation_id} not found", operation_id)
        return self._row_to_record(row)

    def compare_and_swap(self, operation_id, expected_state, new_record, expected_version=None) -> bool:
        if new_record.id != operation_id:
            raise ValueError("compare_and_swap cannot change the operation id")
        row = self._record_to_row(new_record)
        query = """
            UPDATE operations SET
                kind = ?, state = ?, metadata = ?, result = ?, error = ?, history = ?,
                created_at = ?, updated_at = ?, completed_at = ?, version = ?
            WHERE id = ? AND state = ?
        """
        params = list(row[1:]) + [operation_id, OperationState(expected_state).value]
        if expected_version is not None:
            query += " AND version = ?"
            params.append(expected_version)

        with self._lock, self._conn:
            updated = self._conn.execute(query, params).rowcount
            if updated:
                return True
            exists = self._conn.execute(
                "SELECT 1 FROM operations WHERE id = ?", (operation_id,)
            ).fetchone()
        if not exists:
            raise NotFound(f"Operation {operation_id} not found", operation_id)
        return False

    def delete(self, operation_id: str) -> None:
        """Delete an operation by ID."""
        with self._lock, self._conn:
            deleted = self._conn.execute(
                "DELETE FROM operations WHERE id = ?", (operation_id,)
            ).rowcount
        if not deleted:
            raise NotFound(f"Operation {operation_id} not found", operation_id)
        logger.info(f"Deleted operation {operation_id} from database")

    def list(self, filter: Optional[OperationFilter] = None, after: Optional[Cursor] = None,
             limit: Optional[int] = None) -> List[OperationRecord]:
        """List operations in (created_at, id) order with keyset pagination."""
        clauses = []
        params: List[Any] = []
        if after is not None:
            created, last_id = after
            clauses.append("(created_at > ? OR (created_at = ? AND id > ?))")
            params.extend([_ts(created), _ts(created), last_id])
        if filter is not None:
            if filter.state is not None:
                clauses.append("state = ?")
                params.append(OperationState(filter.state).value)
            if filter.kind is not None:
                clauses.append("kind = ?")
                params.append(filter.kind)
            if filter.done is not None:
                clauses.append("state != ?" if filter.done else "state = ?")
                params.append(OperationState.RUNNING.value)

        query = f"SELECT {_COLUMNS} FROM operations"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY created_at, id"
        if limit is not None:
            query += " LIMIT ?"
            params.append(int(limit))

        with self._lock:
            rows = self._conn.execute(query, params).fetchall()
        return [self._row_to_record(row) for row in rows]

    def purge_terminal(self, older_than: datetime) -> int:
        """Clean up finished operations not touched since ``older_than``."""
        terminal = [state.value for state in TERMINAL_STATES]
        with self._lock, self._conn:
            deleted_count = self._conn.execute(
                f"""
                DELETE FROM operations
                WHERE updated_at < ? AND state IN ({", ".join("?" for _ in terminal)})
                """,
                [_ts(older_than), *terminal],
            ).rowcount

        if deleted_count > 0:
            logger.info(f"Purged {deleted_count} expired operations")
        return deleted_count

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    @staticmethod
    def _record_to_row(record: OperationRecord) -> tuple:
        return (
            record.id,
            record.kind,
            record.state.value,
            _dump(record.metadata),
            _dump(record.result),
            _dump(record.error),
            json.dumps(record.history) if record.history else None,
            _ts(record.created_at),
            _ts(record.updated_at),
            _ts(record.completed_at),
            record.version,
        )

    @staticmethod
    def _row_to_record(row) -> OperationRecord:
        """Convert database row to OperationRecord object."""
        return OperationRecord(
            id=row[0],
            kind=row[1],
            state=OperationState(row[2]),
            metadata=Payload.model_validate(json.loads(row[3])) if row[3] else None,
            result=Payload.model_validate(json.loads(row[4])) if row[4] else None,
            error=ErrorStatus.model_validate(json.loads(row[5])) if row[5] else None,
            history=json.loads(row[6]) if row[6] else [],
            created_at=datetime.fromisoformat(row[7]),
            updated_at=datetime.fromisoformat(row[8]),
            completed_at=datetime.fromisoformat(row[9]) if row[9] else None,
            version=row[10],
        )
