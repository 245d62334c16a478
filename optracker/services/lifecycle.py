import json
import logging
import uuid
from typing import Any, Callable, Iterable, List, Optional

from optracker.errors import InvalidTransition, StatusCode
from optracker.models.operation import (
    ErrorStatus,
    OperationFilter,
    OperationRecord,
    OperationState,
    Payload,
    utcnow,
)
from optracker.services.store import BaseOperationStore

logger = logging.getLogger(__name__)

Listener = Callable[[OperationRecord], None]


def new_operation_id() -> str:
    return f"op-{uuid.uuid4().hex}"


def _json_form(model: Any) -> Any:
    return json.loads(model.model_dump_json()) if model is not None else None


class OperationStateMachine:
    """Validates state transitions and builds the next record with audit history."""

    VALID_TRANSITIONS = {
        OperationState.RUNNING: {
            OperationState.SUCCEEDED,
            OperationState.FAILED,
            OperationState.CANCELLED,
        },
        OperationState.SUCCEEDED: set(),
        OperationState.FAILED: set(),
        OperationState.CANCELLED: set(),
    }

    @staticmethod
    def can_transition(current: OperationState, new_state: OperationState) -> bool:
        return new_state in OperationStateMachine.VALID_TRANSITIONS.get(current, set())

    @staticmethod
    def transition(record: OperationRecord, new_state: OperationState,
                   reason: Optional[str] = None, **changes: Any) -> OperationRecord:
        if not OperationStateMachine.can_transition(record.state, new_state):
            raise InvalidTransition(
                f"Invalid transition: {record.state.value} -> {new_state.value}", record.id
            )

        now = utcnow()
        history = list(record.history)
        history.append({
            "from": record.state.value,
            "to": new_state.value,
            "timestamp": now.isoformat(),
            "reason": reason or "",
        })
        fields = dict(record)
        fields.update(changes)
        fields.update(
            state=new_state,
            history=history,
            updated_at=now,
            completed_at=now,
            version=record.version + 1,
        )
        return OperationRecord(**fields)


class OperationLifecycleManager:
    """Creates operation records and drives them to a terminal state.

    All writes after creation go through the store's compare-and-swap, so at
    most one of complete/fail/cancel wins a running operation. The losing
    call is a no-op when it asks for the outcome that was already applied,
    and raises InvalidTransition otherwise (cancel never raises).
    """

    def __init__(
        self,
        store: BaseOperationStore,
        cancellation: Optional[Callable[[str], None]] = None,
        listeners: Optional[Iterable[Listener]] = None,
        id_factory: Callable[[], str] = new_operation_id,
    ):
        self.store = store
        self._cancellation = cancellation
        self._listeners: List[Listener] = list(listeners or [])
        self._id_factory = id_factory

    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def start(self, initial_metadata: Any = None, kind: Optional[str] = None) -> OperationRecord:
        """Create a RUNNING operation and return it right away."""
        now = utcnow()
        record = OperationRecord(
            id=self._id_factory(),
            kind=kind,
            state=OperationState.RUNNING,
            metadata=Payload.coerce(initial_metadata),
            created_at=now,
            updated_at=now,
            history=[{
                "from": None,
                "to": OperationState.RUNNING.value,
                "timestamp": now.isoformat(),
                "reason": "started",
            }],
        )
        self.store.put(record)
        logger.info("Started operation %s (kind=%s)", record.id, kind)
        self._notify(record)
        return record

    def get(self, operation_id: str) -> OperationRecord:
        return self.store.get(operation_id)

    def complete(self, operation_id: str, result: Any) -> OperationRecord:
        """Mark the operation SUCCEEDED with ``result``.

        Re-completing with an equal result is a no-op so worker retries are safe.
        A ``None`` result is stored as an empty payload.
        """
        payload = Payload.coerce(result)
        if payload is None:
            payload = Payload()
        return self._finish(
            operation_id,
            OperationState.SUCCEEDED,
            reason="completed",
            result=payload,
        )

    def fail(self, operation_id: str, error: Any, reason: str = "failed") -> OperationRecord:
        """Mark the operation FAILED with a structured error."""
        return self._finish(
            operation_id,
            OperationState.FAILED,
            reason=reason,
            error=ErrorStatus.coerce(error),
        )

    def cancel(self, operation_id: str, reason: str = "cancel_requested") -> OperationRecord:
        """Cancel a running operation; a no-op once it is terminal."""
        return self._finish(operation_id, OperationState.CANCELLED, reason=reason)

    def update_metadata(self, operation_id: str, metadata: Any) -> OperationRecord:
        """Overwrite the progress metadata of a running operation."""
        payload = Payload.coerce(metadata)
        while True:
            current = self.store.get(operation_id)
            if current.done:
                raise InvalidTransition(
                    f"Cannot update metadata of {current.state.value} operation {operation_id}",
                    operation_id,
                )
            fields = dict(current)
            fields.update(metadata=payload, updated_at=utcnow(), version=current.version + 1)
            updated = OperationRecord(**fields)
            if self.store.compare_and_swap(
                operation_id, OperationState.RUNNING, updated, expected_version=current.version
            ):
                self._notify(updated)
                return updated

    def fail_orphaned(self, reason: str = "server_restart") -> int:
        """Fail every RUNNING operation left over from a previous process.

        Only safe before any worker of this process has started.
        """
        orphans = self.store.list(OperationFilter(state=OperationState.RUNNING))
        error = ErrorStatus(
            code=int(StatusCode.ABORTED),
            message="Server restarted before the operation finished",
        )
        failed = 0
        for record in orphans:
            try:
                self.fail(record.id, error, reason=reason)
                failed += 1
            except InvalidTransition:
                logger.debug("Orphaned operation %s finished concurrently", record.id)
        if failed:
            logger.warning("Failed %d operations orphaned by a restart", failed)
        return failed

    def _finish(self, operation_id: str, target: OperationState, reason: str, **outcome: Any) -> OperationRecord:
        while True:
            current = self.store.get(operation_id)
            if current.done:
                return self._resolve_terminal(current, target, outcome)

            updated = OperationStateMachine.transition(current, target, reason=reason, **outcome)
            if self.store.compare_and_swap(
                operation_id, OperationState.RUNNING, updated, expected_version=current.version
            ):
                logger.info("Operation %s -> %s", operation_id, target.value)
                if target == OperationState.CANCELLED and self._cancellation is not None:
                    self._cancellation(operation_id)
                self._notify(updated)
                return updated
            # Lost the race to a concurrent write; look again.

    def _resolve_terminal(self, current: OperationRecord, target: OperationState, outcome: dict) -> OperationRecord:
        if target == OperationState.CANCELLED:
            logger.debug("Cancel of finished operation %s ignored", current.id)
            return current
        if current.state == target:
            # Compare wire forms: a stored payload may have round-tripped through JSON
            field = "result" if target == OperationState.SUCCEEDED else "error"
            if _json_form(getattr(current, field)) == _json_form(outcome.get(field)):
                return current

        logger.warning(
            "Rejected %s of operation %s: already %s",
            target.value, current.id, current.state.value,
        )
        raise InvalidTransition(
            f"Operation {current.id} is already {current.state.value}; cannot mark it {target.value}",
            current.id,
        )

    def _notify(self, record: OperationRecord) -> None:
        for listener in list(self._listeners):
            try:
                listener(record)
            except Exception:
                logger.exception("Operation listener failed for %s", record.id)
