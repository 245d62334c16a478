import logging
import threading
from typing import Dict

logger = logging.getLogger(__name__)


class CancellationRegistry:
    """Per-operation cancellation tokens shared between the tracker and workers.

    The runner takes a token when work is submitted and releases it when the
    worker returns. The lifecycle manager calls ``signal`` once a cancellation
    has been applied to the record; workers poll ``is_cancelled`` (or wait on the
    event) to stop cooperatively.
    """

    def __init__(self):
        self._events: Dict[str, threading.Event] = {}
        self._lock = threading.Lock()

    def token(self, operation_id: str) -> threading.Event:
        with self._lock:
            event = self._events.get(operation_id)
            if event is None:
                event = self._events[operation_id] = threading.Event()
            return event

    def signal(self, operation_id: str) -> None:
        """Set the token of a live worker; without one there is nobody to stop."""
        with self._lock:
            event = self._events.get(operation_id)
        if event is None:
            logger.debug("No worker holds a token for operation %s", operation_id)
            return
        logger.info("Signalling cancellation to operation %s", operation_id)
        event.set()

    def __len__(self) -> int:
        with self._lock:
            return len(self._events)

    def is_cancelled(self, operation_id: str) -> bool:
        with self._lock:
            event = self._events.get(operation_id)
        return event is not None and event.is_set()

    def release(self, operation_id: str) -> None:
        """Forget the token of a finished operation."""
        with self._lock:
            self._events.pop(operation_id, None)

    def __call__(self, operation_id: str) -> None:
        self.signal(operation_id)
