import asyncio
import inspect
import logging
import threading
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Union

from optracker.errors import InvalidTransition, NotFound, StatusCode
from optracker.models.operation import ErrorStatus, OperationRecord, OperationState
from optracker.services.cancellation import CancellationRegistry
from optracker.services.lifecycle import OperationLifecycleManager

logger = logging.getLogger(__name__)


class OperationCancelledError(Exception):
    """Raised inside a worker once its operation has been cancelled."""


class OperationFailure(Exception):
    """Raised by a worker to record a structured failure on its operation."""

    def __init__(self, code: int, message: str, details: Optional[List[Any]] = None):
        super().__init__(message)
        self.code = int(code)
        self.message = message
        self.details = details

    def to_status(self) -> ErrorStatus:
        return ErrorStatus(code=self.code, message=self.message, details=self.details)


class OperationContext:
    """What a worker gets to see of its operation."""

    def __init__(self, manager: OperationLifecycleManager, record: OperationRecord,
                 params: Dict[str, Any], token: threading.Event):
        self._manager = manager
        self._token = token
        self.operation_id = record.id
        self.kind = record.kind
        self.params = params

    @property
    def cancelled(self) -> bool:
        return self._token.is_set()

    def raise_if_cancelled(self) -> None:
        if self._token.is_set():
            raise OperationCancelledError(self.operation_id)

    def update_metadata(self, metadata: Any) -> None:
        try:
            self._manager.update_metadata(self.operation_id, metadata)
        except InvalidTransition:
            # Only cancellation can finish the record while its worker runs
            self.raise_if_cancelled()
            raise

    async def sleep(self, seconds: float) -> None:
        """Sleep, waking early with OperationCancelledError on cancellation."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + seconds
        while True:
            self.raise_if_cancelled()
            remaining = deadline - loop.time()
            if remaining <= 0:
                return
            await asyncio.sleep(min(remaining, 0.1))


Handler = Callable[[OperationContext], Union[Any, Awaitable[Any]]]


class OperationRunner:
    """Runs registered workers for submitted operations on a pool of asyncio tasks."""

    def __init__(self, manager: OperationLifecycleManager, cancellation: CancellationRegistry,
                 concurrency: int = 1, queue_size: int = 100):
        self.manager = manager
        self.cancellation = cancellation
        self.concurrency = concurrency
        self.queue_size = queue_size
        self._handlers: Dict[str, Handler] = {}
        self.queue: Optional[asyncio.Queue] = None
        self.workers: List[asyncio.Task] = []

    def register(self, kind: str, handler: Handler) -> None:
        logger.info("Registered worker for operation kind %s", kind)
        self._handlers[kind] = handler

    def has_handler(self, kind: Optional[str]) -> bool:
        return kind in self._handlers

    @property
    def running(self) -> bool:
        return bool(self.workers)

    async def start(self):
        if self.workers:
            return
        logger.info("Starting operation runner with %s workers", self.concurrency)
        self.queue = asyncio.Queue(maxsize=self.queue_size)
        for i in range(self.concurrency):
            task = asyncio.create_task(self._worker_loop(i))
            self.workers.append(task)

    async def stop(self):
        if not self.workers:
            return
        logger.info("Stopping operation runner")
        for _ in self.workers:
            await self.queue.put(None)
        await asyncio.gather(*self.workers, return_exceptions=True)
        self.workers.clear()
        if not self.queue.empty():
            logger.warning("Runner stopped with %d operations still queued", self.queue.qsize())

    async def submit(self, record: OperationRecord, params: Dict[str, Any]) -> None:
        if record.kind not in self._handlers:
            raise KeyError(f"No worker registered for operation kind {record.kind!r}")
        if not self.workers:
            await self.start()
        # The token must exist before a cancel can be signalled to it
        self.cancellation.token(record.id)
        await self.queue.put((record, params))

    async def _worker_loop(self, worker_idx: int):
        while True:
            item: Optional[Tuple[OperationRecord, Dict[str, Any]]] = await self.queue.get()
            try:
                if item is None:
                    break
                record, params = item
                await self._run(record, params, worker_idx)
            except Exception:
                logger.exception("Worker %d crashed while running an operation", worker_idx)
            finally:
                self.queue.task_done()

    async def _run(self, record: OperationRecord, params: Dict[str, Any], worker_idx: int):
        token = self.cancellation.token(record.id)
        context = OperationContext(self.manager, record, params, token)
        try:
            # Cancelled while queued
            if token.is_set() or self._finished_elsewhere(record.id):
                logger.info("Skipping cancelled operation %s", record.id)
                return

            logger.info("Worker %d running operation %s (%s)", worker_idx, record.id, record.kind)
            handler = self._handlers[record.kind]
            try:
                if inspect.iscoroutinefunction(handler):
                    result = await handler(context)
                else:
                    result = await asyncio.to_thread(handler, context)
            except OperationCancelledError:
                logger.info("Operation %s stopped after cancellation", record.id)
                return
            except OperationFailure as e:
                transition, outcome = self.manager.fail, e.to_status()
            except Exception as e:
                logger.exception("Operation %s failed: %s", record.id, e)
                transition, outcome = self.manager.fail, ErrorStatus(
                    code=int(StatusCode.INTERNAL), message=str(e) or type(e).__name__
                )
            else:
                transition = self.manager.complete
                outcome = result

            self._settle(transition, record.id, outcome)
        finally:
            self.cancellation.release(record.id)

    def _finished_elsewhere(self, operation_id: str) -> bool:
        try:
            return self.manager.get(operation_id).done
        except NotFound:
            return True

    def _settle(self, transition: Callable[[str, Any], OperationRecord], operation_id: str, outcome: Any):
        try:
            transition(operation_id, outcome)
        except InvalidTransition:
            current = self.manager.get(operation_id)
            if current.state == OperationState.CANCELLED:
                logger.warning("Dropped late outcome of cancelled operation %s", operation_id)
                return
            raise
