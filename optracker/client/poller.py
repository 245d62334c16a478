"""
Client-side polling for long-running operations.

The poller only needs a ``get_operation(handle)`` callable, so it works the
same over HTTP, in-process or against any other transport. It keeps no state
besides the handle: a caller that persisted the handle can start a new poller
after a crash and pick up where it left off.
"""

import asyncio
import logging
import os
import threading
import time
from typing import Awaitable, Callable, Iterator, Optional, Tuple, Type

from pydantic import BaseModel, model_validator

from optracker.errors import Cancelled, DeadlineExceeded, OperationFailed, PollingAborted
from optracker.models.operation import OperationRecord, OperationState, Payload

logger = logging.getLogger(__name__)

ENV_PREFIX = "OPTRACKER_POLL_"


class PollingConfig(BaseModel):
    """Backoff parameters for a single poll session (seconds)."""

    initial_delay: float = 1.0
    multiplier: float = 1.5
    max_delay: float = 30.0
    total_timeout: float = 600.0

    @model_validator(mode="after")
    def _check(self):
        if self.initial_delay <= 0:
            raise ValueError("initial_delay must be positive")
        if self.multiplier < 1:
            raise ValueError("multiplier must be at least 1")
        if self.max_delay < self.initial_delay:
            raise ValueError("max_delay must not be smaller than initial_delay")
        if self.total_timeout <= 0:
            raise ValueError("total_timeout must be positive")
        return self

    @classmethod
    def from_env(cls, prefix: str = ENV_PREFIX, **overrides) -> "PollingConfig":
        """Read OPTRACKER_POLL_INITIAL_DELAY, ..._MULTIPLIER, ..._MAX_DELAY, ..._TOTAL_TIMEOUT."""
        values = {}
        for field in cls.model_fields:
            raw = os.getenv(prefix + field.upper())
            if raw is not None:
                values[field] = float(raw)
        values.update(overrides)
        return cls(**values)


def backoff_delays(config: PollingConfig) -> Iterator[float]:
    """Yield the sleep schedule: non-decreasing and capped at ``max_delay``."""
    delay = config.initial_delay
    while True:
        yield delay
        delay = min(delay * config.multiplier, config.max_delay)


def unwrap(record: OperationRecord) -> Payload:
    """Turn a terminal record into its result, or raise its typed error."""
    if record.state == OperationState.SUCCEEDED:
        return record.result
    if record.state == OperationState.FAILED:
        raise OperationFailed(record.error, operation_id=record.id)
    if record.state == OperationState.CANCELLED:
        raise Cancelled(f"Operation {record.id} was cancelled", operation_id=record.id)
    raise ValueError(f"Operation {record.id} is still running")


class Poller:
    """Blocking poller with exponential backoff and a total timeout.

    Args:
        get_operation: returns the current record for a handle.
        config: backoff parameters; defaults to ``PollingConfig.from_env()``.
        clock: monotonic clock used for the deadline.
        sleep: replaces the interruptible wait (tests use a fake one).
        retry_on: exception types from ``get_operation`` treated as a missed
            poll rather than an error, for example dropped connections.
    """

    def __init__(
        self,
        get_operation: Callable[[str], OperationRecord],
        config: Optional[PollingConfig] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Optional[Callable[[float], None]] = None,
        retry_on: Tuple[Type[BaseException], ...] = (),
    ):
        self.get_operation = get_operation
        self.config = config or PollingConfig.from_env()
        self.clock = clock
        self._sleep = sleep
        self.retry_on = retry_on

    def poll(
        self,
        handle: str,
        cancel_event: Optional[threading.Event] = None,
        on_update: Optional[Callable[[OperationRecord], None]] = None,
    ) -> Payload:
        """Wait for ``handle`` to finish and return its result payload.

        Raises:
            OperationFailed: the operation ended FAILED; ``error`` is intact.
            Cancelled: the operation ended CANCELLED.
            DeadlineExceeded: ``total_timeout`` elapsed; the operation may
                still be running.
            PollingAborted: ``cancel_event`` was set.
        """
        deadline = self.clock() + self.config.total_timeout
        delays = backoff_delays(self.config)
        while True:
            if cancel_event is not None and cancel_event.is_set():
                raise PollingAborted(f"Stopped polling operation {handle}", operation_id=handle)

            record = self._fetch(handle)
            if record is not None:
                if record.done:
                    logger.debug("Operation %s finished: %s", handle, record.state.value)
                    return unwrap(record)
                if on_update is not None:
                    on_update(record)

            if self.clock() >= deadline:
                raise DeadlineExceeded(
                    f"Operation {handle} still running after {self.config.total_timeout}s",
                    operation_id=handle,
                )
            self._wait(next(delays), handle, cancel_event)

    def _fetch(self, handle: str) -> Optional[OperationRecord]:
        try:
            return self.get_operation(handle)
        except self.retry_on as e:
            logger.warning("Polling operation %s failed, will retry: %s", handle, e)
            return None

    def _wait(self, delay: float, handle: str, cancel_event: Optional[threading.Event]):
        if self._sleep is not None:
            self._sleep(delay)
            aborted = cancel_event is not None and cancel_event.is_set()
        elif cancel_event is not None:
            aborted = cancel_event.wait(delay)
        else:
            time.sleep(delay)
            aborted = False
        if aborted:
            raise PollingAborted(f"Stopped polling operation {handle}", operation_id=handle)


class AsyncPoller:
    """asyncio flavour of :class:`Poller`.

    Cancelling the task that awaits ``poll`` stops polling at once.
    """

    def __init__(
        self,
        get_operation: Callable[[str], Awaitable[OperationRecord]],
        config: Optional[PollingConfig] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        retry_on: Tuple[Type[BaseException], ...] = (),
    ):
        self.get_operation = get_operation
        self.config = config or PollingConfig.from_env()
        self.clock = clock
        self.sleep = sleep
        self.retry_on = retry_on

    async def poll(
        self,
        handle: str,
        on_update: Optional[Callable[[OperationRecord], None]] = None,
    ) -> Payload:
        deadline = self.clock() + self.config.total_timeout
        delays = backoff_delays(self.config)
        while True:
            try:
                record = await self.get_operation(handle)
            except self.retry_on as e:
                logger.warning("Polling operation %s failed, will retry: %s", handle, e)
                record = None

            if record is not None:
                if record.done:
                    return unwrap(record)
                if on_update is not None:
                    on_update(record)

            if self.clock() >= deadline:
                raise DeadlineExceeded(
                    f"Operation {handle} still running after {self.config.total_timeout}s",
                    operation_id=handle,
                )
            await self.sleep(next(delays))
