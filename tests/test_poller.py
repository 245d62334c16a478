"""
Tests for the backoff poller.

Most tests drive the poller with a fake clock so the timing assertions are
exact; one test uses a real worker thread.
"""

import asyncio
import itertools
import threading
import time

import pytest

from optracker.client.poller import AsyncPoller, Poller, PollingConfig, backoff_delays, unwrap
from optracker.errors import Cancelled, DeadlineExceeded, OperationFailed, PollingAborted
from optracker.models.operation import ErrorStatus, OperationRecord, OperationState, Payload
from optracker.services.lifecycle import OperationLifecycleManager
from optracker.services.store import InMemoryOperationStore

FAST = PollingConfig(initial_delay=0.1, multiplier=2, max_delay=1, total_timeout=3)


def running(op_id="op-1"):
    return OperationRecord(id=op_id)


def succeeded(op_id="op-1", value=None):
    return OperationRecord(id=op_id, state=OperationState.SUCCEEDED, result=Payload(value=value))


class FakeTask:
    """A task that finishes ``duration`` seconds after the clock started."""

    def __init__(self, clock, duration, outcome=None):
        self.clock = clock
        self.finish_at = clock() + duration
        self.outcome = outcome or succeeded(value={"uri": "gs://x"})
        self.calls = 0

    def __call__(self, handle):
        self.calls += 1
        if self.clock() >= self.finish_at:
            return self.outcome
        return running(handle)


class TestBackoff:

    def test_schedule_grows_and_caps(self):
        delays = list(itertools.islice(backoff_delays(FAST), 8))
        assert delays == [0.1, 0.2, 0.4, 0.8, 1, 1, 1, 1]

    def test_multiplier_one_is_constant(self):
        config = PollingConfig(initial_delay=0.5, multiplier=1, max_delay=0.5, total_timeout=1)
        assert list(itertools.islice(backoff_delays(config), 3)) == [0.5, 0.5, 0.5]

    @pytest.mark.parametrize("fields", [
        {"initial_delay": 0},
        {"multiplier": 0.5},
        {"initial_delay": 2, "max_delay": 1},
        {"total_timeout": 0},
    ])
    def test_invalid_config(self, fields):
        with pytest.raises(ValueError):
            PollingConfig(**fields)

    def test_config_from_env(self, monkeypatch):
        monkeypatch.setenv("OPTRACKER_POLL_INITIAL_DELAY", "0.25")
        monkeypatch.setenv("OPTRACKER_POLL_TOTAL_TIMEOUT", "12")
        config = PollingConfig.from_env(max_delay=4)
        assert config.initial_delay == 0.25
        assert config.total_timeout == 12
        assert config.max_delay == 4
        assert config.multiplier == 1.5


class TestPoll:

    @pytest.mark.parametrize("duration", [0, 0.05, 1.2, 2.9])
    def test_returns_result_when_done_before_deadline(self, fake_clock, duration):
        task = FakeTask(fake_clock, duration)
        poller = Poller(task, config=FAST, clock=fake_clock, sleep=fake_clock.sleep)

        result = poller.poll("op-1")

        assert result == Payload(value={"uri": "gs://x"})
        assert fake_clock.now < FAST.total_timeout + FAST.max_delay

    def test_deadline_exceeded(self, fake_clock):
        """A task needing 5s against a 3s budget gives up once the budget is spent"""
        task = FakeTask(fake_clock, 5)
        poller = Poller(task, config=FAST, clock=fake_clock, sleep=fake_clock.sleep)

        with pytest.raises(DeadlineExceeded) as exc_info:
            poller.poll("op-1")

        assert fake_clock.now >= FAST.total_timeout
        assert exc_info.value.operation_id == "op-1"
        assert exc_info.value.retryable
        # 0, 0.1, 0.3, 0.7, 1.5, 2.5, 3.5
        assert task.calls == 7
        assert fake_clock.sleeps == [0.1, 0.2, 0.4, 0.8, 1, 1]

    def test_immediately_done_never_sleeps(self, fake_clock):
        poller = Poller(lambda h: succeeded(h, 1), config=FAST, clock=fake_clock, sleep=fake_clock.sleep)
        assert poller.poll("op-1").value == 1
        assert fake_clock.sleeps == []

    def test_failed_operation_raises_with_error_intact(self, fake_clock):
        error = ErrorStatus(code=7, message="denied", details=[{"type_url": "t/Reason", "value": "quota"}])
        outcome = OperationRecord(id="op-1", state=OperationState.FAILED, error=error)
        poller = Poller(FakeTask(fake_clock, 0.5, outcome), config=FAST, clock=fake_clock,
                        sleep=fake_clock.sleep)

        with pytest.raises(OperationFailed) as exc_info:
            poller.poll("op-1")

        assert exc_info.value.error == error
        assert exc_info.value.code == 7
        assert exc_info.value.details[0].type_url == "t/Reason"

    def test_cancelled_operation_raises_cancelled(self, fake_clock):
        outcome = OperationRecord(id="op-1", state=OperationState.CANCELLED)
        poller = Poller(FakeTask(fake_clock, 0.5, outcome), config=FAST, clock=fake_clock,
                        sleep=fake_clock.sleep)
        with pytest.raises(Cancelled):
            poller.poll("op-1")

    def test_on_update_sees_running_records(self, fake_clock):
        updates = []
        poller = Poller(FakeTask(fake_clock, 0.5), config=FAST, clock=fake_clock, sleep=fake_clock.sleep)
        poller.poll("op-1", on_update=updates.append)
        # polls at 0, 0.1 and 0.3 see RUNNING; the one at 0.7 sees the result
        assert len(updates) == 3
        assert all(r.state == OperationState.RUNNING for r in updates)

    def test_retry_on_transient_errors(self, fake_clock):
        attempts = []

        def flaky(handle):
            attempts.append(fake_clock.now)
            if len(attempts) < 3:
                raise ConnectionError("connection reset")
            return succeeded(handle, "ok")

        poller = Poller(flaky, config=FAST, clock=fake_clock, sleep=fake_clock.sleep,
                        retry_on=(ConnectionError,))
        assert poller.poll("op-1").value == "ok"
        assert len(attempts) == 3

    def test_other_errors_propagate(self, fake_clock):
        def broken(handle):
            raise KeyError(handle)

        poller = Poller(broken, config=FAST, clock=fake_clock, sleep=fake_clock.sleep,
                        retry_on=(ConnectionError,))
        with pytest.raises(KeyError):
            poller.poll("op-1")

    def test_cancel_event_aborts_polling(self, fake_clock):
        stop = threading.Event()

        def sleep(seconds):
            fake_clock.sleep(seconds)
            if fake_clock.now > 1:
                stop.set()

        task = FakeTask(fake_clock, 100)
        poller = Poller(task, config=FAST, clock=fake_clock, sleep=sleep)
        with pytest.raises(PollingAborted):
            poller.poll("op-1", cancel_event=stop)
        assert fake_clock.now < 2

    def test_unwrap_running_is_an_error(self):
        with pytest.raises(ValueError):
            unwrap(running())


def test_real_worker_thread():
    """Poll an in-process tracker while a worker thread finishes the operation"""
    manager = OperationLifecycleManager(InMemoryOperationStore())
    record = manager.start({"progress": 0}, kind="export")

    def worker():
        time.sleep(0.05)
        manager.update_metadata(record.id, {"progress": 0.5})
        time.sleep(0.05)
        manager.complete(record.id, {"rows": 42})

    thread = threading.Thread(target=worker)
    thread.start()
    config = PollingConfig(initial_delay=0.01, multiplier=1.5, max_delay=0.05, total_timeout=5)
    try:
        result = Poller(manager.get, config=config).poll(record.id, cancel_event=threading.Event())
    finally:
        thread.join()

    assert result.value == {"rows": 42}


class TestAsyncPoller:

    @pytest.mark.asyncio
    async def test_result(self, fake_clock):
        task = FakeTask(fake_clock, 1.2)

        async def get(handle):
            return task(handle)

        poller = AsyncPoller(get, config=FAST, clock=fake_clock, sleep=fake_clock.async_sleep)
        result = await poller.poll("op-1")
        assert result.value == {"uri": "gs://x"}

    @pytest.mark.asyncio
    async def test_deadline(self, fake_clock):
        task = FakeTask(fake_clock, 5)

        async def get(handle):
            return task(handle)

        poller = AsyncPoller(get, config=FAST, clock=fake_clock, sleep=fake_clock.async_sleep)
        with pytest.raises(DeadlineExceeded):
            await poller.poll("op-1")
        assert fake_clock.now >= FAST.total_timeout

    @pytest.mark.asyncio
    async def test_cancelling_the_task_stops_polling(self):
        calls = []

        async def get(handle):
            calls.append(handle)
            return running(handle)

        config = PollingConfig(initial_delay=0.01, multiplier=1, max_delay=0.01, total_timeout=60)
        poll_task = asyncio.create_task(AsyncPoller(get, config=config).poll("op-1"))
        await asyncio.sleep(0.05)
        poll_task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await poll_task
        count = len(calls)
        await asyncio.sleep(0.05)
        assert len(calls) == count
