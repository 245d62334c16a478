"""
Shared fixtures for the operations tracker tests.
"""

import pytest

from optracker.config import Settings
from optracker.main import create_app
from optracker.services.cancellation import CancellationRegistry
from optracker.services.database import SqliteOperationStore
from optracker.services.lifecycle import OperationLifecycleManager
from optracker.services.operations_service import OperationsService
from optracker.services.store import InMemoryOperationStore


class FakeClock:
    """Monotonic clock that only moves when somebody sleeps on it."""

    def __init__(self, start: float = 0.0):
        self.now = start
        self.sleeps = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds

    async def async_sleep(self, seconds: float) -> None:
        self.sleep(seconds)


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture(params=["memory", "sqlite"])
def store(request, tmp_path):
    """Run a test against every store backend."""
    if request.param == "memory":
        backend = InMemoryOperationStore()
    else:
        backend = SqliteOperationStore(str(tmp_path / "operations.db"))
    yield backend
    backend.close()


@pytest.fixture
def cancellation():
    return CancellationRegistry()


@pytest.fixture
def manager(store, cancellation):
    return OperationLifecycleManager(store, cancellation=cancellation)


@pytest.fixture
def service(manager, store):
    return OperationsService(manager, store)


@pytest.fixture
def test_settings(tmp_path):
    return Settings().copy(
        store_backend="sqlite",
        database_path=str(tmp_path / "app.db"),
        runner_concurrency=2,
        retention_hours=0,
    )


@pytest.fixture
def app(test_settings):
    """A fresh application per test so runner tasks never outlive their loop."""
    return create_app(test_settings)
