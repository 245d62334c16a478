import asyncio
import logging
from datetime import timedelta
from typing import Optional

from optracker.models.operation import utcnow
from optracker.services.store import BaseOperationStore

logger = logging.getLogger(__name__)


class RetentionSweeper:
    """Periodically deletes finished operations older than the retention window."""

    def __init__(self, store: BaseOperationStore, retention_seconds: Optional[float],
                 interval_seconds: float = 3600.0):
        self.store = store
        self.retention_seconds = retention_seconds
        self.interval_seconds = interval_seconds
        self._task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()

    @property
    def enabled(self) -> bool:
        return bool(self.retention_seconds and self.retention_seconds > 0)

    def sweep_once(self) -> int:
        if not self.enabled:
            return 0
        cutoff = utcnow() - timedelta(seconds=self.retention_seconds)
        return self.store.purge_terminal(cutoff)

    async def start(self):
        if not self.enabled or self._task is not None:
            return
        logger.info("Starting retention sweeper (retention=%ss)", self.retention_seconds)
        self._stop_event.clear()
        self._task = asyncio.create_task(self._loop())

    async def stop(self):
        if self._task is None:
            return
        logger.info("Stopping retention sweeper")
        self._stop_event.set()
        await self._task
        self._task = None

    async def _loop(self):
        while not self._stop_event.is_set():
            try:
                self.sweep_once()
            except Exception:
                logger.exception("Retention sweep failed")
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                pass
