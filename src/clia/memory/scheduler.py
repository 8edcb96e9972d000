"""Periodic eviction driver for command memory, using pure asyncio.

The manager never schedules its own cleanup; run ``CleanupScheduler.start``
alongside the application to evict stale entries every
``MemoryConfig.cleanup_interval``.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from clia.memory.errors import MemoryStoreError

if TYPE_CHECKING:
    from clia.memory.manager import MemoryManager

logger = logging.getLogger(__name__)


class CleanupScheduler:
    """Runs ``MemoryManager.cleanup()`` on a fixed interval."""

    def __init__(self, manager: MemoryManager, interval: float | None = None) -> None:
        self._manager = manager
        self._interval = (
            interval
            if interval is not None
            else manager.config.cleanup_interval.total_seconds()
        )
        self.runs = 0

    async def start(self, shutdown_event: asyncio.Event) -> None:
        """Run cleanup every interval until shutdown_event is set."""
        logger.info("Memory cleanup scheduler started (interval=%ds)", self._interval)

        while not shutdown_event.is_set():
            try:
                await asyncio.wait_for(shutdown_event.wait(), timeout=self._interval)
                break  # shutdown requested
            except asyncio.TimeoutError:
                pass  # interval elapsed

            await self.run_once()

        logger.info("Memory cleanup scheduler stopped.")

    async def run_once(self) -> int:
        """Evict in a worker thread so the event loop is not blocked by file I/O."""
        self.runs += 1
        try:
            removed = await asyncio.to_thread(self._manager.cleanup)
        except MemoryStoreError as e:
            logger.error("Memory cleanup failed: %s", e)
            return 0
        if removed:
            logger.info("Cleanup: evicted %d memory entries", removed)
        return removed
