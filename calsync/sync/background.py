"""
Background sync loop.

Runs orchestrator passes on a fixed interval until stopped. A failing
pass is logged and the loop carries on.
"""

import asyncio
import logging
from typing import Optional

from calsync.config import get_settings
from calsync.sync.orchestrator import SyncOrchestrator, SyncReport

logger = logging.getLogger(__name__)


class BackgroundSync:
    """Periodic sync driver for a SyncOrchestrator."""

    def __init__(self, orchestrator: SyncOrchestrator, interval: Optional[float] = None):
        self._orchestrator = orchestrator
        self._interval = interval if interval is not None else get_settings().background_sync_interval
        self._task: Optional[asyncio.Task] = None
        self._wake = asyncio.Event()
        self.last_report: Optional[SyncReport] = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Start the loop; the first pass runs immediately."""
        if self.is_running:
            logger.warning("Background sync already running")
            return
        self._wake.clear()
        self._task = asyncio.create_task(self._run(), name="calsync-background-sync")
        logger.info(f"Background sync started (every {self._interval}s)")

    def trigger_now(self) -> None:
        """Cut the current wait short and run a pass."""
        self._wake.set()

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Background sync stopped")

    async def _run(self) -> None:
        while True:
            try:
                self.last_report = await self._orchestrator.run_pass()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Background sync pass failed: {e}", exc_info=True)

            try:
                await asyncio.wait_for(self._wake.wait(), timeout=self._interval)
            except asyncio.TimeoutError:
                pass
            self._wake.clear()
