"""Periodic pruning of finished operation records.

Terminal records are dropped from tracker memory after
`cleanup_tracker_max_age` seconds and deleted from the status table after
`cleanup_max_age_hours`. Both remain bounded for a long-running process.
"""
import asyncio
import time
from typing import Any, Dict, Optional, TYPE_CHECKING

from core.logging import get_logger

if TYPE_CHECKING:
    from core.config import Settings
    from core.database import Database
    from services.orchestration import OperationTracker

logger = get_logger(__name__)


class CleanupService:
    """Background task that prunes the tracker and the status table."""

    def __init__(self, database: "Database", tracker: "OperationTracker", settings: "Settings"):
        self.database = database
        self.tracker = tracker
        self.settings = settings
        self._stopping = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self._runs = 0
        self._last_run: Optional[float] = None
        self._last_result: Dict[str, int] = {}

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self.running:
            return
        self._stopping.clear()
        self._task = asyncio.create_task(self._loop())
        logger.info("Cleanup service started",
                    interval=self.settings.cleanup_interval,
                    max_age_hours=self.settings.cleanup_max_age_hours)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._stopping.set()
        try:
            await self._task
        finally:
            self._task = None
        logger.info("Cleanup service stopped", runs=self._runs)

    async def _loop(self) -> None:
        # Wake at each interval, or immediately when stop() is called
        while not self._stopping.is_set():
            try:
                await asyncio.wait_for(self._stopping.wait(), self.settings.cleanup_interval)
                break
            except asyncio.TimeoutError:
                pass
            try:
                result = await self.run_once()
            except Exception as e:
                logger.error("Cleanup pass failed", error=str(e))
                continue
            if any(result.values()):
                logger.info("Cleanup pass removed records", **result)

    async def run_once(self) -> Dict[str, int]:
        """Prune both stores once.

        Returns:
            Count of records removed from tracker memory and from the status table
        """
        result = {
            "tracker_records": self.tracker.prune(self.settings.cleanup_tracker_max_age),
            "stored_records": await self.database.cleanup_old_records(
                max_age_hours=self.settings.cleanup_max_age_hours),
        }
        self._runs += 1
        self._last_run = time.time()
        self._last_result = result
        return result

    def get_status(self) -> Dict[str, Any]:
        return {
            "enabled": self.settings.cleanup_enabled,
            "running": self.running,
            "runs": self._runs,
            "last_run": self._last_run,
            "last_result": self._last_result,
        }
