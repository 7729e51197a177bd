"""Memory-pressure batch scheduler.

Runs bulk AI work in sequential batches whose size shrinks as process memory
approaches the configured ceiling. Before each batch an admission gate may
reclaim memory and stall lower-priority callers. A background monitor keeps a
capped usage history and reclaims early when usage trends sharply upward.
"""

import asyncio
import gc
import math
import uuid
from collections import deque
from typing import Any, Awaitable, Callable, Deque, Dict, Iterable, List, Optional, Set, TypeVar

import psutil

from core.logging import get_logger
from .models import Priority

logger = get_logger(__name__)

T = TypeVar("T")
R = TypeVar("R")

HIGH_USAGE_PERCENT = 75.0
CRITICAL_USAGE_PERCENT = 90.0
POST_RECLAIM_STALL_PERCENT = 85.0
HALF_BATCH_PERCENT = 80.0
THREE_QUARTER_BATCH_PERCENT = 60.0
MONITOR_TREND_PERCENT_PER_MIN = 5.0
MONITOR_ELEVATED_PERCENT = 70.0
MONITOR_CEILING_PERCENT = 95.0
TREND_WINDOW = 10


def process_rss() -> int:
    """Resident set size of the current process in bytes."""
    return psutil.Process().memory_info().rss


def collect_garbage() -> None:
    collected = gc.collect()
    logger.debug("Forced garbage collection", collected=collected)


class MemoryScheduler:
    """Adaptive batch sizing and backpressure driven by memory usage."""

    def __init__(self,
                 max_memory_bytes: int = 1024 * 1024 * 1024,
                 optimal_memory_bytes: int = 512 * 1024 * 1024,
                 monitor_interval: float = 30.0,
                 history_size: int = 60,
                 reclaim_delay: float = 1.0,
                 low_priority_stall: float = 5.0,
                 medium_priority_stall: float = 2.0,
                 high_usage_stall: float = 1.0,
                 batch_delay: float = 0.1,
                 default_concurrency: int = 5,
                 usage_sampler: Callable[[], int] = process_rss,
                 reclaim: Callable[[], None] = collect_garbage):
        """Initialize memory scheduler.

        Args:
            max_memory_bytes: Ceiling that usage percentages are measured against
            optimal_memory_bytes: Usage above which memory is reclaimed after each batch
            monitor_interval: Seconds between background samples
            history_size: Max samples kept for trend analysis (oldest dropped)
            reclaim_delay: Seconds to wait after a critical reclaim before re-sampling
            low_priority_stall: Stall for low priority when still critical after reclaim
            medium_priority_stall: Stall for medium priority when still critical after reclaim
            high_usage_stall: Stall for low priority when usage is high but not critical
            batch_delay: Pause between consecutive batches
            default_concurrency: Batch size when callers give none
            usage_sampler: Returns current memory usage in bytes
            reclaim: Action that releases memory
        """
        self.max_memory_bytes = max_memory_bytes
        self.optimal_memory_bytes = optimal_memory_bytes
        self.monitor_interval = monitor_interval
        self.reclaim_delay = reclaim_delay
        self.low_priority_stall = low_priority_stall
        self.medium_priority_stall = medium_priority_stall
        self.high_usage_stall = high_usage_stall
        self.batch_delay = batch_delay
        self.default_concurrency = default_concurrency
        self._sample_usage = usage_sampler
        self._reclaim = reclaim

        self._history: Deque[float] = deque(maxlen=history_size)
        self._active_batch_ids: Set[str] = set()

        self._running = False
        self._task: Optional[asyncio.Task] = None

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        """Start the background memory monitor."""
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._monitor_loop())
        logger.info("Memory scheduler started",
                    max_memory_bytes=self.max_memory_bytes,
                    monitor_interval=self.monitor_interval)

    async def stop(self) -> None:
        """Stop the background memory monitor."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        self.cleanup()
        logger.info("Memory scheduler stopped")

    async def _monitor_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self.monitor_interval)
            try:
                self.sample()
            except Exception as e:
                logger.error("Memory sample failed", error=str(e))

    # =========================================================================
    # Measurement
    # =========================================================================

    def get_memory_usage(self) -> int:
        return self._sample_usage()

    def usage_percent(self) -> float:
        return (self.get_memory_usage() / self.max_memory_bytes) * 100

    def reclaim(self) -> None:
        try:
            self._reclaim()
        except Exception as e:
            logger.error("Memory reclaim failed", error=str(e))

    def sample(self) -> float:
        """Record one usage sample and reclaim if trending up or critical."""
        percent = self.usage_percent()
        self._history.append(percent)

        if len(self._history) > TREND_WINDOW:
            trend = self.get_trend(TREND_WINDOW)
            if trend > MONITOR_TREND_PERCENT_PER_MIN and percent > MONITOR_ELEVATED_PERCENT:
                logger.warning("Memory usage trending upward",
                               trend_percent_per_min=round(trend, 1),
                               usage_percent=round(percent, 1))
                self.reclaim()

        if percent > MONITOR_CEILING_PERCENT:
            logger.error("Critical memory usage", usage_percent=round(percent, 1))
            self.reclaim()

        return percent

    def get_trend(self, window: Optional[int] = None) -> float:
        """First-vs-last slope of recent samples in percent per minute."""
        values = list(self._history)
        if window:
            values = values[-window:]
        if len(values) < 2:
            return 0.0
        minutes = len(values) * self.monitor_interval / 60.0
        return (values[-1] - values[0]) / minutes

    # =========================================================================
    # Backpressure
    # =========================================================================

    def calculate_batch_size(self, remaining: int, max_concurrency: int) -> int:
        """Batch size for the next batch given current memory pressure.

        Always within [1, max_concurrency] and never above remaining items.
        """
        percent = self.usage_percent()
        batch_size = max_concurrency
        if percent > HALF_BATCH_PERCENT:
            batch_size = max(1, math.floor(max_concurrency * 0.5))
        elif percent > THREE_QUARTER_BATCH_PERCENT:
            batch_size = max(2, math.floor(max_concurrency * 0.75))
        return max(1, min(batch_size, max_concurrency, remaining))

    async def ensure_memory_available(self, priority: Priority = Priority.MEDIUM) -> None:
        """Pre-batch gate: reclaim when critical and stall lower priorities."""
        priority = Priority(priority)
        percent = self.usage_percent()

        if percent > CRITICAL_USAGE_PERCENT:
            logger.warning("Critical memory usage before batch",
                           usage_percent=round(percent, 1), priority=priority.value)
            self.reclaim()
            await asyncio.sleep(self.reclaim_delay)

            percent = self.usage_percent()
            if percent > POST_RECLAIM_STALL_PERCENT:
                if priority is Priority.LOW:
                    await asyncio.sleep(self.low_priority_stall)
                elif priority is Priority.MEDIUM:
                    await asyncio.sleep(self.medium_priority_stall)
        elif percent > HIGH_USAGE_PERCENT:
            logger.info("High memory usage before batch",
                        usage_percent=round(percent, 1), priority=priority.value)
            if priority is Priority.LOW:
                await asyncio.sleep(self.high_usage_stall)

    # =========================================================================
    # Processing
    # =========================================================================

    async def process_with_limit(self,
                                 items: Iterable[T],
                                 processor: Callable[[T], Awaitable[R]],
                                 max_concurrency: Optional[int] = None,
                                 priority: Priority = Priority.MEDIUM) -> List[Optional[R]]:
        """Process items in memory-aware sequential batches.

        A failing item yields None at its position; other items and later
        batches are unaffected.
        """
        items = list(items)
        max_concurrency = max_concurrency or self.default_concurrency
        run_id = uuid.uuid4().hex[:8]
        results: List[Optional[R]] = []
        index = 0
        batch_number = 0

        logger.info("Processing items with memory limit",
                    run_id=run_id, items=len(items), max_concurrency=max_concurrency)

        while index < len(items):
            if batch_number > 0:
                await asyncio.sleep(self.batch_delay)

            batch_id = f"batch-{run_id}-{batch_number}"
            self._active_batch_ids.add(batch_id)
            try:
                await self.ensure_memory_available(priority)
                batch_size = self.calculate_batch_size(len(items) - index, max_concurrency)
                batch = items[index:index + batch_size]

                logger.debug("Starting batch", batch_id=batch_id, batch_size=batch_size)
                batch_results = await asyncio.gather(*(
                    self._process_item(processor, item, f"{batch_id}-{i}")
                    for i, item in enumerate(batch)
                ))
                results.extend(batch_results)

                if self.get_memory_usage() > self.optimal_memory_bytes:
                    self.reclaim()
            finally:
                self._active_batch_ids.discard(batch_id)

            index += batch_size
            batch_number += 1

        return results

    async def _process_item(self, processor: Callable[[T], Awaitable[R]],
                            item: T, item_id: str) -> Optional[R]:
        try:
            return await processor(item)
        except Exception as e:
            logger.error("Error processing item", item_id=item_id, error=str(e))
            return None

    async def process_item_with_guard(self, item: T, processor: Callable[[T], Awaitable[R]],
                                      priority: Priority = Priority.MEDIUM) -> R:
        """Process a single item behind the memory gate. Errors propagate."""
        await self.ensure_memory_available(priority)

        item_id = f"item-{uuid.uuid4().hex[:8]}"
        self._active_batch_ids.add(item_id)
        try:
            return await processor(item)
        finally:
            self._active_batch_ids.discard(item_id)
            if self.get_memory_usage() > self.optimal_memory_bytes:
                self.reclaim()

    # =========================================================================
    # Telemetry
    # =========================================================================

    @property
    def active_processes(self) -> int:
        return len(self._active_batch_ids)

    @property
    def history(self) -> List[float]:
        return list(self._history)

    def get_usage(self) -> Dict[str, Any]:
        """Current usage with high / critical flags."""
        used = self.get_memory_usage()
        percent = (used / self.max_memory_bytes) * 100
        return {
            "used": used,
            "max_memory_usage": self.max_memory_bytes,
            "usage_percent": round(percent, 2),
            "active_processes": len(self._active_batch_ids),
            "is_memory_high": percent > HIGH_USAGE_PERCENT,
            "is_critical": percent > CRITICAL_USAGE_PERCENT,
        }

    def get_processing_stats(self) -> Dict[str, Any]:
        """Usage plus rolling history statistics."""
        history = list(self._history)
        avg = sum(history) / len(history) if history else 0.0
        return {
            "active_processes": len(self._active_batch_ids),
            "memory_usage": self.get_usage(),
            "avg_memory_usage": round(avg, 2),
            "memory_trend": round(self.get_trend(), 4),
            "recent_trend": round(self.get_trend(TREND_WINDOW), 4),
            "samples": len(history),
            "max_memory_usage": self.max_memory_bytes,
            "optimal_memory_usage": self.optimal_memory_bytes,
        }

    def cleanup(self) -> None:
        """Drop history and active tracking, then reclaim."""
        self._active_batch_ids.clear()
        self._history.clear()
        self.reclaim()
