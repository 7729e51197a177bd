"""Rate limiter and priority admission queue for AI service calls.

Every provider call is submitted as a QueuedWork item. The admission pass
takes items in (priority desc, submitted_at asc) order and admits each one
whose service is under its fixed-window quota. A request is counted against
the window when it starts, not when it finishes.

The pass stops at the first item whose service is at quota, even if items
behind it target services with headroom (head-of-line blocking). A wake-up
is scheduled for the moment that window resets.
"""

import asyncio
import heapq
import itertools
import time
import uuid
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple, TypeVar

from core.logging import get_logger, log_admission
from .exceptions import AdmissionClosed
from .models import Priority, QueuedWork, ServiceQuota

logger = get_logger(__name__)

T = TypeVar("T")

# Slack added to window-reset wake-ups so the reset check sees the window elapsed
WAKE_SLACK_SECONDS = 0.005


class RateLimiter:
    """Per-service quota tracker with a priority-ordered pending queue."""

    def __init__(self,
                 quotas: Optional[Dict[str, Tuple[int, int]]] = None,
                 tick_interval: float = 0.1,
                 poll_interval: float = 1.0,
                 batch_window: float = 0.1):
        """Initialize rate limiter.

        Args:
            quotas: service -> (window_size_ms, max_requests). Services not
                listed here are never limited.
            tick_interval: Seconds between background admission passes
            poll_interval: Seconds between checks in wait_for_availability
            batch_window: Seconds a batch_request group accumulates before running
        """
        self.tick_interval = tick_interval
        self.poll_interval = poll_interval
        self.batch_window = batch_window

        self._quotas: Dict[str, ServiceQuota] = {
            name: ServiceQuota(service_name=name, window_size_ms=window_ms, max_requests=max_requests)
            for name, (window_ms, max_requests) in (quotas or {}).items()
        }
        self._queue: List[QueuedWork] = []
        self._sequence = itertools.count()
        self._active_requests: Dict[str, int] = {}
        self._processing = False
        self._pass_scheduled = False
        self._wake_handle: Optional[asyncio.TimerHandle] = None
        self._inflight: Set[asyncio.Task] = set()
        self._batches: Dict[str, List[Tuple[Callable[[], Awaitable[Any]], asyncio.Future]]] = {}

        self._running = False
        self._task: Optional[asyncio.Task] = None

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        """Start the background admission ticker."""
        if self._running:
            logger.warning("Rate limiter already running")
            return
        self._running = True
        self._task = asyncio.create_task(self._tick_loop())
        logger.info("Rate limiter started",
                    services=list(self._quotas.keys()),
                    tick_interval=self.tick_interval)

    async def stop(self) -> None:
        """Stop the ticker and settle all outstanding work.

        Queued and coalesced callers get AdmissionClosed; admitted work is
        cancelled and awaited.
        """
        self._running = False
        if self._wake_handle:
            self._wake_handle.cancel()
            self._wake_handle = None
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        abandoned = self._reject_pending()

        for task in list(self._inflight):
            task.cancel()
        if self._inflight:
            await asyncio.gather(*self._inflight, return_exceptions=True)
        self._inflight.clear()
        logger.info("Rate limiter stopped", abandoned=abandoned)

    def _reject_pending(self) -> int:
        rejected = 0
        while self._queue:
            work = heapq.heappop(self._queue)
            if not work.future.done():
                work.future.set_exception(AdmissionClosed(work.service_name))
                rejected += 1
        for batch_key, batch in list(self._batches.items()):
            rejected += self._reject_batch(batch_key.removeprefix("batch-"), batch)
        self._batches.clear()
        return rejected

    @staticmethod
    def _reject_batch(service: str, batch: List[Tuple[Callable[[], Awaitable[Any]], asyncio.Future]]) -> int:
        rejected = 0
        for _, future in batch:
            if not future.done():
                future.set_exception(AdmissionClosed(service))
                rejected += 1
        return rejected

    async def _tick_loop(self) -> None:
        while self._running:
            try:
                self.process_queue()
            except Exception as e:
                logger.error("Admission pass failed", error=str(e))
            await asyncio.sleep(self.tick_interval)

    # =========================================================================
    # Submission
    # =========================================================================

    def submit(self, service: str, operation: Callable[[], Awaitable[T]],
               priority: Priority = Priority.MEDIUM) -> "asyncio.Future[T]":
        """Queue an operation for admission against a service quota.

        Returns immediately with a future that resolves to the operation's
        result or raises its exception. Failed operations are not retried.
        """
        loop = asyncio.get_running_loop()
        priority = Priority(priority)
        work = QueuedWork(
            id=f"{service}-{uuid.uuid4().hex[:12]}",
            service_name=service,
            priority=priority,
            operation=operation,
            future=loop.create_future(),
            sequence=next(self._sequence),
        )
        heapq.heappush(self._queue, work)
        logger.debug("Request queued", request_id=work.id, service=service,
                     priority=priority.value, queue_size=len(self._queue))
        self._schedule_pass()
        return work.future

    def _schedule_pass(self) -> None:
        """Run an admission pass on the next loop iteration.

        Submissions made in the same iteration are admitted together, in
        priority order.
        """
        if self._pass_scheduled:
            return
        self._pass_scheduled = True
        asyncio.get_running_loop().call_soon(self._scheduled_pass)

    def _scheduled_pass(self) -> None:
        self._pass_scheduled = False
        self.process_queue()

    def _schedule_wake(self, delay: float) -> None:
        if self._wake_handle and not self._wake_handle.cancelled():
            self._wake_handle.cancel()
        self._wake_handle = asyncio.get_running_loop().call_later(
            delay + WAKE_SLACK_SECONDS, self._scheduled_pass)

    # =========================================================================
    # Admission
    # =========================================================================

    def process_queue(self) -> int:
        """Admit queued work until the queue is empty or the head is at quota.

        Re-entrant calls while a pass is active are no-ops.

        Returns:
            Number of items admitted in this pass
        """
        if self._processing or not self._queue:
            return 0

        self._processing = True
        admitted = 0
        try:
            while self._queue:
                work = self._queue[0]

                # Caller stopped waiting before admission
                if work.future.done():
                    heapq.heappop(self._queue)
                    continue

                quota = self._quotas.get(work.service_name)
                if quota and quota.is_limited():
                    logger.debug("Service at quota, admission paused",
                                 service=work.service_name,
                                 queue_size=len(self._queue),
                                 reset_in=round(quota.time_to_reset(), 3))
                    self._schedule_wake(quota.time_to_reset())
                    break

                heapq.heappop(self._queue)
                self._record_request(work.service_name)
                log_admission(logger, work.service_name, work.priority.value,
                              work.submitted_at, time.time(), request_id=work.id)
                task = asyncio.ensure_future(self._execute(work))
                self._inflight.add(task)
                task.add_done_callback(self._inflight.discard)
                admitted += 1
        finally:
            self._processing = False
        return admitted

    def _record_request(self, service: str) -> None:
        quota = self._quotas.get(service)
        if quota:
            quota.record()
        self._active_requests[service] = self._active_requests.get(service, 0) + 1

    async def _execute(self, work: QueuedWork) -> None:
        start = time.time()
        try:
            result = await work.operation()
        except asyncio.CancelledError:
            if not work.future.done():
                work.future.set_exception(AdmissionClosed(work.service_name))
            raise
        except Exception as e:
            logger.warning("Queued request failed", request_id=work.id,
                           service=work.service_name, error=str(e))
            if not work.future.done():
                work.future.set_exception(e)
        else:
            if not work.future.done():
                work.future.set_result(result)
            logger.debug("Queued request completed", request_id=work.id,
                         service=work.service_name,
                         duration_seconds=round(time.time() - start, 4))
        finally:
            self._active_requests[work.service_name] = max(
                0, self._active_requests.get(work.service_name, 0) - 1)

    # =========================================================================
    # Self-throttling
    # =========================================================================

    def is_limited(self, service: str) -> bool:
        """Check if a service is at its quota for the current window."""
        quota = self._quotas.get(service)
        if not quota:
            return False
        return quota.is_limited()

    async def wait_for_availability(self, service: str) -> None:
        """Block until the service is under quota, polling at a fixed interval."""
        while self.is_limited(service):
            await asyncio.sleep(self.poll_interval)

    # =========================================================================
    # Batch coalescing
    # =========================================================================

    async def batch_request(self, service: str, operation: Callable[[], Awaitable[T]]) -> T:
        """Group calls to the same service that arrive within the batch window.

        The group runs as one admission against the service quota. Each caller
        receives its own operation's result, or the group's first failure if
        any operation in the group fails.
        """
        loop = asyncio.get_running_loop()
        batch_key = f"batch-{service}"
        if batch_key not in self._batches:
            self._batches[batch_key] = []
            loop.call_later(self.batch_window,
                            lambda: self._spawn(self._process_batch(service, batch_key)))

        future = loop.create_future()
        self._batches[batch_key].append((operation, future))
        return await future

    def _spawn(self, coro: Awaitable[Any]) -> None:
        task = asyncio.ensure_future(coro)
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)

    async def _process_batch(self, service: str, batch_key: str) -> None:
        batch = self._batches.pop(batch_key, [])
        if not batch:
            return

        try:
            await self.wait_for_availability(service)
        except asyncio.CancelledError:
            self._reject_batch(service, batch)
            raise
        self._record_request(service)
        logger.debug("Processing coalesced batch", service=service, size=len(batch))
        try:
            results = await asyncio.gather(*(operation() for operation, _ in batch))
        except asyncio.CancelledError:
            self._reject_batch(service, batch)
            raise
        except Exception as e:
            logger.warning("Coalesced batch failed", service=service, size=len(batch), error=str(e))
            for _, future in batch:
                if not future.done():
                    future.set_exception(e)
        else:
            for (_, future), result in zip(batch, results):
                if not future.done():
                    future.set_result(result)
        finally:
            self._active_requests[service] = max(0, self._active_requests.get(service, 0) - 1)

    # =========================================================================
    # Status
    # =========================================================================

    def get_status(self) -> Dict[str, Any]:
        """Point-in-time quota and queue status."""
        services = {}
        for name, quota in self._quotas.items():
            quota.reset_if_elapsed()
            services[name] = {
                "requests_in_window": quota.requests_in_window,
                "max_requests": quota.max_requests,
                "remaining": quota.remaining(),
                "reset_time": quota.reset_time,
                "is_limited": quota.requests_in_window >= quota.max_requests,
                "active_requests": self._active_requests.get(name, 0),
            }

        pending = [w for w in self._queue if not w.future.done()]
        return {
            "services": services,
            "queue_size": len(pending),
            "queue_by_priority": {
                p.value: sum(1 for w in pending if w.priority is p) for p in Priority
            },
        }

    def get_service_stats(self) -> Dict[str, Any]:
        """Per-service utilisation and time until the window resets."""
        stats = {}
        for name, quota in self._quotas.items():
            stats[name] = {
                "requests_in_window": quota.requests_in_window,
                "max_requests": quota.max_requests,
                "utilization": round(quota.requests_in_window / quota.max_requests * 100, 2),
                "active_requests": self._active_requests.get(name, 0),
                "window_size_ms": quota.window_size_ms,
                "time_to_reset_ms": int(quota.time_to_reset() * 1000),
            }
        return stats

    def get_quota(self, service: str) -> Optional[ServiceQuota]:
        """Read-only view of a service quota."""
        return self._quotas.get(service)

    def get_active_jobs(self) -> int:
        """Number of admitted operations still executing."""
        return sum(self._active_requests.values())

    @property
    def queue_size(self) -> int:
        return len(self._queue)

    def clear_limits(self) -> None:
        """Reset every window and active count."""
        now = time.time()
        for quota in self._quotas.values():
            quota.requests_in_window = 0
            quota.window_start = now
        self._active_requests.clear()
