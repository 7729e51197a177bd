"""Operation tracker: caller-facing start / status / cancel surface.

Each started operation runs in its own task. Every status transition is
persisted to the datastore and pushed to the owning user through the
notifier. Persistence and delivery are best-effort and never fail the
operation.

Cancel is local: the record is marked cancelled and the tracker stops
waiting, but an admitted provider call keeps running to completion.
"""

import asyncio
import time
import uuid
from typing import Any, Dict, Optional, Set, Union

from core.logging import get_logger, operation_context
from .exceptions import OperationCancelled, OperationNotFound, UnknownOperation
from .models import AIOperationType, OperationRecord, OperationState, Priority
from .orchestrator import AIOrchestrator
from .providers import DataStore, Notifier

logger = get_logger(__name__)

STATUS_EVENT = "ai_processing_update"
STATUS_KEY_PREFIX = "ai_operation"


class OperationTracker:
    """Tracks AI operations started by callers through their lifecycle."""

    def __init__(self, orchestrator: AIOrchestrator,
                 datastore: Optional[DataStore] = None,
                 notifier: Optional[Notifier] = None):
        self.orchestrator = orchestrator
        self.datastore = datastore
        self.notifier = notifier
        self._records: Dict[str, OperationRecord] = {}
        self._tasks: Dict[str, asyncio.Task] = {}
        self._settled: Dict[str, asyncio.Event] = {}
        self._background: Set[asyncio.Task] = set()

    async def start_operation(self, operation_type: Union[str, AIOperationType],
                              payload: Dict[str, Any],
                              priority: Union[str, Priority, None] = None,
                              user_id: Optional[str] = None) -> str:
        """Start an AI operation in the background.

        Returns:
            operation_id for get_status / cancel
        """
        try:
            op_type = AIOperationType(operation_type)
        except ValueError:
            raise UnknownOperation(str(operation_type))
        priority = Priority(priority) if priority else None

        operation_id = f"ai_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"
        record = OperationRecord(
            id=operation_id,
            type=op_type.value,
            user_id=user_id,
            priority=priority or Priority.MEDIUM,
        )
        self._records[operation_id] = record
        self._settled[operation_id] = asyncio.Event()
        await self._publish(record)

        task = asyncio.create_task(self._run(record, op_type, payload, priority))
        self._tasks[operation_id] = task
        task.add_done_callback(lambda _: self._tasks.pop(operation_id, None))

        logger.info("AI operation started", operation_id=operation_id,
                    operation_type=op_type.value, user_id=user_id)
        return operation_id

    async def _run(self, record: OperationRecord, op_type: AIOperationType,
                   payload: Dict[str, Any], priority: Optional[Priority]) -> None:
        with operation_context(record.id, op_type.value, record.user_id):
            await self._execute(record, op_type, payload, priority)

    async def _execute(self, record: OperationRecord, op_type: AIOperationType,
                       payload: Dict[str, Any], priority: Optional[Priority]) -> None:
        # Cancelled before the task first ran; no provider call, no quota
        if record.status.is_terminal:
            logger.debug("Operation settled before it started", status=record.status.value)
            return
        await self._update(record, status=OperationState.IN_PROGRESS, progress=10, stage="queued")
        if record.status is OperationState.CANCELLED:
            return
        try:
            result = await self.orchestrator.run_operation(
                op_type, payload, priority=priority, operation_id=record.id)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if record.status is OperationState.CANCELLED:
                return
            await self._update(record, status=OperationState.FAILED, stage="failed", error=str(e))
            return

        if record.status is OperationState.CANCELLED:
            logger.debug("Result for cancelled operation discarded", operation_id=record.id)
            return
        await self._update(record, status=OperationState.COMPLETED, progress=100,
                           stage="completed", result=result.value, cache_hit=result.cache_hit)

    async def _update(self, record: OperationRecord, **updates: Any) -> None:
        for name, value in updates.items():
            setattr(record, name, value)
        if record.status.is_terminal and record.completed_at is None:
            record.completed_at = time.time()
        await self._publish(record)
        settled = self._settled.get(record.id)
        if settled is not None and record.status.is_terminal:
            settled.set()

    async def _publish(self, record: OperationRecord) -> None:
        data = record.to_dict()
        if self.datastore is not None:
            try:
                await self.datastore.persist(f"{STATUS_KEY_PREFIX}:{record.id}", data)
            except Exception as e:
                logger.warning("Failed to persist operation status",
                               operation_id=record.id, error=str(e))
        if self.notifier is not None and record.user_id:
            self._deliver(record.user_id, data)

    def _deliver(self, user_id: str, data: Dict[str, Any]) -> None:
        """Fire-and-forget delivery to the user."""
        async def send():
            try:
                await self.notifier.deliver(user_id, STATUS_EVENT, data)
            except Exception as e:
                logger.warning("Failed to deliver operation update",
                               user_id=user_id, operation_id=data.get("id"), error=str(e))

        task = asyncio.ensure_future(send())
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def get_status(self, operation_id: str) -> Dict[str, Any]:
        """Current status, from memory or the datastore."""
        record = self._records.get(operation_id)
        if record is not None:
            return record.to_dict()

        if self.datastore is not None:
            data = await self.datastore.fetch(f"{STATUS_KEY_PREFIX}:{operation_id}")
            if data:
                return OperationRecord.from_dict(data).to_dict()

        raise OperationNotFound(operation_id)

    async def cancel(self, operation_id: str) -> Dict[str, Any]:
        """Mark an operation cancelled and stop waiting for it.

        Terminal operations are returned unchanged.
        """
        record = self._records.get(operation_id)
        if record is None:
            raise OperationNotFound(operation_id)
        if record.status.is_terminal:
            return record.to_dict()

        await self._update(record, status=OperationState.CANCELLED, stage="cancelled")
        logger.info("AI operation cancelled", operation_id=operation_id)
        return record.to_dict()

    async def wait(self, operation_id: str, timeout: Optional[float] = None) -> Dict[str, Any]:
        """Wait for a running operation to settle and return its status.

        Raises:
            OperationCancelled: the operation was cancelled before it settled
        """
        settled = self._settled.get(operation_id)
        if settled is not None:
            await asyncio.wait_for(settled.wait(), timeout)

        status = await self.get_status(operation_id)
        if status["status"] == OperationState.CANCELLED.value:
            raise OperationCancelled(operation_id)
        return status

    def get_stats(self) -> Dict[str, Any]:
        """Orchestrator stats plus tracked operation counts."""
        by_status: Dict[str, int] = {state.value: 0 for state in OperationState}
        for record in self._records.values():
            by_status[record.status.value] += 1
        return {
            **self.orchestrator.get_stats(),
            "operations": by_status,
        }

    def prune(self, max_age_seconds: float = 3600) -> int:
        """Forget terminal records older than max_age_seconds.

        They stay readable through the datastore.
        """
        cutoff = time.time() - max_age_seconds
        stale = [
            op_id for op_id, r in self._records.items()
            if r.status.is_terminal and r.completed_at is not None and r.completed_at < cutoff
        ]
        for op_id in stale:
            del self._records[op_id]
            self._settled.pop(op_id, None)
        return len(stale)

    async def shutdown(self) -> None:
        """Wait for pending notifier deliveries."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
