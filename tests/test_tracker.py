"""Operation tracker: lifecycle, persistence, delivery and cancellation."""

import asyncio

import pytest

from services.orchestration import (
    OperationCancelled,
    OperationNotFound,
    OperationTracker,
    UnknownOperation,
)


async def test_operation_completes_and_is_persisted(tracker, datastore, notifier):
    operation_id = await tracker.start_operation("embedding", {"text": "hello"}, user_id="u-1")
    assert operation_id.startswith("ai_")

    status = await tracker.wait(operation_id, timeout=2)
    await tracker.shutdown()

    assert status["status"] == "completed"
    assert status["progress"] == 100
    assert status["result"] == [5.0, 5.0, 5.0, 5.0]
    assert status["completed_at"] is not None
    assert datastore.records[f"ai_operation:{operation_id}"]["status"] == "completed"

    delivered = [payload["status"] for user, event, payload in notifier.delivered]
    assert delivered == ["pending", "in_progress", "completed"]
    assert {user for user, _, _ in notifier.delivered} == {"u-1"}
    assert {event for _, event, _ in notifier.delivered} == {"ai_processing_update"}


async def test_second_identical_operation_reports_cache_hit(tracker):
    first = await tracker.start_operation("embedding", {"text": "hello"})
    await tracker.wait(first, timeout=2)
    second = await tracker.start_operation("embedding", {"text": "hello"})

    status = await tracker.wait(second, timeout=2)

    assert status["cache_hit"] is True


async def test_without_user_nothing_is_delivered(tracker, notifier):
    operation_id = await tracker.start_operation("embedding", {"text": "x"})
    await tracker.wait(operation_id, timeout=2)
    await tracker.shutdown()

    assert notifier.delivered == []


async def test_failed_operation_records_error(tracker, gateway):
    gateway.fail_next["generate_json"] = RuntimeError("model overloaded")

    operation_id = await tracker.start_operation("bias_detection", {"data": {"rows": 3}})
    status = await tracker.wait(operation_id, timeout=2)

    assert status["status"] == "failed"
    assert "model overloaded" in status["error"]


async def test_invalid_payload_fails_operation(tracker):
    operation_id = await tracker.start_operation("video_analysis", {})
    status = await tracker.wait(operation_id, timeout=2)

    assert status["status"] == "failed"
    assert "video_uri" in status["error"]


async def test_unknown_type_rejected_up_front(tracker):
    with pytest.raises(UnknownOperation):
        await tracker.start_operation("translate", {})


async def test_cancel_is_local_and_discards_result(tracker, gateway):
    gateway.gate = asyncio.Event()
    operation_id = await tracker.start_operation("embedding", {"text": "slow"})
    await asyncio.sleep(0.01)

    cancelled = await tracker.cancel(operation_id)
    assert cancelled["status"] == "cancelled"
    with pytest.raises(OperationCancelled):
        await tracker.wait(operation_id, timeout=1)

    # The provider call was not aborted and still completes
    gateway.gate.set()
    await asyncio.sleep(0.05)

    assert gateway.calls["embed"] == 1
    assert (await tracker.get_status(operation_id))["status"] == "cancelled"


async def test_cancel_before_task_starts_stays_cancelled(tracker, gateway, datastore, notifier):
    operation_id = await tracker.start_operation("embedding", {"text": "fast"}, user_id="u-1")
    cancelled = await tracker.cancel(operation_id)
    assert cancelled["status"] == "cancelled"

    await asyncio.sleep(0.2)

    assert (await tracker.get_status(operation_id))["status"] == "cancelled"
    assert "embed" not in gateway.calls
    assert tracker.orchestrator.rate_limiter.get_status()["services"]["embeddings"]["requests_in_window"] == 0
    assert datastore.records[f"ai_operation:{operation_id}"]["status"] == "cancelled"
    assert [payload["status"] for _, _, payload in notifier.delivered] == ["pending", "cancelled"]


async def test_cancel_terminal_operation_is_noop(tracker):
    operation_id = await tracker.start_operation("embedding", {"text": "done"})
    await tracker.wait(operation_id, timeout=2)

    status = await tracker.cancel(operation_id)

    assert status["status"] == "completed"


async def test_status_falls_back_to_datastore(tracker, orchestrator, datastore):
    operation_id = await tracker.start_operation("embedding", {"text": "persisted"})
    await tracker.wait(operation_id, timeout=2)

    fresh = OperationTracker(orchestrator, datastore=datastore)
    status = await fresh.get_status(operation_id)

    assert status["status"] == "completed"
    with pytest.raises(OperationNotFound):
        await fresh.get_status("ai_0_missing")
    with pytest.raises(OperationNotFound):
        await fresh.cancel("ai_0_missing")


async def test_datastore_failure_does_not_fail_operation(orchestrator):
    class BrokenStore:
        async def persist(self, key, record):
            raise ConnectionError("db down")

        async def fetch(self, key):
            return None

    tracker = OperationTracker(orchestrator, datastore=BrokenStore())
    operation_id = await tracker.start_operation("embedding", {"text": "x"})

    status = await tracker.wait(operation_id, timeout=2)

    assert status["status"] == "completed"


async def test_stats_and_prune(tracker):
    operation_id = await tracker.start_operation("embedding", {"text": "x"})
    await tracker.wait(operation_id, timeout=2)

    stats = tracker.get_stats()
    assert stats["operations"]["completed"] == 1
    assert "cache" in stats and "rate_limit" in stats

    assert tracker.prune(max_age_seconds=3600) == 0
    assert tracker.prune(max_age_seconds=-1) == 1
    assert tracker.get_stats()["operations"]["completed"] == 0
