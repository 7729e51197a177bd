"""Periodic pruning of tracker memory and stored status records."""

import asyncio

from core.cleanup import CleanupService
from core.config import Settings


class FakeTracker:
    def __init__(self):
        self.pruned_with = []

    def prune(self, max_age_seconds):
        self.pruned_with.append(max_age_seconds)
        return 2


class FakeDatabase:
    def __init__(self):
        self.calls = []

    async def cleanup_old_records(self, max_age_hours=24):
        self.calls.append(max_age_hours)
        return 3


async def test_run_once_prunes_both_stores():
    tracker, database = FakeTracker(), FakeDatabase()
    service = CleanupService(database, tracker, Settings(cleanup_tracker_max_age=120.0,
                                                         cleanup_max_age_hours=6))

    assert await service.run_once() == {"tracker_records": 2, "stored_records": 3}
    assert tracker.pruned_with == [120.0]
    assert database.calls == [6]

    status = service.get_status()
    assert status["runs"] == 1
    assert status["last_result"] == {"tracker_records": 2, "stored_records": 3}
    assert status["running"] is False


async def test_loop_runs_on_interval_and_stops():
    tracker, database = FakeTracker(), FakeDatabase()
    service = CleanupService(database, tracker, Settings(cleanup_interval=1))
    service.settings.cleanup_interval = 0.01

    await service.start()
    assert service.running
    await asyncio.sleep(0.1)
    await service.stop()

    assert len(database.calls) >= 1
    assert not service.running


async def test_stop_does_not_wait_for_interval():
    service = CleanupService(FakeDatabase(), FakeTracker(), Settings(cleanup_interval=3600))

    await service.start()
    await asyncio.wait_for(service.stop(), timeout=1.0)

    assert service.get_status()["runs"] == 0


async def test_failed_pass_keeps_loop_alive():
    class BrokenDatabase(FakeDatabase):
        async def cleanup_old_records(self, max_age_hours=24):
            self.calls.append(max_age_hours)
            raise RuntimeError("disk full")

    database = BrokenDatabase()
    service = CleanupService(database, FakeTracker(), Settings(cleanup_interval=1))
    service.settings.cleanup_interval = 0.01

    await service.start()
    await asyncio.sleep(0.1)
    assert service.running
    await service.stop()

    assert len(database.calls) >= 2
