"""Memory scheduler: adaptive batch size, admission gate and monitor."""

import asyncio
import time

import pytest

from services.orchestration import Priority


@pytest.mark.parametrize("percent, expected", [
    (50.0, 8),
    (70.0, 6),
    (85.0, 4),
])
def test_batch_size_shrinks_with_usage(make_scheduler, usage, percent, expected):
    usage.percent = percent
    scheduler = make_scheduler()

    assert scheduler.calculate_batch_size(100, 8) == expected


def test_batch_size_bounds(make_scheduler, usage):
    scheduler = make_scheduler()

    usage.percent = 95.0
    assert scheduler.calculate_batch_size(100, 1) == 1
    usage.percent = 65.0
    # max(2, floor(0.75)) is capped back to the concurrency limit
    assert scheduler.calculate_batch_size(100, 1) == 1
    usage.percent = 10.0
    assert scheduler.calculate_batch_size(3, 8) == 3


async def test_high_usage_runs_small_batches(make_scheduler, usage):
    usage.percent = 82.0
    scheduler = make_scheduler()
    sizes = []
    original = scheduler.calculate_batch_size

    def recording(remaining, max_concurrency):
        size = original(remaining, max_concurrency)
        sizes.append(size)
        return size

    scheduler.calculate_batch_size = recording
    running = 0
    peak = 0

    async def processor(item):
        nonlocal running, peak
        running += 1
        peak = max(peak, running)
        await asyncio.sleep(0)
        running -= 1
        return item * 2

    results = await scheduler.process_with_limit(list(range(20)), processor, max_concurrency=5)

    assert results == [i * 2 for i in range(20)]
    assert all(size <= 2 for size in sizes)
    assert len(sizes) >= 4
    assert peak <= 2


async def test_failed_item_yields_none(make_scheduler):
    scheduler = make_scheduler()

    async def processor(item):
        if item == 2:
            raise RuntimeError("bad item")
        return item

    results = await scheduler.process_with_limit([0, 1, 2, 3], processor, max_concurrency=2)

    assert results == [0, 1, None, 3]
    assert scheduler.active_processes == 0


async def test_critical_usage_reclaims_before_batch(make_scheduler, usage):
    usage.percent = 95.0
    usage.after_reclaim = 40.0
    scheduler = make_scheduler(low_priority_stall=5.0)

    start = time.time()
    await scheduler.ensure_memory_available(Priority.LOW)

    assert usage.reclaims == 1
    # Usage dropped below the stall level, so no stall
    assert time.time() - start < 1.0


async def test_critical_usage_stalls_by_priority(make_scheduler, usage):
    usage.percent = 95.0
    scheduler = make_scheduler(low_priority_stall=0.2, medium_priority_stall=0.1)

    start = time.time()
    await scheduler.ensure_memory_available(Priority.LOW)
    low_elapsed = time.time() - start

    start = time.time()
    await scheduler.ensure_memory_available(Priority.HIGH)
    high_elapsed = time.time() - start

    assert low_elapsed >= 0.19
    assert high_elapsed < 0.1
    assert usage.reclaims == 2


async def test_high_usage_stalls_only_low_priority(make_scheduler, usage):
    usage.percent = 80.0
    scheduler = make_scheduler(high_usage_stall=0.1)

    start = time.time()
    await scheduler.ensure_memory_available(Priority.MEDIUM)
    assert time.time() - start < 0.1

    start = time.time()
    await scheduler.ensure_memory_available(Priority.LOW)
    assert time.time() - start >= 0.09
    assert usage.reclaims == 0


async def test_reclaims_after_batch_above_optimal(make_scheduler, usage):
    usage.percent = 30.0
    scheduler = make_scheduler(optimal_memory_bytes=100)

    async def processor(item):
        return item

    await scheduler.process_with_limit([1, 2, 3], processor, max_concurrency=3)

    assert usage.reclaims == 1


def test_monitor_reclaims_on_upward_trend(make_scheduler, usage):
    scheduler = make_scheduler(monitor_interval=6.0)

    for step in range(11):
        usage.percent = 60.0 + step * 2
        scheduler.sample()

    # Last ten samples rise 18 points over one minute while above 70%
    assert scheduler.get_trend(10) == pytest.approx(18.0)
    assert usage.reclaims >= 1


def test_monitor_reclaims_above_ceiling(make_scheduler, usage):
    scheduler = make_scheduler()
    usage.percent = 96.0

    scheduler.sample()

    assert usage.reclaims == 1


def test_history_is_capped(make_scheduler, usage):
    scheduler = make_scheduler(history_size=5)
    for _ in range(8):
        scheduler.sample()

    assert len(scheduler.history) == 5


def test_usage_report(make_scheduler, usage):
    usage.percent = 92.0
    scheduler = make_scheduler()

    report = scheduler.get_usage()

    assert report["usage_percent"] == 92.0
    assert report["is_memory_high"] is True
    assert report["is_critical"] is True
    assert scheduler.get_processing_stats()["max_memory_usage"] == usage.max_bytes


async def test_guarded_item_propagates_errors(make_scheduler):
    scheduler = make_scheduler()

    async def double(x):
        return x * 2

    async def broken(x):
        raise ValueError("bad item")

    assert await scheduler.process_item_with_guard(4, double) == 8
    with pytest.raises(ValueError):
        await scheduler.process_item_with_guard(4, broken)
    assert scheduler.active_processes == 0


async def test_stop_clears_history(make_scheduler, usage):
    scheduler = make_scheduler()
    scheduler.sample()
    await scheduler.start()

    await scheduler.stop()

    assert scheduler.history == []
    assert usage.reclaims == 1
