"""Health reporting for the /health endpoint.

Process resources come from psutil; orchestration load comes from the cache,
rate limiter and memory scheduler owned by the orchestrator.
"""
import time
from typing import Any, Dict, List, TYPE_CHECKING

import psutil
from sqlalchemy import text

if TYPE_CHECKING:
    from core.cleanup import CleanupService
    from core.database import Database
    from services.orchestration import AIOrchestrator

_startup_time: float = 0.0


def set_startup_time() -> None:
    global _startup_time
    _startup_time = time.time()


def get_uptime() -> float:
    return time.time() - _startup_time if _startup_time else 0.0


def process_stats() -> Dict[str, float]:
    """Uptime, resident memory and disk usage of the working directory."""
    try:
        memory_mb = psutil.Process().memory_info().rss / (1024 * 1024)
    except psutil.Error:
        memory_mb = 0.0
    try:
        disk_percent = psutil.disk_usage(".").percent
    except (psutil.Error, OSError):
        disk_percent = 0.0
    return {
        "uptime_seconds": round(get_uptime(), 1),
        "memory_mb": round(memory_mb, 1),
        "disk_percent": round(disk_percent, 1),
    }


async def check_database(database: "Database") -> bool:
    try:
        async with database.get_session() as session:
            await session.execute(text("SELECT 1"))
        return True
    except Exception:
        return False


def orchestration_load(orchestrator: "AIOrchestrator") -> Dict[str, Any]:
    memory = orchestrator.memory_scheduler.get_usage()
    return {
        "cache_entries": len(orchestrator.cache),
        "cache_hit_rate": orchestrator.cache.get_hit_rate(),
        "queue_size": orchestrator.rate_limiter.queue_size,
        "active_jobs": orchestrator.rate_limiter.get_active_jobs(),
        "memory_usage_percent": memory["usage_percent"],
        "memory_critical": memory["is_critical"],
    }


async def get_health_status(
    database: "Database",
    orchestrator: "AIOrchestrator",
    cleanup: "CleanupService",
) -> Dict[str, Any]:
    """Overall status is "degraded" when any entry of `problems` is present."""
    db_healthy = await check_database(database)
    load = orchestration_load(orchestrator)

    problems: List[str] = []
    if not db_healthy:
        problems.append("database_unreachable")
    if load["memory_critical"]:
        problems.append("memory_critical")

    return {
        "status": "degraded" if problems else "healthy",
        "problems": problems,
        **process_stats(),
        "checks": {
            "database": db_healthy,
            "memory_critical": load.pop("memory_critical"),
        },
        "orchestration": load,
        "cleanup": cleanup.get_status(),
    }
