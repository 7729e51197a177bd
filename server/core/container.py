"""Dependency injection container for the application."""

from dependency_injector import containers, providers

from core.config import Settings
from core.database import Database
from core.cleanup import CleanupService
from services.status_broadcaster import StatusBroadcaster
from services.orchestration import (
    AIOrchestrator,
    EventBus,
    HttpAIGateway,
    MemoryScheduler,
    OperationTracker,
    RateLimiter,
    ResultCache,
)


class Container(containers.DeclarativeContainer):
    """Application dependency injection container."""

    # Settings
    settings = providers.Singleton(
        Settings,
    )

    # Database (operation status persistence)
    database = providers.Singleton(
        Database,
        settings=settings
    )

    # WebSocket delivery of operation updates
    broadcaster = providers.Singleton(
        StatusBroadcaster
    )

    # AI backends behind one HTTP gateway
    gateway = providers.Singleton(
        HttpAIGateway,
        settings=settings
    )

    event_bus = providers.Singleton(
        EventBus
    )

    # Resource management
    cache = providers.Singleton(
        ResultCache,
        max_memory_bytes=settings.provided.cache_max_memory_bytes,
        max_item_bytes=settings.provided.cache_max_item_bytes,
        default_ttl=settings.provided.cache_default_ttl,
        sweep_interval=settings.provided.cache_sweep_interval,
        pressure_interval=settings.provided.cache_pressure_interval,
        pressure_threshold=settings.provided.cache_pressure_threshold,
    )

    rate_limiter = providers.Singleton(
        RateLimiter,
        quotas=settings.provided.service_quotas,
        tick_interval=settings.provided.rate_limit_tick_interval,
        poll_interval=settings.provided.rate_limit_poll_interval,
        batch_window=settings.provided.rate_limit_batch_window,
    )

    memory_scheduler = providers.Singleton(
        MemoryScheduler,
        max_memory_bytes=settings.provided.memory_max_bytes,
        optimal_memory_bytes=settings.provided.memory_optimal_bytes,
        monitor_interval=settings.provided.memory_monitor_interval,
        history_size=settings.provided.memory_history_size,
        reclaim_delay=settings.provided.memory_reclaim_delay,
        low_priority_stall=settings.provided.memory_low_priority_stall,
        medium_priority_stall=settings.provided.memory_medium_priority_stall,
        high_usage_stall=settings.provided.memory_high_usage_stall,
        batch_delay=settings.provided.memory_batch_delay,
        default_concurrency=settings.provided.memory_default_concurrency,
    )

    # Orchestration
    orchestrator = providers.Singleton(
        AIOrchestrator,
        cache=cache,
        rate_limiter=rate_limiter,
        memory_scheduler=memory_scheduler,
        extractor=gateway,
        completion=gateway,
        embedder=gateway,
        job_index=gateway,
        video_analyzer=gateway,
        events=event_bus,
    )

    tracker = providers.Singleton(
        OperationTracker,
        orchestrator=orchestrator,
        datastore=database,
        notifier=broadcaster,
    )

    cleanup_service = providers.Singleton(
        CleanupService,
        database=database,
        tracker=tracker,
        settings=settings
    )


# Global container instance
container = Container()
