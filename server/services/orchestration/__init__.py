"""AI service orchestration package.

Resource management for every call to external AI backends:
- Result cache with TTL expiry and memory-bounded eviction
- Per-service fixed-window rate limiting with a priority admission queue
- Memory-pressure batch scheduling with adaptive batch size
- Orchestrator composing the three into named operations and pipelines
"""

from .models import (
    Priority,
    AIOperationType,
    OperationState,
    CacheEntry,
    ServiceQuota,
    QueuedWork,
    OperationSpec,
    OperationResult,
    OperationRecord,
    CandidateData,
    hash_content,
    generate_cache_key,
    serialized_size,
)
from .exceptions import (
    OrchestrationError,
    ProviderFailure,
    UnknownOperation,
    OperationNotFound,
    OperationCancelled,
    InvalidPayload,
    AdmissionClosed,
)
from .cache import ResultCache
from .rate_limiter import RateLimiter
from .memory import MemoryScheduler
from .events import EventBus
from .providers import (
    DocumentExtractor,
    CompletionModel,
    EmbeddingModel,
    JobIndex,
    VideoAnalyzer,
    DataStore,
    Notifier,
    HttpAIGateway,
)
from .orchestrator import AIOrchestrator, OPERATION_SPECS, profile_to_text
from .tracker import OperationTracker

__all__ = [
    # Models
    "Priority",
    "AIOperationType",
    "OperationState",
    "CacheEntry",
    "ServiceQuota",
    "QueuedWork",
    "OperationSpec",
    "OperationResult",
    "OperationRecord",
    "CandidateData",
    "hash_content",
    "generate_cache_key",
    "serialized_size",
    # Exceptions
    "OrchestrationError",
    "ProviderFailure",
    "UnknownOperation",
    "OperationNotFound",
    "OperationCancelled",
    "InvalidPayload",
    "AdmissionClosed",
    # Components
    "ResultCache",
    "RateLimiter",
    "MemoryScheduler",
    "EventBus",
    # Collaborators
    "DocumentExtractor",
    "CompletionModel",
    "EmbeddingModel",
    "JobIndex",
    "VideoAnalyzer",
    "DataStore",
    "Notifier",
    "HttpAIGateway",
    # Orchestration
    "AIOrchestrator",
    "OPERATION_SPECS",
    "profile_to_text",
    "OperationTracker",
]
