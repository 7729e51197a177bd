"""Orchestration state models.

Plain dataclasses owned by exactly one component each: CacheEntry by the
result cache, ServiceQuota and QueuedWork by the rate limiter, OperationRecord
by the operation tracker. Records that leave the process are JSON-serializable.
"""

import asyncio
import hashlib
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Generic, Optional, TypeVar

import orjson

from constants import (
    OP_BIAS_DETECTION,
    OP_CANDIDATE_COMPLETE,
    OP_EMBEDDING,
    OP_JOB_DESCRIPTION,
    OP_JOB_MATCHING,
    OP_RESUME_ANALYSIS,
    OP_SKILL_EXTRACTION,
    OP_VIDEO_ANALYSIS,
)

T = TypeVar("T")


class Priority(str, Enum):
    """Request priority. Higher rank is admitted first."""
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {Priority.HIGH: 3, Priority.MEDIUM: 2, Priority.LOW: 1}


class AIOperationType(str, Enum):
    """Named AI capabilities exposed by the orchestrator."""
    RESUME_ANALYSIS = OP_RESUME_ANALYSIS
    SKILL_EXTRACTION = OP_SKILL_EXTRACTION
    EMBEDDING = OP_EMBEDDING
    JOB_MATCHING = OP_JOB_MATCHING
    VIDEO_ANALYSIS = OP_VIDEO_ANALYSIS
    BIAS_DETECTION = OP_BIAS_DETECTION
    JOB_DESCRIPTION = OP_JOB_DESCRIPTION
    CANDIDATE_COMPLETE = OP_CANDIDATE_COMPLETE


class OperationState(str, Enum):
    """Operation lifecycle states.

    State transitions:
        PENDING -> IN_PROGRESS -> COMPLETED
                               -> FAILED
        PENDING | IN_PROGRESS -> CANCELLED (local only, provider call keeps running)
    """
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (OperationState.COMPLETED, OperationState.FAILED, OperationState.CANCELLED)


@dataclass
class CacheEntry(Generic[T]):
    """One cached AI result with usage statistics for eviction ranking."""
    key: str
    value: T
    expires_at: float
    size_bytes: int
    access_count: int = 0
    last_accessed_at: float = field(default_factory=time.time)

    def is_expired(self, now: Optional[float] = None) -> bool:
        return (now if now is not None else time.time()) > self.expires_at

    def touch(self) -> None:
        self.access_count += 1
        self.last_accessed_at = time.time()

    @property
    def rank(self):
        """Eviction rank: least used first, least recently used breaks ties."""
        return (self.access_count, self.last_accessed_at)


@dataclass
class ServiceQuota:
    """Fixed-window request quota for one downstream service.

    The window is reset lazily by whoever checks it next; there is no timer.
    """
    service_name: str
    window_size_ms: int
    max_requests: int
    window_start: float = field(default_factory=time.time)
    requests_in_window: int = 0

    @property
    def window_seconds(self) -> float:
        return self.window_size_ms / 1000.0

    @property
    def reset_time(self) -> float:
        return self.window_start + self.window_seconds

    def reset_if_elapsed(self, now: Optional[float] = None) -> None:
        now = now if now is not None else time.time()
        if now - self.window_start >= self.window_seconds:
            self.requests_in_window = 0
            self.window_start = now

    def is_limited(self, now: Optional[float] = None) -> bool:
        self.reset_if_elapsed(now)
        return self.requests_in_window >= self.max_requests

    def record(self, now: Optional[float] = None) -> None:
        self.reset_if_elapsed(now)
        self.requests_in_window += 1

    def remaining(self) -> int:
        return max(0, self.max_requests - self.requests_in_window)

    def time_to_reset(self, now: Optional[float] = None) -> float:
        now = now if now is not None else time.time()
        return max(0.0, self.reset_time - now)


@dataclass
class QueuedWork(Generic[T]):
    """A unit of work waiting for admission against a service quota."""
    id: str
    service_name: str
    priority: Priority
    operation: Callable[[], Awaitable[T]]
    future: "asyncio.Future[T]"
    sequence: int
    submitted_at: float = field(default_factory=time.time)

    @property
    def sort_key(self):
        """Priority descending, then submission order ascending."""
        return (-self.priority.rank, self.submitted_at, self.sequence)

    def __lt__(self, other: "QueuedWork") -> bool:
        return self.sort_key < other.sort_key


@dataclass
class OperationSpec:
    """Binding of an AI capability to its cache key-space, quota and priority."""
    type: AIOperationType
    service_name: str
    priority: Priority
    ttl_seconds: int

    def cache_key(self, content: Any) -> str:
        return generate_cache_key(self.type.value, content)


@dataclass
class OperationResult(Generic[T]):
    """Result of one orchestrated call plus whether it came from cache."""
    value: T
    cache_hit: bool = False


@dataclass
class OperationRecord:
    """Caller-facing status of a tracked AI operation."""
    id: str
    type: str
    user_id: Optional[str] = None
    priority: Priority = Priority.MEDIUM
    status: OperationState = OperationState.PENDING
    progress: int = 0
    stage: str = "initializing"
    result: Any = None
    error: Optional[str] = None
    cache_hit: bool = False
    started_at: float = field(default_factory=time.time)
    completed_at: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to JSON-serializable dict."""
        return {
            "id": self.id,
            "type": self.type,
            "user_id": self.user_id,
            "priority": self.priority.value,
            "status": self.status.value,
            "progress": self.progress,
            "stage": self.stage,
            "result": self.result,
            "error": self.error,
            "cache_hit": self.cache_hit,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "OperationRecord":
        """Create from dict (datastore deserialization)."""
        return cls(
            id=data["id"],
            type=data["type"],
            user_id=data.get("user_id"),
            priority=Priority(data.get("priority", Priority.MEDIUM.value)),
            status=OperationState(data.get("status", OperationState.PENDING.value)),
            progress=data.get("progress", 0),
            stage=data.get("stage", "initializing"),
            result=data.get("result"),
            error=data.get("error"),
            cache_hit=data.get("cache_hit", False),
            started_at=data.get("started_at", time.time()),
            completed_at=data.get("completed_at"),
        )


def serialized_size(value: Any) -> int:
    """Exact byte length of the JSON serialization of a value."""
    return len(orjson.dumps(value, default=str))


def hash_content(content: Any) -> str:
    """Deterministic hash of arbitrary JSON-able content for cache keys.

    Canonical JSON (sorted keys) so dict ordering never changes the key.
    """
    if isinstance(content, bytes):
        raw = content
    elif isinstance(content, str):
        raw = content.encode()
    else:
        raw = orjson.dumps(content, option=orjson.OPT_SORT_KEYS, default=str)
    return hashlib.md5(raw).hexdigest()


def generate_cache_key(operation_type: str, content: Any) -> str:
    """Cache key for an operation result.

    Format: {operation_type}:{content_hash}
    """
    return f"{operation_type}:{hash_content(content)}"


@dataclass
class CandidateData:
    """Input to the full candidate pipeline."""
    id: str
    profile: Dict[str, Any] = field(default_factory=dict)
    resume: Any = None
    video_interview: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CandidateData":
        return cls(
            id=str(data["id"]),
            profile=data.get("profile") or {},
            resume=data.get("resume"),
            video_interview=data.get("video_interview"),
        )
