"""Shared fixtures: fake AI backends and small-interval component factories."""

import asyncio
from typing import Any, Dict, List, Optional

import pytest

from services.orchestration import (
    AIOrchestrator,
    EventBus,
    MemoryScheduler,
    OperationTracker,
    RateLimiter,
    ResultCache,
)


class FakeGateway:
    """In-memory stand-in for every AI backend protocol.

    Counts calls per method. Set `fail_next[method]` to an exception to make
    the next call of that method raise it, or `gate` to an Event to hold
    every call until it is set.
    """

    def __init__(self, dimensions: int = 4):
        self.dimensions = dimensions
        self.calls: Dict[str, int] = {}
        self.fail_next: Dict[str, Exception] = {}
        self.gate: Optional[asyncio.Event] = None

    async def _enter(self, method: str) -> None:
        self.calls[method] = self.calls.get(method, 0) + 1
        if self.gate is not None:
            await self.gate.wait()
        error = self.fail_next.pop(method, None)
        if error is not None:
            raise error

    async def extract_text(self, document: Any) -> str:
        await self._enter("extract_text")
        return f"text of {document}"

    async def generate(self, prompt: str) -> str:
        await self._enter("generate")
        return "Senior Engineer job description"

    async def generate_json(self, prompt: str) -> Any:
        await self._enter("generate_json")
        if prompt.startswith("Extract all relevant skills"):
            return ["python", "sql"]
        return {"summary": "ok", "score": 0.9}

    async def embed(self, text: str) -> List[float]:
        await self._enter("embed")
        return [float(len(text) % 7)] * self.dimensions

    async def find_similar(self, embedding: List[float], limit: int = 10) -> List[Dict[str, Any]]:
        await self._enter("find_similar")
        return [{"job_id": "job-1", "score": 0.92}, {"job_id": "job-2", "score": 0.81}][:limit]

    async def analyze_video(self, video_uri: str, prompt: str) -> Dict[str, Any]:
        await self._enter("analyze_video")
        return {"communication": 8, "uri": video_uri}

    async def shutdown(self) -> None:
        pass


class FakeDataStore:
    def __init__(self):
        self.records: Dict[str, Dict[str, Any]] = {}
        self.persist_calls = 0

    async def persist(self, key: str, record: Dict[str, Any]) -> bool:
        self.persist_calls += 1
        self.records[key] = dict(record)
        return True

    async def fetch(self, key: str) -> Optional[Dict[str, Any]]:
        return self.records.get(key)


class FakeNotifier:
    def __init__(self):
        self.delivered: List[tuple] = []

    async def deliver(self, user_id: str, event_type: str, payload: Dict[str, Any]) -> None:
        self.delivered.append((user_id, event_type, payload))


class Usage:
    """Mutable memory usage source for the memory scheduler."""

    def __init__(self, max_bytes: int = 1000, percent: float = 10.0):
        self.max_bytes = max_bytes
        self.percent = percent
        self.reclaims = 0
        self.after_reclaim: Optional[float] = None

    def __call__(self) -> int:
        return int(self.max_bytes * self.percent / 100)

    def reclaim(self) -> None:
        self.reclaims += 1
        if self.after_reclaim is not None:
            self.percent = self.after_reclaim


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def datastore():
    return FakeDataStore()


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def usage():
    return Usage()


@pytest.fixture
def make_scheduler(usage):
    def factory(**overrides) -> MemoryScheduler:
        params = dict(
            max_memory_bytes=usage.max_bytes,
            optimal_memory_bytes=usage.max_bytes,
            monitor_interval=6.0,
            reclaim_delay=0.0,
            low_priority_stall=0.0,
            medium_priority_stall=0.0,
            high_usage_stall=0.0,
            batch_delay=0.0,
            usage_sampler=usage,
            reclaim=usage.reclaim,
        )
        params.update(overrides)
        return MemoryScheduler(**params)
    return factory


@pytest.fixture
def make_orchestrator(gateway, make_scheduler):
    def factory(quotas: Optional[Dict[str, tuple]] = None, **cache_overrides) -> AIOrchestrator:
        cache = ResultCache(**{"max_memory_bytes": 1024 * 1024, **cache_overrides})
        limiter = RateLimiter(quotas=quotas or {
            "documentai": (60_000, 100),
            "gemini": (60_000, 100),
            "embeddings": (60_000, 100),
            "matching": (60_000, 100),
            "video": (60_000, 100),
            "bias": (60_000, 100),
        }, tick_interval=0.01, poll_interval=0.01, batch_window=0.01)
        return AIOrchestrator(
            cache=cache,
            rate_limiter=limiter,
            memory_scheduler=make_scheduler(),
            extractor=gateway,
            completion=gateway,
            embedder=gateway,
            job_index=gateway,
            video_analyzer=gateway,
            events=EventBus(),
        )
    return factory


@pytest.fixture
def orchestrator(make_orchestrator):
    return make_orchestrator()


@pytest.fixture
def tracker(orchestrator, datastore, notifier):
    return OperationTracker(orchestrator, datastore=datastore, notifier=notifier)
