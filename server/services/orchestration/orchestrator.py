"""AI orchestrator.

Binds each AI capability to a cache key-space, a rate-limited service and a
priority, then runs every provider call as

    cache.get_or_compute(key, lambda: limiter.submit(service, call, priority), ttl)

Failures are never cached. Bulk candidate processing goes through the memory
scheduler before reaching the rate limiter.
"""

import asyncio
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from constants import (
    DEFAULT_MATCH_LIMIT,
    EVENT_PROCESSING_COMPLETE,
    EVENT_PROCESSING_ERROR,
    EVENT_PROCESSING_START,
    SERVICE_BIAS,
    SERVICE_DOCUMENT_AI,
    SERVICE_EMBEDDINGS,
    SERVICE_GEMINI,
    SERVICE_MATCHING,
    SERVICE_VIDEO,
    TTL_ANALYSIS,
    TTL_BIAS,
    TTL_CANDIDATE,
    TTL_EMBEDDING,
    TTL_MATCHES,
)
from core.logging import get_logger, log_execution_time
from services import prompts
from .providers import (
    CompletionModel,
    DocumentExtractor,
    EmbeddingModel,
    JobIndex,
    VideoAnalyzer,
)
from .cache import ResultCache
from .events import EventBus
from .exceptions import InvalidPayload, ProviderFailure, UnknownOperation
from .memory import MemoryScheduler
from .models import (
    AIOperationType,
    CandidateData,
    OperationResult,
    OperationSpec,
    Priority,
    generate_cache_key,
)
from .rate_limiter import RateLimiter

logger = get_logger(__name__)


OPERATION_SPECS: Dict[AIOperationType, OperationSpec] = {
    AIOperationType.RESUME_ANALYSIS: OperationSpec(
        AIOperationType.RESUME_ANALYSIS, SERVICE_DOCUMENT_AI, Priority.HIGH, TTL_ANALYSIS),
    AIOperationType.SKILL_EXTRACTION: OperationSpec(
        AIOperationType.SKILL_EXTRACTION, SERVICE_GEMINI, Priority.MEDIUM, TTL_ANALYSIS),
    AIOperationType.EMBEDDING: OperationSpec(
        AIOperationType.EMBEDDING, SERVICE_EMBEDDINGS, Priority.HIGH, TTL_EMBEDDING),
    AIOperationType.JOB_MATCHING: OperationSpec(
        AIOperationType.JOB_MATCHING, SERVICE_MATCHING, Priority.MEDIUM, TTL_MATCHES),
    AIOperationType.VIDEO_ANALYSIS: OperationSpec(
        AIOperationType.VIDEO_ANALYSIS, SERVICE_VIDEO, Priority.LOW, TTL_ANALYSIS),
    AIOperationType.BIAS_DETECTION: OperationSpec(
        AIOperationType.BIAS_DETECTION, SERVICE_BIAS, Priority.HIGH, TTL_BIAS),
    AIOperationType.JOB_DESCRIPTION: OperationSpec(
        AIOperationType.JOB_DESCRIPTION, SERVICE_GEMINI, Priority.MEDIUM, TTL_ANALYSIS),
}


def profile_to_text(profile: Dict[str, Any]) -> str:
    """Flatten a candidate profile into the text that gets embedded."""
    parts = [
        profile.get("name"),
        profile.get("title"),
        " ".join(profile.get("skills") or []),
        profile.get("experience"),
    ]
    return " ".join(str(p) for p in parts if p)


def _consume_exception(task: asyncio.Task) -> None:
    # Sibling steps keep running after a pipeline abort; their errors are logged here
    if not task.cancelled() and task.exception() is not None:
        logger.debug("Detached pipeline step failed", error=str(task.exception()))


class AIOrchestrator:
    """Composes cache, rate limiter and memory scheduler into AI operations."""

    def __init__(self,
                 cache: ResultCache,
                 rate_limiter: RateLimiter,
                 memory_scheduler: MemoryScheduler,
                 extractor: DocumentExtractor,
                 completion: CompletionModel,
                 embedder: EmbeddingModel,
                 job_index: JobIndex,
                 video_analyzer: VideoAnalyzer,
                 events: Optional[EventBus] = None,
                 match_limit: int = DEFAULT_MATCH_LIMIT):
        self.cache = cache
        self.rate_limiter = rate_limiter
        self.memory_scheduler = memory_scheduler
        self.extractor = extractor
        self.completion = completion
        self.embedder = embedder
        self.job_index = job_index
        self.video_analyzer = video_analyzer
        self.events = events or EventBus()
        self.match_limit = match_limit

        self._handlers: Dict[AIOperationType, Callable[[Dict[str, Any], Optional[Priority]],
                                                       Awaitable[OperationResult]]] = {
            AIOperationType.RESUME_ANALYSIS: self._resume_analysis_from_payload,
            AIOperationType.SKILL_EXTRACTION: self._skill_extraction_from_payload,
            AIOperationType.EMBEDDING: self._embedding_from_payload,
            AIOperationType.JOB_MATCHING: self._job_matching_from_payload,
            AIOperationType.VIDEO_ANALYSIS: self._video_analysis_from_payload,
            AIOperationType.BIAS_DETECTION: self._bias_detection_from_payload,
            AIOperationType.JOB_DESCRIPTION: self._job_description_from_payload,
            AIOperationType.CANDIDATE_COMPLETE: self._candidate_from_payload,
        }

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        """Start background tasks of all owned components."""
        await self.cache.start()
        await self.rate_limiter.start()
        await self.memory_scheduler.start()
        logger.info("AI orchestrator started")

    async def stop(self) -> None:
        """Stop background tasks of all owned components."""
        await self.memory_scheduler.stop()
        await self.rate_limiter.stop()
        await self.cache.stop()
        logger.info("AI orchestrator stopped")

    # =========================================================================
    # Core binding
    # =========================================================================

    async def _orchestrate(self, spec: OperationSpec, content: Any,
                           call: Callable[[], Awaitable[Any]],
                           priority: Optional[Priority] = None) -> OperationResult:
        """Cache lookup, then rate-limited provider call on miss."""
        key = spec.cache_key(content)
        priority = Priority(priority) if priority else spec.priority

        async def provider_call() -> Any:
            try:
                return await call()
            except ProviderFailure:
                raise
            except Exception as e:
                raise ProviderFailure(spec.service_name, str(e)) from e

        value, hit = await self.cache.lookup_or_compute(
            key,
            lambda: self.rate_limiter.submit(spec.service_name, provider_call, priority),
            spec.ttl_seconds,
        )
        return OperationResult(value=value, cache_hit=hit)

    # =========================================================================
    # Named operations
    # =========================================================================

    async def analyze_resume(self, resume: Any, priority: Optional[Priority] = None) -> Any:
        """Extract resume text and analyze it. Returns None without a resume."""
        if not resume:
            return None
        return (await self._analyze_resume(resume, priority)).value

    async def _analyze_resume(self, resume: Any, priority: Optional[Priority] = None) -> OperationResult:
        async def call():
            text = await self.extractor.extract_text(resume)
            return await self.completion.generate_json(
                prompts.render(prompts.RESUME_ANALYSIS_PROMPT, text=text))

        return await self._orchestrate(
            OPERATION_SPECS[AIOperationType.RESUME_ANALYSIS], resume, call, priority)

    async def extract_skills(self, resume: Any, priority: Optional[Priority] = None) -> List[str]:
        """Extract a skill list from a resume. Returns [] without a resume."""
        if not resume:
            return []
        return (await self._extract_skills(resume, priority)).value

    async def _extract_skills(self, resume: Any, priority: Optional[Priority] = None) -> OperationResult:
        async def call():
            text = await self.extractor.extract_text(resume)
            skills = await self.completion.generate_json(
                prompts.render(prompts.SKILL_EXTRACTION_PROMPT, text=text))
            return list(skills or [])

        return await self._orchestrate(
            OPERATION_SPECS[AIOperationType.SKILL_EXTRACTION], resume, call, priority)

    async def generate_embedding(self, profile_or_text: Union[str, Dict[str, Any]],
                                 priority: Optional[Priority] = None) -> List[float]:
        """Embed a profile (flattened to text) or raw text."""
        return (await self._generate_embedding(profile_or_text, priority)).value

    async def _generate_embedding(self, profile_or_text: Union[str, Dict[str, Any]],
                                  priority: Optional[Priority] = None) -> OperationResult:
        text = profile_or_text if isinstance(profile_or_text, str) else profile_to_text(profile_or_text)
        return await self._orchestrate(
            OPERATION_SPECS[AIOperationType.EMBEDDING], text,
            lambda: self.embedder.embed(text), priority)

    async def find_job_matches(self, profile_id: str, embedding: List[float],
                               priority: Optional[Priority] = None) -> List[Dict[str, Any]]:
        """Vector search for jobs similar to a profile embedding."""
        return (await self._find_job_matches(profile_id, embedding, priority)).value

    async def _find_job_matches(self, profile_id: str, embedding: List[float],
                                priority: Optional[Priority] = None) -> OperationResult:
        return await self._orchestrate(
            OPERATION_SPECS[AIOperationType.JOB_MATCHING], [profile_id, embedding],
            lambda: self.job_index.find_similar(embedding, self.match_limit), priority)

    async def analyze_video(self, video_uri: str, priority: Optional[Priority] = None) -> Dict[str, Any]:
        """Analyze a recorded video interview."""
        return (await self._analyze_video(video_uri, priority)).value

    async def _analyze_video(self, video_uri: str, priority: Optional[Priority] = None) -> OperationResult:
        return await self._orchestrate(
            OPERATION_SPECS[AIOperationType.VIDEO_ANALYSIS], video_uri,
            lambda: self.video_analyzer.analyze_video(video_uri, prompts.VIDEO_ANALYSIS_PROMPT),
            priority)

    async def detect_bias(self, data: Any, priority: Optional[Priority] = None) -> Any:
        """Check hiring data for bias."""
        return (await self._detect_bias(data, priority)).value

    async def _detect_bias(self, data: Any, priority: Optional[Priority] = None) -> OperationResult:
        return await self._orchestrate(
            OPERATION_SPECS[AIOperationType.BIAS_DETECTION], data,
            lambda: self.completion.generate_json(
                prompts.render(prompts.BIAS_DETECTION_PROMPT, data=data)),
            priority)

    async def generate_job_description(self, job: Any, priority: Optional[Priority] = None) -> str:
        """Write a job description from structured job data."""
        return (await self._generate_job_description(job, priority)).value

    async def _generate_job_description(self, job: Any,
                                        priority: Optional[Priority] = None) -> OperationResult:
        return await self._orchestrate(
            OPERATION_SPECS[AIOperationType.JOB_DESCRIPTION], job,
            lambda: self.completion.generate(
                prompts.render(prompts.JOB_DESCRIPTION_PROMPT, data=job)),
            priority)

    # =========================================================================
    # Candidate pipeline
    # =========================================================================

    async def process_candidate(self, candidate: Union[CandidateData, Dict[str, Any]]) -> Dict[str, Any]:
        """Run every AI step for one candidate."""
        return (await self.process_candidate_with_status(candidate)).value

    async def process_candidate_with_status(self, candidate: Union[CandidateData, Dict[str, Any]],
                                            priority: Optional[Priority] = None,
                                            operation_id: Optional[str] = None) -> OperationResult:
        """Full candidate pipeline.

        Resume analysis, skill extraction and embedding run concurrently (with
        video analysis when a video is present). Matching starts once the
        embedding resolves. A failed embedding aborts matching; steps already
        running are left to finish on their own.
        """
        if not isinstance(candidate, CandidateData):
            candidate = CandidateData.from_dict(candidate)

        start_time = time.time()
        identity = {"candidate_id": candidate.id, "type": AIOperationType.CANDIDATE_COMPLETE.value}
        if operation_id is not None:
            identity["operation_id"] = operation_id
        self.events.emit(EVENT_PROCESSING_START, identity)

        cache_key = generate_cache_key(AIOperationType.CANDIDATE_COMPLETE.value, candidate.id)
        tasks: List[asyncio.Task] = []
        try:
            cached, found = await self.cache.get(cache_key)
            if found:
                self.events.emit(EVENT_PROCESSING_COMPLETE, {
                    **identity,
                    "processing_time_ms": int((time.time() - start_time) * 1000),
                    "cached": True,
                })
                return OperationResult(value=cached, cache_hit=True)

            resume_task = asyncio.ensure_future(self.analyze_resume(candidate.resume, priority))
            skills_task = asyncio.ensure_future(self.extract_skills(candidate.resume, priority))
            embedding_task = asyncio.ensure_future(self.generate_embedding(candidate.profile, priority))
            tasks = [resume_task, skills_task, embedding_task]

            video_task = None
            if candidate.video_interview:
                video_task = asyncio.ensure_future(self.analyze_video(candidate.video_interview, priority))
                tasks.append(video_task)

            embedding = await embedding_task
            profile_id = str(candidate.profile.get("id", candidate.id))
            job_matches = await self.find_job_matches(profile_id, embedding, priority)

            resume_analysis, skill_extraction = await asyncio.gather(resume_task, skills_task)
            video_analysis = await video_task if video_task else None

            result = {
                "resume_analysis": resume_analysis,
                "skill_extraction": skill_extraction,
                "embeddings": embedding,
                "job_matches": job_matches,
                "video_analysis": video_analysis,
            }
            await self.cache.set(cache_key, result, TTL_CANDIDATE)

            self.events.emit(EVENT_PROCESSING_COMPLETE, {
                **identity,
                "processing_time_ms": int((time.time() - start_time) * 1000),
                "cached": False,
            })
            return OperationResult(value=result, cache_hit=False)

        except Exception as e:
            for task in tasks:
                if not task.done():
                    task.add_done_callback(_consume_exception)
                elif not task.cancelled():
                    task.exception()
            logger.error("Candidate processing failed", candidate_id=candidate.id, error=str(e))
            self.events.emit(EVENT_PROCESSING_ERROR, {**identity, "error": str(e)})
            raise

    async def process_candidates_batch(self, candidates: List[Union[CandidateData, Dict[str, Any]]],
                                       max_concurrency: Optional[int] = None,
                                       priority: Priority = Priority.MEDIUM) -> List[Optional[Dict[str, Any]]]:
        """Process many candidates under memory-pressure batching.

        A failed candidate yields None at its position.
        """
        return await self.memory_scheduler.process_with_limit(
            candidates,
            self.process_candidate,
            max_concurrency=max_concurrency,
            priority=priority,
        )

    # =========================================================================
    # Generic dispatch
    # =========================================================================

    async def run_operation(self, operation_type: Union[str, AIOperationType], payload: Dict[str, Any],
                            priority: Optional[Priority] = None,
                            operation_id: Optional[str] = None) -> OperationResult:
        """Run a named operation from a payload dict, emitting lifecycle events."""
        try:
            op_type = AIOperationType(operation_type)
        except ValueError:
            raise UnknownOperation(str(operation_type))

        handler = self._handlers[op_type]
        if op_type is AIOperationType.CANDIDATE_COMPLETE:
            # Candidate pipeline emits its own lifecycle events
            return await self._candidate_from_payload(payload, priority, operation_id)

        identity = {"operation_id": operation_id, "type": op_type.value}
        start_time = time.time()
        self.events.emit(EVENT_PROCESSING_START, identity)
        try:
            result = await handler(payload, priority)
        except Exception as e:
            logger.error("AI operation failed", operation_type=op_type.value,
                         operation_id=operation_id, error=str(e))
            self.events.emit(EVENT_PROCESSING_ERROR, {**identity, "error": str(e)})
            raise

        end_time = time.time()
        log_execution_time(logger, op_type.value, start_time, end_time,
                           operation_id=operation_id, cached=result.cache_hit)
        self.events.emit(EVENT_PROCESSING_COMPLETE, {
            **identity,
            "processing_time_ms": int((end_time - start_time) * 1000),
            "cached": result.cache_hit,
        })
        return result

    @staticmethod
    def _require(payload: Dict[str, Any], op_type: AIOperationType, field_name: str) -> Any:
        value = payload.get(field_name)
        if value is None or value == "":
            raise InvalidPayload(op_type.value, field_name)
        return value

    async def _resume_analysis_from_payload(self, payload, priority):
        resume = self._require(payload, AIOperationType.RESUME_ANALYSIS, "resume")
        return await self._analyze_resume(resume, priority)

    async def _skill_extraction_from_payload(self, payload, priority):
        resume = self._require(payload, AIOperationType.SKILL_EXTRACTION, "resume")
        return await self._extract_skills(resume, priority)

    async def _embedding_from_payload(self, payload, priority):
        source = payload.get("text") or payload.get("profile")
        if not source:
            raise InvalidPayload(AIOperationType.EMBEDDING.value, "text")
        return await self._generate_embedding(source, priority)

    async def _job_matching_from_payload(self, payload, priority):
        embedding = payload.get("embedding")
        profile = payload.get("profile") or {}
        if embedding is None:
            if not profile:
                raise InvalidPayload(AIOperationType.JOB_MATCHING.value, "embedding")
            embedding = await self.generate_embedding(profile, priority)
        profile_id = payload.get("profile_id") or profile.get("id")
        if not profile_id:
            raise InvalidPayload(AIOperationType.JOB_MATCHING.value, "profile_id")
        return await self._find_job_matches(str(profile_id), embedding, priority)

    async def _video_analysis_from_payload(self, payload, priority):
        video_uri = self._require(payload, AIOperationType.VIDEO_ANALYSIS, "video_uri")
        return await self._analyze_video(video_uri, priority)

    async def _bias_detection_from_payload(self, payload, priority):
        data = self._require(payload, AIOperationType.BIAS_DETECTION, "data")
        return await self._detect_bias(data, priority)

    async def _job_description_from_payload(self, payload, priority):
        job = self._require(payload, AIOperationType.JOB_DESCRIPTION, "job")
        return await self._generate_job_description(job, priority)

    async def _candidate_from_payload(self, payload, priority, operation_id=None):
        data = payload.get("candidate") or payload
        if not data.get("id"):
            raise InvalidPayload(AIOperationType.CANDIDATE_COMPLETE.value, "id")
        # A single candidate fans out into several provider calls, so it waits
        # behind the memory gate like a batch item
        return await self.memory_scheduler.process_item_with_guard(
            CandidateData.from_dict(data),
            lambda candidate: self.process_candidate_with_status(candidate, priority, operation_id),
            priority=priority or Priority.MEDIUM,
        )

    # =========================================================================
    # Stats
    # =========================================================================

    def get_stats(self) -> Dict[str, Any]:
        """Cache, rate limit and memory status in one snapshot."""
        return {
            "cache": self.cache.get_stats(),
            "cache_hit_rate": round(self.cache.get_hit_rate(), 2),
            "rate_limit": self.rate_limiter.get_status(),
            "memory": self.memory_scheduler.get_usage(),
            "active_jobs": self.rate_limiter.get_active_jobs(),
        }
