"""Orchestrator: cache + quota binding, candidate pipeline and events."""

import asyncio

import pytest

from constants import EVENT_PROCESSING_COMPLETE, EVENT_PROCESSING_ERROR, EVENT_PROCESSING_START
from services.orchestration import (
    AIOperationType,
    InvalidPayload,
    OPERATION_SPECS,
    Priority,
    ProviderFailure,
    UnknownOperation,
    generate_cache_key,
    profile_to_text,
)

PROFILE = {"id": "p-1", "name": "Ada", "title": "Engineer", "skills": ["python", "sql"]}


def collect_events(orchestrator):
    events = []
    orchestrator.events.subscribe("*", lambda name, payload: events.append((name, payload)))
    return events


def test_operation_table():
    assert OPERATION_SPECS[AIOperationType.RESUME_ANALYSIS].service_name == "documentai"
    assert OPERATION_SPECS[AIOperationType.EMBEDDING].priority is Priority.HIGH
    assert OPERATION_SPECS[AIOperationType.JOB_MATCHING].ttl_seconds == 1800
    assert OPERATION_SPECS[AIOperationType.VIDEO_ANALYSIS].priority is Priority.LOW
    assert OPERATION_SPECS[AIOperationType.BIAS_DETECTION].ttl_seconds == 3600


def test_profile_to_text():
    assert profile_to_text(PROFILE) == "Ada Engineer python sql"
    assert profile_to_text({}) == ""


async def test_embedding_second_call_served_from_cache(orchestrator, gateway):
    first = await orchestrator.generate_embedding(PROFILE)
    second = await orchestrator.generate_embedding(PROFILE)

    assert first == second
    assert gateway.calls["embed"] == 1
    assert orchestrator.rate_limiter.get_quota("embeddings").requests_in_window == 1


async def test_provider_failure_is_wrapped_and_not_cached(orchestrator, gateway):
    gateway.fail_next["embed"] = ConnectionError("backend unreachable")

    with pytest.raises(ProviderFailure) as excinfo:
        await orchestrator.generate_embedding("some text")
    assert excinfo.value.service == "embeddings"

    assert await orchestrator.generate_embedding("some text")
    assert gateway.calls["embed"] == 2


async def test_missing_resume_short_circuits(orchestrator, gateway):
    assert await orchestrator.analyze_resume(None) is None
    assert await orchestrator.extract_skills("") == []
    assert gateway.calls == {}


async def test_named_operations(orchestrator, gateway):
    assert await orchestrator.extract_skills("resume.pdf") == ["python", "sql"]
    assert (await orchestrator.analyze_resume("resume.pdf"))["summary"] == "ok"
    assert len(await orchestrator.find_job_matches("p-1", [0.1, 0.2])) == 2
    assert (await orchestrator.analyze_video("gs://v.mp4"))["uri"] == "gs://v.mp4"
    assert await orchestrator.detect_bias({"decisions": []}) == {"summary": "ok", "score": 0.9}
    assert "job description" in await orchestrator.generate_job_description({"title": "SRE"})

    # Same resume, different operation: separate cache key-spaces
    assert gateway.calls["extract_text"] == 2


async def test_process_candidate_full_pipeline(orchestrator, gateway):
    events = collect_events(orchestrator)
    candidate = {"id": "c-1", "profile": PROFILE, "resume": "resume.pdf",
                 "video_interview": "gs://v.mp4"}

    result = await orchestrator.process_candidate(candidate)

    assert set(result) == {"resume_analysis", "skill_extraction", "embeddings",
                           "job_matches", "video_analysis"}
    assert result["skill_extraction"] == ["python", "sql"]
    assert result["video_analysis"]["uri"] == "gs://v.mp4"
    assert [name for name, _ in events] == [EVENT_PROCESSING_START, EVENT_PROCESSING_COMPLETE]
    assert events[1][1]["cached"] is False
    assert events[1][1]["processing_time_ms"] >= 0


async def test_process_candidate_cached_second_time(orchestrator, gateway):
    candidate = {"id": "c-1", "profile": PROFILE, "resume": "resume.pdf"}
    await orchestrator.process_candidate(candidate)
    calls_before = dict(gateway.calls)
    events = collect_events(orchestrator)

    outcome = await orchestrator.process_candidate_with_status(candidate)

    assert outcome.cache_hit is True
    assert outcome.value["video_analysis"] is None
    assert gateway.calls == calls_before
    assert events[-1] == (EVENT_PROCESSING_COMPLETE, {
        "candidate_id": "c-1", "type": "candidate_complete",
        "processing_time_ms": events[-1][1]["processing_time_ms"], "cached": True,
    })


async def test_embedding_failure_skips_matching(orchestrator, gateway):
    events = collect_events(orchestrator)
    gateway.fail_next["embed"] = RuntimeError("embedding quota exhausted")
    candidate = {"id": "c-2", "profile": PROFILE, "resume": "resume.pdf"}

    with pytest.raises(ProviderFailure):
        await orchestrator.process_candidate(candidate)
    await asyncio.sleep(0.05)

    assert "find_similar" not in gateway.calls
    assert events[-1][0] == EVENT_PROCESSING_ERROR
    assert "embedding quota exhausted" in events[-1][1]["error"]
    assert generate_cache_key("candidate_complete", "c-2") not in orchestrator.cache


async def test_candidates_batch_maps_failures_to_none(orchestrator, gateway):
    candidates = [
        {"id": "c-1", "profile": PROFILE, "resume": "a.pdf"},
        {"id": "c-2", "profile": {**PROFILE, "name": "Grace"}, "resume": "b.pdf"},
    ]
    gateway.fail_next["find_similar"] = RuntimeError("index offline")

    results = await orchestrator.process_candidates_batch(candidates, max_concurrency=1)
    await asyncio.sleep(0.05)

    assert results[0] is None
    assert results[1]["job_matches"]


async def test_run_operation_dispatch_and_events(orchestrator):
    events = collect_events(orchestrator)

    result = await orchestrator.run_operation("embedding", {"text": "hello"}, operation_id="op-1")
    again = await orchestrator.run_operation(AIOperationType.EMBEDDING, {"text": "hello"})

    assert result.cache_hit is False and again.cache_hit is True
    assert events[0] == (EVENT_PROCESSING_START, {"operation_id": "op-1", "type": "embedding"})
    assert events[1][1]["cached"] is False
    assert events[3][1]["cached"] is True


async def test_run_operation_rejects_bad_input(orchestrator):
    events = collect_events(orchestrator)

    with pytest.raises(UnknownOperation):
        await orchestrator.run_operation("translate", {})
    with pytest.raises(InvalidPayload):
        await orchestrator.run_operation("bias_detection", {})

    assert events[-1][0] == EVENT_PROCESSING_ERROR


async def test_job_matching_payload_embeds_profile_when_needed(orchestrator, gateway):
    result = await orchestrator.run_operation("job_matching", {"profile": PROFILE})

    assert gateway.calls["embed"] == 1
    assert result.value[0]["job_id"] == "job-1"


async def test_quota_exhaustion_delays_instead_of_failing(make_orchestrator, gateway):
    orchestrator = make_orchestrator(quotas={"gemini": (300, 1)})

    results = await asyncio.gather(
        orchestrator.generate_job_description({"title": "A"}),
        orchestrator.generate_job_description({"title": "B"}),
    )

    assert len(results) == 2
    assert gateway.calls["generate"] == 2


async def test_stats_snapshot(orchestrator):
    await orchestrator.generate_embedding("hello")
    await orchestrator.generate_embedding("hello")

    stats = orchestrator.get_stats()

    assert stats["cache"]["size"] == 1
    assert stats["cache_hit_rate"] == 50.0
    assert stats["rate_limit"]["services"]["embeddings"]["requests_in_window"] == 1
    assert stats["active_jobs"] == 0
    assert "usage_percent" in stats["memory"]


async def test_start_stop(orchestrator):
    await orchestrator.start()
    assert await orchestrator.generate_embedding("x")
    await orchestrator.stop()


async def test_candidate_operation_runs_behind_memory_gate(orchestrator, usage):
    usage.percent = 96.0
    usage.after_reclaim = 20.0

    outcome = await orchestrator.run_operation(
        "candidate_complete", {"candidate": {"id": "c-9", "profile": PROFILE, "resume": "r.pdf"}})

    assert usage.reclaims >= 1
    assert outcome.value["job_matches"][0]["job_id"] == "job-1"
    assert orchestrator.memory_scheduler.active_processes == 0


async def test_tracked_candidate_events_carry_operation_id(orchestrator):
    events = collect_events(orchestrator)

    await orchestrator.run_operation(
        "candidate_complete", {"id": "c-7", "profile": PROFILE, "resume": "r.pdf"},
        operation_id="ai_1_tracked")

    lifecycle = [(name, payload) for name, payload in events if payload.get("candidate_id") == "c-7"]
    assert [name for name, _ in lifecycle] == [EVENT_PROCESSING_START, EVENT_PROCESSING_COMPLETE]
    assert all(payload["operation_id"] == "ai_1_tracked" for _, payload in lifecycle)
