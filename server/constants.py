"""Centralized constants for AI operations, services and quotas.

Single source of truth for operation types, the downstream services they are
admitted against, and the default quota table.
"""

from typing import Dict, Tuple

# =============================================================================
# DOWNSTREAM AI SERVICES
# =============================================================================

SERVICE_GEMINI = 'gemini'
SERVICE_DOCUMENT_AI = 'documentai'
SERVICE_EMBEDDINGS = 'embeddings'
SERVICE_ELEVENLABS = 'elevenlabs'
SERVICE_VIDEO = 'video'
SERVICE_BIAS = 'bias'
SERVICE_MATCHING = 'matching'

# service -> (window_size_ms, max_requests)
DEFAULT_SERVICE_QUOTAS: Dict[str, Tuple[int, int]] = {
    SERVICE_GEMINI: (60_000, 60),
    SERVICE_DOCUMENT_AI: (60_000, 120),
    SERVICE_EMBEDDINGS: (60_000, 100),
    SERVICE_ELEVENLABS: (60_000, 50),
    SERVICE_VIDEO: (300_000, 10),  # heavyweight, long window
    SERVICE_BIAS: (60_000, 30),
    SERVICE_MATCHING: (60_000, 200),
}

# =============================================================================
# AI OPERATION TYPES
# =============================================================================

OP_RESUME_ANALYSIS = 'resume_analysis'
OP_SKILL_EXTRACTION = 'skill_extraction'
OP_EMBEDDING = 'embedding'
OP_JOB_MATCHING = 'job_matching'
OP_VIDEO_ANALYSIS = 'video_analysis'
OP_BIAS_DETECTION = 'bias_detection'
OP_JOB_DESCRIPTION = 'job_description'
OP_CANDIDATE_COMPLETE = 'candidate_complete'

# =============================================================================
# CACHE TTLS (seconds)
# =============================================================================

TTL_ANALYSIS = 86_400      # 24 hours
TTL_EMBEDDING = 86_400     # 24 hours
TTL_MATCHES = 1_800        # 30 minutes
TTL_BIAS = 3_600           # 1 hour
TTL_CANDIDATE = 3_600      # 1 hour

DEFAULT_MATCH_LIMIT = 10

# =============================================================================
# LIFECYCLE EVENTS
# =============================================================================

EVENT_PROCESSING_START = 'processing:start'
EVENT_PROCESSING_COMPLETE = 'processing:complete'
EVENT_PROCESSING_ERROR = 'processing:error'
