"""Prompt templates for language-model backed operations."""

import orjson
from typing import Any

RESUME_ANALYSIS_PROMPT = """Analyze this resume and extract key information:

{text}

Return JSON with: name, summary, experience_years, education, work_history,
strengths, and areas_for_improvement."""

SKILL_EXTRACTION_PROMPT = """Extract all relevant skills from this resume text. Focus on both technical and soft skills.

{text}

Return only a JSON array of skills: ["skill1", "skill2", ...]"""

VIDEO_ANALYSIS_PROMPT = """Analyze this video interview and provide comprehensive feedback.

Return JSON with: communication_score, confidence_score, technical_depth,
key_points, red_flags, and overall_recommendation."""

BIAS_DETECTION_PROMPT = """Analyze this data for potential bias in hiring decisions:

{data}

Return JSON with: bias_detected, bias_types, severity, affected_groups,
and recommendations."""

JOB_DESCRIPTION_PROMPT = """Generate a comprehensive job description based on this information:

{data}

Include responsibilities, requirements, nice-to-haves, and benefits."""


def render(template: str, **values: Any) -> str:
    """Fill a template; non-string values are embedded as JSON."""
    rendered = {
        k: v if isinstance(v, str) else orjson.dumps(v, option=orjson.OPT_SORT_KEYS, default=str).decode()
        for k, v in values.items()
    }
    return template.format(**rendered)
