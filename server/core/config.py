"""Environment-driven configuration with Pydantic v2."""

from typing import Dict, List, Optional, Tuple
from pathlib import Path
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings

from constants import DEFAULT_SERVICE_QUOTAS


class Settings(BaseSettings):
    """Application settings driven entirely by environment variables."""

    # Server Configuration
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=3010, ge=1024, le=65535)
    debug: bool = Field(default=False)
    cors_origins: List[str] = Field(default_factory=lambda: ["http://localhost:3000"])

    # Database Configuration (operation status persistence)
    database_url: str = Field(default="sqlite+aiosqlite:///./data/orchestrator.db")
    database_echo: bool = Field(default=False)
    database_pool_size: int = Field(default=20, ge=5, le=100)
    database_max_overflow: int = Field(default=30, ge=10, le=100)

    # AI Gateway (external provider collaborators)
    ai_gateway_url: str = Field(default="http://localhost:8080")
    ai_gateway_api_key: Optional[str] = Field(default=None)
    ai_timeout: int = Field(default=30, ge=5, le=300)
    embedding_dimensions: int = Field(default=768, ge=1)

    # Result Cache
    cache_max_memory_bytes: int = Field(default=512 * 1024 * 1024, ge=1024)
    cache_max_item_bytes: int = Field(default=50 * 1024 * 1024, ge=1)
    cache_default_ttl: int = Field(default=3600, ge=1)
    cache_sweep_interval: float = Field(default=300.0, gt=0)
    cache_pressure_interval: float = Field(default=60.0, gt=0)
    cache_pressure_threshold: float = Field(default=0.8, gt=0, le=1.0)

    # Rate Limiter / Admission Queue
    rate_limit_tick_interval: float = Field(default=0.1, gt=0)
    rate_limit_poll_interval: float = Field(default=1.0, gt=0)
    rate_limit_batch_window: float = Field(default=0.1, gt=0)
    # service -> [window_size_ms, max_requests], merged over DEFAULT_SERVICE_QUOTAS
    ai_quotas: Dict[str, Tuple[int, int]] = Field(default_factory=dict)

    # Memory-Pressure Batch Scheduler
    memory_max_bytes: int = Field(default=1024 * 1024 * 1024, ge=1024)
    memory_optimal_bytes: int = Field(default=512 * 1024 * 1024, ge=1024)
    memory_monitor_interval: float = Field(default=30.0, gt=0)
    memory_history_size: int = Field(default=60, ge=2)
    memory_reclaim_delay: float = Field(default=1.0, ge=0)
    memory_low_priority_stall: float = Field(default=5.0, ge=0)
    memory_medium_priority_stall: float = Field(default=2.0, ge=0)
    memory_high_usage_stall: float = Field(default=1.0, ge=0)
    memory_batch_delay: float = Field(default=0.1, ge=0)
    memory_default_concurrency: int = Field(default=5, ge=1, le=100)

    # Logging
    log_level: str = Field(default="INFO")
    log_format: str = Field(default="json")
    log_file: Optional[str] = Field(default=None)

    # Cleanup Service (stale operation status records)
    cleanup_enabled: bool = Field(default=True)
    cleanup_interval: int = Field(default=3600, ge=1)
    cleanup_max_age_hours: int = Field(default=24, ge=1)
    cleanup_tracker_max_age: float = Field(default=3600.0, gt=0)

    @field_validator("database_url")
    @classmethod
    def validate_database_url(cls, v):
        """Ensure database directory exists for SQLite."""
        if v and v.startswith("sqlite"):
            if ":///" in v:
                db_path = v.split("///")[1]
                if db_path and db_path != ":memory:":
                    Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        return v

    @field_validator("ai_quotas")
    @classmethod
    def validate_ai_quotas(cls, v):
        """Reject non-positive windows or ceilings."""
        for service, (window_ms, max_requests) in v.items():
            if window_ms <= 0 or max_requests <= 0:
                raise ValueError(f"Invalid quota for {service}: window and max must be positive")
        return v

    @property
    def service_quotas(self) -> Dict[str, Tuple[int, int]]:
        """Default quota table with environment overrides applied."""
        quotas = dict(DEFAULT_SERVICE_QUOTAS)
        quotas.update(self.ai_quotas)
        return quotas

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "case_sensitive": False,
        "extra": "ignore",
        "env_parse_none_str": "none",
        "env_nested_delimiter": "__",
    }
