"""Configuration utilities for the workflow orchestration service."""

from functools import lru_cache
from typing import Dict, List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class OrchestratorSettings(BaseSettings):
    """Settings definition with inline documentation for future maintainers."""

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", env_prefix="GENFLOW_", extra="ignore"
    )

    app_name: str = "genflow-orchestrator"
    cors_origins: List[str] = ["http://localhost:3000"]

    # Run state persistence; in-memory when unset
    redis_url: Optional[str] = None

    # Provider circuit breaker
    provider_failure_threshold: int = Field(default=3, ge=1)
    provider_recovery_seconds: float = Field(default=300.0, ge=0.0)
    model_registry_path: Optional[str] = None

    # Step execution
    loop_max_parallel: int = Field(default=4, ge=1)
    default_step_timeout_seconds: float = Field(default=300.0, gt=0.0)
    retry_backoff_seconds: float = Field(default=1.0, ge=0.0)
    retry_max_delay_seconds: float = Field(default=30.0, ge=0.0)
    webhook_timeout_seconds: float = Field(default=30.0, gt=0.0)
    human_task_ttl_seconds: Optional[float] = None

    # Flat per-type cost used when a generation backend reports none
    step_credit_costs: Dict[str, float] = {
        "llm": 0.005,
        "image": 0.03,
        "video": 0.4,
        "embedding": 0.01,
    }


@lru_cache
def get_settings() -> OrchestratorSettings:
    """Return cached settings to avoid repeated environment parsing."""

    return OrchestratorSettings()
