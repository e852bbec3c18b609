from __future__ import annotations

from functools import lru_cache
from typing import Any, Literal, Mapping

from pydantic import BaseModel, Field, RedisDsn, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class ModelSpecSettings(BaseModel):
    id: str = Field(min_length=1, description="Stable catalog identifier for the model.")
    api_model: str = Field(min_length=1, description="Model name sent to the provider API.")
    name: str | None = Field(default=None, description="Human readable model name.")
    strengths: list[str] = Field(default_factory=list)


class ProviderSettings(BaseModel):
    kind: Literal["openai", "anthropic", "ollama"] = Field(
        "openai",
        description="Wire protocol spoken by the provider endpoint.",
    )
    base_url: str = Field("https://api.openai.com/v1", description="Root URL of the provider API.")
    api_key: SecretStr | None = Field(default=None, description="Credential; remote providers without one are disabled.")
    models: list[ModelSpecSettings] = Field(default_factory=list)
    timeout_seconds: float = Field(120.0, gt=0.0)


class HealthSettings(BaseModel):
    failure_threshold: int = Field(5, ge=1, description="Consecutive failures before the circuit opens.")
    cooldown_seconds: float = Field(60.0, ge=0.0, description="Seconds the circuit stays open after the last failure.")


class RetrySettings(BaseModel):
    max_attempts: int = Field(3, ge=1)
    base_delay_seconds: float = Field(1.0, ge=0.0)
    multiplier: float = Field(2.0, ge=1.0)
    max_delay_seconds: float = Field(10.0, ge=0.0)
    jitter_seconds: float = Field(0.0, ge=0.0)


class BatchSettings(BaseModel):
    batch_size: int = Field(3, ge=1, description="Concurrent backend calls per batch.")
    delay_seconds: float = Field(0.5, ge=0.0, description="Pause inserted between successive batches.")
    call_timeout_seconds: float | None = Field(120.0, gt=0.0)


class AmbiguitySettings(BaseModel):
    block_severity: Literal["low", "medium", "high"] = Field(
        "high",
        description="Minimum ambiguity severity that blocks automatic execution.",
    )
    max_questions: int = Field(3, ge=1, le=3)
    auto_proceed_confidence: float = Field(0.85, ge=0.0, le=1.0)
    clarified_confidence: float = Field(0.95, ge=0.0, le=1.0)


class TeamSettings(BaseModel):
    max_idle_members: int = Field(20, ge=0)
    max_completed_tasks: int = Field(100, ge=0)
    workload_step: int = Field(30, ge=1, le=100)
    busy_workload_threshold: int = Field(80, ge=1, le=100)
    result_trim_chars: int = Field(1500, ge=100)
    max_tokens: int = Field(1500, ge=64)


class ModeSettings(BaseModel):
    council_variant: Literal["simple", "advanced"] = "advanced"
    vote_bucket_chars: int = Field(50, ge=1)
    deliberation_max_rounds: int = Field(3, ge=1)
    review_excerpt_chars: int = Field(2000, ge=100)
    debate_rounds: int = Field(2, ge=1)


class FinalizerSettings(BaseModel):
    max_tool_iterations: int = Field(3, ge=1)
    tool_result_chars: int = Field(2000, ge=100)
    work_context_chars: int = Field(6000, ge=500)
    max_words: int = Field(200, ge=20)


class StoreSettings(BaseModel):
    backend: Literal["memory", "redis"] = "memory"
    redis_url: RedisDsn = Field(
        "redis://localhost:6379/0",
        description="Connection URL used when the Redis backend is selected.",
    )
    namespace: str = Field("chimera", min_length=1)
    execution_ttl_seconds: int = Field(86400, ge=60)
    idempotency_ttl_seconds: int = Field(3600, ge=1)
    audit_ttl_seconds: int = Field(604800, ge=60)
    audit_log_limit: int = Field(1000, ge=10)
    audit_trim: int = Field(100, ge=1)
    stale_running_seconds: float = Field(900.0, gt=0.0)


class ToolSettings(BaseModel):
    access_log_size: int = Field(500, ge=1)
    invocation_timeout_seconds: float = Field(30.0, gt=0.0)


class Settings(BaseSettings):
    environment: Literal["local", "test", "production"] = Field("local")
    log_level: str = Field("INFO")

    providers: dict[str, ProviderSettings] = Field(default_factory=dict)
    health: HealthSettings = Field(default_factory=HealthSettings)  # type: ignore[arg-type]
    retry: RetrySettings = Field(default_factory=RetrySettings)  # type: ignore[arg-type]
    batching: BatchSettings = Field(default_factory=BatchSettings)  # type: ignore[arg-type]
    ambiguity: AmbiguitySettings = Field(default_factory=AmbiguitySettings)  # type: ignore[arg-type]
    team: TeamSettings = Field(default_factory=TeamSettings)  # type: ignore[arg-type]
    modes: ModeSettings = Field(default_factory=ModeSettings)  # type: ignore[arg-type]
    finalizer: FinalizerSettings = Field(default_factory=FinalizerSettings)  # type: ignore[arg-type]
    store: StoreSettings = Field(default_factory=StoreSettings)  # type: ignore[arg-type]
    tools: ToolSettings = Field(default_factory=ToolSettings)  # type: ignore[arg-type]

    model_config = SettingsConfigDict(
        env_prefix="CHIMERA_",
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
    )


@lru_cache(maxsize=1)
def _get_cached_settings() -> Settings:
    return Settings()  # type: ignore[call-arg]


def get_settings(overrides: Mapping[str, Any] | None = None) -> Settings:
    """Return settings, using cached defaults unless overrides are provided."""
    if overrides:
        return Settings(**dict(overrides))
    return _get_cached_settings()
