"""Settings for the whispr trust & safety engine."""

from __future__ import annotations

from typing import Optional

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _env_field(default, *env_names: str):
    if env_names:
        alias = AliasChoices(*env_names) if len(env_names) > 1 else env_names[0]
        return Field(default=default, validation_alias=alias)
    return Field(default=default)


class Settings(BaseSettings):
    environment: str = _env_field("production", "ENV", "APP_ENV", "ENVIRONMENT")
    service_name: str = _env_field("whispr-safety", "SERVICE_NAME")
    git_commit: str = _env_field("unknown", "GIT_COMMIT", "COMMIT_SHA", "SOURCE_VERSION")
    obs_log_level: str = _env_field("INFO", "LOG_LEVEL")
    obs_log_sampling_rate_info: float = _env_field(1.0, "LOG_SAMPLING_RATE_INFO")

    redis_url: str = _env_field("redis://localhost:6379/0", "REDIS_URL")
    # "memory" keeps report aggregates in-process; "redis" shares them across workers
    report_aggregate_backend: str = _env_field("memory", "REPORT_AGGREGATE_BACKEND")
    report_aggregate_prefix: str = _env_field("mod:report_agg", "REPORT_AGGREGATE_PREFIX")
    report_write_retries: int = _env_field(5, "REPORT_WRITE_RETRIES")

    moderation_catalog_path: Optional[str] = _env_field(None, "MODERATION_CATALOG_PATH")
    moderation_policy_path: Optional[str] = _env_field(None, "MODERATION_POLICY_PATH")
    moderation_max_text_length: int = _env_field(10_000, "MODERATION_MAX_TEXT_LENGTH")
    moderation_toxicity_flag_threshold: float = _env_field(0.5, "MODERATION_TOXICITY_THRESHOLD")
    moderation_spam_flag_threshold: float = _env_field(0.6, "MODERATION_SPAM_THRESHOLD")
    moderation_high_toxicity_threshold: float = _env_field(0.8, "MODERATION_HIGH_TOXICITY_THRESHOLD")

    reputation_default_score: int = _env_field(75, "REPUTATION_DEFAULT_SCORE")
    reputation_write_retries: int = _env_field(5, "REPUTATION_WRITE_RETRIES")

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        case_sensitive=False,
        env_nested_delimiter="__",
        extra="ignore",
    )

    @field_validator("report_aggregate_backend", mode="before")
    def _normalise_backend(cls, value):  # type: ignore[override]
        text = str(value or "memory").strip().lower()
        if text not in {"memory", "redis"}:
            raise ValueError(f"unsupported report aggregate backend: {value}")
        return text

    @field_validator("reputation_default_score", mode="after")
    def _clamp_default_score(cls, value: int) -> int:  # type: ignore[override]
        return max(0, min(100, value))


def _normalise_level(level: str) -> str:
    return level.upper()


settings = Settings()
settings.obs_log_level = _normalise_level(settings.obs_log_level)
