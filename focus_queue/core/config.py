from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "focus-queue"
    environment: str = "dev"
    database_url: str | None = None
    database_pool_min_size: int = 1
    database_pool_max_size: int = 10
    supabase_url: str | None = None
    supabase_anon_key: str | None = None
    auth_timeout_seconds: float = 5.0
    queue_max_items: int = 12
    queue_max_per_source: int = 4
    queue_min_score: float = 0.2
    queue_diversity_enabled: bool = True
    scoring_variant: Literal["simple", "rich"] = "simple"
    writeback_queue_size: int = 256
    writeback_max_attempts: int = 3
    writeback_retry_base_seconds: float = 0.5
    writeback_retry_max_seconds: float = 10.0
    source_api_base_url: str | None = None
    source_api_key: str | None = None
    source_api_timeout_seconds: float = 10.0
    otel_enabled: bool = True
    otel_service_name: str = "focus-queue"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="FQ_", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()
