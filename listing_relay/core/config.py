from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "listing-relay"
    environment: str = "dev"
    database_url: str | None = None
    database_pool_min_size: int = 1
    database_pool_max_size: int = 10
    job_max_attempts: int = 3
    job_retry_backoff_seconds: float = 1.0
    job_concurrency: int = 4
    job_stats_log_every: int = 10
    default_adapter_version: str = "unknown"
    adapter_plugins_json: str | None = None
    resume_queued_jobs_on_startup: bool = False
    webhook_timeout_seconds: float = 10.0
    webhook_max_attempts: int = 1
    webhook_retry_base_seconds: float = 2.0
    webhook_retry_max_seconds: float = 60.0
    webhook_user_agent: str = "listing-relay-webhooks/1.0"
    crm_activity_lookback: int = 100
    shutdown_timeout_seconds: float = 10.0
    otel_enabled: bool = True
    otel_service_name: str = "listing-relay"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="LR_", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()
