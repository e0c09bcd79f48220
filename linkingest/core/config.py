from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    environment: str = "dev"
    database_url: str | None = None
    db_min_pool_size: int = 1
    db_max_pool_size: int = 5
    poll_interval_seconds: float = 2.0
    max_backoff_seconds: float = 15.0
    batch_size: int = 5
    job_max_attempts: int = 3
    job_retry_base_seconds: int = 5
    job_retry_max_seconds: int = 300
    recently_completed_window_hours: int = 24
    stuck_job_after_minutes: int = 20
    stuck_job_reaper_interval_seconds: float = 60.0
    stuck_job_reaper_batch_size: int = 100
    followup_max_depth: int = 3
    merge_conflict_retries: int = 3
    fetch_timeout_seconds: float = 10.0
    fetch_max_retries: int = 2
    fetch_retry_delay_seconds: float = 1.0
    fetch_max_bytes: int = 2 * 1024 * 1024
    fetch_max_redirects: int = 3
    fetch_user_agent: str = "linkingest/1.0 (+https://github.com/linkingest)"
    log_level: str = "INFO"
    otel_enabled: bool = True
    otel_service_name: str = "linkingest-worker"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="LI_", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()
