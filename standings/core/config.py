from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "league-standings-api"
    environment: str = "dev"
    api_key_header: str = "X-API-Key"
    api_keys_json: str | None = None
    auth_disabled: bool = False
    database_url: str | None = None
    database_pool_min_size: int = 1
    database_pool_max_size: int = 10
    job_max_attempts: int = 3
    job_retry_base_seconds: int = 2
    job_retry_max_seconds: int = 30
    job_lease_seconds: int = 60
    head_to_head_enabled: bool = False
    job_ttl_days: int = 7
    snapshot_ttl_days: int = 30
    snapshot_min_keep: int = 3
    audit_ttl_days: int = 90
    health_duration_window_hours: int = 24
    health_recent_window_minutes: int = 60
    health_pending_backlog_threshold: int = 50
    health_failed_jobs_threshold: int = 10
    otel_enabled: bool = True
    otel_service_name: str = "league-standings-api"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="LS_", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()
