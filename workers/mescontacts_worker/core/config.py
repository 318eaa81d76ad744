from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    environment: str = "dev"
    api_base_url: str = "http://localhost:8000"
    module_id: str = "expiration-worker"
    api_key: str = "local-expiration-key"
    request_timeout_seconds: float = 30.0
    expire_hour_utc: int = Field(default=5, ge=0, le=23)
    expire_minute_utc: int = Field(default=0, ge=0, le=59)
    expire_batch_size: int = 1000
    run_on_start: bool = False
    retry_initial_seconds: float = 30.0
    max_backoff_seconds: float = 900.0
    otel_enabled: bool = True
    otel_service_name: str = "mescontacts-worker"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="MC_WORKER_", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()
