from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "mescontacts-api"
    environment: str = "dev"
    storage_backend: Literal["postgres", "memory"] = "postgres"
    database_url: str | None = None
    database_pool_min_size: int = 1
    database_pool_max_size: int = 10
    expire_batch_max_size: int = 1000
    supabase_url: str | None = None
    supabase_anon_key: str | None = None
    auth_timeout_seconds: float = 5.0
    worker_module_id: str = "expiration-worker"
    worker_api_key_sha256: str | None = None
    stripe_secret_key: str | None = None
    stripe_webhook_secret: str | None = None
    stripe_price_id: str | None = None
    stripe_webhook_tolerance_seconds: int = 300
    public_base_url: str = "http://localhost:3000"
    checkout_duration_days: int = 30
    currency: str = "CAD"
    otel_enabled: bool = True
    otel_service_name: str = "mescontacts-api"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="MC_", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()
