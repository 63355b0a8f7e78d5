from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "busqueda-index"
    environment: str = "dev"
    log_level: str = "INFO"
    storage_backend: Literal["postgres", "memory"] = "postgres"
    database_url: str | None = None
    database_pool_min_size: int = 1
    database_pool_max_size: int = 10
    database_command_timeout_seconds: float = 15.0
    ingest_max_attempts: int = 3
    ingest_retry_base_seconds: float = 1.0
    ingest_retry_max_seconds: float = 30.0
    dispatcher_workers: int = 4
    dispatcher_queue_size: int = 1000
    sync_enabled: bool = True
    sync_run_on_startup: bool = True
    sync_initial_delay_seconds: float = 60.0
    sync_interval_seconds: float = 300.0
    fact_source_url: str = "http://localhost:8081"
    poi_source_url: str = "http://localhost:8082"
    upstream_timeout_seconds: float = 10.0
    search_default_size: int = 10
    search_max_size: int = 50
    admin_reset_enabled: bool = False
    otel_enabled: bool = True
    otel_service_name: str = "busqueda-index"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0

    model_config = SettingsConfigDict(env_prefix="BQ_", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()
