from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "community-triage-api"
    environment: str = "dev"
    log_level: str = "INFO"
    webhook_secret: str | None = None
    webhook_header: str = "X-Webhook-Token"
    database_url: str | None = None
    database_pool_min_size: int = 1
    database_pool_max_size: int = 10
    reasoning_base_url: str = "https://api.groq.com/openai/v1"
    reasoning_api_key: str | None = None
    reasoning_model: str = "llama-3.3-70b-versatile"
    reasoning_timeout_seconds: float = 15.0
    reasoning_temperature: float = 0.3
    reasoning_max_tokens: int = 600
    ingest_concurrency: int = 5
    dedup_window_size: int = 5000
    dedup_window_hours: int = 72
    trust_weight_source: float = 0.3
    trust_weight_recency: float = 0.2
    trust_weight_verification: float = 0.3
    trust_weight_community: float = 0.2
    recency_half_life_days: float = 90.0
    recency_floor: float = 0.1
    source_reputation_json: str | None = None
    rater_hash_salt: str = "change-me"
    supabase_url: str | None = None
    supabase_anon_key: str | None = None
    auth_timeout_seconds: float = 5.0
    otel_enabled: bool = True
    otel_service_name: str = "community-triage-api"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="TRIAGE_", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()
