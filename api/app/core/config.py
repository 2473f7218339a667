from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "media-contacts-search-api"
    environment: str = "dev"
    log_level: str = "INFO"
    database_url: str | None = None
    database_pool_min_size: int = 1
    database_pool_max_size: int = 10
    redis_url: str | None = None

    exa_api_key: str | None = None
    exa_base_url: str = "https://api.exa.ai"
    exa_timeout_seconds: float = 30.0
    exa_max_results: int = 10
    trusted_news_domains: list[str] = ["reuters.com", "apnews.com", "ap.org", "bbc.com", "bbc.co.uk"]
    authority_boost: float = 0.2

    rate_limit_sweep_interval_seconds: float = 60.0
    rate_limit_ai_operations_max: int = 100
    rate_limit_ai_operations_window_seconds: float = 3600.0
    rate_limit_research_max: int = 20
    rate_limit_research_window_seconds: float = 3600.0
    rate_limit_enrichment_max: int = 50
    rate_limit_enrichment_window_seconds: float = 3600.0
    rate_limit_duplicate_detection_max: int = 30
    rate_limit_duplicate_detection_window_seconds: float = 3600.0
    rate_limit_ip_max: int = 100
    rate_limit_ip_window_seconds: float = 900.0
    rate_limit_admin_max: int = 500
    rate_limit_admin_window_seconds: float = 3600.0

    retry_max_attempts: int = 3
    retry_base_delay_seconds: float = 1.0
    retry_max_delay_seconds: float = 15.0
    retry_backoff_multiplier: float = 2.0
    retry_jitter: bool = True

    breaker_failure_threshold: int = 5
    breaker_recovery_timeout_seconds: float = 45.0
    breaker_monitoring_period_seconds: float = 300.0

    search_max_query_length: int = 500
    search_default_max_results: int = 10
    search_max_in_flight_per_job: int = 3
    search_job_timeout_seconds: float = 300.0
    search_estimated_seconds_per_provider: float = 20.0

    budget_daily_limit: float = 25.0
    budget_hard_stop: bool = True
    alert_operation_cost_threshold: float = 1.0
    alert_tokens_threshold: int = 10000
    alert_budget_thresholds: list[int] = [50, 75, 90]
    alert_webhook_url: str | None = None
    alert_timeout_seconds: float = 5.0

    import_batch_size: int = 25
    import_max_concurrent_batches: int = 3

    otel_enabled: bool = True
    otel_service_name: str = "media-contacts-search-api"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="MC_", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()
