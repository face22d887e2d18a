from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "answer-auditor"
    environment: str = "dev"
    api_key: str | None = None

    database_url: str | None = None
    database_pool_min_size: int = 1
    database_pool_max_size: int = 10

    crawl_max_pages: int = 50
    crawl_max_depth: int = 3
    max_frontier_urls: int = 2000
    max_enqueue_per_page: int = 100
    nav_seed_limit: int = 50
    sitemap_url_cap: int = 500
    fetch_timeout_ms: int = 5000
    fetch_max_body_bytes: int = 2_000_000
    user_agent: str = "Mozilla/5.0 (compatible; AnswerAuditor/1.0; +https://answer-auditor.dev/bot)"
    lock_ttl_seconds: int = 20
    visiting_ttl_seconds: int = 60
    chain_max: int = 10
    chain_soft_deadline_ms: int = 18000
    self_chain_enabled: bool = False

    synth_batch_size: int = 10

    watchdog_interval_seconds: float = 60.0
    crawl_timeout_seconds: int = 90
    general_timeout_seconds: int = 120
    heartbeat_hard_cap_seconds: int = 120
    max_attempts: int = 3
    recurring_failure_window_seconds: int = 600
    recurring_failure_threshold: int = 3
    slow_phase_window_seconds: int = 3600
    slow_phase_p95_seconds: float = 45.0

    brave_api_key: str | None = None
    openai_api_key: str | None = None
    openai_base_url: str = "https://api.openai.com/v1"
    openai_model: str = "gpt-4o"
    citation_query_limit: int = 6
    citation_max_concurrent: int = 3
    citation_chunk_delay_seconds: float = 0.2
    citation_rate_capacity: int = 5
    citation_rate_refill_per_second: float = 5.0
    citation_retry_attempts: int = 3
    citation_retry_base_seconds: float = 0.5
    citation_timeout_seconds: float = 15.0

    poll_interval_seconds: float = 2.0
    max_backoff_seconds: float = 15.0
    pump_batch_size: int = 10

    otel_enabled: bool = True
    otel_service_name: str = "answer-auditor"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True
    log_level: str = "INFO"

    model_config = SettingsConfigDict(env_prefix="AUDITOR_", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()
