from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "patient-engagement-api"
    environment: str = "dev"
    storage_backend: str = "postgres"
    database_url: str | None = None
    database_pool_min_size: int = 1
    database_pool_max_size: int = 10
    job_max_attempts: int = 3
    job_retry_backoff_seconds: int = 300
    dispatch_batch_size: int = 50
    dispatch_concurrency: int = 10
    dispatch_slow_threshold_ms: int = 10_000
    scheduler_jitter_max_seconds: int = 300
    stale_processing_after_seconds: int = 900
    job_retention_days: int = 90
    maintenance_batch_size: int = 500
    default_timezone: str = "America/New_York"
    sprint_target_days: int = 30
    onboard_reminder_delay_hours: int = 24
    report_base_url: str = "https://headachevault.com/report"
    classifier_api_key: str | None = None
    classifier_model: str = "claude-3-5-haiku-20241022"
    classifier_timeout_seconds: float = 5.0
    classifier_max_tokens: int = 200
    sms_provider: str = "twilio"
    twilio_account_sid: str | None = None
    twilio_auth_token: str | None = None
    twilio_from_number: str | None = None
    twilio_api_base_url: str = "https://api.twilio.com"
    twilio_timeout_seconds: float = 10.0
    twilio_validate_signatures: bool = True
    public_base_url: str | None = None
    cron_secret: str | None = None
    admin_api_key: str | None = None
    otel_enabled: bool = True
    otel_service_name: str = "patient-engagement-api"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="HV_", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()
