"""Application configuration managed via environment variables."""
from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    app_name: str = "Stepflow Backend"
    debug: bool = False
    log_level: str = "INFO"
    database_url: str = "postgresql+psycopg2://stepflow@localhost:5432/stepflow"
    opik_enabled: bool = False
    opik_api_key: str | None = None
    opik_project: str = "stepflow"
    openai_api_key: str | None = None
    openai_model: str = "gpt-4o-mini"
    generation_call_timeout_seconds: float = 30.0
    generation_global_timeout_seconds: float = 120.0
    generation_max_attempts: int = 3
    generation_rate_limit_backoff_seconds: float = 5.0
    generation_transient_backoff_seconds: float = 2.0
    generation_min_interval_seconds: float = 0.5
    stale_generation_threshold_seconds: int = 180
    default_start_time: str = "08:00"
    daily_check_interval_hours: int = 12
    daily_lookahead_days: int = 2
    scheduler_enabled: bool = False
    scheduler_timezone: str = "UTC"
    daily_job_hour: int = 5
    daily_job_minute: int = 0
    jobs_run_on_startup: bool = False
    notifications_provider: str = "memory"


@lru_cache
def get_settings() -> Settings:
    """Return a cached Settings instance."""
    return Settings()


settings = get_settings()
