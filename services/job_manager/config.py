from __future__ import annotations

from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Shared configuration for the job manager and the worker.

    Values come from the environment (or `.env`), e.g. REDIS_URL,
    VISIBILITY_TIMEOUT_S, EMAIL_API_KEY.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # -----------------------
    # Queue store
    # -----------------------
    redis_url: str = "redis://localhost:6379/0"
    key_prefix: str = "mailq"
    queue_name: str = "default"

    # -----------------------
    # Retry / lease policy
    # -----------------------
    max_retries: int = 3  # retries after the first attempt
    backoff_base_s: float = 1.0
    backoff_factor: float = 2.0
    backoff_cap_s: float = 300.0
    visibility_timeout_s: float = 60.0  # a lease older than this is considered orphaned
    lease_poll_interval_s: float = 0.5
    finished_job_ttl_s: int = 86400

    # -----------------------
    # Job manager background loops
    # -----------------------
    reaper_interval_s: float = 5.0
    metrics_interval_s: float = 2.0

    # -----------------------
    # Worker
    # -----------------------
    worker_count: int = 1
    worker_lease_timeout_s: float = 5.0
    worker_metrics_port: Optional[int] = None

    # -----------------------
    # Logging
    # -----------------------
    log_format: str = "plain"  # plain | json
    log_level: str = "INFO"
    event_log_enabled: bool = True
    event_log_format: str = "json"  # json | csv
    event_log_path: str = "logs/job_events.jsonl"

    # -----------------------
    # Transactional email provider
    # -----------------------
    email_api_url: str = "https://api.sendgrid.com/v3/mail/send"
    email_api_key: str = ""
    email_from: str = "no-reply@example.com"
    email_timeout_s: float = 10.0


@lru_cache
def get_settings() -> Settings:
    return Settings()
