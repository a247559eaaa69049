from __future__ import annotations

from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    app_name: str = "mailcourier"
    log_level: str = "INFO"

    # Redis backs the queue, idempotency records, retry counters and lookup caches.
    redis_url: str = "redis://localhost:6379/0"
    # Prefix every KV key so several environments can share one Redis.
    kv_key_prefix: str = "mailcourier"
    # Keep queue name configurable for multi-environment isolation.
    email_queue_name: str = "email.queue"
    # Worker concurrency mirrors the broker prefetch so each message gets one task.
    email_prefetch_count: int = 10
    # Dead-lettered payloads land in this Redis list for operator inspection.
    email_dlq_key: str = "mailcourier:dlq"
    # Status updates are published on this pub/sub channel.
    status_topic: str = "email.status"
    # Point-in-time status entries expire after an hour.
    status_cache_ttl_s: int = 3600
    # Processed records expire after 24h; the request id may be reprocessed afterwards.
    idempotency_ttl_s: int = 86400

    # Retry policy consulted by the worker before requeueing a failed message.
    retry_max_attempts: int = 3
    retry_initial_delay_ms: int = 1000
    retry_backoff_multiplier: float = 2.0
    retry_max_delay_ms: int = 300000
    # Upper bound of the random jitter as a fraction of the base delay.
    retry_jitter_ratio: float = 0.2
    retry_record_ttl_s: int = 86400

    # Circuit breaker thresholds for the outbound transport.
    cb_failure_threshold: int = 5
    cb_success_threshold: int = 2
    cb_open_seconds: int = 60
    # Operation name the orchestrator registers the send breaker under.
    cb_email_send_name: str = "email_send"

    # Subject directory and template catalog endpoints.
    user_service_url: str = "http://localhost:3001"
    template_service_url: str = "http://localhost:3004"
    # Bound every lookup so a stalled dependency turns into a retryable failure.
    lookup_timeout_ms: int = 5000
    user_cache_ttl_s: int = 1800
    template_cache_ttl_s: int = 3600

    # Select the outbound transport: smtp, sendgrid, mailgun, gmail, or fake for local development.
    email_provider: str = "smtp"
    email_from: str = "noreply@notifications.com"
    smtp_host: str = "localhost"
    smtp_port: int = 587
    smtp_username: str | None = None
    smtp_password: str | None = None
    smtp_start_tls: bool = False
    smtp_use_tls: bool = False
    # Credentials for the hosted relay presets; host and port are fixed per provider.
    sendgrid_api_key: str | None = None
    mailgun_username: str | None = None
    mailgun_password: str | None = None
    gmail_user: str | None = None
    gmail_app_password: str | None = None
    # Bound the send call; expiry counts as a breaker failure.
    send_timeout_ms: int = 10000

    # The worker serves the health surface on this address alongside the consumer.
    health_enabled: bool = True
    health_host: str = "0.0.0.0"
    health_port: int = 3002


@lru_cache
def get_settings() -> Settings:
    return Settings()
