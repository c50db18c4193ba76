# Central place for all configurable settings. We use Pydantic's
# BaseSettings so values can be read from env vars or a .env file.
# Workers and the API share this object, so queue tuning lives here too.

import json
from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def safe_json_loads(value):
    try:
        return json.loads(value)
    except (TypeError, ValueError):
        return value


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_json_loads=safe_json_loads,
    )

    # Core DB connection string, like sqlite:///./novapulse.db or Postgres URL.
    # Needed by SQLAlchemy to connect to the persistence layer.
    DATABASE_URL: str

    # Toggle SQLAlchemy echo logs. Useful for debugging queries locally.
    DB_ECHO: bool = False

    # Tenancy: the company id is supplied by the upstream gateway.
    COMPANY_HEADER_NAME: str = "X-Company-ID"

    # Webhook secrets are stored encrypted (base64 Fernet key recommended,
    # a raw 32 byte string is accepted and encoded for you).
    WEBHOOK_ENCRYPTION_KEY: Optional[str] = None

    # Queue worker tuning. Workers renew a running job's lease every third
    # of JOB_QUEUE_LEASE_SECONDS; a lease only runs out when its worker dies.
    JOB_QUEUE_POLL_INTERVAL_SECONDS: float = Field(default=1.0, gt=0)
    JOB_QUEUE_LEASE_SECONDS: int = Field(default=60, gt=0)
    JOB_QUEUE_WORKERS_PER_QUEUE: int = Field(default=2, ge=1, le=10)
    JOB_QUEUE_REAPER_INTERVAL_SECONDS: float = Field(default=15.0, gt=0)
    JOB_QUEUE_CLAIM_BATCH: int = Field(default=10, ge=1)
    JOB_QUEUE_NAMES: List[str] = Field(
        default_factory=lambda: ["email", "webhook", "workflow", "report"]
    )

    # Outbound webhook delivery.
    WEBHOOK_TIMEOUT_SECONDS: float = Field(default=10.0, gt=0)
    WEBHOOK_USER_AGENT: str = "NovaPulse-Webhooks/1.0"
    WEBHOOK_RESPONSE_BODY_LIMIT: int = 2000
    # Delivery logs follow the same 90 day TTL as audit logs.
    WEBHOOK_LOG_RETENTION_DAYS: int = Field(default=90, gt=0)
    WEBHOOK_LOGS_DEFAULT_LIMIT: int = 50

    # Dashboard badge thresholds (advisory only).
    QUEUE_HEALTH_MAX_FAILED: int = 10
    QUEUE_HEALTH_MAX_WAITING: int = 100

    # Email handler. Without SMTP_HOST the handler only logs.
    SMTP_HOST: Optional[str] = None
    SMTP_PORT: int = 587
    SMTP_USERNAME: Optional[str] = None
    SMTP_PASSWORD: Optional[str] = None
    SMTP_USE_TLS: bool = True
    SMTP_FROM: str = "no-reply@novapulse.local"

    LOG_LEVEL: str = "INFO"

    @field_validator("JOB_QUEUE_NAMES", mode="before")
    @classmethod
    def _parse_queue_names(cls, value):
        if isinstance(value, str):
            parts = [p.strip().lower() for p in value.split(",") if p.strip()]
            return parts
        return value


# Instantiate a single settings object for app-wide import.
# Any module can just `from novapulse.core.config import settings`.
settings = Settings()
