from datetime import datetime, timedelta

from novapulse.core.config import settings
from novapulse.core.time import normalize_dt, utcnow


ALLOWED_RETENTION_DATASETS = {"webhook_delivery_logs"}


def validate_dataset_key(dataset_key: str) -> None:
    if dataset_key not in ALLOWED_RETENTION_DATASETS:
        raise ValueError(f"Unsupported dataset_key: {dataset_key}")


def default_retention_days(dataset_key: str) -> int:
    validate_dataset_key(dataset_key)
    return settings.WEBHOOK_LOG_RETENTION_DAYS


def compute_purge_cutoff(dataset_key: str, days: int | None = None, *, now: datetime | None = None) -> datetime:
    validate_dataset_key(dataset_key)
    retention_days = days if days is not None else default_retention_days(dataset_key)
    if retention_days <= 0:
        raise ValueError("retention days must be positive")
    anchor = normalize_dt(now) or utcnow()
    return anchor - timedelta(days=retention_days)
