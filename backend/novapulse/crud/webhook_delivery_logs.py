from datetime import datetime
from typing import Any

from sqlalchemy.orm import Session

from novapulse.core.time import utcnow
from novapulse.models.webhook_delivery_logs import WebhookDeliveryLog


def create_delivery_log(
    db: Session,
    *,
    webhook_id: int,
    job_id: int | None,
    company_id: str | None,
    event: str,
    attempt: int,
    status: str,
    payload: dict[str, Any] | None = None,
    status_code: int | None = None,
    error_message: str | None = None,
    response_body: str | None = None,
    duration_ms: int = 0,
) -> WebhookDeliveryLog:
    now = utcnow()
    log = WebhookDeliveryLog(
        webhook_id=webhook_id,
        job_id=job_id,
        company_id=company_id,
        event=event,
        attempt=attempt,
        status=status,
        payload_json=payload,
        status_code=status_code,
        error_message=error_message,
        response_body=response_body,
        duration_ms=duration_ms,
        delivered_at=now if status == "success" else None,
        created_at=now,
    )
    db.add(log)
    db.commit()
    db.refresh(log)
    return log


def list_delivery_logs(db: Session, webhook_id: int, *, limit: int = 50) -> list[WebhookDeliveryLog]:
    return (
        db.query(WebhookDeliveryLog)
        .filter(WebhookDeliveryLog.webhook_id == webhook_id)
        .order_by(WebhookDeliveryLog.created_at.desc(), WebhookDeliveryLog.id.desc())
        .limit(limit)
        .all()
    )


def purge_delivery_logs(db: Session, cutoff: datetime) -> int:
    """
    Delete delivery logs created before the cutoff.

    Intended for the scheduled retention job; never called inline with delivery.
    """
    if cutoff is None:
        raise ValueError("cutoff is required")
    deleted = (
        db.query(WebhookDeliveryLog)
        .filter(WebhookDeliveryLog.created_at < cutoff)
        .delete(synchronize_session=False)
    )
    db.commit()
    return int(deleted or 0)
