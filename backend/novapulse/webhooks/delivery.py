from __future__ import annotations

import logging
from time import monotonic
from typing import Any

import requests
from sqlalchemy.orm import Session

from novapulse.core.config import settings
from novapulse.core.crypto import decrypt_secret
from novapulse.core.metrics import record_webhook_delivery
from novapulse.core.time import utcnow
from novapulse.core.tracing import trace_span
from novapulse.crud.webhook_delivery_logs import create_delivery_log
from novapulse.crud.webhooks import record_delivery_status
from novapulse.models.enums import DeliveryStatusEnum
from novapulse.models.jobs import Job
from novapulse.schemas.jobs import WebhookJobPayload
from novapulse.webhooks.signing import encode_payload, sign_payload


logger = logging.getLogger(__name__)


class WebhookDeliveryFailed(RuntimeError):
    def __init__(self, message: str, *, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


def build_headers(job: Job, payload: WebhookJobPayload, body: str, secret: str, attempt: int) -> dict[str, str]:
    return {
        "Content-Type": "application/json",
        "User-Agent": settings.WEBHOOK_USER_AGENT,
        "X-NovaPulse-Event": payload.event,
        "X-NovaPulse-Webhook-Id": str(payload.webhook_id),
        "X-NovaPulse-Delivery": str(job.id),
        "X-NovaPulse-Attempt": str(attempt),
        "X-NovaPulse-Signature": sign_payload(secret, body),
    }


def _truncate(text: str | None) -> str | None:
    if not text:
        return None
    limit = max(0, settings.WEBHOOK_RESPONSE_BODY_LIMIT)
    return text[:limit]


def _post(url: str, body: str, headers: dict[str, str]) -> tuple[int | None, str | None, str | None]:
    """Returns (status_code, response_body, error_message)."""
    try:
        resp = requests.post(
            url,
            data=body.encode("utf-8"),
            headers=headers,
            timeout=settings.WEBHOOK_TIMEOUT_SECONDS,
        )
    except requests.Timeout:
        return None, None, f"Timed out after {settings.WEBHOOK_TIMEOUT_SECONDS}s"
    except requests.RequestException as exc:
        return None, None, str(exc) or exc.__class__.__name__
    response_body = _truncate(getattr(resp, "text", None))
    if 200 <= resp.status_code < 300:
        return resp.status_code, response_body, None
    return resp.status_code, response_body, f"Webhook responded with status {resp.status_code}"


def deliver_webhook_job(db: Session, job: Job) -> dict[str, Any]:
    """Make exactly one signed POST for ``job`` and log the outcome.

    Raises WebhookDeliveryFailed on any non-2xx answer or transport error so
    the worker harness routes the job through retry_or_fail. 4xx answers are
    retried like 5xx ones.
    """
    payload = WebhookJobPayload.model_validate(job.payload_json or {})
    attempt = int(job.attempts or 0) + 1
    secret = decrypt_secret(payload.secret_enc)
    body = encode_payload(payload.payload)
    headers = build_headers(job, payload, body, secret, attempt)

    start = monotonic()
    with trace_span(
        "webhook.deliver",
        webhook_id=payload.webhook_id,
        job_id=job.id,
        event=payload.event,
        attempt=attempt,
    ):
        status_code, response_body, error_message = _post(payload.url, body, headers)
    elapsed = monotonic() - start
    duration_ms = int(round(elapsed * 1000.0))
    success = error_message is None
    status = (DeliveryStatusEnum.SUCCESS if success else DeliveryStatusEnum.FAILED).value

    create_delivery_log(
        db,
        webhook_id=payload.webhook_id,
        job_id=job.id,
        company_id=job.company_id,
        event=payload.event,
        attempt=attempt,
        status=status,
        payload=payload.payload,
        status_code=status_code,
        error_message=error_message,
        response_body=response_body,
        duration_ms=duration_ms,
    )
    record_delivery_status(db, payload.webhook_id, status=status, attempted_at=utcnow())
    record_webhook_delivery(event=payload.event, success=success, seconds=elapsed)

    if not success:
        logger.warning(
            "Webhook delivery failed: webhook_id=%s job_id=%s attempt=%s/%s error=%s",
            payload.webhook_id,
            job.id,
            attempt,
            job.max_attempts,
            error_message,
        )
        raise WebhookDeliveryFailed(error_message, status_code=status_code)
    return {"status_code": status_code, "duration_ms": duration_ms, "attempt": attempt}
