from __future__ import annotations

from typing import Any

from sqlalchemy.orm import Session

from novapulse.core.errors import InvalidEventName, WebhookInactive, WebhookNotFound
from novapulse.core.metrics import record_event_fan_out
from novapulse.core.queue import enqueue_job
from novapulse.core.time import utcnow
from novapulse.core.tracing import trace_span
from novapulse.crud.webhooks import get_webhook, list_active_webhooks
from novapulse.models.jobs import Job
from novapulse.models.webhooks import WebhookSubscription
from novapulse.schemas.jobs import WebhookJobPayload


TEST_EVENT = "webhook.test"


def _normalize_event_name(event_name: str | None) -> str:
    if not isinstance(event_name, str) or not event_name.strip():
        raise InvalidEventName(event_name)
    return event_name.strip()


def _job_payload(webhook: WebhookSubscription, event_name: str, payload: dict[str, Any]) -> WebhookJobPayload:
    # The job carries its own copy of url and secret so later edits or a
    # delete of the subscription never change what is already queued.
    return WebhookJobPayload(
        webhook_id=webhook.id,
        url=webhook.url,
        secret_enc=webhook.secret_enc,
        event=event_name,
        payload=dict(payload or {}),
    )


def _subscribes_to(webhook: WebhookSubscription, event_name: str) -> bool:
    events = webhook.events if isinstance(webhook.events, list) else []
    return event_name in events


def _fire_event_impl(
    db: Session,
    *,
    company_id: str,
    event_name: str,
    payload: dict[str, Any],
) -> list[Job]:
    # Materialise the subscription list before enqueueing anything.
    matches = [
        (webhook.retries, _job_payload(webhook, event_name, payload))
        for webhook in list_active_webhooks(db, company_id)
        if _subscribes_to(webhook, event_name)
    ]
    if not matches:
        return []

    jobs = [
        enqueue_job(
            db,
            queue_name="webhook",
            payload=job_payload,
            max_attempts=retries,
            company_id=company_id,
            commit=False,
        )
        for retries, job_payload in matches
    ]
    db.commit()
    for job in jobs:
        db.refresh(job)
    record_event_fan_out(event_name, len(jobs))
    return jobs


def fire_event(
    db: Session,
    *,
    company_id: str,
    event_name: str,
    payload: dict[str, Any] | None = None,
) -> list[Job]:
    event_name = _normalize_event_name(event_name)
    with trace_span("webhook.fire_event", company_id=company_id, event=event_name):
        return _fire_event_impl(
            db,
            company_id=company_id,
            event_name=event_name,
            payload=payload or {},
        )


def send_test_webhook(db: Session, *, company_id: str, webhook_id: int) -> Job:
    webhook = get_webhook(db, company_id, webhook_id)
    if webhook is None:
        raise WebhookNotFound(webhook_id)
    if not webhook.is_active:
        raise WebhookInactive(webhook_id)
    payload = {"test": True, "timestamp": utcnow().isoformat() + "Z"}
    return enqueue_job(
        db,
        queue_name="webhook",
        payload=_job_payload(webhook, TEST_EVENT, payload),
        max_attempts=webhook.retries,
        company_id=company_id,
    )
