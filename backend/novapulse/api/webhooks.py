from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from novapulse.api.dependencies import get_actor, get_company_id
from novapulse.core.config import settings
from novapulse.core.db import get_db
from novapulse.core.errors import WebhookNotFound
from novapulse.crud.webhook_delivery_logs import list_delivery_logs
from novapulse.crud.webhooks import create_webhook, delete_webhook, get_webhook, list_webhooks, update_webhook
from novapulse.schemas.webhooks import (
    WebhookCreate,
    WebhookCreated,
    WebhookDeliveryLogRead,
    WebhookRead,
    WebhookTestResult,
    WebhookUpdate,
)
from novapulse.webhooks.dispatcher import TEST_EVENT, send_test_webhook


router = APIRouter(prefix="/webhooks", tags=["webhooks"])


def _require_webhook(db: Session, company_id: str, webhook_id: int):
    webhook = get_webhook(db, company_id, webhook_id)
    if webhook is None:
        raise WebhookNotFound(webhook_id)
    return webhook


@router.post("", response_model=WebhookCreated, status_code=status.HTTP_201_CREATED)
def create_webhook_subscription(
    payload: WebhookCreate,
    db: Session = Depends(get_db),
    company_id: str = Depends(get_company_id),
    actor: str | None = Depends(get_actor),
):
    webhook, secret = create_webhook(
        db,
        company_id=company_id,
        url=payload.url,
        events=payload.events,
        retries=payload.retries,
        is_active=payload.is_active,
        description=payload.description,
        created_by=actor,
    )
    read = WebhookRead.model_validate(webhook)
    return WebhookCreated(**read.model_dump(), secret=secret)


@router.get("", response_model=list[WebhookRead])
def list_webhook_subscriptions(
    db: Session = Depends(get_db),
    company_id: str = Depends(get_company_id),
):
    return list_webhooks(db, company_id)


@router.get("/{webhook_id}", response_model=WebhookRead)
def get_webhook_subscription(
    webhook_id: int,
    db: Session = Depends(get_db),
    company_id: str = Depends(get_company_id),
):
    return _require_webhook(db, company_id, webhook_id)


@router.patch("/{webhook_id}", response_model=WebhookRead)
def update_webhook_subscription(
    webhook_id: int,
    payload: WebhookUpdate,
    db: Session = Depends(get_db),
    company_id: str = Depends(get_company_id),
):
    webhook = _require_webhook(db, company_id, webhook_id)
    return update_webhook(db, webhook, payload.model_dump(exclude_unset=True))


@router.delete("/{webhook_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_webhook_subscription(
    webhook_id: int,
    db: Session = Depends(get_db),
    company_id: str = Depends(get_company_id),
):
    webhook = _require_webhook(db, company_id, webhook_id)
    delete_webhook(db, webhook)


@router.post("/{webhook_id}/test", response_model=WebhookTestResult, status_code=status.HTTP_202_ACCEPTED)
def test_webhook_subscription(
    webhook_id: int,
    db: Session = Depends(get_db),
    company_id: str = Depends(get_company_id),
):
    job = send_test_webhook(db, company_id=company_id, webhook_id=webhook_id)
    return WebhookTestResult(job_id=job.id, event=TEST_EVENT)


@router.get("/{webhook_id}/logs", response_model=list[WebhookDeliveryLogRead])
def list_webhook_delivery_logs(
    webhook_id: int,
    limit: int = Query(settings.WEBHOOK_LOGS_DEFAULT_LIMIT, ge=1, le=500),
    db: Session = Depends(get_db),
    company_id: str = Depends(get_company_id),
):
    _require_webhook(db, company_id, webhook_id)
    return list_delivery_logs(db, webhook_id, limit=limit)
