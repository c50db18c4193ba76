import secrets
from datetime import datetime
from typing import Any

from sqlalchemy.orm import Session

from novapulse.core.crypto import encrypt_secret
from novapulse.core.errors import InvalidWebhookConfig
from novapulse.core.time import utcnow
from novapulse.models.enums import WebhookLastStatusEnum
from novapulse.models.webhooks import WebhookSubscription


_UPDATABLE_FIELDS = {"url", "events", "description", "retries", "is_active"}


def generate_secret() -> str:
    return secrets.token_hex(32)


def _normalize_events(events: list[str] | None) -> list[str]:
    seen: list[str] = []
    for item in events or []:
        if not isinstance(item, str):
            continue
        name = item.strip()
        if name and name not in seen:
            seen.append(name)
    return seen


def _validate_url(url: str | None) -> str:
    value = (url or "").strip()
    if not value.lower().startswith(("http://", "https://")):
        raise InvalidWebhookConfig("url must be an absolute http(s) URL")
    return value


def _validate_retries(retries: int) -> int:
    if retries < 1 or retries > 10:
        raise InvalidWebhookConfig("retries must be between 1 and 10")
    return retries


def create_webhook(
    db: Session,
    *,
    company_id: str,
    url: str,
    events: list[str],
    retries: int = 3,
    is_active: bool = True,
    description: str | None = None,
    created_by: str | None = None,
    secret: str | None = None,
) -> tuple[WebhookSubscription, str]:
    """Create a subscription and return it together with its plaintext secret."""
    normalized = _normalize_events(events)
    if is_active and not normalized:
        raise InvalidWebhookConfig("active webhooks need at least one event")
    plain_secret = secret or generate_secret()
    webhook = WebhookSubscription(
        company_id=company_id,
        url=_validate_url(url),
        events=normalized,
        secret_enc=encrypt_secret(plain_secret),
        is_active=is_active,
        retries=_validate_retries(retries),
        description=description,
        created_by=created_by,
        last_status=WebhookLastStatusEnum.NEVER.value,
    )
    db.add(webhook)
    db.commit()
    db.refresh(webhook)
    return webhook, plain_secret


def list_webhooks(db: Session, company_id: str) -> list[WebhookSubscription]:
    return (
        db.query(WebhookSubscription)
        .filter(
            WebhookSubscription.company_id == company_id,
            WebhookSubscription.deleted_at.is_(None),
        )
        .order_by(WebhookSubscription.id.desc())
        .all()
    )


def get_webhook(db: Session, company_id: str, webhook_id: int) -> WebhookSubscription | None:
    return (
        db.query(WebhookSubscription)
        .filter(
            WebhookSubscription.company_id == company_id,
            WebhookSubscription.id == webhook_id,
            WebhookSubscription.deleted_at.is_(None),
        )
        .first()
    )


def list_active_webhooks(db: Session, company_id: str) -> list[WebhookSubscription]:
    return (
        db.query(WebhookSubscription)
        .filter(
            WebhookSubscription.company_id == company_id,
            WebhookSubscription.is_active.is_(True),
            WebhookSubscription.deleted_at.is_(None),
        )
        .order_by(WebhookSubscription.id.asc())
        .all()
    )


def update_webhook(
    db: Session,
    webhook: WebhookSubscription,
    changes: dict[str, Any],
) -> WebhookSubscription:
    for key, value in changes.items():
        if key not in _UPDATABLE_FIELDS:
            continue
        if key == "url":
            value = _validate_url(value)
        elif key == "events":
            value = _normalize_events(value)
        elif key == "retries":
            value = _validate_retries(int(value))
        elif key == "is_active":
            value = bool(value)
        setattr(webhook, key, value)
    if webhook.is_active and not webhook.events:
        db.rollback()
        raise InvalidWebhookConfig("active webhooks need at least one event")
    db.commit()
    db.refresh(webhook)
    return webhook


def delete_webhook(db: Session, webhook: WebhookSubscription) -> WebhookSubscription:
    webhook.deleted_at = utcnow()
    webhook.is_active = False
    db.commit()
    db.refresh(webhook)
    return webhook


def record_delivery_status(
    db: Session,
    webhook_id: int,
    *,
    status: str,
    attempted_at: datetime,
) -> None:
    (
        db.query(WebhookSubscription)
        .filter(WebhookSubscription.id == webhook_id)
        .update(
            {
                WebhookSubscription.last_status: status,
                WebhookSubscription.last_attempt_at: attempted_at,
                WebhookSubscription.updated_at: utcnow(),
            },
            synchronize_session=False,
        )
    )
    db.commit()
