import os
from datetime import timedelta
from uuid import uuid4

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

os.environ.setdefault("DATABASE_URL", "sqlite:///./test.db")
os.environ.setdefault("WEBHOOK_ENCRYPTION_KEY", "novapulse-test-key-0123456789abc")
os.environ["SKIP_MIGRATIONS"] = "1"

from novapulse.core.crypto import decrypt_secret
from novapulse.core.db import Base
from novapulse.core.errors import InvalidEventName, InvalidWebhookConfig, WebhookInactive, WebhookNotFound
from novapulse.crud.webhooks import create_webhook, delete_webhook, get_webhook, update_webhook
from novapulse.models.jobs import Job
from novapulse.models.webhooks import WebhookSubscription
from novapulse.webhooks.dispatcher import TEST_EVENT, fire_event, send_test_webhook


def _setup_db(db_url: str):
    engine = create_engine(db_url, connect_args={"check_same_thread": False})
    SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)
    Base.metadata.create_all(bind=engine)
    return SessionLocal


def test_create_webhook_encrypts_secret_and_validates_config():
    SessionLocal = _setup_db(f"sqlite:///./dispatch_create_{uuid4().hex}.db")

    with SessionLocal() as db:
        webhook, secret = create_webhook(
            db,
            company_id="acme",
            url="https://example.com/hook",
            events=["task.created", "task.created", " task.done "],
            created_by="user-1",
        )
        assert len(secret) == 64
        assert webhook.secret_enc != secret
        assert decrypt_secret(webhook.secret_enc) == secret
        assert webhook.events == ["task.created", "task.done"]
        assert webhook.retries == 3
        assert webhook.last_status == "never"

        with pytest.raises(InvalidWebhookConfig):
            create_webhook(db, company_id="acme", url="ftp://example.com", events=["x"])
        with pytest.raises(InvalidWebhookConfig):
            create_webhook(db, company_id="acme", url="https://example.com", events=["x"], retries=11)
        with pytest.raises(InvalidWebhookConfig):
            update_webhook(db, webhook, {"events": []})


def test_fire_event_fans_out_only_to_matching_active_subscriptions():
    SessionLocal = _setup_db(f"sqlite:///./dispatch_fanout_{uuid4().hex}.db")

    with SessionLocal() as db:
        first, _ = create_webhook(db, company_id="acme", url="https://a.example.com", events=["task.created"])
        second, _ = create_webhook(
            db, company_id="acme", url="https://b.example.com", events=["task.created", "task.done"], retries=5
        )
        create_webhook(db, company_id="acme", url="https://c.example.com", events=["task.done"])
        create_webhook(db, company_id="acme", url="https://d.example.com", events=["task.created"], is_active=False)
        create_webhook(db, company_id="other", url="https://e.example.com", events=["task.created"])
        first_id, second_id = first.id, second.id

        jobs = fire_event(db, company_id="acme", event_name="task.created", payload={"task_id": 7})

        assert len(jobs) == 2
        by_webhook = {job.payload_json["webhook_id"]: job for job in jobs}
        assert set(by_webhook) == {first_id, second_id}
        for job in jobs:
            assert job.queue_name == "webhook"
            assert job.state == "waiting"
            assert job.company_id == "acme"
            assert job.payload_json["event"] == "task.created"
            assert job.payload_json["payload"] == {"task_id": 7}
        assert by_webhook[second_id].max_attempts == 5
        assert by_webhook[first_id].max_attempts == 3


def test_fire_event_without_subscribers_is_a_no_op():
    SessionLocal = _setup_db(f"sqlite:///./dispatch_noop_{uuid4().hex}.db")

    with SessionLocal() as db:
        create_webhook(db, company_id="acme", url="https://a.example.com", events=["task.done"])

        assert fire_event(db, company_id="acme", event_name="task.created") == []
        assert db.query(Job).count() == 0
        with pytest.raises(InvalidEventName):
            fire_event(db, company_id="acme", event_name="   ")


def test_deleted_webhook_keeps_already_queued_jobs():
    SessionLocal = _setup_db(f"sqlite:///./dispatch_delete_{uuid4().hex}.db")

    with SessionLocal() as db:
        webhook, _ = create_webhook(db, company_id="acme", url="https://a.example.com", events=["task.created"])
        webhook_id = webhook.id
        jobs = fire_event(db, company_id="acme", event_name="task.created")
        job_id = jobs[0].id

        delete_webhook(db, webhook)

        assert get_webhook(db, "acme", webhook_id) is None
        assert fire_event(db, company_id="acme", event_name="task.created") == []
        queued = db.get(Job, job_id)
        assert queued.state == "waiting"
        assert queued.payload_json["url"] == "https://a.example.com"


def test_send_test_webhook_requires_active_subscription():
    SessionLocal = _setup_db(f"sqlite:///./dispatch_test_{uuid4().hex}.db")

    with SessionLocal() as db:
        active, _ = create_webhook(db, company_id="acme", url="https://a.example.com", events=["task.created"])
        inactive, _ = create_webhook(
            db, company_id="acme", url="https://b.example.com", events=["task.created"], is_active=False
        )

        job = send_test_webhook(db, company_id="acme", webhook_id=active.id)
        assert job.payload_json["event"] == TEST_EVENT
        assert job.payload_json["payload"]["test"] is True
        assert job.payload_json["payload"]["timestamp"].endswith("Z")

        with pytest.raises(WebhookInactive):
            send_test_webhook(db, company_id="acme", webhook_id=inactive.id)
        with pytest.raises(WebhookNotFound):
            send_test_webhook(db, company_id="other", webhook_id=active.id)
        assert db.query(Job).count() == 1


def test_update_webhook_refreshes_updated_at_and_keeps_created_at():
    SessionLocal = _setup_db(f"sqlite:///./dispatch_update_{uuid4().hex}.db")

    with SessionLocal() as db:
        webhook, _ = create_webhook(db, company_id="acme", url="https://a.example.com", events=["task.created"])
        created_at = webhook.created_at
        secret_enc = webhook.secret_enc
        stale = created_at - timedelta(days=1)
        db.query(WebhookSubscription).filter(WebhookSubscription.id == webhook.id).update(
            {WebhookSubscription.updated_at: stale}, synchronize_session=False
        )
        db.commit()
        db.refresh(webhook)

        updated = update_webhook(db, webhook, {"description": "CRM sync", "retries": 5, "secret_enc": "ignored"})

        assert updated.description == "CRM sync"
        assert updated.retries == 5
        assert updated.secret_enc == secret_enc
        assert updated.created_at == created_at
        assert updated.updated_at > stale
