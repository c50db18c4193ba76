import os
from datetime import timedelta
from uuid import uuid4

import requests
from prometheus_client import REGISTRY
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

os.environ.setdefault("DATABASE_URL", "sqlite:///./test.db")
os.environ.setdefault("WEBHOOK_ENCRYPTION_KEY", "novapulse-test-key-0123456789abc")
os.environ["SKIP_MIGRATIONS"] = "1"

from novapulse.core.db import Base
from novapulse.core.queue import clear_queue_handlers
from novapulse.core.time import utcnow
from novapulse.crud.webhook_delivery_logs import list_delivery_logs
from novapulse.crud.webhooks import create_webhook
from novapulse.jobs.queue_worker import register_default_handlers, run_queue_once
from novapulse.models.jobs import Job
from novapulse.models.webhooks import WebhookSubscription
from novapulse.webhooks.dispatcher import fire_event
from novapulse.webhooks.signing import verify_signature


class _Resp:
    def __init__(self, status_code: int, text: str = ""):
        self.status_code = status_code
        self.text = text


def _setup_db(db_url: str):
    engine = create_engine(db_url, connect_args={"check_same_thread": False})
    SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)
    Base.metadata.create_all(bind=engine)
    return SessionLocal


def _fire(SessionLocal, *, retries: int, secret: str = "topsecret") -> tuple[int, int]:
    with SessionLocal() as db:
        webhook, _ = create_webhook(
            db,
            company_id="acme",
            url="https://hooks.example.com/in",
            events=["task.created"],
            retries=retries,
            secret=secret,
        )
        webhook_id = webhook.id
        jobs = fire_event(db, company_id="acme", event_name="task.created", payload={"task_id": 7})
        assert len(jobs) == 1
        return webhook_id, jobs[0].id


def _run_due(SessionLocal, job_id: int) -> Job:
    with SessionLocal() as db:
        job = db.get(Job, job_id)
        if job.state == "delayed":
            job.next_attempt_at = utcnow() - timedelta(seconds=1)
            db.commit()
        assert run_queue_once(db, queue_name="webhook", worker_id="w1") is True
        job = db.get(Job, job_id)
        db.expunge(job)
        return job


def test_failed_attempt_then_success_is_logged_and_signed(monkeypatch):
    SessionLocal = _setup_db(f"sqlite:///./delivery_retry_{uuid4().hex}.db")
    clear_queue_handlers()
    register_default_handlers()
    responses = [_Resp(500, "upstream down"), _Resp(200, "ok")]
    calls = []

    def fake_post(url, data=None, headers=None, timeout=None):
        calls.append({"url": url, "data": data, "headers": headers, "timeout": timeout})
        return responses.pop(0)

    monkeypatch.setattr("novapulse.webhooks.delivery.requests.post", fake_post)

    webhook_id, job_id = _fire(SessionLocal, retries=2)

    job = _run_due(SessionLocal, job_id)
    assert job.state == "delayed"
    assert job.attempts == 1
    assert job.last_error == "Webhook responded with status 500"

    job = _run_due(SessionLocal, job_id)
    assert job.state == "completed"
    assert job.attempts == 2
    assert job.result_json["status_code"] == 200

    assert len(calls) == 2
    for index, call in enumerate(calls, start=1):
        assert call["url"] == "https://hooks.example.com/in"
        assert call["headers"]["X-NovaPulse-Event"] == "task.created"
        assert call["headers"]["X-NovaPulse-Attempt"] == str(index)
        assert call["headers"]["X-NovaPulse-Webhook-Id"] == str(webhook_id)
        assert verify_signature("topsecret", call["data"], call["headers"]["X-NovaPulse-Signature"])
    assert calls[0]["data"] == calls[1]["data"] == b'{"task_id":7}'

    with SessionLocal() as db:
        logs = list_delivery_logs(db, webhook_id)
        assert [log.attempt for log in logs] == [2, 1]
        assert [log.status for log in logs] == ["success", "failed"]
        assert [log.status_code for log in logs] == [200, 500]
        assert logs[1].response_body == "upstream down"
        assert [log.payload_json for log in logs] == [{"task_id": 7}, {"task_id": 7}]
        assert logs[0].delivered_at is not None
        assert logs[1].delivered_at is None

        webhook = db.get(WebhookSubscription, webhook_id)
        assert webhook.last_status == "success"
        assert webhook.last_attempt_at is not None
    clear_queue_handlers()


def test_exhausted_delivery_marks_job_and_subscription_failed(monkeypatch):
    SessionLocal = _setup_db(f"sqlite:///./delivery_exhausted_{uuid4().hex}.db")
    clear_queue_handlers()
    register_default_handlers()

    def fake_post(url, data=None, headers=None, timeout=None):
        return _Resp(404, "no such hook")

    monkeypatch.setattr("novapulse.webhooks.delivery.requests.post", fake_post)

    webhook_id, job_id = _fire(SessionLocal, retries=2)

    assert _run_due(SessionLocal, job_id).state == "delayed"
    job = _run_due(SessionLocal, job_id)
    assert job.state == "failed"
    assert job.attempts == 2

    with SessionLocal() as db:
        assert run_queue_once(db, queue_name="webhook", worker_id="w1") is False
        logs = list_delivery_logs(db, webhook_id)
        assert len(logs) == 2
        assert all(log.status == "failed" for log in logs)
        webhook = db.get(WebhookSubscription, webhook_id)
        assert webhook.last_status == "failed"
        assert webhook.is_active is True
    clear_queue_handlers()


def test_network_error_is_logged_without_status_code(monkeypatch):
    SessionLocal = _setup_db(f"sqlite:///./delivery_network_{uuid4().hex}.db")
    clear_queue_handlers()
    register_default_handlers()

    def fake_post(url, data=None, headers=None, timeout=None):
        raise requests.ConnectionError("connection refused")

    monkeypatch.setattr("novapulse.webhooks.delivery.requests.post", fake_post)

    webhook_id, job_id = _fire(SessionLocal, retries=1)

    job = _run_due(SessionLocal, job_id)
    assert job.state == "failed"
    assert job.last_error == "connection refused"

    with SessionLocal() as db:
        logs = list_delivery_logs(db, webhook_id)
        assert len(logs) == 1
        assert logs[0].status_code is None
        assert logs[0].error_message == "connection refused"
    clear_queue_handlers()


def test_timeout_is_reported_as_failed_attempt(monkeypatch):
    SessionLocal = _setup_db(f"sqlite:///./delivery_timeout_{uuid4().hex}.db")
    clear_queue_handlers()
    register_default_handlers()

    def fake_post(url, data=None, headers=None, timeout=None):
        raise requests.Timeout()

    monkeypatch.setattr("novapulse.webhooks.delivery.requests.post", fake_post)

    webhook_id, job_id = _fire(SessionLocal, retries=3)

    job = _run_due(SessionLocal, job_id)
    assert job.state == "delayed"
    assert job.last_error.startswith("Timed out after")
    clear_queue_handlers()


def test_delivery_metrics_bucket_unknown_event_names(monkeypatch):
    SessionLocal = _setup_db(f"sqlite:///./delivery_metrics_{uuid4().hex}.db")
    clear_queue_handlers()
    register_default_handlers()

    def fake_post(url, data=None, headers=None, timeout=None):
        return _Resp(204)

    monkeypatch.setattr("novapulse.webhooks.delivery.requests.post", fake_post)

    def _sample(event: str) -> float:
        value = REGISTRY.get_sample_value(
            "webhook_deliveries_total",
            {"event": event, "outcome": "success"},
        )
        return value or 0.0

    other_before = _sample("other")
    known_before = _sample("task.created")

    event_name = f"custom.{uuid4().hex}"
    with SessionLocal() as db:
        create_webhook(db, company_id="acme", url="https://hooks.example.com/in", events=[event_name, "task.created"])
        custom_id = fire_event(db, company_id="acme", event_name=event_name)[0].id
        known_id = fire_event(db, company_id="acme", event_name="task.created")[0].id

    assert _run_due(SessionLocal, custom_id).state == "completed"
    assert _run_due(SessionLocal, known_id).state == "completed"

    assert _sample("other") == other_before + 1
    assert _sample("task.created") == known_before + 1
    assert REGISTRY.get_sample_value(
        "webhook_deliveries_total",
        {"event": event_name, "outcome": "success"},
    ) is None
    clear_queue_handlers()
