import os
from uuid import uuid4

from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

os.environ.setdefault("DATABASE_URL", "sqlite:///./test.db")
os.environ.setdefault("WEBHOOK_ENCRYPTION_KEY", "novapulse-test-key-0123456789abc")
os.environ["SKIP_MIGRATIONS"] = "1"

import novapulse.core.db as db_module
from novapulse.core.db import Base
from novapulse.main import app


client = TestClient(app)
HEADERS = {"X-Company-ID": "acme", "X-User-ID": "user-1"}


def _setup_db(monkeypatch):
    engine = create_engine(
        f"sqlite:///./api_{uuid4().hex}.db",
        connect_args={"check_same_thread": False},
    )
    SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)
    Base.metadata.create_all(bind=engine)
    monkeypatch.setattr(db_module, "engine", engine)
    monkeypatch.setattr(db_module, "SessionLocal", SessionLocal)
    return SessionLocal


def _create(events=None, **extra):
    body = {"url": "https://hooks.example.com/in", "events": events or ["task.created"], **extra}
    resp = client.post("/api/v1/webhooks", json=body, headers=HEADERS)
    assert resp.status_code == 201, resp.text
    return resp.json()


def test_webhook_crud_round_trip(monkeypatch):
    _setup_db(monkeypatch)

    created = _create(description="CRM sync", retries=4)
    assert len(created["secret"]) == 64
    assert created["created_by"] == "user-1"
    assert created["last_status"] == "never"
    webhook_id = created["id"]

    listed = client.get("/api/v1/webhooks", headers=HEADERS).json()
    assert [item["id"] for item in listed] == [webhook_id]
    assert "secret" not in listed[0]
    assert "secret_enc" not in listed[0]

    resp = client.patch(f"/api/v1/webhooks/{webhook_id}", json={"is_active": False}, headers=HEADERS)
    assert resp.status_code == 200
    assert resp.json()["is_active"] is False

    other = {"X-Company-ID": "globex"}
    assert client.get(f"/api/v1/webhooks/{webhook_id}", headers=other).status_code == 404

    assert client.delete(f"/api/v1/webhooks/{webhook_id}", headers=HEADERS).status_code == 204
    resp = client.get(f"/api/v1/webhooks/{webhook_id}", headers=HEADERS)
    assert resp.status_code == 404
    assert resp.headers["X-Error-Code"] == "webhook_not_found"
    assert client.get("/api/v1/webhooks", headers=HEADERS).json() == []


def test_webhook_validation_errors(monkeypatch):
    _setup_db(monkeypatch)

    assert client.get("/api/v1/webhooks").status_code == 400
    resp = client.post("/api/v1/webhooks", json={"url": "https://x.example.com", "events": []}, headers=HEADERS)
    assert resp.status_code == 422
    resp = client.post("/api/v1/webhooks", json={"url": "mailto:x@example.com", "events": ["a"]}, headers=HEADERS)
    assert resp.status_code == 422
    assert resp.json()["code"] == "invalid_webhook_config"


def test_test_endpoint_queues_job_and_rejects_inactive(monkeypatch):
    _setup_db(monkeypatch)
    active = _create()
    inactive = _create(is_active=False)

    resp = client.post(f"/api/v1/webhooks/{active['id']}/test", headers=HEADERS)
    assert resp.status_code == 202
    body = resp.json()
    assert body["success"] is True
    assert body["event"] == "webhook.test"

    job = client.get(f"/api/v1/queue/jobs/{body['job_id']}").json()
    assert job["queue_name"] == "webhook"
    assert job["state"] == "waiting"
    assert "payload_json" not in job

    resp = client.post(f"/api/v1/webhooks/{inactive['id']}/test", headers=HEADERS)
    assert resp.status_code == 409
    assert resp.json()["code"] == "webhook_inactive"


def test_events_fan_out_and_logs_endpoint(monkeypatch):
    SessionLocal = _setup_db(monkeypatch)
    first = _create()
    _create(events=["task.done"])

    resp = client.post(
        "/api/v1/events",
        json={"event": "task.created", "payload": {"task_id": 1}},
        headers=HEADERS,
    )
    assert resp.status_code == 202
    assert resp.json()["queued"] == 1

    from novapulse.crud.webhook_delivery_logs import create_delivery_log

    with SessionLocal() as db:
        for attempt in (1, 2):
            create_delivery_log(
                db,
                webhook_id=first["id"],
                job_id=resp.json()["job_ids"][0],
                company_id="acme",
                event="task.created",
                attempt=attempt,
                status="failed" if attempt == 1 else "success",
                status_code=500 if attempt == 1 else 200,
            )

    logs = client.get(f"/api/v1/webhooks/{first['id']}/logs?limit=1", headers=HEADERS).json()
    assert len(logs) == 1
    assert logs[0]["attempt"] == 2
    assert client.get(f"/api/v1/webhooks/{first['id']}/logs?limit=0", headers=HEADERS).status_code == 422


def test_queue_stats_pause_and_resume(monkeypatch):
    _setup_db(monkeypatch)
    _create()
    client.post("/api/v1/events", json={"event": "task.created"}, headers=HEADERS)

    stats = client.get("/api/v1/queue/stats").json()
    assert stats["success"] is True
    assert set(stats["stats"]) == {"email", "webhook", "workflow", "report"}
    assert stats["stats"]["webhook"]["waiting"] == 1
    assert stats["stats"]["webhook"]["health"] == "healthy"

    paused = client.post("/api/v1/queue/webhook/pause").json()
    assert paused["is_paused"] is True
    assert paused["affected_jobs"] == 1
    stats = client.get("/api/v1/queue/stats").json()["stats"]["webhook"]
    assert stats["is_paused"] is True
    assert stats["paused"] == 1

    resumed = client.post("/api/v1/queue/webhook/resume").json()
    assert resumed["is_paused"] is False
    assert resumed["affected_jobs"] == 1

    resp = client.post("/api/v1/queue/sms/pause")
    assert resp.status_code == 400
    assert resp.json()["code"] == "invalid_queue_name"
    assert client.get("/api/v1/queue/jobs/999").status_code == 404


def test_health_and_metrics_endpoints():
    assert client.get("/ping").json() == {"message": "pong"}
    assert client.get("/api/v1/health").status_code == 200
    assert client.get("/metrics").status_code == 200


def test_job_detail_is_scoped_to_the_calling_tenant(monkeypatch):
    _setup_db(monkeypatch)
    webhook = _create()
    job_id = client.post(f"/api/v1/webhooks/{webhook['id']}/test", headers=HEADERS).json()["job_id"]

    own = client.get(f"/api/v1/queue/jobs/{job_id}", headers={"X-Company-ID": "acme"})
    assert own.status_code == 200
    assert own.json()["company_id"] == "acme"

    foreign = client.get(f"/api/v1/queue/jobs/{job_id}", headers={"X-Company-ID": "globex"})
    assert foreign.status_code == 404
    assert foreign.headers["X-Error-Code"] == "job_not_found"

    assert client.get(f"/api/v1/queue/jobs/{job_id}").status_code == 200
