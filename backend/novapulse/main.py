# This file bootstraps the FastAPI app, wires up the logging and metrics
# middlewares, maps caller errors to JSON responses and mounts the
# webhook, event and queue routers under every supported prefix.

import os

from fastapi import APIRouter, FastAPI, Request, Response
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

import novapulse.models  # noqa: F401  (register tables on Base.metadata)
from novapulse.core.db import Base, engine
from novapulse.core.errors import DeliveryError
from novapulse.core.logging import APILoggingMiddleware
from novapulse.core.metrics import MetricsMiddleware
from novapulse.core.versioning import API_PREFIX, API_V1_PREFIX

from novapulse.api.events import router as events_router
from novapulse.api.queue import router as queue_router
from novapulse.api.webhooks import router as webhooks_router

# Create DB tables right away so the app doesn't hit missing
# schema issues later. Migrations own the schema in production.
if os.getenv("SKIP_MIGRATIONS") != "1":
    Base.metadata.create_all(bind=engine)

app = FastAPI(title="NovaPulse Delivery")


@app.exception_handler(DeliveryError)
def handle_delivery_error(_request: Request, exc: DeliveryError):
    response = JSONResponse(status_code=exc.status_code, content=exc.to_payload())
    response.headers["X-Error-Code"] = exc.code
    return response


# Observability layers: structured request logs and Prometheus timings.
app.add_middleware(APILoggingMiddleware)
app.add_middleware(MetricsMiddleware)

# Routers grouped by version + compatibility
api_v1 = APIRouter(prefix=API_V1_PREFIX)
api_legacy = APIRouter(prefix=API_PREFIX)
api_root = APIRouter(prefix="")

routers = [
    webhooks_router,
    events_router,
    queue_router,
]

for r in routers:
    api_v1.include_router(r)
    api_legacy.include_router(r)
    api_root.include_router(r)

app.include_router(api_v1)
app.include_router(api_legacy)
app.include_router(api_root)


# /metrics endpoint (Prometheus scraping)
@app.get("/metrics", include_in_schema=False)
def metrics() -> Response:
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)


# /ping endpoint and versioned health
@app.get("/ping")
@app.get(f"{API_V1_PREFIX}/health")
def ping():
    return {"message": "pong"}
