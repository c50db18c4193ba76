from __future__ import annotations

from dataclasses import dataclass
from typing import Any


@dataclass
class DeliveryError(Exception):
    """Caller error raised synchronously at the API boundary.

    Anything raised as a DeliveryError is rejected before a job is queued;
    failures that happen inside a worker go through retry_or_fail instead.
    """

    code: str
    message: str
    status_code: int
    details: dict[str, Any] | None = None

    def __post_init__(self) -> None:
        super().__init__(self.message)

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


class InvalidQueueName(DeliveryError):
    def __init__(self, queue_name: str, *, allowed: list[str] | None = None):
        super().__init__(
            code="invalid_queue_name",
            message=f"Unknown queue: {queue_name!r}",
            status_code=400,
            details={"allowed": allowed} if allowed else None,
        )


class InvalidJobPayload(DeliveryError):
    def __init__(self, queue_name: str, errors: list[dict[str, Any]] | None = None):
        super().__init__(
            code="invalid_job_payload",
            message=f"Payload rejected for queue {queue_name!r}",
            status_code=422,
            details={"errors": errors} if errors else None,
        )


class InvalidJobOptions(DeliveryError):
    def __init__(self, message: str):
        super().__init__(code="invalid_job_options", message=message, status_code=422)


class InvalidEventName(DeliveryError):
    def __init__(self, event_name: str | None):
        super().__init__(
            code="invalid_event_name",
            message=f"Invalid event name: {event_name!r}",
            status_code=422,
        )


class JobNotFound(DeliveryError):
    def __init__(self, job_id: int):
        super().__init__(code="job_not_found", message=f"Job {job_id} not found", status_code=404)


class JobNotActive(DeliveryError):
    def __init__(self, job_id: int, state: str | None = None):
        message = f"Job {job_id} is not active"
        if state:
            message = f"{message} (state={state})"
        super().__init__(code="job_not_active", message=message, status_code=409)


class WebhookNotFound(DeliveryError):
    def __init__(self, webhook_id: int):
        super().__init__(
            code="webhook_not_found",
            message=f"Webhook {webhook_id} not found",
            status_code=404,
        )


class WebhookInactive(DeliveryError):
    def __init__(self, webhook_id: int):
        super().__init__(
            code="webhook_inactive",
            message=f"Webhook {webhook_id} is inactive",
            status_code=409,
        )


class InvalidWebhookConfig(DeliveryError):
    def __init__(self, message: str):
        super().__init__(code="invalid_webhook_config", message=message, status_code=422)
