from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


# Queue payloads are validated on enqueue, never on dequeue. The union is
# keyed by queue name through QUEUE_PAYLOAD_MODELS in novapulse.core.queue.


class EmailJobPayload(BaseModel):
    model_config = ConfigDict(extra="forbid")

    to: str | list[str]
    subject: str = Field(min_length=1)
    template: Optional[str] = None
    data: dict[str, Any] = Field(default_factory=dict)
    html: Optional[str] = None
    text: Optional[str] = None

    @model_validator(mode="after")
    def _require_body(self):
        if not (self.template or self.html or self.text):
            raise ValueError("one of template, html or text is required")
        return self

    def recipients(self) -> list[str]:
        if isinstance(self.to, str):
            return [self.to]
        return list(self.to)


class WebhookJobPayload(BaseModel):
    model_config = ConfigDict(extra="forbid")

    webhook_id: int
    url: str = Field(min_length=1)
    secret_enc: str = Field(min_length=1)
    event: str = Field(min_length=1)
    payload: dict[str, Any] = Field(default_factory=dict)


class WorkflowJobPayload(BaseModel):
    model_config = ConfigDict(extra="forbid")

    workflow_id: str = Field(min_length=1)
    trigger_data: dict[str, Any] = Field(default_factory=dict)
    definition: Optional[dict[str, Any]] = None


class ReportJobPayload(BaseModel):
    model_config = ConfigDict(extra="forbid")

    report_type: str = Field(min_length=1)
    company_id: str = Field(min_length=1)
    user_id: Optional[str] = None
    params: dict[str, Any] = Field(default_factory=dict)


class JobRead(BaseModel):
    id: int
    queue_name: str
    company_id: Optional[str] = None
    state: str
    attempts: int
    max_attempts: int
    next_attempt_at: Optional[datetime] = None
    lease_owner: Optional[str] = None
    lease_expires_at: Optional[datetime] = None
    last_error: Optional[str] = None
    result_json: Optional[Any] = None
    finished_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class QueueSnapshotRead(BaseModel):
    waiting: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    delayed: int = 0
    paused: int = 0
    is_paused: bool = False
    health: str = "healthy"


class QueueStatsRead(BaseModel):
    success: bool = True
    stats: dict[str, QueueSnapshotRead]


class QueueControlRead(BaseModel):
    queue_name: str
    is_paused: bool
    paused_at: Optional[datetime] = None
    affected_jobs: int = 0
