from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field


class WebhookCreate(BaseModel):
    url: str = Field(min_length=1)
    events: list[str] = Field(min_length=1)
    description: Optional[str] = None
    retries: int = Field(default=3, ge=1, le=10)
    is_active: bool = True


class WebhookUpdate(BaseModel):
    url: Optional[str] = None
    events: Optional[list[str]] = None
    description: Optional[str] = None
    retries: Optional[int] = Field(default=None, ge=1, le=10)
    is_active: Optional[bool] = None


class WebhookRead(BaseModel):
    id: int
    company_id: str
    url: str
    events: list[str]
    description: Optional[str] = None
    retries: int
    is_active: bool
    last_status: str
    last_attempt_at: Optional[datetime] = None
    created_by: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class WebhookCreated(WebhookRead):
    # Only returned once, at creation time.
    secret: str


class WebhookDeliveryLogRead(BaseModel):
    id: int
    webhook_id: int
    job_id: Optional[int] = None
    event: str
    attempt: int
    status: str
    payload_json: Optional[dict[str, Any]] = None
    status_code: Optional[int] = None
    error_message: Optional[str] = None
    response_body: Optional[str] = None
    duration_ms: int
    delivered_at: Optional[datetime] = None
    created_at: datetime

    class Config:
        from_attributes = True


class WebhookTestResult(BaseModel):
    success: bool = True
    job_id: int
    event: str


class EventFire(BaseModel):
    event: str = Field(min_length=1)
    payload: dict[str, Any] = Field(default_factory=dict)


class EventFireResult(BaseModel):
    queued: int
    job_ids: list[int]
