from sqlalchemy import Column, DateTime, Index, Integer, JSON, String, Text
from sqlalchemy.dialects.postgresql import JSONB

from novapulse.core.db import Base
from novapulse.core.time import utcnow


JSON_TYPE = JSONB().with_variant(JSON, "sqlite")


class WebhookDeliveryLog(Base):
    __tablename__ = "webhook_delivery_logs"
    __table_args__ = (
        Index("ix_webhook_delivery_logs_webhook_created", "webhook_id", "created_at"),
    )

    id = Column(Integer, primary_key=True, index=True)
    # No foreign key: history outlives the subscription row.
    webhook_id = Column(Integer, nullable=False, index=True)
    job_id = Column(Integer, nullable=True, index=True)
    company_id = Column(String, nullable=True, index=True)
    event = Column(String, nullable=False)
    attempt = Column(Integer, nullable=False)
    status = Column(String, nullable=False)
    # The exact body that was sent on this attempt.
    payload_json = Column(JSON_TYPE, nullable=True)
    status_code = Column(Integer, nullable=True)
    error_message = Column(Text, nullable=True)
    response_body = Column(Text, nullable=True)
    duration_ms = Column(Integer, nullable=False, default=0)
    delivered_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow, index=True)
