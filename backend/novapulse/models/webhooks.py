from sqlalchemy import Boolean, Column, DateTime, Index, Integer, JSON, String, Text
from sqlalchemy.dialects.postgresql import JSONB

from novapulse.core.db import Base
from novapulse.core.time import utcnow


JSON_TYPE = JSONB().with_variant(JSON, "sqlite")


class WebhookSubscription(Base):
    __tablename__ = "webhook_subscriptions"
    __table_args__ = (
        Index("ix_webhook_subscriptions_company_active", "company_id", "is_active"),
    )

    id = Column(Integer, primary_key=True, index=True)
    company_id = Column(String, nullable=False, index=True)
    url = Column(String, nullable=False)
    events = Column(JSON_TYPE, nullable=False, default=list)
    secret_enc = Column(Text, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    retries = Column(Integer, nullable=False, default=3)
    description = Column(String, nullable=True)
    created_by = Column(String, nullable=True)
    last_status = Column(String, nullable=False, default="never")
    last_attempt_at = Column(DateTime, nullable=True)
    # Soft delete keeps delivery history joinable.
    deleted_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)
