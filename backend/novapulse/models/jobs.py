from sqlalchemy import Column, DateTime, Index, Integer, JSON, String, Text
from sqlalchemy.dialects.postgresql import JSONB

from novapulse.core.db import Base
from novapulse.core.time import utcnow


JSON_TYPE = JSONB().with_variant(JSON, "sqlite")


class Job(Base):
    __tablename__ = "jobs"
    __table_args__ = (
        Index("ix_jobs_queue_state_created", "queue_name", "state", "created_at"),
        Index("ix_jobs_queue_state_next_attempt", "queue_name", "state", "next_attempt_at"),
        Index("ix_jobs_state_lease_expires", "state", "lease_expires_at"),
    )

    id = Column(Integer, primary_key=True, index=True)
    queue_name = Column(String, nullable=False, index=True)
    company_id = Column(String, nullable=True, index=True)
    payload_json = Column(JSON_TYPE, nullable=False)
    state = Column(String, nullable=False, default="waiting")
    attempts = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False)
    next_attempt_at = Column(DateTime, nullable=True)
    lease_owner = Column(String, nullable=True)
    lease_expires_at = Column(DateTime, nullable=True)
    claimed_at = Column(DateTime, nullable=True)
    last_error = Column(Text, nullable=True)
    result_json = Column(JSON_TYPE, nullable=True)
    finished_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)
