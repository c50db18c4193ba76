from sqlalchemy import Boolean, Column, DateTime, String

from novapulse.core.db import Base
from novapulse.core.time import utcnow


class QueueControl(Base):
    """One row per queue that has ever been paused or resumed."""

    __tablename__ = "queue_controls"

    queue_name = Column(String, primary_key=True)
    is_paused = Column(Boolean, nullable=False, default=False)
    paused_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)
