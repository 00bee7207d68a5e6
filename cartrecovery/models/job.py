import uuid

from sqlalchemy import Column, Float, Integer, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import JSONB, TIMESTAMP, UUID
from sqlalchemy.sql import func

from cartrecovery.database import Base


class Job(Base):
    __tablename__ = "jobs"
    __table_args__ = (UniqueConstraint("queue", "dedup_key", name="uq_jobs_queue_dedup_key"),)

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    queue = Column(Text, nullable=False)  # inbound, outbound_retry
    dedup_key = Column(Text)
    conversation_id = Column(UUID(as_uuid=True))
    payload = Column(JSONB, nullable=False)
    status = Column(Text, nullable=False, default="waiting")  # waiting, active, completed, failed
    attempts = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=3)
    backoff_seconds = Column(Float, nullable=False, default=1.0)
    backoff_multiplier = Column(Float, nullable=False, default=2.0)
    next_attempt_at = Column(TIMESTAMP(timezone=True))
    last_error = Column(Text)
    result = Column(JSONB)
    created_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())
