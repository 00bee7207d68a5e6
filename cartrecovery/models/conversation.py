import uuid

from sqlalchemy import Column, ForeignKey, Integer, Text
from sqlalchemy.dialects.postgresql import TIMESTAMP, UUID
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from cartrecovery.database import Base


class Conversation(Base):
    __tablename__ = "conversations"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    abandonment_id = Column(UUID(as_uuid=True), ForeignKey("abandonments.id"), nullable=False, unique=True)
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=False, index=True)
    status = Column(Text, nullable=False, default="awaiting_response")  # awaiting_response, active, closed, error
    status_reason = Column(Text)
    cycle_count = Column(Integer, nullable=False, default=0)
    message_count = Column(Integer, nullable=False, default=0)
    last_message_at = Column(TIMESTAMP(timezone=True))
    last_user_message_at = Column(TIMESTAMP(timezone=True))
    created_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())

    user = relationship("User", back_populates="conversations")
    abandonment = relationship("Abandonment", back_populates="conversation")
    messages = relationship("Message", back_populates="conversation")
