import uuid

from sqlalchemy import Boolean, Column, Text
from sqlalchemy.dialects.postgresql import TIMESTAMP, UUID
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from cartrecovery.database import Base


class User(Base):
    __tablename__ = "users"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    phone = Column(Text, nullable=False, unique=True)
    name = Column(Text)
    opted_out = Column(Boolean, nullable=False, default=False)
    opted_out_at = Column(TIMESTAMP(timezone=True))
    opted_out_reason = Column(Text)
    created_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())

    abandonments = relationship("Abandonment", back_populates="user")
    conversations = relationship("Conversation", back_populates="user")
