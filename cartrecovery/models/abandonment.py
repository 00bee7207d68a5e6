import uuid

from sqlalchemy import Column, ForeignKey, Numeric, Text
from sqlalchemy.dialects.postgresql import TIMESTAMP, UUID
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from cartrecovery.database import Base


class Abandonment(Base):
    __tablename__ = "abandonments"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=False, index=True)
    external_id = Column(Text, nullable=False, unique=True)
    product_id = Column(Text, nullable=False)
    product_name = Column(Text)
    value = Column(Numeric(12, 2), nullable=False)
    payment_link = Column(Text, nullable=False)
    status = Column(Text, nullable=False, default="pending")  # pending, converted, declined
    payment_id = Column(Text, unique=True)
    payment_amount = Column(Numeric(12, 2))
    converted_at = Column(TIMESTAMP(timezone=True))
    created_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())

    user = relationship("User", back_populates="abandonments")
    conversation = relationship("Conversation", back_populates="abandonment", uselist=False)
