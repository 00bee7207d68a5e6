from typing import Optional
from uuid import UUID

from pydantic import BaseModel, Field


class InboundJob(BaseModel):
    external_message_id: str
    recipient_address: str
    text: str
    conversation_id: Optional[UUID] = None
    trace_id: Optional[str] = None


class RetryJob(BaseModel):
    conversation_id: UUID
    recipient: str
    text: str
    message_id: Optional[UUID] = None
    message_type: str = "text"
    template_name: Optional[str] = None
    template_params: list[str] = Field(default_factory=list)
    trace_id: Optional[str] = None
