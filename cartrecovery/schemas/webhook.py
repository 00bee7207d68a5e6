from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import AliasChoices, BaseModel, Field, HttpUrl


class AbandonmentWebhook(BaseModel):
    user_id: str = Field(min_length=1, validation_alias=AliasChoices("user_id", "userId"))
    name: str = Field(min_length=1)
    phone: str = Field(pattern=r"^\+\d{10,15}$")
    product_id: str = Field(min_length=1, validation_alias=AliasChoices("product_id", "productId"))
    product_name: Optional[str] = Field(default=None, validation_alias=AliasChoices("product_name", "productName"))
    payment_link: HttpUrl = Field(validation_alias=AliasChoices("payment_link", "paymentLink"))
    abandonment_id: str = Field(min_length=1, validation_alias=AliasChoices("abandonment_id", "abandonmentId"))
    value: float = Field(gt=0)
    timestamp: Optional[datetime] = None


class AbandonmentResponse(BaseModel):
    status: str
    abandonment_id: Optional[UUID] = None
    conversation_id: Optional[UUID] = None


class PaymentWebhook(BaseModel):
    payment_id: str = Field(min_length=1, validation_alias=AliasChoices("payment_id", "paymentId"))
    abandonment_id: str = Field(min_length=1, validation_alias=AliasChoices("abandonment_id", "abandonmentId"))
    status: str = Field(min_length=1)
    amount: Optional[float] = Field(default=None, ge=0)
    currency: Optional[str] = Field(default=None, pattern=r"^[A-Z]{3}$")


class PaymentResponse(BaseModel):
    status: str
    abandonment_id: Optional[UUID] = None
    conversation_id: Optional[UUID] = None
    payment_status: Optional[str] = None
    message: Optional[str] = None


class WhatsAppText(BaseModel):
    body: str = ""


class WhatsAppMessage(BaseModel):
    id: str
    from_: str = Field(validation_alias=AliasChoices("from", "from_"))
    type: str = "text"
    timestamp: Optional[str] = None
    text: Optional[WhatsAppText] = None


class WhatsAppStatus(BaseModel):
    id: str
    status: str
    recipient_id: Optional[str] = None
    timestamp: Optional[str] = None


class WhatsAppValue(BaseModel):
    messages: list[WhatsAppMessage] = Field(default_factory=list)
    statuses: list[WhatsAppStatus] = Field(default_factory=list)


class WhatsAppChange(BaseModel):
    field: Optional[str] = None
    value: WhatsAppValue = Field(default_factory=WhatsAppValue)


class WhatsAppEntry(BaseModel):
    id: Optional[str] = None
    changes: list[WhatsAppChange] = Field(default_factory=list)


class WhatsAppWebhook(BaseModel):
    object: Optional[str] = None
    entry: list[WhatsAppEntry] = Field(default_factory=list)

    def text_messages(self) -> list[WhatsAppMessage]:
        return [
            message
            for entry in self.entry
            for change in entry.changes
            for message in change.value.messages
            if message.type == "text" and message.text and message.text.body
        ]

    def statuses(self) -> list[WhatsAppStatus]:
        return [status for entry in self.entry for change in entry.changes for status in change.value.statuses]
