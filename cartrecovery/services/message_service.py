from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.orm import Session

from cartrecovery.logging_config import get_logger
from cartrecovery.models import Message

logger = get_logger("message_service")

SENDER_USER = "user"
SENDER_AGENT = "agent"

STATUS_PENDING = "pending"
STATUS_SENT = "sent"
STATUS_DELIVERED = "delivered"
STATUS_READ = "read"
STATUS_FAILED = "failed"


def create_message(
    db: Session,
    *,
    conversation_id,
    sender_type: str,
    content: str,
    status: str,
    message_type: str = "text",
    external_message_id: Optional[str] = None,
    metadata: Optional[dict] = None,
    commit: bool = True,
) -> Message:
    """Insert a message row. IntegrityError on a duplicate external id is left to the caller.

    With `commit=False` the row is only flushed so the caller can commit it with other changes.
    """
    now = datetime.now(timezone.utc)
    message = Message(
        conversation_id=conversation_id,
        sender_type=sender_type,
        content=content,
        message_type=message_type,
        external_message_id=external_message_id,
        status=status,
        message_metadata=metadata or {},
        created_at=now,
        updated_at=now,
    )
    db.add(message)
    try:
        if commit:
            db.commit()
        else:
            db.flush()
    except Exception:
        db.rollback()
        raise
    if commit:
        db.refresh(message)
    return message


def get_message(db: Session, message_id) -> Optional[Message]:
    return db.query(Message).filter(Message.id == message_id).first()


def update_message_status(
    db: Session,
    message_id,
    status: str,
    *,
    external_message_id: Optional[str] = None,
    error_message: Optional[str] = None,
) -> Optional[Message]:
    message = get_message(db, message_id)
    if not message:
        logger.warning("Message not found for status update", extra={"context": {"message_id": str(message_id)}})
        return None
    message.status = status
    if external_message_id:
        message.external_message_id = external_message_id
    message.error_message = error_message
    message.updated_at = datetime.now(timezone.utc)
    db.commit()
    return message


def get_recent_messages(db: Session, conversation_id, limit: int = 10) -> list[Message]:
    """Last `limit` messages of a conversation, oldest first."""
    rows = (
        db.query(Message)
        .filter(Message.conversation_id == conversation_id)
        .order_by(Message.created_at.desc())
        .limit(limit)
        .all()
    )
    return list(reversed(rows))


def format_history(messages: list[Message]) -> list[dict]:
    return [
        {
            "role": "user" if msg.sender_type == SENDER_USER else "assistant",
            "content": msg.content,
        }
        for msg in messages
    ]


# Channel receipts only move a message forward; a late "delivered" never downgrades "read".
_RECEIPT_RANK = {STATUS_PENDING: 0, STATUS_SENT: 1, STATUS_DELIVERED: 2, STATUS_READ: 3}


def apply_status_receipt(db: Session, external_message_id: str, status: str) -> Optional[Message]:
    message = db.query(Message).filter(Message.external_message_id == external_message_id).first()
    if not message:
        return None
    if status == STATUS_FAILED:
        if message.status == STATUS_READ:
            return message
    elif status not in _RECEIPT_RANK or _RECEIPT_RANK[status] <= _RECEIPT_RANK.get(message.status, -1):
        return message
    message.status = status
    message.updated_at = datetime.now(timezone.utc)
    db.commit()
    return message
