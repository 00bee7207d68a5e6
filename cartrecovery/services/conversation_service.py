from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.orm import Session

from cartrecovery.logging_config import get_logger
from cartrecovery.models import Abandonment, Conversation, User
from cartrecovery.services.state_machine import ConversationStatus, transition

logger = get_logger("conversation_service")

# Lower rank wins when several conversations share one address.
STATUS_PRIORITY = {
    ConversationStatus.ACTIVE.value: 0,
    ConversationStatus.ERROR.value: 1,
    ConversationStatus.AWAITING_RESPONSE.value: 2,
    ConversationStatus.CLOSED.value: 3,
}


class ConversationNotFoundError(Exception):
    def __init__(self, conversation_id):
        self.conversation_id = conversation_id
        super().__init__(f"Conversation not found: {conversation_id}")


def get_conversation(db: Session, conversation_id) -> Optional[Conversation]:
    return db.query(Conversation).filter(Conversation.id == conversation_id).first()


def find_by_phone(db: Session, phone: str) -> Optional[Conversation]:
    """Pick the conversation an inbound message from `phone` belongs to.

    Prefers active, then error, then awaiting_response conversations; within
    one status the newest wins. Closed conversations are returned only when
    nothing else exists so the caller can still record the message.
    """
    candidates = (
        db.query(Conversation)
        .join(User, Conversation.user_id == User.id)
        .filter(User.phone == phone)
        .order_by(Conversation.created_at.desc())
        .all()
    )
    if not candidates:
        return None
    return min(candidates, key=lambda conv: STATUS_PRIORITY.get(conv.status, len(STATUS_PRIORITY)))


def get_user(db: Session, user_id) -> Optional[User]:
    return db.query(User).filter(User.id == user_id).first()


def get_abandonment(db: Session, abandonment_id) -> Optional[Abandonment]:
    return db.query(Abandonment).filter(Abandonment.id == abandonment_id).first()


def update_state(
    db: Session,
    conversation_id,
    target: ConversationStatus,
    reason: str,
    *,
    trace_id: Optional[str] = None,
) -> Conversation:
    """Move a conversation to `target`, holding the row lock for the check.

    Raises ConversationNotFoundError or InvalidTransitionError; on error the
    transaction is rolled back so the lock is released.
    """
    conversation = (
        db.query(Conversation)
        .populate_existing()
        .with_for_update()
        .filter(Conversation.id == conversation_id)
        .first()
    )
    if not conversation:
        db.rollback()
        raise ConversationNotFoundError(conversation_id)

    current = ConversationStatus(conversation.status)
    try:
        new_status = transition(current, target)
    except Exception:
        db.rollback()
        raise

    conversation.status = new_status.value
    conversation.status_reason = reason
    conversation.updated_at = datetime.now(timezone.utc)
    db.commit()

    logger.info(
        "Conversation status changed",
        extra={
            "context": {
                "conversation_id": str(conversation_id),
                "from": current.value,
                "to": new_status.value,
                "reason": reason,
                "trace_id": trace_id,
            }
        },
    )
    return conversation


def record_user_message(db: Session, conversation: Conversation, now: Optional[datetime] = None) -> None:
    now = now or datetime.now(timezone.utc)
    conversation.message_count = (conversation.message_count or 0) + 1
    conversation.last_user_message_at = now
    conversation.last_message_at = now
    conversation.updated_at = now
    db.commit()


def record_agent_reply(db: Session, conversation: Conversation) -> None:
    """Count a persisted agent reply as one more engagement cycle."""
    conversation.message_count = (conversation.message_count or 0) + 1
    conversation.cycle_count = (conversation.cycle_count or 0) + 1
    conversation.updated_at = datetime.now(timezone.utc)
    db.commit()


def touch_last_message(db: Session, conversation: Conversation, now: Optional[datetime] = None) -> None:
    now = now or datetime.now(timezone.utc)
    conversation.last_message_at = now
    conversation.updated_at = now
    db.commit()
