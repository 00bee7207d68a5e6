from typing import Optional

from sqlalchemy.orm import Session

from cartrecovery.logging_config import get_logger
from cartrecovery.models import Abandonment, Message

logger = get_logger("idempotency")

DEDUP_KEY_PREFIX = "cartrecovery:dedup"


def find_message_by_external_id(db: Session, external_message_id: Optional[str]) -> Optional[Message]:
    if not external_message_id:
        return None
    return db.query(Message).filter(Message.external_message_id == external_message_id).first()


def find_reply_to(db: Session, inbound_message_id) -> Optional[Message]:
    """Agent message generated for a stored inbound message, if one was ever persisted."""
    return (
        db.query(Message)
        .filter(
            Message.sender_type == "agent",
            Message.message_metadata["in_reply_to"].astext == str(inbound_message_id),
        )
        .first()
    )


def find_abandonment_by_external_id(db: Session, external_id: str) -> Optional[Abandonment]:
    return db.query(Abandonment).filter(Abandonment.external_id == external_id).first()


def find_abandonment_by_payment_id(db: Session, payment_id: str) -> Optional[Abandonment]:
    return db.query(Abandonment).filter(Abandonment.payment_id == payment_id).first()


async def claim_webhook_message(redis_client, external_message_id: str, ttl_seconds: int) -> bool:
    """Fast-path dedup for webhook redeliveries.

    Returns False when the id was already seen. Without Redis every id is
    treated as new; the jobs table dedup key still stops the duplicate.
    """
    if not redis_client or not external_message_id:
        return True
    key = f"{DEDUP_KEY_PREFIX}:{external_message_id}"
    try:
        was_set = await redis_client.set(key, "1", ex=ttl_seconds, nx=True)
    except Exception as e:
        logger.warning(f"Dedup redis unavailable, falling back to DB: {e}")
        return True
    if not was_set:
        logger.info("Duplicate message_id (redis)", extra={"context": {"message_id": external_message_id}})
        return False
    return True
