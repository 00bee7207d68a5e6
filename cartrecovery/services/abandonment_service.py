import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from cartrecovery.logging_config import get_logger
from cartrecovery.models import Abandonment, Conversation, User
from cartrecovery.schemas.jobs import RetryJob
from cartrecovery.schemas.webhook import AbandonmentWebhook
from cartrecovery.services.idempotency import find_abandonment_by_external_id
from cartrecovery.services.job_queue import QUEUE_OUTBOUND_RETRY, enqueue_job
from cartrecovery.services.message_service import SENDER_AGENT, STATUS_PENDING, create_message
from cartrecovery.services.result import ErrorKind, Result
from cartrecovery.services.state_machine import ConversationStatus

logger = get_logger("abandonment_service")

STATUS_PROCESSED = "processed"
STATUS_ALREADY_PROCESSED = "already_processed"
STATUS_SKIPPED_OPTED_OUT = "skipped_opted_out"


@dataclass
class AbandonmentOutcome:
    status: str
    abandonment_id: Optional[object] = None
    conversation_id: Optional[object] = None


@dataclass
class InitialTemplate:
    name: str
    retry_attempts: int = 5
    retry_backoff_seconds: float = 2.0


def get_or_create_user(db: Session, phone: str, name: str) -> User:
    """Find user by phone or stage a new one (flushed, not committed)."""
    user = db.query(User).filter(User.phone == phone).first()
    now = datetime.now(timezone.utc)
    if user:
        if name and user.name != name:
            user.name = name
            user.updated_at = now
        return user
    user = User(phone=phone, name=name, opted_out=False, created_at=now, updated_at=now)
    db.add(user)
    db.flush()
    return user


def _find_conversation_id(db: Session, abandonment_id):
    conversation = db.query(Conversation).filter(Conversation.abandonment_id == abandonment_id).first()
    return conversation.id if conversation else None


def _already_processed(db: Session, abandonment: Abandonment) -> Result[AbandonmentOutcome]:
    return Result.success(
        AbandonmentOutcome(
            status=STATUS_ALREADY_PROCESSED,
            abandonment_id=abandonment.id,
            conversation_id=_find_conversation_id(db, abandonment.id),
        )
    )


def process_abandonment(
    db: Session,
    payload: AbandonmentWebhook,
    *,
    trace_id: Optional[str] = None,
    initial_template: Optional[InitialTemplate] = None,
) -> Result[AbandonmentOutcome]:
    """Record an abandoned cart and open its conversation, once per external id."""
    log_context = {"external_id": payload.abandonment_id, "trace_id": trace_id}

    existing = find_abandonment_by_external_id(db, payload.abandonment_id)
    if existing:
        logger.info("Abandonment already processed", extra={"context": log_context})
        return _already_processed(db, existing)

    now = datetime.now(timezone.utc)
    try:
        user = get_or_create_user(db, payload.phone, payload.name)
        if user.opted_out:
            db.commit()
            logger.info("User opted out, abandonment skipped", extra={"context": {**log_context, "user_id": str(user.id)}})
            return Result.success(AbandonmentOutcome(status=STATUS_SKIPPED_OPTED_OUT))

        abandonment = Abandonment(
            id=uuid.uuid4(),
            user_id=user.id,
            external_id=payload.abandonment_id,
            product_id=payload.product_id,
            product_name=payload.product_name,
            value=payload.value,
            payment_link=str(payload.payment_link),
            status="pending",
            created_at=payload.timestamp or now,
            updated_at=now,
        )
        db.add(abandonment)
        db.flush()

        conversation = Conversation(
            id=uuid.uuid4(),
            abandonment_id=abandonment.id,
            user_id=user.id,
            status=ConversationStatus.AWAITING_RESPONSE.value,
            status_reason="abandonment_received",
            cycle_count=0,
            message_count=0,
            created_at=now,
            updated_at=now,
        )
        db.add(conversation)
        db.commit()
    except IntegrityError:
        db.rollback()
        existing = find_abandonment_by_external_id(db, payload.abandonment_id)
        if existing:
            logger.info("Abandonment inserted concurrently", extra={"context": log_context})
            return _already_processed(db, existing)
        return Result.failure("Concurrent intake for the same customer", "conflict", ErrorKind.CONFLICT)

    logger.info(
        "Abandonment recorded",
        extra={
            "context": {
                **log_context,
                "abandonment_id": str(abandonment.id),
                "conversation_id": str(conversation.id),
                "user_id": str(user.id),
            }
        },
    )

    if initial_template:
        queue_initial_template(db, conversation, user, abandonment, initial_template, trace_id=trace_id)

    return Result.success(
        AbandonmentOutcome(
            status=STATUS_PROCESSED,
            abandonment_id=abandonment.id,
            conversation_id=conversation.id,
        )
    )


def queue_initial_template(
    db: Session,
    conversation: Conversation,
    user: User,
    abandonment: Abandonment,
    template: InitialTemplate,
    *,
    trace_id: Optional[str] = None,
) -> None:
    """Stage the first-contact template and let the retry queue deliver it."""
    params = [user.name or "", abandonment.product_name or abandonment.product_id, abandonment.payment_link]
    message = create_message(
        db,
        conversation_id=conversation.id,
        sender_type=SENDER_AGENT,
        content=f"[template:{template.name}] " + " | ".join(params),
        message_type="template",
        status=STATUS_PENDING,
        metadata={"template_name": template.name, "trace_id": trace_id},
    )
    conversation.message_count = (conversation.message_count or 0) + 1
    db.commit()
    job = RetryJob(
        conversation_id=conversation.id,
        recipient=user.phone,
        text=message.content,
        message_id=message.id,
        message_type="template",
        template_name=template.name,
        template_params=params,
        trace_id=trace_id,
    )
    enqueue_job(
        db,
        queue=QUEUE_OUTBOUND_RETRY,
        payload=job.model_dump(mode="json"),
        attempts=template.retry_attempts,
        backoff_seconds=template.retry_backoff_seconds,
        dedup_key=f"message:{message.id}",
        conversation_id=conversation.id,
    )
