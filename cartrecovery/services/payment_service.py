import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import ValidationError
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from cartrecovery.logging_config import get_logger
from cartrecovery.models import Abandonment, Conversation
from cartrecovery.schemas.webhook import PaymentWebhook
from cartrecovery.services.conversation_service import update_state
from cartrecovery.services.idempotency import find_abandonment_by_external_id, find_abandonment_by_payment_id
from cartrecovery.services.result import ErrorKind, Result
from cartrecovery.services.state_machine import ConversationStatus, InvalidTransitionError

logger = get_logger("payment_service")

PAYMENT_CONVERTED = "converted"
PAYMENT_PENDING = "pending"
PAYMENT_DECLINED = "declined"

STATUS_MAPPING = {
    "completed": PAYMENT_CONVERTED,
    "succeeded": PAYMENT_CONVERTED,
    "captured": PAYMENT_CONVERTED,
    "approved": PAYMENT_CONVERTED,
    "pending": PAYMENT_PENDING,
    "processing": PAYMENT_PENDING,
    "declined": PAYMENT_DECLINED,
    "failed": PAYMENT_DECLINED,
    "cancelled": PAYMENT_DECLINED,
    "refunded": PAYMENT_DECLINED,
}

CLOSING_STATUSES = {PAYMENT_CONVERTED, PAYMENT_DECLINED}


@dataclass
class PaymentOutcome:
    status: str  # processed, already_processed
    abandonment_id: Optional[uuid.UUID] = None
    conversation_id: Optional[uuid.UUID] = None
    payment_status: Optional[str] = None
    message: Optional[str] = None


def map_payment_status(status: str) -> str:
    return STATUS_MAPPING.get((status or "").strip().lower(), PAYMENT_PENDING)


def _validation_message(exc: ValidationError) -> str:
    return "; ".join(f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in exc.errors())


def find_abandonment(db: Session, abandonment_id: str) -> Optional[Abandonment]:
    """Accept our own UUID or the commerce platform's external id."""
    try:
        internal_id = uuid.UUID(abandonment_id)
    except ValueError:
        internal_id = None
    if internal_id:
        abandonment = db.query(Abandonment).filter(Abandonment.id == internal_id).first()
        if abandonment:
            return abandonment
    return find_abandonment_by_external_id(db, abandonment_id)


def _conversation_for(db: Session, abandonment_id) -> Optional[Conversation]:
    return db.query(Conversation).filter(Conversation.abandonment_id == abandonment_id).first()


def process_payment(db: Session, payload: dict[str, Any], *, trace_id: Optional[str] = None) -> Result[PaymentOutcome]:
    try:
        event = PaymentWebhook.model_validate(payload)
    except ValidationError as e:
        message = _validation_message(e)
        logger.warning("Invalid payment webhook", extra={"context": {"errors": message, "trace_id": trace_id}})
        return Result.failure(message, "validation", ErrorKind.VALIDATION)

    log_context = {"payment_id": event.payment_id, "abandonment_id": event.abandonment_id, "trace_id": trace_id}

    existing = find_abandonment_by_payment_id(db, event.payment_id)
    if existing:
        logger.info("Payment already processed", extra={"context": log_context})
        return Result.success(
            PaymentOutcome(
                status="already_processed",
                abandonment_id=existing.id,
                payment_status=existing.status,
                message="Payment already processed",
            )
        )

    abandonment = find_abandonment(db, event.abandonment_id)
    if not abandonment:
        logger.warning("Payment for unknown abandonment", extra={"context": log_context})
        return Result.failure(f"Abandonment not found: {event.abandonment_id}", "not_found", ErrorKind.NOT_FOUND)

    payment_status = map_payment_status(event.status)
    now = datetime.now(timezone.utc)
    abandonment.payment_id = event.payment_id
    abandonment.status = payment_status
    if event.amount is not None:
        abandonment.payment_amount = event.amount
    if payment_status == PAYMENT_CONVERTED:
        abandonment.converted_at = now
    abandonment.updated_at = now
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        existing = find_abandonment_by_payment_id(db, event.payment_id)
        logger.info("Payment recorded concurrently", extra={"context": log_context})
        return Result.success(
            PaymentOutcome(
                status="already_processed",
                abandonment_id=existing.id if existing else abandonment.id,
                payment_status=existing.status if existing else None,
                message="Payment already processed",
            )
        )

    conversation = _conversation_for(db, abandonment.id)
    if (
        conversation
        and payment_status in CLOSING_STATUSES
        and conversation.status != ConversationStatus.CLOSED.value
    ):
        try:
            update_state(db, conversation.id, ConversationStatus.CLOSED, f"payment_{payment_status}", trace_id=trace_id)
        except InvalidTransitionError as e:
            # Closed concurrently by another path; the payment itself is recorded.
            logger.warning("Conversation not closed after payment", extra={"context": {**log_context, "error": str(e)}})

    logger.info(
        "Payment processed",
        extra={"context": {**log_context, "external_status": event.status, "payment_status": payment_status}},
    )
    return Result.success(
        PaymentOutcome(
            status="processed",
            abandonment_id=abandonment.id,
            conversation_id=conversation.id if conversation else None,
            payment_status=payment_status,
            message=f"Payment {payment_status}",
        )
    )


def get_payment_status(db: Session, abandonment_id: str) -> Optional[dict]:
    abandonment = find_abandonment(db, abandonment_id)
    if not abandonment:
        return None
    return {
        "abandonment_id": str(abandonment.id),
        "status": abandonment.status,
        "payment_id": abandonment.payment_id,
        "amount": float(abandonment.payment_amount) if abandonment.payment_amount is not None else None,
        "converted_at": abandonment.converted_at.isoformat() if abandonment.converted_at else None,
    }


def is_converted(db: Session, abandonment_id: str) -> bool:
    abandonment = find_abandonment(db, abandonment_id)
    return bool(abandonment and abandonment.status == PAYMENT_CONVERTED)


def get_user_conversion_stats(db: Session, user_id) -> dict:
    rows = (
        db.query(Abandonment.status, func.count(Abandonment.id))
        .filter(Abandonment.user_id == user_id)
        .group_by(Abandonment.status)
        .all()
    )
    counts = {status: count for status, count in rows}
    total = sum(counts.values())
    converted = counts.get(PAYMENT_CONVERTED, 0)
    return {
        "total": total,
        "converted": converted,
        "pending": counts.get(PAYMENT_PENDING, 0),
        "declined": counts.get(PAYMENT_DECLINED, 0),
        "conversion_rate": round(converted / total, 4) if total else 0.0,
    }
