import asyncio
import re
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional

from sqlalchemy.orm import Session

from cartrecovery.logging_config import get_logger
from cartrecovery.schemas.jobs import RetryJob
from cartrecovery.services import compliance_service
from cartrecovery.services.conversation_service import get_conversation, get_user
from cartrecovery.services.job_queue import QUEUE_OUTBOUND_RETRY, enqueue_job
from cartrecovery.services.message_service import (
    SENDER_AGENT,
    STATUS_FAILED,
    STATUS_PENDING,
    STATUS_SENT,
    create_message,
    get_message,
    update_message_status,
)
from cartrecovery.services.result import ErrorKind, Result
from cartrecovery.services.whatsapp_service import ChannelError, ChannelErrorKind, WhatsAppClient

logger = get_logger("delivery_service")

MAX_MESSAGE_LENGTH = 4096
PHONE_PATTERN = re.compile(r"^\+?[1-9]\d{1,14}$")

MAX_IN_PROCESS_RETRIES = 3
RETRY_DELAYS = (1.0, 2.0, 4.0, 8.0)

DELIVERY_SENT = "sent"
DELIVERY_QUEUED = "queued"
DELIVERY_FAILED = "failed"

_MESSAGE_STATUS = {
    DELIVERY_SENT: STATUS_SENT,
    DELIVERY_QUEUED: STATUS_PENDING,
    DELIVERY_FAILED: STATUS_FAILED,
}

_PERMANENT_ERRORS = {ChannelErrorKind.AUTH, ChannelErrorKind.BAD_REQUEST}
_RETRY_IN_PROCESS = {ChannelErrorKind.RATE_LIMITED, ChannelErrorKind.SERVER_ERROR}


@dataclass
class SendOptions:
    template_name: Optional[str] = None
    template_params: list[str] = field(default_factory=list)
    trace_id: Optional[str] = None
    message_id: Optional[object] = None
    metadata: Optional[dict] = None
    enqueue_on_transient: bool = True


@dataclass
class DeliveryResult:
    status: str
    message_id: Optional[object] = None
    external_id: Optional[str] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None
    retry_job_id: Optional[object] = None

    @property
    def sent(self) -> bool:
        return self.status == DELIVERY_SENT


def validate_recipient(recipient: str) -> bool:
    digits = re.sub(r"\D", "", recipient or "")
    return bool(PHONE_PATTERN.match(digits))


def validate_outbound(recipient: str, text: str, message_type: str) -> Optional[str]:
    if not validate_recipient(recipient):
        return f"Invalid phone number format: {recipient}"
    if message_type == "text":
        if not text or not text.strip():
            return "Message text is empty"
        if len(text) > MAX_MESSAGE_LENGTH:
            return f"Message exceeds maximum length of {MAX_MESSAGE_LENGTH} characters"
    return None


def retry_delay(retry: int) -> float:
    return RETRY_DELAYS[min(retry, len(RETRY_DELAYS) - 1)]


class OutboundDelivery:
    """Sends agent messages, retrying short blips in-process and long outages via the retry queue."""

    def __init__(
        self,
        channel: WhatsAppClient,
        *,
        retry_job_attempts: int = 5,
        retry_backoff_seconds: float = 2.0,
        window_hours: int = compliance_service.MESSAGING_WINDOW_HOURS,
        sleep_func: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.channel = channel
        self.retry_job_attempts = retry_job_attempts
        self.retry_backoff_seconds = retry_backoff_seconds
        self.window_hours = window_hours
        self._sleep = sleep_func

    async def send(
        self,
        db: Session,
        conversation_id,
        recipient: str,
        text: str,
        message_type: str = "text",
        options: Optional[SendOptions] = None,
    ) -> DeliveryResult:
        options = options or SendOptions()
        log_context = {
            "conversation_id": str(conversation_id),
            "message_type": message_type,
            "trace_id": options.trace_id,
        }

        validation_error = validate_outbound(recipient, text, message_type)
        if validation_error:
            logger.warning("Outbound message rejected", extra={"context": {**log_context, "error": validation_error}})
            message_id = self._mirror(db, conversation_id, text, message_type, options, DELIVERY_FAILED, None, validation_error)
            return DeliveryResult(
                status=DELIVERY_FAILED,
                message_id=message_id,
                error=validation_error,
                error_kind="validation",
            )

        status, external_id, error, error_kind = await self._send_with_retries(
            recipient, text, message_type, options, log_context
        )
        message_id = self._mirror(db, conversation_id, text, message_type, options, status, external_id, error)
        result = DeliveryResult(
            status=status,
            message_id=message_id,
            external_id=external_id,
            error=error,
            error_kind=error_kind,
        )

        if status == DELIVERY_QUEUED and options.enqueue_on_transient:
            result.retry_job_id = self._enqueue_retry(
                db, conversation_id, recipient, text, message_type, options, message_id, log_context
            )

        logger.info(
            "Outbound delivery finished",
            extra={"context": {**log_context, "status": status, "message_id": str(message_id), "error": error}},
        )
        return result

    async def _attempt(self, recipient: str, text: str, message_type: str, options: SendOptions):
        if message_type == "template":
            return await self.channel.send_template(recipient, options.template_name, options.template_params)
        return await self.channel.send_text(recipient, text)

    async def _send_with_retries(
        self,
        recipient: str,
        text: str,
        message_type: str,
        options: SendOptions,
        log_context: dict,
    ) -> tuple[str, Optional[str], Optional[str], Optional[str]]:
        retry = 0
        while True:
            try:
                receipt = await self._attempt(recipient, text, message_type, options)
                return DELIVERY_SENT, receipt.external_id, None, None
            except ChannelError as e:
                if e.kind in _PERMANENT_ERRORS:
                    logger.error(
                        "Outbound send failed permanently",
                        extra={"context": {**log_context, "kind": e.kind.value, "status_code": e.status_code}},
                    )
                    return DELIVERY_FAILED, None, e.detail, e.kind.value
                if e.kind not in _RETRY_IN_PROCESS or retry >= MAX_IN_PROCESS_RETRIES:
                    return DELIVERY_QUEUED, None, e.detail, e.kind.value
                delay = retry_delay(retry)
                logger.warning(
                    "Outbound send throttled, retrying",
                    extra={"context": {**log_context, "kind": e.kind.value, "retry": retry + 1, "delay": delay}},
                )
                await self._sleep(delay)
                retry += 1
            except Exception as e:
                logger.error(
                    "Unexpected outbound send error",
                    extra={"context": {**log_context, "error": str(e)}},
                    exc_info=True,
                )
                return DELIVERY_QUEUED, None, str(e), ChannelErrorKind.NETWORK.value

    def _mirror(
        self,
        db: Session,
        conversation_id,
        text: str,
        message_type: str,
        options: SendOptions,
        status: str,
        external_id: Optional[str],
        error: Optional[str],
    ):
        """Record the outcome on the message row. A DB failure here never hides the send result."""
        message_status = _MESSAGE_STATUS[status]
        try:
            if options.message_id:
                update_message_status(
                    db,
                    options.message_id,
                    message_status,
                    external_message_id=external_id,
                    error_message=error,
                )
                return options.message_id
            message = create_message(
                db,
                conversation_id=conversation_id,
                sender_type=SENDER_AGENT,
                content=text,
                message_type=message_type,
                status=message_status,
                external_message_id=external_id,
                metadata={**(options.metadata or {}), **({"error": error} if error else {})},
            )
            return message.id
        except Exception as e:
            try:
                db.rollback()
            except Exception as rollback_exc:
                logger.warning("Rollback failed", extra={"context": {"error": str(rollback_exc)}})
            logger.error(
                "Failed to persist delivery outcome",
                extra={
                    "context": {
                        "conversation_id": str(conversation_id),
                        "status": status,
                        "external_id": external_id,
                        "error": str(e),
                        "trace_id": options.trace_id,
                    }
                },
            )
            return options.message_id

    def _enqueue_retry(
        self,
        db: Session,
        conversation_id,
        recipient: str,
        text: str,
        message_type: str,
        options: SendOptions,
        message_id,
        log_context: dict,
    ):
        job = RetryJob(
            conversation_id=conversation_id,
            recipient=recipient,
            text=text,
            message_id=message_id,
            message_type=message_type,
            template_name=options.template_name,
            template_params=options.template_params,
            trace_id=options.trace_id,
        )
        try:
            return enqueue_job(
                db,
                queue=QUEUE_OUTBOUND_RETRY,
                payload=job.model_dump(mode="json"),
                attempts=self.retry_job_attempts,
                backoff_seconds=self.retry_backoff_seconds,
                dedup_key=f"message:{message_id}" if message_id else None,
                conversation_id=conversation_id,
            )
        except Exception as e:
            try:
                db.rollback()
            except Exception as rollback_exc:
                logger.warning("Rollback failed", extra={"context": {"error": str(rollback_exc)}})
            logger.error("Failed to enqueue retry job", extra={"context": {**log_context, "error": str(e)}})
            return None

    async def process_retry_job(self, db: Session, job: RetryJob, *, final_attempt: bool = False) -> Result[dict]:
        """Resend a queued message. Transient failures are handed back to the queue.

        On the final attempt a transient failure also marks the message failed.
        """
        log_context = {"conversation_id": str(job.conversation_id), "trace_id": job.trace_id}

        if job.message_id:
            message = get_message(db, job.message_id)
            if message and message.status == STATUS_SENT:
                logger.info("Retry skipped, message already sent", extra={"context": log_context})
                return Result.success({"status": "already_sent", "message_id": str(job.message_id)})

        conversation = get_conversation(db, job.conversation_id)
        if not conversation:
            return Result.failure("Conversation not found", "not_found", ErrorKind.NOT_FOUND)

        user = get_user(db, conversation.user_id)
        decision = compliance_service.check(
            conversation,
            user,
            message_type=job.message_type,
            window_hours=self.window_hours,
            trace_id=job.trace_id,
        )
        if not decision.allowed:
            if job.message_id:
                update_message_status(db, job.message_id, STATUS_FAILED, error_message=decision.reason)
            return Result.success({"status": "blocked", "reason": decision.reason})

        result = await self.send(
            db,
            job.conversation_id,
            job.recipient,
            job.text,
            job.message_type,
            SendOptions(
                template_name=job.template_name,
                template_params=job.template_params,
                trace_id=job.trace_id,
                message_id=job.message_id,
                enqueue_on_transient=False,
            ),
        )
        if result.status == DELIVERY_SENT:
            return Result.success({"status": "sent", "external_id": result.external_id})
        if result.status == DELIVERY_QUEUED:
            if final_attempt and job.message_id:
                update_message_status(db, job.message_id, STATUS_FAILED, error_message=f"Retry attempts exhausted: {result.error}")
            return Result.failure(result.error or "Transient delivery failure", "delivery_transient", ErrorKind.TRANSIENT)
        kind = ErrorKind.AUTHENTICATION if result.error_kind == ChannelErrorKind.AUTH.value else ErrorKind.VALIDATION
        return Result.failure(result.error or "Delivery failed", "delivery_failed", kind)
