"""Handles one inbound customer message end to end.

Resolve the conversation, dedup, gate on opt-out, persist, update the
conversation, detect opt-out requests, enforce the cycle bound and the
messaging window, interpret, persist the reply and hand it to delivery.
Nothing here raises: every path ends in a Result whose error kind tells
the worker whether the job is worth retrying.
"""

import asyncio
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from cartrecovery.logging_config import bind_trace, get_logger
from cartrecovery.schemas.jobs import InboundJob
from cartrecovery.services import compliance_service
from cartrecovery.services.ai_service import AIService, ConversationContext
from cartrecovery.services.alert_service import alert_critical
from cartrecovery.services.conversation_service import (
    ConversationNotFoundError,
    find_by_phone,
    get_abandonment,
    get_conversation,
    get_user,
    record_agent_reply,
    record_user_message,
    touch_last_message,
    update_state,
)
from cartrecovery.services.delivery_service import DELIVERY_FAILED, OutboundDelivery, SendOptions
from cartrecovery.services.idempotency import find_message_by_external_id, find_reply_to
from cartrecovery.services.llm import LLMAuthenticationError
from cartrecovery.services.message_service import (
    SENDER_AGENT,
    SENDER_USER,
    STATUS_PENDING,
    STATUS_SENT,
    create_message,
    format_history,
    get_recent_messages,
)
from cartrecovery.services.opt_out_service import detect_opt_out, mark_opted_out
from cartrecovery.services.result import ErrorKind, Result, kind_for_exception
from cartrecovery.services.state_machine import ConversationStatus, InvalidTransitionError
from cartrecovery.services.whatsapp_service import inbound_address

logger = get_logger("inbound_pipeline")

REASON_REPLIED = "replied"
REASON_REPLY_QUEUED = "reply_queued"
REASON_REPLY_FAILED = "reply_failed"
REASON_DUPLICATE = "duplicate"
REASON_OPTED_OUT = "opted_out"
REASON_CLOSED = "conversation_closed"
REASON_MAX_CYCLES = "max_cycles_reached"
REASON_COMPLIANCE = "compliance_blocked"


@dataclass
class InboundOutcome:
    processed: bool
    conversation_id: Optional[str] = None
    inbound_message_id: Optional[str] = None
    response_message_id: Optional[str] = None
    delivery_status: Optional[str] = None
    reason: Optional[str] = None


def outcome_to_dict(result: Result[InboundOutcome]) -> dict:
    """Flatten a pipeline result into the job/HTTP representation."""
    if result.ok:
        return asdict(result.value)
    return {
        "processed": False,
        "reason": result.error_code,
        "error": result.error,
        "error_kind": result.kind.value if result.kind else None,
    }


def _str(value) -> Optional[str]:
    return str(value) if value is not None else None


class InboundPipeline:
    def __init__(
        self,
        ai: AIService,
        delivery: OutboundDelivery,
        *,
        max_cycles: int = 5,
        history_limit: int = 10,
        window_hours: int = compliance_service.MESSAGING_WINDOW_HOURS,
    ):
        self.ai = ai
        self.delivery = delivery
        self.max_cycles = max_cycles
        self.history_limit = history_limit
        self.window_hours = window_hours

    async def process(self, db: Session, job: InboundJob) -> Result[InboundOutcome]:
        log = bind_trace(logger, job.trace_id, external_message_id=job.external_message_id)
        try:
            return await self._process(db, job, log)
        except LLMAuthenticationError as e:
            self._rollback(db)
            log.error("LLM authentication failed", context={"error": str(e)})
            await asyncio.to_thread(
                alert_critical,
                "LLM authentication failed while processing inbound message",
                {"trace_id": job.trace_id, "error": str(e)},
            )
            return Result.failure(str(e), "ai_authentication", ErrorKind.AUTHENTICATION)
        except InvalidTransitionError as e:
            self._rollback(db)
            log.error("Invalid conversation transition", context={"error": str(e)})
            return Result.failure(str(e), "invalid_transition", ErrorKind.CONFLICT)
        except ConversationNotFoundError as e:
            self._rollback(db)
            return Result.failure(str(e), "not_found", ErrorKind.NOT_FOUND)
        except Exception as e:
            self._rollback(db)
            kind = kind_for_exception(e)
            log.error("Inbound processing failed", context={"error": str(e), "error_kind": kind.value}, exc_info=True)
            return Result.failure(str(e), "pipeline_error", kind)

    async def _process(self, db: Session, job: InboundJob, log) -> Result[InboundOutcome]:
        now = datetime.now(timezone.utc)

        if job.conversation_id:
            conversation = get_conversation(db, job.conversation_id)
        else:
            conversation = find_by_phone(db, inbound_address(job.recipient_address))
        if not conversation:
            log.warning("Conversation not found", context={"recipient": job.recipient_address})
            return Result.failure("Conversation not found", "not_found", ErrorKind.NOT_FOUND)

        conversation_id = _str(conversation.id)
        log = bind_trace(logger, job.trace_id, conversation_id=conversation_id)

        # A stored inbound without a reply means an earlier attempt failed midway: resume it.
        existing = find_message_by_external_id(db, job.external_message_id)
        if existing:
            reply = find_reply_to(db, existing.id)
            if reply or existing.sender_type != SENDER_USER:
                log.info("Duplicate inbound message", context={"message_id": str(existing.id)})
                return Result.success(
                    InboundOutcome(
                        processed=True,
                        conversation_id=conversation_id,
                        inbound_message_id=_str(existing.id),
                        response_message_id=_str(reply.id if reply else existing.id),
                        reason=REASON_DUPLICATE,
                    )
                )
            log.info("Resuming unanswered inbound message", context={"message_id": str(existing.id)})

        user = get_user(db, conversation.user_id)
        if not user:
            return Result.failure("User not found", "not_found", ErrorKind.NOT_FOUND)

        if user.opted_out:
            inbound = existing or self._persist_inbound(db, conversation.id, job, {"intent": "opted_out"})
            if inbound is None:
                return self._duplicate(db, job, conversation_id)
            log.info("Inbound from opted-out user stored, no reply")
            return Result.success(
                InboundOutcome(
                    processed=True,
                    conversation_id=conversation_id,
                    inbound_message_id=_str(inbound.id),
                    reason=REASON_OPTED_OUT,
                )
            )

        if existing:
            # The first attempt committed the counters together with the inbound row.
            inbound = existing
        else:
            inbound = self._persist_inbound(db, conversation.id, job, {}, commit=False)
            if inbound is None:
                return self._duplicate(db, job, conversation_id)
            record_user_message(db, conversation, now)
        outcome = InboundOutcome(processed=True, conversation_id=conversation_id, inbound_message_id=_str(inbound.id))

        status = ConversationStatus(conversation.status)
        if status == ConversationStatus.CLOSED:
            log.info("Message on closed conversation, no reply")
            outcome.reason = REASON_CLOSED
            return Result.success(outcome)
        if status in (ConversationStatus.AWAITING_RESPONSE, ConversationStatus.ERROR):
            conversation = update_state(
                db, conversation.id, ConversationStatus.ACTIVE, "customer_replied", trace_id=job.trace_id
            )

        detection = await detect_opt_out(job.text, classify_intent=self.ai.classify_intent)
        if detection.is_opt_out:
            mark_opted_out(db, user.id)
            update_state(db, conversation.id, ConversationStatus.CLOSED, "opt_out", trace_id=job.trace_id)
            log.info(
                "Opt-out detected",
                context={"method": detection.method, "confidence": detection.confidence, "keyword": detection.keyword},
            )
            outcome.reason = REASON_OPTED_OUT
            return Result.success(outcome)

        if (conversation.cycle_count or 0) >= self.max_cycles:
            update_state(db, conversation.id, ConversationStatus.CLOSED, REASON_MAX_CYCLES, trace_id=job.trace_id)
            outcome.reason = REASON_MAX_CYCLES
            return Result.success(outcome)

        decision = compliance_service.check(
            conversation, user, now=now, window_hours=self.window_hours, trace_id=job.trace_id
        )
        if not decision.allowed:
            outcome.reason = REASON_COMPLIANCE
            return Result.success(outcome)

        history = format_history(get_recent_messages(db, conversation.id, self.history_limit))
        abandonment = get_abandonment(db, conversation.abandonment_id)
        context = ConversationContext(
            conversation_id=conversation_id,
            user_id=_str(user.id),
            user_name=user.name,
            product_name=(abandonment.product_name or abandonment.product_id) if abandonment else None,
            cart_value=float(abandonment.value) if abandonment and abandonment.value is not None else None,
            cycle_count=conversation.cycle_count or 0,
            max_cycles=self.max_cycles,
            history=history,
            trace_id=job.trace_id,
        )
        interpretation = await self.ai.interpret(context, job.text)

        reply = create_message(
            db,
            conversation_id=conversation.id,
            sender_type=SENDER_AGENT,
            content=interpretation.response,
            status=STATUS_PENDING,
            metadata={**interpretation.metadata(), "in_reply_to": str(inbound.id), "trace_id": job.trace_id},
        )
        record_agent_reply(db, conversation)
        outcome.response_message_id = _str(reply.id)

        delivery = await self.delivery.send(
            db,
            conversation.id,
            user.phone,
            interpretation.response,
            "text",
            SendOptions(trace_id=job.trace_id, message_id=reply.id),
        )
        outcome.delivery_status = delivery.status

        if delivery.status != DELIVERY_FAILED:
            if delivery.sent:
                touch_last_message(db, conversation)
                outcome.reason = REASON_REPLIED
            else:
                outcome.reason = REASON_REPLY_QUEUED
            # A queued reply still used up a cycle.
            if (conversation.cycle_count or 0) >= self.max_cycles:
                update_state(db, conversation.id, ConversationStatus.CLOSED, REASON_MAX_CYCLES, trace_id=job.trace_id)
        else:
            outcome.reason = REASON_REPLY_FAILED
            if conversation.status == ConversationStatus.ACTIVE.value:
                update_state(
                    db,
                    conversation.id,
                    ConversationStatus.ERROR,
                    f"delivery_failed:{delivery.error_kind}",
                    trace_id=job.trace_id,
                )

        log.info(
            "Inbound message processed",
            context={"reason": outcome.reason, "delivery_status": delivery.status, "intent": interpretation.intent},
        )
        return Result.success(outcome)

    def _persist_inbound(self, db: Session, conversation_id, job: InboundJob, metadata: dict, *, commit: bool = True):
        """Store the customer's message. Returns None if another worker stored it first."""
        try:
            return create_message(
                db,
                conversation_id=conversation_id,
                sender_type=SENDER_USER,
                content=job.text,
                status=STATUS_SENT,
                external_message_id=job.external_message_id,
                metadata={**metadata, "trace_id": job.trace_id},
                commit=commit,
            )
        except IntegrityError:
            return None

    def _duplicate(self, db: Session, job: InboundJob, conversation_id: str) -> Result[InboundOutcome]:
        existing = find_message_by_external_id(db, job.external_message_id)
        message_id = _str(existing.id) if existing else None
        return Result.success(
            InboundOutcome(
                processed=True,
                conversation_id=conversation_id,
                inbound_message_id=message_id,
                response_message_id=message_id,
                reason=REASON_DUPLICATE,
            )
        )

    @staticmethod
    def _rollback(db: Session) -> None:
        try:
            db.rollback()
        except Exception as e:
            logger.warning("Rollback failed", extra={"context": {"error": str(e)}})
