"""Decides whether the agent may message a customer right now."""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional

from cartrecovery.logging_config import get_logger
from cartrecovery.models import Conversation, User

logger = get_logger("compliance_service")

MESSAGING_WINDOW_HOURS = 24

REASON_ALLOWED = "allowed"
REASON_OPTED_OUT = "opted_out"
REASON_OUTSIDE_WINDOW = "outside_messaging_window"


@dataclass
class ComplianceDecision:
    allowed: bool
    reason: str
    warnings: list[str] = field(default_factory=list)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def window_reference(conversation: Conversation) -> Optional[datetime]:
    return conversation.last_user_message_at or conversation.created_at


def is_within_window(
    reference: Optional[datetime],
    now: Optional[datetime] = None,
    window_hours: int = MESSAGING_WINDOW_HOURS,
) -> bool:
    """True iff less than `window_hours` have passed since `reference`.

    A gap of exactly `window_hours` is outside the window.
    """
    if reference is None:
        return False
    now = now or datetime.now(timezone.utc)
    return _as_utc(now) - _as_utc(reference) < timedelta(hours=window_hours)


def check(
    conversation: Conversation,
    user: Optional[User],
    *,
    now: Optional[datetime] = None,
    message_type: str = "text",
    window_hours: int = MESSAGING_WINDOW_HOURS,
    trace_id: Optional[str] = None,
) -> ComplianceDecision:
    now = now or datetime.now(timezone.utc)
    warnings: list[str] = []

    if user is not None and user.opted_out:
        decision = ComplianceDecision(allowed=False, reason=REASON_OPTED_OUT)
    elif message_type == "template":
        # Approved templates may open a conversation outside the window.
        decision = ComplianceDecision(allowed=True, reason=REASON_ALLOWED)
    elif not is_within_window(window_reference(conversation), now, window_hours):
        decision = ComplianceDecision(allowed=False, reason=REASON_OUTSIDE_WINDOW)
    else:
        reference = _as_utc(window_reference(conversation))
        remaining = timedelta(hours=window_hours) - (_as_utc(now) - reference)
        if remaining < timedelta(hours=1):
            warnings.append("messaging window closes in less than 1 hour")
        decision = ComplianceDecision(allowed=True, reason=REASON_ALLOWED, warnings=warnings)

    logger.info(
        "Compliance decision",
        extra={
            "context": {
                "conversation_id": str(conversation.id),
                "allowed": decision.allowed,
                "reason": decision.reason,
                "message_type": message_type,
                "warnings": decision.warnings,
                "trace_id": trace_id,
            }
        },
    )
    return decision
