import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional

from sqlalchemy.orm import Session

from cartrecovery.logging_config import get_logger
from cartrecovery.models import User

logger = get_logger("opt_out_service")

OPT_OUT_KEYWORDS = (
    "parar",
    "stop",
    "cancelar",
    "desinscrever",
    "remover",
    "delete",
    "unsubscribe",
    "sair",
    "não",
    "nao",
    "não quero",
    "não desejo",
    "nao quero",
    "nao desejo",
    "não mais",
    "nao mais",
    "chega",
    "basta",
    "fim",
    "retire meu número",
    "retire meu numero",
    "não me contacte",
    "nao me contacte",
)

# Whole-word match: a keyword may not touch another word character on either side.
_KEYWORD_PATTERNS = [
    (keyword, re.compile(rf"(?<!\w){re.escape(keyword)}(?!\w)", re.IGNORECASE)) for keyword in OPT_OUT_KEYWORDS
]

AI_CHECK_MIN_LENGTH = 50
AI_CHECK_CONNECTIVES = ("porque",)
OPT_OUT_INTENT_MARKERS = ("opt", "unsubscribe", "stop")

DETERMINISTIC_CONFIDENCE = 0.95
AI_CONFIDENCE = 0.7
DEFAULT_OPT_OUT_REASON = "User requested opt-out via WhatsApp message"

METHOD_DETERMINISTIC = "deterministic"
METHOD_AI = "ai"
METHOD_NONE = "none"


@dataclass
class OptOutDetection:
    is_opt_out: bool
    method: str = METHOD_NONE
    confidence: float = 0.0
    keyword: Optional[str] = None


def normalize_for_matching(text: str) -> str:
    return re.sub(r"\s+", " ", (text or "").strip().lower())


def match_keyword(text: str) -> Optional[str]:
    normalized = normalize_for_matching(text)
    if not normalized:
        return None
    for keyword, pattern in _KEYWORD_PATTERNS:
        if pattern.search(normalized):
            return keyword
    return None


def needs_ai_check(text: str) -> bool:
    normalized = normalize_for_matching(text)
    return len(normalized) > AI_CHECK_MIN_LENGTH or any(word in normalized for word in AI_CHECK_CONNECTIVES)


async def detect_opt_out(
    text: str,
    *,
    classify_intent: Optional[Callable[[str], Awaitable[str]]] = None,
) -> OptOutDetection:
    """Keyword scan first, model-assisted check only for long or explanatory messages.

    Any error counts as "not opted out".
    """
    try:
        keyword = match_keyword(text)
        if keyword:
            return OptOutDetection(
                is_opt_out=True,
                method=METHOD_DETERMINISTIC,
                confidence=DETERMINISTIC_CONFIDENCE,
                keyword=keyword,
            )

        if classify_intent is None or not needs_ai_check(text):
            return OptOutDetection(is_opt_out=False)

        intent = (await classify_intent(text) or "").lower()
        if any(marker in intent for marker in OPT_OUT_INTENT_MARKERS):
            return OptOutDetection(is_opt_out=True, method=METHOD_AI, confidence=AI_CONFIDENCE)
        return OptOutDetection(is_opt_out=False, method=METHOD_AI)
    except Exception as e:
        logger.warning("Opt-out detection failed, assuming not opted out", extra={"context": {"error": str(e)}})
        return OptOutDetection(is_opt_out=False)


def mark_opted_out(db: Session, user_id, reason: str = DEFAULT_OPT_OUT_REASON) -> Optional[User]:
    user = db.query(User).filter(User.id == user_id).first()
    if not user:
        logger.warning("Opt-out for unknown user", extra={"context": {"user_id": str(user_id)}})
        return None
    now = datetime.now(timezone.utc)
    user.opted_out = True
    user.opted_out_at = now
    user.opted_out_reason = reason
    user.updated_at = now
    db.commit()
    logger.info("User opted out", extra={"context": {"user_id": str(user_id), "reason": reason}})
    return user
