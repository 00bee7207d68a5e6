"""Operator alerts delivered to a Telegram chat.

A failing dependency fails every job the same way, so an identical alert
is only sent once per suppression window.
"""

import threading
import time
from typing import Optional

import httpx

from cartrecovery.config import settings
from cartrecovery.logging_config import get_logger

logger = get_logger("alert_service")

TELEGRAM_API = "https://api.telegram.org"
SERVICE_NAME = "cartrecovery"
SUPPRESS_SECONDS = 300
MAX_CONTEXT_VALUE = 200

_recent: dict[str, float] = {}
_recent_lock = threading.Lock()


def format_alert(level: str, message: str, context: Optional[dict] = None) -> str:
    text = f"*{level}* [{SERVICE_NAME}]\n\n{message}"
    if context:
        lines = "\n".join(f"  {k}: {str(v)[:MAX_CONTEXT_VALUE]}" for k, v in context.items() if v is not None)
        if lines:
            text += f"\n\n```\n{lines}\n```"
    return text


def _suppressed(level: str, message: str, now: float) -> bool:
    key = f"{level}:{message}"
    with _recent_lock:
        last = _recent.get(key)
        if last is not None and now - last < SUPPRESS_SECONDS:
            return True
        _recent[key] = now
        return False


def reset_suppression() -> None:
    with _recent_lock:
        _recent.clear()


def send_alert(level: str, message: str, context: Optional[dict] = None) -> bool:
    """Send alert to Telegram.

    Args:
        level: WARNING, ERROR, CRITICAL
        message: Alert message, also the suppression key
        context: Optional context dict, None values are dropped

    Returns:
        True if Telegram accepted the message
    """
    token = settings.alert_bot_token
    chat_id = settings.alert_chat_id
    if not token or not chat_id:
        logger.warning(f"Alert not configured: {level} - {message}")
        return False

    if _suppressed(level, message, time.monotonic()):
        logger.info("Alert suppressed", extra={"context": {"level": level, "alert": message}})
        return False

    try:
        with httpx.Client(timeout=10) as client:
            response = client.post(
                f"{TELEGRAM_API}/bot{token}/sendMessage",
                json={"chat_id": chat_id, "text": format_alert(level, message, context), "parse_mode": "Markdown"},
            )
    except httpx.HTTPError as e:
        logger.error(f"Failed to send alert: {e}")
        return False

    if response.status_code != 200:
        logger.error("Alert rejected by Telegram", extra={"context": {"status_code": response.status_code}})
        return False
    return True


def alert_error(message: str, context: Optional[dict] = None) -> bool:
    return send_alert("ERROR", message, context)


def alert_critical(message: str, context: Optional[dict] = None) -> bool:
    """Credentials or configuration are broken; nothing will recover on its own."""
    return send_alert("CRITICAL", message, context)
