"""WhatsApp Cloud API client."""

import hashlib
import hmac
import re
from dataclasses import dataclass
from enum import Enum
from typing import Optional

import httpx

from cartrecovery.logging_config import get_logger

logger = get_logger("whatsapp_service")

GRAPH_API_BASE = "https://graph.facebook.com"
DEFAULT_COUNTRY_CODE = "55"
TEMPLATE_LANGUAGE = "pt_BR"


class ChannelErrorKind(str, Enum):
    AUTH = "auth"
    BAD_REQUEST = "bad_request"
    RATE_LIMITED = "rate_limited"
    SERVER_ERROR = "server_error"
    NETWORK = "network"


class ChannelError(Exception):
    def __init__(self, kind: ChannelErrorKind, detail: str, status_code: Optional[int] = None):
        self.kind = kind
        self.detail = detail
        self.status_code = status_code
        super().__init__(f"{kind.value}: {detail}")


@dataclass
class SendReceipt:
    external_id: str


def normalize_phone(phone: str) -> str:
    """Return `+<digits>`, assuming Brazil when no country code was given."""
    digits = re.sub(r"\D", "", phone or "")
    if (phone or "").strip().startswith("+") or digits.startswith(DEFAULT_COUNTRY_CODE):
        return f"+{digits}"
    return f"+{DEFAULT_COUNTRY_CODE}{digits}"


def inbound_address(wa_id: str) -> str:
    """Sender of a webhook message as `+<digits>`. WhatsApp always reports the full international number."""
    return "+" + re.sub(r"\D", "", wa_id or "")


def classify_status(status_code: int) -> ChannelErrorKind:
    if status_code in (401, 403):
        return ChannelErrorKind.AUTH
    if status_code == 429:
        return ChannelErrorKind.RATE_LIMITED
    if status_code >= 500:
        return ChannelErrorKind.SERVER_ERROR
    return ChannelErrorKind.BAD_REQUEST


def verify_signature(app_secret: str, body: bytes, signature_header: Optional[str]) -> bool:
    """Check Meta's `X-Hub-Signature-256: sha256=<hex>` header."""
    if not app_secret or not signature_header or not signature_header.startswith("sha256="):
        return False
    expected = hmac.new(app_secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature_header[len("sha256=") :])


class WhatsAppClient:
    def __init__(
        self,
        phone_id: str,
        access_token: str,
        *,
        api_version: str = "v18.0",
        timeout_seconds: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.phone_id = phone_id
        self.access_token = access_token
        self.url = f"{GRAPH_API_BASE}/{api_version}/{phone_id}/messages"
        self._client = client or httpx.AsyncClient(timeout=timeout_seconds)

    async def close(self) -> None:
        await self._client.aclose()

    async def send_text(self, recipient: str, text: str) -> SendReceipt:
        return await self._send(
            {
                "messaging_product": "whatsapp",
                "recipient_type": "individual",
                "to": normalize_phone(recipient),
                "type": "text",
                "text": {"body": text},
            }
        )

    async def send_template(
        self,
        recipient: str,
        template_name: str,
        params: Optional[list[str]] = None,
        language: str = TEMPLATE_LANGUAGE,
    ) -> SendReceipt:
        template = {"name": template_name, "language": {"code": language}}
        if params:
            template["components"] = [
                {"type": "body", "parameters": [{"type": "text", "text": str(value)} for value in params]}
            ]
        return await self._send(
            {
                "messaging_product": "whatsapp",
                "recipient_type": "individual",
                "to": normalize_phone(recipient),
                "type": "template",
                "template": template,
            }
        )

    async def _send(self, payload: dict) -> SendReceipt:
        try:
            response = await self._client.post(
                self.url,
                headers={
                    "Authorization": f"Bearer {self.access_token}",
                    "Content-Type": "application/json",
                },
                json=payload,
            )
        except httpx.HTTPError as e:
            raise ChannelError(ChannelErrorKind.NETWORK, str(e) or e.__class__.__name__) from e

        if response.status_code >= 300:
            kind = classify_status(response.status_code)
            logger.warning(
                "WhatsApp API error",
                extra={"context": {"status_code": response.status_code, "kind": kind.value, "body": response.text[:500]}},
            )
            raise ChannelError(kind, response.text[:500], status_code=response.status_code)

        try:
            data = response.json()
            external_id = data["messages"][0]["id"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise ChannelError(
                ChannelErrorKind.BAD_REQUEST,
                "No message ID in response",
                status_code=response.status_code,
            ) from e
        return SendReceipt(external_id=external_id)
