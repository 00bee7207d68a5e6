import asyncio
from typing import Awaitable, Callable, List, Optional

import httpx

from cartrecovery.logging_config import get_logger
from cartrecovery.services.llm.base import (
    LLMAuthenticationError,
    LLMError,
    LLMProvider,
    LLMRateLimitError,
    LLMResponse,
    LLMServerError,
    LLMTimeoutError,
)

logger = get_logger("llm.openai")

RETRYABLE_ERRORS = (LLMRateLimitError, LLMServerError, LLMTimeoutError)


class OpenAIProvider(LLMProvider):
    """OpenAI chat completions over httpx."""

    def __init__(
        self,
        api_key: str,
        default_model: str = "gpt-4o-mini",
        *,
        timeout_seconds: float = 5.0,
        max_attempts: int = 3,
        retry_delay_seconds: float = 1.0,
        retry_multiplier: float = 2.0,
        client: Optional[httpx.AsyncClient] = None,
        sleep_func: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.api_key = api_key
        self.default_model = default_model
        self.base_url = "https://api.openai.com/v1/chat/completions"
        self.max_attempts = max_attempts
        self.retry_delay_seconds = retry_delay_seconds
        self.retry_multiplier = retry_multiplier
        self._client = client or httpx.AsyncClient(timeout=timeout_seconds)
        self._sleep = sleep_func

    async def close(self) -> None:
        await self._client.aclose()

    async def generate(
        self,
        messages: List[dict],
        model: Optional[str] = None,
        temperature: float = 0.7,
        max_tokens: int = 500,
        json_mode: bool = False,
    ) -> LLMResponse:
        model = model or self.default_model
        payload = {
            "model": model,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        if json_mode:
            payload["response_format"] = {"type": "json_object"}

        delay = self.retry_delay_seconds
        for attempt in range(1, self.max_attempts + 1):
            try:
                return await self._request(payload, model)
            except RETRYABLE_ERRORS as e:
                if attempt >= self.max_attempts:
                    raise
                logger.warning(
                    "OpenAI request failed, retrying",
                    extra={"context": {"attempt": attempt, "delay": delay, "error": str(e)}},
                )
                await self._sleep(delay)
                delay *= self.retry_multiplier
        raise LLMError("OpenAI request exhausted retries")

    async def _request(self, payload: dict, model: str) -> LLMResponse:
        logger.debug(f"OpenAI request: model={model}, messages_count={len(payload['messages'])}")
        try:
            response = await self._client.post(
                self.base_url,
                headers={
                    "Authorization": f"Bearer {self.api_key}",
                    "Content-Type": "application/json",
                },
                json=payload,
            )
        except httpx.TimeoutException as e:
            raise LLMTimeoutError(f"OpenAI request timed out: {e}") from e
        except httpx.HTTPError as e:
            raise LLMError(f"OpenAI transport error: {e}") from e

        if response.status_code in (401, 403):
            logger.error("OpenAI authentication failed")
            raise LLMAuthenticationError(f"OpenAI API error: {response.status_code}")
        if response.status_code == 429:
            raise LLMRateLimitError("OpenAI rate limit exceeded")
        if response.status_code >= 500:
            raise LLMServerError(f"OpenAI server error: {response.status_code}")
        if response.status_code != 200:
            logger.error(f"OpenAI error: {response.text}")
            raise LLMError(f"OpenAI API error: {response.status_code} - {response.text}")

        data = response.json()
        content = ""
        if data.get("choices"):
            content = data["choices"][0].get("message", {}).get("content") or ""
        logger.debug(f"OpenAI content: {content[:100] if content else 'EMPTY'}")

        return LLMResponse(
            content=content,
            model=data.get("model", model),
            usage=data.get("usage"),
            response_id=data.get("id"),
        )
