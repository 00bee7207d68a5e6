from cartrecovery.services.llm.base import (
    LLMAuthenticationError,
    LLMError,
    LLMProvider,
    LLMRateLimitError,
    LLMResponse,
    LLMServerError,
    LLMTimeoutError,
)
from cartrecovery.services.llm.openai_provider import OpenAIProvider

__all__ = [
    "LLMProvider",
    "LLMResponse",
    "LLMError",
    "LLMAuthenticationError",
    "LLMRateLimitError",
    "LLMServerError",
    "LLMTimeoutError",
    "OpenAIProvider",
]
