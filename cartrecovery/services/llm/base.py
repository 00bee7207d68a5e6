from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Optional


@dataclass
class LLMResponse:
    content: str
    model: str
    usage: Optional[dict] = None
    response_id: Optional[str] = None

    @property
    def total_tokens(self) -> int:
        return int((self.usage or {}).get("total_tokens") or 0)


class LLMError(Exception):
    """Provider call failed; callers fall back to a canned reply."""


class LLMAuthenticationError(LLMError):
    """Credentials rejected. Retrying cannot help."""


class LLMRateLimitError(LLMError):
    pass


class LLMTimeoutError(LLMError):
    pass


class LLMProvider(ABC):
    """Abstract base class for LLM providers."""

    @abstractmethod
    async def generate(
        self,
        messages: List[dict],
        model: Optional[str] = None,
        temperature: float = 0.7,
        max_tokens: int = 500,
        json_mode: bool = False,
    ) -> LLMResponse:
        """Generate response from LLM."""

    async def close(self) -> None:
        return None


class LLMServerError(LLMError):
    pass
