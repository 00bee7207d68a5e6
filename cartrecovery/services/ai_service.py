import asyncio
import json
import re
from dataclasses import dataclass, field
from typing import Optional

from cartrecovery.logging_config import get_logger
from cartrecovery.services.llm import (
    LLMAuthenticationError,
    LLMError,
    LLMProvider,
    LLMRateLimitError,
    LLMTimeoutError,
)

logger = get_logger("ai_service")

FALLBACK_TIMEOUT = "Um momento enquanto avalio sua mensagem..."
FALLBACK_RATE_LIMIT = "Deixa eu pensar um pouco sobre isso..."
FALLBACK_ERROR = "Desculpa, estou tendo dificuldade em processar. Pode tentar novamente?"

VALID_INTENTS = {"price_question", "objection", "confirmation", "unclear"}
VALID_SENTIMENTS = {"positive", "neutral", "negative"}

SYSTEM_PROMPT = """Você é a Sara, assistente de vendas que ajuda clientes a concluir uma compra abandonada.
Seja breve, cordial e objetiva. Responda sempre em português do Brasil.
Produto: {product_name}
Valor do carrinho: R$ {cart_value}
Cliente: {user_name}
Interação {cycle} de no máximo {max_cycles}.

Responda APENAS com um JSON no formato:
{{"response": "<mensagem para o cliente>",
  "intent": "price_question" | "objection" | "confirmation" | "unclear",
  "sentiment": "positive" | "neutral" | "negative",
  "should_offer_discount": true | false}}"""

# Light-weight intent patterns for the opt-out fallback check.
OPT_OUT_INTENT_PATTERNS = (
    (re.compile(r"n[ãa]o.*mais|chega|basta|sair|parar"), "opt_out"),
    (re.compile(r"desinscrever|remover|delete|unsubscribe"), "unsubscribe"),
    (re.compile(r"n[ãa]o.*quer|n[ãa]o.*desejo|n[ãa]o.*interesse"), "not_interested"),
)


@dataclass
class ConversationContext:
    conversation_id: str
    user_id: str
    user_name: Optional[str] = None
    product_name: Optional[str] = None
    cart_value: Optional[float] = None
    cycle_count: int = 0
    max_cycles: int = 5
    history: list[dict] = field(default_factory=list)
    trace_id: Optional[str] = None


@dataclass
class Interpretation:
    response: str
    intent: str = "unclear"
    sentiment: str = "neutral"
    should_offer_discount: bool = False
    tokens_used: int = 0
    response_id: Optional[str] = None
    fallback: Optional[str] = None

    def metadata(self) -> dict:
        data = {
            "intent": self.intent,
            "sentiment": self.sentiment,
            "should_offer_discount": self.should_offer_discount,
            "tokens_used": self.tokens_used,
            "response_id": self.response_id,
        }
        if self.fallback:
            data["fallback"] = self.fallback
        return data


def fallback_interpretation(reason: str) -> Interpretation:
    text = {
        "timeout": FALLBACK_TIMEOUT,
        "rate_limit": FALLBACK_RATE_LIMIT,
    }.get(reason, FALLBACK_ERROR)
    return Interpretation(response=text, fallback=reason)


def parse_interpretation(content: str) -> Interpretation:
    """Validate the model's JSON answer. Raises ValueError when it is unusable."""
    try:
        data = json.loads(content)
    except (TypeError, json.JSONDecodeError) as e:
        raise ValueError(f"Response is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise ValueError("Response JSON is not an object")

    response = data.get("response")
    if not isinstance(response, str) or not response.strip():
        raise ValueError("Missing response text")
    intent = data.get("intent")
    if intent not in VALID_INTENTS:
        raise ValueError(f"Invalid intent: {intent}")
    sentiment = data.get("sentiment")
    if sentiment not in VALID_SENTIMENTS:
        raise ValueError(f"Invalid sentiment: {sentiment}")
    should_offer_discount = data.get("should_offer_discount")
    if not isinstance(should_offer_discount, bool):
        raise ValueError("should_offer_discount must be a boolean")

    return Interpretation(
        response=response.strip(),
        intent=intent,
        sentiment=sentiment,
        should_offer_discount=should_offer_discount,
    )


def build_messages(context: ConversationContext, text: str) -> list[dict]:
    system = SYSTEM_PROMPT.format(
        product_name=context.product_name or "produto",
        cart_value=f"{context.cart_value:.2f}" if context.cart_value is not None else "-",
        user_name=context.user_name or "cliente",
        cycle=context.cycle_count + 1,
        max_cycles=context.max_cycles,
    )
    messages = [{"role": "system", "content": system}]
    messages.extend(context.history)
    # History already ends with the inbound message once it has been persisted.
    if not context.history or context.history[-1].get("content") != text:
        messages.append({"role": "user", "content": text})
    return messages


def classify_opt_out_intent(text: str) -> str:
    normalized = (text or "").lower()
    for pattern, intent in OPT_OUT_INTENT_PATTERNS:
        if pattern.search(normalized):
            return intent
    return "continue"


class AIService:
    """Interprets customer replies. Degrades to canned replies, except on bad credentials."""

    def __init__(
        self,
        provider: Optional[LLMProvider],
        *,
        model: Optional[str] = None,
        max_tokens: int = 500,
        deadline_seconds: float = 15.0,
    ):
        self.provider = provider
        self.model = model
        self.max_tokens = max_tokens
        self.deadline_seconds = deadline_seconds

    async def close(self) -> None:
        if self.provider:
            await self.provider.close()

    async def interpret(self, context: ConversationContext, text: str) -> Interpretation:
        log_context = {"conversation_id": context.conversation_id, "trace_id": context.trace_id}
        if self.provider is None:
            logger.warning("No LLM provider configured", extra={"context": log_context})
            return fallback_interpretation("error")

        try:
            llm_response = await asyncio.wait_for(
                self.provider.generate(
                    build_messages(context, text),
                    model=self.model,
                    temperature=0.7,
                    max_tokens=self.max_tokens,
                    json_mode=True,
                ),
                timeout=self.deadline_seconds,
            )
        except LLMAuthenticationError:
            logger.error("LLM authentication failed", extra={"context": log_context})
            raise
        except (asyncio.TimeoutError, LLMTimeoutError):
            logger.warning("LLM timed out, using fallback", extra={"context": log_context})
            return fallback_interpretation("timeout")
        except LLMRateLimitError:
            logger.warning("LLM rate limited, using fallback", extra={"context": log_context})
            return fallback_interpretation("rate_limit")
        except LLMError as e:
            logger.warning("LLM error, using fallback", extra={"context": {**log_context, "error": str(e)}})
            return fallback_interpretation("error")

        try:
            interpretation = parse_interpretation(llm_response.content)
        except ValueError as e:
            logger.warning("Invalid LLM response, using fallback", extra={"context": {**log_context, "error": str(e)}})
            return fallback_interpretation("error")

        interpretation.tokens_used = llm_response.total_tokens
        interpretation.response_id = llm_response.response_id
        logger.info(
            "Message interpreted",
            extra={
                "context": {
                    **log_context,
                    "intent": interpretation.intent,
                    "sentiment": interpretation.sentiment,
                    "tokens_used": interpretation.tokens_used,
                }
            },
        )
        return interpretation

    async def classify_intent(self, text: str) -> str:
        """Cheap intent guess used by the opt-out fallback layer."""
        return classify_opt_out_intent(text)
