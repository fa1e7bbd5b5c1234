"""LLM completion services and JSON output parsing."""

import json
import re
from typing import Protocol, TypeVar

import anthropic
from anthropic import AsyncAnthropic
from langchain_openai import ChatOpenAI
from pydantic import BaseModel

from scribe.core.config import Settings, get_settings
from scribe.core.embeddings import TRANSIENT_OPENAI_ERRORS
from scribe.core.errors import ConfigurationError, TransientUpstreamError
from scribe.core.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T", bound=BaseModel)

TRANSIENT_ANTHROPIC_ERRORS = (
    anthropic.RateLimitError,
    anthropic.APITimeoutError,
    anthropic.APIConnectionError,
    anthropic.InternalServerError,
)


class LLMService(Protocol):
    """complete(prompt) -> text. Raises TransientUpstreamError on retryable failures."""

    async def complete(
        self,
        prompt: str,
        *,
        system: str | None = None,
        temperature: float = 0.1,
        max_tokens: int = 400,
    ) -> str: ...


def get_llm(
    model: str | None = None, temperature: float = 0.1, max_tokens: int | None = None
) -> ChatOpenAI:
    """
    Get configured LLM instance.

    Args:
        model: Model name override (defaults to META_CLASSIFIER_MODEL)
        temperature: Temperature for generation (default 0.1)
        max_tokens: Optional completion length cap

    Returns:
        ChatOpenAI instance configured with API key and model
    """
    settings = get_settings()

    return ChatOpenAI(
        api_key=settings.OPENAI_API_KEY,
        model=model or settings.META_CLASSIFIER_MODEL,
        temperature=temperature,
        max_tokens=max_tokens,
        max_retries=0,
    )


class OpenAICompletionService:
    """LLMService over OpenAI chat completions."""

    def __init__(self, model: str):
        self.model = model

    async def complete(
        self,
        prompt: str,
        *,
        system: str | None = None,
        temperature: float = 0.1,
        max_tokens: int = 400,
    ) -> str:
        llm = get_llm(model=self.model, temperature=temperature, max_tokens=max_tokens)
        messages = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": prompt})

        try:
            response = await llm.ainvoke(messages)
        except TRANSIENT_OPENAI_ERRORS as e:
            raise TransientUpstreamError(f"OpenAI completion failed: {e}") from e

        return response.content


class AnthropicCompletionService:
    """LLMService over Anthropic messages."""

    def __init__(self, api_key: str, model: str):
        self.model = model
        self._client = AsyncAnthropic(api_key=api_key, max_retries=0)

    async def complete(
        self,
        prompt: str,
        *,
        system: str | None = None,
        temperature: float = 0.1,
        max_tokens: int = 400,
    ) -> str:
        kwargs = {}
        if system:
            kwargs["system"] = system

        try:
            response = await self._client.messages.create(
                model=self.model,
                max_tokens=max_tokens,
                temperature=temperature,
                messages=[{"role": "user", "content": prompt}],
                **kwargs,
            )
        except TRANSIENT_ANTHROPIC_ERRORS as e:
            raise TransientUpstreamError(f"Anthropic completion failed: {e}") from e

        return "".join(block.text for block in response.content if block.type == "text")


def build_llm_service(settings: Settings, openai_model: str) -> LLMService:
    """
    Create the completion backend selected by LLM_PROVIDER.

    Args:
        settings: Application settings
        openai_model: Model to use when the provider is OpenAI

    Raises:
        ConfigurationError: If the Anthropic provider is selected without a key
    """
    if settings.LLM_PROVIDER == "anthropic":
        if not settings.ANTHROPIC_API_KEY:
            raise ConfigurationError("LLM_PROVIDER=anthropic requires ANTHROPIC_API_KEY")
        return AnthropicCompletionService(settings.ANTHROPIC_API_KEY, settings.ANTHROPIC_MODEL)
    return OpenAICompletionService(openai_model)


_FENCED = re.compile(r"```(?:json)?\s*(.*?)\s*(?:```|$)", re.DOTALL)


def extract_json_text(raw_output: str) -> str:
    """
    Pull the JSON payload out of a completion.

    Accepts a bare object, a ```json fenced block (closed or truncated), or an
    object preceded by a short preamble such as "Here is the result:".
    """
    text = raw_output.strip()
    fenced = _FENCED.search(text)
    if fenced:
        text = fenced.group(1).strip()

    if not text.startswith(("{", "[")):
        start, end = text.find("{"), text.rfind("}")
        if 0 <= start < end:
            text = text[start : end + 1]
    return text


def parse_llm_json(raw_output: str, model: type[T]) -> T:
    """
    Validate a completion against a pydantic model.

    Raises:
        json.JSONDecodeError: If no JSON object can be recovered
        pydantic.ValidationError: If the object does not match the model
    """
    return model.model_validate(json.loads(extract_json_text(raw_output)))
