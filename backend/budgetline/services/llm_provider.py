"""LLM provider abstraction for transaction categorisation.

Supports Anthropic (Claude), OpenAI and Ollama (local) behind one interface:
a single text prompt goes in, a ``Completion`` comes out. Provider failures
are never raised; they come back as a tagged ``Completion`` so the caller can
decide what is retryable.
"""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum

import httpx
import structlog

from budgetline.config import settings

logger = structlog.get_logger()


class AIErrorKind(str, Enum):
    API_ERROR = "API_ERROR"
    PARSE_ERROR = "PARSE_ERROR"
    INVALID_RESPONSE = "INVALID_RESPONSE"
    RATE_LIMITED = "RATE_LIMITED"
    TIMEOUT = "TIMEOUT"


@dataclass(frozen=True)
class Completion:
    """Either ``text`` or ``error`` is set."""
    text: str | None = None
    error: AIErrorKind | None = None
    detail: str = ""

    @property
    def ok(self) -> bool:
        return self.error is None and self.text is not None

    @classmethod
    def failed(cls, kind: AIErrorKind, detail: str) -> "Completion":
        return cls(error=kind, detail=detail)


class LLMProviderBase(ABC):
    """Abstract base for completion providers."""

    model: str = "?"

    @abstractmethod
    async def complete(self, prompt: str, max_tokens: int, timeout: float) -> Completion:
        """Send ``prompt`` as a single user message and return the reply text."""

    @abstractmethod
    async def is_available(self) -> bool:
        """Check if the provider is configured and reachable."""

    def get_model_name(self) -> str:
        return self.model


class AnthropicProvider(LLMProviderBase):
    """Anthropic Claude provider using the messages API."""

    def __init__(self) -> None:
        self.api_key = settings.anthropic_api_key
        self.model = settings.anthropic_model

    async def is_available(self) -> bool:
        return bool(self.api_key)

    async def complete(self, prompt: str, max_tokens: int, timeout: float) -> Completion:
        if not self.api_key:
            return Completion.failed(AIErrorKind.API_ERROR, "Anthropic API key not configured")

        import anthropic

        client = anthropic.AsyncAnthropic(api_key=self.api_key, max_retries=0)
        try:
            message = await asyncio.wait_for(
                client.messages.create(
                    model=self.model,
                    max_tokens=max_tokens,
                    messages=[{"role": "user", "content": prompt}],
                ),
                timeout=timeout,
            )
        except (asyncio.TimeoutError, anthropic.APITimeoutError):
            logger.warning("anthropic_timeout", model=self.model, timeout=timeout)
            return Completion.failed(AIErrorKind.TIMEOUT, "AI request timed out")
        except anthropic.RateLimitError as e:
            logger.warning("anthropic_rate_limited", model=self.model)
            return Completion.failed(AIErrorKind.RATE_LIMITED, str(e))
        except anthropic.APIError as e:
            logger.error("anthropic_api_error", error=str(e))
            return Completion.failed(AIErrorKind.API_ERROR, str(e))

        text_block = next((b for b in message.content if b.type == "text"), None)
        if text_block is None:
            return Completion.failed(AIErrorKind.INVALID_RESPONSE, "No text response from AI")
        return Completion(text=text_block.text)


class OpenAIProvider(LLMProviderBase):
    """OpenAI provider using the chat completions API."""

    def __init__(self) -> None:
        self.api_key = settings.openai_api_key
        self.model = settings.openai_model

    async def is_available(self) -> bool:
        return bool(self.api_key)

    async def complete(self, prompt: str, max_tokens: int, timeout: float) -> Completion:
        if not self.api_key:
            return Completion.failed(AIErrorKind.API_ERROR, "OpenAI API key not configured")

        import openai

        client = openai.AsyncOpenAI(api_key=self.api_key, max_retries=0)
        try:
            response = await asyncio.wait_for(
                client.chat.completions.create(
                    model=self.model,
                    messages=[{"role": "user", "content": prompt}],
                    max_tokens=max_tokens,
                    temperature=0.1,
                ),
                timeout=timeout,
            )
        except (asyncio.TimeoutError, openai.APITimeoutError):
            logger.warning("openai_timeout", model=self.model, timeout=timeout)
            return Completion.failed(AIErrorKind.TIMEOUT, "AI request timed out")
        except openai.RateLimitError as e:
            logger.warning("openai_rate_limited", model=self.model)
            return Completion.failed(AIErrorKind.RATE_LIMITED, str(e))
        except openai.APIError as e:
            logger.error("openai_api_error", error=str(e))
            return Completion.failed(AIErrorKind.API_ERROR, str(e))

        content = response.choices[0].message.content if response.choices else None
        if not content:
            return Completion.failed(AIErrorKind.INVALID_RESPONSE, "No text response from AI")
        return Completion(text=content)


class OllamaProvider(LLMProviderBase):
    """Ollama-based provider using the /api/generate endpoint."""

    def __init__(self) -> None:
        self.base_url = settings.llm_base_url.rstrip("/")
        self.model = settings.llm_model

    async def is_available(self) -> bool:
        try:
            async with httpx.AsyncClient(timeout=5.0) as client:
                resp = await client.get(f"{self.base_url}/api/tags")
                if resp.status_code != 200:
                    return False
                data = resp.json()
                if not isinstance(data, dict):
                    return False
                model_names = [m.get("name", "") for m in data.get("models", [])]
                return any(
                    n == self.model or n.startswith(f"{self.model}:")
                    for n in model_names
                )
        except (httpx.HTTPError, ValueError, AttributeError) as e:
            logger.warning("ollama_unavailable", url=self.base_url, error=str(e))
            return False

    async def complete(self, prompt: str, max_tokens: int, timeout: float) -> Completion:
        try:
            async with httpx.AsyncClient(
                timeout=httpx.Timeout(connect=5.0, read=timeout, write=5.0, pool=5.0)
            ) as client:
                resp = await client.post(
                    f"{self.base_url}/api/generate",
                    json={
                        "model": self.model,
                        "prompt": prompt,
                        "stream": False,
                        "options": {"temperature": 0.1, "num_predict": max_tokens},
                    },
                )
        except httpx.TimeoutException:
            logger.warning("ollama_timeout", model=self.model)
            return Completion.failed(AIErrorKind.TIMEOUT, "AI request timed out")
        except httpx.HTTPError as e:
            logger.warning("ollama_unreachable", url=self.base_url, error=str(e))
            return Completion.failed(AIErrorKind.API_ERROR, str(e))

        if resp.status_code == 429:
            return Completion.failed(AIErrorKind.RATE_LIMITED, "Ollama rate limited")
        if resp.status_code != 200:
            logger.warning("ollama_error", status=resp.status_code, body=resp.text[:200])
            return Completion.failed(AIErrorKind.API_ERROR, f"HTTP {resp.status_code}")

        try:
            data = resp.json()
        except ValueError:
            logger.warning("ollama_reply_not_json", body=resp.text[:200])
            return Completion.failed(AIErrorKind.INVALID_RESPONSE, "Ollama reply is not JSON")

        content = data.get("response", "") if isinstance(data, dict) else ""
        if not content:
            return Completion.failed(AIErrorKind.INVALID_RESPONSE, "No text response from AI")
        return Completion(text=content)


def get_llm_provider(name: str | None = None) -> LLMProviderBase:
    """Factory: return the configured categorisation provider."""
    provider = (name or settings.ai_categorisation_provider).lower()
    if provider == "openai":
        return OpenAIProvider()
    if provider == "ollama":
        return OllamaProvider()
    return AnthropicProvider()
