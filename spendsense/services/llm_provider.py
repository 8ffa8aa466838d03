"""LLM provider abstraction for categorization prompts.

Supports OpenAI, Anthropic (Claude) and Ollama (local) behind one interface:
a system prompt plus a single user prompt in, the raw text of the answer
out. Rate limiting is raised as ProviderRateLimitedError so the caller can
retry; every other failure is a ProviderError.
"""

from abc import ABC, abstractmethod

import httpx
import structlog

from spendsense.config import settings
from spendsense.core.exceptions import ProviderError, ProviderRateLimitedError

logger = structlog.get_logger()


class LLMProviderBase(ABC):
    """Abstract base for completion providers."""

    name = "llm"

    @property
    @abstractmethod
    def configured(self) -> bool:
        """True when the provider has what it needs to be called (key, flag)."""

    @abstractmethod
    async def complete(
        self,
        system_prompt: str,
        user_prompt: str,
        max_tokens: int,
        temperature: float = 0.1,
    ) -> str:
        """Send one prompt and return the assistant's text response."""

    def get_model_name(self) -> str:
        return getattr(self, "model", "?")


class OpenAIProvider(LLMProviderBase):
    """Chat completions in JSON mode."""

    name = "openai"

    def __init__(self) -> None:
        self.api_key = settings.openai_api_key
        self.model = settings.openai_model

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    async def complete(
        self,
        system_prompt: str,
        user_prompt: str,
        max_tokens: int,
        temperature: float = 0.1,
    ) -> str:
        import openai
        from openai import AsyncOpenAI

        client = AsyncOpenAI(api_key=self.api_key, timeout=settings.llm_timeout)
        try:
            response = await client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": user_prompt},
                ],
                temperature=temperature,
                max_tokens=max_tokens,
                response_format={"type": "json_object"},
            )
        except openai.RateLimitError as e:
            raise ProviderRateLimitedError(self.name) from e
        except openai.OpenAIError as e:
            raise ProviderError(self.name, type(e).__name__) from e
        return response.choices[0].message.content or ""


class AnthropicProvider(LLMProviderBase):
    """Anthropic messages API. The system prompt is a top-level parameter."""

    name = "anthropic"

    def __init__(self) -> None:
        self.api_key = settings.anthropic_api_key
        self.model = settings.anthropic_model

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    async def complete(
        self,
        system_prompt: str,
        user_prompt: str,
        max_tokens: int,
        temperature: float = 0.1,
    ) -> str:
        import anthropic
        from anthropic import AsyncAnthropic

        client = AsyncAnthropic(api_key=self.api_key, timeout=settings.llm_timeout)
        try:
            response = await client.messages.create(
                model=self.model,
                system=system_prompt,
                messages=[{"role": "user", "content": user_prompt}],
                temperature=temperature,
                max_tokens=max_tokens,
            )
        except anthropic.RateLimitError as e:
            raise ProviderRateLimitedError(self.name) from e
        except anthropic.AnthropicError as e:
            raise ProviderError(self.name, type(e).__name__) from e
        return response.content[0].text if response.content else ""


class OllamaProvider(LLMProviderBase):
    """Local model through Ollama's /api/chat endpoint (JSON format)."""

    name = "ollama"

    def __init__(self) -> None:
        self.base_url = settings.llm_base_url.rstrip("/")
        self.model = settings.llm_model

    @property
    def configured(self) -> bool:
        return settings.llm_enabled

    async def complete(
        self,
        system_prompt: str,
        user_prompt: str,
        max_tokens: int,
        temperature: float = 0.1,
    ) -> str:
        try:
            async with httpx.AsyncClient(
                timeout=httpx.Timeout(
                    connect=5.0,
                    read=settings.llm_timeout,
                    write=5.0,
                    pool=5.0,
                )
            ) as client:
                resp = await client.post(
                    f"{self.base_url}/api/chat",
                    json={
                        "model": self.model,
                        "messages": [
                            {"role": "system", "content": system_prompt},
                            {"role": "user", "content": user_prompt},
                        ],
                        "stream": False,
                        "format": "json",
                        "options": {
                            "temperature": temperature,
                            "num_predict": max_tokens,
                        },
                    },
                )
        except httpx.TimeoutException as e:
            raise ProviderError(self.name, "timeout") from e
        except httpx.HTTPError as e:
            raise ProviderError(self.name, type(e).__name__) from e

        if resp.status_code == 429:
            raise ProviderRateLimitedError(self.name)
        if resp.status_code != 200:
            raise ProviderError(self.name, f"HTTP {resp.status_code}")
        data = resp.json()
        return data.get("message", {}).get("content", "")


def get_llm_provider() -> LLMProviderBase:
    """Factory: return the configured LLM provider."""
    if settings.llm_provider == "anthropic":
        return AnthropicProvider()
    if settings.llm_provider == "ollama":
        return OllamaProvider()
    return OpenAIProvider()
