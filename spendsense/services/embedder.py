"""Text embedding providers.

``local`` runs sentence-transformers in-process (no API key, CPU is fine);
``openai`` calls the embeddings endpoint with the configured dimensions so
both produce vectors of ``settings.embedding_dimensions``.
"""

from typing import Protocol

import structlog
from sentence_transformers import SentenceTransformer

from spendsense.config import settings
from spendsense.core.exceptions import ProviderError, ProviderRateLimitedError

logger = structlog.get_logger()


class Embedder(Protocol):
    name: str

    @property
    def configured(self) -> bool: ...

    async def embed(self, texts: list[str]) -> list[list[float]]: ...


# ── Singleton model loader ──────────────────────────────

_model: SentenceTransformer | None = None


def _get_model() -> SentenceTransformer:
    """Lazy-load the sentence-transformers model (singleton)."""
    global _model
    if _model is None:
        logger.info("loading_embedding_model", model=settings.embedding_model_name)
        _model = SentenceTransformer(settings.embedding_model_name)
        logger.info("embedding_model_loaded", model=settings.embedding_model_name)
    return _model


class LocalEmbedder:
    name = "local"

    @property
    def configured(self) -> bool:
        return True

    async def embed(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        model = _get_model()
        embeddings = model.encode(texts, normalize_embeddings=True, batch_size=64)
        return embeddings.tolist()


class OpenAIEmbedder:
    name = "openai"

    def __init__(self) -> None:
        self.api_key = settings.openai_api_key
        self.model = settings.openai_embedding_model
        self.dimensions = settings.embedding_dimensions

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    async def embed(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []

        import openai
        from openai import AsyncOpenAI

        client = AsyncOpenAI(api_key=self.api_key)
        try:
            response = await client.embeddings.create(
                model=self.model,
                input=texts,
                dimensions=self.dimensions,
            )
        except openai.RateLimitError as e:
            raise ProviderRateLimitedError("openai", "embeddings rate limited") from e
        except openai.OpenAIError as e:
            raise ProviderError("openai", f"embeddings failed: {type(e).__name__}") from e

        # The API may return items out of order
        return [item.embedding for item in sorted(response.data, key=lambda d: d.index)]


def get_embedder() -> Embedder:
    """Factory: return the configured embedding provider."""
    if settings.embedding_provider == "openai":
        return OpenAIEmbedder()
    return LocalEmbedder()
