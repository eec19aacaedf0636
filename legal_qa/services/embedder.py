# =============================================================================
# Embedding Service — Text → Vector (Provider-Agnostic)
# =============================================================================
#
# Generates embeddings with any OpenAI-compatible embedding API.
#
# DESIGN DECISION: Async client. Embeddings are requested from inside the
# query pipeline (context retrieval, answer indexing), which runs on the
# event loop, so the embedder uses AsyncOpenAI.
#
# DESIGN DECISION: Truncate, don't chunk. One answer maps to one vector;
# input longer than settings.embedding_max_chars is cut at that length.
#
# DESIGN DECISION: No retry logic. A failed call raises ProviderError and
# the caller decides whether that is fatal (it never is for side tasks).
# =============================================================================

from __future__ import annotations

import logging
from typing import Protocol

from openai import AsyncOpenAI, OpenAIError

from legal_qa.config import settings
from legal_qa.errors import ProviderError

logger = logging.getLogger(__name__)


class EmbeddingProvider(Protocol):
    """Anything that turns text into a fixed-dimension vector."""

    async def embed(self, text: str) -> list[float]:
        ...


def truncate_for_embedding(text: str, max_chars: int | None = None) -> str:
    """Cut `text` to the embedding input limit."""
    limit = max_chars or settings.embedding_max_chars
    return text if len(text) <= limit else text[:limit]


class OpenAIEmbedder:
    """
    Embedding provider backed by the OpenAI embeddings endpoint.

    API key resolution order:
      1. explicit `api_key`
      2. OPENAI_API_KEY
      3. LLM_API_KEY (one key shared by LLM and embeddings)
    """

    def __init__(
        self,
        client: AsyncOpenAI | None = None,
        api_key: str | None = None,
        model: str | None = None,
        dimensions: int | None = None,
    ) -> None:
        if client is None:
            resolved_key = api_key or settings.openai_api_key or settings.llm_api_key
            if not resolved_key:
                raise ValueError(
                    "No API key configured for embeddings. "
                    "Set OPENAI_API_KEY or LLM_API_KEY in .env"
                )
            client_kwargs: dict = {"api_key": resolved_key}
            if settings.embedding_base_url:
                client_kwargs["base_url"] = settings.embedding_base_url
            client = AsyncOpenAI(**client_kwargs)

        self._client = client
        self._model = model or settings.embedding_model
        self._dimensions = dimensions or settings.embedding_dimensions

        logger.info(
            "Initialized embedding client (model=%s, dimensions=%d, base_url=%s)",
            self._model,
            self._dimensions,
            settings.embedding_base_url or "https://api.openai.com/v1",
        )

    @property
    def dimensions(self) -> int:
        return self._dimensions

    async def embed(self, text: str) -> list[float]:
        """
        Embed one text.

        Raises:
            ProviderError: API failure or a vector of the wrong size.
        """
        payload = truncate_for_embedding(text)
        if len(payload) < len(text):
            logger.debug(
                "Truncated embedding input from %d to %d chars",
                len(text), len(payload),
            )

        try:
            response = await self._client.embeddings.create(
                model=self._model,
                input=payload,
                dimensions=self._dimensions,
                encoding_format="float",
            )
        except OpenAIError as exc:
            raise ProviderError(f"Embedding request failed: {exc}") from exc

        vector = response.data[0].embedding
        if len(vector) != self._dimensions:
            raise ProviderError(
                f"Embedding provider returned {len(vector)} dimensions, "
                f"expected {self._dimensions}"
            )
        return vector
