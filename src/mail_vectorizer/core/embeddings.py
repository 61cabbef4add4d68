"""Embedding provider contract and the OpenAI-backed implementation."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from typing import Protocol, runtime_checkable

from openai import AsyncOpenAI

from mail_vectorizer.core.exceptions import EmbeddingProviderError
from mail_vectorizer.core.models import EmbeddingBatchResponse, EmbeddingResponse

logger = logging.getLogger(__name__)

MAX_BATCH_SIZE = 100


@runtime_checkable
class EmbeddingProvider(Protocol):
    """Turns one text into one fixed-dimension vector. Failures are exceptions."""

    async def embed(self, text: str) -> EmbeddingResponse: ...


@runtime_checkable
class BatchEmbeddingProvider(EmbeddingProvider, Protocol):
    """A provider that can also embed many texts per request."""

    async def embed_batch(self, texts: Sequence[str]) -> EmbeddingBatchResponse: ...


class OpenAIEmbeddingProvider:
    """EmbeddingProvider backed by the OpenAI embeddings endpoint."""

    def __init__(
        self,
        client: AsyncOpenAI | None = None,
        *,
        model: str = "text-embedding-3-small",
        dimensions: int | None = None,
        api_key: str | None = None,
        timeout: float = 30.0,
        max_retries: int = 3,
        batch_delay_seconds: float = 0.5,
    ) -> None:
        self._client = client or AsyncOpenAI(
            api_key=api_key, timeout=timeout, max_retries=max_retries
        )
        self._model = model
        self._dimensions = dimensions
        self._batch_delay_seconds = batch_delay_seconds

    @property
    def model(self) -> str:
        return self._model

    async def embed(self, text: str) -> EmbeddingResponse:
        """Embed a single text.

        Raises:
            EmbeddingProviderError: If the text is empty or the request fails.
        """
        if not text or not text.strip():
            raise EmbeddingProviderError("Text cannot be empty")

        try:
            response = await self._client.embeddings.create(**self._request(text))
        except Exception as e:
            raise EmbeddingProviderError(f"Failed to generate embedding: {e}") from e

        if not response.data:
            raise EmbeddingProviderError("Failed to generate embedding: empty response")

        vector = tuple(float(v) for v in response.data[0].embedding)
        logger.debug("Embedded %d chars into %d dimensions", len(text), len(vector))
        return EmbeddingResponse(vector=vector, token_count=_total_tokens(response))

    async def embed_batch(self, texts: Sequence[str]) -> EmbeddingBatchResponse:
        """Embed many texts, ``MAX_BATCH_SIZE`` per request.

        Blank texts are dropped. Requests run one after another with
        ``batch_delay_seconds`` between them.

        Returns:
            One vector per non-blank text, in input order, and the summed token usage.

        Raises:
            EmbeddingProviderError: If there is nothing to embed or a request fails.
        """
        if not texts:
            raise EmbeddingProviderError("Texts cannot be empty")
        valid = [text for text in texts if text and text.strip()]
        if not valid:
            raise EmbeddingProviderError("No valid texts provided")
        if len(valid) < len(texts):
            logger.debug("Dropped %d blank texts from batch", len(texts) - len(valid))

        vectors: list[tuple[float, ...]] = []
        token_count = 0
        for start in range(0, len(valid), MAX_BATCH_SIZE):
            if start and self._batch_delay_seconds > 0:
                await asyncio.sleep(self._batch_delay_seconds)
            batch = valid[start : start + MAX_BATCH_SIZE]
            try:
                response = await self._client.embeddings.create(**self._request(batch))
            except Exception as e:
                raise EmbeddingProviderError(
                    f"Failed to generate batch embeddings: {e}"
                ) from e

            if len(response.data) != len(batch):
                raise EmbeddingProviderError(
                    f"Failed to generate batch embeddings: expected {len(batch)} "
                    f"vectors, got {len(response.data)}"
                )
            items = sorted(response.data, key=lambda item: item.index)
            vectors.extend(tuple(float(v) for v in item.embedding) for item in items)
            token_count += _total_tokens(response)

        logger.debug("Embedded %d texts, %d tokens", len(valid), token_count)
        return EmbeddingBatchResponse(vectors=tuple(vectors), token_count=token_count)

    def _request(self, payload: str | list[str]) -> dict[str, object]:
        kwargs: dict[str, object] = {
            "input": payload,
            "model": self._model,
            "encoding_format": "float",
        }
        if self._dimensions is not None:
            kwargs["dimensions"] = self._dimensions
        return kwargs


def _total_tokens(response: object) -> int:
    usage = getattr(response, "usage", None)
    return int(getattr(usage, "total_tokens", 0) or 0)
