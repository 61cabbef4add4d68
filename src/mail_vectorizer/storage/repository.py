"""Storage collaborator contracts consumed by the pipelines."""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any, Protocol, runtime_checkable

from mail_vectorizer.core.models import (
    EmailContent,
    EmbeddingRecord,
    FilterRule,
    ScoredResult,
    TextChunk,
)


@runtime_checkable
class VectorRepository(Protocol):
    """Persistence for email embeddings and similarity search."""

    async def is_vectorized(self, email_id: str) -> bool: ...

    async def save_embedding(
        self,
        email_id: str,
        embedding: EmbeddingRecord,
        chunks: Sequence[TextChunk],
        metadata: dict[str, Any],
    ) -> None: ...

    async def search_similar(
        self,
        query_vector: Sequence[float],
        *,
        user_id: str | None = None,
        limit: int = 10,
        threshold: float = 0.7,
    ) -> list[ScoredResult]: ...

    async def get_emails_for_vectorization(
        self, user_id: str, limit: int = 100
    ) -> list[EmailContent]: ...


@runtime_checkable
class FilterRuleSource(Protocol):
    """Per-user domain rules applied on top of the configured lists."""

    def get_filter_rules(self, user_id: str) -> list[FilterRule]: ...
