"""Vectorization orchestrator: gate → combine → chunk → embed → persist."""

from __future__ import annotations

import asyncio
import logging
from collections import Counter
from collections.abc import Callable, Sequence

import numpy as np

from mail_vectorizer.config.settings import VectorizerSettings
from mail_vectorizer.core.chunker import TextChunker
from mail_vectorizer.core.embeddings import BatchEmbeddingProvider, EmbeddingProvider
from mail_vectorizer.core.exceptions import (
    EmbeddingDimensionError,
    EmbeddingProviderError,
    VectorizationError,
)
from mail_vectorizer.core.models import (
    BatchError,
    BatchOutcome,
    BatchProgress,
    EmailAttachmentStats,
    EmailContent,
    EmbeddingRecord,
    ScoredResult,
    TextChunk,
    VectorizationResult,
)
from mail_vectorizer.storage.embedding_cache import EmbeddingCache, content_hash
from mail_vectorizer.storage.repository import VectorRepository

logger = logging.getLogger(__name__)


def pool_vectors(vectors: Sequence[Sequence[float]]) -> tuple[float, ...]:
    """Mean-pool chunk vectors and L2-normalize the result."""
    if len(vectors) == 1:
        return tuple(float(v) for v in vectors[0])
    mean = np.mean(np.asarray(vectors, dtype=np.float64), axis=0)
    norm = np.linalg.norm(mean)
    if norm > 0:
        mean = mean / norm
    return tuple(float(v) for v in mean)


class VectorizationPipeline:
    """Turns EmailContent into stored embeddings, at most once per email.

    Calls for the same email id are serialized, so concurrent duplicates reach
    the gate one at a time and only the first one embeds.

    Per email:
    1. Gate - skip emails the repository already holds a vector for
    2. Combine - subject, body and attachment texts into sections
    3. Chunk - clean and split under the token budget
    4. Embed - reuse a cached embedding or embed every chunk and pool
    5. Persist - save embedding, chunk metadata and attachment stats
    """

    def __init__(
        self,
        provider: EmbeddingProvider,
        repository: VectorRepository,
        *,
        chunker: TextChunker | None = None,
        cache: EmbeddingCache | None = None,
        settings: VectorizerSettings | None = None,
        on_progress: Callable[[BatchProgress], None] | None = None,
    ) -> None:
        self._settings = settings or VectorizerSettings()
        self._provider = provider
        self._repository = repository
        self._chunker = chunker or TextChunker(self._settings.chunking_config())
        self._cache = (
            cache
            if cache is not None
            else EmbeddingCache(
                max_size=self._settings.embedding_cache_size,
                ttl_seconds=self._settings.embedding_cache_ttl_seconds,
            )
        )
        # Queries are not email texts and never carry chunks
        self._query_cache = EmbeddingCache(
            max_size=self._settings.embedding_cache_size,
            ttl_seconds=self._settings.embedding_cache_ttl_seconds,
        )
        self._on_progress = on_progress
        self._progress = BatchProgress()
        self._dimension: int | None = None
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: Counter[str] = Counter()

    @property
    def on_progress(self) -> Callable[[BatchProgress], None] | None:
        return self._on_progress

    @on_progress.setter
    def on_progress(self, callback: Callable[[BatchProgress], None] | None) -> None:
        self._on_progress = callback

    @property
    def progress(self) -> BatchProgress:
        return self._progress

    async def vectorize_email(
        self, content: EmailContent, *, use_cache: bool = True
    ) -> VectorizationResult | None:
        """Vectorize and persist one email.

        Returns:
            The result, or None when the email was already vectorized.

        Raises:
            VectorizationError: If any step fails. The cause is chained.
        """
        lock = self._locks.setdefault(content.id, asyncio.Lock())
        self._lock_users[content.id] += 1
        try:
            async with lock:
                return await self._vectorize_locked(content, use_cache)
        finally:
            self._lock_users[content.id] -= 1
            if not self._lock_users[content.id]:
                del self._lock_users[content.id]
                del self._locks[content.id]

    async def _vectorize_locked(
        self, content: EmailContent, use_cache: bool
    ) -> VectorizationResult | None:
        try:
            if await self._repository.is_vectorized(content.id):
                logger.debug("Email %s already vectorized, skipping", content.id)
                return None

            combined = self._chunker.combine_texts(
                self._email_text(content), content.attachment_texts
            )
            cleaned = self._chunker.clean(combined)
            if not cleaned:
                raise ValueError("No text content to vectorize")

            cached = self._cache.get(cleaned) if use_cache else None
            if cached is not None:
                chunks = cached.chunks
                record = cached.record
                self._check_dimension(record)
            else:
                chunks = tuple(self._chunker.chunk(cleaned))
                record = await self._embed_chunks(cleaned, chunks)
                self._check_dimension(record)
                if use_cache:
                    self._cache.set(cleaned, record, chunks)

            attachment_stats = EmailAttachmentStats(
                has_attachments=content.has_attachments,
                attachment_count=len(content.attachment_texts),
            )
            await self._repository.save_embedding(
                content.id,
                record,
                chunks,
                {
                    "chunk_count": len(chunks),
                    "token_count": record.token_count,
                    "has_attachments": attachment_stats.has_attachments,
                    "attachment_count": attachment_stats.attachment_count,
                },
            )
        except Exception as e:
            raise VectorizationError(f"Failed to vectorize email {content.id}: {e}") from e

        logger.debug(
            "Vectorized email %s (%d chunks, cached=%s)",
            content.id,
            len(chunks),
            cached is not None,
        )
        return VectorizationResult(
            email_id=content.id,
            chunks=chunks,
            embedding=record,
            attachment_stats=attachment_stats,
            from_cache=cached is not None,
        )

    async def batch_vectorize_emails(
        self,
        contents: Sequence[EmailContent],
        *,
        batch_size: int | None = None,
        use_cache: bool = True,
    ) -> BatchOutcome:
        """Vectorize emails in concurrent sub-batches, isolating failures.

        Args:
            contents: Emails to vectorize.
            batch_size: Emails per concurrent sub-batch (defaults to settings).
            use_cache: Whether to read and write the embedding cache.

        Returns:
            BatchOutcome. Already-vectorized emails count as processed and skipped.
        """
        size = self._settings.vectorize_batch_size if batch_size is None else batch_size
        if size < 1:
            raise ValueError("batch_size must be positive")

        self._progress = BatchProgress(total=len(contents), current_stage="vectorize")
        self._notify()

        processed = 0
        skipped = 0
        errors: list[BatchError] = []

        for batch_number, start in enumerate(range(0, len(contents), size), start=1):
            if batch_number > 1 and self._settings.inter_batch_delay_seconds > 0:
                await asyncio.sleep(self._settings.inter_batch_delay_seconds)

            batch = contents[start : start + size]
            self._progress.current_batch = batch_number
            results = await asyncio.gather(
                *(self.vectorize_email(content, use_cache=use_cache) for content in batch),
                return_exceptions=True,
            )

            for content, result in zip(batch, results, strict=True):
                if isinstance(result, BaseException):
                    if not isinstance(result, Exception):
                        raise result
                    logger.error("%s", result)
                    errors.append(BatchError(email_id=content.id, error=str(result)))
                    self._progress.failed += 1
                else:
                    processed += 1
                    self._progress.processed += 1
                    if result is None:
                        skipped += 1
                        self._progress.skipped += 1
            self._notify()

        self._progress.current_stage = "complete"
        self._notify()
        logger.info(
            "Vectorized %d/%d emails (%d already done, %d errors)",
            processed,
            len(contents),
            skipped,
            len(errors),
        )
        return BatchOutcome(
            processed_count=processed,
            error_count=len(errors),
            errors=tuple(errors),
            skipped_count=skipped,
        )

    async def vectorize_user_emails(self, user_id: str, limit: int = 100) -> BatchOutcome:
        """Vectorize a user's pending (kept, not yet vectorized) emails."""
        contents = await self._repository.get_emails_for_vectorization(user_id, limit)
        if not contents:
            logger.info("No pending emails for user %s", user_id)
        return await self.batch_vectorize_emails(contents)

    async def search_similar_emails(
        self,
        query: str,
        user_id: str | None = None,
        *,
        limit: int = 10,
        threshold: float = 0.7,
    ) -> list[ScoredResult]:
        """Embed a query and return stored emails with similarity above ``threshold``.

        Raises:
            VectorizationError: If the query is empty or cannot be embedded.
        """
        cleaned = self._chunker.clean(query)
        if not cleaned:
            raise VectorizationError("Search query cannot be empty")

        cached = self._query_cache.get(cleaned)
        if cached is not None:
            vector = cached.record.vector
        else:
            try:
                response = await self._provider.embed(cleaned)
            except Exception as e:
                raise VectorizationError(f"Failed to embed search query: {e}") from e
            vector = response.vector
            self._query_cache.set(
                cleaned,
                EmbeddingRecord(
                    vector=vector,
                    token_count=response.token_count,
                    source_hash=content_hash(cleaned),
                ),
            )

        return await self._repository.search_similar(
            vector, user_id=user_id, limit=limit, threshold=threshold
        )

    def get_cache_stats(self) -> dict[str, float]:
        return self._cache.get_stats()

    async def _embed_chunks(
        self, cleaned: str, chunks: Sequence[TextChunk]
    ) -> EmbeddingRecord:
        if isinstance(self._provider, BatchEmbeddingProvider):
            batch = await self._provider.embed_batch([chunk.content for chunk in chunks])
            vectors = list(batch.vectors)
            token_count = batch.token_count
            if len(vectors) != len(chunks):
                raise EmbeddingProviderError(
                    f"Provider returned {len(vectors)} vectors for {len(chunks)} chunks"
                )
        else:
            vectors = []
            token_count = 0
            for chunk in chunks:
                response = await self._provider.embed(chunk.content)
                vectors.append(response.vector)
                token_count += response.token_count

        if any(len(vector) != len(vectors[0]) for vector in vectors):
            raise EmbeddingDimensionError(
                "Provider returned mixed dimensions: "
                + ", ".join(sorted({str(len(vector)) for vector in vectors}))
            )

        return EmbeddingRecord(
            vector=pool_vectors(vectors),
            token_count=token_count,
            source_hash=content_hash(cleaned),
        )

    def _check_dimension(self, record: EmbeddingRecord) -> None:
        if self._dimension is None:
            self._dimension = record.dimension
        elif record.dimension != self._dimension:
            raise EmbeddingDimensionError(
                f"Embedding dimension {record.dimension} does not match "
                f"index dimension {self._dimension}"
            )

    @staticmethod
    def _email_text(content: EmailContent) -> str:
        subject = (content.subject or "").strip()
        body = (content.body_text or "").strip()
        if subject and body:
            return f"Subject: {subject}\n\n{body}"
        return f"Subject: {subject}" if subject else body

    def _notify(self) -> None:
        if self._on_progress:
            self._on_progress(self._progress)
