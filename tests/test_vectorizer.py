"""Tests for VectorizationPipeline — gating, caching, batching and search."""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
from typing import Any

import pytest
from conftest import FakeEmbeddingProvider

from mail_vectorizer.config.settings import VectorizerSettings
from mail_vectorizer.core.chunker import TextChunker
from mail_vectorizer.core.exceptions import VectorizationError
from mail_vectorizer.core.models import (
    BatchProgress,
    EmailContent,
    EmbeddingBatchResponse,
    EmbeddingRecord,
    EmbeddingResponse,
    ScoredResult,
    TextChunk,
)
from mail_vectorizer.pipeline.vectorizer import VectorizationPipeline, pool_vectors
from mail_vectorizer.storage.embedding_cache import EmbeddingCache


class _MemoryRepository:
    """In-memory VectorRepository recording every call."""

    def __init__(self, pending: Sequence[EmailContent] = ()) -> None:
        self.saved: dict[str, tuple[EmbeddingRecord, list[TextChunk], dict[str, Any]]] = {}
        self.save_calls: list[str] = []
        self.search_calls: list[tuple[tuple[float, ...], dict[str, Any]]] = []
        self.pending = list(pending)

    async def is_vectorized(self, email_id: str) -> bool:
        return email_id in self.saved

    async def save_embedding(
        self,
        email_id: str,
        embedding: EmbeddingRecord,
        chunks: Sequence[TextChunk],
        metadata: dict[str, Any],
    ) -> None:
        self.save_calls.append(email_id)
        self.saved[email_id] = (embedding, list(chunks), metadata)

    async def search_similar(
        self,
        query_vector: Sequence[float],
        *,
        user_id: str | None = None,
        limit: int = 10,
        threshold: float = 0.7,
    ) -> list[ScoredResult]:
        self.search_calls.append(
            (tuple(query_vector), {"user_id": user_id, "limit": limit, "threshold": threshold})
        )
        return [ScoredResult(email_id="hit", similarity=0.9)]

    async def get_emails_for_vectorization(
        self, user_id: str, limit: int = 100
    ) -> list[EmailContent]:
        return [c for c in self.pending if c.user_id == user_id][:limit]


class _YieldingRepository(_MemoryRepository):
    """Memory repository that suspends at every await, like a real store."""

    async def is_vectorized(self, email_id: str) -> bool:
        await asyncio.sleep(0)
        return await super().is_vectorized(email_id)

    async def save_embedding(
        self,
        email_id: str,
        embedding: EmbeddingRecord,
        chunks: Sequence[TextChunk],
        metadata: dict[str, Any],
    ) -> None:
        await asyncio.sleep(0)
        await super().save_embedding(email_id, embedding, chunks, metadata)


class _YieldingProvider(FakeEmbeddingProvider):
    async def embed(self, text: str) -> EmbeddingResponse:
        await asyncio.sleep(0)
        return await super().embed(text)


class _BatchProvider(FakeEmbeddingProvider):
    """Fake provider that also embeds lists of texts in one call."""

    def __init__(self) -> None:
        super().__init__()
        self.batch_calls: list[list[str]] = []

    async def embed_batch(self, texts: Sequence[str]) -> EmbeddingBatchResponse:
        self.batch_calls.append(list(texts))
        responses = [await FakeEmbeddingProvider.embed(self, text) for text in texts]
        return EmbeddingBatchResponse(
            vectors=tuple(r.vector for r in responses),
            token_count=sum(r.token_count for r in responses),
        )


class _VaryingDimensionProvider:
    """Returns vectors whose dimension grows with every call."""

    def __init__(self) -> None:
        self.calls = 0

    async def embed(self, text: str) -> EmbeddingResponse:
        self.calls += 1
        return EmbeddingResponse(vector=(1.0,) * (self.calls + 1), token_count=1)


def _settings(**overrides: Any) -> VectorizerSettings:
    return VectorizerSettings(_env_file=None, **overrides)


def _build_pipeline(
    provider: Any | None = None,
    repository: _MemoryRepository | None = None,
    **settings: Any,
) -> tuple[VectorizationPipeline, _MemoryRepository]:
    repository = repository or _MemoryRepository()
    pipeline = VectorizationPipeline(
        provider or FakeEmbeddingProvider(),
        repository,
        settings=_settings(**settings),
    )
    return pipeline, repository


def _content(
    email_id: str, body: str = "Meeting notes for the project", **kwargs: Any
) -> EmailContent:
    return EmailContent(id=email_id, subject=f"Subject {email_id}", body_text=body, **kwargs)


class TestPoolVectors:
    """pool_vectors mean-pools and normalizes."""

    def test_single_vector_unchanged(self) -> None:
        assert pool_vectors([(3.0, 4.0)]) == (3.0, 4.0)

    def test_mean_then_normalized(self) -> None:
        pooled = pool_vectors([(1.0, 0.0), (0.0, 1.0)])
        assert pooled == pytest.approx((2**-0.5, 2**-0.5))


class TestVectorizeEmail:
    """Single-email vectorization."""

    @pytest.mark.asyncio
    async def test_persists_embedding_and_metadata(self) -> None:
        provider = FakeEmbeddingProvider()
        pipeline, repository = _build_pipeline(provider)

        result = await pipeline.vectorize_email(
            _content("e1", attachment_texts=("Attached agenda",))
        )

        assert result is not None
        assert result.email_id == "e1"
        assert result.from_cache is False
        assert result.embedding.dimension == 4
        assert result.attachment_stats.attachment_count == 1
        embedding, chunks, metadata = repository.saved["e1"]
        assert embedding == result.embedding
        assert metadata == {
            "chunk_count": 1,
            "token_count": embedding.token_count,
            "has_attachments": True,
            "attachment_count": 1,
        }
        assert chunks[0].content.startswith("EMAIL CONTENT:\nSubject: Subject e1\n\nMeeting")
        assert "ATTACHMENT 1:\nAttached agenda" in provider.calls[0]

    @pytest.mark.asyncio
    async def test_already_vectorized_is_noop(self) -> None:
        provider = FakeEmbeddingProvider()
        pipeline, repository = _build_pipeline(provider)

        first = await pipeline.vectorize_email(_content("e1"))
        second = await pipeline.vectorize_email(_content("e1"))

        assert first is not None
        assert second is None
        assert repository.save_calls == ["e1"]
        assert len(provider.calls) == 1

    @pytest.mark.asyncio
    async def test_cache_hit_skips_provider(self) -> None:
        provider = FakeEmbeddingProvider()
        pipeline, repository = _build_pipeline(provider)
        body = "Identical newsletter text"

        await pipeline.vectorize_email(EmailContent(id="a", subject="Same", body_text=body))
        result = await pipeline.vectorize_email(
            EmailContent(id="b", subject="Same", body_text=body)
        )

        assert result is not None
        assert result.from_cache is True
        assert len(provider.calls) == 1
        assert repository.saved["a"][0] == repository.saved["b"][0]
        assert pipeline.get_cache_stats()["total_hits"] == 1

    @pytest.mark.asyncio
    async def test_cache_bypass(self) -> None:
        provider = FakeEmbeddingProvider()
        pipeline, _ = _build_pipeline(provider)
        body = "Identical newsletter text"

        await pipeline.vectorize_email(EmailContent(id="a", body_text=body), use_cache=False)
        await pipeline.vectorize_email(EmailContent(id="b", body_text=body), use_cache=False)

        assert len(provider.calls) == 2

    @pytest.mark.asyncio
    async def test_multiple_chunks_pooled(self) -> None:
        provider = FakeEmbeddingProvider()
        pipeline, repository = _build_pipeline(
            provider, chunk_max_tokens=5, chunk_overlap_tokens=1
        )
        body = " ".join(f"word{i}" for i in range(20))

        result = await pipeline.vectorize_email(EmailContent(id="long", body_text=body))

        assert result is not None
        assert len(result.chunks) > 1
        assert len(provider.calls) == len(result.chunks)
        norm = sum(v * v for v in result.embedding.vector) ** 0.5
        assert norm == pytest.approx(1.0)
        assert repository.saved["long"][2]["chunk_count"] == len(result.chunks)

    @pytest.mark.asyncio
    async def test_empty_content_fails(self) -> None:
        pipeline, repository = _build_pipeline()
        with pytest.raises(VectorizationError, match="Failed to vectorize email blank"):
            await pipeline.vectorize_email(EmailContent(id="blank"))
        assert repository.save_calls == []

    @pytest.mark.asyncio
    async def test_provider_failure_wrapped(self) -> None:
        pipeline, repository = _build_pipeline(FakeEmbeddingProvider(fail_on=("boom",)))

        with pytest.raises(VectorizationError) as exc_info:
            await pipeline.vectorize_email(_content("e1", body="boom"))

        assert str(exc_info.value).startswith("Failed to vectorize email e1: ")
        assert isinstance(exc_info.value.__cause__, RuntimeError)
        assert repository.save_calls == []

    @pytest.mark.asyncio
    async def test_dimension_change_rejected(self) -> None:
        pipeline, repository = _build_pipeline(_VaryingDimensionProvider())

        await pipeline.vectorize_email(_content("e1"))
        with pytest.raises(VectorizationError, match="dimension"):
            await pipeline.vectorize_email(_content("e2", body="Different text"))
        assert repository.save_calls == ["e1"]

    @pytest.mark.asyncio
    async def test_batch_provider_embeds_all_chunks_in_one_call(self) -> None:
        provider = _BatchProvider()
        pipeline, repository = _build_pipeline(
            provider, chunk_max_tokens=5, chunk_overlap_tokens=1
        )
        body = " ".join(f"word{i}" for i in range(20))

        result = await pipeline.vectorize_email(EmailContent(id="long", body_text=body))

        assert result is not None
        assert len(provider.batch_calls) == 1
        assert provider.batch_calls[0] == [chunk.content for chunk in result.chunks]
        assert len(result.chunks) > 1
        assert repository.save_calls == ["long"]

    @pytest.mark.asyncio
    async def test_concurrent_calls_for_same_email_embed_once(self) -> None:
        provider = _YieldingProvider()
        pipeline, repository = _build_pipeline(provider, repository=_YieldingRepository())

        results = await asyncio.gather(
            pipeline.vectorize_email(_content("e1")),
            pipeline.vectorize_email(_content("e1")),
        )

        assert [r is None for r in results] == [False, True]
        assert repository.save_calls == ["e1"]
        assert len(provider.calls) == 1


class TestBatchVectorize:
    """batch_vectorize_emails isolates failures and reports them."""

    @pytest.mark.asyncio
    async def test_partial_failure(self) -> None:
        pipeline, repository = _build_pipeline(
            FakeEmbeddingProvider(fail_on=("FAIL",)), vectorize_batch_size=2
        )
        contents = [
            _content("e1"),
            _content("e2", body="FAIL here"),
            _content("e3"),
            _content("e4", body="FAIL again"),
            _content("e5"),
        ]

        outcome = await pipeline.batch_vectorize_emails(contents)

        assert outcome.processed_count == 3
        assert outcome.error_count == 2
        assert outcome.success is False
        assert [e.email_id for e in outcome.errors] == ["e2", "e4"]
        assert outcome.errors[0].error.startswith("Failed to vectorize email e2: ")
        assert sorted(repository.save_calls) == ["e1", "e3", "e5"]

    @pytest.mark.asyncio
    async def test_all_succeed(self) -> None:
        pipeline, _ = _build_pipeline()
        outcome = await pipeline.batch_vectorize_emails([_content("a"), _content("b")])
        assert outcome.success is True
        assert outcome.processed_count == 2
        assert outcome.skipped_count == 0

    @pytest.mark.asyncio
    async def test_already_vectorized_counted_as_skipped(self) -> None:
        pipeline, repository = _build_pipeline()
        await pipeline.vectorize_email(_content("a"))

        outcome = await pipeline.batch_vectorize_emails([_content("a"), _content("b")])

        assert outcome.processed_count == 2
        assert outcome.skipped_count == 1
        assert repository.save_calls == ["a", "b"]

    @pytest.mark.asyncio
    async def test_invalid_batch_size(self) -> None:
        pipeline, _ = _build_pipeline()
        with pytest.raises(ValueError, match="batch_size"):
            await pipeline.batch_vectorize_emails([_content("a")], batch_size=-1)

    @pytest.mark.asyncio
    async def test_zero_batch_size_rejected(self) -> None:
        pipeline, repository = _build_pipeline()
        with pytest.raises(ValueError, match="batch_size"):
            await pipeline.batch_vectorize_emails([_content("a")], batch_size=0)
        assert repository.save_calls == []

    @pytest.mark.asyncio
    async def test_duplicate_ids_in_one_batch_saved_once(self) -> None:
        provider = _YieldingProvider()
        pipeline, repository = _build_pipeline(provider, repository=_YieldingRepository())
        content = _content("e1")

        outcome = await pipeline.batch_vectorize_emails([content, content])

        assert repository.save_calls == ["e1"]
        assert len(provider.calls) == 1
        assert outcome.processed_count == 2
        assert outcome.skipped_count == 1
        assert outcome.success is True

    @pytest.mark.asyncio
    async def test_progress_notifications(self) -> None:
        snapshots: list[tuple[str, int, int, int]] = []

        def record(progress: BatchProgress) -> None:
            snapshots.append(
                (
                    progress.current_stage,
                    progress.current_batch,
                    progress.processed,
                    progress.failed,
                )
            )

        pipeline, _ = _build_pipeline(FakeEmbeddingProvider(fail_on=("FAIL",)))
        pipeline.on_progress = record

        await pipeline.batch_vectorize_emails(
            [_content("a"), _content("b", body="FAIL"), _content("c")], batch_size=2
        )

        assert snapshots[0] == ("vectorize", 0, 0, 0)
        assert snapshots[1] == ("vectorize", 1, 1, 1)
        assert snapshots[2] == ("vectorize", 2, 2, 1)
        assert snapshots[-1] == ("complete", 2, 2, 1)
        assert pipeline.progress.total == 3

    @pytest.mark.asyncio
    async def test_vectorize_user_emails(self) -> None:
        repository = _MemoryRepository(
            [_content("a", user_id="u1"), _content("b", user_id="u2")]
        )
        pipeline, _ = _build_pipeline(repository=repository)

        outcome = await pipeline.vectorize_user_emails("u1")

        assert outcome.processed_count == 1
        assert repository.save_calls == ["a"]


class TestSearchSimilarEmails:
    """search_similar_emails embeds the query and delegates ranking."""

    @pytest.mark.asyncio
    async def test_delegates_to_repository(self) -> None:
        provider = FakeEmbeddingProvider()
        pipeline, repository = _build_pipeline(provider)

        results = await pipeline.search_similar_emails(
            "  project   notes ", user_id="u1", limit=3, threshold=0.5
        )

        assert [r.email_id for r in results] == ["hit"]
        assert provider.calls == ["project notes"]
        vector, kwargs = repository.search_calls[0]
        assert len(vector) == 4
        assert kwargs == {"user_id": "u1", "limit": 3, "threshold": 0.5}

    @pytest.mark.asyncio
    async def test_query_embedding_cached(self) -> None:
        provider = FakeEmbeddingProvider()
        pipeline, repository = _build_pipeline(provider)

        await pipeline.search_similar_emails("project notes")
        await pipeline.search_similar_emails("project notes")

        assert len(provider.calls) == 1
        assert repository.search_calls[0][0] == repository.search_calls[1][0]

    @pytest.mark.asyncio
    async def test_empty_query(self) -> None:
        pipeline, _ = _build_pipeline()
        with pytest.raises(VectorizationError, match="empty"):
            await pipeline.search_similar_emails("   ")

    @pytest.mark.asyncio
    async def test_provider_failure(self) -> None:
        pipeline, _ = _build_pipeline(FakeEmbeddingProvider(fail_on=("bad",)))
        with pytest.raises(VectorizationError, match="Failed to embed search query"):
            await pipeline.search_similar_emails("bad query")

    @pytest.mark.asyncio
    async def test_query_does_not_shadow_email_embedding(self) -> None:
        provider = FakeEmbeddingProvider()
        pipeline, repository = _build_pipeline(provider)
        content = EmailContent(id="e1", subject="Budget", body_text="Review on Thursday")
        chunker = TextChunker(_settings().chunking_config())
        email_text = chunker.clean(
            chunker.combine_texts("Subject: Budget\n\nReview on Thursday", ())
        )

        await pipeline.search_similar_emails(email_text)
        result = await pipeline.vectorize_email(content)

        assert result is not None
        assert result.from_cache is False
        assert len(result.chunks) == 1
        assert len(provider.calls) == 2
        assert repository.saved["e1"][2]["chunk_count"] == 1


class TestConstruction:
    """Explicit collaborators are used as given."""

    @pytest.mark.asyncio
    async def test_shared_cache(self) -> None:
        cache = EmbeddingCache(max_size=5)
        pipeline = VectorizationPipeline(
            FakeEmbeddingProvider(), _MemoryRepository(), cache=cache, settings=_settings()
        )
        await pipeline.vectorize_email(_content("a"))
        assert len(cache) == 1
