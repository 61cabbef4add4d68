"""Content-addressed TTL/LRU cache of computed email embeddings."""

from __future__ import annotations

import copy
import hashlib
import logging
import threading
from dataclasses import dataclass, field
from typing import Any

import cachetools

from mail_vectorizer.core.chunker import clean_text
from mail_vectorizer.core.models import EmbeddingRecord, TextChunk

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CachedEmbedding:
    record: EmbeddingRecord
    chunks: tuple[TextChunk, ...] = ()
    metadata: dict[str, Any] = field(default_factory=dict)


def content_hash(text: str) -> str:
    """SHA-256 of the cleaned text; the identity of an embedding."""
    return hashlib.sha256(clean_text(text).encode("utf-8")).hexdigest()


class EmbeddingCache:
    """Maps cleaned text to its embedding, chunks and metadata.

    Entries are deep-copied on the way in and out so callers can never
    mutate the cached state.
    """

    def __init__(self, max_size: int = 500, ttl_seconds: float = 86400.0) -> None:
        self._cache: cachetools.TTLCache[str, CachedEmbedding] = cachetools.TTLCache(
            maxsize=max_size, ttl=ttl_seconds
        )
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0

    def get(self, text: str) -> CachedEmbedding | None:
        key = content_hash(text)
        with self._lock:
            entry = self._cache.get(key)
            if entry is None:
                self._misses += 1
                return None
            self._hits += 1
            logger.debug("Embedding cache hit for %s", key[:12])
            return copy.deepcopy(entry)

    def set(
        self,
        text: str,
        embedding: EmbeddingRecord,
        chunks: tuple[TextChunk, ...] | list[TextChunk] = (),
        metadata: dict[str, Any] | None = None,
    ) -> None:
        entry = CachedEmbedding(
            record=embedding,
            chunks=tuple(chunks),
            metadata=copy.deepcopy(metadata or {}),
        )
        with self._lock:
            self._cache[content_hash(text)] = entry

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()
            self._hits = 0
            self._misses = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._cache)

    def get_stats(self) -> dict[str, float]:
        with self._lock:
            lookups = self._hits + self._misses
            return {
                "size": len(self._cache),
                "max_size": self._cache.maxsize,
                "total_hits": self._hits,
                "misses": self._misses,
                "hit_rate": self._hits / lookups if lookups else 0.0,
            }
