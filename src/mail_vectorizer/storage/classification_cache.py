"""Bounded TTL/LRU cache of filter verdicts keyed by email identity."""

from __future__ import annotations

import hashlib
import threading

import cachetools

from mail_vectorizer.core.models import FilterVerdict


class ClassificationCache:
    """Maps (sender, subject, body) to a prior FilterVerdict.

    Verdicts are frozen values, so returning the stored instance is safe.
    ``scope`` separates verdicts computed under different per-call rule sets.
    """

    def __init__(self, max_size: int = 1000, ttl_seconds: float = 300.0) -> None:
        self._cache: cachetools.TTLCache[str, FilterVerdict] = cachetools.TTLCache(
            maxsize=max_size, ttl=ttl_seconds
        )
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0

    @staticmethod
    def make_key(sender: str, subject: str, body_text: str, scope: str = "") -> str:
        digest = hashlib.sha256()
        for part in (sender.strip().lower(), subject, body_text, scope):
            digest.update(part.encode("utf-8"))
            digest.update(b"\x00")
        return digest.hexdigest()

    def get(
        self, sender: str, subject: str, body_text: str, scope: str = ""
    ) -> FilterVerdict | None:
        key = self.make_key(sender, subject, body_text, scope)
        with self._lock:
            verdict = self._cache.get(key)
            if verdict is None:
                self._misses += 1
            else:
                self._hits += 1
        return verdict

    def set(
        self,
        sender: str,
        subject: str,
        body_text: str,
        verdict: FilterVerdict,
        scope: str = "",
    ) -> None:
        key = self.make_key(sender, subject, body_text, scope)
        with self._lock:
            self._cache[key] = verdict

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
