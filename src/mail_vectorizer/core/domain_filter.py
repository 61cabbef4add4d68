"""Domain whitelist/blacklist and content-pattern classification."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from typing import Any

from mail_vectorizer.core.exceptions import FilterError
from mail_vectorizer.core.models import FilterConfig, FilterVerdict
from mail_vectorizer.core.patterns import PatternLibrary, domain_matches, extract_domain
from mail_vectorizer.storage.classification_cache import ClassificationCache

logger = logging.getLogger(__name__)


class DomainFilter:
    """Classify a single email by sender domain and content patterns.

    The filter holds only immutable configuration. The verdict cache is
    injected so callers control its lifetime and tests get isolated caches.
    """

    def __init__(
        self,
        config: FilterConfig | None = None,
        cache: ClassificationCache | None = None,
        patterns: PatternLibrary | None = None,
    ) -> None:
        self._config = config or FilterConfig()
        self._cache = cache if cache is not None else ClassificationCache()
        self._patterns = patterns or PatternLibrary()

    @property
    def config(self) -> FilterConfig:
        return self._config

    @property
    def cache(self) -> ClassificationCache:
        return self._cache

    def filter_email(
        self,
        sender: str,
        subject: str,
        body_text: str,
        custom_blacklist: Sequence[str] = (),
        custom_whitelist: Sequence[str] = (),
    ) -> FilterVerdict:
        """Classify an email. The first matching rule wins.

        Order: cache, missing domain, whitelist, blacklist, content patterns.

        Raises:
            FilterError: If classification fails internally.
        """
        sender = sender or ""
        subject = subject or ""
        body_text = body_text or ""
        scope = self._scope(custom_blacklist, custom_whitelist)

        cached = self._cache.get(sender, subject, body_text, scope)
        if cached is not None:
            logger.debug("Classification cache hit for sender %s", sender)
            return cached

        try:
            verdict = self._classify(
                sender, subject, body_text, custom_blacklist, custom_whitelist
            )
        except Exception as e:
            raise FilterError(f"Failed to classify email from {sender!r}: {e}") from e

        self._cache.set(sender, subject, body_text, verdict, scope)
        return verdict

    def check_email_size(self, body_text: str, body_html: str | None) -> FilterVerdict:
        """Flag emails whose combined UTF-8 body size exceeds the limit."""
        if not self._config.enable_size_filtering:
            return FilterVerdict.kept()

        total_size = len((body_text or "").encode("utf-8")) + len(
            (body_html or "").encode("utf-8")
        )
        if total_size > self._config.max_email_size:
            return FilterVerdict(
                is_filtered=True,
                reason=f"Email size exceeds limit: {total_size} bytes",
                confidence=1.0,
            )
        return FilterVerdict.kept()

    def get_filter_stats(self, emails: Iterable[Any]) -> dict[str, Any]:
        """Classify objects exposing sender/subject/body_text and count the reasons."""
        total = 0
        filtered = 0
        reasons: dict[str, int] = {}
        for email in emails:
            total += 1
            verdict = self.filter_email(email.sender, email.subject, email.body_text)
            if verdict.is_filtered and verdict.reason:
                filtered += 1
                reasons[verdict.reason] = reasons.get(verdict.reason, 0) + 1
        return {"total": total, "filtered": filtered, "reasons": reasons}

    def _classify(
        self,
        sender: str,
        subject: str,
        body_text: str,
        custom_blacklist: Sequence[str],
        custom_whitelist: Sequence[str],
    ) -> FilterVerdict:
        domain = extract_domain(sender)
        if not domain:
            return FilterVerdict.kept()

        if self._config.enable_domain_filtering:
            whitelist = (*self._config.custom_whitelisted_domains, *custom_whitelist)
            if any(domain_matches(domain, pattern) for pattern in whitelist):
                return FilterVerdict(
                    is_filtered=False,
                    reason=f"Whitelisted domain: {domain}",
                    confidence=1.0,
                )

            blacklist = (
                *self._patterns.blacklisted_domains,
                *self._config.custom_blacklisted_domains,
                *custom_blacklist,
            )
            if any(domain_matches(domain, pattern) for pattern in blacklist):
                return FilterVerdict(
                    is_filtered=True,
                    reason=f"Blacklisted domain: {domain}",
                    confidence=0.9,
                )

        if self._config.enable_content_type_filtering:
            return self._check_content_patterns(sender, subject, body_text)

        return FilterVerdict.kept()

    def _check_content_patterns(self, sender: str, subject: str, body_text: str) -> FilterVerdict:
        """Score the lower-cased sender, subject and body against the classifiers."""
        content = f"{sender} {subject} {body_text}".lower()

        if self._patterns.any_match(self._patterns.automated, content):
            return FilterVerdict(
                is_filtered=True,
                reason="Automated/system email detected",
                confidence=0.8,
            )

        marketing_score = self._patterns.count_matches(self._patterns.marketing, content)
        if marketing_score >= self._config.marketing_threshold:
            return FilterVerdict(
                is_filtered=True,
                reason="Marketing email detected",
                confidence=min(0.7 + marketing_score * 0.1, 0.95),
            )

        if self._config.strict_mode:
            notification_score = self._patterns.count_matches(
                self._patterns.notifications, content
            )
            if notification_score >= self._config.notification_threshold:
                return FilterVerdict(
                    is_filtered=True,
                    reason="Notification email detected",
                    confidence=0.6,
                )

        return FilterVerdict.kept()

    @staticmethod
    def _scope(custom_blacklist: Sequence[str], custom_whitelist: Sequence[str]) -> str:
        if not custom_blacklist and not custom_whitelist:
            return ""
        black = ",".join(sorted(p.lower().strip() for p in custom_blacklist))
        white = ",".join(sorted(p.lower().strip() for p in custom_whitelist))
        return f"b:{black}|w:{white}"
