"""Per-email filtering: domain/content verdict plus size check, failing open."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import replace
from datetime import UTC, datetime

from mail_vectorizer.core.domain_filter import DomainFilter
from mail_vectorizer.core.models import (
    FilteredEmail,
    FilterRule,
    FilterStats,
    FilterType,
    FilterVerdict,
    RawEmail,
    ValidationResult,
)

logger = logging.getLogger(__name__)

FILTER_ERROR_REASON = "Filter error - not filtered"
MIN_BODY_LENGTH = 10


class EmailFilter:
    """Apply DomainFilter and the size check to produce FilteredEmail records."""

    def __init__(self, domain_filter: DomainFilter | None = None) -> None:
        self._domain_filter = domain_filter or DomainFilter()

    def filter_email(
        self, email: RawEmail, user_filter_configs: Sequence[FilterRule] = ()
    ) -> FilteredEmail:
        """Filter a single email.

        The domain/content verdict takes priority over the size verdict. Any
        internal failure keeps the email (fail-open) with a diagnostic reason.
        """
        processed_at = datetime.now(UTC)

        try:
            blacklist = [
                rule.domain_pattern
                for rule in user_filter_configs
                if rule.filter_type == FilterType.BLACKLIST
            ]
            whitelist = [
                rule.domain_pattern
                for rule in user_filter_configs
                if rule.filter_type == FilterType.WHITELIST
            ]

            domain_verdict = self._domain_filter.filter_email(
                email.sender, email.subject, email.body_text, blacklist, whitelist
            )
            size_verdict = self._domain_filter.check_email_size(
                email.body_text, email.body_html
            )

            if domain_verdict.is_filtered:
                final = domain_verdict
            elif size_verdict.is_filtered:
                final = size_verdict
            else:
                final = FilterVerdict.kept()

            return FilteredEmail(
                email=email,
                is_filtered=final.is_filtered,
                filter_reason=final.reason,
                processed_at=processed_at,
            )
        except Exception as e:
            logger.error("Error filtering email %s: %s", email.external_id, e)
            return FilteredEmail(
                email=email,
                is_filtered=False,
                filter_reason=FILTER_ERROR_REASON,
                processed_at=processed_at,
            )

    def filter_emails(
        self, emails: Sequence[RawEmail], user_filter_configs: Sequence[FilterRule] = ()
    ) -> list[FilteredEmail]:
        """Filter emails sequentially, preserving input order."""
        return [self.filter_email(email, user_filter_configs) for email in emails]

    @staticmethod
    def get_filtering_stats(filtered_emails: Sequence[FilteredEmail]) -> FilterStats:
        filtered = 0
        kept = 0
        reasons: dict[str, int] = {}

        for email in filtered_emails:
            if email.is_filtered:
                filtered += 1
                if email.filter_reason:
                    reasons[email.filter_reason] = reasons.get(email.filter_reason, 0) + 1
            else:
                kept += 1

        total = len(filtered_emails)
        return FilterStats(
            total=total,
            filtered=filtered,
            kept=kept,
            filter_reasons=reasons,
            filter_rate=(filtered / total) * 100 if total else 0.0,
        )

    @staticmethod
    def validate_email_content(email: RawEmail) -> ValidationResult:
        """Report missing fields and suspiciously short bodies."""
        issues: list[str] = []

        if not email.sender or not email.sender.strip():
            issues.append("Missing sender")
        if not email.subject or not email.subject.strip():
            issues.append("Missing subject")
        if not email.body_text or not email.body_text.strip():
            issues.append("Missing body text")
        elif len(email.body_text) < MIN_BODY_LENGTH:
            issues.append("Email body too short")
        if email.sent_at is None:
            issues.append("Invalid date format")

        return ValidationResult(is_valid=not issues, errors=tuple(issues))

    @staticmethod
    def normalize_email(email: RawEmail) -> RawEmail:
        """Return a copy with surrounding whitespace trimmed from text fields."""
        return replace(
            email,
            sender=(email.sender or "").strip(),
            subject=(email.subject or "").strip(),
            recipient=(email.recipient or "").strip(),
            body_text=(email.body_text or "").strip(),
            body_html=(email.body_html or "").strip(),
        )
