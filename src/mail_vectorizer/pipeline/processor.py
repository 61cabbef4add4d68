"""Ingestion orchestrator: filter → extract attachments and body → store."""

from __future__ import annotations

import logging
from collections.abc import Sequence

from mail_vectorizer.core.attachments import Attachment, AttachmentProcessor
from mail_vectorizer.core.email_filter import EmailFilter
from mail_vectorizer.core.html_extractor import HtmlTextExtractor, clean_plain_text
from mail_vectorizer.core.models import (
    AttachmentBatchResult,
    EmailContent,
    FilterRule,
    ProcessedEmail,
    RawEmail,
)
from mail_vectorizer.storage.repository import FilterRuleSource
from mail_vectorizer.storage.sqlite_store import SQLiteVectorStore

logger = logging.getLogger(__name__)


class EmailProcessor:
    """Prepare raw emails for vectorization.

    Filtered emails are stored with their verdict and go no further. Kept
    emails get attachment extraction and a plain-text body, falling back to
    the HTML body when the plain part is blank.
    """

    def __init__(
        self,
        email_filter: EmailFilter | None = None,
        attachment_processor: AttachmentProcessor | None = None,
        html_extractor: HtmlTextExtractor | None = None,
        *,
        store: SQLiteVectorStore | None = None,
        rule_source: FilterRuleSource | None = None,
    ) -> None:
        self._filter = email_filter or EmailFilter()
        self._attachments = attachment_processor or AttachmentProcessor()
        self._html = html_extractor or HtmlTextExtractor()
        self._store = store
        self._rule_source = rule_source if rule_source is not None else store

    async def process(
        self,
        email: RawEmail,
        attachments: Sequence[Attachment] = (),
        rules: Sequence[FilterRule] | None = None,
        user_id: str | None = None,
    ) -> ProcessedEmail:
        """Filter one email and, if kept, extract its text.

        Args:
            email: The raw email.
            attachments: (metadata, payload) pairs for the email's attachments.
            rules: Per-user filter rules. When None, rules are loaded from the
                rule source for ``user_id``.
            user_id: Owner of the email.

        Returns:
            ProcessedEmail; ``content`` is None for filtered emails.
        """
        if rules is None:
            rules = self._load_rules(user_id)

        filtered = self._filter.filter_email(email, rules)
        if filtered.is_filtered:
            logger.info("Filtered %s: %s", email.external_id, filtered.filter_reason)
            if self._store is not None:
                self._store.save_filtered_email(filtered, user_id or "")
            return ProcessedEmail(filtered=filtered)

        attachment_result = (
            await self._attachments.process_attachments(attachments)
            if attachments
            else AttachmentBatchResult()
        )
        body_text = self._body_text(email)
        usable = [a for a in attachment_result.processed if not a.is_degraded]

        content = EmailContent(
            id=email.external_id,
            subject=email.subject,
            body_text=body_text,
            attachment_texts=tuple(a.extracted_text for a in usable if a.extracted_text),
            user_id=user_id,
        )

        if self._store is not None:
            self._store.save_filtered_email(filtered, user_id or "", content_text=body_text)
            if attachment_result.processed:
                self._store.save_attachments(email.external_id, attachment_result.processed)

        return ProcessedEmail(filtered=filtered, attachments=attachment_result, content=content)

    async def process_many(
        self,
        items: Sequence[tuple[RawEmail, Sequence[Attachment]]],
        user_id: str | None = None,
    ) -> list[ProcessedEmail]:
        """Process emails sequentially, preserving input order."""
        rules = self._load_rules(user_id)
        return [
            await self.process(email, attachments, rules, user_id)
            for email, attachments in items
        ]

    def _load_rules(self, user_id: str | None) -> list[FilterRule]:
        if not user_id or self._rule_source is None:
            return []
        return self._rule_source.get_filter_rules(user_id)

    def _body_text(self, email: RawEmail) -> str:
        if email.body_text and email.body_text.strip():
            return clean_plain_text(email.body_text)
        if email.body_html and email.body_html.strip():
            return self._html.parse(email.body_html).plain_text
        return ""
