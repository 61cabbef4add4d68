"""Bounded-concurrency attachment validation, routing and text extraction."""

from __future__ import annotations

import asyncio
import logging
import mimetypes
import time
from collections.abc import Sequence
from pathlib import PurePath
from typing import Any

from mail_vectorizer.core.documents import (
    DocumentExtractor,
    DocxTextExtractor,
    PdfTextExtractor,
)
from mail_vectorizer.core.exceptions import AttachmentValidationError
from mail_vectorizer.core.models import (
    AttachmentBatchResult,
    AttachmentFailure,
    AttachmentInfo,
    AttachmentLimits,
    AttachmentOutcome,
    AttachmentSkip,
    AttachmentStats,
    ErrorKind,
    OutcomeStatus,
    ParsedAttachment,
    ValidationResult,
)

logger = logging.getLogger(__name__)

PDF_MIME_TYPE = "application/pdf"
DOCX_MIME_TYPE = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"
DOTX_MIME_TYPE = "application/vnd.openxmlformats-officedocument.wordprocessingml.template"
DOCM_MIME_TYPE = "application/vnd.ms-word.document.macroenabled.12"
DOTM_MIME_TYPE = "application/vnd.ms-word.template.macroenabled.12"
WORD_MIME_TYPES = (DOCX_MIME_TYPE, DOTX_MIME_TYPE, DOCM_MIME_TYPE, DOTM_MIME_TYPE)
GENERIC_MIME_TYPES = {"", "application/octet-stream", "binary/octet-stream"}

# Checked before mimetypes, whose tables vary by platform
SUFFIX_MIME_TYPES = {
    ".pdf": PDF_MIME_TYPE,
    ".docx": DOCX_MIME_TYPE,
    ".dotx": DOTX_MIME_TYPE,
    ".docm": DOCM_MIME_TYPE,
    ".dotm": DOTM_MIME_TYPE,
}

Attachment = tuple[AttachmentInfo, bytes]


def resolve_mime_type(mime_type: str, filename: str) -> str:
    """Return the declared MIME type, guessing from the filename when it is generic.

    The result is lower-cased, so ``macroEnabled`` types compare equal to
    the constants above.
    """
    mime_type = (mime_type or "").split(";", 1)[0].strip().lower()
    if mime_type in GENERIC_MIME_TYPES:
        suffix = PurePath(filename or "").suffix.lower()
        if suffix in SUFFIX_MIME_TYPES:
            return SUFFIX_MIME_TYPES[suffix]
        guessed, _ = mimetypes.guess_type(filename or "")
        if guessed:
            return guessed.lower()
    return mime_type


class AttachmentProcessor:
    """Validate and extract text from PDF and DOCX attachments.

    Attachments are handled in fixed-size batches of ``max_concurrent`` items.
    Each batch runs concurrently and extraction happens in worker threads, so a
    slow or failing document never blocks or cancels its siblings.
    """

    def __init__(
        self,
        limits: AttachmentLimits | None = None,
        pdf: PdfTextExtractor | None = None,
        docx: DocxTextExtractor | None = None,
    ) -> None:
        self._limits = limits or AttachmentLimits()
        self._pdf = pdf or PdfTextExtractor()
        self._docx = docx or DocxTextExtractor()
        self._extractors: dict[str, DocumentExtractor] = {PDF_MIME_TYPE: self._pdf}
        self._extractors.update(dict.fromkeys(WORD_MIME_TYPES, self._docx))

    @property
    def limits(self) -> AttachmentLimits:
        return self._limits

    def configure(
        self, *, max_concurrent: int | None = None, max_file_size: int | None = None
    ) -> AttachmentLimits:
        """Replace the limits, clamping values to the supported ranges."""
        self._limits = AttachmentLimits.clamped(
            max_concurrent=(
                self._limits.max_concurrent if max_concurrent is None else max_concurrent
            ),
            max_file_size=(
                self._limits.max_file_size if max_file_size is None else max_file_size
            ),
        )
        logger.debug(
            "Attachment limits set to max_concurrent=%d max_file_size=%d",
            self._limits.max_concurrent,
            self._limits.max_file_size,
        )
        return self._limits

    def is_supported(self, mime_type: str, filename: str = "") -> bool:
        return resolve_mime_type(mime_type, filename) in self._extractors

    def validate_pdf(self, buffer: bytes, filename: str = "document.pdf") -> ValidationResult:
        return self._pdf.validate(buffer, filename)

    def validate_docx(
        self, buffer: bytes, filename: str = "document.docx"
    ) -> ValidationResult:
        return self._docx.validate(buffer, filename)

    def detect_supported_attachments(
        self, attachments: Sequence[AttachmentInfo]
    ) -> dict[str, Any]:
        """Partition attachment metadata by support and total the supported size."""
        supported = [a for a in attachments if self.is_supported(a.mime_type, a.filename)]
        unsupported = [
            a for a in attachments if not self.is_supported(a.mime_type, a.filename)
        ]
        return {
            "supported": supported,
            "unsupported": unsupported,
            "total_size": sum(a.size_bytes for a in supported),
        }

    async def process_attachments(
        self, attachments: Sequence[Attachment]
    ) -> AttachmentBatchResult:
        """Process attachments in concurrent batches.

        Args:
            attachments: (metadata, payload) pairs.

        Returns:
            Processed, failed and skipped attachments in input order, with stats.
        """
        started = time.perf_counter()
        batch_size = self._limits.max_concurrent
        outcomes: list[AttachmentOutcome] = []

        for start in range(0, len(attachments), batch_size):
            batch = attachments[start : start + batch_size]
            results = await asyncio.gather(
                *(self.process_attachment(info, buffer) for info, buffer in batch),
                return_exceptions=True,
            )
            for (info, _), result in zip(batch, results, strict=True):
                if isinstance(result, BaseException):
                    if not isinstance(result, Exception):
                        raise result
                    logger.error("Attachment %s failed: %s", info.filename, result)
                    result = AttachmentOutcome(
                        attachment=info,
                        status=OutcomeStatus.ERROR,
                        error=str(result),
                        error_kind=ErrorKind.EXTRACTION,
                    )
                outcomes.append(result)

        processed = tuple(o.parsed for o in outcomes if o.parsed is not None)
        errors = tuple(
            AttachmentFailure(
                attachment=o.attachment,
                error=o.error or "",
                kind=o.error_kind or ErrorKind.EXTRACTION,
            )
            for o in outcomes
            if o.status == OutcomeStatus.ERROR
        )
        skipped = tuple(
            AttachmentSkip(attachment=o.attachment, reason=o.reason or "")
            for o in outcomes
            if o.status == OutcomeStatus.SKIPPED
        )
        elapsed_ms = (time.perf_counter() - started) * 1000

        logger.info(
            "Attachments: %d processed, %d errors, %d skipped in %.1f ms",
            len(processed),
            len(errors),
            len(skipped),
            elapsed_ms,
        )
        return AttachmentBatchResult(
            processed=processed,
            errors=errors,
            skipped=skipped,
            stats=AttachmentStats(
                total=len(attachments),
                processed=len(processed),
                errors=len(errors),
                skipped=len(skipped),
                processing_time_ms=elapsed_ms,
            ),
        )

    async def process_attachment(
        self, attachment: AttachmentInfo, buffer: bytes
    ) -> AttachmentOutcome:
        """Validate, route and extract a single attachment. Never raises for bad input."""
        try:
            self._validate_payload(attachment, buffer)
        except AttachmentValidationError as e:
            logger.warning("Attachment %s rejected: %s", attachment.filename, e)
            return AttachmentOutcome(
                attachment=attachment,
                status=OutcomeStatus.ERROR,
                error=str(e),
                error_kind=ErrorKind.VALIDATION,
            )

        mime_type = resolve_mime_type(attachment.mime_type, attachment.filename)
        extractor = self._extractors.get(mime_type)
        if extractor is None:
            reason = f"Unsupported file type: {attachment.mime_type or mime_type}"
            logger.debug("Skipping %s: %s", attachment.filename, reason)
            return AttachmentOutcome(
                attachment=attachment, status=OutcomeStatus.SKIPPED, reason=reason
            )

        validation = extractor.validate(buffer, attachment.filename)
        if not validation.is_valid:
            error = f"Validation failed: {extractor.format_name}: " + ", ".join(
                validation.errors
            )
            logger.warning("Attachment %s rejected: %s", attachment.filename, error)
            return AttachmentOutcome(
                attachment=attachment,
                status=OutcomeStatus.ERROR,
                error=error,
                error_kind=ErrorKind.VALIDATION,
            )

        try:
            result = await asyncio.to_thread(extractor.parse, buffer, attachment.filename)
        except Exception as e:
            logger.error("Extraction of %s failed: %s", attachment.filename, e)
            return AttachmentOutcome(
                attachment=attachment,
                status=OutcomeStatus.ERROR,
                error=f"Extraction failed: {e}",
                error_kind=ErrorKind.EXTRACTION,
            )

        if result.is_degraded:
            logger.warning(
                "Degraded extraction for %s: %s", attachment.filename, result.cause
            )

        return AttachmentOutcome(
            attachment=attachment,
            status=OutcomeStatus.PROCESSED,
            parsed=ParsedAttachment(
                filename=attachment.filename,
                mime_type=mime_type,
                size_bytes=len(buffer),
                extracted_text=result.text,
                attachment_id=attachment.id,
                is_degraded=result.is_degraded,
                messages=result.messages,
            ),
        )

    def _validate_payload(self, attachment: AttachmentInfo, buffer: bytes) -> None:
        if not buffer:
            raise AttachmentValidationError("Empty attachment buffer")
        size = len(buffer)
        if size > self._limits.max_file_size:
            raise AttachmentValidationError(
                f"File too large: {size} bytes (maximum {self._limits.max_file_size})"
            )
        if attachment.size_bytes and attachment.size_bytes != size:
            raise AttachmentValidationError(
                f"Size mismatch: buffer {size} vs metadata {attachment.size_bytes}"
            )
