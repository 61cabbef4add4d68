"""PDF and DOCX attachment validation and text extraction."""

from __future__ import annotations

import io
import logging
import zipfile
from pathlib import PurePath
from typing import Any

import docx
from pypdf import PdfReader

from mail_vectorizer.core.exceptions import ExtractionError
from mail_vectorizer.core.html_extractor import clean_plain_text
from mail_vectorizer.core.models import ExtractionResult, ValidationResult

logger = logging.getLogger(__name__)

# Word typography mapped to plain ASCII
WORD_CHARACTERS = {
    "\u00a0": " ",
    "\u2013": "-",
    "\u2014": "-",
    "\u2018": "'",
    "\u2019": "'",
    "\u201c": '"',
    "\u201d": '"',
    "\u2026": "...",
}


def normalize_word_characters(text: str) -> str:
    for char, replacement in WORD_CHARACTERS.items():
        text = text.replace(char, replacement)
    return text


WORD_DOCUMENT_MAIN = (
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document.main+xml"
)
# Templates and macro-enabled files differ from .docx only in the main part type
WORD_VARIANT_MAINS = (
    "application/vnd.openxmlformats-officedocument.wordprocessingml.template.main+xml",
    "application/vnd.ms-word.document.macroEnabled.main+xml",
    "application/vnd.ms-word.template.macroEnabledTemplate.main+xml",
)


def as_word_document(buffer: bytes) -> bytes:
    """Relabel a template or macro-enabled package so python-docx will open it.

    Plain .docx packages, and anything that is not a readable ZIP, are returned
    unchanged.
    """
    try:
        with zipfile.ZipFile(io.BytesIO(buffer)) as source:
            content_types = source.read("[Content_Types].xml").decode("utf-8")
            if not any(variant in content_types for variant in WORD_VARIANT_MAINS):
                return buffer
            for variant in WORD_VARIANT_MAINS:
                content_types = content_types.replace(variant, WORD_DOCUMENT_MAIN)

            output = io.BytesIO()
            with zipfile.ZipFile(output, "w", zipfile.ZIP_DEFLATED) as target:
                for item in source.infolist():
                    data = source.read(item.filename)
                    if item.filename == "[Content_Types].xml":
                        data = content_types.encode("utf-8")
                    target.writestr(item, data)
    except (zipfile.BadZipFile, KeyError):
        return buffer
    return output.getvalue()


class DocumentExtractor:
    """Shared validation and fail-soft parsing for binary document formats.

    Subclasses set the format constants and implement ``_extract``.
    """

    format_name: str = ""
    extensions: frozenset[str] = frozenset()
    signatures: tuple[bytes, ...] = ()
    signature_error: str = ""
    min_size: int = 0
    max_size: int = 0

    def validate(self, buffer: bytes, filename: str) -> ValidationResult:
        """Check size bounds, byte signature and extension. Reports every failure."""
        if not buffer:
            return ValidationResult(is_valid=False, errors=("Empty buffer",))

        errors: list[str] = []
        size = len(buffer)
        if size < self.min_size:
            errors.append(f"File too small: {size} bytes (minimum {self.min_size})")
        if size > self.max_size:
            errors.append(f"File too large: {size} bytes (maximum {self.max_size})")
        if not any(buffer.startswith(signature) for signature in self.signatures):
            errors.append(self.signature_error)

        extension = PurePath(filename or "").suffix.lower()
        if extension not in self.extensions:
            errors.append(f"Invalid file extension: {extension or '(none)'}")

        return ValidationResult(is_valid=not errors, errors=tuple(errors))

    def parse(self, buffer: bytes, filename: str) -> ExtractionResult:
        """Extract text. Never raises; failures yield a placeholder result."""
        try:
            text, metadata, messages = self._extract(buffer)
        except Exception as e:
            logger.warning("Failed to parse %s %s: %s", self.format_name, filename, e)
            return ExtractionResult(
                text=f"[Error parsing {self.format_name}: {filename}]",
                metadata={},
                messages=(f"Error parsing {self.format_name} {filename}: {e}",),
                cause=str(e) or type(e).__name__,
            )
        return ExtractionResult(text=text, metadata=metadata, messages=tuple(messages))

    def _extract(self, buffer: bytes) -> tuple[str, dict[str, Any], list[str]]:
        raise NotImplementedError


class PdfTextExtractor(DocumentExtractor):
    format_name = "PDF"
    extensions = frozenset({".pdf"})
    signatures = (b"%PDF-",)
    signature_error = "Invalid PDF signature: missing %PDF- header"
    min_size = 64
    max_size = 10 * 1024 * 1024

    def _extract(self, buffer: bytes) -> tuple[str, dict[str, Any], list[str]]:
        reader = PdfReader(io.BytesIO(buffer))
        messages: list[str] = []

        encrypted = bool(reader.is_encrypted)
        if encrypted:
            try:
                reader.decrypt("")
            except Exception as e:
                raise ExtractionError(f"Encrypted PDF could not be decrypted: {e}") from e
            messages.append("Encrypted PDF opened with an empty password")

        page_texts = []
        for page in reader.pages:
            page_text = page.extract_text() or ""
            if page_text.strip():
                page_texts.append(page_text.strip())

        text = clean_plain_text("\n\n".join(page_texts))
        if not text:
            messages.append("No extractable text found (scanned or image-only PDF?)")

        info = reader.metadata
        metadata: dict[str, Any] = {
            "page_count": len(reader.pages),
            "title": (info.title if info else None) or None,
            "author": (info.author if info else None) or None,
            "encrypted": encrypted,
        }
        return text, metadata, messages


class DocxTextExtractor(DocumentExtractor):
    format_name = "DOCX"
    extensions = frozenset({".docx", ".dotx", ".docm", ".dotm"})
    # Local file header, empty archive and spanned archive markers
    signatures = (b"PK\x03\x04", b"PK\x05\x06", b"PK\x07\x08")
    signature_error = "Invalid DOCX signature: not a ZIP archive"
    min_size = 100
    max_size = 5 * 1024 * 1024

    def _extract(self, buffer: bytes) -> tuple[str, dict[str, Any], list[str]]:
        document = docx.Document(io.BytesIO(as_word_document(buffer)))
        messages: list[str] = []

        parts = [p.text for p in document.paragraphs if p.text and p.text.strip()]
        for table in document.tables:
            for row in table.rows:
                cells = [cell.text.strip() for cell in row.cells if cell.text.strip()]
                if cells:
                    parts.append(" | ".join(cells))

        text = clean_plain_text(normalize_word_characters("\n".join(parts)))
        if not text:
            messages.append("Document contains no text")

        properties = document.core_properties
        metadata: dict[str, Any] = {
            "paragraph_count": len(document.paragraphs),
            "table_count": len(document.tables),
            "title": properties.title or None,
            "author": properties.author or None,
        }
        return text, metadata, messages
