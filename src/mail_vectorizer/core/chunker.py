"""Text normalization, section combination and token-bounded chunking."""

from __future__ import annotations

import logging
import re
from collections.abc import Sequence

from mail_vectorizer.core.html_extractor import clean_plain_text
from mail_vectorizer.core.models import ChunkingConfig, TextChunk, ValidationResult

logger = logging.getLogger(__name__)

# C0 controls other than tab/newline/carriage return, plus DEL
_CONTROL_RE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")
_SPACES_RE = re.compile(r" {2,}")
_TOKEN_RE = re.compile(r"\S+")

SECTION_SEPARATOR = "\n\n---\n\n"
EMAIL_HEADER = "EMAIL CONTENT:\n"

# text-embedding-3 models accept 8191 tokens per input
MAX_INPUT_TOKENS = 8191
CHARS_PER_TOKEN = 4


def clean_text(text: str) -> str:
    """Strip control characters, normalize lines and collapse space runs."""
    text = _CONTROL_RE.sub("", text or "")
    text = clean_plain_text(text)
    return _SPACES_RE.sub(" ", text).strip()


class TextChunker:
    """Split cleaned text into overlapping, word-bounded chunks.

    Tokens are approximated by whitespace-delimited words. Each chunk's
    content is an exact slice of the cleaned text, so the spans between
    consecutive chunk starts tile the text without gaps.
    """

    def __init__(self, config: ChunkingConfig | None = None) -> None:
        self._config = config or ChunkingConfig()

    @property
    def config(self) -> ChunkingConfig:
        return self._config

    @staticmethod
    def clean(text: str) -> str:
        return clean_text(text)

    def chunk(
        self,
        text: str,
        max_tokens_per_chunk: int | None = None,
        overlap_tokens: int | None = None,
    ) -> list[TextChunk]:
        """Chunk text after cleaning it.

        Args:
            text: Raw or cleaned text.
            max_tokens_per_chunk: Overrides the configured chunk size.
            overlap_tokens: Overrides the configured overlap.

        Returns:
            Chunks indexed from 0, at most ``max_chunks`` of them.

        Raises:
            ValueError: If the overlap is not smaller than the chunk size.
        """
        max_tokens = (
            self._config.max_tokens_per_chunk
            if max_tokens_per_chunk is None
            else max_tokens_per_chunk
        )
        overlap = self._config.overlap_tokens if overlap_tokens is None else overlap_tokens
        if max_tokens < 1:
            raise ValueError("max_tokens_per_chunk must be positive")
        if not 0 <= overlap < max_tokens:
            raise ValueError("overlap_tokens must be in [0, max_tokens_per_chunk)")

        cleaned = self.clean(text)
        tokens = [(m.start(), m.end()) for m in _TOKEN_RE.finditer(cleaned)]
        if not tokens:
            return []

        chunks: list[TextChunk] = []
        step = max_tokens - overlap
        first = 0
        last = 0
        while first < len(tokens):
            if len(chunks) == self._config.max_chunks:
                logger.warning(
                    "Text exceeds %d chunks; dropping %d trailing tokens",
                    self._config.max_chunks,
                    len(tokens) - last,
                )
                break

            last = min(first + max_tokens, len(tokens))
            start = tokens[first][0]
            end = tokens[last][0] if last < len(tokens) else len(cleaned)
            chunks.append(
                TextChunk(
                    index=len(chunks),
                    content=cleaned[start:end],
                    start_offset=start,
                    end_offset=end,
                )
            )
            if last == len(tokens):
                break
            first += step

        return chunks

    @staticmethod
    def stitch(chunks: Sequence[TextChunk]) -> str:
        """Rebuild the cleaned text from overlapping chunks."""
        text = ""
        for chunk in sorted(chunks, key=lambda c: c.index):
            # Skip the part already covered by the previous chunk
            covered = len(text) - chunk.start_offset
            text += chunk.content[max(covered, 0) :]
        return text

    @staticmethod
    def combine_texts(body_text: str, attachment_texts: Sequence[str] = ()) -> str:
        sections = []
        if body_text and body_text.strip():
            sections.append(f"{EMAIL_HEADER}{body_text.strip()}")
        for number, attachment_text in enumerate(attachment_texts, start=1):
            if attachment_text and attachment_text.strip():
                sections.append(f"ATTACHMENT {number}:\n{attachment_text.strip()}")
        return SECTION_SEPARATOR.join(sections)

    @staticmethod
    def estimate_tokens(text: str) -> int:
        """Rough provider token estimate (about four characters per token)."""
        if not text:
            return 0
        return -(-len(text) // CHARS_PER_TOKEN)

    def validate_text_size(self, text: str) -> ValidationResult:
        errors = []
        if not text or not text.strip():
            errors.append("Text cannot be empty")
        elif self.estimate_tokens(text) > MAX_INPUT_TOKENS:
            errors.append(
                f"Text too long: ~{self.estimate_tokens(text)} tokens "
                f"(maximum {MAX_INPUT_TOKENS})"
            )
        return ValidationResult(is_valid=not errors, errors=tuple(errors))
