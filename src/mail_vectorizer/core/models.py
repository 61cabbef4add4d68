"""Frozen dataclasses for the mail vectorizer domain model."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any

# ---------------------------------------------------------------------------
# Configuration values
# ---------------------------------------------------------------------------

MIN_CONCURRENT = 1
MAX_CONCURRENT = 10
MIN_FILE_SIZE = 1024
MAX_FILE_SIZE = 50 * 1024 * 1024


@dataclass(frozen=True)
class FilterConfig:
    """Content filtering switches, limits and configured domain lists."""

    enable_domain_filtering: bool = True
    enable_content_type_filtering: bool = True
    enable_size_filtering: bool = True
    max_email_size: int = 10 * 1024 * 1024
    custom_blacklisted_domains: tuple[str, ...] = ()
    custom_whitelisted_domains: tuple[str, ...] = ()
    strict_mode: bool = False
    marketing_threshold: int = 2
    notification_threshold: int = 3


@dataclass(frozen=True)
class AttachmentLimits:
    """Concurrency and size limits for attachment processing."""

    max_concurrent: int = 5
    max_file_size: int = 10 * 1024 * 1024

    @classmethod
    def clamped(cls, *, max_concurrent: int, max_file_size: int) -> AttachmentLimits:
        """Build limits with values clamped to the supported ranges."""
        return cls(
            max_concurrent=max(MIN_CONCURRENT, min(max_concurrent, MAX_CONCURRENT)),
            max_file_size=max(MIN_FILE_SIZE, min(max_file_size, MAX_FILE_SIZE)),
        )


@dataclass(frozen=True)
class ChunkingConfig:
    """Token budget for text chunks. Tokens are whitespace-delimited words."""

    max_tokens_per_chunk: int = 800
    overlap_tokens: int = 50
    max_chunks: int = 10

    def __post_init__(self) -> None:
        if self.max_tokens_per_chunk < 1:
            raise ValueError("max_tokens_per_chunk must be positive")
        if not 0 <= self.overlap_tokens < self.max_tokens_per_chunk:
            raise ValueError("overlap_tokens must be in [0, max_tokens_per_chunk)")
        if self.max_chunks < 1:
            raise ValueError("max_chunks must be positive")


# ---------------------------------------------------------------------------
# Emails and filtering
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RawEmail:
    """Email as supplied by the ingestion source."""

    external_id: str
    thread_id: str = ""
    subject: str = ""
    sender: str = ""
    recipient: str = ""
    body_text: str = ""
    body_html: str = ""
    sent_at: datetime | None = None
    has_attachments: bool = False


class FilterType(StrEnum):
    BLACKLIST = "blacklist"
    WHITELIST = "whitelist"


@dataclass(frozen=True)
class FilterRule:
    """Per-user domain rule from the filter configuration source."""

    domain_pattern: str
    filter_type: FilterType

    def __post_init__(self) -> None:
        if not self.domain_pattern or not self.domain_pattern.strip():
            raise ValueError("Domain pattern is required")
        # Accept plain strings for filter_type
        object.__setattr__(self, "filter_type", FilterType(self.filter_type))


@dataclass(frozen=True)
class FilterVerdict:
    """Keep/drop decision with reason and confidence."""

    is_filtered: bool
    reason: str | None = None
    confidence: float = 0.0

    def __post_init__(self) -> None:
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError(f"confidence must be within [0, 1], got {self.confidence}")

    @classmethod
    def kept(cls) -> FilterVerdict:
        return cls(is_filtered=False, reason=None, confidence=0.0)


@dataclass(frozen=True)
class FilteredEmail:
    """A raw email with its final filter verdict. Never re-filtered."""

    email: RawEmail
    is_filtered: bool
    filter_reason: str | None
    processed_at: datetime

    @property
    def external_id(self) -> str:
        return self.email.external_id

    @property
    def sender(self) -> str:
        return self.email.sender

    @property
    def subject(self) -> str:
        return self.email.subject

    @property
    def body_text(self) -> str:
        return self.email.body_text

    @property
    def body_html(self) -> str:
        return self.email.body_html


@dataclass(frozen=True)
class FilterStats:
    """Aggregate statistics over a list of filtered emails."""

    total: int
    filtered: int
    kept: int
    filter_reasons: dict[str, int] = field(default_factory=dict)
    filter_rate: float = 0.0


@dataclass(frozen=True)
class ValidationResult:
    """Outcome of an input validation pass."""

    is_valid: bool
    errors: tuple[str, ...] = ()


# ---------------------------------------------------------------------------
# Text extraction
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class HtmlMetadata:
    has_images: bool = False
    has_links: bool = False
    has_tables: bool = False
    word_count: int = 0
    encoding: str = "utf-8"


@dataclass(frozen=True)
class ParsedContent:
    """Plain text extracted from an HTML body."""

    plain_text: str
    metadata: HtmlMetadata
    is_fallback: bool = False


@dataclass(frozen=True)
class SignatureSplit:
    content: str
    signature: str | None = None


@dataclass(frozen=True)
class ExtractionResult:
    """Text extracted from a binary document.

    When ``cause`` is set the extraction degraded and ``text`` holds a
    placeholder rather than document content.
    """

    text: str
    metadata: dict[str, Any] = field(default_factory=dict)
    messages: tuple[str, ...] = ()
    cause: str | None = None

    @property
    def is_degraded(self) -> bool:
        return self.cause is not None


@dataclass(frozen=True)
class AttachmentInfo:
    """Attachment metadata. The payload travels separately as bytes."""

    id: str
    filename: str
    mime_type: str
    size_bytes: int


@dataclass(frozen=True)
class ParsedAttachment:
    filename: str
    mime_type: str
    size_bytes: int
    extracted_text: str
    attachment_id: str
    is_degraded: bool = False
    messages: tuple[str, ...] = ()


class OutcomeStatus(StrEnum):
    PROCESSED = "processed"
    SKIPPED = "skipped"
    ERROR = "error"


class ErrorKind(StrEnum):
    VALIDATION = "validation"
    EXTRACTION = "extraction"


@dataclass(frozen=True)
class AttachmentOutcome:
    """Result of processing a single attachment."""

    attachment: AttachmentInfo
    status: OutcomeStatus
    parsed: ParsedAttachment | None = None
    error: str | None = None
    error_kind: ErrorKind | None = None
    reason: str | None = None


@dataclass(frozen=True)
class AttachmentFailure:
    attachment: AttachmentInfo
    error: str
    kind: ErrorKind = ErrorKind.EXTRACTION


@dataclass(frozen=True)
class AttachmentSkip:
    attachment: AttachmentInfo
    reason: str


@dataclass(frozen=True)
class AttachmentStats:
    total: int = 0
    processed: int = 0
    errors: int = 0
    skipped: int = 0
    processing_time_ms: float = 0.0


@dataclass(frozen=True)
class AttachmentBatchResult:
    processed: tuple[ParsedAttachment, ...] = ()
    errors: tuple[AttachmentFailure, ...] = ()
    skipped: tuple[AttachmentSkip, ...] = ()
    stats: AttachmentStats = field(default_factory=AttachmentStats)


class JobPriority(StrEnum):
    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"


@dataclass(frozen=True)
class AttachmentJobResult:
    """Outcome of one queued attachment job."""

    job_id: str
    result: AttachmentBatchResult
    failed: bool = False


# ---------------------------------------------------------------------------
# Chunking, embeddings and vectorization
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TextChunk:
    """Slice of cleaned text: ``content == cleaned[start_offset:end_offset]``."""

    index: int
    content: str
    start_offset: int
    end_offset: int


@dataclass(frozen=True)
class EmbeddingResponse:
    """Raw provider output for a single input text."""

    vector: tuple[float, ...]
    token_count: int


@dataclass(frozen=True)
class EmbeddingBatchResponse:
    """Provider output for several texts, vectors in input order."""

    vectors: tuple[tuple[float, ...], ...]
    token_count: int


@dataclass(frozen=True)
class EmbeddingRecord:
    vector: tuple[float, ...]
    token_count: int
    source_hash: str

    @property
    def dimension(self) -> int:
        return len(self.vector)


@dataclass(frozen=True)
class EmailContent:
    """The unit of vectorization: one email's text and attachment texts."""

    id: str
    subject: str = ""
    body_text: str = ""
    attachment_texts: tuple[str, ...] = ()
    user_id: str | None = None

    @property
    def has_attachments(self) -> bool:
        return len(self.attachment_texts) > 0


@dataclass(frozen=True)
class EmailAttachmentStats:
    has_attachments: bool = False
    attachment_count: int = 0


@dataclass(frozen=True)
class VectorizationResult:
    email_id: str
    chunks: tuple[TextChunk, ...]
    embedding: EmbeddingRecord
    attachment_stats: EmailAttachmentStats
    from_cache: bool = False


@dataclass(frozen=True)
class BatchError:
    email_id: str
    error: str


@dataclass(frozen=True)
class BatchOutcome:
    """Partial-failure accounting for a vectorization batch."""

    processed_count: int = 0
    error_count: int = 0
    errors: tuple[BatchError, ...] = ()
    skipped_count: int = 0

    @property
    def success(self) -> bool:
        return self.error_count == 0


@dataclass(frozen=True)
class ScoredResult:
    """A stored email ranked by similarity to a query."""

    email_id: str
    similarity: float
    subject: str = ""
    body_text: str = ""
    sent_at: datetime | None = None
    text_chunks: tuple[dict[str, Any], ...] = ()
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class BatchProgress:
    """Mutable progress tracker for pipeline status reporting."""

    total: int = 0
    processed: int = 0
    failed: int = 0
    skipped: int = 0
    current_batch: int = 0
    current_stage: str = "idle"


@dataclass(frozen=True)
class ProcessedEmail:
    """Ingestion outcome: the verdict, attachment results and vectorizable content.

    ``content`` is None for filtered emails.
    """

    filtered: FilteredEmail
    attachments: AttachmentBatchResult = field(default_factory=AttachmentBatchResult)
    content: EmailContent | None = None
