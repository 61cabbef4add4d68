"""Mail Vectorizer - Filter emails, extract their text and store embeddings."""

from mail_vectorizer.core.attachments import AttachmentProcessor
from mail_vectorizer.core.chunker import TextChunker
from mail_vectorizer.core.documents import DocxTextExtractor, PdfTextExtractor
from mail_vectorizer.core.domain_filter import DomainFilter
from mail_vectorizer.core.email_filter import EmailFilter
from mail_vectorizer.core.embeddings import EmbeddingProvider, OpenAIEmbeddingProvider
from mail_vectorizer.core.html_extractor import HtmlTextExtractor
from mail_vectorizer.core.models import (
    AttachmentInfo,
    BatchOutcome,
    BatchProgress,
    EmailContent,
    FilteredEmail,
    FilterRule,
    FilterType,
    FilterVerdict,
    ProcessedEmail,
    RawEmail,
    ScoredResult,
    TextChunk,
    VectorizationResult,
)
from mail_vectorizer.pipeline.processor import EmailProcessor
from mail_vectorizer.pipeline.vectorizer import VectorizationPipeline

__all__ = [
    "AttachmentInfo",
    "AttachmentProcessor",
    "BatchOutcome",
    "BatchProgress",
    "DocxTextExtractor",
    "DomainFilter",
    "EmailContent",
    "EmailFilter",
    "EmailProcessor",
    "EmbeddingProvider",
    "FilterRule",
    "FilterType",
    "FilterVerdict",
    "FilteredEmail",
    "HtmlTextExtractor",
    "OpenAIEmbeddingProvider",
    "PdfTextExtractor",
    "ProcessedEmail",
    "RawEmail",
    "ScoredResult",
    "TextChunk",
    "VectorizationPipeline",
    "VectorizationResult",
]
