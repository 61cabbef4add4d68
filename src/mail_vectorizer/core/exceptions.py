"""Custom exceptions for the mail vectorizer."""


class MailVectorizerError(Exception):
    """Base exception for all mail vectorizer errors."""


class FilterError(MailVectorizerError):
    """Domain or content filtering failed internally."""


class AttachmentValidationError(MailVectorizerError):
    """Attachment input is empty, oversized, or does not match its metadata."""


class ExtractionError(MailVectorizerError):
    """A document parser failed while extracting text."""


class EmbeddingProviderError(MailVectorizerError):
    """The embedding provider failed to produce an embedding."""


class EmbeddingDimensionError(EmbeddingProviderError):
    """An embedding does not match the dimension fixed for the index."""


class VectorizationError(MailVectorizerError):
    """Vectorizing a single email failed."""


class StorageError(MailVectorizerError):
    """The storage collaborator rejected a read or write."""


class AttachmentProcessingError(MailVectorizerError):
    """A whole batch of attachments could not be processed."""
