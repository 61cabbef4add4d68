"""Configuration via pydantic-settings with .env support."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Annotated, Any

from pydantic import field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

from mail_vectorizer.core.models import AttachmentLimits, ChunkingConfig, FilterConfig


class VectorizerSettings(BaseSettings):
    """Application settings loaded from environment variables and .env file."""

    model_config = SettingsConfigDict(
        env_prefix="VECTORIZER_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Content filtering
    enable_domain_filtering: bool = True
    enable_content_type_filtering: bool = True
    enable_size_filtering: bool = True
    max_email_size: int = 10 * 1024 * 1024
    custom_blacklisted_domains: Annotated[list[str], NoDecode] = []
    custom_whitelisted_domains: Annotated[list[str], NoDecode] = []
    strict_mode: bool = False
    marketing_threshold: int = 2
    notification_threshold: int = 3

    # Classification cache
    classification_cache_size: int = 1000
    classification_cache_ttl_seconds: float = 300.0

    # Attachments
    attachment_max_concurrent: int = 5
    attachment_max_file_size: int = 10 * 1024 * 1024

    # Chunking
    chunk_max_tokens: int = 800
    chunk_overlap_tokens: int = 50
    chunk_max_chunks: int = 10

    # Embedding cache
    embedding_cache_size: int = 500
    embedding_cache_ttl_seconds: float = 24 * 60 * 60.0

    # Embedding provider
    openai_api_key: str | None = None
    embedding_model: str = "text-embedding-3-small"
    embedding_dimensions: int | None = None
    embedding_timeout_seconds: float = 30.0
    embedding_max_retries: int = 3

    # Batch vectorization
    vectorize_batch_size: int = 5
    inter_batch_delay_seconds: float = 0.0

    # Local store
    database_path: Path = Path("data/mail_vectorizer.db")

    # Logging
    log_level: str = "INFO"

    @field_validator("custom_blacklisted_domains", "custom_whitelisted_domains", mode="before")
    @classmethod
    def _split_domains(cls, value: Any) -> Any:
        """Accept a JSON list or a comma separated string of domains."""
        if isinstance(value, str):
            stripped = value.strip()
            if stripped.startswith("["):
                value = json.loads(stripped)
            else:
                value = stripped.split(",")
        if isinstance(value, (list, tuple)):
            return [str(v).strip().lower() for v in value if str(v).strip()]
        return value

    def filter_config(self) -> FilterConfig:
        """Immutable filter configuration for DomainFilter."""
        return FilterConfig(
            enable_domain_filtering=self.enable_domain_filtering,
            enable_content_type_filtering=self.enable_content_type_filtering,
            enable_size_filtering=self.enable_size_filtering,
            max_email_size=self.max_email_size,
            custom_blacklisted_domains=tuple(self.custom_blacklisted_domains),
            custom_whitelisted_domains=tuple(self.custom_whitelisted_domains),
            strict_mode=self.strict_mode,
            marketing_threshold=self.marketing_threshold,
            notification_threshold=self.notification_threshold,
        )

    def attachment_limits(self) -> AttachmentLimits:
        """Attachment limits, clamped to the supported ranges."""
        return AttachmentLimits.clamped(
            max_concurrent=self.attachment_max_concurrent,
            max_file_size=self.attachment_max_file_size,
        )

    def chunking_config(self) -> ChunkingConfig:
        """Chunking configuration for TextChunker."""
        return ChunkingConfig(
            max_tokens_per_chunk=self.chunk_max_tokens,
            overlap_tokens=self.chunk_overlap_tokens,
            max_chunks=self.chunk_max_chunks,
        )

    def ensure_directories(self) -> None:
        """Create the data directory if it doesn't exist."""
        self.database_path.parent.mkdir(parents=True, exist_ok=True)
