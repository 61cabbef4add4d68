"""Shared fixtures for Mail Vectorizer tests."""

from __future__ import annotations

import io
import math
from datetime import UTC, datetime
from pathlib import Path

import docx
import pytest

from mail_vectorizer.core.models import EmbeddingResponse, RawEmail
from mail_vectorizer.storage.classification_cache import ClassificationCache


def build_pdf(text: str) -> bytes:
    """Assemble a single-page PDF showing ``text`` in Helvetica."""
    stream = f"BT /F1 12 Tf 72 720 Td ({text}) Tj ET".encode("latin-1")
    objects = [
        b"<< /Type /Catalog /Pages 2 0 R >>",
        b"<< /Type /Pages /Kids [3 0 R] /Count 1 >>",
        b"<< /Type /Page /Parent 2 0 R /MediaBox [0 0 612 792] /Contents 4 0 R "
        b"/Resources << /Font << /F1 5 0 R >> >> >>",
        b"<< /Length %d >>\nstream\n" % len(stream) + stream + b"\nendstream",
        b"<< /Type /Font /Subtype /Type1 /BaseFont /Helvetica >>",
    ]

    out = bytearray(b"%PDF-1.4\n")
    offsets = []
    for number, body in enumerate(objects, start=1):
        offsets.append(len(out))
        out += b"%d 0 obj\n" % number + body + b"\nendobj\n"

    xref_offset = len(out)
    out += b"xref\n0 %d\n" % (len(objects) + 1)
    out += b"0000000000 65535 f \n"
    for offset in offsets:
        out += b"%010d 00000 n \n" % offset
    out += b"trailer\n<< /Size %d /Root 1 0 R >>\nstartxref\n%d\n%%%%EOF\n" % (
        len(objects) + 1,
        xref_offset,
    )
    return bytes(out)


def build_docx(paragraphs: list[str], table: list[list[str]] | None = None) -> bytes:
    """Create a DOCX document in memory with python-docx."""
    document = docx.Document()
    for paragraph in paragraphs:
        document.add_paragraph(paragraph)
    if table:
        grid = document.add_table(rows=len(table), cols=len(table[0]))
        for row_index, row in enumerate(table):
            for col_index, value in enumerate(row):
                grid.cell(row_index, col_index).text = value
    buffer = io.BytesIO()
    document.save(buffer)
    return buffer.getvalue()


class FakeEmbeddingProvider:
    """Deterministic provider: a unit vector derived from the text.

    Texts containing any string in ``fail_on`` raise RuntimeError.
    """

    def __init__(self, dimension: int = 4, fail_on: tuple[str, ...] = ()) -> None:
        self.dimension = dimension
        self.fail_on = fail_on
        self.calls: list[str] = []

    async def embed(self, text: str) -> EmbeddingResponse:
        self.calls.append(text)
        if any(marker in text for marker in self.fail_on):
            raise RuntimeError(f"provider rejected input: {text[:20]}")
        seed = sum(ord(c) for c in text) or 1
        raw = [math.sin(seed * (i + 1)) for i in range(self.dimension)]
        norm = math.sqrt(sum(v * v for v in raw)) or 1.0
        return EmbeddingResponse(
            vector=tuple(v / norm for v in raw), token_count=len(text.split())
        )


@pytest.fixture
def pdf_bytes() -> bytes:
    return build_pdf("Quarterly report for Acme")


@pytest.fixture
def docx_bytes() -> bytes:
    return build_docx(
        ["Project plan", "Kickoff on Monday"],
        table=[["Owner", "Task"], ["Jane", "Budget"]],
    )


@pytest.fixture
def sample_email() -> RawEmail:
    """A plain personal email that passes every filter."""
    return RawEmail(
        external_id="msg_001",
        thread_id="thread_001",
        subject="Lunch on Friday",
        sender="Jane Smith <jane@example.org>",
        recipient="me@example.com",
        body_text="Hi, are we still meeting for lunch on Friday at noon?",
        body_html="",
        sent_at=datetime(2024, 1, 15, 10, 30, tzinfo=UTC),
    )


@pytest.fixture
def classification_cache() -> ClassificationCache:
    return ClassificationCache(max_size=100, ttl_seconds=60)


@pytest.fixture
def fake_provider() -> FakeEmbeddingProvider:
    return FakeEmbeddingProvider()


@pytest.fixture
def tmp_db_path(tmp_path: Path) -> Path:
    """Temporary database path for tests."""
    return tmp_path / "test.db"
