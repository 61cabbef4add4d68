"""SQLite-backed local store for filtered emails, attachments and embeddings."""

from __future__ import annotations

import json
import logging
import sqlite3
from collections.abc import Sequence
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import numpy as np

from mail_vectorizer.core.exceptions import EmbeddingDimensionError, StorageError
from mail_vectorizer.core.models import (
    EmailContent,
    EmbeddingRecord,
    FilteredEmail,
    FilterRule,
    FilterType,
    ParsedAttachment,
    ScoredResult,
    TextChunk,
)

logger = logging.getLogger(__name__)

DIMENSION_KEY = "embedding_dimension"


def _to_blob(vector: Sequence[float]) -> bytes:
    return np.asarray(vector, dtype=np.float32).tobytes()


def _from_blob(blob: bytes) -> np.ndarray:
    return np.frombuffer(blob, dtype=np.float32)


class SQLiteVectorStore:
    """Local VectorRepository and FilterRuleSource in a single SQLite file.

    Tables:
    - emails: filter verdict, text fields and the email embedding
    - attachments: extracted attachment text per email
    - filter_rules: per-user blacklist/whitelist domain patterns
    - index_meta: the embedding dimension fixed by the first stored vector
    """

    def __init__(self, db_path: Path) -> None:
        self._db_path = db_path
        self._conn: sqlite3.Connection | None = None

    def connect(self) -> None:
        """Open database connection and ensure schema exists."""
        if str(self._db_path) != ":memory:":
            self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(self._db_path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._create_tables()

    def close(self) -> None:
        """Close the database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None

    def __enter__(self) -> SQLiteVectorStore:
        self.connect()
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise RuntimeError("Database not connected. Call connect() first.")
        return self._conn

    def _create_tables(self) -> None:
        self.conn.executescript("""
            CREATE TABLE IF NOT EXISTS emails (
                email_id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL DEFAULT '',
                thread_id TEXT DEFAULT '',
                subject TEXT DEFAULT '',
                sender TEXT DEFAULT '',
                recipient TEXT DEFAULT '',
                body_text TEXT DEFAULT '',
                body_html TEXT DEFAULT '',
                content_text TEXT DEFAULT '',
                sent_at TEXT,
                is_filtered INTEGER NOT NULL DEFAULT 0,
                filter_reason TEXT,
                processed_at TEXT NOT NULL,
                embedding BLOB,
                token_count INTEGER,
                source_hash TEXT,
                text_chunks TEXT,
                vector_metadata TEXT,
                vectorized_at TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_emails_user ON emails(user_id);

            CREATE TABLE IF NOT EXISTS attachments (
                email_id TEXT NOT NULL,
                attachment_id TEXT NOT NULL,
                position INTEGER NOT NULL DEFAULT 0,
                filename TEXT NOT NULL,
                mime_type TEXT NOT NULL,
                size_bytes INTEGER NOT NULL,
                extracted_text TEXT DEFAULT '',
                is_degraded INTEGER NOT NULL DEFAULT 0,
                PRIMARY KEY (email_id, attachment_id),
                FOREIGN KEY (email_id) REFERENCES emails(email_id)
            );

            CREATE TABLE IF NOT EXISTS filter_rules (
                rule_id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT NOT NULL,
                domain_pattern TEXT NOT NULL,
                filter_type TEXT NOT NULL,
                created_at TEXT NOT NULL,
                UNIQUE (user_id, domain_pattern, filter_type)
            );

            CREATE TABLE IF NOT EXISTS index_meta (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL
            );
        """)

    # ---------- emails ----------

    def save_filtered_email(
        self, email: FilteredEmail, user_id: str = "", content_text: str = ""
    ) -> None:
        """Insert or refresh an email and its filter verdict.

        An existing embedding is kept; re-saving an email never re-vectorizes it.
        """
        now = datetime.now(UTC).isoformat()
        raw = email.email
        try:
            self.conn.execute(
                """INSERT INTO emails
                   (email_id, user_id, thread_id, subject, sender, recipient,
                    body_text, body_html, content_text, sent_at, is_filtered,
                    filter_reason, processed_at, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                   ON CONFLICT(email_id) DO UPDATE SET
                       subject = excluded.subject,
                       sender = excluded.sender,
                       recipient = excluded.recipient,
                       body_text = excluded.body_text,
                       body_html = excluded.body_html,
                       content_text = excluded.content_text,
                       is_filtered = excluded.is_filtered,
                       filter_reason = excluded.filter_reason,
                       processed_at = excluded.processed_at,
                       updated_at = excluded.updated_at""",
                (
                    raw.external_id,
                    user_id,
                    raw.thread_id,
                    raw.subject,
                    raw.sender,
                    raw.recipient,
                    raw.body_text,
                    raw.body_html,
                    content_text,
                    raw.sent_at.isoformat() if raw.sent_at else None,
                    int(email.is_filtered),
                    email.filter_reason,
                    email.processed_at.isoformat(),
                    now,
                    now,
                ),
            )
            self.conn.commit()
        except sqlite3.Error as e:
            raise StorageError(f"Failed to save email {raw.external_id}: {e}") from e

    def save_attachments(self, email_id: str, attachments: Sequence[ParsedAttachment]) -> int:
        """Store extracted attachment texts in order. Returns the number of rows written."""
        rows = [
            (
                email_id,
                a.attachment_id,
                position,
                a.filename,
                a.mime_type,
                a.size_bytes,
                a.extracted_text,
                int(a.is_degraded),
            )
            for position, a in enumerate(attachments)
        ]
        try:
            self.conn.executemany(
                """INSERT OR REPLACE INTO attachments
                   (email_id, attachment_id, position, filename, mime_type,
                    size_bytes, extracted_text, is_degraded)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                rows,
            )
            self.conn.commit()
        except sqlite3.Error as e:
            raise StorageError(f"Failed to save attachments for {email_id}: {e}") from e
        return len(rows)

    def get_email(self, email_id: str) -> dict | None:
        """Get the full email row by ID, without the embedding blob."""
        row = self.conn.execute(
            "SELECT * FROM emails WHERE email_id = ?", (email_id,)
        ).fetchone()
        if row is None:
            return None
        record = dict(row)
        record.pop("embedding", None)
        return record

    # ---------- vectors ----------

    async def is_vectorized(self, email_id: str) -> bool:
        row = self.conn.execute(
            "SELECT embedding IS NOT NULL AS done FROM emails WHERE email_id = ?",
            (email_id,),
        ).fetchone()
        return bool(row and row["done"])

    async def save_embedding(
        self,
        email_id: str,
        embedding: EmbeddingRecord,
        chunks: Sequence[TextChunk],
        metadata: dict[str, Any],
    ) -> None:
        """Persist an email embedding.

        Raises:
            EmbeddingDimensionError: If the vector does not match the index dimension.
            StorageError: If the email is unknown or the write fails.
        """
        dimension = self.get_index_dimension()
        if dimension is not None and dimension != embedding.dimension:
            raise EmbeddingDimensionError(
                f"Embedding dimension {embedding.dimension} does not match "
                f"index dimension {dimension}"
            )

        now = datetime.now(UTC).isoformat()
        text_chunks = [
            {
                "index": c.index,
                "content": c.content,
                "start_offset": c.start_offset,
                "end_offset": c.end_offset,
            }
            for c in chunks
        ]
        # The first stored vector fixes the index dimension, in the same transaction
        try:
            with self.conn:
                cursor = self.conn.execute(
                    """UPDATE emails SET
                       embedding = ?, token_count = ?, source_hash = ?, text_chunks = ?,
                       vector_metadata = ?, vectorized_at = ?, updated_at = ?
                       WHERE email_id = ?""",
                    (
                        _to_blob(embedding.vector),
                        embedding.token_count,
                        embedding.source_hash,
                        json.dumps(text_chunks),
                        json.dumps(metadata, default=str),
                        now,
                        now,
                        email_id,
                    ),
                )
                if cursor.rowcount != 1:
                    raise StorageError(f"Unknown email: {email_id}")
                if dimension is None:
                    self._set_meta(DIMENSION_KEY, str(embedding.dimension))
        except sqlite3.Error as e:
            raise StorageError(f"Failed to save embedding for {email_id}: {e}") from e

    def invalidate_embedding(self, email_id: str) -> bool:
        """Drop an email's embedding so it is vectorized again. Returns True if one existed."""
        now = datetime.now(UTC).isoformat()
        cursor = self.conn.execute(
            """UPDATE emails SET
               embedding = NULL, token_count = NULL, source_hash = NULL,
               text_chunks = NULL, vector_metadata = NULL, vectorized_at = NULL,
               updated_at = ?
               WHERE email_id = ? AND embedding IS NOT NULL""",
            (now, email_id),
        )
        self.conn.commit()
        return cursor.rowcount > 0

    async def search_similar(
        self,
        query_vector: Sequence[float],
        *,
        user_id: str | None = None,
        limit: int = 10,
        threshold: float = 0.7,
    ) -> list[ScoredResult]:
        """Rank stored emails by cosine similarity, keeping those above ``threshold``."""
        sql = (
            "SELECT email_id, subject, body_text, content_text, sender, sent_at, "
            "embedding, text_chunks, vector_metadata FROM emails "
            "WHERE embedding IS NOT NULL"
        )
        params: list[str] = []
        if user_id is not None:
            sql += " AND user_id = ?"
            params.append(user_id)
        rows = self.conn.execute(sql, params).fetchall()
        if not rows or limit <= 0:
            return []

        query = np.asarray(query_vector, dtype=np.float32)
        matrix = np.vstack([_from_blob(row["embedding"]) for row in rows])
        if matrix.shape[1] != query.shape[0]:
            raise EmbeddingDimensionError(
                f"Query dimension {query.shape[0]} does not match "
                f"index dimension {matrix.shape[1]}"
            )

        norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(query)
        scores = (matrix @ query) / np.where(norms == 0, 1.0, norms)

        ranked = [i for i in np.argsort(-scores, kind="stable") if scores[i] > threshold]
        results = []
        for i in ranked[:limit]:
            row = rows[i]
            metadata = json.loads(row["vector_metadata"] or "{}")
            metadata["sender"] = row["sender"]
            results.append(
                ScoredResult(
                    email_id=row["email_id"],
                    similarity=float(scores[i]),
                    subject=row["subject"] or "",
                    body_text=row["content_text"] or row["body_text"] or "",
                    sent_at=datetime.fromisoformat(row["sent_at"]) if row["sent_at"] else None,
                    text_chunks=tuple(json.loads(row["text_chunks"] or "[]")),
                    metadata=metadata,
                )
            )
        return results

    async def get_emails_for_vectorization(
        self, user_id: str, limit: int = 100
    ) -> list[EmailContent]:
        """Kept (non-filtered) emails of a user that have no embedding yet."""
        rows = self.conn.execute(
            """SELECT email_id, user_id, subject, body_text, content_text FROM emails
               WHERE user_id = ? AND is_filtered = 0 AND embedding IS NULL
               ORDER BY created_at LIMIT ?""",
            (user_id, limit),
        ).fetchall()

        contents = []
        for row in rows:
            attachment_rows = self.conn.execute(
                """SELECT extracted_text FROM attachments
                   WHERE email_id = ? AND is_degraded = 0 ORDER BY position""",
                (row["email_id"],),
            ).fetchall()
            contents.append(
                EmailContent(
                    id=row["email_id"],
                    subject=row["subject"] or "",
                    body_text=row["content_text"] or row["body_text"] or "",
                    attachment_texts=tuple(
                        r["extracted_text"] for r in attachment_rows if r["extracted_text"]
                    ),
                    user_id=row["user_id"],
                )
            )
        return contents

    def get_vectorization_stats(self, user_id: str) -> dict[str, int]:
        """Count a user's emails by filter and vectorization state."""
        row = self.conn.execute(
            """SELECT
                   COUNT(*) AS total,
                   COALESCE(SUM(is_filtered), 0) AS filtered,
                   COALESCE(SUM(embedding IS NOT NULL), 0) AS vectorized,
                   COALESCE(SUM(is_filtered = 0 AND embedding IS NULL), 0) AS pending
               FROM emails WHERE user_id = ?""",
            (user_id,),
        ).fetchone()
        return {key: int(row[key]) for key in ("total", "filtered", "vectorized", "pending")}

    def get_index_dimension(self) -> int | None:
        row = self.conn.execute(
            "SELECT value FROM index_meta WHERE key = ?", (DIMENSION_KEY,)
        ).fetchone()
        return int(row["value"]) if row else None

    def _set_meta(self, key: str, value: str) -> None:
        self.conn.execute(
            "INSERT OR REPLACE INTO index_meta (key, value) VALUES (?, ?)", (key, value)
        )

    # ---------- filter rules ----------

    def add_filter_rule(self, user_id: str, rule: FilterRule) -> bool:
        """Store a rule for a user. Returns False if the same rule already exists."""
        now = datetime.now(UTC).isoformat()
        cursor = self.conn.execute(
            """INSERT OR IGNORE INTO filter_rules
               (user_id, domain_pattern, filter_type, created_at)
               VALUES (?, ?, ?, ?)""",
            (user_id, rule.domain_pattern.strip().lower(), str(rule.filter_type), now),
        )
        self.conn.commit()
        return cursor.rowcount > 0

    def delete_filter_rule(self, user_id: str, rule: FilterRule) -> bool:
        cursor = self.conn.execute(
            "DELETE FROM filter_rules WHERE user_id = ? AND domain_pattern = ? "
            "AND filter_type = ?",
            (user_id, rule.domain_pattern.strip().lower(), str(rule.filter_type)),
        )
        self.conn.commit()
        return cursor.rowcount > 0

    def get_filter_rules(self, user_id: str) -> list[FilterRule]:
        rows = self.conn.execute(
            "SELECT domain_pattern, filter_type FROM filter_rules "
            "WHERE user_id = ? ORDER BY rule_id",
            (user_id,),
        ).fetchall()
        return [
            FilterRule(
                domain_pattern=row["domain_pattern"],
                filter_type=FilterType(row["filter_type"]),
            )
            for row in rows
        ]
