"""Minimal CLI entry point for manual testing of the Mail Vectorizer."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import mimetypes
import sys
from datetime import datetime
from pathlib import Path
from typing import Any

from mail_vectorizer.config.settings import VectorizerSettings
from mail_vectorizer.core.attachments import Attachment, AttachmentProcessor
from mail_vectorizer.core.domain_filter import DomainFilter
from mail_vectorizer.core.email_filter import EmailFilter
from mail_vectorizer.core.embeddings import OpenAIEmbeddingProvider
from mail_vectorizer.core.models import (
    AttachmentInfo,
    BatchOutcome,
    BatchProgress,
    FilterRule,
    FilterType,
    RawEmail,
)
from mail_vectorizer.pipeline.processor import EmailProcessor
from mail_vectorizer.pipeline.vectorizer import VectorizationPipeline
from mail_vectorizer.storage.classification_cache import ClassificationCache
from mail_vectorizer.storage.sqlite_store import SQLiteVectorStore


def setup_logging(level: str) -> None:
    """Configure logging with timestamp and module info."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def on_progress(progress: BatchProgress) -> None:
    """Print progress updates to stdout."""
    print(
        f"[{progress.current_stage}] "
        f"batch={progress.current_batch} "
        f"processed={progress.processed}/{progress.total} "
        f"skipped={progress.skipped} "
        f"failed={progress.failed}",
        end="\r",
        flush=True,
    )


def _add_batch_args(subparser: argparse.ArgumentParser) -> None:
    """Add --limit and --batch-size flags to a subparser."""
    subparser.add_argument(
        "--limit",
        type=int,
        default=None,
        help="Cap total emails processed",
    )
    subparser.add_argument(
        "--batch-size",
        type=int,
        default=None,
        dest="batch_size",
        help="Override batch size from settings",
    )


def _validate_batch_args(args: argparse.Namespace) -> None:
    """Reject negative limits, non-positive batch sizes and out of range thresholds."""
    if getattr(args, "limit", None) is not None and args.limit < 0:
        print("Error: --limit must be non-negative", file=sys.stderr)
        sys.exit(1)
    if getattr(args, "batch_size", None) is not None and args.batch_size <= 0:
        print("Error: --batch-size must be positive", file=sys.stderr)
        sys.exit(1)
    threshold = getattr(args, "threshold", None)
    if threshold is not None and not -1.0 <= threshold <= 1.0:
        print("Error: --threshold must be between -1 and 1", file=sys.stderr)
        sys.exit(1)


def load_email_record(
    record: dict[str, Any], base_dir: Path
) -> tuple[RawEmail, list[Attachment]]:
    """Build a RawEmail and its attachment payloads from one JSON-lines record.

    Attachment paths are resolved relative to the input file.
    """
    sent_at = record.get("sent_at")
    attachments: list[Attachment] = []
    for index, raw_path in enumerate(record.get("attachments", [])):
        path = Path(raw_path)
        if not path.is_absolute():
            path = base_dir / path
        payload = path.read_bytes()
        mime_type, _ = mimetypes.guess_type(path.name)
        attachments.append(
            (
                AttachmentInfo(
                    id=f"{record['id']}-{index}",
                    filename=path.name,
                    mime_type=mime_type or "application/octet-stream",
                    size_bytes=len(payload),
                ),
                payload,
            )
        )

    email = RawEmail(
        external_id=str(record["id"]),
        thread_id=str(record.get("thread_id", "")),
        subject=record.get("subject", ""),
        sender=record.get("sender", ""),
        recipient=record.get("recipient", ""),
        body_text=record.get("body_text", ""),
        body_html=record.get("body_html", ""),
        sent_at=datetime.fromisoformat(sent_at) if sent_at else None,
        has_attachments=bool(attachments),
    )
    return email, attachments


def build_processor(settings: VectorizerSettings, store: SQLiteVectorStore) -> EmailProcessor:
    cache = ClassificationCache(
        max_size=settings.classification_cache_size,
        ttl_seconds=settings.classification_cache_ttl_seconds,
    )
    return EmailProcessor(
        EmailFilter(DomainFilter(settings.filter_config(), cache)),
        AttachmentProcessor(settings.attachment_limits()),
        store=store,
    )


def build_pipeline(
    settings: VectorizerSettings, store: SQLiteVectorStore
) -> VectorizationPipeline:
    provider = OpenAIEmbeddingProvider(
        model=settings.embedding_model,
        dimensions=settings.embedding_dimensions,
        api_key=settings.openai_api_key,
        timeout=settings.embedding_timeout_seconds,
        max_retries=settings.embedding_max_retries,
    )
    return VectorizationPipeline(provider, store, settings=settings, on_progress=on_progress)


async def run_ingest(
    processor: EmailProcessor, path: Path, user_id: str, limit: int | None
) -> dict[str, int]:
    counts = {"kept": 0, "filtered": 0, "attachments": 0, "attachment_errors": 0}
    with path.open(encoding="utf-8") as handle:
        for line in handle:
            if not line.strip():
                continue
            if limit is not None and counts["kept"] + counts["filtered"] >= limit:
                break
            email, attachments = load_email_record(json.loads(line), path.parent)
            result = await processor.process(email, attachments, user_id=user_id)
            if result.filtered.is_filtered:
                counts["filtered"] += 1
            else:
                counts["kept"] += 1
            counts["attachments"] += result.attachments.stats.processed
            counts["attachment_errors"] += result.attachments.stats.errors
    return counts


async def run_vectorize(
    pipeline: VectorizationPipeline,
    store: SQLiteVectorStore,
    user_id: str,
    limit: int | None,
    batch_size: int | None,
) -> BatchOutcome:
    limit = 100 if limit is None else limit
    contents = await store.get_emails_for_vectorization(user_id, limit)
    return await pipeline.batch_vectorize_emails(contents, batch_size=batch_size)


def main() -> None:
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Mail Vectorizer - Filter, extract and vectorize emails"
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # ingest command
    ingest_parser = subparsers.add_parser(
        "ingest", help="Filter and extract emails from a JSON-lines file"
    )
    ingest_parser.add_argument("file", type=Path, help="JSON-lines file of emails")
    ingest_parser.add_argument("--user", "-u", required=True, help="Owner user ID")
    ingest_parser.add_argument(
        "--limit", type=int, default=None, help="Cap total emails ingested"
    )

    # vectorize command
    vectorize_parser = subparsers.add_parser("vectorize", help="Vectorize pending emails")
    vectorize_parser.add_argument("--user", "-u", required=True, help="Owner user ID")
    _add_batch_args(vectorize_parser)

    # search command
    search_parser = subparsers.add_parser("search", help="Semantic search over stored emails")
    search_parser.add_argument("query", help="Search text")
    search_parser.add_argument("--user", "-u", default=None, help="Restrict to a user")
    search_parser.add_argument("--limit", type=int, default=10, help="Maximum results")
    search_parser.add_argument(
        "--threshold", type=float, default=0.7, help="Minimum cosine similarity"
    )

    # status command
    status_parser = subparsers.add_parser("status", help="Show vectorization counts")
    status_parser.add_argument("--user", "-u", required=True, help="Owner user ID")

    # add-rule command
    rule_parser = subparsers.add_parser("add-rule", help="Add a domain filter rule")
    rule_parser.add_argument("pattern", help="Domain or wildcard pattern, e.g. *.example.com")
    rule_parser.add_argument(
        "--type",
        "-t",
        required=True,
        dest="filter_type",
        choices=[t.value for t in FilterType],
        help="Rule type",
    )
    rule_parser.add_argument("--user", "-u", required=True, help="Owner user ID")

    # list-rules command
    list_rules_parser = subparsers.add_parser("list-rules", help="List domain filter rules")
    list_rules_parser.add_argument("--user", "-u", required=True, help="Owner user ID")

    args = parser.parse_args()
    if not args.command:
        parser.print_help()
        sys.exit(1)

    if args.command in ("ingest", "vectorize", "search"):
        _validate_batch_args(args)

    settings = VectorizerSettings()
    setup_logging(settings.log_level)

    store = SQLiteVectorStore(settings.database_path)

    try:
        store.connect()

        if args.command == "ingest":
            counts = asyncio.run(
                run_ingest(build_processor(settings, store), args.file, args.user, args.limit)
            )
            print(
                f"\nIngested: kept={counts['kept']} filtered={counts['filtered']} "
                f"attachments={counts['attachments']} "
                f"attachment_errors={counts['attachment_errors']}"
            )

        elif args.command == "vectorize":
            pipeline = build_pipeline(settings, store)
            outcome = asyncio.run(
                run_vectorize(pipeline, store, args.user, args.limit, args.batch_size)
            )
            print(
                f"\n\nComplete: processed={outcome.processed_count} "
                f"skipped={outcome.skipped_count} errors={outcome.error_count}"
            )
            for error in outcome.errors:
                print(f"  {error.email_id}: {error.error}")
            if not outcome.success:
                sys.exit(1)

        elif args.command == "search":
            pipeline = build_pipeline(settings, store)
            results = asyncio.run(
                pipeline.search_similar_emails(
                    args.query, args.user, limit=args.limit, threshold=args.threshold
                )
            )
            print(f"\nFound {len(results)} results:\n")
            for result in results:
                print(f"  {result.similarity:.3f}  {result.email_id:30s} {result.subject}")

        elif args.command == "status":
            stats = store.get_vectorization_stats(args.user)
            print("\nEmail counts:")
            for key, count in stats.items():
                print(f"  {key}: {count}")

        elif args.command == "add-rule":
            rule = FilterRule(
                domain_pattern=args.pattern.strip().lower(), filter_type=args.filter_type
            )
            if store.add_filter_rule(args.user, rule):
                print(f"\nAdded {rule.filter_type} rule: {rule.domain_pattern}")
            else:
                print(f"\nRule already exists: {rule.domain_pattern}")

        elif args.command == "list-rules":
            rules = store.get_filter_rules(args.user)
            print(f"\nFound {len(rules)} rules:\n")
            for rule in rules:
                print(f"  {rule.filter_type:10s} {rule.domain_pattern}")

    except KeyboardInterrupt:
        print("\n\nInterrupted by user")
        sys.exit(130)
    except Exception as e:
        print(f"\nError: {e}", file=sys.stderr)
        sys.exit(1)
    finally:
        store.close()


if __name__ == "__main__":
    main()
