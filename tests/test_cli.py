"""Tests for the CLI: argument handling, JSON-lines loading and command runners."""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from unittest.mock import patch

import pytest
from conftest import FakeEmbeddingProvider

import scripts.cli as cli_module
from mail_vectorizer.config.settings import VectorizerSettings
from mail_vectorizer.core.attachments import PDF_MIME_TYPE
from mail_vectorizer.core.models import FilterRule, FilterType
from mail_vectorizer.pipeline.processor import EmailProcessor
from mail_vectorizer.pipeline.vectorizer import VectorizationPipeline
from mail_vectorizer.storage.sqlite_store import SQLiteVectorStore


def _parse_batch_args(argv: list[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser()
    subparsers = parser.add_subparsers(dest="command")
    vectorize_parser = subparsers.add_parser("vectorize")
    cli_module._add_batch_args(vectorize_parser)
    return parser.parse_args(argv)


def _write_jsonl(path: Path, records: list[dict]) -> Path:
    path.write_text("\n".join(json.dumps(r) for r in records) + "\n", encoding="utf-8")
    return path


def _run_main(argv: list[str], db_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("VECTORIZER_DATABASE_PATH", str(db_path))
    with patch.object(sys, "argv", ["cli.py", *argv]):
        cli_module.main()


class TestBatchArgs:
    """--limit and --batch-size on the vectorize subcommand."""

    def test_defaults(self) -> None:
        args = _parse_batch_args(["vectorize"])
        assert args.limit is None
        assert args.batch_size is None

    def test_all_flags(self) -> None:
        args = _parse_batch_args(["vectorize", "--limit", "20", "--batch-size", "4"])
        assert args.limit == 20
        assert args.batch_size == 4


class TestValidation:
    """_validate_batch_args rejects out-of-range values."""

    def test_negative_limit_exits(self) -> None:
        args = argparse.Namespace(command="vectorize", limit=-1, batch_size=None)
        with pytest.raises(SystemExit):
            cli_module._validate_batch_args(args)

    def test_zero_batch_size_exits(self) -> None:
        args = argparse.Namespace(command="vectorize", limit=None, batch_size=0)
        with pytest.raises(SystemExit):
            cli_module._validate_batch_args(args)

    def test_threshold_out_of_range_exits(self) -> None:
        args = argparse.Namespace(command="search", limit=10, threshold=1.5)
        with pytest.raises(SystemExit):
            cli_module._validate_batch_args(args)

    def test_valid_args_pass(self) -> None:
        args = argparse.Namespace(command="search", limit=10, batch_size=5, threshold=0.7)
        cli_module._validate_batch_args(args)


class TestLoadEmailRecord:
    """load_email_record builds RawEmail and attachment payloads."""

    def test_fields_and_attachments(self, tmp_path: Path, pdf_bytes: bytes) -> None:
        (tmp_path / "report.pdf").write_bytes(pdf_bytes)
        record = {
            "id": "m1",
            "subject": "Report",
            "sender": "jane@example.org",
            "body_text": "See attached",
            "sent_at": "2024-01-15T10:30:00+00:00",
            "attachments": ["report.pdf"],
        }

        email, attachments = cli_module.load_email_record(record, tmp_path)

        assert email.external_id == "m1"
        assert email.has_attachments is True
        assert email.sent_at is not None and email.sent_at.year == 2024
        info, payload = attachments[0]
        assert info.id == "m1-0"
        assert info.mime_type == PDF_MIME_TYPE
        assert info.size_bytes == len(pdf_bytes)
        assert payload == pdf_bytes

    def test_minimal_record(self, tmp_path: Path) -> None:
        email, attachments = cli_module.load_email_record({"id": 7}, tmp_path)
        assert email.external_id == "7"
        assert email.sent_at is None
        assert attachments == []


class TestRunners:
    """run_ingest and run_vectorize against a real store."""

    @pytest.mark.asyncio
    async def test_ingest_then_vectorize(self, tmp_path: Path, tmp_db_path: Path) -> None:
        path = _write_jsonl(
            tmp_path / "emails.jsonl",
            [
                {
                    "id": "keep",
                    "subject": "Budget review",
                    "sender": "jane@example.org",
                    "body_text": "The budget review moved to Thursday afternoon.",
                },
                {
                    "id": "drop",
                    "subject": "Deals",
                    "sender": "promo@spam.test",
                    "body_text": "Nothing to see here at all.",
                },
            ],
        )
        settings = VectorizerSettings(_env_file=None)

        with SQLiteVectorStore(tmp_db_path) as store:
            store.add_filter_rule("u1", FilterRule("spam.test", FilterType.BLACKLIST))
            counts = await cli_module.run_ingest(
                cli_module.build_processor(settings, store), path, "u1", None
            )
            pipeline = VectorizationPipeline(FakeEmbeddingProvider(), store, settings=settings)
            outcome = await cli_module.run_vectorize(pipeline, store, "u1", None, None)
            stats = store.get_vectorization_stats("u1")

        assert counts == {"kept": 1, "filtered": 1, "attachments": 0, "attachment_errors": 0}
        assert outcome.processed_count == 1
        assert outcome.success is True
        assert stats["vectorized"] == 1

    @pytest.mark.asyncio
    async def test_ingest_limit(self, tmp_path: Path, tmp_db_path: Path) -> None:
        path = _write_jsonl(
            tmp_path / "emails.jsonl",
            [{"id": f"m{i}", "body_text": f"Plain note number {i}"} for i in range(3)],
        )
        with SQLiteVectorStore(tmp_db_path) as store:
            counts = await cli_module.run_ingest(EmailProcessor(store=store), path, "u1", 2)
        assert counts["kept"] + counts["filtered"] == 2


class TestMain:
    """main() dispatches store-only commands."""

    def test_add_and_list_rules(
        self,
        tmp_db_path: Path,
        monkeypatch: pytest.MonkeyPatch,
        capsys: pytest.CaptureFixture[str],
    ) -> None:
        _run_main(
            ["add-rule", "Spam.test", "--type", "blacklist", "--user", "u1"],
            tmp_db_path,
            monkeypatch,
        )
        _run_main(["list-rules", "--user", "u1"], tmp_db_path, monkeypatch)

        output = capsys.readouterr().out
        assert "Added blacklist rule: spam.test" in output
        assert "Found 1 rules" in output

    def test_status(
        self,
        tmp_db_path: Path,
        monkeypatch: pytest.MonkeyPatch,
        capsys: pytest.CaptureFixture[str],
    ) -> None:
        _run_main(["status", "--user", "u1"], tmp_db_path, monkeypatch)
        assert "pending: 0" in capsys.readouterr().out

    def test_no_command_exits(self) -> None:
        with patch.object(sys, "argv", ["cli.py"]), pytest.raises(SystemExit) as exc_info:
            cli_module.main()
        assert exc_info.value.code == 1

    def test_invalid_limit_exits(
        self, tmp_db_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        with pytest.raises(SystemExit) as exc_info:
            _run_main(["vectorize", "--user", "u1", "--limit", "-3"], tmp_db_path, monkeypatch)
        assert exc_info.value.code == 1
