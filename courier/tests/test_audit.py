"""Tests for the audit logger and its sinks."""

import asyncio
import json
import os
from datetime import datetime, timezone

import pytest

from conftest import InMemoryNoteStore
from courier.common.errors import Notice
from courier.common.schemas import AuditLogEntry, Category, Outcome
from courier.pipeline.audit import AuditLogger, AuditSink, JsonlAuditSink, NoteAuditSink


def _entry(event_id="C1:1.0", result=Outcome.WRITTEN, **kwargs):
    kwargs.setdefault("category", Category.PROJECTS)
    kwargs.setdefault("target_location", "Projects/House.md")
    kwargs.setdefault("timestamp", datetime(2024, 2, 1, 15, 0, 5, tzinfo=timezone.utc))
    return AuditLogEntry(event_id=event_id, result=result, **kwargs)


class ExplodingSink(AuditSink):
    async def append(self, entry):
        raise OSError("disk full")


class TestJsonlAuditSink:
    @pytest.mark.asyncio
    async def test_append_and_read_back(self, tmp_path):
        sink = JsonlAuditSink(tmp_path / "logs" / "audit.jsonl")
        await sink.append(_entry("a", confidence=0.91))
        await sink.append(_entry("b", result=Outcome.FAILED, error="HTTP 503"))
        await sink.append(_entry("a", result=Outcome.SKIPPED, notices=[Notice.DUPLICATE_EVENT]))

        assert [e.result for e in sink.read_entries("a")] == [Outcome.WRITTEN, Outcome.SKIPPED]
        assert len(sink.read_entries()) == 3
        assert sink.read_entries("a")[1].notices == [Notice.DUPLICATE_EVENT]
        assert oct(os.stat(sink.path).st_mode & 0o777) == oct(0o600)

    @pytest.mark.asyncio
    async def test_one_line_per_entry_under_concurrency(self, tmp_path):
        sink = JsonlAuditSink(tmp_path / "audit.jsonl")
        await asyncio.gather(*(sink.append(_entry(f"e{i}")) for i in range(20)))

        lines = sink.path.read_text().splitlines()
        assert len(lines) == 20
        assert {json.loads(line)["event_id"] for line in lines} == {f"e{i}" for i in range(20)}

    def test_missing_file_reads_empty(self, tmp_path):
        assert JsonlAuditSink(tmp_path / "nope.jsonl").read_entries() == []

    @pytest.mark.asyncio
    async def test_malformed_lines_are_skipped(self, tmp_path):
        sink = JsonlAuditSink(tmp_path / "audit.jsonl")
        await sink.append(_entry("a"))
        with open(sink.path, "a") as f:
            f.write("{not json\n")
            f.write('{"event_id": "x"}\n')
            f.write("\n")
        await sink.append(_entry("b"))

        assert [e.event_id for e in sink.read_entries()] == ["a", "b"]


class TestNoteAuditSink:
    def test_format_line(self):
        line = NoteAuditSink.format_line(_entry(notices=[Notice.RESOLUTION_FALLBACK]))
        assert line == "- 2024-02-01 15:00:05 `C1:1.0` written projects -> Projects/House.md [resolution_fallback]\n"

    @pytest.mark.asyncio
    async def test_creates_then_appends(self):
        store = InMemoryNoteStore()
        sink = NoteAuditSink(store, "Courier/Audit.md")

        await sink.append(_entry("a"))
        await sink.append(_entry("b", result=Outcome.FAILED, target_location=None))

        doc = store.documents["Courier/Audit.md"]
        assert doc.startswith("# Courier Audit\n\n- ")
        assert "`a` written projects -> Projects/House.md" in doc
        assert doc.endswith("`b` failed projects\n")


class TestAuditLogger:
    def test_requires_a_sink(self):
        with pytest.raises(ValueError):
            AuditLogger([])

    @pytest.mark.asyncio
    async def test_fans_out_to_every_sink(self, tmp_path):
        primary = JsonlAuditSink(tmp_path / "audit.jsonl")
        store = InMemoryNoteStore()
        audit = AuditLogger([primary, NoteAuditSink(store, "Audit.md")])

        assert await audit.record(_entry("a")) is True
        assert len(primary.read_entries()) == 1
        assert "Audit.md" in store.documents
        assert [e.event_id for e in await audit.history("a")] == ["a"]

    @pytest.mark.asyncio
    async def test_secondary_failure_is_not_fatal(self, tmp_path):
        primary = JsonlAuditSink(tmp_path / "audit.jsonl")
        audit = AuditLogger([primary, ExplodingSink()])

        assert await audit.record(_entry("a")) is True
        assert len(primary.read_entries("a")) == 1

    @pytest.mark.asyncio
    async def test_primary_failure_reported_not_raised(self, tmp_path):
        mirror = JsonlAuditSink(tmp_path / "mirror.jsonl")
        audit = AuditLogger([ExplodingSink(), mirror])

        assert await audit.record(_entry("a")) is False
        assert len(mirror.read_entries("a")) == 1
        assert await audit.history("a") == []
