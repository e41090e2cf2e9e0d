"""Tests for the sheetbook structured event logging system."""

from __future__ import annotations

import json
from pathlib import Path

import pytest


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def sink(tmp_path: Path):
    from sheetbook.logging.sink import EventSink

    return EventSink(tmp_path)


# ---------------------------------------------------------------------------
# A) Event schema
# ---------------------------------------------------------------------------


class TestSheetbookEvent:
    def test_event_defaults(self):
        from sheetbook.logging.events import EventLevel, EventType, SheetbookEvent

        evt = SheetbookEvent(
            level=EventLevel.info,
            event_type=EventType.workspace_loaded,
            message="hello",
        )
        assert evt.schema_version == 1
        assert evt.ts.endswith("Z")
        assert evt.level == "info"
        assert evt.event_type == "workspace_loaded"
        assert evt.context == {}
        assert evt.error_code is None

    def test_error_codes_are_strings(self):
        from sheetbook.logging import events

        for code in (events.JSON_PARSE_FAILED, events.SCHEMA_INVALID, events.UNRESOLVED_INTEGRITY_ERRORS):
            assert isinstance(code, str)
            assert code

    def test_every_event_type_has_attribution_rule(self):
        from sheetbook.logging.events import _EVENT_REQUIRED_KEYS, EventType

        assert {e.value for e in EventType} == set(_EVENT_REQUIRED_KEYS)


# ---------------------------------------------------------------------------
# B) Filesystem NDJSON sink
# ---------------------------------------------------------------------------


class TestEventSink:
    def test_write_appends_sorted_json_lines(self, sink, tmp_path):
        from sheetbook.logging.events import EventLevel, EventType, SheetbookEvent

        for i in range(3):
            sink.write(SheetbookEvent(
                level=EventLevel.info,
                event_type=EventType.cells_updated,
                message=f"edit {i}",
            ))

        lines = (tmp_path / "logs" / "events.ndjson").read_text().strip().splitlines()
        assert len(lines) == 3
        parsed = json.loads(lines[0])
        assert list(parsed) == sorted(parsed)
        assert parsed["message"] == "edit 0"

    def test_read_events_most_recent_first(self, sink):
        from sheetbook.logging.events import EventLevel, EventType, SheetbookEvent

        for i in range(5):
            sink.write(SheetbookEvent(
                level=EventLevel.info,
                event_type=EventType.cells_updated,
                message=f"edit {i}",
            ))

        events = sink.read_events()
        assert [e["message"] for e in events] == [f"edit {i}" for i in range(4, -1, -1)]
        assert len(sink.read_events(limit=2)) == 2

    def test_filters(self, sink):
        from sheetbook.logging.events import EventLevel, EventType, SheetbookEvent

        sink.write(SheetbookEvent(
            level=EventLevel.info,
            event_type=EventType.book_created,
            context={"book_id": "book-1"},
        ))
        sink.write(SheetbookEvent(
            level=EventLevel.error,
            event_type=EventType.workspace_load_failed,
            context={"workspace_path": "/x"},
        ))

        assert len(sink.read_events(level="error")) == 1
        assert len(sink.read_events(event_type="book_created")) == 1
        assert sink.read_events(book_id="book-1")[0]["event_type"] == "book_created"

    def test_missing_log_returns_empty(self, sink):
        assert sink.read_events() == []

    def test_bad_lines_are_skipped(self, sink):
        sink.path.write_text('{"message": "ok"}\nnot json\n')
        assert [e["message"] for e in sink.read_events()] == ["ok"]

    def test_tail_read_drops_partial_line(self, tmp_path):
        from sheetbook.logging.sink import EventSink

        small = EventSink(tmp_path, tail_bytes=40)
        small.path.write_text(
            json.dumps({"message": "a" * 30}) + "\n" + json.dumps({"message": "b"}) + "\n"
        )
        assert [e["message"] for e in small.read_events()] == ["b"]


# ---------------------------------------------------------------------------
# C) Module-level emit helpers
# ---------------------------------------------------------------------------


class TestEmitHelpers:
    def test_emit_without_sink_is_noop(self, tmp_path):
        from sheetbook.logging.events import EventType, emit_info

        emit_info(EventType.history_undo, "nothing")
        assert not (tmp_path / "logs").exists()

    def test_emit_writes_through_sink(self, tmp_path):
        from sheetbook.logging.events import EventType, emit_info, get_sink, set_workspace_dir

        set_workspace_dir(tmp_path, {})
        emit_info(EventType.book_created, "created", {"book_id": "book-1"})

        events = get_sink().read_events()
        assert events[0]["level"] == "info"
        assert events[0]["context"]["book_id"] == "book-1"

    def test_missing_attribution_downgrades_to_warning(self, tmp_path):
        from sheetbook.logging.events import EventType, emit_info, get_sink, set_workspace_dir

        set_workspace_dir(tmp_path, {})
        emit_info(EventType.cells_updated, "no ids", {"book_id": "book-1"})

        evt = get_sink().read_events()[0]
        assert evt["level"] == "warning"
        assert evt["context"]["_missing_attribution"] == ["sheet_id"]

    def test_context_is_clipped(self):
        from sheetbook.logging.events import clip_context

        clipped = clip_context({"s": "x" * 500, "l": list(range(60)), "d": {"s": "y" * 300}})
        assert clipped["s"].endswith("...[truncated]")
        assert len(clipped["l"]) == 51
        assert clipped["l"][-1] == "...[10 more]"
        assert clipped["d"]["s"].endswith("...[truncated]")

    def test_sink_failure_never_raises(self, tmp_path, monkeypatch):
        from sheetbook.logging import events
        from sheetbook.logging.events import EventType, emit_info, set_workspace_dir

        set_workspace_dir(tmp_path, {})

        def boom(_event):
            raise OSError("disk full")

        monkeypatch.setattr(events.get_sink(), "write", boom)
        emit_info(EventType.history_redo, "still fine")

    def test_set_workspace_dir_reads_config(self, tmp_path):
        from sheetbook.logging.events import get_sink, set_workspace_dir

        (tmp_path / "sheetbook.yaml").write_text("logging:\n  tail_bytes: 1234\n")
        set_workspace_dir(tmp_path)

        assert get_sink()._tail_bytes == 1234
