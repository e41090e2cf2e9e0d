"""Structured event logging for sheetbook.

Provides a unified event schema, filesystem NDJSON sink, and safe
emit helpers that never raise uncaught exceptions.
"""

from sheetbook.logging.events import (
    EventLevel,
    EventType,
    SheetbookEvent,
    clear_sink,
    clip_context,
    emit,
    emit_error,
    emit_info,
    emit_warning,
    get_sink,
    set_workspace_dir,
)
from sheetbook.logging.sink import EventSink

__all__ = [
    "EventLevel",
    "EventSink",
    "EventType",
    "SheetbookEvent",
    "clear_sink",
    "clip_context",
    "emit",
    "emit_error",
    "emit_info",
    "emit_warning",
    "get_sink",
    "set_workspace_dir",
]
