"""Unified event schema and module-level emit helpers.

All timestamps use UTC ISO-8601 with ``Z`` suffix.  The ``emit()``
family of functions is safe to call from any context -- failures are
swallowed and printed to stderr.
"""

from __future__ import annotations

import sys
import time
import traceback
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class EventLevel(str, Enum):
    info = "info"
    warning = "warning"
    error = "error"


class EventType(str, Enum):
    # Workspace I/O
    workspace_loaded = "workspace_loaded"
    workspace_load_failed = "workspace_load_failed"
    workspace_saved = "workspace_saved"
    workspace_save_blocked = "workspace_save_blocked"

    # Reconciliation
    integrity_issues_detected = "integrity_issues_detected"
    integrity_repaired = "integrity_repaired"

    # Store mutations
    book_created = "book_created"
    book_renamed = "book_renamed"
    book_deleted = "book_deleted"
    sheet_created = "sheet_created"
    sheet_renamed = "sheet_renamed"
    sheet_deleted = "sheet_deleted"
    cells_updated = "cells_updated"

    # History
    history_undo = "history_undo"
    history_redo = "history_redo"


# ---------------------------------------------------------------------------
# Error codes
# ---------------------------------------------------------------------------

JSON_PARSE_FAILED = "json_parse_failed"
SCHEMA_INVALID = "schema_invalid"
UNRESOLVED_INTEGRITY_ERRORS = "unresolved_integrity_errors"


# ---------------------------------------------------------------------------
# Context truncation
# ---------------------------------------------------------------------------

_MAX_VALUE_LEN = 256
_MAX_LIST_LEN = 50


def clip_context(context: dict[str, Any]) -> dict[str, Any]:
    """Return a copy of *context* with oversized values shortened.

    Rules:
    - String values longer than 256 chars are truncated.
    - Lists longer than 50 items keep the first 50 plus a count marker.
    - Nested dicts are clipped recursively.
    """
    return {k: _clip_value(v) for k, v in context.items()}


def _clip_value(v: Any) -> Any:
    if isinstance(v, dict):
        return clip_context(v)
    if isinstance(v, (list, tuple)):
        items = [_clip_value(item) for item in v[:_MAX_LIST_LEN]]
        if len(v) > _MAX_LIST_LEN:
            items.append(f"...[{len(v) - _MAX_LIST_LEN} more]")
        return items
    if isinstance(v, str) and len(v) > _MAX_VALUE_LEN:
        return v[:_MAX_VALUE_LEN] + "...[truncated]"
    return v


# ---------------------------------------------------------------------------
# Attribution invariants
# ---------------------------------------------------------------------------

_BOOK_EVENT_REQUIRED = {"book_id"}
_SHEET_EVENT_REQUIRED = {"book_id", "sheet_id"}

_EVENT_REQUIRED_KEYS: dict[str, set[str]] = {
    EventType.workspace_loaded.value: {"workspace_path"},
    EventType.workspace_load_failed.value: {"workspace_path"},
    EventType.workspace_saved.value: {"workspace_path"},
    EventType.workspace_save_blocked.value: {"workspace_path"},
    EventType.integrity_issues_detected.value: set(),
    EventType.integrity_repaired.value: set(),
    EventType.book_created.value: _BOOK_EVENT_REQUIRED,
    EventType.book_renamed.value: _BOOK_EVENT_REQUIRED,
    EventType.book_deleted.value: _BOOK_EVENT_REQUIRED,
    EventType.sheet_created.value: _SHEET_EVENT_REQUIRED,
    EventType.sheet_renamed.value: _SHEET_EVENT_REQUIRED,
    EventType.sheet_deleted.value: _SHEET_EVENT_REQUIRED,
    EventType.cells_updated.value: _SHEET_EVENT_REQUIRED,
    EventType.history_undo.value: set(),
    EventType.history_redo.value: set(),
}


def _validate_attribution(event: SheetbookEvent) -> SheetbookEvent:
    """Check required context keys; downgrade to warning if missing."""
    event_type = event.event_type.value if isinstance(event.event_type, EventType) else event.event_type
    required = _EVENT_REQUIRED_KEYS.get(event_type, set())
    if not required:
        return event
    missing = required - set(event.context.keys())
    if missing:
        ctx = dict(event.context)
        ctx["_missing_attribution"] = sorted(missing)
        return event.model_copy(update={"level": EventLevel.warning, "context": ctx})
    return event


# ---------------------------------------------------------------------------
# Event model
# ---------------------------------------------------------------------------


def _utc_now() -> str:
    """Return current UTC timestamp in ISO-8601 with Z suffix."""
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


class SheetbookEvent(BaseModel):
    """A single structured log event."""

    schema_version: int = 1
    ts: str = Field(default_factory=_utc_now)
    level: EventLevel
    event_type: EventType
    context: dict[str, Any] = Field(default_factory=dict)
    message: str = ""
    error_code: str | None = None


# ---------------------------------------------------------------------------
# Module-level sink reference
# ---------------------------------------------------------------------------

# Lazily initialised when ``set_workspace_dir`` is called.
_sink: Any = None  # EventSink | None


def set_workspace_dir(workspace_dir: Any, config: dict[str, Any] | None = None) -> None:
    """Configure the module-level event sink for a workspace directory.

    This should be called early in a CLI command or service start.  If
    it is never called, ``emit()`` silently discards events.

    Reads ``logging_fsync`` and ``logging_tail_bytes`` from *config*, or
    from ``sheetbook.yaml`` when no config is passed.
    """
    global _sink
    from pathlib import Path

    from sheetbook.logging.sink import EventSink

    if config is None:
        try:
            from sheetbook.config import load_workspace_config

            config = load_workspace_config(Path(workspace_dir))
        except Exception:
            config = {}

    fsync = bool(config.get("logging_fsync", False))
    tail_bytes = config.get("logging_tail_bytes")
    _sink = EventSink(
        Path(workspace_dir),
        fsync=fsync,
        tail_bytes=int(tail_bytes) if tail_bytes is not None else None,
    )


def clear_sink() -> None:
    """Detach the module-level sink; later events are discarded."""
    global _sink
    _sink = None


def get_sink() -> Any:
    """Return the module-level sink, or None."""
    return _sink


# ---------------------------------------------------------------------------
# Rate-limited stderr warnings
# ---------------------------------------------------------------------------

_last_stderr_ts: float = 0.0
_STDERR_INTERVAL_SECS = 60.0


def _stderr_warning(msg: str) -> None:
    """Print a warning to stderr, rate-limited to one per 60 seconds."""
    global _last_stderr_ts
    now = time.monotonic()
    if now - _last_stderr_ts < _STDERR_INTERVAL_SECS:
        return
    _last_stderr_ts = now
    try:
        print(f"[sheetbook] {msg}", file=sys.stderr)
    except Exception:
        pass


# ---------------------------------------------------------------------------
# Safe emit helpers
# ---------------------------------------------------------------------------


def emit(event: SheetbookEvent) -> None:
    """Append an event to the workspace event log.

    **Never raises.**  On failure, prints a rate-limited warning to stderr.

    Applies context clipping and attribution validation before writing.
    """
    try:
        sink = get_sink()
        if sink is None:
            return
        event = event.model_copy(update={"context": clip_context(event.context)})
        event = _validate_attribution(event)
        sink.write(event)
    except Exception:
        _stderr_warning(f"logging failed: {traceback.format_exc()}")


def emit_info(
    event_type: EventType,
    message: str,
    context: dict[str, Any] | None = None,
) -> None:
    """Convenience: emit an info-level event."""
    emit(
        SheetbookEvent(
            level=EventLevel.info,
            event_type=event_type,
            message=message,
            context=context or {},
        )
    )


def emit_warning(
    event_type: EventType,
    message: str,
    context: dict[str, Any] | None = None,
    *,
    error_code: str | None = None,
) -> None:
    """Convenience: emit a warning-level event."""
    emit(
        SheetbookEvent(
            level=EventLevel.warning,
            event_type=event_type,
            message=message,
            context=context or {},
            error_code=error_code,
        )
    )


def emit_error(
    event_type: EventType,
    message: str,
    context: dict[str, Any] | None = None,
    *,
    error_code: str | None = None,
) -> None:
    """Convenience: emit an error-level event."""
    emit(
        SheetbookEvent(
            level=EventLevel.error,
            event_type=event_type,
            message=message,
            context=context or {},
            error_code=error_code,
        )
    )
