"""Workspace service: load, reconcile, edit, save.

This module ties the pieces together so that the CLI (and any future
front end) share one flow:

1. load ``workspace.json`` and its books,
2. detect drift and let the caller pick repairs,
3. edit through the :class:`~sheetbook.store.WorkspaceStore`,
4. save, refusing while error-severity drift remains.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from pathlib import Path
from typing import Any

from sheetbook.config import load_workspace_config
from sheetbook.errors import UnresolvedIssuesError
from sheetbook.ids import IdGenerator
from sheetbook.integrity import (
    Decision,
    IntegrityIssue,
    RepairResult,
    Severity,
    apply_integrity_repairs,
    detect_integrity_issues,
    has_blocking_issues,
    recommended_decisions,
    resolve_current_book_id,
    summarize_issues,
)
from sheetbook.jsonstore import WORKSPACE_FILENAME, load_workspace, save_workspace
from sheetbook.logging.events import (
    UNRESOLVED_INTEGRITY_ERRORS,
    EventType,
    emit_error,
    emit_info,
    emit_warning,
    set_workspace_dir,
)
from sheetbook.schema import Snapshot
from sheetbook.store import Selection, StoreChange, WorkspaceStore
from sheetbook.utils import utc_now


class WorkspaceService:
    """In-memory session over one workspace directory.

    Parameters
    ----------
    workspace_path : Path
        ``workspace.json`` or the directory containing it.
    id_generator : IdGenerator | None
        Passed to the store for new book/sheet ids.
    clock : Callable[[], str] | None
        Timestamp source for the store and repairs.
    """

    def __init__(
        self,
        workspace_path: Path | str,
        *,
        id_generator: IdGenerator | None = None,
        clock: Callable[[], str] | None = None,
    ) -> None:
        path = Path(workspace_path).resolve()
        if path.is_dir():
            path = path / WORKSPACE_FILENAME
        if not path.exists():
            raise FileNotFoundError(f"No {WORKSPACE_FILENAME} at {path}")

        self.workspace_path = path
        self.workspace_dir = path.parent
        self.config: dict[str, Any] = load_workspace_config(self.workspace_dir)
        set_workspace_dir(self.workspace_dir, self.config)

        self._clock = clock or utc_now
        snapshot = load_workspace(path)
        self.store = WorkspaceStore(
            snapshot,
            id_generator=id_generator,
            clock=self._clock,
            config=self.config,
            listener=self._log_change,
        )
        self.issues: list[IntegrityIssue] = self._detect(snapshot)

    # ------------------------------------------------------------------
    # Read access
    # ------------------------------------------------------------------

    @property
    def snapshot(self) -> Snapshot:
        return self.store.snapshot

    @property
    def blocked(self) -> bool:
        """True while error-severity issues remain and blocking is enabled."""
        return bool(self.config["block_save_on_errors"]) and has_blocking_issues(self.issues)

    def summary(self) -> dict[str, object]:
        return summarize_issues(self.issues)

    def _log_change(self, change: StoreChange) -> None:
        emit_info(change.event_type, change.message, change.context)

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    def _detect(self, snapshot: Snapshot) -> list[IntegrityIssue]:
        issues = detect_integrity_issues(snapshot)
        if issues:
            summary = summarize_issues(issues)
            emit_warning(
                EventType.integrity_issues_detected,
                f"Detected {summary['total']} integrity issue(s)",
                {"workspace_path": str(self.workspace_path), **summary},
            )
        return issues

    def refresh_issues(self) -> list[IntegrityIssue]:
        """Re-run detection against the current snapshot."""
        self.issues = self._detect(self.store.snapshot)
        return self.issues

    def resolve(self, decisions: Mapping[str, Decision | str] | None = None) -> RepairResult:
        """Apply repair *decisions* and start a fresh editing baseline.

        Without *decisions*, every issue gets its recommended repair.  The
        current selection follows any book id replacement and active-sheet
        change.  Undo history is cleared: repairs are not undoable.

        Raises:
            UnsupportedDecisionError: If a decision does not fit its issue.
        """
        if decisions is None:
            decisions = recommended_decisions(self.issues)
        result = apply_integrity_repairs(
            self.store.snapshot, self.issues, decisions, now=self._clock()
        )

        selection = self.store.selection
        book_id = resolve_current_book_id(selection.book_id, result.book_id_replacements)
        sheet_id = selection.sheet_id
        if book_id in result.sheet_selection_updates:
            sheet_id = result.sheet_selection_updates[book_id]
        if book_id is not None and result.snapshot.find_book(book_id) is not None:
            new_selection: Selection | None = Selection(book_id=book_id, sheet_id=sheet_id)
        else:
            new_selection = None

        self.store.reset(result.snapshot, new_selection)
        emit_info(
            EventType.integrity_repaired,
            f"Resolved {len(result.resolved_issue_ids)} issue(s)",
            {
                "workspace_path": str(self.workspace_path),
                "resolved": result.resolved_issue_ids,
                "book_id_replacements": result.book_id_replacements,
            },
        )
        self.issues = self._detect(result.snapshot)
        return result

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def save(self, *, save_books: bool = True) -> None:
        """Write the current snapshot to disk.

        Issues are re-detected first, so edits made since the last
        detection count toward the save gate.

        Raises:
            UnresolvedIssuesError: If error-severity issues remain and
                ``block_save_on_errors`` is set.
        """
        self.issues = detect_integrity_issues(self.store.snapshot)
        if self.blocked:
            blocking = [i.id for i in self.issues if i.severity is Severity.error]
            emit_error(
                EventType.workspace_save_blocked,
                "Save blocked by unresolved integrity errors",
                {"workspace_path": str(self.workspace_path), "issue_ids": blocking},
                error_code=UNRESOLVED_INTEGRITY_ERRORS,
            )
            raise UnresolvedIssuesError(blocking)
        save_workspace(self.store.snapshot, save_books=save_books)
