"""Mutation and history store for an editing session.

:class:`WorkspaceStore` owns the live :class:`~sheetbook.schema.Snapshot`.
Every edit goes through one store operation, which builds a new snapshot
(copying only the touched path), records the previous snapshot for undo,
and returns the new value for the caller to persist.
"""

from __future__ import annotations

import math
import re
import threading
from collections import deque
from collections.abc import Callable, Iterable
from typing import Any

from pydantic import BaseModel

from sheetbook.config import resolve_config
from sheetbook.errors import BookNotFoundError, SheetNotFoundError
from sheetbook.factories import (
    build_new_book_snapshot,
    build_new_sheet_snapshot,
    default_book_name,
)
from sheetbook.grid import col_letter_to_index
from sheetbook.ids import IdGenerator, default_id_generator
from sheetbook.integrity import resolve_by_data_path
from sheetbook.logging.events import EventType
from sheetbook.schema import (
    BookFile,
    BookReference,
    CellData,
    LoadedBook,
    SheetData,
    Snapshot,
    WorkspaceFile,
)
from sheetbook.utils import push_recent, remove_from_list, utc_now


# ---------------------------------------------------------------------------
# Value types
# ---------------------------------------------------------------------------


class CellUpdate(BaseModel):
    row_key: str
    column_key: str
    raw_value: str


class Selection(BaseModel):
    book_id: str | None = None
    sheet_id: str | None = None


class HistoryEntry(BaseModel):
    snapshot: Snapshot
    selection: Selection


class StoreChange(BaseModel):
    """Description of one committed store operation, handed to the listener."""

    event_type: EventType
    message: str
    context: dict[str, Any]


ChangeListener = Callable[[StoreChange], None]


# ---------------------------------------------------------------------------
# Cell input parsing
# ---------------------------------------------------------------------------

_INT_RE = re.compile(r"[+-]?[0-9]+")
_ROW_KEY_RE = re.compile(r"[1-9][0-9]*")


def _parse_number(text: str) -> int | float | None:
    """Parse *text* as a finite number, or return None.

    Digit runs too long for a finite float are not numbers.
    """
    if "_" in text:
        return None
    try:
        num = float(text)
    except ValueError:
        return None
    if not math.isfinite(num):
        return None
    if _INT_RE.fullmatch(text):
        return int(text)
    return num


def parse_cell_input(raw_value: str) -> CellData | None:
    """Convert typed input into the cell to store.

    Returns None when the trimmed input is empty (the cell is cleared).
    Numeric input becomes a ``number`` cell; anything else is stored
    verbatim as a ``string`` cell.
    """
    trimmed = raw_value.strip()
    if not trimmed:
        return None
    number = _parse_number(trimmed)
    if number is None:
        return CellData(value=raw_value, type="string")
    return CellData(value=number, type="number")


def _check_position(update: CellUpdate) -> None:
    if not _ROW_KEY_RE.fullmatch(update.row_key):
        raise ValueError(f"Invalid row key: {update.row_key!r}")
    col_letter_to_index(update.column_key)


def _same_content(existing: CellData | None, cell: CellData) -> bool:
    if existing is None or existing.type != cell.type:
        return False
    # bool is an int subclass; 1 == True must not count as unchanged
    if isinstance(existing.value, bool) != isinstance(cell.value, bool):
        return False
    return existing.value == cell.value


def _same_cell(a: CellData, b: CellData) -> bool:
    if a is b:
        return True
    if isinstance(a.value, bool) != isinstance(b.value, bool):
        return False
    return a.model_dump() == b.model_dump()


def _same_rows(a: dict[str, dict[str, CellData]], b: dict[str, dict[str, CellData]]) -> bool:
    """True when two row maps hold the same cells, field for field."""
    if a.keys() != b.keys():
        return False
    for key, row in a.items():
        other = b[key]
        if row is other:
            continue
        if row.keys() != other.keys():
            return False
        if not all(_same_cell(cell, other[col]) for col, cell in row.items()):
            return False
    return True


# ---------------------------------------------------------------------------
# Snapshot helpers
# ---------------------------------------------------------------------------


def derive_initial_selection(snapshot: Snapshot) -> Selection:
    """Pick the book/sheet to show when a snapshot is first opened.

    The first workspace reference wins, falling back to the first loaded
    book.  The reference's active sheet is used when it exists, otherwise
    the book's first sheet.
    """
    refs = snapshot.workspace.data.books
    book_id = refs[0].id if refs else (snapshot.books[0].data.book.id if snapshot.books else None)
    if book_id is None:
        return Selection()
    entry = snapshot.find_book(book_id)
    if entry is None and refs:
        entry = resolve_by_data_path(snapshot, refs[0].data_path)
    if entry is None:
        return Selection(book_id=book_id)
    sheet_ids = [sheet.id for sheet in entry.data.sheets]
    ref = snapshot.find_reference(book_id)
    if ref is not None and ref.active_sheet_id in sheet_ids:
        return Selection(book_id=book_id, sheet_id=ref.active_sheet_id)
    return Selection(book_id=book_id, sheet_id=sheet_ids[0] if sheet_ids else None)


def _with_workspace(snapshot: Snapshot, data: WorkspaceFile) -> Snapshot:
    return snapshot.model_copy(
        update={"workspace": snapshot.workspace.model_copy(update={"data": data})}
    )


def _with_book(snapshot: Snapshot, index: int, data: BookFile) -> Snapshot:
    books = list(snapshot.books)
    books[index] = books[index].model_copy(update={"data": data})
    return snapshot.model_copy(update={"books": books})


def _with_sheet(book: BookFile, index: int, sheet: SheetData, now: str) -> BookFile:
    sheets = list(book.sheets)
    sheets[index] = sheet
    return book.model_copy(
        update={"sheets": sheets, "book": book.book.model_copy(update={"updated_at": now})}
    )


class WorkspaceStore:
    """Live snapshot plus bounded undo/redo history.

    Parameters
    ----------
    snapshot : Snapshot
        Starting snapshot (normally one that has been reconciled).
    id_generator : IdGenerator | None
        Source of new book/sheet ids.
    clock : Callable[[], str] | None
        Returns the timestamp stamped on touched entities.
    config : dict | None
        Workspace configuration (see :mod:`sheetbook.config`).
    selection : Selection | None
        Initial selection; derived from the snapshot when omitted.
    listener : ChangeListener | None
        Called with a :class:`StoreChange` after each committed operation,
        outside the lock.  The store itself never logs or touches disk.

    All public methods hold the store lock, so concurrent callers are
    serialised.  Mutating operations return the new snapshot, or None when
    nothing changed (no history entry is recorded in that case).
    """

    def __init__(
        self,
        snapshot: Snapshot,
        *,
        id_generator: IdGenerator | None = None,
        clock: Callable[[], str] | None = None,
        config: dict[str, Any] | None = None,
        selection: Selection | None = None,
        listener: ChangeListener | None = None,
    ) -> None:
        self._listener = listener
        self._config = resolve_config(config)
        self._ids = id_generator or default_id_generator
        self._clock = clock or utc_now
        self._lock = threading.RLock()
        limit = self._config["max_history_entries"]
        self._history: deque[HistoryEntry] = deque(maxlen=limit)
        self._future: deque[HistoryEntry] = deque(maxlen=limit)
        self._snapshot = snapshot
        self._selection = selection or derive_initial_selection(snapshot)

    # ------------------------------------------------------------------
    # Read access
    # ------------------------------------------------------------------

    @property
    def snapshot(self) -> Snapshot:
        return self._snapshot

    @property
    def selection(self) -> Selection:
        return self._selection

    @property
    def history(self) -> list[HistoryEntry]:
        """Undo stack, oldest first."""
        with self._lock:
            return list(self._history)

    @property
    def future(self) -> list[HistoryEntry]:
        """Redo stack, oldest first (the next redo is last)."""
        with self._lock:
            return list(self._future)

    @property
    def can_undo(self) -> bool:
        return bool(self._history)

    @property
    def can_redo(self) -> bool:
        return bool(self._future)

    def _notify(self, event_type: EventType, message: str, context: dict[str, Any]) -> None:
        if self._listener is not None:
            self._listener(StoreChange(event_type=event_type, message=message, context=context))

    # ------------------------------------------------------------------
    # Session control (not recorded in history)
    # ------------------------------------------------------------------

    def reset(self, snapshot: Snapshot, selection: Selection | None = None) -> None:
        """Install *snapshot* as the new baseline and drop all history."""
        with self._lock:
            self._history.clear()
            self._future.clear()
            self._snapshot = snapshot
            self._selection = selection or derive_initial_selection(snapshot)

    def select(self, book_id: str, sheet_id: str | None = None) -> Selection:
        """Change the current selection.

        Without *sheet_id*, the book's active sheet is chosen when it
        exists, otherwise its first sheet.
        """
        with self._lock:
            _, entry, ref = self._locate(book_id)
            if entry is None:
                raise BookNotFoundError(book_id)
            sheet_ids = [sheet.id for sheet in entry.data.sheets]
            if sheet_id is None:
                if ref is not None and ref.active_sheet_id in sheet_ids:
                    sheet_id = ref.active_sheet_id
                else:
                    sheet_id = sheet_ids[0] if sheet_ids else None
            elif sheet_id not in sheet_ids:
                raise SheetNotFoundError(book_id, sheet_id)
            self._selection = Selection(book_id=book_id, sheet_id=sheet_id)
            return self._selection

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _locate(self, book_id: str | None) -> tuple[int | None, LoadedBook | None, BookReference | None]:
        """Return (index, loaded book, reference) for *book_id*.

        The loaded book is matched by id, then through the reference's
        data path.
        """
        if not book_id:
            return None, None, None
        snapshot = self._snapshot
        ref = snapshot.find_reference(book_id)
        entry = snapshot.find_book(book_id)
        if entry is None and ref is not None:
            entry = resolve_by_data_path(snapshot, ref.data_path)
        index = None
        if entry is not None:
            index = next(i for i, e in enumerate(snapshot.books) if e is entry)
        return index, entry, ref

    def _require_book(self, book_id: str | None) -> tuple[int, LoadedBook]:
        index, entry, _ = self._locate(book_id)
        if index is None or entry is None:
            raise BookNotFoundError(book_id)
        return index, entry

    @staticmethod
    def _require_sheet(entry: LoadedBook, book_id: str | None, sheet_id: str | None) -> int:
        for i, sheet in enumerate(entry.data.sheets):
            if sheet.id == sheet_id:
                return i
        raise SheetNotFoundError(book_id, sheet_id)

    def _touch_workspace(
        self,
        workspace: WorkspaceFile,
        now: str,
        *,
        book_id: str | None = None,
        sheet_id: str | None = None,
        references: list[BookReference] | None = None,
        drop_book_ids: Iterable[str] = (),
        drop_sheet_ids: Iterable[str] = (),
    ) -> WorkspaceFile:
        """Return *workspace* with MRU lists and ``updated_at`` refreshed."""
        limit = self._config["max_recent_ids"]
        settings = workspace.workspace.settings
        recent_books = remove_from_list(settings.recent_book_ids, set(drop_book_ids))
        recent_sheets = remove_from_list(settings.recent_sheet_ids, set(drop_sheet_ids))
        if book_id:
            recent_books = push_recent(recent_books, book_id, limit)
        if sheet_id:
            recent_sheets = push_recent(recent_sheets, sheet_id, limit)
        settings = settings.model_copy(
            update={"recent_book_ids": recent_books, "recent_sheet_ids": recent_sheets}
        )
        update: dict[str, Any] = {
            "workspace": workspace.workspace.model_copy(
                update={"updated_at": now, "settings": settings}
            )
        }
        if references is not None:
            update["books"] = references
        return workspace.model_copy(update=update)

    @staticmethod
    def _update_reference(
        workspace: WorkspaceFile, book_id: str, **changes: Any
    ) -> list[BookReference]:
        return [
            ref.model_copy(update=changes) if ref.id == book_id else ref
            for ref in workspace.books
        ]

    def _commit(self, snapshot: Snapshot, selection: Selection) -> Snapshot:
        self._history.append(HistoryEntry(snapshot=self._snapshot, selection=self._selection))
        self._future.clear()
        self._snapshot = snapshot
        self._selection = selection
        return snapshot

    # ------------------------------------------------------------------
    # Books
    # ------------------------------------------------------------------

    def create_book(self, name: str | None = None) -> Snapshot:
        """Create a book with one sheet at the end of the root order.

        Without *name*, a unique default name is derived.

        Raises:
            InvalidNameError: If *name* is given but blank.
        """
        with self._lock:
            current = self._snapshot
            now = self._clock()
            if name is None:
                name = default_book_name(current, self._config)
            result = build_new_book_snapshot(
                name, current, id_generator=self._ids, now=now, config=self._config
            )
            updated = _with_workspace(current, result.workspace_data).model_copy(
                update={"books": [*current.books, result.loaded_book]}
            )
            book_id = result.book_reference.id
            self._commit(updated, Selection(book_id=book_id, sheet_id=result.default_sheet_id))
        self._notify(
            EventType.book_created,
            f"Created book {result.book_reference.name!r}",
            {"book_id": book_id, "sheet_id": result.default_sheet_id},
        )
        return updated

    def rename_book(self, book_id: str, name: str) -> Snapshot | None:
        """Rename a book in both the book file and the workspace index."""
        with self._lock:
            index, entry = self._require_book(book_id)
            trimmed = name.strip()
            if not trimmed or trimmed == entry.data.book.name:
                return None
            now = self._clock()
            book = entry.data.model_copy(
                update={"book": entry.data.book.model_copy(update={"name": trimmed, "updated_at": now})}
            )
            current = _with_book(self._snapshot, index, book)
            workspace = current.workspace.data
            refs = self._update_reference(workspace, book_id, name=trimmed, updated_at=now)
            updated = _with_workspace(
                current, self._touch_workspace(workspace, now, book_id=book_id, references=refs)
            )
            self._commit(updated, self._selection)
        self._notify(EventType.book_renamed, f"Renamed book to {trimmed!r}", {"book_id": book_id})
        return updated

    def delete_book(self, book_id: str) -> Snapshot:
        """Remove a book, its reference, and every pointer to it."""
        with self._lock:
            index, entry, ref = self._locate(book_id)
            if entry is None and ref is None:
                raise BookNotFoundError(book_id)
            now = self._clock()
            current = self._snapshot
            sheet_ids = {sheet.id for sheet in entry.data.sheets} if entry is not None else set()
            books = [e for i, e in enumerate(current.books) if i != index]
            workspace = current.workspace.data
            refs = [r for r in workspace.books if r.id != book_id]
            updated = _with_workspace(
                current.model_copy(update={"books": books}),
                self._touch_workspace(
                    workspace,
                    now,
                    references=refs,
                    drop_book_ids=[book_id],
                    drop_sheet_ids=sheet_ids,
                ),
            )
            selection = self._selection
            if selection.book_id == book_id:
                selection = derive_initial_selection(updated)
            self._commit(updated, selection)
        self._notify(EventType.book_deleted, f"Deleted book {book_id}", {"book_id": book_id})
        return updated

    # ------------------------------------------------------------------
    # Sheets
    # ------------------------------------------------------------------

    def create_sheet(self, book_id: str, name: str | None = None) -> Snapshot:
        """Append a default-sized sheet to a book and make it active."""
        with self._lock:
            index, entry = self._require_book(book_id)
            now = self._clock()
            result = build_new_sheet_snapshot(
                entry.data, name=name, id_generator=self._ids, now=now, config=self._config
            )
            sheet_id = result.default_sheet_id
            current = _with_book(self._snapshot, index, result.book_file)
            workspace = current.workspace.data
            refs = self._update_reference(workspace, book_id, active_sheet_id=sheet_id, updated_at=now)
            updated = _with_workspace(
                current,
                self._touch_workspace(
                    workspace, now, book_id=book_id, sheet_id=sheet_id, references=refs
                ),
            )
            self._commit(updated, Selection(book_id=book_id, sheet_id=sheet_id))
        self._notify(
            EventType.sheet_created,
            f"Created sheet in book {book_id}",
            {"book_id": book_id, "sheet_id": sheet_id},
        )
        return updated

    def rename_sheet(self, book_id: str, sheet_id: str, name: str) -> Snapshot | None:
        with self._lock:
            index, entry = self._require_book(book_id)
            sheet_index = self._require_sheet(entry, book_id, sheet_id)
            sheet = entry.data.sheets[sheet_index]
            trimmed = name.strip()
            if not trimmed or trimmed == sheet.name:
                return None
            now = self._clock()
            book = _with_sheet(entry.data, sheet_index, sheet.model_copy(update={"name": trimmed}), now)
            current = _with_book(self._snapshot, index, book)
            updated = _with_workspace(
                current,
                self._touch_workspace(
                    current.workspace.data, now, book_id=book_id, sheet_id=sheet_id
                ),
            )
            self._commit(updated, self._selection)
        self._notify(
            EventType.sheet_renamed,
            f"Renamed sheet to {trimmed!r}",
            {"book_id": book_id, "sheet_id": sheet_id},
        )
        return updated

    def delete_sheet(self, book_id: str, sheet_id: str) -> Snapshot:
        """Remove a sheet and repoint anything that referenced it.

        Removing the last sheet is allowed here; callers that want to
        forbid zero-sheet books must check before calling.
        """
        with self._lock:
            index, entry = self._require_book(book_id)
            sheet_index = self._require_sheet(entry, book_id, sheet_id)
            now = self._clock()
            remaining = [s for i, s in enumerate(entry.data.sheets) if i != sheet_index]
            fallback = remaining[0].id if remaining else None
            book = entry.data.model_copy(
                update={
                    "sheets": remaining,
                    "book": entry.data.book.model_copy(update={"updated_at": now}),
                }
            )
            current = _with_book(self._snapshot, index, book)
            workspace = current.workspace.data
            refs = [
                ref.model_copy(update={"active_sheet_id": fallback, "updated_at": now})
                if ref.id == book_id and ref.active_sheet_id == sheet_id
                else ref
                for ref in workspace.books
            ]
            updated = _with_workspace(
                current,
                self._touch_workspace(
                    workspace,
                    now,
                    book_id=book_id,
                    references=refs,
                    drop_sheet_ids=[sheet_id],
                ),
            )
            selection = self._selection
            if selection.book_id == book_id and selection.sheet_id == sheet_id:
                selection = Selection(book_id=book_id, sheet_id=fallback)
            self._commit(updated, selection)
        self._notify(
            EventType.sheet_deleted,
            f"Deleted sheet {sheet_id}",
            {"book_id": book_id, "sheet_id": sheet_id},
        )
        return updated

    # ------------------------------------------------------------------
    # Cells
    # ------------------------------------------------------------------

    def apply_cell_updates(
        self,
        updates: Iterable[CellUpdate | dict[str, str]],
        *,
        book_id: str | None = None,
        sheet_id: str | None = None,
    ) -> Snapshot | None:
        """Write a batch of cell edits to one sheet.

        Targets the current selection unless *book_id* / *sheet_id* are
        given.  Blank input clears the cell (and its row once empty).
        Writes that leave ``(value, type)`` unchanged are ignored; if the
        whole batch changes nothing, returns None and records no history.

        Raises:
            BookNotFoundError, SheetNotFoundError: Unknown target.
            ValueError: A row key is not a positive integer or a column key
                is not a column label.  Nothing is applied.
        """
        with self._lock:
            book_id = book_id or self._selection.book_id
            sheet_id = sheet_id or self._selection.sheet_id
            index, entry = self._require_book(book_id)
            sheet_index = self._require_sheet(entry, book_id, sheet_id)
            batch = [u if isinstance(u, CellUpdate) else CellUpdate(**u) for u in updates]
            for update in batch:
                _check_position(update)

            sheet = entry.data.sheets[sheet_index]
            rows = dict(sheet.rows)
            changed = 0
            for update in batch:
                cell = parse_cell_input(update.raw_value)
                row = rows.get(update.row_key)
                existing = row.get(update.column_key) if row else None
                if cell is None:
                    if existing is None:
                        continue
                    row = {k: v for k, v in row.items() if k != update.column_key}
                    if row:
                        rows[update.row_key] = row
                    else:
                        del rows[update.row_key]
                    changed += 1
                    continue
                if _same_content(existing, cell):
                    continue
                if existing is not None:
                    cell = existing.model_copy(
                        update={"value": cell.value, "type": cell.type, "formula": None}
                    )
                rows[update.row_key] = {**(row or {}), update.column_key: cell}
                changed += 1

            if not changed or _same_rows(rows, sheet.rows):
                return None

            now = self._clock()
            book = _with_sheet(entry.data, sheet_index, sheet.model_copy(update={"rows": rows}), now)
            current = _with_book(self._snapshot, index, book)
            updated = _with_workspace(
                current,
                self._touch_workspace(
                    current.workspace.data, now, book_id=book_id, sheet_id=sheet_id
                ),
            )
            self._commit(updated, self._selection)
        self._notify(
            EventType.cells_updated,
            f"Updated {changed} cell(s)",
            {"book_id": book_id, "sheet_id": sheet_id, "changed": changed},
        )
        return updated

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    def undo(self) -> Snapshot | None:
        """Restore the previous snapshot and selection; None if none."""
        with self._lock:
            if not self._history:
                return None
            entry = self._history.pop()
            self._future.append(HistoryEntry(snapshot=self._snapshot, selection=self._selection))
            self._snapshot = entry.snapshot
            self._selection = entry.selection
            remaining = len(self._history)
        self._notify(EventType.history_undo, "Undo", {"history_size": remaining})
        return entry.snapshot

    def redo(self) -> Snapshot | None:
        """Re-apply the last undone snapshot; None if none."""
        with self._lock:
            if not self._future:
                return None
            entry = self._future.pop()
            self._history.append(HistoryEntry(snapshot=self._snapshot, selection=self._selection))
            self._snapshot = entry.snapshot
            self._selection = entry.selection
            remaining = len(self._future)
        self._notify(EventType.history_redo, "Redo", {"future_size": remaining})
        return entry.snapshot
