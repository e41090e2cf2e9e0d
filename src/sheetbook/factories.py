"""Default shapes for newly created books and sheets."""

from __future__ import annotations

import math
from typing import Any

from pydantic import BaseModel

from sheetbook.config import resolve_config
from sheetbook.errors import InvalidNameError
from sheetbook.ids import IdGenerator, default_id_generator
from sheetbook.schema import (
    BookFile,
    BookMeta,
    BookProperties,
    BookReference,
    GridSize,
    LoadedBook,
    SheetData,
    SheetSettings,
    Snapshot,
    WorkspaceFile,
)
from sheetbook.utils import normalize_path, push_recent, utc_now


BOOKS_DIR = "books"


class NewBookResult(BaseModel):
    workspace_data: WorkspaceFile
    book_reference: BookReference
    loaded_book: LoadedBook
    default_sheet_id: str


class NewSheetResult(BaseModel):
    book_file: BookFile
    default_sheet_id: str


def unique_name(base: str, existing: set[str] | list[str]) -> str:
    """Return *base*, or ``"base (n)"`` with the smallest free n >= 2."""
    taken = set(existing)
    if base not in taken:
        return base
    counter = 2
    while f"{base} ({counter})" in taken:
        counter += 1
    return f"{base} ({counter})"


def join_workspace_path(workspace_file_path: str, relative: str) -> str:
    """Join *relative* onto the directory of the workspace file.

    The result keeps the separator style of *workspace_file_path*: a
    Windows-style path stays backslash-separated.
    """
    use_backslash = "\\" in workspace_file_path
    directory, sep, _ = normalize_path(workspace_file_path).rpartition("/")
    rel = normalize_path(relative).lstrip("/")
    combined = f"{directory}/{rel}" if sep else rel
    return combined.replace("/", "\\") if use_backslash else combined


def _clean_name(name: str, kind: str) -> str:
    trimmed = name.strip()
    if not trimmed:
        raise InvalidNameError(kind)
    return trimmed


def empty_sheet(sheet_id: str, name: str, config: dict[str, Any]) -> SheetData:
    return SheetData(
        id=sheet_id,
        name=name,
        grid_size=GridSize(rows=config["default_rows"], cols=config["default_cols"]),
        settings=SheetSettings(),
        rows={},
    )


def next_root_order(workspace: WorkspaceFile) -> int:
    """Rank that places a new root-level book after every existing one."""
    orders = [
        ref.order
        for ref in workspace.books
        if ref.folder_id is None and math.isfinite(ref.order)
    ]
    return int(math.floor(max(orders))) + 1 if orders else 0


def default_book_name(snapshot: Snapshot, config: dict[str, Any] | None = None) -> str:
    config = resolve_config(config)
    existing = {entry.data.book.name or entry.data.book.id for entry in snapshot.books}
    return unique_name(config["default_book_name"], existing)


def build_new_book_snapshot(
    name: str,
    snapshot: Snapshot,
    *,
    id_generator: IdGenerator = default_id_generator,
    now: str | None = None,
    config: dict[str, Any] | None = None,
) -> NewBookResult:
    """Build a new book file and the workspace index that references it.

    Args:
        name: Display name for the book (trimmed; must not be empty).
        snapshot: Current snapshot; it is not modified.
        id_generator: Source of the new ``book-*`` / ``sheet-*`` ids.
        now: Timestamp to stamp on created entities.
        config: Workspace configuration overrides.

    Returns:
        The updated workspace data, the new reference, the loaded book
        (with its file path next to the workspace file), and the id of
        the book's first sheet.

    Raises:
        InvalidNameError: If *name* is blank.
    """
    trimmed = _clean_name(name, "book")
    config = resolve_config(config)
    now = now or utc_now()

    book_id = id_generator.new_id("book")
    sheet_id = id_generator.new_id("sheet")
    data_path = f"{BOOKS_DIR}/{book_id}.json"
    previous = snapshot.workspace.data

    book_file = BookFile(
        schema_version=previous.schema_version,
        book=BookMeta(
            id=book_id,
            name=trimmed,
            created_at=now,
            updated_at=now,
            properties=BookProperties(
                default_format=config["default_book_format"], locked=False
            ),
        ),
        sheets=[empty_sheet(sheet_id, config["first_sheet_name"], config)],
    )

    reference = BookReference(
        id=book_id,
        name=trimmed,
        folder_id=None,
        order=next_root_order(previous),
        data_path=data_path,
        active_sheet_id=sheet_id,
        created_at=now,
        updated_at=now,
    )

    limit = config["max_recent_ids"]
    settings = previous.workspace.settings.model_copy(
        update={
            "recent_book_ids": push_recent(previous.workspace.settings.recent_book_ids, book_id, limit),
            "recent_sheet_ids": push_recent(previous.workspace.settings.recent_sheet_ids, sheet_id, limit),
        }
    )
    workspace_data = previous.model_copy(
        update={
            "workspace": previous.workspace.model_copy(
                update={"updated_at": now, "settings": settings}
            ),
            "books": [*previous.books, reference],
        }
    )

    loaded = LoadedBook(
        file_path=join_workspace_path(snapshot.workspace.file_path, data_path),
        data=book_file,
    )
    return NewBookResult(
        workspace_data=workspace_data,
        book_reference=reference,
        loaded_book=loaded,
        default_sheet_id=sheet_id,
    )


def build_new_sheet_snapshot(
    book_file: BookFile,
    *,
    name: str | None = None,
    id_generator: IdGenerator = default_id_generator,
    now: str | None = None,
    config: dict[str, Any] | None = None,
) -> NewSheetResult:
    """Append a default-sized empty sheet to a copy of *book_file*.

    When *name* is omitted the configured default sheet name is used,
    suffixed with ``" (n)"`` if the book already has a sheet by that name.
    """
    config = resolve_config(config)
    existing = {sheet.name for sheet in book_file.sheets}
    if name is None:
        sheet_name = unique_name(config["default_sheet_name"], existing)
    else:
        sheet_name = unique_name(_clean_name(name, "sheet"), existing)

    sheet = empty_sheet(id_generator.new_id("sheet"), sheet_name, config)
    now = now or utc_now()
    updated = book_file.model_copy(
        update={
            "book": book_file.book.model_copy(update={"updated_at": now}),
            "sheets": [*book_file.sheets, sheet],
        }
    )
    return NewSheetResult(book_file=updated, default_sheet_id=sheet.id)
