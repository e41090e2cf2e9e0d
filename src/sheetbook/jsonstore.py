"""Read and write the on-disk workspace layout.

Layout::

    <workspace dir>/
      workspace.json
      sheetbook.yaml        (optional)
      books/<bookId>.json

Reads parse and validate; writes re-validate, then replace the target
atomically so readers never observe a partially written file.
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any

from sheetbook.config import CONFIG_FILENAME, DEMO_SHEETBOOK_CONFIG
from sheetbook.errors import JsonParseError, SchemaValidationError, SheetbookError
from sheetbook.logging.events import (
    JSON_PARSE_FAILED,
    SCHEMA_INVALID,
    EventType,
    emit_error,
    emit_info,
)
from sheetbook.schema import (
    BookFile,
    DocumentModel,
    LoadedBook,
    LoadedWorkspace,
    Snapshot,
    WorkspaceFile,
)
from sheetbook.validation import assert_book_file, assert_workspace_file


WORKSPACE_FILENAME = "workspace.json"


# ---------------------------------------------------------------------------
# Low-level helpers
# ---------------------------------------------------------------------------


def _read_json(path: Path) -> Any:
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise JsonParseError(str(path), str(exc)) from exc


def _atomic_write(path: Path, model: DocumentModel) -> None:
    """Write *model* as 2-space indented camelCase JSON via tmp + ``os.replace``."""
    path.parent.mkdir(parents=True, exist_ok=True)
    text = model.model_dump_json(by_alias=True, indent=2) + "\n"
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    try:
        tmp_path.write_text(text, encoding="utf-8")
        os.replace(str(tmp_path), str(path))
    finally:
        tmp_path.unlink(missing_ok=True)


# ---------------------------------------------------------------------------
# Single documents
# ---------------------------------------------------------------------------


def read_workspace_file(path: Path | str) -> WorkspaceFile:
    """Read and validate a ``workspace.json``.

    Raises:
        JsonParseError: The file is not valid JSON.
        SchemaValidationError: The JSON does not match the workspace shape.
    """
    return assert_workspace_file(_read_json(Path(path)))


def read_book_file(path: Path | str) -> BookFile:
    """Read and validate a book file.

    Raises:
        JsonParseError: The file is not valid JSON.
        SchemaValidationError: The JSON does not match the book shape.
    """
    return assert_book_file(_read_json(Path(path)))


def write_workspace_file(path: Path | str, data: WorkspaceFile) -> None:
    """Validate and atomically write a workspace index."""
    validated = assert_workspace_file(data.model_dump(by_alias=True))
    _atomic_write(Path(path), validated)


def write_book_file(path: Path | str, data: BookFile) -> None:
    """Validate and atomically write a book file."""
    validated = assert_book_file(data.model_dump(by_alias=True))
    _atomic_write(Path(path), validated)


# ---------------------------------------------------------------------------
# Whole workspace
# ---------------------------------------------------------------------------


def load_workspace(workspace_path: Path | str) -> Snapshot:
    """Load ``workspace.json`` and every book it references.

    *workspace_path* may be the workspace file or its directory.  Book
    files are resolved against the workspace directory using each
    reference's ``dataPath``.  Drift between the index and the books is
    not an error here; run detection on the result.

    Raises:
        JsonParseError, SchemaValidationError: A file is malformed.
        FileNotFoundError: The workspace file or a book file is missing.
    """
    path = Path(workspace_path)
    if path.is_dir():
        path = path / WORKSPACE_FILENAME

    try:
        workspace = read_workspace_file(path)
        books: list[LoadedBook] = []
        for ref in workspace.books:
            book_path = path.parent / ref.data_path.replace("\\", "/").lstrip("/")
            books.append(LoadedBook(file_path=str(book_path), data=read_book_file(book_path)))
    except JsonParseError as exc:
        emit_error(
            EventType.workspace_load_failed,
            str(exc),
            {"workspace_path": str(path), "file": exc.path},
            error_code=JSON_PARSE_FAILED,
        )
        raise
    except SchemaValidationError as exc:
        emit_error(
            EventType.workspace_load_failed,
            str(exc),
            {"workspace_path": str(path), "document": exc.document, "errors": exc.errors},
            error_code=SCHEMA_INVALID,
        )
        raise

    emit_info(
        EventType.workspace_loaded,
        f"Loaded workspace with {len(books)} book(s)",
        {"workspace_path": str(path), "book_count": len(books)},
    )
    return Snapshot(
        workspace=LoadedWorkspace(file_path=str(path), data=workspace),
        books=books,
    )


def save_workspace(snapshot: Snapshot, *, save_books: bool = True) -> None:
    """Persist the workspace index and (optionally) every loaded book.

    Books are written first so the index never points at a book file
    that has not been written yet.
    """
    if save_books:
        for entry in snapshot.books:
            write_book_file(entry.file_path, entry.data)
    write_workspace_file(snapshot.workspace.file_path, snapshot.workspace.data)
    emit_info(
        EventType.workspace_saved,
        "Saved workspace",
        {
            "workspace_path": snapshot.workspace.file_path,
            "book_count": len(snapshot.books) if save_books else 0,
        },
    )


# ---------------------------------------------------------------------------
# Scaffolding
# ---------------------------------------------------------------------------

SAMPLE_WORKSPACE: dict[str, Any] = {
    "schemaVersion": "1.0.0",
    "workspace": {
        "id": "workspace-001",
        "name": "Sample Workspace",
        "createdAt": "2025-02-14T08:15:00.000Z",
        "updatedAt": "2025-02-14T09:30:00.000Z",
        "settings": {
            "theme": "dark",
            "sidebarWidth": 280,
            "recentBookIds": ["book-001"],
            "recentSheetIds": ["sheet-001"],
        },
    },
    "folders": [
        {"id": "root", "name": "Root", "parentId": None, "order": 0},
        {"id": "folder-2025", "name": "2025", "parentId": "root", "order": 1},
    ],
    "books": [
        {
            "id": "book-001",
            "name": "Project Plan",
            "folderId": "root",
            "order": 0,
            "dataPath": "books/book-001.json",
            "activeSheetId": "sheet-001",
            "createdAt": "2025-02-14T08:30:00.000Z",
            "updatedAt": "2025-02-14T09:20:00.000Z",
        }
    ],
}

SAMPLE_BOOK: dict[str, Any] = {
    "schemaVersion": "1.0.0",
    "book": {
        "id": "book-001",
        "name": "Project Plan",
        "createdAt": "2025-02-14T08:30:00.000Z",
        "updatedAt": "2025-02-14T09:20:00.000Z",
        "properties": {"defaultFormat": "plain", "locked": False},
    },
    "sheets": [
        {
            "id": "sheet-001",
            "name": "Dashboard",
            "gridSize": {"rows": 100, "cols": 26},
            "settings": {"locked": False},
            "rows": {
                "1": {
                    "A": {"value": "Revenue", "type": "string"},
                    "C": {"value": "Expenses", "type": "string"},
                },
                "2": {
                    "A": {"value": 100, "type": "number", "format": "currency"},
                    "C": {"value": 30, "type": "number", "format": "currency"},
                },
            },
        }
    ],
}


def scaffold_workspace(directory: Path | str) -> Path:
    """Create a sample workspace in *directory*.

    Writes ``workspace.json``, one sample book, and ``sheetbook.yaml``.

    Returns:
        Path to the created ``workspace.json``.

    Raises:
        SheetbookError: If *directory* already holds a workspace.
    """
    root = Path(directory)
    workspace_path = root / WORKSPACE_FILENAME
    if workspace_path.exists():
        raise SheetbookError(f"Workspace already exists: {workspace_path}")
    root.mkdir(parents=True, exist_ok=True)

    workspace = assert_workspace_file(SAMPLE_WORKSPACE)
    book = assert_book_file(SAMPLE_BOOK)
    write_book_file(root / workspace.books[0].data_path, book)
    write_workspace_file(workspace_path, workspace)

    config_path = root / CONFIG_FILENAME
    if not config_path.exists():
        config_path.write_text(DEMO_SHEETBOOK_CONFIG)
    return workspace_path
