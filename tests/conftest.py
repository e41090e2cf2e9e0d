"""Shared fixtures: the sample workspace as an in-memory snapshot."""

from __future__ import annotations

import copy
from pathlib import Path

import pytest

from sheetbook.jsonstore import SAMPLE_BOOK, SAMPLE_WORKSPACE
from sheetbook.schema import BookFile, LoadedBook, LoadedWorkspace, Snapshot, WorkspaceFile

FIXED_NOW = "2025-03-01T12:00:00.000Z"


def make_snapshot() -> Snapshot:
    return Snapshot(
        workspace=LoadedWorkspace(
            file_path="/workspace.json",
            data=WorkspaceFile.model_validate(copy.deepcopy(SAMPLE_WORKSPACE)),
        ),
        books=[
            LoadedBook(
                file_path="/books/book-001.json",
                data=BookFile.model_validate(copy.deepcopy(SAMPLE_BOOK)),
            )
        ],
    )


def add_book(snapshot: Snapshot, book_id: str, sheet_id: str, *, order: int = 0) -> None:
    """Append a second book (file + reference) in place."""
    raw = copy.deepcopy(SAMPLE_BOOK)
    raw["book"]["id"] = book_id
    raw["book"]["name"] = f"Book {book_id}"
    raw["sheets"][0]["id"] = sheet_id
    raw["sheets"][0]["name"] = "Other"
    snapshot.books.append(
        LoadedBook(file_path=f"/books/{book_id}.json", data=BookFile.model_validate(raw))
    )
    ref = snapshot.workspace.data.books[0].model_copy(
        update={
            "id": book_id,
            "name": f"Book {book_id}",
            "order": order,
            "data_path": f"books/{book_id}.json",
            "active_sheet_id": sheet_id,
        }
    )
    snapshot.workspace.data.books.append(ref)


@pytest.fixture
def snapshot() -> Snapshot:
    return make_snapshot()


@pytest.fixture
def fixed_clock():
    return lambda: FIXED_NOW


@pytest.fixture(autouse=True)
def _detach_event_sink():
    """Keep the module-level event sink from leaking between tests."""
    from sheetbook.logging.events import clear_sink

    clear_sink()
    yield
    clear_sink()


@pytest.fixture
def workspace_dir(tmp_path: Path) -> Path:
    """A scaffolded sample workspace on disk."""
    from sheetbook.jsonstore import scaffold_workspace

    root = tmp_path / "ws"
    scaffold_workspace(root)
    return root
