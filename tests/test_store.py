"""Tests for the mutation and history store."""

from __future__ import annotations

import threading

import pytest

from sheetbook.errors import BookNotFoundError, InvalidNameError, SheetNotFoundError
from sheetbook.ids import SequentialIdGenerator
from sheetbook.logging.events import EventType, set_workspace_dir
from sheetbook.schema import CellData
from sheetbook.store import (
    CellUpdate,
    Selection,
    StoreChange,
    WorkspaceStore,
    derive_initial_selection,
    parse_cell_input,
)

from conftest import FIXED_NOW, add_book


@pytest.fixture
def store(snapshot, fixed_clock) -> WorkspaceStore:
    return WorkspaceStore(
        snapshot, id_generator=SequentialIdGenerator(start=100), clock=fixed_clock
    )


def _cell(store: WorkspaceStore, row: str, col: str, book_index: int = 0, sheet_index: int = 0):
    rows = store.snapshot.books[book_index].data.sheets[sheet_index].rows
    return rows.get(row, {}).get(col)


# ---------------------------------------------------------------------------
# Cell input
# ---------------------------------------------------------------------------


class TestParseCellInput:
    @pytest.mark.parametrize(
        "raw,value",
        [("42", 42), ("-7", -7), (" 3 ", 3), ("3.5", 3.5), ("1e3", 1000.0), ("+2", 2)],
    )
    def test_numbers(self, raw: str, value) -> None:
        cell = parse_cell_input(raw)
        assert cell.type == "number"
        assert cell.value == value
        assert type(cell.value) is type(value)

    @pytest.mark.parametrize("raw", ["abc", "1_000", "nan", "inf", "-Infinity", "12abc"])
    def test_strings_keep_raw_text(self, raw: str) -> None:
        cell = parse_cell_input(raw)
        assert cell.type == "string"
        assert cell.value == raw

    def test_digit_run_beyond_float_range_is_string(self) -> None:
        raw = "9" * 5000
        cell = parse_cell_input(raw)
        assert cell.type == "string"
        assert cell.value == raw

    def test_long_integer_within_float_range(self) -> None:
        raw = "1" + "0" * 30
        assert parse_cell_input(raw).value == 10**30

    def test_string_is_not_trimmed(self) -> None:
        assert parse_cell_input("  hi ").value == "  hi "

    @pytest.mark.parametrize("raw", ["", "   ", "\t\n"])
    def test_blank_clears(self, raw: str) -> None:
        assert parse_cell_input(raw) is None


# ---------------------------------------------------------------------------
# Selection
# ---------------------------------------------------------------------------


class TestSelection:
    def test_initial_selection(self, store) -> None:
        assert store.selection == Selection(book_id="book-001", sheet_id="sheet-001")

    def test_initial_selection_skips_stale_active_sheet(self, snapshot) -> None:
        snapshot.workspace.data.books[0].active_sheet_id = "gone"
        assert derive_initial_selection(snapshot).sheet_id == "sheet-001"

    def test_empty_workspace(self, snapshot) -> None:
        snapshot.workspace.data.books = []
        snapshot.books = []
        assert derive_initial_selection(snapshot) == Selection()

    def test_select_is_not_recorded(self, snapshot, fixed_clock) -> None:
        add_book(snapshot, "book-002", "sheet-002", order=1)
        store = WorkspaceStore(snapshot, clock=fixed_clock)

        selection = store.select("book-002")

        assert selection == Selection(book_id="book-002", sheet_id="sheet-002")
        assert not store.can_undo

    def test_select_unknown(self, store) -> None:
        with pytest.raises(BookNotFoundError):
            store.select("nope")
        with pytest.raises(SheetNotFoundError):
            store.select("book-001", "nope")


# ---------------------------------------------------------------------------
# Cell updates
# ---------------------------------------------------------------------------


class TestApplyCellUpdates:
    def test_write_number_and_string(self, store) -> None:
        result = store.apply_cell_updates([
            CellUpdate(row_key="5", column_key="B", raw_value="12"),
            {"row_key": "5", "column_key": "C", "raw_value": "hello"},
        ])

        assert result is store.snapshot
        assert _cell(store, "5", "B") == CellData(value=12, type="number")
        assert _cell(store, "5", "C") == CellData(value="hello", type="string")
        assert store.snapshot.books[0].data.book.updated_at == FIXED_NOW
        assert store.snapshot.workspace.data.workspace.updated_at == FIXED_NOW
        assert store.can_undo

    def test_overwrite_keeps_format(self, store) -> None:
        store.apply_cell_updates([CellUpdate(row_key="2", column_key="A", raw_value="250")])

        cell = _cell(store, "2", "A")
        assert cell.value == 250
        assert cell.format == "currency"

    def test_blank_deletes_cell_and_empty_row(self, store) -> None:
        store.apply_cell_updates([
            CellUpdate(row_key="1", column_key="A", raw_value=""),
            CellUpdate(row_key="1", column_key="C", raw_value="  "),
        ])

        assert "1" not in store.snapshot.books[0].data.sheets[0].rows

    def test_idempotent_commit(self, store, snapshot) -> None:
        before = store.snapshot

        result = store.apply_cell_updates([
            CellUpdate(row_key="1", column_key="A", raw_value="Revenue"),
            CellUpdate(row_key="2", column_key="A", raw_value="100"),
            CellUpdate(row_key="9", column_key="Z", raw_value=""),
        ])

        assert result is None
        assert store.snapshot is before
        assert not store.can_undo
        assert store.snapshot.books[0].data.book.updated_at == snapshot.books[0].data.book.updated_at

    def test_batch_that_restores_original_records_nothing(self, store) -> None:
        before = store.snapshot

        result = store.apply_cell_updates([
            CellUpdate(row_key="1", column_key="A", raw_value="5"),
            CellUpdate(row_key="1", column_key="A", raw_value="Revenue"),
            CellUpdate(row_key="8", column_key="B", raw_value="tmp"),
            CellUpdate(row_key="8", column_key="B", raw_value=""),
        ])

        assert result is None
        assert store.snapshot is before
        assert not store.can_undo

    def test_batch_that_drops_formula_is_a_change(self, store) -> None:
        rows = store.snapshot.books[0].data.sheets[0].rows
        rows["1"]["A"] = CellData(value="Revenue", type="string", formula='="Revenue"')

        result = store.apply_cell_updates([
            CellUpdate(row_key="1", column_key="A", raw_value="5"),
            CellUpdate(row_key="1", column_key="A", raw_value="Revenue"),
        ])

        assert result is not None
        assert _cell(store, "1", "A").formula is None

    def test_huge_digit_run_stored_as_string(self, store) -> None:
        store.apply_cell_updates([CellUpdate(row_key="3", column_key="A", raw_value="9" * 5000)])
        assert _cell(store, "3", "A").type == "string"

    def test_bool_is_not_equal_to_number(self, store) -> None:
        store.apply_cell_updates([CellUpdate(row_key="7", column_key="A", raw_value="1")])
        rows = store.snapshot.books[0].data.sheets[0].rows
        rows["7"]["A"] = CellData(value=True, type="number")

        assert store.apply_cell_updates([CellUpdate(row_key="7", column_key="A", raw_value="1")]) is not None

    @pytest.mark.parametrize(
        "row,col",
        [("0", "A"), ("-1", "A"), ("x", "A"), ("03", "A"), (" 3", "A"), ("1", "a"), ("1", "A1"), ("1", ""),
         ("1", "A\n"), ("3\n", "A")],
    )
    def test_bad_position_rejects_whole_batch(self, store, row: str, col: str) -> None:
        before = store.snapshot
        with pytest.raises(ValueError):
            store.apply_cell_updates([
                CellUpdate(row_key="3", column_key="A", raw_value="fine"),
                CellUpdate(row_key=row, column_key=col, raw_value="bad"),
            ])
        assert store.snapshot is before
        assert not store.can_undo

    def test_unknown_target(self, store) -> None:
        update = CellUpdate(row_key="1", column_key="A", raw_value="x")
        with pytest.raises(BookNotFoundError):
            store.apply_cell_updates([update], book_id="nope")
        with pytest.raises(SheetNotFoundError):
            store.apply_cell_updates([update], sheet_id="nope")

    def test_untouched_subtrees_are_shared(self, snapshot, fixed_clock) -> None:
        add_book(snapshot, "book-002", "sheet-002", order=1)
        store = WorkspaceStore(snapshot, clock=fixed_clock)
        other = store.snapshot.books[1]

        store.apply_cell_updates([CellUpdate(row_key="1", column_key="A", raw_value="x")])

        assert store.snapshot.books[1] is other
        assert store.history[-1].snapshot is snapshot

    def test_mru_updated(self, store) -> None:
        settings = store.snapshot.workspace.data.workspace.settings
        settings.recent_sheet_ids = [f"s{i}" for i in range(25)]

        store.apply_cell_updates([CellUpdate(row_key="1", column_key="B", raw_value="x")])

        recent = store.snapshot.workspace.data.workspace.settings
        assert recent.recent_book_ids[0] == "book-001"
        assert recent.recent_sheet_ids[0] == "sheet-001"
        assert len(recent.recent_sheet_ids) == 20


# ---------------------------------------------------------------------------
# Books and sheets
# ---------------------------------------------------------------------------


class TestBooksAndSheets:
    def test_create_book_selects_it(self, store) -> None:
        store.create_book()

        assert store.selection == Selection(book_id="book-100", sheet_id="sheet-101")
        ref = store.snapshot.find_reference("book-100")
        assert ref.name == "New Book"
        assert store.snapshot.find_book("book-100").file_path == "/books/book-100.json"

    def test_create_book_default_names_are_unique(self, store) -> None:
        store.create_book()
        store.create_book()
        names = [b.data.book.name for b in store.snapshot.books]
        assert names[-2:] == ["New Book", "New Book (2)"]

    def test_create_book_blank_name(self, store) -> None:
        with pytest.raises(InvalidNameError):
            store.create_book("  ")
        assert not store.can_undo

    def test_create_sheet(self, store) -> None:
        store.create_sheet("book-001")

        book = store.snapshot.find_book("book-001").data
        assert [s.name for s in book.sheets] == ["Dashboard", "New Sheet"]
        assert store.snapshot.find_reference("book-001").active_sheet_id == "sheet-100"
        assert store.selection.sheet_id == "sheet-100"
        assert store.snapshot.workspace.data.workspace.settings.recent_sheet_ids[0] == "sheet-100"

    def test_rename_book_updates_reference(self, store) -> None:
        store.rename_book("book-001", "  Plan B ")

        assert store.snapshot.find_book("book-001").data.book.name == "Plan B"
        assert store.snapshot.find_reference("book-001").name == "Plan B"

    @pytest.mark.parametrize("name", ["", "   ", "Project Plan"])
    def test_rename_book_noop(self, store, name: str) -> None:
        assert store.rename_book("book-001", name) is None
        assert not store.can_undo

    def test_rename_sheet(self, store) -> None:
        store.rename_sheet("book-001", "sheet-001", "Summary")
        assert store.snapshot.books[0].data.sheets[0].name == "Summary"
        assert store.rename_sheet("book-001", "sheet-001", "Summary") is None

    def test_delete_sheet_repoints_everything(self, store) -> None:
        store.create_sheet("book-001")
        store.select("book-001", "sheet-100")

        store.delete_sheet("book-001", "sheet-100")

        ref = store.snapshot.find_reference("book-001")
        assert ref.active_sheet_id == "sheet-001"
        assert store.selection == Selection(book_id="book-001", sheet_id="sheet-001")
        assert "sheet-100" not in store.snapshot.workspace.data.workspace.settings.recent_sheet_ids

    def test_delete_last_sheet_allowed(self, store) -> None:
        store.delete_sheet("book-001", "sheet-001")

        assert store.snapshot.find_book("book-001").data.sheets == []
        assert store.snapshot.find_reference("book-001").active_sheet_id is None
        assert store.selection.sheet_id is None

    def test_delete_book(self, snapshot, fixed_clock) -> None:
        add_book(snapshot, "book-002", "sheet-002", order=1)
        snapshot.workspace.data.workspace.settings.recent_book_ids = ["book-001", "book-002"]
        store = WorkspaceStore(snapshot, clock=fixed_clock)

        store.delete_book("book-001")

        assert store.snapshot.find_book("book-001") is None
        assert store.snapshot.find_reference("book-001") is None
        settings = store.snapshot.workspace.data.workspace.settings
        assert settings.recent_book_ids == ["book-002"]
        assert "sheet-001" not in settings.recent_sheet_ids
        assert store.selection == Selection(book_id="book-002", sheet_id="sheet-002")

    def test_delete_unknown_book(self, store) -> None:
        with pytest.raises(BookNotFoundError):
            store.delete_book("nope")


# ---------------------------------------------------------------------------
# History
# ---------------------------------------------------------------------------


class TestHistory:
    def test_undo_redo_restore_exact_state(self, store) -> None:
        s0, sel0 = store.snapshot, store.selection
        store.create_book("Second")
        s1, sel1 = store.snapshot, store.selection

        assert store.undo() is s0
        assert store.selection == sel0
        assert store.redo() is s1
        assert store.selection == sel1

    def test_empty_stacks(self, store) -> None:
        assert store.undo() is None
        assert store.redo() is None

    def test_new_edit_clears_future(self, store) -> None:
        store.apply_cell_updates([CellUpdate(row_key="3", column_key="A", raw_value="1")])
        store.undo()
        assert store.can_redo

        store.apply_cell_updates([CellUpdate(row_key="3", column_key="A", raw_value="2")])

        assert not store.can_redo

    def test_history_capped_with_fifo_eviction(self, store) -> None:
        snapshots = [store.snapshot]
        for i in range(150):
            store.apply_cell_updates([CellUpdate(row_key="1", column_key="B", raw_value=str(i))])
            snapshots.append(store.snapshot)

        history = store.history
        assert len(history) == 100
        assert history[0].snapshot is snapshots[50]
        assert history[-1].snapshot is snapshots[149]

        for _ in range(100):
            assert store.undo() is not None
        assert store.undo() is None
        assert store.snapshot is snapshots[50]

    def test_configured_history_limit(self, snapshot, fixed_clock) -> None:
        store = WorkspaceStore(snapshot, clock=fixed_clock, config={"max_history_entries": 3})
        for i in range(5):
            store.apply_cell_updates([CellUpdate(row_key="1", column_key="B", raw_value=str(i))])
        assert len(store.history) == 3

    def test_reset_clears_history(self, store, snapshot) -> None:
        store.apply_cell_updates([CellUpdate(row_key="3", column_key="A", raw_value="1")])
        store.reset(snapshot)
        assert not store.can_undo
        assert store.snapshot is snapshot

    def test_concurrent_edits_are_serialised(self, store) -> None:
        def worker(col: str) -> None:
            for i in range(20):
                store.apply_cell_updates(
                    [CellUpdate(row_key=str(i + 10), column_key=col, raw_value=str(i))]
                )

        threads = [threading.Thread(target=worker, args=(c,)) for c in "DEFG"]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        rows = store.snapshot.books[0].data.sheets[0].rows
        assert all(rows[str(i + 10)][c].value == i for i in range(20) for c in "DEFG")
        assert len(store.history) == 80


# ---------------------------------------------------------------------------
# Change notifications
# ---------------------------------------------------------------------------


class TestChangeListener:
    def test_listener_receives_committed_changes(self, snapshot, fixed_clock) -> None:
        changes: list[StoreChange] = []
        store = WorkspaceStore(snapshot, clock=fixed_clock, listener=changes.append)

        store.rename_book("book-001", "Renamed")
        store.rename_book("book-001", "Renamed")
        store.undo()

        assert [c.event_type for c in changes] == [EventType.book_renamed, EventType.history_undo]
        assert changes[0].context == {"book_id": "book-001"}
        assert changes[1].context == {"history_size": 0}

    def test_cell_change_reports_count(self, snapshot, fixed_clock) -> None:
        changes: list[StoreChange] = []
        store = WorkspaceStore(snapshot, clock=fixed_clock, listener=changes.append)

        store.apply_cell_updates([CellUpdate(row_key="4", column_key="A", raw_value="x")])

        assert changes[0].event_type is EventType.cells_updated
        assert changes[0].context == {"book_id": "book-001", "sheet_id": "sheet-001", "changed": 1}

    def test_store_writes_no_event_log(self, store, tmp_path) -> None:
        set_workspace_dir(tmp_path, {})

        store.create_book("Budget")
        store.apply_cell_updates([CellUpdate(row_key="4", column_key="A", raw_value="x")])
        store.undo()

        assert not (tmp_path / "logs" / "events.ndjson").exists()
