"""Document model for ``workspace.json`` and ``books/{bookId}.json``.

Python attributes are snake_case; the on-disk JSON uses camelCase aliases.
Unknown keys are kept (``extra="allow"``), null values included, so a
load/save round trip never drops data written by another tool.  Declared
fields that are None are omitted on output.
"""

from __future__ import annotations

from typing import Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, SerializerFunctionWrapHandler, model_serializer
from pydantic.alias_generators import to_camel


EntityId = str

ThemePreference = Literal["light", "dark", "system"]

CellType = Literal["string", "number", "boolean", "date", "formula", "empty"]

CellValue = Union[bool, int, float, str, None]

# order is a JSON number; NaN/Infinity survive parsing so drift can be detected.
OrderValue = Union[int, float]


class DocumentModel(BaseModel):
    """Base for every persisted document fragment."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
        ser_json_inf_nan="constants",
    )

    @model_serializer(mode="wrap")
    def serialize_document(self, handler: SerializerFunctionWrapHandler) -> dict[str, Any]:
        # declared fields holding None are left out; unknown keys are kept as-is
        data = handler(self)
        fields = type(self).model_fields
        declared = set(fields) | {f.alias for f in fields.values() if f.alias}
        return {k: v for k, v in data.items() if v is not None or k not in declared}


# ---------------------------------------------------------------------------
# workspace.json
# ---------------------------------------------------------------------------


class WorkspaceSettings(DocumentModel):
    theme: ThemePreference | None = None
    sidebar_width: int | float | None = None
    recent_book_ids: list[EntityId] | None = None
    recent_sheet_ids: list[EntityId] | None = None


class WorkspaceMeta(DocumentModel):
    id: EntityId
    name: str
    created_at: str
    updated_at: str | None = None
    settings: WorkspaceSettings = Field(default_factory=WorkspaceSettings)


class FolderMeta(DocumentModel):
    id: EntityId
    name: str
    parent_id: EntityId | None = None
    order: OrderValue
    metadata: dict[str, Any] | None = None


class BookReference(DocumentModel):
    """Lightweight pointer from the workspace index to a book file."""

    id: EntityId
    name: str
    folder_id: EntityId | None = None
    order: OrderValue
    data_path: str
    thumb_path: str | None = None
    active_sheet_id: EntityId | None = None
    created_at: str
    updated_at: str
    metadata: dict[str, Any] | None = None


class WorkspaceFile(DocumentModel):
    schema_version: str
    workspace: WorkspaceMeta
    folders: list[FolderMeta] = Field(default_factory=list)
    books: list[BookReference] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# books/{bookId}.json
# ---------------------------------------------------------------------------


class GridSize(DocumentModel):
    rows: int = Field(ge=0)
    cols: int = Field(ge=0)


class CellData(DocumentModel):
    value: CellValue = None
    type: CellType
    format: str | None = None
    formula: str | None = None
    comment: str | None = None
    metadata: dict[str, Any] | None = None


RowData = dict[str, CellData]


class SheetSettings(DocumentModel):
    locked: bool | None = None
    tab_color: str | None = None


class SheetData(DocumentModel):
    id: EntityId
    name: str
    grid_size: GridSize
    settings: SheetSettings = Field(default_factory=SheetSettings)
    rows: dict[str, RowData] = Field(default_factory=dict)


class BookProperties(DocumentModel):
    default_format: str | None = None
    locked: bool | None = None


class BookMeta(DocumentModel):
    id: EntityId
    name: str
    created_at: str
    updated_at: str | None = None
    properties: BookProperties = Field(default_factory=BookProperties)


class BookFile(DocumentModel):
    schema_version: str
    book: BookMeta
    sheets: list[SheetData] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# In-memory aggregate
# ---------------------------------------------------------------------------


class LoadedWorkspace(BaseModel):
    file_path: str
    data: WorkspaceFile


class LoadedBook(BaseModel):
    file_path: str
    data: BookFile


class Snapshot(BaseModel):
    """The workspace index plus every loaded book file, as one value.

    A snapshot handed to a caller is never mutated afterwards; every edit
    produces a new ``Snapshot`` that shares untouched subtrees.
    """

    workspace: LoadedWorkspace
    books: list[LoadedBook] = Field(default_factory=list)

    def find_book(self, book_id: str) -> LoadedBook | None:
        """Return the loaded book whose internal id is *book_id*."""
        for entry in self.books:
            if entry.data.book.id == book_id:
                return entry
        return None

    def find_reference(self, book_id: str) -> BookReference | None:
        """Return the workspace reference with id *book_id*."""
        for ref in self.workspace.data.books:
            if ref.id == book_id:
                return ref
        return None
