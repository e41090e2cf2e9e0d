"""Reconciliation between the workspace index and the book files.

``workspace.json`` and ``books/*.json`` are written separately and can drift
apart (manual edits, partial writes, crashes).  This module finds the drift
(:func:`detect_integrity_issues`) and applies caller-chosen repairs
(:func:`apply_integrity_repairs`).  Both functions are pure: the input
snapshot is never modified.
"""

from __future__ import annotations

import math
from collections.abc import Mapping
from enum import Enum
from typing import Union

from pydantic import BaseModel, Field, ValidationInfo, field_validator

from sheetbook.errors import UnsupportedDecisionError
from sheetbook.schema import BookReference, LoadedBook, OrderValue, Snapshot
from sheetbook.utils import normalize_path, replace_in_list, utc_now


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class IssueType(str, Enum):
    book_id_mismatch = "book-id-mismatch"
    missing_active_sheet = "missing-active-sheet"
    missing_folder_reference = "missing-folder-reference"
    invalid_order = "invalid-order"


class Severity(str, Enum):
    error = "error"
    warning = "warning"


class Decision(str, Enum):
    use_file = "useFile"
    use_workspace = "useWorkspace"
    reset = "reset"
    normalize = "normalize"
    defer = "defer"


class OrderReason(str, Enum):
    duplicate = "duplicate"
    non_finite = "non-finite"


SUPPORTED_DECISIONS: dict[IssueType, list[Decision]] = {
    IssueType.book_id_mismatch: [Decision.use_file, Decision.use_workspace, Decision.defer],
    IssueType.missing_active_sheet: [Decision.reset, Decision.defer],
    IssueType.missing_folder_reference: [Decision.reset, Decision.defer],
    IssueType.invalid_order: [Decision.normalize, Decision.defer],
}

# Decision applied by ``recommended_decisions`` (the "fix everything" choice).
_RECOMMENDED: dict[IssueType, Decision] = {
    IssueType.book_id_mismatch: Decision.use_file,
    IssueType.missing_active_sheet: Decision.reset,
    IssueType.missing_folder_reference: Decision.reset,
    IssueType.invalid_order: Decision.normalize,
}


# ---------------------------------------------------------------------------
# Issue model
# ---------------------------------------------------------------------------


class BookIdMismatchDetails(BaseModel):
    workspace_book_index: int | None = None
    workspace_id: str | None = None
    file_id: str | None = None
    file_path: str | None = None
    data_path: str | None = None


class MissingActiveSheetDetails(BaseModel):
    workspace_book_index: int | None = None
    active_sheet_id: str | None = None
    available_sheet_ids: list[str] = Field(default_factory=list)


class MissingFolderReferenceDetails(BaseModel):
    workspace_book_index: int | None = None
    folder_id: str | None = None


class InvalidOrderDetails(BaseModel):
    workspace_book_index: int | None = None
    folder_id: str | None = None
    order: OrderValue
    reason: OrderReason


IssueDetails = Union[
    BookIdMismatchDetails,
    MissingActiveSheetDetails,
    MissingFolderReferenceDetails,
    InvalidOrderDetails,
]

_DETAILS_MODELS: dict[IssueType, type[BaseModel]] = {
    IssueType.book_id_mismatch: BookIdMismatchDetails,
    IssueType.missing_active_sheet: MissingActiveSheetDetails,
    IssueType.missing_folder_reference: MissingFolderReferenceDetails,
    IssueType.invalid_order: InvalidOrderDetails,
}


class IntegrityIssue(BaseModel):
    """One detected inconsistency, with the decisions that can resolve it."""

    id: str
    type: IssueType
    severity: Severity
    message: str
    book_ref_id: str | None = None
    book_file_id: str | None = None
    supported_decisions: list[Decision]
    details: IssueDetails

    @field_validator("details", mode="before")
    @classmethod
    def _details_for_type(cls, value: object, info: ValidationInfo) -> object:
        # Plain dicts (e.g. issues read back from JSON) parse as the model
        # matching the issue type; the detail models share optional fields.
        model = _DETAILS_MODELS.get(info.data.get("type"))
        if model is not None and isinstance(value, dict):
            return model.model_validate(value)
        return value


class RepairResult(BaseModel):
    snapshot: Snapshot
    resolved_issue_ids: list[str] = Field(default_factory=list)
    book_id_replacements: dict[str, str] = Field(default_factory=dict)
    sheet_selection_updates: dict[str, str | None] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Matching helpers
# ---------------------------------------------------------------------------


def resolve_by_data_path(snapshot: Snapshot, data_path: str) -> LoadedBook | None:
    """Return the loaded book whose file path ends with *data_path*.

    Separators are normalised first and the suffix must start at a path
    boundary, so ``books/a.json`` does not match ``mybooks/a.json``.
    """
    normalized = normalize_path(data_path).lstrip("/")
    while normalized.startswith("./"):
        normalized = normalized[2:]
    if not normalized:
        return None
    for entry in snapshot.books:
        path = normalize_path(entry.file_path)
        if path == normalized or path.endswith("/" + normalized):
            return entry
    return None


def resolve_matching_book(snapshot: Snapshot, ref: BookReference) -> LoadedBook | None:
    """Return the book whose sheets the reference points into.

    Id match first, data path as fallback.  Detection and repair of the
    active-sheet pointer both go through here.
    """
    return snapshot.find_book(ref.id) or resolve_by_data_path(snapshot, ref.data_path)


def resolve_current_book_id(original_id: str | None, replacements: Mapping[str, str]) -> str | None:
    """Follow the substitution chain from *original_id* to the id in use now.

    Stops at the first id already visited, so a cyclic chain terminates.
    """
    if not original_id:
        return None
    current = original_id
    visited: set[str] = set()
    while current in replacements and current not in visited:
        visited.add(current)
        current = replacements[current]
    return current


def _order_label(order: OrderValue) -> str:
    if isinstance(order, float) and order.is_integer():
        return str(int(order))
    return str(order)


# ---------------------------------------------------------------------------
# Detection
# ---------------------------------------------------------------------------


def detect_integrity_issues(snapshot: Snapshot) -> list[IntegrityIssue]:
    """Return every inconsistency between the index and the loaded books.

    Issue ids are built from the issue type and the entity ids involved,
    so repeated passes over an unrepaired snapshot yield the same ids.
    """
    issues: list[IntegrityIssue] = []
    workspace = snapshot.workspace.data
    folder_ids = {folder.id for folder in workspace.folders}

    # (folder_id, order) -> index of the first reference holding that key
    first_holder: dict[tuple[str | None, OrderValue], int] = {}
    flagged_keys: set[tuple[str | None, OrderValue]] = set()

    for index, ref in enumerate(workspace.books):
        by_path = resolve_by_data_path(snapshot, ref.data_path)
        matching = resolve_matching_book(snapshot, ref)

        # 1. Book id mismatch
        if by_path is not None and by_path.data.book.id != ref.id:
            file_id = by_path.data.book.id
            issues.append(IntegrityIssue(
                id=f"{IssueType.book_id_mismatch.value}:{ref.id}:{file_id}",
                type=IssueType.book_id_mismatch,
                severity=Severity.error,
                message=(
                    f"Book id in workspace.json ({ref.id}) does not match "
                    f"the id inside the book file ({file_id})."
                ),
                book_ref_id=ref.id,
                book_file_id=file_id,
                supported_decisions=list(SUPPORTED_DECISIONS[IssueType.book_id_mismatch]),
                details=BookIdMismatchDetails(
                    workspace_book_index=index,
                    workspace_id=ref.id,
                    file_id=file_id,
                    file_path=by_path.file_path,
                    data_path=ref.data_path,
                ),
            ))

        # 2. Active sheet pointer
        if matching is not None and ref.active_sheet_id:
            available = [sheet.id for sheet in matching.data.sheets]
            if ref.active_sheet_id not in available:
                issues.append(IntegrityIssue(
                    id=f"{IssueType.missing_active_sheet.value}:{ref.id}",
                    type=IssueType.missing_active_sheet,
                    severity=Severity.warning,
                    message=(
                        f"activeSheetId ({ref.active_sheet_id}) of book {ref.id} "
                        "does not exist in the book file."
                    ),
                    book_ref_id=ref.id,
                    book_file_id=matching.data.book.id,
                    supported_decisions=list(SUPPORTED_DECISIONS[IssueType.missing_active_sheet]),
                    details=MissingActiveSheetDetails(
                        workspace_book_index=index,
                        active_sheet_id=ref.active_sheet_id,
                        available_sheet_ids=available,
                    ),
                ))

        # 3. Folder reference
        folder_id = ref.folder_id
        if folder_id and folder_id not in folder_ids:
            issues.append(IntegrityIssue(
                id=f"{IssueType.missing_folder_reference.value}:{ref.id}",
                type=IssueType.missing_folder_reference,
                severity=Severity.warning,
                message=f"folderId ({folder_id}) of book {ref.id} does not exist in folders.",
                book_ref_id=ref.id,
                book_file_id=matching.data.book.id if matching else None,
                supported_decisions=list(SUPPORTED_DECISIONS[IssueType.missing_folder_reference]),
                details=MissingFolderReferenceDetails(
                    workspace_book_index=index,
                    folder_id=folder_id,
                ),
            ))

        # 4. Sibling order
        order = ref.order
        if not math.isfinite(order):
            issues.append(_order_issue(
                ref, index, folder_id, order, OrderReason.non_finite,
                matching.data.book.id if matching else None,
            ))
            continue

        key = (folder_id, order)
        if key not in first_holder:
            first_holder[key] = index
            continue

        if key not in flagged_keys:
            first_index = first_holder[key]
            first_ref = workspace.books[first_index]
            first_book = snapshot.find_book(first_ref.id)
            issues.append(_order_issue(
                first_ref, first_index, folder_id, order, OrderReason.duplicate,
                first_book.data.book.id if first_book else None,
            ))
            flagged_keys.add(key)

        issues.append(_order_issue(
            ref, index, folder_id, order, OrderReason.duplicate,
            matching.data.book.id if matching else None,
        ))

    return issues


def _order_issue(
    ref: BookReference,
    index: int,
    folder_id: str | None,
    order: OrderValue,
    reason: OrderReason,
    book_file_id: str | None,
) -> IntegrityIssue:
    if reason is OrderReason.non_finite:
        message = f"order of book {ref.id} ({order}) is not a finite number."
    else:
        message = f"order={_order_label(order)} is duplicated in folder {folder_id or '(root)'}."
    return IntegrityIssue(
        id=f"{IssueType.invalid_order.value}:{ref.id}",
        type=IssueType.invalid_order,
        severity=Severity.warning,
        message=message,
        book_ref_id=ref.id,
        book_file_id=book_file_id,
        supported_decisions=list(SUPPORTED_DECISIONS[IssueType.invalid_order]),
        details=InvalidOrderDetails(
            workspace_book_index=index,
            folder_id=folder_id,
            order=order,
            reason=reason,
        ),
    )


# ---------------------------------------------------------------------------
# Decisions
# ---------------------------------------------------------------------------


def validate_decisions(
    issues: list[IntegrityIssue],
    decisions: Mapping[str, Decision | str],
) -> dict[str, Decision]:
    """Coerce *decisions* to :class:`Decision` and check them per issue.

    Decisions keyed by an id that matches no issue are dropped: they are
    stale, not wrong.

    Raises:
        UnsupportedDecisionError: If a decision is unknown or not in the
            issue's ``supported_decisions``.
    """
    by_id = {issue.id: issue for issue in issues}
    checked: dict[str, Decision] = {}
    for issue_id, raw in decisions.items():
        issue = by_id.get(issue_id)
        if issue is None:
            continue
        supported = [d.value for d in issue.supported_decisions]
        try:
            decision = Decision(raw)
        except ValueError:
            raise UnsupportedDecisionError(issue_id, str(raw), supported) from None
        if decision not in issue.supported_decisions:
            raise UnsupportedDecisionError(issue_id, decision.value, supported)
        checked[issue_id] = decision
    return checked


def recommended_decisions(issues: list[IntegrityIssue]) -> dict[str, Decision]:
    """Pick the repairing (non-deferring) decision for every issue.

    Book id mismatches trust the book file.
    """
    return {issue.id: _RECOMMENDED[issue.type] for issue in issues}


def has_blocking_issues(issues: list[IntegrityIssue]) -> bool:
    return any(issue.severity is Severity.error for issue in issues)


def summarize_issues(issues: list[IntegrityIssue]) -> dict[str, object]:
    """Count issues by severity and by type."""
    by_type: dict[str, int] = {}
    for issue in issues:
        by_type[issue.type.value] = by_type.get(issue.type.value, 0) + 1
    return {
        "total": len(issues),
        "errors": sum(1 for i in issues if i.severity is Severity.error),
        "warnings": sum(1 for i in issues if i.severity is Severity.warning),
        "by_type": by_type,
    }


# ---------------------------------------------------------------------------
# Repair
# ---------------------------------------------------------------------------


class _RepairContext:
    """Working state for one repair pass over a private deep copy."""

    def __init__(self, snapshot: Snapshot, now: str) -> None:
        self.snapshot = snapshot
        self.now = now
        self.replacements: dict[str, str] = {}
        self.book_id_replacements: dict[str, str] = {}
        self.sheet_selection_updates: dict[str, str | None] = {}
        self.workspace_touched = False

    @property
    def refs(self) -> list[BookReference]:
        return self.snapshot.workspace.data.books

    def current_id(self, original_id: str | None) -> str | None:
        return resolve_current_book_id(original_id, self.replacements)

    def locate(self, index: int | None, *candidate_ids: str | None) -> BookReference | None:
        """Find the reference an issue points at.

        The recorded index wins when the entry there still carries one of
        the candidate ids; otherwise fall back to an id lookup.
        """
        ids = [c for c in candidate_ids if c]
        if index is not None and 0 <= index < len(self.refs) and self.refs[index].id in ids:
            return self.refs[index]
        for candidate in ids:
            for ref in self.refs:
                if ref.id == candidate:
                    return ref
        return None

    def touch(self, ref: BookReference) -> None:
        ref.updated_at = self.now
        self.workspace_touched = True


def _repair_use_file(ctx: _RepairContext, issue: IntegrityIssue) -> bool:
    details = issue.details
    if not isinstance(details, BookIdMismatchDetails):
        return False
    original_id = details.workspace_id or issue.book_ref_id
    new_id = details.file_id or issue.book_file_id
    if not original_id or not new_id:
        return False

    ref = ctx.locate(details.workspace_book_index, ctx.current_id(original_id), original_id)
    if ref is None:
        return False

    previous_id = ref.id
    ref.id = new_id
    ctx.touch(ref)

    settings = ctx.snapshot.workspace.data.workspace.settings
    settings.recent_book_ids = replace_in_list(settings.recent_book_ids, previous_id, new_id)

    ctx.replacements[original_id] = new_id
    ctx.book_id_replacements[original_id] = new_id
    return True


def _repair_use_workspace(ctx: _RepairContext, issue: IntegrityIssue) -> bool:
    details = issue.details
    if not isinstance(details, BookIdMismatchDetails):
        return False
    original_id = details.workspace_id or issue.book_ref_id
    workspace_id = ctx.current_id(original_id)
    file_id = details.file_id or issue.book_file_id

    target: LoadedBook | None = None
    if details.file_path:
        target = next((e for e in ctx.snapshot.books if e.file_path == details.file_path), None)
    if target is None and file_id:
        target = ctx.snapshot.find_book(file_id)
    if not workspace_id or target is None:
        return False

    target.data.book.id = workspace_id
    target.data.book.updated_at = ctx.now
    if file_id and file_id != workspace_id:
        ctx.replacements[file_id] = workspace_id
    return True


def _repair_active_sheet(ctx: _RepairContext, issue: IntegrityIssue) -> bool:
    details = issue.details
    if not isinstance(details, MissingActiveSheetDetails):
        return False
    original_id = issue.book_ref_id
    current_id = ctx.current_id(original_id)
    ref = ctx.locate(details.workspace_book_index, current_id, original_id)
    if ref is None:
        return False

    matching = resolve_matching_book(ctx.snapshot, ref)
    if matching is not None:
        available = [sheet.id for sheet in matching.data.sheets]
    else:
        available = list(details.available_sheet_ids)
    next_sheet_id = available[0] if available else None

    ref.active_sheet_id = next_sheet_id
    ctx.touch(ref)
    ctx.sheet_selection_updates[current_id or ref.id] = next_sheet_id
    return True


def _repair_folder_reference(ctx: _RepairContext, issue: IntegrityIssue) -> bool:
    details = issue.details
    if not isinstance(details, MissingFolderReferenceDetails):
        return False
    original_id = issue.book_ref_id
    ref = ctx.locate(details.workspace_book_index, ctx.current_id(original_id), original_id)
    if ref is None:
        return False
    ref.folder_id = None
    ctx.touch(ref)
    return True


def normalize_book_orders(refs: list[BookReference], now: str | None = None) -> int:
    """Rewrite ``order`` as a dense 0-based rank within each sibling group.

    Groups are keyed by ``folder_id`` (``None`` is the root).  Ranks follow
    the existing order; equal orders are broken by ascending id and
    non-finite orders rank after every finite one.  References whose order
    changes get ``updated_at = now`` when *now* is given.

    Returns:
        Number of references whose order changed.
    """
    groups: dict[str | None, list[BookReference]] = {}
    for ref in refs:
        groups.setdefault(ref.folder_id, []).append(ref)

    def rank_key(ref: BookReference) -> tuple[int, float, str]:
        if math.isfinite(ref.order):
            return (0, float(ref.order), ref.id or "")
        return (1, 0.0, ref.id or "")

    changed = 0
    for group in groups.values():
        for rank, ref in enumerate(sorted(group, key=rank_key)):
            if ref.order != rank:
                changed += 1
                if now is not None:
                    ref.updated_at = now
            ref.order = rank
    return changed


def apply_integrity_repairs(
    snapshot: Snapshot,
    issues: list[IntegrityIssue],
    decisions: Mapping[str, Decision | str],
    *,
    now: str | None = None,
) -> RepairResult:
    """Apply the chosen *decisions* to a deep copy of *snapshot*.

    Issues are processed in order; ``normalize`` decisions are collected
    and run once at the end, after folder resets, so books moved to the
    root are ranked inside the root group.  A decision whose target can no
    longer be found is skipped and its issue stays unresolved.

    Args:
        snapshot: Snapshot the issues were detected on (not modified).
        issues: Output of :func:`detect_integrity_issues`.
        decisions: Issue id -> decision.  Missing ids and ``defer`` leave
            the issue alone.
        now: Timestamp for touched entries (defaults to current UTC).

    Raises:
        UnsupportedDecisionError: If a decision does not fit its issue.
    """
    chosen = validate_decisions(issues, decisions)
    ctx = _RepairContext(snapshot.model_copy(deep=True), now or utc_now())
    resolved: list[str] = []
    normalize_requested = False

    for issue in issues:
        decision = chosen.get(issue.id)
        if decision is None or decision is Decision.defer:
            continue

        if issue.type is IssueType.book_id_mismatch:
            if decision is Decision.use_file:
                ok = _repair_use_file(ctx, issue)
            else:
                ok = _repair_use_workspace(ctx, issue)
        elif issue.type is IssueType.missing_active_sheet:
            ok = _repair_active_sheet(ctx, issue)
        elif issue.type is IssueType.missing_folder_reference:
            ok = _repair_folder_reference(ctx, issue)
        else:
            normalize_requested = True
            ok = True

        if ok:
            resolved.append(issue.id)

    if normalize_requested:
        normalize_book_orders(ctx.refs, ctx.now)
        ctx.workspace_touched = True

    if ctx.workspace_touched:
        ctx.snapshot.workspace.data.workspace.updated_at = ctx.now

    return RepairResult(
        snapshot=ctx.snapshot,
        resolved_issue_ids=resolved,
        book_id_replacements=ctx.book_id_replacements,
        sheet_selection_updates=ctx.sheet_selection_updates,
    )
