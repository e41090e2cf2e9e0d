"""Structural validation of raw workspace and book JSON.

Validation only checks document shape.  Cross-document drift (ids,
folders, ordering) is the job of :mod:`sheetbook.integrity`.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ValidationError

from sheetbook.errors import SchemaValidationError
from sheetbook.schema import BookFile, WorkspaceFile


class ValidationResult(BaseModel):
    valid: bool
    errors: list[str] = []


def _format_errors(exc: ValidationError) -> list[str]:
    """Render pydantic errors as ``"<json path> <message>"`` lines."""
    lines: list[str] = []
    for err in exc.errors():
        path = "".join(f"/{part}" for part in err.get("loc", ())) or "(root)"
        lines.append(f"{path} {err.get('msg', '')}".strip())
    return lines


def validate_workspace_file(raw: Any) -> ValidationResult:
    try:
        WorkspaceFile.model_validate(raw)
    except ValidationError as exc:
        return ValidationResult(valid=False, errors=_format_errors(exc))
    return ValidationResult(valid=True)


def validate_book_file(raw: Any) -> ValidationResult:
    try:
        BookFile.model_validate(raw)
    except ValidationError as exc:
        return ValidationResult(valid=False, errors=_format_errors(exc))
    return ValidationResult(valid=True)


def assert_workspace_file(raw: Any) -> WorkspaceFile:
    """Parse *raw* as a workspace file or raise ``SchemaValidationError``."""
    try:
        return WorkspaceFile.model_validate(raw)
    except ValidationError as exc:
        raise SchemaValidationError("workspace", _format_errors(exc)) from exc


def assert_book_file(raw: Any) -> BookFile:
    """Parse *raw* as a book file or raise ``SchemaValidationError``."""
    try:
        return BookFile.model_validate(raw)
    except ValidationError as exc:
        raise SchemaValidationError("book", _format_errors(exc)) from exc
