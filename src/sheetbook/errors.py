"""Error types for workspace loading, reconciliation, and editing."""

from __future__ import annotations


class SheetbookError(Exception):
    """Base class for all sheetbook errors."""


class JsonParseError(SheetbookError):
    """A workspace or book file does not contain valid JSON.

    Attributes:
        path: File that failed to parse.
    """

    def __init__(self, path: str, message: str) -> None:
        self.path = path
        super().__init__(f"JSON parse error in {path}: {message}")


class SchemaValidationError(SheetbookError):
    """A document failed structural validation.

    Attributes:
        document: ``"workspace"`` or ``"book"``.
        errors: Formatted validation messages.
    """

    def __init__(self, document: str, errors: list[str]) -> None:
        self.document = document
        self.errors = list(errors)
        msg = f"Invalid {document} file."
        if self.errors:
            msg += "\n" + "\n".join(self.errors)
        super().__init__(msg)


class InvalidNameError(SheetbookError, ValueError):
    """A book or sheet name is empty after trimming."""

    def __init__(self, kind: str) -> None:
        self.kind = kind
        super().__init__(f"{kind.capitalize()} name must not be empty")


class StoreError(SheetbookError):
    """Base class for mutation store precondition failures."""


class BookNotFoundError(StoreError, KeyError):
    """Referenced book does not exist in the snapshot."""

    def __init__(self, book_id: str | None) -> None:
        self.book_id = book_id
        super().__init__(f"Book {book_id!r} not found")

    def __str__(self) -> str:
        return self.args[0]


class SheetNotFoundError(StoreError, KeyError):
    """Referenced sheet does not exist in its book."""

    def __init__(self, book_id: str | None, sheet_id: str | None) -> None:
        self.book_id = book_id
        self.sheet_id = sheet_id
        super().__init__(f"Sheet {sheet_id!r} not found in book {book_id!r}")

    def __str__(self) -> str:
        return self.args[0]


class IntegrityError(SheetbookError):
    """Base class for reconciliation errors."""


class UnsupportedDecisionError(IntegrityError, ValueError):
    """A repair decision is not allowed for the issue it targets.

    Attributes:
        issue_id: The issue the decision was given for.
        decision: The rejected decision.
        supported: Decisions the issue accepts.
    """

    def __init__(self, issue_id: str, decision: str, supported: list[str]) -> None:
        self.issue_id = issue_id
        self.decision = decision
        self.supported = list(supported)
        super().__init__(
            f"Decision {decision!r} is not supported for issue {issue_id!r}. "
            f"Supported: {self.supported}"
        )


class UnresolvedIssuesError(IntegrityError):
    """Saving is blocked while error-severity issues remain."""

    def __init__(self, issue_ids: list[str]) -> None:
        self.issue_ids = list(issue_ids)
        super().__init__(
            f"{len(self.issue_ids)} unresolved integrity error(s) block saving: "
            f"{self.issue_ids}"
        )
