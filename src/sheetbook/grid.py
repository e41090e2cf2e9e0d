"""Grid addressing: column labels, cell addresses, and sparse sheet bounds."""

from __future__ import annotations

import re
from typing import NamedTuple

from sheetbook.schema import SheetData


_LABEL_RE = re.compile(r"[A-Z]+")
_ADDR_RE = re.compile(r"([A-Z]+)([1-9][0-9]*)")


def col_letter_to_index(letters: str) -> int:
    """Convert column letter(s) to 0-based index.  A=0, B=1, ..., Z=25, AA=26.

    Labels are bijective base-26: there is no zero digit, so every
    non-empty run of capitals maps to exactly one index.

    Raises ValueError on an empty or non-alphabetic label.
    """
    if not _LABEL_RE.fullmatch(letters):
        raise ValueError(f"Invalid column label: {letters!r}")
    idx = 0
    for ch in letters:
        idx = idx * 26 + (ord(ch) - ord("A") + 1)
    return idx - 1


def index_to_col_letter(idx: int) -> str:
    """Convert 0-based column index to letter(s).  0=A, 25=Z, 26=AA."""
    if idx < 0:
        raise ValueError(f"Column index must be non-negative, got {idx}")
    result = ""
    n = idx + 1
    while n > 0:
        n, rem = divmod(n - 1, 26)
        result = chr(65 + rem) + result
    return result


def parse_addr(addr: str) -> tuple[int, int]:
    """Parse 'A1' -> (row_0based, col_0based).

    Raises ValueError on bad address.
    """
    m = _ADDR_RE.fullmatch(addr.strip().upper())
    if not m:
        raise ValueError(f"Invalid cell address: {addr!r}")
    return int(m.group(2)) - 1, col_letter_to_index(m.group(1))


def make_addr(row: int, col: int) -> str:
    """Build cell address from 0-based row/col."""
    if row < 0:
        raise ValueError(f"Row index must be non-negative, got {row}")
    return f"{index_to_col_letter(col)}{row + 1}"


def column_labels(count: int) -> list[str]:
    """Return the first *count* column labels."""
    return [index_to_col_letter(i) for i in range(count)]


def _row_number(key: str) -> int | None:
    try:
        num = int(key)
    except ValueError:
        return None
    return num if num > 0 else None


def row_numbers(sheet: SheetData) -> list[int]:
    """Return the sorted 1-based row numbers present in the sparse row map.

    Keys that are not positive integers are skipped.
    """
    nums = {n for n in (_row_number(k) for k in sheet.rows) if n is not None}
    return sorted(nums)


class GridBounds(NamedTuple):
    rows: int
    cols: int


def sheet_bounds(sheet: SheetData) -> GridBounds:
    """Return the render bounds of *sheet*.

    The bounds are the larger of the nominal ``grid_size`` and the extent
    of the data actually stored, so cells pasted past the declared grid
    are never cut off.
    """
    max_row = sheet.grid_size.rows
    max_col = sheet.grid_size.cols
    for key, row in sheet.rows.items():
        num = _row_number(key)
        if num is not None:
            max_row = max(max_row, num)
        for label in row:
            try:
                max_col = max(max_col, col_letter_to_index(label) + 1)
            except ValueError:
                continue
    return GridBounds(rows=max_row, cols=max_col)
