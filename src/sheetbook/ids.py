"""Prefixed identifier generation.

Generators are passed into the factories and the store so that tests can
swap in a deterministic sequence.
"""

from __future__ import annotations

import itertools
import uuid
from typing import Protocol


class IdGenerator(Protocol):
    def new_id(self, prefix: str) -> str: ...


class UuidIdGenerator:
    """Collision-resistant ids of the form ``<prefix>-<uuid4>``."""

    def new_id(self, prefix: str) -> str:
        return f"{prefix}-{uuid.uuid4()}"


class SequentialIdGenerator:
    """Deterministic ids: ``book-001``, ``sheet-002``, ...

    One counter is shared across prefixes so ids stay unique even when a
    book and a sheet are created in the same step.
    """

    def __init__(self, start: int = 1) -> None:
        self._counter = itertools.count(start)

    def new_id(self, prefix: str) -> str:
        return f"{prefix}-{next(self._counter):03d}"


default_id_generator = UuidIdGenerator()
