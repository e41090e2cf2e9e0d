"""Small shared helpers: timestamps, path normalisation, MRU lists."""

from __future__ import annotations

from datetime import datetime, timezone


def utc_now() -> str:
    """Return current UTC timestamp in ISO-8601 (milliseconds) with Z suffix."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def normalize_path(value: str) -> str:
    """Use forward slashes regardless of the platform the path came from."""
    return value.replace("\\", "/")


def push_recent(ids: list[str] | None, new_id: str, limit: int) -> list[str]:
    """Move *new_id* to the front of an MRU list, de-duplicated and capped."""
    return [new_id, *(i for i in (ids or []) if i != new_id)][:limit]


def replace_in_list(ids: list[str] | None, old: str, new: str) -> list[str] | None:
    """Return *ids* with *old* replaced by *new* (same list if untouched).

    The result keeps the first occurrence of each id, so an MRU list that
    already held *new* does not end up with it twice.
    """
    if not ids or old not in ids:
        return ids
    seen: set[str] = set()
    result: list[str] = []
    for i in ids:
        i = new if i == old else i
        if i not in seen:
            seen.add(i)
            result.append(i)
    return result


def remove_from_list(ids: list[str] | None, drop: set[str]) -> list[str] | None:
    """Return *ids* without the members of *drop* (same list if untouched)."""
    if not ids or not drop.intersection(ids):
        return ids
    return [i for i in ids if i not in drop]
