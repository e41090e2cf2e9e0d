"""Workspace-level configuration (``sheetbook.yaml``)."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml


CONFIG_FILENAME = "sheetbook.yaml"

DEFAULT_CONFIG: dict[str, Any] = {
    "max_history_entries": 100,
    "max_recent_ids": 20,
    "default_rows": 100,
    "default_cols": 26,
    "default_book_name": "New Book",
    "default_sheet_name": "New Sheet",
    "first_sheet_name": "Sheet1",
    "default_book_format": "plain",
    "block_save_on_errors": True,
    "logging_fsync": False,
    "logging_tail_bytes": 2_097_152,  # 2 MB
}

DEMO_SHEETBOOK_CONFIG = """\
# sheetbook workspace configuration
max_history_entries: 100
max_recent_ids: 20
default_rows: 100
default_cols: 26
block_save_on_errors: true
# logging:
#   fsync: false
#   tail_bytes: 2097152
"""

_POSITIVE_INT_KEYS = ("max_history_entries", "max_recent_ids", "default_rows", "default_cols")


def _flatten_logging_block(user_config: dict[str, Any]) -> dict[str, Any]:
    """Flatten a nested ``logging:`` block into flat config keys.

    Supports::

        logging:
          fsync: true
          tail_bytes: 1048576

    Maps to ``logging_fsync`` and ``logging_tail_bytes``.
    """
    block = user_config.pop("logging", None)
    if not isinstance(block, dict):
        return user_config
    for short_key in ("fsync", "tail_bytes"):
        if short_key in block:
            user_config[f"logging_{short_key}"] = block[short_key]
    return user_config


def resolve_config(overrides: dict[str, Any] | None = None) -> dict[str, Any]:
    """Merge *overrides* over the defaults and check numeric limits.

    Raises:
        ValueError: If a size or limit key is not a positive integer.
    """
    config = dict(DEFAULT_CONFIG)
    if overrides:
        config.update(overrides)
    for key in _POSITIVE_INT_KEYS:
        value = config[key]
        if isinstance(value, bool) or not isinstance(value, int) or value < 1:
            raise ValueError(f"{key} must be a positive integer, got {value!r}")
    return config


def load_workspace_config(workspace_dir: Path) -> dict[str, Any]:
    """Load workspace configuration from ``sheetbook.yaml``, with defaults.

    Args:
        workspace_dir: Directory holding ``workspace.json``.

    Returns:
        Merged configuration dict.
    """
    user_config: dict[str, Any] = {}
    config_path = workspace_dir / CONFIG_FILENAME
    if config_path.exists():
        user_config = yaml.safe_load(config_path.read_text()) or {}
        user_config = _flatten_logging_block(user_config)
    return resolve_config(user_config)
