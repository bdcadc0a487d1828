"""I/O utilities for JSON payloads and rule-set files.

orjson-backed helpers shared by the rule store, the content directory, the
CLI scripts and the admin API.
"""
from __future__ import annotations

from pathlib import Path
from typing import Any

import orjson


def json_dumps(obj: Any, *, pretty: bool = False) -> str:
    """Serialize *obj* to a JSON string (sorted keys, optional indentation)."""
    opts = orjson.OPT_SORT_KEYS
    if pretty:
        opts |= orjson.OPT_INDENT_2
    return orjson.dumps(obj, option=opts, default=_default).decode("utf-8")


def json_loads(raw: str | bytes) -> Any:
    """Parse a JSON string or bytes payload."""
    return orjson.loads(raw)


def load_json(path: Path) -> Any:
    """Load JSON from a file."""
    return orjson.loads(path.read_bytes())


def save_json(obj: Any, path: Path, *, pretty: bool = True) -> None:
    """Save an object as JSON, creating parent directories as needed."""
    path.parent.mkdir(parents=True, exist_ok=True)
    opts = orjson.OPT_SORT_KEYS
    if pretty:
        opts |= orjson.OPT_INDENT_2
    path.write_bytes(orjson.dumps(obj, option=opts, default=_default) + b"\n")


def _default(obj: Any) -> Any:
    if isinstance(obj, (set, frozenset)):
        return sorted(obj)
    if isinstance(obj, tuple):
        return list(obj)
    raise TypeError(f"Type is not JSON serializable: {type(obj).__name__}")
