"""Engine settings: caps, matching flags, chunking and caching switches.

Settings are an explicit, immutable value passed into the engine. They can be
built from a dict, loaded from a JSON file, and overridden from ``AUTOLINK_*``
environment variables (environment wins over the file).
"""
from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import asdict, dataclass, fields, replace
from pathlib import Path
from typing import Any

from autolink.io_utils import load_json

ENV_PREFIX = "AUTOLINK_"

_TRUE_VALUES = frozenset({"1", "true", "yes", "on"})
_FALSE_VALUES = frozenset({"0", "false", "no", "off", ""})


@dataclass(frozen=True, slots=True)
class EngineSettings:
    """Operator configuration consumed by every render.

    ``default_page_cap`` limits the total number of links on a page and applies
    to rules that do not set their own ``max_per_page``; ``None`` disables it.
    """

    default_page_cap: int | None = None
    word_boundaries: bool = True
    normalize_diacritics: bool = False
    case_sensitive: bool = False
    chunking_enabled: bool = True
    chunk_threshold_chars: int = 120_000
    chunk_block_count: int = 200
    cache_enabled: bool = True
    site_host: str = ""
    marker_attribute: str = "data-autolink"

    def __post_init__(self) -> None:
        if self.default_page_cap is not None and self.default_page_cap < 0:
            raise ValueError(
                f"default_page_cap must be >= 0 or None, got {self.default_page_cap}",
            )
        if self.chunk_threshold_chars <= 0:
            raise ValueError("chunk_threshold_chars must be > 0")
        if self.chunk_block_count <= 0:
            raise ValueError("chunk_block_count must be > 0")
        if not self.marker_attribute.startswith("data-"):
            raise ValueError(
                f"marker_attribute must be a data-* attribute, got {self.marker_attribute!r}",
            )


_FIELD_TYPES: dict[str, str] = {
    "default_page_cap": "opt_int",
    "word_boundaries": "bool",
    "normalize_diacritics": "bool",
    "case_sensitive": "bool",
    "chunking_enabled": "bool",
    "chunk_threshold_chars": "int",
    "chunk_block_count": "int",
    "cache_enabled": "bool",
    "site_host": "str",
    "marker_attribute": "str",
}


def _coerce(name: str, value: Any) -> Any:
    kind = _FIELD_TYPES[name]
    if kind == "bool":
        if isinstance(value, bool):
            return value
        text = str(value).strip().lower()
        if text in _TRUE_VALUES:
            return True
        if text in _FALSE_VALUES:
            return False
        raise ValueError(f"{name}: expected a boolean, got {value!r}")
    if kind == "int":
        return int(value)
    if kind == "opt_int":
        if value is None or str(value).strip().lower() in {"", "none", "null"}:
            return None
        return int(value)
    return str(value).strip().lower() if name == "site_host" else str(value).strip()


def settings_from_dict(data: Mapping[str, Any]) -> EngineSettings:
    """Build settings from a dict; unknown keys raise ``ValueError``."""
    unknown = sorted(set(data) - set(_FIELD_TYPES))
    if unknown:
        raise ValueError(f"Unknown settings: {', '.join(unknown)}")
    return EngineSettings(**{k: _coerce(k, v) for k, v in data.items()})


def settings_to_dict(settings: EngineSettings) -> dict[str, Any]:
    return asdict(settings)


def env_overrides(env: Mapping[str, str]) -> dict[str, Any]:
    """Collect ``AUTOLINK_<FIELD>`` overrides from an environment mapping."""
    overrides: dict[str, Any] = {}
    for f in fields(EngineSettings):
        key = ENV_PREFIX + f.name.upper()
        if key in env:
            overrides[f.name] = _coerce(f.name, env[key])
    return overrides


def load_settings(
    path: Path | None = None,
    *,
    env: Mapping[str, str] | None = None,
) -> EngineSettings:
    """Load settings from an optional JSON file, then apply env overrides."""
    settings = EngineSettings()
    if path is not None:
        raw = load_json(path)
        if not isinstance(raw, dict):
            raise ValueError(f"Settings file must hold a JSON object: {path}")
        settings = settings_from_dict(raw)
    overrides = env_overrides(os.environ if env is None else env)
    if overrides:
        settings = replace(settings, **overrides)
    return settings
