"""JSON-backed content directory: id → URL/title/type, plus stored markup.

The index file is a JSON object keyed by content id::

    {
      "42": {"url": "/guides/seo-audit", "title": "SEO audit guide",
             "type": "post", "markup": "<p>...</p>"},
      ...
    }

A list of objects carrying ``content_id`` (or ``id``) is accepted as well.
"""
from __future__ import annotations

from collections.abc import Iterable, Mapping
from pathlib import Path
from typing import Any

from autolink.destinations import ContentLookup, ContentLookupError, ResolvedContent
from autolink.engine import ContentSource
from autolink.io_utils import load_json


class JsonContentDirectory(ContentLookup, ContentSource):
    """In-memory content directory, optionally loaded from a JSON file."""

    def __init__(self, entries: Mapping[str, Mapping[str, Any]] | None = None) -> None:
        self._entries: dict[str, dict[str, Any]] = {
            str(cid): dict(entry) for cid, entry in (entries or {}).items()
        }

    @classmethod
    def from_file(cls, path: Path) -> JsonContentDirectory:
        """Load an index file.

        Raises:
            ContentLookupError: the file is missing or not a valid index.
        """
        try:
            raw = load_json(path)
        except (OSError, ValueError) as exc:
            raise ContentLookupError(f"Cannot read content index {path}: {exc}") from exc
        if isinstance(raw, list):
            entries: dict[str, Mapping[str, Any]] = {}
            for item in raw:
                if not isinstance(item, dict):
                    raise ContentLookupError(f"Content index entries must be objects: {path}")
                cid = item.get("content_id", item.get("id"))
                if cid is None:
                    raise ContentLookupError(f"Content index entry without id: {path}")
                entries[str(cid)] = item
            return cls(entries)
        if not isinstance(raw, dict):
            raise ContentLookupError(f"Content index must be an object or a list: {path}")
        return cls(raw)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, content_id: object) -> bool:
        return str(content_id) in self._entries

    def add(self, content_id: str, *, url: str, title: str = "", content_type: str = "",
            markup: str | None = None) -> None:
        entry: dict[str, Any] = {"url": url, "title": title, "type": content_type}
        if markup is not None:
            entry["markup"] = markup
        self._entries[str(content_id)] = entry

    # -- ContentLookup -----------------------------------------------------

    def resolve(self, content_id: str) -> ResolvedContent | None:
        entry = self._entries.get(str(content_id))
        if entry is None or not entry.get("url"):
            return None
        return ResolvedContent(
            content_id=str(content_id),
            url=str(entry["url"]),
            title=str(entry.get("title") or ""),
            content_type=str(entry.get("type") or entry.get("content_type") or ""),
        )

    def resolve_many(self, content_ids: Iterable[str]) -> dict[str, ResolvedContent | None]:
        return {cid: self.resolve(cid) for cid in dict.fromkeys(content_ids)}

    # -- ContentSource -----------------------------------------------------

    def load_markup(self, content_id: str) -> str | None:
        entry = self._entries.get(str(content_id))
        if entry is None:
            return None
        markup = entry.get("markup")
        return None if markup is None else str(markup)

    def entry(self, content_id: str) -> dict[str, Any] | None:
        found = self._entries.get(str(content_id))
        return dict(found) if found is not None else None
