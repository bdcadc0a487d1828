"""Splice planned anchors into the original markup."""
from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass

from autolink.anchors import ANCHOR_CLOSE


@dataclass(frozen=True, slots=True)
class PlannedLink:
    """An accepted match ready to be wrapped: raw span plus the anchor start tag."""

    rule_id: str
    start: int
    end: int
    open_tag: str


def rewrite(markup: str, links: Sequence[PlannedLink]) -> str:
    """Return *markup* with each planned span wrapped in its anchor.

    Bytes outside the planned spans are copied unchanged.

    Raises:
        ValueError: a span is empty, out of range, or overlaps another.
    """
    ordered = sorted(links, key=lambda link: link.start)
    out: list[str] = []
    pos = 0
    for link in ordered:
        if not 0 <= link.start < link.end <= len(markup):
            raise ValueError(f"link span out of range: [{link.start}, {link.end})")
        if link.start < pos:
            raise ValueError(f"overlapping link spans at offset {link.start}")
        out.append(markup[pos:link.start])
        out.append(link.open_tag)
        out.append(markup[link.start:link.end])
        out.append(ANCHOR_CLOSE)
        pos = link.end
    out.append(markup[pos:])
    return "".join(out)
