"""Deterministic text folding for keyword matching."""

from __future__ import annotations

import unicodedata
from dataclasses import dataclass


_ZERO_WIDTH_CHARS = frozenset({"\u200b", "\u200c", "\u200d", "\u2060", "\ufeff"})


@dataclass(frozen=True, slots=True)
class FoldedText:
    """Folded text with a reversible map back to the source string.

    ``source_starts[i]`` / ``source_ends[i]`` give the source range that folded
    character ``i`` came from.
    """

    source: str
    text: str
    source_starts: tuple[int, ...]
    source_ends: tuple[int, ...]

    def source_span(self, start: int, end: int) -> tuple[int, int]:
        """Map a folded ``[start, end)`` range to a source range."""
        return self.source_starts[start], self.source_ends[end - 1]


def _fold_char(ch: str, *, case_sensitive: bool, normalize_diacritics: bool) -> str:
    if not case_sensitive:
        ch = ch.lower()
    if normalize_diacritics:
        ch = "".join(c for c in unicodedata.normalize("NFD", ch) if not unicodedata.combining(c))
    return ch


def fold_text(
    text: str,
    *,
    case_sensitive: bool = False,
    normalize_diacritics: bool = False,
) -> FoldedText:
    """Fold text for matching and emit offset maps.

    Transforms, in order:
    1. Lower-case unless ``case_sensitive``.
    2. Strip combining marks after NFD when ``normalize_diacritics``.
    3. Collapse each whitespace run (including NBSP) to one space.
    4. Remove zero-width characters.

    Characters that fold to nothing extend the source range of the preceding
    folded character.
    """
    raw = text or ""
    chars: list[str] = []
    starts: list[int] = []
    ends: list[int] = []

    i = 0
    while i < len(raw):
        ch = raw[i]
        next_i = i + 1
        if ch.isspace():
            while next_i < len(raw) and raw[next_i].isspace():
                next_i += 1
            emitted = " "
        elif ch in _ZERO_WIDTH_CHARS:
            emitted = ""
        else:
            emitted = _fold_char(
                ch, case_sensitive=case_sensitive, normalize_diacritics=normalize_diacritics,
            )

        if emitted:
            for out in emitted:
                chars.append(out)
                starts.append(i)
                ends.append(next_i)
        elif ends:
            ends[-1] = next_i
        i = next_i

    return FoldedText(
        source=raw,
        text="".join(chars),
        source_starts=tuple(starts),
        source_ends=tuple(ends),
    )


def fold_keyword(
    keyword: str,
    *,
    case_sensitive: bool = False,
    normalize_diacritics: bool = False,
) -> str:
    """Fold a keyword the same way block text is folded, trimmed."""
    return fold_text(
        keyword.strip(),
        case_sensitive=case_sensitive,
        normalize_diacritics=normalize_diacritics,
    ).text.strip()


def is_word_char(ch: str) -> bool:
    return ch.isalnum() or ch == "_"
