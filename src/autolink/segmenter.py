"""Block segmentation of HTML content with exact source offsets.

Turns raw markup into a flat, ordered list of typed blocks (paragraph,
heading, list item, caption, widget). Every text run keeps its absolute
offsets into the original markup plus a per-character map, so a match found in
decoded text can be wrapped in place without re-serializing anything else.

Structure rules:

* The innermost block container owns text. Loose text in generic containers
  (``div``, ``section``, top level) forms implicit paragraphs.
* Opaque elements (``script``, ``code``, ``pre`` ...), comments, declarations,
  shortcodes and non-inline tags inside a block are hard word boundaries and are
  never scanned.
* Text inside ``<a>`` stays in the block text but is flagged protected, so word
  boundaries look the same before and after links are inserted.
* Anchors carrying the marker attribute were inserted by a previous render;
  they are reported as :class:`InsertedLink` so caps can count them.

Markup whose link structure is ambiguous raises :class:`SegmentationError`:
nested or unclosed anchors, stray ``</a>``, an end tag that would implicitly
close an open anchor, or a ``<`` the tokenizer could not read as a tag.
"""
from __future__ import annotations

import html
import re
from dataclasses import dataclass, field
from html.parser import HTMLParser

from autolink.rule_types import BlockKind

# ---------------------------------------------------------------------------
# Tag tables
# ---------------------------------------------------------------------------

_HEADING_TAGS: dict[str, int] = {f"h{n}": n for n in range(1, 7)}

_BLOCK_CONTAINERS: dict[str, BlockKind] = {
    "p": "paragraph",
    **{tag: "heading" for tag in _HEADING_TAGS},
    "li": "list_item",
    "dt": "list_item",
    "dd": "list_item",
    "figcaption": "caption",
    "caption": "caption",
}

OPAQUE_TAGS: frozenset[str] = frozenset({
    "script", "style", "code", "pre", "textarea", "svg", "math", "iframe",
    "object", "video", "audio", "noscript", "template", "button", "select",
    "kbd", "samp", "title", "head",
})

INLINE_TAGS: frozenset[str] = frozenset({
    "a", "abbr", "b", "bdi", "bdo", "cite", "data", "dfn", "em", "i", "mark",
    "q", "s", "small", "span", "strong", "sub", "sup", "time", "u", "var",
    "font", "del", "ins", "label",
})

VOID_TAGS: frozenset[str] = frozenset({
    "area", "base", "br", "col", "embed", "hr", "img", "input", "link", "meta",
    "param", "source", "track", "wbr",
})

_CLOSES_P: frozenset[str] = frozenset({
    "address", "article", "aside", "blockquote", "details", "div", "dl",
    "fieldset", "figcaption", "figure", "footer", "form", "header", "hgroup",
    "hr", "main", "menu", "nav", "ol", "p", "pre", "section", "table", "ul",
    *_HEADING_TAGS,
})

# Shortcode syntax only: a tag name followed by key=value pairs or quoted
# positional values. Bracketed prose such as "[seo notes here]" stays text.
_SHORTCODE_ATTR = r"""(?:[\w-]+\s*=\s*(?:"[^"]*"|'[^']*'|[^\s\[\]"']+)|"[^"]*"|'[^']*')"""
_SHORTCODE_RE = re.compile(rf"\[/?[A-Za-z][\w-]*(?:\s+{_SHORTCODE_ATTR})*\s*/?\]")
_STRAY_TAG_RE = re.compile(r"<[A-Za-z/!?]")
_CHARREF_RE = re.compile(r"&(?:#[0-9]+;?|#[xX][0-9a-fA-F]+;?|[A-Za-z][A-Za-z0-9]*;)")


class SegmentationError(ValueError):
    """Markup cannot be segmented safely; the document must not be rewritten."""

    def __init__(self, message: str, position: int = 0) -> None:
        super().__init__(f"{message} (at offset {position})")
        self.position = position


# ---------------------------------------------------------------------------
# Output types
# ---------------------------------------------------------------------------

@dataclass(frozen=True, slots=True)
class TextRun:
    """Contiguous source text with decoded characters mapped back to offsets."""

    start: int
    end: int
    text: str
    char_starts: tuple[int, ...]
    char_ends: tuple[int, ...]
    protected: bool = False


@dataclass(frozen=True, slots=True)
class ProtectedSpan:
    """Source range of an ``<a>`` element (start tag through end tag)."""

    start: int
    end: int
    block_id: int
    inserted_rule_id: str | None = None


@dataclass(frozen=True, slots=True)
class InsertedLink:
    """An anchor carrying the marker attribute, i.e. produced by a prior render."""

    rule_id: str
    block_id: int
    start: int
    end: int


@dataclass(frozen=True, slots=True)
class Block:
    block_id: int
    kind: BlockKind
    level: int | None
    start: int
    runs: tuple[TextRun, ...]
    protected: tuple[ProtectedSpan, ...]
    text: str
    char_run: tuple[int, ...]
    char_index: tuple[int, ...]

    def raw_span(self, text_start: int, text_end: int) -> tuple[int, int]:
        """Map a ``[text_start, text_end)`` range of :attr:`text` to markup offsets."""
        first_run = self.runs[self.char_run[text_start]]
        last_run = self.runs[self.char_run[text_end - 1]]
        return (
            first_run.char_starts[self.char_index[text_start]],
            last_run.char_ends[self.char_index[text_end - 1]],
        )

    def scannable(self) -> bool:
        return any(not run.protected and run.text.strip() for run in self.runs)


@dataclass(frozen=True, slots=True)
class SegmentedDocument:
    markup: str
    blocks: tuple[Block, ...]
    protected: tuple[ProtectedSpan, ...]
    inserted: tuple[InsertedLink, ...]


BOUNDARY_CHAR = "\x00"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def compute_line_starts(text: str) -> list[int]:
    starts = [0]
    pos = text.find("\n")
    while pos >= 0:
        starts.append(pos + 1)
        pos = text.find("\n", pos + 1)
    return starts


def decode_run(raw: str, offset: int) -> tuple[str, tuple[int, ...], tuple[int, ...]]:
    """Decode character references in *raw*, keeping per-char source offsets.

    Returns ``(text, char_starts, char_ends)`` where both offset tuples are
    absolute (shifted by *offset*). Characters produced by one reference all map
    to the whole reference.
    """
    chars: list[str] = []
    starts: list[int] = []
    ends: list[int] = []
    pos = 0
    for m in _CHARREF_RE.finditer(raw):
        for i in range(pos, m.start()):
            chars.append(raw[i])
            starts.append(offset + i)
            ends.append(offset + i + 1)
        decoded = html.unescape(m.group())
        if decoded == m.group():
            decoded_chars = list(m.group())
            for i, ch in enumerate(decoded_chars):
                chars.append(ch)
                starts.append(offset + m.start() + i)
                ends.append(offset + m.start() + i + 1)
        else:
            for ch in decoded:
                chars.append(ch)
                starts.append(offset + m.start())
                ends.append(offset + m.end())
        pos = m.end()
    for i in range(pos, len(raw)):
        chars.append(raw[i])
        starts.append(offset + i)
        ends.append(offset + i + 1)
    return "".join(chars), tuple(starts), tuple(ends)


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------

@dataclass(slots=True)
class _PendingRun:
    start: int
    end: int
    protected: bool
    boundary_before: bool


@dataclass(slots=True)
class _BlockBuilder:
    kind: BlockKind
    level: int | None
    start: int
    runs: list[_PendingRun] = field(default_factory=list)
    anchors: list[tuple[int, int, str | None]] = field(default_factory=list)
    pending_boundary: bool = False
    block_id: int = -1

    def add_text(self, start: int, end: int, protected: bool) -> None:
        if (
            self.runs
            and not self.pending_boundary
            and self.runs[-1].end == start
            and self.runs[-1].protected == protected
        ):
            self.runs[-1].end = end
            return
        self.runs.append(_PendingRun(start, end, protected, self.pending_boundary))
        self.pending_boundary = False

    def build(self, markup: str) -> Block:
        runs: list[TextRun] = []
        text_parts: list[str] = []
        char_run: list[int] = []
        char_index: list[int] = []
        for idx, pending in enumerate(self.runs):
            text, starts, ends = decode_run(markup[pending.start:pending.end], pending.start)
            if pending.boundary_before and text_parts:
                text_parts.append(BOUNDARY_CHAR)
                char_run.append(-1)
                char_index.append(-1)
            runs.append(TextRun(
                start=pending.start,
                end=pending.end,
                text=text,
                char_starts=starts,
                char_ends=ends,
                protected=pending.protected,
            ))
            text_parts.append(text)
            char_run.extend([idx] * len(text))
            char_index.extend(range(len(text)))
        protected = tuple(
            ProtectedSpan(start=s, end=e, block_id=self.block_id, inserted_rule_id=rid)
            for s, e, rid in self.anchors
        )
        return Block(
            block_id=self.block_id,
            kind=self.kind,
            level=self.level,
            start=self.start,
            runs=tuple(runs),
            protected=protected,
            text="".join(text_parts),
            char_run=tuple(char_run),
            char_index=tuple(char_index),
        )


@dataclass(slots=True)
class _Open:
    tag: str
    start: int
    block: _BlockBuilder | None = None
    owner: _BlockBuilder | None = None
    anchor_rule_id: str | None = None
    is_anchor: bool = False
    is_opaque: bool = False
    is_widget: bool = False


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------

class _Segmenter(HTMLParser):
    """HTMLParser subclass that records text runs, blocks and anchors."""

    def __init__(self, markup: str, marker_attribute: str, widget_region: bool) -> None:
        super().__init__(convert_charrefs=False)
        self._markup = markup
        self._line_starts = compute_line_starts(markup)
        self._marker = marker_attribute
        self._widget_region = widget_region
        self._stack: list[_Open] = []
        self._builders: list[_BlockBuilder] = []
        self._loose: _BlockBuilder | None = None
        self._anchor: _Open | None = None
        self._opaque_depth = 0
        self._widget_depth = 0

    # -- positions ---------------------------------------------------------

    def _offset(self) -> int:
        line, col = self.getpos()
        return self._line_starts[line - 1] + col

    # -- block bookkeeping -------------------------------------------------

    def _kind_for(self, tag: str | None) -> tuple[BlockKind, int | None]:
        if self._widget_region or self._widget_depth > 0:
            return "widget", None
        if tag is None:
            return "paragraph", None
        return _BLOCK_CONTAINERS[tag], _HEADING_TAGS.get(tag)

    def _new_builder(self, tag: str | None, start: int) -> _BlockBuilder:
        kind, level = self._kind_for(tag)
        builder = _BlockBuilder(kind=kind, level=level, start=start)
        self._builders.append(builder)
        return builder

    def _container(self) -> _BlockBuilder | None:
        for entry in reversed(self._stack):
            if entry.block is not None:
                return entry.block
        return None

    def _target(self, start: int, *, create: bool) -> _BlockBuilder | None:
        container = self._container()
        if container is not None:
            return container
        if self._loose is None and create:
            self._loose = self._new_builder(None, start)
        return self._loose

    def _boundary(self) -> None:
        target = self._container() or self._loose
        if target is not None:
            target.pending_boundary = True

    def _add_text(self, start: int, end: int) -> None:
        if start >= end or self._opaque_depth > 0:
            return
        has_content = bool(self._markup[start:end].strip())
        target = self._target(start, create=has_content)
        if target is None:
            return
        target.add_text(start, end, protected=self._anchor is not None)

    # -- stack handling ----------------------------------------------------

    def _scope_index(self, tag: str, boundaries: frozenset[str]) -> int | None:
        for idx in range(len(self._stack) - 1, -1, -1):
            entry = self._stack[idx]
            if entry.tag == tag:
                return idx
            if entry.tag in boundaries or (
                boundaries is _CLOSES_P and entry.tag not in INLINE_TAGS
            ):
                return None
        return None

    def _pop_to(self, idx: int, end: int, closing_tag: str | None) -> None:
        popped = self._stack[idx:]
        del self._stack[idx:]
        for entry in reversed(popped):
            explicit = closing_tag is not None and entry is popped[0]
            if entry.is_anchor:
                if not explicit or closing_tag != "a":
                    raise SegmentationError(f"<{closing_tag or entry.tag}> closes an open <a>", end)
                owner = entry.owner
                if owner is not None:
                    owner.anchors.append((entry.start, end, entry.anchor_rule_id))
                self._anchor = None
            if entry.is_opaque:
                self._opaque_depth -= 1
            if entry.is_widget:
                self._widget_depth -= 1
            if entry.block is not None:
                parent = self._container()
                if parent is not None:
                    parent.pending_boundary = True
        if self._opaque_depth == 0:
            self._boundary_if_structural(closing_tag)

    def _boundary_if_structural(self, tag: str | None) -> None:
        if tag is None or tag not in INLINE_TAGS:
            self._boundary()

    def _implicit_close(self, tag: str, start: int) -> None:
        if tag in _CLOSES_P:
            idx = self._scope_index("p", _CLOSES_P)
            if idx is not None:
                self._pop_to(idx, start, None)
        if tag == "li":
            idx = self._scope_index("li", frozenset({"ul", "ol", "menu"}))
            if idx is not None:
                self._pop_to(idx, start, None)
        if tag in {"dt", "dd"}:
            for sibling in ("dt", "dd"):
                idx = self._scope_index(sibling, frozenset({"dl"}))
                if idx is not None:
                    self._pop_to(idx, start, None)

    # -- HTMLParser callbacks ---------------------------------------------

    def handle_starttag(self, tag: str, attrs: list[tuple[str, str | None]]) -> None:
        start = self._offset()
        if self._opaque_depth > 0:
            if tag not in VOID_TAGS:
                self._stack.append(_Open(tag=tag, start=start))
            return
        if tag in VOID_TAGS:
            self._boundary()
            return

        self._implicit_close(tag, start)
        entry = _Open(tag=tag, start=start)
        attr_map = {name: value for name, value in attrs}

        if tag == "aside" or "widget" in (attr_map.get("class") or "").lower():
            entry.is_widget = True
            self._widget_depth += 1

        if tag == "a":
            if self._anchor is not None:
                raise SegmentationError("nested <a>", start)
            entry.is_anchor = True
            entry.owner = self._target(start, create=True)
            if self._marker in attr_map:
                entry.anchor_rule_id = attr_map[self._marker] or ""
            self._anchor = entry
        elif tag in OPAQUE_TAGS:
            self._boundary()
            entry.is_opaque = True
            self._opaque_depth += 1
        elif tag in _BLOCK_CONTAINERS:
            self._loose = None
            parent = self._container()
            if parent is not None:
                parent.pending_boundary = True
            entry.block = self._new_builder(tag, start)
        elif tag not in INLINE_TAGS:
            self._loose = None
            self._boundary()

        self._stack.append(entry)

    def handle_startendtag(self, tag: str, attrs: list[tuple[str, str | None]]) -> None:
        if self._opaque_depth > 0:
            return
        if tag == "a":
            raise SegmentationError("self-closing <a/>", self._offset())
        self._boundary()

    def handle_endtag(self, tag: str) -> None:
        start = self._offset()
        close = self._markup.find(">", start)
        end = len(self._markup) if close < 0 else close + 1
        if tag in VOID_TAGS:
            return
        idx = None
        for i in range(len(self._stack) - 1, -1, -1):
            if self._stack[i].tag == tag:
                idx = i
                break
        if idx is None:
            if tag == "a" and self._opaque_depth == 0:
                raise SegmentationError("stray </a>", start)
            if self._opaque_depth == 0 and tag not in INLINE_TAGS:
                self._loose = None
                self._boundary()
            return
        self._pop_to(idx, end, tag)
        if tag not in INLINE_TAGS:
            self._loose = None

    def handle_data(self, data: str) -> None:
        start = self._offset()
        if self._opaque_depth > 0:
            return
        stray = _STRAY_TAG_RE.search(data)
        if stray is not None:
            raise SegmentationError("unparsed markup in text", start + stray.start())
        pos = 0
        for m in _SHORTCODE_RE.finditer(data):
            self._add_text(start + pos, start + m.start())
            self._boundary()
            pos = m.end()
        self._add_text(start + pos, start + len(data))

    def _handle_reference(self, prefix: str, name: str) -> None:
        start = self._offset()
        end = start + len(prefix) + len(name)
        if self._markup.startswith(";", end):
            end += 1
        self._add_text(start, end)

    def handle_entityref(self, name: str) -> None:
        self._handle_reference("&", name)

    def handle_charref(self, name: str) -> None:
        self._handle_reference("&#", name)

    def handle_comment(self, data: str) -> None:
        if self._opaque_depth == 0:
            self._boundary()

    def handle_decl(self, decl: str) -> None:
        self._boundary()

    def handle_pi(self, data: str) -> None:
        self._boundary()

    def unknown_decl(self, data: str) -> None:
        self._boundary()

    # -- result ------------------------------------------------------------

    def finish(self) -> SegmentedDocument:
        self.close()
        if self._anchor is not None:
            raise SegmentationError("unclosed <a>", self._anchor.start)
        if self._stack:
            self._pop_to(0, len(self._markup), None)

        blocks: list[Block] = []
        for builder in self._builders:
            if not builder.runs and not builder.anchors:
                continue
            builder.block_id = len(blocks)
            blocks.append(builder.build(self._markup))

        protected = tuple(sorted(
            (span for block in blocks for span in block.protected),
            key=lambda span: span.start,
        ))
        inserted = tuple(
            InsertedLink(
                rule_id=span.inserted_rule_id,
                block_id=span.block_id,
                start=span.start,
                end=span.end,
            )
            for span in protected
            if span.inserted_rule_id is not None
        )
        return SegmentedDocument(
            markup=self._markup,
            blocks=tuple(blocks),
            protected=protected,
            inserted=inserted,
        )


def segment(
    markup: str,
    *,
    marker_attribute: str = "data-autolink",
    widget_region: bool = False,
) -> SegmentedDocument:
    """Segment *markup* into blocks.

    Raises:
        SegmentationError: the markup's link structure is ambiguous.
    """
    parser = _Segmenter(markup, marker_attribute, widget_region)
    parser.feed(markup)
    return parser.finish()
