"""Keyword matching over segmented blocks.

One Aho–Corasick automaton is built over the union of every candidate rule's
keywords, so each eligible block is scanned once regardless of how many rules
are configured.

Public API:
    KeywordAutomaton        -- multi-pattern automaton over folded keywords
    build_automaton()       -- automaton for a list of candidate rules
    scan_blocks()           -- raw hits for a sequence of blocks (no dedup)
    resolve_overlaps()      -- longest-match precedence within each block
    SpanIndex               -- sorted span set with logarithmic overlap checks
    scan_document()         -- scan_blocks + resolve_overlaps for a whole document
"""
from __future__ import annotations

import bisect
from collections import defaultdict, deque
from collections.abc import Iterable, Iterator, Sequence
from dataclasses import dataclass

from autolink.config import EngineSettings
from autolink.normalization import fold_keyword, fold_text, is_word_char
from autolink.rule_types import Rule, rule_sort_key
from autolink.segmenter import BOUNDARY_CHAR, Block, SegmentedDocument


# ---------------------------------------------------------------------------
# Types
# ---------------------------------------------------------------------------

@dataclass(frozen=True, slots=True)
class KeywordMatch:
    """One keyword occurrence attributed to one rule.

    ``start``/``end`` are offsets into the original markup; ``text_start`` and
    ``text_end`` index the block's decoded text.
    """

    rule_id: str
    block_id: int
    start: int
    end: int
    matched_text: str
    keyword: str
    text_start: int
    text_end: int
    priority: int = 0

    @property
    def length(self) -> int:
        return self.text_end - self.text_start

    def overlaps(self, other: KeywordMatch) -> bool:
        return self.start < other.end and other.start < self.end


class SpanIndex:
    """Sorted, non-overlapping spans with O(log n) overlap checks."""

    def __init__(self) -> None:
        self._starts: list[int] = []
        self._ends: list[int] = []

    def __len__(self) -> int:
        return len(self._starts)

    def overlaps(self, start: int, end: int) -> bool:
        idx = bisect.bisect_left(self._starts, end)
        return idx > 0 and self._ends[idx - 1] > start

    def add(self, start: int, end: int) -> None:
        idx = bisect.bisect_left(self._starts, start)
        self._starts.insert(idx, start)
        self._ends.insert(idx, end)


@dataclass(frozen=True, slots=True)
class ScanResult:
    matches: tuple[KeywordMatch, ...]
    superseded: tuple[KeywordMatch, ...]


# ---------------------------------------------------------------------------
# Automaton
# ---------------------------------------------------------------------------

class KeywordAutomaton:
    """Aho–Corasick automaton; each pattern keeps the (rule_id, keyword) owners."""

    def __init__(self, patterns: dict[str, list[tuple[str, str]]]) -> None:
        self.patterns: list[str] = []
        self.owners: list[tuple[tuple[str, str], ...]] = []
        self._goto: list[dict[str, int]] = [{}]
        self._fail: list[int] = [0]
        self._out: list[list[int]] = [[]]

        for pattern, owners in patterns.items():
            if not pattern:
                continue
            index = len(self.patterns)
            self.patterns.append(pattern)
            self.owners.append(tuple(owners))
            state = 0
            for ch in pattern:
                nxt = self._goto[state].get(ch)
                if nxt is None:
                    nxt = len(self._goto)
                    self._goto[state][ch] = nxt
                    self._goto.append({})
                    self._fail.append(0)
                    self._out.append([])
                state = nxt
            self._out[state].append(index)
        self._build_failure_links()

    def _build_failure_links(self) -> None:
        queue: deque[int] = deque()
        for nxt in self._goto[0].values():
            self._fail[nxt] = 0
            queue.append(nxt)
        while queue:
            state = queue.popleft()
            for ch, nxt in self._goto[state].items():
                queue.append(nxt)
                fallback = self._fail[state]
                while fallback and ch not in self._goto[fallback]:
                    fallback = self._fail[fallback]
                target = self._goto[fallback].get(ch, 0)
                self._fail[nxt] = target if target != nxt else 0
                self._out[nxt].extend(self._out[self._fail[nxt]])

    def __len__(self) -> int:
        return len(self.patterns)

    def iter_hits(self, text: str) -> Iterator[tuple[int, int, int]]:
        """Yield ``(start, end, pattern_index)`` for every occurrence in *text*."""
        state = 0
        for pos, ch in enumerate(text):
            while state and ch not in self._goto[state]:
                state = self._fail[state]
            state = self._goto[state].get(ch, 0)
            for index in self._out[state]:
                end = pos + 1
                yield end - len(self.patterns[index]), end, index


def build_automaton(rules: Iterable[Rule], settings: EngineSettings) -> KeywordAutomaton:
    patterns: dict[str, list[tuple[str, str]]] = defaultdict(list)
    for rule in rules:
        for keyword in rule.keywords:
            folded = fold_keyword(
                keyword,
                case_sensitive=settings.case_sensitive,
                normalize_diacritics=settings.normalize_diacritics,
            )
            if folded and (rule.rule_id, keyword) not in patterns[folded]:
                patterns[folded].append((rule.rule_id, keyword))
    return KeywordAutomaton(dict(patterns))


# ---------------------------------------------------------------------------
# Scanning
# ---------------------------------------------------------------------------

def _protected_mask(block: Block) -> list[bool]:
    return [
        idx < 0 or block.runs[idx].protected
        for idx in block.char_run
    ]


def _scan_block(
    block: Block,
    automaton: KeywordAutomaton,
    rules_by_id: dict[str, Rule],
    settings: EngineSettings,
) -> list[KeywordMatch]:
    folded = fold_text(
        block.text,
        case_sensitive=settings.case_sensitive,
        normalize_diacritics=settings.normalize_diacritics,
    )
    masked_source = _protected_mask(block)
    masked = "".join(
        BOUNDARY_CHAR if masked_source[folded.source_starts[i]] else ch
        for i, ch in enumerate(folded.text)
    )

    hits: list[KeywordMatch] = []
    for f_start, f_end, index in automaton.iter_hits(masked):
        pattern = automaton.patterns[index]
        if settings.word_boundaries:
            if is_word_char(pattern[0]) and f_start > 0 and is_word_char(folded.text[f_start - 1]):
                continue
            if (
                is_word_char(pattern[-1])
                and f_end < len(folded.text)
                and is_word_char(folded.text[f_end])
            ):
                continue
        t_start, t_end = folded.source_span(f_start, f_end)
        run_index = block.char_run[t_start]
        if run_index < 0 or run_index != block.char_run[t_end - 1]:
            continue
        if block.runs[run_index].protected:
            continue
        raw_start, raw_end = block.raw_span(t_start, t_end)
        for rule_id, keyword in automaton.owners[index]:
            rule = rules_by_id[rule_id]
            if not rule.placement.allows(block.kind, block.level):
                continue
            hits.append(KeywordMatch(
                rule_id=rule_id,
                block_id=block.block_id,
                start=raw_start,
                end=raw_end,
                matched_text=block.text[t_start:t_end],
                keyword=keyword,
                text_start=t_start,
                text_end=t_end,
                priority=rule.priority,
            ))
    return hits


def scan_blocks(
    blocks: Sequence[Block],
    automaton: KeywordAutomaton,
    rules: Sequence[Rule],
    settings: EngineSettings,
) -> list[KeywordMatch]:
    """Raw hits for *blocks*, in document order, without overlap resolution.

    A block is scanned only when at least one rule's placement allows it.
    """
    rules_by_id = {rule.rule_id: rule for rule in rules}
    hits: list[KeywordMatch] = []
    if not len(automaton):
        return hits
    for block in blocks:
        if not any(rule.placement.allows(block.kind, block.level) for rule in rules):
            continue
        if not block.scannable():
            continue
        hits.extend(_scan_block(block, automaton, rules_by_id, settings))
    hits.sort(key=lambda m: (m.start, m.end, rule_sort_key(m.rule_id)))
    return hits


def resolve_overlaps(
    matches: Iterable[KeywordMatch],
) -> tuple[list[KeywordMatch], list[KeywordMatch]]:
    """Apply longest-match precedence within each block.

    Greedy by ``(length desc, priority desc, rule id asc, position asc)``.
    Returns ``(kept, superseded)``, both in document order.
    """
    by_block: dict[int, list[KeywordMatch]] = defaultdict(list)
    for match in matches:
        by_block[match.block_id].append(match)

    kept: list[KeywordMatch] = []
    superseded: list[KeywordMatch] = []
    for block_matches in by_block.values():
        ordered = sorted(
            block_matches,
            key=lambda m: (-m.length, -m.priority, rule_sort_key(m.rule_id), m.start),
        )
        winners: list[KeywordMatch] = []
        taken = SpanIndex()
        for match in ordered:
            if taken.overlaps(match.start, match.end):
                superseded.append(match)
            else:
                winners.append(match)
                taken.add(match.start, match.end)
        kept.extend(winners)

    def doc_order(m: KeywordMatch) -> tuple[int, int, tuple[int, int, str]]:
        return (m.start, m.end, rule_sort_key(m.rule_id))

    kept.sort(key=doc_order)
    superseded.sort(key=doc_order)
    return kept, superseded


def scan_document(
    doc: SegmentedDocument,
    rules: Sequence[Rule],
    settings: EngineSettings,
) -> ScanResult:
    automaton = build_automaton(rules, settings)
    kept, superseded = resolve_overlaps(scan_blocks(doc.blocks, automaton, rules, settings))
    return ScanResult(matches=tuple(kept), superseded=tuple(superseded))
