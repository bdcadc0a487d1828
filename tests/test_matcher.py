"""Tests for autolink.matcher — automaton, boundaries and longest-match dedup."""
from __future__ import annotations

import time

from autolink.config import EngineSettings
from autolink.matcher import (
    KeywordAutomaton,
    KeywordMatch,
    SpanIndex,
    build_automaton,
    resolve_overlaps,
    scan_document,
)
from autolink.rule_types import HeadingPolicy, InternalContent, Placement, Rule
from autolink.segmenter import segment


def _rule(rule_id: str, *keywords: str, **overrides) -> Rule:
    base = {
        "rule_id": rule_id,
        "title": f"rule {rule_id}",
        "keywords": keywords,
        "destination": InternalContent("17"),
    }
    base.update(overrides)
    return Rule(**base)


def _scan(markup: str, rules: list[Rule], settings: EngineSettings | None = None):
    return scan_document(segment(markup), rules, settings or EngineSettings())


def _match(rule_id: str, start: int, end: int, *, priority: int = 0, block_id: int = 0) -> KeywordMatch:
    return KeywordMatch(
        rule_id=rule_id,
        block_id=block_id,
        start=start,
        end=end,
        matched_text="x" * (end - start),
        keyword="x",
        text_start=start,
        text_end=end,
        priority=priority,
    )


class TestKeywordAutomaton:
    def test_overlapping_patterns(self) -> None:
        automaton = KeywordAutomaton({
            "he": [("1", "he")],
            "she": [("2", "she")],
            "hers": [("3", "hers")],
        })
        hits = sorted((s, e, automaton.patterns[i]) for s, e, i in automaton.iter_hits("ushers"))
        assert hits == [(1, 4, "she"), (2, 4, "he"), (2, 6, "hers")]

    def test_shared_pattern_keeps_all_owners(self) -> None:
        rules = [_rule("1", "SEO"), _rule("2", "seo")]
        automaton = build_automaton(rules, EngineSettings())
        assert len(automaton) == 1
        assert automaton.owners[0] == (("1", "SEO"), ("2", "seo"))

    def test_blank_patterns_ignored(self) -> None:
        assert len(KeywordAutomaton({"": [("1", "")]})) == 0


class TestScanning:
    def test_case_insensitive_match_keeps_source_text(self) -> None:
        result = _scan("<p>SEO tips</p>", [_rule("1", "seo")])
        assert [(m.matched_text, m.keyword) for m in result.matches] == [("SEO", "seo")]

    def test_offsets_point_into_markup(self) -> None:
        markup = "<p>Read our <b>seo</b> guide</p>"
        match = _scan(markup, [_rule("1", "seo")]).matches[0]
        assert markup[match.start:match.end] == "seo"

    def test_word_boundaries(self) -> None:
        markup = "<p>seoul and seo-friendly</p>"
        result = _scan(markup, [_rule("1", "seo")])
        assert [m.text_start for m in result.matches] == [10]

    def test_word_boundaries_disabled(self) -> None:
        result = _scan("<p>seoul and seo</p>", [_rule("1", "seo")], EngineSettings(word_boundaries=False))
        assert len(result.matches) == 2

    def test_no_match_inside_anchor(self) -> None:
        markup = '<p><a href="/x">seo</a> and seo</p>'
        matches = _scan(markup, [_rule("1", "seo")]).matches
        assert len(matches) == 1
        assert markup[matches[0].start:] == "seo</p>"

    def test_anchor_text_still_counts_for_word_boundary(self) -> None:
        assert _scan('<p><a href="/x">big</a>seo</p>', [_rule("1", "seo")]).matches == ()

    def test_match_across_inline_tags_skipped(self) -> None:
        assert _scan("<p>s<em>e</em>o</p>", [_rule("1", "seo")]).matches == ()

    def test_boundary_char_breaks_phrases(self) -> None:
        assert _scan("<p>seo<br>audit</p>", [_rule("1", "seo audit")]).matches == ()

    def test_heading_placement(self) -> None:
        markup = "<h2>seo basics</h2><p>more seo</p>"
        default = _scan(markup, [_rule("1", "seo")]).matches
        assert [m.block_id for m in default] == [1]
        headings = _rule("1", "seo", placement=Placement(headings=HeadingPolicy(mode="all")))
        assert [m.block_id for m in _scan(markup, [headings]).matches] == [0, 1]

    def test_diacritic_folding(self) -> None:
        settings = EngineSettings(normalize_diacritics=True)
        result = _scan("<p>Best Caf\u00e9 in town</p>", [_rule("1", "cafe")], settings)
        assert [m.matched_text for m in result.matches] == ["Caf\u00e9"]

    def test_whitespace_in_keyword_matches_any_run(self) -> None:
        result = _scan("<p>seo\n   audit</p>", [_rule("1", "seo audit")])
        assert len(result.matches) == 1


class TestLongestMatch:
    def test_longer_keyword_wins(self) -> None:
        markup = "<p>Read our seo audit guide</p>"
        result = _scan(markup, [_rule("1", "seo"), _rule("2", "seo audit")])
        assert [m.rule_id for m in result.matches] == ["2"]
        assert markup[result.matches[0].start:result.matches[0].end] == "seo audit"
        assert [m.rule_id for m in result.superseded] == ["1"]

    def test_priority_breaks_equal_length(self) -> None:
        result = _scan("<p>seo</p>", [_rule("1", "seo", priority=1), _rule("2", "seo", priority=5)])
        assert [m.rule_id for m in result.matches] == ["2"]

    def test_rule_id_breaks_full_tie(self) -> None:
        result = _scan("<p>seo</p>", [_rule("10", "seo"), _rule("9", "seo")])
        assert [m.rule_id for m in result.matches] == ["9"]

    def test_resolution_is_per_block(self) -> None:
        kept, superseded = resolve_overlaps([
            _match("1", 0, 5, block_id=0),
            _match("2", 2, 4, block_id=1),
        ])
        assert [m.rule_id for m in kept] == ["1", "2"]
        assert superseded == []

    def test_non_overlapping_matches_all_kept(self) -> None:
        kept, superseded = resolve_overlaps([_match("1", 0, 3), _match("1", 4, 7), _match("2", 2, 5)])
        assert [(m.start, m.end) for m in kept] == [(0, 3), (4, 7)]
        assert [(m.start, m.end) for m in superseded] == [(2, 5)]

    def test_dense_block_resolves_quickly(self) -> None:
        # 20k short hits plus 10k longer ones straddling pairs of them, one block.
        short = [_match("1", i * 4, i * 4 + 3) for i in range(20_000)]
        long = [_match("2", i * 4 + 2, i * 4 + 7) for i in range(0, 20_000, 2)]
        started = time.perf_counter()
        kept, superseded = resolve_overlaps(short + long)
        elapsed = time.perf_counter() - started
        assert len(kept) + len(superseded) == 30_000
        assert len([m for m in kept if m.rule_id == "2"]) == 10_000
        assert elapsed < 5.0


class TestSpanIndex:
    def test_overlap_checks(self) -> None:
        index = SpanIndex()
        index.add(10, 15)
        index.add(0, 3)
        assert len(index) == 2
        assert index.overlaps(2, 4)
        assert index.overlaps(14, 20)
        assert index.overlaps(11, 12)
        assert not index.overlaps(3, 10)
        assert not index.overlaps(15, 18)
