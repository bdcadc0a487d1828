"""Tests for autolink.segmenter — blocks, offsets, protected spans and failures."""
from __future__ import annotations

import pytest

from autolink.segmenter import (
    BOUNDARY_CHAR,
    SegmentationError,
    compute_line_starts,
    decode_run,
    segment,
)


class TestBlockStructure:
    def test_paragraph_with_inline_tags(self) -> None:
        doc = segment("<p>Hello <b>world</b></p>")
        assert len(doc.blocks) == 1
        block = doc.blocks[0]
        assert block.kind == "paragraph"
        assert block.level is None
        assert block.text == "Hello world"

    def test_inline_tags_do_not_split_words(self) -> None:
        assert segment("<p>s<em>e</em>o</p>").blocks[0].text == "seo"

    def test_headings_and_list_items(self) -> None:
        doc = segment("<h2>Title</h2><ul><li>Item one</li><li>Item two</li></ul>")
        assert [(b.kind, b.level, b.text) for b in doc.blocks] == [
            ("heading", 2, "Title"),
            ("list_item", None, "Item one"),
            ("list_item", None, "Item two"),
        ]

    def test_captions(self) -> None:
        doc = segment("<figure><img src='a.png'><figcaption>A chart</figcaption></figure>")
        assert [(b.kind, b.text) for b in doc.blocks] == [("caption", "A chart")]

    def test_implicit_paragraph_close(self) -> None:
        doc = segment("<p>One<p>Two")
        assert [b.text for b in doc.blocks] == ["One", "Two"]

    def test_loose_text_becomes_paragraph(self) -> None:
        doc = segment("Intro text<div>Inside</div>")
        assert [(b.kind, b.text) for b in doc.blocks] == [
            ("paragraph", "Intro text"),
            ("paragraph", "Inside"),
        ]

    def test_empty_blocks_dropped_and_renumbered(self) -> None:
        doc = segment("<p></p><p>x</p>")
        assert len(doc.blocks) == 1
        assert doc.blocks[0].block_id == 0

    def test_widget_regions(self) -> None:
        doc = segment("<aside><p>Sidebar text</p></aside><p>Body</p>")
        assert [b.kind for b in doc.blocks] == ["widget", "paragraph"]
        assert segment("<p>x</p>", widget_region=True).blocks[0].kind == "widget"


class TestBoundaries:
    def test_opaque_elements_are_skipped(self) -> None:
        block = segment("<p>Use <code>seo</code> here</p>").blocks[0]
        assert "seo" not in block.text
        assert block.text == f"Use {BOUNDARY_CHAR} here"

    def test_script_never_scanned(self) -> None:
        doc = segment("<script>var seo = 1;</script><p>x</p>")
        assert [b.text for b in doc.blocks] == ["x"]

    def test_void_and_comment_boundaries(self) -> None:
        assert segment("<p>one<br>two</p>").blocks[0].text == f"one{BOUNDARY_CHAR}two"
        assert segment("<p>a<!-- c -->b</p>").blocks[0].text == f"a{BOUNDARY_CHAR}b"

    def test_shortcodes_are_boundaries(self) -> None:
        block = segment("<p>Buy [gallery id=1] now</p>").blocks[0]
        assert block.text == f"Buy {BOUNDARY_CHAR} now"

    def test_shortcode_forms(self) -> None:
        markup = '<p>a[caption id="x" align=left]b[/caption]c[embed /]d[video "clip.mp4"]e</p>'
        block = segment(markup).blocks[0]
        assert block.text == BOUNDARY_CHAR.join("abcde")

    def test_bracketed_prose_is_text(self) -> None:
        block = segment("<p>Read [seo notes here] today</p>").blocks[0]
        assert block.text == "Read [seo notes here] today"


class TestOffsets:
    def test_raw_span_maps_back_to_markup(self) -> None:
        markup = "<p>Hello <b>world</b></p>"
        block = segment(markup).blocks[0]
        start, end = block.raw_span(6, 11)
        assert markup[start:end] == "world"

    def test_offsets_across_lines(self) -> None:
        markup = "<p>one</p>\n<p>two seo</p>"
        block = segment(markup).blocks[1]
        start, end = block.raw_span(4, 7)
        assert markup[start:end] == "seo"

    def test_entities_map_to_whole_reference(self) -> None:
        markup = "<p>Caf&eacute; &amp; bar</p>"
        block = segment(markup).blocks[0]
        assert block.text == "Caf\u00e9 & bar"
        assert block.raw_span(0, 4) == (3, 14)

    def test_decode_run(self) -> None:
        assert decode_run("a&amp;b", 10) == ("a&b", (10, 11, 16), (11, 16, 17))

    def test_named_reference_without_semicolon_is_literal(self) -> None:
        text, _, _ = decode_run("&copy 2024", 0)
        assert text == "&copy 2024"

    def test_line_starts(self) -> None:
        assert compute_line_starts("a\nb\n") == [0, 2, 4]


class TestAnchors:
    def test_anchor_text_is_protected(self) -> None:
        markup = '<p>See <a href="/x">SEO</a> now</p>'
        doc = segment(markup)
        block = doc.blocks[0]
        assert block.text == "See SEO now"
        assert [run.protected for run in block.runs] == [False, True, False]
        assert len(doc.protected) == 1
        span = doc.protected[0]
        assert markup[span.start:span.end] == '<a href="/x">SEO</a>'
        assert doc.inserted == ()

    def test_marker_anchor_reported_as_inserted(self) -> None:
        markup = '<p>Intro <a href="/x" data-autolink="7">SEO</a></p>'
        doc = segment(markup)
        assert len(doc.inserted) == 1
        link = doc.inserted[0]
        assert link.rule_id == "7"
        assert link.block_id == 0
        assert markup[link.start:link.end].startswith("<a ")
        assert markup[link.start:link.end].endswith("</a>")

    def test_custom_marker_attribute(self) -> None:
        markup = '<p><a href="/x" data-al="3">SEO</a></p>'
        assert segment(markup, marker_attribute="data-al").inserted[0].rule_id == "3"
        assert segment(markup).inserted == ()


class TestSegmentationErrors:
    def test_nested_anchor(self) -> None:
        with pytest.raises(SegmentationError, match="nested"):
            segment('<p><a href="/a">x <a href="/b">y</a></a></p>')

    def test_stray_closing_anchor(self) -> None:
        with pytest.raises(SegmentationError, match="stray"):
            segment("<p>x</a></p>")

    def test_block_end_closes_anchor(self) -> None:
        with pytest.raises(SegmentationError):
            segment('<p><a href="/x">x</p>')

    def test_unclosed_anchor(self) -> None:
        with pytest.raises(SegmentationError, match="unclosed"):
            segment('<p><a href="/x">x')

    def test_error_is_value_error_with_position(self) -> None:
        with pytest.raises(ValueError) as excinfo:
            segment("<p>x</a></p>")
        assert excinfo.value.position == 4
