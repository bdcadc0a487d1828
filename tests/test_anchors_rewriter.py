"""Tests for autolink.anchors and autolink.rewriter."""
from __future__ import annotations

import pytest

from autolink.anchors import ANCHOR_CLOSE, build_attributes, render_anchor_open
from autolink.rewriter import PlannedLink, rewrite
from autolink.rule_types import LinkAttributes


class TestBuildAttributes:
    def test_defaults_are_empty(self) -> None:
        assert build_attributes(LinkAttributes()) == {}

    def test_title_only_from_title_text(self) -> None:
        assert build_attributes(LinkAttributes(title_text="Read more")) == {"title": "Read more"}

    def test_suppressed_title(self) -> None:
        assert build_attributes(LinkAttributes(title_text="x", suppress_title=True)) == {}

    def test_rel_and_target(self) -> None:
        attrs = build_attributes(LinkAttributes(nofollow=True, new_tab=True))
        assert attrs == {"rel": "nofollow noopener", "target": "_blank"}


class TestRenderAnchorOpen:
    def test_attribute_order_and_marker(self) -> None:
        tag = render_anchor_open(
            "/guides/seo?a=1&b=2",
            {"target": "_blank", "title": 'The "best" guide', "rel": "noopener"},
            marker_attribute="data-autolink",
            rule_id="42",
        )
        assert tag == (
            '<a href="/guides/seo?a=1&amp;b=2" title="The &quot;best&quot; guide" '
            'rel="noopener" target="_blank" data-autolink="42">'
        )

    def test_minimal(self) -> None:
        tag = render_anchor_open("/x", {}, marker_attribute="data-al", rule_id="7")
        assert tag == '<a href="/x" data-al="7">'


class TestRewrite:
    def test_wraps_spans_and_keeps_everything_else(self) -> None:
        markup = "<p>seo and links</p>"
        links = [
            PlannedLink("2", 11, 16, '<a href="/l">'),
            PlannedLink("1", 3, 6, '<a href="/s">'),
        ]
        assert rewrite(markup, links) == (
            f'<p><a href="/s">seo{ANCHOR_CLOSE} and <a href="/l">links{ANCHOR_CLOSE}</p>'
        )

    def test_no_links_is_identity(self) -> None:
        assert rewrite("<p>x</p>", []) == "<p>x</p>"

    def test_overlap_rejected(self) -> None:
        with pytest.raises(ValueError, match="overlapping"):
            rewrite("abcdef", [PlannedLink("1", 0, 3, "<a>"), PlannedLink("2", 2, 4, "<a>")])

    def test_out_of_range_rejected(self) -> None:
        with pytest.raises(ValueError, match="out of range"):
            rewrite("abc", [PlannedLink("1", 1, 9, "<a>")])
