"""End-to-end render tests: linking, caching, chunking and fail-closed behaviour."""
from __future__ import annotations

import pytest

from autolink.config import EngineSettings
from autolink.content_lookup import JsonContentDirectory
from autolink.destinations import ContentLookup, ContentLookupError, ResolvedContent
from autolink.engine import (
    ContentNotFoundError,
    LinkEngine,
    MemoryRenderCache,
    RuleRepository,
    StaticRuleRepository,
    run_pipeline,
    source_digest,
)
from autolink.rule_types import (
    Category,
    ExternalUrl,
    HeadingPolicy,
    InternalContent,
    LinkAttributes,
    Placement,
    RenderContext,
    Rule,
    RuleLimits,
    RuleScope,
    RuleSetSnapshot,
    UtmRef,
    UtmTemplate,
)

_CONTENT = {
    "17": {
        "url": "/guides/seo-audit",
        "title": "SEO audit guide",
        "type": "post",
        "markup": "<p>Start your seo audit today.</p>",
    },
    "18": {"url": "/guides/seo", "title": "SEO basics", "type": "page"},
}


def _rule(rule_id: str, *keywords: str, dest: str = "17", **overrides) -> Rule:
    base = {
        "rule_id": rule_id,
        "title": f"rule {rule_id}",
        "keywords": keywords,
        "destination": InternalContent(dest),
    }
    base.update(overrides)
    return Rule(**base)


def _snapshot(*rules: Rule, categories=None, templates=None, version: str = "1") -> RuleSetSnapshot:
    return RuleSetSnapshot(
        rules=rules,
        categories=categories or {},
        templates=templates or {},
        version=version,
    )


def _engine(
    snapshot: RuleSetSnapshot,
    *,
    settings: EngineSettings | None = None,
    cache: MemoryRenderCache | None = None,
    lookup: ContentLookup | None = None,
) -> LinkEngine:
    content = JsonContentDirectory(_CONTENT)
    return LinkEngine(
        StaticRuleRepository(snapshot),
        lookup or content,
        settings=settings,
        content_source=content,
        cache=cache,
    )


class _SwitchableRepository(RuleRepository):
    def __init__(self, snapshot: RuleSetSnapshot) -> None:
        self.snapshot = snapshot
        self.loads = 0

    def load_snapshot(self) -> RuleSetSnapshot:
        self.loads += 1
        return self.snapshot

    def current_version(self) -> str:
        return self.snapshot.version


class _DownLookup(ContentLookup):
    def resolve(self, content_id: str) -> ResolvedContent | None:
        raise ContentLookupError("content service unavailable")


class TestRender:
    def test_inserts_marked_anchor(self) -> None:
        engine = _engine(_snapshot(_rule("1", "seo audit")))
        result = engine.render(RenderContext(), markup="<p>Our SEO audit guide.</p>")
        assert result.markup == (
            '<p>Our <a href="/guides/seo-audit" data-autolink="1">SEO audit</a> guide.</p>'
        )
        assert result.links_inserted == 1
        assert result.version == "1"
        assert result.ok

    def test_markup_loaded_for_content_id(self) -> None:
        engine = _engine(_snapshot(_rule("1", "today", dest="18")))
        result = engine.render(RenderContext(content_id="17"))
        assert result.markup == (
            '<p>Start your seo audit <a href="/guides/seo" data-autolink="1">today</a>.</p>'
        )

    def test_unknown_content_id(self) -> None:
        engine = _engine(_snapshot(_rule("1", "seo")))
        with pytest.raises(ContentNotFoundError):
            engine.render(RenderContext(content_id="404"))

    def test_attributes_rendered(self) -> None:
        rule = _rule(
            "1", "partner",
            destination=ExternalUrl("HTTPS://Partner.example/Offer"),
            attributes=LinkAttributes(title_text="Our partner", nofollow=True, new_tab=True),
        )
        result = _engine(_snapshot(rule)).render(RenderContext(), markup="<p>Visit our partner.</p>")
        assert (
            '<a href="https://partner.example/Offer" title="Our partner" rel="nofollow noopener" '
            'target="_blank" data-autolink="1">partner</a>'
        ) in result.markup

    def test_longest_match_precedence(self) -> None:
        engine = _engine(_snapshot(_rule("1", "seo", dest="18"), _rule("2", "seo audit")))
        result = engine.render(RenderContext(), markup="<p>our seo audit guide</p>")
        assert result.markup == (
            '<p>our <a href="/guides/seo-audit" data-autolink="2">seo audit</a> guide</p>'
        )

    def test_heading_gating(self) -> None:
        markup = "<h2>SEO tips</h2><p>SEO tips</p>"
        result = _engine(_snapshot(_rule("1", "seo"))).render(RenderContext(), markup=markup)
        assert result.markup.startswith("<h2>SEO tips</h2>")
        assert result.links_inserted == 1

        selected = _rule("1", "seo", placement=Placement(headings=HeadingPolicy("selected", frozenset({2}))))
        result = _engine(_snapshot(selected)).render(RenderContext(), markup=markup)
        assert result.links_inserted == 2

    def test_scope_enforcement(self) -> None:
        rule = _rule("1", "seo", scope=RuleScope(whitelist_paths=("/services/",)))
        engine = _engine(_snapshot(rule))
        blog = engine.render(RenderContext(page_path="/blog/post-1"), markup="<p>seo</p>")
        assert blog.links_inserted == 0
        services = engine.render(RenderContext(page_path="/services/seo"), markup="<p>seo</p>")
        assert services.links_inserted == 1

    def test_utm_campaign_tokens(self) -> None:
        template = UtmTemplate("news", "Newsletter", source="blog", campaign="{post_type}-{rule_id}")
        rule = _rule("42", "seo audit", utm_ref=UtmRef(mode="template", template_id="news"))
        engine = _engine(_snapshot(rule, templates={"news": template}))
        result = engine.render(RenderContext(content_type="post"), markup="<p>seo audit</p>")
        assert 'href="/guides/seo-audit?utm_source=blog&amp;utm_campaign=post-42"' in result.markup

    def test_rule_utm_scope_limits_tagging(self) -> None:
        template = UtmTemplate("news", "Newsletter", source="blog")
        internal = _rule("1", "seo audit", utm_ref=UtmRef("template", "news", apply_to="external"))
        external = _rule(
            "2", "partner",
            destination=ExternalUrl("https://partner.example/"),
            utm_ref=UtmRef("template", "news", apply_to="external"),
        )
        engine = _engine(_snapshot(internal, external, templates={"news": template}))
        result = engine.render(RenderContext(), markup="<p>seo audit and partner</p>")
        assert 'href="/guides/seo-audit" data-autolink="1"' in result.markup
        assert 'href="https://partner.example/?utm_source=blog"' in result.markup

    def test_bracketed_prose_links(self) -> None:
        engine = _engine(_snapshot(_rule("1", "seo notes")))
        result = engine.render(RenderContext(), markup="<p>Read [seo notes here] today</p>")
        assert result.markup == (
            '<p>Read [<a href="/guides/seo-audit" data-autolink="1">seo notes</a> here] today</p>'
        )
        shortcode = engine.render(RenderContext(), markup='<p>[seo notes="x"] seo notes</p>')
        assert shortcode.markup == (
            '<p>[seo notes="x"] <a href="/guides/seo-audit" data-autolink="1">seo notes</a></p>'
        )

    def test_case_sensitive_keyword_variants(self) -> None:
        rule = _rule("1", "SEO", "seo")
        loose = _engine(_snapshot(rule))
        assert loose.snapshot_issues() == {"1": ("duplicate keywords",)}
        strict = _engine(_snapshot(rule), settings=EngineSettings(case_sensitive=True))
        assert strict.snapshot_issues() == {}
        result = strict.render(RenderContext(), markup="<p>SEO and seo and Seo</p>")
        assert result.links_inserted == 2
        assert "Seo</p>" in result.markup

    def test_widget_region(self) -> None:
        markup = "<ul><li>seo audit</li></ul>"
        plain = _rule("1", "seo audit")
        widget = _rule("1", "seo audit", placement=Placement(widgets=True))
        ctx = RenderContext(region="widget")
        assert _engine(_snapshot(plain)).render(ctx, markup=markup).links_inserted == 0
        assert _engine(_snapshot(widget)).render(ctx, markup=markup).links_inserted == 1

    def test_malformed_rule_excluded_not_fatal(self) -> None:
        engine = _engine(_snapshot(_rule("1", "seo audit"), _rule("9")))
        assert engine.snapshot_issues() == {"9": ("no keywords",)}
        result = engine.render(RenderContext(), markup="<p>seo audit</p>")
        assert result.links_inserted == 1


class TestCaps:
    def test_category_cap_goes_to_higher_priority(self) -> None:
        category = Category("c", "C", category_cap=2)
        rules = (
            _rule("1", "alpha", category_id="c", priority=10, limits=RuleLimits(max_per_page=2)),
            _rule("2", "beta", category_id="c", priority=5, limits=RuleLimits(max_per_page=2)),
        )
        engine = _engine(_snapshot(*rules, categories={"c": category}))
        markup = "<p>alpha and beta</p><p>beta then alpha</p>"
        report = engine.preview(RenderContext(), markup=markup)
        assert [a.rule_id for a in report.accepted] == ["1", "1"]
        assert report.rejected_by_reason() == {"category_cap_exhausted": 2}
        assert {r.rule_id for r in report.rejected} == {"2"}

    def test_global_default_cap(self) -> None:
        engine = _engine(_snapshot(_rule("1", "seo")), settings=EngineSettings(default_page_cap=2))
        result = engine.render(RenderContext(), markup="<p>seo, seo, seo and seo</p>")
        assert result.links_inserted == 2


class TestIdempotence:
    def test_second_pass_is_identity(self) -> None:
        engine = _engine(_snapshot(_rule("1", "seo")))
        once = engine.render(RenderContext(), markup="<p>seo one. seo two.</p>")
        twice = engine.render(RenderContext(), markup=once.markup)
        assert once.links_inserted == 2
        assert twice.markup == once.markup
        assert twice.links_inserted == 0

    def test_prior_links_count_against_caps(self) -> None:
        engine = _engine(_snapshot(_rule("1", "seo", limits=RuleLimits(max_per_page=1))))
        once = engine.render(RenderContext(), markup="<p>seo one.</p><p>seo two.</p>")
        assert once.links_inserted == 1
        twice = engine.render(RenderContext(), markup=once.markup)
        assert twice.markup == once.markup


class TestFailClosed:
    def test_unparsable_markup_unchanged(self) -> None:
        cache = MemoryRenderCache()
        engine = _engine(_snapshot(_rule("1", "seo")), cache=cache)
        markup = '<p>seo <a href="/x">broken</p>'
        result = engine.render(RenderContext(content_id="17"), markup=markup)
        assert result.markup == markup
        assert not result.ok
        assert [d.code for d in result.diagnostics] == ["unparsable_markup"]
        assert len(cache) == 0

    def test_content_lookup_failure(self) -> None:
        engine = _engine(_snapshot(_rule("1", "seo")), lookup=_DownLookup())
        result = engine.render(RenderContext(), markup="<p>seo</p>")
        assert result.markup == "<p>seo</p>"
        assert [(d.code, d.severity) for d in result.diagnostics] == [("content_lookup_failed", "error")]

    def test_unresolved_destination_is_a_warning(self) -> None:
        rules = (_rule("1", "seo audit"), _rule("3", "today", dest="99"))
        engine = _engine(_snapshot(*rules))
        markup = "<p>seo audit today</p>"
        result = engine.render(RenderContext(), markup=markup)
        assert result.ok
        assert result.links_inserted == 1
        assert [d.code for d in result.diagnostics] == ["destination_unresolved"]
        report = engine.preview(RenderContext(), markup=markup)
        assert report.rejected_by_reason() == {"destination_unresolved": 1}


class TestCache:
    def test_hit_then_stale_after_version_change(self) -> None:
        repo = _SwitchableRepository(_snapshot(_rule("1", "seo audit")))
        content = JsonContentDirectory(_CONTENT)
        engine = LinkEngine(repo, content, content_source=content, cache=MemoryRenderCache())
        ctx = RenderContext(content_id="17")

        first = engine.render(ctx)
        second = engine.render(ctx)
        assert first.cached is False
        assert second.cached is True
        assert second.markup == first.markup
        assert repo.loads == 1

        repo.snapshot = _snapshot(_rule("1", "seo audit", status="inactive"), version="2")
        third = engine.render(ctx)
        assert third.cached is False
        assert third.version == "2"
        assert third.markup == _CONTENT["17"]["markup"]

    def test_changed_markup_misses(self) -> None:
        engine = _engine(_snapshot(_rule("1", "seo")), cache=MemoryRenderCache())
        ctx = RenderContext(content_id="5")
        engine.render(ctx, markup="<p>seo</p>")
        assert engine.render(ctx, markup="<p>seo again</p>").cached is False

    def test_cache_disabled(self) -> None:
        cache = MemoryRenderCache()
        engine = _engine(_snapshot(_rule("1", "seo")), cache=cache, settings=EngineSettings(cache_enabled=False))
        engine.render(RenderContext(content_id="5"), markup="<p>seo</p>")
        assert len(cache) == 0

    def test_digest_covers_context(self) -> None:
        assert source_digest("<p>x</p>", RenderContext(page_path="/a")) != source_digest(
            "<p>x</p>", RenderContext(page_path="/b"),
        )


class TestChunking:
    def test_chunked_scan_matches_whole_scan(self) -> None:
        markup = "".join(f"<p>Paragraph {i} mentions seo here.</p>" for i in range(7))
        snapshot = _snapshot(_rule("1", "seo", limits=RuleLimits(max_per_page=3)))
        lookup = JsonContentDirectory(_CONTENT)
        chunked = run_pipeline(
            markup, RenderContext(), snapshot,
            EngineSettings(chunk_threshold_chars=10, chunk_block_count=2), lookup,
        )
        whole = run_pipeline(
            markup, RenderContext(), snapshot, EngineSettings(chunking_enabled=False), lookup,
        )
        assert chunked.chunks == 4
        assert whole.chunks == 1
        assert chunked.markup == whole.markup
        assert len(chunked.placed) == 3

    def test_chunks_bound_held_hits(self) -> None:
        markup = "".join(f"<p>seo {i} and seo audit</p>" for i in range(8))
        snapshot = _snapshot(_rule("1", "seo", dest="18"), _rule("2", "seo audit"))
        lookup = JsonContentDirectory(_CONTENT)
        small = EngineSettings(chunk_threshold_chars=10, chunk_block_count=2)
        chunked = run_pipeline(markup, RenderContext(), snapshot, small, lookup)
        whole = run_pipeline(
            markup, RenderContext(), snapshot, EngineSettings(chunking_enabled=False), lookup,
        )
        assert chunked.peak_hits == 6
        assert whole.peak_hits == 24
        assert len(chunked.superseded) == len(whole.superseded) == 8
        assert chunked.markup == whole.markup

        quiet = run_pipeline(markup, RenderContext(), snapshot, small, lookup, report_rejections=False)
        assert quiet.superseded == ()
        assert quiet.markup == chunked.markup


class TestPreview:
    def test_preview_does_not_touch_cache(self) -> None:
        cache = MemoryRenderCache()
        engine = _engine(_snapshot(_rule("1", "seo audit")), cache=cache)
        report = engine.preview(RenderContext(content_id="17"))
        assert [a.matched_text for a in report.accepted] == ["seo audit"]
        assert len(cache) == 0

    def test_draft_rules_overlay(self) -> None:
        engine = _engine(_snapshot(_rule("1", "seo audit")))
        draft = _rule("2", "today", destination=ExternalUrl("https://example.com/today"))
        report = engine.preview(RenderContext(content_id="17"), draft_rules=[draft])
        assert report.version == "1+draft"
        assert sorted(a.rule_id for a in report.accepted) == ["1", "2"]
        rendered = engine.render(RenderContext(content_id="17"))
        assert rendered.links_inserted == 1
