"""Tests for URL helpers and batched destination resolution."""
from __future__ import annotations

import logging

import pytest

from autolink.destinations import (
    ContentLookup,
    ContentLookupError,
    ResolvedContent,
    is_internal_url,
    normalize_external_url,
    resolve_destinations,
    url_host,
)
from autolink.rule_types import ExternalUrl, InternalContent, Rule


class _DictLookup(ContentLookup):
    def __init__(self, urls: dict[str, str]) -> None:
        self.urls = urls
        self.calls: list[list[str]] = []

    def resolve(self, content_id: str) -> ResolvedContent | None:
        url = self.urls.get(content_id)
        return ResolvedContent(content_id, url, title=f"title {content_id}") if url else None

    def resolve_many(self, content_ids):
        ids = list(content_ids)
        self.calls.append(ids)
        return super().resolve_many(ids)


class _BrokenLookup(ContentLookup):
    def resolve(self, content_id: str) -> ResolvedContent | None:
        raise ContentLookupError("backend down")


def _rule(rule_id: str, destination) -> Rule:
    return Rule(rule_id=rule_id, title="", keywords=("kw",), destination=destination)


class TestUrlHelpers:
    def test_normalize_lowercases_scheme_and_host_only(self) -> None:
        assert normalize_external_url(" HTTPS://Example.COM/Path?Q=A#Frag ") == "https://example.com/Path?Q=A#Frag"

    def test_normalize_keeps_relative_urls(self) -> None:
        assert normalize_external_url("/Pricing") == "/Pricing"

    def test_url_host(self) -> None:
        assert url_host("https://user@Shop.Example.com:8443/x") == "shop.example.com"
        assert url_host("//cdn.example.com/a.js") == "cdn.example.com"
        assert url_host("/relative") == ""

    def test_internal_detection(self) -> None:
        assert is_internal_url("/guides/seo", "example.com")
        assert is_internal_url("https://www.example.com/x", "example.com")
        assert not is_internal_url("https://other.com/x", "example.com")
        assert not is_internal_url("https://example.com/x", "")
        assert not is_internal_url("mailto:someone@example.com", "example.com")


class TestResolveDestinations:
    def test_internal_and_external(self) -> None:
        lookup = _DictLookup({"17": "/guides/seo"})
        rules = [
            _rule("1", InternalContent("17")),
            _rule("2", ExternalUrl("HTTPS://Partner.com/Offer")),
        ]
        table = resolve_destinations(rules, lookup, site_host="example.com")
        assert table.get("1").url == "/guides/seo"
        assert table.get("1").is_internal is True
        assert table.get("1").title == "title 17"
        assert table.get("2").url == "https://partner.com/Offer"
        assert table.get("2").is_internal is False
        assert table.unresolved == frozenset()

    def test_single_batched_lookup(self) -> None:
        lookup = _DictLookup({"17": "/a"})
        rules = [_rule("1", InternalContent("17")), _rule("2", InternalContent("17"))]
        resolve_destinations(rules, lookup)
        assert len(lookup.calls) == 1

    def test_missing_content_drops_rule(self, caplog: pytest.LogCaptureFixture) -> None:
        lookup = _DictLookup({})
        with caplog.at_level(logging.WARNING, logger="autolink.destinations"):
            table = resolve_destinations([_rule("1", InternalContent("99"))], lookup)
        assert table.get("1") is None
        assert table.unresolved == frozenset({"1"})
        assert table.missing_content == frozenset({"99"})
        assert "99" in caplog.text

    def test_no_lookup_configured(self) -> None:
        table = resolve_destinations([_rule("1", InternalContent("17"))], None)
        assert table.unresolved == frozenset({"1"})

    def test_lookup_failure_propagates(self) -> None:
        with pytest.raises(ContentLookupError):
            resolve_destinations([_rule("1", InternalContent("17"))], _BrokenLookup())

    def test_external_only_skips_lookup(self) -> None:
        table = resolve_destinations([_rule("1", ExternalUrl("/local"))], _BrokenLookup())
        assert table.get("1").is_internal is True
