"""Preview reports: what a render would link, and why other matches were dropped.

Previews run the same pipeline as ``LinkEngine.render`` but never write the
render cache or the rule store. Markup can come from a stored content id,
explicit markup, or any URL; fetched pages are reduced to their main content
region with BeautifulSoup before segmentation.
"""
from __future__ import annotations

import urllib.error
import urllib.request
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from bs4 import BeautifulSoup

from autolink.engine import PipelineResult, RenderDiagnostic

USER_AGENT = "autolink-preview/1.0"

# Tried in order; the first hit wins.
CONTENT_SELECTORS: tuple[str, ...] = ("article", "main", ".entry-content", ".post-content")


class PreviewFetchError(RuntimeError):
    """The preview URL could not be fetched."""


# ---------------------------------------------------------------------------
# Report types
# ---------------------------------------------------------------------------

@dataclass(frozen=True, slots=True)
class AcceptedLink:
    rule_id: str
    rule_title: str
    matched_text: str
    keyword: str
    block_id: int
    url: str
    start: int
    end: int


@dataclass(frozen=True, slots=True)
class RejectedEntry:
    rule_id: str
    matched_text: str
    keyword: str
    block_id: int
    reason: str
    start: int
    end: int


@dataclass(frozen=True, slots=True)
class SummaryRow:
    rule_id: str
    rule_title: str
    keyword: str
    url: str
    count: int


@dataclass(frozen=True, slots=True)
class PreviewReport:
    accepted: tuple[AcceptedLink, ...]
    rejected: tuple[RejectedEntry, ...]
    summary: tuple[SummaryRow, ...]
    markup: str
    diagnostics: tuple[RenderDiagnostic, ...]
    version: str
    excluded_rules: Mapping[str, tuple[str, ...]] = field(default_factory=dict)

    def rejected_by_reason(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for entry in self.rejected:
            counts[entry.reason] = counts.get(entry.reason, 0) + 1
        return counts


def summarize(accepted: tuple[AcceptedLink, ...]) -> tuple[SummaryRow, ...]:
    """Count accepted links per ``(rule, keyword, url)`` in first-seen order."""
    rows: dict[tuple[str, str, str], list[Any]] = {}
    for link in accepted:
        key = (link.rule_id, link.keyword.lower(), link.url)
        if key not in rows:
            rows[key] = [link.rule_title, link.keyword, 0]
        rows[key][2] += 1
    return tuple(
        SummaryRow(rule_id=rule_id, rule_title=title, keyword=keyword, url=url, count=count)
        for (rule_id, _, url), (title, keyword, count) in rows.items()
    )


def build_report(
    result: PipelineResult,
    *,
    excluded: Mapping[str, tuple[str, ...]] | None = None,
) -> PreviewReport:
    accepted = tuple(
        AcceptedLink(
            rule_id=p.match.rule_id,
            rule_title=p.rule_title,
            matched_text=p.match.matched_text,
            keyword=p.match.keyword,
            block_id=p.match.block_id,
            url=p.url,
            start=p.match.start,
            end=p.match.end,
        )
        for p in result.placed
    )
    rejected = [
        RejectedEntry(
            rule_id=r.match.rule_id,
            matched_text=r.match.matched_text,
            keyword=r.match.keyword,
            block_id=r.match.block_id,
            reason=r.reason,
            start=r.match.start,
            end=r.match.end,
        )
        for r in result.rejected
    ]
    rejected.extend(
        RejectedEntry(
            rule_id=m.rule_id,
            matched_text=m.matched_text,
            keyword=m.keyword,
            block_id=m.block_id,
            reason="overlap",
            start=m.start,
            end=m.end,
        )
        for m in result.superseded
    )
    rejected.sort(key=lambda e: (e.start, e.end, e.rule_id))
    return PreviewReport(
        accepted=accepted,
        rejected=tuple(rejected),
        summary=summarize(accepted),
        markup=result.markup,
        diagnostics=result.diagnostics,
        version=result.version,
        excluded_rules=dict(excluded or {}),
    )


def report_to_dict(report: PreviewReport) -> dict[str, Any]:
    return {
        "version": report.version,
        "accepted": [
            {
                "rule_id": a.rule_id,
                "rule_title": a.rule_title,
                "matched_text": a.matched_text,
                "keyword": a.keyword,
                "block_id": a.block_id,
                "url": a.url,
                "start": a.start,
                "end": a.end,
            }
            for a in report.accepted
        ],
        "rejected": [
            {
                "rule_id": r.rule_id,
                "matched_text": r.matched_text,
                "keyword": r.keyword,
                "block_id": r.block_id,
                "reason": r.reason,
                "start": r.start,
                "end": r.end,
            }
            for r in report.rejected
        ],
        "summary": [
            {
                "rule_id": s.rule_id,
                "rule_title": s.rule_title,
                "keyword": s.keyword,
                "url": s.url,
                "count": s.count,
            }
            for s in report.summary
        ],
        "diagnostics": [
            {"code": d.code, "message": d.message, "severity": d.severity}
            for d in report.diagnostics
        ],
        "excluded_rules": {k: list(v) for k, v in report.excluded_rules.items()},
        "markup": report.markup,
    }


# ---------------------------------------------------------------------------
# Fetching arbitrary pages
# ---------------------------------------------------------------------------

def decode_body(raw: bytes, charset: str | None = None) -> str:
    """Decode a response body: declared charset -> UTF-8 -> CP1252 -> replace."""
    for encoding in (charset, "utf-8", "cp1252"):
        if not encoding:
            continue
        try:
            return raw.decode(encoding)
        except (UnicodeDecodeError, LookupError):
            continue
    return raw.decode("utf-8", errors="replace")


def extract_content_region(page_html: str) -> str:
    """Return the inner HTML of the page's main content element.

    Falls back to ``<body>``, then to the whole document.
    """
    soup = BeautifulSoup(page_html, "html.parser")
    for selector in CONTENT_SELECTORS:
        node = soup.select_one(selector)
        if node is not None:
            return node.decode_contents()
    if soup.body is not None:
        return soup.body.decode_contents()
    return page_html


def fetch_markup(url: str, *, timeout: float = 10.0) -> str:
    """Fetch *url* and return its content region's markup.

    Raises:
        ValueError: *url* is not http(s).
        PreviewFetchError: the request failed.
    """
    if not url.lower().startswith(("http://", "https://")):
        raise ValueError(f"Preview URL must be http(s): {url!r}")
    req = urllib.request.Request(url, headers={"User-Agent": USER_AGENT}, method="GET")
    try:
        with urllib.request.urlopen(req, timeout=timeout) as resp:
            raw = resp.read()
            charset = resp.headers.get_content_charset()
    except (urllib.error.URLError, TimeoutError, OSError) as exc:
        raise PreviewFetchError(f"Could not fetch {url}: {exc}") from exc
    return extract_content_region(decode_body(raw, charset))
