"""Link engine: snapshot handling, render cache, chunked scanning and the pipeline.

Public API:
    RuleRepository      -- collaborator: load_snapshot() / current_version()
    ContentSource       -- collaborator: load_markup(content_id)
    RenderCache         -- cache interface; MemoryRenderCache ships here
    StaticRuleRepository
    run_pipeline()      -- one pure pass: scope → segment → match → allocate → rewrite
    LinkEngine          -- render() / preview() / current_version()

Rendering never mutates shared state apart from the engine's snapshot
reference and the render cache, both guarded by a lock. Every failure inside
the pipeline is local: the worst case is the original markup plus a
diagnostic.
"""
from __future__ import annotations

import hashlib
import logging
import threading
from abc import ABC, abstractmethod
from collections.abc import Iterator, Sequence
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING

from autolink.allocator import RejectedMatch, allocate
from autolink.anchors import build_attributes, render_anchor_open
from autolink.config import EngineSettings
from autolink.destinations import (
    ContentLookup,
    ContentLookupError,
    DestinationTable,
    resolve_destinations,
)
from autolink.matcher import KeywordMatch, build_automaton, resolve_overlaps, scan_blocks
from autolink.rewriter import PlannedLink, rewrite
from autolink.rule_types import RenderContext, Rule, RuleSetSnapshot
from autolink.scope_filter import SnapshotAudit, audit_snapshot, select_candidates
from autolink.segmenter import Block, SegmentationError, segment
from autolink.utm import apply_utm, build_token_map, effective_template

if TYPE_CHECKING:
    from autolink.preview import PreviewReport

log = logging.getLogger(__name__)


class ContentNotFoundError(LookupError):
    """No markup is available for the requested content id."""


# ---------------------------------------------------------------------------
# Collaborator interfaces
# ---------------------------------------------------------------------------

class RuleRepository(ABC):
    """Source of versioned rule-set snapshots."""

    @abstractmethod
    def load_snapshot(self) -> RuleSetSnapshot:
        """Capture rules, categories, templates and version atomically."""

    @abstractmethod
    def current_version(self) -> str:
        """Return the current rule-set version token."""


class ContentSource(ABC):
    """Source of stored document markup, keyed by content id."""

    @abstractmethod
    def load_markup(self, content_id: str) -> str | None:
        """Return the stored markup, or ``None`` when the id is unknown."""


class StaticRuleRepository(RuleRepository):
    """Repository over a fixed snapshot (tests, imports, draft previews)."""

    def __init__(self, snapshot: RuleSetSnapshot) -> None:
        self._snapshot = snapshot

    def load_snapshot(self) -> RuleSetSnapshot:
        return self._snapshot

    def current_version(self) -> str:
        return self._snapshot.version


# ---------------------------------------------------------------------------
# Render cache
# ---------------------------------------------------------------------------

@dataclass(frozen=True, slots=True)
class CachedRender:
    content_id: str
    version: str
    source_digest: str
    markup: str


class RenderCache(ABC):
    """Rendered markup keyed by content id; validity is checked by the caller."""

    @abstractmethod
    def get(self, content_id: str) -> CachedRender | None: ...

    @abstractmethod
    def put(self, entry: CachedRender) -> None: ...

    @abstractmethod
    def invalidate(self, content_id: str | None = None) -> None: ...


class MemoryRenderCache(RenderCache):
    def __init__(self) -> None:
        self._entries: dict[str, CachedRender] = {}
        self._lock = threading.Lock()

    def get(self, content_id: str) -> CachedRender | None:
        with self._lock:
            return self._entries.get(content_id)

    def put(self, entry: CachedRender) -> None:
        with self._lock:
            self._entries[entry.content_id] = entry

    def invalidate(self, content_id: str | None = None) -> None:
        with self._lock:
            if content_id is None:
                self._entries.clear()
            else:
                self._entries.pop(content_id, None)

    def __len__(self) -> int:
        return len(self._entries)


def source_digest(markup: str, context: RenderContext) -> str:
    """Digest of the source markup and every context field the render reads."""
    h = hashlib.sha256()
    h.update(markup.encode("utf-8"))
    h.update(repr(context).encode("utf-8"))
    return h.hexdigest()


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------

@dataclass(frozen=True, slots=True)
class RenderDiagnostic:
    code: str
    message: str
    severity: str = "warning"


@dataclass(frozen=True, slots=True)
class PlacedLink:
    """An accepted match with its final, tracked destination."""

    match: KeywordMatch
    rule_title: str
    url: str
    is_internal: bool


@dataclass(frozen=True, slots=True)
class PipelineResult:
    source: str
    markup: str
    version: str
    placed: tuple[PlacedLink, ...] = ()
    rejected: tuple[RejectedMatch, ...] = ()
    superseded: tuple[KeywordMatch, ...] = ()
    diagnostics: tuple[RenderDiagnostic, ...] = ()
    candidate_rules: int = 0
    chunks: int = 0
    peak_hits: int = 0

    @property
    def failed(self) -> bool:
        return any(d.severity == "error" for d in self.diagnostics)


@dataclass(frozen=True, slots=True)
class RenderResult:
    markup: str
    version: str
    links_inserted: int = 0
    cached: bool = False
    diagnostics: tuple[RenderDiagnostic, ...] = field(default_factory=tuple)

    @property
    def ok(self) -> bool:
        return not any(d.severity == "error" for d in self.diagnostics)


def iter_chunks(blocks: Sequence[Block], size: int) -> Iterator[Sequence[Block]]:
    for start in range(0, len(blocks), size):
        yield blocks[start:start + size]


def _fail_closed(markup: str, version: str, code: str, message: str) -> PipelineResult:
    return PipelineResult(
        source=markup,
        markup=markup,
        version=version,
        diagnostics=(RenderDiagnostic(code=code, message=message, severity="error"),),
    )


def _plan_links(
    accepted: Sequence[KeywordMatch],
    rules: dict[str, Rule],
    snapshot: RuleSetSnapshot,
    table: DestinationTable,
    context: RenderContext,
    settings: EngineSettings,
) -> tuple[list[PlannedLink], list[PlacedLink]]:
    planned: list[PlannedLink] = []
    placed: list[PlacedLink] = []
    for match in accepted:
        rule = rules[match.rule_id]
        dest = table.resolved[rule.rule_id]
        template = effective_template(rule, snapshot.categories, snapshot.templates)
        url = apply_utm(
            dest.url,
            template,
            build_token_map(context, rule, match.keyword),
            is_internal=dest.is_internal,
            rule_apply_to=rule.utm_ref.apply_to,
        )
        open_tag = render_anchor_open(
            url,
            build_attributes(rule.attributes),
            marker_attribute=settings.marker_attribute,
            rule_id=rule.rule_id,
        )
        planned.append(PlannedLink(rule_id=rule.rule_id, start=match.start, end=match.end, open_tag=open_tag))
        placed.append(PlacedLink(match=match, rule_title=rule.title, url=url, is_internal=dest.is_internal))
    return planned, placed


def run_pipeline(
    markup: str,
    context: RenderContext,
    snapshot: RuleSetSnapshot,
    settings: EngineSettings,
    lookup: ContentLookup | None,
    *,
    excluded_ids: frozenset[str] = frozenset(),
    report_rejections: bool = True,
) -> PipelineResult:
    """Run one full render pass over *markup*; never raises for content problems.

    Large documents are scanned ``chunk_block_count`` blocks at a time and
    overlaps are resolved per chunk, so raw hits are only ever held for one
    chunk. With *report_rejections* off, superseded and unresolved hits are
    discarded as each chunk finishes instead of being kept for a report.
    """
    version = snapshot.version
    candidates = select_candidates(snapshot, context, excluded_ids=excluded_ids)

    try:
        doc = segment(
            markup,
            marker_attribute=settings.marker_attribute,
            widget_region=context.region == "widget",
        )
    except SegmentationError as exc:
        log.warning("unparsable markup for content %s: %s", context.content_id, exc)
        return _fail_closed(markup, version, "unparsable_markup", str(exc))

    if not candidates:
        return PipelineResult(source=markup, markup=markup, version=version)

    try:
        table = resolve_destinations(candidates, lookup, site_host=settings.site_host)
    except ContentLookupError as exc:
        log.warning("content lookup failed for content %s: %s", context.content_id, exc)
        return _fail_closed(markup, version, "content_lookup_failed", str(exc))

    automaton = build_automaton(candidates, settings)
    blocks = doc.blocks
    chunked = settings.chunking_enabled and len(markup) > settings.chunk_threshold_chars
    chunk_size = settings.chunk_block_count if chunked else max(len(blocks), 1)
    # Blocks never span chunks, so overlaps resolve per chunk; only the
    # non-overlapping winners are held for the document-wide allocation.
    kept: list[KeywordMatch] = []
    superseded: list[KeywordMatch] = []
    dropped: list[RejectedMatch] = []
    chunks = 0
    peak_hits = 0
    for chunk in iter_chunks(blocks, chunk_size):
        hits = scan_blocks(chunk, automaton, candidates, settings)
        peak_hits = max(peak_hits, len(hits))
        resolvable = [m for m in hits if m.rule_id not in table.unresolved]
        if report_rejections:
            dropped.extend(
                RejectedMatch(match=m, reason="destination_unresolved")
                for m in hits if m.rule_id in table.unresolved
            )
        chunk_kept, chunk_superseded = resolve_overlaps(resolvable)
        kept.extend(chunk_kept)
        if report_rejections:
            superseded.extend(chunk_superseded)
        chunks += 1
    if chunked:
        log.debug(
            "scanned %d blocks in %d chunks (peak %d hits, %d kept)",
            len(blocks), chunks, peak_hits, len(kept),
        )

    rules = snapshot.rule_by_id()
    allocation = allocate(
        kept,
        rules,
        snapshot.categories,
        settings,
        seeded=doc.inserted,
        protected=doc.protected,
    )
    planned, placed = _plan_links(allocation.accepted, rules, snapshot, table, context, settings)
    rewritten = rewrite(markup, planned)

    diagnostics = tuple(
        RenderDiagnostic(
            code="destination_unresolved",
            message=f"internal content {cid} not found",
        )
        for cid in sorted(table.missing_content)
    )
    return PipelineResult(
        source=markup,
        markup=rewritten,
        version=version,
        placed=tuple(placed),
        rejected=tuple(dropped) + allocation.rejected,
        superseded=tuple(superseded),
        diagnostics=diagnostics,
        candidate_rules=len(candidates),
        chunks=chunks,
        peak_hits=peak_hits,
    )


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

class LinkEngine:
    """Renders documents against the current rule-set snapshot.

    Safe to share across threads: the pipeline itself is pure, and the
    snapshot reference and cache are only touched under a lock.
    """

    def __init__(
        self,
        repository: RuleRepository,
        lookup: ContentLookup | None = None,
        *,
        settings: EngineSettings | None = None,
        content_source: ContentSource | None = None,
        cache: RenderCache | None = None,
    ) -> None:
        self.repository = repository
        self.lookup = lookup
        self.settings = settings or EngineSettings()
        self.content_source = content_source
        self.cache = cache
        self._lock = threading.Lock()
        self._snapshot: RuleSetSnapshot | None = None
        self._audit: SnapshotAudit | None = None

    # -- snapshot ----------------------------------------------------------

    def current_version(self) -> str:
        return self.repository.current_version()

    def snapshot(self) -> tuple[RuleSetSnapshot, SnapshotAudit]:
        """Current snapshot and its audit; reloaded only when the version moves."""
        version = self.repository.current_version()
        with self._lock:
            if self._snapshot is not None and self._audit is not None and self._snapshot.version == version:
                return self._snapshot, self._audit

        snapshot = self.repository.load_snapshot()
        audit = audit_snapshot(snapshot, self.settings)
        for rule_id, issues in sorted(audit.excluded.items()):
            log.warning("rule %r excluded: %s", rule_id, "; ".join(issues))
        log.debug("loaded rule snapshot %s (%d rules)", snapshot.version, len(snapshot.rules))
        with self._lock:
            self._snapshot, self._audit = snapshot, audit
        return snapshot, audit

    def snapshot_issues(self) -> dict[str, tuple[str, ...]]:
        return dict(self.snapshot()[1].excluded)

    # -- markup ------------------------------------------------------------

    def load_markup(self, content_id: str | None) -> str:
        if not content_id or self.content_source is None:
            raise ContentNotFoundError(f"no markup source for content {content_id!r}")
        markup = self.content_source.load_markup(content_id)
        if markup is None:
            raise ContentNotFoundError(f"content {content_id!r} not found")
        return markup

    # -- render ------------------------------------------------------------

    def render(self, context: RenderContext, *, markup: str | None = None) -> RenderResult:
        """Render *markup* (or the stored markup of ``context.content_id``).

        Raises:
            ContentNotFoundError: no markup given and none stored for the id.
        """
        if markup is None:
            markup = self.load_markup(context.content_id)
        snapshot, audit = self.snapshot()

        use_cache = self.settings.cache_enabled and self.cache is not None and bool(context.content_id)
        digest = source_digest(markup, context) if use_cache else ""
        if use_cache:
            entry = self.cache.get(context.content_id)
            if entry is not None and entry.version == snapshot.version and entry.source_digest == digest:
                log.debug("render cache hit for %s at %s", context.content_id, snapshot.version)
                return RenderResult(markup=entry.markup, version=entry.version, cached=True)
            if entry is not None:
                log.debug(
                    "stale render cache entry for %s (%s != %s)",
                    context.content_id, entry.version, snapshot.version,
                )

        result = run_pipeline(
            markup, context, snapshot, self.settings, self.lookup,
            excluded_ids=audit.excluded_ids,
            report_rejections=False,
        )
        if use_cache and not result.failed:
            self.cache.put(CachedRender(
                content_id=context.content_id,
                version=snapshot.version,
                source_digest=digest,
                markup=result.markup,
            ))
        return RenderResult(
            markup=result.markup,
            version=result.version,
            links_inserted=len(result.placed),
            diagnostics=result.diagnostics,
        )

    def preview(
        self,
        context: RenderContext,
        *,
        markup: str | None = None,
        url: str | None = None,
        draft_rules: Sequence[Rule] | None = None,
    ) -> PreviewReport:
        """Run the render pipeline without touching the cache.

        Markup comes from *markup*, else is fetched from *url*, else loaded for
        ``context.content_id``. *draft_rules* replace (by id) or extend the
        stored rules for this preview only.
        """
        from autolink.preview import build_report, fetch_markup

        if markup is None and url is not None:
            markup = fetch_markup(url)
        elif markup is None:
            markup = self.load_markup(context.content_id)

        snapshot, audit = self.snapshot()
        if draft_rules:
            draft_ids = {rule.rule_id for rule in draft_rules}
            merged = tuple(r for r in snapshot.rules if r.rule_id not in draft_ids) + tuple(draft_rules)
            snapshot = replace(snapshot, rules=merged, version=f"{snapshot.version}+draft")
            audit = audit_snapshot(snapshot, self.settings)

        result = run_pipeline(
            markup, context, snapshot, self.settings, self.lookup,
            excluded_ids=audit.excluded_ids,
        )
        return build_report(result, excluded=audit.excluded)
