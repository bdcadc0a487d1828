"""Scope filtering: narrow a rule snapshot to the candidates for one render.

Path patterns (whitelist / blacklist):

* ``*`` matches anything inside one path segment, ``**`` matches across ``/``.
* Matches are anchored at both ends: a pattern without wildcards matches only
  the identical path. The one extension is a plain pattern ending in ``/``,
  which also covers everything below it (``/services/`` acts as
  ``/services/**``); ``/contact`` never matches ``/contact-us``.
* A pattern given as a full URL is reduced to its path and query.

Matching is case-insensitive and runs against the path plus query string.
"""
from __future__ import annotations

import logging
import re
from collections.abc import Iterable
from dataclasses import dataclass
from functools import lru_cache
from urllib.parse import urlsplit

from autolink.config import EngineSettings
from autolink.rule_types import RenderContext, Rule, RuleSetSnapshot, rule_issues

log = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class SnapshotAudit:
    """Rules excluded from a snapshot because their configuration is malformed."""

    version: str
    excluded: dict[str, tuple[str, ...]]

    @property
    def excluded_ids(self) -> frozenset[str]:
        return frozenset(self.excluded)


def audit_snapshot(snapshot: RuleSetSnapshot, settings: EngineSettings | None = None) -> SnapshotAudit:
    """Validate every rule of *snapshot* once, folding keywords as *settings* match them."""
    settings = settings or EngineSettings()
    excluded: dict[str, tuple[str, ...]] = {}
    for rule in snapshot.rules:
        issues = rule_issues(
            rule,
            case_sensitive=settings.case_sensitive,
            normalize_diacritics=settings.normalize_diacritics,
        )
        if not rule.rule_id:
            issues = ["missing rule id", *issues]
        if issues:
            excluded[rule.rule_id] = tuple(issues)
    return SnapshotAudit(version=snapshot.version, excluded=excluded)


def normalize_path_for_match(url: str) -> str:
    """Reduce a URL or path to lower-cased ``path[?query]``."""
    if not url:
        return ""
    parts = urlsplit(url.strip())
    if parts.scheme and parts.scheme.lower() not in {"http", "https"}:
        return url.strip().lower()
    path = parts.path or "/"
    query = f"?{parts.query}" if parts.query else ""
    return (path + query).lower()


@lru_cache(maxsize=1024)
def _compile_pattern(pattern: str) -> re.Pattern[str] | None:
    if "*" not in pattern:
        return None
    escaped = re.escape(pattern)
    escaped = escaped.replace(r"\*\*", "\x00").replace(r"\*", "[^/]*").replace("\x00", ".*")
    return re.compile(f"^{escaped}$")


def path_matches(path: str, pattern: str) -> bool:
    """True if normalized *path* matches one whitelist/blacklist *pattern*."""
    pattern = pattern.strip()
    if not pattern:
        return False
    if pattern.lower().startswith(("http://", "https://")):
        pattern = normalize_path_for_match(pattern)
    pattern = pattern.lower()
    compiled = _compile_pattern(pattern)
    if compiled is not None:
        return compiled.match(path) is not None
    if path == pattern:
        return True
    return pattern.endswith("/") and path.startswith(pattern)


def passes_path_scope(rule: Rule, page_path: str) -> bool:
    path = normalize_path_for_match(page_path) or "/"
    whitelist = [p for p in rule.scope.whitelist_paths if p.strip()]
    if whitelist:
        return any(path_matches(path, p) for p in whitelist)
    return not any(path_matches(path, p) for p in rule.scope.blacklist_paths)


def rule_in_scope(rule: Rule, context: RenderContext) -> bool:
    """Status, region, content type and path checks for one rule."""
    if not rule.is_active:
        return False
    if context.region == "widget" and not rule.placement.widgets:
        return False
    content_types = rule.scope.content_types
    if content_types and context.content_type not in content_types:
        return False
    return passes_path_scope(rule, context.page_path)


def select_candidates(
    snapshot: RuleSetSnapshot,
    context: RenderContext,
    *,
    excluded_ids: Iterable[str] = (),
) -> list[Rule]:
    """Return in-scope, well-formed rules in snapshot order."""
    excluded = set(excluded_ids)
    candidates = [
        rule for rule in snapshot.rules
        if rule.rule_id not in excluded and rule_in_scope(rule, context)
    ]
    log.debug(
        "scope filter: %d of %d rules are candidates for %s",
        len(candidates), len(snapshot.rules), context.page_path,
    )
    return candidates
