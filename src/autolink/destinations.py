"""Destination resolution for candidate rules.

Design:
- ``ContentLookup`` is the abstract collaborator that maps internal content ids
  to URLs. Implementations may hit a database or a CMS; the engine calls
  ``resolve_many`` once per render with every id its candidate rules reference
- ``ExternalUrl`` destinations pass through with only scheme and host
  lower-cased
- A missing content id drops the rule for the current render only (logged as a
  data-consistency warning); a ``ContentLookupError`` means the lookup itself is
  down and propagates to the engine, which fails closed
"""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field

from autolink.rule_types import ExternalUrl, InternalContent, Rule

log = logging.getLogger(__name__)


class ContentLookupError(RuntimeError):
    """The content lookup backend failed (as opposed to an id being unknown)."""


@dataclass(frozen=True, slots=True)
class ResolvedContent:
    content_id: str
    url: str
    title: str = ""
    content_type: str = ""


# ---------------------------------------------------------------------------
# Content lookup interface
# ---------------------------------------------------------------------------

class ContentLookup(ABC):
    """Abstract mapping from internal content ids to published URLs."""

    @abstractmethod
    def resolve(self, content_id: str) -> ResolvedContent | None:
        """Return the content's URL and metadata, or ``None`` when not found.

        Raises
        ------
        ContentLookupError
            When the backend cannot answer at all.
        """

    def resolve_many(self, content_ids: Iterable[str]) -> dict[str, ResolvedContent | None]:
        """Resolve a batch of ids. Override for a single round-trip backend."""
        return {cid: self.resolve(cid) for cid in dict.fromkeys(content_ids)}


# ---------------------------------------------------------------------------
# URL helpers
# ---------------------------------------------------------------------------

def _split_authority(url: str) -> tuple[str, str, str] | None:
    """Split ``scheme://authority<rest>``; ``None`` when there is no authority."""
    sep = url.find("://")
    if sep <= 0 or not url[:sep].replace("+", "").replace("-", "").replace(".", "").isalnum():
        return None
    scheme = url[:sep]
    rest = url[sep + 3:]
    cut = len(rest)
    for ch in "/?#":
        pos = rest.find(ch)
        if 0 <= pos < cut:
            cut = pos
    return scheme, rest[:cut], rest[cut:]


def normalize_external_url(url: str) -> str:
    """Lower-case the scheme and host; path, query and fragment are untouched."""
    url = url.strip()
    parts = _split_authority(url)
    if parts is None:
        return url
    scheme, authority, rest = parts
    userinfo, at, hostport = authority.rpartition("@")
    return f"{scheme.lower()}://{userinfo}{at}{hostport.lower()}{rest}"


def url_host(url: str) -> str:
    parts = _split_authority(url.strip())
    if parts is None:
        if url.strip().startswith("//"):
            parts = ("", url.strip()[2:].split("/", 1)[0], "")
        else:
            return ""
    hostport = parts[1].rpartition("@")[2]
    if hostport.startswith("["):
        return hostport.split("]", 1)[0] + "]"
    return hostport.split(":", 1)[0].lower()


def _bare_host(host: str) -> str:
    host = host.lower()
    return host[4:] if host.startswith("www.") else host


def is_internal_url(url: str, site_host: str) -> bool:
    """Relative URLs and URLs on *site_host* (``www.`` ignored) are internal."""
    host = url_host(url)
    if not host:
        stripped = url.strip()
        return ":" not in stripped.split("/", 1)[0]
    return bool(site_host) and _bare_host(host) == _bare_host(site_host)


# ---------------------------------------------------------------------------
# Resolution
# ---------------------------------------------------------------------------

@dataclass(frozen=True, slots=True)
class ResolvedDestination:
    rule_id: str
    url: str
    is_internal: bool
    title: str = ""


@dataclass(frozen=True, slots=True)
class DestinationTable:
    """Per-render destination map keyed by rule id."""

    resolved: Mapping[str, ResolvedDestination] = field(default_factory=dict)
    unresolved: frozenset[str] = frozenset()
    missing_content: frozenset[str] = frozenset()

    def get(self, rule_id: str) -> ResolvedDestination | None:
        return self.resolved.get(rule_id)


def resolve_destinations(
    rules: Sequence[Rule],
    lookup: ContentLookup | None,
    *,
    site_host: str = "",
) -> DestinationTable:
    """Resolve every candidate rule's destination with one batched lookup.

    Raises:
        ContentLookupError: propagated from *lookup*.
    """
    content_ids = [
        rule.destination.content_id
        for rule in rules
        if isinstance(rule.destination, InternalContent)
    ]
    found: dict[str, ResolvedContent | None] = {}
    if content_ids:
        if lookup is None:
            log.warning("no content lookup configured; %d internal ids unresolved", len(set(content_ids)))
        else:
            found = lookup.resolve_many(content_ids)

    resolved: dict[str, ResolvedDestination] = {}
    unresolved: set[str] = set()
    missing: set[str] = set()
    for rule in rules:
        dest = rule.destination
        if isinstance(dest, InternalContent):
            content = found.get(dest.content_id)
            if content is None or not content.url:
                unresolved.add(rule.rule_id)
                missing.add(dest.content_id)
                continue
            resolved[rule.rule_id] = ResolvedDestination(
                rule_id=rule.rule_id,
                url=content.url,
                is_internal=True,
                title=content.title,
            )
        elif isinstance(dest, ExternalUrl):
            url = normalize_external_url(dest.url)
            resolved[rule.rule_id] = ResolvedDestination(
                rule_id=rule.rule_id,
                url=url,
                is_internal=is_internal_url(url, site_host),
            )

    for content_id in sorted(missing):
        log.warning("internal content %s not found; dependent rules dropped for this render", content_id)
    return DestinationTable(
        resolved=resolved,
        unresolved=frozenset(unresolved),
        missing_content=frozenset(missing),
    )
