"""Core types for linking rules, categories, UTM templates and render context.

Everything here is immutable. Rules are authored elsewhere (admin UI, rule
store, JSON import) and decoded through the ``*_from_dict`` codecs; the engine
only ever reads a :class:`RuleSetSnapshot`.

Malformed rules are representable on purpose: ``rule_issues`` reports what is
wrong and the scope filter excludes them, so one bad rule never fails a render.
"""
from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from datetime import date
from typing import Any, Literal

from autolink.normalization import fold_keyword


type HeadingMode = Literal["none", "selected", "all"]
type RuleStatus = Literal["active", "inactive"]
type UtmMode = Literal["inherit", "template", "none"]
type ApplyTo = Literal["internal", "external", "both"]
type AppendMode = Literal["append_if_missing", "always_overwrite", "never"]
type BlockKind = Literal["paragraph", "heading", "list_item", "caption", "widget"]
type RenderRegion = Literal["content", "widget"]

HEADING_MODES: frozenset[str] = frozenset({"none", "selected", "all"})
RULE_STATUSES: frozenset[str] = frozenset({"active", "inactive"})
UTM_MODES: frozenset[str] = frozenset({"inherit", "template", "none"})
APPLY_TO_VALUES: frozenset[str] = frozenset({"internal", "external", "both"})
APPEND_MODES: frozenset[str] = frozenset({"append_if_missing", "always_overwrite", "never"})
HEADING_LEVELS: frozenset[int] = frozenset(range(1, 7))

DEFAULT_CATEGORY_COLOR = "#4F46E5"


# ---------------------------------------------------------------------------
# Destinations
# ---------------------------------------------------------------------------

@dataclass(frozen=True, slots=True)
class InternalContent:
    """Link to a piece of site content, resolved through the content lookup."""

    content_id: str


@dataclass(frozen=True, slots=True)
class ExternalUrl:
    """Link to a literal URL."""

    url: str


Destination = InternalContent | ExternalUrl


# ---------------------------------------------------------------------------
# Rule parts
# ---------------------------------------------------------------------------

@dataclass(frozen=True, slots=True)
class LinkAttributes:
    title_text: str | None = None
    suppress_title: bool = False
    nofollow: bool = False
    new_tab: bool = False


@dataclass(frozen=True, slots=True)
class RuleLimits:
    max_per_page: int | None = None
    max_per_block: int | None = None


@dataclass(frozen=True, slots=True)
class HeadingPolicy:
    """Which heading levels a rule may link inside."""

    mode: HeadingMode = "none"
    levels: frozenset[int] = frozenset()

    def allows(self, level: int | None) -> bool:
        if self.mode == "all":
            return True
        if self.mode == "selected":
            return level in self.levels
        return False


@dataclass(frozen=True, slots=True)
class Placement:
    headings: HeadingPolicy = field(default_factory=HeadingPolicy)
    paragraphs: bool = True
    lists: bool = False
    captions: bool = False
    widgets: bool = False

    def allows(self, kind: BlockKind, level: int | None = None) -> bool:
        """True if a block of *kind* (and heading *level*) may be linked."""
        if kind == "heading":
            return self.headings.allows(level)
        if kind == "paragraph":
            return self.paragraphs
        if kind == "list_item":
            return self.lists
        if kind == "caption":
            return self.captions
        if kind == "widget":
            return self.widgets
        return False


@dataclass(frozen=True, slots=True)
class RuleScope:
    content_types: frozenset[str] = frozenset()
    whitelist_paths: tuple[str, ...] = ()
    blacklist_paths: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class UtmRef:
    """Three-way UTM template reference: inherit from category, explicit, or none.

    ``apply_to`` narrows where the resolved template may tag links; the
    template's own ``apply_to`` must allow the destination as well.
    """

    mode: UtmMode = "inherit"
    template_id: str | None = None
    apply_to: ApplyTo = "both"


# ---------------------------------------------------------------------------
# Top-level entities
# ---------------------------------------------------------------------------

@dataclass(frozen=True, slots=True)
class Rule:
    rule_id: str
    title: str
    keywords: tuple[str, ...]
    destination: Destination
    category_id: str | None = None
    attributes: LinkAttributes = field(default_factory=LinkAttributes)
    limits: RuleLimits = field(default_factory=RuleLimits)
    placement: Placement = field(default_factory=Placement)
    scope: RuleScope = field(default_factory=RuleScope)
    utm_ref: UtmRef = field(default_factory=UtmRef)
    priority: int = 0
    status: RuleStatus = "active"
    created_at: str = ""

    @property
    def is_active(self) -> bool:
        return self.status == "active"


@dataclass(frozen=True, slots=True)
class Category:
    category_id: str
    name: str
    color: str = DEFAULT_CATEGORY_COLOR
    description: str = ""
    default_utm_template_id: str | None = None
    category_cap: int | None = None


@dataclass(frozen=True, slots=True)
class UtmTemplate:
    template_id: str
    name: str
    source: str = ""
    medium: str = ""
    campaign: str = ""
    term: str | None = None
    content: str | None = None
    apply_to: ApplyTo = "both"
    append_mode: AppendMode = "append_if_missing"

    def fields(self) -> dict[str, str]:
        """Non-empty ``utm_*`` parameter templates in canonical order."""
        raw = {
            "utm_source": self.source,
            "utm_medium": self.medium,
            "utm_campaign": self.campaign,
            "utm_term": self.term or "",
            "utm_content": self.content or "",
        }
        return {k: v for k, v in raw.items() if v}


@dataclass(frozen=True, slots=True)
class RenderContext:
    """Everything the engine knows about the document being rendered."""

    content_id: str | None = None
    content_type: str | None = None
    page_path: str = "/"
    post_title: str = ""
    slug: str = ""
    primary_category: str = ""
    author: str = ""
    site_name: str = ""
    render_date: date | None = None
    region: RenderRegion = "content"


@dataclass(frozen=True, slots=True)
class RuleSetSnapshot:
    """Immutable, versioned view of all rules, categories and templates."""

    rules: tuple[Rule, ...]
    categories: Mapping[str, Category]
    templates: Mapping[str, UtmTemplate]
    version: str

    def rule_by_id(self) -> dict[str, Rule]:
        return {rule.rule_id: rule for rule in self.rules}


# ---------------------------------------------------------------------------
# Ordering and validation
# ---------------------------------------------------------------------------

def rule_sort_key(rule_id: str) -> tuple[int, int, str]:
    """Tie-break key: numeric ids numerically, then other ids lexically."""
    if rule_id.isdigit():
        return (0, int(rule_id), "")
    return (1, 0, rule_id)


def rule_issues(
    rule: Rule,
    *,
    case_sensitive: bool = False,
    normalize_diacritics: bool = False,
) -> list[str]:
    """Return configuration problems that make *rule* unusable (empty = valid).

    Keywords count as duplicates when they fold to the same text under the
    given matching flags, i.e. when the matcher could not tell them apart.
    """
    issues: list[str] = []
    if not rule.keywords:
        issues.append("no keywords")
    elif any(not kw.strip() for kw in rule.keywords):
        issues.append("blank keyword")
    else:
        folded = [
            fold_keyword(kw, case_sensitive=case_sensitive, normalize_diacritics=normalize_diacritics)
            for kw in rule.keywords
        ]
        if len(set(folded)) != len(folded):
            issues.append("duplicate keywords")

    dest = rule.destination
    if isinstance(dest, InternalContent):
        if not str(dest.content_id).strip():
            issues.append("internal destination without content id")
    elif isinstance(dest, ExternalUrl):
        if not dest.url.strip():
            issues.append("external destination without url")
    else:
        issues.append(f"unknown destination type {type(dest).__name__}")

    headings = rule.placement.headings
    if headings.mode not in HEADING_MODES:
        issues.append(f"unknown heading mode {headings.mode!r}")
    if headings.mode == "selected" and not headings.levels:
        issues.append("selected heading placement without levels")
    bad_levels = sorted(set(headings.levels) - HEADING_LEVELS)
    if bad_levels:
        issues.append(f"heading levels out of range: {bad_levels}")

    for name, value in (
        ("max_per_page", rule.limits.max_per_page),
        ("max_per_block", rule.limits.max_per_block),
    ):
        if value is not None and value < 0:
            issues.append(f"{name} must be >= 0, got {value}")

    if rule.utm_ref.mode == "template" and not rule.utm_ref.template_id:
        issues.append("utm template reference without template id")
    return issues


# ---------------------------------------------------------------------------
# Codecs
# ---------------------------------------------------------------------------

_KEYWORD_SPLIT_RE = re.compile(r"\r\n|\r|\n|,")


def parse_keywords(value: Any) -> tuple[str, ...]:
    """Normalize keyword input (list or comma/newline separated string).

    Keywords are trimmed and exact repeats dropped, order preserved. Case
    variants are kept; whether they collide depends on the matching flags
    (see :func:`rule_issues`).
    """
    if isinstance(value, str):
        parts = _KEYWORD_SPLIT_RE.split(value)
    elif isinstance(value, (list, tuple)):
        parts = [str(v) for v in value]
    else:
        parts = []
    seen: set[str] = set()
    keywords: list[str] = []
    for part in parts:
        kw = part.strip()
        if not kw or kw in seen:
            continue
        seen.add(kw)
        keywords.append(kw)
    return tuple(keywords)


def _opt_int(value: Any) -> int | None:
    if value is None or value == "":
        return None
    return int(value)


def _opt_str(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _choice(value: Any, allowed: frozenset[str], default: str) -> Any:
    text = str(value or "").strip().lower()
    return text if text in allowed else default


def _heading_level(value: Any) -> int:
    text = str(value).strip().lower()
    if text.startswith("h"):
        text = text[1:]
    return int(text)


def destination_from_dict(data: Mapping[str, Any]) -> Destination:
    kind = str(data.get("type") or "internal").lower()
    if kind in {"url", "external"}:
        return ExternalUrl(url=str(data.get("url") or "").strip())
    content_id = data.get("content_id", data.get("post", ""))
    return InternalContent(content_id=str(content_id or "").strip())


def destination_to_dict(dest: Destination) -> dict[str, Any]:
    if isinstance(dest, ExternalUrl):
        return {"type": "external", "url": dest.url}
    return {"type": "internal", "content_id": dest.content_id}


def rule_from_dict(data: Mapping[str, Any]) -> Rule:
    """Decode a rule from its JSON-compatible dict form.

    Accepts ``h2``-style heading levels and ``"inherit"``/``"none"``/``<id>``
    shorthand for ``utm``. Raises ``ValueError`` for values that cannot be
    coerced (e.g. a non-numeric limit); semantic problems are left to
    :func:`rule_issues`.
    """
    attrs = data.get("attributes") or {}
    limits = data.get("limits") or {}
    placement = data.get("placement") or {}
    scope = data.get("scope") or {}

    headings = placement.get("headings", "none")
    if isinstance(headings, Mapping):
        heading_mode = headings.get("mode", "none")
        heading_levels = headings.get("levels") or []
    else:
        heading_mode = headings
        heading_levels = placement.get("heading_levels") or []

    utm_raw = data.get("utm", data.get("utm_ref", "inherit"))
    utm_apply_to = data.get("utm_apply_to")
    if isinstance(utm_raw, Mapping):
        utm_ref = UtmRef(
            mode=_choice(utm_raw.get("mode"), UTM_MODES, "inherit"),
            template_id=_opt_str(utm_raw.get("template_id")),
            apply_to=_choice(utm_raw.get("apply_to", utm_apply_to), APPLY_TO_VALUES, "both"),
        )
    else:
        token = str(utm_raw or "inherit").strip()
        if token in {"", "inherit"}:
            utm_ref = UtmRef()
        elif token == "none":
            utm_ref = UtmRef(mode="none")
        else:
            utm_ref = UtmRef(mode="template", template_id=token)
        utm_ref = replace(utm_ref, apply_to=_choice(utm_apply_to, APPLY_TO_VALUES, "both"))

    return Rule(
        rule_id=str(data.get("rule_id", data.get("id", ""))).strip(),
        title=str(data.get("title") or ""),
        keywords=parse_keywords(data.get("keywords")),
        destination=destination_from_dict(data.get("destination") or {}),
        category_id=_opt_str(data.get("category_id", data.get("category"))),
        attributes=LinkAttributes(
            title_text=_opt_str(attrs.get("title_text", attrs.get("title"))),
            suppress_title=bool(attrs.get("suppress_title", attrs.get("no_title", False))),
            nofollow=bool(attrs.get("nofollow", False)),
            new_tab=bool(attrs.get("new_tab", False)),
        ),
        limits=RuleLimits(
            max_per_page=_opt_int(limits.get("max_per_page", limits.get("max_page"))),
            max_per_block=_opt_int(limits.get("max_per_block", limits.get("max_block"))),
        ),
        placement=Placement(
            headings=HeadingPolicy(
                mode=str(heading_mode or "none").lower(),  # type: ignore[arg-type]
                levels=frozenset(_heading_level(v) for v in heading_levels),
            ),
            paragraphs=bool(placement.get("paragraphs", True)),
            lists=bool(placement.get("lists", False)),
            captions=bool(placement.get("captions", False)),
            widgets=bool(placement.get("widgets", False)),
        ),
        scope=RuleScope(
            content_types=frozenset(
                str(t) for t in scope.get("content_types", scope.get("post_types", [])) or []
            ),
            whitelist_paths=tuple(str(p).strip() for p in scope.get("whitelist_paths", scope.get("whitelist", [])) or [] if str(p).strip()),
            blacklist_paths=tuple(str(p).strip() for p in scope.get("blacklist_paths", scope.get("blacklist", [])) or [] if str(p).strip()),
        ),
        utm_ref=utm_ref,
        priority=int(data.get("priority", 0) or 0),
        status=_choice(data.get("status"), RULE_STATUSES, "active"),
        created_at=str(data.get("created_at") or ""),
    )


def rule_to_dict(rule: Rule) -> dict[str, Any]:
    return {
        "rule_id": rule.rule_id,
        "title": rule.title,
        "category_id": rule.category_id,
        "keywords": list(rule.keywords),
        "destination": destination_to_dict(rule.destination),
        "attributes": {
            "title_text": rule.attributes.title_text,
            "suppress_title": rule.attributes.suppress_title,
            "nofollow": rule.attributes.nofollow,
            "new_tab": rule.attributes.new_tab,
        },
        "limits": {
            "max_per_page": rule.limits.max_per_page,
            "max_per_block": rule.limits.max_per_block,
        },
        "placement": {
            "headings": {
                "mode": rule.placement.headings.mode,
                "levels": sorted(rule.placement.headings.levels),
            },
            "paragraphs": rule.placement.paragraphs,
            "lists": rule.placement.lists,
            "captions": rule.placement.captions,
            "widgets": rule.placement.widgets,
        },
        "scope": {
            "content_types": sorted(rule.scope.content_types),
            "whitelist_paths": list(rule.scope.whitelist_paths),
            "blacklist_paths": list(rule.scope.blacklist_paths),
        },
        "utm": {
            "mode": rule.utm_ref.mode,
            "template_id": rule.utm_ref.template_id,
            "apply_to": rule.utm_ref.apply_to,
        },
        "priority": rule.priority,
        "status": rule.status,
        "created_at": rule.created_at,
    }


def category_from_dict(data: Mapping[str, Any]) -> Category:
    cap = _opt_int(data.get("category_cap"))
    return Category(
        category_id=str(data.get("category_id", data.get("id", ""))).strip(),
        name=str(data.get("name") or ""),
        color=str(data.get("color") or DEFAULT_CATEGORY_COLOR),
        description=str(data.get("description") or ""),
        default_utm_template_id=_opt_str(
            data.get("default_utm_template_id", data.get("default_utm")),
        ),
        # Stored 0 means "no cap".
        category_cap=cap if cap else None,
    )


def category_to_dict(category: Category) -> dict[str, Any]:
    return {
        "category_id": category.category_id,
        "name": category.name,
        "color": category.color,
        "description": category.description,
        "default_utm_template_id": category.default_utm_template_id,
        "category_cap": category.category_cap,
    }


def template_from_dict(data: Mapping[str, Any]) -> UtmTemplate:
    def _field(name: str) -> str:
        return str(data.get(name, data.get(f"utm_{name}", "")) or "").strip()

    return UtmTemplate(
        template_id=str(data.get("template_id", data.get("id", ""))).strip(),
        name=str(data.get("name") or ""),
        source=_field("source"),
        medium=_field("medium"),
        campaign=_field("campaign"),
        term=_field("term") or None,
        content=_field("content") or None,
        apply_to=_choice(data.get("apply_to"), APPLY_TO_VALUES, "both"),
        append_mode=_choice(data.get("append_mode"), APPEND_MODES, "append_if_missing"),
    )


def template_to_dict(template: UtmTemplate) -> dict[str, Any]:
    return {
        "template_id": template.template_id,
        "name": template.name,
        "source": template.source,
        "medium": template.medium,
        "campaign": template.campaign,
        "term": template.term,
        "content": template.content,
        "apply_to": template.apply_to,
        "append_mode": template.append_mode,
    }


def context_from_dict(data: Mapping[str, Any]) -> RenderContext:
    raw_date = data.get("render_date")
    render_date = date.fromisoformat(str(raw_date)) if raw_date else None
    region = "widget" if str(data.get("region") or "") == "widget" else "content"
    return RenderContext(
        content_id=_opt_str(data.get("content_id")),
        content_type=_opt_str(data.get("content_type")),
        page_path=str(data.get("page_path") or "/"),
        post_title=str(data.get("post_title") or ""),
        slug=str(data.get("slug") or ""),
        primary_category=str(data.get("primary_category") or ""),
        author=str(data.get("author") or ""),
        site_name=str(data.get("site_name") or ""),
        render_date=render_date,
        region=region,
    )
