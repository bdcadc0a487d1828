"""UTM template resolution, token expansion and query-string merging."""
from __future__ import annotations

import re
from collections.abc import Mapping
from datetime import date
from urllib.parse import unquote_plus, urlencode

from autolink.rule_types import ApplyTo, Category, RenderContext, Rule, UtmTemplate

_TOKEN_RE = re.compile(r"\{([a-z_]+)(?::([^{}]+))?\}")

# Single-letter date formats used by WordPress-style templates ({date:Ymd}).
_LETTER_FORMATS: dict[str, str] = {
    "Y": "%Y",
    "y": "%y",
    "m": "%m",
    "d": "%d",
    "M": "%b",
    "F": "%B",
    "D": "%a",
    "l": "%A",
}


def effective_template(
    rule: Rule,
    categories: Mapping[str, Category],
    templates: Mapping[str, UtmTemplate],
) -> UtmTemplate | None:
    """Resolve the rule's three-way UTM reference to a template (or none)."""
    ref = rule.utm_ref
    if ref.mode == "none":
        return None
    if ref.mode == "template":
        return templates.get(ref.template_id) if ref.template_id else None
    category = categories.get(rule.category_id) if rule.category_id else None
    if category is None or not category.default_utm_template_id:
        return None
    return templates.get(category.default_utm_template_id)


def build_token_map(context: RenderContext, rule: Rule, keyword: str) -> dict[str, str]:
    content_id = context.content_id or ""
    content_type = context.content_type or ""
    today = context.render_date or date.today()
    return {
        "post_id": content_id,
        "content_id": content_id,
        "post_slug": context.slug,
        "slug": context.slug,
        "post_type": content_type,
        "content_type": content_type,
        "post_title": context.post_title,
        "primary_category": context.primary_category,
        "keyword": keyword,
        "rule_id": rule.rule_id,
        "site_name": context.site_name,
        "author": context.author,
        "date": today.isoformat(),
    }


def format_date(value: date, fmt: str) -> str:
    """Format *value* with strftime directives, or letter codes like ``Ymd``."""
    if "%" in fmt:
        return value.strftime(fmt)
    out: list[str] = []
    for ch in fmt:
        if ch == "n":
            out.append(str(value.month))
        elif ch == "j":
            out.append(str(value.day))
        elif ch in _LETTER_FORMATS:
            out.append(value.strftime(_LETTER_FORMATS[ch]))
        else:
            out.append(ch)
    return "".join(out)


def expand_tokens(template: str, tokens: Mapping[str, str]) -> str:
    """Substitute ``{token}`` / ``{date:fmt}``; unknown tokens stay verbatim."""

    def _sub(m: re.Match[str]) -> str:
        name, fmt = m.group(1), m.group(2)
        if name == "date" and fmt:
            return format_date(date.fromisoformat(tokens["date"]), fmt)
        if fmt is None and name in tokens:
            return tokens[name]
        return m.group(0)

    return _TOKEN_RE.sub(_sub, template)


def _split_fragment(url: str) -> tuple[str, str]:
    base, hash_, fragment = url.partition("#")
    return base, hash_ + fragment


def _query_pairs(query: str) -> list[tuple[str, str]]:
    """Split a raw query into ``(decoded_name, raw_pair)`` preserving bytes."""
    pairs: list[tuple[str, str]] = []
    for raw in query.split("&"):
        if not raw:
            continue
        name = unquote_plus(raw.split("=", 1)[0])
        pairs.append((name, raw))
    return pairs


def applies_to(target: str, *, is_internal: bool) -> bool:
    if target == "internal":
        return is_internal
    if target == "external":
        return not is_internal
    return True


def apply_utm(
    url: str,
    template: UtmTemplate | None,
    tokens: Mapping[str, str],
    *,
    is_internal: bool,
    rule_apply_to: ApplyTo = "both",
) -> str:
    """Merge the template's expanded ``utm_*`` parameters into *url*.

    Tagging happens only when both the rule's and the template's ``apply_to``
    allow the destination. ``append_if_missing`` adds only absent parameters,
    ``always_overwrite`` replaces existing values in place, ``never`` leaves
    the URL alone when any of the template's parameters is already present.
    """
    if template is None:
        return url
    if not (
        applies_to(rule_apply_to, is_internal=is_internal)
        and applies_to(template.apply_to, is_internal=is_internal)
    ):
        return url

    params = {
        name: value
        for name, raw in template.fields().items()
        if (value := expand_tokens(raw, tokens).strip())
    }
    if not params:
        return url

    base, fragment = _split_fragment(url)
    path, has_query, query = base.partition("?")
    pairs = _query_pairs(query) if has_query else []
    present = {name for name, _ in pairs}

    if template.append_mode == "never" and present & set(params):
        return url

    kept: list[str] = []
    if template.append_mode == "always_overwrite":
        written: set[str] = set()
        for name, raw in pairs:
            if name in params:
                if name not in written:
                    kept.append(urlencode({name: params[name]}))
                    written.add(name)
                continue
            kept.append(raw)
        additions = {k: v for k, v in params.items() if k not in written}
    else:
        kept = [raw for _, raw in pairs]
        additions = {k: v for k, v in params.items() if k not in present}

    if not additions and template.append_mode != "always_overwrite":
        return url
    if additions:
        kept.append(urlencode(additions))
    return f"{path}?{'&'.join(kept)}{fragment}"
