"""Anchor attribute derivation and start-tag markup."""
from __future__ import annotations

from html import escape

from autolink.rule_types import LinkAttributes


def build_attributes(attributes: LinkAttributes) -> dict[str, str]:
    """Derive ``title``, ``rel`` and ``target`` from a rule's link attributes."""
    out: dict[str, str] = {}
    title = (attributes.title_text or "").strip()
    if title and not attributes.suppress_title:
        out["title"] = title
    rel: list[str] = []
    if attributes.nofollow:
        rel.append("nofollow")
    if attributes.new_tab:
        rel.append("noopener")
        out["target"] = "_blank"
    if rel:
        out["rel"] = " ".join(rel)
    return out


def render_anchor_open(
    href: str,
    attributes: dict[str, str],
    *,
    marker_attribute: str,
    rule_id: str,
) -> str:
    """``<a href=... [title/rel/target] data-autolink="<rule_id>">``, escaped."""
    parts = [f'href="{escape(href, quote=True)}"']
    for name in ("title", "rel", "target"):
        if name in attributes:
            parts.append(f'{name}="{escape(attributes[name], quote=True)}"')
    parts.append(f'{marker_attribute}="{escape(rule_id, quote=True)}"')
    return f"<a {' '.join(parts)}>"


ANCHOR_CLOSE = "</a>"
