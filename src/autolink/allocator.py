"""Greedy, priority-ordered link allocation under per-rule, category and page caps."""
from __future__ import annotations

from collections import Counter
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from typing import Literal

from autolink.config import EngineSettings
from autolink.matcher import KeywordMatch, SpanIndex
from autolink.rule_types import Category, Rule, rule_sort_key
from autolink.segmenter import InsertedLink, ProtectedSpan

type RejectReason = Literal[
    "rule_page_cap_exhausted",
    "rule_block_cap_exhausted",
    "category_cap_exhausted",
    "global_page_cap_exhausted",
    "overlap",
    "destination_unresolved",
]


@dataclass(frozen=True, slots=True)
class RejectedMatch:
    match: KeywordMatch
    reason: RejectReason


@dataclass(frozen=True, slots=True)
class Allocation:
    accepted: tuple[KeywordMatch, ...]
    rejected: tuple[RejectedMatch, ...]

    def accepted_by_rule(self) -> Counter[str]:
        return Counter(m.rule_id for m in self.accepted)


def acceptance_order(match: KeywordMatch) -> tuple[int, int, int, tuple[int, int, str]]:
    return (-match.priority, match.start, match.end, rule_sort_key(match.rule_id))


def allocate(
    matches: Iterable[KeywordMatch],
    rules: Mapping[str, Rule],
    categories: Mapping[str, Category],
    settings: EngineSettings,
    *,
    seeded: Iterable[InsertedLink] = (),
    protected: Sequence[ProtectedSpan] = (),
) -> Allocation:
    """Accept matches greedily in ``(priority desc, document order, rule id)`` order.

    A match is accepted iff its rule's page and block counts are below the
    rule's limits, its category's count is below the category cap, the page
    total is below ``settings.default_page_cap`` (only for rules without their
    own ``max_per_page``), and its span overlaps nothing accepted or protected.
    The first failing check names the rejection reason.

    *seeded* links (inserted by a previous render) pre-fill every counter.
    """
    page_counts: Counter[str] = Counter()
    block_counts: Counter[tuple[str, int]] = Counter()
    category_counts: Counter[str] = Counter()
    total = 0

    for link in seeded:
        page_counts[link.rule_id] += 1
        block_counts[(link.rule_id, link.block_id)] += 1
        seeded_rule = rules.get(link.rule_id)
        if seeded_rule is not None and seeded_rule.category_id:
            category_counts[seeded_rule.category_id] += 1
        total += 1

    taken = SpanIndex()
    for span in protected:
        taken.add(span.start, span.end)

    accepted: list[KeywordMatch] = []
    rejected: list[RejectedMatch] = []
    for match in sorted(matches, key=acceptance_order):
        rule = rules[match.rule_id]
        limits = rule.limits
        category = categories.get(rule.category_id) if rule.category_id else None

        reason: RejectReason | None = None
        if limits.max_per_page is not None and page_counts[rule.rule_id] >= limits.max_per_page:
            reason = "rule_page_cap_exhausted"
        elif (
            limits.max_per_block is not None
            and block_counts[(rule.rule_id, match.block_id)] >= limits.max_per_block
        ):
            reason = "rule_block_cap_exhausted"
        elif (
            category is not None
            and category.category_cap is not None
            and category_counts[category.category_id] >= category.category_cap
        ):
            reason = "category_cap_exhausted"
        elif (
            limits.max_per_page is None
            and settings.default_page_cap is not None
            and total >= settings.default_page_cap
        ):
            reason = "global_page_cap_exhausted"
        elif taken.overlaps(match.start, match.end):
            reason = "overlap"

        if reason is not None:
            rejected.append(RejectedMatch(match=match, reason=reason))
            continue

        accepted.append(match)
        taken.add(match.start, match.end)
        page_counts[rule.rule_id] += 1
        block_counts[(rule.rule_id, match.block_id)] += 1
        if category is not None:
            category_counts[category.category_id] += 1
        total += 1

    accepted.sort(key=lambda m: (m.start, m.end))
    return Allocation(accepted=tuple(accepted), rejected=tuple(rejected))
