from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any

from recipe_collections.config import QualificationSettings
from recipe_collections.rules.evaluator import evaluate_item
from recipe_collections.rules.models import (
    ITEM_DRAFT,
    ITEM_PENDING,
    ITEM_PUBLISHED,
    AutoRule,
    RuleConfig,
)
from recipe_collections.rules.validator import parse_rule_config

STATUS_QUALIFIED = "qualified"
STATUS_NEAR = "near"
STATUS_UNQUALIFIED = "unqualified"

STATE_DRAFT = "draft"
STATE_PUBLISHED = "published"
STATE_ARCHIVED = "archived"
PUBLICATION_STATES = (STATE_DRAFT, STATE_PUBLISHED, STATE_ARCHIVED)


@dataclass(frozen=True)
class CollectionSnapshot:
    """Everything a recompute needs, read once from the collection row."""

    collection_id: str
    rule: RuleConfig
    excluded_ids: frozenset[str]
    pinned_ids: frozenset[str]
    target_count: int
    min_required: int
    publication_state: str
    rules_revision: int

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "CollectionSnapshot":
        return cls(
            collection_id=str(row["id"]),
            rule=parse_rule_config(row.get("rules") or None),
            excluded_ids=frozenset(str(x) for x in row.get("excluded_item_ids") or []),
            pinned_ids=frozenset(str(x) for x in row.get("pinned_item_ids") or []),
            target_count=int(row.get("target_count") or 1),
            min_required=int(row.get("min_required") or 0),
            publication_state=str(row.get("publication_state") or STATE_DRAFT),
            rules_revision=int(row.get("rules_revision") or 0),
        )


@dataclass(frozen=True)
class AggregateResult:
    matched_total: int
    published_count: int
    pending_count: int
    draft_count: int
    qualified_status: str
    matched_ids: tuple[str, ...] = ()

    def cache_values(self, *, cached_at: str) -> dict[str, Any]:
        return {
            "cached_matched_count": self.matched_total,
            "cached_published_count": self.published_count,
            "cached_pending_count": self.pending_count,
            "cached_draft_count": self.draft_count,
            "qualified_status": self.qualified_status,
            "cached_at": cached_at,
        }


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def progress(published_count: int, target_count: int, *, capped: bool = False) -> int:
    pct = round_half_up(max(0, int(published_count)) / max(int(target_count), 1) * 100)
    if capped:
        return max(0, min(100, pct))
    return pct


def derive_status(publication_state: str, published_count: int, min_required: int, near_fraction: float) -> str:
    """
    Three-way verdict from cached counts.

    Only a published collection can be ``qualified``. The ``near`` band is
    ``near_fraction * min_required <= published_count < min_required``.
    """
    count = int(published_count)
    need = int(min_required)
    if publication_state == STATE_PUBLISHED and count >= need:
        return STATUS_QUALIFIED
    if count < need and count >= near_fraction * need:
        return STATUS_NEAR
    return STATUS_UNQUALIFIED


def content_scope(rule: RuleConfig) -> dict[str, Any] | None:
    """Storage-side prefilter for auto rules; custom rules scan the whole corpus."""
    if not isinstance(rule, AutoRule):
        return None
    if rule.field == "tag":
        return {"tag": rule.value, "sub_category": rule.sub_category}
    return {rule.field: rule.value}


def recompute(
    snapshot: CollectionSnapshot,
    source: Any,
    settings: QualificationSettings,
    *,
    keep_ids: int = 0,
) -> AggregateResult:
    """
    Evaluate the snapshot's rules over the content source.

    Only the first ``keep_ids`` matched ids are retained on the result (for
    preview samples); counts always cover every match.

    ``source`` provides ``iter_facts(scope, batch_size=...)`` and
    ``facts_for_ids(ids)``. Nothing is written here; the caller persists the
    result.
    """
    scope = content_scope(snapshot.rule)
    seen: set[str] = set()
    matched_total = 0
    kept: list[str] = []
    counts = {ITEM_PUBLISHED: 0, ITEM_PENDING: 0, ITEM_DRAFT: 0}

    def _take(item) -> None:
        nonlocal matched_total
        if item.item_id in seen:
            return
        seen.add(item.item_id)
        result = evaluate_item(
            snapshot.rule,
            item,
            excluded_ids=snapshot.excluded_ids,
            pinned_ids=snapshot.pinned_ids,
        )
        if not result.matched:
            return
        matched_total += 1
        if len(kept) < keep_ids:
            kept.append(item.item_id)
        if item.status in counts:
            counts[item.status] += 1

    for item in source.iter_facts(scope, batch_size=settings.content_batch_size):
        _take(item)
    if scope is not None:
        # Pinned items can sit outside the scoped slice.
        missing = sorted(snapshot.pinned_ids - seen - snapshot.excluded_ids)
        for item in source.facts_for_ids(missing):
            _take(item)

    return AggregateResult(
        matched_total=matched_total,
        published_count=counts[ITEM_PUBLISHED],
        pending_count=counts[ITEM_PENDING],
        draft_count=counts[ITEM_DRAFT],
        qualified_status=derive_status(
            snapshot.publication_state,
            counts[ITEM_PUBLISHED],
            snapshot.min_required,
            settings.near_fraction,
        ),
        matched_ids=tuple(kept),
    )
