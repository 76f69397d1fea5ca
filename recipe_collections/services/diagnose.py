from __future__ import annotations

from typing import Any

from recipe_collections.services.collection_store import CollectionStore
from recipe_collections.services.qualification import progress, recompute

MAX_GENERATE_SUGGESTION = 20


def diagnose_collection(store: CollectionStore, collection_id: str) -> dict[str, Any]:
    """Live (non-persisted) funnel for one collection plus what would close the gap."""
    row = store.get(collection_id)
    snap = store.snapshot(collection_id)
    result = recompute(snap, store.content_repo, store.settings)

    published = result.published_count
    pending = result.pending_count
    draft = result.draft_count
    gap = max(0, snap.target_count - published)

    suggestions: list[dict[str, Any]] = []
    if pending > 0:
        suggestions.append(
            {
                "type": "publish_pending",
                "message": f"有 {pending} 篇待审核食谱，通过后可达 {published + pending} 篇",
                "action": {"type": "filter", "status": "pending", "collection_id": collection_id},
            }
        )
    if draft > 0:
        suggestions.append(
            {
                "type": "complete_draft",
                "message": f"有 {draft} 篇草稿，完善后可发布",
                "action": {"type": "filter", "status": "draft", "collection_id": collection_id},
            }
        )
    if gap > 0:
        suggestions.append(
            {
                "type": "generate",
                "message": f"建议生成 {gap} 篇填充缺口",
                "action": {"type": "generate", "count": min(gap, MAX_GENERATE_SUGGESTION)},
            }
        )

    return {
        "collection": {
            "id": row["id"],
            "name": row["name"],
            "category": row["category"],
            "min_required": snap.min_required,
            "target_count": snap.target_count,
        },
        "funnel": {
            "target": snap.target_count,
            "published": published,
            "pending": pending,
            "draft": draft,
            "gap": gap,
        },
        "status": {
            "is_min_reached": published >= snap.min_required,
            "qualified_status": result.qualified_status,
            "cached_published_count": row["cached_published_count"],
            "cache_stale": row["cached_published_count"] != published,
            "progress": progress(published, snap.target_count),
        },
        "suggestions": suggestions,
    }
