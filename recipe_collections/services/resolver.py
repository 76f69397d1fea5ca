from __future__ import annotations

import logging
import re
from dataclasses import asdict, dataclass
from typing import Any

from recipe_collections.services.categories import category_group, collection_path
from recipe_collections.services.collection_store import CollectionStore
from recipe_collections.services.qualification import progress

_LOCALE_RE = re.compile(r"^[a-z]{2}(-[A-Za-z]{2,4})?$")


@dataclass(frozen=True)
class CollectionCard:
    id: str
    category: str
    slug: str
    name: str
    path: str
    cover_image: str | None
    published_count: int
    target_count: int
    progress: int
    progress_display: int

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class CollectionResolver:
    """Read-only listing of qualified collections for public pages. Never waits on recompute."""

    def __init__(self, store: CollectionStore) -> None:
        self.store = store
        self._logger = logging.getLogger("collection_resolver")

    def list_qualified(self, category: str, locale: str = "zh", limit: int = 6, offset: int = 0) -> list[CollectionCard]:
        categories = category_group(category)
        if not categories:
            self._logger.warning("unknown category=%r", category)
            return []
        loc = str(locale or "").strip()
        if not _LOCALE_RE.match(loc):
            self._logger.warning("bad locale=%r", locale)
            return []
        if int(limit) <= 0:
            return []
        try:
            rows = self.store.list_published(list(categories))
            rows = [r for r in rows if r["cached_published_count"] >= r["min_required"]]
            rows = rows[max(0, int(offset)) : max(0, int(offset)) + int(limit)]
            names = self.store.translated_names([r["id"] for r in rows], loc) if rows else {}
        except Exception as e:
            self._logger.warning("list_qualified failed category=%s: %s: %s", category, type(e).__name__, e)
            return []

        cards: list[CollectionCard] = []
        for r in rows:
            published = int(r["cached_published_count"])
            target = int(r["target_count"])
            cards.append(
                CollectionCard(
                    id=r["id"],
                    category=r["category"],
                    slug=r["slug"],
                    name=names.get(r["id"]) or r["name"],
                    path=collection_path(r["category"], r["slug"]),
                    cover_image=r["cover_image"],
                    published_count=published,
                    target_count=target,
                    progress=progress(published, target),
                    progress_display=progress(published, target, capped=True),
                )
            )
        return cards
