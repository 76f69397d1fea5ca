from __future__ import annotations

from collections.abc import Iterator
from typing import Any

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session, sessionmaker

from recipe_collections.db.models.content import Recipe, RecipeTag
from recipe_collections.rules.models import ContentFacts


class ContentFactsRepo:
    """
    Read-side adapter over the recipe tables.

    The collection engine only ever sees the ``ContentFacts`` projection; the
    write helpers exist for imports and fixtures.
    """

    def __init__(self, session_factory: sessionmaker[Session]):
        self._Session = session_factory

    @staticmethod
    def _facts(row: Recipe, tags: dict[str, set[str]]) -> ContentFacts:
        return ContentFacts(
            item_id=str(row.id),
            status=str(row.status),
            tags={k: frozenset(v) for k, v in tags.items()},
            cuisine=row.cuisine_id,
            location=row.location_id,
            cook_time=row.cook_time,
            prep_time=row.prep_time,
            difficulty=row.difficulty,
            servings=row.servings,
        )

    def _tags_for(self, s: Session, ids: list[str]) -> dict[str, dict[str, set[str]]]:
        out: dict[str, dict[str, set[str]]] = {}
        if not ids:
            return out
        rows = s.execute(
            select(RecipeTag.recipe_id, RecipeTag.sub_category, RecipeTag.tag_id).where(RecipeTag.recipe_id.in_(ids))
        ).all()
        for rid, sub, tid in rows:
            out.setdefault(str(rid), {}).setdefault(str(sub), set()).add(str(tid))
        return out

    def _scoped(self, q: Any, scope: dict[str, Any] | None) -> Any:
        if not scope:
            return q
        if scope.get("cuisine"):
            q = q.where(Recipe.cuisine_id == scope["cuisine"])
        if scope.get("location"):
            q = q.where(Recipe.location_id == scope["location"])
        if scope.get("tag"):
            tag_q = select(RecipeTag.recipe_id).where(RecipeTag.tag_id == scope["tag"])
            if scope.get("sub_category"):
                tag_q = tag_q.where(RecipeTag.sub_category == scope["sub_category"])
            q = q.where(Recipe.id.in_(tag_q))
        return q

    def iter_facts(self, scope: dict[str, Any] | None = None, *, batch_size: int = 500) -> Iterator[ContentFacts]:
        """Stream the corpus (or a scoped subset) in id-ordered batches."""
        size = max(1, int(batch_size))
        last_id = ""
        while True:
            with self._Session() as s:
                q = select(Recipe).where(Recipe.id > last_id).order_by(Recipe.id.asc()).limit(size)
                rows = list(s.execute(self._scoped(q, scope)).scalars().all())
                if not rows:
                    return
                tags = self._tags_for(s, [str(r.id) for r in rows])
            for row in rows:
                yield self._facts(row, tags.get(str(row.id), {}))
            if len(rows) < size:
                return
            last_id = str(rows[-1].id)

    def facts_for_ids(self, ids: list[str]) -> list[ContentFacts]:
        if not ids:
            return []
        with self._Session() as s:
            rows = list(s.execute(select(Recipe).where(Recipe.id.in_(ids)).order_by(Recipe.id.asc())).scalars().all())
            tags = self._tags_for(s, [str(r.id) for r in rows])
        return [self._facts(r, tags.get(str(r.id), {})) for r in rows]

    def samples(self, ids: list[str], *, limit: int = 10) -> list[dict[str, Any]]:
        if not ids:
            return []
        with self._Session() as s:
            rows = s.execute(
                select(Recipe)
                .where(Recipe.id.in_(ids))
                .order_by(Recipe.updated_at.desc(), Recipe.id.asc())
                .limit(max(1, int(limit)))
            ).scalars().all()
            return [
                {
                    "id": str(r.id),
                    "title": str(r.title),
                    "status": str(r.status),
                    "cover_image": r.cover_image,
                    "cuisine": r.cuisine_id,
                    "location": r.location_id,
                }
                for r in rows
            ]

    def upsert_many(self, items: list[dict[str, Any]], *, now: str) -> int:
        """
        Insert or replace recipes with their tags.

        Item shape: ``{"id", "title", "status", "cuisine", "location", "cookTime",
        "prepTime", "difficulty", "servings", "tags": {"scene": ["breakfast"]}}``.
        """
        count = 0
        with self._Session() as s:
            try:
                for it in items:
                    rid = str(it.get("id", "")).strip()
                    if not rid:
                        continue
                    row = s.get(Recipe, rid)
                    if row is None:
                        row = Recipe(id=rid)
                        s.add(row)
                    row.title = str(it.get("title") or rid)
                    row.status = str(it.get("status") or "draft")
                    row.cuisine_id = it.get("cuisine") or None
                    row.location_id = it.get("location") or None
                    row.cook_time = it.get("cookTime")
                    row.prep_time = it.get("prepTime")
                    row.difficulty = it.get("difficulty")
                    row.servings = it.get("servings")
                    row.cover_image = it.get("coverImage")
                    row.updated_at = str(it.get("updatedAt") or now)
                    s.execute(delete(RecipeTag).where(RecipeTag.recipe_id == rid))
                    tags = it.get("tags") if isinstance(it.get("tags"), dict) else {}
                    for sub, tag_ids in tags.items():
                        for tid in tag_ids or []:
                            s.add(RecipeTag(recipe_id=rid, tag_id=str(tid), sub_category=str(sub)))
                    count += 1
                s.commit()
            except Exception:
                s.rollback()
                raise
        return count

    def set_status(self, item_id: str, status: str) -> bool:
        with self._Session() as s:
            row = s.get(Recipe, item_id)
            if row is None:
                return False
            row.status = status
            s.commit()
            return True

    def count(self, *, status: str | None = None) -> int:
        with self._Session() as s:
            q = select(func.count()).select_from(Recipe)
            if status:
                q = q.where(Recipe.status == status)
            return int(s.execute(q).scalar_one())
