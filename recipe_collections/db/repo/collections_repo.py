from __future__ import annotations

from typing import Any

from sqlalchemy import ColumnElement, and_, case, literal, select, update
from sqlalchemy.orm import Session, sessionmaker

from recipe_collections.db.models.collections import AggregationConfig, Collection, CollectionTranslation


def _sql(value: Any) -> Any:
    # Plain Python values become bound literals; mapped columns pass through.
    return literal(value) if isinstance(value, (str, int, float)) else value


def qualified_status_expr(*, state: Any, count: Any, min_required: Any, near_fraction: float) -> ColumnElement:
    """
    SQL form of ``derive_status``.

    Each argument is either a column (the row's current value) or a plain
    value (the one being written). Right-hand sides of an UPDATE see the
    pre-update row, so values changed by the same statement must be passed
    as plain values.
    """
    state_e, count_e, need_e = _sql(state), _sql(count), _sql(min_required)
    return case(
        (and_(state_e == "published", count_e >= need_e), "qualified"),
        (and_(count_e < need_e, count_e >= need_e * float(near_fraction)), "near"),
        else_="unqualified",
    )


class CollectionsRepo:
    def __init__(self, session_factory: sessionmaker[Session]):
        self._Session = session_factory

    @staticmethod
    def _to_dict(row: Collection) -> dict[str, Any]:
        return {
            "id": str(row.id),
            "category": str(row.category),
            "slug": str(row.slug),
            "path": str(row.path),
            "name": str(row.name),
            "cover_image": row.cover_image,
            "target_count": int(row.target_count),
            "min_required": int(row.min_required),
            "sort_order": int(row.sort_order),
            "publication_state": str(row.publication_state),
            "published_at": row.published_at,
            "rule_type": str(row.rule_type),
            "rules": row.rules_json if isinstance(row.rules_json, dict) else {},
            "rules_revision": int(row.rules_revision),
            "linked_ref": row.linked_ref,
            "excluded_item_ids": list(row.excluded_item_ids or []),
            "pinned_item_ids": list(row.pinned_item_ids or []),
            "cached_matched_count": int(row.cached_matched_count),
            "cached_published_count": int(row.cached_published_count),
            "cached_pending_count": int(row.cached_pending_count),
            "cached_draft_count": int(row.cached_draft_count),
            "cached_at": row.cached_at,
            "qualified_status": str(row.qualified_status),
            "created_at": str(row.created_at),
            "updated_at": str(row.updated_at),
        }

    def get(self, collection_id: str) -> dict[str, Any] | None:
        with self._Session() as s:
            row = s.get(Collection, collection_id)
            return self._to_dict(row) if row is not None else None

    def find_by(self, *, path: str | None = None, linked_ref: str | None = None) -> dict[str, Any] | None:
        conds = []
        if path:
            conds.append(Collection.path == path)
        if linked_ref:
            conds.append(Collection.linked_ref == linked_ref)
        if not conds:
            return None
        with self._Session() as s:
            for cond in conds:
                row = s.execute(select(Collection).where(cond).limit(1)).scalar_one_or_none()
                if row is not None:
                    return self._to_dict(row)
        return None

    def list(
        self,
        *,
        categories: list[str] | None = None,
        states: list[str] | None = None,
        ids: list[str] | None = None,
    ) -> list[dict[str, Any]]:
        q = select(Collection).order_by(Collection.category.asc(), Collection.sort_order.asc(), Collection.id.asc())
        if categories:
            q = q.where(Collection.category.in_(categories))
        if states:
            q = q.where(Collection.publication_state.in_(states))
        if ids:
            q = q.where(Collection.id.in_(ids))
        with self._Session() as s:
            return [self._to_dict(r) for r in s.execute(q).scalars().all()]

    def list_published(self, categories: list[str]) -> list[dict[str, Any]]:
        q = (
            select(Collection)
            .where(and_(Collection.category.in_(categories), Collection.publication_state == "published"))
            .order_by(
                Collection.sort_order.asc(),
                Collection.cached_published_count.desc(),
                Collection.id.asc(),
            )
        )
        with self._Session() as s:
            return [self._to_dict(r) for r in s.execute(q).scalars().all()]

    def insert(self, values: dict[str, Any]) -> dict[str, Any]:
        with self._Session() as s:
            try:
                row = Collection(**values)
                s.add(row)
                s.commit()
                return self._to_dict(row)
            except Exception:
                s.rollback()
                raise

    def update_fields(self, collection_id: str, values: dict[str, Any]) -> bool:
        with self._Session() as s:
            try:
                res = s.execute(update(Collection).where(Collection.id == collection_id).values(**values))
                s.commit()
                return int(res.rowcount or 0) > 0
            except Exception:
                s.rollback()
                raise

    def update_state(self, collection_id: str, values: dict[str, Any], *, near_fraction: float) -> bool:
        """
        Write publication state or threshold changes and re-derive
        ``qualified_status`` in the same statement, against the cached count
        the row holds at write time.
        """
        status = qualified_status_expr(
            state=values.get("publication_state", Collection.publication_state),
            count=Collection.cached_published_count,
            min_required=values.get("min_required", Collection.min_required),
            near_fraction=near_fraction,
        )
        return self.update_fields(collection_id, {**values, "qualified_status": status})

    def update_rules(self, collection_id: str, values: dict[str, Any]) -> int | None:
        """Write a rule-affecting change and bump the revision. Returns the new revision."""
        with self._Session() as s:
            try:
                row = s.get(Collection, collection_id)
                if row is None:
                    return None
                for k, v in values.items():
                    setattr(row, k, v)
                row.rules_revision = int(row.rules_revision) + 1
                s.commit()
                return int(row.rules_revision)
            except Exception:
                s.rollback()
                raise

    def write_aggregate(
        self,
        collection_id: str,
        *,
        expected_revision: int,
        values: dict[str, Any],
        near_fraction: float,
    ) -> bool:
        """
        Conditional write of cached fields; False when the rules changed since the snapshot.

        ``qualified_status`` is derived from the row's current publication state
        and threshold, not the snapshot's, so concurrent state edits are kept.
        """
        cached = {k: v for k, v in values.items() if k != "qualified_status"}
        cached["qualified_status"] = qualified_status_expr(
            state=Collection.publication_state,
            count=int(cached["cached_published_count"]),
            min_required=Collection.min_required,
            near_fraction=near_fraction,
        )
        with self._Session() as s:
            try:
                res = s.execute(
                    update(Collection)
                    .where(and_(Collection.id == collection_id, Collection.rules_revision == expected_revision))
                    .values(**cached)
                )
                s.commit()
                return int(res.rowcount or 0) > 0
            except Exception:
                s.rollback()
                raise

    def translated_names(self, collection_ids: list[str], locale: str) -> dict[str, str]:
        if not collection_ids:
            return {}
        with self._Session() as s:
            rows = s.execute(
                select(CollectionTranslation.collection_id, CollectionTranslation.name).where(
                    and_(
                        CollectionTranslation.collection_id.in_(collection_ids),
                        CollectionTranslation.locale == locale,
                    )
                )
            ).all()
        return {str(cid): str(name) for cid, name in rows if name}

    def upsert_translation(self, *, collection_id: str, locale: str, name: str, now: str) -> None:
        with self._Session() as s:
            try:
                row = s.execute(
                    select(CollectionTranslation)
                    .where(
                        and_(
                            CollectionTranslation.collection_id == collection_id,
                            CollectionTranslation.locale == locale,
                        )
                    )
                    .limit(1)
                ).scalar_one_or_none()
                if row is None:
                    s.add(CollectionTranslation(collection_id=collection_id, locale=locale, name=name, updated_at=now))
                else:
                    row.name = name
                    row.updated_at = now
                s.commit()
            except Exception:
                s.rollback()
                raise

    def get_config(self, section: str) -> dict[str, Any] | None:
        with self._Session() as s:
            row = s.get(AggregationConfig, section)
            if row is None:
                return None
            return dict(row.content_json) if isinstance(row.content_json, dict) else {}

    def save_config(self, section: str, content: dict[str, Any], *, updated_by: str, now: str) -> None:
        with self._Session() as s:
            try:
                row = s.get(AggregationConfig, section)
                if row is None:
                    s.add(AggregationConfig(section=section, content_json=content, updated_at=now, updated_by=updated_by))
                else:
                    row.content_json = content
                    row.updated_at = now
                    row.updated_by = updated_by
                s.commit()
            except Exception:
                s.rollback()
                raise
